from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

class Settings(BaseSettings):
	openai_api_key: str | None = Field(default=None, validation_alias="OPENAI_API_KEY")
	# Any OpenAI-compatible endpoint (chat completions + image generations)
	openai_base_url: str = Field(default="https://api.openai.com/v1", validation_alias="OPENAI_BASE_URL")
	openai_model: str = Field(default="gpt-4o-mini", validation_alias="OPENAI_MODEL")
	openai_image_model: str = Field(default="dall-e-3", validation_alias="OPENAI_IMAGE_MODEL")
	openai_image_size: str = Field(default="1024x1024", validation_alias="OPENAI_IMAGE_SIZE")
	openai_image_quality: str = Field(default="standard", validation_alias="OPENAI_IMAGE_QUALITY")
	ai_request_timeout_seconds: float = Field(default=60.0, validation_alias="AI_REQUEST_TIMEOUT_SECONDS")

	# OpenRouter fallback configuration (optional, text generation only)
	openrouter_api_key: str | None = Field(default=None, validation_alias="OPENROUTER_API_KEY")
	openrouter_model: str = Field(default="openai/gpt-4o-mini", validation_alias="OPENROUTER_MODEL")
	openrouter_base_url: str = Field(default="https://openrouter.ai/api/v1/chat/completions", validation_alias="OPENROUTER_BASE_URL")
	openrouter_referer: str = Field(default="https://localhost", validation_alias="OPENROUTER_HTTP_REFERER")
	openrouter_title: str = Field(default="IELTS Practice", validation_alias="OPENROUTER_TITLE")

	# Auth configuration
	jwt_secret_key: str = Field(default="change-me", validation_alias="JWT_SECRET_KEY")
	jwt_algorithm: str = Field(default="HS256", validation_alias="JWT_ALGORITHM")
	access_token_expire_minutes: int = Field(default=120, validation_alias="ACCESS_TOKEN_EXPIRE_MINUTES")
	# Seed user
	seed_username: str | None = Field(default=None, validation_alias="SEED_USERNAME")
	seed_password_plain: str | None = Field(default=None, validation_alias="SEED_PASSWORD")

	# Database (auth data only; practice sessions are never persisted)
	database_url: str | None = Field(default=None, validation_alias="DATABASE_URL")

	# Live speaking sessions idle for longer than this are dropped by the cleanup watcher
	speaking_session_ttl_seconds: int = Field(default=3600, validation_alias="SPEAKING_SESSION_TTL_SECONDS")
	# Google Cloud Speech-to-Text
	speech_language_code: str = Field(default="en-US", validation_alias="SPEECH_LANGUAGE_CODE")

	log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

	# pydantic-settings v2 style config
	model_config = SettingsConfigDict(env_file=".env", extra="ignore")

settings = Settings()
