from __future__ import annotations
import logging
import httpx
from typing import Any, Callable, Dict, List, Optional
from .settings import settings

logger = logging.getLogger(__name__)


class ProviderError(RuntimeError):
	"""Raised when the AI provider cannot produce a usable answer."""


class AIClient:
	"""Thin async client for an OpenAI-compatible provider.

	Only two operations are used by the application: ``generate_text`` (chat
	completion) and ``generate_image`` (image generation returning a URL).
	Text generation can fall back to OpenRouter when it is configured.
	"""

	def __init__(
		self,
		api_key: Optional[str] = None,
		*,
		base_url: Optional[str] = None,
		model: Optional[str] = None,
		image_model: Optional[str] = None,
		transport: Optional[httpx.AsyncBaseTransport] = None,
	) -> None:
		self.api_key = api_key or settings.openai_api_key
		if not self.api_key:
			raise ProviderError("OPENAI_API_KEY is not configured")
		self.model = model or settings.openai_model
		self.image_model = image_model or settings.openai_image_model
		self.base_url = (base_url or settings.openai_base_url).rstrip("/")
		self._headers = {
			"Authorization": f"Bearer {self.api_key}",
			"Content-Type": "application/json",
		}
		self._client = httpx.AsyncClient(timeout=settings.ai_request_timeout_seconds, transport=transport)
		self._fallback_client: Optional[httpx.AsyncClient] = None
		self._fallback_enabled = bool(settings.openrouter_api_key)
		self._openrouter_api_key = settings.openrouter_api_key
		self._openrouter_model = settings.openrouter_model
		self._openrouter_base_url = settings.openrouter_base_url
		self._openrouter_headers = {
			"Authorization": f"Bearer {self._openrouter_api_key}" if self._openrouter_api_key else "",
			"Content-Type": "application/json",
			"HTTP-Referer": settings.openrouter_referer,
			"X-Title": settings.openrouter_title,
		}
		if self._fallback_enabled:
			self._fallback_client = httpx.AsyncClient(timeout=settings.ai_request_timeout_seconds, transport=transport)

	async def generate_text(self, system_prompt: str, user_prompt: str, max_tokens: int) -> str:
		"""Return the first completion's text. Empty when the provider sent no content."""
		messages: List[Dict[str, str]] = [
			{"role": "system", "content": system_prompt},
			{"role": "user", "content": user_prompt},
		]
		payload: Dict[str, Any] = {"model": self.model, "messages": messages, "max_tokens": max_tokens}
		last_error: Optional[Exception] = None
		try:
			data = await self._post("/chat/completions", payload)
			return _completion_text(data)
		except ProviderError as err:
			last_error = err
		if not self._fallback_enabled:
			raise last_error
		logger.warning("Primary text generation failed (%s); trying OpenRouter", last_error)
		return await self._fallback_generate(messages, max_tokens, last_error)

	async def generate_image(self, prompt: str) -> str:
		payload: Dict[str, Any] = {
			"model": self.image_model,
			"prompt": prompt,
			"size": settings.openai_image_size,
			"quality": settings.openai_image_quality,
			"n": 1,
		}
		data = await self._post("/images/generations", payload)
		images = data.get("data") or []
		if not images:
			raise ProviderError("Failed to generate image - no data returned from provider")
		url = (images[0] or {}).get("url")
		if not url:
			raise ProviderError("Failed to generate image - no URL returned from provider")
		return url

	async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
		try:
			r = await self._client.post(f"{self.base_url}{path}", headers=self._headers, json=payload)
			r.raise_for_status()
		except httpx.HTTPStatusError as http_err:
			raise ProviderError(f"Provider returned HTTP {http_err.response.status_code}: {http_err.response.text}") from http_err
		except httpx.RequestError as net_err:
			raise ProviderError(f"Provider request failed: {net_err}") from net_err
		try:
			data = r.json()
		except ValueError as err:
			raise ProviderError(f"Unexpected provider response: {r.text}") from err
		if not isinstance(data, dict):
			raise ProviderError(f"Unexpected provider response: {r.text}")
		return data

	async def aclose(self) -> None:
		await self._client.aclose()
		if self._fallback_client is not None:
			await self._fallback_client.aclose()

	async def _fallback_generate(
		self,
		messages: List[Dict[str, str]],
		max_tokens: int,
		primary_error: Optional[Exception],
	) -> str:
		if not self._fallback_client or not self._openrouter_api_key:
			raise primary_error or ProviderError("Fallback requested but OpenRouter is not configured")
		headers = {k: v for k, v in self._openrouter_headers.items() if v}
		payload: Dict[str, Any] = {
			"model": self._openrouter_model,
			"messages": messages,
			"max_tokens": max_tokens,
		}
		try:
			r = await self._fallback_client.post(
				self._openrouter_base_url,
				headers=headers,
				json=payload,
			)
			r.raise_for_status()
			return _completion_text(r.json())
		except (httpx.HTTPError, ValueError, ProviderError) as fallback_err:
			raise ProviderError(
				f"Primary call failed ({primary_error}); fallback via OpenRouter also failed"
			) from fallback_err


def _completion_text(data: Dict[str, Any]) -> str:
	try:
		choices = data["choices"]
	except (KeyError, TypeError) as err:
		raise ProviderError(f"Unexpected provider response: {data}") from err
	if not choices:
		return ""
	message = (choices[0] or {}).get("message") or {}
	return message.get("content") or ""


def get_client_factory() -> Callable[[], AIClient]:
	"""FastAPI dependency; tests override it with a fake provider."""
	return AIClient
