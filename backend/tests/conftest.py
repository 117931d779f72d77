"""
Shared fixtures: an in-memory database, a scripted AI provider and a
TestClient with auth and provider dependencies overridden.
"""

import os

# Must be set before the application settings are imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["OPENAI_API_KEY"] = "test-key"
os.environ["JWT_SECRET_KEY"] = "test-secret"
os.environ.pop("OPENROUTER_API_KEY", None)

from typing import List, Optional, Tuple, Union

import pytest
from fastapi.testclient import TestClient

from ielts_app.ai_client import get_client_factory
from ielts_app.main import app
from ielts_app.routers.auth import User, get_current_user

TEST_USERNAME = "tester"

WRITING_TASK2_REPLY = """TASK_RESPONSE: 6.5 | Addresses both views but the conclusion is thin.
COHERENCE_COHESION: 7 | Clear paragraphing.
LEXICAL_RESOURCE: 6 | Some repetition of key words.
GRAMMATICAL_RANGE: 6.5 | Mostly accurate complex sentences.
OVERALL_BAND: 6.5
DETAILED_FEEDBACK: A solid essay. Develop the conclusion further."""

SPEAKING_REPLY = """FLUENCY_COHERENCE: 7 | Speaks at length with few pauses.
LEXICAL_RESOURCE: 6.5 | Good range of topic vocabulary.
GRAMMATICAL_RANGE: 6 | Frequent tense errors.
PRONUNCIATION: 7 | Easy to understand.
OVERALL_BAND: 6.5
DETAILED_FEEDBACK: Work on past tenses."""


class FakeAIClient:
	"""Stands in for AIClient; replies are served in order, then ``default_text``."""

	def __init__(
		self,
		replies: Optional[List[Union[str, Exception]]] = None,
		default_text: str = "",
		image_url: Union[str, Exception] = "https://images.example/chart.png",
	) -> None:
		self.replies = list(replies or [])
		self.default_text = default_text
		self.image_url = image_url
		self.text_calls: List[Tuple[str, str, int]] = []
		self.image_prompts: List[str] = []
		self.closed = 0

	async def generate_text(self, system_prompt: str, user_prompt: str, max_tokens: int) -> str:
		self.text_calls.append((system_prompt, user_prompt, max_tokens))
		reply = self.replies.pop(0) if self.replies else self.default_text
		if isinstance(reply, Exception):
			raise reply
		return reply

	async def generate_image(self, prompt: str) -> str:
		self.image_prompts.append(prompt)
		if isinstance(self.image_url, Exception):
			raise self.image_url
		return self.image_url

	async def aclose(self) -> None:
		self.closed += 1


@pytest.fixture
def fake_ai():
	return FakeAIClient()


@pytest.fixture
def api_overrides(fake_ai):
	"""Route every provider call to ``fake_ai`` and authenticate as TEST_USERNAME."""
	app.dependency_overrides[get_current_user] = lambda: User(username=TEST_USERNAME)
	app.dependency_overrides[get_client_factory] = lambda: (lambda: fake_ai)
	yield fake_ai
	app.dependency_overrides.clear()


@pytest.fixture
def client(api_overrides):
	with TestClient(app) as c:
		yield c


@pytest.fixture
def auth_client():
	"""TestClient with real token auth."""
	app.dependency_overrides.clear()
	with TestClient(app) as c:
		yield c
	app.dependency_overrides.clear()
