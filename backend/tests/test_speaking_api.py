"""
Tests for the /speaking endpoints, stateless and live sessions.
"""

import asyncio
import time

import httpx
import pytest

from ielts_app import speaking_session as ss
from ielts_app.ai_client import ProviderError, get_client_factory
from ielts_app.main import app
from ielts_app.routers import speaking
from conftest import SPEAKING_REPLY, FakeAIClient


def _wait_for_phase(client, session_id, phase, timeout=5.0):
	deadline = time.monotonic() + timeout
	while True:
		data = client.get(f"/speaking/sessions/{session_id}").json()
		if data["phase"] == phase or time.monotonic() > deadline:
			return data
		time.sleep(0.02)


class HeldAIClient(FakeAIClient):
	"""Provider whose text replies wait until ``release`` is set."""

	def __init__(self, **kwargs) -> None:
		super().__init__(**kwargs)
		self.release = asyncio.Event()

	async def generate_text(self, system_prompt, user_prompt, max_tokens):
		await self.release.wait()
		return await super().generate_text(system_prompt, user_prompt, max_tokens)


@pytest.fixture
def fast_announcements(monkeypatch):
	"""Announcement and advance delays of zero; countdowns keep real seconds."""
	monkeypatch.setattr(ss, "intro_delay", lambda message: 0)
	monkeypatch.setattr(ss, "prompt_delay", lambda message: 0)
	monkeypatch.setattr(ss, "ADVANCE_DELAY_SECONDS", 0)


class TestGenerateQuestion:
	def test_generate_success(self, client, fake_ai):
		fake_ai.replies = ["**What do you do in your free time?**"]
		response = client.post("/speaking/generate", json={"part": 1})
		assert response.status_code == 200
		assert response.json() == {"question": "What do you do in your free time?"}
		assert fake_ai.closed == 1

	@pytest.mark.parametrize("body", [{}, {"part": 0}, {"part": 4}])
	def test_generate_requires_valid_part(self, client, body):
		response = client.post("/speaking/generate", json=body)
		assert response.status_code == 400
		assert response.json() == {"error": "Valid part number (1, 2, or 3) is required"}

	def test_generate_provider_failure(self, client, fake_ai):
		fake_ai.replies = [ProviderError("quota exceeded")]
		response = client.post("/speaking/generate", json={"part": 2})
		assert response.status_code == 500
		assert response.json() == {"error": "Failed to generate question"}

	def test_malformed_body_is_400(self, client):
		response = client.post(
			"/speaking/generate", content="not json", headers={"Content-Type": "application/json"}
		)
		assert response.status_code == 400
		assert "error" in response.json()


class TestEvaluate:
	def test_evaluate_success(self, client, fake_ai):
		fake_ai.replies = [SPEAKING_REPLY]
		response = client.post(
			"/speaking/evaluate",
			json={"response": "I enjoy reading.", "question": "What are your hobbies?", "part": 1},
		)
		assert response.status_code == 200
		data = response.json()
		assert data["overall_band"] == {"kind": "numeric", "value": 6.5, "display": "6.5"}
		assert data["criteria"]["fluency_coherence"]["title"] == "Fluency and Coherence"
		assert data["criteria"]["grammatical_range"]["feedback"] == "Frequent tense errors."
		assert data["detailed_feedback"] == "Work on past tenses."

	@pytest.mark.parametrize(
		"body",
		[
			{"question": "Q", "part": 1},
			{"response": "R", "part": 1},
			{"response": "R", "question": "Q"},
			{"response": "", "question": "Q", "part": 1},
		],
	)
	def test_evaluate_missing_fields(self, client, body):
		response = client.post("/speaking/evaluate", json=body)
		assert response.status_code == 400
		assert response.json() == {"error": "Response, question, and part are required"}

	def test_evaluate_provider_failure(self, client, fake_ai):
		fake_ai.replies = [ProviderError("connection reset")]
		response = client.post("/speaking/evaluate", json={"response": "R", "question": "Q", "part": 3})
		assert response.status_code == 500
		assert response.json() == {"error": "Failed to evaluate response: connection reset"}

	def test_unparseable_reply_degrades_to_sentinels(self, client, fake_ai):
		fake_ai.replies = ["I am unable to score this."]
		response = client.post("/speaking/evaluate", json={"response": "R", "question": "Q", "part": 1})
		assert response.status_code == 200
		data = response.json()
		assert data["overall_band"]["display"] == "N/A"
		assert data["criteria"]["pronunciation"]["feedback"] == "No feedback available"
		assert data["detailed_feedback"] == "I am unable to score this."


class TestLiveSessions:
	def test_start_session(self, client, fake_ai):
		fake_ai.replies = ["Q1", "Q2", "Q3"]
		response = client.post("/speaking/sessions", json={"part": 1})
		assert response.status_code == 201
		data = response.json()
		assert data["phase"] == "part_intro"
		assert data["question_count"] == 3
		assert data["current_question"] == "Q1"
		assert data["time_remaining_seconds"] == 60
		assert data["is_active"] is True
		assert data["session_id"]

	def test_start_session_requires_part(self, client):
		response = client.post("/speaking/sessions", json={"part": 5})
		assert response.status_code == 400

	def test_start_session_generation_failure(self, client, fake_ai):
		fake_ai.replies = ["Q1", ProviderError("provider down")]
		response = client.post("/speaking/sessions", json={"part": 3})
		assert response.status_code == 500
		assert response.json() == {"error": "Failed to generate questions: provider down"}
		assert speaking._sessions == {}

	def test_unknown_session_is_404(self, client):
		response = client.get("/speaking/sessions/does-not-exist")
		assert response.status_code == 404
		assert response.json() == {"error": "Session not found or expired"}

	def test_new_session_replaces_previous(self, client, fake_ai):
		fake_ai.default_text = "Question"
		first = client.post("/speaking/sessions", json={"part": 3}).json()["session_id"]
		second = client.post("/speaking/sessions", json={"part": 3}).json()["session_id"]
		assert client.get(f"/speaking/sessions/{first}").status_code == 404
		assert client.get(f"/speaking/sessions/{second}").status_code == 200

	@pytest.mark.asyncio
	async def test_concurrent_starts_keep_one_session(self, api_overrides, monkeypatch):
		monkeypatch.setattr(speaking, "_sessions", {})
		monkeypatch.setattr(speaking, "_starting", set())
		slow_ai = HeldAIClient(default_text="Question")
		app.dependency_overrides[get_client_factory] = lambda: (lambda: slow_ai)

		async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver") as c:
			first = asyncio.create_task(c.post("/speaking/sessions", json={"part": 1}))
			second = asyncio.create_task(c.post("/speaking/sessions", json={"part": 1}))
			# One start is refused while the other waits on the provider
			await asyncio.wait({first, second}, timeout=5, return_when=asyncio.FIRST_COMPLETED)
			slow_ai.release.set()
			responses = await asyncio.gather(first, second)

		assert sorted(r.status_code for r in responses) == [201, 409]
		rejected = next(r for r in responses if r.status_code == 409)
		assert rejected.json() == {"error": "A speaking session is already being started"}
		assert len(speaking._sessions) == 1
		assert speaking._starting == set()
		await speaking.shutdown_sessions()

	def test_delete_session(self, client, fake_ai):
		fake_ai.default_text = "Question"
		session_id = client.post("/speaking/sessions", json={"part": 1}).json()["session_id"]
		response = client.delete(f"/speaking/sessions/{session_id}")
		assert response.status_code == 200
		assert response.json() == {"ok": True}
		assert client.get(f"/speaking/sessions/{session_id}").status_code == 404

	def test_transcript_before_listening_is_not_accepted(self, client, fake_ai):
		fake_ai.default_text = "Question"
		session_id = client.post("/speaking/sessions", json={"part": 1}).json()["session_id"]
		response = client.post(f"/speaking/sessions/{session_id}/transcript", json={"text": "too early"})
		assert response.status_code == 200
		assert response.json()["accepted"] is False
		assert response.json()["response_buffer"] == ""

	def test_part3_session_end_to_end(self, client, fake_ai, fast_announcements):
		fake_ai.replies = ["Why do people travel?", "How has tourism changed?", SPEAKING_REPLY]
		session_id = client.post("/speaking/sessions", json={"part": 3}).json()["session_id"]

		data = _wait_for_phase(client, session_id, "listening")
		assert data["phase"] == "listening"
		assert data["capturing"] is True

		pushed = client.post(f"/speaking/sessions/{session_id}/transcript", json={"text": "To relax"}).json()
		assert pushed["accepted"] is True
		assert pushed["response_buffer"] == "To relax "

		submitted = client.post(f"/speaking/sessions/{session_id}/submit").json()
		assert submitted["responses"] == ["To relax"]

		data = _wait_for_phase(client, session_id, "listening")
		assert data["current_question"] == "How has tourism changed?"
		assert data["response_buffer"] == ""

		client.put(f"/speaking/sessions/{session_id}/response", json={"text": "It grew a lot"})
		final = client.post(f"/speaking/sessions/{session_id}/submit").json()
		assert final["phase"] == "complete"
		assert final["is_active"] is False
		assert final["evaluation"]["overall_band"]["display"] == "6.5"

		_, user_prompt, _ = fake_ai.text_calls[-1]
		assert "RESPONSE: To relax It grew a lot" in user_prompt
		assert "QUESTION: Why do people travel? How has tourism changed?" in user_prompt

	def test_audio_is_transcribed_into_session(self, client, fake_ai, fast_announcements, monkeypatch):
		async def fake_transcribe(audio_base64):
			return "I grew up by the sea"

		monkeypatch.setattr(speaking, "transcribe_audio", fake_transcribe)
		fake_ai.default_text = "Question"
		session_id = client.post("/speaking/sessions", json={"part": 1}).json()["session_id"]
		_wait_for_phase(client, session_id, "listening")

		response = client.post(f"/speaking/sessions/{session_id}/audio", json={"audio_base64": "AAAA"})
		assert response.status_code == 200
		assert response.json()["accepted"] is True
		assert response.json()["response_buffer"] == "I grew up by the sea "

	def test_audio_before_listening_is_not_transcribed(self, client, fake_ai, monkeypatch):
		calls = []

		async def fake_transcribe(audio_base64):
			calls.append(audio_base64)
			return "too early"

		monkeypatch.setattr(speaking, "transcribe_audio", fake_transcribe)
		fake_ai.default_text = "Question"
		session_id = client.post("/speaking/sessions", json={"part": 1}).json()["session_id"]
		response = client.post(f"/speaking/sessions/{session_id}/audio", json={"audio_base64": "AAAA"})
		assert response.status_code == 200
		assert response.json()["accepted"] is False
		assert response.json()["response_buffer"] == ""
		assert calls == []

	def test_invalid_audio_is_400(self, client, fake_ai):
		fake_ai.default_text = "Question"
		session_id = client.post("/speaking/sessions", json={"part": 1}).json()["session_id"]
		response = client.post(f"/speaking/sessions/{session_id}/audio", json={"audio_base64": "***"})
		assert response.status_code == 400
		assert response.json() == {"error": "audio_base64 is not valid base64"}
