"""
Practice Client
===============

Typed async client for the practice API, plus the writing task flow that sits
on top of it (generate a prompt, then evaluate an answer to it).

    async with PracticeClient("http://localhost:8000") as api:
        await api.login("guest", "guest")
        flow = WritingTaskFlow(api, task=2)
        await flow.generate_prompt()
        evaluation = await flow.evaluate(essay_text)
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx
from pydantic import ValidationError

from .examiner import Task1Prompt
from .scoring import (
	Evaluation,
	EvaluationLayout,
	WRITING_TASK1_LAYOUT,
	WRITING_TASK2_LAYOUT,
	unavailable_evaluation,
)
from .speaking_session import SessionSnapshot

logger = logging.getLogger(__name__)

PROMPT_ERROR = "Error generating prompt. Please try again."
EVALUATION_ERROR = "Error evaluating response. Please try again."

_WRITING_LAYOUTS: Dict[int, EvaluationLayout] = {1: WRITING_TASK1_LAYOUT, 2: WRITING_TASK2_LAYOUT}


class PracticeAPIError(RuntimeError):
	def __init__(self, status_code: int, message: str) -> None:
		super().__init__(f"{status_code}: {message}")
		self.status_code = status_code
		self.message = message


class LiveSession(SessionSnapshot):
	session_id: str
	accepted: Optional[bool] = None


class PracticeClient:
	def __init__(
		self,
		base_url: str,
		token: Optional[str] = None,
		*,
		transport: Optional[httpx.AsyncBaseTransport] = None,
		timeout: float = 120.0,
	) -> None:
		self.token = token
		self._client = httpx.AsyncClient(base_url=base_url.rstrip("/"), transport=transport, timeout=timeout)

	async def __aenter__(self) -> "PracticeClient":
		return self

	async def __aexit__(self, *exc_info) -> None:
		await self.aclose()

	async def aclose(self) -> None:
		await self._client.aclose()

	async def _request(self, method: str, path: str, **kwargs) -> Any:
		headers = kwargs.pop("headers", {})
		if self.token:
			headers["Authorization"] = f"Bearer {self.token}"
		try:
			r = await self._client.request(method, path, headers=headers, **kwargs)
		except httpx.RequestError as net_err:
			raise PracticeAPIError(0, f"Request failed: {net_err}") from net_err
		if r.is_error:
			try:
				body = r.json()
			except ValueError:
				body = None
			message = (body.get("error") if isinstance(body, dict) else None) or r.text
			raise PracticeAPIError(r.status_code, str(message))
		try:
			return r.json()
		except ValueError as err:
			raise PracticeAPIError(r.status_code, "Response body is not JSON") from err

	# ---- auth ----

	async def login(self, username: str, password: str) -> str:
		data = await self._request("POST", "/auth/token", data={"username": username, "password": password})
		self.token = data["access_token"]
		return self.token

	# ---- speaking ----

	async def generate_speaking_question(self, part: int) -> str:
		data = await self._request("POST", "/speaking/generate", json={"part": part})
		return data["question"]

	async def evaluate_speaking(self, response: str, question: str, part: int) -> Evaluation:
		data = await self._request(
			"POST", "/speaking/evaluate", json={"response": response, "question": question, "part": part}
		)
		return Evaluation.model_validate(data)

	async def start_speaking_session(self, part: int) -> LiveSession:
		return LiveSession.model_validate(await self._request("POST", "/speaking/sessions", json={"part": part}))

	async def get_speaking_session(self, session_id: str) -> LiveSession:
		return LiveSession.model_validate(await self._request("GET", f"/speaking/sessions/{session_id}"))

	async def push_transcript(self, session_id: str, text: str, is_final: bool = True) -> LiveSession:
		data = await self._request(
			"POST", f"/speaking/sessions/{session_id}/transcript", json={"text": text, "is_final": is_final}
		)
		return LiveSession.model_validate(data)

	async def push_audio(self, session_id: str, audio_base64: str) -> LiveSession:
		data = await self._request("POST", f"/speaking/sessions/{session_id}/audio", json={"audio_base64": audio_base64})
		return LiveSession.model_validate(data)

	async def edit_response(self, session_id: str, text: str) -> LiveSession:
		data = await self._request("PUT", f"/speaking/sessions/{session_id}/response", json={"text": text})
		return LiveSession.model_validate(data)

	async def submit_response(self, session_id: str) -> LiveSession:
		return LiveSession.model_validate(await self._request("POST", f"/speaking/sessions/{session_id}/submit"))

	async def end_speaking_session(self, session_id: str) -> None:
		await self._request("DELETE", f"/speaking/sessions/{session_id}")

	# ---- writing ----

	async def generate_task1(self) -> Task1Prompt:
		return Task1Prompt.model_validate(await self._request("POST", "/writing/task1/generate"))

	async def generate_task2(self) -> str:
		data = await self._request("POST", "/writing/task2/generate")
		return data["prompt"]

	async def evaluate_writing(self, task: int, response: str, prompt: str) -> Evaluation:
		data = await self._request(
			"POST", f"/writing/task{task}/evaluate", json={"response": response, "prompt": prompt}
		)
		return Evaluation.model_validate(data)


class WritingTaskFlow:
	"""Prompt-then-evaluate flow for one writing task.

	Failures never raise: a failed prompt request leaves an error message in
	``prompt``, and a failed evaluation returns an all-"N/A" evaluation carrying
	the error message.
	"""

	def __init__(self, client: PracticeClient, task: int) -> None:
		if task not in _WRITING_LAYOUTS:
			raise ValueError("task must be 1 or 2")
		self.client = client
		self.task = task
		self.prompt: Optional[str] = None
		self.image_url: Optional[str] = None
		self.generating = False
		self.evaluating = False

	@property
	def busy(self) -> bool:
		return self.generating or self.evaluating

	async def generate_prompt(self) -> Optional[str]:
		if self.generating:
			return None
		self.generating = True
		try:
			if self.task == 1:
				result = await self.client.generate_task1()
				self.prompt, self.image_url = result.prompt, result.image_url
			else:
				self.prompt = await self.client.generate_task2()
				self.image_url = None
		except (PracticeAPIError, ValidationError, KeyError, TypeError) as err:
			logger.warning("Task %s prompt generation failed: %s", self.task, err)
			self.prompt = PROMPT_ERROR
			self.image_url = None
		finally:
			self.generating = False
		return self.prompt

	async def evaluate(self, response: str) -> Optional[Evaluation]:
		if self.evaluating or not self.prompt or not response.strip():
			return None
		self.evaluating = True
		try:
			return await self.client.evaluate_writing(self.task, response, self.prompt)
		except (PracticeAPIError, ValidationError) as err:
			logger.warning("Task %s evaluation failed: %s", self.task, err)
			return unavailable_evaluation(_WRITING_LAYOUTS[self.task], EVALUATION_ERROR)
		finally:
			self.evaluating = False
