"""
Speaking Module
===============

Stateless endpoints:
- POST /speaking/generate: one question for a Speaking part
- POST /speaking/evaluate: band-score a (combined) response

Live sessions run the speaking state machine on the server. The client pushes
transcript segments (or raw audio for server-side transcription) and reads
snapshots; timers, preparation and evaluation are driven here.
- POST   /speaking/sessions
- GET    /speaking/sessions/{session_id}
- POST   /speaking/sessions/{session_id}/transcript
- POST   /speaking/sessions/{session_id}/audio
- PUT    /speaking/sessions/{session_id}/response
- POST   /speaking/sessions/{session_id}/submit
- DELETE /speaking/sessions/{session_id}

Sessions live in process memory only and are gone after a restart.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Callable, Dict, Optional, Set

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from ..ai_client import AIClient, ProviderError, get_client_factory
from ..examiner import ModelSpeakingExaminer, evaluate_speaking_response, generate_speaking_question
from ..scoring import Evaluation
from ..speaking_session import (
	PushedTranscriptCapture,
	SessionPhase,
	SessionSnapshot,
	SpeakingSessionController,
)
from ..transcription import TranscriptionError, decode_audio, transcribe_audio
from .auth import User, get_current_user


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/speaking", tags=["speaking"])

PARTS = (1, 2, 3)


# ============================================================================
# REQUEST/RESPONSE MODELS
# ============================================================================

class GenerateQuestionRequest(BaseModel):
	part: Optional[int] = None


class GenerateQuestionResponse(BaseModel):
	question: str


class EvaluateRequest(BaseModel):
	response: Optional[str] = None
	question: Optional[str] = None
	part: Optional[int] = None


class StartSessionRequest(BaseModel):
	part: Optional[int] = None


class TranscriptRequest(BaseModel):
	text: Optional[str] = None
	is_final: bool = True


class AudioRequest(BaseModel):
	audio_base64: Optional[str] = None


class ResponseTextRequest(BaseModel):
	text: Optional[str] = None


class SessionResponse(SessionSnapshot):
	session_id: str
	# Whether a pushed transcript reached an open capture
	accepted: Optional[bool] = None


# ============================================================================
# SESSION MANAGEMENT
# ============================================================================

class _LiveSession:
	def __init__(self, username: str, controller: SpeakingSessionController, capture: PushedTranscriptCapture) -> None:
		self.username = username
		self.controller = controller
		self.capture = capture


_sessions: Dict[str, _LiveSession] = {}
# Users whose new session is still generating questions
_starting: Set[str] = set()


def _require_part(part: Optional[int]) -> int:
	if part not in PARTS:
		raise HTTPException(status_code=400, detail="Valid part number (1, 2, or 3) is required")
	return part


def _get_session(session_id: str, user: User) -> _LiveSession:
	live = _sessions.get(session_id)
	if live is None or live.username != user.username:
		raise HTTPException(status_code=404, detail="Session not found or expired")
	return live


def _respond(session_id: str, live: _LiveSession, accepted: Optional[bool] = None) -> SessionResponse:
	return SessionResponse(session_id=session_id, accepted=accepted, **dict(live.controller.snapshot()))


async def _discard(session_id: str) -> None:
	live = _sessions.pop(session_id, None)
	if live is not None:
		await live.controller.aclose()


async def purge_idle_sessions(ttl_seconds: float) -> int:
	"""Drop live sessions nobody has touched for ``ttl_seconds``."""
	threshold = time.monotonic() - ttl_seconds
	stale = [sid for sid, live in _sessions.items() if live.controller.last_activity < threshold]
	for sid in stale:
		await _discard(sid)
	return len(stale)


async def shutdown_sessions() -> None:
	for sid in list(_sessions):
		await _discard(sid)


# ============================================================================
# API ENDPOINTS
# ============================================================================

@router.post("/generate", response_model=GenerateQuestionResponse)
async def generate_question(
	req: GenerateQuestionRequest,
	user: User = Depends(get_current_user),
	client_factory: Callable[[], AIClient] = Depends(get_client_factory),
):
	part = _require_part(req.part)
	try:
		client = client_factory()
		try:
			question = await generate_speaking_question(client, part)
		finally:
			await client.aclose()
	except ProviderError:
		logger.exception("Error generating speaking question for Part %s", part)
		raise HTTPException(status_code=500, detail="Failed to generate question")
	return GenerateQuestionResponse(question=question)


@router.post("/evaluate", response_model=Evaluation)
async def evaluate(
	req: EvaluateRequest,
	user: User = Depends(get_current_user),
	client_factory: Callable[[], AIClient] = Depends(get_client_factory),
):
	if not req.response or not req.question or not req.part:
		raise HTTPException(status_code=400, detail="Response, question, and part are required")
	part = _require_part(req.part)
	logger.info("Evaluating Speaking Part %s response", part)
	try:
		client = client_factory()
		try:
			evaluation = await evaluate_speaking_response(client, req.response, req.question, part)
		finally:
			await client.aclose()
	except ProviderError as e:
		logger.exception("Error evaluating speaking response")
		raise HTTPException(status_code=500, detail=f"Failed to evaluate response: {e}")
	logger.info("Speaking evaluation complete")
	return evaluation


@router.post("/sessions", response_model=SessionResponse, status_code=201)
async def start_session(
	req: StartSessionRequest,
	user: User = Depends(get_current_user),
	client_factory: Callable[[], AIClient] = Depends(get_client_factory),
):
	part = _require_part(req.part)
	if user.username in _starting:
		raise HTTPException(status_code=409, detail="A speaking session is already being started")
	_starting.add(user.username)
	try:
		# Starting a new test discards whatever the user had running
		for sid in [sid for sid, live in _sessions.items() if live.username == user.username]:
			await _discard(sid)

		capture = PushedTranscriptCapture()
		controller = SpeakingSessionController(ModelSpeakingExaminer(client_factory), capture)
		machine = await controller.start_part(part)
	finally:
		_starting.discard(user.username)
	if machine.phase is SessionPhase.IDLE:
		raise HTTPException(status_code=500, detail=f"Failed to generate questions: {machine.error}")

	session_id = uuid.uuid4().hex
	live = _LiveSession(user.username, controller, capture)
	_sessions[session_id] = live
	logger.info("Speaking session %s started for %s (Part %s)", session_id, user.username, part)
	return _respond(session_id, live)


@router.get("/sessions/{session_id}", response_model=SessionResponse)
async def get_session(session_id: str, user: User = Depends(get_current_user)):
	return _respond(session_id, _get_session(session_id, user))


@router.post("/sessions/{session_id}/transcript", response_model=SessionResponse)
async def push_transcript(session_id: str, req: TranscriptRequest, user: User = Depends(get_current_user)):
	live = _get_session(session_id, user)
	if req.text is None:
		raise HTTPException(status_code=400, detail="text is required")
	accepted = live.capture.push(req.text, req.is_final)
	return _respond(session_id, live, accepted)


@router.post("/sessions/{session_id}/audio", response_model=SessionResponse)
async def push_audio(session_id: str, req: AudioRequest, user: User = Depends(get_current_user)):
	live = _get_session(session_id, user)
	if not req.audio_base64:
		raise HTTPException(status_code=400, detail="audio_base64 is required")
	try:
		decode_audio(req.audio_base64)
	except ValueError as e:
		raise HTTPException(status_code=400, detail=str(e))
	if not live.capture.is_open:
		# Nothing is listening, so skip the recognition call
		return _respond(session_id, live, False)
	try:
		transcript = await transcribe_audio(req.audio_base64)
	except TranscriptionError as e:
		logger.exception("Transcription failed for session %s", session_id)
		raise HTTPException(status_code=500, detail=f"Failed to transcribe audio: {e}")
	accepted = live.capture.push(transcript, True) if transcript else False
	return _respond(session_id, live, accepted)


@router.put("/sessions/{session_id}/response", response_model=SessionResponse)
async def edit_response(session_id: str, req: ResponseTextRequest, user: User = Depends(get_current_user)):
	live = _get_session(session_id, user)
	live.controller.edit_response(req.text or "")
	return _respond(session_id, live)


@router.post("/sessions/{session_id}/submit", response_model=SessionResponse)
async def submit(session_id: str, user: User = Depends(get_current_user)):
	live = _get_session(session_id, user)
	machine = live.controller.submit()
	if machine.phase is SessionPhase.EVALUATING:
		await live.controller.wait_for_request()
	return _respond(session_id, live)


@router.delete("/sessions/{session_id}")
async def delete_session(session_id: str, user: User = Depends(get_current_user)):
	_get_session(session_id, user)
	await _discard(session_id)
	return {"ok": True}

