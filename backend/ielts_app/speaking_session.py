"""
Speaking Session State Machine
==============================

Runs one IELTS Speaking part: question generation, the examiner's scripted
introduction, optional preparation (Part 2), timed listening, submission and
the final evaluation.

The module has two layers:

- ``transition(machine, event)`` is a pure function over an immutable
  ``SessionMachine``. Every state change goes through it. Events that make no
  sense in the current phase leave the machine untouched, which is how late
  transcript fragments, stale timer events and double submits are dropped.
- ``SpeakingSessionController`` drives the machine on an asyncio loop. It owns
  the countdown task, the announcement delays, the in-flight model request and
  the speech-capture handle, and reacts to phase changes by starting or
  releasing them. ``dispatch`` is synchronous, so two events never interleave.

Phase flow::

	IDLE -> GENERATING -> PART_INTRO -> [PREPARATION] / QUESTION_PROMPT -> LISTENING
	LISTENING -> SUBMITTED -> QUESTION_PROMPT            (more questions)
	LISTENING -> EVALUATING -> COMPLETE                  (last question)
	LISTENING -> STALLED                                 (time up, nothing said)

When the per-question timer runs out with an empty response buffer the session
stalls: it stays active, capture is released and nothing is evaluated. The user
can still type an answer and submit it, or reset.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Literal, Optional, Protocol, Set, Tuple, Type, Union

from pydantic import BaseModel, ConfigDict, Field

from .scoring import Evaluation

logger = logging.getLogger(__name__)


# ============================================================================
# CONSTANTS AND CONFIGURATION
# ============================================================================

class SessionPhase(str, Enum):
	IDLE = "idle"
	GENERATING = "generating"
	PART_INTRO = "part_intro"
	PREPARATION = "preparation"
	QUESTION_PROMPT = "question_prompt"
	LISTENING = "listening"
	SUBMITTED = "submitted"
	STALLED = "stalled"
	EVALUATING = "evaluating"
	COMPLETE = "complete"


class PartPlan(BaseModel):
	model_config = ConfigDict(frozen=True)

	question_count: int
	time_limit_seconds: int
	preparation_seconds: int
	introduction: str


PART_PLANS: Dict[int, PartPlan] = {
	1: PartPlan(
		question_count=3,
		time_limit_seconds=60,
		preparation_seconds=0,
		introduction="Hello, I'm your IELTS examiner. In Part 1, I'll ask you some general questions about yourself and familiar topics. Let's begin.",
	),
	2: PartPlan(
		question_count=1,
		time_limit_seconds=120,
		preparation_seconds=60,
		introduction="Now we'll move to Part 2. I'll give you a topic card and you'll have 1 minute to prepare, then speak for 1-2 minutes.",
	),
	3: PartPlan(
		question_count=2,
		time_limit_seconds=90,
		preparation_seconds=0,
		introduction="Finally, Part 3. I'll ask you some more abstract questions related to the previous topic. Let's discuss.",
	),
}

ACKNOWLEDGEMENT = "Thank you. Let's move to the next question."
PREPARATION_OVER = "Your preparation time is over. Please start speaking now."
TIME_UP = "Time is up."
EVALUATING_MESSAGE = "That's the end of this part. I'm now evaluating your performance..."
GENERATION_ERROR = "Sorry, there was an error generating questions. Please try again."
EVALUATION_ERROR = "Sorry, there was an error evaluating your performance. Please try again."

# Announcements are "spoken" for 50 ms per character
SECONDS_PER_CHARACTER = 0.05
INTRO_PAUSE_SECONDS = 1.0
INTRO_TAIL_SECONDS = 1.0
PROMPT_TAIL_SECONDS = 0.5
ADVANCE_DELAY_SECONDS = 2.0
COUNTDOWN_STEP_SECONDS = 1.0


def speaking_time(message: str) -> float:
	return len(message) * SECONDS_PER_CHARACTER


def intro_delay(introduction: str) -> float:
	return INTRO_PAUSE_SECONDS + speaking_time(introduction) + INTRO_TAIL_SECONDS


def prompt_delay(question_text: str) -> float:
	return speaking_time(question_text) + PROMPT_TAIL_SECONDS


# ============================================================================
# DATA MODEL
# ============================================================================

class Question(BaseModel):
	model_config = ConfigDict(frozen=True)

	text: str
	time_limit_seconds: int = Field(gt=0)


class TestSession(BaseModel):
	model_config = ConfigDict(frozen=True)

	part: Literal[1, 2, 3]
	current_question_index: int = Field(default=0, ge=0)
	questions: Tuple[Question, ...]
	responses: Tuple[str, ...] = ()
	is_active: bool = True
	time_remaining_seconds: int = Field(ge=0)

	@property
	def current_question(self) -> Optional[Question]:
		if self.current_question_index < len(self.questions):
			return self.questions[self.current_question_index]
		return None

	@property
	def has_more_questions(self) -> bool:
		return self.current_question_index < len(self.questions) - 1


class SessionMachine(BaseModel):
	model_config = ConfigDict(frozen=True)

	phase: SessionPhase = SessionPhase.IDLE
	part: Optional[int] = None
	session: Optional[TestSession] = None
	response_buffer: str = ""
	preparation_remaining_seconds: int = 0
	examiner_message: str = ""
	error: Optional[str] = None
	evaluation: Optional[Evaluation] = None


# ============================================================================
# EVENTS
# ============================================================================

class _Event(BaseModel):
	model_config = ConfigDict(frozen=True)


class StartPart(_Event):
	part: Literal[1, 2, 3]


class QuestionsReady(_Event):
	questions: Tuple[Question, ...]


class GenerationFailed(_Event):
	message: str


class IntroElapsed(_Event):
	pass


class PromptElapsed(_Event):
	pass


class Tick(_Event):
	pass


class TranscriptSegment(_Event):
	text: str
	is_final: bool = True


class ResponseEdited(_Event):
	text: str


class Submit(_Event):
	pass


class Advance(_Event):
	pass


class EvaluationReady(_Event):
	evaluation: Evaluation


class EvaluationFailed(_Event):
	message: str


class Reset(_Event):
	pass


Event = Union[
	StartPart, QuestionsReady, GenerationFailed, IntroElapsed, PromptElapsed, Tick,
	TranscriptSegment, ResponseEdited, Submit, Advance, EvaluationReady, EvaluationFailed, Reset,
]


# ============================================================================
# TRANSITIONS
# ============================================================================

def _update(machine: SessionMachine, **changes) -> SessionMachine:
	return machine.model_copy(update=changes)


def _update_session(machine: SessionMachine, **changes) -> TestSession:
	assert machine.session is not None
	return machine.session.model_copy(update=changes)


def _start(machine: SessionMachine, event: StartPart) -> SessionMachine:
	return SessionMachine(
		phase=SessionPhase.GENERATING,
		part=event.part,
		examiner_message=f"Welcome to IELTS Speaking Part {event.part}. I'm generating your questions now...",
	)


def _generation_failed(machine: SessionMachine, event: GenerationFailed) -> SessionMachine:
	return SessionMachine(error=event.message, examiner_message=GENERATION_ERROR)


def _questions_ready(machine: SessionMachine, event: QuestionsReady) -> SessionMachine:
	if not event.questions:
		return _generation_failed(machine, GenerationFailed(message="No questions were generated"))
	session = TestSession(
		part=machine.part,
		questions=event.questions,
		time_remaining_seconds=event.questions[0].time_limit_seconds,
	)
	return _update(
		machine,
		phase=SessionPhase.PART_INTRO,
		session=session,
		examiner_message=PART_PLANS[session.part].introduction,
	)


def _present_question(machine: SessionMachine) -> SessionMachine:
	question = machine.session.current_question
	plan = PART_PLANS[machine.session.part]
	if plan.preparation_seconds:
		return _update(
			machine,
			phase=SessionPhase.PREPARATION,
			preparation_remaining_seconds=plan.preparation_seconds,
			examiner_message=f"Here's your topic card: {question.text}. You have 1 minute to prepare.",
		)
	return _update(machine, phase=SessionPhase.QUESTION_PROMPT, examiner_message=question.text)


def _intro_elapsed(machine: SessionMachine, event: IntroElapsed) -> SessionMachine:
	return _present_question(machine)


def _begin_listening(machine: SessionMachine, **changes) -> SessionMachine:
	return _update(machine, phase=SessionPhase.LISTENING, response_buffer="", **changes)


def _prompt_elapsed(machine: SessionMachine, event: PromptElapsed) -> SessionMachine:
	return _begin_listening(machine)


def _preparation_tick(machine: SessionMachine, event: Tick) -> SessionMachine:
	remaining = max(0, machine.preparation_remaining_seconds - 1)
	if remaining > 0:
		return _update(machine, preparation_remaining_seconds=remaining)
	return _begin_listening(machine, preparation_remaining_seconds=0, examiner_message=PREPARATION_OVER)


def _submit_response(machine: SessionMachine) -> SessionMachine:
	answer = machine.response_buffer.strip()
	if not answer:
		return machine
	session = machine.session
	responses = session.responses + (answer,)
	if session.has_more_questions:
		return _update(
			machine,
			phase=SessionPhase.SUBMITTED,
			session=_update_session(machine, responses=responses),
			examiner_message=ACKNOWLEDGEMENT,
		)
	return _update(
		machine,
		phase=SessionPhase.EVALUATING,
		session=_update_session(machine, responses=responses, is_active=False),
		examiner_message=EVALUATING_MESSAGE,
	)


def _listening_tick(machine: SessionMachine, event: Tick) -> SessionMachine:
	remaining = max(0, machine.session.time_remaining_seconds - 1)
	ticked = _update(machine, session=_update_session(machine, time_remaining_seconds=remaining))
	if remaining > 0:
		return ticked
	if ticked.response_buffer.strip():
		return _submit_response(ticked)
	return _update(ticked, phase=SessionPhase.STALLED, examiner_message=TIME_UP)


def _transcript(machine: SessionMachine, event: TranscriptSegment) -> SessionMachine:
	if not event.is_final or not event.text.strip():
		return machine
	return _update(machine, response_buffer=machine.response_buffer + event.text + " ")


def _edited(machine: SessionMachine, event: ResponseEdited) -> SessionMachine:
	return _update(machine, response_buffer=event.text)


def _submit(machine: SessionMachine, event: Submit) -> SessionMachine:
	return _submit_response(machine)


def _advance(machine: SessionMachine, event: Advance) -> SessionMachine:
	next_index = machine.session.current_question_index + 1
	next_question = machine.session.questions[next_index]
	advanced = _update(
		machine,
		session=_update_session(
			machine,
			current_question_index=next_index,
			time_remaining_seconds=next_question.time_limit_seconds,
		),
		response_buffer="",
	)
	return _present_question(advanced)


def _evaluation_ready(machine: SessionMachine, event: EvaluationReady) -> SessionMachine:
	band = event.evaluation.overall_band.display
	return _update(
		machine,
		phase=SessionPhase.COMPLETE,
		evaluation=event.evaluation,
		examiner_message=(
			f"Your evaluation is complete. You achieved an overall band score of {band}. "
			"Please review your detailed feedback below."
		),
	)


def _evaluation_failed(machine: SessionMachine, event: EvaluationFailed) -> SessionMachine:
	return SessionMachine(error=event.message, examiner_message=EVALUATION_ERROR)


_Handler = Callable[[SessionMachine, _Event], SessionMachine]

_HANDLERS: Dict[Tuple[SessionPhase, Type[_Event]], _Handler] = {
	(SessionPhase.IDLE, StartPart): _start,
	(SessionPhase.GENERATING, QuestionsReady): _questions_ready,
	(SessionPhase.GENERATING, GenerationFailed): _generation_failed,
	(SessionPhase.PART_INTRO, IntroElapsed): _intro_elapsed,
	(SessionPhase.QUESTION_PROMPT, PromptElapsed): _prompt_elapsed,
	(SessionPhase.PREPARATION, Tick): _preparation_tick,
	(SessionPhase.LISTENING, Tick): _listening_tick,
	(SessionPhase.LISTENING, TranscriptSegment): _transcript,
	(SessionPhase.LISTENING, ResponseEdited): _edited,
	(SessionPhase.STALLED, ResponseEdited): _edited,
	(SessionPhase.LISTENING, Submit): _submit,
	(SessionPhase.STALLED, Submit): _submit,
	(SessionPhase.SUBMITTED, Advance): _advance,
	(SessionPhase.EVALUATING, EvaluationReady): _evaluation_ready,
	(SessionPhase.EVALUATING, EvaluationFailed): _evaluation_failed,
}


def transition(machine: SessionMachine, event: Event) -> SessionMachine:
	if isinstance(event, Reset):
		return SessionMachine()
	handler = _HANDLERS.get((machine.phase, type(event)))
	if handler is None:
		return machine
	return handler(machine, event)


def combined_answers(session: TestSession) -> Tuple[str, str]:
	"""All responses and all question texts, each space-joined in question order."""
	return " ".join(session.responses), " ".join(q.text for q in session.questions)


# ============================================================================
# COLLABORATORS
# ============================================================================

class CaptureUnavailableError(RuntimeError):
	pass


class SpeechCapture(Protocol):
	def start(self, on_segment: Callable[[str, bool], None]) -> None: ...

	def stop(self) -> None: ...


class SpeakingExaminer(Protocol):
	async def generate_question(self, part: int) -> str: ...

	async def evaluate(self, response: str, question: str, part: int) -> Evaluation: ...


class PushedTranscriptCapture:
	"""Speech capture fed from outside: the browser's recogniser, or server-side transcription.

	Segments pushed while capture is closed are dropped.
	"""

	def __init__(self) -> None:
		self._on_segment: Optional[Callable[[str, bool], None]] = None

	@property
	def is_open(self) -> bool:
		return self._on_segment is not None

	def start(self, on_segment: Callable[[str, bool], None]) -> None:
		self._on_segment = on_segment

	def stop(self) -> None:
		self._on_segment = None

	def push(self, text: str, is_final: bool = True) -> bool:
		if not self.is_open:
			return False
		self._on_segment(text, is_final)
		return True


# ============================================================================
# CONTROLLER
# ============================================================================

class SessionBusyError(RuntimeError):
	pass


class SessionSnapshot(BaseModel):
	phase: SessionPhase
	part: Optional[int] = None
	current_question_index: int = 0
	question_count: int = 0
	current_question: Optional[str] = None
	time_remaining_seconds: int = 0
	preparation_remaining_seconds: int = 0
	response_buffer: str = ""
	responses: List[str] = Field(default_factory=list)
	is_active: bool = False
	capturing: bool = False
	examiner_message: str = ""
	error: Optional[str] = None
	evaluation: Optional[Evaluation] = None


Sleep = Callable[[float], Awaitable[None]]


class SpeakingSessionController:
	def __init__(
		self,
		examiner: SpeakingExaminer,
		capture: Optional[SpeechCapture] = None,
		*,
		sleep: Sleep = asyncio.sleep,
	) -> None:
		self.machine = SessionMachine()
		self.capture = capture if capture is not None else PushedTranscriptCapture()
		self.last_activity = time.monotonic()
		self._examiner = examiner
		self._sleep = sleep
		self._capturing = False
		self._countdown: Optional[asyncio.Task] = None
		self._delays: Set[asyncio.Task] = set()
		self._request: Optional[asyncio.Task] = None

	@property
	def phase(self) -> SessionPhase:
		return self.machine.phase

	@property
	def capturing(self) -> bool:
		return self._capturing

	async def start_part(self, part: int) -> SessionMachine:
		"""Start a part and wait until its questions are generated (or generation failed)."""
		if self.machine.phase is not SessionPhase.IDLE:
			raise SessionBusyError(f"A speaking session is already running ({self.machine.phase.value})")
		self.dispatch(StartPart(part=part))
		await self.wait_for_request()
		return self.machine

	async def wait_for_request(self) -> None:
		task = self._request
		if task is not None and not task.done():
			await asyncio.wait({task})

	def submit(self) -> SessionMachine:
		# Close the transcript stream before the buffer is taken
		if self.machine.phase is SessionPhase.LISTENING and self.machine.response_buffer.strip():
			self._release_capture()
		return self.dispatch(Submit())

	def edit_response(self, text: str) -> SessionMachine:
		return self.dispatch(ResponseEdited(text=text))

	def reset(self) -> SessionMachine:
		return self.dispatch(Reset())

	async def aclose(self) -> None:
		pending = [t for t in (self._countdown, self._request, *self._delays) if t is not None]
		self.reset()
		if pending:
			await asyncio.gather(*pending, return_exceptions=True)

	def dispatch(self, event: Event) -> SessionMachine:
		previous = self.machine
		self.machine = transition(previous, event)
		self.last_activity = time.monotonic()
		if self.machine.examiner_message and self.machine.examiner_message != previous.examiner_message:
			logger.info("Examiner: %s", self.machine.examiner_message)
		if self.machine.phase is not previous.phase or isinstance(event, Reset):
			logger.debug("Speaking session %s -> %s", previous.phase.value, self.machine.phase.value)
			self._on_phase_change(previous.phase)
		return self.machine

	def snapshot(self) -> SessionSnapshot:
		machine = self.machine
		session = machine.session
		question = session.current_question if session else None
		return SessionSnapshot(
			phase=machine.phase,
			part=machine.part,
			current_question_index=session.current_question_index if session else 0,
			question_count=len(session.questions) if session else 0,
			current_question=question.text if question else None,
			time_remaining_seconds=session.time_remaining_seconds if session else 0,
			preparation_remaining_seconds=machine.preparation_remaining_seconds,
			response_buffer=machine.response_buffer,
			responses=list(session.responses) if session else [],
			is_active=session.is_active if session else False,
			capturing=self._capturing,
			examiner_message=machine.examiner_message,
			error=machine.error,
			evaluation=machine.evaluation,
		)

	# ---- phase effects ----

	def _on_phase_change(self, old: SessionPhase) -> None:
		if old is SessionPhase.LISTENING:
			self._release_capture()
		if old in (SessionPhase.PREPARATION, SessionPhase.LISTENING):
			self._cancel_countdown()

		machine = self.machine
		phase = machine.phase
		if phase is SessionPhase.IDLE:
			self._cancel_all()
			self._release_capture()
		elif phase is SessionPhase.GENERATING:
			self._request = asyncio.create_task(self._generate_questions(machine.part))
		elif phase is SessionPhase.PART_INTRO:
			self._after(intro_delay(machine.examiner_message), IntroElapsed())
		elif phase is SessionPhase.QUESTION_PROMPT:
			self._after(prompt_delay(machine.examiner_message), PromptElapsed())
		elif phase is SessionPhase.PREPARATION:
			self._start_countdown()
		elif phase is SessionPhase.LISTENING:
			self._acquire_capture()
			self._start_countdown()
		elif phase is SessionPhase.SUBMITTED:
			self._after(ADVANCE_DELAY_SECONDS, Advance())
		elif phase is SessionPhase.EVALUATING:
			self._request = asyncio.create_task(self._evaluate(machine.session))

	# ---- speech capture ----

	def _on_segment(self, text: str, is_final: bool) -> None:
		self.dispatch(TranscriptSegment(text=text, is_final=is_final))

	def _acquire_capture(self) -> None:
		if self._capturing:
			return
		try:
			self.capture.start(self._on_segment)
		except CaptureUnavailableError as err:
			logger.warning("Speech capture unavailable, falling back to typed responses: %s", err)
			return
		self._capturing = True

	def _release_capture(self) -> None:
		if not self._capturing:
			return
		self._capturing = False
		self.capture.stop()

	# ---- timers ----

	def _start_countdown(self) -> None:
		self._cancel_countdown()
		self._countdown = asyncio.create_task(self._run_countdown())

	async def _run_countdown(self) -> None:
		while True:
			await self._sleep(COUNTDOWN_STEP_SECONDS)
			self.dispatch(Tick())
			if self._countdown is not asyncio.current_task():
				return

	def _cancel_countdown(self) -> None:
		task, self._countdown = self._countdown, None
		_cancel(task)

	def _after(self, delay: float, event: Event) -> None:
		task = asyncio.create_task(self._fire_after(delay, event))
		self._delays.add(task)
		task.add_done_callback(self._delays.discard)

	async def _fire_after(self, delay: float, event: Event) -> None:
		await self._sleep(delay)
		self.dispatch(event)

	def _cancel_all(self) -> None:
		self._cancel_countdown()
		for task in list(self._delays):
			_cancel(task)
		self._delays.clear()
		request, self._request = self._request, None
		_cancel(request)

	# ---- model requests ----

	async def _generate_questions(self, part: int) -> None:
		plan = PART_PLANS[part]
		questions: List[Question] = []
		try:
			for _ in range(plan.question_count):
				text = await self._examiner.generate_question(part)
				questions.append(Question(text=text, time_limit_seconds=plan.time_limit_seconds))
		except Exception as err:  # any failure discards the partial set
			logger.exception("Question generation for Part %s failed", part)
			self.dispatch(GenerationFailed(message=str(err) or err.__class__.__name__))
			return
		self.dispatch(QuestionsReady(questions=tuple(questions)))

	async def _evaluate(self, session: TestSession) -> None:
		response, question = combined_answers(session)
		try:
			evaluation = await self._examiner.evaluate(response, question, session.part)
		except Exception as err:  # no retry; the error is surfaced on the machine
			logger.exception("Speaking evaluation for Part %s failed", session.part)
			self.dispatch(EvaluationFailed(message=str(err) or err.__class__.__name__))
			return
		self.dispatch(EvaluationReady(evaluation=evaluation))


def _cancel(task: Optional[asyncio.Task]) -> None:
	if task is not None and task is not asyncio.current_task() and not task.done():
		task.cancel()
