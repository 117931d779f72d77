"""
Score Extraction
================

Turns the examiner model's labelled-line output into a typed ``Evaluation``.

The model is asked to answer in this shape::

	TASK_RESPONSE: 6.5 | feedback that may
	continue over several lines
	COHERENCE_COHESION: 7 | ...
	OVERALL_BAND: 6.5
	DETAILED_FEEDBACK: free text up to the end

Nothing guarantees the model follows it, so parsing never fails: a missing
criterion becomes an unavailable score with placeholder feedback, a missing
overall band becomes unavailable, and missing detailed feedback falls back to
the whole raw text.

The same routine serves writing and speaking. Callers pass an
``EvaluationLayout`` listing the criteria labels in the order the model was
told to emit them.
"""

from __future__ import annotations

import re
from typing import Annotated, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, computed_field


NOT_AVAILABLE = "N/A"
NO_FEEDBACK = "No feedback available"
OVERALL_LABEL = "OVERALL_BAND"
DETAILED_LABEL = "DETAILED_FEEDBACK"

_NUMBER = r"(\d+(?:\.\d*)?)"


# ============================================================================
# SCORES
# ============================================================================

class NumericScore(BaseModel):
	model_config = ConfigDict(frozen=True)

	kind: Literal["numeric"] = "numeric"
	value: float

	@computed_field  # type: ignore[misc]
	@property
	def display(self) -> str:
		return f"{self.value:g}"


class UnavailableScore(BaseModel):
	"""The "N/A" sentinel: the model did not provide this score."""
	model_config = ConfigDict(frozen=True)

	kind: Literal["unavailable"] = "unavailable"

	@computed_field  # type: ignore[misc]
	@property
	def display(self) -> str:
		return NOT_AVAILABLE


Score = Annotated[Union[NumericScore, UnavailableScore], Field(discriminator="kind")]

UNAVAILABLE = UnavailableScore()


# ============================================================================
# LAYOUTS
# ============================================================================

class CriterionSpec(BaseModel):
	model_config = ConfigDict(frozen=True)

	key: str
	label: str
	title: str


class EvaluationLayout(BaseModel):
	"""Ordered criteria the examiner is asked to score."""
	model_config = ConfigDict(frozen=True)

	criteria: Tuple[CriterionSpec, ...]

	def labels(self) -> List[str]:
		return [c.label for c in self.criteria] + [OVERALL_LABEL, DETAILED_LABEL]

	def format_instructions(self) -> str:
		lines = ["Format your response EXACTLY as:"]
		lines += [f"{c.label}: [score] | [specific feedback]" for c in self.criteria]
		lines.append(f"{OVERALL_LABEL}: [score]")
		lines.append(f"{DETAILED_LABEL}: [comprehensive feedback with specific examples and improvement suggestions]")
		return "\n".join(lines)


_COHERENCE = CriterionSpec(key="coherence_cohesion", label="COHERENCE_COHESION", title="Coherence and Cohesion")
_LEXICAL = CriterionSpec(key="lexical_resource", label="LEXICAL_RESOURCE", title="Lexical Resource")
_GRAMMAR = CriterionSpec(key="grammatical_range", label="GRAMMATICAL_RANGE", title="Grammatical Range and Accuracy")

WRITING_TASK1_LAYOUT = EvaluationLayout(criteria=(
	CriterionSpec(key="task_achievement", label="TASK_ACHIEVEMENT", title="Task Achievement"),
	_COHERENCE,
	_LEXICAL,
	_GRAMMAR,
))

WRITING_TASK2_LAYOUT = EvaluationLayout(criteria=(
	CriterionSpec(key="task_response", label="TASK_RESPONSE", title="Task Response"),
	_COHERENCE,
	_LEXICAL,
	_GRAMMAR,
))

SPEAKING_LAYOUT = EvaluationLayout(criteria=(
	CriterionSpec(key="fluency_coherence", label="FLUENCY_COHERENCE", title="Fluency and Coherence"),
	_LEXICAL,
	_GRAMMAR,
	CriterionSpec(key="pronunciation", label="PRONUNCIATION", title="Pronunciation"),
))


# ============================================================================
# EVALUATION RECORD
# ============================================================================

class CriterionResult(BaseModel):
	model_config = ConfigDict(frozen=True)

	title: str
	score: Score
	feedback: str


class Evaluation(BaseModel):
	model_config = ConfigDict(frozen=True)

	overall_band: Score
	criteria: Dict[str, CriterionResult]
	detailed_feedback: str


# ============================================================================
# PARSING
# ============================================================================

def _find_next_label(text: str, following: List[str], start: int) -> int:
	"""Position of the first label from ``following`` (in order) present after ``start``."""
	for label in following:
		pos = text.find(f"{label}:", start)
		if pos != -1:
			return pos
	return len(text)


def _extract_criterion(text: str, label: str, following: List[str]) -> Tuple[Score, str]:
	match = re.search(rf"{re.escape(label)}:[ \t]*{_NUMBER}[ \t]*\|", text)
	if not match:
		return UNAVAILABLE, NO_FEEDBACK
	end = _find_next_label(text, following, match.end())
	return NumericScore(value=float(match.group(1))), text[match.end():end].strip()


def parse_evaluation(text: Optional[str], layout: EvaluationLayout) -> Evaluation:
	raw = text or ""
	labels = layout.labels()
	criteria: Dict[str, CriterionResult] = {}
	for i, spec in enumerate(layout.criteria):
		score, feedback = _extract_criterion(raw, spec.label, labels[i + 1:])
		criteria[spec.key] = CriterionResult(title=spec.title, score=score, feedback=feedback)

	overall_match = re.search(rf"{OVERALL_LABEL}:[ \t]*{_NUMBER}", raw)
	overall: Score = NumericScore(value=float(overall_match.group(1))) if overall_match else UNAVAILABLE

	detailed_match = re.search(rf"{DETAILED_LABEL}:(.*)", raw, re.DOTALL)
	detailed = detailed_match.group(1).strip() if detailed_match else raw

	return Evaluation(overall_band=overall, criteria=criteria, detailed_feedback=detailed)


def format_evaluation(evaluation: Evaluation, layout: EvaluationLayout) -> str:
	"""Render an evaluation in the labelled-line format (unavailable scores are left out)."""
	lines: List[str] = []
	for spec in layout.criteria:
		result = evaluation.criteria.get(spec.key)
		if result is None or isinstance(result.score, UnavailableScore):
			continue
		lines.append(f"{spec.label}: {result.score.display} | {result.feedback}")
	if isinstance(evaluation.overall_band, NumericScore):
		lines.append(f"{OVERALL_LABEL}: {evaluation.overall_band.display}")
	lines.append(f"{DETAILED_LABEL}: {evaluation.detailed_feedback}")
	return "\n".join(lines)


def unavailable_evaluation(layout: EvaluationLayout, message: str) -> Evaluation:
	"""Sentinel-filled evaluation so the display layer always has something to render."""
	criteria = {
		spec.key: CriterionResult(title=spec.title, score=UNAVAILABLE, feedback=message if i == 0 else "")
		for i, spec in enumerate(layout.criteria)
	}
	return Evaluation(overall_band=UNAVAILABLE, criteria=criteria, detailed_feedback=message)
