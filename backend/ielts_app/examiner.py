"""Examiner operations built on the two provider calls (text and image generation)."""

from __future__ import annotations

import logging
from typing import Callable, Optional

from pydantic import AliasChoices, BaseModel, Field

from .ai_client import AIClient, ProviderError
from .prompts import (
	SPEAKING_QUESTION_PROMPTS,
	TASK1_CHART_SYSTEM,
	TASK1_CHART_USER,
	TASK1_PROMPT_SYSTEM,
	TASK2_PROMPT_SYSTEM,
	TASK2_PROMPT_USER,
	build_task1_chart_image_prompt,
	build_task1_prompt_request,
	speaking_system_prompt,
	speaking_user_prompt,
	writing_system_prompt,
	writing_user_prompt,
)
from .scoring import Evaluation, SPEAKING_LAYOUT, WRITING_TASK1_LAYOUT, WRITING_TASK2_LAYOUT, parse_evaluation
from .text_utils import clean_markdown_formatting

logger = logging.getLogger(__name__)

QUESTION_MAX_TOKENS = 200
TASK1_MAX_TOKENS = 200
TASK2_MAX_TOKENS = 250
EVALUATION_MAX_TOKENS = 800

ClientFactory = Callable[[], AIClient]


class Task1Prompt(BaseModel):
	prompt: str
	# Sent as imageUrl on the wire
	image_url: str = Field(serialization_alias="imageUrl", validation_alias=AliasChoices("imageUrl", "image_url"))


async def generate_speaking_question(client: AIClient, part: int) -> str:
	if part not in SPEAKING_QUESTION_PROMPTS:
		raise ValueError("part must be 1, 2 or 3")
	system_prompt, user_prompt = SPEAKING_QUESTION_PROMPTS[part]
	text = await client.generate_text(system_prompt, user_prompt, QUESTION_MAX_TOKENS)
	return clean_markdown_formatting(text)


async def evaluate_speaking_response(client: AIClient, response: str, question: str, part: int) -> Evaluation:
	raw = await client.generate_text(
		speaking_system_prompt(part),
		speaking_user_prompt(part, response, question),
		EVALUATION_MAX_TOKENS,
	)
	return parse_evaluation(raw, SPEAKING_LAYOUT)


async def generate_writing_task1_prompt(client: AIClient) -> Task1Prompt:
	"""Chart description first, then the image and the task instructions derived from it."""
	chart_data = await client.generate_text(TASK1_CHART_SYSTEM, TASK1_CHART_USER, TASK1_MAX_TOKENS)
	if not chart_data.strip():
		raise ProviderError("Failed to generate chart data - no content returned from provider")
	logger.info("Generating Task 1 chart image")
	image_url = await client.generate_image(build_task1_chart_image_prompt(chart_data))
	prompt = await client.generate_text(TASK1_PROMPT_SYSTEM, build_task1_prompt_request(chart_data), TASK1_MAX_TOKENS)
	if not prompt.strip():
		raise ProviderError("Failed to generate prompt - no content returned from provider")
	return Task1Prompt(prompt=clean_markdown_formatting(prompt), image_url=image_url)


async def evaluate_writing_task1(client: AIClient, response: str, prompt: str) -> Evaluation:
	raw = await client.generate_text(writing_system_prompt(1), writing_user_prompt(1, response, prompt), EVALUATION_MAX_TOKENS)
	return parse_evaluation(raw, WRITING_TASK1_LAYOUT)


async def generate_writing_task2_prompt(client: AIClient) -> str:
	text = await client.generate_text(TASK2_PROMPT_SYSTEM, TASK2_PROMPT_USER, TASK2_MAX_TOKENS)
	return clean_markdown_formatting(text)


async def evaluate_writing_task2(client: AIClient, response: str, prompt: str) -> Evaluation:
	raw = await client.generate_text(writing_system_prompt(2), writing_user_prompt(2, response, prompt), EVALUATION_MAX_TOKENS)
	return parse_evaluation(raw, WRITING_TASK2_LAYOUT)


class ModelSpeakingExaminer:
	"""Question source and evaluator for live speaking sessions.

	A fresh provider client is opened for every request and closed right after,
	so a session that sits idle holds no connections.
	"""

	def __init__(self, client_factory: Optional[ClientFactory] = None) -> None:
		self._client_factory = client_factory or AIClient

	async def generate_question(self, part: int) -> str:
		client = self._client_factory()
		try:
			question = await generate_speaking_question(client, part)
		finally:
			await client.aclose()
		if not question:
			raise ProviderError("Provider returned an empty question")
		return question

	async def evaluate(self, response: str, question: str, part: int) -> Evaluation:
		client = self._client_factory()
		try:
			return await evaluate_speaking_response(client, response, question, part)
		finally:
			await client.aclose()
