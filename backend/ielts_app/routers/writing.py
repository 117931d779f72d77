from __future__ import annotations
import logging
from io import BytesIO
from typing import Awaitable, Callable, Optional
from fastapi import APIRouter, Depends, HTTPException, UploadFile, File, Form
from pydantic import BaseModel
from ..ai_client import AIClient, ProviderError, get_client_factory
from ..examiner import (
	Task1Prompt,
	evaluate_writing_task1,
	evaluate_writing_task2,
	generate_writing_task1_prompt,
	generate_writing_task2_prompt,
)
from ..scoring import Evaluation
from .auth import get_current_user, User

try:
	import pytesseract  # type: ignore
	from PIL import Image  # type: ignore
except ImportError:
	# Defer import errors until the OCR endpoint is actually called
	pytesseract = None  # type: ignore
	Image = None  # type: ignore


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/writing", tags=["writing"])

# Safety clamp to avoid extremely long prompts
MAX_RESPONSE_CHARS = 8000

Evaluator = Callable[[AIClient, str, str], Awaitable[Evaluation]]


class Task2PromptResponse(BaseModel):
	prompt: str


class EvaluateRequest(BaseModel):
	response: Optional[str] = None
	prompt: Optional[str] = None


async def _evaluate(task: int, evaluator: Evaluator, response: Optional[str], prompt: Optional[str], client_factory) -> Evaluation:
	if not response or not prompt:
		raise HTTPException(status_code=400, detail="Response and prompt are required")
	logger.info("Evaluating Task %s response", task)
	try:
		client = client_factory()
		try:
			evaluation = await evaluator(client, response[:MAX_RESPONSE_CHARS], prompt)
		finally:
			await client.aclose()
	except ProviderError as e:
		logger.exception("Error evaluating Task %s response", task)
		raise HTTPException(status_code=500, detail=f"Failed to evaluate response: {e}")
	logger.info("Task %s evaluation complete", task)
	return evaluation


async def _ocr(file: UploadFile) -> str:
	if pytesseract is None or Image is None:
		raise HTTPException(
			status_code=500,
			detail="OCR dependencies not installed. Install system package 'tesseract-ocr' and the 'ocr' extra (pytesseract, Pillow)",
		)
	content = await file.read()
	try:
		img = Image.open(BytesIO(content))
		text = pytesseract.image_to_string(img)
	except Exception as e:
		raise HTTPException(status_code=400, detail=f"Failed to OCR image: {e}")
	return text.strip()


@router.post("/task1/generate", response_model=Task1Prompt)
async def generate_task1(
	user: User = Depends(get_current_user),
	client_factory: Callable[[], AIClient] = Depends(get_client_factory),
):
	logger.info("Starting Task 1 prompt generation")
	try:
		client = client_factory()
		try:
			result = await generate_writing_task1_prompt(client)
		finally:
			await client.aclose()
	except ProviderError as e:
		logger.exception("Error generating Task 1 prompt")
		raise HTTPException(status_code=500, detail=f"Failed to generate prompt: {e}")
	logger.info("Generated Task 1 with image")
	return result


@router.post("/task1/evaluate", response_model=Evaluation)
async def evaluate_task1(
	req: EvaluateRequest,
	user: User = Depends(get_current_user),
	client_factory: Callable[[], AIClient] = Depends(get_client_factory),
):
	return await _evaluate(1, evaluate_writing_task1, req.response, req.prompt, client_factory)


@router.post("/task2/generate", response_model=Task2PromptResponse)
async def generate_task2(
	user: User = Depends(get_current_user),
	client_factory: Callable[[], AIClient] = Depends(get_client_factory),
):
	logger.info("Starting Task 2 prompt generation")
	try:
		client = client_factory()
		try:
			prompt = await generate_writing_task2_prompt(client)
		finally:
			await client.aclose()
	except ProviderError as e:
		logger.exception("Error generating Task 2 prompt")
		raise HTTPException(status_code=500, detail=f"Failed to generate prompt: {e}")
	return Task2PromptResponse(prompt=prompt)


@router.post("/task2/evaluate", response_model=Evaluation)
async def evaluate_task2(
	req: EvaluateRequest,
	user: User = Depends(get_current_user),
	client_factory: Callable[[], AIClient] = Depends(get_client_factory),
):
	return await _evaluate(2, evaluate_writing_task2, req.response, req.prompt, client_factory)


@router.post("/task1/evaluate/image", response_model=Evaluation)
async def evaluate_task1_image(
	prompt: str = Form(""),
	file: UploadFile = File(...),
	user: User = Depends(get_current_user),
	client_factory: Callable[[], AIClient] = Depends(get_client_factory),
):
	text = await _ocr(file)
	return await _evaluate(1, evaluate_writing_task1, text, prompt, client_factory)


@router.post("/task2/evaluate/image", response_model=Evaluation)
async def evaluate_task2_image(
	prompt: str = Form(""),
	file: UploadFile = File(...),
	user: User = Depends(get_current_user),
	client_factory: Callable[[], AIClient] = Depends(get_client_factory),
):
	text = await _ocr(file)
	return await _evaluate(2, evaluate_writing_task2, text, prompt, client_factory)
