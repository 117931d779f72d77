from __future__ import annotations

import asyncio
import base64
import binascii
import logging

from google.cloud import speech_v1p1beta1 as speech
from google.api_core.exceptions import GoogleAPIError

from .settings import settings

logger = logging.getLogger(__name__)


class TranscriptionError(RuntimeError):
	pass


def decode_audio(audio_base64: str) -> bytes:
	try:
		audio_content = base64.b64decode(audio_base64, validate=True)
	except (binascii.Error, ValueError) as err:
		raise ValueError("audio_base64 is not valid base64") from err
	if not audio_content:
		raise ValueError("Empty audio payload received")
	return audio_content


def _recognize(audio_content: bytes) -> str:
	try:
		client = speech.SpeechClient()
	except Exception as e:
		raise TranscriptionError(f"Speech-to-Text unavailable: {e}") from e
	audio = speech.RecognitionAudio(content=audio_content)
	config = speech.RecognitionConfig(
		language_code=settings.speech_language_code,
		model="default",
		enable_automatic_punctuation=True,
		use_enhanced=True,
	)
	try:
		response = client.recognize(config=config, audio=audio)
	except GoogleAPIError as e:
		raise TranscriptionError(f"Speech-to-Text API error: {e}") from e
	# Each result covers a consecutive stretch of audio; keep the best alternative of each
	parts = [r.alternatives[0].transcript.strip() for r in response.results if r.alternatives]
	return " ".join(p for p in parts if p)


async def transcribe_audio(audio_base64: str) -> str:
	"""Transcribe one recorded chunk. The audio is discarded afterwards."""
	audio_content = decode_audio(audio_base64)
	# The Google client is blocking; keep the event loop (and session timers) running
	transcript = await asyncio.to_thread(_recognize, audio_content)
	logger.info("Transcribed %d bytes of audio into %d characters", len(audio_content), len(transcript))
	return transcript
