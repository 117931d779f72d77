from __future__ import annotations
import re

_MARKDOWN_PATTERNS = [
	(re.compile(r"\*\*(.*?)\*\*"), r"\1"),  # bold
	(re.compile(r"\*(.*?)\*"), r"\1"),  # italic
	(re.compile(r"__(.*?)__"), r"\1"),  # underline
	(re.compile(r"_(.*?)_"), r"\1"),  # italic underscore
	(re.compile(r"`(.*?)`"), r"\1"),  # inline code
	(re.compile(r"#{1,6}\s"), ""),  # headers
]


def clean_markdown_formatting(text: str) -> str:
	"""Strip lightweight markdown left by the model before showing text to the user.

	Do not run this over evaluation output before parsing it: labels such as
	``TASK_ACHIEVEMENT`` contain underscores.
	"""
	s = text or ""
	for pattern, replacement in _MARKDOWN_PATTERNS:
		s = pattern.sub(replacement, s)
	return s.strip()
