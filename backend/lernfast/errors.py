from __future__ import annotations
import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class GenerationError(RuntimeError):
	"""AI output was missing or invalid, or data a generation step needs is absent."""


class VoiceDialogError(RuntimeError):
	CODES = ("WHISPER_FAILED", "LLM_FAILED", "TTS_FAILED", "ASSESSMENT_FAILED")

	def __init__(self, message: str, code: str) -> None:
		if code not in self.CODES:
			raise ValueError(f"unknown voice dialog error code: {code}")
		super().__init__(message)
		self.code = code


async def with_retry(
	operation: Callable[[], Awaitable[T]],
	max_retries: int = 2,
	delay_seconds: float = 1.0,
) -> T:
	"""Run ``operation`` up to ``max_retries + 1`` times with exponential backoff."""
	last_error: Exception = RuntimeError("operation was not attempted")
	for attempt in range(max_retries + 1):
		try:
			return await operation()
		except Exception as err:
			last_error = err
			logger.warning("Attempt %d failed: %s", attempt + 1, err)
			if attempt < max_retries:
				await asyncio.sleep(delay_seconds * (2 ** attempt))
	raise last_error
