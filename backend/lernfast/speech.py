from __future__ import annotations
import base64
import logging
import re
from typing import List, Optional

from .openai_client import OpenAIClient

logger = logging.getLogger(__name__)

MAX_TTS_CHARS = 4096

VOICE_MAP = {
	"de": "onyx",
	"en": "nova",
	"es": "alloy",
	"fr": "fable",
	"it": "shimmer",
}
DEFAULT_VOICE = "nova"


def sanitize_text(text: str) -> str:
	"""Strip HTML tags, code fences and backticks, collapse whitespace."""
	if not text:
		return ""
	no_html = re.sub(r"<[^>]*>", "", text)
	no_fences = re.sub(r"```[\s\S]*?```", "", no_html).replace("`", "")
	return re.sub(r"\s+", " ", no_fences).strip()


def select_voice(language: str = "de", custom_voice: Optional[str] = None) -> str:
	return custom_voice or VOICE_MAP.get(language) or DEFAULT_VOICE


async def generate_speech_audio(
	client: OpenAIClient,
	text: str,
	language: str = "de",
	custom_voice: Optional[str] = None,
) -> str:
	"""Synthesize ``text`` and return it as a ``data:audio/mp3;base64,...`` URL."""
	if not text or not text.strip():
		raise ValueError("Text darf nicht leer sein.")
	if len(text) > MAX_TTS_CHARS:
		raise ValueError("Text ist zu lang (max. 4096 Zeichen). Bitte kürze den Text.")

	voice = select_voice(language, custom_voice)
	input_text = sanitize_text(text)[:MAX_TTS_CHARS]
	logger.info(
		"[TTS] Generating speech - language: %s, voice: %s%s, original length: %d, sanitized length: %d",
		language,
		voice,
		" (custom)" if custom_voice else "",
		len(text),
		len(input_text),
	)
	audio = await client.speech(input_text, voice=voice)
	encoded = base64.b64encode(audio).decode("ascii")
	logger.info("[TTS] Audio generated successfully. Base64 size: %d bytes", len(encoded))
	return f"data:audio/mp3;base64,{encoded}"


def chapter_audio_text(narrative: str, key_learnings: List[str]) -> str:
	learnings = "\n".join(f"{i + 1}. {learning}" for i, learning in enumerate(key_learnings))
	return f"{narrative}\n\nDas Wichtigste:\n{learnings}"


async def generate_chapter_audio(
	client: OpenAIClient,
	narrative: str,
	key_learnings: List[str],
	language: str = "de",
	custom_voice: Optional[str] = None,
) -> str:
	text = chapter_audio_text(narrative, key_learnings)
	# Long chapters are cut rather than rejected
	return await generate_speech_audio(client, text[:MAX_TTS_CHARS], language, custom_voice)
