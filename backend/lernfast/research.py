from __future__ import annotations
import logging
from typing import Any, Dict, Optional

from . import openai_client
from .cache import invalidate_lesson_cache
from .db import SessionLocal
from .errors import GenerationError
from .models import Lesson
from .openai_client import OpenAIClient
from .phases import chapter_count, question_count
from .settings import settings

logger = logging.getLogger(__name__)


def research_model(lesson_type: str) -> str:
	if lesson_type == "micro_dose":
		return settings.openai_micro_dose_model
	return settings.openai_deep_dive_model


def default_research(topic: str) -> Dict[str, Any]:
	return {
		"topic": topic,
		"facts": [f"{topic} ist das Thema dieser Lerneinheit."],
		"concepts": [{"name": topic, "description": f"Grundlagen von {topic}", "relationships": []}],
		"examples": [],
		"keyTakeaways": [f"Die wichtigsten Grundlagen von {topic} verstehen."],
	}


def _profile_lines(profile_context: Optional[Dict[str, Any]]) -> str:
	ctx = profile_context or {}
	lines = [
		f"- Erfahrungslevel: {ctx.get('experienceLevel') or 'beginner'}",
		f"- Schwierigkeitsgrad: {ctx.get('preferredDifficulty') or 'medium'}",
	]
	if ctx.get("age"):
		lines.append(f"- Alter: {ctx['age']} Jahre")
	if ctx.get("learningGoals"):
		lines.append(f"- Lernziele: {ctx['learningGoals']}")
	return "\n".join(lines)


_OUTPUT_FORMAT = """**OUTPUT-FORMAT (JSON):**
{
  "topic": "Thema",
  "facts": ["Fakt 1", "Fakt 2", ...],
  "concepts": [
    {
      "name": "Konzept-Name",
      "description": "Erklärung",
      "relationships": ["Beziehung zu anderen Konzepten"]
    }
  ],
  "examples": ["Beispiel 1", "Beispiel 2", ...],
  "keyTakeaways": ["Hauptpunkt 1", "Hauptpunkt 2", ...]
}"""


def build_full_research_prompt(lesson_type: str, profile_context: Optional[Dict[str, Any]]) -> str:
	return (
		"Du bist ein Recherche-Experte für interaktive Lerngeschichten.\n\n"
		"AUFGABE:\n"
		"Recherchiere umfassend zum Thema und sammle Material für:\n"
		f"1. Eine fesselnde {chapter_count(lesson_type)}-teilige Lerngeschichte\n"
		f"2. Ein {question_count(lesson_type)}-Fragen Quiz zur Wissensabfrage\n\n"
		"**PERSONALISIERUNG:**\n"
		f"{_profile_lines(profile_context)}\n\n"
		f"{_OUTPUT_FORMAT}"
	)


def build_light_research_prompt() -> str:
	return (
		"Du erstellst eine Kurzrecherche als schnellen Einstieg in ein Lernthema.\n"
		"Sammle 3 Fakten, 3 Konzepte, 2 Beispiele und 2 Kernpunkte. Halte alles knapp.\n\n"
		f"{_OUTPUT_FORMAT}"
	)


def _normalize_research(data: Dict[str, Any], topic: str) -> Dict[str, Any]:
	if not isinstance(data, dict):
		raise GenerationError("Research response is not a JSON object")
	concepts = []
	for concept in data.get("concepts") or []:
		if isinstance(concept, dict) and concept.get("name"):
			concepts.append({
				"name": str(concept["name"]),
				"description": str(concept.get("description") or ""),
				"relationships": [str(r) for r in concept.get("relationships") or []],
			})
	return {
		"topic": str(data.get("topic") or topic),
		"facts": [str(f) for f in data.get("facts") or []],
		"concepts": concepts,
		"examples": [str(e) for e in data.get("examples") or []],
		"keyTakeaways": [str(k) for k in data.get("keyTakeaways") or []],
	}


async def generate_light_research(client: OpenAIClient, topic: str) -> Dict[str, Any]:
	"""Quick research for the dialog; any AI failure falls back to topic-derived defaults."""
	try:
		data = await client.chat_json(
			[
				{"role": "system", "content": build_light_research_prompt()},
				{"role": "user", "content": f"Thema: {topic}"},
			],
			model=settings.openai_selection_model,
		)
		research = _normalize_research(data, topic)
	except Exception as err:
		logger.warning("Light research failed for %r, using defaults: %s", topic, err)
		return default_research(topic)
	research["depth"] = "light"
	return research


async def generate_full_research(
	client: OpenAIClient,
	topic: str,
	lesson_type: str,
	profile_context: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
	model = research_model(lesson_type)
	logger.info("Starting FULL research for topic %r (%s)", topic, model)
	try:
		data = await client.chat_json(
			[
				{"role": "system", "content": build_full_research_prompt(lesson_type, profile_context)},
				{"role": "user", "content": f"Recherchiere umfassend zum Thema: {topic}"},
			],
			model=model,
		)
	except ValueError as err:
		raise GenerationError(str(err)) from err
	research = _normalize_research(data, topic)
	research["depth"] = "full"
	logger.info(
		"FULL research completed: facts=%d concepts=%d examples=%d takeaways=%d",
		len(research["facts"]),
		len(research["concepts"]),
		len(research["examples"]),
		len(research["keyTakeaways"]),
	)
	return research


async def run_full_research(
	lesson_id: str,
	topic: str,
	lesson_type: str,
	profile_context: Optional[Dict[str, Any]] = None,
) -> bool:
	"""Background task: overwrite the light research with full research.

	Failures are logged only; the story then works from the light research.
	"""
	db = SessionLocal()
	client = None
	try:
		client = openai_client.new_client()
		research = await generate_full_research(client, topic, lesson_type, profile_context)
		lesson = db.get(Lesson, lesson_id)
		if lesson is None:
			logger.error("Full research finished for missing lesson %s", lesson_id)
			return False
		lesson.research_data = research
		db.commit()
		invalidate_lesson_cache(lesson_id)
		logger.info("Lesson %s updated with FULL research data", lesson_id)
		return True
	except Exception:
		db.rollback()
		logger.exception("Full research failed for lesson %s; story will use light research", lesson_id)
		return False
	finally:
		if client is not None:
			await client.aclose()
		db.close()
