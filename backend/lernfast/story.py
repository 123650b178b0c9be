from __future__ import annotations
import json
import logging
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.orm import Session

from . import openai_client
from .cache import invalidate_lesson_cache
from .db import SessionLocal
from .errors import GenerationError
from .models import AuthUser, Flashcard, Lesson
from .openai_client import OpenAIClient
from .phases import chapter_count
from .profile import profile_context
from .research import research_model
from .store import get_dialog_metadata, get_research_data, phase_cards, story_exists
from .visualization import VISUALIZATION_TYPES, validate_chart_data

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3
SECONDS_PER_CHAPTER = 60


class VisualizationData(BaseModel):
	title: str = ""
	chartData: Any = None


class StoryChapter(BaseModel):
	chapterNumber: int = Field(ge=1)
	chapterTitle: str = Field(min_length=1)
	narrative: str = Field(min_length=150, max_length=2500)
	keyLearnings: List[str] = Field(min_length=2, max_length=3)
	visualizationType: Literal["timeline", "comparison", "process", "concept-map"]
	visualizationData: VisualizationData = VisualizationData()


class StoryResponse(BaseModel):
	chapters: List[StoryChapter]


def build_story_prompt(
	topic: str,
	lesson_type: str,
	knowledge_level: str,
	research: Dict[str, Any],
	dialog_metadata: Optional[Dict[str, Any]],
	profile: Optional[Dict[str, Any]],
) -> str:
	chapters = chapter_count(lesson_type)
	dialog_lines = ""
	if dialog_metadata:
		responses = dialog_metadata.get("userResponses") or []
		dialog_lines = (
			"\n**DIALOG-ERKENNTNISSE:**\n"
			f"- Bewertung: {dialog_metadata.get('assessmentReasoning') or 'keine'}\n"
			f"- Antworten des Nutzers: {json.dumps(responses[:5], ensure_ascii=False)}\n"
			"Knüpfe an das an, was der Nutzer schon weiß, und schließe seine Wissenslücken.\n"
		)
	profile_lines = ""
	if profile:
		profile_lines = (
			"\n**PERSONALISIERUNG:**\n"
			f"- Alter: {profile.get('age') or 'Nicht angegeben'}\n"
			f"- Lernziele: {profile.get('learningGoals') or 'Nicht angegeben'}\n"
		)
	return (
		"Du bist ein Storytelling-Experte, der komplexe Themen in fesselnde Lerngeschichten verwandelt.\n\n"
		f'THEMA: "{topic}"\n'
		f"WISSENSSTAND DES NUTZERS: {knowledge_level}\n\n"
		"**RESEARCH-DATEN:**\n"
		f"{json.dumps(research, ensure_ascii=False)}\n"
		f"{dialog_lines}{profile_lines}\n"
		"**AUFGABE:**\n"
		f"Schreibe eine Geschichte mit GENAU {chapters} Kapiteln.\n"
		"- Jedes Kapitel: 150-2500 Zeichen Erzähltext\n"
		"- Jedes Kapitel: 2-3 Kernaussagen (keyLearnings)\n"
		f"- Visualisierung pro Kapitel: {', '.join(VISUALIZATION_TYPES)}\n"
		"- chartData: mindestens 3 Punkte {\"name\": string, \"value\": number}\n\n"
		"**OUTPUT-FORMAT (JSON):**\n"
		'{"chapters": [{"chapterNumber": 1, "chapterTitle": "...", "narrative": "...", '
		'"keyLearnings": ["...", "..."], "visualizationType": "timeline", '
		'"visualizationData": {"title": "...", "chartData": [{"name": "...", "value": 10}]}}]}'
	)


def parse_story(data: Dict[str, Any], expected_chapters: int) -> List[StoryChapter]:
	try:
		story = StoryResponse.model_validate(data)
	except ValidationError as err:
		raise GenerationError(f"Invalid story structure: {err.error_count()} validation errors") from err
	if len(story.chapters) < expected_chapters:
		raise GenerationError(f"Expected {expected_chapters} chapters, got {len(story.chapters)}")
	return story.chapters[:expected_chapters]


def chapter_content(chapter: StoryChapter) -> Dict[str, Any]:
	return {
		"story": {
			"chapterNumber": chapter.chapterNumber,
			"chapterTitle": chapter.chapterTitle,
			"narrative": chapter.narrative,
			"keyPoints": chapter.keyLearnings,
			"visualizations": [
				{
					"type": chapter.visualizationType,
					"title": chapter.visualizationData.title or chapter.chapterTitle,
					"chartData": validate_chart_data(chapter.visualizationData.chartData, chapter.visualizationType),
				}
			],
		}
	}


async def generate_story(
	db: Session,
	client: OpenAIClient,
	lesson: Lesson,
	user_id: str,
	knowledge_level: Optional[str] = None,
) -> List[Flashcard]:
	"""Generate the lesson's story chapters and store them as story flashcards."""
	research = get_research_data(db, lesson.id)
	if not research:
		raise GenerationError("Keine Research-Daten gefunden")
	dialog_metadata = get_dialog_metadata(db, lesson.id, user_id)
	level = knowledge_level or (dialog_metadata or {}).get("knowledgeLevel") or "beginner"
	user = db.get(AuthUser, user_id)
	prompt = build_story_prompt(
		lesson.topic,
		lesson.lesson_type,
		level,
		research,
		dialog_metadata,
		profile_context(user) if user is not None else None,
	)
	expected = chapter_count(lesson.lesson_type)

	chapters: List[StoryChapter] = []
	last_error: Optional[Exception] = None
	for attempt in range(1, MAX_ATTEMPTS + 1):
		try:
			data = await client.chat_json(
				[
					{"role": "system", "content": prompt},
					{"role": "user", "content": f'Erstelle die Lerngeschichte zum Thema "{lesson.topic}".'},
				],
				model=research_model(lesson.lesson_type),
			)
			chapters = parse_story(data, expected)
			break
		except (GenerationError, ValueError) as err:
			last_error = err
			logger.warning("Story attempt %d/%d failed for lesson %s: %s", attempt, MAX_ATTEMPTS, lesson.id, err)
	if not chapters:
		raise GenerationError(f"Story generation failed after {MAX_ATTEMPTS} attempts: {last_error}")

	cards = []
	for index, chapter in enumerate(chapters):
		card = Flashcard(
			lesson_id=lesson.id,
			question=chapter.chapterTitle,
			learning_content=chapter_content(chapter),
			phase="story",
			order_index=index,
		)
		db.add(card)
		cards.append(card)
	db.commit()
	invalidate_lesson_cache(lesson.id)
	logger.info("Story generated for lesson %s: %d chapters (level=%s)", lesson.id, len(cards), level)
	return cards


async def run_story_generation(lesson_id: str, user_id: str) -> bool:
	"""Background task: generate the story unless one already exists. Failures are logged only."""
	db = SessionLocal()
	client = None
	try:
		lesson = db.get(Lesson, lesson_id)
		if lesson is None:
			logger.error("Background story: lesson %s not found", lesson_id)
			return False
		if story_exists(db, lesson_id):
			logger.info("Background story: lesson %s already has a story, skipping", lesson_id)
			return True
		client = openai_client.new_client()
		await generate_story(db, client, lesson, user_id)
		return True
	except Exception:
		db.rollback()
		logger.exception("Background story generation failed for lesson %s", lesson_id)
		return False
	finally:
		if client is not None:
			await client.aclose()
		db.close()


def serialize_chapter(card: Flashcard) -> Dict[str, Any]:
	story = (card.learning_content or {}).get("story") or {}
	return {
		"id": card.id,
		"orderIndex": card.order_index,
		"chapterNumber": story.get("chapterNumber", card.order_index + 1),
		"chapterTitle": story.get("chapterTitle", card.question),
		"narrative": story.get("narrative", ""),
		"keyPoints": story.get("keyPoints") or [],
		"visualizations": story.get("visualizations") or [],
	}


def story_chapters(db: Session, lesson_id: str) -> List[Dict[str, Any]]:
	return [serialize_chapter(card) for card in phase_cards(db, lesson_id, "story")]


def engagement_score(chapters_completed: int, total_chapters: int, time_spent_seconds: int) -> int:
	if total_chapters <= 0:
		return 0
	completion = min(max(chapters_completed, 0) / total_chapters, 1.0)
	reading = min(max(time_spent_seconds, 0) / (SECONDS_PER_CHAPTER * total_chapters), 1.0)
	return int(round((completion * 0.8 + reading * 0.2) * 100))
