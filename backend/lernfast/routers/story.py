from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..cache import invalidate_lesson_cache
from ..db import get_db
from ..models import AuthUser, Flashcard, Lesson
from ..openai_client import OpenAIClient
from ..speech import generate_chapter_audio
from ..store import upsert_score
from ..story import engagement_score, generate_story, serialize_chapter, story_chapters
from .auth import get_current_user
from .deps import get_ai_client, user_lesson


router = APIRouter(prefix="/api/lesson/{lesson_id}", tags=["story"])

logger = logging.getLogger(__name__)


class EngagementRequest(BaseModel):
	chaptersCompleted: Optional[Any] = None
	totalChapters: Optional[Any] = None
	timeSpentSeconds: Optional[Any] = 0


def _non_negative_int(value: Any) -> bool:
	return isinstance(value, int) and not isinstance(value, bool) and value >= 0


@router.get("/story")
def get_story(lesson: Lesson = Depends(user_lesson), db: Session = Depends(get_db)):
	return {"lessonId": lesson.id, "chapters": story_chapters(db, lesson.id)}


@router.post("/story/generate")
async def generate(
	lesson: Lesson = Depends(user_lesson),
	user: AuthUser = Depends(get_current_user),
	db: Session = Depends(get_db),
	client: OpenAIClient = Depends(get_ai_client),
):
	chapters = story_chapters(db, lesson.id)
	if chapters:
		return {"lessonId": lesson.id, "chapters": chapters, "generated": False}
	try:
		cards = await generate_story(db, client, lesson, user.id)
	except Exception as err:
		logger.error("Story generation failed for lesson %s: %s", lesson.id, err)
		raise HTTPException(status_code=500, detail="Fehler bei der Story-Generierung. Bitte versuche es erneut.")
	return {"lessonId": lesson.id, "chapters": [serialize_chapter(card) for card in cards], "generated": True}


@router.post("/story/engagement")
def story_engagement(
	req: EngagementRequest,
	lesson: Lesson = Depends(user_lesson),
	user: AuthUser = Depends(get_current_user),
	db: Session = Depends(get_db),
):
	if not all(_non_negative_int(v) for v in (req.chaptersCompleted, req.totalChapters, req.timeSpentSeconds)):
		raise HTTPException(status_code=400, detail="Ungültige Engagement-Daten.")
	score = engagement_score(req.chaptersCompleted, req.totalChapters, req.timeSpentSeconds)
	upsert_score(db, lesson.id, user.id, story_engagement_score=score)
	invalidate_lesson_cache(lesson.id)
	return {"success": True, "storyEngagementScore": score}


@router.post("/story/chapters/{chapter_id}/audio")
async def chapter_audio(
	chapter_id: str,
	lesson: Lesson = Depends(user_lesson),
	user: AuthUser = Depends(get_current_user),
	db: Session = Depends(get_db),
	client: OpenAIClient = Depends(get_ai_client),
):
	card = db.get(Flashcard, chapter_id)
	if card is None or card.lesson_id != lesson.id or card.phase != "story":
		raise HTTPException(status_code=404, detail="Kapitel nicht gefunden.")
	chapter = serialize_chapter(card)
	try:
		audio_url = await generate_chapter_audio(
			client,
			chapter["narrative"],
			chapter["keyPoints"],
			user.language or "de",
			user.tts_voice,
		)
	except Exception as err:
		logger.error("Chapter audio failed for %s: %s", chapter_id, err)
		raise HTTPException(status_code=500, detail="Fehler bei der Audio-Generierung. Bitte versuche es erneut.")
	return {"audioUrl": audio_url}
