from __future__ import annotations
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import HTTPException
from sqlalchemy.orm import Session

from .models import Flashcard, Lesson, LessonScore

logger = logging.getLogger(__name__)

SCORE_FIELDS = (
	"dialog_score",
	"story_engagement_score",
	"quiz_score",
	"correct_answers",
	"total_questions",
	"time_spent_seconds",
)


def owned_lesson(db: Session, lesson_id: str, user_id: str) -> Lesson:
	lesson = db.get(Lesson, lesson_id)
	if lesson is None:
		raise HTTPException(status_code=404, detail="Lesson nicht gefunden.")
	if lesson.user_id != user_id:
		raise HTTPException(status_code=403, detail="Keine Berechtigung für diese Lesson.")
	return lesson


def get_score(db: Session, lesson_id: str, user_id: str) -> Optional[LessonScore]:
	return (
		db.query(LessonScore)
		.filter(LessonScore.lesson_id == lesson_id, LessonScore.user_id == user_id)
		.first()
	)


def upsert_score(db: Session, lesson_id: str, user_id: str, **fields: Any) -> LessonScore:
	unknown = set(fields) - set(SCORE_FIELDS) - {"score_metadata"}
	if unknown:
		raise ValueError(f"unknown score fields: {sorted(unknown)}")
	row = get_score(db, lesson_id, user_id)
	if row is None:
		row = LessonScore(lesson_id=lesson_id, user_id=user_id)
		db.add(row)
	for key, value in fields.items():
		setattr(row, key, value)
	row.updated_at = datetime.utcnow()
	db.commit()
	db.refresh(row)
	return row


def update_dialog_score(db: Session, lesson_id: str, user_id: str, confidence: float) -> LessonScore:
	return upsert_score(db, lesson_id, user_id, dialog_score=int(round(confidence)))


def update_quiz_score(db: Session, lesson_id: str, user_id: str, *, correct_answers: int, total_questions: int, quiz_score: int) -> LessonScore:
	return upsert_score(
		db,
		lesson_id,
		user_id,
		quiz_score=quiz_score,
		correct_answers=correct_answers,
		total_questions=total_questions,
	)


def get_research_data(db: Session, lesson_id: str) -> Optional[Dict[str, Any]]:
	lesson = db.get(Lesson, lesson_id)
	if lesson is None:
		logger.error("Failed to load research_data: lesson %s not found", lesson_id)
		return None
	if not lesson.research_data:
		logger.warning("No research_data found for lesson: %s", lesson_id)
		return None
	return lesson.research_data


def save_dialog_metadata(db: Session, lesson_id: str, user_id: str, metadata: Dict[str, Any]) -> bool:
	"""Store conversation + assessment for story/quiz personalisation.

	Never raises: metadata is optional, a failure is logged and ``False`` returned.
	"""
	try:
		row = get_score(db, lesson_id, user_id)
		merged = dict(row.score_metadata or {}) if row is not None else {}
		merged.update(metadata)
		upsert_score(db, lesson_id, user_id, score_metadata=merged)
	except Exception:
		db.rollback()
		logger.exception("Failed to save dialog metadata (lesson=%s user=%s)", lesson_id, user_id)
		return False
	logger.info(
		"Dialog metadata saved: lesson=%s level=%s turns=%d",
		lesson_id,
		metadata.get("knowledgeLevel"),
		len(metadata.get("conversationHistory") or []),
	)
	return True


def get_dialog_metadata(db: Session, lesson_id: str, user_id: str) -> Optional[Dict[str, Any]]:
	row = get_score(db, lesson_id, user_id)
	if row is None or not row.score_metadata:
		return None
	return row.score_metadata


def clear_dialog_history(db: Session, lesson_id: str) -> None:
	lesson = db.get(Lesson, lesson_id)
	if lesson is None:
		return
	lesson.dialog_history = None
	db.commit()


def phase_cards(db: Session, lesson_id: str, phase: str) -> List[Flashcard]:
	return (
		db.query(Flashcard)
		.filter(Flashcard.lesson_id == lesson_id, Flashcard.phase == phase)
		.order_by(Flashcard.order_index)
		.all()
	)


def story_exists(db: Session, lesson_id: str) -> bool:
	return (
		db.query(Flashcard.id)
		.filter(Flashcard.lesson_id == lesson_id, Flashcard.phase == "story")
		.first()
		is not None
	)


def story_ready(db: Session, lesson_id: str) -> bool:
	"""A story counts as generated once at least three chapters with narratives exist."""
	chapters = phase_cards(db, lesson_id, "story")
	return len(chapters) >= 3 and all(
		((card.learning_content or {}).get("story") or {}).get("narrative") for card in chapters
	)
