from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from sqlalchemy import func
from sqlalchemy.orm import Session

from .cache import cached
from .models import AuthUser, Flashcard, Lesson
from .profile import serialize_profile
from .visualization import ThesysGraph, normalize_visualizations

logger = logging.getLogger(__name__)


def _iso(value) -> Optional[str]:
	return value.isoformat() if value is not None else None


def serialize_flashcard(card: Flashcard) -> Dict[str, Any]:
	thesys = None
	if card.thesys_json:
		try:
			thesys = ThesysGraph.model_validate(card.thesys_json).model_dump(by_alias=True)
		except ValidationError:
			logger.warning("Dropping malformed concept map on flashcard %s", card.id)
	return {
		"id": card.id,
		"lessonId": card.lesson_id,
		"question": card.question,
		"thesysJson": thesys,
		"visualizations": normalize_visualizations(card.visualizations),
		"learningContent": card.learning_content,
		"phase": card.phase,
		"orderIndex": card.order_index,
		"isLearned": card.is_learned,
		"createdAt": _iso(card.created_at),
	}


def serialize_lesson(lesson: Lesson, flashcard_count: Optional[int] = None) -> Dict[str, Any]:
	data = {
		"id": lesson.id,
		"userId": lesson.user_id,
		"topic": lesson.topic,
		"refinedTopic": lesson.refined_topic,
		"lessonType": lesson.lesson_type,
		"status": lesson.status,
		"currentPhase": lesson.current_phase,
		"createdAt": _iso(lesson.created_at),
		"completedAt": _iso(lesson.completed_at),
	}
	if flashcard_count is not None:
		data["flashcard_count"] = flashcard_count
	return data


@cached("user-lessons", ttl=60, tags=["lessons"])
def get_cached_lessons(db: Session, user_id: str) -> List[Dict[str, Any]]:
	counts = dict(
		db.query(Flashcard.lesson_id, func.count(Flashcard.id))
		.join(Lesson, Lesson.id == Flashcard.lesson_id)
		.filter(Lesson.user_id == user_id)
		.group_by(Flashcard.lesson_id)
		.all()
	)
	lessons = (
		db.query(Lesson)
		.filter(Lesson.user_id == user_id)
		.order_by(Lesson.created_at.desc())
		.all()
	)
	return [serialize_lesson(lesson, counts.get(lesson.id, 0)) for lesson in lessons]


@cached("lesson", ttl=300, tags=["lessons"], extra_tags=lambda db, lesson_id: [f"lesson:{lesson_id}"])
def get_cached_lesson(db: Session, lesson_id: str) -> Optional[Dict[str, Any]]:
	lesson = db.get(Lesson, lesson_id)
	if lesson is None:
		return None
	data = serialize_lesson(lesson)
	data["researchData"] = lesson.research_data
	data["flashcards"] = [serialize_flashcard(card) for card in lesson.flashcards]
	return data


@cached("user-profile", ttl=300, tags=["users"])
def get_cached_user_profile(db: Session, user_id: str) -> Optional[Dict[str, Any]]:
	user = db.get(AuthUser, user_id)
	if user is None:
		return None
	return serialize_profile(user)


def serialize_score(row) -> Optional[Dict[str, Any]]:
	if row is None:
		return None
	return {
		"id": row.id,
		"lessonId": row.lesson_id,
		"userId": row.user_id,
		"dialogScore": row.dialog_score,
		"storyEngagementScore": row.story_engagement_score,
		"quizScore": row.quiz_score,
		"totalScore": row.total_score,
		"correctAnswers": row.correct_answers,
		"totalQuestions": row.total_questions,
		"timeSpentSeconds": row.time_spent_seconds,
		"metadata": row.score_metadata,
		"createdAt": _iso(row.created_at),
		"updatedAt": _iso(row.updated_at),
	}
