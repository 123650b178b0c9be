"""Learning-session phase machine: dialog -> story -> quiz -> completed."""

from __future__ import annotations
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from .cache import invalidate_lesson_cache
from .models import Lesson

logger = logging.getLogger(__name__)

PHASES = ("dialog", "story", "quiz", "completed")
LESSON_TYPES = ("micro_dose", "deep_dive")
LESSON_STATUSES = ("pending", "processing", "completed", "failed")


class InvalidPhaseError(ValueError):
	pass


def validate_phase(phase: Optional[str]) -> str:
	if not phase or phase not in PHASES:
		raise InvalidPhaseError(f"invalid phase: {phase!r}")
	return phase


def update_phase(db: Session, lesson: Lesson, phase: str) -> Lesson:
	validate_phase(phase)
	lesson.current_phase = phase
	if phase == "completed":
		lesson.completed_at = datetime.utcnow()
	db.commit()
	invalidate_lesson_cache(lesson.id)
	logger.info("Lesson %s moved to phase %s", lesson.id, phase)
	return lesson


def transition_to_story(db: Session, lesson: Lesson) -> Lesson:
	return update_phase(db, lesson, "story")


def transition_to_quiz(db: Session, lesson: Lesson) -> Lesson:
	return update_phase(db, lesson, "quiz")


def complete_lesson(db: Session, lesson: Lesson) -> Lesson:
	return update_phase(db, lesson, "completed")


def chapter_count(lesson_type: str) -> int:
	return 3 if lesson_type == "micro_dose" else 5


def question_count(lesson_type: str) -> int:
	return 5 if lesson_type == "micro_dose" else 7
