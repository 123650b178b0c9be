from __future__ import annotations
import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Integer, Text, Boolean, ForeignKey, JSON, UniqueConstraint, event
from sqlalchemy.orm import relationship
from .db import Base


def _uuid() -> str:
	return uuid.uuid4().hex


class AuthUser(Base):
	__tablename__ = "auth_users"
	id = Column(String(32), primary_key=True, default=_uuid)
	email = Column(String(256), unique=True, index=True, nullable=False)
	name = Column(String(100), nullable=False)
	password_hash = Column(String(256), nullable=False)
	image = Column(String(512), nullable=True)
	email_verified = Column(Boolean, default=False, nullable=False)
	# Profile attribute bag
	age = Column(Integer, nullable=True)
	language = Column(String(8), default="de", nullable=False)
	learning_goals = Column(Text, nullable=True)
	experience_level = Column(String(16), default="beginner", nullable=False)
	preferred_difficulty = Column(String(16), default="medium", nullable=False)
	preferred_card_count = Column(Integer, default=5, nullable=False)
	onboarding_completed = Column(Boolean, default=False, nullable=False)
	profile_updated_at = Column(DateTime, nullable=True)
	tts_voice = Column(String(16), default="nova", nullable=False)
	avatar_preference = Column(JSON, nullable=True)
	dialog_mode = Column(String(16), default="text", nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

	lessons = relationship("Lesson", back_populates="user", cascade="all, delete-orphan")


class AuthSession(Base):
	__tablename__ = "auth_sessions"
	# JWT jti
	session_id = Column(String(64), primary_key=True)
	user_id = Column(String(32), ForeignKey("auth_users.id", ondelete="CASCADE"), index=True, nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	last_activity_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Lesson(Base):
	__tablename__ = "lesson"
	id = Column(String(32), primary_key=True, default=_uuid)
	user_id = Column(String(32), ForeignKey("auth_users.id", ondelete="CASCADE"), index=True, nullable=False)
	topic = Column(String(512), nullable=False)
	refined_topic = Column(String(512), nullable=True)
	lesson_type = Column(String(16), default="micro_dose", nullable=False)  # micro_dose | deep_dive
	status = Column(String(16), default="pending", nullable=False)  # pending | processing | completed | failed
	current_phase = Column(String(16), default="dialog", nullable=False)  # dialog | story | quiz | completed
	research_data = Column(JSON, nullable=True)
	dialog_history = Column(JSON, nullable=True)  # [{role, content}]
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	completed_at = Column(DateTime, nullable=True)

	user = relationship("AuthUser", back_populates="lessons")
	flashcards = relationship(
		"Flashcard",
		back_populates="lesson",
		cascade="all, delete-orphan",
		order_by="Flashcard.order_index",
	)
	scores = relationship("LessonScore", cascade="all, delete-orphan")


class Flashcard(Base):
	__tablename__ = "flashcard"
	id = Column(String(32), primary_key=True, default=_uuid)
	lesson_id = Column(String(32), ForeignKey("lesson.id", ondelete="CASCADE"), index=True, nullable=False)
	question = Column(Text, nullable=False)
	# Legacy concept-map payload
	thesys_json = Column(JSON, nullable=True)
	visualizations = Column(JSON, nullable=True)
	# {"story": {...}} or {"quiz": {...}}
	learning_content = Column(JSON, nullable=True)
	phase = Column(String(16), nullable=True)
	order_index = Column(Integer, default=0, nullable=False)
	is_learned = Column(Boolean, default=False, nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

	lesson = relationship("Lesson", back_populates="flashcards")


class LessonScore(Base):
	__tablename__ = "lesson_score"
	__table_args__ = (UniqueConstraint("lesson_id", "user_id", name="uq_lesson_score_lesson_user"),)
	id = Column(String(32), primary_key=True, default=_uuid)
	lesson_id = Column(String(32), ForeignKey("lesson.id", ondelete="CASCADE"), index=True, nullable=False)
	user_id = Column(String(32), ForeignKey("auth_users.id", ondelete="CASCADE"), index=True, nullable=False)
	# 0-100; dialog and story scores are informative only
	dialog_score = Column(Integer, default=0, nullable=False)
	story_engagement_score = Column(Integer, default=0, nullable=False)
	quiz_score = Column(Integer, default=0, nullable=False)
	total_score = Column(Integer, default=0, nullable=False)
	correct_answers = Column(Integer, default=0, nullable=False)
	total_questions = Column(Integer, default=0, nullable=False)
	time_spent_seconds = Column(Integer, default=0, nullable=False)
	# "metadata" is reserved on declarative classes
	score_metadata = Column("metadata", JSON, nullable=True)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


@event.listens_for(LessonScore, "before_insert")
@event.listens_for(LessonScore, "before_update")
def _sync_total_score(mapper, connection, target: LessonScore) -> None:
	# total_score is derived from the quiz alone
	target.total_score = target.quiz_score or 0
