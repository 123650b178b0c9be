from __future__ import annotations
import logging
from datetime import datetime, timedelta
from sqlalchemy import delete
from sqlalchemy.orm import Session

from .cache import revalidate_tag
from .models import AuthSession, Lesson
from .settings import settings

logger = logging.getLogger(__name__)

ABANDONED_LESSON_DAYS = 7


def purge_stale_rows(db: Session, now: datetime | None = None) -> int:
	"""Remove idle auth sessions and lessons whose generation never finished."""
	now = now or datetime.utcnow()
	session_threshold = now - timedelta(days=settings.session_max_age_days)
	lesson_threshold = now - timedelta(days=ABANDONED_LESSON_DAYS)
	removed = 0

	res = db.execute(delete(AuthSession).where(AuthSession.last_activity_at < session_threshold))
	removed += res.rowcount or 0

	# Load through the ORM so flashcards and scores cascade
	abandoned = (
		db.query(Lesson)
		.filter(Lesson.status.in_(("pending", "failed")), Lesson.created_at < lesson_threshold)
		.all()
	)
	for lesson in abandoned:
		db.delete(lesson)
	removed += len(abandoned)

	db.commit()
	if abandoned:
		revalidate_tag("lessons")
	logger.info("Cleanup removed %d stale rows", removed)
	return removed
