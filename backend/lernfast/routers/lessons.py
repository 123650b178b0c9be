from __future__ import annotations

import logging
import math
from typing import Any, Dict, Optional

import httpx
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from .. import openai_client
from ..cache import invalidate_lesson_cache
from ..db import get_db
from ..models import AuthUser, Lesson
from ..phases import LESSON_TYPES, PHASES, InvalidPhaseError, update_phase
from ..profile import profile_context
from ..queries import get_cached_lesson, get_cached_lessons, serialize_score
from ..research import default_research, generate_light_research, run_full_research
from ..settings import settings
from ..store import SCORE_FIELDS, get_score, owned_lesson, upsert_score
from .auth import get_current_user


router = APIRouter(prefix="/api", tags=["lessons"])

logger = logging.getLogger(__name__)

_PERCENT_FIELDS = {"dialog_score", "story_engagement_score", "quiz_score"}


class TriggerLessonRequest(BaseModel):
	topic: Optional[Any] = None
	lessonType: Optional[Any] = "micro_dose"


class LessonIdRequest(BaseModel):
	lessonId: Optional[Any] = None


class UpdatePhaseRequest(BaseModel):
	lessonId: Optional[Any] = None
	phase: Optional[Any] = None


class UpdateScoreRequest(BaseModel):
	lessonId: Optional[Any] = None
	scoreData: Optional[Any] = None


def _require_lesson_id(value: Any) -> str:
	if not isinstance(value, str) or not value.strip():
		raise HTTPException(status_code=400, detail="Ungültige Lesson-ID.")
	return value


async def _notify_workflow(lesson: Lesson) -> None:
	async with httpx.AsyncClient(timeout=10.0) as client:
		r = await client.post(
			settings.n8n_webhook_url,
			json={
				"lessonId": lesson.id,
				"topic": lesson.topic,
				"lessonType": lesson.lesson_type,
				"userId": lesson.user_id,
			},
		)
		r.raise_for_status()


async def _light_research(topic: str) -> Dict[str, Any]:
	try:
		client = openai_client.new_client()
	except ValueError:
		logger.warning("OPENAI_API_KEY missing, starting lesson %r with default research", topic)
		return default_research(topic)
	try:
		return await generate_light_research(client, topic)
	finally:
		await client.aclose()


@router.post("/trigger-lesson", status_code=201)
async def trigger_lesson(
	req: TriggerLessonRequest,
	background_tasks: BackgroundTasks,
	user: AuthUser = Depends(get_current_user),
	db: Session = Depends(get_db),
):
	if not isinstance(req.topic, str) or not req.topic.strip():
		raise HTTPException(status_code=400, detail="Bitte gib ein gültiges Thema ein.")
	if req.lessonType not in LESSON_TYPES:
		raise HTTPException(status_code=400, detail="Ungültiger Lesson-Typ.")
	topic = req.topic.strip()

	lesson = Lesson(user_id=user.id, topic=topic, lesson_type=req.lessonType, status="pending", current_phase="dialog")
	db.add(lesson)
	db.commit()
	logger.info("Lesson %s created for user %s (%s, %s)", lesson.id, user.id, topic, lesson.lesson_type)

	if settings.n8n_webhook_url:
		try:
			await _notify_workflow(lesson)
		except httpx.HTTPError as err:
			logger.error("Lesson workflow webhook failed for %s: %s", lesson.id, err)
			lesson.status = "failed"
			db.commit()
			invalidate_lesson_cache(lesson.id)
			raise HTTPException(status_code=500, detail="Fehler bei der KI-Generierung. Bitte versuche es erneut.")
		lesson.status = "processing"
		db.commit()
		invalidate_lesson_cache(lesson.id)
		return {
			"success": True,
			"lessonId": lesson.id,
			"status": lesson.status,
			"message": "Deine Lesson wird generiert.",
		}

	lesson.research_data = await _light_research(topic)
	lesson.status = "completed"
	db.commit()
	invalidate_lesson_cache(lesson.id)
	background_tasks.add_task(run_full_research, lesson.id, topic, lesson.lesson_type, profile_context(user))
	return {
		"success": True,
		"lessonId": lesson.id,
		"status": lesson.status,
		"message": "Lesson erstellt. Der Dialog kann starten.",
	}


@router.get("/lessons")
def list_lessons(user: AuthUser = Depends(get_current_user), db: Session = Depends(get_db)):
	return {"lessons": get_cached_lessons(db, user.id)}


@router.get("/lessons/{lesson_id}")
def get_lesson(lesson_id: str, user: AuthUser = Depends(get_current_user), db: Session = Depends(get_db)):
	lesson = get_cached_lesson(db, lesson_id)
	if lesson is None:
		raise HTTPException(status_code=404, detail="Lesson nicht gefunden.")
	if lesson["userId"] != user.id:
		raise HTTPException(status_code=403, detail="Keine Berechtigung für diese Lesson.")
	return lesson


@router.post("/lesson/delete")
def delete_lesson(req: LessonIdRequest, user: AuthUser = Depends(get_current_user), db: Session = Depends(get_db)):
	lesson_id = _require_lesson_id(req.lessonId)
	lesson = db.get(Lesson, lesson_id)
	if lesson is None:
		raise HTTPException(status_code=404, detail="Lesson nicht gefunden.")
	if lesson.user_id != user.id:
		logger.warning("User %s tried to delete lesson %s owned by %s", user.id, lesson_id, lesson.user_id)
		raise HTTPException(status_code=403, detail="Keine Berechtigung für diese Lesson.")
	db.delete(lesson)
	db.commit()
	invalidate_lesson_cache(lesson_id)
	logger.info("Lesson %s deleted", lesson_id)
	return {"success": True, "message": "Lesson gelöscht."}


@router.post("/lesson/update-phase")
def update_lesson_phase(req: UpdatePhaseRequest, user: AuthUser = Depends(get_current_user), db: Session = Depends(get_db)):
	lesson_id = _require_lesson_id(req.lessonId)
	if req.phase not in PHASES:
		raise HTTPException(status_code=400, detail=f"Ungültige Phase. Erlaubt: {', '.join(PHASES)}")
	lesson = owned_lesson(db, lesson_id, user.id)
	try:
		update_phase(db, lesson, req.phase)
	except InvalidPhaseError:
		raise HTTPException(status_code=400, detail=f"Ungültige Phase. Erlaubt: {', '.join(PHASES)}")
	return {"success": True, "lessonId": lesson.id, "phase": lesson.current_phase}


def _validated_score_data(score_data: Any) -> Dict[str, int]:
	if not isinstance(score_data, dict) or not score_data:
		raise HTTPException(status_code=400, detail="Ungültige Score-Daten.")
	fields: Dict[str, int] = {}
	for key, value in score_data.items():
		if key not in SCORE_FIELDS or isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
			raise HTTPException(status_code=400, detail="Ungültige Score-Daten.")
		value = int(round(value))
		if value < 0 or (key in _PERCENT_FIELDS and value > 100):
			raise HTTPException(status_code=400, detail="Ungültige Score-Daten.")
		fields[key] = value
	return fields


@router.post("/lesson/update-score")
def update_lesson_score(req: UpdateScoreRequest, user: AuthUser = Depends(get_current_user), db: Session = Depends(get_db)):
	lesson_id = _require_lesson_id(req.lessonId)
	fields = _validated_score_data(req.scoreData)
	owned_lesson(db, lesson_id, user.id)
	row = upsert_score(db, lesson_id, user.id, **fields)
	invalidate_lesson_cache(lesson_id)
	return {"success": True, "score": serialize_score(row)}


@router.get("/lessons/{lesson_id}/score")
def lesson_score(lesson_id: str, user: AuthUser = Depends(get_current_user), db: Session = Depends(get_db)):
	owned_lesson(db, lesson_id, user.id)
	return {"score": serialize_score(get_score(db, lesson_id, user.id))}
