from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..cache import invalidate_lesson_cache
from ..db import get_db
from ..models import AuthUser
from ..openai_client import OpenAIClient
from ..profile import profile_context
from ..research import generate_full_research
from ..settings import settings
from ..store import owned_lesson
from ..story import run_story_generation
from .auth import get_current_user
from .deps import get_ai_client


router = APIRouter(prefix="/api", tags=["research"])

logger = logging.getLogger(__name__)


class FullResearchRequest(BaseModel):
	lessonId: Optional[Any] = None
	topic: Optional[Any] = None
	lessonType: Optional[str] = None
	profileContext: Optional[Dict[str, Any]] = None


class StoryBackgroundRequest(BaseModel):
	lessonId: Optional[Any] = None


@router.post("/generate-full-research")
async def full_research(
	req: FullResearchRequest,
	user: AuthUser = Depends(get_current_user),
	db: Session = Depends(get_db),
	client: OpenAIClient = Depends(get_ai_client),
):
	if not isinstance(req.lessonId, str) or not isinstance(req.topic, str) or not req.topic.strip():
		raise HTTPException(status_code=400, detail="Missing fields")
	lesson = owned_lesson(db, req.lessonId, user.id)
	lesson_type = req.lessonType or lesson.lesson_type
	context = req.profileContext if req.profileContext is not None else profile_context(user)
	try:
		research = await generate_full_research(client, req.topic.strip(), lesson_type, context)
	except Exception as err:
		logger.error("Full research failed for lesson %s: %s", lesson.id, err)
		content = {"detail": "Research failed - story will use light research fallback"}
		if settings.is_development:
			content["details"] = str(err)
		return JSONResponse(status_code=500, content=content)
	lesson.research_data = research
	db.commit()
	invalidate_lesson_cache(lesson.id)
	return {"success": True, "message": "Full research completed and saved"}


@router.post("/generate-story-background", status_code=202)
def story_background(
	req: StoryBackgroundRequest,
	background_tasks: BackgroundTasks,
	user: AuthUser = Depends(get_current_user),
	db: Session = Depends(get_db),
):
	if not isinstance(req.lessonId, str) or not req.lessonId:
		raise HTTPException(status_code=400, detail="Ungültige Lesson-ID.")
	lesson = owned_lesson(db, req.lessonId, user.id)
	background_tasks.add_task(run_story_generation, lesson.id, user.id)
	return {"success": True, "message": "Story-Generierung gestartet."}
