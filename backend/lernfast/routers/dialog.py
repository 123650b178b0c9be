from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File, HTTPException, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from .. import dialog
from ..db import get_db
from ..errors import VoiceDialogError
from ..models import AuthUser, Lesson
from ..openai_client import OpenAIClient
from ..settings import settings
from ..story import run_story_generation
from .auth import get_current_user
from .deps import get_ai_client, user_lesson


router = APIRouter(prefix="/api/lesson/{lesson_id}", tags=["dialog"])

logger = logging.getLogger(__name__)

DIALOG_FAILED = "Fehler bei der Dialog-Generierung. Bitte versuche es erneut."


class AnswerRequest(BaseModel):
	message: Optional[Any] = None


class VoiceAnswerRequest(BaseModel):
	transcript: Optional[Any] = None


def _require_dialog_phase(lesson: Lesson) -> None:
	if lesson.current_phase != "dialog":
		raise HTTPException(status_code=409, detail="Der Dialog ist bereits abgeschlossen.")


def _voice_error(err: VoiceDialogError) -> JSONResponse:
	logger.error("Voice dialog failed (%s): %s", err.code, err)
	return JSONResponse(
		status_code=500,
		content={"detail": "Sprachdialog fehlgeschlagen. Bitte versuche es erneut.", "code": err.code},
	)


@router.get("/dialog")
def dialog_state(lesson: Lesson = Depends(user_lesson)):
	history = lesson.dialog_history or []
	return {
		"lessonId": lesson.id,
		"phase": lesson.current_phase,
		"history": history,
		"answerCount": dialog.count_answers(history),
		"maxAnswers": settings.dialog_max_answers,
	}


@router.post("/dialog/start")
async def start(
	lesson: Lesson = Depends(user_lesson),
	db: Session = Depends(get_db),
	client: OpenAIClient = Depends(get_ai_client),
):
	_require_dialog_phase(lesson)
	if lesson.dialog_history:
		# Resuming keeps the conversation that is already stored
		return {"message": lesson.dialog_history[0].get("content"), "history": lesson.dialog_history}
	try:
		question = await dialog.start_dialog(db, client, lesson)
	except Exception as err:
		logger.error("Initial dialog question failed for lesson %s: %s", lesson.id, err)
		raise HTTPException(status_code=500, detail=DIALOG_FAILED)
	return {"message": question, "history": lesson.dialog_history}


@router.post("/dialog/answer")
async def answer(
	req: AnswerRequest,
	background_tasks: BackgroundTasks,
	lesson: Lesson = Depends(user_lesson),
	user: AuthUser = Depends(get_current_user),
	db: Session = Depends(get_db),
	client: OpenAIClient = Depends(get_ai_client),
):
	if not isinstance(req.message, str) or not req.message.strip():
		raise HTTPException(status_code=400, detail="Bitte gib eine Antwort ein.")
	_require_dialog_phase(lesson)
	try:
		result = await dialog.continue_dialog(db, client, lesson, user.id, req.message.strip())
	except Exception as err:
		logger.error("Dialog turn failed for lesson %s: %s", lesson.id, err)
		raise HTTPException(status_code=500, detail=DIALOG_FAILED)
	if result["answerCount"] == 1:
		background_tasks.add_task(run_story_generation, lesson.id, user.id)
	return result


@router.post("/dialog/assess")
async def assess(
	lesson: Lesson = Depends(user_lesson),
	user: AuthUser = Depends(get_current_user),
	db: Session = Depends(get_db),
	client: OpenAIClient = Depends(get_ai_client),
):
	_require_dialog_phase(lesson)
	try:
		assessment = await dialog.force_assessment(db, client, lesson, user.id)
	except Exception as err:
		logger.error("Forced assessment failed for lesson %s: %s", lesson.id, err)
		raise HTTPException(status_code=500, detail=DIALOG_FAILED)
	return {"assessment": assessment}


@router.post("/voice/start")
async def voice_start(
	lesson: Lesson = Depends(user_lesson),
	user: AuthUser = Depends(get_current_user),
	db: Session = Depends(get_db),
	client: OpenAIClient = Depends(get_ai_client),
):
	_require_dialog_phase(lesson)
	try:
		return await dialog.start_voice_dialog(db, client, lesson, user)
	except VoiceDialogError as err:
		return _voice_error(err)


@router.post("/voice/transcribe")
async def voice_transcribe(
	audio: UploadFile = File(...),
	lesson: Lesson = Depends(user_lesson),
	client: OpenAIClient = Depends(get_ai_client),
):
	data = await audio.read()
	try:
		transcript = await dialog.transcribe_audio(
			client,
			data,
			audio.filename or "audio.webm",
			audio.content_type or "audio/webm",
		)
	except VoiceDialogError as err:
		return _voice_error(err)
	return {"transcript": transcript}


@router.post("/voice/answer")
async def voice_answer(
	req: VoiceAnswerRequest,
	background_tasks: BackgroundTasks,
	lesson: Lesson = Depends(user_lesson),
	user: AuthUser = Depends(get_current_user),
	db: Session = Depends(get_db),
	client: OpenAIClient = Depends(get_ai_client),
):
	if not isinstance(req.transcript, str):
		raise HTTPException(status_code=400, detail="Ungültiges Transkript.")
	_require_dialog_phase(lesson)
	try:
		result = await dialog.process_voice_input(db, client, lesson, user, req.transcript)
	except ValueError as err:
		raise HTTPException(status_code=400, detail=str(err))
	except VoiceDialogError as err:
		return _voice_error(err)
	if result["answerCount"] == 1:
		background_tasks.add_task(run_story_generation, lesson.id, user.id)
	return result


@router.post("/voice/assess")
async def voice_assess(
	background_tasks: BackgroundTasks,
	lesson: Lesson = Depends(user_lesson),
	user: AuthUser = Depends(get_current_user),
	db: Session = Depends(get_db),
	client: OpenAIClient = Depends(get_ai_client),
):
	_require_dialog_phase(lesson)
	try:
		result = await dialog.force_voice_assessment(db, client, lesson, user)
	except VoiceDialogError as err:
		return _voice_error(err)
	if not result["storyReady"]:
		background_tasks.add_task(run_story_generation, lesson.id, user.id)
	return result
