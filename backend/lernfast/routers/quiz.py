from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..db import get_db
from ..models import AuthUser, Lesson
from ..openai_client import OpenAIClient
from ..quiz import QuizAnswerError, answer_question, finish_lesson, generate_quiz_from_story, quiz_state
from .auth import get_current_user
from .deps import get_ai_client, user_lesson


router = APIRouter(prefix="/api/lesson/{lesson_id}", tags=["quiz"])

logger = logging.getLogger(__name__)


class QuizAnswerRequest(BaseModel):
	flashcardId: Optional[Any] = None
	selectedAnswer: Optional[Any] = None


class CompleteRequest(BaseModel):
	timeSpentSeconds: Optional[Any] = None


@router.post("/quiz/generate")
async def generate(
	lesson: Lesson = Depends(user_lesson),
	user: AuthUser = Depends(get_current_user),
	db: Session = Depends(get_db),
	client: OpenAIClient = Depends(get_ai_client),
):
	if lesson.current_phase == "dialog":
		raise HTTPException(status_code=409, detail="Das Quiz startet erst nach dem Dialog.")
	try:
		await generate_quiz_from_story(db, client, lesson, user.id)
	except Exception as err:
		logger.error("Quiz generation failed for lesson %s: %s", lesson.id, err)
		raise HTTPException(status_code=500, detail="Fehler bei der Quiz-Generierung. Bitte versuche es erneut.")
	return quiz_state(db, lesson, user.id, user.preferred_difficulty)


@router.get("/quiz")
def get_quiz(
	lesson: Lesson = Depends(user_lesson),
	user: AuthUser = Depends(get_current_user),
	db: Session = Depends(get_db),
):
	return quiz_state(db, lesson, user.id, user.preferred_difficulty)


@router.post("/quiz/answer")
def submit_answer(
	req: QuizAnswerRequest,
	lesson: Lesson = Depends(user_lesson),
	user: AuthUser = Depends(get_current_user),
	db: Session = Depends(get_db),
):
	if not isinstance(req.flashcardId, str) or not req.flashcardId:
		raise HTTPException(status_code=400, detail="Ungültige Flashcard-ID.")
	if not isinstance(req.selectedAnswer, int) or isinstance(req.selectedAnswer, bool):
		raise HTTPException(status_code=400, detail="Ungültige Antwortoption.")
	if lesson.current_phase != "quiz":
		raise HTTPException(status_code=409, detail="Die Lesson ist nicht in der Quiz-Phase.")
	try:
		return answer_question(db, lesson, user.id, req.flashcardId, req.selectedAnswer, user.preferred_difficulty)
	except QuizAnswerError as err:
		raise HTTPException(status_code=400, detail=str(err))


@router.post("/complete")
def complete(
	req: Optional[CompleteRequest] = None,
	lesson: Lesson = Depends(user_lesson),
	user: AuthUser = Depends(get_current_user),
	db: Session = Depends(get_db),
):
	time_spent = req.timeSpentSeconds if req is not None else None
	if time_spent is not None and (isinstance(time_spent, bool) or not isinstance(time_spent, (int, float)) or time_spent < 0):
		raise HTTPException(status_code=400, detail="Ungültige Lernzeit.")
	return finish_lesson(db, lesson, user.id, time_spent)
