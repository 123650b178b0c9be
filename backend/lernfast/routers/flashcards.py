from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..cache import invalidate_lesson_cache
from ..db import get_db
from ..models import AuthUser, Flashcard
from .auth import get_current_user


router = APIRouter(prefix="/api/flashcard", tags=["flashcards"])


class MarkLearnedRequest(BaseModel):
	flashcardId: Optional[Any] = None
	isLearned: Optional[Any] = None


@router.post("/mark-learned")
def mark_learned(req: MarkLearnedRequest, user: AuthUser = Depends(get_current_user), db: Session = Depends(get_db)):
	if not isinstance(req.flashcardId, str) or not req.flashcardId:
		raise HTTPException(status_code=400, detail="Ungültige Flashcard-ID.")
	if not isinstance(req.isLearned, bool):
		raise HTTPException(status_code=400, detail="isLearned muss ein Boolean sein.")
	card = db.get(Flashcard, req.flashcardId)
	if card is None:
		raise HTTPException(status_code=404, detail="Flashcard nicht gefunden.")
	if card.lesson.user_id != user.id:
		raise HTTPException(status_code=403, detail="Keine Berechtigung für diese Flashcard.")
	card.is_learned = req.isLearned
	db.commit()
	invalidate_lesson_cache(card.lesson_id)
	return {"success": True, "flashcardId": card.id, "isLearned": card.is_learned}
