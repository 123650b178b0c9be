from fastapi import Depends, HTTPException
from sqlalchemy.orm import Session

from .. import openai_client
from ..db import get_db
from ..models import AuthUser, Lesson
from ..store import owned_lesson
from .auth import get_current_user


async def get_ai_client():
	try:
		client = openai_client.new_client()
	except ValueError:
		raise HTTPException(status_code=500, detail="OpenAI API Key nicht konfiguriert.")
	try:
		yield client
	finally:
		await client.aclose()


def user_lesson(
	lesson_id: str,
	user: AuthUser = Depends(get_current_user),
	db: Session = Depends(get_db),
) -> Lesson:
	return owned_lesson(db, lesson_id, user.id)
