from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .. import openai_client
from ..models import AuthUser
from ..settings import settings
from ..topics import suggest_topics
from .auth import get_current_user


router = APIRouter(prefix="/api", tags=["topics"])

logger = logging.getLogger(__name__)


class SuggestTopicsRequest(BaseModel):
	topic: Optional[Any] = None


@router.post("/suggest-topics")
async def suggest(
	req: SuggestTopicsRequest,
	user: AuthUser = Depends(get_current_user),
):
	if not isinstance(req.topic, str) or not req.topic.strip():
		raise HTTPException(status_code=400, detail="Bitte gib ein gültiges Thema ein.")
	if not settings.openai_api_key:
		raise HTTPException(status_code=500, detail="OpenAI API Key nicht konfiguriert.")
	client = openai_client.new_client()
	try:
		suggestions = await suggest_topics(client, req.topic.strip())
	except Exception as err:
		logger.error("Topic suggestion failed for user %s: %s", user.id, err)
		content = {"detail": "Fehler bei der Topic-Suggestion-Generierung. Bitte versuche es erneut."}
		if settings.is_development:
			content["details"] = str(err)
		return JSONResponse(status_code=500, content=content)
	finally:
		await client.aclose()
	return {"success": True, "suggestions": suggestions}
