from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from ..models import AuthUser
from ..openai_client import OpenAIClient
from ..speech import generate_speech_audio
from .auth import get_current_user
from .deps import get_ai_client


router = APIRouter(prefix="/api", tags=["tts"])

logger = logging.getLogger(__name__)


class TTSRequest(BaseModel):
	text: Optional[Any] = None
	language: Optional[str] = "de"
	voice: Optional[str] = None


@router.post("/tts")
async def tts(
	req: TTSRequest,
	user: AuthUser = Depends(get_current_user),
	client: OpenAIClient = Depends(get_ai_client),
):
	text = req.text if isinstance(req.text, str) else ""
	try:
		audio_url = await generate_speech_audio(client, text, req.language or "de", req.voice)
	except ValueError as err:
		raise HTTPException(status_code=400, detail=str(err))
	except Exception as err:
		logger.error("[TTS] Speech generation failed for user %s: %s", user.id, err)
		raise HTTPException(status_code=500, detail="Fehler bei der Audio-Generierung. Bitte versuche es erneut.")
	return {"audioUrl": audio_url}
