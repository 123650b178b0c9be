from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session

from ..cache import revalidate_tag
from ..db import get_db
from ..models import AuthUser
from ..profile import ProfileUpdate, completes_onboarding, is_profile_complete, profile_changes, profile_completeness, serialize_profile
from ..queries import get_cached_user_profile
from .auth import get_current_user


router = APIRouter(prefix="/api/profile", tags=["profile"])

logger = logging.getLogger(__name__)


def _field_errors(err: ValidationError) -> Dict[str, List[str]]:
	details: Dict[str, List[str]] = {}
	for error in err.errors():
		field = str(error["loc"][0]) if error["loc"] else "_"
		details.setdefault(field, []).append(error["msg"])
	return details


@router.get("/update")
def get_profile(user: AuthUser = Depends(get_current_user), db: Session = Depends(get_db)):
	profile = get_cached_user_profile(db, user.id)
	return {
		"success": True,
		"user": profile,
		"isComplete": is_profile_complete(profile),
		"completeness": profile_completeness(profile),
	}


@router.post("/update")
def update_profile(
	payload: Any = Body(...),
	user: AuthUser = Depends(get_current_user),
	db: Session = Depends(get_db),
):
	if not isinstance(payload, dict):
		return JSONResponse(status_code=400, content={"detail": "Validierungsfehler", "details": {"_": ["Ungültiger Request-Body"]}})
	try:
		update = ProfileUpdate.model_validate(payload)
	except ValidationError as err:
		return JSONResponse(status_code=400, content={"detail": "Validierungsfehler", "details": _field_errors(err)})

	changes = profile_changes(update)
	if completes_onboarding(update):
		changes["onboarding_completed"] = True
	if not changes:
		return JSONResponse(status_code=400, content={"detail": "Keine Felder zum Updaten vorhanden"})

	for column, value in changes.items():
		setattr(user, column, value)
	user.profile_updated_at = datetime.utcnow()
	db.commit()
	db.refresh(user)
	revalidate_tag("users")
	revalidate_tag("lessons")
	logger.info("Profile updated for user %s: %s", user.id, sorted(changes))
	return {"success": True, "user": serialize_profile(user), "message": "Profil erfolgreich aktualisiert"}
