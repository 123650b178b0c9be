from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, Optional

from fastapi import APIRouter, HTTPException
from sqlalchemy import inspect, text

from ..db import engine
from ..settings import settings


router = APIRouter(prefix="/api", tags=["debug"])

REQUIRED_TABLES = ("auth_users", "auth_sessions", "lesson", "flashcard", "lesson_score")


def _presence(value: Optional[str]) -> str:
	return "✅ Gesetzt" if value else "❌ FEHLT"


def environment_report() -> Dict[str, str]:
	return {
		"DATABASE_URL": _presence(settings.database_url),
		"OPENAI_API_KEY": _presence(settings.openai_api_key),
		"OPENROUTER_API_KEY": _presence(settings.openrouter_api_key),
		"JWT_SECRET_KEY": f"✅ Gesetzt (Länge: {len(settings.jwt_secret_key)} Zeichen)",
		"N8N_WEBHOOK_URL": _presence(settings.n8n_webhook_url),
		"APP_ENV": settings.app_env,
	}


@router.get("/debug")
def debug():
	if not (settings.is_development or settings.debug_endpoint_enabled):
		raise HTTPException(status_code=403, detail="Debug-Endpunkt ist deaktiviert.")

	# Failures are reported in the response body; this endpoint exists to surface them
	try:
		with engine.connect() as conn:
			conn.execute(text("SELECT 1"))
		connection = "✅ Verbindung erfolgreich"
	except Exception as err:
		connection = f"❌ Fehler: {err}"

	try:
		tables = set(inspect(engine).get_table_names())
		missing = [t for t in REQUIRED_TABLES if t not in tables]
		if missing:
			table_check = f"❌ Fehlende Tabellen: {', '.join(missing)}"
		else:
			table_check = f"✅ Alle Tabellen vorhanden: {', '.join(REQUIRED_TABLES)}"
	except Exception as err:
		table_check = f"❌ Fehler: {err}"

	return {
		"timestamp": datetime.now(timezone.utc).isoformat(),
		"environment": environment_report(),
		"databaseConnection": connection,
		"databaseTables": table_check,
	}
