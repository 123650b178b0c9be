from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .db import Base, engine, SessionLocal, ensure_schema
from .cleanup import purge_stale_rows
from .settings import settings
from .routers import auth
from .routers import lessons
from .routers import flashcards
from .routers import topics
from .routers import research
from .routers import dialog
from .routers import story
from .routers import quiz
from .routers import tts
from .routers import profile
from .routers import debug
import asyncio
import logging

logging.basicConfig(
	level=getattr(logging, settings.log_level.upper(), logging.INFO),
	format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="lernfa.st API")
app.include_router(auth.router)
app.include_router(lessons.router)
app.include_router(flashcards.router)
app.include_router(topics.router)
app.include_router(research.router)
app.include_router(dialog.router)
app.include_router(story.router)
app.include_router(quiz.router)
app.include_router(tts.router)
app.include_router(profile.router)
app.include_router(debug.router)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
	logger.exception("Unhandled error on %s %s", request.method, request.url.path)
	return JSONResponse(status_code=500, content={"detail": "Ein unerwarteter Fehler ist aufgetreten."})


@app.get("/health")
def health():
	return {"status": "ok"}


@app.get("/info")
def root():
	return {
		"status": "ok",
		"openai_configured": bool(settings.openai_api_key),
		"workflow_configured": bool(settings.n8n_webhook_url),
		"environment": settings.app_env,
	}


def _run_cleanup() -> None:
	db = SessionLocal()
	try:
		purge_stale_rows(db)
	except Exception:
		db.rollback()
		logger.exception("Cleanup run failed")
	finally:
		db.close()


async def _cleanup_watcher():
	# Startup already ran once; repeat daily
	while True:
		await asyncio.sleep(24 * 60 * 60)
		_run_cleanup()


@app.on_event("startup")
async def startup_event():
	# Initialize DB schema
	Base.metadata.create_all(bind=engine)
	# Apply lightweight migrations
	ensure_schema()
	db = SessionLocal()
	try:
		auth.ensure_seed_user(db)
	finally:
		db.close()
	_run_cleanup()
	asyncio.create_task(_cleanup_watcher())
