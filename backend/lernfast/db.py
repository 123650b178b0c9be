from __future__ import annotations
from sqlalchemy import create_engine, inspect
from sqlalchemy.orm import sessionmaker, declarative_base
from .settings import settings


DATABASE_URL = settings.database_url or "sqlite:///./lernfast.db"

_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(DATABASE_URL, connect_args=_connect_args, future=True, pool_pre_ping=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)
Base = declarative_base()


def get_db():
	db = SessionLocal()
	try:
		yield db
	finally:
		db.close()


# Best-effort lightweight migrations for databases created before the
# interactive learning columns existed
def ensure_schema() -> None:
	try:
		inspector = inspect(engine)
		tables = set(inspector.get_table_names())
	except Exception:
		return
	if "lesson" in tables:
		cols = {c["name"] for c in inspector.get_columns("lesson")}
		with engine.begin() as conn:
			if "current_phase" not in cols:
				conn.exec_driver_sql("ALTER TABLE lesson ADD COLUMN current_phase VARCHAR(16) DEFAULT 'dialog' NOT NULL")
			if "research_data" not in cols:
				conn.exec_driver_sql("ALTER TABLE lesson ADD COLUMN research_data JSON")
			if "dialog_history" not in cols:
				conn.exec_driver_sql("ALTER TABLE lesson ADD COLUMN dialog_history JSON")
			if "refined_topic" not in cols:
				conn.exec_driver_sql("ALTER TABLE lesson ADD COLUMN refined_topic VARCHAR(512)")
	if "flashcard" in tables:
		cols = {c["name"] for c in inspector.get_columns("flashcard")}
		with engine.begin() as conn:
			if "learning_content" not in cols:
				conn.exec_driver_sql("ALTER TABLE flashcard ADD COLUMN learning_content JSON")
			if "visualizations" not in cols:
				conn.exec_driver_sql("ALTER TABLE flashcard ADD COLUMN visualizations JSON")
			if "phase" not in cols:
				conn.exec_driver_sql("ALTER TABLE flashcard ADD COLUMN phase VARCHAR(16)")
			if "order_index" not in cols:
				conn.exec_driver_sql("ALTER TABLE flashcard ADD COLUMN order_index INTEGER DEFAULT 0 NOT NULL")
	if "auth_users" in tables:
		cols = {c["name"] for c in inspector.get_columns("auth_users")}
		with engine.begin() as conn:
			if "tts_voice" not in cols:
				conn.exec_driver_sql("ALTER TABLE auth_users ADD COLUMN tts_voice VARCHAR(16) DEFAULT 'nova' NOT NULL")
			if "avatar_preference" not in cols:
				conn.exec_driver_sql("ALTER TABLE auth_users ADD COLUMN avatar_preference JSON")
			if "dialog_mode" not in cols:
				conn.exec_driver_sql("ALTER TABLE auth_users ADD COLUMN dialog_mode VARCHAR(16) DEFAULT 'text' NOT NULL")
