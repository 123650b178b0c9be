from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

class Settings(BaseSettings):
	openai_api_key: str | None = Field(default=None, validation_alias="OPENAI_API_KEY")
	openai_base_url: str = Field(default="https://api.openai.com/v1", validation_alias="OPENAI_BASE_URL")
	# Dialog, topic suggestions and light research
	openai_selection_model: str = Field(default="gpt-4o-mini", validation_alias="OPENAI_SELECTION_MODEL")
	# Research + story per lesson type
	openai_micro_dose_model: str = Field(default="gpt-4.1-mini", validation_alias="OPENAI_MICRO_DOSE_MODEL")
	openai_deep_dive_model: str = Field(default="o4-mini", validation_alias="OPENAI_DEEP_DIVE_MODEL")
	# Quiz generation
	openai_structure_model: str = Field(default="gpt-4.1-mini", validation_alias="OPENAI_STRUCTURE_MODEL")
	openai_tts_model: str = Field(default="tts-1", validation_alias="OPENAI_TTS_MODEL")
	openai_stt_model: str = Field(default="whisper-1", validation_alias="OPENAI_STT_MODEL")
	openai_timeout_seconds: float = Field(default=60.0, validation_alias="OPENAI_TIMEOUT_SECONDS")

	# OpenRouter fallback configuration (optional, plain chat only)
	openrouter_api_key: str | None = Field(default=None, validation_alias="OPENROUTER_API_KEY")
	openrouter_model: str = Field(default="openai/gpt-4o-mini", validation_alias="OPENROUTER_MODEL")
	openrouter_base_url: str = Field(default="https://openrouter.ai/api/v1/chat/completions", validation_alias="OPENROUTER_BASE_URL")
	openrouter_referer: str = Field(default="https://lernfa.st", validation_alias="OPENROUTER_HTTP_REFERER")
	openrouter_title: str = Field(default="lernfa.st", validation_alias="OPENROUTER_TITLE")

	# Auth configuration
	jwt_secret_key: str = Field(default="change-me", validation_alias="JWT_SECRET_KEY")
	jwt_algorithm: str = Field(default="HS256", validation_alias="JWT_ALGORITHM")
	access_token_expire_minutes: int = Field(default=60 * 24 * 7, validation_alias="ACCESS_TOKEN_EXPIRE_MINUTES")
	session_max_age_days: int = Field(default=30, validation_alias="SESSION_MAX_AGE_DAYS")
	# Seed user (development)
	seed_email: str | None = Field(default=None, validation_alias="SEED_EMAIL")
	seed_password_plain: str | None = Field(default=None, validation_alias="SEED_PASSWORD")

	# Database
	database_url: str | None = Field(default=None, validation_alias="DATABASE_URL")

	# External lesson workflow; when unset lessons are researched in-process
	n8n_webhook_url: str | None = Field(default=None, validation_alias="N8N_WEBHOOK_URL")

	app_env: str = Field(default="production", validation_alias="APP_ENV")
	debug_endpoint_enabled: bool = Field(default=False, validation_alias="DEBUG_ENDPOINT_ENABLED")
	log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

	dialog_max_answers: int = Field(default=5, validation_alias="DIALOG_MAX_ANSWERS")

	model_config = SettingsConfigDict(env_file=".env", extra="ignore")

	@property
	def is_development(self) -> bool:
		return self.app_env.lower() == "development"

settings = Settings()
