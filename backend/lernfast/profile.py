from __future__ import annotations
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


LANGUAGES = ("de", "en", "es", "fr", "it")
EXPERIENCE_LEVELS = ("beginner", "intermediate", "advanced")
DIFFICULTY_LEVELS = ("easy", "medium", "hard")
TTS_VOICES = ("alloy", "echo", "fable", "onyx", "nova", "shimmer")
DIALOG_MODES = ("text", "voice")

LANGUAGE_LABELS = {"de": "Deutsch", "en": "English", "es": "Español", "fr": "Français", "it": "Italiano"}
EXPERIENCE_LEVEL_LABELS = {"beginner": "Anfänger", "intermediate": "Fortgeschritten", "advanced": "Experte"}
DIFFICULTY_LEVEL_LABELS = {"easy": "Einfach", "medium": "Mittel", "hard": "Schwer"}

_COMPLETENESS_FIELDS = ("name", "age", "language", "learningGoals", "experienceLevel", "preferredDifficulty")


class ProfileUpdate(BaseModel):
	"""Partial profile update; only fields present in the payload are written."""
	model_config = ConfigDict(extra="forbid")

	name: Optional[str] = Field(default=None, min_length=2, max_length=100)
	age: Optional[int] = Field(default=None, ge=6, le=120)
	language: Optional[Literal["de", "en", "es", "fr", "it"]] = None
	learningGoals: Optional[str] = Field(default=None, max_length=500)
	experienceLevel: Optional[Literal["beginner", "intermediate", "advanced"]] = None
	preferredDifficulty: Optional[Literal["easy", "medium", "hard"]] = None
	preferredCardCount: Optional[int] = Field(default=None, ge=3, le=20)
	ttsVoice: Optional[Literal["alloy", "echo", "fable", "onyx", "nova", "shimmer"]] = None
	avatarPreference: Optional[Dict[str, Any]] = None
	dialogMode: Optional[Literal["text", "voice"]] = None


# payload field -> auth_users column
PROFILE_COLUMNS = {
	"name": "name",
	"age": "age",
	"language": "language",
	"learningGoals": "learning_goals",
	"experienceLevel": "experience_level",
	"preferredDifficulty": "preferred_difficulty",
	"preferredCardCount": "preferred_card_count",
	"ttsVoice": "tts_voice",
	"avatarPreference": "avatar_preference",
	"dialogMode": "dialog_mode",
}

# Columns that must stay non-null in the database
_NOT_NULL = {"name", "language", "experienceLevel", "preferredDifficulty", "preferredCardCount", "ttsVoice", "dialogMode"}


def profile_changes(update: ProfileUpdate) -> Dict[str, Any]:
	changes: Dict[str, Any] = {}
	for field in update.model_fields_set:
		value = getattr(update, field)
		if value is None and field in _NOT_NULL:
			continue
		changes[PROFILE_COLUMNS[field]] = value
	return changes


def completes_onboarding(update: ProfileUpdate) -> bool:
	return bool(update.age and update.language and update.learningGoals and update.experienceLevel)


def serialize_profile(user) -> Dict[str, Any]:
	return {
		"id": user.id,
		"email": user.email,
		"name": user.name,
		"image": user.image,
		"emailVerified": user.email_verified,
		"age": user.age,
		"language": user.language,
		"learningGoals": user.learning_goals,
		"experienceLevel": user.experience_level,
		"preferredDifficulty": user.preferred_difficulty,
		"preferredCardCount": user.preferred_card_count,
		"onboardingCompleted": user.onboarding_completed,
		"profileUpdatedAt": user.profile_updated_at.isoformat() if user.profile_updated_at else None,
		"ttsVoice": user.tts_voice,
		"avatarPreference": user.avatar_preference,
		"dialogMode": user.dialog_mode,
		"createdAt": user.created_at.isoformat() if user.created_at else None,
		"updatedAt": user.updated_at.isoformat() if user.updated_at else None,
	}


def is_profile_complete(profile: Dict[str, Any]) -> bool:
	return all(profile.get(field) for field in _COMPLETENESS_FIELDS)


def profile_completeness(profile: Dict[str, Any]) -> int:
	filled = sum(1 for field in _COMPLETENESS_FIELDS if profile.get(field))
	return round(filled / len(_COMPLETENESS_FIELDS) * 100)


def profile_context(user) -> Dict[str, Any]:
	"""Personalisation hints passed into research and dialog prompts."""
	if user is None:
		return {}
	return {
		"age": user.age,
		"language": user.language,
		"learningGoals": user.learning_goals,
		"experienceLevel": user.experience_level,
		"preferredDifficulty": user.preferred_difficulty,
	}
