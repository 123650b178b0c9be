from __future__ import annotations
from typing import Any, Dict, List

from pydantic import BaseModel, Field, ValidationError

from .errors import GenerationError
from .openai_client import OpenAIClient
from .settings import settings


class TopicSuggestion(BaseModel):
	id: str = Field(min_length=1)
	title: str = Field(min_length=1)
	description: str = Field(min_length=1)
	emoji: str = Field(min_length=1)


class TopicSuggestions(BaseModel):
	suggestions: List[TopicSuggestion] = Field(min_length=3, max_length=3)


SYSTEM_PROMPT = """Du bist ein Experte für didaktische Themenverfeinerung und Lerndesign.

**AUFGABE:**
Der Nutzer gibt ein breites Thema ein. Deine Aufgabe ist es, 3 präzise, lernbare Sub-Themen zu generieren, die:
1. Spezifisch und fokussiert sind (nicht zu breit)
2. Für Lernkarten gut geeignet sind
3. Verschiedene Aspekte des Hauptthemas abdecken
4. Interessant und relevant für Lernende sind

**OUTPUT-FORMAT (JSON):**
{
  "suggestions": [
    {
      "id": "1",
      "title": "Prägnanter Titel (max. 50 Zeichen)",
      "description": "Kurze Beschreibung was gelernt wird (max. 100 Zeichen)",
      "emoji": "Ein passendes Emoji"
    }
  ]
}

**WICHTIGE REGELN:**
- Genau 3 Vorschläge
- Verwende IMMER deutsche Sprache für title und description
- Wähle verschiedene Aspekte (z.B. Theorie, Praxis, Geschichte)
- Emoji sollte thematisch passen"""


async def suggest_topics(client: OpenAIClient, topic: str) -> List[Dict[str, Any]]:
	data = await client.chat_json(
		[
			{"role": "system", "content": SYSTEM_PROMPT},
			{"role": "user", "content": f"Thema: {topic}\n\nGeneriere 3 spezifische, lernbare Sub-Themen für dieses Thema."},
		],
		model=settings.openai_selection_model,
		temperature=0.7,
	)
	try:
		parsed = TopicSuggestions.model_validate(data)
	except ValidationError as err:
		raise GenerationError(f"Ungültiges OpenAI Response Format: {err.error_count()} errors") from err
	return [s.model_dump() for s in parsed.suggestions]
