import json
import os
import re
import sys
import tempfile
import uuid

import pytest
from fastapi.testclient import TestClient

# Configure the app before it is imported
_DB_DIR = tempfile.mkdtemp(prefix="lernfast-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'test.db')}"
os.environ["OPENAI_API_KEY"] = "sk-test"
os.environ["JWT_SECRET_KEY"] = "test-secret"
os.environ["APP_ENV"] = "development"
os.environ.pop("N8N_WEBHOOK_URL", None)
os.environ.pop("OPENROUTER_API_KEY", None)

# Ensure backend/ is importable so the `lernfast` package resolves
BACKEND_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "backend"))
if BACKEND_DIR not in sys.path:
	sys.path.insert(0, BACKEND_DIR)

from lernfast import openai_client  # noqa: E402
from lernfast.cache import query_cache  # noqa: E402
from lernfast.db import Base, engine  # noqa: E402
from lernfast.main import app  # noqa: E402

NARRATIVE = (
	"Es war einmal eine neugierige Lernende, die verstehen wollte, wie die Welt funktioniert. "
	"Sie stellte Fragen, sammelte Beobachtungen und entdeckte Schritt für Schritt die Zusammenhänge, "
	"die hinter dem Thema stehen."
)


class FakeAIClient:
	"""Stands in for OpenAIClient; answers are picked by markers in the system prompt."""

	def __init__(self):
		self.calls = []
		self.speech_inputs = []
		self.ready_for_story = True
		self.knowledge_level = "intermediate"
		self.confidence = 72
		self.suggestion_count = 3
		self.fail_chat = False

	async def chat(self, messages, *, model=None, json_mode=False, temperature=None, max_tokens=None):
		message = await self.chat_message(
			messages, model=model, json_mode=json_mode, temperature=temperature, max_tokens=max_tokens
		)
		return message.get("content") or ""

	async def chat_json(self, messages, *, model=None, temperature=None):
		return openai_client.extract_json_object(await self.chat(messages, model=model, json_mode=True))

	async def chat_message(
		self,
		messages,
		*,
		model=None,
		json_mode=False,
		tools=None,
		tool_choice=None,
		temperature=None,
		max_tokens=None,
		allow_fallback=False,
	):
		system = messages[0]["content"] if messages else ""
		self.calls.append({
			"system": system,
			"messages": messages,
			"model": model,
			"tools": tools,
			"tool_choice": tool_choice,
			"max_tokens": max_tokens,
			"temperature": temperature,
		})
		if self.fail_chat:
			raise RuntimeError("model unavailable")
		if tools and isinstance(tool_choice, dict):
			return {
				"role": "assistant",
				"content": None,
				"tool_calls": [{
					"id": "call_1",
					"type": "function",
					"function": {
						"name": "assessKnowledge",
						"arguments": json.dumps({
							"knowledgeLevel": self.knowledge_level,
							"confidence": self.confidence,
							"readyForStory": self.ready_for_story,
						}),
					},
				}],
			}
		return {"role": "assistant", "content": self._respond(system)}

	def _respond(self, system):
		if "Themenverfeinerung" in system:
			return json.dumps({"suggestions": [
				{"id": str(i + 1), "title": f"Vorschlag {i + 1}", "description": "Beschreibung", "emoji": "📘"}
				for i in range(self.suggestion_count)
			]})
		if "Recherche-Experte" in system:
			return json.dumps({
				"topic": "Photosynthese",
				"facts": ["Fakt A", "Fakt B", "Fakt C", "Fakt D"],
				"concepts": [{"name": "Chlorophyll", "description": "Grüner Farbstoff", "relationships": ["Licht"]}],
				"examples": ["Blatt"],
				"keyTakeaways": ["Licht wird zu Energie"],
			})
		if "Kurzrecherche" in system:
			return json.dumps({
				"topic": "Photosynthese",
				"facts": ["Kurzfakt"],
				"concepts": [{"name": "Licht", "description": "Energiequelle"}],
				"examples": [],
				"keyTakeaways": ["Pflanzen nutzen Licht"],
			})
		if "Bildungs-Assessor" in system:
			return json.dumps({
				"knowledgeLevel": self.knowledge_level,
				"confidence": self.confidence,
				"reasoning": "Solide Grundlagen",
			})
		if "Storytelling-Experte" in system:
			count = int(re.search(r"GENAU (\d+) Kapiteln", system).group(1))
			chapters = []
			for i in range(count):
				chart = [{"name": "A", "value": 1}, {"name": "B", "value": 2}] if i == 0 else [
					{"name": "X", "value": 10},
					{"name": "Y", "value": 20},
					{"name": "Z", "value": 30},
				]
				chapters.append({
					"chapterNumber": i + 1,
					"chapterTitle": f"Kapitel {i + 1}",
					"narrative": NARRATIVE,
					"keyLearnings": ["Erstens", "Zweitens"],
					"visualizationType": "timeline",
					"visualizationData": {"title": f"Grafik {i + 1}", "chartData": chart},
				})
			return json.dumps({"chapters": chapters})
		if "Quiz-Ersteller" in system:
			count = int(re.search(r"GENAU (\d+) Multiple-Choice", system).group(1))
			difficulties = ["easy", "medium", "hard"]
			return json.dumps({"questions": [
				{
					"question": f"Frage Nummer {i + 1} zur Geschichte?",
					"options": ["A", "B", "C", "D"],
					"correctAnswer": 1,
					"difficulty": difficulties[i % 3],
					"explanation": "Weil B in der Geschichte erklärt wurde.",
				}
				for i in range(count)
			]})
		if "Begrüßung" in system:
			return "Hallo! Schön, dass du da bist. Was weißt du schon über das Thema?"
		if "Duze den Nutzer" in system:
			return "Spannend! Kannst du ein Beispiel nennen?"
		if "Einstiegsfrage" in system:
			return "Was weißt du bereits über Photosynthese?"
		if "STRIKTE REGEL" in system:
			return "Welche Rolle spielt das Licht dabei?"
		return "OK"

	async def speech(self, text, *, voice, model=None, response_format="mp3"):
		self.speech_inputs.append((text, voice))
		return b"ID3-fake-audio"

	async def transcribe(self, audio, *, filename="audio.webm", content_type="audio/webm", language="de", model=None):
		return "Ich weiß, dass Pflanzen Licht brauchen."

	async def aclose(self):
		pass


@pytest.fixture(autouse=True)
def fake_ai(monkeypatch):
	fake = FakeAIClient()
	monkeypatch.setattr(openai_client, "new_client", lambda model=None: fake)
	return fake


@pytest.fixture(autouse=True)
def reset_db():
	Base.metadata.drop_all(bind=engine)
	Base.metadata.create_all(bind=engine)
	query_cache.clear()
	yield
	query_cache.clear()


@pytest.fixture
def client():
	return TestClient(app)


def register_and_login(client, email=None, password="geheim123", name="Testnutzer"):
	email = email or f"u-{uuid.uuid4().hex[:8]}@example.com"
	r = client.post("/api/auth/register", json={"email": email, "password": password, "name": name})
	assert r.status_code == 201, r.text
	r = client.post("/api/auth/token", data={"username": email, "password": password})
	assert r.status_code == 200, r.text
	return {"Authorization": f"Bearer {r.json()['access_token']}"}


@pytest.fixture
def auth_headers(client):
	return register_and_login(client)


@pytest.fixture
def lesson_id(client, auth_headers):
	r = client.post(
		"/api/trigger-lesson",
		json={"topic": "Photosynthese", "lessonType": "micro_dose"},
		headers=auth_headers,
	)
	assert r.status_code == 201, r.text
	return r.json()["lessonId"]
