import asyncio
import base64

import pytest

from conftest import FakeAIClient
from lernfast.settings import settings
from lernfast.speech import generate_speech_audio, sanitize_text, select_voice


def test_sanitize_text_strips_markup():
	text = "<p>Hallo   <b>Welt</b></p>\n```python\nprint(1)\n```\nmit `code`"
	assert sanitize_text(text) == "Hallo Welt mit code"


def test_select_voice():
	assert select_voice("de") == "onyx"
	assert select_voice("fr") == "fable"
	assert select_voice("pt") == "nova"
	assert select_voice("de", "echo") == "echo"


def test_generate_speech_audio_returns_data_url():
	fake = FakeAIClient()
	url = asyncio.run(generate_speech_audio(fake, "<i>Guten Tag</i>", "it"))
	assert url == "data:audio/mp3;base64," + base64.b64encode(b"ID3-fake-audio").decode("ascii")
	assert fake.speech_inputs == [("Guten Tag", "shimmer")]


def test_generate_speech_audio_validates_length():
	fake = FakeAIClient()
	with pytest.raises(ValueError, match="Text darf nicht leer sein."):
		asyncio.run(generate_speech_audio(fake, "   "))
	with pytest.raises(ValueError):
		asyncio.run(generate_speech_audio(fake, "a" * 4097))


def test_tts_route(client, auth_headers, fake_ai):
	r = client.post("/api/tts", json={"text": "Hallo", "voice": "alloy"}, headers=auth_headers)
	assert r.status_code == 200
	assert r.json()["audioUrl"].startswith("data:audio/mp3;base64,")
	assert fake_ai.speech_inputs[-1] == ("Hallo", "alloy")
	r = client.post("/api/tts", json={"text": ""}, headers=auth_headers)
	assert r.status_code == 400
	assert r.json()["detail"] == "Text darf nicht leer sein."


def test_suggest_topics(client, auth_headers):
	r = client.post("/api/suggest-topics", json={"topic": "Biologie"}, headers=auth_headers)
	assert r.status_code == 200
	suggestions = r.json()["suggestions"]
	assert len(suggestions) == 3
	assert set(suggestions[0]) == {"id", "title", "description", "emoji"}


def test_suggest_topics_validation(client, auth_headers, monkeypatch):
	assert client.post("/api/suggest-topics", json={"topic": ""}, headers=auth_headers).status_code == 400
	monkeypatch.setattr(settings, "openai_api_key", None)
	r = client.post("/api/suggest-topics", json={"topic": "Biologie"}, headers=auth_headers)
	assert r.status_code == 500
	assert r.json()["detail"] == "OpenAI API Key nicht konfiguriert."


def test_suggest_topics_rejects_wrong_count(client, auth_headers, fake_ai):
	fake_ai.suggestion_count = 2
	r = client.post("/api/suggest-topics", json={"topic": "Biologie"}, headers=auth_headers)
	assert r.status_code == 500
	body = r.json()
	assert body["detail"] == "Fehler bei der Topic-Suggestion-Generierung. Bitte versuche es erneut."
	assert "details" in body
