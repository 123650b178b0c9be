import asyncio
from types import SimpleNamespace

import pytest

from lernfast import errors
from lernfast.errors import VoiceDialogError, with_retry


def _voice_answer(client, headers, lesson_id, transcript="Pflanzen machen aus Licht Zucker."):
	return client.post(f"/api/lesson/{lesson_id}/voice/answer", json={"transcript": transcript}, headers=headers)


def test_voice_start_returns_text_and_audio(client, auth_headers, lesson_id, fake_ai):
	r = client.post(f"/api/lesson/{lesson_id}/voice/start", headers=auth_headers)
	assert r.status_code == 200
	body = r.json()
	assert body["text"].startswith("Hallo!")
	assert body["audioUrl"].startswith("data:audio/mp3;base64,")
	# default profile voice
	assert fake_ai.speech_inputs[-1][1] == "nova"


def test_voice_start_falls_back_to_canned_question(client, auth_headers, lesson_id, fake_ai):
	fake_ai.fail_chat = True
	r = client.post(f"/api/lesson/{lesson_id}/voice/start", headers=auth_headers)
	assert r.status_code == 200
	assert r.json()["text"] == (
		"Hallo! Ich möchte dein Vorwissen zu Photosynthese kennenlernen. "
		"Lass uns direkt starten: Was weißt du bereits über dieses Thema?"
	)


def test_transcribe_upload(client, auth_headers, lesson_id):
	r = client.post(
		f"/api/lesson/{lesson_id}/voice/transcribe",
		files={"audio": ("antwort.webm", b"\x1a\x45\xdf\xa3", "audio/webm")},
		headers=auth_headers,
	)
	assert r.status_code == 200
	assert r.json()["transcript"] == "Ich weiß, dass Pflanzen Licht brauchen."


def test_voice_answer_rejects_empty_transcript(client, auth_headers, lesson_id):
	assert _voice_answer(client, auth_headers, lesson_id, transcript="").status_code == 400
	assert _voice_answer(client, auth_headers, lesson_id, transcript="x" * 32769).status_code == 400


def test_voice_flow_until_assessment(client, auth_headers, lesson_id, fake_ai):
	client.post(f"/api/lesson/{lesson_id}/voice/start", headers=auth_headers)
	for turn in range(1, 5):
		body = _voice_answer(client, auth_headers, lesson_id).json()
		assert body["answerCount"] == turn
		assert body["shouldAssess"] is False
		assert body["text"] == "Spannend! Kannst du ein Beispiel nennen?"
	coach_calls = [c for c in fake_ai.calls if "Duze den Nutzer" in c["system"] and "Begrüßung" not in c["system"]]
	assert all(c["max_tokens"] == 200 and c["temperature"] == 0.7 for c in coach_calls)

	body = _voice_answer(client, auth_headers, lesson_id).json()
	assert body["shouldAssess"] is True

	r = client.post(f"/api/lesson/{lesson_id}/voice/assess", headers=auth_headers)
	assert r.status_code == 200
	result = r.json()
	assert result["assessment"]["knowledgeLevel"] == "intermediate"
	assert result["storyReady"] is True
	assert result["audioUrl"].startswith("data:audio/mp3;base64,")
	assert "Fortgeschritten" in result["summaryText"]

	state = client.get(f"/api/lesson/{lesson_id}/dialog", headers=auth_headers).json()
	assert state["phase"] == "story"
	assert state["history"] == []
	score = client.get(f"/api/lessons/{lesson_id}/score", headers=auth_headers).json()["score"]
	assert score["dialogScore"] == 72


def test_voice_error_carries_code(client, auth_headers, lesson_id, fake_ai, monkeypatch):
	async def _broken(*args, **kwargs):
		raise RuntimeError("whisper down")

	async def _no_sleep(seconds):
		return None

	monkeypatch.setattr(fake_ai, "transcribe", _broken)
	monkeypatch.setattr(errors, "asyncio", SimpleNamespace(sleep=_no_sleep))
	r = client.post(
		f"/api/lesson/{lesson_id}/voice/transcribe",
		files={"audio": ("antwort.webm", b"abc", "audio/webm")},
		headers=auth_headers,
	)
	assert r.status_code == 500
	assert r.json()["code"] == "WHISPER_FAILED"


def test_with_retry_backs_off_then_succeeds(monkeypatch):
	delays = []

	async def _record(seconds):
		delays.append(seconds)

	monkeypatch.setattr(errors, "asyncio", SimpleNamespace(sleep=_record))
	attempts = {"n": 0}

	async def _flaky():
		attempts["n"] += 1
		if attempts["n"] < 3:
			raise RuntimeError("temporary")
		return "ok"

	assert asyncio.run(with_retry(_flaky)) == "ok"
	assert delays == [1.0, 2.0]


def test_with_retry_reraises_last_error(monkeypatch):
	async def _record(seconds):
		return None

	monkeypatch.setattr(errors, "asyncio", SimpleNamespace(sleep=_record))

	async def _always():
		raise ValueError("nope")

	with pytest.raises(ValueError):
		asyncio.run(with_retry(_always, max_retries=1))


def test_voice_dialog_error_validates_code():
	assert VoiceDialogError("x", "TTS_FAILED").code == "TTS_FAILED"
	with pytest.raises(ValueError):
		VoiceDialogError("x", "UNKNOWN")


def test_voice_assessment_without_summary_audio(client, auth_headers, lesson_id, fake_ai, monkeypatch):
	speak = fake_ai.speech

	async def _speech(text, **kwargs):
		if "Wissensstand" in text:
			raise RuntimeError("tts down")
		return await speak(text, **kwargs)

	async def _no_sleep(seconds):
		return None

	monkeypatch.setattr(fake_ai, "speech", _speech)
	monkeypatch.setattr(errors, "asyncio", SimpleNamespace(sleep=_no_sleep))
	client.post(f"/api/lesson/{lesson_id}/voice/start", headers=auth_headers)
	_voice_answer(client, auth_headers, lesson_id)

	r = client.post(f"/api/lesson/{lesson_id}/voice/assess", headers=auth_headers)
	assert r.status_code == 200
	result = r.json()
	assert result["audioUrl"] is None
	assert result["assessment"]["phase"] == "story"
	assert "Wissensstand" in result["summaryText"]
