import httpx

from conftest import register_and_login
from lernfast.db import SessionLocal
from lernfast.models import Flashcard, Lesson
from lernfast.routers import lessons as lessons_router
from lernfast.settings import settings


def test_trigger_lesson_rejects_blank_topic(client, auth_headers):
	r = client.post("/api/trigger-lesson", json={"topic": "   ", "lessonType": "micro_dose"}, headers=auth_headers)
	assert r.status_code == 400
	assert r.json()["detail"] == "Bitte gib ein gültiges Thema ein."


def test_trigger_lesson_rejects_unknown_type(client, auth_headers):
	r = client.post("/api/trigger-lesson", json={"topic": "Physik", "lessonType": "marathon"}, headers=auth_headers)
	assert r.status_code == 400


def test_trigger_lesson_stores_research_and_upgrades_it(client, auth_headers, fake_ai):
	r = client.post("/api/trigger-lesson", json={"topic": "Photosynthese", "lessonType": "deep_dive"}, headers=auth_headers)
	assert r.status_code == 201
	body = r.json()
	assert body["success"] is True
	assert body["status"] == "completed"

	lesson = client.get(f"/api/lessons/{body['lessonId']}", headers=auth_headers).json()
	assert lesson["currentPhase"] == "dialog"
	assert lesson["lessonType"] == "deep_dive"
	# Background full research has replaced the light research
	assert lesson["researchData"]["depth"] == "full"
	research_calls = [c for c in fake_ai.calls if "Recherche-Experte" in c["system"]]
	assert research_calls[0]["model"] == settings.openai_deep_dive_model
	assert "5-teilige Lerngeschichte" in research_calls[0]["system"]


def test_trigger_lesson_marks_failed_when_workflow_is_down(client, auth_headers, monkeypatch):
	async def _down(lesson):
		raise httpx.ConnectError("connection refused")

	monkeypatch.setattr(settings, "n8n_webhook_url", "http://workflow.invalid/hook")
	monkeypatch.setattr(lessons_router, "_notify_workflow", _down)
	r = client.post("/api/trigger-lesson", json={"topic": "Chemie", "lessonType": "micro_dose"}, headers=auth_headers)
	assert r.status_code == 500
	assert r.json()["detail"] == "Fehler bei der KI-Generierung. Bitte versuche es erneut."
	listed = client.get("/api/lessons", headers=auth_headers).json()["lessons"]
	assert listed[0]["status"] == "failed"


def test_list_lessons_newest_first_with_flashcard_count(client, auth_headers, lesson_id):
	db = SessionLocal()
	try:
		db.add(Flashcard(lesson_id=lesson_id, question="Karte", phase="story", order_index=0))
		db.commit()
	finally:
		db.close()
	r = client.post("/api/trigger-lesson", json={"topic": "Zweites Thema"}, headers=auth_headers)
	second_id = r.json()["lessonId"]

	listed = client.get("/api/lessons", headers=auth_headers).json()["lessons"]
	assert [item["id"] for item in listed] == [second_id, lesson_id]
	assert listed[1]["flashcard_count"] == 1
	assert listed[0]["flashcard_count"] == 0


def test_lesson_detail_enforces_ownership(client, auth_headers, lesson_id):
	other = register_and_login(client)
	assert client.get(f"/api/lessons/{lesson_id}", headers=other).status_code == 403
	assert client.get("/api/lessons/does-not-exist", headers=auth_headers).status_code == 404


def test_delete_lesson(client, auth_headers, lesson_id):
	other = register_and_login(client)
	assert client.post("/api/lesson/delete", json={}, headers=auth_headers).status_code == 400
	assert client.post("/api/lesson/delete", json={"lessonId": lesson_id}, headers=other).status_code == 403
	r = client.post("/api/lesson/delete", json={"lessonId": lesson_id}, headers=auth_headers)
	assert r.status_code == 200
	assert client.get(f"/api/lessons/{lesson_id}", headers=auth_headers).status_code == 404
	assert client.get("/api/lessons", headers=auth_headers).json()["lessons"] == []


def test_update_phase_validates_and_sets_completed_at(client, auth_headers, lesson_id):
	r = client.post("/api/lesson/update-phase", json={"lessonId": lesson_id, "phase": "ende"}, headers=auth_headers)
	assert r.status_code == 400
	assert r.json()["detail"] == "Ungültige Phase. Erlaubt: dialog, story, quiz, completed"

	r = client.post("/api/lesson/update-phase", json={"lessonId": lesson_id, "phase": "completed"}, headers=auth_headers)
	assert r.status_code == 200
	lesson = client.get(f"/api/lessons/{lesson_id}", headers=auth_headers).json()
	assert lesson["currentPhase"] == "completed"
	assert lesson["completedAt"] is not None


def test_update_score_upserts_and_derives_total(client, auth_headers, lesson_id):
	r = client.post(
		"/api/lesson/update-score",
		json={"lessonId": lesson_id, "scoreData": {"dialog_score": 40, "quiz_score": 80}},
		headers=auth_headers,
	)
	assert r.status_code == 200
	r = client.post(
		"/api/lesson/update-score",
		json={"lessonId": lesson_id, "scoreData": {"story_engagement_score": 90}},
		headers=auth_headers,
	)
	score = client.get(f"/api/lessons/{lesson_id}/score", headers=auth_headers).json()["score"]
	assert score["dialogScore"] == 40
	assert score["storyEngagementScore"] == 90
	assert score["quizScore"] == 80
	assert score["totalScore"] == 80


def test_update_score_rejects_bad_values(client, auth_headers, lesson_id):
	for score_data in ({"quiz_score": 101}, {"correct_answers": -1}, {"bonus": 3}, {"quiz_score": True}, {}):
		r = client.post(
			"/api/lesson/update-score",
			json={"lessonId": lesson_id, "scoreData": score_data},
			headers=auth_headers,
		)
		assert r.status_code == 400, score_data


def test_update_score_rejects_non_finite_numbers(client, auth_headers, lesson_id):
	# json.loads accepts these literals, so they reach the validator as floats
	for literal in ("NaN", "Infinity", "-Infinity"):
		r = client.post(
			"/api/lesson/update-score",
			content=f'{{"lessonId": "{lesson_id}", "scoreData": {{"quiz_score": {literal}}}}}',
			headers={**auth_headers, "Content-Type": "application/json"},
		)
		assert r.status_code == 400, literal
		assert r.json()["detail"] == "Ungültige Score-Daten."


def test_update_score_requires_ownership(client, lesson_id):
	other = register_and_login(client)
	r = client.post(
		"/api/lesson/update-score",
		json={"lessonId": lesson_id, "scoreData": {"quiz_score": 50}},
		headers=other,
	)
	assert r.status_code == 403


def test_score_is_null_before_any_update(client, auth_headers, lesson_id):
	r = client.get(f"/api/lessons/{lesson_id}/score", headers=auth_headers)
	assert r.status_code == 200
	assert r.json()["score"] is None


def test_deleting_lesson_cascades_flashcards(client, auth_headers, lesson_id):
	db = SessionLocal()
	try:
		db.add(Flashcard(lesson_id=lesson_id, question="Karte", phase="story", order_index=0))
		db.commit()
	finally:
		db.close()
	client.post("/api/lesson/delete", json={"lessonId": lesson_id}, headers=auth_headers)
	db = SessionLocal()
	try:
		assert db.get(Lesson, lesson_id) is None
		assert db.query(Flashcard).filter(Flashcard.lesson_id == lesson_id).count() == 0
	finally:
		db.close()


def test_generate_full_research_route(client, auth_headers, lesson_id, fake_ai):
	url = "/api/generate-full-research"
	assert client.post(url, json={"lessonId": lesson_id}, headers=auth_headers).status_code == 400
	r = client.post(
		url,
		json={"lessonId": lesson_id, "topic": "Photosynthese", "profileContext": {"experienceLevel": "advanced"}},
		headers=auth_headers,
	)
	assert r.status_code == 200
	assert r.json()["success"] is True
	lesson = client.get(f"/api/lessons/{lesson_id}", headers=auth_headers).json()
	assert lesson["researchData"]["facts"][0] == "Fakt A"
	other = register_and_login(client)
	assert client.post(url, json={"lessonId": lesson_id, "topic": "X"}, headers=other).status_code == 403


def test_generate_story_background_route(client, auth_headers, lesson_id):
	r = client.post("/api/generate-story-background", json={"lessonId": lesson_id}, headers=auth_headers)
	assert r.status_code == 202
	chapters = client.get(f"/api/lesson/{lesson_id}/story", headers=auth_headers).json()["chapters"]
	assert len(chapters) == 3
	assert client.post("/api/generate-story-background", json={}, headers=auth_headers).status_code == 400
