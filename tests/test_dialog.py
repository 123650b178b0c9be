from conftest import register_and_login
from lernfast import store


def _answer(client, headers, lesson_id, message="Pflanzen brauchen Licht und Wasser."):
	return client.post(f"/api/lesson/{lesson_id}/dialog/answer", json={"message": message}, headers=headers)


def test_start_uses_research_context(client, auth_headers, lesson_id, fake_ai):
	r = client.post(f"/api/lesson/{lesson_id}/dialog/start", headers=auth_headers)
	assert r.status_code == 200
	assert r.json()["message"] == "Was weißt du bereits über Photosynthese?"
	start_call = [c for c in fake_ai.calls if "Einstiegsfrage" in c["system"]][-1]
	assert "RESEARCH-KONTEXT" in start_call["system"]
	assert "Chlorophyll" in start_call["system"]

	state = client.get(f"/api/lesson/{lesson_id}/dialog", headers=auth_headers).json()
	assert state["history"] == [{"role": "assistant", "content": "Was weißt du bereits über Photosynthese?"}]
	assert state["answerCount"] == 0
	assert state["maxAnswers"] == 5


def test_first_answer_starts_background_story(client, auth_headers, lesson_id):
	client.post(f"/api/lesson/{lesson_id}/dialog/start", headers=auth_headers)
	r = _answer(client, auth_headers, lesson_id)
	assert r.status_code == 200
	body = r.json()
	assert body["type"] == "question"
	assert body["answerCount"] == 1

	story = client.get(f"/api/lesson/{lesson_id}/story", headers=auth_headers).json()
	assert len(story["chapters"]) == 3


def test_assessment_tool_is_forced_on_fourth_answer(client, auth_headers, lesson_id, fake_ai):
	client.post(f"/api/lesson/{lesson_id}/dialog/start", headers=auth_headers)
	for _ in range(3):
		assert _answer(client, auth_headers, lesson_id).json()["type"] == "question"
	dialog_calls = [c for c in fake_ai.calls if c["tools"]]
	assert all(c["tool_choice"] == "auto" for c in dialog_calls)

	r = _answer(client, auth_headers, lesson_id)
	body = r.json()
	assert body["type"] == "assessment"
	assert body["assessment"]["knowledgeLevel"] == "intermediate"
	assert body["assessment"]["readyForStory"] is True
	assert body["assessment"]["phase"] == "story"
	assert fake_ai.calls[-1]["tool_choice"] == {"type": "function", "function": {"name": "assessKnowledge"}}

	score = client.get(f"/api/lessons/{lesson_id}/score", headers=auth_headers).json()["score"]
	assert score["dialogScore"] == 72
	assert score["metadata"]["knowledgeLevel"] == "intermediate"
	assert len(score["metadata"]["userResponses"]) == 4


def test_not_ready_keeps_dialog_until_forced_assessment(client, auth_headers, lesson_id, fake_ai):
	fake_ai.ready_for_story = False
	client.post(f"/api/lesson/{lesson_id}/dialog/start", headers=auth_headers)
	for _ in range(3):
		_answer(client, auth_headers, lesson_id)
	body = _answer(client, auth_headers, lesson_id).json()
	assert body["assessment"]["readyForStory"] is False
	assert body["assessment"]["phase"] == "dialog"

	body = _answer(client, auth_headers, lesson_id).json()
	assert body["type"] == "assessment"
	assert body["answerCount"] == 5
	assert body["assessment"]["readyForStory"] is True
	assert body["assessment"]["reasoning"] == "Solide Grundlagen"
	lesson = client.get(f"/api/lessons/{lesson_id}", headers=auth_headers).json()
	assert lesson["currentPhase"] == "story"


def test_force_assessment_endpoint(client, auth_headers, lesson_id):
	client.post(f"/api/lesson/{lesson_id}/dialog/start", headers=auth_headers)
	_answer(client, auth_headers, lesson_id)
	r = client.post(f"/api/lesson/{lesson_id}/dialog/assess", headers=auth_headers)
	assert r.status_code == 200
	assert r.json()["assessment"]["confidence"] == 72
	r = _answer(client, auth_headers, lesson_id)
	assert r.status_code == 409


def test_answer_validation_and_ownership(client, auth_headers, lesson_id):
	assert _answer(client, auth_headers, lesson_id, message="  ").status_code == 400
	other = register_and_login(client)
	assert _answer(client, other, lesson_id).status_code == 403


def test_model_failure_maps_to_retry_message(client, auth_headers, lesson_id, fake_ai):
	fake_ai.fail_chat = True
	r = client.post(f"/api/lesson/{lesson_id}/dialog/start", headers=auth_headers)
	assert r.status_code == 500
	assert r.json()["detail"] == "Fehler bei der Dialog-Generierung. Bitte versuche es erneut."


def test_failed_turn_leaves_history_untouched(client, auth_headers, lesson_id, fake_ai):
	client.post(f"/api/lesson/{lesson_id}/dialog/start", headers=auth_headers)
	fake_ai.fail_chat = True
	assert _answer(client, auth_headers, lesson_id).status_code == 500
	state = client.get(f"/api/lesson/{lesson_id}/dialog", headers=auth_headers).json()
	assert [e["role"] for e in state["history"]] == ["assistant"]
	assert state["answerCount"] == 0

	fake_ai.fail_chat = False
	body = _answer(client, auth_headers, lesson_id).json()
	assert body["answerCount"] == 1
	state = client.get(f"/api/lesson/{lesson_id}/dialog", headers=auth_headers).json()
	assert [e["role"] for e in state["history"]] == ["assistant", "user", "assistant"]
	# the retried first answer still schedules the story
	assert len(client.get(f"/api/lesson/{lesson_id}/story", headers=auth_headers).json()["chapters"]) == 3


def test_assessment_survives_metadata_save_failure(client, auth_headers, lesson_id, monkeypatch):
	original = store.upsert_score

	def _upsert(db, lesson_id, user_id, **fields):
		if "score_metadata" in fields:
			raise RuntimeError("metadata column unavailable")
		return original(db, lesson_id, user_id, **fields)

	client.post(f"/api/lesson/{lesson_id}/dialog/start", headers=auth_headers)
	_answer(client, auth_headers, lesson_id)
	monkeypatch.setattr(store, "upsert_score", _upsert)
	r = client.post(f"/api/lesson/{lesson_id}/dialog/assess", headers=auth_headers)
	assert r.status_code == 200
	assert r.json()["assessment"]["phase"] == "story"

	score = client.get(f"/api/lessons/{lesson_id}/score", headers=auth_headers).json()["score"]
	assert score["dialogScore"] == 72
	assert score["metadata"] is None
	lesson = client.get(f"/api/lessons/{lesson_id}", headers=auth_headers).json()
	assert lesson["currentPhase"] == "story"
