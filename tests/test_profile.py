from lernfast.profile import is_profile_complete, profile_completeness


def test_get_profile_reports_completeness(client, auth_headers):
	r = client.get("/api/profile/update", headers=auth_headers)
	assert r.status_code == 200
	body = r.json()
	assert body["user"]["name"] == "Testnutzer"
	assert body["user"]["experienceLevel"] == "beginner"
	assert body["isComplete"] is False
	# name, language, experienceLevel, preferredDifficulty of six fields
	assert body["completeness"] == 67


def test_update_profile_completes_onboarding(client, auth_headers):
	r = client.post(
		"/api/profile/update",
		json={"age": 16, "language": "en", "learningGoals": "Biologie-Abi", "experienceLevel": "intermediate"},
		headers=auth_headers,
	)
	assert r.status_code == 200
	user = r.json()["user"]
	assert user["onboardingCompleted"] is True
	assert user["language"] == "en"
	assert user["profileUpdatedAt"] is not None

	profile = client.get("/api/profile/update", headers=auth_headers).json()
	assert profile["isComplete"] is True
	assert profile["completeness"] == 100


def test_partial_update_does_not_complete_onboarding(client, auth_headers):
	r = client.post("/api/profile/update", json={"ttsVoice": "shimmer", "dialogMode": "voice"}, headers=auth_headers)
	assert r.status_code == 200
	user = r.json()["user"]
	assert user["onboardingCompleted"] is False
	assert user["ttsVoice"] == "shimmer"
	assert user["dialogMode"] == "voice"


def test_update_profile_validation_errors(client, auth_headers):
	r = client.post("/api/profile/update", json={"age": 3, "ttsVoice": "robot"}, headers=auth_headers)
	assert r.status_code == 400
	body = r.json()
	assert body["detail"] == "Validierungsfehler"
	assert set(body["details"]) == {"age", "ttsVoice"}

	r = client.post("/api/profile/update", json={"shoeSize": 44}, headers=auth_headers)
	assert r.status_code == 400
	assert "shoeSize" in r.json()["details"]


def test_update_profile_requires_a_field(client, auth_headers):
	r = client.post("/api/profile/update", json={}, headers=auth_headers)
	assert r.status_code == 400
	assert r.json()["detail"] == "Keine Felder zum Updaten vorhanden"


def test_null_age_clears_value(client, auth_headers):
	client.post("/api/profile/update", json={"age": 30}, headers=auth_headers)
	r = client.post("/api/profile/update", json={"age": None}, headers=auth_headers)
	assert r.status_code == 200
	assert r.json()["user"]["age"] is None


def test_profile_helpers():
	profile = {
		"name": "Anna",
		"age": 20,
		"language": "de",
		"learningGoals": "",
		"experienceLevel": "advanced",
		"preferredDifficulty": "hard",
	}
	assert is_profile_complete(profile) is False
	assert profile_completeness(profile) == 83
	profile["learningGoals"] = "Chemie verstehen"
	assert is_profile_complete(profile) is True
