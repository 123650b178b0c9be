"""
Dialog phase
============

Assesses what the learner already knows about the lesson topic through a
short conversation with the coach model. Text and voice dialogs share the
same persisted history (``lesson.dialog_history``) and the same assessment
path:

- the coach asks open questions, one per turn, at most ``DIALOG_MAX_ANSWERS``
  answers are collected;
- the model may call the ``assessKnowledge`` tool once it has enough signal,
  from the second-to-last answer on the call is forced;
- reaching the answer limit forces a summary assessment.

An assessment stores the dialog score and the dialog metadata used to
personalise story and quiz, and moves a ready learner to the story phase.
"""

from __future__ import annotations
import logging
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.orm import Session

from .cache import invalidate_lesson_cache
from .errors import GenerationError, VoiceDialogError, with_retry
from .models import AuthUser, Lesson
from .openai_client import OpenAIClient, tool_call_arguments
from .phases import transition_to_story
from .settings import settings
from .speech import generate_speech_audio
from .store import clear_dialog_history, get_research_data, save_dialog_metadata, story_ready, update_dialog_score

logger = logging.getLogger(__name__)


class Assessment(BaseModel):
	knowledgeLevel: Literal["beginner", "intermediate", "advanced"]
	confidence: float = Field(ge=0, le=100)
	reasoning: str = ""


ASSESS_TOOL: Dict[str, Any] = {
	"type": "function",
	"function": {
		"name": "assessKnowledge",
		"description": "Bewertet das Wissen des Nutzers und entscheidet, ob er bereit für die Story ist",
		"parameters": {
			"type": "object",
			"properties": {
				"knowledgeLevel": {"type": "string", "enum": ["beginner", "intermediate", "advanced"]},
				"confidence": {"type": "number", "minimum": 0, "maximum": 100, "description": "Konfidenz-Score (0-100)"},
				"readyForStory": {"type": "boolean", "description": "Ist der Nutzer bereit für die Story-Phase?"},
			},
			"required": ["knowledgeLevel", "confidence", "readyForStory"],
		},
	},
}

_FORCE_TOOL_CHOICE = {"type": "function", "function": {"name": "assessKnowledge"}}


def count_answers(history: List[Dict[str, Any]]) -> int:
	return sum(1 for entry in history if entry.get("role") == "user")


def research_context(research: Optional[Dict[str, Any]]) -> str:
	if not research:
		return ""
	facts = ", ".join((research.get("facts") or [])[:3]) or "Keine Facts verfügbar"
	concepts = ", ".join(c.get("name", "") for c in (research.get("concepts") or [])[:3]) or "Keine Konzepte verfügbar"
	takeaways = ", ".join((research.get("keyTakeaways") or [])[:2]) or "Keine Kernpunkte verfügbar"
	return (
		"RESEARCH-KONTEXT:\n"
		"Du hast Zugriff auf folgende Informationen zum Thema:\n"
		f"- Key Facts: {facts}\n"
		f"- Wichtige Konzepte: {concepts}\n"
		f"- Kernpunkte: {takeaways}\n\n"
		"Nutze diese Informationen, um eine relevante Einstiegsfrage zu stellen!\n"
	)


def personalized_context(user: Optional[AuthUser]) -> str:
	age = user.age if user else None
	experience = (user.experience_level if user else None) or "beginner"
	language = (user.language if user else None) or "de"
	lines = ["USER-PROFIL (Personalisierung):"]
	lines.append(f"- Alter: {age} Jahre" if age else "- Alter: Nicht angegeben")
	lines.append(f"- Erfahrungslevel: {experience} (passe Komplexität der Fragen an!)")
	if language != "de":
		lines.append(f"- Bevorzugte Sprache: {language} (aber Dialog ist auf Deutsch)")
	lines.append("")
	lines.append("WICHTIG: Passe deine Fragen an Alter und Erfahrungslevel an!")
	if age and age < 14:
		lines.append("- Nutze einfache, kindgerechte Sprache")
	if age and age >= 18:
		lines.append("- Nutze anspruchsvolle, professionelle Sprache")
	if experience == "beginner":
		lines.append("- Stelle grundlegende Fragen, erkläre Konzepte einfach")
	if experience == "advanced":
		lines.append("- Stelle tiefergehende Fragen, nutze Fachbegriffe")
	return "\n".join(lines)


def build_start_prompt(topic: str, research: Optional[Dict[str, Any]]) -> str:
	return (
		f'Du bist ein freundlicher Lern-Coach für das Thema "{topic}".\n\n'
		"AUFGABE:\n"
		"- Stelle EINE prägnante Einstiegsfrage, um das Vorwissen des Nutzers zu ermitteln\n"
		"- Die Frage sollte offen sein (keine Multiple-Choice)\n"
		"- Kurz und direkt (1-2 Sätze)\n"
		"- Motivierend und einladend formuliert\n"
		"- Beziehe dich auf konkrete Konzepte aus dem Research-Kontext\n\n"
		f"{research_context(research)}\n"
		"WICHTIG: Stelle NUR die Frage - keine Einleitung, keine Erklärungen!"
	)


def build_continue_prompt(topic: str, answer_num: int, max_answers: int) -> str:
	if answer_num == max_answers - 1:
		remaining = "DIES IST DIE LETZTE FRAGE! Stelle eine abschließende Frage."
	else:
		remaining = f"Du kannst noch {max_answers - answer_num} Frage(n) stellen."
	if answer_num >= max_answers - 1:
		tool_rule = "KRITISCH: Du MUSST JETZT das assessKnowledge-Tool verwenden! Keine Text-Antworten mehr - NUR Tool-Call!"
	elif answer_num >= max_answers - 2:
		tool_rule = "Du kannst jetzt das assessKnowledge-Tool verwenden, um das Niveau zu bewerten."
	else:
		tool_rule = "Nach 2-3 Fragen: Nutze das 'assessKnowledge' Tool, um das Level zu bewerten"
	return (
		f'Du bist ein freundlicher Lern-Coach für das Thema "{topic}".\n\n'
		"AUFGABE:\n"
		"- Stelle gezielte Fragen, um das Vorwissen des Nutzers zu ermitteln\n"
		"- Passe deine Fragen dynamisch an die Antworten an\n"
		"- Sei motivierend und unterstützend\n\n"
		f"STRIKTE REGEL - MAXIMAL {max_answers} FRAGEN:\n"
		f"- Der Nutzer hat bisher {answer_num} von {max_answers} Fragen beantwortet\n"
		f"- {remaining}\n"
		f"- {tool_rule}\n"
		"- EINE Frage pro Message - Keine Zusammenfassungen oder Erklärungen\n"
		"- Kurze, prägnante Fragen (1-2 Sätze)\n"
		"- Keine Multiple-Choice, sondern offene Fragen\n"
		"- Baue auf vorherigen Antworten auf"
	)


def build_voice_prompt(topic: str, user: Optional[AuthUser], answer_num: int, max_answers: int) -> str:
	return (
		f'Du bist ein freundlicher Lern-Coach für das Thema "{topic}".\n\n'
		f"{personalized_context(user)}\n\n"
		"AUFGABE:\n"
		"- Stelle gezielte Fragen, um das Vorwissen des Nutzers zu ermitteln\n"
		"- Passe deine Fragen dynamisch an die Antworten an\n"
		"- Sei motivierend und unterstützend\n"
		'- Duze den Nutzer IMMER (verwende "du", "dein", "dir")\n\n'
		f"STRIKTE REGEL - EXAKT {max_answers} FRAGEN:\n"
		f"- Der Nutzer hat bisher {answer_num} von {max_answers} Fragen beantwortet (erste Frage bereits gestellt)\n"
		f"- Du MUSST noch {max(max_answers - answer_num, 0)} weitere Frage(n) stellen\n"
		"- EINE prägnante Frage pro Message (1-2 Sätze)\n"
		"- Keine Multiple-Choice, sondern offene Fragen\n"
		"- Baue auf vorherigen Antworten auf\n\n"
		"WICHTIG: Keine Zusammenfassungen, keine Bewertungen - nur Fragen stellen!"
	)


def build_assessment_prompt(topic: str, history: List[Dict[str, Any]]) -> str:
	conversation = "\n\n".join(
		f"{'User' if entry.get('role') == 'user' else 'Assistant'}: {entry.get('content', '')}" for entry in history
	)
	return (
		f'Basierend auf diesem Gespräch zum Thema "{topic}", bewerte das Wissen des Nutzers:\n\n'
		f"{conversation}\n\n"
		"Bewerte basierend auf:\n"
		"- Tiefe der Antworten\n"
		"- Verwendung von Fachbegriffen\n"
		"- Verständnis von Zusammenhängen\n"
		"- Fähigkeit, Beispiele zu nennen\n\n"
		'Antworte NUR mit JSON: {"knowledgeLevel": "beginner|intermediate|advanced", '
		'"confidence": 0-100, "reasoning": "Kurze Begründung der Bewertung"}'
	)


ASSESSOR_SYSTEM = (
	"Du bist ein Bildungs-Assessor, der das Wissen eines Nutzers bewertet.\n\n"
	"AUFGABE:\n"
	"Analysiere das folgende Gespräch und bewerte das Vorwissen des Nutzers.\n"
	"Keine weiteren Fragen stellen!"
)


def fallback_initial_question(topic: str) -> str:
	return (
		f"Hallo! Ich möchte dein Vorwissen zu {topic} kennenlernen. "
		"Lass uns direkt starten: Was weißt du bereits über dieses Thema?"
	)


async def start_dialog(db: Session, client: OpenAIClient, lesson: Lesson) -> str:
	research = get_research_data(db, lesson.id)
	question = await client.chat(
		[
			{"role": "system", "content": build_start_prompt(lesson.topic, research)},
			{"role": "user", "content": f'Stelle eine offene Einstiegsfrage zum Thema "{lesson.topic}", die sich auf die Research-Daten bezieht.'},
		],
		model=settings.openai_selection_model,
	)
	question = question.strip()
	if not question:
		raise GenerationError("Empty initial question")
	lesson.dialog_history = [{"role": "assistant", "content": question}]
	db.commit()
	return question


async def generate_assessment(client: OpenAIClient, history: List[Dict[str, Any]], topic: str) -> Assessment:
	data = await client.chat_json(
		[
			{"role": "system", "content": ASSESSOR_SYSTEM},
			{"role": "user", "content": build_assessment_prompt(topic, history)},
		],
		model=settings.openai_selection_model,
	)
	try:
		return Assessment.model_validate(data)
	except ValidationError as err:
		raise GenerationError(f"Invalid assessment from LLM: {err}") from err


def apply_assessment(
	db: Session,
	lesson: Lesson,
	user_id: str,
	history: List[Dict[str, Any]],
	assessment: Assessment,
	*,
	ready_for_story: bool,
) -> None:
	update_dialog_score(db, lesson.id, user_id, assessment.confidence)
	save_dialog_metadata(db, lesson.id, user_id, {
		"conversationHistory": [{"role": e.get("role"), "content": e.get("content", "")} for e in history],
		"knowledgeLevel": assessment.knowledgeLevel,
		"assessmentReasoning": assessment.reasoning,
		"userResponses": [e.get("content", "") for e in history if e.get("role") == "user"],
	})
	if ready_for_story and lesson.current_phase == "dialog":
		transition_to_story(db, lesson)


def _assessment_payload(assessment: Assessment, ready: bool, lesson: Lesson) -> Dict[str, Any]:
	return {
		"knowledgeLevel": assessment.knowledgeLevel,
		"confidence": round(assessment.confidence),
		"reasoning": assessment.reasoning,
		"readyForStory": ready,
		"phase": lesson.current_phase,
	}


async def force_assessment(db: Session, client: OpenAIClient, lesson: Lesson, user_id: str) -> Dict[str, Any]:
	history = list(lesson.dialog_history or [])
	assessment = await generate_assessment(client, history, lesson.topic)
	apply_assessment(db, lesson, user_id, history, assessment, ready_for_story=True)
	logger.info("Forced assessment for lesson %s: %s (%d%%)", lesson.id, assessment.knowledgeLevel, round(assessment.confidence))
	return _assessment_payload(assessment, True, lesson)


async def continue_dialog(
	db: Session,
	client: OpenAIClient,
	lesson: Lesson,
	user_id: str,
	message: str,
	max_answers: Optional[int] = None,
) -> Dict[str, Any]:
	max_answers = max_answers or settings.dialog_max_answers
	# The answer is only stored together with a successful reply
	history = list(lesson.dialog_history or []) + [{"role": "user", "content": message}]
	answer_count = count_answers(history)

	if answer_count >= max_answers:
		assessment = await generate_assessment(client, history, lesson.topic)
		lesson.dialog_history = history
		apply_assessment(db, lesson, user_id, history, assessment, ready_for_story=True)
		logger.info("Final assessment for lesson %s after %d answers", lesson.id, answer_count)
		return {
			"type": "assessment",
			"answerCount": answer_count,
			"maxAnswers": max_answers,
			"assessment": _assessment_payload(assessment, True, lesson),
		}

	reply = await client.chat_message(
		[{"role": "system", "content": build_continue_prompt(lesson.topic, answer_count, max_answers)}, *history],
		model=settings.openai_selection_model,
		tools=[ASSESS_TOOL],
		tool_choice=_FORCE_TOOL_CHOICE if answer_count >= max_answers - 1 else "auto",
	)
	args = tool_call_arguments(reply, "assessKnowledge")
	if args is not None:
		ready = bool(args.get("readyForStory"))
		try:
			assessment = Assessment(
				knowledgeLevel=args.get("knowledgeLevel"),
				confidence=args.get("confidence"),
				reasoning=f"Assessment after {len(history)} exchanges. Confidence: {args.get('confidence')}%",
			)
		except ValidationError as err:
			raise GenerationError(f"Invalid assessKnowledge call: {err}") from err
		lesson.dialog_history = history
		apply_assessment(db, lesson, user_id, history, assessment, ready_for_story=ready)
		if not ready:
			follow_up = (
				f"Dein aktuelles Level: {assessment.knowledgeLevel} ({round(assessment.confidence)}% Konfidenz). "
				"Lass uns noch ein wenig tiefer gehen!"
			)
			lesson.dialog_history = history + [{"role": "assistant", "content": follow_up}]
			db.commit()
		return {
			"type": "assessment",
			"answerCount": answer_count,
			"maxAnswers": max_answers,
			"assessment": _assessment_payload(assessment, ready, lesson),
		}

	content = (reply.get("content") or "").strip()
	if not content:
		raise GenerationError("Empty dialog reply")
	lesson.dialog_history = history + [{"role": "assistant", "content": content}]
	db.commit()
	return {"type": "question", "message": content, "answerCount": answer_count, "maxAnswers": max_answers}


async def generate_initial_voice_question(client: OpenAIClient, lesson: Lesson, user: Optional[AuthUser]) -> str:
	hints = []
	if user is not None and user.age and user.age < 14:
		hints.append("- Nutze einfache, kindgerechte Sprache")
	if user is not None and user.experience_level == "beginner":
		hints.append("- Stelle eine grundlegende Einstiegsfrage")
	if user is not None and user.experience_level == "advanced":
		hints.append("- Stelle eine anspruchsvollere Frage")
	system = (
		f'Du bist ein freundlicher Lern-Coach für das Thema "{lesson.topic}".\n\n'
		"AUFGABE:\n"
		"- Erstelle eine kurze Begrüßung (1-2 Sätze)\n"
		"- Stelle DIREKT die erste fachliche Frage zum Thema\n"
		"- Kombiniere beides in EINER Nachricht\n"
		"- Duze den Nutzer IMMER\n\n"
		"BEISPIEL:\n"
		f'"{fallback_initial_question(lesson.topic)}"\n\n'
		+ "\n".join(hints)
	)
	try:
		text = await client.chat(
			[{"role": "system", "content": system}],
			model=settings.openai_selection_model,
			max_tokens=150,
			temperature=0.7,
		)
	except Exception as err:
		logger.error("Failed to generate initial voice question: %s", err)
		return fallback_initial_question(lesson.topic)
	return text.strip() or fallback_initial_question(lesson.topic)


async def voice_response(
	client: OpenAIClient,
	lesson: Lesson,
	user: Optional[AuthUser],
	history: List[Dict[str, Any]],
	max_answers: int,
) -> str:
	answer_num = count_answers(history)
	reply = await client.chat(
		[{"role": "system", "content": build_voice_prompt(lesson.topic, user, answer_num, max_answers)}, *history],
		model=settings.openai_selection_model,
		max_tokens=200,
		temperature=0.7,
	)
	return reply.strip() or "Entschuldigung, ich konnte keine Antwort generieren."


MAX_TRANSCRIPT_CHARS = 32768

_LEVEL_LABELS = {"beginner": "Einsteiger", "intermediate": "Fortgeschritten", "advanced": "Experte"}


def _voice_settings(user: Optional[AuthUser]) -> Dict[str, Optional[str]]:
	if user is None:
		return {"language": "de", "custom_voice": None}
	return {"language": user.language or "de", "custom_voice": user.tts_voice}


async def _speak(client: OpenAIClient, text: str, user: Optional[AuthUser]) -> str:
	voice = _voice_settings(user)
	try:
		return await with_retry(lambda: generate_speech_audio(client, text, voice["language"], voice["custom_voice"]))
	except Exception as err:
		raise VoiceDialogError(f"Sprachausgabe fehlgeschlagen: {err}", "TTS_FAILED") from err


async def start_voice_dialog(db: Session, client: OpenAIClient, lesson: Lesson, user: Optional[AuthUser]) -> Dict[str, Any]:
	text = await generate_initial_voice_question(client, lesson, user)
	audio_url = await _speak(client, text, user)
	lesson.dialog_history = [{"role": "assistant", "content": text}]
	db.commit()
	return {"text": text, "audioUrl": audio_url}


async def transcribe_audio(client: OpenAIClient, audio: bytes, filename: str, content_type: str) -> str:
	if not audio:
		raise VoiceDialogError("Keine Audiodaten empfangen", "WHISPER_FAILED")
	try:
		transcript = await with_retry(
			lambda: client.transcribe(audio, filename=filename, content_type=content_type, language="de")
		)
	except Exception as err:
		raise VoiceDialogError(f"Transkription fehlgeschlagen: {err}", "WHISPER_FAILED") from err
	if not transcript.strip():
		raise VoiceDialogError("Keine Sprache erkannt", "WHISPER_FAILED")
	return transcript.strip()


async def process_voice_input(
	db: Session,
	client: OpenAIClient,
	lesson: Lesson,
	user: Optional[AuthUser],
	transcript: str,
	max_answers: Optional[int] = None,
) -> Dict[str, Any]:
	max_answers = max_answers or settings.dialog_max_answers
	transcript = (transcript or "").strip()
	if not transcript or len(transcript) > MAX_TRANSCRIPT_CHARS:
		raise ValueError("Ungültiges Transkript.")

	history = list(lesson.dialog_history or [])
	history.append({"role": "user", "content": transcript})
	answer_count = count_answers(history)
	should_assess = answer_count >= max_answers

	if should_assess:
		text = "Danke für deine Antworten! Ich werte jetzt dein Wissen aus."
	else:
		try:
			text = await with_retry(lambda: voice_response(client, lesson, user, history, max_answers))
		except Exception as err:
			raise VoiceDialogError(f"Antwort konnte nicht generiert werden: {err}", "LLM_FAILED") from err
	audio_url = await _speak(client, text, user)

	lesson.dialog_history = history + [{"role": "assistant", "content": text}]
	db.commit()
	return {
		"text": text,
		"audioUrl": audio_url,
		"answerCount": answer_count,
		"maxAnswers": max_answers,
		"shouldAssess": should_assess,
	}


async def force_voice_assessment(db: Session, client: OpenAIClient, lesson: Lesson, user: AuthUser) -> Dict[str, Any]:
	"""Assess the voice conversation, speak a summary and hand over to the story phase.

	``storyReady`` tells the caller whether the background story already
	finished; if not, it should schedule generation itself.
	"""
	history = list(lesson.dialog_history or [])
	try:
		assessment = await with_retry(lambda: generate_assessment(client, history, lesson.topic))
	except Exception as err:
		raise VoiceDialogError(f"Bewertung fehlgeschlagen: {err}", "ASSESSMENT_FAILED") from err
	apply_assessment(db, lesson, user.id, history, assessment, ready_for_story=True)

	summary = (
		f"Super, danke für das Gespräch! Dein Wissensstand: {_LEVEL_LABELS[assessment.knowledgeLevel]}. "
		"Jetzt geht es weiter mit deiner persönlichen Lerngeschichte."
	)
	try:
		audio_url: Optional[str] = await _speak(client, summary, user)
	except VoiceDialogError as err:
		# The assessment is already stored; a silent summary is acceptable
		logger.warning("Summary audio failed for lesson %s: %s", lesson.id, err)
		audio_url = None

	ready = story_ready(db, lesson.id)
	if not ready:
		logger.info("Story for lesson %s not ready after voice assessment", lesson.id)
	invalidate_lesson_cache(lesson.id)
	clear_dialog_history(db, lesson.id)
	return {
		"assessment": _assessment_payload(assessment, True, lesson),
		"summaryText": summary,
		"audioUrl": audio_url,
		"storyReady": ready,
	}
