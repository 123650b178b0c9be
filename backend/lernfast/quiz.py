"""Quiz phase: generation from the story, answer checking and adaptive question order."""

from __future__ import annotations
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.orm import Session

from .cache import invalidate_lesson_cache
from .errors import GenerationError
from .models import Flashcard, Lesson
from .openai_client import OpenAIClient
from .phases import complete_lesson, question_count, transition_to_quiz
from .settings import settings
from .store import get_dialog_metadata, get_research_data, get_score, phase_cards, upsert_score

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 2
DIFFICULTIES = ("easy", "medium", "hard")
STREAK_LENGTH = 3

GRADES = (
	(90, "Hervorragend"),
	(75, "Sehr gut"),
	(60, "Gut gemacht"),
)


class QuizQuestion(BaseModel):
	question: str = Field(min_length=10)
	options: List[str] = Field(min_length=4, max_length=4)
	correctAnswer: int = Field(ge=0, le=3)
	difficulty: Literal["easy", "medium", "hard"]
	explanation: str = Field(min_length=20)


class QuizResponse(BaseModel):
	questions: List[QuizQuestion]


def build_quiz_prompt(
	topic: str,
	count: int,
	chapters: List[Dict[str, Any]],
	research: Optional[Dict[str, Any]],
	dialog_metadata: Optional[Dict[str, Any]],
) -> str:
	story_lines = "\n\n".join(
		f"Kapitel {c.get('chapterNumber')}: {c.get('chapterTitle')}\n{c.get('narrative')}\n"
		f"Kernaussagen: {'; '.join(c.get('keyPoints') or [])}"
		for c in chapters
	)
	level = (dialog_metadata or {}).get("knowledgeLevel") or "beginner"
	return (
		"Du bist ein Quiz-Ersteller für interaktive Lerneinheiten.\n\n"
		f'THEMA: "{topic}"\n'
		f"WISSENSSTAND DES NUTZERS: {level}\n\n"
		"**STORY:**\n"
		f"{story_lines}\n\n"
		"**RESEARCH-DATEN:**\n"
		f"{json.dumps(research or {}, ensure_ascii=False)}\n\n"
		"**AUFGABE:**\n"
		f"Erstelle GENAU {count} Multiple-Choice-Fragen, die das Verständnis der Story prüfen.\n"
		"- Jede Frage hat genau 4 Antwortoptionen, correctAnswer ist der Index (0-3)\n"
		"- Mische die Schwierigkeitsgrade easy, medium und hard\n"
		"- Jede Erklärung begründet die richtige Antwort in 1-2 Sätzen\n\n"
		"**OUTPUT-FORMAT (JSON):**\n"
		'{"questions": [{"question": "...", "options": ["A", "B", "C", "D"], "correctAnswer": 0, '
		'"difficulty": "easy|medium|hard", "explanation": "..."}]}'
	)


def parse_quiz(data: Dict[str, Any], expected: int) -> List[QuizQuestion]:
	try:
		quiz = QuizResponse.model_validate(data)
	except ValidationError as err:
		raise GenerationError(f"Invalid quiz structure: {err.error_count()} validation errors") from err
	if len(quiz.questions) < expected:
		raise GenerationError(f"Expected {expected} questions, got {len(quiz.questions)}")
	return quiz.questions[:expected]


async def generate_quiz_from_story(db: Session, client: OpenAIClient, lesson: Lesson, user_id: str) -> List[Flashcard]:
	"""Create the quiz flashcards for ``lesson`` and move it to the quiz phase.

	Returns the existing quiz cards when the lesson already has them.
	"""
	existing = phase_cards(db, lesson.id, "quiz")
	if existing:
		logger.info("Quiz already exists for lesson %s (%d questions)", lesson.id, len(existing))
		if lesson.current_phase == "story":
			transition_to_quiz(db, lesson)
		return existing

	story_cards = phase_cards(db, lesson.id, "story")
	if not story_cards:
		raise GenerationError("Keine Story-Kapitel gefunden")
	chapters = [(card.learning_content or {}).get("story") or {} for card in story_cards]
	count = question_count(lesson.lesson_type)
	prompt = build_quiz_prompt(
		lesson.topic,
		count,
		chapters,
		get_research_data(db, lesson.id),
		get_dialog_metadata(db, lesson.id, user_id),
	)

	questions: List[QuizQuestion] = []
	last_error: Optional[Exception] = None
	for attempt in range(1, MAX_ATTEMPTS + 1):
		try:
			data = await client.chat_json(
				[
					{"role": "system", "content": prompt},
					{"role": "user", "content": f'Erstelle das Quiz zum Thema "{lesson.topic}".'},
				],
				model=settings.openai_structure_model,
			)
			questions = parse_quiz(data, count)
			break
		except (GenerationError, ValueError) as err:
			last_error = err
			logger.warning("Quiz attempt %d/%d failed for lesson %s: %s", attempt, MAX_ATTEMPTS, lesson.id, err)
	if not questions:
		raise GenerationError(f"Quiz generation failed: {last_error}")

	cards = []
	for index, q in enumerate(questions):
		card = Flashcard(
			lesson_id=lesson.id,
			question=q.question,
			learning_content={"quiz": q.model_dump()},
			phase="quiz",
			order_index=index,
		)
		db.add(card)
		cards.append(card)
	db.commit()
	transition_to_quiz(db, lesson)
	logger.info("Quiz generated for lesson %s: %d questions", lesson.id, len(cards))
	return cards


def quiz_payload(card: Flashcard) -> Dict[str, Any]:
	return (card.learning_content or {}).get("quiz") or {}


def serialize_question(card: Flashcard, answer: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
	"""Question for the client; solution fields are only included once answered."""
	quiz = quiz_payload(card)
	data = {
		"id": card.id,
		"orderIndex": card.order_index,
		"question": quiz.get("question", card.question),
		"options": quiz.get("options") or [],
		"difficulty": quiz.get("difficulty", "medium"),
		"answered": answer is not None,
	}
	if answer is not None:
		data["selectedAnswer"] = answer["selected"]
		data["correctAnswer"] = quiz.get("correctAnswer")
		data["explanation"] = quiz.get("explanation")
	return data


def recorded_answers(db: Session, lesson_id: str, user_id: str) -> List[Dict[str, Any]]:
	row = get_score(db, lesson_id, user_id)
	if row is None or not row.score_metadata:
		return []
	return list(row.score_metadata.get("quizAnswers") or [])


def target_difficulty(answers: List[Dict[str, Any]], start: str = "medium") -> str:
	"""Step difficulty up after three correct answers in a row, down after three wrong ones."""
	index = DIFFICULTIES.index(start) if start in DIFFICULTIES else 1
	correct_streak = 0
	wrong_streak = 0
	for answer in answers:
		if answer.get("correct"):
			correct_streak += 1
			wrong_streak = 0
		else:
			wrong_streak += 1
			correct_streak = 0
		if correct_streak >= STREAK_LENGTH:
			index = min(index + 1, len(DIFFICULTIES) - 1)
			correct_streak = 0
		elif wrong_streak >= STREAK_LENGTH:
			index = max(index - 1, 0)
			wrong_streak = 0
	return DIFFICULTIES[index]


def next_question(cards: List[Flashcard], answers: List[Dict[str, Any]], difficulty: str) -> Optional[Flashcard]:
	answered = {a.get("flashcardId") for a in answers}
	open_cards = [card for card in cards if card.id not in answered]
	for card in open_cards:
		if quiz_payload(card).get("difficulty") == difficulty:
			return card
	return open_cards[0] if open_cards else None


def quiz_state(db: Session, lesson: Lesson, user_id: str, start: str = "medium") -> Dict[str, Any]:
	cards = phase_cards(db, lesson.id, "quiz")
	answers = recorded_answers(db, lesson.id, user_id)
	by_card = {a["flashcardId"]: a for a in answers}
	difficulty = target_difficulty(answers, start)
	upcoming = next_question(cards, answers, difficulty)
	correct = sum(1 for a in answers if a.get("correct"))
	return {
		"questions": [serialize_question(card, by_card.get(card.id)) for card in cards],
		"answered": len(answers),
		"correctAnswers": correct,
		"totalQuestions": len(cards),
		"quizScore": round(correct / len(answers) * 100) if answers else 0,
		"targetDifficulty": difficulty,
		"nextQuestionId": upcoming.id if upcoming is not None else None,
		"finished": bool(cards) and upcoming is None,
	}


class QuizAnswerError(ValueError):
	pass


def answer_question(
	db: Session,
	lesson: Lesson,
	user_id: str,
	flashcard_id: str,
	selected: int,
	start: str = "medium",
) -> Dict[str, Any]:
	cards = phase_cards(db, lesson.id, "quiz")
	card = next((c for c in cards if c.id == flashcard_id), None)
	if card is None:
		raise QuizAnswerError("Frage nicht gefunden.")
	quiz = quiz_payload(card)
	if not 0 <= selected < len(quiz.get("options") or []):
		raise QuizAnswerError("Ungültige Antwortoption.")

	answers = recorded_answers(db, lesson.id, user_id)
	previous = next((a for a in answers if a.get("flashcardId") == flashcard_id), None)
	already_answered = previous is not None
	if not already_answered:
		previous = {
			"flashcardId": flashcard_id,
			"selected": selected,
			"correct": selected == quiz.get("correctAnswer"),
			"difficulty": quiz.get("difficulty"),
		}
		answers.append(previous)
		correct = sum(1 for a in answers if a.get("correct"))
		row = get_score(db, lesson.id, user_id)
		metadata = dict(row.score_metadata or {}) if row is not None else {}
		metadata["quizAnswers"] = answers
		upsert_score(
			db,
			lesson.id,
			user_id,
			quiz_score=round(correct / len(answers) * 100),
			correct_answers=correct,
			total_questions=len(cards),
			score_metadata=metadata,
		)
		invalidate_lesson_cache(lesson.id)

	state = quiz_state(db, lesson, user_id, start)
	return {
		"flashcardId": flashcard_id,
		"correct": previous["correct"],
		"correctAnswer": quiz.get("correctAnswer"),
		"explanation": quiz.get("explanation"),
		"alreadyAnswered": already_answered,
		"quizScore": state["quizScore"],
		"correctAnswers": state["correctAnswers"],
		"answered": state["answered"],
		"totalQuestions": state["totalQuestions"],
		"targetDifficulty": state["targetDifficulty"],
		"nextQuestionId": state["nextQuestionId"],
		"finished": state["finished"],
	}


def grade_label(total_score: int) -> str:
	for threshold, label in GRADES:
		if total_score >= threshold:
			return label
	return "Weiter üben"


def finish_lesson(db: Session, lesson: Lesson, user_id: str, time_spent_seconds: Optional[int] = None) -> Dict[str, Any]:
	if time_spent_seconds is not None:
		upsert_score(db, lesson.id, user_id, time_spent_seconds=max(int(time_spent_seconds), 0))
	complete_lesson(db, lesson)
	row = get_score(db, lesson.id, user_id)
	total = row.total_score if row is not None else 0
	return {
		"success": True,
		"lessonId": lesson.id,
		"phase": lesson.current_phase,
		"completedAt": (lesson.completed_at or datetime.utcnow()).isoformat(),
		"totalScore": total,
		"correctAnswers": row.correct_answers if row is not None else 0,
		"totalQuestions": row.total_questions if row is not None else 0,
		"grade": grade_label(total),
	}
