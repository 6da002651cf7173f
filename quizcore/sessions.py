"""Server-authoritative quiz sessions with an at-most-once grading ledger."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, List, Optional, Union
from uuid import uuid4

from .errors import ConflictError, NotFoundError
from .irt import calculate_partial_credit
from .metrics import METRICS
from .models import ClientQuestion, Question, QuestionFingerprint, ResponseRecord
from .repositories import QuizSessionRecord, QuizSessionRepository
from .validators import validate_questions, validate_user_answer


logger = logging.getLogger(__name__)


SESSION_PREFIX = "quiz_"
DEFAULT_SESSION_TTL = timedelta(hours=24)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def sanitize_for_client(questions: Iterable[Question]) -> List[ClientQuestion]:
    """Strip answer keys and explanations; the only form sent before grading."""

    return [question.to_client() for question in questions]


@dataclass
class VerificationResult:
    """Outcome of grading one answer, including what the ability update needs."""

    session_id: str
    question_id: str
    is_correct: bool
    points_earned: float
    max_points: float
    correct_answer: Union[int, List[int]]
    explanation: str
    incorrect_explanations: List[str] = field(default_factory=list)
    topics: List[str] = field(default_factory=list)
    difficulty: str = "medium"
    question_type: str = "single"
    irt_difficulty: float = 0.0
    irt_discrimination: float = 1.5
    guessing: float = 0.0
    fingerprint: Optional[QuestionFingerprint] = None
    answered_at: datetime = field(default_factory=_utcnow)

    def to_response_record(self) -> ResponseRecord:
        return ResponseRecord(
            question_id=self.question_id,
            is_correct=self.is_correct,
            irt_difficulty=self.irt_difficulty,
            irt_discrimination=self.irt_discrimination,
            guessing=self.guessing,
            points_earned=self.points_earned,
            max_points=self.max_points,
            topics=list(self.topics),
            fingerprint=self.fingerprint,
            session_id=self.session_id,
            answered_at=self.answered_at,
        )


def grade_answer(question: Question, answer: Union[int, List[int]]) -> tuple:
    """Return ``(is_correct, points_earned)`` for an already validated answer."""

    max_points = float(question.max_points or 0.0)
    if question.question_type == "single":
        is_correct = answer == question.correct_answer
        return is_correct, max_points if is_correct else 0.0
    selected = set(answer if isinstance(answer, list) else [answer])
    correct = set(question.correct_indices)
    if selected == correct:
        return True, max_points
    points = calculate_partial_credit(selected, correct, len(question.options), max_points)
    return False, points


class QuizSessionStore:
    """Single source of truth for answer keys and the answered ledger."""

    def __init__(
        self,
        repository: QuizSessionRepository,
        ttl: timedelta = DEFAULT_SESSION_TTL,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._repository = repository
        self._ttl = ttl
        self._clock = clock or _utcnow

    def create_session(self, owner_id: str, questions: Iterable[Question]) -> str:
        items = list(questions)
        validate_questions(items)
        now = self._clock()
        session_id = f"{SESSION_PREFIX}{uuid4().hex}"
        record = QuizSessionRecord(
            session_id=session_id,
            owner_id=owner_id,
            questions=items,
            created_at=now,
            expires_at=now + self._ttl,
        )
        self._repository.save_session(record)
        logger.info(
            "Created quiz session",
            extra={"session_id": session_id, "owner_id": owner_id, "questions": len(items)},
        )
        return session_id

    def _load(self, owner_id: str, session_id: str) -> QuizSessionRecord:
        record = self._repository.load_session(session_id)
        if record is None:
            raise NotFoundError(f"Quiz session {session_id} not found")
        if record.expires_at <= self._clock():
            self._repository.delete_session(session_id)
            logger.info("Expired quiz session removed", extra={"session_id": session_id})
            raise NotFoundError(f"Quiz session {session_id} not found")
        if record.owner_id != owner_id:
            logger.warning(
                "Quiz session owner mismatch",
                extra={"session_id": session_id, "owner_id": owner_id},
            )
            raise NotFoundError(f"Quiz session {session_id} not found")
        return record

    def get_question(self, owner_id: str, session_id: str, question_id: str) -> Question:
        record = self._load(owner_id, session_id)
        question = record.find_question(question_id)
        if question is None:
            raise NotFoundError(f"Question {question_id} not found in session {session_id}")
        return question

    def is_answered(self, owner_id: str, session_id: str, question_id: str) -> bool:
        self._load(owner_id, session_id)
        return question_id in self._repository.answered_question_ids(session_id)

    def mark_answered(self, owner_id: str, session_id: str, question_id: str) -> datetime:
        """Claim the question for grading; a second claim raises :class:`ConflictError`."""

        self.get_question(owner_id, session_id, question_id)
        return self._claim(session_id, question_id)

    def _reject_replay(self, session_id: str, question_id: str) -> None:
        METRICS.record_replay_conflict()
        logger.warning(
            "Replay rejected for answered question",
            extra={"session_id": session_id, "question_id": question_id},
        )
        raise ConflictError(f"Question {question_id} has already been answered")

    def _claim(self, session_id: str, question_id: str) -> datetime:
        answered_at = self._clock()
        if not self._repository.claim_answer(session_id, question_id, answered_at):
            self._reject_replay(session_id, question_id)
        return answered_at

    def verify(
        self, owner_id: str, session_id: str, question_id: str, user_answer: Any
    ) -> VerificationResult:
        """Grade ``user_answer`` once.

        Checks run in order: unknown session or question, already answered
        (whatever the answer content), answer shape, then the atomic claim.
        A malformed answer to an open question leaves it open.
        """

        question = self.get_question(owner_id, session_id, question_id)
        if question_id in self._repository.answered_question_ids(session_id):
            self._reject_replay(session_id, question_id)
        answer = validate_user_answer(question, user_answer)
        answered_at = self._claim(session_id, question_id)

        is_correct, points = grade_answer(question, answer)
        METRICS.record_verification(is_correct, partial=points > 0)
        return VerificationResult(
            session_id=session_id,
            question_id=question.id,
            is_correct=is_correct,
            points_earned=points,
            max_points=float(question.max_points or 0.0),
            correct_answer=question.correct_answer,
            explanation=question.explanation,
            incorrect_explanations=list(question.incorrect_explanations),
            topics=list(question.topics),
            difficulty=question.difficulty,
            question_type=question.question_type,
            irt_difficulty=float(question.irt_difficulty),
            irt_discrimination=float(question.irt_discrimination),
            guessing=question.guessing,
            fingerprint=question.fingerprint,
            answered_at=answered_at,
        )

    def cleanup_expired(self) -> int:
        removed = self._repository.delete_expired(self._clock())
        if removed:
            logger.info("Removed expired quiz sessions", extra={"count": removed})
        return removed


__all__ = [
    "DEFAULT_SESSION_TTL",
    "QuizSessionStore",
    "SESSION_PREFIX",
    "VerificationResult",
    "grade_answer",
    "sanitize_for_client",
]
