"""Repository interfaces for quizcore persistent state."""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

from .models import Question


@dataclass
class QuizSessionRecord:
    """Server-side copy of a quiz, including the answer key."""

    session_id: str
    owner_id: str
    questions: List[Question]
    created_at: datetime
    expires_at: datetime
    answered_question_ids: Set[str] = field(default_factory=set)

    def find_question(self, question_id: str) -> Optional[Question]:
        return next((question for question in self.questions if question.id == question_id), None)

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "owner_id": self.owner_id,
            "questions": [question.model_dump(mode="json") for question in self.questions],
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any], answered: Optional[Set[str]] = None) -> "QuizSessionRecord":
        return cls(
            session_id=payload["session_id"],
            owner_id=payload["owner_id"],
            questions=[Question.model_validate(item) for item in payload["questions"]],
            created_at=datetime.fromisoformat(payload["created_at"]),
            expires_at=datetime.fromisoformat(payload["expires_at"]),
            answered_question_ids=set(answered or ()),
        )


class DocumentStore(ABC):
    """Keyed JSON-like documents, one per learner."""

    @abstractmethod
    def get(self, owner_id: str) -> Optional[Dict[str, Any]]:
        """Return a copy of the document, or ``None`` when absent."""

    @abstractmethod
    def set(self, owner_id: str, fields: Dict[str, Any]) -> None:
        """Replace the whole document."""

    @abstractmethod
    def update(self, owner_id: str, fields: Dict[str, Any]) -> None:
        """Shallow-merge ``fields`` into the document, creating it if needed."""

    @abstractmethod
    def transact(
        self, owner_id: str, fn: Callable[[Dict[str, Any]], Dict[str, Any]]
    ) -> Dict[str, Any]:
        """Atomically replace the document with ``fn(current)`` and return it."""


class QuizSessionRepository(ABC):
    """Persist quiz sessions and their answered-question ledger."""

    @abstractmethod
    def save_session(self, record: QuizSessionRecord) -> None:
        """Persist a new session."""

    @abstractmethod
    def load_session(self, session_id: str) -> Optional[QuizSessionRecord]:
        """Return the session with its ledger, if present."""

    @abstractmethod
    def delete_session(self, session_id: str) -> None:
        """Remove the session and its ledger."""

    @abstractmethod
    def claim_answer(self, session_id: str, question_id: str, answered_at: datetime) -> bool:
        """Record the question as answered; ``True`` only for the first caller."""

    @abstractmethod
    def answered_question_ids(self, session_id: str) -> Set[str]:
        """Return the ids already claimed in the session."""

    @abstractmethod
    def delete_expired(self, now: datetime) -> int:
        """Delete sessions whose expiry is at or before ``now``."""


class ReviewStateRepository(ABC):
    """Maintain scheduler state per learner and card."""

    @abstractmethod
    def load_review(self, owner_id: str, card_id: str) -> Optional[dict]:
        """Return the stored scheduler state, if present."""

    @abstractmethod
    def save_review(self, owner_id: str, card_id: str, state: dict) -> None:
        """Persist the scheduler state."""

    @abstractmethod
    def update_review(
        self, owner_id: str, card_id: str, fn: Callable[[Optional[dict]], dict]
    ) -> dict:
        """Atomically replace the state with ``fn(current)`` and return it."""

    @abstractmethod
    def list_reviews(self, owner_id: str) -> Dict[str, dict]:
        """Return every stored state for the learner keyed by card id."""


__all__ = [
    "DocumentStore",
    "QuizSessionRecord",
    "QuizSessionRepository",
    "ReviewStateRepository",
]
