"""Shared fixtures for the quizcore test suite."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from quizcore.metrics import METRICS
from quizcore.models import Question
from quizcore.storage import InMemoryStore, SqliteStore


class FixedClock:
    """Manually advanced clock for expiry and scheduling tests."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> None:
        self.now = self.now + timedelta(**kwargs)


async def no_sleep(_delay: float) -> None:
    return None


def make_question(**overrides: Any) -> Question:
    fields: dict = {
        "question": "Which control type is a locked server room door?",
        "options": ["Physical", "Technical", "Managerial", "Operational"],
        "correct_answer": 0,
        "explanation": "Locks restrict physical access.",
        "incorrect_explanations": [
            "",
            "Technical controls are implemented in systems.",
            "Managerial controls are policies.",
            "Operational controls are carried out by people.",
        ],
        "topics": ["Security controls"],
        "difficulty": "medium",
    }
    fields.update(overrides)
    return Question.model_validate(fields)


def make_multiple_question(**overrides: Any) -> Question:
    fields: dict = {
        "question": "Which are indicators of phishing?",
        "question_type": "multiple",
        "options": ["Urgent tone", "Look-alike domain", "Signed by corporate CA", "Internal ticket"],
        "correct_answer": [0, 1],
        "explanation": "Urgency and look-alike domains are phishing signs.",
        "topics": ["Social engineering"],
        "difficulty": "hard",
    }
    fields.update(overrides)
    return Question.model_validate(fields)


@pytest.fixture(autouse=True)
def reset_metrics():
    METRICS.reset()
    yield
    METRICS.reset()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        yield InMemoryStore()
        return
    sqlite_store = SqliteStore(tmp_path / "quizcore.db")
    yield sqlite_store
    sqlite_store.close()
