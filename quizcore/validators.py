"""Validation of generated questions and learner answers."""
from __future__ import annotations

import re
from typing import Any, Iterable, List, Set, Union

from .domain import fingerprint_key
from .errors import ValidationError
from .models import Question


FORBIDDEN_PATTERNS = (
    re.compile(r"\bTODO\b", re.IGNORECASE),
    re.compile(r"\bTBD\b", re.IGNORECASE),
    re.compile(r"lorem ipsum", re.IGNORECASE),
    re.compile(r"\?{3,}"),
)
MAX_OPTIONS = 10


def _assert_forbidden_patterns(text: str, context: str) -> None:
    for pattern in FORBIDDEN_PATTERNS:
        if pattern.search(text):
            raise ValidationError(f"Forbidden pattern detected in {context}: '{pattern.pattern}'")


def _normalise(text: str) -> str:
    return " ".join(text.lower().split())


def validate_question(question: Question) -> None:
    """Validate a generated question for structural and content quality."""

    if not question.question.strip():
        raise ValidationError("Question stems must be non-empty")
    _assert_forbidden_patterns(question.question, "question stem")

    if not 2 <= len(question.options) <= MAX_OPTIONS:
        raise ValidationError(f"Questions must have between 2 and {MAX_OPTIONS} options")
    seen: Set[str] = set()
    for option in question.options:
        if not option.strip():
            raise ValidationError("Question options must provide non-empty text")
        _assert_forbidden_patterns(option, "question option")
        key = _normalise(option)
        if key in seen:
            raise ValidationError(f"Duplicate option text detected: {option!r}")
        seen.add(key)

    if not question.explanation.strip():
        raise ValidationError("Question explanations must be non-empty")
    _assert_forbidden_patterns(question.explanation, "explanation")

    if question.incorrect_explanations and len(question.incorrect_explanations) != len(question.options):
        raise ValidationError("Incorrect explanations must align with the options")

    if not question.topics or any(not topic.strip() for topic in question.topics):
        raise ValidationError("Questions must reference at least one non-empty topic")


def validate_questions(questions: Iterable[Question]) -> None:
    """Validate a question set destined for a single quiz session."""

    seen_ids: Set[str] = set()
    seen_fingerprints = set()
    count = 0
    for question in questions:
        count += 1
        if question.id in seen_ids:
            raise ValidationError(f"Duplicate question identifier detected: {question.id}")
        seen_ids.add(question.id)
        key = fingerprint_key(question.fingerprint)
        if key is not None:
            if key in seen_fingerprints:
                raise ValidationError(f"Duplicate question fingerprint detected: {question.id}")
            seen_fingerprints.add(key)
        validate_question(question)
    if not count:
        raise ValidationError("A quiz session needs at least one question")


def _as_index(value: Any, total: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError("Answer indices must be integers")
    if not 0 <= value < total:
        raise ValidationError(f"Answer index {value} is out of range")
    return value


def validate_user_answer(question: Question, answer: Any) -> Union[int, List[int]]:
    """Check an answer's shape against the question and return it normalised.

    Single-answer questions take one index. Multiple-answer questions take a
    non-empty list (a bare index counts as one selection); repeated indices
    collapse.
    """

    total = len(question.options)
    if question.question_type == "single":
        if isinstance(answer, (list, tuple, set)):
            raise ValidationError("Single-answer questions accept exactly one index")
        return _as_index(answer, total)

    if not isinstance(answer, (list, tuple, set)):
        answer = [answer]
    if not answer:
        raise ValidationError("Select at least one option")
    if len(answer) > MAX_OPTIONS:
        raise ValidationError("Too many selections")
    indices = [_as_index(item, total) for item in answer]
    return list(dict.fromkeys(indices))


__all__ = [
    "FORBIDDEN_PATTERNS",
    "ValidationError",
    "validate_question",
    "validate_questions",
    "validate_user_answer",
]
