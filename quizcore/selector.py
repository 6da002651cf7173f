"""Adaptive difficulty selection and deterministic option shuffles."""
from __future__ import annotations

import random
from typing import Any, Dict, List, Optional, Sequence, TypeVar, Union

from .config import SelectorConfig
from .models import Difficulty, Question, QuestionCategory, QuestionType


T = TypeVar("T")

DIFFICULTY_BANDS: Sequence[Difficulty] = ("easy", "medium", "hard")
CATEGORY_WEIGHTS = (
    ("single-domain-single-topic", 0.70),
    ("single-domain-multiple-topics", 0.25),
    ("multiple-domains-multiple-topics", 0.05),
)

RandomSource = Union[random.Random, Any]


def _resolve_rng(rng: Optional[Union[RandomSource, int]]) -> RandomSource:
    if rng is None:
        return random
    if isinstance(rng, int):
        return random.Random(rng)
    return rng


def select_adaptive_difficulty(
    theta: float, rng: Optional[RandomSource] = None, config: Optional[SelectorConfig] = None
) -> Difficulty:
    """Pick a difficulty band for the learner, occasionally one step harder."""

    config = config or SelectorConfig()
    rng = _resolve_rng(rng)
    if theta < config.easy_upper_theta:
        band_index = 0
    elif theta >= config.hard_lower_theta:
        band_index = 2
    else:
        band_index = 1
    if rng.random() < config.challenge_probability:
        band_index = min(band_index + 1, len(DIFFICULTY_BANDS) - 1)
    return DIFFICULTY_BANDS[band_index]


def select_question_type(
    rng: Optional[RandomSource] = None, config: Optional[SelectorConfig] = None
) -> QuestionType:
    config = config or SelectorConfig()
    rng = _resolve_rng(rng)
    return "single" if rng.random() < config.single_answer_weight else "multiple"


def select_question_category(rng: Optional[RandomSource] = None) -> QuestionCategory:
    rng = _resolve_rng(rng)
    draw = rng.random()
    cumulative = 0.0
    for category, weight in CATEGORY_WEIGHTS:
        cumulative += weight
        if draw < cumulative:
            return category
    return CATEGORY_WEIGHTS[-1][0]


def fisher_yates_shuffle(items: Sequence[T], rng: Optional[Union[RandomSource, int]] = None) -> List[T]:
    """Return a shuffled copy of ``items``; an int ``rng`` is used as a seed."""

    shuffled = list(items)
    rng = _resolve_rng(rng)
    for i in range(len(shuffled) - 1, 0, -1):
        j = rng.randint(0, i)
        shuffled[i], shuffled[j] = shuffled[j], shuffled[i]
    return shuffled


def shuffle_question_options(
    question: Question, rng: Optional[Union[RandomSource, int]] = None
) -> Question:
    """Permute options and per-option explanations, remapping the answer key."""

    order = fisher_yates_shuffle(range(len(question.options)), rng)
    new_position: Dict[int, int] = {old: new for new, old in enumerate(order)}
    update: Dict[str, Any] = {"options": [question.options[old] for old in order]}
    if len(question.incorrect_explanations) == len(question.options):
        update["incorrect_explanations"] = [question.incorrect_explanations[old] for old in order]
    if isinstance(question.correct_answer, int):
        update["correct_answer"] = new_position[question.correct_answer]
    else:
        update["correct_answer"] = sorted(new_position[index] for index in question.correct_answer)
    return question.model_copy(update=update)


__all__ = [
    "CATEGORY_WEIGHTS",
    "DIFFICULTY_BANDS",
    "fisher_yates_shuffle",
    "select_adaptive_difficulty",
    "select_question_category",
    "select_question_type",
    "shuffle_question_options",
]
