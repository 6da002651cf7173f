"""FSRS spaced-repetition scheduling for flashcards and quiz items."""
from __future__ import annotations

import logging
import math
import random
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import IntEnum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from .config import SchedulerConfig
from .selector import fisher_yates_shuffle


logger = logging.getLogger(__name__)


MIN_DIFFICULTY = 1.0
MAX_DIFFICULTY = 10.0
MIN_STABILITY = 0.1
MATURE_INTERVAL_DAYS = 21
FUZZ_RANGES = (
    (2.5, 7.0, 0.15),
    (7.0, 20.0, 0.10),
    (20.0, math.inf, 0.05),
)


class Grade(IntEnum):
    AGAIN = 1
    HARD = 2
    GOOD = 3
    EASY = 4


class CardState(IntEnum):
    NEW = 0
    LEARNING = 1
    REVIEW = 2
    RELEARNING = 3


def coerce_grade(value: Any) -> Grade:
    """Map any grade-like input onto a :class:`Grade`; unknown values become ``AGAIN``."""

    if isinstance(value, Grade):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            value = int(text)
        except ValueError:
            member = Grade.__members__.get(text.upper())
            if member is not None:
                return member
            logger.warning("Unknown review grade coerced to AGAIN", extra={"grade": value})
            return Grade.AGAIN
    if isinstance(value, float) and math.isfinite(value):
        value = int(round(value))
    if isinstance(value, int):
        return Grade(max(int(Grade.AGAIN), min(int(Grade.EASY), int(value))))
    logger.warning("Unknown review grade coerced to AGAIN", extra={"grade": repr(value)})
    return Grade.AGAIN


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


@dataclass
class ReviewState:
    """Persisted scheduling state for one card."""

    stability: float = 0.0
    difficulty: float = 0.0
    elapsed_days: int = 0
    scheduled_days: int = 0
    reps: int = 0
    lapses: int = 0
    state: CardState = CardState.NEW
    due_at: Optional[datetime] = None
    last_reviewed_at: Optional[datetime] = None
    last_grade: Optional[Grade] = None

    def to_dict(self) -> dict:
        return {
            "stability": self.stability,
            "difficulty": self.difficulty,
            "elapsed_days": self.elapsed_days,
            "scheduled_days": self.scheduled_days,
            "reps": self.reps,
            "lapses": self.lapses,
            "state": int(self.state),
            "due_at": self.due_at.isoformat() if self.due_at else None,
            "last_reviewed_at": self.last_reviewed_at.isoformat() if self.last_reviewed_at else None,
            "last_grade": int(self.last_grade) if self.last_grade is not None else None,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ReviewState":
        due_at = payload.get("due_at")
        last_reviewed_at = payload.get("last_reviewed_at")
        last_grade = payload.get("last_grade")
        return cls(
            stability=float(payload.get("stability", 0.0)),
            difficulty=float(payload.get("difficulty", 0.0)),
            elapsed_days=int(payload.get("elapsed_days", 0)),
            scheduled_days=int(payload.get("scheduled_days", 0)),
            reps=int(payload.get("reps", 0)),
            lapses=int(payload.get("lapses", 0)),
            state=CardState(int(payload.get("state", CardState.NEW))),
            due_at=_as_utc(datetime.fromisoformat(due_at)) if due_at else None,
            last_reviewed_at=_as_utc(datetime.fromisoformat(last_reviewed_at))
            if last_reviewed_at
            else None,
            last_grade=Grade(int(last_grade)) if last_grade is not None else None,
        )


def forgetting_curve(elapsed_days: float, stability: float) -> float:
    """Power-law retrievability ``(1 + t / (9 S)) ** -1``."""

    if stability <= 0:
        return 1.0
    return (1.0 + max(elapsed_days, 0.0) / (9.0 * stability)) ** -1


def next_interval(stability: float, request_retention: float = 0.9, maximum_interval: int = 36500) -> int:
    """Whole days until retrievability falls to ``request_retention``."""

    interval = 9.0 * stability * (1.0 / request_retention - 1.0)
    return int(max(1, min(maximum_interval, round(interval))))


def apply_fuzz(interval: int, elapsed_days: int, rng: Any, maximum_interval: int = 36500) -> int:
    """Spread an interval over a small band of whole days to avoid review clumping."""

    if interval < 2.5:
        return interval
    delta = 1.0
    for start, end, factor in FUZZ_RANGES:
        delta += factor * max(min(interval, end) - start, 0.0)
    min_ivl = max(2, int(round(interval - delta)))
    max_ivl = min(int(round(interval + delta)), maximum_interval)
    if interval > elapsed_days:
        min_ivl = max(min_ivl, elapsed_days + 1)
    min_ivl = min(min_ivl, max_ivl)
    return rng.randint(min_ivl, max_ivl)


def _clamp_difficulty(value: float) -> float:
    return max(MIN_DIFFICULTY, min(MAX_DIFFICULTY, value))


def _init_stability(w: List[float], grade: Grade) -> float:
    return max(w[int(grade) - 1], MIN_STABILITY)


def _init_difficulty(w: List[float], grade: Grade) -> float:
    return _clamp_difficulty(w[4] - (int(grade) - 3) * w[5])


def _next_difficulty(w: List[float], difficulty: float, grade: Grade) -> float:
    shifted = difficulty - w[6] * (int(grade) - 3)
    return _clamp_difficulty(w[7] * w[4] + (1 - w[7]) * shifted)


def _recall_stability(
    w: List[float], difficulty: float, stability: float, retrievability: float, grade: Grade
) -> float:
    hard_penalty = w[15] if grade == Grade.HARD else 1.0
    easy_bonus = w[16] if grade == Grade.EASY else 1.0
    growth = (
        math.exp(w[8])
        * (11 - difficulty)
        * stability ** -w[9]
        * (math.exp(w[10] * (1 - retrievability)) - 1)
        * hard_penalty
        * easy_bonus
    )
    return max(stability * (1 + growth), MIN_STABILITY)


def _forget_stability(w: List[float], difficulty: float, stability: float, retrievability: float) -> float:
    forgotten = (
        w[11]
        * difficulty ** -w[12]
        * ((stability + 1) ** w[13] - 1)
        * math.exp(w[14] * (1 - retrievability))
    )
    return max(min(forgotten, stability), MIN_STABILITY)


def _default_rng(prior: ReviewState, now: datetime) -> random.Random:
    # Independent of the grade so every grade of one review draws the same fuzz.
    seed = f"{now.isoformat()}|{prior.reps}|{prior.lapses}|{prior.stability:.6f}"
    return random.Random(seed)


def _elapsed(prior: ReviewState, now: datetime) -> float:
    if prior.last_reviewed_at is None:
        return 0.0
    seconds = (now - _as_utc(prior.last_reviewed_at)).total_seconds()
    return max(seconds / 86400.0, 0.0)


def retrievability(state: ReviewState, now: Optional[datetime] = None) -> float:
    """Probability of recall at ``now`` for a reviewed card; 0 for new cards."""

    if state.state == CardState.NEW or state.last_reviewed_at is None:
        return 0.0
    now = _as_utc(now or datetime.now(timezone.utc))
    return forgetting_curve(_elapsed(state, now), state.stability)


def next_review(
    prior: Optional[ReviewState],
    grade: Any,
    now: Optional[datetime] = None,
    *,
    config: Optional[SchedulerConfig] = None,
    rng: Optional[Any] = None,
) -> ReviewState:
    """Apply one review to ``prior`` and return the new scheduling state.

    Total over every prior state and grade: unknown grades are coerced to
    ``AGAIN``. Without an explicit ``rng`` the fuzz is drawn from a generator
    seeded by the review time and card state, so identical inputs give
    identical outputs.
    """

    config = config or SchedulerConfig()
    w = list(config.weights)
    grade = coerce_grade(grade)
    now = _as_utc(now or datetime.now(timezone.utc))
    prior = prior or ReviewState()
    rng = rng or _default_rng(prior, now)

    elapsed = _elapsed(prior, now)
    elapsed_days = int(elapsed)

    def fuzzed(days: int) -> int:
        if not config.enable_fuzz:
            return days
        return apply_fuzz(days, elapsed_days, rng, config.maximum_interval)

    def review_interval(stability: float) -> int:
        return fuzzed(next_interval(stability, config.request_retention, config.maximum_interval))

    lapses = prior.lapses
    scheduled_minutes = 0
    scheduled_days = 0

    if prior.state == CardState.NEW:
        stability = _init_stability(w, grade)
        difficulty = _init_difficulty(w, grade)
        if grade in (Grade.AGAIN, Grade.HARD):
            state = CardState.LEARNING
            scheduled_minutes = config.new_step_minutes[0 if grade == Grade.AGAIN else 1]
        else:
            state = CardState.REVIEW
            good_days = review_interval(_init_stability(w, Grade.GOOD))
            if grade == Grade.GOOD:
                scheduled_days = good_days
            else:
                scheduled_days = max(review_interval(stability), good_days + 1)
    elif prior.state in (CardState.LEARNING, CardState.RELEARNING):
        current_r = forgetting_curve(elapsed, prior.stability)
        difficulty = _next_difficulty(w, prior.difficulty, grade)
        if grade in (Grade.AGAIN, Grade.HARD):
            state = prior.state
            stability = max(prior.stability, MIN_STABILITY)
            scheduled_minutes = config.relearning_step_minutes[0 if grade == Grade.AGAIN else 1]
        else:
            state = CardState.REVIEW
            stability = _recall_stability(w, difficulty, max(prior.stability, MIN_STABILITY), current_r, grade)
            good_days = review_interval(
                _recall_stability(w, difficulty, max(prior.stability, MIN_STABILITY), current_r, Grade.GOOD)
            )
            if grade == Grade.GOOD:
                scheduled_days = good_days
            else:
                scheduled_days = max(review_interval(stability), good_days + 1)
    else:
        current_r = forgetting_curve(elapsed, prior.stability)
        difficulty = _next_difficulty(w, prior.difficulty, grade)
        base_stability = max(prior.stability, MIN_STABILITY)
        if grade == Grade.AGAIN:
            state = CardState.RELEARNING
            lapses += 1
            stability = _forget_stability(w, difficulty, base_stability, current_r)
            scheduled_minutes = config.relearning_step_minutes[0]
        else:
            state = CardState.REVIEW
            stabilities = {
                g: _recall_stability(w, difficulty, base_stability, current_r, g)
                for g in (Grade.HARD, Grade.GOOD, Grade.EASY)
            }
            hard_days = review_interval(stabilities[Grade.HARD])
            good_days = review_interval(stabilities[Grade.GOOD])
            easy_days = review_interval(stabilities[Grade.EASY])
            hard_days = min(hard_days, good_days)
            good_days = max(good_days, hard_days + 1)
            easy_days = max(easy_days, good_days + 1)
            stability = stabilities[grade]
            scheduled_days = {Grade.HARD: hard_days, Grade.GOOD: good_days, Grade.EASY: easy_days}[grade]

    scheduled_days = min(scheduled_days, config.maximum_interval)
    if scheduled_minutes:
        due_at = now + timedelta(minutes=scheduled_minutes)
    else:
        due_at = now + timedelta(days=scheduled_days)

    return ReviewState(
        stability=stability,
        difficulty=difficulty,
        elapsed_days=elapsed_days,
        scheduled_days=scheduled_days,
        reps=prior.reps + 1,
        lapses=lapses,
        state=state,
        due_at=due_at,
        last_reviewed_at=now,
        last_grade=grade,
    )


def preview(
    prior: Optional[ReviewState],
    now: Optional[datetime] = None,
    *,
    config: Optional[SchedulerConfig] = None,
) -> Dict[Grade, ReviewState]:
    """Outcome of every grade for ``prior``, e.g. to label answer buttons."""

    now = _as_utc(now or datetime.now(timezone.utc))
    return {grade: next_review(prior, grade, now, config=config) for grade in Grade}


ReviewMapping = Mapping[str, Union[ReviewState, Mapping[str, Any]]]


def _as_state(value: Union[ReviewState, Mapping[str, Any]]) -> ReviewState:
    if isinstance(value, ReviewState):
        return value
    return ReviewState.from_dict(value)


def get_due_cards(
    reviews: ReviewMapping,
    all_card_ids: Iterable[str],
    now: Optional[datetime] = None,
    rng: Optional[Any] = None,
) -> List[str]:
    """Never-reviewed cards plus cards whose due time has passed, interleaved."""

    now = _as_utc(now or datetime.now(timezone.utc))
    due: List[str] = []
    for card_id in all_card_ids:
        stored = reviews.get(card_id)
        if stored is None:
            due.append(card_id)
            continue
        state = _as_state(stored)
        if state.state == CardState.NEW or state.due_at is None or _as_utc(state.due_at) <= now:
            due.append(card_id)
    return fisher_yates_shuffle(due, rng)


def deck_stats(reviews: ReviewMapping, all_card_ids: Iterable[str]) -> Dict[str, int]:
    """Count cards per scheduling state; mature review cards count as mastered."""

    card_ids = list(dict.fromkeys(all_card_ids))
    stats = {"total": len(card_ids), "new": 0, "learning": 0, "review": 0, "relearning": 0, "mastered": 0}
    for card_id in card_ids:
        stored = reviews.get(card_id)
        state = _as_state(stored) if stored is not None else ReviewState()
        if state.state == CardState.NEW:
            stats["new"] += 1
        elif state.state == CardState.LEARNING:
            stats["learning"] += 1
        elif state.state == CardState.RELEARNING:
            stats["relearning"] += 1
        elif state.scheduled_days >= MATURE_INTERVAL_DAYS:
            stats["mastered"] += 1
        else:
            stats["review"] += 1
    return stats


__all__ = [
    "CardState",
    "Grade",
    "ReviewState",
    "apply_fuzz",
    "coerce_grade",
    "deck_stats",
    "forgetting_curve",
    "get_due_cards",
    "next_interval",
    "next_review",
    "preview",
    "retrievability",
]
