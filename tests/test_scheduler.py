"""Tests for the FSRS review scheduler."""

from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone

import pytest

from quizcore.config import SchedulerConfig
from quizcore.scheduler import (
    CardState,
    Grade,
    ReviewState,
    apply_fuzz,
    coerce_grade,
    deck_stats,
    forgetting_curve,
    get_due_cards,
    next_interval,
    next_review,
    preview,
    retrievability,
)


NOW = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


def review_card() -> ReviewState:
    return next_review(None, Grade.GOOD, NOW)


def learning_card() -> ReviewState:
    return next_review(None, Grade.AGAIN, NOW)


def relearning_card() -> ReviewState:
    return next_review(review_card(), Grade.AGAIN, NOW + timedelta(days=3))


PRIORS = {
    "new": lambda: None,
    "learning": learning_card,
    "review": review_card,
    "relearning": relearning_card,
}


@pytest.mark.parametrize("prior_name", sorted(PRIORS))
@pytest.mark.parametrize("grade", [1, 2, 3, 4, "good", "bogus", None, 99, -4, 2.6])
def test_next_review_is_total(prior_name, grade):
    prior = PRIORS[prior_name]()
    now = NOW + timedelta(days=5)

    updated = next_review(prior, grade, now)

    assert isinstance(updated, ReviewState)
    assert updated.due_at > now
    assert updated.last_reviewed_at == now
    assert updated.reps == (prior.reps if prior else 0) + 1
    assert updated.stability > 0
    assert 1.0 <= updated.difficulty <= 10.0


def test_new_card_again_and_hard_enter_learning_steps():
    again = next_review(None, Grade.AGAIN, NOW)
    hard = next_review(None, Grade.HARD, NOW)

    assert again.state == CardState.LEARNING
    assert again.due_at == NOW + timedelta(minutes=1)
    assert hard.state == CardState.LEARNING
    assert hard.due_at == NOW + timedelta(minutes=5)


def test_new_card_good_and_easy_graduate():
    good = next_review(None, Grade.GOOD, NOW)
    easy = next_review(None, Grade.EASY, NOW)

    assert good.state == CardState.REVIEW
    assert easy.state == CardState.REVIEW
    assert easy.scheduled_days > good.scheduled_days


def test_learning_card_graduates_on_good():
    updated = next_review(learning_card(), Grade.GOOD, NOW + timedelta(minutes=2))

    assert updated.state == CardState.REVIEW
    assert updated.scheduled_days >= 1


def test_review_lapse_moves_to_relearning():
    prior = review_card()

    updated = next_review(prior, Grade.AGAIN, NOW + timedelta(days=3))

    assert updated.state == CardState.RELEARNING
    assert updated.lapses == prior.lapses + 1
    assert updated.due_at == NOW + timedelta(days=3, minutes=5)
    assert updated.stability <= prior.stability


def test_preview_orders_review_intervals():
    prior = review_card()

    outcomes = preview(prior, NOW + timedelta(days=4))

    hard = outcomes[Grade.HARD].scheduled_days
    good = outcomes[Grade.GOOD].scheduled_days
    easy = outcomes[Grade.EASY].scheduled_days
    assert hard <= good < easy
    assert outcomes[Grade.AGAIN].state == CardState.RELEARNING


def test_same_inputs_schedule_identically():
    prior = review_card()
    now = NOW + timedelta(days=6)

    assert next_review(prior, Grade.GOOD, now) == next_review(prior, Grade.GOOD, now)


def test_fuzz_can_be_disabled():
    config = SchedulerConfig(enable_fuzz=False)
    prior = next_review(None, Grade.GOOD, NOW, config=config)

    updated = next_review(prior, Grade.GOOD, NOW + timedelta(days=2), config=config)
    expected = next_interval(updated.stability)

    assert updated.scheduled_days >= expected


def test_forgetting_curve_is_ninety_percent_at_stability():
    assert forgetting_curve(0, 5.0) == 1.0
    assert forgetting_curve(5.0, 5.0) == pytest.approx(0.9)
    assert forgetting_curve(10.0, 5.0) < forgetting_curve(5.0, 5.0)


def test_next_interval_depends_on_retention():
    assert next_interval(10.0) == 10
    assert next_interval(10.0, 0.99) < next_interval(10.0, 0.9)
    assert next_interval(0.01) == 1
    assert next_interval(1e9) == 36500


def test_apply_fuzz_stays_near_interval():
    rng = random.Random(3)

    for _ in range(50):
        fuzzed = apply_fuzz(30, 0, rng)
        assert 26 <= fuzzed <= 34

    assert apply_fuzz(2, 0, rng) == 2


def test_retrievability_of_new_card_is_zero():
    assert retrievability(ReviewState(), NOW) == 0.0
    assert 0.0 < retrievability(review_card(), NOW + timedelta(days=3)) < 1.0


@pytest.mark.parametrize(
    "value, expected",
    [
        ("good", Grade.GOOD),
        (" Easy ", Grade.EASY),
        ("2", Grade.HARD),
        (9, Grade.EASY),
        (0, Grade.AGAIN),
        (2.6, Grade.GOOD),
        ("??", Grade.AGAIN),
        (None, Grade.AGAIN),
        (float("nan"), Grade.AGAIN),
        (Grade.HARD, Grade.HARD),
    ],
)
def test_coerce_grade(value, expected):
    assert coerce_grade(value) == expected


def test_review_state_serialises():
    state = review_card()

    assert ReviewState.from_dict(state.to_dict()) == state


def test_due_cards_include_new_and_overdue_only():
    reviews = {
        "overdue": review_card(),
        "future": next_review(None, Grade.EASY, NOW + timedelta(days=10)),
    }

    due = get_due_cards(reviews, ["overdue", "future", "unseen"], NOW + timedelta(days=5), rng=1)

    assert sorted(due) == ["overdue", "unseen"]


def test_due_cards_accept_serialised_states():
    reviews = {"card": review_card().to_dict()}

    assert get_due_cards(reviews, ["card"], NOW) == []
    assert get_due_cards(reviews, ["card"], NOW + timedelta(days=60)) == ["card"]


def test_deck_stats_counts_states():
    mature = ReviewState(state=CardState.REVIEW, scheduled_days=30, due_at=NOW)
    reviews = {
        "learning": learning_card(),
        "review": review_card(),
        "relearning": relearning_card(),
        "mature": mature,
    }

    stats = deck_stats(reviews, ["learning", "review", "relearning", "mature", "new", "new"])

    assert stats == {
        "total": 5,
        "new": 1,
        "learning": 1,
        "review": 1,
        "relearning": 1,
        "mastered": 1,
    }
