"""Tests for adaptive selection and option shuffling."""

from __future__ import annotations

import random
from collections import Counter

import pytest
from hypothesis import given, settings, strategies as st

from quizcore.config import SelectorConfig
from quizcore.selector import (
    fisher_yates_shuffle,
    select_adaptive_difficulty,
    select_question_category,
    select_question_type,
    shuffle_question_options,
)

from conftest import make_multiple_question, make_question


class FixedDraw:
    """Random source returning a constant draw."""

    def __init__(self, value: float) -> None:
        self.value = value

    def random(self) -> float:
        return self.value


@pytest.mark.parametrize(
    "theta, expected",
    [(-2.0, "easy"), (-0.5, "medium"), (0.0, "medium"), (0.75, "hard"), (2.5, "hard")],
)
def test_difficulty_band_without_challenge(theta, expected):
    assert select_adaptive_difficulty(theta, FixedDraw(0.99)) == expected


@pytest.mark.parametrize(
    "theta, expected",
    [(-2.0, "medium"), (0.0, "hard"), (2.5, "hard")],
)
def test_challenge_draw_bumps_one_band(theta, expected):
    assert select_adaptive_difficulty(theta, FixedDraw(0.0)) == expected


def test_challenge_rate_is_roughly_configured_probability():
    config = SelectorConfig(challenge_probability=0.2)
    rng = random.Random(5)
    counts = Counter(select_adaptive_difficulty(0.0, rng, config) for _ in range(2000))
    assert 0.15 < counts["hard"] / 2000 < 0.25


def test_question_type_uses_single_answer_weight():
    assert select_question_type(FixedDraw(0.1)) == "single"
    assert select_question_type(FixedDraw(0.95)) == "multiple"


@pytest.mark.parametrize(
    "draw, expected",
    [
        (0.0, "single-domain-single-topic"),
        (0.69, "single-domain-single-topic"),
        (0.8, "single-domain-multiple-topics"),
        (0.97, "multiple-domains-multiple-topics"),
    ],
)
def test_question_category_weights(draw, expected):
    assert select_question_category(FixedDraw(draw)) == expected


def test_shuffle_with_same_seed_is_reproducible():
    items = list(range(10))

    assert fisher_yates_shuffle(items, 42) == fisher_yates_shuffle(items, 42)
    assert items == list(range(10))


@settings(max_examples=100, deadline=None)
@given(items=st.lists(st.integers(), max_size=20), seed=st.integers(min_value=0, max_value=10_000))
def test_shuffle_is_a_permutation(items, seed):
    assert sorted(fisher_yates_shuffle(items, seed)) == sorted(items)


@pytest.mark.parametrize("seed", range(10))
def test_option_shuffle_keeps_answer_text(seed):
    question = make_question()
    correct_text = question.options[question.correct_answer]

    shuffled = shuffle_question_options(question, seed)

    assert shuffled.options[shuffled.correct_answer] == correct_text
    assert sorted(shuffled.options) == sorted(question.options)
    for option, explanation in zip(shuffled.options, shuffled.incorrect_explanations):
        original_index = question.options.index(option)
        assert explanation == question.incorrect_explanations[original_index]
    assert question.options[0] == "Physical"


@pytest.mark.parametrize("seed", range(10))
def test_option_shuffle_remaps_multiple_answers(seed):
    question = make_multiple_question()
    correct_texts = {question.options[index] for index in question.correct_answer}

    shuffled = shuffle_question_options(question, seed)

    assert {shuffled.options[index] for index in shuffled.correct_answer} == correct_texts
    assert shuffled.correct_answer == sorted(shuffled.correct_answer)
    assert shuffled.id == question.id
