"""Tests for answer grading and partial credit."""

from __future__ import annotations

import pytest
from hypothesis import given, settings, strategies as st

from quizcore.irt import calculate_partial_credit
from quizcore.sessions import grade_answer

from conftest import make_multiple_question, make_question


def test_one_hit_one_miss_scores_zero():
    assert calculate_partial_credit({0, 2}, {0, 1}, 4, 250.0) == 0.0


def test_exact_selection_earns_full_points():
    assert calculate_partial_credit([0, 1], [0, 1], 4, 250.0) == 250.0


def test_half_the_correct_options_earns_half():
    assert calculate_partial_credit([0], [0, 1], 4, 250.0) == pytest.approx(125.0)


def test_repeated_indices_count_once():
    assert calculate_partial_credit([0, 0, 0], [0, 1], 4, 100.0) == pytest.approx(50.0)


def test_out_of_range_correct_indices_are_ignored():
    assert calculate_partial_credit([0], [0, 7], 4, 100.0) == 100.0


def test_zero_max_points_earns_nothing():
    assert calculate_partial_credit([0, 1], [0, 1], 4, 0.0) == 0.0


option_sets = st.sets(st.integers(min_value=0, max_value=5), min_size=1, max_size=6)


@settings(max_examples=200, deadline=None)
@given(selected=option_sets, correct=option_sets, extra=st.integers(min_value=0, max_value=5))
def test_partial_credit_is_bounded_and_monotone_in_hits(selected, correct, extra):
    points = calculate_partial_credit(selected, correct, 6, 100.0)
    assert 0.0 <= points <= 100.0

    if extra in correct:
        assert calculate_partial_credit(selected | {extra}, correct, 6, 100.0) >= points
    else:
        assert calculate_partial_credit(selected | {extra}, correct, 6, 100.0) <= points


def test_grade_single_answer():
    question = make_question()

    assert grade_answer(question, 0) == (True, 150.0)
    assert grade_answer(question, 2) == (False, 0.0)


def test_grade_multiple_answer_partial_and_exact():
    question = make_multiple_question()

    assert grade_answer(question, [1, 0]) == (True, 250.0)
    is_correct, points = grade_answer(question, [0])
    assert not is_correct
    assert points == pytest.approx(125.0)
    assert grade_answer(question, [0, 3]) == (False, 0.0)
