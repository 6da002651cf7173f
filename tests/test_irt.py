"""Tests for IRT ability estimation and scoring helpers."""

from __future__ import annotations

import math

import pytest
from hypothesis import assume, given, settings, strategies as st

from quizcore.config import IRTConfig
from quizcore.irt import (
    ability_confidence_interval,
    calculate_irt_parameters,
    calculate_irt_score,
    calculate_points_based_score,
    estimate_ability,
    fisher_information,
    has_sufficient_data,
    observed_score,
    predict_exam_score,
    probability,
    standard_error,
)
from quizcore.models import ResponseRecord


def record(is_correct: bool, a: float = 1.5, b: float = 0.5, points: float | None = None) -> ResponseRecord:
    max_points = 150.0
    if points is None:
        points = max_points if is_correct else 0.0
    return ResponseRecord(
        question_id="q",
        is_correct=is_correct,
        irt_difficulty=b,
        irt_discrimination=a,
        points_earned=points,
        max_points=max_points,
    )


def test_empty_history_has_infinite_standard_error():
    estimate = estimate_ability([])

    assert estimate.theta == 0.0
    assert math.isinf(estimate.standard_error)
    assert estimate.converged
    assert estimate.response_count == 0


def test_seven_of_ten_on_identical_items_matches_closed_form():
    responses = [record(True)] * 7 + [record(False)] * 3

    estimate = estimate_ability(responses)

    # For identical 2PL items the MLE solves P(theta) = 0.7.
    expected = 0.5 + math.log(7 / 3) / 1.5
    assert estimate.theta == pytest.approx(expected, abs=1e-3)
    assert estimate.theta == pytest.approx(1.064865, abs=1e-3)
    assert estimate.converged
    assert math.isfinite(estimate.standard_error)


def test_all_correct_short_history_is_clamped_to_sparse_limit():
    estimate = estimate_ability([record(True)] * 10)

    assert estimate.theta == pytest.approx(2.0)
    assert estimate.converged


def test_all_correct_long_history_reaches_upper_bound():
    estimate = estimate_ability([record(True)] * 20)

    assert estimate.theta == pytest.approx(3.0)


def test_all_wrong_long_history_reaches_lower_bound():
    estimate = estimate_ability([record(False)] * 20)

    assert estimate.theta == pytest.approx(-3.0)


def test_iteration_budget_exhaustion_is_reported():
    config = IRTConfig(max_iterations=1)

    estimate = estimate_ability([record(True)] * 7 + [record(False)] * 3, config)

    assert not estimate.converged
    assert estimate.iterations == 1
    assert math.isfinite(estimate.standard_error)


def test_partial_credit_raises_estimate_over_zero_points():
    zero = [record(True), record(False, points=0.0)]
    partial = [record(True), record(False, points=75.0)]

    assert estimate_ability(partial).theta > estimate_ability(zero).theta


def test_observed_score_uses_point_share_for_incorrect_answers():
    assert observed_score(record(True)) == 1.0
    assert observed_score(record(False, points=75.0)) == pytest.approx(0.5)
    assert observed_score(record(False)) == 0.0


def test_standard_error_shrinks_with_more_items():
    few = standard_error(0.0, [record(True)] * 2)
    many = standard_error(0.0, [record(True)] * 20)

    assert many < few


def test_sufficient_data_threshold():
    assert not has_sufficient_data(14)
    assert has_sufficient_data(15)


@settings(max_examples=100, deadline=None)
@given(
    theta=st.floats(min_value=-50.0, max_value=50.0, allow_nan=False),
    a=st.floats(min_value=0.1, max_value=4.0, allow_nan=False),
    b=st.floats(min_value=-5.0, max_value=5.0, allow_nan=False),
    c=st.floats(min_value=0.0, max_value=0.5, allow_nan=False),
)
def test_probability_is_bounded_and_information_non_negative(theta, a, b, c):
    p = probability(theta, a, b, c)

    assert math.isfinite(p)
    assert c <= p <= 1.0
    assert fisher_information(theta, a, b, c) >= 0.0


@settings(max_examples=50, deadline=None)
@given(
    low=st.floats(min_value=-5.0, max_value=5.0, allow_nan=False),
    delta=st.floats(min_value=0.01, max_value=5.0, allow_nan=False),
)
def test_probability_increases_with_ability(low, delta):
    assert probability(low + delta, 1.5, 0.0) >= probability(low, 1.5, 0.0)


def test_confidence_interval_for_infinite_error_spans_range():
    assert ability_confidence_interval(0.5, math.inf) == (-3.0, 3.0)


def test_confidence_interval_unknown_level_uses_95_percent():
    lower, upper = ability_confidence_interval(0.0, 0.5, level=0.42)

    assert lower == pytest.approx(-0.98)
    assert upper == pytest.approx(0.98)


def test_confidence_interval_is_clipped():
    lower, upper = ability_confidence_interval(2.8, 0.5, level=0.99)

    assert upper == 3.0
    assert lower == pytest.approx(2.8 - 2.576 * 0.5)


def test_predict_exam_score_is_clamped():
    assert predict_exam_score(0.0) == 550
    assert predict_exam_score(1.0) == 680
    assert predict_exam_score(3.0) == 900
    assert predict_exam_score(-5.0) == 100


def test_points_based_score():
    assert calculate_points_based_score(10, 0) == 0
    assert calculate_points_based_score(50, 100) == 450
    assert calculate_points_based_score(1, 100) == 100
    assert calculate_points_based_score(100, 100) == 900


def test_irt_score_is_mean_probability_percentage():
    assert calculate_irt_score(0.0, [(1.0, 0.0)]) == pytest.approx(50.0)
    assert calculate_irt_score(0.0, [(1.0, 0.0, 0.2)]) == pytest.approx(60.0)
    assert 0.0 < calculate_irt_score(0.0) < 100.0


def test_irt_parameters_fall_back_to_medium():
    assert calculate_irt_parameters("hard") == {
        "irt_difficulty": 1.5,
        "irt_discrimination": 2.0,
        "max_points": 250.0,
    }
    assert calculate_irt_parameters("impossible") == calculate_irt_parameters("medium")


item_strategy = st.tuples(
    st.floats(min_value=0.5, max_value=2.0, allow_nan=False),
    st.floats(min_value=-1.5, max_value=1.5, allow_nan=False),
    st.booleans(),
)


@settings(max_examples=100, deadline=None)
@given(items=st.lists(item_strategy, min_size=1, max_size=25))
def test_estimate_stays_in_bounds(items):
    estimate = estimate_ability([record(correct, a=a, b=b) for a, b, correct in items])

    assert -3.0 <= estimate.theta <= 3.0
    assert estimate.standard_error >= 0.0
    assert estimate.response_count == len(items)


@settings(max_examples=100, deadline=None)
@given(items=st.lists(item_strategy, min_size=1, max_size=20), data=st.data())
def test_flipping_an_answer_to_correct_never_lowers_theta(items, data):
    index = data.draw(st.integers(min_value=0, max_value=len(items) - 1))
    a, b, _ = items[index]
    wrong = [record(correct, a=a_i, b=b_i) for a_i, b_i, correct in items]
    right = list(wrong)
    wrong[index] = record(False, a=a, b=b)
    right[index] = record(True, a=a, b=b)

    low = estimate_ability(wrong)
    high = estimate_ability(right)
    assume(low.converged and high.converged)

    assert high.theta >= low.theta - 1e-3
