"""Item response theory: ability estimation and scoring helpers."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Sequence, Tuple

from .config import IRTConfig


logger = logging.getLogger(__name__)


IRT_DIFFICULTY_MAP = {"easy": -1.0, "medium": 0.0, "hard": 1.5}
IRT_DISCRIMINATION_MAP = {"easy": 1.0, "medium": 1.5, "hard": 2.0}
IRT_POINTS_MAP = {"easy": 100.0, "medium": 150.0, "hard": 250.0}
Z_SCORES = {0.90: 1.645, 0.95: 1.96, 0.99: 2.576}

EXAM_BASE_SCORE = 550
EXAM_SCALE_FACTOR = 130
EXAM_MIN_SCORE = 100
EXAM_MAX_SCORE = 900


@dataclass
class AbilityEstimate:
    """Result of a maximum-likelihood ability estimate.

    ``converged`` is the only non-convergence marker: ``standard_error`` is
    computed at the returned theta either way, so an estimate that ran out of
    iterations reports a finite error alongside ``converged=False``.
    """

    theta: float
    standard_error: float
    converged: bool
    iterations: int
    response_count: int


def _clip(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))


def probability(theta: float, a: float, b: float, c: float = 0.0) -> float:
    """Probability of a correct response under the 3PL model (2PL when ``c`` is 0)."""

    z = a * (theta - b)
    if z >= 0:
        logistic = 1.0 / (1.0 + math.exp(-z))
    else:
        exp_z = math.exp(z)
        logistic = exp_z / (1.0 + exp_z)
    return c + (1.0 - c) * logistic


def fisher_information(theta: float, a: float, b: float, c: float = 0.0) -> float:
    p = probability(theta, a, b, c)
    if p <= 0.0 or p >= 1.0:
        return 0.0
    return a * a * ((p - c) ** 2 / (1.0 - c) ** 2) * (1.0 - p) / p


def _item_parameters(response: Any, config: IRTConfig) -> Tuple[float, float, float]:
    a = getattr(response, "irt_discrimination", None) or config.default_discrimination
    b = getattr(response, "irt_difficulty", None) or 0.0
    c = getattr(response, "guessing", None) or 0.0
    return a, b, c


def observed_score(response: Any) -> float:
    """Observed outcome in [0, 1]: 1 for correct, the earned share of points otherwise."""

    if response.is_correct:
        return 1.0
    if not response.max_points or response.max_points <= 0:
        return 0.0
    return _clip(response.points_earned / response.max_points, 0.0, 1.0)


def _score_term(theta: float, a: float, b: float, c: float, y: float) -> float:
    p = probability(theta, a, b, c)
    if c == 0.0:
        return a * (y - p)
    if p <= 0.0:
        return 0.0
    return a * (y - p) * (p - c) / ((1.0 - c) * p)


def standard_error(theta: float, responses: Iterable[Any], config: Optional[IRTConfig] = None) -> float:
    """Return ``1 / sqrt(total information)``, infinite when there is no information."""

    config = config or IRTConfig()
    total = 0.0
    for response in responses:
        a, b, c = _item_parameters(response, config)
        total += fisher_information(theta, a, b, c)
    if total <= 0.0:
        return math.inf
    return 1.0 / math.sqrt(total)


def estimate_ability(responses: Iterable[Any], config: Optional[IRTConfig] = None) -> AbilityEstimate:
    """Estimate learner ability with Fisher scoring seeded at zero.

    Every iterate is clipped to ``[theta_min, theta_max]``; a step that stays
    pinned at a bound counts as converged. When the iteration budget runs out
    the last iterate is returned with ``converged=False`` and its standard error
    computed as usual; callers read the flag, not the error. Histories shorter
    than ``sparse_data_threshold`` are further clamped to
    ``+-sparse_data_limit``.
    """

    config = config or IRTConfig()
    items = list(responses)
    if not items:
        return AbilityEstimate(
            theta=0.0, standard_error=math.inf, converged=True, iterations=0, response_count=0
        )

    observations = [(_item_parameters(item, config), observed_score(item)) for item in items]
    theta = 0.0
    converged = False
    iterations = 0
    while iterations < config.max_iterations:
        iterations += 1
        score = 0.0
        information = 0.0
        for (a, b, c), y in observations:
            score += _score_term(theta, a, b, c, y)
            information += fisher_information(theta, a, b, c)
        if information <= 0.0:
            converged = True
            break
        proposed = _clip(theta + score / information, config.theta_min, config.theta_max)
        step = abs(proposed - theta)
        theta = proposed
        if step < config.tolerance:
            converged = True
            break

    if not converged:
        logger.debug(
            "Ability estimate did not converge",
            extra={"iterations": iterations, "theta": theta, "responses": len(items)},
        )

    if not has_sufficient_data(len(items), config):
        theta = _clip(theta, -config.sparse_data_limit, config.sparse_data_limit)

    return AbilityEstimate(
        theta=theta,
        standard_error=standard_error(theta, items, config),
        converged=converged,
        iterations=iterations,
        response_count=len(items),
    )


def has_sufficient_data(response_count: int, config: Optional[IRTConfig] = None) -> bool:
    config = config or IRTConfig()
    return response_count >= config.sparse_data_threshold


def calculate_irt_parameters(difficulty: str) -> Dict[str, float]:
    """Default IRT parameters and point value for a difficulty label."""

    label = difficulty if difficulty in IRT_DIFFICULTY_MAP else "medium"
    return {
        "irt_difficulty": IRT_DIFFICULTY_MAP[label],
        "irt_discrimination": IRT_DISCRIMINATION_MAP[label],
        "max_points": IRT_POINTS_MAP[label],
    }


def _representative_items() -> Sequence[Tuple[float, float, float]]:
    return [
        (IRT_DISCRIMINATION_MAP[label], IRT_DIFFICULTY_MAP[label], 0.0)
        for label in ("easy", "medium", "hard")
    ]


def calculate_irt_score(
    theta: float, items: Optional[Iterable[Tuple[float, ...]]] = None
) -> float:
    """Mean probability of success over ``items`` as a percentage.

    ``items`` holds ``(a, b)`` or ``(a, b, c)`` tuples. Without items, one item
    per difficulty band is used.
    """

    parameters = list(items) if items is not None else list(_representative_items())
    if not parameters:
        parameters = list(_representative_items())
    total = 0.0
    for item in parameters:
        a, b = item[0], item[1]
        c = item[2] if len(item) > 2 else 0.0
        total += probability(theta, a, b, c)
    return total / len(parameters) * 100.0


def calculate_partial_credit(
    user_answers: Iterable[int],
    correct_answers: Iterable[int],
    total_options: int,
    max_points: float,
) -> float:
    """Points for a multiple-answer response.

    ``max(0, (hits - wrong) / #correct) * max_points``. Repeated indices count
    once and indices outside the option range are wrong selections.
    """

    correct = {index for index in correct_answers if 0 <= index < total_options}
    if not correct or max_points <= 0:
        return 0.0
    selected = set(user_answers)
    hits = len(selected & correct)
    wrong = len(selected - correct)
    ratio = max(0.0, (hits - wrong) / len(correct))
    return min(ratio * max_points, max_points)


def ability_confidence_interval(
    theta: float,
    se: float,
    level: float = 0.95,
    config: Optional[IRTConfig] = None,
) -> Tuple[float, float]:
    config = config or IRTConfig()
    z = Z_SCORES.get(level, Z_SCORES[0.95])
    if math.isinf(se) or math.isnan(se):
        return config.theta_min, config.theta_max
    lower = _clip(theta - z * se, config.theta_min, config.theta_max)
    upper = _clip(theta + z * se, config.theta_min, config.theta_max)
    return lower, upper


def predict_exam_score(theta: float) -> int:
    """Map ability onto the 100-900 exam scale."""

    score = round(EXAM_BASE_SCORE + theta * EXAM_SCALE_FACTOR)
    return int(_clip(score, EXAM_MIN_SCORE, EXAM_MAX_SCORE))


def calculate_points_based_score(total_points: float, max_possible_points: float) -> int:
    """Fallback exam-scale score from the raw points ratio."""

    if max_possible_points <= 0:
        return 0
    score = round(total_points / max_possible_points * EXAM_MAX_SCORE)
    return int(_clip(score, EXAM_MIN_SCORE, EXAM_MAX_SCORE))


__all__ = [
    "AbilityEstimate",
    "IRT_DIFFICULTY_MAP",
    "IRT_DISCRIMINATION_MAP",
    "IRT_POINTS_MAP",
    "ability_confidence_interval",
    "calculate_irt_parameters",
    "calculate_irt_score",
    "calculate_partial_credit",
    "calculate_points_based_score",
    "estimate_ability",
    "fisher_information",
    "has_sufficient_data",
    "observed_score",
    "predict_exam_score",
    "probability",
    "standard_error",
]
