"""Tunable configuration for the assessment engine."""
from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Mapping, Optional, TypeVar

from .errors import UpstreamTransientError, ValidationError
from .metrics import METRICS


logger = logging.getLogger(__name__)


DEFAULT_FSRS_WEIGHTS = (
    0.4, 0.6, 2.4, 5.8, 4.93, 0.94, 0.86, 0.01, 1.49,
    0.14, 0.94, 2.18, 0.05, 0.34, 1.26, 0.29, 2.61,
)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Exponential backoff for calls to the question generation service.

    Only :class:`UpstreamTransientError` is retried. Any other exception,
    including :class:`UpstreamPermanentError`, propagates on first sight.
    """

    max_attempts: int = 5
    base_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 8.0

    def delay_for(self, attempt: int) -> float:
        """Delay in seconds to wait after the given (1-based) failed attempt."""

        delay = self.base_delay * (self.multiplier ** max(attempt - 1, 0))
        return min(delay, self.max_delay)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> T:
        attempt = 1
        while True:
            try:
                return await operation()
            except UpstreamTransientError as exc:
                if attempt >= self.max_attempts:
                    logger.warning(
                        "Generation retry budget exhausted",
                        extra={"attempts": attempt, "reason": str(exc)},
                    )
                    raise
                delay = self.delay_for(attempt)
                METRICS.record_generation_retry()
                logger.info(
                    "Retrying generation call",
                    extra={"attempt": attempt, "delay": delay, "reason": str(exc)},
                )
            await sleep(delay)
            attempt += 1


@dataclass
class IRTConfig:
    """Bounds and iteration limits for ability estimation."""

    theta_min: float = -3.0
    theta_max: float = 3.0
    max_iterations: int = 25
    tolerance: float = 1e-4
    default_discrimination: float = 1.5
    # Estimates from short histories are clamped tighter than the full range.
    sparse_data_threshold: int = 15
    sparse_data_limit: float = 2.0


@dataclass
class SelectorConfig:
    """Theta thresholds and sampling weights for the adaptive selector."""

    easy_upper_theta: float = -0.5
    hard_lower_theta: float = 0.75
    challenge_probability: float = 0.2
    single_answer_weight: float = 0.7


@dataclass
class SchedulerConfig:
    """FSRS parameter vector and scheduling limits."""

    weights: List[float] = field(default_factory=lambda: list(DEFAULT_FSRS_WEIGHTS))
    request_retention: float = 0.9
    maximum_interval: int = 36500
    enable_fuzz: bool = True
    new_step_minutes: tuple = (1, 5)
    relearning_step_minutes: tuple = (5, 10)


@dataclass
class PipelineConfig:
    """Batch sizes, backfill and session lifetime for quiz pregeneration."""

    quiz_length: int = 10
    backfill_rounds: int = 2
    session_ttl_hours: int = 24
    repeat_cooldown_quizzes: int = 3
    job_ttl_seconds: int = 3600
    retry: RetryPolicy = field(default_factory=RetryPolicy)


@dataclass
class EngineConfig:
    irt: IRTConfig = field(default_factory=IRTConfig)
    selector: SelectorConfig = field(default_factory=SelectorConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    db_path: Optional[str] = None
    log_level: str = "INFO"


def _read(environ: Mapping[str, str], name: str, cast: Callable[[str], T], default: T) -> T:
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return cast(raw)
    except ValueError as exc:
        raise ValidationError(f"Invalid value for {name}: {raw!r}") from exc


def _as_bool(raw: str) -> bool:
    lowered = raw.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ValueError(raw)


def load_config(environ: Optional[Mapping[str, str]] = None) -> EngineConfig:
    """Build the engine configuration from ``QUIZCORE_*`` environment variables."""

    env = os.environ if environ is None else environ

    irt = IRTConfig(
        theta_min=_read(env, "QUIZCORE_THETA_MIN", float, -3.0),
        theta_max=_read(env, "QUIZCORE_THETA_MAX", float, 3.0),
        max_iterations=_read(env, "QUIZCORE_MAX_ITERATIONS", int, 25),
    )
    if irt.theta_min >= irt.theta_max:
        raise ValidationError("QUIZCORE_THETA_MIN must be below QUIZCORE_THETA_MAX")
    if irt.max_iterations < 1:
        raise ValidationError("QUIZCORE_MAX_ITERATIONS must be positive")

    selector = SelectorConfig(
        challenge_probability=_read(env, "QUIZCORE_CHALLENGE_PROBABILITY", float, 0.2),
        single_answer_weight=_read(env, "QUIZCORE_SINGLE_ANSWER_WEIGHT", float, 0.7),
    )
    for name, value in (
        ("QUIZCORE_CHALLENGE_PROBABILITY", selector.challenge_probability),
        ("QUIZCORE_SINGLE_ANSWER_WEIGHT", selector.single_answer_weight),
    ):
        if not 0.0 <= value <= 1.0:
            raise ValidationError(f"{name} must be within [0, 1]")

    scheduler = SchedulerConfig(
        request_retention=_read(env, "QUIZCORE_REQUEST_RETENTION", float, 0.9),
        enable_fuzz=_read(env, "QUIZCORE_ENABLE_FUZZ", _as_bool, True),
    )
    if not 0.0 < scheduler.request_retention < 1.0:
        raise ValidationError("QUIZCORE_REQUEST_RETENTION must be within (0, 1)")

    retry = RetryPolicy(
        max_attempts=_read(env, "QUIZCORE_RETRY_MAX_ATTEMPTS", int, 5),
        base_delay=_read(env, "QUIZCORE_RETRY_BASE_DELAY", float, 0.5),
    )
    if retry.max_attempts < 1:
        raise ValidationError("QUIZCORE_RETRY_MAX_ATTEMPTS must be positive")

    pipeline = PipelineConfig(
        quiz_length=_read(env, "QUIZCORE_QUIZ_LENGTH", int, 10),
        session_ttl_hours=_read(env, "QUIZCORE_SESSION_TTL_HOURS", int, 24),
        job_ttl_seconds=_read(env, "QUIZCORE_JOB_TTL_SECONDS", int, 3600),
        retry=retry,
    )
    if pipeline.quiz_length < 1:
        raise ValidationError("QUIZCORE_QUIZ_LENGTH must be positive")
    if pipeline.job_ttl_seconds < 0:
        raise ValidationError("QUIZCORE_JOB_TTL_SECONDS must not be negative")

    return EngineConfig(
        irt=irt,
        selector=selector,
        scheduler=scheduler,
        pipeline=pipeline,
        db_path=env.get("QUIZCORE_DB_PATH") or None,
        log_level=env.get("QUIZCORE_LOG_LEVEL", "INFO"),
    )


__all__ = [
    "DEFAULT_FSRS_WEIGHTS",
    "EngineConfig",
    "IRTConfig",
    "PipelineConfig",
    "RetryPolicy",
    "SchedulerConfig",
    "SelectorConfig",
    "load_config",
]
