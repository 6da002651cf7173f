"""Simple in-process metrics registry for service instrumentation."""
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import List


@dataclass
class MetricsRegistry:
    """Holds counters and histograms exposed by the application."""

    generation_attempts: int = 0
    generation_successes: int = 0
    generation_failures: int = 0
    generation_failure_reasons: Counter = field(default_factory=Counter)
    generation_retries: int = 0
    generated_batch_sizes: List[int] = field(default_factory=list)
    verification_outcomes: Counter = field(default_factory=Counter)
    replay_conflicts: int = 0
    scheduler_outcomes: Counter = field(default_factory=Counter)
    phase_transitions: int = 0

    def record_generation_attempt(self) -> None:
        self.generation_attempts += 1

    def record_generation_success(self) -> None:
        self.generation_successes += 1

    def record_generation_failure(self, reason: str) -> None:
        self.generation_failures += 1
        self.generation_failure_reasons[reason] += 1

    def record_generation_retry(self) -> None:
        self.generation_retries += 1

    def record_batch(self, item_count: int) -> None:
        self.generated_batch_sizes.append(item_count)

    def record_verification(self, is_correct: bool, partial: bool = False) -> None:
        if is_correct:
            outcome = "correct"
        elif partial:
            outcome = "partial"
        else:
            outcome = "incorrect"
        self.verification_outcomes[outcome] += 1

    def record_replay_conflict(self) -> None:
        self.replay_conflicts += 1

    def record_scheduler_outcome(self, state: str, grade: int) -> None:
        self.scheduler_outcomes[(state, grade)] += 1

    def record_phase_transition(self) -> None:
        self.phase_transitions += 1

    @property
    def generation_success_rate(self) -> float:
        if self.generation_attempts == 0:
            return 0.0
        return self.generation_successes / self.generation_attempts

    def reset(self) -> None:
        fresh = MetricsRegistry()
        for name in self.__dataclass_fields__:
            setattr(self, name, getattr(fresh, name))


METRICS = MetricsRegistry()

__all__ = ["METRICS", "MetricsRegistry"]
