"""Learner quiz metadata: topic performance, coverage and question history."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import timezone
from typing import Any, Collection, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from .config import SchedulerConfig
from .models import QuestionFingerprint, ResponseRecord
from .scheduler import Grade, ReviewState, next_review
from .selector import fisher_yates_shuffle


logger = logging.getLogger(__name__)


DEFAULT_TOPIC_CATALOG: Dict[str, List[str]] = {
    "General Security Concepts": [
        "Security controls",
        "CIA triad",
        "Zero trust",
        "Cryptographic solutions",
    ],
    "Threats, Vulnerabilities, and Mitigations": [
        "Threat actors",
        "Social engineering",
        "Malware",
        "Vulnerability types",
    ],
    "Security Architecture": [
        "Network segmentation",
        "Cloud security",
        "Data protection",
    ],
    "Security Operations": [
        "Identity and access management",
        "Incident response",
        "Logging and monitoring",
    ],
    "Security Program Management": [
        "Risk management",
        "Third-party risk",
        "Security awareness",
    ],
}

MASTERED_ACCURACY = 80.0
MASTERED_MIN_ANSWERS = 3
STRUGGLING_ACCURACY = 60.0
STRUGGLING_MIN_ANSWERS = 2

# Learners take roughly one quiz every two days.
QUIZZES_PER_WEEK = 3.5
# Share of phase 2 focus slots per topic group.
FOCUS_SHARES = (("struggling", 0.5), ("learning", 0.3), ("mastered", 0.2))
TOPIC_SCHEDULER = SchedulerConfig(enable_fuzz=False)

FingerprintKey = Tuple[str, str, str]


def fingerprint_key(fingerprint: Any) -> Optional[FingerprintKey]:
    """Normalised identity of a fingerprint given as a model or a dict."""

    if fingerprint is None:
        return None
    if isinstance(fingerprint, QuestionFingerprint):
        fingerprint = fingerprint.model_dump()
    parts = (
        fingerprint.get("primary_topic", ""),
        fingerprint.get("scenario", ""),
        fingerprint.get("key_concept", ""),
    )
    return tuple(" ".join(str(part).lower().split()) for part in parts)


def catalog_topics(catalog: Mapping[str, Sequence[str]]) -> Dict[str, str]:
    """Flatten a domain -> topics catalog into topic -> domain."""

    return {topic: domain for domain, topics in catalog.items() for topic in topics}


def quiz_offset(scheduled_days: int, quizzes_per_week: float = QUIZZES_PER_WEEK) -> int:
    """Convert a scheduled interval in days into a number of quizzes, at least one."""

    days_per_quiz = 7.0 / quizzes_per_week
    return max(1, int(round(scheduled_days / days_per_quiz)))


@dataclass
class TopicPerformance:
    correct: int = 0
    total: int = 0
    points_earned: float = 0.0
    max_points: float = 0.0
    last_tested: Optional[str] = None
    review: Optional[Dict[str, Any]] = None
    next_review_quiz: Optional[int] = None

    @property
    def accuracy(self) -> float:
        if not self.total:
            return 0.0
        return self.correct / self.total * 100.0

    @property
    def is_mastered(self) -> bool:
        return self.accuracy >= MASTERED_ACCURACY and self.total >= MASTERED_MIN_ANSWERS

    @property
    def is_struggling(self) -> bool:
        return self.accuracy < STRUGGLING_ACCURACY and self.total >= STRUGGLING_MIN_ANSWERS

    @property
    def group(self) -> str:
        if self.is_struggling:
            return "struggling"
        if self.is_mastered:
            return "mastered"
        return "learning"

    @property
    def review_difficulty(self) -> float:
        return float((self.review or {}).get("difficulty", 0.0))

    def record_review(self, is_correct: bool, quiz_number: int, reviewed_at: Any) -> None:
        """Advance the topic's memory state: a correct answer is GOOD, a wrong one AGAIN."""

        prior = ReviewState.from_dict(self.review) if self.review else None
        grade = Grade.GOOD if is_correct else Grade.AGAIN
        state = next_review(prior, grade, reviewed_at, config=TOPIC_SCHEDULER)
        self.review = state.to_dict()
        self.next_review_quiz = quiz_number + quiz_offset(state.scheduled_days)

    def is_due(self, quiz_number: int) -> bool:
        if not self.total:
            return False
        return self.next_review_quiz is None or self.next_review_quiz <= quiz_number

    def to_dict(self) -> dict:
        return {
            "correct": self.correct,
            "total": self.total,
            "points_earned": self.points_earned,
            "max_points": self.max_points,
            "last_tested": self.last_tested,
            "review": dict(self.review) if self.review else None,
            "next_review_quiz": self.next_review_quiz,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "TopicPerformance":
        next_review_quiz = payload.get("next_review_quiz")
        return cls(
            correct=int(payload.get("correct", 0)),
            total=int(payload.get("total", 0)),
            points_earned=float(payload.get("points_earned", 0.0)),
            max_points=float(payload.get("max_points", 0.0)),
            last_tested=payload.get("last_tested"),
            review=payload.get("review"),
            next_review_quiz=int(next_review_quiz) if next_review_quiz is not None else None,
        )


@dataclass
class TopicCoverage:
    domain: str = ""
    first_covered_quiz: Optional[int] = None
    times_covered: int = 0
    last_covered_quiz: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "domain": self.domain,
            "first_covered_quiz": self.first_covered_quiz,
            "times_covered": self.times_covered,
            "last_covered_quiz": self.last_covered_quiz,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "TopicCoverage":
        return cls(
            domain=payload.get("domain", ""),
            first_covered_quiz=payload.get("first_covered_quiz"),
            times_covered=int(payload.get("times_covered", 0)),
            last_covered_quiz=payload.get("last_covered_quiz"),
        )


@dataclass
class QuestionHistory:
    fingerprint: Optional[Dict[str, str]] = None
    first_asked_quiz: int = 0
    last_asked_quiz: int = 0
    times_asked: int = 0
    correct_history: List[bool] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "fingerprint": dict(self.fingerprint) if self.fingerprint else None,
            "first_asked_quiz": self.first_asked_quiz,
            "last_asked_quiz": self.last_asked_quiz,
            "times_asked": self.times_asked,
            "correct_history": list(self.correct_history),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "QuestionHistory":
        return cls(
            fingerprint=payload.get("fingerprint"),
            first_asked_quiz=int(payload.get("first_asked_quiz", 0)),
            last_asked_quiz=int(payload.get("last_asked_quiz", 0)),
            times_asked=int(payload.get("times_asked", 0)),
            correct_history=[bool(item) for item in payload.get("correct_history", [])],
        )


@dataclass
class QuizMetadata:
    """Per-learner aggregate used to steer question generation."""

    total_quizzes_completed: int = 0
    topic_performance: Dict[str, TopicPerformance] = field(default_factory=dict)
    topic_coverage: Dict[str, TopicCoverage] = field(default_factory=dict)
    question_history: Dict[str, QuestionHistory] = field(default_factory=dict)
    all_topics_covered_once: bool = False
    phase: int = 1
    phase1_completed_at: Optional[int] = None
    responses_folded: int = 0

    def ensure_catalog(self, catalog: Mapping[str, Sequence[str]]) -> None:
        for topic, domain in catalog_topics(catalog).items():
            coverage = self.topic_coverage.setdefault(topic, TopicCoverage(domain=domain))
            if not coverage.domain:
                coverage.domain = domain

    def fold_responses(self, responses: Sequence[ResponseRecord]) -> int:
        """Fold responses recorded since the last call into the aggregates.

        Every batch of new responses counts as one completed quiz. Returns the
        number of responses folded.
        """

        pending = list(responses[self.responses_folded:])
        if not pending:
            return 0
        quiz_number = self.total_quizzes_completed + 1
        for response in pending:
            tested_at = response.answered_at.astimezone(timezone.utc).isoformat()
            for topic in response.topics:
                if not topic:
                    continue
                coverage = self.topic_coverage.setdefault(topic, TopicCoverage())
                if coverage.first_covered_quiz is None:
                    coverage.first_covered_quiz = quiz_number
                coverage.times_covered += 1
                coverage.last_covered_quiz = quiz_number

                performance = self.topic_performance.setdefault(topic, TopicPerformance())
                performance.total += 1
                if response.is_correct:
                    performance.correct += 1
                performance.points_earned += response.points_earned
                performance.max_points += response.max_points
                performance.last_tested = tested_at
                performance.record_review(response.is_correct, quiz_number, response.answered_at)

            history = self.question_history.get(response.question_id)
            if history is None:
                history = QuestionHistory(
                    fingerprint=response.fingerprint.model_dump() if response.fingerprint else None,
                    first_asked_quiz=quiz_number,
                )
                self.question_history[response.question_id] = history
            history.last_asked_quiz = quiz_number
            history.times_asked += 1
            history.correct_history.append(response.is_correct)

        self.total_quizzes_completed = quiz_number
        self.responses_folded += len(pending)
        return len(pending)

    def uncovered_topics(self, catalog: Mapping[str, Sequence[str]]) -> List[str]:
        return [
            topic
            for topic in catalog_topics(catalog)
            if self.topic_coverage.get(topic) is None or self.topic_coverage[topic].times_covered == 0
        ]

    def check_phase_transition(self, catalog: Mapping[str, Sequence[str]]) -> bool:
        """Move to phase 2 once every catalog topic was tested; never back."""

        if self.all_topics_covered_once or self.uncovered_topics(catalog):
            return False
        self.all_topics_covered_once = True
        self.phase = 2
        self.phase1_completed_at = self.total_quizzes_completed
        return True

    def last_quiz_topics(self) -> Set[str]:
        if not self.total_quizzes_completed:
            return set()
        return {
            topic
            for topic, coverage in self.topic_coverage.items()
            if coverage.last_covered_quiz == self.total_quizzes_completed
        }

    def excluded_topics(self) -> Set[str]:
        """Topics the next quiz should avoid: covered ones in phase 1, last quiz's in phase 2."""

        if self.phase == 1:
            return {topic for topic, coverage in self.topic_coverage.items() if coverage.times_covered > 0}
        return self.last_quiz_topics()

    def topics_due_for_review(self, quiz_number: int) -> List[str]:
        """Tested topics due by ``quiz_number``: struggling, then learning, then mastered.

        Within a group the most overdue come first, then the harder ones.
        """

        rank = {name: index for index, (name, _) in enumerate(FOCUS_SHARES)}
        due = [(topic, perf) for topic, perf in self.topic_performance.items() if perf.is_due(quiz_number)]
        due.sort(
            key=lambda item: (
                rank[item[1].group],
                item[1].next_review_quiz or 0,
                -item[1].review_difficulty,
                item[0],
            )
        )
        return [topic for topic, _ in due]

    def select_focus_topics(
        self, count: int, rng: Optional[Any] = None, exclude: Collection[str] = ()
    ) -> List[str]:
        """Pick up to ``count`` topics for phase 2 slots from those due for review.

        Struggling topics fill half the slots, learning ones about a third and
        mastered ones the rest. A group that runs short hands its share to the
        next one; anything still open goes to the remaining due topics and then
        to other tested topics at random.
        """

        if count <= 0:
            return []
        excluded = set(exclude)
        due = [
            topic
            for topic in self.topics_due_for_review(self.total_quizzes_completed + 1)
            if topic not in excluded
        ]
        selected: List[str] = []
        carry = 0
        allotted = 0
        for index, (name, share) in enumerate(FOCUS_SHARES):
            if index == len(FOCUS_SHARES) - 1:
                quota = max(0, count - allotted)
            else:
                quota = math.ceil(count * share)
            allotted += quota
            group = [topic for topic in due if self.topic_performance[topic].group == name]
            taken = group[: quota + carry]
            selected.extend(taken)
            carry = quota + carry - len(taken)

        for topic in due:
            if len(selected) >= count:
                break
            if topic not in selected:
                selected.append(topic)

        others = [
            topic
            for topic, perf in self.topic_performance.items()
            if perf.total and topic not in excluded and topic not in selected
        ]
        for topic in fisher_yates_shuffle(others, rng):
            if len(selected) >= count:
                break
            selected.append(topic)
        selected = selected[:count]
        logger.debug(
            "Selected phase 2 focus topics",
            extra={
                "topics": selected,
                "struggling": sum(1 for topic in selected if self.topic_performance[topic].is_struggling),
                "mastered": sum(1 for topic in selected if self.topic_performance[topic].is_mastered),
            },
        )
        return selected

    def recent_fingerprints(self, cooldown_quizzes: int) -> Set[FingerprintKey]:
        threshold = self.total_quizzes_completed - cooldown_quizzes
        keys: Set[FingerprintKey] = set()
        for history in self.question_history.values():
            if history.last_asked_quiz > threshold:
                key = fingerprint_key(history.fingerprint)
                if key is not None:
                    keys.add(key)
        return keys

    def to_dict(self) -> dict:
        return {
            "total_quizzes_completed": self.total_quizzes_completed,
            "topic_performance": {k: v.to_dict() for k, v in self.topic_performance.items()},
            "topic_coverage": {k: v.to_dict() for k, v in self.topic_coverage.items()},
            "question_history": {k: v.to_dict() for k, v in self.question_history.items()},
            "all_topics_covered_once": self.all_topics_covered_once,
            "phase": self.phase,
            "phase1_completed_at": self.phase1_completed_at,
            "responses_folded": self.responses_folded,
        }

    @classmethod
    def from_dict(cls, payload: Optional[Mapping[str, Any]]) -> "QuizMetadata":
        if not payload:
            return cls()
        return cls(
            total_quizzes_completed=int(payload.get("total_quizzes_completed", 0)),
            topic_performance={
                k: TopicPerformance.from_dict(v) for k, v in (payload.get("topic_performance") or {}).items()
            },
            topic_coverage={
                k: TopicCoverage.from_dict(v) for k, v in (payload.get("topic_coverage") or {}).items()
            },
            question_history={
                k: QuestionHistory.from_dict(v) for k, v in (payload.get("question_history") or {}).items()
            },
            all_topics_covered_once=bool(payload.get("all_topics_covered_once", False)),
            phase=int(payload.get("phase", 1)),
            phase1_completed_at=payload.get("phase1_completed_at"),
            responses_folded=int(payload.get("responses_folded", 0)),
        )


def load_responses(payload: Iterable[Mapping[str, Any]]) -> List[ResponseRecord]:
    return [ResponseRecord.model_validate(item) for item in payload]


def dump_responses(responses: Iterable[ResponseRecord]) -> List[dict]:
    return [response.model_dump(mode="json") for response in responses]


__all__ = [
    "DEFAULT_TOPIC_CATALOG",
    "QuestionHistory",
    "QuizMetadata",
    "TopicCoverage",
    "TopicPerformance",
    "catalog_topics",
    "dump_responses",
    "fingerprint_key",
    "load_responses",
    "quiz_offset",
]
