"""Question generation: collaborator interface, per-item retry and batch fan-out."""
from __future__ import annotations

import asyncio
import logging
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple
from uuid import uuid4

from .config import RetryPolicy
from .errors import UpstreamPermanentError, UpstreamTransientError, ValidationError
from .metrics import METRICS
from .models import Difficulty, Question, QuestionCategory, QuestionType
from .validators import validate_question


logger = logging.getLogger(__name__)


Sleep = Callable[[float], Awaitable[None]]


class QuestionGenerator(ABC):
    """External service producing one question per call."""

    @abstractmethod
    async def generate(
        self,
        exclude_topics: Sequence[str],
        difficulty: Difficulty,
        question_type: QuestionType,
        focus_topic: Optional[str] = None,
    ) -> Question:
        """Return a question or raise an ``Upstream*Error``.

        ``focus_topic``, when given, is the topic the question should test.
        """


@dataclass
class GenerationSlot:
    """Shape requested for one item of a batch."""

    difficulty: Difficulty
    question_type: QuestionType
    exclude_topics: FrozenSet[str] = frozenset()
    question_category: Optional[QuestionCategory] = None
    focus_topic: Optional[str] = None


@dataclass
class BatchResult:
    questions: List[Question] = field(default_factory=list)
    failures: List[str] = field(default_factory=list)
    requested: int = 0

    @property
    def is_partial(self) -> bool:
        return len(self.questions) < self.requested


async def generate_one(
    generator: QuestionGenerator,
    slot: GenerationSlot,
    policy: RetryPolicy,
    accept: Optional[Callable[[Question], bool]] = None,
    sleep: Sleep = asyncio.sleep,
) -> Question:
    """Generate a single valid question for ``slot`` under the retry policy.

    Output that fails validation or is rejected by ``accept`` is treated as a
    transient failure and retried.
    """

    async def attempt() -> Question:
        METRICS.record_generation_attempt()
        try:
            question = await generator.generate(
                sorted(slot.exclude_topics),
                slot.difficulty,
                slot.question_type,
                focus_topic=slot.focus_topic,
            )
        except UpstreamTransientError:
            METRICS.record_generation_failure("transient")
            raise
        except UpstreamPermanentError:
            METRICS.record_generation_failure("permanent")
            raise
        try:
            validate_question(question)
        except ValidationError as exc:
            METRICS.record_generation_failure("invalid")
            raise UpstreamTransientError(f"Generated question failed validation: {exc}") from exc
        if slot.question_category and question.question_category is None:
            question = question.model_copy(update={"question_category": slot.question_category})
        if accept is not None and not accept(question):
            METRICS.record_generation_failure("duplicate")
            raise UpstreamTransientError("Generated question duplicates a recent question")
        METRICS.record_generation_success()
        return question

    return await policy.run(attempt, sleep=sleep)


async def _run_round(
    generator: QuestionGenerator,
    slots: Sequence[GenerationSlot],
    policy: RetryPolicy,
    accept: Optional[Callable[[Question], bool]],
    sleep: Sleep,
) -> Tuple[Dict[int, Question], List[GenerationSlot], List[str]]:
    async def run(index: int, slot: GenerationSlot) -> Tuple[int, Question]:
        return index, await generate_one(generator, slot, policy, accept=accept, sleep=sleep)

    tasks = {asyncio.ensure_future(run(index, slot)): index for index, slot in enumerate(slots)}
    produced: Dict[int, Question] = {}
    failed: List[GenerationSlot] = []
    reasons: List[str] = []
    try:
        for next_done in asyncio.as_completed(list(tasks)):
            try:
                index, question = await next_done
            except UpstreamTransientError as exc:
                reasons.append(str(exc))
                continue
            produced[index] = question
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
    for index in tasks.values():
        if index not in produced:
            failed.append(slots[index])
    return produced, failed, reasons


async def generate_batch(
    generator: QuestionGenerator,
    slots: Sequence[GenerationSlot],
    policy: RetryPolicy,
    backfill_rounds: int = 0,
    make_slot: Optional[Callable[[], GenerationSlot]] = None,
    accept: Optional[Callable[[Question], bool]] = None,
    sleep: Sleep = asyncio.sleep,
) -> BatchResult:
    """Generate one question per slot concurrently.

    Slots that still fail after their retry budget are backfilled with fresh
    slots from ``make_slot`` (or retried as-is) for up to ``backfill_rounds``
    further rounds. Partial success returns fewer questions; an
    :class:`UpstreamPermanentError` cancels outstanding work and propagates.
    """

    result = BatchResult(requested=len(slots))
    pending = list(slots)
    round_number = 0
    while pending:
        produced, failed, reasons = await _run_round(generator, pending, policy, accept, sleep)
        result.questions.extend(produced[index] for index in sorted(produced))
        result.failures.extend(reasons)
        if not failed or round_number >= backfill_rounds:
            break
        round_number += 1
        logger.info(
            "Backfilling failed generation slots",
            extra={"round": round_number, "slots": len(failed)},
        )
        pending = [make_slot() for _ in failed] if make_slot is not None else failed

    METRICS.record_batch(len(result.questions))
    if result.is_partial:
        logger.warning(
            "Generated fewer questions than requested",
            extra={"requested": result.requested, "generated": len(result.questions)},
        )
    return result


class QuestionBankGenerator(QuestionGenerator):
    """Serves copies of question templates from an in-memory bank."""

    def __init__(self, templates: Iterable[Question], rng: Optional[Any] = None) -> None:
        self._templates = list(templates)
        self._rng = rng or random.Random()

    async def generate(
        self,
        exclude_topics: Sequence[str],
        difficulty: Difficulty,
        question_type: QuestionType,
        focus_topic: Optional[str] = None,
    ) -> Question:
        await asyncio.sleep(0)
        if not self._templates:
            raise UpstreamPermanentError("Question bank is empty")
        excluded = set(exclude_topics)
        typed = [item for item in self._templates if item.question_type == question_type]
        candidates: List[Question] = []
        if focus_topic:
            focused = [item for item in self._templates if focus_topic in item.topics]
            candidates = [item for item in focused if item.question_type == question_type] or focused
        if not candidates:
            candidates = [
                item
                for item in typed
                if item.difficulty == difficulty and not excluded.intersection(item.topics)
            ]
        if not candidates:
            candidates = [item for item in typed if not excluded.intersection(item.topics)]
        if not candidates:
            candidates = typed or self._templates
        template = candidates[self._rng.randrange(len(candidates))]
        return template.model_copy(update={"id": uuid4().hex}, deep=True)


def _bank_question(**fields: Any) -> Question:
    return Question.model_validate(fields)


def default_question_bank() -> List[Question]:
    """A small bank of templates for local runs without a generation service."""

    return [
        _bank_question(
            question="Which control type is a security guard posted at a building entrance?",
            options=["Technical", "Physical", "Managerial", "Corrective"],
            correct_answer=1,
            explanation="Guards restrict physical access, so they are a physical control.",
            incorrect_explanations=[
                "Technical controls are implemented in systems.",
                "",
                "Managerial controls are policies and risk decisions.",
                "Corrective controls restore systems after an incident.",
            ],
            topics=["Security controls"],
            difficulty="easy",
            fingerprint={"primary_topic": "Security controls", "scenario": "guard", "key_concept": "physical"},
        ),
        _bank_question(
            question="A file hash is published next to a download. Which property does it protect?",
            options=["Confidentiality", "Integrity", "Availability", "Non-repudiation"],
            correct_answer=1,
            explanation="Comparing hashes detects modification, which is integrity.",
            topics=["CIA triad"],
            difficulty="easy",
            fingerprint={"primary_topic": "CIA triad", "scenario": "download hash", "key_concept": "integrity"},
        ),
        _bank_question(
            question="Which principles belong to a zero trust architecture?",
            question_type="multiple",
            options=[
                "Verify every request explicitly",
                "Trust the internal network by default",
                "Grant least-privilege access",
                "Disable logging to reduce noise",
            ],
            correct_answer=[0, 2],
            explanation="Zero trust verifies each request and limits access to what is needed.",
            topics=["Zero trust"],
            difficulty="medium",
            fingerprint={"primary_topic": "Zero trust", "scenario": "principles", "key_concept": "verify"},
        ),
        _bank_question(
            question="Which algorithm is an asymmetric key exchange?",
            options=["AES", "Diffie-Hellman", "SHA-256", "RC4"],
            correct_answer=1,
            explanation="Diffie-Hellman derives a shared secret using public values.",
            topics=["Cryptographic solutions"],
            difficulty="medium",
            fingerprint={"primary_topic": "Cryptographic solutions", "scenario": "key exchange", "key_concept": "dh"},
        ),
        _bank_question(
            question="A nation-state group maintains long-term covert access. What is this called?",
            options=["Script kiddie", "Hacktivism", "Advanced persistent threat", "Insider threat"],
            correct_answer=2,
            explanation="Long-term, well-resourced covert access describes an APT.",
            topics=["Threat actors"],
            difficulty="medium",
            fingerprint={"primary_topic": "Threat actors", "scenario": "nation state", "key_concept": "apt"},
        ),
        _bank_question(
            question="Which are indicators of a phishing email?",
            question_type="multiple",
            options=[
                "Urgent request for credentials",
                "Sender domain that mimics a known brand",
                "Digitally signed by the corporate CA",
                "Message sent from the internal ticketing system",
            ],
            correct_answer=[0, 1],
            explanation="Urgency and look-alike domains are classic phishing signs.",
            topics=["Social engineering"],
            difficulty="easy",
            fingerprint={"primary_topic": "Social engineering", "scenario": "email", "key_concept": "phishing"},
        ),
        _bank_question(
            question="Malware that encrypts files and demands payment is known as:",
            options=["Worm", "Ransomware", "Rootkit", "Spyware"],
            correct_answer=1,
            explanation="Ransomware denies access to data until a ransom is paid.",
            topics=["Malware"],
            difficulty="easy",
            fingerprint={"primary_topic": "Malware", "scenario": "encrypted files", "key_concept": "ransomware"},
        ),
        _bank_question(
            question="An application concatenates user input into SQL statements. Which vulnerability results?",
            options=["Cross-site scripting", "SQL injection", "Race condition", "Buffer overflow"],
            correct_answer=1,
            explanation="Unparameterised queries allow SQL injection.",
            topics=["Vulnerability types"],
            difficulty="medium",
            fingerprint={"primary_topic": "Vulnerability types", "scenario": "sql", "key_concept": "injection"},
        ),
        _bank_question(
            question="Which design limits lateral movement after a workstation is compromised?",
            options=["Flat network", "Microsegmentation", "Port mirroring", "NAT"],
            correct_answer=1,
            explanation="Microsegmentation enforces policy between workloads.",
            topics=["Network segmentation"],
            difficulty="hard",
            fingerprint={"primary_topic": "Network segmentation", "scenario": "lateral", "key_concept": "micro"},
        ),
        _bank_question(
            question="Under the shared responsibility model, what does an IaaS customer secure?",
            question_type="multiple",
            options=["Guest operating systems", "Physical data centres", "Hypervisor firmware", "Application data"],
            correct_answer=[0, 3],
            explanation="IaaS customers own everything above the virtualisation layer.",
            topics=["Cloud security"],
            difficulty="hard",
            fingerprint={"primary_topic": "Cloud security", "scenario": "iaas", "key_concept": "shared"},
        ),
        _bank_question(
            question="Which step comes first in the incident response lifecycle?",
            options=["Containment", "Preparation", "Eradication", "Lessons learned"],
            correct_answer=1,
            explanation="Preparation precedes detection, containment and recovery.",
            topics=["Incident response"],
            difficulty="easy",
            fingerprint={"primary_topic": "Incident response", "scenario": "lifecycle", "key_concept": "prepare"},
        ),
        _bank_question(
            question="Accepting a risk is appropriate when:",
            options=[
                "The cost of mitigation exceeds the expected loss",
                "The risk is unknown",
                "Insurance is unavailable",
                "The asset has no owner",
            ],
            correct_answer=0,
            explanation="Acceptance fits when controls would cost more than the loss they prevent.",
            topics=["Risk management"],
            difficulty="hard",
            fingerprint={"primary_topic": "Risk management", "scenario": "acceptance", "key_concept": "cost"},
        ),
    ]


__all__ = [
    "BatchResult",
    "GenerationSlot",
    "QuestionBankGenerator",
    "QuestionGenerator",
    "RetryPolicy",
    "default_question_bank",
    "generate_batch",
    "generate_one",
]
