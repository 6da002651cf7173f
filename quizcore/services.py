"""Core services implementing the assessment, pregeneration and review workflows."""
from __future__ import annotations

import asyncio
import itertools
import logging
import math
import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import (
    Any,
    AsyncGenerator,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Set,
    Tuple,
)
from uuid import uuid4

from .auth import IdentityGate, require_owner
from .config import EngineConfig
from .domain import (
    DEFAULT_TOPIC_CATALOG,
    QuizMetadata,
    dump_responses,
    fingerprint_key,
    load_responses,
)
from .errors import NotFoundError, UpstreamTransientError
from .generation import GenerationSlot, QuestionGenerator, generate_batch
from .irt import AbilityEstimate, ability_confidence_interval, estimate_ability, predict_exam_score
from .metrics import METRICS
from .models import (
    AbilityResponse,
    CachedQuiz,
    JobStatus,
    Milestone,
    MilestoneStatus,
    PregenerateJobResponse,
    PregenerateJobStatusResponse,
    Question,
    ResponseRecord,
)
from .repositories import DocumentStore, ReviewStateRepository
from .scheduler import ReviewState, deck_stats, get_due_cards, next_review
from .selector import (
    select_adaptive_difficulty,
    select_question_category,
    select_question_type,
    shuffle_question_options,
)
from .sessions import QuizSessionStore, VerificationResult, sanitize_for_client


logger = logging.getLogger(__name__)


PIPELINE_STAGES = ["metadata", "generation", "session", "persist"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _initial_milestones() -> Dict[str, MilestoneStatus]:
    return {stage: MilestoneStatus.PENDING for stage in PIPELINE_STAGES}


def ability_snapshot(estimate: AbilityEstimate) -> Dict[str, Any]:
    """JSON-safe snapshot of an estimate for quick reads."""

    return {
        "theta": estimate.theta,
        "standard_error": None if math.isinf(estimate.standard_error) else estimate.standard_error,
        "response_count": estimate.response_count,
        "converged": estimate.converged,
        "updated_at": _utcnow().isoformat(),
    }


def build_ability_response(
    owner_id: str, estimate: AbilityEstimate, config: Optional[EngineConfig] = None
) -> AbilityResponse:
    config = config or EngineConfig()
    interval = None
    if estimate.response_count and not math.isinf(estimate.standard_error):
        lower, upper = ability_confidence_interval(
            estimate.theta, estimate.standard_error, 0.95, config.irt
        )
        interval = {"lower": lower, "upper": upper, "level": 0.95}
    return AbilityResponse(
        owner_id=owner_id,
        theta=estimate.theta,
        standard_error=None if math.isinf(estimate.standard_error) else estimate.standard_error,
        confidence_interval=interval,
        predicted_score=predict_exam_score(estimate.theta) if estimate.response_count else 0,
        response_count=estimate.response_count,
        converged=estimate.converged,
    )


class AssessmentService:
    """Grades answers against the session store and keeps ability current."""

    def __init__(
        self,
        store: DocumentStore,
        sessions: QuizSessionStore,
        gate: IdentityGate,
        config: Optional[EngineConfig] = None,
    ) -> None:
        self._store = store
        self._sessions = sessions
        self._gate = gate
        self._config = config or EngineConfig()

    def verify_answer(
        self,
        caller_token: Optional[str],
        owner_id: str,
        session_id: str,
        question_id: str,
        user_answer: Any,
    ) -> Tuple[VerificationResult, AbilityEstimate]:
        require_owner(self._gate, caller_token, owner_id)
        result = self._sessions.verify(owner_id, session_id, question_id, user_answer)
        record = result.to_response_record()
        estimates: List[AbilityEstimate] = []

        def append_response(document: Dict[str, Any]) -> Dict[str, Any]:
            responses = list(document.get("responses") or [])
            responses.extend(dump_responses([record]))
            estimate = estimate_ability(load_responses(responses), self._config.irt)
            estimates.append(estimate)
            document["responses"] = responses
            document["ability"] = ability_snapshot(estimate)
            return document

        self._store.transact(owner_id, append_response)
        return result, estimates[-1]

    def responses(self, owner_id: str) -> List[ResponseRecord]:
        document = self._store.get(owner_id) or {}
        return load_responses(document.get("responses") or [])

    def current_ability(self, caller_token: Optional[str], owner_id: str) -> AbilityEstimate:
        require_owner(self._gate, caller_token, owner_id)
        return estimate_ability(self.responses(owner_id), self._config.irt)

    def cached_quiz(self, caller_token: Optional[str], owner_id: str) -> CachedQuiz:
        require_owner(self._gate, caller_token, owner_id)
        document = self._store.get(owner_id) or {}
        payload = document.get("cached_quiz")
        if not payload:
            raise NotFoundError(f"No cached quiz for {owner_id}")
        return CachedQuiz.model_validate(payload)


@dataclass
class JobEvent:
    """Message emitted to streaming clients about job progress."""

    type: str
    payload: Dict[str, Any]
    final: bool = False


@dataclass
class PregenerationJob:
    """In-memory representation of a pregeneration run."""

    id: str
    owner_id: str
    status: JobStatus
    milestones: Dict[str, MilestoneStatus] = field(default_factory=_initial_milestones)
    cached_quiz: Optional[CachedQuiz] = None
    error: Optional[str] = None
    history: List[JobEvent] = field(default_factory=list)
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    task: Optional[asyncio.Task] = None
    finished_at: Optional[datetime] = None


FINAL_JOB_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


class PregenerationService:
    """Builds the learner's next quiz ahead of time."""

    def __init__(
        self,
        store: DocumentStore,
        sessions: QuizSessionStore,
        generator: QuestionGenerator,
        gate: IdentityGate,
        config: Optional[EngineConfig] = None,
        catalog: Optional[Mapping[str, Sequence[str]]] = None,
        rng: Optional[Any] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._sessions = sessions
        self._generator = generator
        self._gate = gate
        self._config = config or EngineConfig()
        self._catalog = catalog or DEFAULT_TOPIC_CATALOG
        self._rng = rng or random.Random()
        self._sleep = sleep
        self._clock = clock or _utcnow
        self._jobs: Dict[str, PregenerationJob] = {}
        self._lock = asyncio.Lock()

    async def pregenerate(self, caller_token: Optional[str], owner_id: str) -> CachedQuiz:
        """Run every stage inline and return the cached quiz."""

        require_owner(self._gate, caller_token, owner_id)
        metadata, estimate = await self._stage_metadata(owner_id)
        questions = await self._stage_generation(metadata, estimate)
        session_id = await self._stage_session(owner_id, questions)
        return await self._stage_persist(owner_id, session_id, questions, estimate)

    # region Metadata
    def _fold_metadata(self, document: Mapping[str, Any]) -> Tuple[QuizMetadata, List[ResponseRecord], int]:
        responses = load_responses(document.get("responses") or [])
        metadata = QuizMetadata.from_dict(document.get("quiz_metadata"))
        metadata.ensure_catalog(self._catalog)
        folded = metadata.fold_responses(responses)
        return metadata, responses, folded

    def _prepare_metadata(self, owner_id: str) -> Tuple[QuizMetadata, AbilityEstimate]:
        """Fold history into a working copy of the metadata and refresh the ability snapshot.

        The working copy only steers generation. The stored metadata is folded
        again from the then-current document when the quiz is persisted.
        """

        snapshot: Dict[str, Any] = {}

        def refresh_ability(document: Dict[str, Any]) -> Dict[str, Any]:
            metadata, responses, _ = self._fold_metadata(document)
            metadata.check_phase_transition(self._catalog)
            estimate = estimate_ability(responses, self._config.irt)
            snapshot["metadata"] = metadata
            snapshot["estimate"] = estimate
            document["ability"] = ability_snapshot(estimate)
            return document

        self._store.transact(owner_id, refresh_ability)
        return snapshot["metadata"], snapshot["estimate"]

    async def _stage_metadata(self, owner_id: str) -> Tuple[QuizMetadata, AbilityEstimate]:
        await asyncio.sleep(0)
        return self._prepare_metadata(owner_id)

    # endregion

    # region Generation
    def _make_slot_factory(
        self, metadata: QuizMetadata, estimate: AbilityEstimate
    ) -> Callable[[], GenerationSlot]:
        excluded = frozenset(metadata.excluded_topics())
        selector_config = self._config.selector
        focus: List[str] = []
        if metadata.phase == 2:
            focus = metadata.select_focus_topics(
                self._config.pipeline.quiz_length, self._rng, exclude=excluded
            )
        focus_topics = itertools.cycle(focus) if focus else None

        def make_slot() -> GenerationSlot:
            return GenerationSlot(
                difficulty=select_adaptive_difficulty(estimate.theta, self._rng, selector_config),
                question_type=select_question_type(self._rng, selector_config),
                exclude_topics=excluded,
                question_category=select_question_category(self._rng),
                focus_topic=next(focus_topics) if focus_topics is not None else None,
            )

        return make_slot

    def _make_acceptor(self, metadata: QuizMetadata) -> Callable[[Question], bool]:
        seen: Set[Any] = set(metadata.recent_fingerprints(self._config.pipeline.repeat_cooldown_quizzes))

        def accept(question: Question) -> bool:
            key = fingerprint_key(question.fingerprint)
            if key is None:
                return True
            if key in seen:
                return False
            seen.add(key)
            return True

        return accept

    async def _stage_generation(
        self, metadata: QuizMetadata, estimate: AbilityEstimate
    ) -> List[Question]:
        pipeline = self._config.pipeline
        make_slot = self._make_slot_factory(metadata, estimate)
        slots = [make_slot() for _ in range(pipeline.quiz_length)]
        batch = await generate_batch(
            self._generator,
            slots,
            pipeline.retry,
            backfill_rounds=pipeline.backfill_rounds,
            make_slot=make_slot,
            accept=self._make_acceptor(metadata),
            sleep=self._sleep,
        )
        if not batch.questions:
            raise UpstreamTransientError("Question generation produced no items")
        return [shuffle_question_options(question, self._rng) for question in batch.questions]

    # endregion

    async def _stage_session(self, owner_id: str, questions: List[Question]) -> str:
        await asyncio.sleep(0)
        return self._sessions.create_session(owner_id, questions)

    async def _stage_persist(
        self,
        owner_id: str,
        session_id: str,
        questions: List[Question],
        estimate: AbilityEstimate,
    ) -> CachedQuiz:
        """Store the quiz and the metadata folded from the current document.

        Folding and the phase check run inside the same transaction as the
        write, so a run that started earlier cannot roll back a newer one.
        """

        await asyncio.sleep(0)
        outcome: Dict[str, Any] = {}

        def commit(document: Dict[str, Any]) -> Dict[str, Any]:
            metadata, _, folded = self._fold_metadata(document)
            outcome["folded"] = folded
            outcome["flipped"] = metadata.check_phase_transition(self._catalog)
            outcome["metadata"] = metadata
            cached = CachedQuiz(
                quiz_session_id=session_id,
                questions=sanitize_for_client(questions),
                generated_for_ability=estimate.theta,
                generated_after_quiz=metadata.total_quizzes_completed,
                phase=metadata.phase,
                requested_count=self._config.pipeline.quiz_length,
            )
            outcome["cached"] = cached
            document["cached_quiz"] = cached.model_dump(mode="json")
            document["quiz_metadata"] = metadata.to_dict()
            return document

        self._store.transact(owner_id, commit)
        metadata = outcome["metadata"]
        if outcome["folded"]:
            logger.info(
                "Folded responses into quiz metadata",
                extra={
                    "owner_id": owner_id,
                    "responses": outcome["folded"],
                    "quiz_number": metadata.total_quizzes_completed,
                },
            )
        if outcome["flipped"]:
            METRICS.record_phase_transition()
            logger.info(
                "Learner moved to phase 2",
                extra={"owner_id": owner_id, "quiz_number": metadata.total_quizzes_completed},
            )
        return outcome["cached"]

    # region Jobs
    async def enqueue(self, caller_token: Optional[str], owner_id: str) -> PregenerateJobResponse:
        """Schedule pregeneration in the background and return the created job."""

        require_owner(self._gate, caller_token, owner_id)
        await self.prune_finished_jobs()
        job_id = uuid4().hex
        job = PregenerationJob(id=job_id, owner_id=owner_id, status=JobStatus.QUEUED)
        async with self._lock:
            self._jobs[job_id] = job
        await self._emit(job, "status", {"status": job.status})
        task = asyncio.create_task(self._run_pipeline(job))
        async with self._lock:
            job.task = task
        return PregenerateJobResponse(job_id=job_id, status=job.status)

    async def get_job_status(self, job_id: str) -> PregenerateJobStatusResponse:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise NotFoundError(f"Unknown job_id: {job_id}")
            milestones_snapshot = [
                Milestone(name=stage, status=job.milestones.get(stage, MilestoneStatus.PENDING))
                for stage in PIPELINE_STAGES
            ]
            cached = job.cached_quiz
            status = job.status
            error = job.error
        return PregenerateJobStatusResponse(
            job_id=job_id,
            owner_id=job.owner_id,
            status=status,
            milestones=milestones_snapshot,
            quiz_session_id=cached.quiz_session_id if cached else None,
            questions_count=len(cached.questions) if cached else 0,
            error=error,
        )

    async def iter_job_events(self, job_id: str) -> AsyncGenerator[JobEvent, None]:
        """Yield job events suitable for Server-Sent Events streaming."""

        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise NotFoundError(f"Unknown job_id: {job_id}")
            history_snapshot = list(job.history)
            finished = bool(history_snapshot and history_snapshot[-1].final)
            queue = job.queue

        for event in history_snapshot:
            yield event

        if finished:
            return

        replayed = {id(event) for event in history_snapshot}
        while True:
            event = await queue.get()
            if id(event) in replayed:
                continue
            yield event
            if event.final:
                return

    async def prune_finished_jobs(self) -> int:
        """Forget completed or failed jobs older than the configured TTL."""

        cutoff = self._clock() - timedelta(seconds=self._config.pipeline.job_ttl_seconds)
        async with self._lock:
            expired = [
                job_id
                for job_id, job in self._jobs.items()
                if job.finished_at is not None and job.finished_at <= cutoff
            ]
            for job_id in expired:
                del self._jobs[job_id]
        if expired:
            logger.info("Pruned finished pregeneration jobs", extra={"count": len(expired)})
        return len(expired)

    async def wait_for_job(self, job_id: str) -> PregenerateJobStatusResponse:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise NotFoundError(f"Unknown job_id: {job_id}")
            task = job.task
        if task is not None:
            await task
        return await self.get_job_status(job_id)

    async def _run_pipeline(self, job: PregenerationJob) -> None:
        owner_id = job.owner_id
        try:
            await self._update_status(job, JobStatus.RUNNING)
            metadata, estimate = await self._run_stage(job, "metadata", self._stage_metadata, owner_id)
            questions = await self._run_stage(
                job, "generation", self._stage_generation, metadata, estimate
            )
            session_id = await self._run_stage(job, "session", self._stage_session, owner_id, questions)
            cached = await self._run_stage(
                job,
                "persist",
                self._stage_persist,
                owner_id,
                session_id,
                questions,
                estimate,
            )
        except Exception as exc:
            logger.exception("Pregeneration job failed", extra={"job_id": job.id, "owner_id": owner_id})
            await self._handle_failure(job, exc)
            return

        async with self._lock:
            job.cached_quiz = cached
        await self._emit(
            job,
            "quiz",
            {"quiz_session_id": cached.quiz_session_id, "questions": len(cached.questions)},
        )
        await self._update_status(job, JobStatus.COMPLETED)
        await self._emit(job, "complete", {"status": JobStatus.COMPLETED}, final=True)

    async def _run_stage(self, job: PregenerationJob, name: str, func, *args) -> Any:
        await self._set_milestone(job, name, MilestoneStatus.STARTED)
        try:
            result = await func(*args)
        except Exception:
            await self._set_milestone(job, name, MilestoneStatus.FAILED)
            raise
        await self._set_milestone(job, name, MilestoneStatus.COMPLETED)
        return result

    async def _update_status(self, job: PregenerationJob, status: JobStatus) -> None:
        async with self._lock:
            job.status = status
            if status in FINAL_JOB_STATUSES:
                job.finished_at = self._clock()
        await self._emit(job, "status", {"status": status})

    async def _set_milestone(
        self, job: PregenerationJob, name: str, status: MilestoneStatus
    ) -> None:
        async with self._lock:
            job.milestones[name] = status
        await self._emit(job, "milestone", {"name": name, "status": status})

    async def _handle_failure(self, job: PregenerationJob, exc: Exception) -> None:
        message = str(exc)
        async with self._lock:
            job.error = message
        await self._emit(job, "error", {"message": message})
        await self._update_status(job, JobStatus.FAILED)
        await self._emit(job, "complete", {"status": JobStatus.FAILED}, final=True)

    async def _emit(
        self, job: PregenerationJob, event_type: str, payload: Dict[str, Any], final: bool = False
    ) -> None:
        normalized = self._normalize_payload(payload)
        event = JobEvent(type=event_type, payload=normalized, final=final)
        async with self._lock:
            job.history.append(event)
        await job.queue.put(event)

    def _normalize_payload(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        normalized: Dict[str, Any] = {}
        for key, value in payload.items():
            if isinstance(value, Enum):
                normalized[key] = value.value
            else:
                normalized[key] = value
        return normalized

    # endregion


class ReviewService:
    """Manages the spaced repetition review loop."""

    def __init__(
        self,
        repository: ReviewStateRepository,
        gate: IdentityGate,
        config: Optional[EngineConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._repository = repository
        self._gate = gate
        self._config = config or EngineConfig()
        self._clock = clock or _utcnow

    def review(self, caller_token: Optional[str], owner_id: str, card_id: str, grade: Any) -> ReviewState:
        require_owner(self._gate, caller_token, owner_id)
        now = self._clock()
        outcome: Dict[str, Any] = {}

        def apply(payload: Optional[dict]) -> dict:
            prior = ReviewState.from_dict(payload) if payload else None
            updated = next_review(prior, grade, now, config=self._config.scheduler)
            outcome["prior_state"] = prior.state.name if prior else "NEW"
            outcome["updated"] = updated
            return updated.to_dict()

        self._repository.update_review(owner_id, card_id, apply)
        updated = outcome["updated"]
        METRICS.record_scheduler_outcome(outcome["prior_state"], int(updated.last_grade))
        return updated

    def due_cards(
        self,
        caller_token: Optional[str],
        owner_id: str,
        card_ids: Iterable[str],
        rng: Optional[Any] = None,
    ) -> List[str]:
        require_owner(self._gate, caller_token, owner_id)
        reviews = self._repository.list_reviews(owner_id)
        return get_due_cards(reviews, card_ids, self._clock(), rng)

    def stats(self, caller_token: Optional[str], owner_id: str, card_ids: Iterable[str]) -> Dict[str, int]:
        require_owner(self._gate, caller_token, owner_id)
        return deck_stats(self._repository.list_reviews(owner_id), card_ids)


__all__ = [
    "AssessmentService",
    "FINAL_JOB_STATUSES",
    "JobEvent",
    "PIPELINE_STAGES",
    "PregenerationJob",
    "PregenerationService",
    "ReviewService",
    "ability_snapshot",
    "build_ability_response",
]
