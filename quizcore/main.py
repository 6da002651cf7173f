"""FastAPI application wiring for the quizcore assessment engine."""

from __future__ import annotations

import asyncio
import json
import os
from datetime import timedelta
from typing import Any, AsyncGenerator, Awaitable, Callable, List, Mapping, Optional, Sequence

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse

from .auth import AllowAllGate, IdentityGate, StaticTokenGate
from .config import EngineConfig, load_config
from .errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    QuizError,
    UpstreamPermanentError,
    UpstreamTransientError,
    ValidationError,
)
from .generation import QuestionBankGenerator, QuestionGenerator, default_question_bank
from .logging_config import setup_logging
from .models import (
    AbilityResponse,
    CachedQuiz,
    DueCardsResponse,
    FlashcardReviewRequest,
    FlashcardReviewResponse,
    PregenerateJobResponse,
    PregenerateJobStatusResponse,
    PregenerateRequest,
    VerifyAnswerRequest,
    VerifyAnswerResponse,
)
from .repositories import DocumentStore
from .services import AssessmentService, PregenerationService, ReviewService, build_ability_response
from .sessions import QuizSessionStore
from .storage import InMemoryStore, SqliteStore


app = FastAPI(title="quizcore", version="0.1.0")


def _parse_tokens(raw: str) -> Mapping[str, str]:
    tokens = {}
    for pair in raw.split(","):
        token, _, owner_id = pair.strip().partition(":")
        if token and owner_id:
            tokens[token] = owner_id
    return tokens


def install_services(
    target: FastAPI,
    *,
    store: Optional[DocumentStore] = None,
    generator: Optional[QuestionGenerator] = None,
    gate: Optional[IdentityGate] = None,
    config: Optional[EngineConfig] = None,
    catalog: Optional[Mapping[str, Sequence[str]]] = None,
    rng: Optional[Any] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> None:
    """Build the services and attach them to ``target.state``.

    ``store`` must implement the document, session and review repositories
    (both :class:`InMemoryStore` and :class:`SqliteStore` do).
    """

    config = config or EngineConfig()
    if store is None:
        store = SqliteStore(config.db_path) if config.db_path else InMemoryStore()
    gate = gate or AllowAllGate()
    generator = generator or QuestionBankGenerator(default_question_bank())
    sessions = QuizSessionStore(store, ttl=timedelta(hours=config.pipeline.session_ttl_hours))

    target.state.config = config
    target.state.store = store
    target.state.sessions = sessions
    target.state.assessment_service = AssessmentService(store, sessions, gate, config=config)
    target.state.pregeneration_service = PregenerationService(
        store, sessions, generator, gate, config=config, catalog=catalog, rng=rng, sleep=sleep
    )
    target.state.review_service = ReviewService(store, gate, config=config)


def get_assessment_service() -> AssessmentService:
    return app.state.assessment_service


def get_pregeneration_service() -> PregenerationService:
    return app.state.pregeneration_service


def get_review_service() -> ReviewService:
    return app.state.review_service


def get_caller_token(authorization: Optional[str] = Header(default=None)) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


@app.on_event("startup")
def startup() -> None:
    config = load_config()
    setup_logging(config.log_level)
    if getattr(app.state, "assessment_service", None) is not None:
        return
    raw_tokens = os.getenv("QUIZCORE_API_TOKENS", "")
    gate: IdentityGate = StaticTokenGate(_parse_tokens(raw_tokens)) if raw_tokens else AllowAllGate()
    install_services(app, gate=gate, config=config)


def _http_error(exc: QuizError) -> HTTPException:
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, AuthorizationError):
        return HTTPException(status_code=403, detail="Forbidden")
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ConflictError):
        return HTTPException(status_code=409, detail="Question already answered")
    if isinstance(exc, UpstreamPermanentError):
        return HTTPException(status_code=502, detail=str(exc))
    if isinstance(exc, UpstreamTransientError):
        return HTTPException(status_code=503, detail=str(exc))
    return HTTPException(status_code=500, detail="Internal error")


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": json.loads(json.dumps(exc.errors(), default=str))})


@app.post("/v1/quiz/verify", response_model=VerifyAnswerResponse)
def verify_answer(
    request: VerifyAnswerRequest,
    token: Optional[str] = Depends(get_caller_token),
    service: AssessmentService = Depends(get_assessment_service),
) -> VerifyAnswerResponse:
    try:
        result, estimate = service.verify_answer(
            token, request.owner_id, request.quiz_session_id, request.question_id, request.user_answer
        )
    except QuizError as exc:
        raise _http_error(exc) from exc
    return VerifyAnswerResponse(
        question_id=result.question_id,
        is_correct=result.is_correct,
        points_earned=result.points_earned,
        max_points=result.max_points,
        correct_answer=result.correct_answer,
        explanation=result.explanation,
        incorrect_explanations=result.incorrect_explanations,
        topics=result.topics,
        difficulty=result.difficulty,
        question_type=result.question_type,
        ability=build_ability_response(request.owner_id, estimate, app.state.config),
    )


@app.get("/v1/ability", response_model=AbilityResponse)
def ability(
    owner_id: str,
    token: Optional[str] = Depends(get_caller_token),
    service: AssessmentService = Depends(get_assessment_service),
) -> AbilityResponse:
    try:
        estimate = service.current_ability(token, owner_id)
    except QuizError as exc:
        raise _http_error(exc) from exc
    return build_ability_response(owner_id, estimate, app.state.config)


@app.post("/v1/quiz/pregenerate", response_model=PregenerateJobResponse, status_code=202)
async def pregenerate(
    request: PregenerateRequest,
    token: Optional[str] = Depends(get_caller_token),
    service: PregenerationService = Depends(get_pregeneration_service),
) -> PregenerateJobResponse:
    try:
        return await service.enqueue(token, request.owner_id)
    except QuizError as exc:
        raise _http_error(exc) from exc


@app.get("/v1/quiz/jobs/{job_id}", response_model=PregenerateJobStatusResponse)
async def pregenerate_status(
    job_id: str, service: PregenerationService = Depends(get_pregeneration_service)
) -> PregenerateJobStatusResponse:
    try:
        return await service.get_job_status(job_id)
    except QuizError as exc:
        raise _http_error(exc) from exc


@app.get("/v1/quiz/jobs/{job_id}/events")
async def pregenerate_events(
    job_id: str, service: PregenerationService = Depends(get_pregeneration_service)
) -> StreamingResponse:
    try:
        await service.get_job_status(job_id)
    except QuizError as exc:
        raise _http_error(exc) from exc

    async def event_stream() -> AsyncGenerator[str, None]:
        async for event in service.iter_job_events(job_id):
            payload = json.dumps(event.payload)
            yield f"event: {event.type}\ndata: {payload}\n\n"

    return StreamingResponse(event_stream(), media_type="text/event-stream")


@app.get("/v1/quiz/cached", response_model=CachedQuiz)
def cached_quiz(
    owner_id: str,
    token: Optional[str] = Depends(get_caller_token),
    service: AssessmentService = Depends(get_assessment_service),
) -> CachedQuiz:
    try:
        return service.cached_quiz(token, owner_id)
    except QuizError as exc:
        raise _http_error(exc) from exc


@app.post("/v1/flashcards/review", response_model=FlashcardReviewResponse)
def flashcard_review(
    request: FlashcardReviewRequest,
    token: Optional[str] = Depends(get_caller_token),
    service: ReviewService = Depends(get_review_service),
) -> FlashcardReviewResponse:
    try:
        updated = service.review(token, request.owner_id, request.card_id, request.grade)
    except QuizError as exc:
        raise _http_error(exc) from exc
    return FlashcardReviewResponse(card_id=request.card_id, due_at=updated.due_at, state=updated.to_dict())


@app.get("/v1/flashcards/due", response_model=DueCardsResponse)
def flashcards_due(
    owner_id: str,
    card_ids: List[str] = Query(default=[]),
    token: Optional[str] = Depends(get_caller_token),
    service: ReviewService = Depends(get_review_service),
) -> DueCardsResponse:
    try:
        return DueCardsResponse(due=service.due_cards(token, owner_id, card_ids))
    except QuizError as exc:
        raise _http_error(exc) from exc


@app.get("/v1/flashcards/stats")
def flashcards_stats(
    owner_id: str,
    card_ids: List[str] = Query(default=[]),
    token: Optional[str] = Depends(get_caller_token),
    service: ReviewService = Depends(get_review_service),
) -> dict:
    try:
        return service.stats(token, owner_id, card_ids)
    except QuizError as exc:
        raise _http_error(exc) from exc


__all__ = ["app", "install_services"]
