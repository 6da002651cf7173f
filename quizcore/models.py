"""Pydantic models for questions, responses and API payloads."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .irt import calculate_irt_parameters


Difficulty = Literal["easy", "medium", "hard"]
QuestionType = Literal["single", "multiple"]
QuestionCategory = Literal[
    "single-domain-single-topic",
    "single-domain-multiple-topics",
    "multiple-domains-multiple-topics",
]
AnswerIndex = Annotated[int, Field(ge=0)]
UserAnswer = Union[AnswerIndex, Annotated[List[AnswerIndex], Field(min_length=1, max_length=10)]]

# Fields stripped before a question is sent to an untrusted caller.
ANSWER_FIELDS = frozenset({"correct_answer", "explanation", "incorrect_explanations"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid4().hex


class QuestionFingerprint(BaseModel):
    """Identity of what a question tests, used to reject near-duplicates."""

    primary_topic: str
    scenario: str
    key_concept: str


class ClientQuestion(BaseModel):
    """Question representation that is safe to send before grading."""

    id: str = Field(default_factory=_new_id, min_length=1, max_length=100)
    question: str
    question_type: QuestionType = "single"
    options: List[str]
    topics: List[str] = Field(default_factory=list)
    difficulty: Difficulty = "medium"
    irt_difficulty: Optional[float] = None
    irt_discrimination: Optional[float] = Field(default=None, gt=0)
    guessing: float = Field(default=0.0, ge=0.0, lt=1.0)
    max_points: Optional[float] = Field(default=None, gt=0)
    question_category: Optional[QuestionCategory] = None
    fingerprint: Optional[QuestionFingerprint] = None
    created_at: datetime = Field(default_factory=_utcnow)

    @model_validator(mode="after")
    def fill_irt_parameters(self) -> "ClientQuestion":
        defaults = calculate_irt_parameters(self.difficulty)
        if self.irt_difficulty is None:
            self.irt_difficulty = defaults["irt_difficulty"]
        if self.irt_discrimination is None:
            self.irt_discrimination = defaults["irt_discrimination"]
        if self.max_points is None:
            self.max_points = defaults["max_points"]
        return self


class Question(ClientQuestion):
    """Authoritative question including its answer key."""

    correct_answer: Union[int, List[int]]
    explanation: str = ""
    incorrect_explanations: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_answer_key(self) -> "Question":
        total = len(self.options)
        if total < 2:
            raise ValueError("Questions require at least two options")
        if self.question_type == "single":
            if not isinstance(self.correct_answer, int):
                raise ValueError("Single-answer questions need exactly one correct index")
            indices = [self.correct_answer]
        else:
            if not isinstance(self.correct_answer, list):
                raise ValueError("Multiple-answer questions need a list of correct indices")
            indices = self.correct_answer
            if not 1 <= len(indices) < total:
                raise ValueError("Multiple-answer questions need between 1 and n-1 correct options")
            if len(set(indices)) != len(indices):
                raise ValueError("Correct answer indices must be unique")
            self.correct_answer = sorted(indices)
        if any(index < 0 or index >= total for index in indices):
            raise ValueError("Correct answer index out of range")
        return self

    @property
    def correct_indices(self) -> List[int]:
        if isinstance(self.correct_answer, int):
            return [self.correct_answer]
        return list(self.correct_answer)

    def to_client(self) -> ClientQuestion:
        return ClientQuestion.model_validate(self.model_dump(exclude=set(ANSWER_FIELDS)))


class ResponseRecord(BaseModel):
    """A graded answer appended to a learner's history."""

    model_config = ConfigDict(frozen=True)

    question_id: str
    is_correct: bool
    irt_difficulty: float
    irt_discrimination: float = Field(gt=0)
    guessing: float = Field(default=0.0, ge=0.0, lt=1.0)
    points_earned: float = Field(ge=0)
    max_points: float = Field(ge=0)
    topics: List[str] = Field(default_factory=list)
    fingerprint: Optional[QuestionFingerprint] = None
    session_id: Optional[str] = None
    answered_at: datetime = Field(default_factory=_utcnow)


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class MilestoneStatus(str, Enum):
    PENDING = "pending"
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"


class Milestone(BaseModel):
    name: str
    status: MilestoneStatus


class CachedQuiz(BaseModel):
    """Next quiz as stored for the client: sanitized questions plus session id."""

    quiz_session_id: str
    questions: List[ClientQuestion]
    generated_at: datetime = Field(default_factory=_utcnow)
    generated_for_ability: float = 0.0
    generated_after_quiz: int = 0
    phase: Literal[1, 2] = 1
    requested_count: int = 0


class VerifyAnswerRequest(BaseModel):
    """Input body for /v1/quiz/verify."""

    owner_id: str = Field(min_length=1, max_length=128)
    quiz_session_id: str = Field(min_length=1, max_length=100)
    question_id: str = Field(min_length=1, max_length=100)
    user_answer: UserAnswer


class AbilityResponse(BaseModel):
    owner_id: str
    theta: float
    # None when no responses exist (infinite standard error).
    standard_error: Optional[float] = None
    confidence_interval: Optional[Dict[str, float]] = None
    predicted_score: int = 0
    response_count: int = 0
    converged: bool = True


class VerifyAnswerResponse(BaseModel):
    question_id: str
    is_correct: bool
    points_earned: float
    max_points: float
    correct_answer: Union[int, List[int]]
    explanation: str
    incorrect_explanations: List[str] = Field(default_factory=list)
    topics: List[str] = Field(default_factory=list)
    difficulty: Difficulty
    question_type: QuestionType
    ability: AbilityResponse


class PregenerateRequest(BaseModel):
    owner_id: str = Field(min_length=1, max_length=128)


class PregenerateJobResponse(BaseModel):
    job_id: str
    status: JobStatus


class PregenerateJobStatusResponse(BaseModel):
    job_id: str
    owner_id: str
    status: JobStatus
    milestones: List[Milestone]
    quiz_session_id: Optional[str] = None
    questions_count: int = 0
    error: Optional[str] = None


class FlashcardReviewRequest(BaseModel):
    owner_id: str = Field(min_length=1, max_length=128)
    card_id: str = Field(min_length=1, max_length=100)
    grade: Union[int, str]


class FlashcardReviewResponse(BaseModel):
    card_id: str
    due_at: datetime
    state: Dict[str, Any]


class DueCardsResponse(BaseModel):
    due: List[str]


__all__ = [
    "ANSWER_FIELDS",
    "AbilityResponse",
    "CachedQuiz",
    "ClientQuestion",
    "Difficulty",
    "DueCardsResponse",
    "FlashcardReviewRequest",
    "FlashcardReviewResponse",
    "JobStatus",
    "Milestone",
    "MilestoneStatus",
    "PregenerateJobResponse",
    "PregenerateJobStatusResponse",
    "PregenerateRequest",
    "Question",
    "QuestionCategory",
    "QuestionFingerprint",
    "QuestionType",
    "ResponseRecord",
    "UserAnswer",
    "VerifyAnswerRequest",
    "VerifyAnswerResponse",
]
