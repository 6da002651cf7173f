"""Error taxonomy surfaced by the session store, services and pipeline."""
from __future__ import annotations


class QuizError(Exception):
    """Base class for domain errors raised by quizcore."""


class ValidationError(QuizError, ValueError):
    """Raised when input shape or range is invalid, before any state changes."""


class NotFoundError(QuizError, LookupError):
    """Raised when a session, question or learner record does not exist."""


class ConflictError(QuizError):
    """Raised when a question has already been graded for a session."""


class AuthorizationError(QuizError):
    """Raised when the identity gate denies access to a resource owner."""


class UpstreamTransientError(QuizError):
    """Timeout or rate limit from the question generation service."""


class UpstreamPermanentError(QuizError):
    """Non-retryable failure from the question generation service."""


__all__ = [
    "AuthorizationError",
    "ConflictError",
    "NotFoundError",
    "QuizError",
    "UpstreamPermanentError",
    "UpstreamTransientError",
    "ValidationError",
]
