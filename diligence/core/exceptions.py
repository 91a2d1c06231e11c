"""
Exception hierarchy for the research engine.

Collaborator errors carry an ``ErrorCategory`` so the error handler and the
retry policy can decide, without string matching, whether a failure is worth
retrying and which professional fallback applies.

Only ``MissingCompanyContextError`` is fatal to a research job before any
collaborator is called; every collaborator failure degrades to a fallback.
"""

from typing import Optional


class DiligenceError(Exception):
    """Base class for every error raised by the engine."""

    def __init__(self, message: str, *, job_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.job_id = job_id


# ============================================================================
# COLLABORATOR ERRORS (research service, synthesis service)
# ============================================================================

class CollaboratorError(DiligenceError):
    """A call to an external collaborator failed."""

    category = "unknown"
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        collaborator: Optional[str] = None,
        job_id: Optional[str] = None,
    ):
        super().__init__(message, job_id=job_id)
        self.status_code = status_code
        self.collaborator = collaborator


class RateLimitError(CollaboratorError):
    category = "rate_limit"
    retryable = True


class CollaboratorTimeoutError(CollaboratorError):
    category = "timeout"
    retryable = True


class ServerError(CollaboratorError):
    category = "server"
    retryable = True


class NetworkError(CollaboratorError):
    category = "network"
    retryable = True


class AuthenticationError(CollaboratorError):
    category = "authentication"


class InvalidRequestError(CollaboratorError):
    category = "validation"


class CircuitOpenError(CollaboratorError):
    """The client stopped calling a collaborator after repeated failures."""
    category = "server"


RETRYABLE_ERRORS = (RateLimitError, CollaboratorTimeoutError, ServerError, NetworkError)


# ============================================================================
# JOB & PERSISTENCE ERRORS
# ============================================================================

class MissingCompanyContextError(DiligenceError):
    """No usable company context (name) was available for the job."""


class InvalidResearchRequestError(DiligenceError):
    """A research job request failed validation."""


class InvalidTransitionError(DiligenceError):
    """A job or iteration status change is not allowed."""

    def __init__(self, current: str, target: str, *, job_id: Optional[str] = None):
        super().__init__(f"Invalid status transition: {current} -> {target}", job_id=job_id)
        self.current = current
        self.target = target


class JobNotFoundError(DiligenceError):
    """No research job exists with the given id."""


class IterationFailedError(DiligenceError):
    """An iteration failed in a way no fallback could absorb."""

    def __init__(self, message: str, *, iteration_number: int, job_id: Optional[str] = None):
        super().__init__(message, job_id=job_id)
        self.iteration_number = iteration_number


class PersistenceError(DiligenceError):
    """A durable-store write failed, including its reduced-field retry."""


__all__ = [
    "DiligenceError",
    "CollaboratorError",
    "RateLimitError",
    "CollaboratorTimeoutError",
    "ServerError",
    "NetworkError",
    "AuthenticationError",
    "InvalidRequestError",
    "CircuitOpenError",
    "RETRYABLE_ERRORS",
    "MissingCompanyContextError",
    "InvalidResearchRequestError",
    "InvalidTransitionError",
    "JobNotFoundError",
    "IterationFailedError",
    "PersistenceError",
]
