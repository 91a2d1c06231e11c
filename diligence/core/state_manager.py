"""
Research Job State Management

This module defines the statuses a research job and its iterations move
through, and the state dict that flows through the LangGraph iteration
state machine.

Design Decisions:
-----------------
1. TypedDict over dataclass: Required for LangGraph state channels
2. Partial updates: Nodes return only the keys they change
3. Closed transitions: pending -> running -> completed | failed, nothing else
4. Monotonic progress: Stored progress never decreases

Lifecycle:
----------
  Job:        pending -> running -> completed
                                 -> failed
  Iteration:  pending -> running -> completed
                                 -> failed

Terminal states are never left. A failed job is retried by creating a new
job for the same request and job type.
"""

import math
from enum import Enum
from typing import Any, Dict, List, Optional, Set, TypedDict

from config.settings import settings
from diligence.core.exceptions import InvalidTransitionError


class JobStatus(str, Enum):
    """Status of a research job."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class IterationStatus(str, Enum):
    """Status of one research iteration."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class JobType(str, Enum):
    """
    Research job types.

    The four core types must all complete before a request's
    comprehensive report is generated.
    """
    DIRECTORS_RESEARCH = "directors_research"
    LEGAL_RESEARCH = "legal_research"
    NEGATIVE_NEWS = "negative_news"
    REGULATORY_RESEARCH = "regulatory_research"


CORE_JOB_TYPES = (
    JobType.DIRECTORS_RESEARCH,
    JobType.LEGAL_RESEARCH,
    JobType.NEGATIVE_NEWS,
    JobType.REGULATORY_RESEARCH,
)


class IterationStrategy(str, Enum):
    """How many iterations a job runs."""
    SINGLE = "single"
    MULTI = "multi"
    ADAPTIVE = "adaptive"


class IterationFocus(str, Enum):
    """Focus of a research iteration, chosen by iteration number."""
    PRIMARY_ENTITY = "primary_entity"
    RELATED_ENTITIES = "related_entities"
    DEEP_VERIFICATION = "deep_verification"
    FINAL_VALIDATION = "final_validation"


_TRANSITIONS: Dict[str, Set[str]] = {
    "pending": {"running"},
    "running": {"completed", "failed"},
    "completed": set(),
    "failed": set(),
}


class JobRunState(TypedDict, total=False):
    """
    State flowing through the iteration state machine.

    Nodes return partial dicts; LangGraph merges them into this state.
    """
    # === IDENTITY ===
    job_id: str
    request_id: str
    job_type: str
    company_name: str
    context: Any  # EntityResearchContext, set by start_job

    # === ITERATION CONTROL ===
    max_iterations: int
    current_iteration: int
    consolidation_required: bool
    iteration_ids: List[str]

    # === PROGRESS & QUALITY ===
    progress: int
    findings_count: int
    tokens_used: int
    fallback_iterations: List[int]

    # === OUTCOME ===
    status: str
    error: Optional[BaseException]
    error_type: Optional[str]
    failed_iteration: Optional[int]
    consolidated: Optional[Dict[str, Any]]
    risk_assessment: Optional[Dict[str, Any]]


def _status_value(status: Any) -> str:
    return status.value if isinstance(status, Enum) else str(status)


def can_transition(current: Any, target: Any) -> bool:
    """True when ``current -> target`` is an allowed status change."""
    return _status_value(target) in _TRANSITIONS.get(_status_value(current), set())


def validate_transition(current: Any, target: Any, job_id: Optional[str] = None) -> None:
    """
    Reject any status change outside the lifecycle.

    Raises:
        InvalidTransitionError: If the transition is not allowed
    """
    if not can_transition(current, target):
        raise InvalidTransitionError(_status_value(current), _status_value(target), job_id=job_id)


def is_terminal(status: Any) -> bool:
    """Completed and failed are terminal."""
    return _status_value(status) in ("completed", "failed")


def calculate_progress(iteration_number: int, max_iterations: int) -> int:
    """
    Progress after ``iteration_number`` of ``max_iterations`` iterations.

    Rounds half up, so 1 of 8 iterations reports 13.

    Example:
        >>> calculate_progress(1, 3)
        33
        >>> calculate_progress(3, 3)
        100
    """
    if max_iterations <= 0:
        return 0
    value = int(math.floor(iteration_number / max_iterations * 100 + 0.5))
    return max(0, min(100, value))


def merge_progress(current: Optional[int], new: int) -> int:
    """Monotonic progress merge: never lower than what is stored, never above 100."""
    return min(100, max(current or 0, new))


def resolve_max_iterations(
    requested: Optional[int],
    strategy: Optional[str] = None,
) -> int:
    """
    Decide how many iterations a job runs.

    ``single`` always runs one. Otherwise the requested count is used,
    falling back to the configured default, bounded to the configured limit.
    """
    if strategy and _status_value(strategy) == IterationStrategy.SINGLE.value:
        return 1
    value = requested if requested else settings.DEFAULT_MAX_ITERATIONS
    return max(1, min(int(value), settings.MAX_ITERATIONS_LIMIT))


def focus_for_iteration(iteration_number: int) -> IterationFocus:
    """
    Iteration focus by number.

    1: primary entity, 2: related entities, 3: deep verification,
    4 and later: final validation.
    """
    if iteration_number <= 1:
        return IterationFocus.PRIMARY_ENTITY
    if iteration_number == 2:
        return IterationFocus.RELATED_ENTITIES
    if iteration_number == 3:
        return IterationFocus.DEEP_VERIFICATION
    return IterationFocus.FINAL_VALIDATION


def create_initial_state(
    job_id: str,
    request_id: str,
    job_type: str,
    max_iterations: int,
    consolidation_required: bool,
) -> JobRunState:
    """
    Create the initial state for one run of the iteration state machine.

    Example:
        >>> state = create_initial_state("job-1", "req-1", "legal_research", 3, True)
        >>> state["current_iteration"]
        0
    """
    return JobRunState(
        job_id=job_id,
        request_id=request_id,
        job_type=job_type,
        company_name="",
        context=None,
        max_iterations=max_iterations,
        current_iteration=0,
        consolidation_required=consolidation_required,
        iteration_ids=[],
        progress=0,
        findings_count=0,
        tokens_used=0,
        fallback_iterations=[],
        status=JobStatus.PENDING.value,
        error=None,
        error_type=None,
        failed_iteration=None,
        consolidated=None,
        risk_assessment=None,
    )


__all__ = [
    "JobStatus",
    "IterationStatus",
    "JobType",
    "CORE_JOB_TYPES",
    "IterationStrategy",
    "IterationFocus",
    "JobRunState",
    "can_transition",
    "validate_transition",
    "is_terminal",
    "calculate_progress",
    "merge_progress",
    "resolve_max_iterations",
    "focus_for_iteration",
    "create_initial_state",
]
