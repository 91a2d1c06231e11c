"""
Research Orchestrator

PRIMARY ENTRY POINT for research operations:

- start_research_job(): validate a research request and create its job
- process_job(): run a created job through the iteration state machine
- run_research_job(): both of the above
- run_request(): every core job for one company, concurrently
- get_job_status(): iteration counts, progress, consolidation status
- retry_job(): a NEW job with a failed job's parameters
- compare_iterations(): diff two iterations of one job
- process_outbox(): drain pending report tasks

Jobs of one request are independent and may run concurrently; their only
meeting point is the durable store. Report generation is never part of a
job's own completion: completion writes an outbox task, and the outbox is
drained separately (inline only when ``dispatch_reports`` is set).
"""

import asyncio
from typing import Any, Dict, List, Optional, Sequence, Union

from pydantic import BaseModel, Field, ValidationError

from config.logging_config import get_logger
from diligence.analysis.comparison import compare_iterations
from diligence.analysis.consolidator import Consolidator
from diligence.core import audit as audit_actions
from diligence.core.audit import AuditContext, AuditTrail
from diligence.core.exceptions import (
    DiligenceError,
    InvalidResearchRequestError,
    JobNotFoundError,
    MissingCompanyContextError,
)
from diligence.core.pipeline import IterationPipeline
from diligence.core.state_machine import IterationStateMachine
from diligence.core.state_manager import (
    CORE_JOB_TYPES,
    IterationStatus,
    IterationStrategy,
    JobStatus,
    JobType,
    resolve_max_iterations,
)
from diligence.database.connection import SessionFactory, get_db
from diligence.database.repository import IterationRepository, ResearchJobRepository
from diligence.reporting.assembler import ReportAssembler
from diligence.reporting.outbox import OutboxRunResult, ReportOutboxWorker
from diligence.search.query_builder import extract_entity_context

logger = get_logger(__name__)


class ResearchJobRequest(BaseModel):
    """A caller's research request for one job type."""
    request_id: str = Field(..., min_length=1)
    job_type: JobType
    company_data: Optional[Dict[str, Any]] = None
    company_name: Optional[str] = None
    research_scope: Optional[Dict[str, Any]] = None
    budget_tokens: Optional[int] = Field(default=None, ge=500)
    max_iterations: Optional[int] = Field(default=None, ge=1)
    iteration_strategy: IterationStrategy = IterationStrategy.MULTI
    auto_consolidate: bool = True
    user_id: Optional[str] = None


class ResearchOrchestrator:
    """
    Example:
        >>> orchestrator = ResearchOrchestrator(session_factory)
        >>> started = orchestrator.start_research_job({"request_id": "req-1", "job_type": "legal_research",
        ...                                             "company_data": company})
        >>> final = await orchestrator.process_job(started["job_id"])
        >>> final["status"]
        'completed'
    """

    def __init__(
        self,
        session_factory: Optional[SessionFactory] = None,
        pipeline: Optional[IterationPipeline] = None,
        assembler: Optional[ReportAssembler] = None,
        consolidator: Optional[Consolidator] = None,
        audit: Optional[AuditTrail] = None,
        iteration_delay: Optional[float] = None,
        log_dir: Optional[str] = None,
        dispatch_reports: bool = False,
    ):
        self.session_factory = session_factory
        self.audit = audit or AuditTrail(session_factory)
        self.consolidator = consolidator or Consolidator()
        self.state_machine = IterationStateMachine(
            session_factory,
            pipeline=pipeline,
            consolidator=self.consolidator,
            audit=self.audit,
            iteration_delay=iteration_delay,
            log_dir=log_dir,
        )
        self.assembler = assembler or ReportAssembler(
            session_factory, consolidator=self.consolidator, audit=self.audit
        )
        self.outbox = ReportOutboxWorker(self.assembler, session_factory)
        self.dispatch_reports = dispatch_reports

    # ========================================================================
    # JOB CREATION
    # ========================================================================

    def start_research_job(
        self,
        request: Union[ResearchJobRequest, Dict[str, Any]],
        audit_context: Optional[AuditContext] = None,
    ) -> Dict[str, Any]:
        """
        Validate the request and create a pending job.

        Returns:
            {"success": bool, "job_id": str or None, "message": str}
        """
        try:
            if not isinstance(request, ResearchJobRequest):
                request = ResearchJobRequest(**request)
        except ValidationError as e:
            logger.warning("Invalid research request", extra={"errors": e.errors()})
            return {"success": False, "job_id": None, "message": f"Invalid research request: {e}"}

        self.audit.record(
            audit_actions.RESEARCH_JOB_INITIATED,
            {"job_type": request.job_type.value, "iteration_strategy": request.iteration_strategy.value},
            request_id=request.request_id,
            context=audit_context,
        )

        max_iterations = resolve_max_iterations(request.max_iterations, request.iteration_strategy.value)
        job_data = {
            "request_id": request.request_id,
            "user_id": request.user_id or (audit_context.user_id if audit_context else None),
            "job_type": request.job_type.value,
            "company_name": request.company_name or self._company_name(request.company_data),
            "company_data": request.company_data,
            "research_scope": request.research_scope or {},
            "budget_tokens": request.budget_tokens,
            "iteration_strategy": request.iteration_strategy.value,
            "max_iterations": max_iterations,
            "auto_consolidate": request.auto_consolidate,
            "consolidation_required": request.auto_consolidate and max_iterations > 1,
            "status": JobStatus.PENDING.value,
            "progress": 0,
        }

        with get_db(self.session_factory) as db:
            job = ResearchJobRepository.create(db, job_data)
            job_id = job.id

        self.audit.record(
            audit_actions.RESEARCH_JOB_CREATED,
            {"job_type": request.job_type.value, "max_iterations": max_iterations},
            request_id=request.request_id,
            job_id=job_id,
            context=audit_context,
        )
        logger.info(
            "Research job created",
            extra={"job_id": job_id, "request_id": request.request_id, "job_type": request.job_type.value,
                   "max_iterations": max_iterations},
        )
        return {
            "success": True,
            "job_id": job_id,
            "message": f"{request.job_type.value} job created with {max_iterations} iteration(s)",
        }

    @staticmethod
    def _company_name(company_data: Optional[Dict[str, Any]]) -> Optional[str]:
        try:
            return extract_entity_context(company_data).company_name
        except MissingCompanyContextError:
            return None

    # ========================================================================
    # EXECUTION
    # ========================================================================

    async def process_job(self, job_id: str) -> Dict[str, Any]:
        """Run a pending job to completion or failure."""
        final_state = await self.state_machine.run(job_id)
        result = {
            "job_id": job_id,
            "status": final_state.get("status"),
            "progress": final_state.get("progress"),
            "iterations": final_state.get("current_iteration"),
            "findings": final_state.get("findings_count", 0),
            "fallback_iterations": final_state.get("fallback_iterations") or [],
            "error": str(final_state["error"]) if final_state.get("error") is not None else None,
        }
        if self.dispatch_reports:
            await self.process_outbox()
        return result

    async def run_research_job(
        self,
        request: Union[ResearchJobRequest, Dict[str, Any]],
        audit_context: Optional[AuditContext] = None,
    ) -> Dict[str, Any]:
        started = self.start_research_job(request, audit_context)
        if not started["success"]:
            return started
        result = await self.process_job(started["job_id"])
        return dict(started, **result)

    async def run_request(
        self,
        request_id: str,
        company_data: Dict[str, Any],
        job_types: Sequence[Any] = CORE_JOB_TYPES,
        **params,
    ) -> List[Dict[str, Any]]:
        """
        Create and run one job per type for a request, concurrently.

        Extra keyword arguments go into every ResearchJobRequest. One job
        raising does not stop the others; it is reported with status
        "error", and a request that fails validation with "rejected".

        Raises:
            InvalidResearchRequestError: If a job type is unknown
        """
        try:
            job_types = [JobType(job_type).value for job_type in job_types]
        except ValueError as e:
            raise InvalidResearchRequestError(f"Unknown job type: {e}") from e

        summary = []
        runnable = []
        for job_type in job_types:
            started = self.start_research_job(dict(
                params, request_id=request_id, job_type=job_type, company_data=company_data
            ))
            if started["success"]:
                runnable.append((started["job_id"], job_type))
            else:
                summary.append({"job_id": None, "job_type": job_type, "status": "rejected",
                                "progress": None, "error": started["message"]})

        results = await asyncio.gather(
            *(self.state_machine.run(job_id) for job_id, _ in runnable),
            return_exceptions=True,
        )

        for (job_id, job_type), state in zip(runnable, results):
            if isinstance(state, BaseException):
                logger.error(
                    "Research job run raised",
                    extra={"job_id": job_id, "request_id": request_id, "error_type": type(state).__name__,
                           "error": str(state)},
                )
                summary.append({"job_id": job_id, "job_type": job_type, "status": "error",
                                "progress": None, "error": f"{type(state).__name__}: {state}"})
                continue
            summary.append({
                "job_id": job_id,
                "job_type": job_type,
                "status": state.get("status"),
                "progress": state.get("progress"),
                "error": str(state["error"]) if state.get("error") is not None else None,
            })
        if self.dispatch_reports:
            await self.process_outbox()
        return summary

    async def process_outbox(self) -> OutboxRunResult:
        self.outbox.sweep()
        return await self.outbox.run_once()

    # ========================================================================
    # STATUS, RETRY, COMPARISON
    # ========================================================================

    def get_job_status(self, job_id: str) -> Dict[str, Any]:
        try:
            with get_db(self.session_factory) as db:
                job = ResearchJobRepository.get_or_raise(db, job_id)
                iterations = IterationRepository.get_by_job(db, job_id)
        except JobNotFoundError as e:
            return {"success": False, "status": None, "message": str(e)}

        counts = {status.value: 0 for status in IterationStatus}
        for iteration in iterations:
            counts[iteration.status] = counts.get(iteration.status, 0) + 1

        if not job.consolidation_required:
            consolidation_status = "not_required"
        elif job.consolidated_findings:
            consolidation_status = "completed"
        else:
            consolidation_status = "required"

        return {
            "success": True,
            "status": {
                "job_id": job.id,
                "job_status": job.status,
                "iteration_strategy": job.iteration_strategy,
                "max_iterations": job.max_iterations,
                "current_iteration": job.current_iteration,
                "completed_iterations": counts[IterationStatus.COMPLETED.value],
                "failed_iterations": counts[IterationStatus.FAILED.value],
                "pending_iterations": counts[IterationStatus.PENDING.value],
                "running_iterations": counts[IterationStatus.RUNNING.value],
                "overall_progress": job.progress,
                "consolidation_status": consolidation_status,
                "consolidation_data": job.risk_assessment if consolidation_status == "completed" else None,
                "iterations": [
                    {
                        "iteration_number": it.iteration_number,
                        "status": it.status,
                        "confidence_score": it.confidence_score,
                        "data_quality_score": it.data_quality_score,
                        "tokens_used": it.tokens_used,
                        "started_at": it.started_at.isoformat() if it.started_at else None,
                        "completed_at": it.completed_at.isoformat() if it.completed_at else None,
                        "error_message": it.error_message,
                    }
                    for it in iterations
                ],
            },
            "message": f"Job is {job.status}",
        }

    def retry_job(self, job_id: str, audit_context: Optional[AuditContext] = None) -> Dict[str, Any]:
        """Create a new job from a failed one. The failed job stays failed."""
        try:
            with get_db(self.session_factory) as db:
                job = ResearchJobRepository.get_or_raise(db, job_id)
        except JobNotFoundError as e:
            return {"success": False, "job_id": None, "message": str(e)}

        if job.status != JobStatus.FAILED.value:
            return {"success": False, "job_id": None, "message": f"Only failed jobs can be retried (job is {job.status})"}

        started = self.start_research_job(
            ResearchJobRequest(
                request_id=job.request_id,
                job_type=job.job_type,
                company_data=job.company_data,
                company_name=job.company_name,
                research_scope=job.research_scope or None,
                budget_tokens=job.budget_tokens,
                max_iterations=job.max_iterations,
                iteration_strategy=job.iteration_strategy or IterationStrategy.MULTI.value,
                auto_consolidate=bool(job.auto_consolidate),
                user_id=job.user_id,
            ),
            audit_context,
        )
        if started["success"]:
            self.audit.record(
                audit_actions.RESEARCH_JOB_RETRIED,
                {"failed_job_id": job_id, "job_type": job.job_type},
                request_id=job.request_id,
                job_id=started["job_id"],
                context=audit_context,
            )
        return started

    def compare_iterations(self, job_id: str, iteration_1: int, iteration_2: int) -> Dict[str, Any]:
        with get_db(self.session_factory) as db:
            first = IterationRepository.get_by_number(db, job_id, iteration_1)
            second = IterationRepository.get_by_number(db, job_id, iteration_2)
        if first is None or second is None:
            return {"success": False, "comparison": None, "message": "Iteration not found"}

        comparison = compare_iterations(job_id, first, second)
        return {
            "success": True,
            "comparison": comparison.to_dict(),
            "message": f"Compared iterations {iteration_1} and {iteration_2}",
        }

    def consolidate_request(self, request_id: str) -> Dict[str, Any]:
        """Consolidate every completed job of a request (report-independent)."""
        try:
            consolidated, _ = self.assembler.consolidate(request_id)
        except DiligenceError as e:
            return {"success": False, "consolidated": None, "message": str(e)}
        return {
            "success": True,
            "consolidated": consolidated.to_dict(),
            "message": f"Consolidated {len(consolidated.job_ids)} job(s)",
        }


__all__ = ["ResearchOrchestrator", "ResearchJobRequest"]
