"""
LangGraph Iteration State Machine

Drives one research job through its iterations, strictly in sequence.

Graph:
+-----------------------------------------------------------+
|  start_job (pending -> running, load company context)     |
|    |-- missing context or store error -> fail_job         |
|    v                                                      |
|  +=============================================+          |
|  ||  run_iteration (pipeline + persistence)   ||          |
|  ||    |-- error -> fail_job                  ||          |
|  ||    |-- more iterations -> pause -> loop   ||          |
|  ||    '-- last iteration -> exit loop        ||          |
|  +=============================================+          |
|    v                                                      |
|  consolidate (only when the job requires it)              |
|    v                                                      |
|  complete_job (running -> completed, outbox task)         |
|    v                                                      |
|  END                                                      |
+-----------------------------------------------------------+

Every iteration is persisted before the next one starts; persistence
writes are the synchronization points between jobs. Progress after
iteration i of n is round(i / n * 100) and never moves backwards.

Persistence writes go through a RetryPolicy: one attempt with the full
field set, then one with a reduced field set. When even the reduced
completion write fails, the job is explicitly marked failed so it is
never left running. Store errors outside those writes route to fail_job
too, and an exception escaping the graph marks a running job failed
before it is re-raised.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from langgraph.graph import END, StateGraph
from sqlalchemy.exc import SQLAlchemyError

from config.settings import settings
from config.logging_config import (
    close_execution_logging,
    get_logger,
    log_alert_detection,
    log_event,
    log_iteration_completed,
    log_research_call,
    log_risk_scored,
    log_stage,
    setup_execution_logging,
)
from diligence.analysis.consolidator import Consolidator, JobSnapshot
from diligence.core import audit as audit_actions
from diligence.core.audit import AuditTrail
from diligence.core.error_handler import ErrorContext
from diligence.core.exceptions import (
    InvalidTransitionError,
    IterationFailedError,
    MissingCompanyContextError,
    PersistenceError,
)
from diligence.core.pipeline import IterationOutcome, IterationPipeline
from diligence.core.retry import RetryPolicy
from diligence.core.state_manager import (
    IterationStatus,
    JobRunState,
    JobStatus,
    calculate_progress,
    create_initial_state,
    focus_for_iteration,
    validate_transition,
)
from diligence.database.connection import SessionFactory, get_db
from diligence.database.repository import (
    FindingRepository,
    IterationRepository,
    ResearchJobRepository,
)
from diligence.search.query_builder import extract_entity_context

logger = get_logger(__name__)

_SEVERITY_RANK = {"CRITICAL": 0, "HIGH": 1, "MEDIUM": 2, "LOW": 3, "INFO": 4}


# ============================================================================
# FINDINGS PAYLOAD
# ============================================================================

def empty_findings_payload() -> Dict[str, List[Dict[str, Any]]]:
    return {"structured_findings": [], "critical_alerts": []}


def _alert_key(alert: Dict[str, Any]) -> tuple:
    return (alert.get("rule_id"), alert.get("position"), alert.get("source_evidence"))


def merge_findings_payload(
    existing: Optional[Dict[str, Any]],
    findings: List[Dict[str, Any]],
    alerts: List[Dict[str, Any]],
) -> Dict[str, List[Dict[str, Any]]]:
    """
    Accumulate one iteration's findings and alerts into the job payload.

    Findings are deduplicated by id and alerts by (rule, position, evidence);
    the first occurrence wins.
    """
    payload = empty_findings_payload()
    if isinstance(existing, dict):
        payload["structured_findings"] = list(existing.get("structured_findings") or [])
        payload["critical_alerts"] = list(existing.get("critical_alerts") or [])

    seen = {item.get("id") for item in payload["structured_findings"]}
    for finding in findings:
        if finding.get("id") not in seen:
            seen.add(finding.get("id"))
            payload["structured_findings"].append(finding)

    seen_alerts = {_alert_key(item) for item in payload["critical_alerts"]}
    for alert in alerts:
        if _alert_key(alert) not in seen_alerts:
            seen_alerts.add(_alert_key(alert))
            payload["critical_alerts"].append(alert)
    return payload


def prior_finding_titles(payload: Optional[Dict[str, Any]]) -> List[str]:
    """Titles of accumulated findings, most severe first."""
    findings = (payload or {}).get("structured_findings") or []
    ranked = sorted(
        enumerate(findings),
        key=lambda pair: (_SEVERITY_RANK.get(pair[1].get("severity"), 5), pair[0]),
    )
    return [finding.get("title") for _, finding in ranked if finding.get("title")]


# ============================================================================
# STATE MACHINE
# ============================================================================

class IterationStateMachine:
    """
    Runs a single research job to a terminal status.

    Args:
        session_factory: Durable store sessions (defaults to the global one)
        pipeline: Iteration pipeline (query, research, alerts, extraction, scoring)
        consolidator: Consolidator used when the job requires consolidation
        audit: Audit trail sink
        iteration_delay: Seconds to wait between iterations
        log_dir: Directory for the per-job JSONL execution log
        persistence_policy: Retry policy for store writes

    Example:
        >>> machine = IterationStateMachine(session_factory, pipeline=pipeline, iteration_delay=0)
        >>> final = await machine.run(job_id)
        >>> final["status"], final["progress"]
        ('completed', 100)
    """

    def __init__(
        self,
        session_factory: Optional[SessionFactory] = None,
        pipeline: Optional[IterationPipeline] = None,
        consolidator: Optional[Consolidator] = None,
        audit: Optional[AuditTrail] = None,
        iteration_delay: Optional[float] = None,
        log_dir: Optional[str] = None,
        persistence_policy: Optional[RetryPolicy] = None,
    ):
        self.session_factory = session_factory
        self.pipeline = pipeline or IterationPipeline()
        self.consolidator = consolidator or Consolidator()
        self.audit = audit or AuditTrail(session_factory)
        self.iteration_delay = settings.ITERATION_DELAY_SECONDS if iteration_delay is None else iteration_delay
        self.log_dir = log_dir
        self.persistence_policy = persistence_policy or RetryPolicy(
            max_attempts=1,
            retry_on=(SQLAlchemyError,),
            name="persistence",
        )

        # Execution loggers are not graph state (not serializable)
        self._exec_loggers: Dict[str, logging.Logger] = {}

        self.graph = self._build_graph()

    # ========================================================================
    # PUBLIC API
    # ========================================================================

    async def run(self, job_id: str) -> JobRunState:
        """
        Run ``job_id`` (which must be pending) to completed or failed.

        Raises:
            JobNotFoundError: Unknown job
            InvalidTransitionError: The job is not pending
        """
        with get_db(self.session_factory) as db:
            job = ResearchJobRepository.get_or_raise(db, job_id)
            validate_transition(job.status, JobStatus.RUNNING, job_id)
            initial = create_initial_state(
                job.id,
                job.request_id,
                job.job_type,
                job.max_iterations,
                bool(job.consolidation_required),
            )

        exec_logger = setup_execution_logging(job_id, log_dir=self.log_dir)
        self._exec_loggers[job_id] = exec_logger
        try:
            final_state = await self.graph.ainvoke(
                initial,
                config={"recursion_limit": 2 * initial["max_iterations"] + 10},
            )
        except Exception as e:
            self._fail_unfinished(job_id, e)
            raise
        finally:
            self._exec_loggers.pop(job_id, None)
            close_execution_logging(exec_logger)

        logger.info(
            "Research job finished",
            extra={
                "job_id": job_id,
                "status": final_state.get("status"),
                "iterations": final_state.get("current_iteration"),
                "progress": final_state.get("progress"),
            },
        )
        return final_state

    # ========================================================================
    # GRAPH
    # ========================================================================

    def _build_graph(self):
        workflow = StateGraph(JobRunState)

        workflow.add_node("start_job", self._node_start_job)
        workflow.add_node("run_iteration", self._node_run_iteration)
        workflow.add_node("pause", self._node_pause)
        workflow.add_node("consolidate", self._node_consolidate)
        workflow.add_node("complete_job", self._node_complete_job)
        workflow.add_node("fail_job", self._node_fail_job)

        workflow.set_entry_point("start_job")

        workflow.add_conditional_edges(
            "start_job",
            self._route_after_start,
            {"run_iteration": "run_iteration", "fail_job": "fail_job"},
        )
        workflow.add_conditional_edges(
            "run_iteration",
            self._route_after_iteration,
            {
                "pause": "pause",
                "consolidate": "consolidate",
                "complete_job": "complete_job",
                "fail_job": "fail_job",
            },
        )
        workflow.add_edge("pause", "run_iteration")
        workflow.add_conditional_edges(
            "consolidate",
            self._route_after_consolidation,
            {"complete_job": "complete_job", "fail_job": "fail_job"},
        )
        workflow.add_edge("complete_job", END)
        workflow.add_edge("fail_job", END)

        return workflow.compile()

    @staticmethod
    def _route_after_start(state: JobRunState) -> str:
        return "fail_job" if state.get("error") is not None else "run_iteration"

    @staticmethod
    def _route_after_iteration(state: JobRunState) -> str:
        if state.get("error") is not None:
            return "fail_job"
        if state["current_iteration"] < state["max_iterations"]:
            return "pause"
        if state.get("consolidation_required"):
            return "consolidate"
        return "complete_job"

    @staticmethod
    def _route_after_consolidation(state: JobRunState) -> str:
        return "fail_job" if state.get("error") is not None else "complete_job"

    # ========================================================================
    # NODES
    # ========================================================================

    async def _node_start_job(self, state: JobRunState) -> Dict[str, Any]:
        job_id = state["job_id"]
        company_name = None

        try:
            with get_db(self.session_factory) as db:
                job = ResearchJobRepository.mark_running(db, job_id)
                company_data = job.company_data
                company_name = job.company_name

            self._log(job_id, "job_started", {
                "job_type": state["job_type"],
                "max_iterations": state["max_iterations"],
                "consolidation_required": state["consolidation_required"],
            })
            context = extract_entity_context(company_data)
        except MissingCompanyContextError as e:
            logger.error("Company context unavailable", extra={"job_id": job_id, "error": str(e)})
            return {
                "status": JobStatus.RUNNING.value,
                "company_name": company_name or "",
                "error": e,
                "error_type": type(e).__name__,
            }
        except Exception as e:
            logger.error(
                "Research job could not start",
                extra={"job_id": job_id, "error_type": type(e).__name__, "error": str(e)},
            )
            return {"company_name": company_name or "", "error": e, "error_type": type(e).__name__}

        return {
            "status": JobStatus.RUNNING.value,
            "company_name": context.company_name,
            "context": context,
            "progress": 0,
        }

    async def _node_run_iteration(self, state: JobRunState) -> Dict[str, Any]:
        job_id = state["job_id"]
        number = state["current_iteration"] + 1
        focus = focus_for_iteration(number)
        iteration_id = None

        error_context = ErrorContext(
            job_id=job_id,
            request_id=state["request_id"],
            job_type=state["job_type"],
            company_name=state["company_name"],
            iteration_number=number,
        )

        try:
            with get_db(self.session_factory) as db:
                job = ResearchJobRepository.get_or_raise(db, job_id)
                research_scope = job.research_scope or {}
                budget_tokens = job.budget_tokens
                prior_titles = prior_finding_titles(job.findings) if number > 1 else []
                iteration = IterationRepository.create(db, {
                    "job_id": job_id,
                    "iteration_number": number,
                    "research_focus": {"focus": focus.value, "scope": research_scope},
                    "status": IterationStatus.RUNNING.value,
                    "started_at": datetime.utcnow(),
                })
                iteration_id = iteration.id

            outcome = await self.pipeline.run(
                state["context"],
                state["job_type"],
                number,
                state["max_iterations"],
                research_scope=research_scope,
                prior_findings=prior_titles,
                budget_tokens=budget_tokens,
                error_context=error_context,
            )
            progress = self._persist_iteration(state, iteration_id, outcome)
            findings_count = self._findings_count(job_id)
        except Exception as e:
            return self._iteration_failed(state, iteration_id, number, e)

        self._log_iteration(state, outcome, progress)

        fallback_iterations = list(state.get("fallback_iterations") or [])
        if outcome.research.used_fallback:
            fallback_iterations.append(number)
            self.audit.record(
                audit_actions.RESEARCH_FALLBACK_APPLIED,
                {
                    "job_type": state["job_type"],
                    "iteration": number,
                    "company_name": state["company_name"],
                    "fallback_mode": outcome.research.fallback_mode,
                    "error_category": outcome.research.error_category,
                },
                request_id=state["request_id"],
                job_id=job_id,
            )

        return {
            "current_iteration": number,
            "progress": progress,
            "iteration_ids": list(state.get("iteration_ids") or []) + [iteration_id],
            "findings_count": findings_count,
            "tokens_used": (state.get("tokens_used") or 0) + outcome.research.tokens_used,
            "fallback_iterations": fallback_iterations,
        }

    async def _node_pause(self, state: JobRunState) -> Dict[str, Any]:
        if self.iteration_delay > 0:
            await asyncio.sleep(self.iteration_delay)
        return {"status": JobStatus.RUNNING.value}

    async def _node_consolidate(self, state: JobRunState) -> Dict[str, Any]:
        job_id = state["job_id"]
        exec_logger = self._exec_loggers[job_id]

        try:
            with get_db(self.session_factory) as db:
                job = ResearchJobRepository.get_or_raise(db, job_id)
                snapshot = JobSnapshot.from_job(job)

            with log_stage(exec_logger, "consolidation", job_id):
                consolidated = self.consolidator.consolidate(
                    state["request_id"], [snapshot], state["company_name"], state.get("context")
                )
        except Exception as e:
            logger.error("Job consolidation failed", extra={"job_id": job_id, "error": str(e)})
            return {"error": e, "error_type": type(e).__name__}

        return {
            "consolidated": consolidated.to_dict(),
            "risk_assessment": consolidated.overall_risk_assessment.to_dict(),
        }

    async def _node_complete_job(self, state: JobRunState) -> Dict[str, Any]:
        job_id = state["job_id"]
        fields: Dict[str, Any] = {"current_iteration": state["current_iteration"]}
        if state.get("consolidation_required"):
            fields["consolidated_findings"] = state.get("consolidated")
            fields["risk_assessment"] = state.get("risk_assessment")

        def full_write():
            with get_db(self.session_factory) as db:
                return ResearchJobRepository.complete(db, job_id, fields)

        def reduced_write():
            with get_db(self.session_factory) as db:
                return ResearchJobRepository.complete(db, job_id, {})

        try:
            enqueued = self._persist(job_id, "job completion", full_write, reduced_write)
        except PersistenceError as e:
            logger.error("Job completion could not be stored", extra={"job_id": job_id, "error": str(e)})
            return self._node_fail_job_sync(state, e)

        self._log(job_id, "job_completed", {
            "iterations": state["current_iteration"],
            "findings": state.get("findings_count", 0),
            "tokens_used": state.get("tokens_used", 0),
            "report_enqueued": enqueued,
        })
        self.audit.record(
            audit_actions.RESEARCH_ANALYSIS_COMPLETED,
            {
                "job_type": state["job_type"],
                "company_name": state["company_name"],
                "iterations": state["current_iteration"],
                "findings": state.get("findings_count", 0),
                "fallback_iterations": state.get("fallback_iterations") or [],
                "risk_level": (state.get("risk_assessment") or {}).get("overall_risk_level"),
                "report_enqueued": enqueued,
            },
            request_id=state["request_id"],
            job_id=job_id,
        )
        return {"status": JobStatus.COMPLETED.value, "progress": 100}

    async def _node_fail_job(self, state: JobRunState) -> Dict[str, Any]:
        return self._node_fail_job_sync(state, state.get("error"))

    def _node_fail_job_sync(self, state: JobRunState, error: Optional[BaseException]) -> Dict[str, Any]:
        job_id = state["job_id"]
        message = str(error) if error is not None else "Research job failed"
        fields = {"current_iteration": state.get("failed_iteration") or state.get("current_iteration") or 0}

        def full_write():
            with get_db(self.session_factory) as db:
                ResearchJobRepository.fail(db, job_id, message, fields)

        def reduced_write():
            with get_db(self.session_factory) as db:
                ResearchJobRepository.fail(db, job_id, message[:500])

        try:
            self._persist(job_id, "job failure", full_write, reduced_write)
        except (PersistenceError, InvalidTransitionError) as e:
            # A job that never reached running stays pending
            logger.error("Job failure could not be stored", extra={"job_id": job_id, "error": str(e)})

        self._log(job_id, "job_failed", {
            "error": message,
            "error_type": state.get("error_type") or (type(error).__name__ if error else None),
            "failed_iteration": state.get("failed_iteration"),
        }, level=logging.ERROR)
        self.audit.record(
            audit_actions.RESEARCH_JOB_FAILED,
            {
                "job_type": state["job_type"],
                "company_name": state.get("company_name"),
                "iteration": state.get("failed_iteration"),
                "error": message,
                "error_type": state.get("error_type"),
            },
            request_id=state["request_id"],
            job_id=job_id,
        )
        return {
            "status": JobStatus.FAILED.value,
            "error": error,
            "error_type": state.get("error_type") or (type(error).__name__ if error else None),
        }

    # ========================================================================
    # PERSISTENCE
    # ========================================================================

    def _persist(self, job_id: str, label: str, full_write: Callable[[], Any],
                 reduced_write: Callable[[], Any]) -> Any:
        """
        Full write under the persistence policy, then the reduced write.

        Raises:
            PersistenceError: Both writes failed
        """
        def fallback(error: BaseException) -> Any:
            self.audit.record(
                audit_actions.PERSISTENCE_DEGRADED,
                {"write": label, "error": str(error), "error_type": type(error).__name__},
                job_id=job_id,
            )
            try:
                return reduced_write()
            except SQLAlchemyError as e:
                raise PersistenceError(f"{label} failed with reduced fields: {e}", job_id=job_id) from e

        return self.persistence_policy.with_fallback(fallback).execute_sync(full_write)

    def _persist_iteration(self, state: JobRunState, iteration_id: str, outcome: IterationOutcome) -> int:
        """Store the iteration and advance job progress. Returns the stored progress."""
        job_id = state["job_id"]
        completed_at = datetime.utcnow()
        fields = outcome.iteration_fields()
        finding_rows = fields["structured_findings"]

        def full_iteration():
            with get_db(self.session_factory) as db:
                IterationRepository.update(db, iteration_id, dict(
                    fields, status=IterationStatus.COMPLETED.value, completed_at=completed_at
                ))
                FindingRepository.create_many(db, job_id, iteration_id, finding_rows)

        def reduced_iteration():
            with get_db(self.session_factory) as db:
                IterationRepository.update(db, iteration_id, dict(
                    outcome.reduced_iteration_fields(),
                    status=IterationStatus.COMPLETED.value,
                    completed_at=completed_at,
                ))

        self._persist(job_id, "iteration", full_iteration, reduced_iteration)

        progress = calculate_progress(outcome.iteration_number, state["max_iterations"])

        def full_progress():
            with get_db(self.session_factory) as db:
                job = ResearchJobRepository.get_or_raise(db, job_id)
                payload = merge_findings_payload(
                    job.findings,
                    finding_rows,
                    [alert.to_dict() for alert in outcome.alerts],
                )
                return ResearchJobRepository.update_progress(db, job_id, outcome.iteration_number, progress, {
                    "findings": payload,
                    "tokens_used": (job.tokens_used or 0) + outcome.research.tokens_used,
                    "api_calls_made": (job.api_calls_made or 0) + outcome.research.api_calls,
                })

        def reduced_progress():
            with get_db(self.session_factory) as db:
                return ResearchJobRepository.update_progress(db, job_id, outcome.iteration_number, progress)

        return self._persist(job_id, "job progress", full_progress, reduced_progress)

    def _iteration_failed(self, state: JobRunState, iteration_id: Optional[str], number: int,
                          error: BaseException) -> Dict[str, Any]:
        job_id = state["job_id"]
        logger.error(
            "Research iteration failed",
            extra={"job_id": job_id, "iteration": number, "error_type": type(error).__name__, "error": str(error)},
        )
        try:
            if iteration_id is not None:
                with get_db(self.session_factory) as db:
                    IterationRepository.update(db, iteration_id, {
                        "status": IterationStatus.FAILED.value,
                        "error_message": str(error)[:2000],
                        "completed_at": datetime.utcnow(),
                    })
        except SQLAlchemyError as e:
            logger.error("Could not mark iteration failed", extra={"job_id": job_id, "error": str(e)})

        self._log(job_id, "iteration_failed", {
            "iteration": number,
            "error": str(error),
            "error_type": type(error).__name__,
        }, level=logging.ERROR)

        return {
            "error": IterationFailedError(
                f"Iteration {number} failed: {error}", iteration_number=number, job_id=job_id
            ),
            "error_type": type(error).__name__,
            "failed_iteration": number,
        }

    def _fail_unfinished(self, job_id: str, error: BaseException) -> None:
        """Mark a job failed if the graph aborted while it was still running."""
        logger.error(
            "Research job aborted",
            extra={"job_id": job_id, "error_type": type(error).__name__, "error": str(error)},
        )
        try:
            with get_db(self.session_factory) as db:
                job = ResearchJobRepository.get_or_raise(db, job_id)
                if job.status == JobStatus.RUNNING.value:
                    ResearchJobRepository.fail(db, job_id, f"Research job aborted: {error}"[:2000])
        except SQLAlchemyError as e:
            logger.error("Could not mark aborted job failed", extra={"job_id": job_id, "error": str(e)})

    def _findings_count(self, job_id: str) -> int:
        with get_db(self.session_factory) as db:
            job = ResearchJobRepository.get_or_raise(db, job_id)
            return len((job.findings or {}).get("structured_findings") or [])

    # ========================================================================
    # EXECUTION LOG
    # ========================================================================

    def _log(self, job_id: str, event_type: str, data: Dict[str, Any], level: int = logging.INFO) -> None:
        exec_logger = self._exec_loggers.get(job_id)
        if exec_logger is not None:
            log_event(exec_logger, event_type, job_id, data, level=level)

    def _log_iteration(self, state: JobRunState, outcome: IterationOutcome, progress: int) -> None:
        job_id = state["job_id"]
        exec_logger = self._exec_loggers.get(job_id)
        if exec_logger is None:
            return
        number = outcome.iteration_number
        log_research_call(
            exec_logger, job_id, number,
            search_depth=outcome.research.search_depth,
            tokens_used=outcome.research.tokens_used,
            citations=outcome.research.citations,
            fallback_mode=outcome.research.fallback_mode,
            duration_seconds=outcome.research.duration_seconds,
        )
        log_alert_detection(
            exec_logger, job_id, number,
            alert_count=len(outcome.alerts),
            critical_count=outcome.detection.critical_count,
            ruleset_version=outcome.detection.ruleset_version,
        )
        log_risk_scored(
            exec_logger, job_id,
            risk_score=outcome.risk.risk_score,
            credit_recommendation=outcome.risk.credit_recommendation.value,
            requires_immediate_attention=outcome.risk.requires_immediate_attention,
        )
        log_iteration_completed(
            exec_logger, job_id, number,
            findings=len(outcome.findings),
            confidence=outcome.effective_confidence,
            data_quality=outcome.data_quality_score,
            progress=progress,
        )


__all__ = [
    "IterationStateMachine",
    "merge_findings_payload",
    "prior_finding_titles",
    "empty_findings_payload",
]
