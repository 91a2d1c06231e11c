"""
Audit Trail

Append-only audit records for research activity, stored in the
``research_audit_log`` table:

    {action, details, user_id?, ip_address?, user_agent?, timestamp}

Recorded at minimum for job initiation, job creation, job failure,
analysis completion and report generation. Recoverable collaborator
failures are recorded too, with enough context (job id, job type,
iteration, company) to reproduce them.

An audit write that fails is logged and dropped; it never changes the
outcome of the job that triggered it.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from config.logging_config import get_logger
from diligence.database.connection import SessionFactory, get_db
from diligence.database.repository import AuditRepository

logger = get_logger(__name__)

# Actions
RESEARCH_JOB_INITIATED = "research_job_initiated"
RESEARCH_JOB_CREATED = "research_job_created"
RESEARCH_JOB_FAILED = "research_job_failed"
RESEARCH_JOB_RETRIED = "research_job_retried"
RESEARCH_ANALYSIS_COMPLETED = "research_analysis_completed"
RESEARCH_FALLBACK_APPLIED = "research_fallback_applied"
PERSISTENCE_DEGRADED = "persistence_degraded"
CONSOLIDATION_COMPLETED = "consolidation_completed"
REPORT_GENERATED = "report_generated"
REPORT_GENERATION_FAILED = "report_generation_failed"


@dataclass
class AuditContext:
    """Who triggered the action."""
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class AuditTrail:
    """
    Writes audit entries.

    Example:
        >>> audit = AuditTrail(session_factory)
        >>> audit.record(RESEARCH_JOB_CREATED, {"job_type": "legal_research"}, job_id=job.id)
    """

    def __init__(self, session_factory: Optional[SessionFactory] = None):
        self.session_factory = session_factory

    def record(
        self,
        action: str,
        details: Optional[Dict[str, Any]] = None,
        *,
        request_id: Optional[str] = None,
        job_id: Optional[str] = None,
        context: Optional[AuditContext] = None,
    ) -> bool:
        """Append one entry. Returns False when the write failed."""
        context = context or AuditContext()
        entry = {
            "action": action,
            "details": details or {},
            "request_id": request_id,
            "job_id": job_id,
            "user_id": context.user_id,
            "ip_address": context.ip_address,
            "user_agent": context.user_agent,
            "timestamp": datetime.utcnow(),
        }
        try:
            with get_db(self.session_factory) as db:
                AuditRepository.append(db, entry)
        except SQLAlchemyError as e:
            logger.warning("Audit write failed", extra={"action": action, "job_id": job_id, "error": str(e)})
            return False
        return True


__all__ = [
    "AuditTrail",
    "AuditContext",
    "RESEARCH_JOB_INITIATED",
    "RESEARCH_JOB_CREATED",
    "RESEARCH_JOB_FAILED",
    "RESEARCH_JOB_RETRIED",
    "RESEARCH_ANALYSIS_COMPLETED",
    "RESEARCH_FALLBACK_APPLIED",
    "PERSISTENCE_DEGRADED",
    "CONSOLIDATION_COMPLETED",
    "REPORT_GENERATED",
    "REPORT_GENERATION_FAILED",
]
