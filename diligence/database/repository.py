"""
Database Repository Layer

Data access for the research engine. Callers never build queries
themselves; each repository hides the SQL for one table.

Design Pattern: Repository
---------------------------
Static methods taking the session first, so the caller owns the session
and its lifetime (``with get_db(factory) as db``).

Transaction boundaries that matter:
- ``ResearchJobRepository.complete`` writes the job's terminal state and,
  when the request has just become ready, its report outbox task in ONE
  commit
- ``ReportRepository.create`` relies on the (request_id, report_version)
  unique constraint; the caller treats IntegrityError as "already exists"
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import desc, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from diligence.core.state_manager import CORE_JOB_TYPES, JobStatus, merge_progress, validate_transition
from diligence.core.exceptions import JobNotFoundError
from diligence.database.models import (
    AuditLogEntry,
    EntityAnalysis,
    ReportOutbox,
    ResearchConsolidation,
    ResearchFinding,
    ResearchIteration,
    ResearchJob,
    ResearchReport,
)

REPORT_TASK = "generate_report"


def report_dedupe_key(request_id: str) -> str:
    return f"{REPORT_TASK}:{request_id}"


class ResearchJobRepository:
    """Repository for ResearchJob operations"""

    @staticmethod
    def create(db: Session, job_data: Dict[str, Any]) -> ResearchJob:
        job = ResearchJob(**job_data)
        db.add(job)
        db.commit()
        db.refresh(job)
        return job

    @staticmethod
    def get_by_id(db: Session, job_id: str) -> Optional[ResearchJob]:
        return db.query(ResearchJob).filter(ResearchJob.id == job_id).first()

    @staticmethod
    def get_or_raise(db: Session, job_id: str) -> ResearchJob:
        job = ResearchJobRepository.get_by_id(db, job_id)
        if job is None:
            raise JobNotFoundError(f"Research job {job_id} not found", job_id=job_id)
        return job

    @staticmethod
    def list_by_request(db: Session, request_id: str) -> List[ResearchJob]:
        """All jobs of a request, oldest first"""
        return db.query(ResearchJob).filter(
            ResearchJob.request_id == request_id
        ).order_by(ResearchJob.created_at, ResearchJob.id).all()

    @staticmethod
    def list_completed(db: Session, request_id: str) -> List[ResearchJob]:
        return db.query(ResearchJob).filter(
            ResearchJob.request_id == request_id,
            ResearchJob.status == JobStatus.COMPLETED.value
        ).order_by(ResearchJob.job_type, ResearchJob.id).all()

    @staticmethod
    def completed_job_types(db: Session, request_id: str) -> set:
        rows = db.query(ResearchJob.job_type).filter(
            ResearchJob.request_id == request_id,
            ResearchJob.status == JobStatus.COMPLETED.value
        ).distinct().all()
        return {row[0] for row in rows}

    @staticmethod
    def core_jobs_completed(db: Session, request_id: str) -> bool:
        """True when every core job type has a completed job for the request."""
        completed = ResearchJobRepository.completed_job_types(db, request_id)
        return all(job_type.value in completed for job_type in CORE_JOB_TYPES)

    @staticmethod
    def requests_with_completed_jobs(db: Session) -> List[str]:
        rows = db.query(ResearchJob.request_id).filter(
            ResearchJob.status == JobStatus.COMPLETED.value
        ).distinct().all()
        return sorted(row[0] for row in rows)

    @staticmethod
    def mark_running(db: Session, job_id: str) -> ResearchJob:
        """pending -> running, progress 0"""
        job = ResearchJobRepository.get_or_raise(db, job_id)
        validate_transition(job.status, JobStatus.RUNNING, job_id)
        job.status = JobStatus.RUNNING.value
        job.progress = 0
        job.current_iteration = 0
        job.started_at = datetime.utcnow()
        db.commit()
        return job

    @staticmethod
    def update_progress(db: Session, job_id: str, iteration_number: int, progress: int,
                        extra: Optional[Dict[str, Any]] = None) -> int:
        """Advance progress monotonically; returns the stored value."""
        job = ResearchJobRepository.get_or_raise(db, job_id)
        job.progress = merge_progress(job.progress, progress)
        job.current_iteration = max(job.current_iteration or 0, iteration_number)
        for key, value in (extra or {}).items():
            setattr(job, key, value)
        db.commit()
        return job.progress

    @staticmethod
    def complete(db: Session, job_id: str, fields: Dict[str, Any], enqueue_report: bool = True) -> bool:
        """
        running -> completed, plus the report outbox task when this
        completion makes the request ready.

        Returns:
            True when an outbox task was written
        """
        job = ResearchJobRepository.get_or_raise(db, job_id)
        validate_transition(job.status, JobStatus.COMPLETED, job_id)

        ResearchJobRepository._apply_completion(job, fields)
        db.flush()

        enqueued = False
        if enqueue_report and OutboxRepository.request_needs_report(db, job.request_id):
            db.add(OutboxRepository.new_task(job.request_id, {"trigger_job_id": job_id}))
            enqueued = True

        try:
            db.commit()
        except IntegrityError:
            # Another completion enqueued the same request first
            db.rollback()
            job = ResearchJobRepository.get_or_raise(db, job_id)
            ResearchJobRepository._apply_completion(job, fields)
            db.commit()
            enqueued = False
        return enqueued

    @staticmethod
    def _apply_completion(job: ResearchJob, fields: Dict[str, Any]) -> None:
        for key, value in fields.items():
            setattr(job, key, value)
        job.status = JobStatus.COMPLETED.value
        job.progress = 100
        job.completed_at = job.completed_at or datetime.utcnow()

    @staticmethod
    def fail(db: Session, job_id: str, error_message: str, fields: Optional[Dict[str, Any]] = None) -> None:
        """running -> failed (a no-op on an already failed job)"""
        job = ResearchJobRepository.get_or_raise(db, job_id)
        if job.status == JobStatus.FAILED.value:
            return
        validate_transition(job.status, JobStatus.FAILED, job_id)
        for key, value in (fields or {}).items():
            setattr(job, key, value)
        job.status = JobStatus.FAILED.value
        job.error_message = error_message
        job.completed_at = datetime.utcnow()
        db.commit()


class IterationRepository:
    """Repository for ResearchIteration operations"""

    @staticmethod
    def create(db: Session, iteration_data: Dict[str, Any]) -> ResearchIteration:
        iteration = ResearchIteration(**iteration_data)
        db.add(iteration)
        db.commit()
        db.refresh(iteration)
        return iteration

    @staticmethod
    def get_by_id(db: Session, iteration_id: str) -> Optional[ResearchIteration]:
        return db.query(ResearchIteration).filter(ResearchIteration.id == iteration_id).first()

    @staticmethod
    def get_by_job(db: Session, job_id: str) -> List[ResearchIteration]:
        return db.query(ResearchIteration).filter(
            ResearchIteration.job_id == job_id
        ).order_by(ResearchIteration.iteration_number).all()

    @staticmethod
    def get_by_number(db: Session, job_id: str, iteration_number: int) -> Optional[ResearchIteration]:
        return db.query(ResearchIteration).filter(
            ResearchIteration.job_id == job_id,
            ResearchIteration.iteration_number == iteration_number
        ).first()

    @staticmethod
    def update(db: Session, iteration_id: str, fields: Dict[str, Any]) -> None:
        db.query(ResearchIteration).filter(ResearchIteration.id == iteration_id).update(dict(fields))
        db.commit()

    @staticmethod
    def count_by_status(db: Session, job_id: str) -> Dict[str, int]:
        rows = db.query(ResearchIteration.status, func.count(ResearchIteration.id)).filter(
            ResearchIteration.job_id == job_id
        ).group_by(ResearchIteration.status).all()
        return {status: count for status, count in rows}


class FindingRepository:
    """Repository for ResearchFinding operations"""

    @staticmethod
    def create_many(db: Session, job_id: str, iteration_id: Optional[str],
                    findings: Iterable[Dict[str, Any]]) -> int:
        count = 0
        for finding in findings:
            db.add(ResearchFinding(
                job_id=job_id,
                iteration_id=iteration_id,
                finding_id=finding["id"],
                category=finding["category"],
                severity=finding["severity"],
                title=finding["title"],
                description=finding.get("description"),
                status=finding.get("status"),
                amount_inr=finding.get("amount_inr"),
                data=finding,
            ))
            count += 1
        db.commit()
        return count

    @staticmethod
    def get_by_job(db: Session, job_id: str) -> List[ResearchFinding]:
        return db.query(ResearchFinding).filter(ResearchFinding.job_id == job_id).all()


class ConsolidationRepository:
    """Repository for consolidations and their entity analyses"""

    @staticmethod
    def get_latest(db: Session, request_id: str) -> Optional[ResearchConsolidation]:
        return db.query(ResearchConsolidation).filter(
            ResearchConsolidation.request_id == request_id
        ).order_by(desc(ResearchConsolidation.created_at)).first()

    @staticmethod
    def get_by_fingerprint(db: Session, request_id: str, fingerprint: str) -> Optional[ResearchConsolidation]:
        return db.query(ResearchConsolidation).filter(
            ResearchConsolidation.request_id == request_id,
            ResearchConsolidation.fingerprint == fingerprint
        ).first()

    @staticmethod
    def save(db: Session, data: Dict[str, Any], entities: Iterable[Dict[str, Any]]) -> ResearchConsolidation:
        """
        Store a consolidation unless one with the same fingerprint exists.
        """
        existing = ConsolidationRepository.get_by_fingerprint(db, data["request_id"], data["fingerprint"])
        if existing is not None:
            return existing

        consolidation = ResearchConsolidation(**data)
        for entity in entities:
            consolidation.entities.append(EntityAnalysis(request_id=data["request_id"], **entity))
        db.add(consolidation)
        db.commit()
        db.refresh(consolidation)
        return consolidation


class ReportRepository:
    """Repository for ResearchReport operations"""

    @staticmethod
    def create(db: Session, report_data: Dict[str, Any]) -> ResearchReport:
        """
        Raises:
            IntegrityError: A report with this (request_id, report_version) exists
        """
        report = ResearchReport(**report_data)
        db.add(report)
        db.commit()
        db.refresh(report)
        return report

    @staticmethod
    def get_by_request(db: Session, request_id: str, report_version: Optional[int] = None) -> Optional[ResearchReport]:
        query = db.query(ResearchReport).filter(ResearchReport.request_id == request_id)
        if report_version is not None:
            query = query.filter(ResearchReport.report_version == report_version)
        return query.order_by(desc(ResearchReport.report_version)).first()

    @staticmethod
    def exists(db: Session, request_id: str) -> bool:
        return db.query(ResearchReport.id).filter(ResearchReport.request_id == request_id).first() is not None

    @staticmethod
    def count_by_request(db: Session, request_id: str) -> int:
        return db.query(func.count(ResearchReport.id)).filter(ResearchReport.request_id == request_id).scalar()


class OutboxRepository:
    """Repository for report outbox tasks"""

    @staticmethod
    def new_task(request_id: str, payload: Optional[Dict[str, Any]] = None) -> ReportOutbox:
        return ReportOutbox(
            request_id=request_id,
            task_type=REPORT_TASK,
            dedupe_key=report_dedupe_key(request_id),
            payload=payload or {},
        )

    @staticmethod
    def get_by_request(db: Session, request_id: str) -> Optional[ReportOutbox]:
        return db.query(ReportOutbox).filter(ReportOutbox.dedupe_key == report_dedupe_key(request_id)).first()

    @staticmethod
    def request_needs_report(db: Session, request_id: str) -> bool:
        """All core jobs completed, and neither a report nor a task exists."""
        if not ResearchJobRepository.core_jobs_completed(db, request_id):
            return False
        if ReportRepository.exists(db, request_id):
            return False
        return OutboxRepository.get_by_request(db, request_id) is None

    @staticmethod
    def enqueue(db: Session, request_id: str, payload: Optional[Dict[str, Any]] = None) -> Optional[ReportOutbox]:
        """Insert a task; None when the request already has one."""
        if OutboxRepository.get_by_request(db, request_id) is not None:
            return None
        task = OutboxRepository.new_task(request_id, payload)
        db.add(task)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            return None
        db.refresh(task)
        return task

    @staticmethod
    def claim_pending(db: Session, limit: int = 10) -> List[ReportOutbox]:
        """Move up to ``limit`` pending tasks to processing and return them."""
        tasks = db.query(ReportOutbox).filter(
            ReportOutbox.status == "pending"
        ).order_by(ReportOutbox.created_at).limit(limit).all()
        for task in tasks:
            task.status = "processing"
            task.attempts = (task.attempts or 0) + 1
        db.commit()
        return tasks

    @staticmethod
    def release_stale(db: Session, timeout_seconds: float, max_attempts: int) -> List[str]:
        """
        Put processing tasks untouched for ``timeout_seconds`` back to pending
        (their worker is presumed gone), or to failed once attempts are used
        up. Returns the request ids put back to pending.
        """
        cutoff = datetime.utcnow() - timedelta(seconds=timeout_seconds)
        tasks = db.query(ReportOutbox).filter(
            ReportOutbox.status == "processing",
            ReportOutbox.updated_at < cutoff,
        ).all()
        released = []
        for task in tasks:
            task.status = "pending" if (task.attempts or 0) < max_attempts else "failed"
            task.last_error = "Claim expired"
            if task.status == "pending":
                released.append(task.request_id)
        db.commit()
        return released

    @staticmethod
    def mark_done(db: Session, task_id: str) -> None:
        db.query(ReportOutbox).filter(ReportOutbox.id == task_id).update({
            "status": "done",
            "processed_at": datetime.utcnow(),
            "last_error": None,
        })
        db.commit()

    @staticmethod
    def mark_failed(db: Session, task_id: str, error: str, max_attempts: int) -> str:
        """Back to pending while attempts remain, otherwise failed. Returns the new status."""
        task = db.query(ReportOutbox).filter(ReportOutbox.id == task_id).first()
        if task is None:
            return "missing"
        task.status = "pending" if (task.attempts or 0) < max_attempts else "failed"
        task.last_error = error[:2000]
        db.commit()
        return task.status

    @staticmethod
    def count_by_status(db: Session) -> Dict[str, int]:
        rows = db.query(ReportOutbox.status, func.count(ReportOutbox.id)).group_by(ReportOutbox.status).all()
        return {status: count for status, count in rows}


class AuditRepository:
    """Repository for the append-only audit log"""

    @staticmethod
    def append(db: Session, entry: Dict[str, Any]) -> AuditLogEntry:
        record = AuditLogEntry(**entry)
        db.add(record)
        db.commit()
        return record

    @staticmethod
    def list_by_request(db: Session, request_id: str) -> List[AuditLogEntry]:
        return db.query(AuditLogEntry).filter(
            AuditLogEntry.request_id == request_id
        ).order_by(AuditLogEntry.timestamp).all()

    @staticmethod
    def list_by_action(db: Session, action: str) -> List[AuditLogEntry]:
        return db.query(AuditLogEntry).filter(
            AuditLogEntry.action == action
        ).order_by(AuditLogEntry.timestamp).all()


__all__ = [
    "ResearchJobRepository",
    "IterationRepository",
    "FindingRepository",
    "ConsolidationRepository",
    "ReportRepository",
    "OutboxRepository",
    "AuditRepository",
    "report_dedupe_key",
    "REPORT_TASK",
]
