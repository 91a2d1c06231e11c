"""
Database Models for the Research Engine

SQLAlchemy ORM models for research jobs, their iterations and findings,
consolidations, reports, the report outbox and the audit log.

Design Decisions:
-----------------
1. JSON fields: JSONB on PostgreSQL, plain JSON elsewhere (SQLite locally)
2. Check constraints: statuses and progress bounds enforced by the store
3. Unique constraints carry the idempotence guarantees:
   - one iteration row per (job, iteration number)
   - one auto-generated report per request (request_id, report_version)
   - one outbox task per dedupe key
4. Timestamps: created_at, updated_at for audit trail
5. Relationships: jobs own iterations and findings (cascade delete)

Query Patterns:
- Jobs of a request:    SELECT * FROM research_jobs WHERE request_id = ?
- Pending outbox tasks: SELECT * FROM report_outbox WHERE status = 'pending'
"""

from datetime import datetime
import uuid

from sqlalchemy import (
    JSON, Boolean, CheckConstraint, Column, DateTime, Float, ForeignKey,
    Index, Integer, String, Text, UniqueConstraint
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base, relationship

# Base class for all models
Base = declarative_base()

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _uuid() -> str:
    return str(uuid.uuid4())


class ResearchJob(Base):
    """
    One research engagement of one job type for one request.

    Lifecycle: pending -> running -> completed | failed. Terminal rows are
    never reopened; a retry is a new row.
    """
    __tablename__ = "research_jobs"

    id = Column(String, primary_key=True, default=_uuid)
    request_id = Column(String, nullable=False, index=True)
    user_id = Column(String)

    # Request
    job_type = Column(String, nullable=False)
    company_name = Column(String)
    company_data = Column(JSONType)
    research_scope = Column(JSONType, default=dict)
    budget_tokens = Column(Integer)
    iteration_strategy = Column(String, default="multi")
    max_iterations = Column(Integer, nullable=False, default=3)
    consolidation_required = Column(Boolean, default=False)
    auto_consolidate = Column(Boolean, default=True)

    # Status Tracking
    status = Column(String, nullable=False, default="pending", index=True)
    progress = Column(Integer, nullable=False, default=0)
    current_iteration = Column(Integer, nullable=False, default=0)

    # Results
    findings = Column(JSONType)
    consolidated_findings = Column(JSONType)
    risk_assessment = Column(JSONType)
    tokens_used = Column(Integer, default=0)
    api_calls_made = Column(Integer, default=0)
    error_message = Column(Text)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    iterations = relationship(
        "ResearchIteration",
        back_populates="job",
        cascade="all, delete-orphan",
        order_by="ResearchIteration.iteration_number",
    )
    finding_rows = relationship("ResearchFinding", back_populates="job", cascade="all, delete-orphan")

    __table_args__ = (
        CheckConstraint("status IN ('pending', 'running', 'completed', 'failed')", name="ck_job_status"),
        CheckConstraint("progress >= 0 AND progress <= 100", name="ck_job_progress"),
        CheckConstraint(
            "job_type IN ('directors_research', 'legal_research', 'negative_news', 'regulatory_research')",
            name="ck_job_type",
        ),
        Index("ix_jobs_request_type", "request_id", "job_type"),
    )

    def __repr__(self):
        return f"<ResearchJob(id='{self.id[:8]}...', job_type='{self.job_type}', status='{self.status}')>"


class ResearchIteration(Base):
    """One sequential pass of a job."""
    __tablename__ = "research_iterations"

    id = Column(String, primary_key=True, default=_uuid)
    job_id = Column(String, ForeignKey("research_jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    iteration_number = Column(Integer, nullable=False)

    research_focus = Column(JSONType)
    status = Column(String, nullable=False, default="pending")

    # Research output
    raw_content = Column(Text)
    structured_findings = Column(JSONType, default=list)
    critical_alerts = Column(JSONType, default=list)
    citations = Column(Integer)
    search_depth = Column(String)
    fallback_mode = Column(String)

    # Quality
    confidence_score = Column(Float)
    data_quality_score = Column(Float)
    risk_score = Column(Integer)
    alert_risk_score = Column(Integer)
    tokens_used = Column(Integer, default=0)
    error_message = Column(Text)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)

    job = relationship("ResearchJob", back_populates="iterations")

    __table_args__ = (
        UniqueConstraint("job_id", "iteration_number", name="uq_iteration_number"),
        CheckConstraint("status IN ('pending', 'running', 'completed', 'failed')", name="ck_iteration_status"),
        CheckConstraint("iteration_number >= 1", name="ck_iteration_number"),
    )

    def __repr__(self):
        return f"<ResearchIteration(job='{self.job_id[:8]}...', number={self.iteration_number}, status='{self.status}')>"


class ResearchFinding(Base):
    """One structured finding, as extracted in one iteration."""
    __tablename__ = "research_findings"

    id = Column(String, primary_key=True, default=_uuid)
    job_id = Column(String, ForeignKey("research_jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    iteration_id = Column(String, ForeignKey("research_iterations.id", ondelete="CASCADE"))
    finding_id = Column(String, nullable=False)

    category = Column(String, nullable=False)
    severity = Column(String, nullable=False, index=True)
    title = Column(Text, nullable=False)
    description = Column(Text)
    status = Column(String)
    amount_inr = Column(Float)
    data = Column(JSONType, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    job = relationship("ResearchJob", back_populates="finding_rows")

    __table_args__ = (
        CheckConstraint("severity IN ('CRITICAL', 'HIGH', 'MEDIUM', 'LOW', 'INFO')", name="ck_finding_severity"),
        Index("ix_findings_job_severity", "job_id", "severity"),
    )


class ResearchConsolidation(Base):
    """One consolidation run over a request's completed jobs."""
    __tablename__ = "research_consolidations"

    id = Column(String, primary_key=True, default=_uuid)
    request_id = Column(String, nullable=False, index=True)
    fingerprint = Column(String(64), nullable=False)
    job_ids = Column(JSONType, default=list)
    consolidated_findings = Column(JSONType, nullable=False)
    risk_assessment = Column(JSONType)
    risk_score = Column(Integer)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    entities = relationship("EntityAnalysis", back_populates="consolidation", cascade="all, delete-orphan")

    __table_args__ = (
        Index("ix_consolidations_request_fingerprint", "request_id", "fingerprint"),
    )


class EntityAnalysis(Base):
    """One consolidated entity (the company or a director)."""
    __tablename__ = "research_entity_analyses"

    id = Column(String, primary_key=True, default=_uuid)
    consolidation_id = Column(
        String, ForeignKey("research_consolidations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    request_id = Column(String, nullable=False, index=True)
    entity_type = Column(String, nullable=False)
    entity_id = Column(String, nullable=False)
    entity_name = Column(Text, nullable=False)
    risk_level = Column(String)
    findings = Column(JSONType, default=list)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    consolidation = relationship("ResearchConsolidation", back_populates="entities")

    __table_args__ = (
        CheckConstraint("entity_type IN ('company', 'director', 'subsidiary', 'associate')",
                        name="ck_entity_type"),
    )


class ResearchReport(Base):
    """
    Comprehensive report for one request.

    Immutable once written; a regeneration is a new version.
    """
    __tablename__ = "research_reports"

    id = Column(String, primary_key=True, default=_uuid)
    request_id = Column(String, nullable=False, index=True)
    report_version = Column(Integer, nullable=False, default=1)

    title = Column(Text, nullable=False)
    company_name = Column(String)
    executive_summary = Column(Text)
    sections = Column(JSONType, nullable=False)
    findings_summary = Column(JSONType)
    recommendations = Column(JSONType, default=list)

    risk_level = Column(String)
    risk_score = Column(Integer)
    credit_recommendation = Column(String)
    critical_findings_count = Column(Integer, default=0)
    auto_generated = Column(Boolean, default=True)

    generated_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    expires_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("request_id", "report_version", name="uq_report_version"),
        CheckConstraint("risk_score IS NULL OR (risk_score >= 0 AND risk_score <= 100)", name="ck_report_score"),
    )

    def __repr__(self):
        return f"<ResearchReport(request='{self.request_id}', version={self.report_version})>"


class ReportOutbox(Base):
    """
    Report-generation task, written in the same transaction as the job
    completion that made the request ready.
    """
    __tablename__ = "report_outbox"

    id = Column(String, primary_key=True, default=_uuid)
    request_id = Column(String, nullable=False, index=True)
    task_type = Column(String, nullable=False, default="generate_report")
    dedupe_key = Column(String, nullable=False, unique=True)
    payload = Column(JSONType, default=dict)

    status = Column(String, nullable=False, default="pending", index=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    processed_at = Column(DateTime)

    __table_args__ = (
        CheckConstraint("status IN ('pending', 'processing', 'done', 'failed')", name="ck_outbox_status"),
    )


class AuditLogEntry(Base):
    """Append-only audit record."""
    __tablename__ = "research_audit_log"

    id = Column(String, primary_key=True, default=_uuid)
    action = Column(String, nullable=False, index=True)
    details = Column(JSONType, default=dict)
    request_id = Column(String, index=True)
    job_id = Column(String, index=True)
    user_id = Column(String)
    ip_address = Column(String)
    user_agent = Column(Text)
    timestamp = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)


__all__ = [
    "Base",
    "ResearchJob",
    "ResearchIteration",
    "ResearchFinding",
    "ResearchConsolidation",
    "EntityAnalysis",
    "ResearchReport",
    "ReportOutbox",
    "AuditLogEntry",
]
