"""
Report generation and orchestration tests.

Tests cover:
  1. No report (and no outbox task) until every core job has completed
  2. The outbox task written with the completing job
  3. Exactly one report under concurrent generation
  4. Template fallback when synthesis fails
  5. Job status, retry and request consolidation
"""

import asyncio
from datetime import datetime, timedelta

import pytest

from conftest import COMPANY_NAME, FakeSynthesizer
from diligence.core import audit as audit_actions
from diligence.core.exceptions import InvalidResearchRequestError
from diligence.core.state_manager import CORE_JOB_TYPES, JobType
from diligence.core.workflow import ResearchOrchestrator
from diligence.database.connection import get_db
from diligence.database.repository import (
    AuditRepository,
    ConsolidationRepository,
    OutboxRepository,
    ReportRepository,
    ResearchJobRepository,
)
from diligence.reporting.assembler import ReportAssembler
from diligence.reporting.outbox import ReportOutboxWorker
from diligence.reporting.templates import SECTION_TITLES

REQUEST_ID = "req-42"


@pytest.fixture
def synthesizer():
    return FakeSynthesizer()


@pytest.fixture
def assembler(session_factory, synthesizer):
    return ReportAssembler(session_factory, synthesizer=synthesizer)


@pytest.fixture
def orchestrator(session_factory, make_pipeline, assembler, log_dir):
    return ResearchOrchestrator(session_factory, pipeline=make_pipeline(), assembler=assembler,
                                iteration_delay=0, log_dir=log_dir)


def _run(orchestrator, company_data, job_types, **params):
    params.setdefault("max_iterations", 1)
    return asyncio.run(orchestrator.run_request(REQUEST_ID, company_data, job_types=job_types, **params))


# ============================================================================
# READINESS & OUTBOX
# ============================================================================

def test_no_report_until_all_core_jobs_complete(orchestrator, assembler, session_factory, company_data):
    summary = _run(orchestrator, company_data, CORE_JOB_TYPES[:3])

    assert [item["status"] for item in summary] == ["completed"] * 3
    assert not assembler.is_ready(REQUEST_ID)
    assert asyncio.run(assembler.generate(REQUEST_ID)).status == "not_ready"
    with get_db(session_factory) as db:
        assert OutboxRepository.get_by_request(db, REQUEST_ID) is None
        assert ReportRepository.count_by_request(db, REQUEST_ID) == 0

    _run(orchestrator, company_data, [JobType.REGULATORY_RESEARCH])

    with get_db(session_factory) as db:
        task = OutboxRepository.get_by_request(db, REQUEST_ID)
        assert task.status == "pending"
        assert task.dedupe_key == f"generate_report:{REQUEST_ID}"
        assert OutboxRepository.count_by_status(db) == {"pending": 1}
        assert len(ResearchJobRepository.list_by_request(db, REQUEST_ID)) == 4
        actions = {entry.action for entry in AuditRepository.list_by_request(db, REQUEST_ID)}
        assert {audit_actions.RESEARCH_JOB_CREATED, audit_actions.RESEARCH_ANALYSIS_COMPLETED} <= actions
        assert ReportRepository.count_by_request(db, REQUEST_ID) == 0


def test_outbox_worker_generates_report(orchestrator, session_factory, company_data):
    _run(orchestrator, company_data, CORE_JOB_TYPES)

    result = asyncio.run(orchestrator.process_outbox())

    assert result.generated == [REQUEST_ID]
    with get_db(session_factory) as db:
        report = ReportRepository.get_by_request(db, REQUEST_ID)
        assert OutboxRepository.get_by_request(db, REQUEST_ID).status == "done"
        assert AuditRepository.list_by_action(db, audit_actions.REPORT_GENERATED)
    assert report.company_name == COMPANY_NAME
    assert report.risk_level == "Critical"
    assert report.credit_recommendation == "Decline"
    assert set(report.sections) == set(SECTION_TITLES)
    assert report.findings_summary["research_jobs_included"] == [job_type.value for job_type in CORE_JOB_TYPES]


def test_concurrent_generation_stores_one_report(orchestrator, assembler, session_factory, company_data):
    _run(orchestrator, company_data, CORE_JOB_TYPES)
    worker = ReportOutboxWorker(assembler, session_factory)

    async def race():
        return await asyncio.gather(
            assembler.generate(REQUEST_ID),
            assembler.generate(REQUEST_ID),
            worker.run_once(),
        )

    first, second, batch = asyncio.run(race())

    statuses = sorted([first.status, second.status])
    assert statuses in (["exists", "generated"], ["exists", "exists"])
    with get_db(session_factory) as db:
        assert ReportRepository.count_by_request(db, REQUEST_ID) == 1
    assert batch.claimed == 1
    assert not batch.failed
    assert len(batch.generated) + statuses.count("generated") == 1


def test_sweep_enqueues_missing_task(orchestrator, session_factory, company_data):
    _run(orchestrator, company_data, CORE_JOB_TYPES)
    with get_db(session_factory) as db:
        task = OutboxRepository.get_by_request(db, REQUEST_ID)
        db.delete(task)
        db.commit()

    assert orchestrator.outbox.sweep() == [REQUEST_ID]
    assert orchestrator.outbox.sweep() == []


# ============================================================================
# SECTIONS
# ============================================================================

def test_sections_fall_back_to_templates(session_factory, make_pipeline, company_data, log_dir):
    failing = FakeSynthesizer(error=RuntimeError("synthesis service unavailable"))
    assembler = ReportAssembler(session_factory, synthesizer=failing)
    orchestrator = ResearchOrchestrator(session_factory, pipeline=make_pipeline(), assembler=assembler,
                                        iteration_delay=0, log_dir=log_dir)
    _run(orchestrator, company_data, CORE_JOB_TYPES)

    outcome = asyncio.run(assembler.generate(REQUEST_ID))

    assert outcome.status == "generated"
    assert outcome.synthesized_sections == []
    assert len(outcome.templated_sections) == 10
    with get_db(session_factory) as db:
        report = ReportRepository.get_by_request(db, REQUEST_ID)
    assert all(section["source"] == "template" for section in report.sections.values())
    assert COMPANY_NAME in report.executive_summary


def test_synthesized_sections(orchestrator, assembler, synthesizer, company_data):
    _run(orchestrator, company_data, CORE_JOB_TYPES)

    outcome = asyncio.run(assembler.generate(REQUEST_ID))

    assert len(outcome.synthesized_sections) == 10
    assert any(prompt.startswith('Write the "Company Overview" section') for prompt in synthesizer.prompts)
    assert asyncio.run(assembler.generate(REQUEST_ID)).status == "exists"


# ============================================================================
# STATUS, RETRY, CONSOLIDATION
# ============================================================================

def test_job_status(orchestrator, company_data):
    summary = _run(orchestrator, company_data, [JobType.LEGAL_RESEARCH], max_iterations=2)

    status = orchestrator.get_job_status(summary[0]["job_id"])

    assert status["success"]
    assert status["status"]["job_status"] == "completed"
    assert status["status"]["completed_iterations"] == 2
    assert status["status"]["overall_progress"] == 100
    assert status["status"]["consolidation_status"] == "completed"
    assert status["status"]["consolidation_data"]["overall_risk_level"] == "Critical"
    assert orchestrator.get_job_status("missing-job")["success"] is False


def test_retry_creates_new_job(orchestrator, company_data):
    failed = _run(orchestrator, {"Directors": {"data": []}}, [JobType.NEGATIVE_NEWS])[0]
    completed = _run(orchestrator, company_data, [JobType.LEGAL_RESEARCH])[0]

    retried = orchestrator.retry_job(failed["job_id"])

    assert failed["status"] == "failed"
    assert retried["success"]
    assert retried["job_id"] != failed["job_id"]
    assert orchestrator.get_job_status(retried["job_id"])["status"]["job_status"] == "pending"
    assert orchestrator.get_job_status(failed["job_id"])["status"]["job_status"] == "failed"
    assert orchestrator.retry_job(completed["job_id"])["success"] is False


def test_invalid_request_is_rejected(orchestrator):
    result = orchestrator.start_research_job({"request_id": REQUEST_ID, "job_type": "astrology"})

    assert result == {"success": False, "job_id": None, "message": result["message"]}
    assert result["message"].startswith("Invalid research request")


def test_consolidate_request(orchestrator, session_factory, company_data):
    _run(orchestrator, company_data, CORE_JOB_TYPES[:2])

    first = orchestrator.consolidate_request(REQUEST_ID)
    second = orchestrator.consolidate_request(REQUEST_ID)

    assert first["success"]
    assert first["consolidated"]["fingerprint"] == second["consolidated"]["fingerprint"]
    assert len(first["consolidated"]["job_ids"]) == 2
    with get_db(session_factory) as db:
        latest = ConsolidationRepository.get_latest(db, REQUEST_ID)
        assert latest.fingerprint == first["consolidated"]["fingerprint"]


def test_unknown_job_type_is_rejected(orchestrator, company_data):
    with pytest.raises(InvalidResearchRequestError):
        _run(orchestrator, company_data, ["astrology"])


def test_one_job_raising_does_not_abort_request(orchestrator, session_factory, company_data, monkeypatch):
    run = orchestrator.state_machine.run

    async def claimed_elsewhere(job_id):
        with get_db(session_factory) as db:
            job = ResearchJobRepository.get_or_raise(db, job_id)
            if job.job_type == JobType.LEGAL_RESEARCH.value:
                ResearchJobRepository.mark_running(db, job_id)
        return await run(job_id)

    monkeypatch.setattr(orchestrator.state_machine, "run", claimed_elsewhere)

    summary = _run(orchestrator, company_data, CORE_JOB_TYPES)

    by_type = {item["job_type"]: item for item in summary}
    assert len(summary) == 4
    assert by_type[JobType.LEGAL_RESEARCH.value]["status"] == "error"
    assert by_type[JobType.LEGAL_RESEARCH.value]["error"].startswith("InvalidTransitionError")
    assert [item["status"] for item in summary if item["job_type"] != JobType.LEGAL_RESEARCH.value] == \
        ["completed"] * 3


def test_rejected_job_is_reported(orchestrator, company_data):
    summary = _run(orchestrator, company_data, [JobType.LEGAL_RESEARCH], max_iterations=0)

    assert summary[0]["status"] == "rejected"
    assert summary[0]["job_id"] is None
    assert summary[0]["error"].startswith("Invalid research request")


def test_sweep_recovers_abandoned_claim(orchestrator, assembler, session_factory, company_data):
    _run(orchestrator, company_data, CORE_JOB_TYPES)
    with get_db(session_factory) as db:
        task = OutboxRepository.claim_pending(db)[0]
        task.updated_at = datetime.utcnow() - timedelta(hours=1)
        db.commit()

    worker = ReportOutboxWorker(assembler, session_factory, claim_timeout=60)
    assert asyncio.run(worker.run_once()).claimed == 0

    worker.sweep()
    result = asyncio.run(worker.run_once())

    assert result.generated == [REQUEST_ID]
    with get_db(session_factory) as db:
        assert OutboxRepository.get_by_request(db, REQUEST_ID).status == "done"
