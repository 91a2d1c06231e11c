"""
Iteration state machine tests.

Tests cover:
  1. Sequential iterations with monotonic stored progress
  2. Consolidation and the JSONL execution log
  3. Missing company context fails the job
  4. A failing iteration fails the job without touching earlier iterations
  5. Persistence fallback to the reduced write
  6. Lifecycle guards
  7. Store errors outside the persistence writes never leave a job running
"""

import asyncio
import json
from pathlib import Path

import pytest
from sqlalchemy.exc import OperationalError

from diligence.core import audit as audit_actions
from diligence.core.exceptions import InvalidTransitionError, PersistenceError
from diligence.core.state_machine import IterationStateMachine, merge_findings_payload, prior_finding_titles
from diligence.core.state_manager import JobStatus, can_transition, is_terminal
from diligence.core.workflow import ResearchOrchestrator
from diligence.database.connection import get_db
from diligence.database.repository import (
    AuditRepository,
    FindingRepository,
    IterationRepository,
    ResearchJobRepository,
)


class SpyPipeline:
    """Delegates to a real pipeline, recording stored progress before each iteration."""

    def __init__(self, pipeline, session_factory, fail_on=None):
        self.pipeline = pipeline
        self.session_factory = session_factory
        self.fail_on = fail_on
        self.progress_seen = []
        self.prior_findings = []

    async def run(self, context, job_type, iteration_number, max_iterations, **kwargs):
        with get_db(self.session_factory) as db:
            job = ResearchJobRepository.get_or_raise(db, kwargs["error_context"].job_id)
            self.progress_seen.append(job.progress)
        self.prior_findings.append(list(kwargs.get("prior_findings") or []))
        if iteration_number == self.fail_on:
            raise RuntimeError(f"extraction bug in iteration {iteration_number}")
        return await self.pipeline.run(context, job_type, iteration_number, max_iterations, **kwargs)


def _orchestrator(session_factory, pipeline, log_dir):
    return ResearchOrchestrator(session_factory, pipeline=pipeline, iteration_delay=0, log_dir=log_dir)


def _start(orchestrator, company_data, **params):
    request = {"request_id": "req-1", "job_type": "legal_research", "company_data": company_data}
    request.update(params)
    started = orchestrator.start_research_job(request)
    assert started["success"], started["message"]
    return started["job_id"]


# ============================================================================
# HAPPY PATH
# ============================================================================

def test_iterations_run_in_sequence(session_factory, company_data, make_pipeline, log_dir):
    spy = SpyPipeline(make_pipeline(), session_factory)
    orchestrator = _orchestrator(session_factory, spy, log_dir)
    job_id = _start(orchestrator, company_data, max_iterations=3)

    result = asyncio.run(orchestrator.process_job(job_id))

    assert result["status"] == "completed"
    assert result["progress"] == 100
    assert result["iterations"] == 3
    assert spy.progress_seen == [0, 33, 67]
    assert spy.prior_findings[0] == []
    assert spy.prior_findings[1][0] == "ED money laundering case against Acme Infra Ltd"

    with get_db(session_factory) as db:
        job = ResearchJobRepository.get_or_raise(db, job_id)
        iterations = IterationRepository.get_by_job(db, job_id)
        assert job.status == "completed"
        assert job.progress == 100
        assert job.current_iteration == 3
        assert [it.iteration_number for it in iterations] == [1, 2, 3]
        assert all(it.status == "completed" for it in iterations)
        assert iterations[0].search_depth == "standard"
        assert iterations[1].search_depth == "exhaustive"
        assert len(job.findings["structured_findings"]) == 2
        assert len(FindingRepository.get_by_job(db, job_id)) == 6


def test_consolidation_and_execution_log(session_factory, company_data, make_pipeline, log_dir):
    orchestrator = _orchestrator(session_factory, make_pipeline(), log_dir)
    job_id = _start(orchestrator, company_data, max_iterations=2)

    asyncio.run(orchestrator.process_job(job_id))

    with get_db(session_factory) as db:
        job = ResearchJobRepository.get_or_raise(db, job_id)
        assert job.consolidation_required
        assert job.consolidated_findings["request_id"] == "req-1"
        assert job.risk_assessment["overall_risk_level"] == "Critical"

    log_file = Path(log_dir) / f"{job_id}.jsonl"
    events = [json.loads(line) for line in log_file.read_text(encoding="utf-8").splitlines()]
    event_types = [event.get("event_type") for event in events]
    assert "job_started" in event_types
    assert event_types.count("iteration_completed") == 2
    assert "stage_completed" in event_types
    assert event_types[-1] == "job_completed"


def test_single_iteration_skips_consolidation(session_factory, company_data, make_pipeline, log_dir):
    orchestrator = _orchestrator(session_factory, make_pipeline(), log_dir)
    job_id = _start(orchestrator, company_data, iteration_strategy="single", max_iterations=4)

    result = asyncio.run(orchestrator.process_job(job_id))

    assert result["iterations"] == 1
    with get_db(session_factory) as db:
        job = ResearchJobRepository.get_or_raise(db, job_id)
        assert not job.consolidation_required
        assert job.consolidated_findings is None


# ============================================================================
# FAILURES
# ============================================================================

def test_missing_context_fails_job(session_factory, make_pipeline, log_dir):
    orchestrator = _orchestrator(session_factory, make_pipeline(), log_dir)
    job_id = _start(orchestrator, {"Directors": {"data": []}})

    result = asyncio.run(orchestrator.process_job(job_id))

    assert result["status"] == "failed"
    assert "Company name missing" in result["error"]
    with get_db(session_factory) as db:
        job = ResearchJobRepository.get_or_raise(db, job_id)
        failures = AuditRepository.list_by_action(db, audit_actions.RESEARCH_JOB_FAILED)
        assert job.status == "failed"
        assert IterationRepository.get_by_job(db, job_id) == []
        assert [entry.job_id for entry in failures] == [job_id]


def test_failed_iteration_fails_job(session_factory, company_data, make_pipeline, log_dir):
    spy = SpyPipeline(make_pipeline(), session_factory, fail_on=2)
    orchestrator = _orchestrator(session_factory, spy, log_dir)
    job_id = _start(orchestrator, company_data, max_iterations=3)

    result = asyncio.run(orchestrator.process_job(job_id))

    assert result["status"] == "failed"
    assert "Iteration 2 failed" in result["error"]
    with get_db(session_factory) as db:
        job = ResearchJobRepository.get_or_raise(db, job_id)
        statuses = {it.iteration_number: it.status for it in IterationRepository.get_by_job(db, job_id)}
        assert job.status == "failed"
        assert job.progress == 33
        assert statuses == {1: "completed", 2: "failed"}

    status = orchestrator.get_job_status(job_id)["status"]
    assert status["completed_iterations"] == 1
    assert status["failed_iterations"] == 1


def test_collaborator_outage_still_completes(session_factory, company_data, make_pipeline, log_dir):
    from conftest import FakeResearchClient

    pipeline = make_pipeline(client=FakeResearchClient(failures=99))
    orchestrator = _orchestrator(session_factory, pipeline, log_dir)
    job_id = _start(orchestrator, company_data, max_iterations=1)

    result = asyncio.run(orchestrator.process_job(job_id))

    assert result["status"] == "completed"
    assert result["fallback_iterations"] == [1]
    with get_db(session_factory) as db:
        iteration = IterationRepository.get_by_number(db, job_id, 1)
        assert iteration.fallback_mode == "professional_response"
        assert AuditRepository.list_by_action(db, audit_actions.RESEARCH_FALLBACK_APPLIED)


# ============================================================================
# PERSISTENCE & GUARDS
# ============================================================================

def _write_error():
    raise OperationalError("UPDATE research_jobs", {}, Exception("database is locked"))


def test_persist_falls_back_to_reduced_write(session_factory, make_pipeline):
    machine = IterationStateMachine(session_factory, pipeline=make_pipeline(), iteration_delay=0)

    assert machine._persist("job-x", "iteration", _write_error, lambda: "reduced") == "reduced"
    with get_db(session_factory) as db:
        assert AuditRepository.list_by_action(db, audit_actions.PERSISTENCE_DEGRADED)


def test_persist_raises_when_both_writes_fail(session_factory, make_pipeline):
    machine = IterationStateMachine(session_factory, pipeline=make_pipeline(), iteration_delay=0)

    with pytest.raises(PersistenceError):
        machine._persist("job-x", "iteration", _write_error, _write_error)


def test_store_error_creating_iteration_fails_job(session_factory, company_data, make_pipeline, log_dir,
                                                 monkeypatch):
    create = IterationRepository.create
    calls = []

    def flaky_create(db, iteration_data):
        calls.append(iteration_data["iteration_number"])
        if len(calls) == 2:
            _write_error()
        return create(db, iteration_data)

    monkeypatch.setattr(IterationRepository, "create", staticmethod(flaky_create))
    orchestrator = _orchestrator(session_factory, make_pipeline(), log_dir)
    job_id = _start(orchestrator, company_data, max_iterations=3)

    result = asyncio.run(orchestrator.process_job(job_id))

    assert result["status"] == "failed"
    assert "database is locked" in result["error"]
    with get_db(session_factory) as db:
        job = ResearchJobRepository.get_or_raise(db, job_id)
        assert job.status == "failed"
        assert job.progress == 33
        assert [it.iteration_number for it in IterationRepository.get_by_job(db, job_id)] == [1]


def test_store_error_counting_findings_fails_job(session_factory, company_data, make_pipeline, log_dir,
                                                 monkeypatch):
    def broken_count(self, job_id):
        _write_error()

    monkeypatch.setattr(IterationStateMachine, "_findings_count", broken_count)
    orchestrator = _orchestrator(session_factory, make_pipeline(), log_dir)
    job_id = _start(orchestrator, company_data, max_iterations=2)

    result = asyncio.run(orchestrator.process_job(job_id))

    assert result["status"] == "failed"
    with get_db(session_factory) as db:
        assert ResearchJobRepository.get_or_raise(db, job_id).status == "failed"
        assert IterationRepository.get_by_number(db, job_id, 1).status == "failed"


def test_store_error_starting_job_leaves_it_pending(session_factory, company_data, make_pipeline, log_dir,
                                                    monkeypatch):
    def locked(db, job_id):
        _write_error()

    monkeypatch.setattr(ResearchJobRepository, "mark_running", staticmethod(locked))
    orchestrator = _orchestrator(session_factory, make_pipeline(), log_dir)
    job_id = _start(orchestrator, company_data)

    result = asyncio.run(orchestrator.process_job(job_id))

    assert result["status"] == "failed"
    with get_db(session_factory) as db:
        assert ResearchJobRepository.get_or_raise(db, job_id).status == "pending"
        assert IterationRepository.get_by_job(db, job_id) == []


def test_aborted_graph_marks_job_failed(session_factory, company_data, make_pipeline, log_dir, monkeypatch):
    def broken_log(self, state, outcome, progress):
        raise RuntimeError("log sink closed")

    monkeypatch.setattr(IterationStateMachine, "_log_iteration", broken_log)
    orchestrator = _orchestrator(session_factory, make_pipeline(), log_dir)
    job_id = _start(orchestrator, company_data, max_iterations=1)

    with pytest.raises(RuntimeError, match="log sink closed"):
        asyncio.run(orchestrator.process_job(job_id))

    with get_db(session_factory) as db:
        job = ResearchJobRepository.get_or_raise(db, job_id)
        assert job.status == "failed"
        assert "log sink closed" in job.error_message


def test_completed_job_cannot_run_again(session_factory, company_data, make_pipeline, log_dir):
    orchestrator = _orchestrator(session_factory, make_pipeline(), log_dir)
    job_id = _start(orchestrator, company_data, max_iterations=1)
    asyncio.run(orchestrator.process_job(job_id))

    with pytest.raises(InvalidTransitionError):
        asyncio.run(orchestrator.state_machine.run(job_id))


# ============================================================================
# PAYLOAD HELPERS
# ============================================================================

def test_merge_findings_payload_deduplicates():
    first = merge_findings_payload(None, [{"id": "a", "title": "A", "severity": "LOW"}], [])
    second = merge_findings_payload(first, [{"id": "a", "title": "A"}, {"id": "b", "title": "B",
                                                                        "severity": "CRITICAL"}], [])

    assert [item["id"] for item in second["structured_findings"]] == ["a", "b"]
    assert prior_finding_titles(second) == ["B", "A"]
    assert prior_finding_titles(None) == []


@pytest.mark.parametrize("current,target,allowed", [
    (JobStatus.PENDING, JobStatus.RUNNING, True),
    (JobStatus.RUNNING, JobStatus.COMPLETED, True),
    (JobStatus.RUNNING, JobStatus.FAILED, True),
    (JobStatus.PENDING, JobStatus.COMPLETED, False),
    (JobStatus.FAILED, JobStatus.RUNNING, False),
    (JobStatus.COMPLETED, JobStatus.PENDING, False),
])
def test_status_transitions(current, target, allowed):
    assert can_transition(current, target) is allowed
    assert is_terminal(target) is (target in (JobStatus.COMPLETED, JobStatus.FAILED))
