"""
Store setup and outbox bookkeeping tests.
"""

from datetime import datetime, timedelta

from sqlalchemy import inspect

from diligence.database.connection import check_connection, drop_all_tables, get_db, init_db
from diligence.database.models import ReportOutbox
from diligence.database.repository import OutboxRepository


def _age_claim(db, task_id, minutes=10):
    db.query(ReportOutbox).filter(ReportOutbox.id == task_id).update({
        "updated_at": datetime.utcnow() - timedelta(minutes=minutes),
    })
    db.commit()


def test_schema_lifecycle(session_factory):
    engine = session_factory.kw["bind"]

    assert check_connection(session_factory)
    drop_all_tables(engine)
    assert inspect(engine).get_table_names() == []

    init_db(engine)
    tables = set(inspect(engine).get_table_names())
    assert {"research_jobs", "research_iterations", "research_reports", "report_outbox",
            "research_audit_log"} <= tables


def test_outbox_enqueue_is_deduplicated(session_factory):
    with get_db(session_factory) as db:
        first = OutboxRepository.enqueue(db, "req-9", {"trigger": "test"})
        second = OutboxRepository.enqueue(db, "req-9")

        assert first is not None
        assert second is None
        assert OutboxRepository.count_by_status(db) == {"pending": 1}
        assert OutboxRepository.claim_pending(db)[0].attempts == 1
        assert OutboxRepository.mark_failed(db, first.id, "boom", max_attempts=1) == "failed"


def test_stale_claims_are_released(session_factory):
    with get_db(session_factory) as db:
        task_id = OutboxRepository.enqueue(db, "req-7").id
        OutboxRepository.claim_pending(db)

        assert OutboxRepository.release_stale(db, 60, max_attempts=3) == []

        _age_claim(db, task_id)
        assert OutboxRepository.release_stale(db, 60, max_attempts=3) == ["req-7"]
        task = OutboxRepository.get_by_request(db, "req-7")
        assert task.status == "pending"
        assert task.last_error == "Claim expired"

        assert OutboxRepository.claim_pending(db)[0].attempts == 2
        _age_claim(db, task_id)
        assert OutboxRepository.release_stale(db, 60, max_attempts=2) == []
        assert OutboxRepository.get_by_request(db, "req-7").status == "failed"
