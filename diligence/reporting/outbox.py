"""
Report Outbox Worker

Consumes ``report_outbox`` tasks written in the same transaction as the
job completion that made a request ready. Job completion never waits on
report generation; this worker picks the task up afterwards.

- run_once(): claim pending tasks, generate, mark done or failed
- run_forever(): poll run_once() every OUTBOX_POLL_INTERVAL seconds
- sweep(): release claims older than OUTBOX_CLAIM_TIMEOUT, then enqueue any
  ready request that has neither a report nor a task
"""

import asyncio
from dataclasses import dataclass, field
from typing import List, Optional

from config.settings import settings
from config.logging_config import get_logger
from diligence.database.connection import SessionFactory, get_db
from diligence.database.repository import OutboxRepository, ResearchJobRepository
from diligence.reporting.assembler import ReportAssembler, ReportOutcome

logger = get_logger(__name__)


@dataclass
class OutboxRunResult:
    claimed: int = 0
    generated: List[str] = field(default_factory=list)
    already_existed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    def to_dict(self):
        return {
            "claimed": self.claimed,
            "generated": list(self.generated),
            "already_existed": list(self.already_existed),
            "failed": list(self.failed),
        }


class ReportOutboxWorker:
    """
    Example:
        >>> worker = ReportOutboxWorker(assembler, session_factory)
        >>> result = await worker.run_once()
        >>> result.generated
        ['req-1']
    """

    def __init__(
        self,
        assembler: Optional[ReportAssembler] = None,
        session_factory: Optional[SessionFactory] = None,
        batch_size: int = 10,
        max_attempts: Optional[int] = None,
        poll_interval: Optional[float] = None,
        claim_timeout: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.assembler = assembler or ReportAssembler(session_factory)
        self.batch_size = batch_size
        self.max_attempts = max_attempts or settings.OUTBOX_MAX_ATTEMPTS
        self.poll_interval = poll_interval or settings.OUTBOX_POLL_INTERVAL
        self.claim_timeout = claim_timeout or settings.OUTBOX_CLAIM_TIMEOUT
        self._stopped = asyncio.Event()

    async def run_once(self) -> OutboxRunResult:
        with get_db(self.session_factory) as db:
            tasks = [(task.id, task.request_id) for task in OutboxRepository.claim_pending(db, self.batch_size)]

        result = OutboxRunResult(claimed=len(tasks))
        for task_id, request_id in tasks:
            try:
                outcome: ReportOutcome = await self.assembler.generate(request_id)
            except Exception as e:
                with get_db(self.session_factory) as db:
                    status = OutboxRepository.mark_failed(db, task_id, f"{type(e).__name__}: {e}", self.max_attempts)
                logger.error(
                    "Report task failed",
                    extra={"task_id": task_id, "request_id": request_id, "status": status, "error": str(e)},
                )
                result.failed.append(request_id)
                continue

            if outcome.status == "not_ready":
                with get_db(self.session_factory) as db:
                    OutboxRepository.mark_failed(db, task_id, "Core research jobs not completed", self.max_attempts)
                result.failed.append(request_id)
                continue

            with get_db(self.session_factory) as db:
                OutboxRepository.mark_done(db, task_id)
            if outcome.created:
                result.generated.append(request_id)
            else:
                result.already_existed.append(request_id)

        if tasks:
            logger.info("Outbox batch processed", extra=result.to_dict())
        return result

    def sweep(self) -> List[str]:
        """
        Release stale claims, then enqueue ready requests that have no report
        and no task. Returns the enqueued ids.
        """
        enqueued = []
        with get_db(self.session_factory) as db:
            released = OutboxRepository.release_stale(db, self.claim_timeout, self.max_attempts)
            for request_id in ResearchJobRepository.requests_with_completed_jobs(db):
                if OutboxRepository.request_needs_report(db, request_id):
                    if OutboxRepository.enqueue(db, request_id, {"trigger": "sweep"}) is not None:
                        enqueued.append(request_id)
        if released:
            logger.warning("Outbox sweep released stale claims", extra={"requests": released})
        if enqueued:
            logger.info("Outbox sweep enqueued reports", extra={"requests": enqueued})
        return enqueued

    async def run_forever(self) -> None:
        """Poll until stop() is called."""
        logger.info("Outbox worker started", extra={"poll_interval": self.poll_interval})
        while not self._stopped.is_set():
            self.sweep()
            await self.run_once()
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                continue
        logger.info("Outbox worker stopped")

    def stop(self) -> None:
        self._stopped.set()


__all__ = ["ReportOutboxWorker", "OutboxRunResult"]
