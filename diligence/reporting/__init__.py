"""Reporting module: report assembly and outbox processing"""
from .assembler import ReportAssembler, ReportOutcome
from .outbox import ReportOutboxWorker

__all__ = ["ReportAssembler", "ReportOutcome", "ReportOutboxWorker"]
