"""
Logging System for the Due-Diligence Research Engine

Two layers:
1. Structlog for application logging (development console / production JSON)
2. JSONL execution logs, one file per research job, for replay and audit

Every module gets its application logger via ``get_logger(__name__)``.
The state machine opens an execution log per job with
``setup_execution_logging(job_id)`` and records iteration, research-call,
alert and scoring events through the ``log_*`` helpers below.
"""

import logging
import json
import sys
from pathlib import Path
from datetime import datetime
from typing import Any, Dict, Optional
from contextlib import contextmanager
import structlog

from config.settings import settings


# ============================================================================
# PART 1: STRUCTLOG CONFIGURATION (for application logging)
# ============================================================================

def configure_structlog():
    """
    Configure structlog for application logging.

    Development: Pretty console output with colors
    Production: JSON output for log aggregation

    This is called automatically on import.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    if settings.ENVIRONMENT == "development":
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(settings.LOG_LEVEL.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = None) -> structlog.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (typically __name__ of calling module)
              If None, returns root logger

    Returns:
        Configured structlog logger

    Example:
        >>> from config.logging_config import get_logger
        >>> logger = get_logger(__name__)
        >>> logger.info("Job started", job_id="...")
    """
    if name:
        return structlog.get_logger(name)
    return structlog.get_logger()


# ============================================================================
# PART 2: JSONL EXECUTION LOGGING (per-job replay trail)
# ============================================================================

class JSONLFormatter(logging.Formatter):
    """
    Format log records as JSON Lines (JSONL).

    Example Output:
    {"timestamp": "2026-01-07T01:23:45Z", "level": "INFO", "event_type": "iteration_completed", "data": {...}}
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
        }

        if record.getMessage():
            log_data["message"] = record.getMessage()

        if hasattr(record, 'run_id'):
            log_data['run_id'] = record.run_id
        if hasattr(record, 'event_type'):
            log_data['event_type'] = record.event_type
        if hasattr(record, 'event_data'):
            log_data['data'] = record.event_data

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


class ConsoleFormatter(logging.Formatter):
    """Human-readable formatter for console output."""

    COLORS = {
        'DEBUG': '\033[36m',
        'INFO': '\033[32m',
        'WARNING': '\033[33m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[35m',
        'RESET': '\033[0m'
    }

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.COLORS['RESET'])
        reset = self.COLORS['RESET']

        timestamp = datetime.utcnow().strftime('%H:%M:%S')
        level = f"{color}{record.levelname:8s}{reset}"
        message = record.getMessage()

        if hasattr(record, 'event_type'):
            message = f"[{record.event_type}] {message}"

        return f"{timestamp} {level} {message}"


def setup_execution_logging(
    run_id: str,
    log_dir: Optional[str] = None,
    console: bool = False,
    console_level: int = logging.INFO,
    file_level: int = logging.DEBUG
) -> logging.Logger:
    """
    Set up JSONL execution logging for one research job.

    The file handler writes ``<log_dir>/<run_id>.jsonl``; the console
    handler is optional because the structlog layer already prints
    application events.

    Args:
        run_id: Job identifier
        log_dir: Directory for log files (defaults to settings.LOG_DIR)
        console: Also echo events to stdout
        console_level: Minimum level for console
        file_level: Minimum level for file

    Returns:
        Configured logger for execution logging
    """
    log_path = Path(log_dir or settings.LOG_DIR)
    log_path.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(f"execution.{run_id}")
    logger.setLevel(logging.DEBUG)

    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()

    if console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(console_level)
        console_handler.setFormatter(ConsoleFormatter())
        logger.addHandler(console_handler)

    log_file = log_path / f"{run_id}.jsonl"
    file_handler = logging.FileHandler(log_file, mode='a', encoding='utf-8')
    file_handler.setLevel(file_level)
    file_handler.setFormatter(JSONLFormatter())
    logger.addHandler(file_handler)

    logger.propagate = False

    logger.debug(f"Execution log file: {log_file}")

    return logger


def close_execution_logging(logger: logging.Logger) -> None:
    """Flush and detach all handlers of an execution logger."""
    for handler in list(logger.handlers):
        handler.flush()
        handler.close()
        logger.removeHandler(handler)


def log_event(
    logger: logging.Logger,
    event_type: str,
    run_id: str,
    event_data: Dict[str, Any],
    level: int = logging.INFO
) -> None:
    """
    Log a structured execution event.

    Args:
        logger: Logger from setup_execution_logging()
        event_type: Event type (e.g., "iteration_completed")
        run_id: Job identifier
        event_data: Event-specific data
        level: Logging level
    """
    extra = {
        'event_type': event_type,
        'run_id': run_id,
        'event_data': event_data
    }

    message = f"{event_type}"
    if 'iteration' in event_data:
        message += f" (iteration {event_data['iteration']})"

    logger.log(level, message, extra=extra)


@contextmanager
def log_stage(logger: logging.Logger, stage_name: str, run_id: str):
    """
    Context manager for logging stage entry/exit with timing.

    Example:
        >>> with log_stage(exec_logger, "consolidation", job_id):
        ...     consolidate()
    """
    start_time = datetime.utcnow()

    log_event(logger, "stage_started", run_id, {
        "stage": stage_name,
        "start_time": start_time.isoformat() + "Z"
    })

    try:
        yield
    except Exception as e:
        duration = (datetime.utcnow() - start_time).total_seconds()
        log_event(logger, "stage_failed", run_id, {
            "stage": stage_name,
            "duration_seconds": duration,
            "error": str(e),
            "error_type": type(e).__name__
        }, level=logging.ERROR)
        raise
    else:
        duration = (datetime.utcnow() - start_time).total_seconds()
        log_event(logger, "stage_completed", run_id, {
            "stage": stage_name,
            "duration_seconds": duration
        })


def log_research_call(
    logger: logging.Logger,
    run_id: str,
    iteration: int,
    search_depth: str,
    tokens_used: int,
    citations: Optional[int],
    fallback_mode: Optional[str],
    duration_seconds: float
) -> None:
    """Log one research-service round trip (or its fallback)."""
    log_event(logger, "research_called", run_id, {
        "iteration": iteration,
        "search_depth": search_depth,
        "tokens_used": tokens_used,
        "citations": citations,
        "fallback_mode": fallback_mode,
        "duration_seconds": round(duration_seconds, 3)
    }, level=logging.WARNING if fallback_mode else logging.INFO)


def log_alert_detection(
    logger: logging.Logger,
    run_id: str,
    iteration: int,
    alert_count: int,
    critical_count: int,
    ruleset_version: str
) -> None:
    """Log the outcome of one alert-detection pass."""
    log_event(logger, "alerts_detected", run_id, {
        "iteration": iteration,
        "alert_count": alert_count,
        "critical_count": critical_count,
        "ruleset_version": ruleset_version
    })


def log_iteration_completed(
    logger: logging.Logger,
    run_id: str,
    iteration: int,
    findings: int,
    confidence: float,
    data_quality: float,
    progress: int
) -> None:
    """Log iteration completion with its quality figures."""
    log_event(logger, "iteration_completed", run_id, {
        "iteration": iteration,
        "findings": findings,
        "confidence": round(confidence, 2),
        "data_quality": round(data_quality, 2),
        "progress": progress
    })


def log_risk_scored(
    logger: logging.Logger,
    run_id: str,
    risk_score: int,
    credit_recommendation: str,
    requires_immediate_attention: bool
) -> None:
    """Log a risk-scoring result."""
    log_event(logger, "risk_scored", run_id, {
        "risk_score": risk_score,
        "credit_recommendation": credit_recommendation,
        "requires_immediate_attention": requires_immediate_attention
    })


# ============================================================================
# INITIALIZATION
# ============================================================================

configure_structlog()

logger = get_logger(__name__)

logger.debug(
    "Logging system initialized",
    environment=settings.ENVIRONMENT,
    log_level=settings.LOG_LEVEL,
    features=["structlog", "jsonl_execution_logs"]
)


# ============================================================================
# PUBLIC API
# ============================================================================

__all__ = [
    "get_logger",
    "logger",
    "configure_structlog",
    "setup_execution_logging",
    "close_execution_logging",
    "log_event",
    "log_stage",
    "log_research_call",
    "log_alert_detection",
    "log_iteration_completed",
    "log_risk_scored",
    "JSONLFormatter",
    "ConsoleFormatter"
]
