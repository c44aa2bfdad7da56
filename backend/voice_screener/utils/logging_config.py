"""
Structured Logging Configuration

Provides JSON-formatted logging for production environments with rich contextual metadata.
"""

import logging
import json
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from logging import LogRecord

# Attributes every LogRecord carries; anything else came in through extra=
_RESERVED_ATTRS = frozenset({
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs", "message", "pathname",
    "process", "processName", "relativeCreated", "thread", "threadName",
    "exc_info", "exc_text", "stack_info", "extra_fields", "taskName"
})


class JSONFormatter(logging.Formatter):
    """
    Custom JSON formatter for structured logging.

    Outputs logs in JSON format with timestamp, level, logger name, message, and extra fields.
    """

    def format(self, record: LogRecord) -> str:
        """
        Format a log record as JSON.

        Args:
            record: The log record to format

        Returns:
            JSON-formatted log string
        """
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_fields"):
            log_data.update(record.extra_fields)

        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS:
                continue
            try:
                json.dumps({key: value})
                log_data[key] = value
            except (TypeError, ValueError):
                log_data[key] = str(value)

        return json.dumps(log_data)


class ContextFilter(logging.Filter):
    """
    Filter that adds contextual information (e.g. session_id) to log records.
    """

    def __init__(self, **context):
        super().__init__()
        self.context = context

    def filter(self, record: LogRecord) -> bool:
        if not hasattr(record, "extra_fields"):
            record.extra_fields = {}

        record.extra_fields.update(self.context)
        return True


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None,
    protocol_debug: bool = False
) -> None:
    """
    Configure structured logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON formatting (default True)
        log_file: Optional file path to write logs to
        protocol_debug: Keep aiortc/aioice chatter at DEBUG instead of WARNING

    Example:
        setup_logging(level="DEBUG", json_format=False, log_file="client.log")
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, level.upper()))

    if json_format:
        console_handler.setFormatter(JSONFormatter())
    else:
        console_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
            )
        )

    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(getattr(logging, level.upper()))
        file_handler.setFormatter(JSONFormatter())
        root_logger.addHandler(file_handler)

    logging.getLogger("uvicorn").setLevel(logging.INFO)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    transport_level = logging.DEBUG if protocol_debug else logging.WARNING
    for name in ("aiortc", "aioice", "libav"):
        logging.getLogger(name).setLevel(transport_level)


def get_logger(name: str, **context) -> logging.Logger:
    """
    Get a logger with optional context.

    Example:
        logger = get_logger(__name__, session_id="abc123")
    """
    logger = logging.getLogger(name)

    if context:
        logger.addFilter(ContextFilter(**context))

    return logger


def log_llm_call(
    logger: logging.Logger,
    agent_name: str,
    latency_ms: Optional[float] = None,
    model: Optional[str] = None,
    **extra
) -> None:
    """
    Log an LLM API call with standardized fields.

    Example:
        log_llm_call(logger, agent_name="transcript_analyzer", latency_ms=1250.5, model="gemini-2.5-flash")
    """
    log_data = {
        "event": "llm_call",
        "agent_name": agent_name,
    }

    if latency_ms is not None:
        log_data["latency_ms"] = latency_ms
    if model is not None:
        log_data["model"] = model

    log_data.update(extra)

    logger.info("LLM call completed", extra=log_data)


def log_session_event(
    logger: logging.Logger,
    session_id: str,
    event_type: str,
    **extra
) -> None:
    """
    Log session-level events.

    Args:
        logger: The logger instance
        session_id: Session identifier
        event_type: Type of event (started, live, ended, upload_failed, ...)
        **extra: Additional fields

    Example:
        log_session_event(logger, session_id="abc123", event_type="ended", reason="playback_stopped")
    """
    log_data = {
        "event": "session_event",
        "session_id": session_id,
        "event_type": event_type,
    }

    log_data.update(extra)

    logger.info(f"Session event: {event_type}", extra=log_data)


def log_cost_summary(
    logger: logging.Logger,
    session_id: str,
    summary: Dict[str, Any]
) -> None:
    """
    Log the advisory cost summary emitted at teardown.

    Args:
        logger: The logger instance
        session_id: Session identifier
        summary: CostSummary.model_dump() output
    """
    log_data = {
        "event": "cost_summary",
        "session_id": session_id,
        "total_cost_usd": summary.get("total_cost_usd"),
        "cost_summary": summary,
    }

    logger.info(
        f"Session {session_id} estimated cost ${summary.get('total_cost_usd', 0):.6f} "
        f"({summary.get('model')}, {summary.get('speech_duration_seconds', 0)}s speech)",
        extra=log_data
    )
