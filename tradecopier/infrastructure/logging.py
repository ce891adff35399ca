"""
Structured logging configuration.

Provides:
- JSON logging for production (easy to aggregate)
- Text logging for development (human readable)
- Clean one-line console output for operators tailing the relay
- Context injection (group, slave_id) for tracing
"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any

import structlog
from structlog.types import EventDict, Processor
from structlog import DropEvent


# Per-request chatter hidden in clean mode
NOISE_EVENTS = [
    "Poll served",
    "Record persisted",
    "Retention pass",
    "Group record persisted",
    "Slave registry persisted",
]


def filter_noise(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Filter out noise events."""
    if method_name == "debug":
        raise DropEvent

    event = event_dict.get("event", "")
    for noise in NOISE_EVENTS:
        if noise in event:
            raise DropEvent
    return event_dict


def add_timestamp(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Add ISO timestamp to log entry."""
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    return event_dict


def add_log_level(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Add log level to event dict."""
    event_dict["level"] = method_name.upper()
    return event_dict


def censor_secrets(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Remove sensitive data from logs."""
    sensitive_keys = {
        "master_key", "admin_key", "api_key", "password", "token", "secret"
    }

    def _censor(obj: Any) -> Any:
        if isinstance(obj, dict):
            return {
                k: "[REDACTED]" if any(s in k.lower() for s in sensitive_keys) else _censor(v)
                for k, v in obj.items()
            }
        elif isinstance(obj, list):
            return [_censor(item) for item in obj]
        return obj

    return _censor(event_dict)


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """
    Configure structured logging.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Output format ("json", "text", or "clean")
    """
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_timestamp,
        add_log_level,
        censor_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if log_format == "json":
        processors = shared_processors + [
            structlog.processors.JSONRenderer()
        ]
    elif log_format == "clean":
        processors = shared_processors + [
            filter_noise,
            CleanConsoleRenderer()
        ]
    else:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True)
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(log_level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=logging.getLevelName(log_level.upper()),
    )

    # Access logs duplicate our own request logging
    for noisy_logger in ["uvicorn.access", "httpx", "httpcore"]:
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)


class CleanConsoleRenderer:
    """
    Compact console renderer for operators.

    Turns relay log events into short emoji-coded one-liners.
    """

    EMOJIS = {
        "startup": "🚀",
        "shutdown": "🛑",
        "push": "📥",
        "duplicate": "♻️",
        "ack": "✅",
        "ack_error": "⚠️",
        "gc": "🧹",
        "error": "❌",
    }

    def __call__(
        self,
        logger: logging.Logger,
        method_name: str,
        event_dict: EventDict,
    ) -> str:
        level = event_dict.get("level", "INFO").upper()
        event = event_dict.get("event", "")
        group = event_dict.get("group", "")

        if "Event accepted" in event:
            emoji = self.EMOJIS["push"]
            message = (
                f"[{group}] #{event_dict.get('event_id')} "
                f"{event_dict.get('type', '')} {event_dict.get('symbol', '')} "
                f"({event_dict.get('position_key', '')})"
            )
        elif "Duplicate push" in event:
            emoji = self.EMOJIS["duplicate"]
            message = f"[{group}] duplicate push: {event_dict.get('reason', '')}"
        elif "Ack recorded" in event:
            status = event_dict.get("status", "")
            emoji = self.EMOJIS["ack_error"] if status == "ERR" else self.EMOJIS["ack"]
            message = (
                f"[{group}] {event_dict.get('slave_id', '')} acked "
                f"#{event_dict.get('event_id')} {status}"
            )
            if event_dict.get("err"):
                message += f" ({event_dict['err']})"
        elif "Events collected" in event or "Events evicted" in event:
            emoji = self.EMOJIS["gc"]
            message = f"[{group}] {event}: {event_dict.get('count', 0)}"
        elif "starting" in event:
            emoji = self.EMOJIS["startup"]
            message = event
        elif "shutting down" in event:
            emoji = self.EMOJIS["shutdown"]
            message = event
        elif level == "ERROR":
            emoji = self.EMOJIS["error"]
            message = f"Error: {event_dict.get('error', event)}"
        else:
            emoji = "📝" if level == "INFO" else "⚠️"
            message = event

        time_str = datetime.now().strftime("%H:%M:%S")
        return f"\033[90m[{time_str}]\033[0m {emoji} {message}"


def get_logger(name: str) -> structlog.BoundLogger:
    """
    Get a logger instance with the given name.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Bound logger instance
    """
    return structlog.get_logger(name)


class LogContext:
    """Context manager for adding temporary context to logs."""

    def __init__(self, **context: Any):
        self.context = context
        self._token = None

    def __enter__(self) -> "LogContext":
        self._token = structlog.contextvars.bind_contextvars(**self.context)
        return self

    def __exit__(self, *args: Any) -> None:
        if self._token:
            structlog.contextvars.unbind_contextvars(*self.context.keys())


def clear_context() -> None:
    """Clear all context variables."""
    structlog.contextvars.clear_contextvars()
