"""
Structured logging configuration for the 24 game server.

Provides:
- JSONFormatter for production (machine-readable logs)
- Human-readable formatter for development
- Contextual logging (connection_id, room_code, player_id)
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional

# Context variables for connection-scoped data
connection_id_var: ContextVar[Optional[str]] = ContextVar("connection_id", default=None)
room_code_var: ContextVar[Optional[str]] = ContextVar("room_code", default=None)
player_id_var: ContextVar[Optional[str]] = ContextVar("player_id", default=None)

_CONTEXT_FIELDS = ("connection_id", "room_code", "player_id", "round_number")


def _context(record: logging.LogRecord) -> dict:
    """Collect context from context variables, then from record extras."""
    ctx = {
        "connection_id": connection_id_var.get(),
        "room_code": room_code_var.get(),
        "player_id": player_id_var.get(),
    }
    for name in _CONTEXT_FIELDS:
        value = getattr(record, name, None)
        if value is not None:
            ctx[name] = value
    return {k: v for k, v in ctx.items() if v is not None}


class JSONFormatter(logging.Formatter):
    """
    Format logs as JSON for production log aggregation.

    Output format is compatible with common log aggregation systems
    (ELK, CloudWatch, Datadog, etc.).
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        log_data.update(_context(record))

        # Add source location for errors
        if record.levelno >= logging.ERROR:
            log_data["source"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class DevelopmentFormatter(logging.Formatter):
    """
    Human-readable formatter for development.

    Includes colors and context for easy debugging.
    """

    COLORS = {
        "DEBUG": "\033[36m",     # Cyan
        "INFO": "\033[32m",      # Green
        "WARNING": "\033[33m",   # Yellow
        "ERROR": "\033[31m",     # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        reset = self.RESET if color else ""

        timestamp = datetime.now().strftime("%H:%M:%S.%f")[:-3]

        ctx = _context(record)
        context_parts = []
        if "connection_id" in ctx:
            context_parts.append(f"conn={ctx['connection_id'][:8]}")
        if "room_code" in ctx:
            context_parts.append(f"room={ctx['room_code']}")
        if "player_id" in ctx:
            context_parts.append(f"player={ctx['player_id'][:8]}")
        if "round_number" in ctx:
            context_parts.append(f"round={ctx['round_number']}")
        context = f" [{', '.join(context_parts)}]" if context_parts else ""

        output = f"{timestamp} {color}{record.levelname:8}{reset} {record.name}{context} - {record.getMessage()}"

        if record.exc_info:
            output += "\n" + self.formatException(record.exc_info)

        return output


def setup_logging(
    level: str = "INFO",
    environment: str = "development",
) -> None:
    """
    Configure application logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        environment: Environment name (production uses JSON, else human-readable).
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    if environment == "production":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(DevelopmentFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(log_level)

    # Reduce noise from libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.error").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        f"Logging configured: level={level}, environment={environment}"
    )


class ContextLogger(logging.LoggerAdapter):
    """
    Logger adapter that automatically includes context.

    Usage:
        logger = ContextLogger(logging.getLogger(__name__))
        logger.with_context(room_code="ABC123", player_id="p1").info("Player joined")
    """

    def __init__(self, logger: logging.Logger, extra: Optional[dict] = None):
        super().__init__(logger, extra or {})

    def with_context(self, **kwargs) -> "ContextLogger":
        """Create a new logger with additional context."""
        return ContextLogger(self.logger, {**self.extra, **kwargs})

    def process(self, msg: str, kwargs: dict) -> tuple[str, dict]:
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


def get_logger(name: str) -> ContextLogger:
    """
    Get a context-aware logger.

    Args:
        name: Logger name (typically __name__).

    Returns:
        ContextLogger instance.
    """
    return ContextLogger(logging.getLogger(name))
