"""
Structured Logging Utilities
=============================

Logging setup shared by the CLI, the consume loop and the background threads.

- setup_structured_logging: one root handler, JSON (python-json-logger) or
  human-readable lines
- trace_context: scope a trace_id to the processing of one sample or command
- bind_agent_uuid: stamp every record with the agent this process serves
- get_component_logger: LoggerAdapter tagging records with their component

Call sites pass structured fields directly:

    logger.info("Sample acked", extra={"event": "sample_acked", "message_id": 7})
"""

import logging
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Iterable, Optional

from pythonjsonlogger import jsonlogger

# Libraries that log every packet/request at INFO or DEBUG
NOISY_LOGGERS = ("paho", "urllib3")

_trace_id: ContextVar[Optional[str]] = ContextVar("trace_id", default=None)
_agent_uuid: Optional[str] = None


def get_trace_id() -> Optional[str]:
    """Trace ID of the current context, or None outside of trace_context."""
    return _trace_id.get()


def generate_trace_id(prefix: str = "trace") -> str:
    """Return ``{prefix}-{8 hex chars}``."""
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


@contextmanager
def trace_context(trace_id: Optional[str] = None):
    """
    Scope a trace_id to a block; every record logged inside carries it.

    Args:
        trace_id: ID to use. Generated when None.

    Usage:
        with trace_context(f"sample-{sample.uuid}"):
            handler(sample)
    """
    token = _trace_id.set(trace_id or generate_trace_id())
    try:
        yield _trace_id.get()
    finally:
        _trace_id.reset(token)


def bind_agent_uuid(agent_uuid: Optional[str]) -> None:
    """Attach agent_uuid to every record logged from now on (None unbinds)."""
    global _agent_uuid
    _agent_uuid = agent_uuid


class PipelineContextFilter(logging.Filter):
    """Copies trace_id and agent_uuid onto records that do not set them."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "trace_id", None) is None:
            record.trace_id = get_trace_id()
        if getattr(record, "agent_uuid", None) is None:
            record.agent_uuid = _agent_uuid
        return True


class PipelineJsonFormatter(jsonlogger.JsonFormatter):
    """JSON lines with ``level``/``logger`` keys; unset context fields dropped."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        log_record["level"] = log_record.pop("levelname", record.levelname)
        log_record["logger"] = log_record.pop("name", record.name)
        for key in ("trace_id", "agent_uuid"):
            if log_record.get(key) is None:
                log_record.pop(key, None)


class ConsoleFormatter(logging.Formatter):
    """``time | LEVEL | component | event | message [trace]`` for terminals."""

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s | %(levelname)-8s | %(component)-12s | %(event)-26s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        if not hasattr(record, "component"):
            record.component = record.name.rsplit(".", 1)[-1]
        if not hasattr(record, "event"):
            record.event = "-"

        line = super().format(record)
        trace_id = getattr(record, "trace_id", None)
        return f"{line} [{trace_id}]" if trace_id else line


class _FlushingStreamHandler(logging.StreamHandler):
    def emit(self, record):
        super().emit(record)
        self.flush()


def setup_structured_logging(
    level: str = "INFO",
    json_format: bool = True,
    indent: Optional[int] = None,
    output_file: Optional[str] = None,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    quiet_loggers: Iterable[str] = NOISY_LOGGERS,
) -> None:
    """
    Replace the root logger's handlers with a single structured handler.

    Args:
        level: Root level name (DEBUG, INFO, WARNING, ERROR)
        json_format: JSON lines when True, ConsoleFormatter otherwise
        indent: JSON indent (None = one record per line)
        output_file: Rotating log file instead of stdout
        max_bytes: Rotation size of output_file
        backup_count: Rotated files kept
        quiet_loggers: Logger names capped at WARNING

    Usage:
        setup_structured_logging(level="DEBUG", json_format=False)
        setup_structured_logging(output_file="logs/agent.log")
    """
    if json_format:
        formatter: logging.Formatter = PipelineJsonFormatter(
            "%(timestamp)s %(level)s %(logger)s %(message)s",
            timestamp=True,
            json_indent=indent,
        )
    else:
        formatter = ConsoleFormatter()

    if output_file:
        path = Path(output_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handler: logging.Handler = RotatingFileHandler(
            filename=str(path),
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
    else:
        handler = _FlushingStreamHandler(sys.stdout)

    handler.setFormatter(formatter)
    handler.addFilter(PipelineContextFilter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper()))

    for name in quiet_loggers:
        logging.getLogger(name).setLevel(logging.WARNING)


class ComponentLogger(logging.LoggerAdapter):
    """
    Adds ``component`` to every record; call-site ``extra`` wins on conflicts.

    Usage:
        >>> logger = get_component_logger(__name__, "consumer")
        >>> logger.info("Sample acked", extra={"event": "sample_acked"})
    """

    def process(self, msg, kwargs):
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


def get_component_logger(name: str, component: str) -> ComponentLogger:
    return ComponentLogger(logging.getLogger(name), {"component": component})


__all__ = [
    "setup_structured_logging",
    "trace_context",
    "get_trace_id",
    "generate_trace_id",
    "bind_agent_uuid",
    "PipelineContextFilter",
    "ComponentLogger",
    "get_component_logger",
]
