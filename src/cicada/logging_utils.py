"""
Logging setup and audit sinks for CIcaDA

Diagnostic messages use ordinary module loggers whose level follows the
configured verbosity. Key operations and security events are written through
an ``AuditSink`` that is handed to the storage, backup and rotation components.
"""

import logging
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

AUDIT_LOGGER_NAME = "cicada.audit"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
AUDIT_FORMAT = "%(message)s"

_VERBOSITY_LEVELS = {
    0: logging.ERROR,
    1: logging.WARNING,
    2: logging.INFO,
}


def verbosity_to_level(verbosity: int) -> int:
    """Map verbosity 0..3 to a logging level (3 and above is DEBUG)"""
    if verbosity < 0:
        return logging.ERROR
    return _VERBOSITY_LEVELS.get(verbosity, logging.DEBUG)


def _replace_handler(logger: logging.Logger, stream, fmt: str, datefmt: Optional[str] = None) -> None:
    for handler in list(logger.handlers):
        if getattr(handler, "_cicada_handler", False):
            logger.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(logging.Formatter(fmt, datefmt=datefmt))
    handler._cicada_handler = True  # type: ignore[attr-defined]
    logger.addHandler(handler)


def configure_logging(verbosity: int = 2, stream=None) -> logging.Logger:
    """
    Configure the ``cicada`` logger hierarchy

    Diagnostics follow ``verbosity``. The ``cicada.audit`` logger gets its own
    handler at INFO and stops propagating, so the audit trail is written at
    every verbosity. Calling this again replaces the handlers it added.

    Args:
        verbosity: 0 errors only, 1 warnings, 2 info (default), 3 debug
        stream: Output stream (defaults to the current stderr)

    Returns:
        logging.Logger: The configured package logger
    """
    logger = logging.getLogger("cicada")
    logger.setLevel(verbosity_to_level(verbosity))
    _replace_handler(logger, stream, LOG_FORMAT, "%Y-%m-%d %H:%M:%S")

    audit_logger = logging.getLogger(AUDIT_LOGGER_NAME)
    audit_logger.setLevel(logging.INFO)
    audit_logger.propagate = False
    _replace_handler(audit_logger, stream, AUDIT_FORMAT)
    return logger


def _timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


@dataclass
class AuditEvent:
    """One audit trail entry"""
    category: str
    operation: str
    details: str
    timestamp: str = field(default_factory=_timestamp)
    fields: Dict[str, Any] = field(default_factory=dict)

    def format(self) -> str:
        if self.category == "SECURITY":
            return f"[SECURITY][{self.timestamp}] {self.details}"
        return f"[KEY_OP][{self.timestamp}] {self.operation}: {self.details}"


class AuditSink:
    """Destination for key-operation and security events"""

    def key_operation(self, operation: str, details: str, **fields: Any) -> None:
        self.emit(AuditEvent("KEY_OP", operation, details, fields=fields))

    def security(self, details: str, **fields: Any) -> None:
        self.emit(AuditEvent("SECURITY", "SECURITY", details, fields=fields))

    def emit(self, event: AuditEvent) -> None:
        raise NotImplementedError


class NullAuditSink(AuditSink):
    """Discards every event"""

    def emit(self, event: AuditEvent) -> None:
        pass


class MemoryAuditSink(AuditSink):
    """Keeps events in memory, mostly for tests and reports"""

    def __init__(self):
        self.events: List[AuditEvent] = []

    def emit(self, event: AuditEvent) -> None:
        self.events.append(event)

    def operations(self) -> List[str]:
        return [e.operation for e in self.events]


class LoggingAuditSink(AuditSink):
    """
    Writes events to the ``cicada.audit`` logger

    Security events are logged at WARNING, key operations at INFO. Where the
    records go is decided by ``configure_logging``.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(AUDIT_LOGGER_NAME)

    def emit(self, event: AuditEvent) -> None:
        level = logging.WARNING if event.category == "SECURITY" else logging.INFO
        self.logger.log(level, event.format())


_default_sink: Optional[AuditSink] = None


def get_default_audit_sink() -> AuditSink:
    """Get the process-wide logging audit sink"""
    global _default_sink
    if _default_sink is None:
        _default_sink = LoggingAuditSink()
    return _default_sink
