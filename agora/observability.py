"""Agora Observability Module.

Provides structured logging, security audit events, and operation metrics.

Usage:
    from agora.observability import logger, metrics

    logger.info("Frame appended", frame_id="abc123", session_id="s1")

    with metrics.measure("execute_ability"):
        ...

    print(metrics.get_summary())
"""

from __future__ import annotations

import json
import logging
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
import threading


# ============================================================================
# Structured Logger
# ============================================================================

class StructuredLogger:
    """JSON-structured logger for agora operations."""

    def __init__(self, name: str = "agora", level: int = logging.INFO):
        self._logger = logging.getLogger(name)
        self._logger.setLevel(level)
        self._context: Dict[str, Any] = {}

        # Add JSON handler if not already configured
        if not self._logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(StructuredFormatter())
            self._logger.addHandler(handler)

    def with_context(self, **kwargs) -> "StructuredLogger":
        """Create a new logger with additional context."""
        new_logger = StructuredLogger.__new__(StructuredLogger)
        new_logger._logger = self._logger
        new_logger._context = {**self._context, **kwargs}
        return new_logger

    def _log(self, level: int, message: str, **kwargs):
        extra = {
            "structured_data": {
                **self._context,
                **kwargs,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        }
        self._logger.log(level, message, extra=extra)

    def debug(self, message: str, **kwargs):
        self._log(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs):
        self._log(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs):
        self._log(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs):
        self._log(logging.ERROR, message, **kwargs)


class StructuredFormatter(logging.Formatter):
    """Format log records as JSON."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        if hasattr(record, "structured_data"):
            log_data.update(record.structured_data)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


# ============================================================================
# Security Audit
# ============================================================================

class AuditEvent(str, Enum):
    PERMISSION_ALLOW = "permission_allow"
    PERMISSION_DENY = "permission_deny"
    PERMISSION_PROMPT = "permission_prompt"
    RULE_CONSUMED = "rule_consumed"
    APPROVAL_GRANT = "approval_grant"
    APPROVAL_DENY = "approval_deny"
    APPROVAL_TIMEOUT = "approval_timeout"
    SELF_APPROVAL_BLOCKED = "self_approval_blocked"
    APPROVAL_OWNER_MISMATCH = "approval_owner_mismatch"
    APPROVAL_HASH_MISMATCH = "approval_hash_mismatch"
    DELEGATION_REJECTED = "delegation_rejected"
    DELEGATION_COMPLETED = "delegation_completed"


class AuditLog:
    """Security event log.

    Every event is emitted as a JSON log line on the ``agora.audit`` logger and,
    when a database is attached, persisted to ``audit_logs``. Persistence is
    best-effort: a failed insert is logged and never fails the caller.
    """

    def __init__(self, db=None):
        self.db = db
        self._logger = StructuredLogger("agora.audit")
        self._buffer: Optional[List[Dict[str, Any]]] = None

    def record(self, event: AuditEvent, **details: Any) -> Dict[str, Any]:
        entry = {
            "audit": True,
            "event": AuditEvent(event).value,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **details,
        }
        if self._buffer is not None:
            self._buffer.append(entry)

        level = logging.WARNING if event in _SECURITY_WARNINGS else logging.INFO
        self._logger._log(level, entry["event"], **details)

        if self.db is not None:
            try:
                self.db.log_audit(entry["event"], details)
            except Exception:
                logging.getLogger(__name__).exception("Failed to persist audit event %s", entry["event"])
        return entry

    @contextmanager
    def capture(self):
        """Collect emitted entries in memory (used by tests and diagnostics)."""
        previous = self._buffer
        self._buffer = []
        try:
            yield self._buffer
        finally:
            self._buffer = previous


_SECURITY_WARNINGS = {
    AuditEvent.SELF_APPROVAL_BLOCKED,
    AuditEvent.APPROVAL_OWNER_MISMATCH,
    AuditEvent.APPROVAL_HASH_MISMATCH,
    AuditEvent.DELEGATION_REJECTED,
}


# ============================================================================
# Metrics Collector
# ============================================================================

@dataclass
class OperationMetrics:
    """Metrics for a single operation type."""
    count: int = 0
    total_latency_ms: float = 0.0
    max_latency_ms: float = 0.0
    errors: int = 0

    def record(self, latency_ms: float, error: bool = False):
        self.count += 1
        self.total_latency_ms += latency_ms
        self.max_latency_ms = max(self.max_latency_ms, latency_ms)
        if error:
            self.errors += 1

    @property
    def avg_latency_ms(self) -> float:
        return self.total_latency_ms / self.count if self.count > 0 else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "avg_latency_ms": round(self.avg_latency_ms, 2),
            "max_latency_ms": round(self.max_latency_ms, 2),
            "errors": self.errors,
        }


class MetricsCollector:
    """Collects operation latencies and counters."""

    def __init__(self):
        self._lock = threading.Lock()
        self._operations: Dict[str, OperationMetrics] = defaultdict(OperationMetrics)
        self._counters: Dict[str, int] = defaultdict(int)

    def record_operation(self, operation: str, latency_ms: float, error: bool = False):
        with self._lock:
            self._operations[operation].record(latency_ms, error)

    def increment(self, name: str, count: int = 1):
        with self._lock:
            self._counters[name] += count

    def get_summary(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "operations": {op: m.to_dict() for op, m in self._operations.items()},
                "counters": dict(self._counters),
            }

    @contextmanager
    def measure(self, operation: str):
        """Context manager to measure operation latency.

        Usage:
            with metrics.measure("delegate"):
                outcome = controller.delegate(...)
        """
        start = time.perf_counter()
        error = False
        try:
            yield
        except Exception:
            error = True
            raise
        finally:
            latency_ms = (time.perf_counter() - start) * 1000
            self.record_operation(operation, latency_ms, error=error)


# ============================================================================
# Global Instances
# ============================================================================

logger = StructuredLogger("agora")

metrics = MetricsCollector()
