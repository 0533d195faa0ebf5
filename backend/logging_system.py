"""
Task Fuss — Structured Logging System

JSON event logging with request/correlation ids carried through contextvars,
an in-memory ring buffer for inspection, and audit/propagation helpers used by
the service layer. Events are emitted through the stdlib "taskfuss.events"
logger so they follow the process-wide logging configuration.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from datetime import datetime, timezone
from enum import Enum
from collections import deque
import contextvars
import logging
import json
import os
import time
import traceback
import uuid


class LogLevel(str, Enum):
    """Log severity levels"""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

    @property
    def numeric(self) -> int:
        return getattr(logging, self.value.upper())


class LogCategory(str, Enum):
    """Log categories for filtering"""
    REQUEST = "request"
    RESPONSE = "response"
    DATABASE = "database"
    AUTH = "auth"
    SECURITY = "security"
    AUDIT = "audit"
    PROPAGATION = "propagation"
    PERFORMANCE = "performance"
    SYSTEM = "system"


@dataclass
class LogEntry:
    """A structured log entry"""
    id: str
    timestamp: str
    level: LogLevel
    category: LogCategory
    message: str
    service: str
    correlation_id: Optional[str] = None
    request_id: Optional[str] = None
    user_id: Optional[int] = None
    duration_ms: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    tags: List[str] = field(default_factory=list)
    error: Optional[Dict[str, Any]] = None
    stack_trace: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "level": self.level.value,
            "category": self.category.value,
            "message": self.message,
            "service": self.service,
            "correlation_id": self.correlation_id,
            "request_id": self.request_id,
            "user_id": self.user_id,
            "duration_ms": self.duration_ms,
            "metadata": self.metadata,
            "tags": self.tags,
            "error": self.error,
            "stack_trace": self.stack_trace,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


@dataclass
class RequestContext:
    """Context for request tracing"""
    request_id: str
    correlation_id: str
    user_id: Optional[int] = None

    @staticmethod
    def create(correlation_id: Optional[str] = None, user_id: Optional[int] = None) -> "RequestContext":
        return RequestContext(
            request_id=str(uuid.uuid4())[:12],
            correlation_id=correlation_id or str(uuid.uuid4())[:16],
            user_id=user_id,
        )


# Async-safe context var (works with FastAPI/asyncio)
_context_var: contextvars.ContextVar[Optional[RequestContext]] = contextvars.ContextVar(
    "request_context", default=None
)


def get_current_context() -> Optional[RequestContext]:
    return _context_var.get()


def set_current_context(context: RequestContext) -> contextvars.Token:
    return _context_var.set(context)


def reset_current_context(token: contextvars.Token) -> None:
    _context_var.reset(token)


class LogBuffer:
    """Bounded in-memory buffer of recent entries"""

    def __init__(self, max_size: int = 10000):
        self.max_size = max_size
        self._buffer: deque = deque(maxlen=max_size)

    def append(self, entry: LogEntry) -> None:
        self._buffer.append(entry)

    def filter(
        self,
        category: Optional[LogCategory] = None,
        correlation_id: Optional[str] = None,
        user_id: Optional[int] = None,
        limit: int = 100,
    ) -> List[LogEntry]:
        results = []
        for entry in reversed(self._buffer):
            if category and entry.category != category:
                continue
            if correlation_id and entry.correlation_id != correlation_id:
                continue
            if user_id is not None and entry.user_id != user_id:
                continue
            results.append(entry)
            if len(results) >= limit:
                break
        return results


class StructuredLogger:
    """JSON event logger bound to the current request context"""

    def __init__(
        self,
        service_name: str = "taskfuss",
        min_level: LogLevel = LogLevel.INFO,
        buffer_size: int = 10000,
    ):
        self.service_name = service_name
        self.min_level = min_level
        self.buffer = LogBuffer(buffer_size)
        self._sink = logging.getLogger("taskfuss.events")

    def _create_entry(
        self,
        level: LogLevel,
        category: LogCategory,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
        tags: Optional[List[str]] = None,
        error: Optional[Exception] = None,
        duration_ms: Optional[float] = None,
    ) -> LogEntry:
        context = get_current_context()

        entry = LogEntry(
            id=str(uuid.uuid4())[:12],
            timestamp=datetime.now(timezone.utc).isoformat(),
            level=level,
            category=category,
            message=message,
            service=self.service_name,
            correlation_id=context.correlation_id if context else None,
            request_id=context.request_id if context else None,
            user_id=context.user_id if context else None,
            duration_ms=duration_ms,
            metadata=metadata or {},
            tags=tags or [],
        )

        if error:
            entry.error = {"type": type(error).__name__, "message": str(error)}
            entry.stack_trace = "".join(traceback.format_exception(type(error), error, error.__traceback__))

        return entry

    def _log(self, level: LogLevel, category: LogCategory, message: str, **kwargs) -> Optional[LogEntry]:
        if level.numeric < self.min_level.numeric:
            return None

        entry = self._create_entry(level, category, message, **kwargs)
        self.buffer.append(entry)
        self._sink.log(level.numeric, entry.to_json())
        return entry

    def info(self, message: str, category: LogCategory = LogCategory.SYSTEM, **kwargs) -> Optional[LogEntry]:
        return self._log(LogLevel.INFO, category, message, **kwargs)

    def warning(self, message: str, category: LogCategory = LogCategory.SYSTEM, **kwargs) -> Optional[LogEntry]:
        return self._log(LogLevel.WARNING, category, message, **kwargs)

    def error(self, message: str, category: LogCategory = LogCategory.SYSTEM, **kwargs) -> Optional[LogEntry]:
        return self._log(LogLevel.ERROR, category, message, **kwargs)

    # Convenience methods
    def request(self, method: str, path: str) -> Optional[LogEntry]:
        return self.info(
            f"{method} {path}",
            category=LogCategory.REQUEST,
            metadata={"method": method, "path": path},
        )

    def response(self, status_code: int, duration_ms: float, path: str = "") -> Optional[LogEntry]:
        level = LogLevel.INFO if status_code < 400 else LogLevel.WARNING if status_code < 500 else LogLevel.ERROR
        return self._log(
            level,
            LogCategory.RESPONSE,
            f"Response {status_code}",
            duration_ms=duration_ms,
            metadata={"status_code": status_code, "path": path},
        )

    def security_event(self, event_type: str, **kwargs) -> Optional[LogEntry]:
        return self.warning(
            f"Security event: {event_type}",
            category=LogCategory.SECURITY,
            tags=["security", event_type],
            **kwargs,
        )

    def audit(self, action: str, resource: str, metadata: Optional[Dict[str, Any]] = None) -> Optional[LogEntry]:
        return self.info(
            f"Audit: {action} on {resource}",
            category=LogCategory.AUDIT,
            tags=["audit"],
            metadata={"action": action, "resource": resource, **(metadata or {})},
        )

    def propagation(self, requirement_id: int, chain: List[Dict[str, Any]], duration_ms: float) -> Optional[LogEntry]:
        return self.info(
            f"Propagated entry for requirement {requirement_id} through {len(chain)} node(s)",
            category=LogCategory.PROPAGATION,
            duration_ms=duration_ms,
            metadata={"requirement_id": requirement_id, "chain": chain},
        )


class TimedOperation:
    """Context manager that records the elapsed time of a block"""

    def __init__(self):
        self.start_time: Optional[float] = None
        self.duration_ms: float = 0.0

    def __enter__(self):
        self.start_time = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration_ms = (time.time() - self.start_time) * 1000
        return False


# Global singleton
_logger: Optional[StructuredLogger] = None


def get_logger() -> StructuredLogger:
    """Get or create the global Task Fuss event logger"""
    global _logger
    if _logger is None:
        _logger = StructuredLogger(
            service_name="taskfuss",
            min_level=LogLevel.DEBUG if os.getenv("DEBUG") else LogLevel.INFO,
        )
    return _logger


# Convenience functions
def log_request(method: str, path: str) -> Optional[LogEntry]:
    return get_logger().request(method, path)


def log_response(status_code: int, duration_ms: float, path: str = "") -> Optional[LogEntry]:
    return get_logger().response(status_code, duration_ms, path=path)


def log_error(message: str, error: Optional[Exception] = None, **kwargs) -> Optional[LogEntry]:
    return get_logger().error(message, error=error, **kwargs)


def log_security(event_type: str, **kwargs) -> Optional[LogEntry]:
    return get_logger().security_event(event_type, **kwargs)


def log_audit(action: str, resource: str, metadata: Optional[Dict[str, Any]] = None) -> Optional[LogEntry]:
    return get_logger().audit(action, resource, metadata=metadata)


def log_propagation(requirement_id: int, chain: List[Dict[str, Any]], duration_ms: float) -> Optional[LogEntry]:
    return get_logger().propagation(requirement_id, chain, duration_ms)
