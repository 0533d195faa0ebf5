# exceptions.py — Domain error taxonomy with TF-{DOMAIN}-{NUMBER} codes
# Every error raised by the requirement engine carries a catalogue code and
# the HTTP status the request layer answers with. main.py maps them to JSON.

from typing import Any, Dict, Optional

# ============================================================
# ERROR CODE CATALOGUE
# Domains: DB, AUTH, REQ, VAL, EVAL, SYS
# ============================================================

ERROR_CATALOGUE = {
    # Storage
    "TF-DB-001": {"message": "Record not found", "severity": "info", "http_status": 404},
    "TF-DB-002": {"message": "Unique constraint violation", "severity": "warning", "http_status": 409},

    # Ownership / access
    "TF-AUTH-001": {"message": "Access denied", "severity": "warning", "http_status": 403},

    # Requirement tree
    "TF-REQ-001": {"message": "Operation not allowed on this requirement", "severity": "warning", "http_status": 409},

    # Validation / coercion
    "TF-VAL-001": {"message": "Validation failed", "severity": "info", "http_status": 422},
    "TF-VAL-002": {"message": "Unsupported data type", "severity": "warning", "http_status": 422},

    # Evaluation
    "TF-EVAL-001": {"message": "Condition evaluation failed", "severity": "error", "http_status": 422},
    "TF-EVAL-002": {"message": "Unsupported operator", "severity": "warning", "http_status": 422},

    # System
    "TF-SYS-001": {"message": "Internal server error", "severity": "critical", "http_status": 500},
    "TF-SYS-002": {"message": "Request deadline exceeded", "severity": "warning", "http_status": 504},
}


class AppError(Exception):
    """Base class for errors surfaced to the request layer untouched."""

    code = "TF-SYS-001"

    def __init__(self, message: Optional[str] = None, **context: Any):
        self.message = message or ERROR_CATALOGUE[self.code]["message"]
        self.context = context
        super().__init__(self.message)

    @property
    def http_status(self) -> int:
        return ERROR_CATALOGUE[self.code]["http_status"]

    @property
    def severity(self) -> str:
        return ERROR_CATALOGUE[self.code]["severity"]

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "code": self.code, "context": self.context}


class NotFoundError(AppError):
    code = "TF-DB-001"


class DuplicateError(AppError):
    code = "TF-DB-002"


class ForbiddenError(AppError):
    code = "TF-AUTH-001"


class InvalidOperationError(AppError):
    code = "TF-REQ-001"


class ValidationError(AppError):
    code = "TF-VAL-001"


class UnsupportedDataTypeError(ValidationError):
    code = "TF-VAL-002"


class EvalError(AppError):
    code = "TF-EVAL-001"


class UnsupportedOperatorError(EvalError):
    code = "TF-EVAL-002"


class DeadlineExceededError(AppError):
    code = "TF-SYS-002"
