# errors.py — Domain error taxonomy with TD-{DOMAIN}-{NUMBER} codes
from enum import Enum
from typing import Any, Optional


# ============================================================
# ERROR CODE CATALOGUE
# TD-{DOMAIN}-{NUMBER}
# Domains: AUTH, REQ, TASK, USER, SYS
# ============================================================

ERROR_CATALOGUE = {
    "TD-AUTH-001": {"message": "Authentication required", "http_status": 401},
    "TD-AUTH-002": {"message": "Invalid email or password", "http_status": 401},
    "TD-AUTH-003": {"message": "Access denied", "http_status": 403},
    "TD-REQ-001": {"message": "Validation failed", "http_status": 400},
    "TD-REQ-002": {"message": "Request validation failed", "http_status": 422},
    "TD-REQ-003": {"message": "Referenced record does not exist", "http_status": 400},
    "TD-REQ-004": {"message": "Resource not found", "http_status": 404},
    "TD-REQ-005": {"message": "Duplicate entry", "http_status": 409},
    "TD-SYS-001": {"message": "Internal server error", "http_status": 500},
}


class AppError(Exception):
    """Base class for errors surfaced to the caller"""
    code = "TD-SYS-001"

    def __init__(self, message: Optional[str] = None, data: Any = None):
        self.message = message or ERROR_CATALOGUE[self.code]["message"]
        self.data = data
        super().__init__(self.message)

    @property
    def http_status(self) -> int:
        return ERROR_CATALOGUE[self.code]["http_status"]


class ValidationError(AppError):
    """Malformed or missing required input"""
    code = "TD-REQ-001"


class NotFoundError(AppError):
    code = "TD-REQ-004"


class ForbiddenError(AppError):
    """Authenticated but the policy denied the action"""
    code = "TD-AUTH-003"


class UnknownReferenceError(AppError):
    """A referenced foreign record (e.g. an assignee) does not exist"""
    code = "TD-REQ-003"


class ConflictError(AppError):
    """Uniqueness violation"""
    code = "TD-REQ-005"


class AuthFailure(str, Enum):
    MISSING = "missing"
    INVALID = "invalid"
    EXPIRED = "expired"
    UNKNOWN_SUBJECT = "unknown_subject"
    DEACTIVATED = "deactivated"


class AuthError(AppError):
    """Credential rejected. Callers only ever see the generic message."""
    code = "TD-AUTH-001"

    def __init__(self, reason: AuthFailure, message: Optional[str] = None):
        self.reason = reason
        super().__init__(message)


class InvalidCredentialsError(AppError):
    """Login failure; deliberately silent about which check failed"""
    code = "TD-AUTH-002"
