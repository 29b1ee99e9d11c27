"""Typed failures raised by the lending core.

Every error carries a ``kind`` (one of the five categories below), a stable
``code`` and the structured fields a caller needs to render a specific message
(ids, timestamps) without querying the store again.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict

from school_library.models import to_iso

NOT_FOUND = "not_found"
CONFLICT = "conflict"
POLICY_VIOLATION = "policy_violation"
TRANSIENT = "transient"
INVALID = "invalid"


class LendingError(Exception):
    kind = "error"
    code = "lending_error"

    def __init__(self, message: str, **fields: Any) -> None:
        super().__init__(message)
        self.message = message
        self.fields = fields

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.kind, "code": self.code, "detail": self.message}
        for key, value in self.fields.items():
            payload[key] = to_iso(value) if isinstance(value, datetime) else value
        return payload

    @property
    def retryable(self) -> bool:
        return self.kind == TRANSIENT


# --- Kinds ---
class NotFoundError(LendingError):
    kind = NOT_FOUND
    code = "not_found"


class ConflictError(LendingError):
    kind = CONFLICT
    code = "conflict"


class PolicyViolationError(LendingError):
    kind = POLICY_VIOLATION
    code = "policy_violation"


class TransientError(LendingError):
    """Storage timeout, lock contention or an unreachable collaborator. Safe to retry."""

    kind = TRANSIENT
    code = "transient"


class InvalidRequest(LendingError):
    kind = INVALID
    code = "invalid"


# --- Catalog ---
class CopyUnavailable(ConflictError):
    code = "copy_unavailable"


class CopyNotFound(CopyUnavailable, NotFoundError):
    kind = NOT_FOUND
    code = "copy_not_found"


class TitleNotFound(NotFoundError):
    code = "title_not_found"


class DuplicateCopy(ConflictError):
    code = "duplicate_copy"


class TitleLocked(ConflictError):
    code = "title_locked"


# --- Directory / blacklist ---
class StudentUnknown(NotFoundError):
    code = "student_unknown"


class DuplicateStudent(ConflictError):
    code = "duplicate_student"


class StudentBlacklisted(PolicyViolationError):
    code = "student_blacklisted"


class StudentNotBlacklisted(ConflictError):
    code = "student_not_blacklisted"


class IdentityNotVerified(PolicyViolationError):
    code = "identity_not_verified"


# --- Ledger ---
class RecordNotFound(NotFoundError):
    code = "record_not_found"


class AlreadyReturned(ConflictError):
    code = "already_returned"


class RecordStillOpen(ConflictError):
    code = "record_still_open"


class NoFineOwed(ConflictError):
    code = "no_fine_owed"


class InvalidPeriod(InvalidRequest):
    code = "invalid_period"
