from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional


class CopyStatus:
    AVAILABLE = "available"
    BORROWED = "borrowed"


class RecordStatus:
    BORROWED = "borrowed"
    RETURNED = "returned"


class AuditKind:
    VERIFICATION_SUCCEEDED = "VerificationSucceeded"
    VERIFICATION_FAILED = "VerificationFailed"
    ISSUE = "Issue"
    RETURN = "Return"
    FINE_PAID = "FinePaid"
    AUTO_BLACKLIST = "AutoBlacklist"
    ADMIN_UNBLACKLIST = "AdminUnblacklist"
    BLACKLIST_EXPIRED = "BlacklistExpired"

    ALL = (
        VERIFICATION_SUCCEEDED,
        VERIFICATION_FAILED,
        ISSUE,
        RETURN,
        FINE_PAID,
        AUTO_BLACKLIST,
        ADMIN_UNBLACKLIST,
        BLACKLIST_EXPIRED,
    )


# ------------------------- Timestamps ------------------------- #
def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    # Fixed-width so stored timestamps compare correctly as text in SQL.
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_ts(value: Any) -> Optional[datetime]:
    """Parse a stored timestamp; naive values are taken to be UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_money(value: Any) -> Decimal:
    return Decimal(str(value if value is not None else "0")).quantize(Decimal("0.01"))


# ------------------------- Entities ------------------------- #
@dataclass
class BookTitle:
    id: str
    title: str
    author: str
    due_period_value: int
    due_period_unit: str
    category: Optional[str] = None
    isbn: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "category": self.category,
            "isbn": self.isbn,
            "due_period_value": self.due_period_value,
            "due_period_unit": self.due_period_unit,
            "created_at": to_iso(self.created_at),
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "BookTitle":
        return BookTitle(
            id=data["id"],
            title=data["title"],
            author=data["author"],
            category=data.get("category"),
            isbn=data.get("isbn"),
            due_period_value=int(data["due_period_value"]),
            due_period_unit=data["due_period_unit"],
            created_at=parse_ts(data.get("created_at")),
        )


@dataclass
class BookCopy:
    id: str
    title_id: str
    serial: str
    status: str = CopyStatus.AVAILABLE
    created_at: Optional[datetime] = None

    @property
    def is_available(self) -> bool:
        return self.status == CopyStatus.AVAILABLE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title_id": self.title_id,
            "serial": self.serial,
            "status": self.status,
            "created_at": to_iso(self.created_at),
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "BookCopy":
        return BookCopy(
            id=data["id"],
            title_id=data["title_id"],
            serial=data["serial"],
            status=data["status"],
            created_at=parse_ts(data.get("created_at")),
        )


@dataclass
class Student:
    id: str
    name: str
    admission_number: str
    class_name: Optional[str] = None
    email: Optional[str] = None
    blacklisted_until: Optional[datetime] = None
    blacklist_reason: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def is_blacklisted(self) -> bool:
        """True when a blacklist window is recorded, expired or not.

        Expiry is decided by :mod:`school_library.blacklist`, which clears the
        window lazily; callers that need the live answer go through it.
        """
        return self.blacklisted_until is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "admission_number": self.admission_number,
            "class_name": self.class_name,
            "email": self.email,
            "blacklisted": self.is_blacklisted,
            "blacklisted_until": to_iso(self.blacklisted_until),
            "blacklist_reason": self.blacklist_reason,
            "created_at": to_iso(self.created_at),
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Student":
        return Student(
            id=data["id"],
            name=data["name"],
            admission_number=data["admission_number"],
            class_name=data.get("class_name"),
            email=data.get("email"),
            blacklisted_until=parse_ts(data.get("blacklisted_until")),
            blacklist_reason=data.get("blacklist_reason"),
            created_at=parse_ts(data.get("created_at")),
        )


@dataclass
class BorrowRecord:
    id: str
    copy_id: str
    student_id: str
    borrowed_at: datetime
    due_at: datetime
    status: str = RecordStatus.BORROWED
    returned_at: Optional[datetime] = None
    fine_amount: Decimal = Decimal("0.00")
    fine_paid: bool = False
    overdue_flagged_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status == RecordStatus.BORROWED

    def is_overdue(self, now: datetime) -> bool:
        return self.is_open and self.due_at < now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "copy_id": self.copy_id,
            "student_id": self.student_id,
            "borrowed_at": to_iso(self.borrowed_at),
            "due_at": to_iso(self.due_at),
            "returned_at": to_iso(self.returned_at),
            "status": self.status,
            "fine_amount": str(self.fine_amount),
            "fine_paid": self.fine_paid,
            "overdue_flagged_at": to_iso(self.overdue_flagged_at),
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "BorrowRecord":
        return BorrowRecord(
            id=data["id"],
            copy_id=data["copy_id"],
            student_id=data["student_id"],
            borrowed_at=parse_ts(data["borrowed_at"]),
            due_at=parse_ts(data["due_at"]),
            returned_at=parse_ts(data.get("returned_at")),
            status=data["status"],
            fine_amount=to_money(data.get("fine_amount")),
            fine_paid=bool(data.get("fine_paid")),
            overdue_flagged_at=parse_ts(data.get("overdue_flagged_at")),
        )


@dataclass
class AuditEntry:
    id: int
    kind: str
    student_id: Optional[str]
    detail: str
    created_at: datetime
    copy_id: Optional[str] = None
    record_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "student_id": self.student_id,
            "copy_id": self.copy_id,
            "record_id": self.record_id,
            "detail": self.detail,
            "created_at": to_iso(self.created_at),
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "AuditEntry":
        return AuditEntry(
            id=int(data["id"]),
            kind=data["kind"],
            student_id=data.get("student_id"),
            copy_id=data.get("copy_id"),
            record_id=data.get("record_id"),
            detail=data.get("detail") or "",
            created_at=parse_ts(data["created_at"]),
        )
