"""Blacklist policy: the only writer of a student's blacklist columns.

A student is either Clear or Blacklisted(until, reason).

* Clear -> Blacklisted: the overdue sweep found an overdue open record.
* Blacklisted -> Clear: the window ran out (cleared lazily the next time the
  student is read) or an administrator lifted it.

There is no Blacklisted -> Blacklisted transition. A further overdue book
while a window is active leaves that window exactly as it is.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from typing import List, Optional

from school_library.audit import AuditTrail
from school_library.config import LendingPolicy
from school_library.database import read_connection, transaction
from school_library.directory import load_student
from school_library.errors import InvalidRequest, StudentBlacklisted, StudentNotBlacklisted
from school_library.models import AuditKind, Student, to_iso, utc_now

logger = logging.getLogger(__name__)


def is_active(student: Student, now: datetime) -> bool:
    return student.blacklisted_until is not None and student.blacklisted_until > now


class BlacklistPolicy:
    def __init__(
        self,
        audit: AuditTrail,
        policy: LendingPolicy,
        db_file: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.audit = audit
        self.policy = policy
        self.db_file = db_file
        self.timeout = timeout

    # ------------------------- Reads ------------------------- #
    def refresh(self, conn: sqlite3.Connection, student: Student, now: datetime) -> Student:
        """Clear an expired window inside the caller's transaction and return the live state."""
        if student.blacklisted_until is None or student.blacklisted_until > now:
            return student
        previous_until = student.blacklisted_until
        self._write(conn, student.id, None, None)
        self.audit.record(
            AuditKind.BLACKLIST_EXPIRED,
            student.id,
            detail=f"Blacklist expired at {to_iso(previous_until)} (was: {student.blacklist_reason or 'no reason'})",
            at=now,
            conn=conn,
        )
        logger.info(f"Blacklist of student {student.id} expired at {to_iso(previous_until)}")
        student.blacklisted_until = None
        student.blacklist_reason = None
        return student

    def current(self, student_id: str, now: Optional[datetime] = None) -> Student:
        """Read a student, clearing an expired blacklist on the way."""
        now = now or utc_now()
        with read_connection(self.db_file, self.timeout) as conn:
            student = load_student(conn, student_id)
        if student.blacklisted_until is None or student.blacklisted_until > now:
            return student
        with transaction(self.db_file, self.timeout) as conn:
            return self.refresh(conn, load_student(conn, student_id), now)

    def expire_all(self, now: Optional[datetime] = None) -> List[str]:
        """Clear every window that has run out; returns the affected student ids."""
        now = now or utc_now()
        cleared = []
        with transaction(self.db_file, self.timeout) as conn:
            rows = conn.execute(
                "SELECT * FROM students WHERE blacklisted_until IS NOT NULL AND blacklisted_until <= ?",
                (to_iso(now),),
            ).fetchall()
            for row in rows:
                student = Student.from_dict(dict(row))
                self.refresh(conn, student, now)
                cleared.append(student.id)
        return cleared

    def ensure_can_borrow(self, conn: sqlite3.Connection, student: Student, now: datetime) -> Student:
        """Raise :class:`StudentBlacklisted` unless the student may borrow at ``now``."""
        student = self.refresh(conn, student, now)
        if is_active(student, now):
            raise StudentBlacklisted(
                f"Student {student.name} is blacklisted until {to_iso(student.blacklisted_until)}: "
                f"{student.blacklist_reason}",
                student_id=student.id,
                blacklisted_until=student.blacklisted_until,
                reason=student.blacklist_reason,
            )
        return student

    # ------------------------- Transitions ------------------------- #
    def apply_auto_blacklist(
        self,
        conn: sqlite3.Connection,
        student: Student,
        now: datetime,
        *,
        reason: str,
        copy_id: Optional[str] = None,
        record_id: Optional[str] = None,
    ) -> bool:
        """Blacklist a Clear student for the policy window. Returns False if already blacklisted."""
        student = self.refresh(conn, student, now)
        if is_active(student, now):
            logger.info(
                f"Student {student.id} already blacklisted until {to_iso(student.blacklisted_until)}; window kept"
            )
            return False
        until = now + self.policy.blacklist_window
        self._write(conn, student.id, until, reason)
        self.audit.record(
            AuditKind.AUTO_BLACKLIST,
            student.id,
            copy_id=copy_id,
            record_id=record_id,
            detail=f"{reason} Blacklisted until {to_iso(until)}.",
            at=now,
            conn=conn,
        )
        logger.info(f"Student {student.name} ({student.admission_number}) blacklisted until {to_iso(until)}")
        student.blacklisted_until = until
        student.blacklist_reason = reason
        return True

    def unblacklist(
        self,
        student_id: str,
        reason: str,
        *,
        admin_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Student:
        """Administrator lift. Works before expiry and is always audited."""
        reason = (reason or "").strip()
        if not reason:
            raise InvalidRequest("An unblacklist reason is required.", student_id=student_id)
        now = now or utc_now()
        with transaction(self.db_file, self.timeout) as conn:
            student = self.refresh(conn, load_student(conn, student_id), now)
            if not is_active(student, now):
                raise StudentNotBlacklisted(
                    f"Student {student.name} is not currently blacklisted.", student_id=student_id
                )
            previous_until = student.blacklisted_until
            previous_reason = student.blacklist_reason
            self._write(conn, student_id, None, None)
            self.audit.record(
                AuditKind.ADMIN_UNBLACKLIST,
                student_id,
                detail=(
                    f"Unblacklisted by {admin_id or 'admin'}: {reason} "
                    f"(was until {to_iso(previous_until)}: {previous_reason})"
                ),
                at=now,
                conn=conn,
            )
        logger.info(f"Student {student.name} ({student_id}) unblacklisted by {admin_id or 'admin'}: {reason}")
        student.blacklisted_until = None
        student.blacklist_reason = None
        return student

    @staticmethod
    def _write(conn: sqlite3.Connection, student_id: str, until: Optional[datetime], reason: Optional[str]) -> None:
        conn.execute(
            "UPDATE students SET blacklisted_until = ?, blacklist_reason = ? WHERE id = ?",
            (to_iso(until), reason, student_id),
        )
