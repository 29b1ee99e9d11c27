"""Lending ledger: issue, return and fine settlement.

A copy's ``status`` and the existence of an open borrow record for it are one
transactional unit. Issue flips the copy with a compare-and-swap
(``... WHERE status = 'available'``) inside a ``BEGIN IMMEDIATE`` transaction,
and a partial unique index allows a single open record per copy, so two
concurrent issues of one copy can never both commit. Borrow records are
never deleted.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from school_library.audit import AuditTrail
from school_library.blacklist import BlacklistPolicy
from school_library.config import LendingPolicy
from school_library.database import read_connection, transaction
from school_library.directory import load_student
from school_library.errors import (
    AlreadyReturned,
    ConflictError,
    CopyNotFound,
    CopyUnavailable,
    IdentityNotVerified,
    InvalidRequest,
    NoFineOwed,
    RecordNotFound,
    RecordStillOpen,
)
from school_library.fines import calculate_fine
from school_library.models import AuditKind, BorrowRecord, CopyStatus, RecordStatus, to_iso, utc_now
from school_library.periods import add_period, validate_period
from school_library.verification import VerificationFailed, VerifiedStudentId

logger = logging.getLogger(__name__)


@dataclass
class ReturnReceipt:
    record: BorrowRecord
    fine_amount: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {"record": self.record.to_dict(), "fine_amount": str(self.fine_amount)}


class LendingLedger:
    def __init__(
        self,
        audit: AuditTrail,
        blacklist: BlacklistPolicy,
        policy: LendingPolicy,
        db_file: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.audit = audit
        self.blacklist = blacklist
        self.policy = policy
        self.db_file = db_file
        self.timeout = timeout

    # ------------------------- Issue ------------------------- #
    def issue(
        self,
        identity: Any,
        copy_id: str,
        period_value: Optional[int] = None,
        period_unit: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> BorrowRecord:
        """Allocate ``copy_id`` to the verified student and open a borrow record.

        Without an explicit period the title's default due period applies.
        """
        now = now or utc_now()
        student_id = self._require_verified(identity, now)
        if period_value is not None or period_unit is not None:
            # Validate early; missing halves are filled from the title below.
            validate_period(
                period_value if period_value is not None else 1,
                period_unit if period_unit is not None else "days",
            )

        with transaction(self.db_file, self.timeout) as conn:
            copy_row = conn.execute(
                """
                SELECT c.id, c.serial, c.status, t.title, t.due_period_value, t.due_period_unit
                FROM book_copies c JOIN book_titles t ON c.title_id = t.id
                WHERE c.id = ?
                """,
                (copy_id,),
            ).fetchone()
            if not copy_row:
                raise CopyNotFound(f"Copy {copy_id} not found.", copy_id=copy_id)

            student = load_student(conn, student_id)
            self.blacklist.ensure_can_borrow(conn, student, now)

            cursor = conn.execute(
                "UPDATE book_copies SET status = ? WHERE id = ? AND status = ?",
                (CopyStatus.BORROWED, copy_id, CopyStatus.AVAILABLE),
            )
            if cursor.rowcount != 1:
                raise self._unavailable(conn, copy_id, copy_row["serial"])

            value = period_value if period_value is not None else copy_row["due_period_value"]
            unit = period_unit if period_unit is not None else copy_row["due_period_unit"]
            record = BorrowRecord(
                id=str(uuid.uuid4()),
                copy_id=copy_id,
                student_id=student_id,
                borrowed_at=now,
                due_at=add_period(now, value, unit),
            )
            try:
                conn.execute(
                    """
                    INSERT INTO borrow_records (id, copy_id, student_id, borrowed_at, due_at, status,
                                                fine_amount, fine_paid)
                    VALUES (?, ?, ?, ?, ?, ?, ?, 0)
                    """,
                    (record.id, record.copy_id, record.student_id, to_iso(record.borrowed_at),
                     to_iso(record.due_at), record.status, str(record.fine_amount)),
                )
            except sqlite3.IntegrityError as e:
                raise CopyUnavailable(
                    f"Copy {copy_row['serial']} already has an open borrow record.", copy_id=copy_id
                ) from e

            self.audit.record(
                AuditKind.ISSUE,
                student_id,
                copy_id=copy_id,
                record_id=record.id,
                detail=f"Issued '{copy_row['title']}' (copy {copy_row['serial']}) due {to_iso(record.due_at)}",
                at=now,
                conn=conn,
            )
        logger.info(
            f"Issued copy {copy_row['serial']} to student {student_id}; record {record.id} due {to_iso(record.due_at)}"
        )
        return record

    def _require_verified(self, identity: Any, now: datetime) -> str:
        if isinstance(identity, VerificationFailed):
            raise IdentityNotVerified(
                f"Identity verification failed: {identity.reason}",
                student_id=identity.student_id,
                reason=identity.reason,
                method=identity.method,
            )
        if not isinstance(identity, VerifiedStudentId):
            raise IdentityNotVerified("A verified student identity is required to issue a book.")
        age = now - identity.verified_at
        if age > self.policy.verification_max_age:
            raise IdentityNotVerified(
                "Identity verification has expired; verify the student again.",
                student_id=identity.student_id,
                verified_at=identity.verified_at,
            )
        return identity.student_id

    @staticmethod
    def _unavailable(conn: sqlite3.Connection, copy_id: str, serial: str) -> CopyUnavailable:
        open_row = conn.execute(
            "SELECT id, due_at FROM borrow_records WHERE copy_id = ? AND status = ?",
            (copy_id, RecordStatus.BORROWED),
        ).fetchone()
        fields: Dict[str, Any] = {"copy_id": copy_id, "serial": serial}
        if open_row:
            fields["open_record_id"] = open_row["id"]
            fields["due_at"] = open_row["due_at"]
        return CopyUnavailable(f"Copy {serial} is already borrowed.", **fields)

    # ------------------------- Return ------------------------- #
    def return_copy(self, record_id: str, *, now: Optional[datetime] = None) -> ReturnReceipt:
        """Close an open record, assess the fine and release the copy.

        A second return of the same record fails with :class:`AlreadyReturned`.
        """
        now = now or utc_now()
        with transaction(self.db_file, self.timeout) as conn:
            record = self._load(conn, record_id)
            if not record.is_open:
                raise AlreadyReturned(
                    f"Borrow record {record_id} was already returned.",
                    record_id=record_id,
                    returned_at=record.returned_at,
                )
            fine = calculate_fine(record.due_at, now, self.policy.fine_per_day)
            cursor = conn.execute(
                """
                UPDATE borrow_records SET status = ?, returned_at = ?, fine_amount = ?
                WHERE id = ? AND status = ?
                """,
                (RecordStatus.RETURNED, to_iso(now), str(fine), record_id, RecordStatus.BORROWED),
            )
            if cursor.rowcount != 1:
                raise AlreadyReturned(f"Borrow record {record_id} was already returned.", record_id=record_id)
            cursor = conn.execute(
                "UPDATE book_copies SET status = ? WHERE id = ? AND status = ?",
                (CopyStatus.AVAILABLE, record.copy_id, CopyStatus.BORROWED),
            )
            if cursor.rowcount != 1:
                logger.error(f"Copy {record.copy_id} was not marked borrowed while record {record_id} was open")
                raise ConflictError(
                    "Copy state does not match its open borrow record.",
                    record_id=record_id,
                    copy_id=record.copy_id,
                )
            self.audit.record(
                AuditKind.RETURN,
                record.student_id,
                copy_id=record.copy_id,
                record_id=record_id,
                detail=f"Returned {'late' if fine else 'on time'}; fine {fine}",
                at=now,
                conn=conn,
            )
            record.status = RecordStatus.RETURNED
            record.returned_at = now
            record.fine_amount = fine
        logger.info(f"Record {record_id} returned; fine {fine}")
        return ReturnReceipt(record=record, fine_amount=fine)

    # ------------------------- Fines ------------------------- #
    def settle_fine(self, record_id: str, *, now: Optional[datetime] = None) -> BorrowRecord:
        """Mark the fine of a returned record as paid."""
        now = now or utc_now()
        with transaction(self.db_file, self.timeout) as conn:
            record = self._load(conn, record_id)
            if record.is_open:
                raise RecordStillOpen(
                    "The book must be returned before its fine is settled.", record_id=record_id
                )
            if record.fine_amount <= 0 or record.fine_paid:
                raise NoFineOwed(
                    f"No outstanding fine on record {record_id}.",
                    record_id=record_id,
                    fine_amount=str(record.fine_amount),
                    fine_paid=record.fine_paid,
                )
            conn.execute("UPDATE borrow_records SET fine_paid = 1 WHERE id = ?", (record_id,))
            self.audit.record(
                AuditKind.FINE_PAID,
                record.student_id,
                copy_id=record.copy_id,
                record_id=record_id,
                detail=f"Fine {record.fine_amount} paid",
                at=now,
                conn=conn,
            )
            record.fine_paid = True
        return record

    def current_fine(self, record: BorrowRecord, now: Optional[datetime] = None) -> Decimal:
        """Stored fine for returned records; the fine due if returned at ``now`` for open ones."""
        if not record.is_open:
            return record.fine_amount
        return calculate_fine(record.due_at, now or utc_now(), self.policy.fine_per_day)

    def import_closed_record(
        self,
        copy_id: str,
        student_id: str,
        borrowed_at: datetime,
        due_at: datetime,
        returned_at: datetime,
        fine_amount: Decimal = Decimal("0.00"),
        fine_paid: bool = False,
    ) -> BorrowRecord:
        """Store a historical, already returned loan carried over from an older system.

        Open loans are never imported; they have to go through :meth:`issue`.
        """
        if returned_at is None:
            raise InvalidRequest("Only returned loans can be imported.", copy_id=copy_id, student_id=student_id)
        record = BorrowRecord(
            id=str(uuid.uuid4()),
            copy_id=copy_id,
            student_id=student_id,
            borrowed_at=borrowed_at,
            due_at=due_at,
            status=RecordStatus.RETURNED,
            returned_at=returned_at,
            fine_amount=fine_amount,
            fine_paid=fine_paid,
        )
        with transaction(self.db_file, self.timeout) as conn:
            if not conn.execute("SELECT 1 FROM book_copies WHERE id = ?", (copy_id,)).fetchone():
                raise CopyNotFound(f"Copy {copy_id} not found.", copy_id=copy_id)
            load_student(conn, student_id)
            conn.execute(
                """
                INSERT INTO borrow_records (id, copy_id, student_id, borrowed_at, due_at, returned_at,
                                            status, fine_amount, fine_paid)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (record.id, copy_id, student_id, to_iso(borrowed_at), to_iso(due_at), to_iso(returned_at),
                 record.status, str(fine_amount), 1 if fine_paid else 0),
            )
        return record

    # ------------------------- Queries ------------------------- #
    def get_record(self, record_id: str) -> BorrowRecord:
        with read_connection(self.db_file, self.timeout) as conn:
            return self._load(conn, record_id)

    def open_record_for_copy(self, copy_id: str) -> Optional[BorrowRecord]:
        with read_connection(self.db_file, self.timeout) as conn:
            row = conn.execute(
                "SELECT * FROM borrow_records WHERE copy_id = ? AND status = ?",
                (copy_id, RecordStatus.BORROWED),
            ).fetchone()
        return BorrowRecord.from_dict(dict(row)) if row else None

    def list_records(
        self,
        student_id: Optional[str] = None,
        copy_id: Optional[str] = None,
        status: Optional[str] = None,
        overdue_only: bool = False,
        now: Optional[datetime] = None,
    ) -> List[BorrowRecord]:
        """Borrow history, newest first.

        ``overdue_only`` is a derived view: open records whose due date has passed.
        """
        if status is not None and status not in (RecordStatus.BORROWED, RecordStatus.RETURNED):
            raise InvalidRequest(f"Unknown record status '{status}'.", status=status)
        clauses = []
        params: list = []
        if student_id:
            clauses.append("student_id = ?")
            params.append(student_id)
        if copy_id:
            clauses.append("copy_id = ?")
            params.append(copy_id)
        if status:
            clauses.append("status = ?")
            params.append(status)
        if overdue_only:
            clauses.append("status = ? AND due_at < ?")
            params.extend([RecordStatus.BORROWED, to_iso(now or utc_now())])
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with read_connection(self.db_file, self.timeout) as conn:
            rows = conn.execute(
                f"SELECT * FROM borrow_records {where} ORDER BY borrowed_at DESC", params
            ).fetchall()
        return [BorrowRecord.from_dict(dict(row)) for row in rows]

    @staticmethod
    def _load(conn: sqlite3.Connection, record_id: str) -> BorrowRecord:
        row = conn.execute("SELECT * FROM borrow_records WHERE id = ?", (record_id,)).fetchone()
        if not row:
            raise RecordNotFound(f"Borrow record {record_id} not found.", record_id=record_id)
        return BorrowRecord.from_dict(dict(row))
