import dataclasses
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional

from school_library import database
from school_library.audit import AuditTrail
from school_library.blacklist import BlacklistPolicy
from school_library.catalog import CatalogStore
from school_library.config import LendingPolicy, Settings, settings as default_settings
from school_library.database import initialize_database, read_connection
from school_library.directory import BorrowerDirectory
from school_library.ledger import LendingLedger, ReturnReceipt
from school_library.models import (
    AuditEntry,
    AuditKind,
    BookCopy,
    BookTitle,
    BorrowRecord,
    CopyStatus,
    RecordStatus,
    Student,
    to_iso,
    to_money,
    utc_now,
)
from school_library.retry import call_with_retry
from school_library.sweep import OverdueSweep, SweepReport
from school_library.verification import IdentityVerifier, VerificationResult, VerifiedStudentId

logger = logging.getLogger(__name__)


class Library:
    """Entry point to the lending core.

    Wires the catalog, directory, ledger, sweep, blacklist policy and audit
    trail onto one SQLite file and retries operations that fail transiently.
    Every call opens its own connection, so one instance can be shared across
    threads.
    """

    def __init__(
        self,
        db_file: Optional[str] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings or default_settings
        self.db_file = db_file or database.DATABASE_FILE
        self.timeout = self.settings.database_timeout
        self.policy = LendingPolicy.from_settings(self.settings)
        self._clock = clock or utc_now

        initialize_database(self.db_file)

        self.audit = AuditTrail(self.db_file, self.timeout)
        self.catalog = CatalogStore(
            self.db_file,
            self.timeout,
            default_period_value=self.policy.default_due_period_value,
            default_period_unit=self.policy.default_due_period_unit,
        )
        self.directory = BorrowerDirectory(self.db_file, self.timeout)
        self.blacklist = BlacklistPolicy(self.audit, self.policy, self.db_file, self.timeout)
        self.ledger = LendingLedger(self.audit, self.blacklist, self.policy, self.db_file, self.timeout)
        self.sweep = OverdueSweep(self.blacklist, self.db_file, self.timeout)

    def now(self) -> datetime:
        return self._clock()

    def _retry(self, fn: Callable[[], Any]) -> Any:
        return call_with_retry(fn, self.settings.retry_attempts, self.settings.retry_backoff)

    # ------------------------- Catalog ------------------------- #
    def add_title(
        self,
        title: str,
        author: str,
        *,
        category: Optional[str] = None,
        isbn: Optional[str] = None,
        due_period_value: Optional[int] = None,
        due_period_unit: Optional[str] = None,
        serials: Iterable[str] = (),
    ) -> BookTitle:
        serials = list(serials)
        return self._retry(lambda: self.catalog.add_title(
            title, author, category=category, isbn=isbn,
            due_period_value=due_period_value, due_period_unit=due_period_unit, serials=serials,
        ))

    def add_copy(self, title_id: str, serial: str) -> BookCopy:
        return self._retry(lambda: self.catalog.add_copy(title_id, serial))

    def get_title(self, title_id: str) -> BookTitle:
        return self.catalog.get_title(title_id)

    def list_titles(self, query: Optional[str] = None) -> List[BookTitle]:
        return self.catalog.list_titles(query)

    def find_title(self, title: str, author: str, isbn: Optional[str] = None) -> Optional[BookTitle]:
        return self.catalog.find_title(title, author, isbn)

    def update_title(self, title_id: str, **fields: Optional[str]) -> BookTitle:
        return self._retry(lambda: self.catalog.update_title(title_id, **fields))

    def set_due_period(self, title_id: str, value: int, unit: str) -> BookTitle:
        return self._retry(lambda: self.catalog.update_due_period(title_id, value, unit))

    def get_copy(self, copy_id: str) -> BookCopy:
        return self.catalog.get_copy(copy_id)

    def find_copy_by_serial(self, serial: str) -> Optional[BookCopy]:
        return self.catalog.find_copy_by_serial(serial)

    def list_copies(self, title_id: Optional[str] = None, status: Optional[str] = None) -> List[BookCopy]:
        return self.catalog.list_copies(title_id, status)

    # ------------------------- Students ------------------------- #
    def add_student(
        self,
        name: str,
        admission_number: str,
        *,
        class_name: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Student:
        return self._retry(lambda: self.directory.add_student(
            name, admission_number, class_name=class_name, email=email
        ))

    def get_student(self, student_id: str) -> Student:
        """Student with live blacklist state; an expired window is cleared on the way."""
        return self._retry(lambda: self.blacklist.current(student_id, self.now()))

    def find_student_by_admission_number(self, admission_number: str) -> Optional[Student]:
        student = self.directory.find_by_admission_number(admission_number)
        return self.get_student(student.id) if student else None

    def list_students(self, query: Optional[str] = None, blacklisted: Optional[bool] = None) -> List[Student]:
        now = self.now()
        self._retry(lambda: self.blacklist.expire_all(now))
        return self.directory.list_students(query, blacklisted, now)

    def update_student(self, student_id: str, **fields: Optional[str]) -> Student:
        return self._retry(lambda: self.directory.update_student(student_id, **fields))

    # ------------------------- Lending ------------------------- #
    def verify_identity(
        self,
        verifier: IdentityVerifier,
        student_id: str,
        evidence: Optional[Dict[str, Any]] = None,
    ) -> VerificationResult:
        """Ask ``verifier`` who is at the desk and audit the outcome."""
        result = verifier.verify(student_id, evidence)
        now = self.now()
        if isinstance(result, VerifiedStudentId):
            result = dataclasses.replace(result, verified_at=now)
            kind, detail = AuditKind.VERIFICATION_SUCCEEDED, f"Verified by {result.method}"
        else:
            kind, detail = AuditKind.VERIFICATION_FAILED, f"{result.method}: {result.reason}"
            logger.warning(f"Identity verification failed for student {student_id}: {result.reason}")
        self._retry(lambda: self.audit.record(kind, student_id, detail=detail, at=now))
        return result

    def issue(
        self,
        identity: VerificationResult,
        copy_id: str,
        period_value: Optional[int] = None,
        period_unit: Optional[str] = None,
    ) -> BorrowRecord:
        return self._retry(lambda: self.ledger.issue(
            identity, copy_id, period_value, period_unit, now=self.now()
        ))

    def return_book(self, record_id: str) -> ReturnReceipt:
        return self._retry(lambda: self.ledger.return_copy(record_id, now=self.now()))

    def settle_fine(self, record_id: str) -> BorrowRecord:
        return self._retry(lambda: self.ledger.settle_fine(record_id, now=self.now()))

    def get_record(self, record_id: str) -> BorrowRecord:
        return self.ledger.get_record(record_id)

    def list_records(
        self,
        student_id: Optional[str] = None,
        copy_id: Optional[str] = None,
        status: Optional[str] = None,
        overdue_only: bool = False,
    ) -> List[BorrowRecord]:
        return self.ledger.list_records(student_id, copy_id, status, overdue_only, self.now())

    def current_fine(self, record_id: str) -> Decimal:
        return self.ledger.current_fine(self.get_record(record_id), self.now())

    # ------------------------- Administration ------------------------- #
    def run_sweep(self, now: Optional[datetime] = None) -> SweepReport:
        moment = now or self.now()
        return self._retry(lambda: self.sweep.run(moment))

    def unblacklist(self, student_id: str, reason: str, admin_id: Optional[str] = None) -> Student:
        return self._retry(lambda: self.blacklist.unblacklist(
            student_id, reason, admin_id=admin_id, now=self.now()
        ))

    def list_audit(
        self,
        student_id: Optional[str] = None,
        kind: Optional[str] = None,
        record_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEntry]:
        return self.audit.list_entries(student_id, kind, record_id, limit)

    def get_statistics(self) -> Dict[str, Any]:
        """Counts for the dashboard and the weekly report."""
        now = to_iso(self.now())
        with read_connection(self.db_file, self.timeout) as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT COUNT(*) FROM book_titles")
            total_titles = cursor.fetchone()[0]

            cursor.execute("SELECT status, COUNT(*) FROM book_copies GROUP BY status")
            copies = {row[0]: row[1] for row in cursor.fetchall()}

            cursor.execute("SELECT COUNT(*) FROM students")
            total_students = cursor.fetchone()[0]

            cursor.execute(
                "SELECT COUNT(*) FROM students WHERE blacklisted_until IS NOT NULL AND blacklisted_until > ?",
                (now,),
            )
            blacklisted = cursor.fetchone()[0]

            cursor.execute("SELECT COUNT(*) FROM borrow_records WHERE status = ?", (RecordStatus.BORROWED,))
            open_records = cursor.fetchone()[0]

            cursor.execute(
                "SELECT COUNT(*) FROM borrow_records WHERE status = ? AND due_at < ?",
                (RecordStatus.BORROWED, now),
            )
            overdue = cursor.fetchone()[0]

            # Amounts are stored as text; sum as Decimal to keep cents exact.
            cursor.execute(
                "SELECT fine_amount FROM borrow_records WHERE status = ? AND fine_paid = 0",
                (RecordStatus.RETURNED,),
            )
            unpaid = sum((to_money(row[0]) for row in cursor.fetchall()), Decimal("0.00"))

        return {
            "total_titles": total_titles,
            "total_copies": sum(copies.values()),
            "available_copies": copies.get(CopyStatus.AVAILABLE, 0),
            "borrowed_copies": copies.get(CopyStatus.BORROWED, 0),
            "total_students": total_students,
            "blacklisted_students": blacklisted,
            "open_records": open_records,
            "overdue_records": overdue,
            "unpaid_fines": str(to_money(unpaid)),
        }

    def close(self) -> None:
        """Connections are opened per operation, so there is nothing to release."""
        return None
