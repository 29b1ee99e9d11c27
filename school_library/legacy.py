"""Read adapters for exports of the old library system.

Old exports are loosely typed: the same field shows up as ``fine`` or
``fine_amount``, ``bookId``, ``book_id`` or ``book_copy_id``, ``class`` or
``class_name``, and booleans arrive as strings. Everything is normalized here
so the rest of the package only ever sees canonical field names.

Expected file layout::

    {
      "books": [{"id": ..., "title": ..., "author": ..., "isbn": ..., "category": ...,
                 "total_copies": 2, "due_period_value": 24, "due_period_unit": "hours"}],
      "book_copies": [{"id": ..., "book_id": ..., "copy_number": 1}],
      "students": [{"id": ..., "name": ..., "admission_number": ..., "class": ...,
                    "blacklisted": "true", "blacklist_until": ..., "blacklist_reason": ...}],
      "borrow_records": [{"book_id": ..., "student_id": ..., "borrow_date": ...,
                          "due_date": ..., "return_date": ..., "status": "returned",
                          "fine": 20, "fine_paid": "false"}]
    }
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Union

from school_library.errors import InvalidRequest, LendingError
from school_library.models import RecordStatus, parse_ts, to_money

if TYPE_CHECKING:
    from school_library.library import Library

logger = logging.getLogger(__name__)

_TRUE_STRINGS = ("true", "1", "yes", "y", "t")


@dataclass
class ImportReport:
    titles: int = 0
    copies: int = 0
    students: int = 0
    records: int = 0
    skipped_open_records: int = 0
    skipped: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    if isinstance(value, (int, float)):
        return value != 0
    return str(value).strip().lower() in _TRUE_STRINGS


def _first(data: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None and value != "":
            return value
    return None


def _money(value: Any) -> Decimal:
    try:
        return to_money(value if value is not None else 0)
    except InvalidOperation:
        raise InvalidRequest(f"Not a monetary amount: {value!r}", value=value) from None


def _count(value: Any) -> int:
    if value is None:
        return 0
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidRequest(f"Not a copy count: {value!r}", value=value) from None


# ------------------------- Normalizers ------------------------- #
def normalize_title(data: Dict[str, Any]) -> Dict[str, Any]:
    total = _first(data, "total_copies", "copies")
    return {
        "legacy_id": _first(data, "id", "bookId", "book_id"),
        "title": str(data.get("title") or "").strip(),
        "author": str(data.get("author") or "").strip(),
        "isbn": _first(data, "isbn", "ISBN"),
        "category": data.get("category"),
        "total_copies": _count(total),
        "due_period_value": _first(data, "due_period_value", "duePeriodValue"),
        "due_period_unit": _first(data, "due_period_unit", "duePeriodUnit"),
    }


def normalize_copy(data: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "legacy_id": _first(data, "id", "copyId", "copy_id"),
        "legacy_book_id": _first(data, "book_id", "bookId"),
        "serial": _first(data, "serial", "copy_code", "tracking_code"),
        "copy_number": _first(data, "copy_number", "copyNumber"),
    }


def normalize_student(data: Dict[str, Any]) -> Dict[str, Any]:
    until = parse_ts(_first(data, "blacklisted_until", "blacklist_until"))
    blacklisted = to_bool(data.get("blacklisted")) if "blacklisted" in data else until is not None
    return {
        "legacy_id": _first(data, "id", "studentId", "student_id"),
        "name": str(data.get("name") or "").strip(),
        "admission_number": str(_first(data, "admission_number", "admissionNumber") or "").strip(),
        "class_name": _first(data, "class_name", "class", "className"),
        "email": data.get("email"),
        "blacklisted_until": until if blacklisted else None,
        "blacklist_reason": data.get("blacklist_reason") if blacklisted else None,
    }


def normalize_borrow_record(data: Dict[str, Any]) -> Dict[str, Any]:
    status = str(data.get("status") or RecordStatus.BORROWED).strip().lower()
    returned_at = parse_ts(_first(data, "returned_at", "return_date", "returnDate"))
    # "overdue" was a stored status in the old system; it is still an open loan.
    if status != RecordStatus.RETURNED or returned_at is None:
        status = RecordStatus.BORROWED
    return {
        "legacy_id": data.get("id"),
        "legacy_copy_id": _first(data, "book_copy_id", "copy_id", "copyId"),
        "legacy_book_id": _first(data, "book_id", "bookId"),
        "legacy_student_id": _first(data, "student_id", "studentId"),
        "borrowed_at": parse_ts(_first(data, "borrowed_at", "borrow_date", "borrowDate")),
        "due_at": parse_ts(_first(data, "due_at", "due_date", "dueDate")),
        "returned_at": returned_at,
        "status": status,
        "fine_amount": _money(_first(data, "fine_amount", "fine")),
        "fine_paid": to_bool(data.get("fine_paid")),
    }


# ------------------------- Import ------------------------- #
def load_export(path: Union[str, Path]) -> Dict[str, List[Dict[str, Any]]]:
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise InvalidRequest("Legacy export must be a JSON object.", path=str(path))
    return data


def import_from_json(library: "Library", path: Union[str, Path]) -> ImportReport:
    """Import titles, copies, students and returned loans from an old export.

    Entries that already exist (same ISBN, or same title and author for books
    without one; same copy serial; same admission number) are reused instead
    of duplicated. Open loans are counted and skipped.
    """
    data = load_export(path)
    report = ImportReport()
    title_ids: Dict[str, str] = {}
    copy_ids: Dict[str, str] = {}
    first_copy_of_title: Dict[str, str] = {}
    student_ids: Dict[str, str] = {}

    for raw in data.get("books") or []:
        entry = normalize_title(raw)
        book = library.find_title(entry["title"], entry["author"], entry["isbn"])
        if book is None:
            try:
                book = library.add_title(
                    entry["title"],
                    entry["author"],
                    category=entry["category"],
                    isbn=entry["isbn"],
                    due_period_value=entry["due_period_value"],
                    due_period_unit=entry["due_period_unit"],
                )
            except LendingError as e:
                logger.warning(f"Skipping legacy book {entry['legacy_id']}: {e.message}")
                report.skipped += 1
                continue
            report.titles += 1
        if entry["legacy_id"] is not None:
            title_ids[str(entry["legacy_id"])] = book.id
        # Books exported without a copies section get generated serials.
        if not data.get("book_copies"):
            prefix = _serial_prefix(entry, book.id)
            for n in range(1, entry["total_copies"] + 1):
                copy_id = _add_copy(library, book.id, f"{prefix}-{n}", report)
                if copy_id:
                    first_copy_of_title.setdefault(book.id, copy_id)

    for raw in data.get("book_copies") or []:
        entry = normalize_copy(raw)
        title_id = title_ids.get(str(entry["legacy_book_id"]))
        if not title_id:
            logger.warning(f"Skipping legacy copy {entry['legacy_id']}: unknown book {entry['legacy_book_id']}")
            report.skipped += 1
            continue
        serial = entry["serial"] or f"{title_id[:8]}-{entry['copy_number'] or report.copies + 1}"
        copy_id = _add_copy(library, title_id, str(serial), report)
        if copy_id:
            first_copy_of_title.setdefault(title_id, copy_id)
            if entry["legacy_id"] is not None:
                copy_ids[str(entry["legacy_id"])] = copy_id

    for raw in data.get("students") or []:
        entry = normalize_student(raw)
        student = library.directory.find_by_admission_number(entry["admission_number"])
        if student is None:
            try:
                student = library.directory.add_student(
                    entry["name"],
                    entry["admission_number"],
                    class_name=entry["class_name"],
                    email=entry["email"],
                    blacklisted_until=entry["blacklisted_until"],
                    blacklist_reason=entry["blacklist_reason"],
                )
            except LendingError as e:
                logger.warning(f"Skipping legacy student {entry['legacy_id']}: {e.message}")
                report.skipped += 1
                continue
            report.students += 1
        if entry["legacy_id"] is not None:
            student_ids[str(entry["legacy_id"])] = student.id

    for raw in data.get("borrow_records") or []:
        entry = normalize_borrow_record(raw)
        if entry["status"] != RecordStatus.RETURNED:
            report.skipped_open_records += 1
            continue
        copy_id = copy_ids.get(str(entry["legacy_copy_id"])) or first_copy_of_title.get(
            title_ids.get(str(entry["legacy_book_id"]), "")
        )
        student_id = student_ids.get(str(entry["legacy_student_id"]))
        if not copy_id or not student_id or not entry["borrowed_at"] or not entry["due_at"]:
            logger.warning(f"Skipping legacy borrow record {entry['legacy_id']}: unresolved copy, student or dates")
            report.skipped += 1
            continue
        history = library.list_records(student_id=student_id, copy_id=copy_id)
        if any(r.borrowed_at == entry["borrowed_at"] for r in history):
            continue
        library.ledger.import_closed_record(
            copy_id,
            student_id,
            entry["borrowed_at"],
            entry["due_at"],
            entry["returned_at"],
            fine_amount=entry["fine_amount"],
            fine_paid=entry["fine_paid"],
        )
        report.records += 1

    logger.info(f"Legacy import from {path}: {report.to_dict()}")
    return report


def _serial_prefix(entry: Dict[str, Any], title_id: str) -> str:
    isbn = "".join(ch for ch in str(entry.get("isbn") or "") if ch.isalnum())
    return isbn.upper() if isbn else title_id[:8].upper()


def _add_copy(library: "Library", title_id: str, serial: str, report: ImportReport) -> Optional[str]:
    existing = library.find_copy_by_serial(serial)
    if existing:
        return existing.id
    try:
        copy = library.add_copy(title_id, serial)
    except LendingError as e:
        logger.warning(f"Skipping legacy copy {serial}: {e.message}")
        report.skipped += 1
        return None
    report.copies += 1
    return copy.id
