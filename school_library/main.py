import logging
import os
import subprocess
import sys
from functools import wraps
from typing import List, Optional

import typer

from school_library import database
from school_library.config import settings
from school_library.errors import InvalidRequest, LendingError
from school_library.legacy import import_from_json
from school_library.library import Library
from school_library.ui_helpers import print_error, print_mapping, print_rows, set_output_mode
from school_library.verification import HttpIdentityVerifier, LibrarianCardVerifier

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

TITLE_COLUMNS = [("id", "ID"), ("title", "Title"), ("author", "Author"),
                 ("due_period_value", "Period"), ("due_period_unit", "Unit")]
COPY_COLUMNS = [("id", "ID"), ("serial", "Serial"), ("status", "Status"), ("title_id", "Title ID")]
STUDENT_COLUMNS = [("id", "ID"), ("admission_number", "Admission"), ("name", "Name"),
                   ("class_name", "Class"), ("blacklisted", "Blacklisted"), ("blacklisted_until", "Until")]
RECORD_COLUMNS = [("id", "ID"), ("copy_id", "Copy"), ("student_id", "Student"), ("due_at", "Due"),
                  ("status", "Status"), ("fine_amount", "Fine"), ("fine_paid", "Paid")]
AUDIT_COLUMNS = [("id", "#"), ("created_at", "At"), ("kind", "Kind"), ("student_id", "Student"),
                 ("detail", "Detail")]


class LibraryManager:
    """Library singleton, rebuilt when the database file changes (e.g. per-test databases)."""

    _instance: Optional[Library] = None
    _db_file_snapshot: Optional[str] = None

    @classmethod
    def get_instance(cls) -> Library:
        current_db = os.environ.get("LIBRARY_DB_FILE") or database.DATABASE_FILE
        if cls._instance is None or current_db != cls._db_file_snapshot:
            if cls._instance is not None:
                cls._instance.close()
            cls._instance = Library(db_file=current_db)
            cls._db_file_snapshot = current_db
        return cls._instance


def handle_errors(func):
    """Render typed failures as a message and a non-zero exit code."""

    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except LendingError as e:
            print_error(e.message, **{**e.fields, "kind": e.kind, "code": e.code})
            raise typer.Exit(code=1)

    return wrapper


def _resolve_copy(lib: Library, copy: str) -> str:
    """Accept either a copy id or a copy serial."""
    found = lib.find_copy_by_serial(copy)
    return found.id if found else copy


# --- Typer CLI app ---
app = typer.Typer(help="School library lending CLI")


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    )
):
    """Global options for the CLI (e.g. output mode)."""
    if output:
        set_output_mode(output)


# --- Catalog ---
@app.command("add-title")
@handle_errors
def cli_add_title(
    title: str,
    author: str,
    category: Optional[str] = typer.Option(None, "--category"),
    isbn: Optional[str] = typer.Option(None, "--isbn"),
    period_value: Optional[int] = typer.Option(None, "--period-value", help="Default loan length"),
    period_unit: Optional[str] = typer.Option(None, "--period-unit", help="hours, days, weeks, months, years"),
    serial: List[str] = typer.Option([], "--serial", "-s", help="Serial of a copy to add (repeatable)"),
):
    """Add a book title, optionally with copies."""
    book = LibraryManager.get_instance().add_title(
        title, author, category=category, isbn=isbn,
        due_period_value=period_value, due_period_unit=period_unit, serials=serial,
    )
    print_mapping(book.to_dict(), title="Title added", labels=TITLE_COLUMNS)


@app.command("add-copy")
@handle_errors
def cli_add_copy(title_id: str, serial: str):
    """Add a physical copy to a title."""
    copy = LibraryManager.get_instance().add_copy(title_id, serial)
    print_mapping(copy.to_dict(), title="Copy added", labels=COPY_COLUMNS)


@app.command("list-titles")
@handle_errors
def cli_list_titles(query: Optional[str] = typer.Option(None, "--query", "-q")):
    """List titles, optionally filtered."""
    titles = LibraryManager.get_instance().list_titles(query)
    print_rows([t.to_dict() for t in titles], TITLE_COLUMNS, title="Titles", empty_message="No titles in catalog.")


@app.command("list-copies")
@handle_errors
def cli_list_copies(
    title_id: Optional[str] = typer.Option(None, "--title-id"),
    status: Optional[str] = typer.Option(None, "--status", help="available | borrowed"),
):
    """List copies and their status."""
    copies = LibraryManager.get_instance().list_copies(title_id, status)
    print_rows([c.to_dict() for c in copies], COPY_COLUMNS, title="Copies", empty_message="No copies found.")


@app.command("set-due-period")
@handle_errors
def cli_set_due_period(title_id: str, value: int, unit: str):
    """Change a title's default loan period."""
    book = LibraryManager.get_instance().set_due_period(title_id, value, unit)
    print(f"Due period for '{book.title}' set to {book.due_period_value} {book.due_period_unit}")


# --- Students ---
@app.command("add-student")
@handle_errors
def cli_add_student(
    name: str,
    admission_number: str,
    class_name: Optional[str] = typer.Option(None, "--class"),
    email: Optional[str] = typer.Option(None, "--email"),
):
    """Register a student."""
    student = LibraryManager.get_instance().add_student(
        name, admission_number, class_name=class_name, email=email
    )
    print_mapping(student.to_dict(), title="Student added", labels=STUDENT_COLUMNS)


@app.command("list-students")
@handle_errors
def cli_list_students(
    query: Optional[str] = typer.Option(None, "--query", "-q"),
    blacklisted: Optional[bool] = typer.Option(None, "--blacklisted/--clear", help="Filter on blacklist state"),
):
    """List students with their blacklist state."""
    students = LibraryManager.get_instance().list_students(query, blacklisted)
    print_rows([s.to_dict() for s in students], STUDENT_COLUMNS, title="Students", empty_message="No students found.")


# --- Lending ---
@app.command("issue")
@handle_errors
def cli_issue(
    student_id: str,
    copy: str = typer.Argument(..., help="Copy id or serial"),
    card: Optional[str] = typer.Option(None, "--card", help="Admission number read from the student's card"),
    period_value: Optional[int] = typer.Option(None, "--period-value"),
    period_unit: Optional[str] = typer.Option(None, "--period-unit"),
):
    """Verify a student and issue a copy to them."""
    lib = LibraryManager.get_instance()
    if card:
        verifier = LibrarianCardVerifier(lib.directory)
        evidence = {"admission_number": card}
    elif settings.biometric_service_url:
        verifier = HttpIdentityVerifier(settings.biometric_service_url, timeout=settings.biometric_timeout)
        evidence = {}
    else:
        raise InvalidRequest("Provide --card or configure BIOMETRIC_SERVICE_URL to verify the student.")
    identity = lib.verify_identity(verifier, student_id, evidence)
    record = lib.issue(identity, _resolve_copy(lib, copy), period_value, period_unit)
    print_mapping(record.to_dict(), title="Book issued", labels=RECORD_COLUMNS)


@app.command("return")
@handle_errors
def cli_return(record_id: str):
    """Return a borrowed copy and show the fine."""
    receipt = LibraryManager.get_instance().return_book(record_id)
    print(f"Record {record_id} returned. Fine: {receipt.fine_amount}")


@app.command("pay-fine")
@handle_errors
def cli_pay_fine(record_id: str):
    """Mark the fine of a returned record as paid."""
    record = LibraryManager.get_instance().settle_fine(record_id)
    print(f"Fine of {record.fine_amount} on record {record_id} paid.")


@app.command("records")
@handle_errors
def cli_records(
    student_id: Optional[str] = typer.Option(None, "--student-id"),
    copy_id: Optional[str] = typer.Option(None, "--copy-id"),
    status: Optional[str] = typer.Option(None, "--status", help="borrowed | returned"),
    overdue: bool = typer.Option(False, "--overdue", help="Only open records past their due date"),
):
    """Show borrow history."""
    records = LibraryManager.get_instance().list_records(student_id, copy_id, status, overdue_only=overdue)
    print_rows([r.to_dict() for r in records], RECORD_COLUMNS, title="Borrow records",
               empty_message="No borrow records found.")


# --- Administration ---
@app.command("sweep")
@handle_errors
def cli_sweep():
    """Flag overdue records and blacklist their borrowers."""
    report = LibraryManager.get_instance().run_sweep()
    print_mapping(report.to_dict(), title="Overdue sweep")


@app.command("unblacklist")
@handle_errors
def cli_unblacklist(
    student_id: str,
    reason: str = typer.Option(..., "--reason", "-r", help="Why the blacklist is lifted"),
    admin_id: Optional[str] = typer.Option(None, "--admin-id"),
):
    """Lift a student's blacklist before it expires."""
    student = LibraryManager.get_instance().unblacklist(student_id, reason, admin_id=admin_id)
    print(f"Student {student.name} ({student.admission_number}) unblacklisted.")


@app.command("audit")
@handle_errors
def cli_audit(
    student_id: Optional[str] = typer.Option(None, "--student-id"),
    kind: Optional[str] = typer.Option(None, "--kind"),
    limit: int = typer.Option(50, "--limit"),
):
    """Show recent audit entries."""
    entries = LibraryManager.get_instance().list_audit(student_id, kind, limit=limit)
    print_rows([e.to_dict() for e in entries], AUDIT_COLUMNS, title="Audit trail",
               empty_message="No audit entries.")


@app.command("stats")
@handle_errors
def cli_stats():
    """Show library statistics."""
    print_mapping(LibraryManager.get_instance().get_statistics(), title="Library statistics")


@app.command("import-json")
@handle_errors
def cli_import_json(path: str):
    """Import an export of the old library system."""
    if not os.path.exists(path):
        print_error(f"File not found: {path}")
        raise typer.Exit(code=1)
    report = import_from_json(LibraryManager.get_instance(), path)
    print_mapping(report.to_dict(), title="Import finished")


@app.command("serve")
def cli_serve(reload: bool = typer.Option(False, "--reload", help="Restart on code changes")):
    """Start the HTTP API with uvicorn."""
    host = settings.api_host
    port = int(settings.api_port)
    print(f"Starting API on http://{host}:{port}/")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "school_library.api:app",
        "--host", host,
        "--port", str(port),
    ]
    if reload:
        args.append("--reload")
    subprocess.run(args)


if __name__ == "__main__":
    app()
