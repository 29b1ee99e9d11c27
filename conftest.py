import os
from datetime import datetime, timedelta, timezone

import pytest

from school_library.library import Library
from school_library.verification import LibrarianCardVerifier

START = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock so due dates, fines and blacklist windows are deterministic."""

    def __init__(self, start: datetime = START):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current

    def set(self, moment: datetime) -> datetime:
        self.current = moment
        return self.current


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_file(tmp_path, request):
    # Unique database file per test
    return str(tmp_path / f"test_{request.node.name}.db")


@pytest.fixture
def lib(db_file, clock):
    lib = Library(db_file=db_file, clock=clock)
    yield lib
    lib.close()
    if os.path.exists(db_file):
        os.remove(db_file)


@pytest.fixture
def book(lib):
    """A title with two copies, loaned for 7 days by default."""
    return lib.add_title(
        "Things Fall Apart",
        "Chinua Achebe",
        category="Language",
        isbn="9780385474542",
        due_period_value=7,
        due_period_unit="days",
        serials=["TFA-001", "TFA-002"],
    )


@pytest.fixture
def copies(lib, book):
    return lib.list_copies(book.id)


@pytest.fixture
def student(lib):
    return lib.add_student("Amina Wanjiru", "ADM-1001", class_name="Form 2", email="amina@example.org")


@pytest.fixture
def other_student(lib):
    return lib.add_student("Brian Otieno", "ADM-1002", class_name="Form 3")


@pytest.fixture
def verify(lib):
    """Verify a student at the desk with their library card."""

    def _verify(student):
        return lib.verify_identity(
            LibrarianCardVerifier(lib.directory), student.id, {"admission_number": student.admission_number}
        )

    return _verify
