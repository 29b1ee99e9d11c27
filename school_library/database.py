import logging
import os
import sqlite3
from contextlib import contextmanager
from typing import Iterator, Optional

from dotenv import load_dotenv

from school_library.config import settings
from school_library.errors import TransientError

# Make sure .env is loaded before DATABASE_FILE is resolved, whatever the import order.
load_dotenv()

logger = logging.getLogger(__name__)

# Default database file. LIBRARY_DB_FILE wins over the settings default so
# tests and scripts can point a fresh process at another file.
DATABASE_FILE = os.environ.get("LIBRARY_DB_FILE") or settings.database_file

_LOCK_MESSAGES = ("database is locked", "database is busy", "database table is locked")


def _is_lock_error(exc: sqlite3.OperationalError) -> bool:
    text = str(exc).lower()
    return any(msg in text for msg in _LOCK_MESSAGES)


def get_db_connection(db_file: Optional[str] = None, timeout: Optional[float] = None) -> sqlite3.Connection:
    """Open a connection to the SQLite database.

    Connections run in autocommit mode; writers open an explicit
    ``BEGIN IMMEDIATE`` through :func:`transaction`. ``timeout`` bounds how
    long any statement waits on another writer's lock.
    """
    conn = sqlite3.connect(
        db_file or DATABASE_FILE,
        timeout=settings.database_timeout if timeout is None else timeout,
        isolation_level=None,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    return conn


@contextmanager
def transaction(db_file: Optional[str] = None, timeout: Optional[float] = None) -> Iterator[sqlite3.Connection]:
    """Run a block inside one immediate (write-locking) transaction.

    Everything written inside the block commits together or not at all. Lock
    waits longer than ``timeout`` surface as :class:`TransientError`.
    """
    try:
        conn = get_db_connection(db_file, timeout)
    except sqlite3.OperationalError as exc:
        if _is_lock_error(exc):
            raise TransientError("Storage is busy, retry later.", cause=str(exc)) from exc
        raise
    try:
        conn.execute("BEGIN IMMEDIATE")
        yield conn
        conn.execute("COMMIT")
    except sqlite3.OperationalError as exc:
        _rollback(conn)
        if _is_lock_error(exc):
            logger.warning(f"Transaction aborted on lock timeout: {exc}")
            raise TransientError("Storage is busy, retry later.", cause=str(exc)) from exc
        raise
    except BaseException:
        _rollback(conn)
        raise
    finally:
        conn.close()


@contextmanager
def read_connection(db_file: Optional[str] = None, timeout: Optional[float] = None) -> Iterator[sqlite3.Connection]:
    """Connection for read-only work; lock timeouts are mapped like writes."""
    conn = get_db_connection(db_file, timeout)
    try:
        yield conn
    except sqlite3.OperationalError as exc:
        if _is_lock_error(exc):
            raise TransientError("Storage is busy, retry later.", cause=str(exc)) from exc
        raise
    finally:
        conn.close()


def _rollback(conn: sqlite3.Connection) -> None:
    if conn.in_transaction:
        try:
            conn.execute("ROLLBACK")
        except sqlite3.Error as exc:
            logger.error(f"Rollback failed: {exc}")


def create_tables(db_file: Optional[str] = None) -> None:
    """Create the schema if it does not exist yet."""
    conn = get_db_connection(db_file)
    try:
        # WAL lets readers proceed while a writer holds the lock; the mode is persisted in the file.
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS book_titles (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                author TEXT NOT NULL,
                category TEXT,
                isbn TEXT,
                due_period_value INTEGER NOT NULL CHECK (due_period_value > 0),
                due_period_unit TEXT NOT NULL
                    CHECK (due_period_unit IN ('hours', 'days', 'weeks', 'months', 'years')),
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS book_copies (
                id TEXT PRIMARY KEY,
                title_id TEXT NOT NULL REFERENCES book_titles(id),
                serial TEXT NOT NULL UNIQUE,
                status TEXT NOT NULL DEFAULT 'available'
                    CHECK (status IN ('available', 'borrowed')),
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS students (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                admission_number TEXT NOT NULL UNIQUE,
                class_name TEXT,
                email TEXT,
                blacklisted_until TEXT,
                blacklist_reason TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS borrow_records (
                id TEXT PRIMARY KEY,
                copy_id TEXT NOT NULL REFERENCES book_copies(id),
                student_id TEXT NOT NULL REFERENCES students(id),
                borrowed_at TEXT NOT NULL,
                due_at TEXT NOT NULL,
                returned_at TEXT,
                status TEXT NOT NULL DEFAULT 'borrowed'
                    CHECK (status IN ('borrowed', 'returned')),
                fine_amount TEXT NOT NULL DEFAULT '0.00',
                fine_paid INTEGER NOT NULL DEFAULT 0,
                overdue_flagged_at TEXT
            );

            CREATE TABLE IF NOT EXISTS audit_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                kind TEXT NOT NULL,
                student_id TEXT,
                copy_id TEXT,
                record_id TEXT,
                detail TEXT NOT NULL DEFAULT '',
                created_at TEXT NOT NULL
            );

            -- At most one open record per copy
            CREATE UNIQUE INDEX IF NOT EXISTS idx_borrow_records_open_copy
                ON borrow_records(copy_id) WHERE status = 'borrowed';

            CREATE INDEX IF NOT EXISTS idx_book_copies_title ON book_copies(title_id);
            CREATE INDEX IF NOT EXISTS idx_book_copies_status ON book_copies(status);
            CREATE INDEX IF NOT EXISTS idx_book_titles_title ON book_titles(title);
            CREATE INDEX IF NOT EXISTS idx_book_titles_author ON book_titles(author);
            CREATE INDEX IF NOT EXISTS idx_students_blacklisted ON students(blacklisted_until);
            CREATE INDEX IF NOT EXISTS idx_borrow_records_student ON borrow_records(student_id);
            CREATE INDEX IF NOT EXISTS idx_borrow_records_status_due ON borrow_records(status, due_at);
            CREATE INDEX IF NOT EXISTS idx_audit_log_student ON audit_log(student_id);
            CREATE INDEX IF NOT EXISTS idx_audit_log_kind ON audit_log(kind);
        """)
    finally:
        conn.close()


def initialize_database(db_file: Optional[str] = None) -> None:
    """Initialize the database, creating tables if needed."""
    create_tables(db_file)
