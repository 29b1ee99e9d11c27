"""Catalog store: book titles and their individually addressable copies.

The catalog creates copies as ``available`` and never changes a copy's status
afterwards; that transition belongs to the lending ledger.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from typing import Iterable, List, Optional

from school_library.database import read_connection, transaction
from school_library.errors import CopyNotFound, DuplicateCopy, InvalidRequest, TitleLocked, TitleNotFound
from school_library.models import BookCopy, BookTitle, CopyStatus, to_iso, utc_now
from school_library.periods import validate_period

logger = logging.getLogger(__name__)


class CatalogStore:
    def __init__(
        self,
        db_file: Optional[str] = None,
        timeout: Optional[float] = None,
        default_period_value: int = 24,
        default_period_unit: str = "hours",
    ) -> None:
        self.db_file = db_file
        self.timeout = timeout
        self.default_period_value = default_period_value
        self.default_period_unit = default_period_unit

    # ------------------------- Titles ------------------------- #
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
        """Add a title, optionally with its first copies."""
        title = (title or "").strip()
        author = (author or "").strip()
        if not title or not author:
            raise InvalidRequest("Title and author are required.")
        value, unit = validate_period(
            due_period_value if due_period_value is not None else self.default_period_value,
            due_period_unit if due_period_unit is not None else self.default_period_unit,
        )
        book = BookTitle(
            id=str(uuid.uuid4()),
            title=title,
            author=author,
            category=_clean(category),
            isbn=_clean(isbn),
            due_period_value=value,
            due_period_unit=unit,
            created_at=utc_now(),
        )
        with transaction(self.db_file, self.timeout) as conn:
            conn.execute(
                """
                INSERT INTO book_titles (id, title, author, category, isbn,
                                         due_period_value, due_period_unit, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (book.id, book.title, book.author, book.category, book.isbn,
                 book.due_period_value, book.due_period_unit, to_iso(book.created_at)),
            )
            for serial in serials:
                self._insert_copy(conn, book.id, serial)
        logger.info(f"Title added: {book.title} by {book.author} ({book.id})")
        return book

    def get_title(self, title_id: str) -> BookTitle:
        with read_connection(self.db_file, self.timeout) as conn:
            row = conn.execute("SELECT * FROM book_titles WHERE id = ?", (title_id,)).fetchone()
        if not row:
            raise TitleNotFound(f"Title {title_id} not found.", title_id=title_id)
        return BookTitle.from_dict(dict(row))

    def list_titles(self, query: Optional[str] = None) -> List[BookTitle]:
        """All titles ordered by title, optionally filtered by title/author/category/ISBN."""
        with read_connection(self.db_file, self.timeout) as conn:
            if query:
                like = f"%{query}%"
                rows = conn.execute(
                    """
                    SELECT * FROM book_titles
                    WHERE title LIKE ? OR author LIKE ? OR category LIKE ? OR isbn LIKE ?
                    ORDER BY title
                    """,
                    (like, like, like, like),
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM book_titles ORDER BY title").fetchall()
        return [BookTitle.from_dict(dict(row)) for row in rows]

    def find_title(self, title: str, author: str, isbn: Optional[str] = None) -> Optional[BookTitle]:
        """Existing title with this ISBN, or with the same title and author when there is no ISBN."""
        with read_connection(self.db_file, self.timeout) as conn:
            if _clean(isbn):
                row = conn.execute(
                    "SELECT * FROM book_titles WHERE isbn = ? ORDER BY created_at LIMIT 1", (_clean(isbn),)
                ).fetchone()
            else:
                row = conn.execute(
                    """
                    SELECT * FROM book_titles
                    WHERE lower(title) = lower(?) AND lower(author) = lower(?)
                    ORDER BY created_at LIMIT 1
                    """,
                    (title.strip(), author.strip()),
                ).fetchone()
        return BookTitle.from_dict(dict(row)) if row else None

    def update_title(
        self,
        title_id: str,
        *,
        title: Optional[str] = None,
        author: Optional[str] = None,
        category: Optional[str] = None,
        isbn: Optional[str] = None,
    ) -> BookTitle:
        """Edit descriptive fields. Titles are frozen once any copy exists."""
        update_fields = {}
        if title is not None and title.strip():
            update_fields["title"] = title.strip()
        if author is not None and author.strip():
            update_fields["author"] = author.strip()
        if category is not None:
            update_fields["category"] = _clean(category)
        if isbn is not None:
            update_fields["isbn"] = _clean(isbn)
        if not update_fields:
            raise InvalidRequest("Nothing to update. Provide title, author, category and/or isbn.")

        with transaction(self.db_file, self.timeout) as conn:
            self._require_title(conn, title_id)
            copies = conn.execute(
                "SELECT COUNT(*) FROM book_copies WHERE title_id = ?", (title_id,)
            ).fetchone()[0]
            if copies:
                raise TitleLocked(
                    "Title details cannot change once copies exist; only the due period can.",
                    title_id=title_id,
                    copies=copies,
                )
            set_clause = ", ".join(f"{field} = ?" for field in update_fields)
            conn.execute(
                f"UPDATE book_titles SET {set_clause} WHERE id = ?",
                list(update_fields.values()) + [title_id],
            )
        return self.get_title(title_id)

    def update_due_period(self, title_id: str, value: int, unit: str) -> BookTitle:
        """Change the default loan period. Existing records keep their due dates."""
        value, unit = validate_period(value, unit)
        with transaction(self.db_file, self.timeout) as conn:
            self._require_title(conn, title_id)
            conn.execute(
                "UPDATE book_titles SET due_period_value = ?, due_period_unit = ? WHERE id = ?",
                (value, unit, title_id),
            )
        logger.info(f"Due period of title {title_id} set to {value} {unit}")
        return self.get_title(title_id)

    # ------------------------- Copies ------------------------- #
    def add_copy(self, title_id: str, serial: str) -> BookCopy:
        with transaction(self.db_file, self.timeout) as conn:
            self._require_title(conn, title_id)
            copy = self._insert_copy(conn, title_id, serial)
        logger.info(f"Copy {copy.serial} added to title {title_id}")
        return copy

    def get_copy(self, copy_id: str) -> BookCopy:
        with read_connection(self.db_file, self.timeout) as conn:
            row = conn.execute("SELECT * FROM book_copies WHERE id = ?", (copy_id,)).fetchone()
        if not row:
            raise CopyNotFound(f"Copy {copy_id} not found.", copy_id=copy_id)
        return BookCopy.from_dict(dict(row))

    def find_copy_by_serial(self, serial: str) -> Optional[BookCopy]:
        with read_connection(self.db_file, self.timeout) as conn:
            row = conn.execute(
                "SELECT * FROM book_copies WHERE serial = ?", (_normalize_serial(serial),)
            ).fetchone()
        return BookCopy.from_dict(dict(row)) if row else None

    def list_copies(self, title_id: Optional[str] = None, status: Optional[str] = None) -> List[BookCopy]:
        if status is not None and status not in (CopyStatus.AVAILABLE, CopyStatus.BORROWED):
            raise InvalidRequest(f"Unknown copy status '{status}'.", status=status)
        clauses = []
        params = []
        if title_id:
            clauses.append("title_id = ?")
            params.append(title_id)
        if status:
            clauses.append("status = ?")
            params.append(status)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with read_connection(self.db_file, self.timeout) as conn:
            rows = conn.execute(
                f"SELECT * FROM book_copies {where} ORDER BY serial", params
            ).fetchall()
        return [BookCopy.from_dict(dict(row)) for row in rows]

    # ------------------------- Helpers ------------------------- #
    def _insert_copy(self, conn: sqlite3.Connection, title_id: str, serial: str) -> BookCopy:
        serial = _normalize_serial(serial)
        if not serial:
            raise InvalidRequest("Copy serial cannot be empty.")
        copy = BookCopy(id=str(uuid.uuid4()), title_id=title_id, serial=serial, created_at=utc_now())
        try:
            conn.execute(
                "INSERT INTO book_copies (id, title_id, serial, status, created_at) VALUES (?, ?, ?, ?, ?)",
                (copy.id, copy.title_id, copy.serial, copy.status, to_iso(copy.created_at)),
            )
        except sqlite3.IntegrityError as e:
            raise DuplicateCopy(f"A copy with serial {serial} already exists.", serial=serial) from e
        return copy

    @staticmethod
    def _require_title(conn: sqlite3.Connection, title_id: str) -> None:
        if not conn.execute("SELECT 1 FROM book_titles WHERE id = ?", (title_id,)).fetchone():
            raise TitleNotFound(f"Title {title_id} not found.", title_id=title_id)


def _normalize_serial(raw: Optional[str]) -> str:
    if raw is None:
        return ""
    return "".join(ch for ch in str(raw) if ch.isalnum() or ch == "-").upper()


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None
