"""Borrower directory: student records.

The directory owns identity and display attributes. Blacklist columns are read
here but only written by :mod:`school_library.blacklist`.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from datetime import datetime
from typing import List, Optional

from school_library.database import read_connection, transaction
from school_library.errors import DuplicateStudent, InvalidRequest, StudentUnknown
from school_library.models import Student, to_iso, utc_now

logger = logging.getLogger(__name__)


def load_student(conn: sqlite3.Connection, student_id: str) -> Student:
    row = conn.execute("SELECT * FROM students WHERE id = ?", (student_id,)).fetchone()
    if not row:
        raise StudentUnknown(f"Student {student_id} not found.", student_id=student_id)
    return Student.from_dict(dict(row))


class BorrowerDirectory:
    def __init__(self, db_file: Optional[str] = None, timeout: Optional[float] = None) -> None:
        self.db_file = db_file
        self.timeout = timeout

    def add_student(
        self,
        name: str,
        admission_number: str,
        *,
        class_name: Optional[str] = None,
        email: Optional[str] = None,
        blacklisted_until: Optional[datetime] = None,
        blacklist_reason: Optional[str] = None,
    ) -> Student:
        """Register a student.

        An initial blacklist window is accepted only so records carried over
        from an older system keep their state; new students start clear.
        """
        name = (name or "").strip()
        admission_number = (admission_number or "").strip().upper()
        if not name or not admission_number:
            raise InvalidRequest("Student name and admission number are required.")
        student = Student(
            id=str(uuid.uuid4()),
            name=name,
            admission_number=admission_number,
            class_name=(class_name or "").strip() or None,
            email=(email or "").strip() or None,
            blacklisted_until=blacklisted_until,
            blacklist_reason=blacklist_reason if blacklisted_until else None,
            created_at=utc_now(),
        )
        try:
            with transaction(self.db_file, self.timeout) as conn:
                conn.execute(
                    """
                    INSERT INTO students (id, name, admission_number, class_name, email,
                                          blacklisted_until, blacklist_reason, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (student.id, student.name, student.admission_number, student.class_name,
                     student.email, to_iso(student.blacklisted_until), student.blacklist_reason,
                     to_iso(student.created_at)),
                )
        except sqlite3.IntegrityError as e:
            raise DuplicateStudent(
                f"A student with admission number {admission_number} already exists.",
                admission_number=admission_number,
            ) from e
        logger.info(f"Student added: {student.name} ({student.admission_number})")
        return student

    def get_student(self, student_id: str) -> Student:
        """Stored record, as is. Use the blacklist policy for the live blacklist state."""
        with read_connection(self.db_file, self.timeout) as conn:
            return load_student(conn, student_id)

    def find_by_admission_number(self, admission_number: str) -> Optional[Student]:
        with read_connection(self.db_file, self.timeout) as conn:
            row = conn.execute(
                "SELECT * FROM students WHERE admission_number = ?",
                ((admission_number or "").strip().upper(),),
            ).fetchone()
        return Student.from_dict(dict(row)) if row else None

    def list_students(
        self,
        query: Optional[str] = None,
        blacklisted: Optional[bool] = None,
        now: Optional[datetime] = None,
    ) -> List[Student]:
        """Students ordered by name.

        ``blacklisted`` filters on the window being active at ``now``.
        """
        clauses = []
        params: list = []
        if query:
            like = f"%{query}%"
            clauses.append("(name LIKE ? OR admission_number LIKE ? OR class_name LIKE ?)")
            params.extend([like, like, like])
        if blacklisted is not None:
            moment = to_iso(now or utc_now())
            if blacklisted:
                clauses.append("blacklisted_until IS NOT NULL AND blacklisted_until > ?")
            else:
                clauses.append("(blacklisted_until IS NULL OR blacklisted_until <= ?)")
            params.append(moment)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with read_connection(self.db_file, self.timeout) as conn:
            rows = conn.execute(f"SELECT * FROM students {where} ORDER BY name", params).fetchall()
        return [Student.from_dict(dict(row)) for row in rows]

    def update_student(
        self,
        student_id: str,
        *,
        name: Optional[str] = None,
        class_name: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Student:
        update_fields = {}
        if name is not None and name.strip():
            update_fields["name"] = name.strip()
        if class_name is not None:
            update_fields["class_name"] = class_name.strip() or None
        if email is not None:
            update_fields["email"] = email.strip() or None
        if not update_fields:
            raise InvalidRequest("Nothing to update. Provide name, class_name and/or email.")
        with transaction(self.db_file, self.timeout) as conn:
            load_student(conn, student_id)
            set_clause = ", ".join(f"{field} = ?" for field in update_fields)
            conn.execute(
                f"UPDATE students SET {set_clause} WHERE id = ?",
                list(update_fields.values()) + [student_id],
            )
            return load_student(conn, student_id)
