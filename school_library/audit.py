"""Append-only audit trail of verification and lending events.

Entries are written for compliance and troubleshooting. Nothing in the core
reads them back to decide current state; that always comes from the borrow
records and the students' blacklist columns.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from typing import List, Optional

from school_library.database import read_connection, transaction
from school_library.errors import InvalidRequest
from school_library.models import AuditEntry, AuditKind, to_iso, utc_now

logger = logging.getLogger(__name__)


class AuditTrail:
    def __init__(self, db_file: Optional[str] = None, timeout: Optional[float] = None) -> None:
        self.db_file = db_file
        self.timeout = timeout

    def record(
        self,
        kind: str,
        student_id: Optional[str],
        *,
        copy_id: Optional[str] = None,
        record_id: Optional[str] = None,
        detail: str = "",
        at: Optional[datetime] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> int:
        """Append one entry and return its id.

        Pass ``conn`` to write inside the caller's transaction so the entry
        commits (or rolls back) with the state change it describes.
        """
        if kind not in AuditKind.ALL:
            raise InvalidRequest(f"Unknown audit kind '{kind}'.", kind=kind)
        params = (kind, student_id, copy_id, record_id, detail, to_iso(at or utc_now()))
        sql = (
            "INSERT INTO audit_log (kind, student_id, copy_id, record_id, detail, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)"
        )
        if conn is not None:
            entry_id = conn.execute(sql, params).lastrowid
        else:
            with transaction(self.db_file, self.timeout) as own:
                entry_id = own.execute(sql, params).lastrowid
        logger.debug(f"Audit {kind}: student={student_id} copy={copy_id} record={record_id}")
        return entry_id

    def list_entries(
        self,
        student_id: Optional[str] = None,
        kind: Optional[str] = None,
        record_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEntry]:
        """Most recent entries first."""
        if kind and kind not in AuditKind.ALL:
            raise InvalidRequest(f"Unknown audit kind '{kind}'.", kind=kind)
        clauses = []
        params: list = []
        if student_id:
            clauses.append("student_id = ?")
            params.append(student_id)
        if kind:
            clauses.append("kind = ?")
            params.append(kind)
        if record_id:
            clauses.append("record_id = ?")
            params.append(record_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(max(1, int(limit)))
        with read_connection(self.db_file, self.timeout) as conn:
            rows = conn.execute(
                f"SELECT * FROM audit_log {where} ORDER BY id DESC LIMIT ?", params
            ).fetchall()
        return [AuditEntry.from_dict(dict(row)) for row in rows]
