"""Overdue sweep.

Walks open borrow records whose due date has passed and flags each one the
first time it is seen overdue. The borrower of every such record is blacklisted
unless already blacklisted, so a student still holding an overdue book after the
window expires or an admin lift is blacklisted again. A second pass over
unchanged data changes nothing.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from school_library.blacklist import BlacklistPolicy
from school_library.database import read_connection, transaction
from school_library.directory import load_student
from school_library.models import RecordStatus, to_iso, utc_now

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    checked: int = 0
    flagged: int = 0
    blacklisted: int = 0
    skipped: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class OverdueSweep:
    def __init__(
        self,
        blacklist: BlacklistPolicy,
        db_file: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.blacklist = blacklist
        self.db_file = db_file
        self.timeout = timeout

    def run(self, now: Optional[datetime] = None) -> SweepReport:
        now = now or utc_now()
        report = SweepReport()
        with read_connection(self.db_file, self.timeout) as conn:
            candidates = [
                row["id"]
                for row in conn.execute(
                    "SELECT id FROM borrow_records WHERE status = ? AND due_at < ? ORDER BY due_at",
                    (RecordStatus.BORROWED, to_iso(now)),
                ).fetchall()
            ]

        for record_id in candidates:
            report.checked += 1
            # One short transaction per record keeps issue/return latency low during a long sweep.
            with transaction(self.db_file, self.timeout) as conn:
                row = conn.execute(
                    """
                    SELECT r.id, r.student_id, r.copy_id, r.status, r.overdue_flagged_at,
                           c.serial, t.title
                    FROM borrow_records r
                    JOIN book_copies c ON r.copy_id = c.id
                    JOIN book_titles t ON c.title_id = t.id
                    WHERE r.id = ?
                    """,
                    (record_id,),
                ).fetchone()
                if not row or row["status"] != RecordStatus.BORROWED:
                    report.skipped += 1
                    continue
                if row["overdue_flagged_at"] is None:
                    conn.execute(
                        "UPDATE borrow_records SET overdue_flagged_at = ? WHERE id = ? AND overdue_flagged_at IS NULL",
                        (to_iso(now), record_id),
                    )
                    report.flagged += 1

                # Applies to records flagged in earlier passes too.
                student = load_student(conn, row["student_id"])
                reason = (
                    f"Overdue book '{row['title']}' (copy {row['serial']}, record {record_id})."
                )
                if self.blacklist.apply_auto_blacklist(
                    conn, student, now, reason=reason, copy_id=row["copy_id"], record_id=record_id
                ):
                    report.blacklisted += 1

        logger.info(
            f"Overdue sweep at {to_iso(now)}: checked={report.checked} flagged={report.flagged} "
            f"blacklisted={report.blacklisted} skipped={report.skipped}"
        )
        return report
