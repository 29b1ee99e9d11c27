"""Identity verification boundary.

Matching fingerprints, faces or cards happens outside this package. A verifier
makes one call and returns either a :class:`VerifiedStudentId` token or a
:class:`VerificationFailed` result; the ledger refuses to issue without a
fresh token.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Union

from school_library.directory import BorrowerDirectory
from school_library.errors import TransientError
from school_library.models import utc_now
from school_library.services.http_client import HTTPClient, get_http_client

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerifiedStudentId:
    student_id: str
    method: str
    verified_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class VerificationFailed:
    student_id: str
    reason: str
    method: str = "unknown"


VerificationResult = Union[VerifiedStudentId, VerificationFailed]


class IdentityVerifier:
    """Base class for verifiers. Subclasses implement :meth:`verify`."""

    method = "unknown"

    def verify(self, student_id: str, evidence: Optional[Dict[str, Any]] = None) -> VerificationResult:
        raise NotImplementedError


class LibrarianCardVerifier(IdentityVerifier):
    """A librarian checks the student's library card at the desk.

    The evidence must carry the admission number printed on the card and it
    has to match the directory entry of the claimed student.
    """

    method = "card"

    def __init__(self, directory: BorrowerDirectory) -> None:
        self.directory = directory

    def verify(self, student_id: str, evidence: Optional[Dict[str, Any]] = None) -> VerificationResult:
        evidence = evidence or {}
        card_number = str(evidence.get("admission_number") or "").strip().upper()
        if not card_number:
            return VerificationFailed(student_id, "No card admission number presented.", self.method)
        student = self.directory.get_student(student_id)
        if student.admission_number != card_number:
            return VerificationFailed(
                student_id, f"Card {card_number} does not belong to student {student_id}.", self.method
            )
        return VerifiedStudentId(student_id=student.id, method=self.method)


class HttpIdentityVerifier(IdentityVerifier):
    """Client for the external biometric verification service.

    Posts ``{"student_id": ..., **evidence}`` to ``/api/biometric/verify`` and
    expects ``{"verified": bool, "student_id": str, "method": str, "reason": str}``.
    """

    method = "biometric"
    path = "/api/biometric/verify"

    def __init__(
        self,
        base_url: str,
        client: Optional[HTTPClient] = None,
        timeout: float = 10.0,
        retries: int = 3,
        backoff: float = 0.5,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.client = client or get_http_client(timeout)
        self.retries = retries
        self.backoff = backoff

    def verify(self, student_id: str, evidence: Optional[Dict[str, Any]] = None) -> VerificationResult:
        payload = dict(evidence or {})
        payload["student_id"] = student_id
        url = f"{self.base_url}{self.path}"
        resp = self.client.post_with_retry(url, retries=self.retries, backoff=self.backoff, json=payload)
        if resp is None:
            raise TransientError("Identity verification service unreachable.", student_id=student_id)
        if resp.status_code >= 500:
            logger.error(f"Verification service error: {resp.status_code} - {resp.text}")
            raise TransientError(
                "Identity verification service failed.", student_id=student_id, status_code=resp.status_code
            )
        try:
            data = resp.json()
        except ValueError:
            data = {}
        method = str(data.get("method") or self.method)
        if resp.status_code != 200:
            return VerificationFailed(
                student_id, str(data.get("reason") or f"Verification rejected (HTTP {resp.status_code})."), method
            )
        if not data.get("verified"):
            return VerificationFailed(student_id, str(data.get("reason") or "Identity not verified."), method)
        if str(data.get("student_id", student_id)) != student_id:
            return VerificationFailed(student_id, "Verified identity belongs to another student.", method)
        return VerifiedStudentId(student_id=student_id, method=method)
