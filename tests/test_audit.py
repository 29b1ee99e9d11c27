import pytest

from school_library.audit import AuditTrail
from school_library.errors import CopyUnavailable, InvalidRequest
from school_library.models import AuditKind


def test_record_and_list_newest_first(lib, student):
    trail = AuditTrail(lib.db_file)
    first = trail.record(AuditKind.VERIFICATION_SUCCEEDED, student.id, detail="card")
    second = trail.record(AuditKind.VERIFICATION_FAILED, student.id, detail="fingerprint mismatch")
    assert second > first
    entries = trail.list_entries(student_id=student.id)
    assert [e.id for e in entries] == [second, first]
    assert entries[0].detail == "fingerprint mismatch"


def test_unknown_kind_rejected(lib, student):
    with pytest.raises(InvalidRequest):
        AuditTrail(lib.db_file).record("Deleted", student.id)


def test_filters_and_limit(lib, copies, student, verify, clock):
    record = lib.issue(verify(student), copies[0].id)
    clock.advance(days=1)
    lib.return_book(record.id)
    kinds = [e.kind for e in lib.list_audit(student_id=student.id)]
    assert kinds == [AuditKind.RETURN, AuditKind.ISSUE, AuditKind.VERIFICATION_SUCCEEDED]
    assert [e.kind for e in lib.list_audit(record_id=record.id)] == [AuditKind.RETURN, AuditKind.ISSUE]
    assert len(lib.list_audit(limit=1)) == 1


def test_entries_carry_event_time(lib, copies, student, verify, clock):
    record = lib.issue(verify(student), copies[0].id)
    entry = lib.list_audit(kind=AuditKind.ISSUE)[0]
    assert entry.created_at == record.borrowed_at
    assert entry.copy_id == copies[0].id
    assert entry.to_dict()["kind"] == "Issue"


def test_failed_operation_writes_no_entry(lib, copies, student, other_student, verify):
    lib.issue(verify(student), copies[0].id)
    before = len(lib.list_audit(kind=AuditKind.ISSUE))
    with pytest.raises(CopyUnavailable):
        lib.issue(verify(other_student), copies[0].id)
    assert len(lib.list_audit(kind=AuditKind.ISSUE)) == before


def test_unknown_kind_filter_is_rejected(lib):
    with pytest.raises(InvalidRequest) as exc:
        lib.list_audit(kind="Bogus")
    assert exc.value.fields == {"kind": "Bogus"}
    assert exc.value.to_dict()["error"] == "invalid"
