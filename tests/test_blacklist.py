from datetime import timedelta

import pytest

from school_library.errors import InvalidRequest, StudentBlacklisted, StudentNotBlacklisted, StudentUnknown
from school_library.models import AuditKind


@pytest.fixture
def blacklisted(lib, copies, student, verify, clock):
    """Student with an overdue copy, blacklisted by the sweep at start + 8 days."""
    record = lib.issue(verify(student), copies[0].id)
    clock.advance(days=8)
    lib.run_sweep()
    return record


def test_blacklisted_student_cannot_borrow(lib, copies, student, verify, blacklisted):
    with pytest.raises(StudentBlacklisted) as exc:
        lib.issue(verify(student), copies[1].id)
    err = exc.value
    assert err.kind == "policy_violation"
    assert err.fields["student_id"] == student.id
    assert err.fields["blacklisted_until"] == lib.get_student(student.id).blacklisted_until
    assert "Overdue book" in err.fields["reason"]
    assert lib.get_copy(copies[1].id).is_available


def test_blacklist_expires_lazily(lib, copies, student, verify, clock, blacklisted):
    until = lib.get_student(student.id).blacklisted_until
    clock.set(until)
    s = lib.get_student(student.id)
    assert not s.is_blacklisted
    assert s.blacklist_reason is None
    expired = lib.list_audit(kind=AuditKind.BLACKLIST_EXPIRED)
    assert [e.student_id for e in expired] == [student.id]
    # Reading again does not log a second expiry
    lib.get_student(student.id)
    assert len(lib.list_audit(kind=AuditKind.BLACKLIST_EXPIRED)) == 1


def test_expired_blacklist_does_not_block_issue(lib, copies, student, verify, clock, blacklisted):
    clock.advance(days=15)
    record = lib.issue(verify(student), copies[1].id)
    assert record.student_id == student.id
    assert [e.kind for e in lib.list_audit(kind=AuditKind.BLACKLIST_EXPIRED)] == [AuditKind.BLACKLIST_EXPIRED]


def test_list_students_clears_expired_windows(lib, student, other_student, clock, blacklisted):
    assert [s.id for s in lib.list_students(blacklisted=True)] == [student.id]
    clock.advance(days=14)
    assert lib.list_students(blacklisted=True) == []
    assert all(not s.is_blacklisted for s in lib.list_students())


def test_unblacklist_is_audited(lib, student, blacklisted):
    s = lib.unblacklist(student.id, "Book found and returned", admin_id="admin-1")
    assert not s.is_blacklisted
    entry = lib.list_audit(kind=AuditKind.ADMIN_UNBLACKLIST)[0]
    assert entry.student_id == student.id
    assert "Book found and returned" in entry.detail
    assert "admin-1" in entry.detail


def test_unblacklist_requires_reason(lib, student, blacklisted):
    with pytest.raises(InvalidRequest):
        lib.unblacklist(student.id, "   ")
    assert lib.get_student(student.id).is_blacklisted


def test_unblacklist_clear_student(lib, student):
    with pytest.raises(StudentNotBlacklisted) as exc:
        lib.unblacklist(student.id, "no reason")
    assert exc.value.kind == "conflict"


def test_unblacklist_unknown_student(lib):
    with pytest.raises(StudentUnknown):
        lib.unblacklist("missing", "reason")


def test_statistics_count_blacklisted(lib, student, clock, blacklisted):
    stats = lib.get_statistics()
    assert stats["blacklisted_students"] == 1
    assert stats["overdue_records"] == 1
    clock.advance(days=14, seconds=1)
    assert lib.get_statistics()["blacklisted_students"] == 0


def test_window_length_follows_policy(lib, student, clock, blacklisted):
    s = lib.get_student(student.id)
    assert s.blacklisted_until - clock() == timedelta(days=14)
