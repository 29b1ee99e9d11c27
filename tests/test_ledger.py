from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import START
from school_library.errors import (
    AlreadyReturned,
    CopyNotFound,
    CopyUnavailable,
    IdentityNotVerified,
    InvalidPeriod,
    NoFineOwed,
    RecordNotFound,
    RecordStillOpen,
    StudentUnknown,
)
from school_library.models import AuditKind
from school_library.verification import LibrarianCardVerifier, VerificationFailed, VerifiedStudentId


def test_issue_uses_title_default_period(lib, copies, student, verify):
    record = lib.issue(verify(student), copies[0].id)
    assert record.student_id == student.id
    assert record.borrowed_at == START
    assert record.due_at == START + timedelta(days=7)
    assert record.is_open
    assert lib.get_copy(copies[0].id).status == "borrowed"
    entries = lib.list_audit(record_id=record.id)
    assert [e.kind for e in entries] == [AuditKind.ISSUE]


def test_issue_with_explicit_period(lib, copies, student, verify):
    record = lib.issue(verify(student), copies[0].id, 3, "hours")
    assert record.due_at == START + timedelta(hours=3)


def test_issue_with_only_unit_takes_title_value(lib, copies, student, verify):
    record = lib.issue(verify(student), copies[0].id, period_unit="weeks")
    assert record.due_at == START + timedelta(weeks=7)


def test_issue_with_month_period(lib, copies, student, verify, clock):
    clock.set(START.replace(month=1, day=31))
    record = lib.issue(verify(student), copies[0].id, 1, "months")
    assert record.due_at == START.replace(month=2, day=29)


@pytest.mark.parametrize("value, unit", [(0, "days"), (10**6, "years"), (10**9, "days")])
def test_issue_rejects_invalid_period_and_leaves_copy_available(lib, copies, student, verify, value, unit):
    with pytest.raises(InvalidPeriod):
        lib.issue(verify(student), copies[0].id, value, unit)
    assert lib.get_copy(copies[0].id).is_available
    assert lib.list_records() == []


def test_issue_borrowed_copy_conflicts(lib, copies, student, other_student, verify):
    first = lib.issue(verify(student), copies[0].id)
    with pytest.raises(CopyUnavailable) as exc:
        lib.issue(verify(other_student), copies[0].id)
    assert exc.value.kind == "conflict"
    assert exc.value.fields["open_record_id"] == first.id
    assert len(lib.list_records(copy_id=copies[0].id)) == 1
    # No Issue entry for the rejected attempt
    assert len(lib.list_audit(kind=AuditKind.ISSUE)) == 1


def test_issue_unknown_copy(lib, student, verify):
    with pytest.raises(CopyNotFound):
        lib.issue(verify(student), "missing")


def test_issue_unknown_student(lib, copies):
    token = VerifiedStudentId(student_id="missing", method="card", verified_at=START)
    with pytest.raises(StudentUnknown):
        lib.issue(token, copies[0].id)


def test_issue_requires_verified_identity(lib, copies, student):
    with pytest.raises(IdentityNotVerified):
        lib.issue(student.id, copies[0].id)
    with pytest.raises(IdentityNotVerified) as exc:
        lib.issue(VerificationFailed(student.id, "Fingerprint did not match", "fingerprint"), copies[0].id)
    assert exc.value.fields["reason"] == "Fingerprint did not match"
    assert lib.get_copy(copies[0].id).is_available


def test_wrong_card_fails_verification_and_is_audited(lib, copies, student):
    result = lib.verify_identity(LibrarianCardVerifier(lib.directory), student.id, {"admission_number": "ADM-1"})
    assert isinstance(result, VerificationFailed)
    with pytest.raises(IdentityNotVerified):
        lib.issue(result, copies[0].id)
    kinds = [e.kind for e in lib.list_audit(student_id=student.id)]
    assert kinds == [AuditKind.VERIFICATION_FAILED]


def test_stale_verification_is_rejected(lib, copies, student, verify, clock):
    token = verify(student)
    clock.advance(seconds=lib.policy.verification_max_age.total_seconds() + 1)
    with pytest.raises(IdentityNotVerified):
        lib.issue(token, copies[0].id)


def test_return_on_time(lib, copies, student, verify, clock):
    record = lib.issue(verify(student), copies[0].id)
    clock.advance(days=6)
    receipt = lib.return_book(record.id)
    assert receipt.fine_amount == Decimal("0.00")
    assert receipt.record.status == "returned"
    assert receipt.record.returned_at == clock()
    assert lib.get_copy(copies[0].id).is_available
    assert lib.list_records(copy_id=copies[0].id)[0].status == "returned"


def test_return_late_charges_fine(lib, copies, student, verify, clock):
    record = lib.issue(verify(student), copies[0].id)
    clock.advance(days=8, hours=12)  # 1.5 days late
    assert lib.current_fine(record.id) == Decimal("20.00")
    receipt = lib.return_book(record.id)
    assert receipt.fine_amount == Decimal("20.00")
    assert lib.get_record(record.id).fine_amount == Decimal("20.00")
    detail = lib.list_audit(kind=AuditKind.RETURN)[0].detail
    assert "late" in detail


def test_double_return_fails(lib, copies, student, verify):
    record = lib.issue(verify(student), copies[0].id)
    lib.return_book(record.id)
    with pytest.raises(AlreadyReturned) as exc:
        lib.return_book(record.id)
    assert exc.value.fields["record_id"] == record.id
    assert lib.get_copy(copies[0].id).is_available


def test_return_unknown_record(lib):
    with pytest.raises(RecordNotFound):
        lib.return_book("missing")


def test_settle_fine(lib, copies, student, verify, clock):
    record = lib.issue(verify(student), copies[0].id)
    clock.advance(days=9)
    with pytest.raises(RecordStillOpen):
        lib.settle_fine(record.id)
    lib.return_book(record.id)
    paid = lib.settle_fine(record.id)
    assert paid.fine_paid
    assert paid.fine_amount == Decimal("20.00")
    with pytest.raises(NoFineOwed):
        lib.settle_fine(record.id)
    assert [e.kind for e in lib.list_audit(kind=AuditKind.FINE_PAID)] == [AuditKind.FINE_PAID]


def test_settle_fine_without_fine(lib, copies, student, verify):
    record = lib.issue(verify(student), copies[0].id)
    lib.return_book(record.id)
    with pytest.raises(NoFineOwed):
        lib.settle_fine(record.id)


def test_list_records_filters(lib, copies, student, other_student, verify, clock):
    first = lib.issue(verify(student), copies[0].id, 1, "days")
    clock.advance(hours=1)
    second = lib.issue(verify(other_student), copies[1].id, 30, "days")
    clock.advance(days=2)

    assert [r.id for r in lib.list_records()] == [second.id, first.id]
    assert [r.id for r in lib.list_records(student_id=student.id)] == [first.id]
    assert [r.id for r in lib.list_records(overdue_only=True)] == [first.id]

    lib.return_book(first.id)
    assert lib.list_records(overdue_only=True) == []
    assert [r.id for r in lib.list_records(status="returned")] == [first.id]
    assert [r.id for r in lib.list_records(status="borrowed")] == [second.id]


def test_issue_return_cycles_keep_one_open_record_per_copy(lib, copies, student, other_student, verify, clock):
    borrowers = [student, other_student]
    for i in range(6):
        record = lib.issue(verify(borrowers[i % 2]), copies[0].id)
        with pytest.raises(CopyUnavailable):
            lib.issue(verify(borrowers[(i + 1) % 2]), copies[0].id)
        open_records = lib.list_records(copy_id=copies[0].id, status="borrowed")
        assert [r.id for r in open_records] == [record.id]
        clock.advance(days=1)
        lib.return_book(record.id)
        assert lib.list_records(copy_id=copies[0].id, status="borrowed") == []
    # History is kept
    assert len(lib.list_records(copy_id=copies[0].id)) == 6
