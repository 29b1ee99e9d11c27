from datetime import timedelta

from conftest import START
from school_library import sweep as sweep_module
from school_library.models import AuditKind


def test_sweep_before_due_does_nothing(lib, copies, student, verify, clock):
    lib.issue(verify(student), copies[0].id)
    clock.advance(days=6)
    report = lib.run_sweep()
    assert report.to_dict() == {"checked": 0, "flagged": 0, "blacklisted": 0, "skipped": 0}
    assert not lib.get_student(student.id).is_blacklisted


def test_sweep_flags_and_blacklists(lib, book, copies, student, verify, clock):
    record = lib.issue(verify(student), copies[0].id)
    now = clock.advance(days=8)
    report = lib.run_sweep()
    assert (report.checked, report.flagged, report.blacklisted) == (1, 1, 1)

    flagged = lib.get_record(record.id)
    assert flagged.status == "borrowed"
    assert flagged.overdue_flagged_at == now

    s = lib.get_student(student.id)
    assert s.blacklisted_until == now + timedelta(days=14)
    assert book.title in s.blacklist_reason
    assert copies[0].serial in s.blacklist_reason
    assert record.id in s.blacklist_reason

    entry = lib.list_audit(kind=AuditKind.AUTO_BLACKLIST)[0]
    assert (entry.student_id, entry.record_id, entry.copy_id) == (student.id, record.id, copies[0].id)


def test_sweep_is_idempotent(lib, copies, student, verify, clock):
    lib.issue(verify(student), copies[0].id)
    clock.advance(days=8)
    lib.run_sweep()
    before = lib.get_student(student.id)

    clock.advance(hours=3)
    report = lib.run_sweep()
    assert (report.checked, report.flagged, report.blacklisted) == (1, 0, 0)
    after = lib.get_student(student.id)
    assert after.blacklisted_until == before.blacklisted_until
    assert after.blacklist_reason == before.blacklist_reason
    assert len(lib.list_audit(kind=AuditKind.AUTO_BLACKLIST)) == 1


def test_second_overdue_book_keeps_window(lib, copies, student, verify, clock):
    lib.issue(verify(student), copies[0].id, 1, "days")
    lib.issue(verify(student), copies[1].id, 3, "days")
    first_sweep = clock.advance(days=2)
    lib.run_sweep()
    until = lib.get_student(student.id).blacklisted_until
    assert until == first_sweep + timedelta(days=14)

    clock.advance(days=2)  # second copy now overdue as well
    report = lib.run_sweep()
    assert (report.flagged, report.blacklisted) == (1, 0)
    assert lib.get_student(student.id).blacklisted_until == until


def test_returned_records_are_not_swept(lib, copies, student, verify, clock):
    record = lib.issue(verify(student), copies[0].id)
    clock.advance(days=8)
    lib.return_book(record.id)
    report = lib.run_sweep()
    assert report.checked == 0
    assert not lib.get_student(student.id).is_blacklisted


def test_sweep_with_explicit_time(lib, copies, student, verify):
    lib.issue(verify(student), copies[0].id)
    report = lib.run_sweep(now=START + timedelta(days=10))
    assert report.blacklisted == 1
    assert lib.get_student(student.id).blacklisted_until == START + timedelta(days=24)


def test_unblacklist_then_issue_scenario(lib, copies, student, verify, clock):
    t0 = clock()
    lib.issue(verify(student), copies[0].id, 1, "days")
    t2 = clock.set(t0 + timedelta(days=2))
    lib.run_sweep()
    assert lib.get_student(student.id).blacklisted_until == t2 + timedelta(days=14)

    lib.unblacklist(student.id, "paid fine", admin_id="admin-7")
    assert not lib.get_student(student.id).is_blacklisted

    record = lib.issue(verify(student), copies[1].id)
    assert record.student_id == student.id

    # The first copy is still out, so the next sweep blacklists the student again.
    t3 = clock.advance(hours=1)
    report = lib.run_sweep()
    assert (report.checked, report.flagged, report.blacklisted) == (1, 0, 1)
    assert lib.get_student(student.id).blacklisted_until == t3 + timedelta(days=14)


def test_expired_window_with_book_still_out_blacklists_again(lib, copies, student, verify, clock):
    record = lib.issue(verify(student), copies[0].id, 1, "days")
    clock.advance(days=2)
    lib.run_sweep()

    later = clock.advance(days=15)
    assert not lib.get_student(student.id).is_blacklisted

    report = lib.run_sweep()
    assert report.to_dict() == {"checked": 1, "flagged": 0, "blacklisted": 1, "skipped": 0}
    s = lib.get_student(student.id)
    assert s.blacklisted_until == later + timedelta(days=14)
    assert record.id in s.blacklist_reason
    assert len(lib.list_audit(kind=AuditKind.AUTO_BLACKLIST)) == 2


def test_record_returned_during_sweep_is_skipped(lib, copies, student, verify, clock, monkeypatch):
    record = lib.issue(verify(student), copies[0].id)
    clock.advance(days=8)
    real_transaction = sweep_module.transaction

    def return_then_transaction(*args, **kwargs):
        # The book comes back after candidates were read, before the record is locked.
        lib.return_book(record.id)
        return real_transaction(*args, **kwargs)

    monkeypatch.setattr(sweep_module, "transaction", return_then_transaction)
    report = lib.run_sweep()
    assert report.to_dict() == {"checked": 1, "flagged": 0, "blacklisted": 0, "skipped": 1}
    assert not lib.get_student(student.id).is_blacklisted
    assert lib.get_record(record.id).status == "returned"
    assert lib.get_record(record.id).overdue_flagged_at is None
