import pytest

from school_library.errors import (
    ConflictError,
    CopyNotFound,
    CopyUnavailable,
    DuplicateCopy,
    InvalidPeriod,
    InvalidRequest,
    NotFoundError,
    TitleLocked,
    TitleNotFound,
)


def test_add_title_with_copies(lib, book):
    assert book.due_period_value == 7
    assert book.due_period_unit == "days"
    copies = lib.list_copies(book.id)
    assert [c.serial for c in copies] == ["TFA-001", "TFA-002"]
    assert all(c.is_available for c in copies)


def test_add_title_uses_default_period(lib):
    title = lib.add_title("Kifo Kisimani", "Kithaka wa Mberia")
    assert (title.due_period_value, title.due_period_unit) == (
        lib.policy.default_due_period_value,
        lib.policy.default_due_period_unit,
    )


def test_add_title_requires_title_and_author(lib):
    with pytest.raises(InvalidRequest):
        lib.add_title("  ", "Someone")


def test_add_title_rejects_bad_period(lib):
    with pytest.raises(InvalidPeriod):
        lib.add_title("Blossoms of the Savannah", "H. R. Ole Kulet", due_period_value=0, due_period_unit="days")


def test_duplicate_serial_in_one_call_rolls_back_title(lib):
    with pytest.raises(DuplicateCopy):
        lib.add_title("The River and the Source", "Margaret Ogola", serials=["RS-1", "rs-1"])
    assert lib.list_titles() == []


def test_add_copy_normalizes_serial(lib, book):
    copy = lib.add_copy(book.id, " tfa 003 ")
    assert copy.serial == "TFA003"
    assert lib.find_copy_by_serial("tfa003").id == copy.id


def test_add_copy_duplicate_serial(lib, book):
    with pytest.raises(DuplicateCopy) as exc:
        lib.add_copy(book.id, "TFA-001")
    assert isinstance(exc.value, ConflictError)
    assert exc.value.fields["serial"] == "TFA-001"


def test_add_copy_unknown_title(lib):
    with pytest.raises(TitleNotFound):
        lib.add_copy("missing", "X-1")


def test_get_copy_missing_is_not_found(lib):
    with pytest.raises(CopyNotFound) as exc:
        lib.get_copy("missing")
    assert isinstance(exc.value, NotFoundError)
    assert isinstance(exc.value, CopyUnavailable)
    assert exc.value.kind == "not_found"


def test_list_titles_query(lib, book):
    lib.add_title("Betrayal in the City", "Francis Imbuga", category="Language")
    assert [t.title for t in lib.list_titles()] == ["Betrayal in the City", "Things Fall Apart"]
    assert [t.title for t in lib.list_titles("achebe")] == ["Things Fall Apart"]
    assert lib.list_titles("nothing matches") == []


def test_list_copies_status_filter(lib, book):
    assert len(lib.list_copies(status="available")) == 2
    assert lib.list_copies(status="borrowed") == []
    with pytest.raises(InvalidRequest):
        lib.list_copies(status="lost")


def test_update_title_without_copies(lib):
    title = lib.add_title("Draft", "Unknown")
    updated = lib.update_title(title.id, title="The Pearl", author="John Steinbeck")
    assert (updated.title, updated.author) == ("The Pearl", "John Steinbeck")


def test_update_title_locked_once_copies_exist(lib, book):
    with pytest.raises(TitleLocked) as exc:
        lib.update_title(book.id, title="Renamed")
    assert exc.value.fields["copies"] == 2
    assert lib.get_title(book.id).title == "Things Fall Apart"


def test_update_title_requires_fields(lib, book):
    with pytest.raises(InvalidRequest):
        lib.update_title(book.id)


def test_set_due_period(lib, book):
    updated = lib.set_due_period(book.id, 2, "Weeks")
    assert (updated.due_period_value, updated.due_period_unit) == (2, "weeks")
    with pytest.raises(InvalidPeriod):
        lib.set_due_period(book.id, 2, "semesters")
    with pytest.raises(TitleNotFound):
        lib.set_due_period("missing", 1, "days")
