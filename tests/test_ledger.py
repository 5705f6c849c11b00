import pytest

from lending.errors import InvalidRequest, OutOfStock
from lending.models import TitleStatus


def _title(lib, copies=3):
    return lib.catalog.create_title("Dune", "Frank Herbert", copies)


def test_new_title_starts_fully_available(lib):
    title = _title(lib, 3)
    assert title.total_copies == 3
    assert title.available_copies == 3
    assert title.status is TitleStatus.IN_STOCK


def test_decrement_to_zero_marks_all_loaned(lib):
    title = _title(lib, 1)
    with lib.database.scope() as scope:
        scope.lock("titles", title.id)
        scope.begin()
        updated = lib.ledger.decrement_available(scope, title.id)
    assert updated.available_copies == 0
    assert updated.status is TitleStatus.ALL_LOANED


def test_decrement_without_copies_is_out_of_stock(lib):
    title = _title(lib, 1)
    lib.catalog.update_title(title.id, total_copies=0)
    with pytest.raises(OutOfStock):
        with lib.database.scope() as scope:
            scope.lock("titles", title.id)
            scope.begin()
            lib.ledger.decrement_available(scope, title.id)


def test_increment_is_clamped_to_total(lib):
    title = _title(lib, 2)
    with lib.database.scope() as scope:
        scope.lock("titles", title.id)
        scope.begin()
        updated = lib.ledger.increment_available(scope, title.id)
    assert updated.available_copies == 2


def test_mutation_requires_title_lock(lib):
    title = _title(lib, 2)
    with pytest.raises(RuntimeError):
        with lib.database.scope() as scope:
            scope.begin()
            lib.ledger.decrement_available(scope, title.id)
    assert lib.catalog.get_title(title.id).available_copies == 2


@pytest.mark.parametrize(
    "total, borrowed, new_total, expected",
    [
        (5, 2, 8, 6),
        (5, 2, 3, 1),
        (5, 2, 2, 0),
        (5, 2, 1, 0),
        (5, 0, 0, 0),
    ],
)
def test_capacity_change_keeps_borrowed_copies(lib, total, borrowed, new_total, expected):
    title = _title(lib, total)
    reader = lib.users.create_user("reader")
    for _ in range(borrowed):
        lib.borrow(title.id, reader.id)

    updated = lib.catalog.update_title(title.id, total_copies=new_total)

    assert updated.total_copies == new_total
    assert updated.available_copies == expected
    assert updated.status is TitleStatus.for_available(expected)


def test_negative_capacity_is_rejected(lib):
    title = _title(lib, 2)
    with lib.database.scope() as scope:
        scope.lock("titles", title.id)
        scope.begin()
        with pytest.raises(InvalidRequest):
            lib.ledger.adjust_on_capacity_change(scope, title.id, -1)


def test_audit_reports_out_of_band_edits(lib):
    title = _title(lib, 3)
    assert lib.audit() == []

    with lib.database.connection() as conn:
        conn.execute("UPDATE titles SET available_copies = 1 WHERE id = ?", (title.id,))

    problems = lib.audit()
    assert len(problems) == 1
    assert problems[0]["title_id"] == title.id
    assert problems[0]["expected_available"] == 3
