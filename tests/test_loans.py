from datetime import datetime, timedelta, timezone

import pytest

from lending.errors import AlreadyClosed, InvalidRequest, NotFound
from lending.loans import LoanStore
from lending.models import LoanState


@pytest.fixture
def setup(lib):
    title = lib.catalog.create_title("Solaris", "Stanislaw Lem", 3)
    reader = lib.users.create_user("reader")
    return title, reader


def test_open_loan_records_open_state(lib, setup):
    title, reader = setup
    loan = lib.get_loan(lib.borrow(title.id, reader.id))
    assert loan.state is LoanState.OPEN
    assert loan.closed_at is None
    assert loan.borrower_id == reader.id


def test_close_loan_never_precedes_open(lib, setup):
    title, reader = setup
    loan_id = lib.borrow(title.id, reader.id)
    opened_at = lib.get_loan(loan_id).opened_at

    # A clock running behind the opening time still yields closed_at >= opened_at
    lib.loans.clock = lambda: opened_at - timedelta(hours=1)
    closed = lib.return_loan(loan_id)

    assert closed.state is LoanState.CLOSED
    assert closed.closed_at == opened_at


def test_close_loan_twice_is_already_closed(lib, setup):
    title, reader = setup
    loan_id = lib.borrow(title.id, reader.id)
    with lib.database.scope() as scope:
        scope.lock("loans", loan_id)
        scope.begin()
        lib.loans.close_loan(scope, loan_id)
    with pytest.raises(AlreadyClosed):
        with lib.database.scope() as scope:
            scope.lock("loans", loan_id)
            scope.begin()
            lib.loans.close_loan(scope, loan_id)


def test_close_missing_loan_is_not_found(lib):
    with pytest.raises(NotFound):
        with lib.database.scope() as scope:
            scope.lock("loans", 999)
            scope.begin()
            lib.loans.close_loan(scope, 999)


def test_find_open_loans_is_restartable(lib, setup):
    title, reader = setup
    first = lib.borrow(title.id, reader.id)
    second = lib.borrow(title.id, reader.id)
    lib.return_loan(first)

    with lib.database.connection() as conn:
        by_title = [loan.id for loan in lib.loans.find_open_loans_for(conn, title_id=title.id)]
        again = [loan.id for loan in lib.loans.find_open_loans_for(conn, title_id=title.id)]
        by_borrower = [loan.id for loan in lib.loans.find_open_loans_for(conn, borrower_id=reader.id)]

    assert by_title == again == by_borrower == [second]


def test_find_open_loans_needs_exactly_one_filter(lib):
    with lib.database.connection() as conn:
        with pytest.raises(InvalidRequest):
            list(lib.loans.find_open_loans_for(conn))
        with pytest.raises(InvalidRequest):
            list(lib.loans.find_open_loans_for(conn, title_id=1, borrower_id=1))


def test_list_loans_filters_and_paginates(lib, setup):
    title, reader = setup
    other = lib.users.create_user("someone", student_id="S-42")
    ids = [lib.borrow(title.id, reader.id), lib.borrow(title.id, other.id), lib.borrow(title.id, reader.id)]
    lib.return_loan(ids[0])

    rows, total = lib.list_loans(borrower_id=reader.id)
    assert total == 2
    assert [r["id"] for r in rows] == [ids[0], ids[2]]
    assert rows[0]["title"] == "Solaris"

    rows, total = lib.list_loans(state="open")
    assert total == 2

    rows, total = lib.list_loans(keyword="S-42")
    assert [r["id"] for r in rows] == [ids[1]]

    rows, total = lib.list_loans(page=2, limit=2)
    assert total == 3
    assert [r["id"] for r in rows] == [ids[2]]


def test_list_loans_rejects_unknown_state(lib):
    with pytest.raises(InvalidRequest):
        lib.list_loans(state="LOST")


def test_store_uses_injected_clock(lib, setup):
    title, reader = setup
    fixed = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    lib.loans.clock = lambda: fixed
    loan = lib.get_loan(lib.borrow(title.id, reader.id))
    assert loan.opened_at == fixed
    assert isinstance(LoanStore().clock(), datetime)
