import pytest

from lending.models import LoanState


@pytest.fixture
def borrowed(lib):
    title = lib.catalog.create_title("Ubik", "Philip K. Dick", 2)
    reader = lib.users.create_user("reader")
    return title, reader, [lib.borrow(title.id, reader.id) for _ in range(2)]


def test_release_closes_and_restocks(lib, borrowed):
    title, _, loan_ids = borrowed
    with lib.database.scope() as scope:
        scope.lock("loans", loan_ids[0])
        scope.lock("titles", title.id)
        scope.begin()
        closed = lib.cascade.release(scope, lib.loans.require(scope, loan_ids[0]))
    assert closed.state is LoanState.CLOSED
    assert lib.catalog.get_title(title.id).available_copies == 1


def test_close_borrower_loans_needs_every_loan_lock(lib, borrowed):
    title, reader, loan_ids = borrowed
    with pytest.raises(RuntimeError):
        with lib.database.scope() as scope:
            scope.lock("loans", loan_ids[0])
            scope.lock("titles", title.id)
            scope.begin()
            lib.cascade.close_borrower_loans(scope, reader.id)
    # nothing from the partial run survived the rollback
    assert lib.catalog.get_title(title.id).available_copies == 0
    assert lib.list_loans(state="OPEN")[1] == 2


def test_purge_title_counts_removed_loans(lib, borrowed):
    title, _, loan_ids = borrowed
    lib.return_loan(loan_ids[0])
    with lib.database.scope() as scope:
        scope.lock("titles", title.id)
        scope.begin()
        assert lib.cascade.purge_title(scope, title.id) == 2
    assert lib.list_loans()[1] == 0
    assert lib.catalog.get_title(title.id).available_copies == 1
