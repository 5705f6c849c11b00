"""Lending engine: borrow, return and deletion transitions as atomic scopes.

Every operation follows the same shape:

1. lock the row keys it will touch (borrower, loans, titles, in that order),
   reading only what is needed to discover further keys;
2. begin the write transaction and re-read every row the decision depends on;
3. apply the transition, then commit. Any exception rolls the scope back.

Preconditions raise typed errors from :mod:`lending.errors` before anything is
written. Nothing is retried here; :class:`~lending.errors.StorageFailure` is
the caller's to retry.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Optional

from lending.cascade import CascadeResolver
from lending.database import Database
from lending.errors import AlreadyClosed, InvalidRequest, LendingError, StorageFailure, Unauthorized
from lending.ledger import InventoryLedger
from lending.loans import LoanStore
from lending.models import Loan, Title
from lending.users import UserStore

logger = logging.getLogger(__name__)


@contextmanager
def _rejections(action: str):
    try:
        yield
    except StorageFailure:
        raise
    except LendingError as exc:
        logger.warning(f"{action} rejected ({exc.code}): {exc.message}")
        raise


class LendingEngine:
    def __init__(self, database: Database, ledger: InventoryLedger, loans: LoanStore, users: UserStore,
                 cascade: Optional[CascadeResolver] = None) -> None:
        self.database = database
        self.ledger = ledger
        self.loans = loans
        self.users = users
        self.cascade = cascade or CascadeResolver(ledger, loans)

    def borrow(self, title_id: int, borrower_id: int) -> int:
        """Lend one copy of ``title_id`` to ``borrower_id`` and return the new loan id."""
        with _rejections(f"Borrow of title {title_id} by user {borrower_id}"):
            with self.database.scope() as scope:
                scope.lock("users", borrower_id)
                scope.lock("titles", title_id)
                scope.begin()
                borrower = self.users.require(scope, borrower_id)
                if not borrower.is_active:
                    raise Unauthorized(f"User {borrower_id} is inactive and cannot borrow.")
                self.ledger.decrement_available(scope, title_id)
                loan = self.loans.open_loan(scope, title_id, borrower_id)
        logger.info(f"Loan {loan.id} opened: title {title_id} -> user {borrower_id}")
        return loan.id

    def return_loan(self, loan_id: int, borrower_id: Optional[int] = None) -> Loan:
        """Close an open loan and restore its copy.

        A second return of the same loan raises ``AlreadyClosed`` and changes
        nothing. When ``borrower_id`` is given the loan must belong to it.
        """
        with _rejections(f"Return of loan {loan_id}"):
            with self.database.scope() as scope:
                scope.lock("loans", loan_id)
                loan = self.loans.require(scope, loan_id)
                if borrower_id is not None and loan.borrower_id != borrower_id:
                    raise Unauthorized(f"Loan {loan_id} belongs to another user.")
                if not loan.is_open:
                    raise AlreadyClosed(f"Loan {loan_id} has already been returned.")
                scope.lock("titles", loan.title_id)
                scope.begin()
                loan = self.loans.require(scope, loan_id)
                closed = self.cascade.release(scope, loan)
        logger.info(f"Loan {loan_id} returned: title {closed.title_id}")
        return closed

    def admin_delete_loan(self, loan_id: int) -> bool:
        """Remove a loan record outright.

        Returns True when the loan was still open and its copy was restored.
        """
        with _rejections(f"Delete of loan {loan_id}"):
            with self.database.scope() as scope:
                scope.lock("loans", loan_id)
                loan = self.loans.require(scope, loan_id)
                scope.lock("titles", loan.title_id)
                scope.begin()
                loan = self.loans.require(scope, loan_id)
                restored = loan.is_open
                if restored:
                    self.ledger.increment_available(scope, loan.title_id)
                self.loans.delete_loan(scope, loan_id)
        logger.info(f"Loan {loan_id} deleted (copy restored: {restored})")
        return restored

    def delete_title(self, title_id: int) -> int:
        """Delete a title and every loan that references it; returns the loans removed."""
        with _rejections(f"Delete of title {title_id}"):
            with self.database.scope() as scope:
                self.ledger.require(scope, title_id)
                scope.lock_many("loans", self.loans.loan_ids_for_title(scope, title_id))
                scope.lock("titles", title_id)
                scope.begin()
                self.ledger.require(scope, title_id)
                removed = self.cascade.purge_title(scope, title_id)
                self.ledger.remove(scope, title_id)
        logger.info(f"Title {title_id} deleted with {removed} loan record(s)")
        return removed

    def delete_borrower(self, borrower_id: int, acting_user_id: Optional[int] = None) -> int:
        """Auto-return a borrower's open loans, then delete the borrower.

        Returns the number of loans that were closed on the way.
        """
        with _rejections(f"Delete of user {borrower_id}"):
            if acting_user_id is not None and acting_user_id == borrower_id:
                raise InvalidRequest("You cannot delete the account you are signed in with.")
            with self.database.scope() as scope:
                scope.lock("users", borrower_id)
                self.users.require(scope, borrower_id)
                open_loans = list(self.loans.find_open_loans_for(scope, borrower_id=borrower_id))
                scope.lock_many("loans", [loan.id for loan in open_loans])
                scope.lock_many("titles", [loan.title_id for loan in open_loans])
                scope.begin()
                self.users.require(scope, borrower_id)
                closed = self.cascade.close_borrower_loans(scope, borrower_id)
                self.users.delete(scope, borrower_id)
        logger.info(f"User {borrower_id} deleted, {closed} open loan(s) auto-returned")
        return closed

    def change_capacity(self, title_id: int, new_total: Optional[int] = None,
                        details: Optional[Dict[str, Any]] = None) -> Title:
        """Edit a title's details and/or copy count in one scope."""
        with _rejections(f"Update of title {title_id}"):
            with self.database.scope() as scope:
                scope.lock("titles", title_id)
                scope.begin()
                self.ledger.require(scope, title_id)
                if details:
                    self.ledger.update_details(scope, title_id, details)
                if new_total is not None:
                    self.ledger.adjust_on_capacity_change(scope, title_id, new_total)
                return self.ledger.require(scope, title_id)
