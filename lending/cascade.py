"""Compensating changes applied when loans lose their title or borrower."""

import logging

from lending.database import Scope
from lending.ledger import InventoryLedger
from lending.loans import LoanStore
from lending.models import Loan

logger = logging.getLogger(__name__)


class CascadeResolver:
    """Single home of the auto-return logic shared by returns and deletions."""

    def __init__(self, ledger: InventoryLedger, loans: LoanStore) -> None:
        self.ledger = ledger
        self.loans = loans

    def release(self, scope: Scope, loan: Loan) -> Loan:
        """Close an open loan and put its copy back on the shelf."""
        closed = self.loans.close_loan(scope, loan.id)
        self.ledger.increment_available(scope, loan.title_id)
        return closed

    def purge_title(self, scope: Scope, title_id: int) -> int:
        """Delete every loan of a title that is about to disappear.

        No availability is restored because the title row goes with them.
        """
        removed = self.loans.delete_for_title(scope, title_id)
        if removed:
            logger.info(f"Removed {removed} loan record(s) of title {title_id}")
        return removed

    def close_borrower_loans(self, scope: Scope, borrower_id: int) -> int:
        """Auto-return every open loan of a borrower who is about to be removed."""
        open_loans = list(self.loans.find_open_loans_for(scope, borrower_id=borrower_id))
        for loan in open_loans:
            self.release(scope, loan)
        if open_loans:
            logger.info(f"Auto-returned {len(open_loans)} open loan(s) of borrower {borrower_id}")
        return len(open_loans)
