import logging
from typing import Any, Dict, List, Optional, Tuple

from config import Settings, settings as default_settings
from lending import stats
from lending.cascade import CascadeResolver
from lending.catalog import Catalog
from lending.database import initialize_database
from lending.engine import LendingEngine
from lending.ledger import InventoryLedger
from lending.loans import LoanStore
from lending.models import Loan
from lending.users import UserDirectory, UserStore

logger = logging.getLogger(__name__)


class Library:
    """One lending service bound to one database file."""

    def __init__(self, settings: Optional[Settings] = None, db_file: Optional[str] = None):
        self.settings = settings or default_settings
        self.db_file = db_file or self.settings.db_file
        self.database = initialize_database(
            self.db_file,
            busy_timeout=self.settings.db_busy_timeout,
            lock_timeout=self.settings.lock_timeout,
        )
        self.ledger = InventoryLedger()
        self.loans = LoanStore()
        self.user_store = UserStore()
        self.cascade = CascadeResolver(self.ledger, self.loans)
        self.engine = LendingEngine(self.database, self.ledger, self.loans, self.user_store, self.cascade)
        self.catalog = Catalog(self.database, self.ledger, self.engine)
        self.users = UserDirectory(self.database, self.user_store, self.engine)
        logger.info(f"Library opened on {self.db_file}")

    # --- Loans ---
    def borrow(self, title_id: int, borrower_id: int) -> int:
        return self.engine.borrow(title_id, borrower_id)

    def return_loan(self, loan_id: int, borrower_id: Optional[int] = None) -> Loan:
        return self.engine.return_loan(loan_id, borrower_id=borrower_id)

    def admin_delete_loan(self, loan_id: int) -> bool:
        return self.engine.admin_delete_loan(loan_id)

    def get_loan(self, loan_id: int) -> Loan:
        with self.database.connection() as conn:
            return self.loans.require(conn, loan_id)

    def list_loans(self, borrower_id: Optional[int] = None, keyword: str = "", state: Optional[str] = None,
                   page: int = 1, limit: Optional[int] = None) -> Tuple[List[Dict[str, Any]], int]:
        with self.database.connection() as conn:
            return self.loans.list_loans(
                conn,
                borrower_id=borrower_id,
                keyword=keyword,
                state=state,
                page=max(page, 1),
                limit=self.page_size(limit),
            )

    # --- Reporting ---
    def audit(self) -> List[Dict[str, Any]]:
        return self.catalog.audit()

    def get_statistics(self) -> Dict[str, Any]:
        return stats.get_overview(self.database)

    def page_size(self, limit: Optional[int]) -> int:
        if not limit or limit < 1:
            return self.settings.default_page_size
        return min(limit, self.settings.max_page_size)

    def close(self) -> None:
        # Connections are per scope; only the lock registry is left behind.
        if len(self.database.row_locks):
            logger.warning(f"Library closed with {len(self.database.row_locks)} row lock(s) still held")
