"""Loan record store: individual borrow/return entries."""

import logging
import sqlite3
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from lending.database import Scope
from lending.errors import AlreadyClosed, InvalidRequest, NotFound
from lending.models import Loan, LoanState, format_timestamp, utcnow

logger = logging.getLogger(__name__)

LOAN_COLUMNS = "id, title_id, borrower_id, opened_at, closed_at, state"


class LoanStore:
    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self.clock = clock

    def get(self, conn: sqlite3.Connection | Scope, loan_id: int) -> Optional[Loan]:
        row = conn.execute(f"SELECT {LOAN_COLUMNS} FROM loans WHERE id = ?", (loan_id,)).fetchone()
        return Loan.from_row(row) if row else None

    def require(self, conn: sqlite3.Connection | Scope, loan_id: int) -> Loan:
        loan = self.get(conn, loan_id)
        if loan is None:
            raise NotFound(f"Loan {loan_id} not found.")
        return loan

    def open_loan(self, scope: Scope, title_id: int, borrower_id: int) -> Loan:
        """Insert an OPEN loan; the caller has already validated both references."""
        scope.require_lock("titles", title_id)
        opened_at = self.clock()
        cursor = scope.execute(
            "INSERT INTO loans (title_id, borrower_id, opened_at, state) VALUES (?, ?, ?, ?)",
            (title_id, borrower_id, format_timestamp(opened_at), LoanState.OPEN.value),
        )
        return Loan(id=cursor.lastrowid, title_id=title_id, borrower_id=borrower_id, opened_at=opened_at)

    def close_loan(self, scope: Scope, loan_id: int) -> Loan:
        scope.require_lock("loans", loan_id)
        loan = self.require(scope, loan_id)
        if not loan.is_open:
            raise AlreadyClosed(f"Loan {loan_id} has already been returned.")
        closed_at = max(self.clock(), loan.opened_at)
        scope.execute(
            "UPDATE loans SET closed_at = ?, state = ? WHERE id = ?",
            (format_timestamp(closed_at), LoanState.CLOSED.value, loan_id),
        )
        loan.closed_at = closed_at
        loan.state = LoanState.CLOSED
        return loan

    def delete_loan(self, scope: Scope, loan_id: int) -> None:
        """Hard delete; compensating the ledger is the caller's job."""
        scope.require_lock("loans", loan_id)
        scope.execute("DELETE FROM loans WHERE id = ?", (loan_id,))

    def find_open_loans_for(self, conn: sqlite3.Connection | Scope, *, title_id: Optional[int] = None,
                            borrower_id: Optional[int] = None) -> Iterator[Loan]:
        """Yield the OPEN loans of one title or one borrower.

        Every call runs a fresh query, so the sequence can be restarted by
        calling again; no cursor state survives between calls.
        """
        if (title_id is None) == (borrower_id is None):
            raise InvalidRequest("Provide exactly one of title_id or borrower_id.")
        column, value = ("title_id", title_id) if title_id is not None else ("borrower_id", borrower_id)
        cursor = conn.execute(
            f"SELECT {LOAN_COLUMNS} FROM loans WHERE {column} = ? AND state = ? ORDER BY id",
            (value, LoanState.OPEN.value),
        )
        for row in cursor:
            yield Loan.from_row(row)

    def loan_ids_for_title(self, conn: sqlite3.Connection | Scope, title_id: int) -> List[int]:
        rows = conn.execute("SELECT id FROM loans WHERE title_id = ? ORDER BY id", (title_id,)).fetchall()
        return [row[0] for row in rows]

    def delete_for_title(self, scope: Scope, title_id: int) -> int:
        scope.require_lock("titles", title_id)
        cursor = scope.execute("DELETE FROM loans WHERE title_id = ?", (title_id,))
        return cursor.rowcount

    def list_loans(self, conn: sqlite3.Connection, *, borrower_id: Optional[int] = None, keyword: str = "",
                   state: Optional[str] = None, page: int = 1, limit: int = 6) -> Tuple[List[Dict[str, Any]], int]:
        """Paginated loan list joined with title and borrower columns, oldest first."""
        where = []
        params: List[Any] = []
        if borrower_id is not None:
            where.append("l.borrower_id = ?")
            params.append(borrower_id)
        keyword = (keyword or "").strip()
        if keyword:
            like = f"%{keyword}%"
            where.append("(t.title LIKE ? OR u.username LIKE ? OR u.student_id LIKE ? OR u.email LIKE ?)")
            params.extend([like, like, like, like])
        if state:
            state = state.strip().upper()
            if state not in {s.value for s in LoanState}:
                raise InvalidRequest(f"Unknown loan state: {state}")
            where.append("l.state = ?")
            params.append(state)
        where_clause = f"WHERE {' AND '.join(where)}" if where else ""

        total = conn.execute(
            f"""
            SELECT COUNT(*) FROM loans l
            JOIN titles t ON l.title_id = t.id
            LEFT JOIN users u ON l.borrower_id = u.id
            {where_clause}
            """,
            params,
        ).fetchone()[0]
        rows = conn.execute(
            f"""
            SELECT l.id, l.title_id, t.title AS title, t.author AS author,
                   l.borrower_id, u.username AS username, u.student_id AS student_id, u.email AS email,
                   l.opened_at, l.closed_at, l.state
            FROM loans l
            JOIN titles t ON l.title_id = t.id
            LEFT JOIN users u ON l.borrower_id = u.id
            {where_clause}
            ORDER BY l.opened_at ASC, l.id ASC
            LIMIT ? OFFSET ?
            """,
            params + [limit, (page - 1) * limit],
        ).fetchall()
        return [dict(row) for row in rows], total
