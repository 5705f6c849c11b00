"""Inventory ledger: the copy counts of every title.

All mutations require the caller's scope to hold the title's row lock inside an
open transaction, so read-decide-write sequences on one title are linearised.
"""

import logging
import sqlite3
from typing import Any, Dict, List, Optional

from lending.database import Scope
from lending.errors import InvalidRequest, NotFound, OutOfStock
from lending.models import Title, TitleStatus

logger = logging.getLogger(__name__)

TITLE_COLUMNS = """
    id, title, author, publisher, publish_date, price,
    total_copies, available_copies, status, created_at
"""
DETAIL_COLUMNS = {"title", "author", "publisher", "publish_date", "price"}


class InventoryLedger:
    """Owns ``total_copies``, ``available_copies`` and the derived status of titles."""

    def get(self, conn: sqlite3.Connection | Scope, title_id: int) -> Optional[Title]:
        row = conn.execute(f"SELECT {TITLE_COLUMNS} FROM titles WHERE id = ?", (title_id,)).fetchone()
        return Title.from_row(row) if row else None

    def require(self, conn: sqlite3.Connection | Scope, title_id: int) -> Title:
        title = self.get(conn, title_id)
        if title is None:
            raise NotFound(f"Title {title_id} not found.")
        return title

    def insert(self, scope: Scope, *, title: str, author: str, total_copies: int, publisher: str | None = None,
               publish_date: str | None = None, price: float = 0.0) -> Title:
        """Register a new title with every copy available."""
        if total_copies <= 0:
            raise InvalidRequest("total_copies must be greater than 0.")
        scope.begin()
        cursor = scope.execute(
            """
            INSERT INTO titles (title, author, publisher, publish_date, price,
                                total_copies, available_copies, status)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (title, author, publisher, publish_date, price, total_copies, total_copies,
             TitleStatus.for_available(total_copies).value),
        )
        return self.require(scope, cursor.lastrowid)

    def decrement_available(self, scope: Scope, title_id: int) -> Title:
        """Take one copy off the shelf; ``OutOfStock`` when none is left."""
        scope.require_lock("titles", title_id)
        title = self.require(scope, title_id)
        if title.available_copies <= 0:
            raise OutOfStock(f"No copies of title {title_id} are available.")
        return self._write_available(scope, title, title.available_copies - 1)

    def increment_available(self, scope: Scope, title_id: int) -> Title:
        """Put one copy back, never exceeding ``total_copies``."""
        scope.require_lock("titles", title_id)
        title = self.require(scope, title_id)
        available = min(title.available_copies + 1, title.total_copies)
        if available == title.available_copies:
            logger.warning(f"Title {title_id} already has all {title.total_copies} copies available; increment clamped")
        return self._write_available(scope, title, available)

    def adjust_on_capacity_change(self, scope: Scope, title_id: int, new_total: int) -> Title:
        """Change ``total_copies`` while keeping the copies out on loan out on loan."""
        if new_total < 0:
            raise InvalidRequest("total_copies cannot be negative.")
        scope.require_lock("titles", title_id)
        title = self.require(scope, title_id)
        borrowed = max(title.total_copies - title.available_copies, 0)
        available = min(max(new_total - borrowed, 0), new_total)
        scope.execute(
            "UPDATE titles SET total_copies = ?, available_copies = ?, status = ? WHERE id = ?",
            (new_total, available, TitleStatus.for_available(available).value, title_id),
        )
        logger.info(f"Title {title_id} capacity {title.total_copies} -> {new_total}, available {available}")
        return self.require(scope, title_id)

    def update_details(self, scope: Scope, title_id: int, details: Dict[str, Any]) -> None:
        """Update descriptive columns; copy counts only change through the methods above."""
        scope.require_lock("titles", title_id)
        unknown = set(details) - DETAIL_COLUMNS
        if unknown:
            raise InvalidRequest(f"Cannot update field(s): {', '.join(sorted(unknown))}")
        if not details:
            return
        set_clause = ", ".join(f"{name} = ?" for name in details)
        scope.execute(f"UPDATE titles SET {set_clause} WHERE id = ?", list(details.values()) + [title_id])

    def remove(self, scope: Scope, title_id: int) -> None:
        scope.require_lock("titles", title_id)
        scope.execute("DELETE FROM titles WHERE id = ?", (title_id,))

    def _write_available(self, scope: Scope, title: Title, available: int) -> Title:
        status = TitleStatus.for_available(available)
        scope.execute(
            "UPDATE titles SET available_copies = ?, status = ? WHERE id = ?",
            (available, status.value, title.id),
        )
        title.available_copies = available
        title.status = status
        return title

    def audit(self, conn: sqlite3.Connection) -> List[Dict[str, Any]]:
        """Titles whose available count disagrees with their open loans."""
        rows = conn.execute("""
            SELECT t.id, t.title, t.total_copies, t.available_copies, t.status,
                   COUNT(l.id) AS open_loans
            FROM titles t
            LEFT JOIN loans l ON l.title_id = t.id AND l.state = 'OPEN'
            GROUP BY t.id
            ORDER BY t.id
        """).fetchall()
        problems = []
        for row in rows:
            expected = max(row["total_copies"] - row["open_loans"], 0)
            if row["available_copies"] != expected or row["open_loans"] > row["total_copies"]:
                problems.append({
                    "title_id": row["id"],
                    "title": row["title"],
                    "total_copies": row["total_copies"],
                    "available_copies": row["available_copies"],
                    "open_loans": row["open_loans"],
                    "expected_available": expected,
                })
        return problems
