import logging
from typing import Any, Dict, List, Optional, Tuple

from lending.database import Database
from lending.engine import LendingEngine
from lending.errors import InvalidRequest
from lending.ledger import TITLE_COLUMNS, InventoryLedger
from lending.models import Title, TitleStatus
from utils.validators import CapacityValidator, TextValidator

logger = logging.getLogger(__name__)


class Catalog:
    """Title create/read/update/delete; copy counts go through the ledger and engine."""

    def __init__(self, database: Database, ledger: InventoryLedger, engine: LendingEngine) -> None:
        self.database = database
        self.ledger = ledger
        self.engine = engine

    def create_title(self, title: str, author: str, total_copies: int, publisher: str | None = None,
                     publish_date: str | None = None, price: Any = 0) -> Title:
        title = TextValidator.sanitize_text(title)
        author = TextValidator.sanitize_text(author)
        if not TextValidator.validate_title(title):
            raise InvalidRequest("Title is required and cannot be empty.")
        if not TextValidator.validate_author(author):
            raise InvalidRequest("Author is required and cannot be empty.")
        if not CapacityValidator.validate_new_total(total_copies):
            raise InvalidRequest("total_copies must be greater than 0.")

        with self.database.scope() as scope:
            created = self.ledger.insert(
                scope,
                title=title,
                author=author,
                total_copies=total_copies,
                publisher=TextValidator.sanitize_text(publisher) or None,
                publish_date=publish_date or None,
                price=CapacityValidator.normalize_price(price),
            )
        logger.info(f"Title {created.id} created: {created.title} x{created.total_copies}")
        return created

    def get_title(self, title_id: int) -> Title:
        with self.database.connection() as conn:
            return self.ledger.require(conn, title_id)

    def list_titles(self, keyword: str = "", status: Optional[str] = None, min_price: Optional[float] = None,
                    max_price: Optional[float] = None, page: int = 1, limit: int = 6) -> Tuple[List[Title], int]:
        """Filtered, paginated titles ordered by id."""
        where = []
        params: List[Any] = []
        keyword = (keyword or "").strip()
        if keyword:
            where.append("(title LIKE ? OR author LIKE ?)")
            params.extend([f"%{keyword}%", f"%{keyword}%"])
        if status:
            status = status.strip().upper()
            if status not in {s.value for s in TitleStatus}:
                raise InvalidRequest(f"Unknown title status: {status}")
            where.append("status = ?")
            params.append(status)
        if min_price is not None:
            where.append("price >= ?")
            params.append(min_price)
        if max_price is not None:
            where.append("price <= ?")
            params.append(max_price)
        where_clause = f"WHERE {' AND '.join(where)}" if where else ""

        with self.database.connection() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM titles {where_clause}", params).fetchone()[0]
            rows = conn.execute(
                f"SELECT {TITLE_COLUMNS} FROM titles {where_clause} ORDER BY id ASC LIMIT ? OFFSET ?",
                params + [limit, (page - 1) * limit],
            ).fetchall()
        return [Title.from_row(row) for row in rows], total

    def update_title(self, title_id: int, *, title: str | None = None, author: str | None = None,
                     publisher: str | None = None, publish_date: str | None = None, price: Any = None,
                     total_copies: int | None = None) -> Title:
        """Edit a title. Fields left as None keep their value; a new total re-clamps availability."""
        details: Dict[str, Any] = {}
        if title is not None:
            title = TextValidator.sanitize_text(title)
            if not TextValidator.validate_title(title):
                raise InvalidRequest("Title cannot be empty.")
            details["title"] = title
        if author is not None:
            author = TextValidator.sanitize_text(author)
            if not TextValidator.validate_author(author):
                raise InvalidRequest("Author cannot be empty.")
            details["author"] = author
        if publisher is not None:
            details["publisher"] = TextValidator.sanitize_text(publisher) or None
        if publish_date is not None:
            details["publish_date"] = publish_date or None
        if price is not None:
            details["price"] = CapacityValidator.normalize_price(price)
        if total_copies is not None and not CapacityValidator.validate_capacity(total_copies):
            raise InvalidRequest("total_copies cannot be negative.")
        return self.engine.change_capacity(title_id, new_total=total_copies, details=details)

    def delete_title(self, title_id: int) -> int:
        return self.engine.delete_title(title_id)

    def audit(self) -> List[Dict[str, Any]]:
        with self.database.connection() as conn:
            return self.ledger.audit(conn)
