from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional


class TitleStatus(str, Enum):
    """Derived availability of a title."""
    IN_STOCK = "IN_STOCK"
    ALL_LOANED = "ALL_LOANED"

    @classmethod
    def for_available(cls, available_copies: int) -> "TitleStatus":
        return cls.ALL_LOANED if available_copies == 0 else cls.IN_STOCK


class LoanState(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class Role(str, Enum):
    ADMIN = "admin"
    USER = "user"

    @classmethod
    def normalize(cls, value: Optional[str]) -> "Role":
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.USER


class UserStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"

    @classmethod
    def normalize(cls, value: Optional[str]) -> "UserStatus":
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.ACTIVE


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    # Fixed precision keeps stored timestamps comparable as strings.
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Title:
    """A catalog entry aggregating ``total_copies`` physical copies of one book."""

    def __init__(self, id: int, title: str, author: str, total_copies: int, available_copies: int,
                 status: TitleStatus | str | None = None, publisher: str | None = None,
                 publish_date: str | None = None, price: float = 0.0, created_at: str | None = None) -> None:
        self.id = id
        self.title = title
        self.author = author
        self.total_copies = total_copies
        self.available_copies = available_copies
        self.status = TitleStatus(status) if status else TitleStatus.for_available(available_copies)
        self.publisher = publisher
        self.publish_date = publish_date
        self.price = price or 0.0
        self.created_at = created_at

    def __str__(self) -> str:
        return f"{self.title} by {self.author} ({self.available_copies}/{self.total_copies} available)"

    @property
    def borrowed_copies(self) -> int:
        return self.total_copies - self.available_copies

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "publisher": self.publisher,
            "publish_date": self.publish_date,
            "price": self.price,
            "total_copies": self.total_copies,
            "available_copies": self.available_copies,
            "status": self.status.value,
            "created_at": self.created_at,
        }

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Title":
        data = dict(row)
        return Title(
            id=data["id"],
            title=data["title"],
            author=data["author"],
            total_copies=data["total_copies"],
            available_copies=data["available_copies"],
            status=data.get("status"),
            publisher=data.get("publisher"),
            publish_date=data.get("publish_date"),
            price=data.get("price") or 0.0,
            created_at=data.get("created_at"),
        )


class Loan:
    """One lending event linking a title to a borrower."""

    def __init__(self, id: int, title_id: int, borrower_id: int | None, opened_at: datetime,
                 closed_at: datetime | None = None, state: LoanState | str = LoanState.OPEN) -> None:
        self.id = id
        self.title_id = title_id
        self.borrower_id = borrower_id
        self.opened_at = opened_at
        self.closed_at = closed_at
        self.state = LoanState(state)

    @property
    def is_open(self) -> bool:
        return self.state is LoanState.OPEN

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title_id": self.title_id,
            "borrower_id": self.borrower_id,
            "opened_at": format_timestamp(self.opened_at),
            "closed_at": format_timestamp(self.closed_at) if self.closed_at else None,
            "state": self.state.value,
        }

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Loan":
        data = dict(row)
        return Loan(
            id=data["id"],
            title_id=data["title_id"],
            borrower_id=data.get("borrower_id"),
            opened_at=parse_timestamp(data["opened_at"]),
            closed_at=parse_timestamp(data.get("closed_at")),
            state=data["state"],
        )


class User:
    """A library account; every user may borrow, admins may also manage."""

    def __init__(self, id: int, username: str, role: Role | str = Role.USER, status: UserStatus | str = UserStatus.ACTIVE,
                 email: str | None = None, student_id: str | None = None, api_key: str | None = None,
                 created_at: str | None = None) -> None:
        self.id = id
        self.username = username
        self.role = Role.normalize(role.value if isinstance(role, Role) else role)
        self.status = UserStatus.normalize(status.value if isinstance(status, UserStatus) else status)
        self.email = email
        self.student_id = student_id
        self.api_key = api_key
        self.created_at = created_at

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN

    @property
    def is_active(self) -> bool:
        return self.status is UserStatus.ACTIVE

    def to_dict(self, include_key: bool = False) -> dict:
        data = {
            "id": self.id,
            "username": self.username,
            "role": self.role.value,
            "status": self.status.value,
            "email": self.email,
            "student_id": self.student_id,
            "created_at": self.created_at,
        }
        if include_key:
            data["api_key"] = self.api_key
        return data

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "User":
        data = dict(row)
        return User(
            id=data["id"],
            username=data["username"],
            role=data.get("role"),
            status=data.get("status"),
            email=data.get("email"),
            student_id=data.get("student_id"),
            api_key=data.get("api_key"),
            created_at=data.get("created_at"),
        )
