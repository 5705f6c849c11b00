"""Borrower accounts: row access for the engine plus the account operations."""

from __future__ import annotations

import logging
import secrets
import sqlite3
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

from lending.database import Database, Scope
from lending.errors import InvalidRequest, NotFound
from lending.models import Role, User, UserStatus

if TYPE_CHECKING:
    from lending.engine import LendingEngine

logger = logging.getLogger(__name__)

USER_COLUMNS = "id, username, role, status, email, student_id, api_key, created_at"


def generate_api_key() -> str:
    return secrets.token_hex(16)


class UserStore:
    """Row-level access to the users table."""

    def get(self, conn: sqlite3.Connection | Scope, user_id: int) -> Optional[User]:
        row = conn.execute(f"SELECT {USER_COLUMNS} FROM users WHERE id = ?", (user_id,)).fetchone()
        return User.from_row(row) if row else None

    def require(self, conn: sqlite3.Connection | Scope, user_id: int) -> User:
        user = self.get(conn, user_id)
        if user is None:
            raise NotFound(f"User {user_id} not found.")
        return user

    def find_by_api_key(self, conn: sqlite3.Connection, api_key: str) -> Optional[User]:
        if not api_key:
            return None
        row = conn.execute(f"SELECT {USER_COLUMNS} FROM users WHERE api_key = ?", (api_key,)).fetchone()
        return User.from_row(row) if row else None

    def find_by_username(self, conn: sqlite3.Connection | Scope, username: str) -> Optional[User]:
        row = conn.execute(
            f"SELECT {USER_COLUMNS} FROM users WHERE lower(username) = lower(?)", (username,)
        ).fetchone()
        return User.from_row(row) if row else None

    def insert(self, scope: Scope, *, username: str, role: Role, status: UserStatus, email: str | None,
               student_id: str | None) -> User:
        scope.begin()
        cursor = scope.execute(
            """
            INSERT INTO users (username, role, status, email, student_id, api_key)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (username, role.value, status.value, email, student_id, generate_api_key()),
        )
        return self.require(scope, cursor.lastrowid)

    def update(self, scope: Scope, user_id: int, fields: Dict[str, Any]) -> None:
        scope.require_lock("users", user_id)
        if not fields:
            return
        set_clause = ", ".join(f"{name} = ?" for name in fields)
        scope.execute(f"UPDATE users SET {set_clause} WHERE id = ?", list(fields.values()) + [user_id])

    def delete(self, scope: Scope, user_id: int) -> None:
        scope.require_lock("users", user_id)
        scope.execute("DELETE FROM users WHERE id = ?", (user_id,))

    def list_users(self, conn: sqlite3.Connection, *, keyword: str = "", role: Optional[str] = None,
                   status: Optional[str] = None, page: int = 1, limit: int = 10) -> Tuple[List[User], int]:
        where = []
        params: List[Any] = []
        keyword = (keyword or "").strip()
        if keyword:
            like = f"%{keyword}%"
            where.append("(username LIKE ? OR email LIKE ? OR student_id LIKE ?)")
            params.extend([like, like, like])
        if role in {r.value for r in Role}:
            where.append("role = ?")
            params.append(role)
        if status in {s.value for s in UserStatus}:
            where.append("status = ?")
            params.append(status)
        where_clause = f"WHERE {' AND '.join(where)}" if where else ""

        total = conn.execute(f"SELECT COUNT(*) FROM users {where_clause}", params).fetchone()[0]
        rows = conn.execute(
            f"SELECT {USER_COLUMNS} FROM users {where_clause} ORDER BY id ASC LIMIT ? OFFSET ?",
            params + [limit, (page - 1) * limit],
        ).fetchall()
        return [User.from_row(row) for row in rows], total


class UserDirectory:
    """Account operations: create, edit, (de)activate, rotate keys, delete."""

    def __init__(self, database: Database, store: UserStore, engine: "LendingEngine") -> None:
        self.database = database
        self.store = store
        self.engine = engine

    def create_user(self, username: str, role: str = "user", email: str | None = None,
                    student_id: str | None = None, status: str = "active") -> User:
        username = (username or "").strip()
        if not username:
            raise InvalidRequest("Username cannot be empty.")
        with self.database.scope() as scope:
            scope.begin()
            if self.store.find_by_username(scope, username):
                raise InvalidRequest(f"Username {username} already exists.")
            try:
                user = self.store.insert(
                    scope,
                    username=username,
                    role=Role.normalize(role),
                    status=UserStatus.normalize(status),
                    email=email or None,
                    student_id=student_id or None,
                )
            except sqlite3.IntegrityError as exc:
                raise InvalidRequest(f"Username {username} already exists.") from exc
        logger.info(f"User {user.id} ({user.username}) created with role {user.role.value}")
        return user

    def get_user(self, user_id: int) -> User:
        with self.database.connection() as conn:
            return self.store.require(conn, user_id)

    def authenticate(self, api_key: str) -> Optional[User]:
        with self.database.connection() as conn:
            return self.store.find_by_api_key(conn, api_key)

    def list_users(self, keyword: str = "", role: Optional[str] = None, status: Optional[str] = None,
                   page: int = 1, limit: int = 10) -> Tuple[List[User], int]:
        with self.database.connection() as conn:
            return self.store.list_users(conn, keyword=keyword, role=role, status=status, page=page, limit=limit)

    def update_user(self, user_id: int, *, username: str | None = None, role: str | None = None,
                    email: str | None = None, student_id: str | None = None, status: str | None = None,
                    acting_user_id: Optional[int] = None) -> User:
        """Administrative edit; fields left as None keep their current value.

        All fields are written in one scope, so a refused status change leaves
        the account untouched.
        """
        fields: Dict[str, Any] = {}
        if username is not None and username.strip():
            fields["username"] = username.strip()
        if role:
            fields["role"] = Role.normalize(role).value
        if email:
            fields["email"] = email
        if student_id:
            fields["student_id"] = student_id
        if status:
            normalized = UserStatus.normalize(status)
            self._check_self_deactivation(user_id, normalized, acting_user_id)
            fields["status"] = normalized.value
        return self._apply(user_id, fields)

    def update_profile(self, user_id: int, *, username: str | None = None, email: str | None = None,
                       student_id: str | None = None) -> User:
        """Self-service edit; an empty string clears email or student id."""
        fields: Dict[str, Any] = {}
        if username is not None and username.strip():
            fields["username"] = username.strip()
        if email is not None:
            fields["email"] = email or None
        if student_id is not None:
            fields["student_id"] = student_id or None
        return self._apply(user_id, fields)

    def set_status(self, user_id: int, status: str, acting_user_id: Optional[int] = None) -> User:
        normalized = UserStatus.normalize(status)
        self._check_self_deactivation(user_id, normalized, acting_user_id)
        return self._apply(user_id, {"status": normalized.value})

    def reset_api_key(self, user_id: int) -> User:
        return self._apply(user_id, {"api_key": generate_api_key()})

    def delete_user(self, user_id: int, acting_user_id: Optional[int] = None) -> int:
        return self.engine.delete_borrower(user_id, acting_user_id=acting_user_id)

    def count(self) -> int:
        with self.database.connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM users").fetchone()[0]

    @staticmethod
    def _check_self_deactivation(user_id: int, status: UserStatus, acting_user_id: Optional[int]) -> None:
        if status is UserStatus.INACTIVE and acting_user_id == user_id:
            raise InvalidRequest("You cannot deactivate the account you are signed in with.")

    def _apply(self, user_id: int, fields: Dict[str, Any]) -> User:
        with self.database.scope() as scope:
            scope.lock("users", user_id)
            scope.begin()
            current = self.store.require(scope, user_id)
            new_name = fields.get("username")
            if new_name and new_name.lower() != current.username.lower():
                if self.store.find_by_username(scope, new_name):
                    raise InvalidRequest(f"Username {new_name} already exists.")
            self.store.update(scope, user_id, fields)
            return self.store.require(scope, user_id)
