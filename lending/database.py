import logging
import sqlite3
from contextlib import contextmanager
from typing import Hashable, Iterable, Iterator, List, Optional, Tuple

from lending.errors import StorageFailure
from lending.locks import RowLockRegistry

logger = logging.getLogger(__name__)

# Row locks must be taken in this table order (ascending key within a table).
LOCK_ORDER = {"users": 0, "loans": 1, "titles": 2}

# Columns added after the first release; back-filled on startup.
OPTIONAL_COLUMNS = {
    "titles": [
        ("publisher", "TEXT"),
        ("publish_date", "TEXT"),
        ("price", "REAL NOT NULL DEFAULT 0"),
    ],
    "users": [
        ("email", "TEXT"),
        ("student_id", "TEXT"),
        ("status", "TEXT NOT NULL DEFAULT 'active'"),
    ],
}


def connect(db_file: str, busy_timeout: float = 5.0) -> sqlite3.Connection:
    """Open a connection to the lending database.

    Connections run in autocommit mode; transactions are opened explicitly by
    :class:`Scope` with ``BEGIN IMMEDIATE``.
    """
    conn = sqlite3.connect(db_file, timeout=busy_timeout, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    return conn


class Scope:
    """One atomic unit of work: row locks first, then a single write transaction.

    Locks are acquired in :data:`LOCK_ORDER` and may not be taken once the
    transaction has begun, so two scopes can never wait on each other in a
    cycle.
    """

    def __init__(self, conn: sqlite3.Connection, registry: RowLockRegistry, lock_timeout: Optional[float]) -> None:
        self.conn = conn
        self.in_transaction = False
        self._registry = registry
        self._lock_timeout = lock_timeout
        self._held: List[Tuple[str, Hashable]] = []
        self._position: Optional[Tuple[int, Hashable]] = None

    def lock(self, table: str, key: Hashable) -> None:
        """Take the exclusive lock on one row key, waiting up to the lock timeout."""
        if (table, key) in self._held:
            return
        if self.in_transaction:
            raise RuntimeError(f"lock {table}:{key} requested after the transaction began")
        position = (LOCK_ORDER[table], key)
        if self._position is not None and position < self._position:
            raise RuntimeError(f"lock {table}:{key} requested out of order")
        if not self._registry.acquire(table, key, self._lock_timeout):
            logger.warning(f"Lock timeout on {table}:{key} after {self._lock_timeout}s")
            raise StorageFailure(f"Timed out waiting for lock on {table}:{key}.")
        self._held.append((table, key))
        self._position = position

    def lock_many(self, table: str, keys: Iterable[Hashable]) -> None:
        for key in sorted(set(keys)):
            self.lock(table, key)

    def holds(self, table: str, key: Hashable) -> bool:
        return (table, key) in self._held

    def require_lock(self, table: str, key: Hashable) -> None:
        if not self.in_transaction or not self.holds(table, key):
            raise RuntimeError(f"{table}:{key} must be locked inside an open transaction before it is modified")

    def begin(self) -> None:
        if self.in_transaction:
            return
        self.conn.execute("BEGIN IMMEDIATE")
        self.in_transaction = True

    def execute(self, sql: str, params: Iterable = ()) -> sqlite3.Cursor:
        return self.conn.execute(sql, tuple(params))

    def release_locks(self) -> None:
        while self._held:
            table, key = self._held.pop()
            self._registry.release(table, key)
        self._position = None


class Database:
    """SQLite database file plus the row-lock registry shared by its scopes."""

    def __init__(self, db_file: str, busy_timeout: float = 5.0, lock_timeout: Optional[float] = 10.0) -> None:
        if db_file == ":memory:":
            raise ValueError("An on-disk database file is required; every scope opens its own connection.")
        self.db_file = db_file
        self.busy_timeout = busy_timeout
        self.lock_timeout = lock_timeout
        self.row_locks = RowLockRegistry()

    def connect(self) -> sqlite3.Connection:
        return connect(self.db_file, self.busy_timeout)

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Short-lived autocommit connection for read-only queries."""
        conn = self.connect()
        try:
            yield conn
        except sqlite3.Error as exc:
            raise StorageFailure(f"Storage read failed: {exc}") from exc
        finally:
            conn.close()

    @contextmanager
    def scope(self) -> Iterator[Scope]:
        """Run a block as one atomic scope; commit on success, roll back on any error."""
        try:
            conn = self.connect()
        except sqlite3.Error as exc:
            raise StorageFailure(f"Could not open the database: {exc}") from exc
        scope = Scope(conn, self.row_locks, self.lock_timeout)
        try:
            yield scope
            if scope.in_transaction:
                conn.execute("COMMIT")
                scope.in_transaction = False
        except sqlite3.Error as exc:
            self._rollback(scope)
            logger.error(f"Storage failure, scope rolled back: {exc}")
            raise StorageFailure(f"Storage operation failed: {exc}") from exc
        except BaseException:
            self._rollback(scope)
            raise
        finally:
            scope.release_locks()
            conn.close()

    @staticmethod
    def _rollback(scope: Scope) -> None:
        if not scope.in_transaction:
            return
        scope.in_transaction = False
        try:
            scope.conn.execute("ROLLBACK")
        except sqlite3.Error as exc:
            # Closing the connection discards the transaction anyway.
            logger.warning(f"Rollback failed: {exc}")

    def ping(self) -> bool:
        try:
            with self.connection() as conn:
                conn.execute("SELECT 1")
            return True
        except StorageFailure:
            return False

    def create_tables(self) -> None:
        """Create the tables if they are missing and back-fill newer columns."""
        conn = self.connect()
        try:
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    username TEXT UNIQUE NOT NULL COLLATE NOCASE,
                    role TEXT NOT NULL DEFAULT 'user' CHECK(role IN ('admin', 'user')),
                    api_key TEXT UNIQUE,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS titles (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    title TEXT NOT NULL,
                    author TEXT NOT NULL,
                    total_copies INTEGER NOT NULL CHECK(total_copies >= 0),
                    available_copies INTEGER NOT NULL
                        CHECK(available_copies >= 0 AND available_copies <= total_copies),
                    status TEXT NOT NULL CHECK(status IN ('IN_STOCK', 'ALL_LOANED')),
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    CHECK((status = 'ALL_LOANED') = (available_copies = 0))
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS loans (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    title_id INTEGER NOT NULL REFERENCES titles(id),
                    borrower_id INTEGER REFERENCES users(id) ON DELETE SET NULL,
                    opened_at TEXT NOT NULL,
                    closed_at TEXT,
                    state TEXT NOT NULL CHECK(state IN ('OPEN', 'CLOSED')),
                    CHECK((state = 'CLOSED') = (closed_at IS NOT NULL)),
                    CHECK(closed_at IS NULL OR closed_at >= opened_at)
                )
            """)

            for table, columns in OPTIONAL_COLUMNS.items():
                existing = {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}
                for name, ddl in columns:
                    if name not in existing:
                        conn.execute(f"ALTER TABLE {table} ADD COLUMN {name} {ddl}")
                        logger.info(f"Added missing column {table}.{name}")

            conn.execute("CREATE INDEX IF NOT EXISTS idx_loans_title_state ON loans(title_id, state)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_loans_borrower_state ON loans(borrower_id, state)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_loans_opened_at ON loans(opened_at)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_titles_title ON titles(title)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_users_api_key ON users(api_key)")
            # Files created before usernames were case-insensitive keep the old column collation
            conn.execute("CREATE UNIQUE INDEX IF NOT EXISTS idx_users_username_nocase ON users(username COLLATE NOCASE)")
        finally:
            conn.close()


def initialize_database(db_file: str, busy_timeout: float = 5.0, lock_timeout: Optional[float] = 10.0) -> Database:
    """Open the database at ``db_file`` and make sure its schema is current."""
    database = Database(db_file, busy_timeout=busy_timeout, lock_timeout=lock_timeout)
    database.create_tables()
    return database
