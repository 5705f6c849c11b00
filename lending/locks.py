"""Per-key exclusive locks standing in for SQLite's missing row locks."""

from __future__ import annotations

import threading
from typing import Dict, Hashable, Tuple


class RowLockRegistry:
    """Hands out one mutex per (table, key) pair.

    Entries are reference counted so the registry only holds locks that
    somebody is waiting for or holding.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: Dict[Tuple[str, Hashable], list] = {}

    def acquire(self, table: str, key: Hashable, timeout: float | None = None) -> bool:
        """Block until the lock for ``(table, key)`` is held, or ``timeout`` expires."""
        ident = (table, key)
        with self._guard:
            entry = self._entries.get(ident)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._entries[ident] = entry
            entry[1] += 1

        acquired = entry[0].acquire(timeout=-1 if timeout is None else timeout)
        if not acquired:
            self._forget(ident, entry)
        return acquired

    def release(self, table: str, key: Hashable) -> None:
        ident = (table, key)
        with self._guard:
            entry = self._entries.get(ident)
        if entry is None:
            raise RuntimeError(f"lock {table}:{key} is not held")
        entry[0].release()
        self._forget(ident, entry)

    def _forget(self, ident, entry) -> None:
        with self._guard:
            entry[1] -= 1
            if entry[1] <= 0 and self._entries.get(ident) is entry:
                del self._entries[ident]

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)
