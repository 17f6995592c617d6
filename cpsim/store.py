"""
Durable key/value state for one simulated charge point.

Values are kept as text in a single SQLite table; the typed schema below is
the only place where they are encoded and decoded.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, List, Optional, Tuple

from .config import (
    CURRENT_TX_CONNECTOR_ID,
    CURRENT_TX_ID,
    METER_KEYS,
    NUMERIC_CONFIGURATION_KEYS,
    UNLOCKED_CONNECTOR_ID,
)

INT_KEYS = frozenset(
    (CURRENT_TX_ID, CURRENT_TX_CONNECTOR_ID, UNLOCKED_CONNECTOR_ID)
) | NUMERIC_CONFIGURATION_KEYS | frozenset(METER_KEYS)


def field_type(key: str) -> type:
    return int if key in INT_KEYS else str


class StoreError(Exception):
    pass


class StoreCorruptionError(StoreError):
    """A stored value cannot be decoded with the type its key declares."""


class StoreValueError(StoreError, ValueError):
    """A value cannot be encoded for the type its key declares."""


def encode(key: str, value: Any) -> str:
    if field_type(key) is int:
        if isinstance(value, bool):
            raise StoreValueError(f"{key} expects an integer, got {value!r}")
        try:
            return str(int(str(value).strip()))
        except ValueError:
            raise StoreValueError(f"{key} expects an integer, got {value!r}") from None
    return str(value)


def decode(key: str, raw: str) -> Any:
    if field_type(key) is int:
        try:
            return int(raw)
        except ValueError:
            raise StoreCorruptionError(f"{key} holds a non-integer value {raw!r}") from None
    return raw


class Txn:
    """Operations available inside one view or update transaction."""

    def __init__(self, conn: sqlite3.Connection, writable: bool):
        self._conn = conn
        self.writable = writable

    def get_raw(self, key: str) -> Optional[str]:
        row = self._conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        return None if row is None else row[0]

    def get(self, key: str, default: Any = None) -> Any:
        raw = self.get_raw(key)
        if raw is None:
            return default
        return decode(key, raw)

    def exists(self, key: str) -> bool:
        return self.get_raw(key) is not None

    def set(self, key: str, value: Any) -> None:
        self._check_writable()
        self._conn.execute(
            "INSERT INTO kv (key, value) VALUES (?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (key, encode(key, value)),
        )

    def set_if_absent(self, key: str, value: Any) -> bool:
        if self.exists(key):
            return False
        self.set(key, value)
        return True

    def delete(self, key: str) -> None:
        self._check_writable()
        self._conn.execute("DELETE FROM kv WHERE key = ?", (key,))

    def increment(self, key: str, delta: int) -> int:
        """Add ``delta`` to an integer counter, creating it when absent.

        A zero delta counts as one so that every call makes visible progress.
        """
        if delta == 0:
            delta = 1
        raw = self.get_raw(key)
        if raw is None:
            value = delta
        else:
            try:
                value = int(raw) + delta
            except ValueError:
                raise StoreCorruptionError(f"cannot increment {key}: stored value {raw!r}") from None
        self.set(key, value)
        return value

    def items(self) -> List[Tuple[str, str]]:
        return list(self._conn.execute("SELECT key, value FROM kv ORDER BY key"))

    def _check_writable(self) -> None:
        if not self.writable:
            raise StoreError("write attempted inside a read-only view")


class Store:
    """Transactional key/value store backed by a SQLite file."""

    def __init__(self, path: str):
        self.path = str(path)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(self.path, check_same_thread=False, isolation_level=None)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(
            "CREATE TABLE IF NOT EXISTS kv (key TEXT PRIMARY KEY, value TEXT NOT NULL)"
        )

    @classmethod
    def open(cls, root: str, charge_point_id: str) -> "Store":
        directory = Path(root) / charge_point_id
        directory.mkdir(parents=True, exist_ok=True)
        store = cls(str(directory / "state.db"))
        logging.info(f"Store opened at {store.path}")
        return store

    @contextmanager
    def view(self) -> Iterator[Txn]:
        with self._lock:
            self._conn.execute("BEGIN")
            try:
                yield Txn(self._conn, writable=False)
            finally:
                self._conn.execute("COMMIT")

    @contextmanager
    def update(self) -> Iterator[Txn]:
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield Txn(self._conn, writable=True)
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            self._conn.execute("COMMIT")

    def get(self, key: str, default: Any = None) -> Any:
        with self.view() as txn:
            return txn.get(key, default)

    def exists(self, key: str) -> bool:
        with self.view() as txn:
            return txn.exists(key)

    def set(self, key: str, value: Any) -> None:
        with self.update() as txn:
            txn.set(key, value)

    def delete(self, key: str) -> None:
        with self.update() as txn:
            txn.delete(key)

    def increment(self, key: str, delta: int) -> int:
        with self.update() as txn:
            return txn.increment(key, delta)

    def items(self) -> List[Tuple[str, str]]:
        with self.view() as txn:
            return txn.items()

    def close(self) -> None:
        with self._lock:
            self._conn.close()
