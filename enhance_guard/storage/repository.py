"""
Repository pattern for usage persistence.

The usage ledger reads and writes records through a small get/set/update
contract and appends one event per committed charge. ``update`` is the
read-modify-write primitive: concurrent updates of one key, from any number
of ledgers or processes sharing the store, are applied one at a time.
"""

import json
import threading
from abc import ABC, abstractmethod
from copy import deepcopy
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

from enhance_guard.core.types import CostClass, Tier

from .db import DEFAULT_DB_PATH, get_connection
from .models import CreditChargeEvent

T = TypeVar("T")

# Receives the current value (None if absent); returns the value to store
# (None to leave it unchanged) and a result handed back to the caller
Mutation = Callable[[Optional[Dict[str, Any]]], Tuple[Optional[Dict[str, Any]], T]]


class UsageStore(ABC):
    """Key-value store the usage ledger persists records through."""

    @abstractmethod
    def get(self, key: str) -> Optional[Dict[str, Any]]:
        """Return the stored value for ``key`` or None."""

    @abstractmethod
    def set(self, key: str, value: Dict[str, Any]) -> None:
        """Store ``value`` under ``key``, replacing any previous value."""

    @abstractmethod
    def update(self, key: str, mutate: Mutation) -> T:
        """Atomically read, transform and write the value under ``key``.

        If ``mutate`` raises, nothing is written and the exception propagates.

        Returns:
            The result returned by ``mutate``
        """

    def append_charge(self, event: CreditChargeEvent) -> None:
        """Record a committed charge. Stores without an audit trail ignore it."""

    def recent_charges(self, account_id: Optional[str] = None, limit: int = 100) -> List[CreditChargeEvent]:
        return []


class InMemoryUsageStore(UsageStore):
    """Process-local store, used in tests and for anonymous sessions."""

    def __init__(self):
        self._values: Dict[str, Dict[str, Any]] = {}
        self._charges: List[CreditChargeEvent] = []
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        value = self._values.get(key)
        return deepcopy(value) if value is not None else None

    def set(self, key: str, value: Dict[str, Any]) -> None:
        self._values[key] = deepcopy(value)

    def update(self, key: str, mutate: Mutation) -> T:
        with self._lock:
            new_value, result = mutate(self.get(key))
            if new_value is not None:
                self.set(key, new_value)
            return result

    def append_charge(self, event: CreditChargeEvent) -> None:
        with self._lock:
            self._charges.append(event)

    def recent_charges(self, account_id: Optional[str] = None, limit: int = 100) -> List[CreditChargeEvent]:
        events = [e for e in self._charges if account_id is None or e.account_id == account_id]
        return list(reversed(events))[:limit]


class SQLiteUsageStore(UsageStore):
    """SQLite-backed store.

    Records live as JSON in ``usage_record``; charges go to the append-only
    ``credit_charge_event`` table.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the store and make sure the schema exists.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        initialize_schema(db_path)

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT value FROM usage_record WHERE key = ?", (key,)
            ).fetchone()
            return json.loads(row[0]) if row else None
        finally:
            conn.close()

    def set(self, key: str, value: Dict[str, Any]) -> None:
        conn = get_connection(self.db_path)
        try:
            _upsert(conn, key, value)
            conn.commit()
        finally:
            conn.close()

    def update(self, key: str, mutate: Mutation) -> T:
        """Read-modify-write inside one ``BEGIN IMMEDIATE`` transaction.

        The write lock is taken before the read, so a second connection
        (another ledger or process) waits and then sees the committed value.
        """
        conn = get_connection(self.db_path)
        try:
            conn.isolation_level = None
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    "SELECT value FROM usage_record WHERE key = ?", (key,)
                ).fetchone()
                new_value, result = mutate(json.loads(row[0]) if row else None)
                if new_value is not None:
                    _upsert(conn, key, new_value)
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
            return result
        finally:
            conn.close()

    def append_charge(self, event: CreditChargeEvent) -> None:
        insert_charge_event(event, self.db_path)

    def recent_charges(self, account_id: Optional[str] = None, limit: int = 100) -> List[CreditChargeEvent]:
        return fetch_recent_charge_events(account_id=account_id, limit=limit, db_path=self.db_path)


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the usage tables if they don't exist.

    ``credit_charge_event`` is an append-only ledger. No UPDATE or DELETE
    operations should ever be performed on it.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS usage_record (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS credit_charge_event (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                account_id TEXT NOT NULL,
                tier TEXT NOT NULL,
                cost_class TEXT NOT NULL,
                provider TEXT,
                task TEXT
            )
        """)
        conn.commit()
    finally:
        conn.close()


def insert_charge_event(event: CreditChargeEvent, db_path: str = DEFAULT_DB_PATH) -> None:
    """Append a single charge event to the audit ledger.

    Args:
        event: The charge to record
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            INSERT INTO credit_charge_event
            (timestamp, account_id, tier, cost_class, provider, task)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (
            event.timestamp.isoformat(),
            event.account_id,
            event.tier.value,
            event.cost_class.value,
            event.provider,
            event.task
        ))
        conn.commit()
    finally:
        conn.close()


def fetch_recent_charge_events(
    account_id: Optional[str] = None,
    limit: int = 100,
    db_path: str = DEFAULT_DB_PATH
) -> List[CreditChargeEvent]:
    """Fetch recent charge events, optionally for one account.

    Returns events in reverse chronological order (newest first).

    Args:
        account_id: Optional filter for a specific account
        limit: Maximum number of events to return
        db_path: Path to SQLite database file

    Returns:
        List of charge events ordered newest first
    """
    conn = get_connection(db_path)
    try:
        query = (
            "SELECT timestamp, account_id, tier, cost_class, provider, task "
            "FROM credit_charge_event"
        )
        params: List[Any] = []
        if account_id:
            query += " WHERE account_id = ?"
            params.append(account_id)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        cursor = conn.execute(query, params)
        events = []
        for row in cursor.fetchall():
            events.append(CreditChargeEvent(
                timestamp=datetime.fromisoformat(row[0]),
                account_id=row[1],
                tier=Tier(row[2]),
                cost_class=CostClass(row[3]),
                provider=row[4],
                task=row[5]
            ))
        return events
    finally:
        conn.close()


def _upsert(conn, key: str, value: Dict[str, Any]) -> None:
    conn.execute(
        """
        INSERT INTO usage_record (key, value) VALUES (?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value
        """,
        (key, json.dumps(value, sort_keys=True)),
    )
