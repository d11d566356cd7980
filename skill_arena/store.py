"""
Session store - shared session documents keyed by a short code.

Two implementations satisfy the same contract:
- InMemorySessionStore: push notifications, used for single-process deployments and tests
- SqliteSessionStore: durable, subscribers poll for new versions

Writers that depend on the previous state of a document must go through
`transact`, which is optimistic: read a versioned snapshot, compute the new
document, commit only if the version did not move, otherwise retry.
"""
import asyncio
import copy
import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple

from .config import Settings
from .errors import SessionNotFound, StoreUnavailable, TransactionAborted

logger = logging.getLogger(__name__)

Document = Dict[str, Any]
ChangeCallback = Callable[[Optional[Document]], None]
Unsubscribe = Callable[[], None]
TransactionFn = Callable[[Optional[Document]], Optional[Document]]


def _deliver(on_change: ChangeCallback, document: Optional[Document], code: str) -> None:
    try:
        on_change(document)
    except Exception as e:
        logger.warning(f"Subscriber callback for session {code} failed: {e}", exc_info=True)


class SessionStore(ABC):
    """Contract every session backend implements"""

    def __init__(self, transaction_attempts: int = 5):
        self.transaction_attempts = transaction_attempts
        self.conflict_count = 0

    @abstractmethod
    async def create(self, code: str, document: Document) -> bool:
        """Insert a new document. Returns False if the code is taken."""

    @abstractmethod
    async def get(self, code: str) -> Optional[Document]:
        ...

    @abstractmethod
    async def delete(self, code: str) -> None:
        ...

    @abstractmethod
    def subscribe(self, code: str, on_change: ChangeCallback) -> Unsubscribe:
        ...

    @abstractmethod
    def observer_count(self, code: str) -> int:
        ...

    @abstractmethod
    async def _read_versioned(self, code: str) -> Tuple[int, Optional[Document]]:
        """Version 0 means the document does not exist."""

    @abstractmethod
    async def _compare_and_set(self, code: str, expected_version: int, document: Document) -> bool:
        ...

    async def transact(self, code: str, fn: TransactionFn) -> Optional[Document]:
        """
        Optimistic read-modify-write.

        `fn` receives a private copy of the current document (or None) and
        returns the replacement document, or None to leave it untouched.
        It may run several times and must only depend on its argument.
        Exceptions raised by `fn` abort the transaction and propagate.
        """
        for attempt in range(1, self.transaction_attempts + 1):
            version, snapshot = await self._read_versioned(code)
            updated = fn(copy.deepcopy(snapshot) if snapshot is not None else None)
            if updated is None:
                return snapshot
            if await self._compare_and_set(code, version, updated):
                return copy.deepcopy(updated)
            self.conflict_count += 1
            logger.debug(f"Transaction on {code} hit a concurrent write (attempt {attempt}), retrying")

        logger.warning(f"Transaction on {code} aborted after {self.transaction_attempts} attempts")
        raise TransactionAborted(code, self.transaction_attempts)

    async def merge_update(self, code: str, fields: Document) -> Document:
        """Shallow merge; each field is last-write-wins, untouched fields are preserved."""

        def merge(current: Optional[Document]) -> Document:
            if current is None:
                raise SessionNotFound(code)
            current.update(copy.deepcopy(fields))
            return current

        return await self.transact(code, merge)

    async def close(self) -> None:
        pass


# ============================================================================
# IN-MEMORY (push)
# ============================================================================

class InMemorySessionStore(SessionStore):
    """
    Copy-on-write map guarded by an asyncio.Lock.

    `latency` simulates the round trip between reading a snapshot and
    committing; even at 0 the read yields to the event loop once, so
    concurrent transactions genuinely interleave.
    """

    def __init__(self, transaction_attempts: int = 5, latency: float = 0.0):
        super().__init__(transaction_attempts)
        self.latency = latency
        self.available = True
        self._documents: Dict[str, Tuple[int, Document]] = {}
        self._subscribers: Dict[str, List[ChangeCallback]] = {}
        self._lock = asyncio.Lock()

    def _ensure_available(self) -> None:
        if not self.available:
            raise StoreUnavailable()

    async def create(self, code: str, document: Document) -> bool:
        self._ensure_available()
        async with self._lock:
            if code in self._documents:
                return False
            self._documents[code] = (1, copy.deepcopy(document))
        self._notify(code)
        return True

    async def get(self, code: str) -> Optional[Document]:
        self._ensure_available()
        entry = self._documents.get(code)
        return copy.deepcopy(entry[1]) if entry else None

    async def delete(self, code: str) -> None:
        self._ensure_available()
        async with self._lock:
            removed = self._documents.pop(code, None)
        if removed is not None:
            self._notify(code)

    async def _read_versioned(self, code: str) -> Tuple[int, Optional[Document]]:
        self._ensure_available()
        entry = self._documents.get(code)
        version, document = entry if entry else (0, None)
        snapshot = copy.deepcopy(document) if document is not None else None
        await asyncio.sleep(self.latency)
        return version, snapshot

    async def _compare_and_set(self, code: str, expected_version: int, document: Document) -> bool:
        self._ensure_available()
        async with self._lock:
            entry = self._documents.get(code)
            current_version = entry[0] if entry else 0
            if current_version != expected_version:
                return False
            self._documents[code] = (current_version + 1, copy.deepcopy(document))
        self._notify(code)
        return True

    def subscribe(self, code: str, on_change: ChangeCallback) -> Unsubscribe:
        self._ensure_available()
        self._subscribers.setdefault(code, []).append(on_change)
        entry = self._documents.get(code)
        _deliver(on_change, copy.deepcopy(entry[1]) if entry else None, code)

        def unsubscribe() -> None:
            callbacks = self._subscribers.get(code, [])
            if on_change in callbacks:
                callbacks.remove(on_change)
            if not callbacks:
                self._subscribers.pop(code, None)

        return unsubscribe

    def observer_count(self, code: str) -> int:
        return len(self._subscribers.get(code, []))

    def _notify(self, code: str) -> None:
        entry = self._documents.get(code)
        for callback in list(self._subscribers.get(code, [])):
            _deliver(callback, copy.deepcopy(entry[1]) if entry else None, code)


# ============================================================================
# SQLITE (polling)
# ============================================================================

class SqliteSessionStore(SessionStore):
    """
    Durable store. The version column makes every commit a compare-and-swap,
    so several worker processes can share one database file.
    """

    def __init__(self, db_path: str, poll_interval: float = 1.0, transaction_attempts: int = 5):
        super().__init__(transaction_attempts)
        self.db_path = db_path
        self.poll_interval = poll_interval
        self._pollers: Dict[str, List[asyncio.Task]] = {}

    def get_db(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        """Create the challenges table"""
        conn = self._connect()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS challenges (
                    code TEXT PRIMARY KEY,
                    version INTEGER NOT NULL,
                    document TEXT NOT NULL,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)
            conn.commit()
        except sqlite3.Error as e:
            raise StoreUnavailable() from e
        finally:
            conn.close()
        logger.info(f"Session database initialized at {self.db_path}")

    def _connect(self) -> sqlite3.Connection:
        try:
            return self.get_db()
        except sqlite3.Error as e:
            raise StoreUnavailable() from e

    def _write(self, sql: str, params: tuple) -> int:
        conn = self._connect()
        try:
            cursor = conn.execute(sql, params)
            conn.commit()
            return cursor.rowcount
        except sqlite3.Error as e:
            logger.warning(f"Session database write failed: {e}")
            raise StoreUnavailable() from e
        finally:
            conn.close()

    async def create(self, code: str, document: Document) -> bool:
        inserted = self._write(
            "INSERT OR IGNORE INTO challenges (code, version, document) VALUES (?, 1, ?)",
            (code, json.dumps(document)),
        )
        return inserted == 1

    async def get(self, code: str) -> Optional[Document]:
        _, document = await self._read_versioned(code)
        return document

    async def delete(self, code: str) -> None:
        self._write("DELETE FROM challenges WHERE code = ?", (code,))

    async def _read_versioned(self, code: str) -> Tuple[int, Optional[Document]]:
        conn = self._connect()
        try:
            row = conn.execute("SELECT version, document FROM challenges WHERE code = ?", (code,)).fetchone()
        except sqlite3.Error as e:
            raise StoreUnavailable() from e
        finally:
            conn.close()
        if not row:
            return 0, None
        return row["version"], json.loads(row["document"])

    async def _compare_and_set(self, code: str, expected_version: int, document: Document) -> bool:
        payload = json.dumps(document)
        if expected_version == 0:
            changed = self._write(
                "INSERT OR IGNORE INTO challenges (code, version, document) VALUES (?, 1, ?)",
                (code, payload),
            )
        else:
            changed = self._write(
                """
                UPDATE challenges
                SET version = version + 1, document = ?, updated_at = CURRENT_TIMESTAMP
                WHERE code = ? AND version = ?
                """,
                (payload, code, expected_version),
            )
        return changed == 1

    def subscribe(self, code: str, on_change: ChangeCallback) -> Unsubscribe:
        """Must be called from a running event loop; delivery starts on the first poll."""
        task = asyncio.get_running_loop().create_task(self._poll(code, on_change))
        self._pollers.setdefault(code, []).append(task)

        def unsubscribe() -> None:
            task.cancel()
            tasks = self._pollers.get(code, [])
            if task in tasks:
                tasks.remove(task)
            if not tasks:
                self._pollers.pop(code, None)

        return unsubscribe

    def observer_count(self, code: str) -> int:
        return len(self._pollers.get(code, []))

    async def _poll(self, code: str, on_change: ChangeCallback) -> None:
        last_version: Optional[int] = None
        while True:
            try:
                version, document = await self._read_versioned(code)
            except StoreUnavailable:
                logger.warning(f"Polling session {code} failed, will retry")
            else:
                if version != last_version:
                    last_version = version
                    _deliver(on_change, document, code)
            await asyncio.sleep(self.poll_interval)

    async def close(self) -> None:
        for tasks in list(self._pollers.values()):
            for task in tasks:
                task.cancel()
        self._pollers.clear()


def create_store(settings: Settings) -> SessionStore:
    """Pick the session backend once, at startup"""
    if settings.store_backend == "sqlite":
        store = SqliteSessionStore(
            settings.db_path,
            poll_interval=settings.store_poll_interval,
            transaction_attempts=settings.transaction_attempts,
        )
        store.init_db()
        return store
    return InMemorySessionStore(transaction_attempts=settings.transaction_attempts)
