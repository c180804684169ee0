"""SQLite storage backend for client mode.

Local-first storage with:
- One SQLite file per process (or ``:memory:``), no network
- Single writer: writes and transactions serialize on one lock
- Concurrent reads through per-thread read-only connections (WAL)
- sqlite-vec for vector search (when installed)
"""

import contextlib
import logging
import os
import sqlite3
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Tuple, Union

from duomode.protocols import StorageError
from duomode.types import Capability, QueryResult, utc_now

logger = logging.getLogger(__name__)

MEMORY = ":memory:"
_READ_PREFIXES = ("SELECT", "EXPLAIN")


@dataclass(frozen=True)
class EmbeddedHandle:
    """What ``open()`` hands back: where the store lives and since when."""

    path: str
    opened_at: str
    vector: bool


def _is_read(query: str) -> bool:
    head = query.lstrip().split(None, 1)
    return bool(head) and head[0].upper() in _READ_PREFIXES


def _to_result(cursor: sqlite3.Cursor) -> QueryResult:
    rows = [dict(r) for r in cursor.fetchall()] if cursor.description else []
    return QueryResult(rows=rows, rowcount=cursor.rowcount, lastrowid=cursor.lastrowid)


class _SQLiteTransaction:
    """Statements inside ``EmbeddedBackend.transaction()``."""

    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    def execute(self, query: str, params: Sequence[Any] = ()) -> QueryResult:
        try:
            return _to_result(self._conn.execute(query, tuple(params)))
        except sqlite3.Error as e:
            raise StorageError(str(e)) from e


class EmbeddedBackend:
    """In-process SQLite backend.

    The writer connection is shared and guarded by ``_write_lock``; the
    engine does not support concurrent writers, so neither do we.
    """

    dialect = "sqlite"

    # Milliseconds SQLite waits on a locked file before giving up
    BUSY_TIMEOUT_MS = 5000
    # Seconds a caller waits for the in-process writer lock by default
    LOCK_TIMEOUT = 30.0

    def __init__(self, db_path: Union[str, Path] = MEMORY, enable_vec: bool = True):
        self.db_path = str(db_path) if str(db_path) == MEMORY else str(Path(db_path).expanduser())
        self.enable_vec = enable_vec
        self._write_lock = threading.RLock()
        self._writer: Optional[sqlite3.Connection] = None
        # thread ident -> (thread, read-only connection)
        self._readers: Dict[int, Tuple[threading.Thread, sqlite3.Connection]] = {}
        self._readers_guard = threading.Lock()
        self._has_vec = False
        self._handle: Optional[EmbeddedHandle] = None

    @property
    def is_memory(self) -> bool:
        return self.db_path == MEMORY

    @property
    def is_open(self) -> bool:
        return self._writer is not None

    @property
    def reader_count(self) -> int:
        with self._readers_guard:
            return len(self._readers)

    # === Lifecycle ===

    def open(self) -> EmbeddedHandle:
        """Open the writer connection. Idempotent."""
        if self._handle is not None:
            return self._handle

        if not self.is_memory:
            try:
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise StorageError(f"Cannot create database directory: {e}") from e

        try:
            conn = sqlite3.connect(
                self.db_path,
                check_same_thread=False,
                isolation_level=None,  # explicit BEGIN/COMMIT only
            )
            conn.row_factory = sqlite3.Row
            conn.execute(f"PRAGMA busy_timeout={self.BUSY_TIMEOUT_MS}")
            conn.execute("PRAGMA foreign_keys=ON")
            if not self.is_memory:
                conn.execute("PRAGMA journal_mode=WAL")
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open {self.db_path}: {e}") from e

        if self.enable_vec:
            self._has_vec = self._load_vec(conn)
            if not self._has_vec:
                logger.info("sqlite-vec not available, vector capability disabled")

        if not self.is_memory:
            # Owner read/write only
            try:
                os.chmod(self.db_path, 0o600)
            except OSError as e:
                logger.warning(f"Could not set secure permissions: {e}")

        self._writer = conn
        self._handle = EmbeddedHandle(path=self.db_path, opened_at=utc_now(), vector=self._has_vec)
        logger.debug(f"Opened embedded store at {self.db_path}")
        return self._handle

    def close(self, handle: Optional[EmbeddedHandle] = None) -> None:
        """Close the writer and every reader connection. Safe to call twice."""
        with self._write_lock:
            with self._readers_guard:
                for _, conn in self._readers.values():
                    conn.close()
                self._readers.clear()
            if self._writer is not None:
                self._writer.close()
                self._writer = None
            self._handle = None

    def _load_vec(self, conn: sqlite3.Connection) -> bool:
        """Load sqlite-vec extension into connection."""
        try:
            import sqlite_vec

            conn.enable_load_extension(True)
            sqlite_vec.load(conn)
            conn.enable_load_extension(False)
            return True
        except ImportError:
            logger.debug("sqlite-vec package not installed")
            return False
        except Exception as e:
            logger.debug(f"sqlite-vec not available: {e}")
            return False

    def _require_open(self) -> sqlite3.Connection:
        if self._writer is None:
            raise StorageError("Embedded store is not open")
        return self._writer

    def _reader(self) -> sqlite3.Connection:
        current = threading.current_thread()
        with self._readers_guard:
            entry = self._readers.get(current.ident)
        if entry is not None and entry[0] is current:
            return entry[1]

        uri = Path(self.db_path).resolve().as_uri() + "?mode=ro"
        try:
            conn = sqlite3.connect(uri, uri=True, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute(f"PRAGMA busy_timeout={self.BUSY_TIMEOUT_MS}")
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open reader for {self.db_path}: {e}") from e
        if self._has_vec:
            self._load_vec(conn)
        with self._readers_guard:
            self._prune_readers()
            self._readers[current.ident] = (current, conn)
        return conn

    def _prune_readers(self) -> None:
        """Close readers whose thread has exited. Caller holds _readers_guard."""
        for ident, (thread, conn) in list(self._readers.items()):
            if not thread.is_alive():
                conn.close()
                del self._readers[ident]

    @contextlib.contextmanager
    def _writer_lock(self, timeout: Optional[float]):
        wait = self.LOCK_TIMEOUT if timeout is None else timeout
        if not self._write_lock.acquire(timeout=wait):
            raise StorageError(f"Embedded store busy: writer lock not acquired within {wait}s")
        try:
            yield self._require_open()
        finally:
            self._write_lock.release()

    # === Interface ===

    def execute(
        self, query: str, params: Sequence[Any] = (), *, timeout: Optional[float] = None
    ) -> QueryResult:
        """Run one statement.

        Reads on a file database use this thread's read-only connection;
        everything else goes through the writer under the lock.
        """
        self._require_open()
        if _is_read(query) and not self.is_memory:
            try:
                return _to_result(self._reader().execute(query, tuple(params)))
            except sqlite3.Error as e:
                raise StorageError(str(e)) from e

        with self._writer_lock(timeout) as conn:
            try:
                return _to_result(conn.execute(query, tuple(params)))
            except sqlite3.Error as e:
                raise StorageError(str(e)) from e

    @contextlib.contextmanager
    def transaction(self, *, exclusive: bool = False, timeout: Optional[float] = None):
        """Context manager that holds the writer for a unit of work.

        ``exclusive`` takes the database write lock up front
        (``BEGIN IMMEDIATE``) so other processes block instead of racing.
        Commits on success, rolls back on any exception.
        """
        with self._writer_lock(timeout) as conn:
            try:
                conn.execute("BEGIN IMMEDIATE" if exclusive else "BEGIN")
            except sqlite3.Error as e:
                raise StorageError(f"Could not begin transaction: {e}") from e
            try:
                yield _SQLiteTransaction(conn)
            except BaseException as e:
                logger.debug(f"Transaction failed, rolling back: {e}")
                try:
                    conn.execute("ROLLBACK")
                except sqlite3.Error as rollback_error:
                    logger.warning(f"Rollback failed: {rollback_error}")
                raise
            try:
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise StorageError(f"Commit failed: {e}") from e

    def health_check(self, timeout: Optional[float] = None) -> bool:
        """True while the store is open and answers a trivial query."""
        if self._writer is None:
            return False
        try:
            return self.execute("SELECT 1 AS ok", timeout=timeout).scalar() == 1
        except StorageError:
            return False

    def has_capability(self, name: str) -> bool:
        if name == Capability.VECTOR.value:
            return self._has_vec
        return False

    def __repr__(self):
        return f"<EmbeddedBackend {self.db_path}>"
