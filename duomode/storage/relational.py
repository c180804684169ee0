"""PostgreSQL storage backend for server mode.

Pooled connections via psycopg_pool, rows as dicts, pgvector detection.

Timeouts:
    Every call accepts ``timeout`` (seconds). It bounds both the wait for a
    pooled connection and the statement itself. Exhausting the pool is an
    explicit backpressure point: callers block up to the timeout and then
    get OperationTimeout, never an indefinite hang. A pool timeout while
    the server refuses a direct connection is reported as ConnectionRefused,
    since the pool itself only ever retries in the background.

Placeholders:
    Statements use ``?`` like the embedded backend. They are rewritten to
    psycopg's ``%s`` outside quoted literals and comments; literal ``%``
    is doubled. Postgres ``?`` operators (jsonb) cannot be combined with
    parameters.
"""

import contextlib
import logging
import math
from dataclasses import dataclass
from typing import Any, Optional, Sequence, Tuple

import psycopg
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout, TooManyRequests

from duomode.protocols import ConnectionRefused, OperationTimeout, QueryError
from duomode.types import Capability, ConnectionDescriptor, QueryResult, utc_now

logger = logging.getLogger(__name__)

# SQLSTATE classes that mean the server went away rather than the statement failing
_CONNECTION_SQLSTATES = frozenset({"57P01", "57P02", "57P03"})
_QUERY_CANCELED = "57014"


@dataclass(frozen=True)
class RelationalHandle:
    """What ``open()`` hands back."""

    target: str
    opened_at: str
    min_size: int
    max_size: int


def to_pyformat(query: str) -> str:
    """Rewrite ``?`` placeholders to ``%s`` and escape literal ``%``.

    Quoted strings, quoted identifiers and ``--`` comments are copied
    through untouched apart from ``%`` escaping.
    """
    out = []
    i = 0
    n = len(query)
    quote_char = None
    in_comment = False
    while i < n:
        ch = query[i]
        if ch == "%":
            out.append("%%")
        elif in_comment:
            out.append(ch)
            if ch == "\n":
                in_comment = False
        elif quote_char:
            out.append(ch)
            if ch == quote_char:
                # Doubled quote is an escaped quote, stay inside the literal
                if i + 1 < n and query[i + 1] == quote_char:
                    out.append(query[i + 1])
                    i += 1
                else:
                    quote_char = None
        elif ch in ("'", '"'):
            quote_char = ch
            out.append(ch)
        elif ch == "-" and query.startswith("--", i):
            in_comment = True
            out.append(ch)
        elif ch == "?":
            out.append("%s")
        else:
            out.append(ch)
        i += 1
    return "".join(out)


def classify_error(e: BaseException) -> Exception:
    """Map a psycopg/pool exception onto the duomode taxonomy."""
    if isinstance(e, (PoolTimeout, TooManyRequests)):
        return OperationTimeout(f"No pooled connection available: {e}")
    sqlstate = getattr(e, "sqlstate", None)
    if sqlstate == _QUERY_CANCELED:
        return OperationTimeout(f"Statement timed out: {e}")
    if isinstance(e, psycopg.OperationalError) and sqlstate is None and "timeout expired" in str(e):
        return OperationTimeout(f"Connection attempt timed out: {e}")
    if isinstance(e, psycopg.OperationalError) and (
        sqlstate is None or sqlstate.startswith("08") or sqlstate in _CONNECTION_SQLSTATES
    ):
        return ConnectionRefused(str(e) or "Connection to server failed")
    if isinstance(e, psycopg.InterfaceError):
        return ConnectionRefused(str(e) or "Connection is not usable")
    return QueryError(str(e))


def _connect_direct(dsn: str, timeout: float):
    """One unpooled connection, used to tell a dead server from a busy pool."""
    return psycopg.connect(dsn, connect_timeout=max(2, math.ceil(timeout)), row_factory=dict_row)


def _run(conn, query: str, params: Sequence[Any]) -> QueryResult:
    if params:
        cur = conn.execute(to_pyformat(query), tuple(params))
    else:
        cur = conn.execute(query)
    rows = [dict(r) for r in cur.fetchall()] if cur.description else []
    return QueryResult(rows=rows, rowcount=cur.rowcount)


class _PostgresTransaction:
    """Statements inside ``RelationalBackend.transaction()``."""

    def __init__(self, conn):
        self._conn = conn

    def execute(self, query: str, params: Sequence[Any] = ()) -> QueryResult:
        try:
            return _run(self._conn, query, params)
        except (psycopg.Error, PoolTimeout) as e:
            raise classify_error(e) from e


class RelationalBackend:
    """Networked PostgreSQL backend with a bounded connection pool."""

    dialect = "postgres"

    def __init__(
        self,
        descriptor: ConnectionDescriptor,
        *,
        min_size: int = 1,
        max_size: int = 10,
        pool_timeout: float = 10.0,
        connect_timeout: float = 5.0,
        statement_timeout: float = 30.0,
    ):
        self.descriptor = descriptor
        self.min_size = min_size
        self.max_size = max_size
        self.pool_timeout = pool_timeout
        self.connect_timeout = connect_timeout
        self.statement_timeout = statement_timeout
        self._pool: Optional[ConnectionPool] = None
        self._handle: Optional[RelationalHandle] = None

    @property
    def is_open(self) -> bool:
        return self._pool is not None

    # === Lifecycle ===

    def open(self) -> RelationalHandle:
        """Create the pool. Connections are established in the background."""
        if self._handle is not None:
            return self._handle

        pool = ConnectionPool(
            self.descriptor.dsn,
            min_size=self.min_size,
            max_size=self.max_size,
            timeout=self.pool_timeout,
            kwargs={
                "row_factory": dict_row,
                "connect_timeout": max(1, int(self.connect_timeout)),
            },
            open=False,
            name="duomode",
        )
        pool.open(wait=False)
        self._pool = pool
        self._handle = RelationalHandle(
            target=self.descriptor.redacted(),
            opened_at=utc_now(),
            min_size=self.min_size,
            max_size=self.max_size,
        )
        logger.info(f"Opened connection pool to {self.descriptor.redacted()}")
        return self._handle

    def close(self, handle: Optional[RelationalHandle] = None) -> None:
        """Close the pool. Safe to call twice."""
        if self._pool is not None:
            self._pool.close()
            self._pool = None
            logger.debug("Closed connection pool")
        self._handle = None

    def _timeouts(self, timeout: Optional[float]) -> Tuple[float, float]:
        if timeout is None:
            return self.pool_timeout, self.statement_timeout
        return timeout, timeout

    @contextlib.contextmanager
    def _checkout(self, timeout: Optional[float]):
        """Borrow a pooled connection inside a transaction with a statement timeout."""
        if self._pool is None:
            raise ConnectionRefused("Relational backend is not open")
        wait, stmt = self._timeouts(timeout)
        try:
            with self._pool.connection(timeout=wait) as conn:
                conn.execute(
                    "SELECT set_config('statement_timeout', %s, true)",
                    (f"{int(stmt * 1000)}ms",),
                )
                yield conn
        except PoolTimeout as e:
            raise self._diagnose_pool_timeout(e) from e
        except (psycopg.Error, TooManyRequests) as e:
            raise classify_error(e) from e

    def _diagnose_pool_timeout(self, e: PoolTimeout) -> Exception:
        """The pool retries refused connections silently; ask the server directly."""
        try:
            _connect_direct(self.descriptor.dsn, self.connect_timeout).close()
        except psycopg.Error as direct:
            logger.warning(f"{self.descriptor.redacted()} unreachable: {direct}")
            return ConnectionRefused(f"Server unreachable: {direct}")
        return OperationTimeout(f"No pooled connection available: {e}")

    # === Interface ===

    def execute(
        self, query: str, params: Sequence[Any] = (), *, timeout: Optional[float] = None
    ) -> QueryResult:
        """Run one statement in its own transaction."""
        with self._checkout(timeout) as conn:
            return _run(conn, query, params)

    @contextlib.contextmanager
    def transaction(self, *, exclusive: bool = False, timeout: Optional[float] = None):
        """Context manager for a unit of work on one pooled connection.

        The pool commits on clean exit and rolls back on error. Postgres
        has no database-wide write lock, so ``exclusive`` is accepted for
        interface parity; callers lock the tables they need.
        """
        with self._checkout(timeout) as conn:
            yield _PostgresTransaction(conn)

    def ping(self, timeout: Optional[float] = None) -> None:
        """Round-trip ``SELECT 1`` on a fresh, unpooled connection.

        Bypasses the pool so a refused server shows up as ConnectionRefused
        at once instead of as a pool timeout.

        Raises:
            ConnectionRefused: not open, or the server cannot be reached
            OperationTimeout: the connection attempt timed out
        """
        if self._pool is None:
            raise ConnectionRefused("Relational backend is not open")
        wait = self.connect_timeout if timeout is None else timeout
        try:
            with _connect_direct(self.descriptor.dsn, wait) as conn:
                row = conn.execute("SELECT 1 AS ok").fetchone()
        except psycopg.Error as e:
            raise classify_error(e) from e
        if not row or row.get("ok") != 1:
            raise ConnectionRefused(f"Unexpected reply from {self.descriptor.redacted()}: {row!r}")

    def health_check(self, timeout: Optional[float] = None) -> bool:
        """True if the server answers ``SELECT 1``. Never raises."""
        try:
            self.ping(timeout)
            return True
        except (ConnectionRefused, OperationTimeout, QueryError) as e:
            logger.warning(f"Health check failed for {self.descriptor.redacted()}: {e}")
            return False

    def has_vector_extension(self, timeout: Optional[float] = None) -> bool:
        """Whether pgvector is installed in this database."""
        result = self.execute(
            "SELECT 1 AS present FROM pg_extension WHERE extname = 'vector'",
            timeout=timeout,
        )
        return bool(result.rows)

    def has_capability(self, name: str) -> bool:
        if name == Capability.VECTOR.value:
            return self.has_vector_extension()
        return False

    def pool_stats(self) -> dict:
        """Pool counters from psycopg_pool (empty when closed)."""
        if self._pool is None:
            return {}
        return dict(self._pool.get_stats())

    def __repr__(self):
        return f"<RelationalBackend {self.descriptor.redacted()}>"
