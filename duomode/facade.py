"""Data access facade.

The only storage surface application code sees. It is bound to exactly one
backend for the life of the process and offers nothing mode-specific:
callers cannot tell, and should not care, whether rows come from the
embedded store or the relational server.
"""

import contextlib
import logging
from typing import Any, Optional, Sequence

from duomode.protocols import Backend, NotReadyError
from duomode.types import QueryResult

logger = logging.getLogger(__name__)


class DataAccess:
    """Routes every statement to the bound backend.

    The facade starts not-ready; ``mark_ready()`` is called once migrations
    have finished (or were correctly skipped). Errors from the backend are
    re-raised unchanged.
    """

    def __init__(self, backend: Backend):
        self._backend = backend
        self._ready = False

    @property
    def ready(self) -> bool:
        return self._ready

    def mark_ready(self) -> None:
        self._ready = True
        logger.debug("Data access facade ready")

    def _require_ready(self) -> Backend:
        if not self._ready:
            raise NotReadyError("Data access is not ready: migrations have not completed")
        return self._backend

    def query(
        self, statement: str, params: Sequence[Any] = (), *, timeout: Optional[float] = None
    ) -> QueryResult:
        """Run one statement with ``?`` placeholders and return its rows."""
        return self._require_ready().execute(statement, params, timeout=timeout)

    @contextlib.contextmanager
    def transaction(self, *, timeout: Optional[float] = None):
        """Several statements as one unit; commits on success, rolls back on error."""
        with self._require_ready().transaction(timeout=timeout) as tx:
            yield tx

    def close(self) -> None:
        self._ready = False
        self._backend.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False

    def __repr__(self):
        state = "ready" if self._ready else "not ready"
        return f"<DataAccess {state}>"
