"""
duomode Protocol Definitions
============================

The contracts shared by the storage backends, the migration engine and the
data access facade.

Components:
- Backend:      One storage engine. Embedded (SQLite) or Relational (PostgreSQL).
- Transaction:  A unit of work on a backend. Commits on success, rolls back on error.
- Engine:       Brings the migration ledger up to date on one backend.
- Orchestrator: Decides whether the engine runs and classifies the result.
- Facade:       What application code talks to. Knows nothing about modes.

Error handling philosophy:
- Misconfiguration raises ConfigurationError and is never guessed around
- Network failures raise ConnectionRefused or OperationTimeout (retryable
  outside a migration run, fatal inside one)
- Embedded failures raise StorageError (fatal for that operation only)
- Migration problems raise CapabilityMissing, MigrationDrift or MigrationFailed
- Nothing here is swallowed; the orchestrator turns errors into outcomes
"""

from __future__ import annotations

from typing import (
    Any,
    ContextManager,
    Optional,
    Protocol,
    Sequence,
    runtime_checkable,
)

from duomode.types import QueryResult

# =============================================================================
# ERRORS
# =============================================================================


class DuomodeError(Exception):
    """Base for all duomode errors."""

    retryable = False


class ConfigurationError(DuomodeError):
    """Required configuration is missing, malformed or ambiguous."""

    pass


class StorageError(DuomodeError):
    """Embedded store failure: corruption, resource exhaustion, bad statement."""

    pass


class QueryError(DuomodeError):
    """A statement was rejected by the relational engine."""

    pass


class ConnectionRefused(DuomodeError, ConnectionError):
    """The relational engine could not be reached."""

    retryable = True


class OperationTimeout(DuomodeError, TimeoutError):
    """A pool checkout or statement exceeded the caller's timeout."""

    retryable = True


class CapabilityMissing(DuomodeError):
    """A migration requires a capability the backend does not have."""

    def __init__(self, identifier: int, capability: str):
        self.identifier = identifier
        self.capability = capability
        super().__init__(
            f"Migration {identifier} requires capability '{capability}', "
            f"which the active backend does not provide"
        )


class MigrationDrift(DuomodeError):
    """The ledger disagrees with the migration definitions."""

    def __init__(
        self,
        identifier: int,
        recorded: Optional[str] = None,
        expected: Optional[str] = None,
        message: Optional[str] = None,
    ):
        self.identifier = identifier
        self.recorded = recorded
        self.expected = expected
        super().__init__(
            message
            or (
                f"Checksum mismatch for migration {identifier}: "
                f"ledger={recorded} definition={expected}"
            )
        )


class MigrationFailed(DuomodeError):
    """A migration's content failed to apply. The ledger was left untouched."""

    def __init__(self, identifier: int, cause: Optional[BaseException] = None):
        self.identifier = identifier
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Migration {identifier} failed to apply{detail}")


class MigrationCancelled(DuomodeError):
    """The run was cancelled before the next migration step started."""

    def __init__(self, identifier: int):
        self.identifier = identifier
        super().__init__(f"Migration run cancelled before migration {identifier}")


class NotReadyError(DuomodeError):
    """The data access facade was used before migrations finished."""

    pass


class BootstrapError(DuomodeError):
    """Startup ended in a fatal migration outcome."""

    def __init__(self, outcome):
        self.outcome = outcome
        super().__init__(str(outcome))


# =============================================================================
# BACKEND PROTOCOL
# =============================================================================


@runtime_checkable
class Transaction(Protocol):
    """A unit of work; statements share one connection."""

    def execute(self, query: str, params: Sequence[Any] = ()) -> QueryResult: ...


@runtime_checkable
class Backend(Protocol):
    """Capability set every storage engine provides.

    ``dialect`` is ``"sqlite"`` or ``"postgres"``; the migration ledger uses
    it to pick its catalog queries. Statements use ``?`` placeholders.
    """

    dialect: str

    def open(self) -> Any: ...

    def execute(
        self, query: str, params: Sequence[Any] = (), *, timeout: Optional[float] = None
    ) -> QueryResult: ...

    def close(self, handle: Any = None) -> None: ...

    def health_check(self, timeout: Optional[float] = None) -> bool: ...

    def has_capability(self, name: str) -> bool: ...

    def transaction(
        self, *, exclusive: bool = False, timeout: Optional[float] = None
    ) -> ContextManager[Transaction]: ...
