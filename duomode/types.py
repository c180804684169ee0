"""
Shared types for duomode.

These are the vocabulary passed between the mode resolver, the storage
backends, the migration engine and the orchestrator. None of them hold a
live connection; they are plain values.
"""

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple
from urllib.parse import quote, urlencode

# === Shared Utility Functions ===


def utc_now() -> str:
    """Get current timestamp as ISO string in UTC."""
    return datetime.now(timezone.utc).isoformat()


# === Enums ===


class Mode(str, Enum):
    """Persistence mode for the lifetime of a process."""

    CLIENT = "client"  # Embedded, in-process store; no network
    SERVER = "server"  # Networked relational store shared across instances


class Capability(str, Enum):
    """Optional backend capabilities a migration may depend on."""

    VECTOR = "vector"


class EngineState(str, Enum):
    """Migration engine state machine."""

    IDLE = "idle"
    SCANNING = "scanning"
    APPLYING = "applying"
    COMPLETE = "complete"
    FAILED = "failed"


class OutcomeStatus(str, Enum):
    """What the build pipeline sees."""

    SUCCESS = "success"
    SKIPPED = "skipped"
    FATAL = "fatal"


class FatalKind(str, Enum):
    """Why a migration run was fatal."""

    CONFIGURATION = "configuration"
    CONNECTION = "connection"
    TIMEOUT = "timeout"
    CAPABILITY = "capability"
    DRIFT = "drift"
    MIGRATION = "migration"
    STORAGE = "storage"
    CANCELLED = "cancelled"


# === Connection Descriptor ===


@dataclass(frozen=True)
class ConnectionDescriptor:
    """Parsed server-mode connection string."""

    scheme: str
    host: str
    port: int
    database: str
    user: Optional[str] = None
    password: Optional[str] = None
    options: Tuple[Tuple[str, str], ...] = ()

    def _build(self, password: Optional[str]) -> str:
        auth = ""
        if self.user:
            auth = quote(self.user, safe="")
            if password is not None:
                auth += ":" + password
            auth += "@"
        # IPv6 literals need their brackets back
        host = f"[{self.host}]" if ":" in self.host else self.host
        url = f"{self.scheme}://{auth}{host}:{self.port}/{quote(self.database, safe='')}"
        if self.options:
            url += "?" + urlencode(self.options, quote_via=quote)
        return url

    @property
    def dsn(self) -> str:
        """Connection URI suitable for libpq."""
        password = quote(self.password, safe="") if self.password is not None else None
        return self._build(password)

    def redacted(self) -> str:
        """Connection URI with the password masked, for logs and CLI output."""
        return self._build("***" if self.password is not None else None)

    def __repr__(self):
        return f"<ConnectionDescriptor {self.redacted()}>"


# === Query Results ===


@dataclass
class QueryResult:
    """Rows returned by a backend, always as plain dicts."""

    rows: List[Dict[str, Any]] = field(default_factory=list)
    rowcount: int = -1
    lastrowid: Optional[int] = None

    def first(self) -> Optional[Dict[str, Any]]:
        return self.rows[0] if self.rows else None

    def scalar(self) -> Any:
        """First column of the first row, or None."""
        row = self.first()
        if not row:
            return None
        return next(iter(row.values()))

    def __iter__(self) -> Iterator[Dict[str, Any]]:
        return iter(self.rows)

    def __len__(self) -> int:
        return len(self.rows)


# === Migrations ===


def migration_checksum(
    identifier: int,
    name: str,
    statements: Tuple[str, ...],
    requires: Optional[str] = None,
    optional: bool = False,
) -> str:
    """SHA-256 over a migration's identity, directives and normalized statements.

    Trailing whitespace and surrounding blank lines are ignored so that an
    editor re-save does not register as drift. Directives are hashed only
    when set, so a plain migration keeps the same checksum it always had.
    """
    digest = hashlib.sha256()
    digest.update(f"{identifier}:{name}\n".encode())
    if requires or optional:
        digest.update(f"requires={requires or ''};optional={int(optional)}\n".encode())
    for statement in statements:
        normalized = "\n".join(line.rstrip() for line in statement.strip().splitlines())
        digest.update(normalized.encode("utf-8"))
        digest.update(b"\n--\n")
    return digest.hexdigest()


@dataclass(frozen=True)
class Migration:
    """A single versioned schema change."""

    identifier: int
    name: str
    statements: Tuple[str, ...]
    requires: Optional[str] = None
    optional: bool = False
    checksum: str = ""

    def __post_init__(self):
        if not isinstance(self.identifier, int) or self.identifier < 1:
            raise ValueError(f"Migration identifier must be a positive integer: {self.identifier!r}")
        if not self.statements:
            raise ValueError(f"Migration {self.identifier} has no statements")
        if not self.checksum:
            object.__setattr__(
                self,
                "checksum",
                migration_checksum(
                    self.identifier,
                    self.name,
                    tuple(self.statements),
                    self.requires,
                    self.optional,
                ),
            )

    @property
    def label(self) -> str:
        return f"{self.identifier:04d}_{self.name}"


@dataclass(frozen=True)
class MigrationRecord:
    """One row of the migration ledger."""

    identifier: int
    name: str
    checksum: str
    applied_at: str


@dataclass
class MigrationReport:
    """What one engine run did."""

    state: EngineState = EngineState.IDLE
    applied: List[int] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)
    current: Optional[int] = None


@dataclass(frozen=True)
class MigrationOutcome:
    """Pipeline-facing classification of an orchestrator run."""

    status: OutcomeStatus
    kind: Optional[FatalKind] = None
    reason: str = ""
    applied: Tuple[int, ...] = ()
    failed_identifier: Optional[int] = None
    vector: Optional[bool] = None

    @classmethod
    def success(cls, applied=(), vector: Optional[bool] = None) -> "MigrationOutcome":
        return cls(OutcomeStatus.SUCCESS, applied=tuple(applied), vector=vector)

    @classmethod
    def skipped(cls, reason: str) -> "MigrationOutcome":
        return cls(OutcomeStatus.SKIPPED, reason=reason)

    @classmethod
    def fatal(
        cls,
        kind: FatalKind,
        reason: str,
        failed_identifier: Optional[int] = None,
        applied=(),
    ) -> "MigrationOutcome":
        return cls(
            OutcomeStatus.FATAL,
            kind=kind,
            reason=reason,
            failed_identifier=failed_identifier,
            applied=tuple(applied),
        )

    @property
    def ok(self) -> bool:
        return self.status is not OutcomeStatus.FATAL

    @property
    def exit_code(self) -> int:
        """Process exit status for the build pipeline."""
        return 0 if self.ok else 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "kind": self.kind.value if self.kind else None,
            "reason": self.reason,
            "applied": list(self.applied),
            "failed_identifier": self.failed_identifier,
            "vector": self.vector,
            "exit_code": self.exit_code,
        }

    def __str__(self):
        if self.status is OutcomeStatus.FATAL:
            return f"Fatal({self.kind.value}): {self.reason}"
        if self.status is OutcomeStatus.SKIPPED:
            return f"Skipped(reason={self.reason})"
        return f"Success(applied={list(self.applied)})"
