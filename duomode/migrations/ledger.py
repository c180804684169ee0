"""Migration ledger stored inside the active backend.

The ledger lives in the same database as the schema it describes, so both
move together under one backup/restore boundary. It is created inside the
transaction of the first migration applied, written only by the engine,
and never deleted.
"""

import logging
from typing import Dict

from duomode.protocols import StorageError, Transaction
from duomode.types import MigrationRecord, utc_now

logger = logging.getLogger(__name__)

LEDGER_TABLE = "schema_migrations"

LEDGER_SCHEMA = {
    "sqlite": f"""
CREATE TABLE IF NOT EXISTS {LEDGER_TABLE} (
    identifier INTEGER PRIMARY KEY,
    name TEXT NOT NULL,
    checksum TEXT NOT NULL CHECK (length(checksum) = 64),
    applied_at TEXT NOT NULL
)
""",
    "postgres": f"""
CREATE TABLE IF NOT EXISTS {LEDGER_TABLE} (
    identifier INTEGER PRIMARY KEY,
    name TEXT NOT NULL,
    checksum CHAR(64) NOT NULL,
    applied_at TIMESTAMPTZ NOT NULL
)
""",
}

_EXISTS = {
    "sqlite": "SELECT name FROM sqlite_master WHERE type = 'table' AND name = ?",
    "postgres": "SELECT to_regclass(?) AS name",
}

# Held until commit; a concurrent run blocks here and then re-reads
_LOCK = {
    "sqlite": None,  # BEGIN IMMEDIATE already holds the database write lock
    "postgres": f"LOCK TABLE {LEDGER_TABLE} IN SHARE ROW EXCLUSIVE MODE",
}


def _dialect(dialect: str) -> str:
    if dialect not in LEDGER_SCHEMA:
        raise StorageError(f"No ledger support for dialect '{dialect}'")
    return dialect


def ledger_exists(tx: Transaction, dialect: str) -> bool:
    row = tx.execute(_EXISTS[_dialect(dialect)], (LEDGER_TABLE,)).first()
    return bool(row and row.get("name"))


def read_ledger(tx: Transaction, dialect: str) -> Dict[int, MigrationRecord]:
    """All ledger rows keyed by identifier; empty when no ledger exists yet."""
    if not ledger_exists(tx, dialect):
        return {}
    result = tx.execute(
        f"SELECT identifier, name, checksum, applied_at FROM {LEDGER_TABLE} ORDER BY identifier"
    )
    return {
        int(row["identifier"]): MigrationRecord(
            identifier=int(row["identifier"]),
            name=row["name"],
            checksum=str(row["checksum"]).strip(),
            applied_at=str(row["applied_at"]),
        )
        for row in result
    }


def ensure_ledger(tx: Transaction, dialect: str) -> None:
    """Create the ledger if missing and take the ledger lock for this transaction."""
    dialect = _dialect(dialect)
    tx.execute(LEDGER_SCHEMA[dialect])
    lock = _LOCK[dialect]
    if lock:
        tx.execute(lock)


def record_migration(
    tx: Transaction, identifier: int, name: str, checksum: str
) -> MigrationRecord:
    applied_at = utc_now()
    tx.execute(
        f"INSERT INTO {LEDGER_TABLE} (identifier, name, checksum, applied_at) VALUES (?, ?, ?, ?)",
        (identifier, name, checksum, applied_at),
    )
    logger.debug(f"Recorded migration {identifier} ({name})")
    return MigrationRecord(
        identifier=identifier, name=name, checksum=checksum, applied_at=applied_at
    )
