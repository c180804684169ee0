"""Versioned schema migrations for duomode backends."""

from .ledger import LEDGER_TABLE, read_ledger
from .engine import MigrationEngine, check_drift
from .loader import load_migrations, select_optional, split_statements, validate_sequence

__all__ = [
    "LEDGER_TABLE",
    "MigrationEngine",
    "check_drift",
    "load_migrations",
    "read_ledger",
    "select_optional",
    "split_statements",
    "validate_sequence",
]
