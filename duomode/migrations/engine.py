"""Schema migration engine.

Brings the migration ledger of one backend up to date:

1. Read the ledger (empty if none exists yet).
2. Check every recorded migration against its definition (drift).
3. Pending = definitions with identifier above the highest recorded one.
4. For each pending migration, in ascending order:
   - stop if the run was cancelled (only between steps)
   - stop with CapabilityMissing if a declared capability is absent
   - apply all statements and the ledger record in one exclusive
     transaction; on error roll back and raise MigrationFailed

State machine::

    IDLE -> SCANNING -> APPLYING(i) -> APPLYING(i+1) ... -> COMPLETE
                            |
                            +-> FAILED

There are no retries inside one run. The orchestrator decides whether to
run again.
"""

import logging
import threading
from typing import Dict, List, Optional, Sequence

from duomode.migrations import ledger
from duomode.migrations.loader import validate_sequence
from duomode.protocols import (
    Backend,
    CapabilityMissing,
    ConnectionRefused,
    MigrationCancelled,
    MigrationDrift,
    MigrationFailed,
    OperationTimeout,
    QueryError,
    StorageError,
)
from duomode.types import EngineState, Migration, MigrationRecord, MigrationReport

logger = logging.getLogger(__name__)


def check_drift(records: Dict[int, MigrationRecord], by_id: Dict[int, Migration]) -> None:
    """Raise MigrationDrift if the ledger disagrees with the definitions."""
    for identifier, record in sorted(records.items()):
        migration = by_id.get(identifier)
        if migration is None:
            raise MigrationDrift(
                identifier,
                recorded=record.checksum,
                message=(
                    f"Ledger records migration {identifier} ({record.name}) "
                    f"which has no definition; the database is ahead of this code"
                ),
            )
        if record.checksum != migration.checksum:
            raise MigrationDrift(identifier, recorded=record.checksum, expected=migration.checksum)

    if records:
        expected = list(range(1, max(records) + 1))
        if sorted(records) != expected:
            missing = sorted(set(expected) - set(records))
            raise MigrationDrift(
                missing[0],
                message=f"Ledger has a gap: migrations {missing} are not recorded",
            )


class MigrationEngine:
    """Applies ordered, versioned migrations to one bound backend."""

    def __init__(
        self,
        backend: Backend,
        migrations: Sequence[Migration],
        *,
        timeout: Optional[float] = None,
    ):
        self.backend = backend
        self.migrations: List[Migration] = validate_sequence(migrations)
        self.timeout = timeout
        self.state = EngineState.IDLE
        self.current: Optional[int] = None

    def _set_state(self, state: EngineState, current: Optional[int] = None) -> None:
        self.state = state
        self.current = current
        logger.debug(f"Migration engine -> {state.value}" + (f"({current})" if current else ""))

    def read_ledger(self) -> Dict[int, MigrationRecord]:
        with self.backend.transaction(timeout=self.timeout) as tx:
            return ledger.read_ledger(tx, self.backend.dialect)

    def pending(self) -> List[Migration]:
        """Migrations that would be applied now. Raises MigrationDrift like ``run``."""
        records = self.read_ledger()
        check_drift(records, {m.identifier: m for m in self.migrations})
        highest = max(records, default=0)
        return [m for m in self.migrations if m.identifier > highest]

    def run(self, cancel: Optional[threading.Event] = None) -> MigrationReport:
        """Apply every pending migration. Returns a report in state COMPLETE.

        Raises:
            MigrationDrift: ledger and definitions disagree
            CapabilityMissing: a pending migration needs an absent capability
            MigrationFailed: a migration's statements failed (nothing recorded)
            MigrationCancelled: ``cancel`` was set before a step started
            ConnectionRefused, OperationTimeout: network failure mid-run
        """
        report = MigrationReport()
        self._set_state(EngineState.SCANNING)
        try:
            to_apply = self.pending()
            logger.info(
                f"{len(to_apply)} pending of {len(self.migrations)} migrations "
                f"on {self.backend.dialect} backend"
            )
            for migration in to_apply:
                if cancel is not None and cancel.is_set():
                    raise MigrationCancelled(migration.identifier)
                self._set_state(EngineState.APPLYING, migration.identifier)
                report.current = migration.identifier
                if migration.requires and not self.backend.has_capability(migration.requires):
                    raise CapabilityMissing(migration.identifier, migration.requires)
                if self._apply(migration):
                    report.applied.append(migration.identifier)
                else:
                    report.skipped.append(migration.identifier)
        except BaseException:
            self._set_state(EngineState.FAILED, self.current)
            report.state = EngineState.FAILED
            raise

        self._set_state(EngineState.COMPLETE)
        report.state = EngineState.COMPLETE
        report.current = None
        return report

    def _apply(self, migration: Migration) -> bool:
        """Apply one migration atomically. False if a concurrent run got there first."""
        dialect = self.backend.dialect
        try:
            with self.backend.transaction(exclusive=True, timeout=self.timeout) as tx:
                ledger.ensure_ledger(tx, dialect)
                # Re-read under the lock: another run may have applied it meanwhile
                recorded = ledger.read_ledger(tx, dialect).get(migration.identifier)
                if recorded is not None:
                    if recorded.checksum != migration.checksum:
                        raise MigrationDrift(
                            migration.identifier,
                            recorded=recorded.checksum,
                            expected=migration.checksum,
                        )
                    logger.info(f"Migration {migration.label} already applied by another run")
                    return False
                for statement in migration.statements:
                    tx.execute(statement)
                ledger.record_migration(tx, migration.identifier, migration.name, migration.checksum)
        except (ConnectionRefused, OperationTimeout, MigrationDrift):
            raise
        except (StorageError, QueryError) as e:
            logger.error(f"Migration {migration.label} failed: {e}")
            raise MigrationFailed(migration.identifier, e) from e

        logger.info(f"Applied migration {migration.label}")
        return True
