"""Migration orchestrator: decides whether migrations run and classifies the result.

Decision table:

    condition                              outcome
    -------------------------------------  ----------------------------
    configuration invalid                  Fatal(configuration)
    mode CLIENT                            Skipped(reason=client-mode)
    SERVER, health check fails             Fatal(connection)
    engine COMPLETE                        Success
    MigrationFailed                        Fatal(migration)
    CapabilityMissing                      Fatal(capability)
    MigrationDrift                         Fatal(drift)
    ConnectionRefused                      Fatal(connection)
    OperationTimeout (attempts exhausted)  Fatal(timeout)
    MigrationCancelled                     Fatal(cancelled)
    StorageError                           Fatal(storage)

Success and Skipped exit 0, Fatal exits 1. Running it again after success
is a no-op Success, so pipelines may retry a build freely.
"""

import logging
import threading
from typing import Optional, Sequence

from duomode.migrations.engine import MigrationEngine
from duomode.protocols import (
    Backend,
    CapabilityMissing,
    ConfigurationError,
    ConnectionRefused,
    MigrationCancelled,
    MigrationDrift,
    MigrationFailed,
    OperationTimeout,
    StorageError,
)
from duomode.types import Capability, FatalKind, Migration, MigrationOutcome, Mode

logger = logging.getLogger(__name__)

CLIENT_MODE_REASON = "client-mode"


class MigrationOrchestrator:
    """Decides whether migrations run and classifies what happened.

    Args:
        mode: The process mode, resolved once at startup.
        backend: The opened backend; never touched in client mode.
        migrations: Ordered definitions for this backend's dialect.
        timeout: Per-operation timeout passed to the backend.
        attempts: Whole-run attempts when the run times out.
        cancel: Event the pipeline sets to stop before the next step.
    """

    def __init__(
        self,
        mode: Mode,
        backend: Optional[Backend] = None,
        migrations: Sequence[Migration] = (),
        *,
        timeout: Optional[float] = None,
        attempts: int = 1,
        cancel: Optional[threading.Event] = None,
    ):
        self.mode = mode
        self.backend = backend
        self.migrations = list(migrations)
        self.timeout = timeout
        self.attempts = max(1, attempts)
        self.cancel = cancel

    def run(self) -> MigrationOutcome:
        if self.mode is Mode.CLIENT:
            logger.info("Client mode: no shared schema, skipping migrations")
            return MigrationOutcome.skipped(CLIENT_MODE_REASON)

        if self.backend is None:
            return MigrationOutcome.fatal(
                FatalKind.CONFIGURATION, "Server mode requires a relational backend"
            )

        outcome = None
        for attempt in range(1, self.attempts + 1):
            outcome = self._run_once()
            if outcome.kind is not FatalKind.TIMEOUT or attempt == self.attempts:
                break
            logger.warning(f"Migration run timed out (attempt {attempt}/{self.attempts}), retrying")
        return outcome

    def _run_once(self) -> MigrationOutcome:
        if not self.backend.health_check(timeout=self.timeout):
            return MigrationOutcome.fatal(
                FatalKind.CONNECTION, f"Backend unreachable: {self.backend!r}"
            )

        try:
            engine = MigrationEngine(self.backend, self.migrations, timeout=self.timeout)
            report = engine.run(cancel=self.cancel)
            vector = self.backend.has_capability(Capability.VECTOR.value)
        except MigrationFailed as e:
            return MigrationOutcome.fatal(FatalKind.MIGRATION, str(e), e.identifier)
        except CapabilityMissing as e:
            return MigrationOutcome.fatal(FatalKind.CAPABILITY, str(e), e.identifier)
        except MigrationDrift as e:
            return MigrationOutcome.fatal(FatalKind.DRIFT, str(e), e.identifier)
        except MigrationCancelled as e:
            return MigrationOutcome.fatal(FatalKind.CANCELLED, str(e), e.identifier)
        except ConnectionRefused as e:
            return MigrationOutcome.fatal(FatalKind.CONNECTION, str(e))
        except OperationTimeout as e:
            return MigrationOutcome.fatal(FatalKind.TIMEOUT, str(e))
        except ConfigurationError as e:
            return MigrationOutcome.fatal(FatalKind.CONFIGURATION, str(e))
        except StorageError as e:
            return MigrationOutcome.fatal(FatalKind.STORAGE, str(e))

        logger.info(f"Migrations complete: applied {report.applied or 'none'}")
        return MigrationOutcome.success(report.applied, vector=vector)
