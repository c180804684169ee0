"""Process wiring: resolve the mode once, build one backend, bind the facade.

    settings -> Runtime (mode, descriptor) -> build_backend -> DataAccess
                                                   |
                                      MigrationOrchestrator.run()
                                                   |
                                           facade.mark_ready()

The Runtime is computed once and passed explicitly; nothing below this
module reads configuration or re-evaluates the mode.
"""

import logging
import threading
from dataclasses import dataclass
from typing import List, Optional, Sequence

from duomode.config import Settings, get_settings
from duomode.facade import DataAccess
from duomode.logging_config import log_migration_event, log_outcome
from duomode.migrations.engine import MigrationEngine
from duomode.migrations.loader import load_migrations
from duomode.mode import parse_connection_string, resolve_mode
from duomode.orchestrator import MigrationOrchestrator
from duomode.protocols import (
    Backend,
    BootstrapError,
    ConfigurationError,
    ConnectionRefused,
    StorageError,
)
from duomode.storage import EmbeddedBackend, RelationalBackend
from duomode.types import (
    ConnectionDescriptor,
    FatalKind,
    Migration,
    MigrationOutcome,
    Mode,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Runtime:
    """The immutable, once-per-process result of mode resolution."""

    mode: Mode
    settings: Settings
    descriptor: Optional[ConnectionDescriptor] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "Runtime":
        mode = resolve_mode(settings)
        descriptor = parse_connection_string(settings.database_url) if mode is Mode.SERVER else None
        return cls(mode=mode, settings=settings, descriptor=descriptor)


def build_backend(runtime: Runtime) -> Backend:
    """Select the backend for this process. Not opened yet."""
    settings = runtime.settings
    if runtime.mode is Mode.SERVER:
        return RelationalBackend(
            runtime.descriptor,
            min_size=settings.pool_min_size,
            max_size=settings.pool_max_size,
            pool_timeout=settings.pool_timeout,
            connect_timeout=settings.connect_timeout,
            statement_timeout=settings.statement_timeout,
        )
    return EmbeddedBackend(
        settings.resolved_embedded_path(),
        enable_vec=settings.enable_sqlite_vec,
    )


def load_runtime_migrations(runtime: Runtime, dialect: str) -> List[Migration]:
    settings = runtime.settings
    return load_migrations(settings.migrations_dir, settings.optional_migrations, dialect=dialect)


def run_pipeline_migrations(
    settings: Optional[Settings] = None,
    migrations: Optional[Sequence[Migration]] = None,
    *,
    cancel: Optional[threading.Event] = None,
) -> MigrationOutcome:
    """Build-pipeline entry: always returns an outcome, never raises.

    Client mode returns before any backend is built, so no network
    resource is touched.
    """
    settings = settings or get_settings()
    try:
        runtime = Runtime.from_settings(settings)
    except ConfigurationError as e:
        outcome = MigrationOutcome.fatal(FatalKind.CONFIGURATION, str(e))
        log_outcome(outcome)
        return outcome

    log_migration_event("mode", "resolved", mode=runtime.mode.value)
    if runtime.mode is Mode.CLIENT:
        outcome = MigrationOrchestrator(runtime.mode).run()
        log_outcome(outcome, mode=runtime.mode.value)
        return outcome

    backend = build_backend(runtime)
    try:
        if migrations is None:
            migrations = load_runtime_migrations(runtime, backend.dialect)
        backend.open()
        outcome = MigrationOrchestrator(
            runtime.mode,
            backend,
            migrations,
            timeout=settings.statement_timeout,
            attempts=settings.migration_attempts,
            cancel=cancel,
        ).run()
    except ConfigurationError as e:
        outcome = MigrationOutcome.fatal(FatalKind.CONFIGURATION, str(e))
    except ConnectionRefused as e:
        outcome = MigrationOutcome.fatal(FatalKind.CONNECTION, str(e))
    except StorageError as e:
        outcome = MigrationOutcome.fatal(FatalKind.STORAGE, str(e))
    finally:
        backend.close()

    log_outcome(outcome, mode=runtime.mode.value)
    return outcome


def bootstrap(
    settings: Optional[Settings] = None,
    migrations: Optional[Sequence[Migration]] = None,
    *,
    migrate_embedded: bool = True,
) -> DataAccess:
    """Resolve the mode, open the backend and return a ready facade.

    Server mode runs the orchestrator and raises BootstrapError on a
    Fatal outcome. Client mode is Skipped by the orchestrator; the local
    schema is then brought up to date on the embedded store directly when
    ``migrate_embedded`` is set.

    Raises:
        ConfigurationError: the mode cannot be resolved
        BootstrapError: the orchestrator reported Fatal
        MigrationFailed, MigrationDrift: the local schema update failed
    """
    settings = settings or get_settings()
    runtime = Runtime.from_settings(settings)
    backend = build_backend(runtime)
    if migrations is None:
        migrations = load_runtime_migrations(runtime, backend.dialect)

    backend.open()
    facade = DataAccess(backend)
    try:
        outcome = MigrationOrchestrator(
            runtime.mode,
            backend,
            migrations,
            timeout=settings.statement_timeout,
            attempts=settings.migration_attempts,
        ).run()
        if not outcome.ok:
            raise BootstrapError(outcome)
        if runtime.mode is Mode.CLIENT and migrate_embedded:
            report = MigrationEngine(backend, migrations).run()
            if report.applied:
                logger.info(f"Local schema updated: applied {report.applied}")
    except BaseException:
        backend.close()
        raise

    facade.mark_ready()
    logger.info(f"duomode ready in {runtime.mode.value} mode")
    return facade
