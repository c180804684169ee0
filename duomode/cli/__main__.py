"""
duomode CLI - mode inspection and pipeline migrations.

Usage:
    duomode mode [--json]
    duomode migrate [--json] [--dir PATH]
    duomode status [--json] [--dir PATH]
    duomode health [--timeout S]

Exit codes: 0 on Success or Skipped, 1 on Fatal or any error.
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from duomode.config import Settings, get_settings
from duomode.core import Runtime, build_backend, load_runtime_migrations, run_pipeline_migrations
from duomode.logging_config import setup_duomode_logging
from duomode.migrations.engine import MigrationEngine
from duomode.protocols import DuomodeError
from duomode.types import Mode

# Set up logging
logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)


def _settings_for(args) -> Settings:
    settings = get_settings()
    if getattr(args, "dir", None):
        settings = settings.model_copy(update={"migrations_dir": Path(args.dir)})
    return settings


def cmd_mode(args, settings: Settings):
    """Show the resolved persistence mode."""
    runtime = Runtime.from_settings(settings)
    target = (
        runtime.descriptor.redacted()
        if runtime.mode is Mode.SERVER
        else str(settings.resolved_embedded_path())
    )
    if args.json:
        print(json.dumps({"mode": runtime.mode.value, "target": target}, indent=2))
    else:
        print(f"Mode:   {runtime.mode.value}")
        print(f"Target: {target}")


def cmd_migrate(args, settings: Settings) -> int:
    """Run pipeline migrations and report the outcome."""
    outcome = run_pipeline_migrations(settings)
    if args.json:
        print(json.dumps(outcome.to_dict(), indent=2))
    else:
        print(outcome)
    return outcome.exit_code


def cmd_status(args, settings: Settings):
    """Show applied and pending migrations for the active backend."""
    runtime = Runtime.from_settings(settings)
    backend = build_backend(runtime)
    try:
        migrations = load_runtime_migrations(runtime, backend.dialect)
        backend.open()
        engine = MigrationEngine(backend, migrations, timeout=settings.statement_timeout)
        records = engine.read_ledger()
        pending = engine.pending()
        vector = backend.has_capability("vector")
    finally:
        backend.close()

    if args.json:
        print(json.dumps({
            "mode": runtime.mode.value,
            "dialect": backend.dialect,
            "vector": vector,
            "applied": [
                {"identifier": r.identifier, "name": r.name, "applied_at": r.applied_at}
                for r in records.values()
            ],
            "pending": [m.identifier for m in pending],
        }, indent=2))
        return

    print(f"Migration Status ({runtime.mode.value}, {backend.dialect})")
    print("=" * 40)
    for record in records.values():
        print(f"  [x] {record.identifier:04d}_{record.name}  {record.applied_at[:19]}")
    for migration in pending:
        print(f"  [ ] {migration.label}")
    if not records and not pending:
        print("  No migrations defined.")
    print(f"Vector: {'Yes' if vector else 'No'}")


def cmd_health(args, settings: Settings) -> int:
    """Open the active backend and run its health check."""
    runtime = Runtime.from_settings(settings)
    backend = build_backend(runtime)
    try:
        backend.open()
        healthy = backend.health_check(timeout=args.timeout)
    finally:
        backend.close()
    print(f"{runtime.mode.value}: {'ok' if healthy else 'unreachable'}")
    return 0 if healthy else 1


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="duomode",
        description="Persistence mode and schema migrations",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # mode
    p_mode = subparsers.add_parser("mode", help="Show the resolved mode")
    p_mode.add_argument("--json", "-j", action="store_true")

    # migrate
    p_migrate = subparsers.add_parser("migrate", help="Run pipeline migrations")
    p_migrate.add_argument("--json", "-j", action="store_true")
    p_migrate.add_argument("--dir", "-d", help="Migrations directory (default: bundled)")

    # status
    p_status = subparsers.add_parser("status", help="Show applied and pending migrations")
    p_status.add_argument("--json", "-j", action="store_true")
    p_status.add_argument("--dir", "-d", help="Migrations directory (default: bundled)")

    # health
    p_health = subparsers.add_parser("health", help="Check the active backend")
    p_health.add_argument("--timeout", "-t", type=float, default=5.0)

    args = parser.parse_args(argv)

    try:
        settings = _settings_for(args)
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)
    setup_duomode_logging(settings.log_level)

    code = 0
    try:
        if args.command == "mode":
            cmd_mode(args, settings)
        elif args.command == "migrate":
            code = cmd_migrate(args, settings)
        elif args.command == "status":
            cmd_status(args, settings)
        elif args.command == "health":
            code = cmd_health(args, settings)
    except DuomodeError as e:
        logger.error(f"{type(e).__name__}: {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Command failed: {e}")
        sys.exit(1)

    if code:
        sys.exit(code)


if __name__ == "__main__":
    main()
