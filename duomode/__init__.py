"""
duomode - one data layer, two persistence modes.

Embedded SQLite for local clients, PostgreSQL for shared servers, and a
migration orchestrator that knows which one it is talking to.
"""

from .core import Runtime, bootstrap, run_pipeline_migrations
from .facade import DataAccess
from .mode import parse_connection_string, resolve_mode
from .types import MigrationOutcome, Mode

try:
    from importlib.metadata import version

    __version__ = version("duomode")
except Exception:
    __version__ = "0.0.0"

__all__ = [
    "DataAccess",
    "MigrationOutcome",
    "Mode",
    "Runtime",
    "bootstrap",
    "parse_connection_string",
    "resolve_mode",
    "run_pipeline_migrations",
]
