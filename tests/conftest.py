"""
Pytest fixtures and test configuration for duomode tests.
"""

import logging
from typing import Optional

import pytest

from duomode.config import get_settings
from duomode.storage import EmbeddedBackend
from duomode.types import Migration

_SETTINGS_ENV = (
    "SERVER_MODE",
    "DATABASE_URL",
    "EMBEDDED_PATH",
    "ENABLE_SQLITE_VEC",
    "MIGRATIONS_DIR",
    "OPTIONAL_MIGRATIONS",
    "MIGRATION_ATTEMPTS",
    "POOL_MIN_SIZE",
    "POOL_MAX_SIZE",
    "POOL_TIMEOUT",
    "CONNECT_TIMEOUT",
    "STATEMENT_TIMEOUT",
    "LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Point the data home at a temp dir and drop settings env vars."""
    for name in _SETTINGS_ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("DUOMODE_DATA_DIR", str(tmp_path / "home"))
    get_settings.cache_clear()
    yield tmp_path / "home"
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def clean_duomode_logger():
    """Remove handlers added to the duomode logger by a test."""
    logger = logging.getLogger("duomode")
    yield
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)


def make_migration(
    identifier: int,
    *statements: str,
    name: Optional[str] = None,
    requires: Optional[str] = None,
    optional: bool = False,
) -> Migration:
    """Build a Migration with a default name and one CREATE TABLE statement."""
    return Migration(
        identifier=identifier,
        name=name or f"step_{identifier}",
        statements=statements or (f"CREATE TABLE t{identifier} (id INTEGER PRIMARY KEY)",),
        requires=requires,
        optional=optional,
    )


@pytest.fixture
def embedded(tmp_path):
    """Opened file-backed embedded store without sqlite-vec."""
    backend = EmbeddedBackend(tmp_path / "test.db", enable_vec=False)
    backend.open()
    yield backend
    backend.close()


@pytest.fixture
def memory_backend():
    """Opened in-memory embedded store without sqlite-vec."""
    backend = EmbeddedBackend(enable_vec=False)
    backend.open()
    yield backend
    backend.close()


def table_names(backend) -> set:
    rows = backend.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
    return {row["name"] for row in rows}
