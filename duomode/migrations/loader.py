"""Load migration definitions from ``.sql`` files.

File layout::

    migrations/sql/
        0001_core_tables.sql
        0002_settings.sql
        0003_embeddings.postgres.sql   -- requires: vector / optional: true
        0003_embeddings.sqlite.sql

A ``.sqlite.sql`` or ``.postgres.sql`` file replaces the plain ``.sql``
file with the same number for that dialect; files for the other dialect
are ignored.

Header directives (comment lines before the first statement):

    -- requires: vector     capability the backend must provide
    -- optional: true       include only when the capability is enabled

Statements are split on a ``;`` at the end of a line. Comment-only and
blank lines are dropped. Function bodies containing ``;`` mid-line are
fine; bodies with ``;`` at a line end are not supported.
"""

import logging
import re
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from duomode.protocols import ConfigurationError
from duomode.types import Migration

logger = logging.getLogger(__name__)

_FILENAME = re.compile(r"^(\d+)_([A-Za-z0-9_\-]+?)(?:\.(sqlite|postgres))?\.sql$")
_DIRECTIVE = re.compile(r"^--\s*(requires|optional)\s*:\s*(\S+)\s*$", re.IGNORECASE)
_TRUE = {"true", "yes", "1"}


def split_statements(sql: str) -> Tuple[str, ...]:
    """Split a migration file into individual statements."""
    statements = []
    current: List[str] = []
    for line in sql.split("\n"):
        stripped = line.strip()
        if stripped.startswith("--") or not stripped:
            continue
        current.append(line.rstrip())
        if stripped.endswith(";"):
            statements.append("\n".join(current).strip().rstrip(";").strip())
            current = []
    if current:
        tail = "\n".join(current).strip()
        if tail:
            statements.append(tail)
    return tuple(s for s in statements if s)


def _parse_directives(sql: str) -> Tuple[Optional[str], bool]:
    requires = None
    optional = False
    for line in sql.split("\n"):
        stripped = line.strip()
        if not stripped:
            continue
        if not stripped.startswith("--"):
            break
        match = _DIRECTIVE.match(stripped)
        if not match:
            continue
        key, value = match.group(1).lower(), match.group(2)
        if key == "requires":
            requires = value.lower()
        else:
            optional = value.lower() in _TRUE
    return requires, optional


def parse_migration(path: Path) -> Migration:
    """Build a Migration from one ``NNNN_name.sql`` file."""
    match = _FILENAME.match(path.name)
    if not match:
        raise ConfigurationError(
            f"Migration file name must look like 0001_name.sql: {path.name}"
        )
    try:
        sql = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigurationError(f"Cannot read {path.name}: {e}") from e
    statements = split_statements(sql)
    if not statements:
        raise ConfigurationError(f"Migration {path.name} contains no statements")
    requires, optional = _parse_directives(sql)
    if optional and not requires:
        raise ConfigurationError(f"Optional migration {path.name} must declare 'requires'")
    return Migration(
        identifier=int(match.group(1)),
        name=match.group(2),
        statements=statements,
        requires=requires,
        optional=optional,
    )


def validate_sequence(migrations: Sequence[Migration]) -> List[Migration]:
    """Sort and check identifiers are unique and contiguous from 1."""
    ordered = sorted(migrations, key=lambda m: m.identifier)
    for expected, migration in enumerate(ordered, start=1):
        if migration.identifier != expected:
            if migration.identifier < expected:
                raise ConfigurationError(f"Duplicate migration identifier {migration.identifier}")
            raise ConfigurationError(
                f"Migration sequence has a gap: expected {expected}, found {migration.identifier}"
            )
    return ordered


def select_optional(
    migrations: Sequence[Migration], enabled: Iterable[str] = ()
) -> List[Migration]:
    """Drop optional migrations whose capability is not enabled.

    Dropped migrations must form a suffix of the sequence; a required
    migration after a dropped one would leave a gap in the ledger.
    """
    enabled = {e.lower() for e in enabled}
    selected: List[Migration] = []
    excluded: Optional[Migration] = None
    for migration in validate_sequence(migrations):
        if migration.optional and migration.requires not in enabled:
            if excluded is None:
                excluded = migration
            logger.debug(f"Excluding optional migration {migration.label}")
            continue
        if excluded is not None:
            raise ConfigurationError(
                f"Migration {migration.label} follows excluded optional migration "
                f"{excluded.label}; enable '{excluded.requires}' or renumber"
            )
        selected.append(migration)
    return selected


def _pick_files(paths: Iterable[Path], dialect: Optional[str]) -> List[Path]:
    """One file per identifier: the dialect-specific one wins over the plain one."""
    generic: List[Path] = []
    specific: Dict[str, Path] = {}
    for path in paths:
        match = _FILENAME.match(path.name)
        if not match:
            raise ConfigurationError(
                f"Migration file name must look like 0001_name.sql: {path.name}"
            )
        file_dialect = match.group(3)
        if file_dialect is None:
            generic.append(path)
        elif file_dialect == dialect:
            if match.group(1) in specific:
                raise ConfigurationError(f"Duplicate migration identifier {int(match.group(1))}")
            specific[match.group(1)] = path
    chosen = [p for p in generic if _FILENAME.match(p.name).group(1) not in specific]
    return sorted(chosen + list(specific.values()), key=lambda p: p.name)


def load_migrations(
    directory: Union[str, Path],
    enabled: Iterable[str] = (),
    dialect: Optional[str] = None,
) -> List[Migration]:
    """Read, validate and filter every migration in ``directory`` for ``dialect``."""
    directory = Path(directory)
    if not directory.is_dir():
        raise ConfigurationError(f"Migrations directory not found: {directory}")
    paths = _pick_files(directory.glob("*.sql"), dialect)
    migrations = [parse_migration(p) for p in paths]
    selected = select_optional(migrations, enabled)
    logger.debug(f"Loaded {len(selected)} of {len(migrations)} migrations from {directory}")
    return selected
