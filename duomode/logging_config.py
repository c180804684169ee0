"""Local logging for duomode.

Two files under ``<data home>/logs``:

- ``local-YYYY-MM-DD.log``            everything the ``duomode`` logger emits
- ``migration-events-YYYY-MM-DD.log`` one line per pipeline-relevant event
  (mode resolved, migration applied, run outcome)
"""

import logging
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Optional

from duomode.utils import get_data_home

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
_VALID_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _log_dir() -> Path:
    path = get_data_home() / "logs"
    path.mkdir(parents=True, exist_ok=True)
    return path


def setup_duomode_logging(level: str = "INFO") -> logging.Logger:
    """Configure the ``duomode`` logger with a dated file handler.

    DEBUG also echoes to the console. Calling this again reuses the
    existing handlers instead of stacking new ones. Unknown levels fall
    back to INFO.
    """
    level_name = str(level).upper()
    if level_name not in _VALID_LEVELS:
        level_name = "INFO"
    numeric = getattr(logging, level_name)

    logger = logging.getLogger("duomode")
    logger.setLevel(numeric)

    formatter = logging.Formatter(LOG_FORMAT)
    if not any(isinstance(h, logging.FileHandler) for h in logger.handlers):
        log_file = _log_dir() / f"local-{date.today().isoformat()}.log"
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    has_console = any(
        isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
        for h in logger.handlers
    )
    if numeric <= logging.DEBUG and not has_console:
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        logger.addHandler(console)

    return logger


def log_migration_event(event_type: str, details: str, mode: Optional[str] = None) -> None:
    """Append one line to today's migration events log."""
    event_file = _log_dir() / f"migration-events-{date.today().isoformat()}.log"
    timestamp = datetime.now(timezone.utc).isoformat(timespec="seconds")
    with open(event_file, "a", encoding="utf-8") as f:
        f.write(f"{timestamp} | {event_type} | mode={mode or 'unknown'} | {details}\n")


def log_outcome(outcome, mode: Optional[str] = None) -> None:
    """Record an orchestrator outcome."""
    parts = [f"status={outcome.status.value}"]
    if outcome.kind is not None:
        parts.append(f"kind={outcome.kind.value}")
    if outcome.applied:
        parts.append(f"applied={','.join(str(i) for i in outcome.applied)}")
    if outcome.failed_identifier is not None:
        parts.append(f"failed={outcome.failed_identifier}")
    if outcome.reason:
        parts.append(f"reason={outcome.reason[:120]}")
    log_migration_event("outcome", ", ".join(parts), mode=mode)
