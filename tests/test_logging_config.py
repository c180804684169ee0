"""Tests for duomode.logging_config module."""

import logging

import pytest

from duomode.logging_config import log_migration_event, log_outcome, setup_duomode_logging
from duomode.types import FatalKind, MigrationOutcome


@pytest.fixture
def log_dir(isolated_env):
    return isolated_env / "logs"


class TestSetupDuomodeLogging:
    """Tests for setup_duomode_logging."""

    def test_returns_logger(self, log_dir):
        logger = setup_duomode_logging()
        assert isinstance(logger, logging.Logger)
        assert logger.name == "duomode"

    def test_creates_dated_log_file(self, log_dir):
        logger = setup_duomode_logging()
        logger.info("hello")
        for handler in logger.handlers:
            handler.flush()
        files = list(log_dir.glob("local-*.log"))
        assert len(files) == 1
        assert "| INFO | duomode | hello" in files[0].read_text()

    def test_no_duplicate_handlers(self, log_dir):
        setup_duomode_logging()
        logger = setup_duomode_logging()
        file_handlers = [h for h in logger.handlers if isinstance(h, logging.FileHandler)]
        assert len(file_handlers) == 1

    def test_debug_adds_console_handler(self, log_dir):
        logger = setup_duomode_logging("DEBUG")
        console = [
            h for h in logger.handlers
            if isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
        ]
        assert len(console) == 1
        assert logger.level == logging.DEBUG

    def test_invalid_level_falls_back_to_info(self, log_dir):
        assert setup_duomode_logging("LOUD").level == logging.INFO

    def test_level_is_case_insensitive(self, log_dir):
        assert setup_duomode_logging("warning").level == logging.WARNING


class TestMigrationEvents:
    """Tests for log_migration_event and log_outcome."""

    def test_event_line(self, log_dir):
        log_migration_event("applied", "0001_core_tables", mode="server")
        files = list(log_dir.glob("migration-events-*.log"))
        assert len(files) == 1
        line = files[0].read_text().strip()
        assert line.endswith("| applied | mode=server | 0001_core_tables")

    def test_unknown_mode(self, log_dir):
        log_migration_event("outcome", "x")
        content = next(log_dir.glob("migration-events-*.log")).read_text()
        assert "mode=unknown" in content

    def test_events_append(self, log_dir):
        log_migration_event("a", "1")
        log_migration_event("b", "2")
        content = next(log_dir.glob("migration-events-*.log")).read_text()
        assert len(content.strip().splitlines()) == 2

    def test_fatal_outcome(self, log_dir):
        outcome = MigrationOutcome.fatal(FatalKind.MIGRATION, "boom", failed_identifier=2, applied=[1])
        log_outcome(outcome, mode="server")
        content = next(log_dir.glob("migration-events-*.log")).read_text()
        assert "status=fatal, kind=migration, applied=1, failed=2, reason=boom" in content

    def test_skipped_outcome(self, log_dir):
        log_outcome(MigrationOutcome.skipped("client-mode"), mode="client")
        content = next(log_dir.glob("migration-events-*.log")).read_text()
        assert "status=skipped, reason=client-mode" in content
