"""Tests for MigrationOrchestrator outcome classification."""

import contextlib
import threading
from unittest.mock import MagicMock

import pytest

from conftest import make_migration
from duomode.orchestrator import CLIENT_MODE_REASON, MigrationOrchestrator
from duomode.protocols import ConnectionRefused, OperationTimeout
from duomode.storage import EmbeddedBackend
from duomode.types import FatalKind, Mode, OutcomeStatus


class FlakyBackend(EmbeddedBackend):
    """Embedded backend whose first ``failures`` transactions raise ``error``."""

    def __init__(self, *args, failures=1, error=OperationTimeout, **kwargs):
        super().__init__(*args, **kwargs)
        self.failures = failures
        self.error = error

    @contextlib.contextmanager
    def transaction(self, **kwargs):
        if self.failures:
            self.failures -= 1
            raise self.error("injected")
        with super().transaction(**kwargs) as tx:
            yield tx


@pytest.fixture
def flaky(tmp_path):
    def build(**kwargs):
        backend = FlakyBackend(tmp_path / "flaky.db", enable_vec=False, **kwargs)
        backend.open()
        return backend

    return build


def three():
    return [make_migration(1), make_migration(2), make_migration(3)]


class TestClientMode:
    """Client mode never touches a backend."""

    def test_skipped(self):
        backend = MagicMock()
        outcome = MigrationOrchestrator(Mode.CLIENT, backend, three()).run()
        assert outcome.status is OutcomeStatus.SKIPPED
        assert outcome.reason == CLIENT_MODE_REASON
        assert outcome.exit_code == 0
        assert backend.mock_calls == []

    def test_skipped_without_backend(self):
        assert MigrationOrchestrator(Mode.CLIENT).run().status is OutcomeStatus.SKIPPED


class TestServerMode:
    """Server mode classifies every engine result."""

    def test_success(self, embedded):
        outcome = MigrationOrchestrator(Mode.SERVER, embedded, three()).run()
        assert outcome.status is OutcomeStatus.SUCCESS
        assert outcome.applied == (1, 2, 3)
        assert outcome.vector is False
        assert outcome.exit_code == 0

    def test_repeated_runs_are_noop_success(self, embedded):
        MigrationOrchestrator(Mode.SERVER, embedded, three()).run()
        outcome = MigrationOrchestrator(Mode.SERVER, embedded, three()).run()
        assert outcome.status is OutcomeStatus.SUCCESS
        assert outcome.applied == ()

    def test_missing_backend(self):
        outcome = MigrationOrchestrator(Mode.SERVER, None, three()).run()
        assert outcome.kind is FatalKind.CONFIGURATION

    def test_unhealthy_backend(self):
        backend = MagicMock()
        backend.health_check.return_value = False
        outcome = MigrationOrchestrator(Mode.SERVER, backend, three(), timeout=2).run()
        assert outcome.kind is FatalKind.CONNECTION
        assert outcome.exit_code == 1
        backend.health_check.assert_called_once_with(timeout=2)
        backend.transaction.assert_not_called()

    def test_migration_failure(self, embedded):
        migrations = [make_migration(1), make_migration(2, "NOT SQL"), make_migration(3)]
        outcome = MigrationOrchestrator(Mode.SERVER, embedded, migrations).run()
        assert outcome.kind is FatalKind.MIGRATION
        assert outcome.failed_identifier == 2

    def test_capability_missing(self, embedded):
        migrations = [make_migration(1), make_migration(2, requires="vector")]
        outcome = MigrationOrchestrator(Mode.SERVER, embedded, migrations).run()
        assert outcome.kind is FatalKind.CAPABILITY
        assert outcome.failed_identifier == 2
        assert "vector" in outcome.reason

    def test_drift(self, embedded):
        MigrationOrchestrator(Mode.SERVER, embedded, three()).run()
        edited = [make_migration(1, "CREATE TABLE t1 (id TEXT)"), make_migration(2), make_migration(3)]
        outcome = MigrationOrchestrator(Mode.SERVER, embedded, edited).run()
        assert outcome.kind is FatalKind.DRIFT
        assert outcome.failed_identifier == 1

    def test_cancelled(self, embedded):
        cancel = threading.Event()
        cancel.set()
        outcome = MigrationOrchestrator(Mode.SERVER, embedded, three(), cancel=cancel).run()
        assert outcome.kind is FatalKind.CANCELLED

    def test_connection_lost_mid_run(self, flaky):
        backend = flaky(error=ConnectionRefused)
        try:
            outcome = MigrationOrchestrator(Mode.SERVER, backend, three(), attempts=3).run()
        finally:
            backend.close()
        assert outcome.kind is FatalKind.CONNECTION
        assert backend.failures == 0


class TestTimeoutRetry:
    """Timeouts are retried as a whole run up to ``attempts``."""

    def test_timeout_without_retry(self, flaky):
        backend = flaky(failures=1)
        try:
            outcome = MigrationOrchestrator(Mode.SERVER, backend, three()).run()
        finally:
            backend.close()
        assert outcome.kind is FatalKind.TIMEOUT

    def test_timeout_then_success(self, flaky):
        backend = flaky(failures=1)
        try:
            outcome = MigrationOrchestrator(Mode.SERVER, backend, three(), attempts=2).run()
        finally:
            backend.close()
        assert outcome.status is OutcomeStatus.SUCCESS
        assert outcome.applied == (1, 2, 3)

    def test_attempts_exhausted(self, flaky):
        backend = flaky(failures=5)
        try:
            outcome = MigrationOrchestrator(Mode.SERVER, backend, three(), attempts=3).run()
        finally:
            backend.close()
        assert outcome.kind is FatalKind.TIMEOUT
        assert backend.failures == 2
