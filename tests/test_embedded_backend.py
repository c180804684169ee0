"""Tests for the embedded SQLite backend."""

import os
import stat
import threading

import pytest

from duomode.protocols import Backend, StorageError
from duomode.storage import EmbeddedBackend


class TestLifecycle:
    """open() / close() behaviour."""

    def test_satisfies_backend_protocol(self, embedded):
        assert isinstance(embedded, Backend)
        assert embedded.dialect == "sqlite"

    def test_open_creates_file_and_parent(self, tmp_path):
        path = tmp_path / "nested" / "dir" / "store.db"
        backend = EmbeddedBackend(path, enable_vec=False)
        handle = backend.open()
        try:
            assert path.exists()
            assert handle.path == str(path)
            assert handle.vector is False
        finally:
            backend.close()

    def test_file_permissions_are_owner_only(self, embedded):
        mode = stat.S_IMODE(os.stat(embedded.db_path).st_mode)
        assert mode == 0o600

    def test_open_is_idempotent(self, embedded):
        assert embedded.open() is embedded.open()

    def test_close_twice_is_safe(self, tmp_path):
        backend = EmbeddedBackend(tmp_path / "x.db", enable_vec=False)
        backend.open()
        backend.close()
        backend.close()
        assert not backend.is_open

    def test_execute_before_open_raises(self, tmp_path):
        backend = EmbeddedBackend(tmp_path / "x.db", enable_vec=False)
        with pytest.raises(StorageError, match="not open"):
            backend.execute("SELECT 1")

    def test_reopen_after_close(self, tmp_path):
        backend = EmbeddedBackend(tmp_path / "x.db", enable_vec=False)
        backend.open()
        backend.execute("CREATE TABLE kv (k TEXT)")
        backend.close()
        backend.open()
        try:
            assert backend.execute("SELECT count(*) AS n FROM kv").scalar() == 0
        finally:
            backend.close()


class TestExecute:
    """Statements outside an explicit transaction."""

    def test_write_then_read(self, embedded):
        embedded.execute("CREATE TABLE kv (k TEXT PRIMARY KEY, v TEXT)")
        result = embedded.execute("INSERT INTO kv (k, v) VALUES (?, ?)", ("a", "1"))
        assert result.rowcount == 1
        rows = embedded.execute("SELECT k, v FROM kv WHERE k = ?", ("a",)).rows
        assert rows == [{"k": "a", "v": "1"}]

    def test_rows_are_plain_dicts(self, memory_backend):
        row = memory_backend.execute("SELECT 1 AS one, 'x' AS two").first()
        assert type(row) is dict
        assert row == {"one": 1, "two": "x"}

    def test_bad_statement_raises_storage_error(self, embedded):
        with pytest.raises(StorageError):
            embedded.execute("SELEC nonsense")

    def test_read_from_missing_table_raises_storage_error(self, embedded):
        with pytest.raises(StorageError):
            embedded.execute("SELECT * FROM missing")

    def test_reads_from_other_threads_see_committed_writes(self, embedded):
        embedded.execute("CREATE TABLE kv (k TEXT)")
        embedded.execute("INSERT INTO kv VALUES (?)", ("a",))
        seen = []

        def reader():
            seen.append(embedded.execute("SELECT count(*) AS n FROM kv").scalar())

        threads = [threading.Thread(target=reader) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert seen == [1, 1, 1, 1]

    def test_readers_of_finished_threads_are_closed(self, embedded):
        embedded.execute("CREATE TABLE kv (k TEXT)")

        def reader():
            embedded.execute("SELECT count(*) AS n FROM kv")

        for _ in range(5):
            t = threading.Thread(target=reader)
            t.start()
            t.join()
            assert embedded.reader_count == 1

        embedded.execute("SELECT count(*) AS n FROM kv")
        assert embedded.reader_count == 1

    def test_close_releases_readers(self, embedded):
        embedded.execute("CREATE TABLE kv (k TEXT)")
        embedded.execute("SELECT count(*) AS n FROM kv")
        assert embedded.reader_count == 1
        embedded.close()
        assert embedded.reader_count == 0


class TestTransaction:
    """transaction() commits or rolls back as a unit."""

    def test_commit(self, embedded):
        embedded.execute("CREATE TABLE kv (k TEXT)")
        with embedded.transaction() as tx:
            tx.execute("INSERT INTO kv VALUES (?)", ("a",))
            tx.execute("INSERT INTO kv VALUES (?)", ("b",))
        assert embedded.execute("SELECT count(*) AS n FROM kv").scalar() == 2

    def test_rollback_on_error(self, embedded):
        embedded.execute("CREATE TABLE kv (k TEXT)")
        with pytest.raises(StorageError):
            with embedded.transaction(exclusive=True) as tx:
                tx.execute("INSERT INTO kv VALUES (?)", ("a",))
                tx.execute("INSERT INTO nowhere VALUES (1)")
        assert embedded.execute("SELECT count(*) AS n FROM kv").scalar() == 0

    def test_rollback_on_application_error(self, embedded):
        embedded.execute("CREATE TABLE kv (k TEXT)")
        with pytest.raises(RuntimeError):
            with embedded.transaction() as tx:
                tx.execute("INSERT INTO kv VALUES (?)", ("a",))
                raise RuntimeError("abort")
        assert embedded.execute("SELECT count(*) AS n FROM kv").scalar() == 0

    def test_ddl_is_transactional(self, embedded):
        with pytest.raises(StorageError):
            with embedded.transaction(exclusive=True) as tx:
                tx.execute("CREATE TABLE created_then_undone (id INTEGER)")
                tx.execute("broken sql")
        names = {r["name"] for r in embedded.execute("SELECT name FROM sqlite_master")}
        assert "created_then_undone" not in names

    def test_writer_lock_timeout(self, embedded):
        acquired = threading.Event()
        release = threading.Event()

        def holder():
            with embedded.transaction():
                acquired.set()
                release.wait(5)

        t = threading.Thread(target=holder)
        t.start()
        try:
            assert acquired.wait(5)
            with pytest.raises(StorageError, match="busy"):
                embedded.execute("CREATE TABLE late (id INTEGER)", timeout=0.05)
        finally:
            release.set()
            t.join()


class TestHealthAndCapabilities:
    """health_check() and has_capability()."""

    def test_health_check_lifecycle(self, tmp_path):
        backend = EmbeddedBackend(tmp_path / "h.db", enable_vec=False)
        assert backend.health_check() is False
        backend.open()
        assert backend.health_check() is True
        backend.close()
        assert backend.health_check() is False

    def test_vector_disabled(self, embedded):
        assert embedded.has_capability("vector") is False

    def test_unknown_capability(self, embedded):
        assert embedded.has_capability("teleport") is False
