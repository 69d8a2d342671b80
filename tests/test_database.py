"""Persistent store"""

import os
import stat
import threading
import time

import pytest
from sqlalchemy import select

from core.database import Entry, open_store
from core.runtime.errors import (
    StoreClosedError,
    StoreCorruptError,
    StorePathError,
    StorePermissionError,
)


@pytest.fixture
def store(tmp_path):
    handle = open_store(tmp_path / "esmd.db")
    yield handle
    handle.close()


class TestOpenStore:

    def test_creates_file(self, tmp_path):
        path = tmp_path / "esmd.db"

        store = open_store(path)
        try:
            assert path.is_file()
            assert not store.closed
        finally:
            store.close()

    def test_new_file_permissions(self, tmp_path):
        path = tmp_path / "esmd.db"
        old_umask = os.umask(0o022)
        try:
            open_store(path, 0o640).close()
        finally:
            os.umask(old_umask)

        assert stat.S_IMODE(path.stat().st_mode) == 0o640

    def test_reopen_keeps_data(self, tmp_path):
        path = tmp_path / "esmd.db"
        first = open_store(path)
        first.put("pkg/react@18.2.0", b"{}")
        first.close()

        second = open_store(path)
        try:
            assert second.get("pkg/react@18.2.0") == b"{}"
        finally:
            second.close()

    def test_missing_parent(self, tmp_path):
        with pytest.raises(StorePathError, match="does not exist"):
            open_store(tmp_path / "missing" / "esmd.db")

    def test_path_is_directory(self, tmp_path):
        path = tmp_path / "esmd.db"
        path.mkdir()

        with pytest.raises(StorePathError, match="directory"):
            open_store(path)

    def test_corrupt_file(self, tmp_path):
        path = tmp_path / "esmd.db"
        path.write_bytes(b"this is definitely not a database " * 200)

        with pytest.raises(StoreCorruptError):
            open_store(path)

    @pytest.mark.skipif(os.geteuid() == 0, reason="root ignores file permissions")
    def test_unreadable_file(self, tmp_path):
        path = tmp_path / "esmd.db"
        open_store(path).close()
        path.chmod(0o200)

        try:
            with pytest.raises(StorePermissionError):
                open_store(path)
        finally:
            path.chmod(0o600)


class TestStore:

    def test_put_get_delete(self, store):
        assert store.get("missing") is None

        store.put("a", "text")
        store.put("b", b"\x00\x01")

        assert store.get("a") == b"text"
        assert store.get("b") == b"\x00\x01"
        assert store.delete("a") is True
        assert store.delete("a") is False
        assert store.get("a") is None

    def test_put_overwrites(self, store):
        store.put("key", "one")
        store.put("key", "two")

        assert store.get("key") == b"two"

    def test_keys_by_prefix(self, store):
        for key in ("build/a", "build/b", "meta/a", "build_x"):
            store.put(key, "1")

        assert store.keys() == ["build/a", "build/b", "build_x", "meta/a"]
        assert store.keys("build/") == ["build/a", "build/b"]
        # prefix characters are matched literally
        assert store.keys("build_") == ["build_x"]

    def test_close_is_idempotent(self, store):
        assert store.close() is True
        assert store.close() is False
        assert store.closed

    def test_use_after_close(self, store):
        store.close()

        with pytest.raises(StoreClosedError):
            store.get("a")
        with pytest.raises(StoreClosedError):
            store.put("a", "b")

    def test_concurrent_writers(self, store):
        def writer(worker):
            for i in range(25):
                store.put(f"w{worker}/{i}", str(i))

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(store.keys()) == 100

    def test_close_while_read_in_flight(self, store):
        store.put("pkg/react", "18.2.0")
        holding = threading.Event()
        release = threading.Event()
        results = {}

        def reader():
            with store.session() as session:
                results["first"] = session.get(Entry, "pkg/react").value
                holding.set()
                release.wait(timeout=10)
                # the connection checked out before close() stays usable
                results["second"] = session.scalar(select(Entry.value).where(Entry.key == "pkg/react"))

        thread = threading.Thread(target=reader)
        thread.start()
        assert holding.wait(timeout=10)

        started = time.perf_counter()
        assert store.close() is True
        elapsed = time.perf_counter() - started
        release.set()
        thread.join(timeout=10)

        assert elapsed < 1.0
        assert not thread.is_alive()
        assert results == {"first": b"18.2.0", "second": b"18.2.0"}
        with pytest.raises(StoreClosedError):
            store.get("pkg/react")
