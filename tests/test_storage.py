"""
Test suite for storage backends

Covers atomic commit and rollback, nested transactions, row locking and
backend construction from database URLs.
"""

import threading
import time

import pytest

from town_economy.storage import (
    InMemoryStorage, SQLiteStorage, StorageInterface, create_storage
)


class StorageContract:
    """Behaviour every backend must share"""

    def make_storage(self) -> StorageInterface:
        raise NotImplementedError

    def setup_method(self):
        self.storage = self.make_storage()

    def teardown_method(self):
        self.storage.close()

    def test_save_and_load(self):
        self.storage.save("accounts", "a1", {"id": "a1", "balance": "10.00"})
        assert self.storage.load("accounts", "a1") == {"id": "a1", "balance": "10.00"}
        assert self.storage.load("accounts", "missing") is None

    def test_find_filters_on_all_fields(self):
        self.storage.save("users", "u1", {"id": "u1", "school_id": "s1", "role": "student"})
        self.storage.save("users", "u2", {"id": "u2", "school_id": "s1", "role": "teacher"})
        self.storage.save("users", "u3", {"id": "u3", "school_id": "s2", "role": "student"})

        found = self.storage.find("users", {"school_id": "s1", "role": "student"})
        assert [row["id"] for row in found] == ["u1"]
        assert self.storage.count("users") == 3

    def test_delete(self):
        self.storage.save("users", "u1", {"id": "u1"})
        assert self.storage.delete("users", "u1")
        assert not self.storage.delete("users", "u1")
        assert not self.storage.exists("users", "u1")

    def test_atomic_commits(self):
        with self.storage.atomic():
            self.storage.save("accounts", "a1", {"id": "a1", "balance": "1.00"})
            self.storage.save("accounts", "a2", {"id": "a2", "balance": "2.00"})
        assert self.storage.count("accounts") == 2
        assert not self.storage.in_transaction

    def test_atomic_rolls_back_inserts_updates_and_deletes(self):
        self.storage.save("accounts", "a1", {"id": "a1", "balance": "1.00"})
        self.storage.save("accounts", "a2", {"id": "a2", "balance": "2.00"})

        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                self.storage.save("accounts", "a1", {"id": "a1", "balance": "99.00"})
                self.storage.delete("accounts", "a2")
                self.storage.save("accounts", "a3", {"id": "a3", "balance": "3.00"})
                raise RuntimeError("boom")

        assert self.storage.load("accounts", "a1")["balance"] == "1.00"
        assert self.storage.load("accounts", "a2")["balance"] == "2.00"
        assert self.storage.load("accounts", "a3") is None
        assert not self.storage.in_transaction

    def test_nested_atomic_joins_outer_transaction(self):
        with pytest.raises(ValueError):
            with self.storage.atomic():
                with self.storage.atomic():
                    self.storage.save("accounts", "a1", {"id": "a1"})
                assert self.storage.in_transaction
                raise ValueError("outer failure")
        assert self.storage.load("accounts", "a1") is None

    def test_lock_rows_requires_transaction(self):
        with pytest.raises(RuntimeError):
            self.storage.lock_rows("accounts", ["a1"])

    def test_lock_rows_returns_existing_rows_only(self):
        self.storage.save("accounts", "a1", {"id": "a1", "balance": "1.00"})
        with self.storage.atomic():
            rows = self.storage.lock_rows("accounts", ["a1", "missing"])
            assert rows == {"a1": {"id": "a1", "balance": "1.00"}}
            assert self.storage.lock_rows("accounts", []) == {}


class TestInMemoryStorage(StorageContract):

    def make_storage(self):
        return InMemoryStorage()

    def test_row_lock_blocks_second_writer_until_commit(self):
        self.storage.save("accounts", "a1", {"id": "a1", "balance": "0.00"})
        events = []
        locked = threading.Event()

        def holder():
            with self.storage.atomic():
                self.storage.lock_rows("accounts", ["a1"])
                locked.set()
                time.sleep(0.2)
                events.append("holder-commit")

        def waiter():
            locked.wait()
            with self.storage.atomic():
                self.storage.lock_rows("accounts", ["a1"])
                events.append("waiter-locked")

        threads = [threading.Thread(target=holder), threading.Thread(target=waiter)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=5)

        assert events == ["holder-commit", "waiter-locked"]

    def test_locks_released_on_rollback(self):
        self.storage.save("accounts", "a1", {"id": "a1"})
        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                self.storage.lock_rows("accounts", ["a1"])
                raise RuntimeError("boom")

        acquired = []

        def relock():
            with self.storage.atomic():
                self.storage.lock_rows("accounts", ["a1"])
                acquired.append(True)

        thread = threading.Thread(target=relock)
        thread.start()
        thread.join(timeout=2)
        assert acquired == [True]

    def test_row_locks_dropped_after_transaction(self):
        ids = [f"a{n}" for n in range(50)]
        for record_id in ids:
            with self.storage.atomic():
                self.storage.lock_rows("accounts", [record_id, "missing"])
        assert self.storage._row_locks == {}

        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                self.storage.lock_rows("accounts", ids)
                raise RuntimeError("boom")
        assert self.storage._row_locks == {}

    def test_contended_row_lock_dropped_once_both_finish(self):
        locked = threading.Event()
        release = threading.Event()

        def holder():
            with self.storage.atomic():
                self.storage.lock_rows("accounts", ["a1"])
                locked.set()
                release.wait(timeout=5)

        def waiter():
            locked.wait()
            with self.storage.atomic():
                self.storage.lock_rows("accounts", ["a1"])

        threads = [threading.Thread(target=holder), threading.Thread(target=waiter)]
        for thread in threads:
            thread.start()
        locked.wait(timeout=5)
        time.sleep(0.1)
        release.set()
        for thread in threads:
            thread.join(timeout=5)

        assert self.storage._row_locks == {}

    def test_loaded_records_are_copies(self):
        self.storage.save("accounts", "a1", {"id": "a1", "tags": ["x"]})
        loaded = self.storage.load("accounts", "a1")
        loaded["tags"].append("y")
        assert self.storage.load("accounts", "a1")["tags"] == ["x"]


class TestSQLiteStorage(StorageContract):

    def make_storage(self):
        return SQLiteStorage(":memory:")

    def test_data_persists_across_handles(self, tmp_path):
        path = tmp_path / "economy.db"
        first = SQLiteStorage(path)
        with first.atomic():
            first.save("accounts", "a1", {"id": "a1", "balance": "5.00"})
        first.close()

        second = SQLiteStorage(path)
        try:
            assert second.load("accounts", "a1") == {"id": "a1", "balance": "5.00"}
        finally:
            second.close()

    def test_writer_serialized_until_commit(self):
        events = []
        started = threading.Event()

        def holder():
            with self.storage.atomic():
                self.storage.save("accounts", "a1", {"id": "a1"})
                started.set()
                time.sleep(0.2)
                events.append("holder-commit")

        def reader():
            started.wait()
            with self.storage.atomic():
                events.append("reader-begin")

        threads = [threading.Thread(target=holder), threading.Thread(target=reader)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=5)

        assert events == ["holder-commit", "reader-begin"]


class TestCreateStorage:

    def test_memory_url(self):
        assert isinstance(create_storage("memory://"), InMemoryStorage)

    def test_sqlite_file_url(self, tmp_path):
        storage = create_storage(f"sqlite:///{tmp_path / 'town.db'}")
        try:
            assert isinstance(storage, SQLiteStorage)
            storage.save("users", "u1", {"id": "u1"})
            assert storage.exists("users", "u1")
        finally:
            storage.close()

    def test_sqlite_in_memory_url(self):
        storage = create_storage("sqlite://")
        try:
            assert isinstance(storage, SQLiteStorage)
        finally:
            storage.close()

    def test_unsupported_url(self):
        with pytest.raises(ValueError):
            create_storage("mysql://localhost/town")
