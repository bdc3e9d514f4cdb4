"""Tests for the document store backends."""

import os
import tempfile
import threading

import pytest
from modelflow.storage import (
    InMemoryDocumentStore,
    SQLiteDocumentStore,
    normalize_path,
)


@pytest.fixture(params=["memory", "sqlite"])
def store(request):
    if request.param == "memory":
        yield InMemoryDocumentStore()
        return

    tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False)
    tmp.close()
    sqlite_store = SQLiteDocumentStore(db_path=tmp.name)
    try:
        yield sqlite_store
    finally:
        sqlite_store.close()
        os.unlink(tmp.name)


class TestPaths:
    """Test path normalization."""

    def test_strips_slashes(self):
        assert normalize_path("/users/u1/plan/") == "users/u1/plan"
        assert normalize_path("users//u1") == "users/u1"

    def test_rejects_empty_and_relative(self):
        with pytest.raises(ValueError):
            normalize_path("")
        with pytest.raises(ValueError):
            normalize_path("users/../secrets")


class TestDocumentStore:
    """Behaviour shared by every backend."""

    def test_get_missing(self, store):
        assert store.get("users/u1/plan") is None

    def test_set_and_get(self, store):
        store.set("users/u1/plan", {"plan_id": "pro"})
        assert store.get("users/u1/plan") == {"plan_id": "pro"}

    def test_returned_documents_are_copies(self, store):
        """Mutating a read document never changes the stored one."""
        store.set("users/u1/plan", {"plan_id": "pro", "custom_limits": {"chats_per_day": 3}})

        document = store.get("users/u1/plan")
        document["custom_limits"]["chats_per_day"] = 99

        assert store.get("users/u1/plan")["custom_limits"]["chats_per_day"] == 3

    def test_update_merges(self, store):
        store.set("users/u1/plan", {"plan_id": "pro", "assigned_by": "a"})
        merged = store.update("users/u1/plan", {"assigned_by": "b"})

        assert merged == {"plan_id": "pro", "assigned_by": "b"}
        assert store.get("users/u1/plan") == merged

    def test_update_creates(self, store):
        assert store.update("users/u2/plan", {"plan_id": "max"}) == {"plan_id": "max"}

    def test_remove(self, store):
        store.set("users/u1/plan", {"plan_id": "pro"})

        assert store.remove("users/u1/plan") is True
        assert store.remove("users/u1/plan") is False
        assert store.get("users/u1/plan") is None

    def test_children(self, store):
        """Children are the direct descendants keyed by last segment."""
        store.set("upgradeRequests/req_a", {"id": "req_a"})
        store.set("upgradeRequests/req_b", {"id": "req_b"})
        store.set("upgradeRequests/req_b/notes/n1", {"id": "n1"})
        store.set("users/u1/plan", {"plan_id": "pro"})

        children = store.children("upgradeRequests")

        assert set(children) == {"req_a", "req_b"}
        assert children["req_a"] == {"id": "req_a"}

    def test_transact_read_modify_write(self, store):
        store.set("counters/c", {"value": 1})

        result = store.transact("counters/c", lambda doc: {"value": doc["value"] + 1})

        assert result == {"value": 2}
        assert store.get("counters/c") == {"value": 2}

    def test_transact_on_missing(self, store):
        result = store.transact("counters/c", lambda doc: {"value": 0 if doc is None else -1})
        assert result == {"value": 0}

    def test_transact_none_deletes(self, store):
        store.set("counters/c", {"value": 1})
        assert store.transact("counters/c", lambda doc: None) is None
        assert store.get("counters/c") is None

    def test_transact_error_aborts_write(self, store):
        """An exception in the transform leaves the document unchanged."""
        store.set("counters/c", {"value": 1})

        def boom(doc):
            raise RuntimeError("nope")

        with pytest.raises(RuntimeError):
            store.transact("counters/c", boom)
        assert store.get("counters/c") == {"value": 1}

    def test_concurrent_transacts_do_not_lose_updates(self, store):
        store.set("counters/c", {"value": 0})

        def bump():
            for _ in range(50):
                store.transact("counters/c", lambda doc: {"value": doc["value"] + 1})

        threads = [threading.Thread(target=bump) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert store.get("counters/c") == {"value": 200}


class TestSQLiteDocumentStore:
    """SQLite specifics."""

    def test_persists_across_connections(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            db_path = os.path.join(tmpdir, "modelflow.db")

            first = SQLiteDocumentStore(db_path=db_path)
            first.set("users/u1/plan", {"plan_id": "max"})
            first.close()

            second = SQLiteDocumentStore(db_path=db_path)
            assert second.get("users/u1/plan") == {"plan_id": "max"}
            second.close()
