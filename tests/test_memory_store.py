"""Unit tests for the in-memory document store."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from hiq.service.errors import InvalidStateError
from hiq.storage.errors import DocumentNotFound, StoreError
from hiq.storage.memory import MemoryStore


@pytest.fixture
def store():
    return MemoryStore()


class TestDocuments:
    def test_get_returns_copies(self, store):
        store.set("users", "u1", {"tags": ["a"]})
        doc = store.get("users", "u1")
        doc["tags"].append("b")
        assert store.get("users", "u1") == {"tags": ["a"]}

    def test_set_merge(self, store):
        store.set("users", "u1", {"email": "a@acme.io", "role": "user"})
        store.set("users", "u1", {"role": "admin"}, merge=True)
        assert store.get("users", "u1") == {"email": "a@acme.io", "role": "admin"}
        store.set("users", "u1", {"role": "user"})
        assert store.get("users", "u1") == {"role": "user"}

    def test_update_missing_raises(self, store):
        with pytest.raises(DocumentNotFound):
            store.update("users", "ghost", {"role": "admin"})

    def test_add_generates_ids(self, store):
        first = store.add("logs", {"n": 1})
        second = store.add("logs", {"n": 2})
        assert first != second
        assert store.get("logs", first) == {"n": 1}

    def test_delete_and_pop(self, store):
        store.set("tokens", "t1", {"user_id": "u1"})
        assert store.pop("tokens", "t1") == {"user_id": "u1"}
        assert store.pop("tokens", "t1") is None
        assert store.delete("tokens", "t1") is False


class TestQuery:
    def test_filters_and_ordering(self, store):
        base = datetime(2026, 3, 2, tzinfo=timezone.utc)
        for i in range(5):
            store.set("s", f"d{i}", {"n": i, "at": base + timedelta(hours=i), "kind": i % 2})
        rows = store.query("s", [("kind", "==", 0), ("n", ">", 0)])
        assert [doc_id for doc_id, _ in rows] == ["d2", "d4"]
        rows = store.query("s", [], order_by="at", descending=True, limit=2)
        assert [doc_id for doc_id, _ in rows] == ["d4", "d3"]

    def test_naive_datetimes_compare_as_utc(self, store):
        store.set("s", "d1", {"at": datetime(2026, 3, 2, 10, 0)})
        cutoff = datetime(2026, 3, 2, 11, 0, tzinfo=timezone.utc)
        assert len(store.query("s", [("at", "<", cutoff)])) == 1

    def test_in_and_array_contains(self, store):
        store.set("s", "d1", {"status": "a", "emails": ["x@acme.io"]})
        store.set("s", "d2", {"status": "b", "emails": []})
        assert len(store.query("s", [("status", "in", ["a", "c"])])) == 1
        assert len(store.query("s", [("emails", "array_contains", "x@acme.io")])) == 1

    def test_missing_field_never_matches(self, store):
        store.set("s", "d1", {})
        assert store.query("s", [("status", "!=", "a")]) == []

    def test_unsupported_operator(self, store):
        with pytest.raises(StoreError):
            store.query("s", [("n", "~=", 1)])


class TestTransactions:
    def test_transact_merges_and_returns(self, store):
        store.set("c", "x", {"n": 1, "keep": True})
        result = store.transact("c", "x", lambda doc: {"n": doc["n"] + 1})
        assert result == {"n": 2, "keep": True}

    def test_transact_none_leaves_document(self, store):
        assert store.transact("c", "x", lambda doc: None) is None
        assert store.get("c", "x") is None

    def test_exception_aborts_without_write(self, store):
        store.set("c", "x", {"status": "approved"})

        def _mutate(doc):
            raise InvalidStateError("already processed")

        with pytest.raises(InvalidStateError):
            store.transact("c", "x", _mutate)
        assert store.get("c", "x") == {"status": "approved"}

    def test_concurrent_increments(self, store):
        store.set("c", "x", {"n": 0})
        threads = [
            threading.Thread(
                target=store.transact, args=("c", "x", lambda doc: {"n": doc["n"] + 1})
            )
            for _ in range(25)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert store.get("c", "x")["n"] == 25

    def test_batch_update_with_expectation(self, store):
        store.set("s", "a", {"status": "active"})
        store.set("s", "b", {"status": "expired"})
        applied = store.batch_update(
            "s",
            {"a": {"status": "terminated"}, "b": {"status": "terminated"}, "c": {"status": "x"}},
            expect={"status": "active"},
        )
        assert applied == ["a"]
        assert store.get("s", "b")["status"] == "expired"

    def test_batch_delete_counts(self, store):
        store.set("s", "a", {})
        store.set("s", "b", {})
        assert store.batch_delete("s", ["a", "b", "c"]) == 2

    def test_array_union_dedupes(self, store):
        store.array_union("acl", "admins", "emails", ["a@acme.io"])
        store.array_union("acl", "admins", "emails", ["a@acme.io", "b@acme.io"], extra={"v": 1})
        assert store.get("acl", "admins") == {"emails": ["a@acme.io", "b@acme.io"], "v": 1}
