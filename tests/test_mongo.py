"""Tests for the MongoDB store adapter."""

from unittest.mock import MagicMock

import pytest
from pymongo import errors

from culturecart_functions.errors import StoreError
from culturecart_functions.mongo import WINDOW_MARKER_FIELD, MongoStore


class TestIterDocuments:
    def test_walks_every_page_in_id_order(self, db):
        db.seed("items", *({"_id": f"i{n}", "kind": "x"} for n in (4, 2, 5, 1, 3)))
        db.seed("items", {"_id": "i6", "kind": "y"})
        store = MongoStore(db, page_size=2)

        docs = list(store.iter_documents("items", {"kind": "x"}))

        assert [d["_id"] for d in docs] == ["i1", "i2", "i3", "i4", "i5"]

    def test_exact_multiple_of_page_size(self, db):
        db.seed("items", *({"_id": n} for n in range(4)))
        store = MongoStore(db, page_size=2)

        assert [d["_id"] for d in store.iter_documents("items", {})] == [0, 1, 2, 3]

    def test_mixed_id_types_fail_instead_of_truncating(self, db):
        db.seed("items", {"_id": 1}, {"_id": 2}, {"_id": 3}, {"_id": "a"}, {"_id": "b"})
        store = MongoStore(db, page_size=2)

        seen = []
        with pytest.raises(StoreError) as exc_info:
            for doc in store.iter_documents("items", {}):
                seen.append(doc["_id"])

        assert seen == [1, 2, 3]
        assert "more than one type" in str(exc_info.value)
        assert exc_info.value.retryable is False

    def test_mixed_id_types_in_a_single_page_are_all_returned(self, db):
        db.seed("items", {"_id": 1}, {"_id": "a"})

        assert [d["_id"] for d in MongoStore(db).iter_documents("items", {})] == [1, "a"]

    def test_empty_collection(self, store):
        assert list(store.iter_documents("items", {})) == []

    @pytest.mark.parametrize("page_size", [0, 1001])
    def test_page_size_is_bounded(self, db, page_size):
        with pytest.raises(ValueError):
            MongoStore(db, page_size=page_size)


class TestApplyWindowDelta:
    def test_applies_once_per_window(self, db, store):
        db.seed("products", {"_id": "p", "views": 1})

        first = store.apply_window_delta("products", "p", "w1", {"views": 2}, {"updatedAt": "t"})
        second = store.apply_window_delta("products", "p", "w1", {"views": 2}, {"updatedAt": "t"})

        doc = db["products"].get("p")
        assert (first, second) == (True, False)
        assert doc["views"] == 3
        assert doc[WINDOW_MARKER_FIELD] == ["w1"]
        assert doc["updatedAt"] == "t"

    def test_missing_document_is_not_applied(self, store):
        assert store.apply_window_delta("products", "nope", "w1", {"views": 1}, {}) is False


class TestInsertOnce:
    def test_duplicate_id_returns_false(self, db, store):
        assert store.insert_once("log", {"_id": "k", "n": 1}) is True
        assert store.insert_once("log", {"_id": "k", "n": 2}) is False
        assert db["log"].get("k")["n"] == 1


class TestErrorWrapping:
    def _store_with_failing(self, method, exc):
        database = MagicMock()
        getattr(database.__getitem__.return_value, method).side_effect = exc
        return MongoStore(database)

    def test_connection_errors_are_retryable(self):
        store = self._store_with_failing("count_documents", errors.AutoReconnect("reset"))

        with pytest.raises(StoreError) as exc_info:
            store.count_documents("analytics", {})

        assert exc_info.value.retryable is True
        assert exc_info.value.collection == "analytics"
        assert "reset" in str(exc_info.value)

    def test_other_errors_are_not_retryable(self):
        store = self._store_with_failing("update_one", errors.OperationFailure("not authorized"))

        with pytest.raises(StoreError) as exc_info:
            store.update_document("orders", "o1", {"updatedAt": "t"})

        assert exc_info.value.retryable is False
        assert exc_info.value.operation == "update"

    def test_listing_errors_surface_from_the_iterator(self):
        store = self._store_with_failing("find", errors.NetworkTimeout("timed out"))

        with pytest.raises(StoreError):
            list(store.iter_documents("products", {}))


def test_latest_documents_newest_first(db, store):
    db.seed("platform_metrics", {"_id": "a", "day": 1}, {"_id": "b", "day": 3}, {"_id": "c", "day": 2})

    docs = store.latest_documents("platform_metrics", "day", 2)

    assert [d["_id"] for d in docs] == ["b", "c"]
