"""MongoDB access for culturecart-functions.

This module has one job: talk to the document store. Everything else gets a
`MongoStore` handle passed in, so tests can hand it a fake database.

Key design choices:
- Listing is cursor-paginated on `_id`. A page holds at most 1000 documents
  and we keep fetching until a short page comes back, so a collection of any
  size is visited completely with bounded memory. Paging needs every `_id`
  in a collection to share one BSON type, because `$gt` only matches values
  of the same type. A listing that finds more than one raises StoreError
  rather than returning a silently truncated result.
- Counter updates are a single atomic `update_one` guarded by a window
  marker. The filter only matches documents that do NOT already list the
  window key in `aggregatedWindows`, and the same update adds the key. If
  the window was already applied the update matches nothing and we report
  "skipped" instead of adding the delta twice.
- Driver exceptions are wrapped in StoreError at this boundary.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator

from pymongo import ASCENDING, DESCENDING, MongoClient, errors

from .config import AGGREGATION_PAGE_SIZE, MONGO_DB, MONGO_URI
from .errors import StoreError

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 1000

# Field holding the window keys already applied to an entity's counters.
WINDOW_MARKER_FIELD = "aggregatedWindows"

_RETRYABLE = (errors.AutoReconnect, errors.NetworkTimeout, errors.ServerSelectionTimeoutError)


def _id_type(value: Any) -> Any:
    # Mongo compares all numeric types with each other.
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float
    return type(value)


def get_database(uri: str = MONGO_URI, name: str = MONGO_DB):
    """Connect to MongoDB and return the configured database.

    `tz_aware=True` makes the driver hand back aware UTC datetimes, which is
    what the aggregation windows compare against.
    """
    client = MongoClient(uri, tz_aware=True)
    return client[name]


@contextmanager
def _store_call(operation: str, collection: str):
    try:
        yield
    except errors.PyMongoError as e:
        raise StoreError(operation, collection, str(e), retryable=isinstance(e, _RETRYABLE)) from e


class MongoStore:
    """Document store handle used by the aggregator and notifier."""

    def __init__(self, database, page_size: int = AGGREGATION_PAGE_SIZE):
        if not 1 <= page_size <= MAX_PAGE_SIZE:
            raise ValueError(f"page_size must be between 1 and {MAX_PAGE_SIZE}, got {page_size}")
        self._db = database
        self.page_size = page_size

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def iter_documents(self, collection: str, query: dict[str, Any]) -> Iterator[dict[str, Any]]:
        """Yield every document matching `query`, one page at a time, in `_id` order."""
        last_id = None
        while True:
            page_query = dict(query)
            if last_id is not None:
                page_query["_id"] = {"$gt": last_id}

            with _store_call("find", collection):
                page = list(
                    self._db[collection]
                    .find(page_query)
                    .sort("_id", ASCENDING)
                    .limit(self.page_size)
                )

            yield from page

            if len(page) < self.page_size:
                break
            last_id = page[-1]["_id"]

        if last_id is not None:
            self._check_paged_past_end(collection, query, page[-1]["_id"] if page else last_id)

    def _check_paged_past_end(self, collection: str, query: dict[str, Any], last_seen: Any) -> None:
        with _store_call("find", collection):
            newest = list(self._db[collection].find(query).sort("_id", DESCENDING).limit(1))
        if newest and _id_type(newest[0]["_id"]) is not _id_type(last_seen):
            raise StoreError(
                "find", collection,
                f"_id values of more than one type ({type(last_seen).__name__} and "
                f"{type(newest[0]['_id']).__name__}); paging on _id cannot reach them all",
            )

    def count_documents(self, collection: str, query: dict[str, Any]) -> int:
        with _store_call("count", collection):
            return self._db[collection].count_documents(query)

    def get_document(self, collection: str, document_id: Any) -> dict[str, Any] | None:
        with _store_call("get", collection):
            return self._db[collection].find_one({"_id": document_id})

    def latest_documents(self, collection: str, sort_field: str, limit: int) -> list[dict[str, Any]]:
        """Return up to `limit` documents, newest `sort_field` first."""
        with _store_call("find", collection):
            return list(self._db[collection].find({}).sort(sort_field, DESCENDING).limit(limit))

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def apply_window_delta(
        self,
        collection: str,
        document_id: Any,
        window_key: str,
        increments: dict[str, int | float],
        fields: dict[str, Any],
    ) -> bool:
        """Atomically add `increments` and set `fields`, once per window.

        Returns:
            True  -> the delta was applied now
            False -> the document already carries `window_key` (or is gone)
        """
        update: dict[str, Any] = {
            "$inc": increments,
            "$addToSet": {WINDOW_MARKER_FIELD: window_key},
        }
        if fields:
            update["$set"] = fields

        with _store_call("update", collection):
            result = self._db[collection].update_one(
                {"_id": document_id, WINDOW_MARKER_FIELD: {"$ne": window_key}},
                update,
            )
        return result.matched_count == 1

    def update_document(self, collection: str, document_id: Any, fields: dict[str, Any]) -> None:
        """Partial-field patch of one document."""
        with _store_call("update", collection):
            self._db[collection].update_one({"_id": document_id}, {"$set": fields})

    def upsert_document(self, collection: str, document_id: Any, fields: dict[str, Any]) -> None:
        with _store_call("upsert", collection):
            self._db[collection].update_one({"_id": document_id}, {"$set": fields}, upsert=True)

    def insert_document(self, collection: str, document: dict[str, Any]) -> None:
        with _store_call("insert", collection):
            self._db[collection].insert_one(document)

    def insert_once(self, collection: str, document: dict[str, Any]) -> bool:
        """Insert a document keyed by its `_id`.

        Returns:
            True  -> inserted
            False -> a document with this `_id` already exists

        DuplicateKeyError means we already recorded this key. That is the
        expected outcome of a redelivery, so it is not an error.
        """
        with _store_call("insert", collection):
            try:
                self._db[collection].insert_one(document)
            except errors.DuplicateKeyError:
                logger.info("[Mongo] Duplicate key ignored: %s/%s", collection, document["_id"])
                return False
        return True
