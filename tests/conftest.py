"""Shared pytest fixtures for culturecart-functions tests.

`FakeDatabase` stands in for a pymongo Database. It implements the slice of
the collection API that MongoStore uses (find/sort/limit, count_documents,
find_one, update_one with $set/$inc/$addToSet, insert_one) with the same
matching rules for the operators we send ($gte, $gt, $lt, $lte, $ne, $in),
including the way range operators never match across BSON types.
"""

import copy
import itertools
from dataclasses import dataclass
from datetime import datetime, timezone

import pytest
from pymongo import errors

from culturecart_functions.mongo import MongoStore

_MISSING = object()


def _type_order(value):
    # Range operators only match values of the same BSON type, and sorts
    # group values by type before comparing them.
    if isinstance(value, bool):
        return 8
    if isinstance(value, (int, float)):
        return 1
    if isinstance(value, str):
        return 2
    if isinstance(value, datetime):
        return 9
    return 7


def _compare(op):
    def check(value, arg):
        if value is _MISSING or value is None:
            return False
        if _type_order(value) != _type_order(arg):
            return False
        return op(value, arg)

    return check


def _ne(value, arg):
    if isinstance(value, list):
        return arg not in value
    return value != arg


_OPERATORS = {
    "$gte": _compare(lambda v, a: v >= a),
    "$gt": _compare(lambda v, a: v > a),
    "$lte": _compare(lambda v, a: v <= a),
    "$lt": _compare(lambda v, a: v < a),
    "$ne": _ne,
    "$in": lambda v, a: v in a,
}


def _is_operator_dict(cond):
    return isinstance(cond, dict) and cond and all(k.startswith("$") for k in cond)


def matches(doc, query):
    for field, cond in (query or {}).items():
        value = doc.get(field, _MISSING)
        if _is_operator_dict(cond):
            if not all(_OPERATORS[op](value, arg) for op, arg in cond.items()):
                return False
        elif isinstance(value, list):
            if cond not in value:
                return False
        elif value != cond:
            return False
    return True


@dataclass
class FakeUpdateResult:
    matched_count: int
    modified_count: int
    upserted_id: object = None


class FakeCursor:
    def __init__(self, docs):
        self._docs = docs

    def sort(self, key, direction=1):
        self._docs = sorted(
            self._docs,
            key=lambda d: (d.get(key) is None, _type_order(d.get(key)), d.get(key)),
            reverse=direction < 0,
        )
        return self

    def limit(self, n):
        if n:
            self._docs = self._docs[:n]
        return self

    def __iter__(self):
        return iter(copy.deepcopy(self._docs))


class FakeCollection:
    def __init__(self, name):
        self.name = name
        self.docs = []
        self._ids = itertools.count(1)

    def find(self, query=None):
        return FakeCursor([d for d in self.docs if matches(d, query)])

    def find_one(self, query=None):
        for doc in self.docs:
            if matches(doc, query):
                return copy.deepcopy(doc)
        return None

    def count_documents(self, query):
        return sum(1 for d in self.docs if matches(d, query))

    def insert_one(self, document):
        document = copy.deepcopy(document)
        document.setdefault("_id", f"{self.name}-{next(self._ids)}")
        if any(d["_id"] == document["_id"] for d in self.docs):
            raise errors.DuplicateKeyError(f"E11000 duplicate key error _id: {document['_id']}")
        self.docs.append(document)

    def update_one(self, query, update, upsert=False):
        for doc in self.docs:
            if matches(doc, query):
                _apply_update(doc, update)
                return FakeUpdateResult(matched_count=1, modified_count=1)

        if not upsert:
            return FakeUpdateResult(matched_count=0, modified_count=0)

        doc = {k: v for k, v in query.items() if not _is_operator_dict(v)}
        _apply_update(doc, update)
        self.insert_one(doc)
        return FakeUpdateResult(matched_count=0, modified_count=0, upserted_id=doc["_id"])

    def get(self, document_id):
        """Test helper: the stored document with this `_id`."""
        return next(d for d in self.docs if d["_id"] == document_id)


def _apply_update(doc, update):
    for field, value in update.get("$set", {}).items():
        doc[field] = copy.deepcopy(value)
    for field, delta in update.get("$inc", {}).items():
        current = doc.get(field, 0)
        if not isinstance(current, (int, float)):
            raise errors.WriteError(f"Cannot apply $inc to a value of non-numeric type: {field}", code=14)
        doc[field] = current + delta
    for field, value in update.get("$addToSet", {}).items():
        values = doc.setdefault(field, [])
        if value not in values:
            values.append(value)


class FakeDatabase:
    def __init__(self):
        self._collections = {}

    def __getitem__(self, name):
        if name not in self._collections:
            self._collections[name] = FakeCollection(name)
        return self._collections[name]

    def seed(self, name, *docs):
        for doc in docs:
            self[name].insert_one(doc)


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


class RecordingMailer:
    """Mail sender that keeps what it was asked to send."""

    def __init__(self):
        self.sent = []

    def send(self, to, subject, text):
        self.sent.append({"to": to, "subject": subject, "text": text})


@pytest.fixture
def db():
    return FakeDatabase()


@pytest.fixture
def store(db):
    return MongoStore(db)


@pytest.fixture
def mailer():
    return RecordingMailer()
