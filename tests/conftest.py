import copy
import os
from types import SimpleNamespace

import pytest
from bson.objectid import ObjectId
from pymongo.errors import PyMongoError

os.environ.setdefault("MONGO_URI", "mongodb://localhost:27017/escola_test")
os.environ.setdefault("SECRET_KEY", "test-secret")
os.environ.setdefault("CLEAR_DATA_PASSWORD", "2910")
os.environ.setdefault("ADMIN_EMAILS", "diretor@escola.test")
os.environ.setdefault("NON_BLOCKING_WRITES", "false")


def _get_path(doc, path):
    value = doc
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def _set_path(doc, path, value):
    parts = path.split(".")
    target = doc
    for part in parts[:-1]:
        if not isinstance(target.get(part), dict):
            target[part] = {}
        target = target[part]
    target[parts[-1]] = value


class FakeCursor:
    def __init__(self, docs):
        self._docs = list(docs)

    def sort(self, key, direction=1):
        self._docs.sort(key=lambda d: (d.get(key) is None, str(d.get(key) or "")), reverse=direction < 0)
        return self

    def limit(self, n):
        self._docs = self._docs[:n]
        return self

    def __iter__(self):
        return iter(self._docs)


class FakeCollection:
    """Just enough of a pymongo collection for the app and services."""

    def __init__(self, docs=(), fail_batches=()):
        self.docs = {}
        self.bulk_calls = []
        self.fail_batches = set(fail_batches)
        self.fail_error = PyMongoError
        for doc in docs:
            self.insert_one(doc)

    # queries
    def _matches(self, doc, query):
        for key, cond in (query or {}).items():
            value = _get_path(doc, key)
            if isinstance(cond, dict):
                if "$in" in cond and value not in cond["$in"]:
                    return False
                if cond.get("$type") == "string" and not isinstance(value, str):
                    return False
            elif value != cond:
                return False
        return True

    def _project(self, doc, projection):
        doc = copy.deepcopy(doc)
        if not projection:
            return doc
        if any(projection.values()):
            return {k: v for k, v in doc.items() if k == "_id" or projection.get(k)}
        return {k: v for k, v in doc.items() if k not in projection}

    def find(self, query=None, projection=None):
        return FakeCursor(self._project(d, projection) for d in self.docs.values() if self._matches(d, query))

    def find_one(self, query=None, projection=None):
        for doc in self.find(query, projection):
            return doc
        return None

    def count_documents(self, query):
        return sum(1 for d in self.docs.values() if self._matches(d, query))

    # writes
    def insert_one(self, doc):
        doc = copy.deepcopy(doc)
        doc.setdefault("_id", ObjectId())
        self.docs[doc["_id"]] = doc
        return SimpleNamespace(inserted_id=doc["_id"])

    def _apply_update(self, doc, update):
        for path, value in update.get("$set", {}).items():
            _set_path(doc, path, copy.deepcopy(value))

    def update_one(self, flt, update, upsert=False):
        for doc in self.docs.values():
            if self._matches(doc, flt):
                self._apply_update(doc, update)
                return SimpleNamespace(matched_count=1, upserted_id=None)
        if upsert:
            doc = dict(flt)
            for path, value in update.get("$setOnInsert", {}).items():
                _set_path(doc, path, copy.deepcopy(value))
            self._apply_update(doc, update)
            self.docs[doc["_id"]] = doc
            return SimpleNamespace(matched_count=0, upserted_id=doc["_id"])
        return SimpleNamespace(matched_count=0, upserted_id=None)

    def replace_one(self, flt, replacement, upsert=False):
        existing = self.find_one(flt)
        if existing is None and not upsert:
            return SimpleNamespace(matched_count=0)
        doc = copy.deepcopy(replacement)
        doc["_id"] = existing["_id"] if existing else flt["_id"]
        self.docs[doc["_id"]] = doc
        return SimpleNamespace(matched_count=int(existing is not None))

    def delete_one(self, flt):
        for key, doc in list(self.docs.items()):
            if self._matches(doc, flt):
                del self.docs[key]
                return SimpleNamespace(deleted_count=1)
        return SimpleNamespace(deleted_count=0)

    def bulk_write(self, requests, ordered=True):
        self.bulk_calls.append(len(requests))
        if len(self.bulk_calls) in self.fail_batches:
            raise self.fail_error(f"batch {len(self.bulk_calls)} rejected")
        for op in requests:
            kind = type(op).__name__
            if kind == "UpdateOne":
                self.update_one(op._filter, op._doc, upsert=op._upsert)
            elif kind == "ReplaceOne":
                self.replace_one(op._filter, op._doc, upsert=op._upsert)
            elif kind == "DeleteOne":
                self.delete_one(op._filter)
            else:
                raise AssertionError(f"unexpected operation {kind}")
        return SimpleNamespace(acknowledged=True)


@pytest.fixture
def fake_collection():
    return FakeCollection()


@pytest.fixture
def app_module(monkeypatch):
    import app as app_module

    monkeypatch.setattr(app_module, "students", FakeCollection())
    monkeypatch.setattr(app_module, "users", FakeCollection())
    monkeypatch.setattr(app_module, "notifications", FakeCollection())
    app_module.app.config.update(TESTING=True, NON_BLOCKING_WRITES=False, CLEAR_DATA_PASSWORD="2910")
    return app_module


@pytest.fixture
def client(app_module):
    return app_module.app.test_client()


def login_as(client, role="Admin", email="admin@escola.test"):
    with client.session_transaction() as sess:
        sess["user_id"] = "u-1"
        sess["user"] = "Tester"
        sess["role"] = role
        sess["email"] = email


@pytest.fixture
def admin_client(client):
    login_as(client, "Admin")
    return client


def make_student(rm, nome, **fields):
    doc = {"_id": rm, "rm": rm, "nome": nome, "status": "ATIVO"}
    doc.update(fields)
    return doc
