"""Shared fixtures: an in-memory stand-in for the Motor database and an API client."""

from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient


def _matches(doc, query):
    for key, cond in (query or {}).items():
        value = doc.get(key)
        if isinstance(cond, dict):
            if "$gte" in cond and (value is None or value < cond["$gte"]):
                return False
            if "$in" in cond and value not in cond["$in"]:
                return False
        elif value != cond:
            return False
    return True


class FakeCursor:
    def __init__(self, docs):
        self.docs = docs

    def sort(self, key, direction=1):
        self.docs.sort(key=lambda doc: doc.get(key) or "", reverse=direction < 0)
        return self

    async def to_list(self, length):
        return [dict(doc) for doc in self.docs[:length]]


class FakeCollection:
    def __init__(self):
        self.docs = []

    def find(self, query=None):
        return FakeCursor([doc for doc in self.docs if _matches(doc, query)])

    async def find_one(self, query):
        for doc in self.docs:
            if _matches(doc, query):
                return dict(doc)
        return None

    async def insert_one(self, doc):
        self.docs.append(dict(doc))
        return SimpleNamespace(inserted_id=doc.get("id"))

    async def update_one(self, query, update, upsert=False):
        for doc in self.docs:
            if _matches(doc, query):
                doc.update(update.get("$set", {}))
                return SimpleNamespace(matched_count=1, modified_count=1, upserted_id=None)
        if upsert:
            doc = dict(query)
            doc.update(update.get("$setOnInsert", {}))
            doc.update(update.get("$set", {}))
            self.docs.append(doc)
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=doc.get("id"))
        return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)

    async def delete_one(self, query):
        for index, doc in enumerate(self.docs):
            if _matches(doc, query):
                del self.docs[index]
                return SimpleNamespace(deleted_count=1)
        return SimpleNamespace(deleted_count=0)

    async def create_index(self, *args, **kwargs):
        return None


class FakeDatabase:
    def __init__(self):
        self.medications = FakeCollection()
        self.dose_logs = FakeCollection()
        self.refill_reminders = FakeCollection()


@pytest.fixture
def fake_db():
    return FakeDatabase()


@pytest.fixture
def client(fake_db, monkeypatch):
    import server

    monkeypatch.setattr(server, "MONGO_URL", None)
    monkeypatch.setattr(server, "db", fake_db)
    monkeypatch.setattr(server.schedule_service, "db", fake_db)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    server.schedule_cache.clear()
    yield TestClient(server.app)
    server.schedule_cache.clear()
