"""Tests for the record store behaviors read and mutate."""

from __future__ import annotations

import sqlite3

import pytest

from layerflow.core.records import SqliteRecordStore


@pytest.fixture
def store(test_db):
    return SqliteRecordStore(test_db)


class TestSqliteRecordStore:
    def test_create_and_get(self, store):
        record = store.create("deals", {"amount": 100})
        fetched = store.get("deals", record.id)
        assert fetched.data == {"amount": 100}
        assert fetched.key is None

    def test_get_is_scoped_to_collection(self, store):
        record = store.create("deals", {"amount": 100})
        assert store.get("contacts", record.id) is None

    def test_duplicate_key_rejected(self, store):
        store.create("contacts", {"email": "a@x.com"}, key="a@x.com")
        with pytest.raises(sqlite3.IntegrityError):
            store.create("contacts", {"email": "a@x.com"}, key="a@x.com")

    def test_upsert_creates_then_merges(self, store):
        first, created = store.upsert("contacts", "a@x.com", {"email": "a@x.com", "tags": ["lead"]})
        second, created_again = store.upsert("contacts", "a@x.com", {"phone": "+491"})

        assert created is True
        assert created_again is False
        assert second.id == first.id
        assert second.data == {"email": "a@x.com", "tags": ["lead"], "phone": "+491"}
        assert store.find("contacts", "a@x.com").data["phone"] == "+491"

    def test_update_missing_returns_none(self, store):
        assert store.update("contacts", "nope", {"x": 1}) is None

    def test_update_merges(self, store):
        record = store.create("contacts", {"email": "a@x.com", "score": 1})
        updated = store.update("contacts", record.id, {"score": 5})
        assert updated.data == {"email": "a@x.com", "score": 5}

    def test_query_by_fields(self, store):
        store.create("contacts", {"plan": "pro", "country": "DE"})
        store.create("contacts", {"plan": "pro", "country": "FR"})
        store.create("contacts", {"plan": "free", "country": "DE"})

        assert len(store.query("contacts", plan="pro")) == 2
        assert len(store.query("contacts", plan="pro", country="DE")) == 1
        assert len(store.query("contacts")) == 3

    def test_query_rejects_unsafe_field_names(self, store):
        with pytest.raises(ValueError):
            store.query("contacts", **{"x') OR 1=1 --": 1})
