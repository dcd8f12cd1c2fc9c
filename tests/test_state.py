"""Tests for prism_orchestrator/state.py — session record stores."""
from __future__ import annotations

import asyncio

import pytest

from prism_orchestrator.state import (
    InMemorySessionStore,
    SessionBackend,
    SessionStore,
    merge_record,
)


def test_merge_record_shallow_and_none_deletes():
    merged = merge_record({"a": 1, "b": {"x": 1}, "c": 3}, {"b": {"y": 2}, "c": None, "d": 4})
    assert merged == {"a": 1, "b": {"y": 2}, "d": 4}


def test_merge_into_missing_record():
    assert merge_record(None, {"a": 1}) == {"a": 1}


class TestInMemoryStore:
    def test_is_a_session_backend(self):
        assert isinstance(InMemorySessionStore(), SessionBackend)

    def test_get_update_delete(self):
        async def run():
            store = InMemorySessionStore()
            assert await store.get("s1") is None
            await store.update("s1", {"goal": "login"})
            await store.update("s1", {"tasks": [1, 2]})
            record = await store.get("s1")
            await store.delete("s1")
            return record, await store.get("s1")

        record, after = asyncio.run(run())
        assert record == {"goal": "login", "tasks": [1, 2]}
        assert after is None

    def test_returned_records_are_copies(self):
        async def run():
            store = InMemorySessionStore()
            await store.update("s1", {"tasks": [1]})
            record = await store.get("s1")
            record["tasks"].append(2)
            return await store.get("s1")

        assert asyncio.run(run()) == {"tasks": [1]}


class TestSqliteStore:
    @pytest.fixture
    def db_path(self, tmp_path):
        return tmp_path / "nested" / "sessions.db"

    def test_creates_parent_directory(self, db_path):
        SessionStore(db_path)
        assert db_path.parent.is_dir()

    @pytest.mark.asyncio
    async def test_round_trip_and_merge(self, db_path):
        """A None value in a partial update removes that key."""
        store = SessionStore(db_path)
        try:
            await store.update("s1", {"goal": "login", "checkpoint": {"phase": "prism_step_a"}})
            await store.update("s1", {"checkpoint": None, "council": ["a"]})
            assert await store.get("s1") == {"goal": "login", "council": ["a"]}
            assert await store.get("missing") is None
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_persists_across_connections(self, db_path):
        store = SessionStore(db_path)
        await store.update("s1", {"goal": "login"})
        await store.close()

        reopened = SessionStore(db_path)
        try:
            assert await reopened.get("s1") == {"goal": "login"}
            assert [s["session_id"] for s in await reopened.list_sessions()] == ["s1"]
        finally:
            await reopened.close()

    @pytest.mark.asyncio
    async def test_created_at_survives_updates(self, db_path):
        store = SessionStore(db_path)
        try:
            await store.update("s1", {"a": 1})
            first = (await store.list_sessions())[0]
            await asyncio.sleep(0.01)
            await store.update("s1", {"b": 2})
            second = (await store.list_sessions())[0]
        finally:
            await store.close()
        assert second["created_at"] == first["created_at"]
        assert second["updated_at"] >= first["updated_at"]

    @pytest.mark.asyncio
    async def test_delete(self, db_path):
        store = SessionStore(db_path)
        try:
            await store.update("s1", {"a": 1})
            await store.delete("s1")
            assert await store.get("s1") is None
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, db_path):
        store = SessionStore(db_path)
        await store.get("x")
        await store.close()
        await store.close()
