"""
Session Store — async SQLite-backed session records
===================================================
One JSON record per session id. Writers merge a partial dict into the stored
record (shallow); a ``None`` value removes that key. The checkpoint manager
keeps its ``checkpoint`` meta inside the same record.

Serialization: JSON, human-readable and safe for untrusted DB files.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import time
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

import aiosqlite

logger = logging.getLogger("prism_orchestrator.state")

DEFAULT_SESSION_PATH = Path.home() / ".prism_orchestrator" / "sessions.db"


def merge_record(record: Optional[dict], partial: dict) -> dict:
    merged = dict(record or {})
    for key, value in partial.items():
        if value is None:
            merged.pop(key, None)
        else:
            merged[key] = value
    return merged


@runtime_checkable
class SessionBackend(Protocol):
    async def get(self, session_id: str) -> Optional[dict]: ...

    async def update(self, session_id: str, partial: dict) -> None: ...


class InMemorySessionStore:
    """Dict-backed store for tests and single-process use."""

    def __init__(self):
        self._records: dict[str, dict] = {}

    async def get(self, session_id: str) -> Optional[dict]:
        record = self._records.get(session_id)
        return copy.deepcopy(record) if record is not None else None

    async def update(self, session_id: str, partial: dict) -> None:
        self._records[session_id] = merge_record(self._records.get(session_id), copy.deepcopy(partial))

    async def delete(self, session_id: str) -> None:
        self._records.pop(session_id, None)

    async def list_sessions(self) -> list[str]:
        return list(self._records)


class SessionStore:
    """Persistent aiosqlite connection with one-time schema init."""

    def __init__(self, db_path: Path = DEFAULT_SESSION_PATH):
        db_path = Path(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db_path = str(db_path)
        self._conn: Optional[aiosqlite.Connection] = None
        self._lock: Optional[asyncio.Lock] = None  # lazy, created inside the event loop
        self._write_lock: Optional[asyncio.Lock] = None

    async def _get_conn(self) -> aiosqlite.Connection:
        if self._lock is None:
            self._lock = asyncio.Lock()
        if self._conn is None:
            async with self._lock:
                if self._conn is None:
                    self._conn = await aiosqlite.connect(self._db_path)
                    await self._conn.execute("PRAGMA journal_mode=WAL")
                    await self._conn.executescript("""
                        CREATE TABLE IF NOT EXISTS sessions (
                            session_id TEXT PRIMARY KEY,
                            record     TEXT NOT NULL,
                            created_at REAL NOT NULL,
                            updated_at REAL NOT NULL
                        );
                    """)
                    await self._conn.commit()
        return self._conn

    async def get(self, session_id: str) -> Optional[dict]:
        db = await self._get_conn()
        async with db.execute(
            "SELECT record FROM sessions WHERE session_id = ?", (session_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return json.loads(row[0]) if row else None

    async def update(self, session_id: str, partial: dict) -> None:
        if self._write_lock is None:
            self._write_lock = asyncio.Lock()
        async with self._write_lock:
            merged = merge_record(await self.get(session_id), partial)
            now = time.time()
            db = await self._get_conn()
            await db.execute(
                """INSERT OR REPLACE INTO sessions
                   (session_id, record, created_at, updated_at)
                   VALUES (?, ?, COALESCE(
                       (SELECT created_at FROM sessions WHERE session_id = ?), ?
                   ), ?)""",
                (session_id, json.dumps(merged), session_id, now, now)
            )
            await db.commit()
        logger.debug(f"Session {session_id} updated: {sorted(partial)}")

    async def list_sessions(self) -> list[dict]:
        db = await self._get_conn()
        async with db.execute(
            "SELECT session_id, created_at, updated_at "
            "FROM sessions ORDER BY updated_at DESC"
        ) as cursor:
            rows = await cursor.fetchall()
        return [
            {"session_id": r[0], "created_at": r[1], "updated_at": r[2]}
            for r in rows
        ]

    async def delete(self, session_id: str) -> None:
        db = await self._get_conn()
        await db.execute("DELETE FROM sessions WHERE session_id = ?", (session_id,))
        await db.commit()

    async def close(self):
        """Close the aiosqlite connection gracefully before the event loop shuts down."""
        if self._conn is not None:
            try:
                await self._conn.close()
                # let the aiosqlite worker thread finish its last callbacks
                await asyncio.sleep(0)
            finally:
                self._conn = None
