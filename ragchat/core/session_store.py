"""
Chat session stores. Keyed by session id; history is never sent by the client.

Stores are injected (no module-global session map) so several ChatService
instances can share one store. append_turn applies the turn to the stored list,
not to the caller's copy, so concurrent appends on one session never drop a turn.
"""

import asyncio
import logging
import sqlite3
import uuid
from dataclasses import replace
from pathlib import Path
from typing import Protocol

from ragchat.core.models import Session, Turn, dumps_sources, loads_sources, utc_now

logger = logging.getLogger(__name__)


class SessionStore(Protocol):
    async def create(self) -> Session: ...

    async def get(self, session_id: str | None) -> Session | None: ...

    async def append_turn(self, session: Session, turn: Turn) -> Session: ...

    async def list_sessions(self) -> list[Session]: ...


class InMemorySessionStore:
    """Process-local store, one instance per app. Suitable for tests and single-worker runs."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._lock = asyncio.Lock()

    async def create(self) -> Session:
        session = Session(id=str(uuid.uuid4()))
        async with self._lock:
            self._sessions[session.id] = session
        logger.info("[session_store:create] session_id=%s", session.id[:16])
        return session

    async def get(self, session_id: str | None) -> Session | None:
        if not session_id or not isinstance(session_id, str):
            return None
        async with self._lock:
            session = self._sessions.get(session_id)
        logger.info(
            "[session_store:get] IN  session_id=%s OUT turns=%s",
            session_id[:16], len(session.turns) if session else None,
        )
        return session

    async def append_turn(self, session: Session, turn: Turn) -> Session:
        async with self._lock:
            stored = self._sessions.get(session.id) or session
            updated = replace(stored, turns=stored.turns + (turn,), updated_at=utc_now())
            self._sessions[session.id] = updated
        logger.info(
            "[session_store:append_turn] session_id=%s role=%s content_len=%d turns=%d",
            session.id[:16], turn.role, len(turn.content), len(updated.turns),
        )
        return updated

    async def list_sessions(self) -> list[Session]:
        async with self._lock:
            return list(self._sessions.values())


class SqliteSessionStore:
    """
    SQLite-backed store. Tables: sessions (id, created_at, updated_at) and
    turns (session_id, seq, role, content, sources JSON). Appends are INSERTs.
    Blocking sqlite calls run in a worker thread.
    """

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = Path(db_path)
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        return sqlite3.connect(str(self._db_path))

    def _init_db(self) -> None:
        conn = self._get_conn()
        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS sessions (
                    id TEXT PRIMARY KEY,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS turns (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id TEXT NOT NULL,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL,
                    sources TEXT
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_turns_session ON turns (session_id, seq)")
            conn.commit()
        finally:
            conn.close()

    def _load(self, conn: sqlite3.Connection, session_id: str) -> Session | None:
        row = conn.execute(
            "SELECT id, created_at, updated_at FROM sessions WHERE id = ?", (session_id,)
        ).fetchone()
        if row is None:
            return None
        cur = conn.execute(
            "SELECT role, content, sources FROM turns WHERE session_id = ? ORDER BY seq ASC",
            (session_id,),
        )
        turns = tuple(
            Turn(role=role, content=content, sources=loads_sources(sources))
            for role, content, sources in cur.fetchall()
        )
        return Session(id=row[0], turns=turns, created_at=row[1], updated_at=row[2])

    def _create_sync(self) -> Session:
        session = Session(id=str(uuid.uuid4()))
        conn = self._get_conn()
        try:
            conn.execute(
                "INSERT INTO sessions (id, created_at, updated_at) VALUES (?, ?, ?)",
                (session.id, session.created_at, session.updated_at),
            )
            conn.commit()
        finally:
            conn.close()
        return session

    def _get_sync(self, session_id: str) -> Session | None:
        conn = self._get_conn()
        try:
            return self._load(conn, session_id)
        finally:
            conn.close()

    def _append_sync(self, session: Session, turn: Turn) -> Session:
        now = utc_now()
        conn = self._get_conn()
        try:
            conn.execute(
                """
                INSERT INTO sessions (id, created_at, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET updated_at = excluded.updated_at
                """,
                (session.id, session.created_at, now),
            )
            conn.execute(
                "INSERT INTO turns (session_id, role, content, sources) VALUES (?, ?, ?, ?)",
                (session.id, turn.role, turn.content, dumps_sources(turn.sources) if turn.sources else None),
            )
            conn.commit()
            updated = self._load(conn, session.id)
        finally:
            conn.close()
        return updated if updated is not None else session

    def _list_sync(self) -> list[Session]:
        conn = self._get_conn()
        try:
            ids = [r[0] for r in conn.execute("SELECT id FROM sessions ORDER BY updated_at DESC").fetchall()]
            return [s for s in (self._load(conn, i) for i in ids) if s is not None]
        finally:
            conn.close()

    async def create(self) -> Session:
        session = await asyncio.to_thread(self._create_sync)
        logger.info("[session_store:create] sqlite session_id=%s", session.id[:16])
        return session

    async def get(self, session_id: str | None) -> Session | None:
        if not session_id or not isinstance(session_id, str):
            return None
        return await asyncio.to_thread(self._get_sync, session_id)

    async def append_turn(self, session: Session, turn: Turn) -> Session:
        updated = await asyncio.to_thread(self._append_sync, session, turn)
        logger.info(
            "[session_store:append_turn] sqlite session_id=%s role=%s turns=%d",
            session.id[:16], turn.role, len(updated.turns),
        )
        return updated

    async def list_sessions(self) -> list[Session]:
        return await asyncio.to_thread(self._list_sync)
