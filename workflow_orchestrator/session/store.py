"""Session Store - durable, versioned storage of build sessions.

Two backends share the SessionStore contract:

  InMemorySessionStore - process-local dict of JSON snapshots (CLI, tests)
  SqliteSessionStore   - aiosqlite-backed table with a version column

Every successful write bumps ``version``. replace(session, expected_version=N)
is a compare-and-swap: it fails with SessionConflictError when another writer
got there first. Callers that keep to one in-flight advance() per session never
hit the conflict; the stamp turns a violated caller contract into a loud error
instead of a lost update.

Table schema (SQLite):
    workflow_sessions (
        session_id  TEXT PRIMARY KEY,
        owner       TEXT,
        phase       TEXT NOT NULL,
        state_json  TEXT NOT NULL,     -- session_to_dict() snapshot
        version     INTEGER NOT NULL,
        created_at  REAL NOT NULL,
        updated_at  REAL NOT NULL
    )

Usage:
    store = await SqliteSessionStore.open("sessions.db")
    session = await store.create("wf_1", "send a Slack message when a webhook fires")
    await store.append_operations("wf_1", [SelectNode(node_id="n1")])
    await store.close()
"""

from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Iterable

from workflow_orchestrator.errors import SessionConflictError, SessionNotFoundError
from workflow_orchestrator.session.operations import Operation, fold
from workflow_orchestrator.session.state import (
    Session,
    new_session,
    session_from_dict,
    session_to_dict,
)

logger = logging.getLogger("workflow_orchestrator.session.store")


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------


class SessionStore(ABC):
    """Storage contract used by the Session Manager and the Orchestrator."""

    @abstractmethod
    async def create(
        self,
        session_id: str,
        prompt: str,
        owner: str | None = None,
        webhook_url: str | None = None,
    ) -> Session:
        """Persist a fresh session. Raises SessionConflictError if the id exists."""

    @abstractmethod
    async def load(self, session_id: str) -> Session | None:
        """Return the persisted session, or None when it does not exist."""

    @abstractmethod
    async def replace(self, session: Session, expected_version: int | None = None) -> Session:
        """Overwrite the stored session and return it with its new version.

        When expected_version is given, the write only happens if the stored
        version still equals it.
        """

    @abstractmethod
    async def delete(self, session_id: str) -> bool:
        ...

    @abstractmethod
    async def list_sessions(self, limit: int = 50) -> list[dict]:
        """Lightweight rows: session_id, owner, phase, version, created_at, updated_at."""

    @abstractmethod
    async def cleanup_expired(self, max_age_hours: float) -> int:
        """Delete sessions not updated for max_age_hours. Returns the count removed."""

    async def close(self) -> None:
        return None

    async def append_operations(self, session_id: str, ops: Iterable[Operation]) -> Session:
        """Load, fold ops in, and write back with a version check."""
        ops = list(ops)
        session = await self.load(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        if not ops:
            return session
        updated = fold(session, ops)
        return await self.replace(updated, expected_version=session.version)


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class InMemorySessionStore(SessionStore):
    """Keeps JSON snapshots so callers never share mutable state with the store."""

    def __init__(self) -> None:
        self._rows: dict[str, str] = {}

    async def create(self, session_id, prompt, owner=None, webhook_url=None) -> Session:
        if session_id in self._rows:
            raise SessionConflictError(session_id, "session already exists")
        session = new_session(session_id, prompt, owner=owner, webhook_url=webhook_url)
        session.version = 1
        session.updated_at = session.created_at
        self._rows[session_id] = json.dumps(session_to_dict(session))
        logger.info("Created session %s", session_id)
        return session

    async def load(self, session_id: str) -> Session | None:
        raw = self._rows.get(session_id)
        if raw is None:
            return None
        return session_from_dict(json.loads(raw))

    async def replace(self, session: Session, expected_version: int | None = None) -> Session:
        raw = self._rows.get(session.session_id)
        if raw is None:
            raise SessionNotFoundError(session.session_id)
        stored_version = json.loads(raw).get("version", 0)
        if expected_version is not None and stored_version != expected_version:
            raise SessionConflictError(
                session.session_id,
                f"expected version {expected_version}, found {stored_version}",
            )
        session.version = stored_version + 1
        session.updated_at = time.time()
        self._rows[session.session_id] = json.dumps(session_to_dict(session))
        return session

    async def delete(self, session_id: str) -> bool:
        return self._rows.pop(session_id, None) is not None

    async def list_sessions(self, limit: int = 50) -> list[dict]:
        rows = [json.loads(raw) for raw in self._rows.values()]
        rows.sort(key=lambda r: r.get("updated_at") or 0, reverse=True)
        return [_summary_row(r) for r in rows[:limit]]

    async def cleanup_expired(self, max_age_hours: float) -> int:
        cutoff = time.time() - max_age_hours * 3600
        expired = [
            sid for sid, raw in self._rows.items()
            if (json.loads(raw).get("updated_at") or 0) < cutoff
        ]
        for sid in expired:
            del self._rows[sid]
        return len(expired)


def _summary_row(d: dict) -> dict:
    return {
        "session_id": d["session_id"],
        "owner": d.get("owner"),
        "phase": d.get("phase"),
        "version": d.get("version", 0),
        "created_at": d.get("created_at"),
        "updated_at": d.get("updated_at"),
    }


# ---------------------------------------------------------------------------
# SQLite backend
# ---------------------------------------------------------------------------

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS workflow_sessions (
    session_id  TEXT    PRIMARY KEY,
    owner       TEXT,
    phase       TEXT    NOT NULL,
    state_json  TEXT    NOT NULL,
    version     INTEGER NOT NULL DEFAULT 1,
    created_at  REAL    NOT NULL,
    updated_at  REAL    NOT NULL
)
"""

_CREATE_INDEX = """
CREATE INDEX IF NOT EXISTS idx_workflow_sessions_updated ON workflow_sessions (updated_at)
"""


class SqliteSessionStore(SessionStore):
    """Async SQLite-backed session store.

    Lifecycle:
        store = await SqliteSessionStore.open(db_path)
        ...
        await store.close()

    Or create manually:
        store = SqliteSessionStore(db_path)
        await store.setup()
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._conn = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def setup(self) -> None:
        """Open the SQLite connection and create the sessions table."""
        import aiosqlite
        self._conn = await aiosqlite.connect(self._db_path)
        await self._conn.execute(_CREATE_TABLE)
        await self._conn.execute(_CREATE_INDEX)
        await self._conn.commit()
        logger.info("SqliteSessionStore ready: %s", self._db_path)

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    @classmethod
    async def open(cls, db_path: str) -> "SqliteSessionStore":
        """Factory: create + setup in one call."""
        store = cls(db_path)
        await store.setup()
        return store

    def _require_conn(self):
        if not self._conn:
            raise RuntimeError("SqliteSessionStore.setup() not called")
        return self._conn

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    async def create(self, session_id, prompt, owner=None, webhook_url=None) -> Session:
        import aiosqlite
        conn = self._require_conn()
        session = new_session(session_id, prompt, owner=owner, webhook_url=webhook_url)
        session.version = 1
        session.updated_at = session.created_at
        try:
            await conn.execute(
                "INSERT INTO workflow_sessions "
                "(session_id, owner, phase, state_json, version, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    session_id,
                    owner,
                    session.phase.value,
                    json.dumps(session_to_dict(session)),
                    session.version,
                    session.created_at,
                    session.updated_at,
                ),
            )
            await conn.commit()
        except aiosqlite.IntegrityError as e:
            raise SessionConflictError(session_id, "session already exists") from e
        logger.info("Created session %s", session_id)
        return session

    async def replace(self, session: Session, expected_version: int | None = None) -> Session:
        conn = self._require_conn()
        if expected_version is None:
            async with conn.execute(
                "SELECT version FROM workflow_sessions WHERE session_id = ?",
                (session.session_id,),
            ) as cur:
                row = await cur.fetchone()
            if row is None:
                raise SessionNotFoundError(session.session_id)
            expected_version = row[0]

        new_version = expected_version + 1
        updated_at = time.time()
        session.version = new_version
        session.updated_at = updated_at
        cur = await conn.execute(
            "UPDATE workflow_sessions "
            "SET phase = ?, state_json = ?, version = ?, updated_at = ? "
            "WHERE session_id = ? AND version = ?",
            (
                session.phase.value,
                json.dumps(session_to_dict(session)),
                new_version,
                updated_at,
                session.session_id,
                expected_version,
            ),
        )
        await conn.commit()
        if cur.rowcount == 0:
            session.version = expected_version
            if await self.load(session.session_id) is None:
                raise SessionNotFoundError(session.session_id)
            raise SessionConflictError(
                session.session_id, f"expected version {expected_version}"
            )
        logger.debug("Saved session %s v%d (%s)", session.session_id, new_version, session.phase.value)
        return session

    async def delete(self, session_id: str) -> bool:
        conn = self._require_conn()
        cur = await conn.execute(
            "DELETE FROM workflow_sessions WHERE session_id = ?", (session_id,)
        )
        await conn.commit()
        return cur.rowcount > 0

    async def cleanup_expired(self, max_age_hours: float) -> int:
        conn = self._require_conn()
        cutoff = time.time() - max_age_hours * 3600
        cur = await conn.execute(
            "DELETE FROM workflow_sessions WHERE updated_at < ?", (cutoff,)
        )
        await conn.commit()
        if cur.rowcount:
            logger.info("Removed %d expired sessions", cur.rowcount)
        return cur.rowcount

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def load(self, session_id: str) -> Session | None:
        conn = self._require_conn()
        async with conn.execute(
            "SELECT state_json, version, updated_at FROM workflow_sessions WHERE session_id = ?",
            (session_id,),
        ) as cur:
            row = await cur.fetchone()
        if row is None:
            return None
        session = session_from_dict(json.loads(row[0]))
        session.version = row[1]
        session.updated_at = row[2]
        return session

    async def list_sessions(self, limit: int = 50) -> list[dict]:
        conn = self._require_conn()
        async with conn.execute(
            "SELECT session_id, owner, phase, version, created_at, updated_at "
            "FROM workflow_sessions ORDER BY updated_at DESC LIMIT ?",
            (limit,),
        ) as cur:
            rows = await cur.fetchall()
        cols = ["session_id", "owner", "phase", "version", "created_at", "updated_at"]
        return [dict(zip(cols, row)) for row in rows]
