"""Phase event log - Postgres-backed history of runner executions.

Each advance() that dispatches a runner writes one "started" and one
"completed"/"failed" event to a phase_events table. Inserts are
fire-and-forget: errors are logged and never raised, so a failing event log
never blocks a build. The log is only enabled when POSTGRES_DSN is set.

Table schema:

  session_id   TEXT        - workflow session id
  seq          BIGINT      - nanosecond epoch (monotonically increasing, unique)
  ts           TIMESTAMPTZ - set by Postgres DEFAULT now()
  phase        TEXT        - "discovery" ... "documentation"
  status       TEXT        - started | completed | failed | clarification
  duration_ms  INT NULL    - elapsed ms (set on completed / failed events)
  summary      TEXT NULL   - ≤300 char human-readable description
  payload_json JSONB NULL  - PhaseMetrics dict plus error details

Usage:

    event_log = EventLog(dsn=os.environ["POSTGRES_DSN"])
    await event_log.setup()
    await event_log.insert_event(
        session_id="wf_1718000000000_ab12cd34",
        phase="configuration",
        status="completed",
        duration_ms=412,
        summary="2 nodes configured",
    )
    await event_log.close()
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any

logger = logging.getLogger("workflow_orchestrator.persistence.event_log")

# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

_DDL_TABLE = """
CREATE TABLE IF NOT EXISTS phase_events (
    session_id   TEXT        NOT NULL,
    seq          BIGINT      NOT NULL,
    ts           TIMESTAMPTZ NOT NULL DEFAULT now(),
    phase        TEXT        NOT NULL,
    status       TEXT        NOT NULL,
    duration_ms  INT,
    summary      TEXT,
    payload_json JSONB,
    PRIMARY KEY (session_id, seq)
)
"""

_DDL_INDEX = (
    "CREATE INDEX IF NOT EXISTS idx_phase_events_session_id "
    "ON phase_events (session_id)"
)

# ---------------------------------------------------------------------------
# DML
# ---------------------------------------------------------------------------

_INSERT = """
INSERT INTO phase_events
    (session_id, seq, phase, status, duration_ms, summary, payload_json)
VALUES (%s, %s, %s, %s, %s, %s, %s::jsonb)
ON CONFLICT (session_id, seq) DO NOTHING
"""

_SELECT = """
SELECT seq, ts, phase, status, duration_ms, summary, payload_json
FROM phase_events
WHERE session_id = %s AND seq > %s
ORDER BY seq
LIMIT %s
"""


# ---------------------------------------------------------------------------
# EventLog
# ---------------------------------------------------------------------------


class EventLog:
    """Writes phase lifecycle events to the phase_events Postgres table.

    Args:
        dsn: Postgres connection string (from POSTGRES_DSN).
    """

    def __init__(self, dsn: str) -> None:
        self._dsn = dsn
        self._conn: Any = None

    @property
    def enabled(self) -> bool:
        return self._conn is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def setup(self) -> None:
        """Open connection and create the phase_events table if absent."""
        try:
            import psycopg  # type: ignore[import]
        except ImportError as exc:
            logger.error(
                "psycopg is not installed; event log disabled. "
                "Install with: pip install 'n8n-workflow-orchestrator[postgres]'. %s",
                exc,
            )
            return

        try:
            conn = await psycopg.AsyncConnection.connect(self._dsn, autocommit=False)
            async with conn.cursor() as cur:
                await cur.execute(_DDL_TABLE)
                await cur.execute(_DDL_INDEX)
            await conn.commit()
            self._conn = conn
            logger.info("EventLog ready (Postgres)")
        except Exception as exc:
            logger.error("EventLog: failed to connect to Postgres (%s); event log disabled.", exc)
            self._conn = None

    async def close(self) -> None:
        if self._conn is not None:
            try:
                await self._conn.close()
            except Exception as exc:
                logger.debug("EventLog close error (ignored): %s", exc)
            finally:
                self._conn = None

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    async def insert_event(
        self,
        session_id: str,
        phase: str,
        status: str,
        duration_ms: int | None = None,
        summary: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> None:
        """Insert one phase event. Errors are logged and suppressed."""
        if self._conn is None:
            return

        seq = time.time_ns()

        if summary and len(summary) > 300:
            summary = summary[:297] + "..."

        payload_str: str | None = None
        if payload is not None:
            try:
                payload_str = json.dumps(payload, default=str)
            except (TypeError, ValueError):
                payload_str = None

        try:
            async with self._conn.cursor() as cur:
                await cur.execute(
                    _INSERT,
                    (session_id, seq, phase, status, duration_ms, summary, payload_str),
                )
            await self._conn.commit()
        except Exception as exc:
            logger.error("EventLog: insert failed [%s/%s/%s]: %s", session_id, phase, status, exc)

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def get_events(
        self,
        session_id: str,
        after_seq: int = 0,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        """Events for session_id with seq > after_seq, ordered by seq.

        Returns an empty list if the event log is unavailable.
        """
        if self._conn is None:
            return []

        try:
            async with self._conn.cursor() as cur:
                await cur.execute(_SELECT, (session_id, after_seq, limit))
                cols = [d.name for d in cur.description]
                rows = await cur.fetchall()
            return [dict(zip(cols, row)) for row in rows]
        except Exception as exc:
            logger.error("EventLog.get_events failed: %s", exc)
            return []
