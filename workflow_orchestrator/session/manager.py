"""Session Manager - batches operations in front of the Session Store.

Operations are queued per session and written in one load-fold-store pass.
A queue is flushed as soon as any of these holds:

  (a) a phase transition is queued (setPhase / completePhase)
  (b) a critical operation is queued (clarification request/response,
      configureNode, setWorkflow, recordError)
  (c) the queue reaches batch_size
  (d) save_interval seconds have passed since the session's last flush

Anything else waits for a per-session asyncio timer that flushes after
save_interval. The timer is the only time-driven work in the package and is
cancelled whenever its queue is flushed by another trigger. A timer whose
flush fails arms a new one, so kept operations are retried. Bookkeeping for
a session is dropped once a flush leaves it complete with nothing pending.

Single writer per session is assumed: the per-session lock serializes flushes
inside one process, and the store's version stamp rejects a second process.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Iterable

from workflow_orchestrator.session.operations import Operation, fold, is_flush_trigger
from workflow_orchestrator.session.state import Session
from workflow_orchestrator.session.store import SessionStore

logger = logging.getLogger("workflow_orchestrator.session.manager")

BATCH_SIZE = 10
SAVE_INTERVAL_SECONDS = 30.0


class SessionManager:
    """Per-session operation queues with immediate and timed flushes.

    Lifecycle:
        manager = SessionManager(store)
        await manager.queue_operations(session_id, ops)
        session = await manager.load(session_id)   # persisted + pending
        await manager.close()                      # flushes everything
    """

    def __init__(
        self,
        store: SessionStore,
        batch_size: int = BATCH_SIZE,
        save_interval: float = SAVE_INTERVAL_SECONDS,
    ) -> None:
        self._store = store
        self._batch_size = batch_size
        self._save_interval = save_interval
        self._pending: dict[str, list[Operation]] = {}
        self._timers: dict[str, asyncio.Task] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._last_flush: dict[str, float] = {}

    @property
    def store(self) -> SessionStore:
        return self._store

    # ------------------------------------------------------------------
    # Queueing
    # ------------------------------------------------------------------

    async def queue_operation(self, session_id: str, op: Operation) -> None:
        await self.queue_operations(session_id, [op])

    async def queue_operations(self, session_id: str, ops: Iterable[Operation]) -> None:
        ops = list(ops)
        if not ops:
            return
        queue = self._pending.setdefault(session_id, [])
        queue.extend(ops)
        last = self._last_flush.setdefault(session_id, time.monotonic())

        reason = None
        if any(is_flush_trigger(op) for op in ops):
            reason = "critical"
        elif len(queue) >= self._batch_size:
            reason = "batch"
        elif time.monotonic() - last >= self._save_interval:
            reason = "interval"

        if reason:
            logger.debug("Flushing %d ops for %s (%s)", len(queue), session_id, reason)
            await self.flush(session_id)
        else:
            logger.debug("Queued %d ops for %s (%d pending)", len(ops), session_id, len(queue))
            self._ensure_timer(session_id)

    def pending_count(self, session_id: str) -> int:
        return len(self._pending.get(session_id, []))

    # ------------------------------------------------------------------
    # Flushing
    # ------------------------------------------------------------------

    async def flush(self, session_id: str) -> Session | None:
        """Write the queued operations for one session.

        Returns the persisted session, or None when nothing was pending.
        On a store failure the operations go back to the front of the queue
        and the error propagates.
        """
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        async with lock:
            self._cancel_timer(session_id)
            ops = self._pending.pop(session_id, [])
            if not ops:
                return None
            try:
                session = await self._store.append_operations(session_id, ops)
            except Exception:
                self._pending[session_id] = ops + self._pending.get(session_id, [])
                raise
            self._last_flush[session_id] = time.monotonic()
            logger.debug(
                "Flushed %d ops for %s -> v%d (%s)",
                len(ops), session_id, session.version, session.phase.value,
            )
            if session.is_complete and not self._pending.get(session_id):
                self.forget(session_id)
            return session

    async def flush_all(self) -> None:
        for session_id in list(self._pending):
            await self.flush(session_id)

    def forget(self, session_id: str) -> None:
        """Drop the per-session lock, flush time and timer. Pending operations are kept."""
        if self._pending.get(session_id):
            return
        self._cancel_timer(session_id)
        self._locks.pop(session_id, None)
        self._last_flush.pop(session_id, None)

    async def close(self) -> None:
        """Flush every queue and stop all timers."""
        await self.flush_all()
        for task in self._timers.values():
            task.cancel()
        self._timers.clear()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def load(self, session_id: str) -> Session | None:
        """Persisted state with any still-pending operations folded in."""
        session = await self._store.load(session_id)
        if session is None:
            return None
        pending = self._pending.get(session_id)
        if pending:
            return fold(session, pending)
        return session

    # ------------------------------------------------------------------
    # Auto-flush timer
    # ------------------------------------------------------------------

    def _ensure_timer(self, session_id: str) -> None:
        task = self._timers.get(session_id)
        if task is not None and not task.done():
            return
        self._timers[session_id] = asyncio.create_task(self._auto_flush(session_id))

    def _cancel_timer(self, session_id: str) -> None:
        task = self._timers.pop(session_id, None)
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def _auto_flush(self, session_id: str) -> None:
        await asyncio.sleep(self._save_interval)
        try:
            await self.flush(session_id)
        except Exception as e:
            logger.error(
                "Auto-flush failed for %s (%d ops kept, retrying in %.1fs): %s",
                session_id, self.pending_count(session_id), self._save_interval, e,
            )
            if self._timers.get(session_id) is asyncio.current_task():
                del self._timers[session_id]
            if self.pending_count(session_id):
                self._ensure_timer(session_id)
