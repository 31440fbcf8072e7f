"""Session Manager batching: which operations flush, which wait, and the timer."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from workflow_orchestrator.session.manager import SessionManager
from workflow_orchestrator.session.operations import (
    AddTokenUsage,
    CompletePhase,
    DiscoverNode,
    SelectNode,
)
from workflow_orchestrator.session.state import DiscoveredNode, Phase
from workflow_orchestrator.session.store import InMemorySessionStore


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _manager(batch_size: int = 10, save_interval: float = 30.0):
    store = InMemorySessionStore()
    await store.create("wf_1", "send a Slack message when a webhook fires")
    return SessionManager(store, batch_size=batch_size, save_interval=save_interval), store


def _discover(node_id: str) -> DiscoverNode:
    return DiscoverNode(node=DiscoveredNode(id=node_id, type="n8n-nodes-base.noOp"))


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestQueueing:
    @pytest.mark.asyncio
    async def test_non_critical_ops_are_held(self):
        manager, store = await _manager()
        await manager.queue_operations("wf_1", [_discover("a"), SelectNode(node_id="a")])
        assert manager.pending_count("wf_1") == 2
        assert (await store.load("wf_1")).selected == []
        await manager.close()

    @pytest.mark.asyncio
    async def test_load_folds_pending_ops(self):
        manager, _ = await _manager()
        await manager.queue_operations("wf_1", [_discover("a"), SelectNode(node_id="a")])
        session = await manager.load("wf_1")
        assert session.selected == ["a"]
        await manager.close()

    @pytest.mark.asyncio
    async def test_phase_transition_flushes_immediately(self):
        manager, store = await _manager()
        await manager.queue_operation("wf_1", _discover("a"))
        await manager.queue_operation("wf_1", CompletePhase(phase="discovery"))
        assert manager.pending_count("wf_1") == 0
        persisted = await store.load("wf_1")
        assert persisted.phase == Phase.CONFIGURATION
        assert [n.id for n in persisted.discovered] == ["a"]
        await manager.close()

    @pytest.mark.asyncio
    async def test_batch_size_triggers_flush(self):
        manager, store = await _manager(batch_size=3)
        await manager.queue_operations("wf_1", [AddTokenUsage(input_tokens=1)] * 2)
        assert manager.pending_count("wf_1") == 2
        await manager.queue_operation("wf_1", AddTokenUsage(input_tokens=1))
        assert manager.pending_count("wf_1") == 0
        assert (await store.load("wf_1")).metadata["tokens"]["input"] == 3
        await manager.close()

    @pytest.mark.asyncio
    async def test_empty_queue_is_noop(self):
        manager, store = await _manager()
        await manager.queue_operations("wf_1", [])
        assert await manager.flush("wf_1") is None
        assert (await store.load("wf_1")).version == 1


class TestFlushing:
    @pytest.mark.asyncio
    async def test_close_flushes_everything(self):
        manager, store = await _manager()
        await manager.queue_operations("wf_1", [_discover("a"), SelectNode(node_id="a")])
        await manager.close()
        assert (await store.load("wf_1")).selected == ["a"]

    @pytest.mark.asyncio
    async def test_timer_flushes_after_interval(self):
        manager, store = await _manager(save_interval=0.05)
        await manager.queue_operation("wf_1", _discover("a"))
        await asyncio.sleep(0.2)
        assert manager.pending_count("wf_1") == 0
        assert [n.id for n in (await store.load("wf_1")).discovered] == ["a"]
        await manager.close()

    @pytest.mark.asyncio
    async def test_store_failure_requeues_ops(self):
        manager, store = await _manager()
        await manager.queue_operation("wf_1", _discover("a"))
        store.append_operations = AsyncMock(side_effect=RuntimeError("disk full"))
        with pytest.raises(RuntimeError, match="disk full"):
            await manager.flush("wf_1")
        assert manager.pending_count("wf_1") == 1

    @pytest.mark.asyncio
    async def test_failed_timer_flush_is_retried(self):
        manager, store = await _manager(save_interval=0.05)
        append = store.append_operations
        attempts = []

        async def flaky(session_id, ops):
            attempts.append(len(ops))
            if len(attempts) == 1:
                raise RuntimeError("disk full")
            return await append(session_id, ops)

        store.append_operations = flaky
        await manager.queue_operation("wf_1", _discover("a"))
        await asyncio.sleep(0.3)

        assert attempts == [1, 1]
        assert manager.pending_count("wf_1") == 0
        assert [n.id for n in (await store.load("wf_1")).discovered] == ["a"]
        await manager.close()


class TestBookkeeping:
    @pytest.mark.asyncio
    async def test_completed_session_is_forgotten(self):
        manager, _ = await _manager()
        for phase in ("discovery", "configuration", "building", "validation"):
            await manager.queue_operation("wf_1", CompletePhase(phase=phase))
        assert "wf_1" in manager._locks
        assert "wf_1" in manager._last_flush

        await manager.queue_operation("wf_1", CompletePhase(phase="documentation"))

        assert (await manager.load("wf_1")).is_complete
        assert "wf_1" not in manager._locks
        assert "wf_1" not in manager._last_flush
        await manager.close()

    @pytest.mark.asyncio
    async def test_forget_keeps_pending_sessions(self):
        manager, _ = await _manager()
        await manager.queue_operation("wf_1", _discover("a"))
        manager.forget("wf_1")
        assert manager.pending_count("wf_1") == 1
        assert "wf_1" in manager._last_flush
        await manager.close()
