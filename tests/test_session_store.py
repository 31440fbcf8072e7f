"""Session Store contract, exercised against both backends."""

from __future__ import annotations

import json

import pytest

from workflow_orchestrator.errors import SessionConflictError, SessionNotFoundError
from workflow_orchestrator.session.operations import CompletePhase, DiscoverNode, SelectNode
from workflow_orchestrator.session.state import DiscoveredNode, Phase
from workflow_orchestrator.session.store import InMemorySessionStore, SqliteSessionStore


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _open(kind: str, tmp_path):
    if kind == "memory":
        return InMemorySessionStore()
    return await SqliteSessionStore.open(str(tmp_path / "sessions.db"))


BACKENDS = ["memory", "sqlite"]


# ---------------------------------------------------------------------------
# Shared contract
# ---------------------------------------------------------------------------


class TestStoreContract:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("kind", BACKENDS)
    async def test_create_then_load(self, kind, tmp_path):
        store = await _open(kind, tmp_path)
        try:
            created = await store.create("wf_1", "build me a workflow", owner="alice")
            loaded = await store.load("wf_1")
            assert created.version == 1
            assert loaded is not None
            assert loaded.user_prompt == "build me a workflow"
            assert loaded.owner == "alice"
            assert loaded.phase == Phase.DISCOVERY
            assert loaded.version == 1
        finally:
            await store.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kind", BACKENDS)
    async def test_duplicate_create_conflicts(self, kind, tmp_path):
        store = await _open(kind, tmp_path)
        try:
            await store.create("wf_1", "a")
            with pytest.raises(SessionConflictError):
                await store.create("wf_1", "b")
        finally:
            await store.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kind", BACKENDS)
    async def test_load_missing_returns_none(self, kind, tmp_path):
        store = await _open(kind, tmp_path)
        try:
            assert await store.load("nope") is None
        finally:
            await store.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kind", BACKENDS)
    async def test_append_operations_bumps_version(self, kind, tmp_path):
        store = await _open(kind, tmp_path)
        try:
            await store.create("wf_1", "a")
            node = DiscoveredNode(id="n1", type="n8n-nodes-base.slack")
            updated = await store.append_operations(
                "wf_1", [DiscoverNode(node=node), SelectNode(node_id="n1"), CompletePhase(phase="discovery")]
            )
            assert updated.version == 2
            reloaded = await store.load("wf_1")
            assert reloaded.phase == Phase.CONFIGURATION
            assert reloaded.selected == ["n1"]
            assert len(reloaded.operation_history) == 3
        finally:
            await store.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kind", BACKENDS)
    async def test_append_to_missing_session_raises(self, kind, tmp_path):
        store = await _open(kind, tmp_path)
        try:
            with pytest.raises(SessionNotFoundError):
                await store.append_operations("ghost", [SelectNode(node_id="x")])
        finally:
            await store.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kind", BACKENDS)
    async def test_stale_version_rejected(self, kind, tmp_path):
        store = await _open(kind, tmp_path)
        try:
            await store.create("wf_1", "a")
            first = await store.load("wf_1")
            second = await store.load("wf_1")
            await store.replace(first, expected_version=1)
            with pytest.raises(SessionConflictError):
                await store.replace(second, expected_version=1)
            assert (await store.load("wf_1")).version == 2
        finally:
            await store.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kind", BACKENDS)
    async def test_delete(self, kind, tmp_path):
        store = await _open(kind, tmp_path)
        try:
            await store.create("wf_1", "a")
            assert await store.delete("wf_1") is True
            assert await store.delete("wf_1") is False
            assert await store.load("wf_1") is None
        finally:
            await store.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kind", BACKENDS)
    async def test_list_sessions_rows(self, kind, tmp_path):
        store = await _open(kind, tmp_path)
        try:
            await store.create("wf_1", "a", owner="alice")
            await store.create("wf_2", "b")
            rows = await store.list_sessions()
            assert {r["session_id"] for r in rows} == {"wf_1", "wf_2"}
            assert set(rows[0]) == {"session_id", "owner", "phase", "version", "created_at", "updated_at"}
            assert len(await store.list_sessions(limit=1)) == 1
        finally:
            await store.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kind", BACKENDS)
    async def test_cleanup_expired(self, kind, tmp_path):
        store = await _open(kind, tmp_path)
        try:
            await store.create("wf_1", "a")
            assert await store.cleanup_expired(max_age_hours=1) == 0
            assert await store.cleanup_expired(max_age_hours=-1) == 1
            assert await store.load("wf_1") is None
        finally:
            await store.close()


# ---------------------------------------------------------------------------
# Backend specifics
# ---------------------------------------------------------------------------


class TestInMemoryIsolation:
    @pytest.mark.asyncio
    async def test_loaded_session_is_a_copy(self):
        store = InMemorySessionStore()
        await store.create("wf_1", "a")
        loaded = await store.load("wf_1")
        loaded.selected.append("mutated")
        assert (await store.load("wf_1")).selected == []


class TestSqliteSpecifics:
    @pytest.mark.asyncio
    async def test_requires_setup(self, tmp_path):
        store = SqliteSessionStore(str(tmp_path / "x.db"))
        with pytest.raises(RuntimeError, match="setup"):
            await store.load("wf_1")

    @pytest.mark.asyncio
    async def test_persists_across_connections(self, tmp_path):
        path = str(tmp_path / "sessions.db")
        store = await SqliteSessionStore.open(path)
        await store.create("wf_1", "a")
        await store.append_operations("wf_1", [CompletePhase(phase="discovery")])
        await store.close()

        reopened = await SqliteSessionStore.open(path)
        try:
            session = await reopened.load("wf_1")
            assert session.phase == Phase.CONFIGURATION
            assert session.version == 2
        finally:
            await reopened.close()

    @pytest.mark.asyncio
    async def test_legacy_pair_list_snapshot_normalized(self, tmp_path):
        store = await SqliteSessionStore.open(str(tmp_path / "sessions.db"))
        try:
            await store.create("wf_1", "a")
            conn = store._require_conn()
            async with conn.execute(
                "SELECT state_json FROM workflow_sessions WHERE session_id = ?", ("wf_1",)
            ) as cur:
                row = await cur.fetchone()
            state = json.loads(row[0])
            state["configured"] = [["n1", {"nodeType": "n8n-nodes-base.slack", "parameters": {"text": "hi"}}]]
            await conn.execute(
                "UPDATE workflow_sessions SET state_json = ? WHERE session_id = ?",
                (json.dumps(state), "wf_1"),
            )
            await conn.commit()

            session = await store.load("wf_1")
            assert session.configured["n1"].node_type == "n8n-nodes-base.slack"
            assert session.configured["n1"].parameters == {"text": "hi"}
        finally:
            await store.close()
