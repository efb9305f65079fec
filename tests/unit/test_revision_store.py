"""Tests for the in-memory and SQLite revision stores."""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import replace
from pathlib import Path

import pytest
import pytest_asyncio

from replisync.sync.errors import LocalChangedDuringSyncError
from replisync.sync.protocol import SyncMetadata
from replisync.sync.revision_store import (
    InMemoryRevisionStore,
    RevisionStore,
    SQLiteRevisionStore,
    changed_since,
    rebase_local_changes,
)
from replisync.sync.vector_clock import VectorClock
from replisync.utils.timeutils import utcnow


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def any_store(request: pytest.FixtureRequest, tmp_path: Path) -> AsyncIterator[RevisionStore]:
    if request.param == "memory":
        yield InMemoryRevisionStore()
        return
    sqlite_store = SQLiteRevisionStore(tmp_path / "store.db")
    await sqlite_store.initialize()
    try:
        yield sqlite_store
    finally:
        await sqlite_store.close()


def _synced(meta: SyncMetadata, revision_map: dict[str, str]) -> SyncMetadata:
    """``meta`` as the engine publishes it after a successful upload."""
    now = utcnow()
    return replace(
        meta,
        last_update=now,
        last_synced_update=now,
        last_synced_vector_clock=meta.vector_clock,
        revision_map=revision_map,
    )


class TestRebase:
    def test_changed_since(self) -> None:
        base = SyncMetadata(vector_clock=VectorClock({"dev-a": 1}), lamport=1)

        assert not changed_since(base, replace(base))
        assert changed_since(base, replace(base, lamport=2))
        assert changed_since(base, replace(base, vector_clock=VectorClock({"dev-a": 2})))

    def test_rebased_clock_dominates_both_sides(self) -> None:
        published = _synced(
            SyncMetadata(vector_clock=VectorClock({"dev-a": 1, "dev-b": 4}), lamport=5),
            {"notes": "r1"},
        )
        published = replace(published, device_id="dev-a")
        current = SyncMetadata(
            vector_clock=VectorClock({"dev-a": 2}), lamport=2, device_id="dev-a"
        )

        rebased = rebase_local_changes(published, current)

        assert rebased.vector_clock == VectorClock({"dev-a": 3, "dev-b": 4})
        assert rebased.lamport == 6
        assert rebased.last_synced_vector_clock == published.vector_clock
        assert rebased.has_unsynced_changes


class TestRevisionStore:
    @pytest.mark.asyncio
    async def test_defaults(self, any_store: RevisionStore) -> None:
        meta = await any_store.get_metadata()
        assert meta.vector_clock.is_empty
        assert meta.lamport == 0
        assert await any_store.list_model_ids() == []
        assert await any_store.get_model("missing") is None

    @pytest.mark.asyncio
    async def test_record_change_advances_clocks(self, any_store: RevisionStore) -> None:
        await any_store.record_change("notes", b"v1", "dev-a")
        meta = await any_store.record_change("tasks", b"t1", "dev-a")

        assert meta.vector_clock == VectorClock({"dev-a": 2})
        assert meta.lamport == 2
        assert meta.device_id == "dev-a"
        assert meta.has_unsynced_changes
        assert await any_store.get_metadata() == meta
        assert await any_store.dirty_model_ids() == {"notes", "tasks"}
        assert await any_store.get_model("notes") == b"v1"

    @pytest.mark.asyncio
    async def test_mark_synced_clears_only_given_models(self, any_store: RevisionStore) -> None:
        await any_store.record_change("notes", b"v1", "dev-a")
        meta = await any_store.record_change("tasks", b"t1", "dev-a")

        now = utcnow()
        synced = SyncMetadata(
            vector_clock=meta.vector_clock,
            lamport=meta.lamport,
            last_update=now,
            last_synced_update=now,
            last_synced_vector_clock=meta.vector_clock,
            revision_map={"notes": "r1"},
        )
        await any_store.mark_synced(synced, {"notes": b"v1"})

        assert await any_store.dirty_model_ids() == {"tasks"}
        stored = await any_store.get_metadata()
        assert stored.revision_map == {"notes": "r1"}
        assert stored.last_synced_vector_clock == meta.vector_clock
        assert not stored.has_unsynced_changes

    @pytest.mark.asyncio
    async def test_mark_synced_keeps_edit_recorded_during_upload(
        self, any_store: RevisionStore
    ) -> None:
        await any_store.record_change("notes", b"v1", "dev-a")
        snapshot = await any_store.snapshot()
        published = _synced(snapshot, {"notes": "r1"})

        await any_store.record_change("notes", b"v2", "dev-a")
        stored = await any_store.mark_synced(published, {"notes": b"v1"}, snapshot=snapshot)

        assert stored == await any_store.get_metadata()
        assert await any_store.dirty_model_ids() == {"notes"}
        assert await any_store.get_model("notes") == b"v2"
        assert stored.vector_clock.get("dev-a") >= 2
        assert stored.vector_clock != published.vector_clock
        assert stored.lamport > published.lamport
        assert stored.revision_map == {"notes": "r1"}
        assert stored.has_unsynced_changes

    @pytest.mark.asyncio
    async def test_mark_synced_other_model_edited_during_upload(
        self, any_store: RevisionStore
    ) -> None:
        await any_store.record_change("notes", b"v1", "dev-a")
        snapshot = await any_store.snapshot()

        await any_store.record_change("tasks", b"t1", "dev-a")
        await any_store.mark_synced(
            _synced(snapshot, {"notes": "r1"}), {"notes": b"v1"}, snapshot=snapshot
        )

        assert await any_store.dirty_model_ids() == {"tasks"}
        assert (await any_store.get_metadata()).has_unsynced_changes

    @pytest.mark.asyncio
    async def test_apply_remote_partial(self, any_store: RevisionStore) -> None:
        await any_store.record_change("notes", b"local", "dev-a")
        await any_store.record_change("tasks", b"local", "dev-a")
        remote = SyncMetadata(vector_clock=VectorClock({"dev-b": 5}), lamport=5)

        await any_store.apply_remote({"notes": b"remote"}, remote, replace_all=False)

        assert await any_store.get_model("notes") == b"remote"
        assert await any_store.get_model("tasks") == b"local"
        assert await any_store.dirty_model_ids() == {"tasks"}
        assert (await any_store.get_metadata()).lamport == 5

    @pytest.mark.asyncio
    async def test_apply_remote_replace_all(self, any_store: RevisionStore) -> None:
        await any_store.record_change("stale", b"local", "dev-a")
        remote = SyncMetadata(vector_clock=VectorClock({"dev-b": 1}), lamport=1)

        await any_store.apply_remote({"notes": b"remote"}, remote, replace_all=True)

        assert await any_store.list_model_ids() == ["notes"]
        assert await any_store.dirty_model_ids() == set()
        assert (await any_store.get_metadata()).vector_clock == VectorClock({"dev-b": 1})

    @pytest.mark.asyncio
    async def test_apply_remote_aborts_after_local_edit(self, any_store: RevisionStore) -> None:
        await any_store.record_change("notes", b"v1", "dev-a")
        snapshot = await any_store.snapshot()
        await any_store.record_change("notes", b"v2", "dev-a")
        remote = SyncMetadata(vector_clock=VectorClock({"dev-b": 3}), lamport=3)

        with pytest.raises(LocalChangedDuringSyncError):
            await any_store.apply_remote(
                {"notes": b"remote"}, remote, replace_all=True, snapshot=snapshot
            )

        assert await any_store.get_model("notes") == b"v2"
        assert await any_store.dirty_model_ids() == {"notes"}
        assert (await any_store.get_metadata()).vector_clock == VectorClock({"dev-a": 2})

    @pytest.mark.asyncio
    async def test_apply_remote_unchanged_snapshot(self, any_store: RevisionStore) -> None:
        await any_store.record_change("notes", b"v1", "dev-a")
        snapshot = await any_store.snapshot()
        remote = SyncMetadata(vector_clock=VectorClock({"dev-b": 3}), lamport=3)

        await any_store.apply_remote(
            {"notes": b"remote"}, remote, replace_all=True, snapshot=snapshot
        )

        assert await any_store.get_model("notes") == b"remote"

    @pytest.mark.asyncio
    async def test_snapshot_is_immutable_copy(self, any_store: RevisionStore) -> None:
        before = await any_store.snapshot()
        await any_store.record_change("notes", b"v1", "dev-a")
        assert before.lamport == 0


class TestSQLiteRevisionStore:
    @pytest.mark.asyncio
    async def test_persists_across_reopen(self, tmp_path: Path) -> None:
        db_path = tmp_path / "nested" / "store.db"
        async with SQLiteRevisionStore(db_path) as first:
            await first.record_change("notes", b"v1", "dev-a")

        async with SQLiteRevisionStore(db_path) as second:
            meta = await second.get_metadata()
            assert meta.vector_clock == VectorClock({"dev-a": 1})
            assert meta.last_update is not None
            assert await second.get_model("notes") == b"v1"
            assert await second.dirty_model_ids() == {"notes"}

    @pytest.mark.asyncio
    async def test_requires_initialize(self, tmp_path: Path) -> None:
        sqlite_store = SQLiteRevisionStore(tmp_path / "store.db")
        with pytest.raises(RuntimeError, match="not initialized"):
            await sqlite_store.get_metadata()

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, tmp_path: Path) -> None:
        sqlite_store = SQLiteRevisionStore(tmp_path / "store.db")
        await sqlite_store.initialize()
        await sqlite_store.close()
        await sqlite_store.close()
