"""Local causal state and model payloads.

A revision store holds the local :class:`SyncMetadata`, one opaque blob per
model id, and the set of models changed since the last successful sync.
Writes coming from the application go through :meth:`RevisionStore.record_change`,
which advances this device's vector clock entry and Lamport counter.
Writes coming from a sync go through :meth:`RevisionStore.apply_remote` and
:meth:`RevisionStore.mark_synced`. Both are checked against the snapshot the
sync started from, so an edit recorded while the sync was on the network is
never overwritten or marked as uploaded.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from dataclasses import replace
from datetime import timedelta
from pathlib import Path

import aiosqlite

from replisync.sync.errors import InvalidDataError, LocalChangedDuringSyncError
from replisync.sync.protocol import SyncMetadata
from replisync.sync.vector_clock import LamportClock
from replisync.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

_META_KEY = "sync_meta"

SCHEMA = """
CREATE TABLE IF NOT EXISTS sync_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS models (
    model_id TEXT PRIMARY KEY,
    data BLOB NOT NULL,
    dirty INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL
);
"""


def changed_since(snapshot: SyncMetadata, current: SyncMetadata) -> bool:
    """True when local edits were recorded after ``snapshot`` was taken."""
    return current.vector_clock != snapshot.vector_clock or current.lamport != snapshot.lamport


def rebase_local_changes(published: SyncMetadata, current: SyncMetadata) -> SyncMetadata:
    """Re-apply edits recorded during an upload on top of the published state.

    The result is ordered strictly after ``published`` and never lowers any
    entry of ``current``, so the next sync pushes the pending edits.
    """
    device_id = published.device_id or current.device_id or ""
    lamport = LamportClock(current.lamport).observe(published.lamport)
    if lamport.value <= published.lamport:
        lamport = lamport.tick()
    # Pending edits must stay newer than the sync that published ``published``
    synced_at = (published.last_synced_update or utcnow()) + timedelta(microseconds=1)
    return replace(
        published,
        vector_clock=published.vector_clock.merge(current.vector_clock).increment(device_id),
        lamport=lamport.value,
        last_update=max(utcnow(), synced_at),
    )


class RevisionStore(ABC):
    """Abstract local store consumed by the sync engine.

    Subclasses implement the storage primitives; the base class serializes
    every mutation through one lock so a sync never interleaves with a
    half-written local edit.
    """

    def __init__(self) -> None:
        self._write_lock = asyncio.Lock()

    @abstractmethod
    async def get_metadata(self) -> SyncMetadata:
        """Current local metadata (defaults when nothing was recorded yet)."""

    @abstractmethod
    async def save_metadata(self, meta: SyncMetadata) -> None: ...

    @abstractmethod
    async def get_model(self, model_id: str) -> bytes | None: ...

    @abstractmethod
    async def list_model_ids(self) -> list[str]: ...

    @abstractmethod
    async def dirty_model_ids(self) -> set[str]:
        """Models changed locally since their last successful upload."""

    @abstractmethod
    async def _write_model(self, model_id: str, data: bytes, meta: SyncMetadata) -> None:
        """Store a dirty model and the metadata reflecting the change together."""

    @abstractmethod
    async def _install_remote(
        self,
        models: Mapping[str, bytes],
        meta: SyncMetadata,
        *,
        replace_all: bool,
    ) -> None:
        """Write downloaded models and metadata in one transaction."""

    @abstractmethod
    async def _commit_synced(self, meta: SyncMetadata, model_ids: Iterable[str]) -> None:
        """Write post-upload metadata and clear dirty markers in one transaction."""

    async def snapshot(self) -> SyncMetadata:
        """Immutable metadata snapshot for one sync attempt."""
        return await self.get_metadata()

    async def record_change(self, model_id: str, data: bytes, device_id: str) -> SyncMetadata:
        """Store a local edit and advance this device's clocks."""
        async with self._write_lock:
            meta = await self.get_metadata()
            updated = replace(
                meta,
                vector_clock=meta.vector_clock.increment(device_id),
                lamport=LamportClock(meta.lamport).tick().value,
                last_update=utcnow(),
                device_id=device_id,
            )
            await self._write_model(model_id, data, updated)
        logger.debug("Recorded change to %s (lamport %d)", model_id, updated.lamport)
        return updated

    async def apply_remote(
        self,
        models: Mapping[str, bytes],
        meta: SyncMetadata,
        *,
        replace_all: bool,
        snapshot: SyncMetadata | None = None,
    ) -> None:
        """Install downloaded models and metadata in a single step.

        With ``replace_all`` every local model not in ``models`` is removed
        and all dirty markers are cleared.

        Raises:
            LocalChangedDuringSyncError: A local edit was recorded after
                ``snapshot``; nothing is written.
        """
        async with self._write_lock:
            if snapshot is not None and changed_since(snapshot, await self.get_metadata()):
                raise LocalChangedDuringSyncError(
                    "Local data changed while remote data was downloading"
                )
            await self._install_remote(models, meta, replace_all=replace_all)

    async def mark_synced(
        self,
        meta: SyncMetadata,
        uploaded: Mapping[str, bytes],
        *,
        snapshot: SyncMetadata | None = None,
    ) -> SyncMetadata:
        """Persist post-upload metadata and clear dirty markers.

        Only models whose stored bytes still equal the uploaded bytes are
        marked clean. Edits recorded after ``snapshot`` are rebased on top of
        ``meta`` instead of being overwritten. Returns the stored metadata.
        """
        async with self._write_lock:
            current = await self.get_metadata()
            settled = meta
            if snapshot is not None and changed_since(snapshot, current):
                settled = rebase_local_changes(meta, current)
                logger.info(
                    "Local data changed during upload, keeping pending edits at %s",
                    settled.vector_clock,
                )
            clean = [
                model_id
                for model_id, data in uploaded.items()
                if await self.get_model(model_id) == data
            ]
            await self._commit_synced(settled, clean)
        return settled

    async def close(self) -> None:
        return None


class InMemoryRevisionStore(RevisionStore):
    """Dict-backed store for tests and embedding applications."""

    def __init__(self, meta: SyncMetadata | None = None) -> None:
        super().__init__()
        self._meta = meta or SyncMetadata()
        self._models: dict[str, bytes] = {}
        self._dirty: set[str] = set()

    async def get_metadata(self) -> SyncMetadata:
        return self._meta

    async def save_metadata(self, meta: SyncMetadata) -> None:
        self._meta = meta

    async def get_model(self, model_id: str) -> bytes | None:
        return self._models.get(model_id)

    async def list_model_ids(self) -> list[str]:
        return sorted(self._models)

    async def dirty_model_ids(self) -> set[str]:
        return set(self._dirty)

    async def _write_model(self, model_id: str, data: bytes, meta: SyncMetadata) -> None:
        self._models[model_id] = bytes(data)
        self._dirty.add(model_id)
        self._meta = meta

    async def _install_remote(
        self,
        models: Mapping[str, bytes],
        meta: SyncMetadata,
        *,
        replace_all: bool,
    ) -> None:
        if replace_all:
            self._models = {}
            self._dirty.clear()
        for model_id, data in models.items():
            self._models[model_id] = bytes(data)
            self._dirty.discard(model_id)
        self._meta = meta

    async def _commit_synced(self, meta: SyncMetadata, model_ids: Iterable[str]) -> None:
        self._dirty.difference_update(model_ids)
        self._meta = meta


class SQLiteRevisionStore(RevisionStore):
    """Persistent store in a single SQLite file.

    Usage:
        store = SQLiteRevisionStore(config.store_path)
        await store.initialize()
        ...
        await store.close()
    """

    def __init__(self, db_path: str | Path) -> None:
        super().__init__()
        self._db_path = Path(db_path).resolve()
        self._conn: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = await aiosqlite.connect(self._db_path)
        self._conn.row_factory = aiosqlite.Row

        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA synchronous=NORMAL")
        await self._conn.executescript(SCHEMA)
        await self._conn.commit()

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    async def __aenter__(self) -> SQLiteRevisionStore:
        await self.initialize()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    def _ensure_conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Revision store not initialized. Call initialize() first.")
        return self._conn

    async def get_metadata(self) -> SyncMetadata:
        conn = self._ensure_conn()
        async with conn.execute(
            "SELECT value FROM sync_meta WHERE key = ?", (_META_KEY,)
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return SyncMetadata()
        try:
            return SyncMetadata.from_dict(json.loads(row["value"]))
        except json.JSONDecodeError as e:
            raise InvalidDataError(f"Corrupt local sync metadata in {self._db_path}") from e

    async def save_metadata(self, meta: SyncMetadata) -> None:
        conn = self._ensure_conn()
        await self._upsert_meta(conn, meta)
        await conn.commit()

    async def get_model(self, model_id: str) -> bytes | None:
        conn = self._ensure_conn()
        async with conn.execute(
            "SELECT data FROM models WHERE model_id = ?", (model_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return bytes(row["data"]) if row is not None else None

    async def list_model_ids(self) -> list[str]:
        conn = self._ensure_conn()
        async with conn.execute("SELECT model_id FROM models ORDER BY model_id") as cursor:
            rows = await cursor.fetchall()
        return [row["model_id"] for row in rows]

    async def dirty_model_ids(self) -> set[str]:
        conn = self._ensure_conn()
        async with conn.execute("SELECT model_id FROM models WHERE dirty = 1") as cursor:
            rows = await cursor.fetchall()
        return {row["model_id"] for row in rows}

    async def _write_model(self, model_id: str, data: bytes, meta: SyncMetadata) -> None:
        conn = self._ensure_conn()
        try:
            await conn.execute(
                """INSERT INTO models (model_id, data, dirty, updated_at) VALUES (?, ?, 1, ?)
                   ON CONFLICT(model_id) DO UPDATE SET data = excluded.data, dirty = 1,
                   updated_at = excluded.updated_at""",
                (model_id, data, utcnow().isoformat()),
            )
            await self._upsert_meta(conn, meta)
            await conn.commit()
        except BaseException:
            await conn.rollback()
            raise

    async def _install_remote(
        self,
        models: Mapping[str, bytes],
        meta: SyncMetadata,
        *,
        replace_all: bool,
    ) -> None:
        conn = self._ensure_conn()
        now = utcnow().isoformat()
        try:
            if replace_all:
                await conn.execute("DELETE FROM models")
            await conn.executemany(
                """INSERT INTO models (model_id, data, dirty, updated_at) VALUES (?, ?, 0, ?)
                   ON CONFLICT(model_id) DO UPDATE SET data = excluded.data, dirty = 0,
                   updated_at = excluded.updated_at""",
                [(model_id, data, now) for model_id, data in models.items()],
            )
            await self._upsert_meta(conn, meta)
            await conn.commit()
        except BaseException:
            await conn.rollback()
            raise
        logger.info("Applied %d remote models (replace_all=%s)", len(models), replace_all)

    async def _commit_synced(self, meta: SyncMetadata, model_ids: Iterable[str]) -> None:
        conn = self._ensure_conn()
        try:
            await conn.executemany(
                "UPDATE models SET dirty = 0 WHERE model_id = ?",
                [(model_id,) for model_id in model_ids],
            )
            await self._upsert_meta(conn, meta)
            await conn.commit()
        except BaseException:
            await conn.rollback()
            raise

    @staticmethod
    async def _upsert_meta(conn: aiosqlite.Connection, meta: SyncMetadata) -> None:
        await conn.execute(
            """INSERT INTO sync_meta (key, value) VALUES (?, ?)
               ON CONFLICT(key) DO UPDATE SET value = excluded.value""",
            (_META_KEY, json.dumps(meta.to_dict())),
        )
