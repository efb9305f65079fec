"""Shared CLI helpers for configuration, engine wiring, and output formatting."""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import AsyncIterator, Callable, Coroutine, Mapping
from contextlib import asynccontextmanager
from typing import Any, TypeVar

import typer

from replisync.sync.errors import ErrorKind
from replisync.sync.protocol import ConflictDecision, SyncOutcome, SyncResult
from replisync.sync.providers.webdav import WebdavApi
from replisync.sync.revision_store import SQLiteRevisionStore
from replisync.sync.sync_engine import AuthCodeRequest, ConflictRequest, SyncEngine
from replisync.unified_config import UnifiedConfig, WebdavConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

_DECISION_CHOICES = {
    "l": ConflictDecision.USE_LOCAL,
    "r": ConflictDecision.USE_REMOTE,
    "c": ConflictDecision.CANCEL,
}


def get_config() -> UnifiedConfig:
    """Get unified configuration."""
    return UnifiedConfig.load()


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        stream=sys.stderr,
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def run_async(coro: Coroutine[Any, Any, T]) -> T:
    """Run an async CLI command.

    Yields once after the command so callbacks queued by aiosqlite's worker
    thread drain before ``asyncio.run()`` closes the loop.
    """

    async def _with_drain() -> T:
        try:
            return await coro
        finally:
            await asyncio.sleep(0)

    return asyncio.run(_with_drain())


def make_client(config: UnifiedConfig) -> WebdavApi:
    async def _webdav_config() -> WebdavConfig:
        return config.webdav

    return WebdavApi(_webdav_config, timeout=config.sync.request_timeout)


def prompt_conflict(request: ConflictRequest) -> None:
    """Ask on the terminal which side of a conflict wins."""
    conflict = request.conflict
    if conflict is not None:
        typer.secho(f"Sync conflict: {conflict.reason}", fg=typer.colors.YELLOW, bold=True)
        typer.echo(f"  Local:  {conflict.local.vector_clock} (lamport {conflict.local.lamport})")
        typer.echo(f"  Remote: {conflict.remote.vector_clock} (lamport {conflict.remote.lamport})")

    choice = typer.prompt(
        "Keep [l]ocal, use [r]emote or [c]ancel?",
        default="c",
        show_default=True,
    )
    request.resolve(_DECISION_CHOICES.get(choice.strip().lower()[:1], ConflictDecision.CANCEL))


def prompt_auth_code(request: AuthCodeRequest) -> None:
    typer.echo(f"Authorize replisync at: {request.auth_url}")
    code = typer.prompt("Authorization code", default="", show_default=False)
    request.resolve(code.strip())


def remember_auth(config: UnifiedConfig) -> Callable[[Mapping[str, Any]], None]:
    """Persist provider settings returned by a completed authorization."""

    def _save(verified: Mapping[str, Any]) -> None:
        config.webdav = WebdavConfig.from_dict({**config.webdav.to_dict(), **verified})
        config.save()
        logger.info("Saved verified %s credentials to %s", config.sync.provider, config.config_path)

    return _save


@asynccontextmanager
async def open_engine(
    config: UnifiedConfig, *, interactive: bool = True
) -> AsyncIterator[SyncEngine]:
    """Build a sync engine over the configured store and WebDAV remote."""
    store = SQLiteRevisionStore(config.store_path)
    await store.initialize()
    client = make_client(config)
    try:
        yield SyncEngine(
            client,
            store,
            device_id=config.device_id,
            sync_folder=config.webdav.sync_folder_path,
            encryption_key=config.sync.encryption_key,
            encrypt=config.sync.encrypt,
            on_conflict=prompt_conflict if interactive else None,
            on_auth_code=prompt_auth_code if interactive else None,
            on_auth_verified=remember_auth(config),
        )
    finally:
        await client.close()
        await store.close()


def print_result(result: SyncResult) -> None:
    """Echo a sync result and exit non-zero on failure."""
    match result.outcome:
        case SyncOutcome.COMPLETED:
            typer.secho(f"[OK] {result.status}", fg=typer.colors.GREEN)
            if result.decision is not None:
                typer.echo(f"  Decision: {result.decision}")
        case SyncOutcome.ALREADY_IN_PROGRESS:
            typer.secho("Sync already in progress.", fg=typer.colors.BRIGHT_BLACK)
        case SyncOutcome.SUPERSEDED:
            typer.secho("Conflict request superseded by a newer sync.", fg=typer.colors.YELLOW)
        case SyncOutcome.FAILED:
            typer.secho(f"[FAILED] {result.message}", fg=typer.colors.RED, err=True)
            if result.error_kind is ErrorKind.LOCK_PRESENT:
                typer.echo("Use 'replisync force-upload' to override the remote lock.", err=True)
            raise typer.Exit(1)
