"""replisync CLI main entry point."""

from __future__ import annotations

import json
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.table import Table

from replisync.cli._helpers import (
    get_config,
    make_client,
    open_engine,
    print_result,
    run_async,
    setup_logging,
)
from replisync.cli.commands.config_cmd import config_app
from replisync.sync.errors import SyncError, describe_error
from replisync.sync.protocol import RemoteFileMeta, SyncResult
from replisync.sync.revision_store import SQLiteRevisionStore

console = Console()

# Main app
app = typer.Typer(
    name="replisync",
    help="replisync - serverless multi-device sync over WebDAV",
    no_args_is_help=True,
)

app.add_typer(config_app, name="config")


@app.callback()
def _root(
    verbose: Annotated[
        bool, typer.Option("--verbose", "-v", help="Log requests and sync decisions")
    ] = False,
) -> None:
    setup_logging(verbose or get_config().verbose)


def _require_configured() -> None:
    config = get_config()
    if not config.webdav.is_complete:
        typer.secho(
            "No WebDAV remote configured. Use 'replisync config set-webdav <url>' first.",
            fg=typer.colors.RED,
        )
        raise typer.Exit(1)


@app.command()
def sync(
    non_interactive: Annotated[
        bool,
        typer.Option("--non-interactive", help="Report conflicts instead of prompting"),
    ] = False,
) -> None:
    """Synchronize local data with the remote.

    Examples:
        replisync sync
        replisync sync --non-interactive
    """
    _require_configured()
    config = get_config()

    async def _sync() -> SyncResult:
        async with open_engine(config, interactive=not non_interactive) as engine:
            return await engine.sync()

    print_result(run_async(_sync()))


@app.command("force-upload")
def force_upload(
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation")] = False,
) -> None:
    """Overwrite remote data with local data, ignoring the remote lock.

    Examples:
        replisync force-upload
    """
    _require_configured()
    if not yes and not typer.confirm("Overwrite all remote data with local data?"):
        raise typer.Abort()
    config = get_config()

    async def _upload() -> SyncResult:
        async with open_engine(config) as engine:
            return await engine.force_upload()

    print_result(run_async(_upload()))


@app.command("force-download")
def force_download(
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation")] = False,
) -> None:
    """Replace local data with remote data.

    Examples:
        replisync force-download
    """
    _require_configured()
    if not yes and not typer.confirm("Replace all local data with remote data?"):
        raise typer.Abort()
    config = get_config()

    async def _download() -> SyncResult:
        async with open_engine(config) as engine:
            return await engine.force_download()

    print_result(run_async(_download()))


@app.command()
def status(
    json_output: Annotated[bool, typer.Option("--json", "-j", help="Output as JSON")] = False,
) -> None:
    """Show local sync state.

    Examples:
        replisync status
        replisync status --json
    """
    config = get_config()

    async def _status() -> dict[str, Any]:
        store = SQLiteRevisionStore(config.store_path)
        await store.initialize()
        try:
            meta = await store.snapshot()
            dirty = await store.dirty_model_ids()
            models = await store.list_model_ids()
        finally:
            await store.close()
        return {
            "device_id": config.device_id,
            "remote": config.webdav.base_url or None,
            "folder": config.webdav.sync_folder_path,
            "vector_clock": meta.vector_clock.to_dict(),
            "lamport": meta.lamport,
            "last_update": meta.last_update.isoformat() if meta.last_update else None,
            "last_synced_update": (
                meta.last_synced_update.isoformat() if meta.last_synced_update else None
            ),
            "models": len(models),
            "unsynced_models": sorted(dirty),
        }

    info = run_async(_status())

    if json_output:
        typer.echo(json.dumps(info, indent=2))
        return

    if info["unsynced_models"]:
        pending = len(info["unsynced_models"])
        typer.secho(f"[PENDING] {pending} unsynced models", fg=typer.colors.YELLOW)
    else:
        typer.secho("[CLEAN] No unsynced local changes", fg=typer.colors.GREEN)
    typer.echo(f"\nDevice: {info['device_id']}")
    typer.echo(f"Remote: {info['remote'] or 'not configured'}")
    typer.echo(f"Folder: {info['folder']}")
    typer.echo(f"Vector clock: {info['vector_clock']}")
    typer.echo(f"Lamport: {info['lamport']}")
    typer.echo(f"Last update: {info['last_update'] or 'never'}")
    typer.echo(f"Last sync: {info['last_synced_update'] or 'never'}")
    typer.echo(f"Models: {info['models']}")


@app.command("ls")
def list_remote() -> None:
    """List the files in the remote sync folder.

    Examples:
        replisync ls
    """
    _require_configured()
    config = get_config()

    async def _list() -> list[RemoteFileMeta]:
        async with make_client(config) as client:
            return await client.list_folder(config.webdav.sync_folder_path)

    try:
        entries = run_async(_list())
    except SyncError as e:
        typer.secho(describe_error(e), fg=typer.colors.RED, err=True)
        raise typer.Exit(1) from e

    if not entries:
        typer.echo("Remote folder is empty or does not support listing.")
        return

    table = Table(title=config.webdav.sync_folder_path)
    table.add_column("Name", style="cyan")
    table.add_column("Size", justify="right")
    table.add_column("Modified", style="bright_black")
    table.add_column("Revision", style="bright_black")
    for entry in entries:
        name = f"{entry.basename}/" if entry.is_collection else entry.basename
        table.add_row(name, str(entry.size), entry.last_modified, entry.revision or "-")
    console.print(table)


@app.command()
def version() -> None:
    """Show version information."""
    from replisync import __version__

    typer.echo(f"replisync v{__version__}")


def main() -> None:
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
