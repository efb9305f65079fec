"""CLI commands for configuration management."""

from __future__ import annotations

import json
from dataclasses import replace
from typing import Annotated

import typer

from replisync.cli._helpers import get_config
from replisync.sync.errors import MissingCredentialsSPError
from replisync.unified_config import WebdavConfig

config_app = typer.Typer(help="Configuration management")


@config_app.command("show")
def config_show(
    json_output: Annotated[bool, typer.Option("--json", "-j", help="Output as JSON")] = False,
) -> None:
    """Show the current configuration (password masked).

    Examples:
        replisync config show
        replisync config show --json
    """
    config = get_config()
    webdav = config.webdav.to_dict()
    webdav["password"] = "********" if config.webdav.password else ""
    data = {
        "data_dir": str(config.data_dir),
        "device_id": config.device_id,
        "sync": config.sync.to_dict(),
        "webdav": webdav,
    }

    if json_output:
        typer.echo(json.dumps(data, indent=2))
        return

    typer.echo(f"Config: {config.config_path}")
    typer.echo(f"Device: {data['device_id']}")
    typer.echo("")
    typer.secho("[sync]", bold=True)
    for key, value in data["sync"].items():
        typer.echo(f"  {key} = {value}")
    typer.secho("[webdav]", bold=True)
    for key, value in webdav.items():
        typer.echo(f"  {key} = {value}")


@config_app.command("set-webdav")
def config_set_webdav(
    base_url: Annotated[
        str, typer.Argument(help="WebDAV base URL (e.g., https://dav.example.com/remote.php/dav)")
    ],
    username: Annotated[str, typer.Option("--username", "-u", help="WebDAV username")],
    password: Annotated[
        str,
        typer.Option("--password", "-p", prompt=True, hide_input=True, help="WebDAV password"),
    ],
    folder: Annotated[
        str, typer.Option("--folder", "-f", help="Remote folder holding the sync data")
    ] = "/replisync",
) -> None:
    """Configure the WebDAV remote and enable sync.

    Examples:
        replisync config set-webdav https://dav.example.com -u alice
        replisync config set-webdav https://dav.example.com -u alice --folder /notes
    """
    try:
        webdav = WebdavConfig(
            base_url=base_url,
            username=username,
            password=password,
            sync_folder_path=folder,
        ).validate()
    except MissingCredentialsSPError as e:
        typer.secho(str(e), fg=typer.colors.RED)
        raise typer.Exit(1) from e

    config = get_config()
    config.webdav = webdav
    config.sync = replace(config.sync, enabled=True)
    config.save()

    typer.secho("WebDAV remote configured!", fg=typer.colors.GREEN)
    typer.echo(f"  URL: {webdav.base_url}")
    typer.echo(f"  User: {webdav.username}")
    typer.echo(f"  Folder: {webdav.sync_folder_path}")
