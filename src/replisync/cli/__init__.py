"""replisync CLI.

Usage:
    replisync config set-webdav <url> -u <user>   Configure the remote
    replisync sync                                Synchronize once
    replisync status                              Show local sync state
    replisync ls                                  List the remote folder
"""

from replisync.cli.main import app, main

__all__ = ["app", "main"]
