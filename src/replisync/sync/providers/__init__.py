"""Remote storage backends."""

from replisync.sync.providers.base import AuthHelper, RemoteProtocolClient, normalize_revision
from replisync.sync.providers.webdav import WebdavApi

__all__ = ["AuthHelper", "RemoteProtocolClient", "WebdavApi", "normalize_revision"]
