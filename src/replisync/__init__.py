"""replisync - serverless multi-device sync over WebDAV."""

__version__ = "0.1.0"
