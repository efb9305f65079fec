"""Encoding of remote payloads.

The meta file is plain UTF-8 JSON so every device can read the causal
state before it knows whether the data is encrypted. Model payloads are
optionally encrypted with Fernet, keyed by PBKDF2-HMAC-SHA256 over the
configured passphrase and the salt published in the meta file.
"""

from __future__ import annotations

import base64
import json
import logging
import os
from typing import TYPE_CHECKING

from replisync.sync.errors import DecryptError, DecryptNoPasswordError, InvalidDataError
from replisync.sync.protocol import SyncMetadata

if TYPE_CHECKING:
    from cryptography.fernet import Fernet

logger = logging.getLogger(__name__)

KDF_ITERATIONS = 390_000
SALT_BYTES = 16


def encode_meta(meta: SyncMetadata) -> bytes:
    return json.dumps(meta.to_dict(), sort_keys=True, separators=(",", ":")).encode("utf-8")


def decode_meta(data: bytes | None) -> SyncMetadata:
    """Parse a meta file. Raises InvalidDataError on anything but a JSON object."""
    if not data:
        raise InvalidDataError("Remote meta file is empty")
    try:
        parsed = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise InvalidDataError(f"Remote meta file is not valid JSON: {e}") from e
    if not isinstance(parsed, dict):
        raise InvalidDataError("Remote meta file must contain a JSON object")
    return SyncMetadata.from_dict(parsed)


def new_salt() -> str:
    return base64.urlsafe_b64encode(os.urandom(SALT_BYTES)).decode("ascii")


def derive_key(passphrase: str, salt: str, *, iterations: int = KDF_ITERATIONS) -> bytes:
    """Derive a urlsafe-base64 Fernet key from a passphrase and salt."""
    from cryptography.hazmat.primitives import hashes
    from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt.encode("ascii"),
        iterations=iterations,
    )
    return base64.urlsafe_b64encode(kdf.derive(passphrase.encode("utf-8")))


class PayloadCodec:
    """Encrypts and decrypts model payloads for one passphrase.

    Derived ciphers are cached per salt; a codec without a passphrase
    passes plaintext through and refuses encrypted payloads.
    """

    def __init__(self, passphrase: str | None, *, iterations: int = KDF_ITERATIONS) -> None:
        self._passphrase = passphrase or None
        self._iterations = iterations
        self._ciphers: dict[str, Fernet] = {}

    @property
    def can_encrypt(self) -> bool:
        return self._passphrase is not None

    def _cipher(self, salt: str) -> Fernet:
        from cryptography.fernet import Fernet

        if self._passphrase is None:
            raise DecryptNoPasswordError("Remote data is encrypted but no passphrase is configured")
        if salt not in self._ciphers:
            key = derive_key(self._passphrase, salt, iterations=self._iterations)
            self._ciphers[salt] = Fernet(key)
        return self._ciphers[salt]

    def encode(self, data: bytes, *, salt: str | None) -> bytes:
        """Encrypt when a salt is given, otherwise return ``data`` unchanged."""
        if salt is None:
            return data
        return self._cipher(salt).encrypt(data)

    def decode(self, data: bytes, *, encrypted: bool, salt: str | None) -> bytes:
        """Reverse :meth:`encode`.

        Raises:
            DecryptNoPasswordError: Data is encrypted and no passphrase is set.
            DecryptError: The passphrase does not match or the token is corrupt.
        """
        if not encrypted:
            return data
        if not salt:
            raise DecryptError("Encrypted remote data carries no salt")

        from cryptography.fernet import InvalidToken

        cipher = self._cipher(salt)
        try:
            return cipher.decrypt(data)
        except InvalidToken as e:
            logger.warning("Decryption of remote payload failed")
            raise DecryptError(
                "Remote data could not be decrypted with the configured passphrase"
            ) from e
