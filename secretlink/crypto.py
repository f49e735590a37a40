# FILE: secretlink/crypto.py
"""
Keyed message authentication for secret-link tokens.

Signer:

  - HMAC-SHA256 over an opaque byte message with a single server key;
  - constant-time verification (hmac.compare_digest);
  - no state beyond the key, no I/O, no failure modes after construction.

Key material is validated once, at construction; a missing or blank key
raises ConfigError.
"""
from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Union

_log = logging.getLogger(__name__)

# Keys shorter than this are accepted but flagged.
MIN_RECOMMENDED_KEY_BYTES = 32

ALGORITHM = "HS256"


class ConfigError(ValueError):
    """Fatal misconfiguration detected at startup (missing key, bad DSN, ...)."""


def _key_bytes(key: Union[str, bytes, None]) -> bytes:
    if key is None:
        raise ConfigError("signing key is not configured")
    if isinstance(key, str):
        if not key.strip():
            raise ConfigError("signing key is not configured")
        return key.encode("utf-8")
    if isinstance(key, (bytes, bytearray)):
        if not bytes(key).strip():
            raise ConfigError("signing key is not configured")
        return bytes(key)
    raise ConfigError(f"unsupported signing key type: {type(key).__name__}")


class Signer:
    """
    HMAC-SHA256 signer.

    Usage:
        signer = Signer(settings.signing_key)
        sig = signer.sign(b"header.payload")
        assert signer.verify(b"header.payload", sig)
    """

    __slots__ = ("_key",)

    def __init__(self, key: Union[str, bytes, None]) -> None:
        self._key = _key_bytes(key)
        if len(self._key) < MIN_RECOMMENDED_KEY_BYTES:
            _log.warning(
                "signing key is shorter than %d bytes; use a longer random key",
                MIN_RECOMMENDED_KEY_BYTES,
            )

    def sign(self, message: bytes) -> bytes:
        return hmac.new(self._key, message, hashlib.sha256).digest()

    def verify(self, message: bytes, signature: bytes) -> bool:
        """Recompute and compare in constant time."""
        expected = self.sign(message)
        return hmac.compare_digest(expected, bytes(signature))

    def __repr__(self) -> str:
        return f"Signer(alg={ALGORITHM!r})"
