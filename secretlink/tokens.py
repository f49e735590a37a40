# FILE: secretlink/tokens.py
"""
Secret-link capability tokens.

Wire format (three URL-safe base64 segments, unpadded, joined by '.'):

    base64url(header) . base64url(payload) . base64url(signature)

  - header    : {"alg":"HS256","typ":"JWT"} (fixed)
  - payload   : {"sub": str, "jti": ULID, "max": int|null,
                 "exp": unix-seconds|null, "ver": int}
  - signature : HMAC-SHA256 over the UTF-8 bytes of "<header>.<payload>"

Decoding verifies the signature before it looks at the payload and collapses
every failure (segment count, base64, signature, JSON, missing fields, bad id,
expired-by-claim) into a single ``None`` result. The failure reason is only
recorded on an internal counter; it never leaves the process.

The embedded ``max`` / ``exp`` values are advisory copies. The consumption
ledger holds the authoritative remaining-use count and expiry.
"""
from __future__ import annotations

import base64
import binascii
import json
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from prometheus_client import Counter
from ulid import ULID

from .crypto import ALGORITHM, Signer

_log = logging.getLogger(__name__)

TOKEN_VERSION = 1

_HEADER: Dict[str, str] = {"alg": ALGORITHM, "typ": "JWT"}

# Crockford base32, 26 chars, first char bounded so the value fits in 128 bits.
_ULID_RE = re.compile(r"^[0-7][0-9A-HJKMNP-TV-Z]{25}$")

_TOKENS_ISSUED = Counter(
    "secretlink_tokens_issued_total",
    "Capability tokens encoded",
)
_DECODE_FAIL = Counter(
    "secretlink_token_decode_fail_total",
    "Capability tokens rejected by the codec",
    ["reason"],
)


# ---------------------------------------------------------------------------
# Claims
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LinkClaims:
    """
    Identity and bounds carried inside a token.

    max_uses:
      None or 1 means single-use; values > 1 allow that many redemptions.
    expires_at:
      Absolute, timezone-aware deadline or None. None does not mean "never":
      the ledger substitutes its configured ceiling when the record is created.
    """

    subject: str
    jti: str
    max_uses: Optional[int] = None
    expires_at: Optional[datetime] = None
    version: int = TOKEN_VERSION

    @property
    def uses_allowed(self) -> int:
        return self.max_uses if self.max_uses is not None else 1

    @property
    def single_use(self) -> bool:
        return self.uses_allowed <= 1


def new_jti() -> str:
    """Fresh 128-bit, time-ordered, lexicographically sortable identifier."""
    return str(ULID())


def is_valid_jti(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    s = value.strip().upper()
    if not _ULID_RE.fullmatch(s):
        return False
    try:
        ULID.from_str(s)
    except (ValueError, TypeError):
        return False
    return True


def to_utc(dt: datetime) -> datetime:
    """Interpret naive datetimes as UTC; convert aware ones."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# base64url helpers
# ---------------------------------------------------------------------------


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(segment: str) -> bytes:
    """
    Strict unpadded base64url decode.

    Raises ValueError on characters outside the URL-safe alphabet, on an
    impossible length, or on a non-canonical encoding (unused trailing bits
    set), so every segment has exactly one accepted spelling.
    """
    if not segment or "=" in segment:
        raise ValueError("invalid base64url segment")
    try:
        raw = segment.encode("ascii")
    except UnicodeEncodeError as exc:
        raise ValueError("invalid base64url segment") from exc
    padded = raw + b"=" * (-len(raw) % 4)
    try:
        data = base64.b64decode(padded, altchars=b"-_", validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("invalid base64url segment") from exc
    if b64url_encode(data) != segment:
        raise ValueError("non-canonical base64url segment")
    return data


def _compact_json(obj: Dict[str, Any]) -> bytes:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":")).encode("utf-8")


def _as_int(value: Any) -> Optional[int]:
    """Integral JSON number -> int; anything else -> None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


# ---------------------------------------------------------------------------
# Codec
# ---------------------------------------------------------------------------


class _Reject(Exception):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class TokenCodec:
    """
    Pure, stateless encoder/decoder for capability tokens.

    ``clock`` returns the current UNIX time; tests inject a fixed clock to
    exercise expiry without sleeping.
    """

    def __init__(self, signer: Signer, *, clock: Optional[Callable[[], float]] = None) -> None:
        self._signer = signer
        self._clock = clock or time.time
        self._header_b64 = b64url_encode(_compact_json(_HEADER))

    def encode(self, claims: LinkClaims) -> str:
        exp: Optional[int] = None
        if claims.expires_at is not None:
            exp = int(to_utc(claims.expires_at).timestamp())

        payload = {
            "sub": claims.subject,
            "jti": claims.jti,
            "max": claims.max_uses,
            "exp": exp,
            "ver": claims.version,
        }
        payload_b64 = b64url_encode(_compact_json(payload))
        message = f"{self._header_b64}.{payload_b64}"
        signature = self._signer.sign(message.encode("utf-8"))
        _TOKENS_ISSUED.inc()
        return f"{message}.{b64url_encode(signature)}"

    def decode(self, token: str) -> Optional[LinkClaims]:
        """Return the authenticated, unexpired claims or None."""
        try:
            return self._decode(token)
        except _Reject as rej:
            _DECODE_FAIL.labels(rej.reason).inc()
            _log.debug("token rejected", extra={"reason": rej.reason})
            return None

    def _decode(self, token: str) -> LinkClaims:
        if not isinstance(token, str):
            raise _Reject("type")
        parts = token.split(".")
        if len(parts) != 3:
            raise _Reject("segments")
        header_b64, payload_b64, sig_b64 = parts

        # Signature first, before anything inspects the payload.
        try:
            provided = b64url_decode(sig_b64)
        except ValueError:
            provided = b""
        message = f"{header_b64}.{payload_b64}".encode("utf-8")
        if not self._signer.verify(message, provided):
            raise _Reject("signature")

        header = self._json_segment(header_b64)
        if header.get("alg") != ALGORITHM:
            raise _Reject("header")
        root = self._json_segment(payload_b64)

        sub = root.get("sub")
        if not isinstance(sub, str) or not sub.strip():
            raise _Reject("sub")

        jti = root.get("jti")
        if not is_valid_jti(jti):
            raise _Reject("jti")

        expires_at: Optional[datetime] = None
        raw_exp = root.get("exp")
        if raw_exp is not None:
            exp = _as_int(raw_exp)
            if exp is None:
                raise _Reject("exp")
            if exp <= self._clock():
                raise _Reject("expired")
            try:
                expires_at = datetime.fromtimestamp(exp, tz=timezone.utc)
            except (OverflowError, OSError, ValueError):
                raise _Reject("exp")

        max_uses: Optional[int] = None
        raw_max = root.get("max")
        if raw_max is not None:
            max_uses = _as_int(raw_max)
            if max_uses is None or max_uses < 1:
                raise _Reject("max")

        version = TOKEN_VERSION
        raw_ver = root.get("ver")
        if raw_ver is not None:
            ver = _as_int(raw_ver)
            if ver is None:
                raise _Reject("ver")
            version = ver

        return LinkClaims(
            subject=sub,
            jti=jti,
            max_uses=max_uses,
            expires_at=expires_at,
            version=version,
        )

    @staticmethod
    def _json_segment(segment: str) -> Dict[str, Any]:
        try:
            doc = json.loads(b64url_decode(segment).decode("utf-8"))
        except (ValueError, UnicodeDecodeError):
            raise _Reject("payload")
        if not isinstance(doc, dict):
            raise _Reject("payload")
        return doc
