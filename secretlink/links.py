# FILE: secretlink/links.py
"""
Link service: issue and redeem secret links.

Issue:   new jti -> claims -> ledger.create -> codec.encode
         (the token is only returned after the ledger write succeeded)
Redeem:  codec.decode -> consume_single_use | consume_multi_use
         (a token that fails to decode never touches the ledger)

Every denial, whether the token is forged, malformed, expired by claim,
unknown to the ledger, exhausted or expired by the ledger, yields the same
Redemption("", False). Only LedgerUnavailable escapes, so callers can tell
"try again later" from "no".
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import NamedTuple, Optional

from .storage import LinkLedger
from .tokens import LinkClaims, TokenCodec, new_jti, to_utc

_log = logging.getLogger(__name__)

REDEEM_PATH = "/supersecret"


class Redemption(NamedTuple):
    subject: str
    ok: bool


DENIED = Redemption("", False)


class LinkService:
    """Stateless orchestrator over a TokenCodec and a LinkLedger."""

    def __init__(self, codec: TokenCodec, ledger: LinkLedger) -> None:
        self.codec = codec
        self.ledger = ledger

    def issue_link(
        self,
        subject: str,
        max_uses: int = 1,
        expires_at: Optional[datetime] = None,
    ) -> str:
        if isinstance(max_uses, bool) or not isinstance(max_uses, int) or max_uses < 1:
            raise ValueError(f"max_uses must be a positive integer, got {max_uses!r}")
        if expires_at is not None:
            # Tokens carry whole seconds; keep the ledger on the same instant.
            expires_at = to_utc(expires_at).replace(microsecond=0)
        claims = LinkClaims(
            subject=subject,
            jti=new_jti(),
            max_uses=max_uses,
            expires_at=expires_at,
        )
        self.ledger.create(claims.jti, claims.uses_allowed, claims.expires_at)
        token = self.codec.encode(claims)
        _log.info(
            "link issued",
            extra={"jti": claims.jti, "max_uses": claims.uses_allowed},
        )
        return token

    def redeem_link(self, token: str) -> Redemption:
        claims = self.codec.decode(token)
        if claims is None:
            return DENIED

        if claims.single_use:
            ok = self.ledger.consume_single_use(claims.jti)
        else:
            ok = self.ledger.consume_multi_use(claims.jti) is not None

        if not ok:
            _log.debug("link denied by ledger", extra={"jti": claims.jti})
            return DENIED
        _log.info("link redeemed", extra={"jti": claims.jti})
        return Redemption(claims.subject, True)

    @staticmethod
    def build_url(base_url: str, token: str) -> str:
        return f"{base_url.rstrip('/')}{REDEEM_PATH}/{token}"
