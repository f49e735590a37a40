# FILE: secretlink/schemas.py
from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .config import Settings
from .tokens import to_utc

USERNAME_RE = re.compile(r"^[A-Za-z0-9]+$")
USERNAME_MAX_LEN = 50

# Validation messages
USERNAME_REQUIRED = "Username is required"
USERNAME_LENGTH = "Username must be 1-50 characters"
USERNAME_ALPHANUMERIC = "Username must be alphanumeric only"
MAX_USES_RANGE = "Max clicks must be between 1 and {ceiling}"
EXPIRY_FUTURE = "Expiry date must be in the future"
EXPIRY_MAX_LIMIT = "Expiry date exceeds the maximum allowed lifetime"


class CreateLinkRequest(BaseModel):
    """Issuance request as posted by the admin page or API clients."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    username: str = ""
    max: int = Field(1, description="Total redemptions allowed (1 = single use)")
    expires_at: Optional[datetime] = Field(
        None,
        alias="expiresAt",
        description="Absolute expiry; naive values are read as UTC",
    )


class CreateLinkResponse(BaseModel):
    url: str


class RedeemResponse(BaseModel):
    ok: bool
    username: str = ""


def validate_create_request(
    req: CreateLinkRequest,
    settings: Settings,
    now: Optional[datetime] = None,
) -> Dict[str, List[str]]:
    """
    Field-level checks for an issuance request.

    Returns {field: [messages]}; an empty dict means the request is valid.
    Only the first failing rule is reported per field.
    """
    errors: Dict[str, List[str]] = {}
    now = to_utc(now) if now is not None else datetime.now(timezone.utc)

    username = req.username or ""
    if not username.strip():
        errors["username"] = [USERNAME_REQUIRED]
    elif len(username) > USERNAME_MAX_LEN:
        errors["username"] = [USERNAME_LENGTH]
    elif not USERNAME_RE.fullmatch(username):
        errors["username"] = [USERNAME_ALPHANUMERIC]

    if not 1 <= req.max <= settings.max_uses:
        errors["max"] = [MAX_USES_RANGE.format(ceiling=settings.max_uses)]

    if req.expires_at is not None:
        exp = to_utc(req.expires_at)
        if exp <= now:
            errors["expiresAt"] = [EXPIRY_FUTURE]
        elif exp > now + timedelta(minutes=settings.max_ttl_minutes):
            errors["expiresAt"] = [EXPIRY_MAX_LIMIT]

    return errors
