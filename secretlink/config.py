# secretlink/config.py
from __future__ import annotations

import hashlib
import json
import logging
import os
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, ConfigDict

from .crypto import ConfigError


_log = logging.getLogger(__name__)

ENV_PREFIX = "SECRETLINK_"


# ---------------------------------------------------------------------------
# Env helpers
# ---------------------------------------------------------------------------


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    v = raw.strip().lower()
    return v in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except Exception:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except Exception:
        return default


def _env_str(name: str, default: str) -> str:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip()


def _load_yaml_mapping(path: str) -> Dict[str, Any]:
    """
    Load a simple top-level mapping from YAML.

    Constraints:
      - Ignore if path missing.
      - Only accept dict at top-level.
      - Coerce non-scalar values via str() to avoid arbitrary structures.
    """
    if not path:
        return {}
    if not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            doc = yaml.safe_load(f)
    except Exception:
        _log.warning("failed to load YAML config from %s", path, exc_info=True)
        return {}
    if not isinstance(doc, dict):
        return {}
    out: Dict[str, Any] = {}
    for k, v in doc.items():
        if isinstance(v, (str, int, float, bool)) or v is None:
            out[str(k)] = v
        else:
            out[str(k)] = str(v)
    return out


# ---------------------------------------------------------------------------
# Settings model
# ---------------------------------------------------------------------------

# Never part of config_hash() or any log line.
_SECRET_FIELDS = frozenset({"signing_key"})


class Settings(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    # --- Tokens ------------------------------------------------------------
    signing_key: str = ""
    max_ttl_minutes: int = 1440
    max_uses: int = 100

    # --- Ledger ------------------------------------------------------------
    ledger_dsn: str = "mem://"
    tx_timeout_s: float = 5.0

    # --- Cleanup -----------------------------------------------------------
    cleanup_enabled: bool = True
    cleanup_interval_s: float = 300.0

    # --- HTTP --------------------------------------------------------------
    public_base_url: str = ""
    http_host: str = "127.0.0.1"
    http_port: int = 8080
    enable_docs: bool = False
    version: str = "0.1.0"

    # --- Logging -----------------------------------------------------------
    log_level: str = "INFO"

    @property
    def max_ttl_s(self) -> float:
        return float(self.max_ttl_minutes) * 60.0

    def require_signing_key(self) -> str:
        """Return the signing key or fail fast when it is not configured."""
        key = self.signing_key or ""
        if not key.strip():
            raise ConfigError(f"{ENV_PREFIX}SIGNING_KEY is not configured")
        return key

    def config_hash(self) -> str:
        """
        Stable hash of the current settings, excluding secrets.

        Safe to attach to responses and logs.
        """
        payload = self.model_dump(mode="json", exclude=set(_SECRET_FIELDS))
        blob = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(blob.encode("utf-8")).hexdigest()

    def __repr__(self) -> str:
        shown = self.model_dump(exclude=set(_SECRET_FIELDS))
        return f"Settings({shown!r}, signing_key=<redacted>)"

    __str__ = __repr__


# ---------------------------------------------------------------------------
# Loading / merging
# ---------------------------------------------------------------------------


def load_settings(**overrides: Any) -> Settings:
    """
    Load Settings from defaults, optional YAML, environment variables and
    explicit keyword overrides.

    Priority (later wins):
      1. Settings defaults (in-code).
      2. YAML file pointed to by SECRETLINK_CONFIG_PATH.
      3. Environment variables (SECRETLINK_*), bounds-checked.
      4. Keyword overrides (tests, embedding applications).

    Out-of-range numeric environment values are ignored.
    """
    merged: Dict[str, Any] = Settings().model_dump()

    yaml_path = os.environ.get(f"{ENV_PREFIX}CONFIG_PATH", "").strip()
    yaml_doc = _load_yaml_mapping(yaml_path)
    if yaml_doc:
        tmp = dict(merged)
        tmp.update(yaml_doc)
        merged = Settings(**tmp).model_dump()  # will enforce extra="forbid"

    def _env_override(suffix: str, key: str, parser, bounds=None) -> None:
        old = merged.get(key)
        new = parser(ENV_PREFIX + suffix, old)
        if bounds is not None:
            lo, hi = bounds
            if isinstance(new, (int, float)) and (new < lo or new > hi):
                _log.warning("ignoring out-of-range %s%s", ENV_PREFIX, suffix)
                return
        merged[key] = new

    _env_override("SIGNING_KEY", "signing_key", _env_str)
    _env_override("MAX_TTL_MINUTES", "max_ttl_minutes", _env_int, (1, 525_600))
    _env_override("MAX_USES", "max_uses", _env_int, (1, 1_000_000))

    _env_override("LEDGER_DSN", "ledger_dsn", _env_str)
    _env_override("TX_TIMEOUT_S", "tx_timeout_s", _env_float, (0.001, 600.0))

    _env_override("CLEANUP_ENABLED", "cleanup_enabled", _env_bool)
    _env_override("CLEANUP_INTERVAL_S", "cleanup_interval_s", _env_float, (0.0, 86_400.0))

    _env_override("PUBLIC_BASE_URL", "public_base_url", _env_str)
    _env_override("HTTP_HOST", "http_host", _env_str)
    _env_override("HTTP_PORT", "http_port", _env_int, (1, 65_535))
    _env_override("ENABLE_DOCS", "enable_docs", _env_bool)
    _env_override("VERSION", "version", _env_str)
    _env_override("LOG_LEVEL", "log_level", _env_str)

    merged.update(overrides)
    return Settings(**merged)


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Process-wide settings, loaded on first use."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
