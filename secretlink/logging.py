# FILE: secretlink/logging.py
from __future__ import annotations

import contextvars
import datetime as _dt
import json
import logging
import os
import re
import sys
import traceback
from typing import Any, Dict, Optional

# ---------- Module-level config (env-driven, safe defaults) ----------
_LOG_SERVICE = os.environ.get("SECRETLINK_SERVICE", "secretlink")
_LOG_VERSION = os.environ.get("SECRETLINK_VERSION", "0.1.0")
_LOG_ENV = os.environ.get("SECRETLINK_ENV", os.environ.get("ENV", "dev"))

# Max chars per field (truncate to keep JSON small)
try:
    _MAX_FIELD = int(os.environ.get("SECRETLINK_LOG_MAX_FIELD", "4096"))
    _MAX_FIELD = max(256, _MAX_FIELD)
except Exception:
    _MAX_FIELD = 4096

_INCLUDE_STACK = os.environ.get("SECRETLINK_LOG_INCLUDE_STACK", "1") == "1"

# Extra keys whose values never reach a log line (case-insensitive).
_DEFAULT_REDACT = {
    "token",
    "signature",
    "signing_key",
    "authorization",
    "cookie",
    "set-cookie",
}
_REDACT_KEYS = {
    k.strip().lower()
    for k in os.environ.get("SECRETLINK_LOG_REDACT", "").split(",")
    if k.strip()
} | _DEFAULT_REDACT

_REDACTED = "<redacted>"

# Envelope fields lifted from bound context or record attributes.
_ENVELOPE_KEYS = (
    "req_id",
    "route",
    "method",
    "path",
    "status",
    "latency_ms",
    "jti",
)

# Attributes every LogRecord carries; anything else is caller "extra".
_RECORD_ATTRS = set(
    logging.LogRecord("x", logging.INFO, "x", 0, "", None, None).__dict__.keys()
) | {"message", "asctime", "taskName"}

# ---------- Context management ----------
_log_ctx: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar(
    "secretlink_log_ctx", default={}
)


def bind(**fields: Any) -> None:
    """Merge fields into the current logging context (per-coroutine)."""
    cur = dict(_log_ctx.get())
    for k, v in fields.items():
        if v is None:
            continue
        cur[str(k)] = v
    _log_ctx.set(cur)


def reset() -> None:
    _log_ctx.set({})


def context() -> Dict[str, Any]:
    return dict(_log_ctx.get())


# ---------- Helpers ----------
def _ts_iso() -> str:
    # RFC3339 with milliseconds, UTC Z
    now = _dt.datetime.now(_dt.timezone.utc)
    ms = int(now.microsecond / 1000)
    base = now.replace(microsecond=0).isoformat().replace("+00:00", "Z")
    return f"{base[:-1]}.{ms:03d}Z"


def _compact_json(obj: Dict[str, Any]) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"), default=str)


def _truncate(v: Any) -> Any:
    if isinstance(v, str) and len(v) > _MAX_FIELD:
        return v[:_MAX_FIELD] + "...<truncated>"
    return v


def _redact_key(k: str) -> bool:
    return k.lower() in _REDACT_KEYS


def scrub_dict(d: Dict[str, Any]) -> Dict[str, Any]:
    """Redact secret-looking keys and truncate long values."""
    out: Dict[str, Any] = {}
    for k, v in d.items():
        if _redact_key(str(k)):
            out[str(k)] = _REDACTED
        elif isinstance(v, dict):
            out[str(k)] = scrub_dict(v)
        else:
            out[str(k)] = _truncate(v)
    return out


class JSONFormatter(logging.Formatter):
    """
    One compact JSON object per record.

    Envelope fields:
      - service, version, env
      - ts, lvl, logger, msg
      - req_id, route, method, path, status, latency_ms, jti
      - exc_type, exc_message, stack (when exc_info is set)

    Remaining caller extras go into "meta" after redaction.
    """

    def __init__(self, *, include_stack: bool = True) -> None:
        super().__init__()
        self.include_stack = include_stack

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        ctx = context()
        evt: Dict[str, Any] = {
            "service": _LOG_SERVICE,
            "version": _LOG_VERSION,
            "env": _LOG_ENV,
            "ts": _ts_iso(),
            "lvl": record.levelname,
            "logger": record.name,
            "msg": _truncate(str(record.getMessage())),
        }

        for name in _ENVELOPE_KEYS:
            v = ctx.get(name, getattr(record, name, None))
            if v is not None:
                evt[name] = _truncate(v)

        if record.exc_info and self.include_stack:
            exc_type, exc_val, exc_tb = record.exc_info
            evt["exc_type"] = getattr(exc_type, "__name__", str(exc_type))
            evt["exc_message"] = str(exc_val)[:_MAX_FIELD]
            evt["stack"] = "".join(
                traceback.format_exception(exc_type, exc_val, exc_tb)
            )[:_MAX_FIELD]

        meta = {
            k: v
            for k, v in record.__dict__.items()
            if k not in _RECORD_ATTRS and k not in evt and not k.startswith("_")
        }
        if meta:
            evt["meta"] = scrub_dict(meta)

        return _compact_json(evt)


# ---------- Paths ----------
_TOKEN_SEGMENT = re.compile(r"(/supersecret)/[^/?#\s]+")


def default_path_normalizer(path: str) -> str:
    """
    Keep label cardinality bounded and keep tokens out of metrics and logs.
    """
    collapsed = _TOKEN_SEGMENT.sub(r"\1/:token", path)
    if collapsed != path:
        return collapsed
    return re.sub(r"/\d{4,}", "/:id", path)


class AccessPathFilter(logging.Filter):
    """
    Rewrites the request path of uvicorn access records before formatting.

    uvicorn.access logs with args (client, method, path, http_version, status).
    """

    def filter(self, record: logging.LogRecord) -> bool:
        args = record.args
        if isinstance(args, tuple) and len(args) >= 3 and isinstance(args[2], str):
            record.args = args[:2] + (default_path_normalizer(args[2]),) + args[3:]
        return True


# ---------- Root / uvicorn integration ----------
def _clear_handlers(logger: logging.Logger) -> None:
    for h in list(logger.handlers):
        logger.removeHandler(h)


def configure_json_logging(
    level: str = "INFO",
    *,
    include_uvicorn: bool = True,
    stream: Any = None,
    include_stack: bool = _INCLUDE_STACK,
) -> logging.Logger:
    """Configure root (+ optionally uvicorn) for JSON output."""
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)
    stream = stream or sys.stderr

    h = logging.StreamHandler(stream=stream)
    h.setFormatter(JSONFormatter(include_stack=include_stack))
    h.setLevel(lvl)

    root = logging.getLogger()
    root.setLevel(lvl)
    _clear_handlers(root)
    root.addHandler(h)

    if include_uvicorn:
        for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
            lg = logging.getLogger(name)
            lg.setLevel(lvl)
            _clear_handlers(lg)
            lg.addHandler(h)
            lg.propagate = False
            if name == "uvicorn.access" and not any(
                isinstance(f, AccessPathFilter) for f in lg.filters
            ):
                lg.addFilter(AccessPathFilter())

    return root


# ---------- Convenience: module-level logger ----------
_configured = False


def get_logger(name: str = "secretlink", *, level: Optional[str] = None) -> logging.Logger:
    """
    Return a named logger; the first call installs the JSON root handler.
    """
    global _configured
    if not _configured:
        lvl = level or os.environ.get("SECRETLINK_LOG_LEVEL", "INFO")
        configure_json_logging(level=lvl, include_uvicorn=True)
        _configured = True
    return logging.getLogger(name)


__all__ = [
    "bind",
    "reset",
    "context",
    "configure_json_logging",
    "get_logger",
    "JSONFormatter",
    "AccessPathFilter",
    "default_path_normalizer",
    "scrub_dict",
]
