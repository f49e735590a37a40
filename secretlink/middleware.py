# FILE: secretlink/middleware.py
from __future__ import annotations

import logging
import re
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from prometheus_client import Counter, Histogram
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from . import logging as slog

_log = logging.getLogger(__name__)

REQUESTS = Counter(
    "secretlink_requests_total",
    "HTTP requests",
    ["route", "status"],
)
REQUEST_LATENCY = Histogram(
    "secretlink_request_latency_seconds",
    "HTTP request latency in seconds",
    ["route"],
)


# --------------------------------
# Shared helpers
# --------------------------------

default_path_normalizer = slog.default_path_normalizer


# --------------------------------
# Request context middleware
# --------------------------------


@dataclass
class RequestContextConfig:
    request_id_header: str = "X-Request-Id"
    accept_upstream_request_id: bool = True
    # Upstream ids must look like opaque tokens.
    id_format_regex: str = r"^[A-Za-z0-9._-]{1,64}$"


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Assigns a request id, exposes it on request.state and the response, and
    binds it into the logging context for the duration of the request.
    """

    def __init__(self, app, *, config: Optional[RequestContextConfig] = None):
        super().__init__(app)
        self._cfg = config or RequestContextConfig()
        self._id_pattern = re.compile(self._cfg.id_format_regex)

    def _request_id(self, request: Request) -> str:
        if self._cfg.accept_upstream_request_id:
            v = (request.headers.get(self._cfg.request_id_header) or "").strip()
            if v and self._id_pattern.fullmatch(v):
                return v
        return uuid.uuid4().hex[:16]

    async def dispatch(self, request: Request, call_next):
        rid = self._request_id(request)
        request.state.request_id = rid
        slog.reset()
        slog.bind(req_id=rid, method=request.method, path=default_path_normalizer(request.url.path))
        try:
            response = await call_next(request)
        finally:
            slog.reset()
        response.headers[self._cfg.request_id_header] = rid
        return response


# --------------------------------
# Metrics middleware
# --------------------------------


class MetricsMiddleware(BaseHTTPMiddleware):
    """
    Prometheus counter + histogram + one structured log line per request.

    Metrics:
      - Counter:   secretlink_requests_total{route, status}
      - Histogram: secretlink_request_latency_seconds{route}
    """

    def __init__(
        self,
        app,
        *,
        counter: Counter = REQUESTS,
        histogram: Histogram = REQUEST_LATENCY,
        path_normalizer: Callable[[str], str] = default_path_normalizer,
        route_aliases: Optional[Dict[str, str]] = None,
    ):
        super().__init__(app)
        self.counter = counter
        self.hist = histogram
        self._normalize = path_normalizer
        self._aliases = route_aliases or {}

    def _route_label(self, path: str) -> str:
        label = self._normalize(path)
        return self._aliases.get(label, label)

    async def dispatch(self, request: Request, call_next):
        route_label = self._route_label(request.url.path)
        t0 = time.perf_counter()
        status_label = "err"
        status_code: Optional[int] = None
        try:
            response = await call_next(request)
            status_code = int(response.status_code)
            status_label = "ok" if 200 <= status_code < 400 else "err"
            return response
        finally:
            dt = time.perf_counter() - t0
            try:
                self.counter.labels(route=route_label, status=status_label).inc()
                self.hist.labels(route=route_label).observe(dt)
            except Exception:
                # Metrics failures must not affect request handling.
                _log.debug("metrics update failed", exc_info=True)
            _log.info(
                "request handled",
                extra={
                    "route": route_label,
                    "status": status_code,
                    "latency_ms": round(dt * 1000.0, 3),
                },
            )
