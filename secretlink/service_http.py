# FILE: secretlink/service_http.py
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import FastAPI, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from .cleanup import ExpiredLinkSweeper
from .config import Settings, get_settings
from .crypto import Signer
from .links import REDEEM_PATH, LinkService
from .logging import get_logger
from .middleware import MetricsMiddleware, RequestContextMiddleware
from .schemas import (
    CreateLinkRequest,
    CreateLinkResponse,
    RedeemResponse,
    validate_create_request,
)
from .storage import LedgerError, LedgerUnavailable, LinkLedger, make_ledger
from .tokens import TokenCodec

_NO_STORE = {"Cache-Control": "no-store"}
_DENIED_DETAIL = "invalid or expired link"
_UNAVAILABLE_DETAIL = "service unavailable"


def create_app(
    settings: Optional[Settings] = None,
    *,
    ledger: Optional[LinkLedger] = None,
    clock: Optional[Callable[[], float]] = None,
    configure_logging: bool = True,
) -> FastAPI:
    """
    Build the HTTP surface around a LinkService.

    Exposes:
      - POST /api/links                 issue a link
      - GET  /supersecret/{token}       redeem a link
      - GET  /healthz, /readyz, /version, /metrics

    A missing signing key raises ConfigError here, before the app serves
    anything. When ``ledger`` is supplied it is used as-is and not closed on
    shutdown.
    """
    settings = settings or get_settings()
    signer = Signer(settings.require_signing_key())
    codec = TokenCodec(signer, clock=clock)

    owns_ledger = ledger is None
    if ledger is None:
        ledger = make_ledger(
            settings.ledger_dsn,
            max_ttl_s=settings.max_ttl_s,
            tx_timeout_s=settings.tx_timeout_s,
            clock=clock,
        )
    service = LinkService(codec, ledger)
    sweeper = ExpiredLinkSweeper(ledger, settings.cleanup_interval_s)

    if configure_logging:
        logger = get_logger("secretlink.http", level=settings.log_level)
    else:
        logger = logging.getLogger("secretlink.http")

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        if settings.cleanup_enabled:
            sweeper.start()
        logger.info("secretlink http ready", extra={"backend": ledger.backend})
        try:
            yield
        finally:
            await asyncio.to_thread(sweeper.stop)
            if owns_ledger:
                ledger.close()

    docs = settings.enable_docs
    app = FastAPI(
        title="secretlink",
        version=settings.version,
        openapi_url="/openapi.json" if docs else None,
        docs_url="/docs" if docs else None,
        redoc_url="/redoc" if docs else None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.link_service = service
    app.state.sweeper = sweeper

    config_hash = settings.config_hash()

    @app.middleware("http")
    async def version_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers["X-SecretLink-Version"] = settings.version
        response.headers["X-SecretLink-Config-Hash"] = config_hash
        return response

    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestContextMiddleware)

    # ------------------------------------------------------------------ #
    # Links
    # ------------------------------------------------------------------ #

    @app.post("/api/links", response_model=CreateLinkResponse)
    def create_link(req: CreateLinkRequest, request: Request):
        errors = validate_create_request(req, settings)
        if errors:
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content={"errors": errors},
            )
        try:
            token = service.issue_link(req.username, req.max, req.expires_at)
        except LedgerUnavailable:
            logger.error("link issuance failed: ledger unavailable", exc_info=True)
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"detail": _UNAVAILABLE_DETAIL},
            )
        base = settings.public_base_url or str(request.base_url)
        return CreateLinkResponse(url=service.build_url(base, token))

    @app.get(REDEEM_PATH + "/{token}", response_model=RedeemResponse)
    def redeem_link(token: str):
        try:
            result = service.redeem_link(token)
        except LedgerUnavailable:
            logger.error("link redemption failed: ledger unavailable", exc_info=True)
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"detail": _UNAVAILABLE_DETAIL},
                headers=_NO_STORE,
            )
        if not result.ok:
            return JSONResponse(
                status_code=status.HTTP_404_NOT_FOUND,
                content={"detail": _DENIED_DETAIL},
                headers=_NO_STORE,
            )
        return JSONResponse(
            content=RedeemResponse(ok=True, username=result.subject).model_dump(),
            headers=_NO_STORE,
        )

    # ------------------------------------------------------------------ #
    # Health / metrics
    # ------------------------------------------------------------------ #

    @app.get("/healthz")
    def healthz():
        return {"status": "ok"}

    @app.get("/readyz")
    def readyz():
        try:
            ledger.ping()
        except LedgerError:
            logger.warning("readiness check failed", exc_info=True)
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"ready": False},
            )
        return {"ready": True, "backend": ledger.backend}

    @app.get("/version")
    def version():
        return {"version": settings.version, "config_hash": config_hash}

    @app.get("/metrics")
    def metrics() -> Response:
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


def main() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        create_app(settings),
        host=settings.http_host,
        port=settings.http_port,
        log_config=None,
    )


if __name__ == "__main__":  # pragma: no cover
    main()
