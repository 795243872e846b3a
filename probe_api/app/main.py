from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from probe_agent.version import __version__

from .config import Settings, settings as global_settings
from .db import Base, engine
from .observability import RequestContextMiddleware, configure_logging, get_request_id
from .routes.ingest import router as ingest_router
from .routes.nodes import router as nodes_router


logger = logging.getLogger("vps_probe")


def create_app(_settings: Settings | None = None) -> FastAPI:
    # Tests may inject a Settings object without reloading modules.
    settings = _settings or global_settings

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        _setup_logging(settings)
        _init_db()
        yield

    docs_url = "/docs" if settings.enable_docs else None
    redoc_url = "/redoc" if settings.enable_docs else None
    openapi_url = "/openapi.json" if settings.enable_docs else None

    app = FastAPI(
        title="VPS Probe Collector",
        version=__version__,
        lifespan=lifespan,
        docs_url=docs_url,
        redoc_url=redoc_url,
        openapi_url=openapi_url,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestContextMiddleware)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        rid = get_request_id() or "unknown"

        # Route handlers raise explicit {"error": "<code>"} envelopes.
        payload: dict[str, Any]
        if isinstance(exc.detail, dict) and "error" in exc.detail:
            payload = exc.detail
        else:
            payload = {"error": "http_error", "message": str(exc.detail)}

        headers = dict(exc.headers or {})
        headers.setdefault("X-Request-ID", rid)
        return JSONResponse(status_code=exc.status_code, content=payload, headers=headers)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        rid = get_request_id() or "unknown"
        return JSONResponse(
            status_code=400,
            content={"error": "invalid_request", "details": jsonable_encoder(exc.errors())},
            headers={"X-Request-ID": rid},
        )

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        rid = get_request_id() or "unknown"
        logger.exception(
            "unhandled_exception",
            extra={"fields": {"path": str(request.url.path), "method": request.method}},
        )
        return JSONResponse(
            status_code=500,
            content={"error": "internal_error", "request_id": rid},
            headers={"X-Request-ID": rid},
        )

    @app.get("/", include_in_schema=False)
    def root():
        return {"service": "vps-probe", "status": "ok"}

    @app.get("/healthz", include_in_schema=False)
    def healthz():
        return {"ok": True, "version": __version__, "env": settings.app_env}

    app.include_router(ingest_router)
    app.include_router(nodes_router)

    return app


def _setup_logging(settings: Settings) -> None:
    configure_logging(level=settings.log_level, log_format=settings.log_format)
    logger.info("Logging initialized (level=%s)", settings.log_level)


def _init_db() -> None:
    Base.metadata.create_all(bind=engine)
    logger.info("DB init complete")


app = create_app()
