from __future__ import annotations

import logging
import time
import uuid
from contextvars import ContextVar
from typing import Any, Callable, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from probe_agent.observability import configure_logging as _configure_root_logging


request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

http_logger = logging.getLogger("vps_probe.http")


def get_request_id() -> Optional[str]:
    return request_id_ctx.get()


def _extract_request_id(request: Request) -> str:
    rid = request.headers.get("X-Request-ID") or request.headers.get("X-Correlation-ID")
    if rid:
        return rid.strip()
    return uuid.uuid4().hex


def _request_fields(request: Request, *, status: int, duration_ms: int) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "method": request.method,
        "path": request.url.path,
        "status": status,
        "duration_ms": duration_ms,
    }
    if request.client:
        fields["remote_ip"] = request.client.host
    user_agent = request.headers.get("user-agent")
    if user_agent:
        fields["user_agent"] = user_agent
    return fields


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Attach a request_id to each request and emit one "request" log record.

    The id is taken from X-Request-ID / X-Correlation-ID when an upstream
    proxy supplies one, generated otherwise, and echoed back as X-Request-ID.
    """

    async def dispatch(self, request: Request, call_next: Callable[[Request], Any]) -> Response:
        rid = _extract_request_id(request)
        token = request_id_ctx.set(rid)

        start = time.perf_counter()
        try:
            try:
                response = await call_next(request)
            except Exception:
                duration_ms = int((time.perf_counter() - start) * 1000)
                http_logger.exception(
                    "request_error",
                    extra={"fields": _request_fields(request, status=500, duration_ms=duration_ms)},
                )
                raise

            response.headers["X-Request-ID"] = rid
            duration_ms = int((time.perf_counter() - start) * 1000)
            http_logger.info(
                "request",
                extra={"fields": _request_fields(request, status=response.status_code, duration_ms=duration_ms)},
            )
            return response
        finally:
            request_id_ctx.reset(token)


class ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id()
        return True


def configure_logging(*, level: int | str, log_format: str) -> None:
    _configure_root_logging(
        level=level,
        log_format=log_format,
        service_name="vps-probe-collector",
        filters=[ContextFilter()],
    )
