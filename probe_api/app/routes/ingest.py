from __future__ import annotations

import json
import logging
import time
from datetime import datetime, timezone

from fastapi import APIRouter, Header, HTTPException, Request, status
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from probe_agent.signer import extract_timestamp, timestamp_within_skew, verify_signature

from ..config import settings
from ..db import db_session
from ..schemas import IngestResponse, ReportIn
from ..services.reports import record_report

router = APIRouter(prefix="/v1", tags=["ingest"])

logger = logging.getLogger("vps_probe.api")


def _reject(status_code: int, code: str) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"ok": False, "error": code})


def _content_length_exceeds(raw: str | None, limit: int) -> bool:
    if not raw:
        return False
    try:
        return int(raw.strip()) > limit
    except ValueError:
        return False


def process_report(
    body: bytes,
    *,
    timestamp_header: str | None,
    signature_header: str | None,
    now: float | None = None,
) -> IngestResponse:
    """Authenticate, validate, and store one signed agent report.

    Check order: size, timestamp presence, clock skew, signature, JSON,
    payload shape. Nothing is written unless every check passes.
    """

    if len(body) > settings.max_body_bytes:
        raise _reject(status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, "payload_too_large")

    timestamp = extract_timestamp(timestamp_header)
    if timestamp is None:
        raise _reject(status.HTTP_401_UNAUTHORIZED, "missing_timestamp")

    now_s = time.time() if now is None else now
    if not timestamp_within_skew(timestamp, now=now_s, max_skew_s=settings.max_clock_skew_s):
        raise _reject(status.HTTP_401_UNAUTHORIZED, "stale_timestamp")

    if not verify_signature(settings.probe_hmac_secret, body, signature_header, timestamp):
        raise _reject(status.HTTP_401_UNAUTHORIZED, "invalid_signature")

    try:
        parsed = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        raise _reject(status.HTTP_400_BAD_REQUEST, "invalid_json")

    try:
        report = ReportIn.model_validate(parsed)
    except ValidationError:
        raise _reject(status.HTTP_400_BAD_REQUEST, "invalid_payload")

    received_at = datetime.fromtimestamp(now_s, tz=timezone.utc)
    with db_session() as session:
        record_report(session, report, received_at=received_at)

    logger.debug(
        "report accepted",
        extra={
            "fields": {
                "node_id": report.nodeId,
                "delta_rx": report.bandwidth.deltaRxBytes,
                "delta_tx": report.bandwidth.deltaTxBytes,
            }
        },
    )
    return IngestResponse(ok=True)


@router.post("/ingest", response_model=IngestResponse)
async def ingest(
    request: Request,
    x_probe_timestamp: str | None = Header(default=None, alias="X-Probe-Timestamp"),
    x_probe_signature: str | None = Header(default=None, alias="X-Probe-Signature"),
    content_length: str | None = Header(default=None, alias="Content-Length"),
) -> IngestResponse:
    # Refuse oversized bodies before reading them.
    if _content_length_exceeds(content_length, settings.max_body_bytes):
        raise _reject(status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, "payload_too_large")

    body = await request.body()
    return await run_in_threadpool(
        process_report,
        body,
        timestamp_header=x_probe_timestamp,
        signature_header=x_probe_signature,
    )
