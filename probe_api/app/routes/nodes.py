from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import List

from fastapi import APIRouter, HTTPException, Query, status

from ..config import settings
from ..db import db_session
from ..models import MetricSample, Node
from ..schemas import NODE_ID_PATTERN, MetricSampleOut, NodeOut
from ..services.reports import node_out

router = APIRouter(prefix="/v1", tags=["nodes"])

_NODE_ID_RE = re.compile(NODE_ID_PATTERN)
_RANGE_HOURS = {"1h": 1, "24h": 24}

MAX_NODES = 100
MAX_SAMPLES = 10_000


def _require_node_id(node_id: str) -> str:
    if not _NODE_ID_RE.match(node_id):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail={"error": "invalid_id"})
    return node_id


@router.get("/nodes", response_model=List[NodeOut])
def list_nodes() -> List[NodeOut]:
    now = datetime.now(timezone.utc)
    with db_session() as session:
        rows = session.query(Node).order_by(Node.last_seen_at.desc()).limit(MAX_NODES).all()
        return [node_out(n, now=now, offline_after_s=settings.offline_after_s) for n in rows]


@router.get("/nodes/{node_id}", response_model=NodeOut)
def get_node(node_id: str) -> NodeOut:
    _require_node_id(node_id)
    with db_session() as session:
        node = session.get(Node, node_id)
        if node is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail={"error": "not_found"})
        return node_out(node, now=datetime.now(timezone.utc), offline_after_s=settings.offline_after_s)


@router.get("/nodes/{node_id}/metrics", response_model=List[MetricSampleOut])
def get_node_metrics(
    node_id: str,
    range_: str = Query("24h", alias="range"),
) -> List[MetricSampleOut]:
    _require_node_id(node_id)
    hours = _RANGE_HOURS.get(range_ or "24h")
    if hours is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail={"error": "invalid_range"})

    since = datetime.now(timezone.utc) - timedelta(hours=hours)
    with db_session() as session:
        rows = (
            session.query(MetricSample)
            .filter(MetricSample.node_id == node_id, MetricSample.ts >= since)
            .order_by(MetricSample.ts.asc())
            .limit(MAX_SAMPLES)
            .all()
        )
        return [
            MetricSampleOut(
                ts=r.ts,
                cpu_percent=r.cpu_percent,
                mem_used_percent=r.mem_used_percent,
                disk_used_percent=r.disk_used_percent,
                net_rx_bytes=r.net_rx_bytes,
                net_tx_bytes=r.net_tx_bytes,
            )
            for r in rows
        ]
