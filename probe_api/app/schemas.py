from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

# Largest integer a JavaScript dashboard can represent exactly.
MAX_SAFE_INT = 2**53 - 1
NODE_ID_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,63}$"

Percent = Annotated[float, Field(ge=0, le=100, allow_inf_nan=False)]
Uint = Annotated[int, Field(strict=True, ge=0, le=MAX_SAFE_INT)]


class SnapshotIn(BaseModel):
    model_config = ConfigDict(extra="ignore")

    cpuPercent: Percent
    memUsedPercent: Percent
    diskUsedPercent: Percent
    netRxBytes: Uint
    netTxBytes: Uint
    uptimeSeconds: Uint
    bootTime: Optional[Uint] = None


class BandwidthIn(BaseModel):
    model_config = ConfigDict(extra="ignore")

    deltaRxBytes: Uint
    deltaTxBytes: Uint
    totalRxBytes: Uint
    totalTxBytes: Uint
    rxSpeed: Uint
    txSpeed: Uint


class MetaIn(BaseModel):
    model_config = ConfigDict(extra="ignore")

    version: Optional[str] = Field(None, max_length=64)
    os: Optional[str] = Field(None, max_length=32)
    arch: Optional[str] = Field(None, max_length=32)
    interval: Optional[int] = None


class ReportIn(BaseModel):
    """Signed report body posted by the agent."""

    model_config = ConfigDict(extra="ignore")

    nodeId: str = Field(..., pattern=NODE_ID_PATTERN)
    hostname: Optional[str] = None
    snapshot: SnapshotIn
    bandwidth: BandwidthIn
    meta: Optional[MetaIn] = None


class IngestResponse(BaseModel):
    ok: bool = True


NodeStatus = Literal["online", "offline"]


class NodeOut(BaseModel):
    id: str
    name: str
    status: NodeStatus
    last_seen_at: Optional[datetime]
    seconds_since_last_seen: Optional[int]

    cpu_percent: float
    mem_used_percent: float
    disk_used_percent: float
    net_rx_total: int
    net_tx_total: int
    net_rx_speed: int
    net_tx_speed: int
    uptime_seconds: int

    agent_version: Optional[str] = None
    os: Optional[str] = None
    arch: Optional[str] = None


class MetricSampleOut(BaseModel):
    ts: datetime
    cpu_percent: float
    mem_used_percent: float
    disk_used_percent: float
    net_rx_bytes: int
    net_tx_bytes: int
