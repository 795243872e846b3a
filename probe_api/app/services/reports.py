from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy.orm import Session

from ..models import MetricSample, Node
from ..schemas import NodeOut, NodeStatus, ReportIn


def as_utc(dt: datetime) -> datetime:
    # SQLite drops tzinfo on round-trip; stored values are always UTC.
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def compute_status(last_seen_at: datetime | None, *, now: datetime, offline_after_s: int) -> NodeStatus:
    if last_seen_at is None:
        return "offline"
    age_s = (now - as_utc(last_seen_at)).total_seconds()
    return "online" if age_s < offline_after_s else "offline"


def record_report(session: Session, report: ReportIn, *, received_at: datetime) -> Node:
    """Upsert the node's latest status and append one metric sample."""

    name = (report.hostname or report.nodeId)[:255]
    snap = report.snapshot
    bw = report.bandwidth

    node = session.get(Node, report.nodeId)
    if node is None:
        node = Node(id=report.nodeId, name=name, created_at=received_at)
        session.add(node)

    node.name = name
    node.last_seen_at = received_at
    node.cpu_percent = snap.cpuPercent
    node.mem_used_percent = snap.memUsedPercent
    node.disk_used_percent = snap.diskUsedPercent
    node.net_rx_total = bw.totalRxBytes
    node.net_tx_total = bw.totalTxBytes
    node.net_rx_speed = bw.rxSpeed
    node.net_tx_speed = bw.txSpeed
    node.uptime_seconds = snap.uptimeSeconds
    if report.meta is not None:
        node.agent_version = report.meta.version
        node.os = report.meta.os
        node.arch = report.meta.arch

    session.add(
        MetricSample(
            node_id=report.nodeId,
            ts=received_at,
            cpu_percent=snap.cpuPercent,
            mem_used_percent=snap.memUsedPercent,
            disk_used_percent=snap.diskUsedPercent,
            net_rx_bytes=bw.deltaRxBytes,
            net_tx_bytes=bw.deltaTxBytes,
            net_rx_total=bw.totalRxBytes,
            net_tx_total=bw.totalTxBytes,
            uptime_seconds=snap.uptimeSeconds,
        )
    )
    return node


def node_out(node: Node, *, now: datetime, offline_after_s: int) -> NodeOut:
    seconds_since: int | None = None
    if node.last_seen_at is not None:
        seconds_since = max(0, int((now - as_utc(node.last_seen_at)).total_seconds()))
    return NodeOut(
        id=node.id,
        name=node.name,
        status=compute_status(node.last_seen_at, now=now, offline_after_s=offline_after_s),
        last_seen_at=node.last_seen_at,
        seconds_since_last_seen=seconds_since,
        cpu_percent=node.cpu_percent,
        mem_used_percent=node.mem_used_percent,
        disk_used_percent=node.disk_used_percent,
        net_rx_total=node.net_rx_total,
        net_tx_total=node.net_tx_total,
        net_rx_speed=node.net_rx_speed,
        net_tx_speed=node.net_tx_speed,
        uptime_seconds=node.uptime_seconds,
        agent_version=node.agent_version,
        os=node.os,
        arch=node.arch,
    )
