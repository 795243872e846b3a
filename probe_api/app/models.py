from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import BigInteger, DateTime, Float, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Node(Base):
    """One reporting host plus its most recent status.

    The latest-status columns are overwritten on every accepted report so the
    fleet view needs a single query.
    """

    __tablename__ = "nodes"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    cpu_percent: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    mem_used_percent: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    disk_used_percent: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    net_rx_total: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    net_tx_total: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    net_rx_speed: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    net_tx_speed: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    uptime_seconds: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    agent_version: Mapped[str | None] = mapped_column(String(64), nullable=True)
    os: Mapped[str | None] = mapped_column(String(32), nullable=True)
    arch: Mapped[str | None] = mapped_column(String(32), nullable=True)

    samples: Mapped[list["MetricSample"]] = relationship(back_populates="node")

    __table_args__ = (Index("ix_nodes_last_seen_at", "last_seen_at"),)


class MetricSample(Base):
    __tablename__ = "metric_samples"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    node_id: Mapped[str] = mapped_column(String(64), ForeignKey("nodes.id"), nullable=False)
    ts: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    cpu_percent: Mapped[float] = mapped_column(Float, nullable=False)
    mem_used_percent: Mapped[float] = mapped_column(Float, nullable=False)
    disk_used_percent: Mapped[float] = mapped_column(Float, nullable=False)

    # Per-report deltas as computed by the agent, plus its running totals.
    net_rx_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    net_tx_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    net_rx_total: Mapped[int] = mapped_column(BigInteger, nullable=False)
    net_tx_total: Mapped[int] = mapped_column(BigInteger, nullable=False)
    uptime_seconds: Mapped[int] = mapped_column(BigInteger, nullable=False)

    node: Mapped["Node"] = relationship(back_populates="samples")

    __table_args__ = (Index("ix_metric_samples_node_ts", "node_id", "ts"),)
