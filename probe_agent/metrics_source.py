from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Protocol

import psutil


class CollectionError(RuntimeError):
    """Raised when a host snapshot cannot be collected."""


@dataclass(frozen=True)
class HostSnapshot:
    cpu_percent: float
    mem_used_percent: float
    disk_used_percent: float
    net_rx_bytes: int
    net_tx_bytes: int
    uptime_seconds: int
    boot_time: int

    def to_payload(self) -> dict[str, Any]:
        return {
            "cpuPercent": self.cpu_percent,
            "memUsedPercent": self.mem_used_percent,
            "diskUsedPercent": self.disk_used_percent,
            "netRxBytes": self.net_rx_bytes,
            "netTxBytes": self.net_tx_bytes,
            "uptimeSeconds": self.uptime_seconds,
            "bootTime": self.boot_time,
        }


class MetricsSource(Protocol):
    """Point-in-time host sampler used by the reporter."""

    def collect(self) -> HostSnapshot: ...


class PsutilMetricsSource:
    """Sample CPU/memory/disk/network figures from the local host.

    Network counters are summed across all interfaces. cpu_sample_s is the
    CPU sampling window; calls such as disk_usage on a hung mount can block
    longer, so the reporter enforces the overall collection deadline.
    """

    def __init__(
        self,
        *,
        disk_path: str = "/",
        cpu_sample_s: float = 0.2,
        now_fn: Callable[[], float] | None = None,
    ) -> None:
        self.disk_path = disk_path or "/"
        self.cpu_sample_s = max(0.0, float(cpu_sample_s))
        self._now_fn = now_fn or time.time

    def collect(self) -> HostSnapshot:
        try:
            cpu = psutil.cpu_percent(interval=self.cpu_sample_s)
            vm = psutil.virtual_memory()
            du = psutil.disk_usage(self.disk_path)
            net = psutil.net_io_counters(pernic=False)
        except (OSError, psutil.Error) as exc:
            raise CollectionError(f"host metrics collection failed: {exc!r}") from exc

        rx = int(net.bytes_recv) if net is not None else 0
        tx = int(net.bytes_sent) if net is not None else 0

        # Boot time and uptime are informational; a failure here degrades to 0
        # (which the counter store treats as a reboot) instead of aborting.
        try:
            boot = psutil.boot_time()
        except (OSError, psutil.Error):
            boot = 0.0
        boot_time = int(round(boot))
        uptime = max(0, int(self._now_fn() - boot)) if boot_time > 0 else 0

        return HostSnapshot(
            cpu_percent=float(cpu),
            mem_used_percent=float(vm.percent),
            disk_used_percent=float(du.percent),
            net_rx_bytes=rx,
            net_tx_bytes=tx,
            uptime_seconds=uptime,
            boot_time=boot_time,
        )
