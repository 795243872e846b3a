from __future__ import annotations

import json
import logging
import platform
import sys
import threading
import time
from concurrent.futures import Future, wait
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict

import requests

from .config import AgentConfig
from .counter_store import CounterStore, Reconciliation
from .metrics_source import CollectionError, HostSnapshot, MetricsSource
from .signer import SIGNATURE_HEADER, TIMESTAMP_HEADER, sign
from .version import __version__

logger = logging.getLogger("vps_probe.reporter")

AGENT_NAME = "vps-probe-agent"


class TransmissionError(RuntimeError):
    """Raised when a report was not accepted by the collector.

    status_code is set when a response arrived (non-2xx), None on transport
    failure or cancellation.
    """

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class CycleState(str, Enum):
    IDLE = "idle"
    COLLECTING = "collecting"
    RECONCILING = "reconciling"
    SENDING = "sending"
    COMMITTING = "committing"
    ROLLING_BACK = "rolling_back"


@dataclass(frozen=True)
class CycleResult:
    reconciliation: Reconciliation
    status_code: int
    state_saved: bool


@dataclass(frozen=True)
class SignedReport:
    body: bytes
    headers: Dict[str, str]


def compute_speed(delta_bytes: int, interval_s: int) -> int:
    if interval_s <= 0:
        return 0
    return delta_bytes // interval_s


def _go_style_platform() -> tuple[str, str]:
    os_name = sys.platform
    if os_name.startswith("linux"):
        os_name = "linux"
    elif os_name == "win32":
        os_name = "windows"
    machine = platform.machine().lower()
    arch = {"x86_64": "amd64", "aarch64": "arm64"}.get(machine, machine)
    return os_name, arch


def build_payload(
    *,
    node_id: str,
    hostname: str,
    snapshot: HostSnapshot,
    reconciliation: Reconciliation,
    interval_s: int,
    version: str,
    os_name: str,
    arch: str,
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"nodeId": node_id}
    if hostname:
        payload["hostname"] = hostname
    payload["snapshot"] = snapshot.to_payload()
    payload["bandwidth"] = {
        "deltaRxBytes": reconciliation.delta_rx,
        "deltaTxBytes": reconciliation.delta_tx,
        "totalRxBytes": reconciliation.total_rx,
        "totalTxBytes": reconciliation.total_tx,
        "rxSpeed": compute_speed(reconciliation.delta_rx, interval_s),
        "txSpeed": compute_speed(reconciliation.delta_tx, interval_s),
    }
    payload["meta"] = {
        "version": version,
        "os": os_name,
        "arch": arch,
        "interval": interval_s,
    }
    return payload


def encode_payload(payload: Dict[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def signed_headers(secret: bytes, body: bytes, *, timestamp: str, version: str) -> Dict[str, str]:
    return {
        "Content-Type": "application/json",
        "User-Agent": f"{AGENT_NAME}/{version}",
        TIMESTAMP_HEADER: timestamp,
        SIGNATURE_HEADER: sign(secret, timestamp, body),
    }


def post_report(
    session: requests.Session,
    url: str,
    report: SignedReport,
    timeout_s: float,
) -> requests.Response:
    return session.post(url, data=report.body, headers=report.headers, timeout=timeout_s)


_CANCELLED = "cancelled"
_TIMED_OUT = "timed out"
_POLL_S = 0.05


def _submit(fn: Callable[[], Any], *, name: str) -> Future:
    """Run fn on its own daemon thread and return a Future for its outcome.

    A hung call pins only that thread and does not hold up interpreter exit.
    """

    future: Future = Future()

    def _run() -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            result = fn()
        except BaseException as exc:
            future.set_exception(exc)
        else:
            future.set_result(result)

    threading.Thread(target=_run, name=f"vps-probe-{name}", daemon=True).start()
    return future


def _wait_for(future: Future, *, timeout_s: float, cancel_event: threading.Event | None) -> str | None:
    """Wait until the future is done, the deadline passes, or cancel_event is set.

    Returns None when the future finished, otherwise _CANCELLED or _TIMED_OUT.
    A finished future wins over a cancellation that arrived meanwhile.
    """

    deadline = time.monotonic() + timeout_s
    while True:
        remaining = deadline - time.monotonic()
        done, _ = wait([future], timeout=max(0.0, min(_POLL_S, remaining)))
        if done:
            return None
        if cancel_event is not None and cancel_event.is_set():
            return _CANCELLED
        if remaining <= 0:
            return _TIMED_OUT


def _close_late_response(future: Future) -> None:
    if future.cancelled() or future.exception() is not None:
        return
    resp = future.result()
    close = getattr(resp, "close", None)
    if close is not None:
        close()


class Reporter:
    """Run one collect -> reconcile -> sign -> send -> commit/rollback cycle.

    The counter store is advanced in memory during reconcile and persisted only
    after the collector accepted the report. Any failure between reconcile and
    a 2xx response restores the undo point, so the same bytes are offered again
    as delta on the next successful cycle and are never counted twice.

    Collection and the send each run on a worker thread and are abandoned when
    their timeout passes or cancel_event is set. An abandoned send counts as a
    transmission failure even if the collector later accepts it.
    """

    def __init__(
        self,
        *,
        config: AgentConfig,
        store: CounterStore,
        source: MetricsSource,
        session: requests.Session | None = None,
        clock: Callable[[], float] = time.time,
        platform_info: tuple[str, str] | None = None,
        version: str = __version__,
    ) -> None:
        self.config = config
        self.store = store
        self.source = source
        self.session = session or requests.Session()
        self._clock = clock
        self._os_name, self._arch = platform_info or _go_style_platform()
        self._version = version
        self._state = CycleState.IDLE

    @property
    def state(self) -> CycleState:
        return self._state

    def run_cycle(self, cancel_event: threading.Event | None = None) -> CycleResult:
        try:
            return self._run_cycle(cancel_event)
        finally:
            self._state = CycleState.IDLE

    def preview(self) -> SignedReport:
        """Build the report the next cycle would send, leaving the store untouched."""

        snapshot = self._collect()
        undo = self.store.snap()
        try:
            reconciliation = self.store.reconcile(
                snapshot.boot_time, snapshot.net_rx_bytes, snapshot.net_tx_bytes
            )
            return self._sign(self._build(snapshot, reconciliation))
        finally:
            self.store.restore(undo)

    def _run_cycle(self, cancel_event: threading.Event | None) -> CycleResult:
        self._state = CycleState.COLLECTING
        snapshot = self._collect(cancel_event)

        self._state = CycleState.RECONCILING
        undo = self.store.snap()
        try:
            reconciliation = self.store.reconcile(
                snapshot.boot_time, snapshot.net_rx_bytes, snapshot.net_tx_bytes
            )
            if reconciliation.reset_detected:
                logger.info(
                    "counter baseline reset (%s): boot_time=%s rx=%s tx=%s",
                    reconciliation.reset_reason,
                    snapshot.boot_time,
                    snapshot.net_rx_bytes,
                    snapshot.net_tx_bytes,
                )

            report = self._sign(self._build(snapshot, reconciliation))

            self._state = CycleState.SENDING
            status_code = self._send(report, cancel_event)
        except Exception:
            self._state = CycleState.ROLLING_BACK
            self.store.restore(undo)
            raise

        self._state = CycleState.COMMITTING
        saved = self._commit()
        return CycleResult(reconciliation=reconciliation, status_code=status_code, state_saved=saved)

    def _collect(self, cancel_event: threading.Event | None = None) -> HostSnapshot:
        timeout_s = self.config.collect_timeout_s
        future = _submit(self.source.collect, name="collect")
        outcome = _wait_for(future, timeout_s=timeout_s, cancel_event=cancel_event)
        if outcome == _CANCELLED:
            raise CollectionError("cycle cancelled during collection")
        if outcome == _TIMED_OUT:
            raise CollectionError(f"metrics collection timed out after {timeout_s}s")
        try:
            return future.result()
        except CollectionError:
            raise
        except Exception as exc:
            raise CollectionError(f"metrics source failed: {exc!r}") from exc

    def _build(self, snapshot: HostSnapshot, reconciliation: Reconciliation) -> bytes:
        payload = build_payload(
            node_id=self.config.node_id,
            hostname=self.config.hostname,
            snapshot=snapshot,
            reconciliation=reconciliation,
            interval_s=int(self.config.interval_s),
            version=self._version,
            os_name=self._os_name,
            arch=self._arch,
        )
        return encode_payload(payload)

    def _sign(self, body: bytes) -> SignedReport:
        timestamp = str(int(self._clock()))
        headers = signed_headers(self.config.secret, body, timestamp=timestamp, version=self._version)
        return SignedReport(body=body, headers=headers)

    def _send(self, report: SignedReport, cancel_event: threading.Event | None) -> int:
        if cancel_event is not None and cancel_event.is_set():
            raise TransmissionError("cycle cancelled before send")

        timeout_s = self.config.http_timeout_s
        future = _submit(
            lambda: post_report(self.session, self.config.server_url, report, timeout_s), name="send"
        )
        outcome = _wait_for(future, timeout_s=timeout_s, cancel_event=cancel_event)
        if outcome is not None:
            future.add_done_callback(_close_late_response)
            if outcome == _CANCELLED:
                raise TransmissionError("cycle cancelled during send")
            raise TransmissionError(f"send timed out after {timeout_s}s")

        try:
            resp = future.result()
        except requests.RequestException as exc:
            raise TransmissionError(f"send failed: {exc!r}") from exc

        try:
            status_code = int(resp.status_code)
            if status_code >= 300:
                raise TransmissionError(
                    f"server returned {status_code}: {resp.text[:200]}", status_code=status_code
                )
        finally:
            resp.close()
        return status_code

    def _commit(self) -> bool:
        try:
            self.store.save(self.config.state_path)
        except OSError as exc:
            # The collector already has the new totals; keep the in-memory
            # advance so the next cycle does not resend this delta.
            logger.warning("failed to save counter state to %s: %r", self.config.state_path, exc)
            return False
        return True
