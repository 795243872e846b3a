from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Mapping

logger = logging.getLogger("vps_probe.state")

RESET_REBOOT = "reboot"
RESET_COUNTER_DECREASE = "counter_decrease"

# Attribute name -> on-disk JSON key.
_JSON_KEYS = (
    ("boot_time", "bootTime"),
    ("last_rx_bytes", "lastRxBytes"),
    ("last_tx_bytes", "lastTxBytes"),
    ("total_rx_bytes", "totalRxBytes"),
    ("total_tx_bytes", "totalTxBytes"),
)


@dataclass
class CounterState:
    """Durable network counter state.

    boot_time == 0 means "never observed"; the first reconcile always rebases.
    """

    boot_time: int = 0
    last_rx_bytes: int = 0
    last_tx_bytes: int = 0
    total_rx_bytes: int = 0
    total_tx_bytes: int = 0

    def to_json_dict(self) -> dict[str, int]:
        return {key: int(getattr(self, attr)) for attr, key in _JSON_KEYS}

    @classmethod
    def from_json_dict(cls, raw: Mapping[str, Any]) -> CounterState:
        """Build a state from its on-disk form.

        Absent keys read as 0. A present key that is not a non-negative int
        raises ValueError: the whole record is untrustworthy, and keeping the
        other fields could pair an old bootTime with a zeroed baseline.
        """

        values: dict[str, int] = {}
        for attr, key in _JSON_KEYS:
            value = raw.get(key, 0)
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValueError(f"{key} must be a non-negative integer, got {value!r}")
            values[attr] = value
        return cls(**values)


@dataclass(frozen=True)
class StateSnapshot:
    """Immutable undo point taken before a reconcile."""

    boot_time: int
    last_rx_bytes: int
    last_tx_bytes: int
    total_rx_bytes: int
    total_tx_bytes: int


@dataclass(frozen=True)
class Reconciliation:
    delta_rx: int
    delta_tx: int
    total_rx: int
    total_tx: int
    reset_detected: bool
    reset_reason: str | None = None


def load_counter_state(path: str | Path) -> CounterState:
    """Read persisted counters, failing open to a zeroed state.

    A missing file is the normal first-run case. An unreadable or malformed
    file is logged and also yields a zeroed state: the agent keeps running
    and undercounts once instead of crashing on every start.
    """

    p = Path(path)
    try:
        raw = p.read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.info("no counter state at %s; starting fresh", p)
        return CounterState()
    except OSError as exc:
        logger.warning("failed to read counter state at %s: %r; starting fresh", p, exc)
        return CounterState()

    if not raw.strip():
        return CounterState()

    try:
        parsed = json.loads(raw)
    except ValueError as exc:
        logger.warning("malformed counter state at %s: %s; starting fresh", p, exc)
        return CounterState()
    if not isinstance(parsed, Mapping):
        logger.warning("counter state at %s is not a JSON object; starting fresh", p)
        return CounterState()

    try:
        return CounterState.from_json_dict(parsed)
    except ValueError as exc:
        logger.warning("invalid counter state at %s: %s; starting fresh", p, exc)
        return CounterState()


def save_counter_state(path: str | Path, state: CounterState) -> None:
    _atomic_write_text(Path(path), json.dumps(state.to_json_dict(), indent=2))


class CounterStore:
    """Lock-guarded owner of the live CounterState.

    snap, restore, reconcile and save are mutually exclusive. save holds the
    lock through the rename, so concurrent saves land in call order.
    """

    def __init__(self, state: CounterState | None = None) -> None:
        self._state = state if state is not None else CounterState()
        self._lock = threading.Lock()

    @classmethod
    def load(cls, path: str | Path) -> CounterStore:
        return cls(load_counter_state(path))

    def save(self, path: str | Path) -> None:
        with self._lock:
            _atomic_write_text(Path(path), json.dumps(self._state.to_json_dict(), indent=2))

    def current(self) -> CounterState:
        """Return a detached copy of the live counters."""

        with self._lock:
            return replace(self._state)

    def snap(self) -> StateSnapshot:
        with self._lock:
            s = self._state
            return StateSnapshot(
                boot_time=s.boot_time,
                last_rx_bytes=s.last_rx_bytes,
                last_tx_bytes=s.last_tx_bytes,
                total_rx_bytes=s.total_rx_bytes,
                total_tx_bytes=s.total_tx_bytes,
            )

    def restore(self, snapshot: StateSnapshot) -> None:
        with self._lock:
            s = self._state
            s.boot_time = snapshot.boot_time
            s.last_rx_bytes = snapshot.last_rx_bytes
            s.last_tx_bytes = snapshot.last_tx_bytes
            s.total_rx_bytes = snapshot.total_rx_bytes
            s.total_tx_bytes = snapshot.total_tx_bytes

    def reconcile(self, boot_time: int, rx_bytes: int, tx_bytes: int) -> Reconciliation:
        """Fold raw interface counters into the cumulative totals.

        Any reboot or counter decrease rebases to the new raw values with a
        zero delta. Bytes moved between the last observation and the reset
        are lost; a wrapped counter is never read as a huge delta.
        """

        boot_time = _require_counter("boot_time", boot_time)
        rx_bytes = _require_counter("rx_bytes", rx_bytes)
        tx_bytes = _require_counter("tx_bytes", tx_bytes)

        with self._lock:
            s = self._state

            reason: str | None = None
            if s.boot_time == 0 or s.boot_time != boot_time:
                reason = RESET_REBOOT
            elif rx_bytes < s.last_rx_bytes or tx_bytes < s.last_tx_bytes:
                reason = RESET_COUNTER_DECREASE

            if reason is not None:
                s.boot_time = boot_time
                s.last_rx_bytes = rx_bytes
                s.last_tx_bytes = tx_bytes
                return Reconciliation(
                    delta_rx=0,
                    delta_tx=0,
                    total_rx=s.total_rx_bytes,
                    total_tx=s.total_tx_bytes,
                    reset_detected=True,
                    reset_reason=reason,
                )

            delta_rx = rx_bytes - s.last_rx_bytes
            delta_tx = tx_bytes - s.last_tx_bytes
            s.total_rx_bytes += delta_rx
            s.total_tx_bytes += delta_tx
            s.last_rx_bytes = rx_bytes
            s.last_tx_bytes = tx_bytes
            return Reconciliation(
                delta_rx=delta_rx,
                delta_tx=delta_tx,
                total_rx=s.total_rx_bytes,
                total_tx=s.total_tx_bytes,
                reset_detected=False,
            )


def _atomic_write_text(path: Path, data: str) -> None:
    """Write via a same-directory temp file and os.replace.

    Readers see either the previous file or the new one, never a partial
    write. The temp file is removed if anything fails before the rename.
    """

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=".state-", suffix=".tmp", dir=str(path.parent))
    replaced = False
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
        replaced = True
    finally:
        if not replaced:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass


def _require_counter(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{name} must be an int, got {type(value).__name__}")
    if value < 0:
        raise ValueError(f"{name} must be non-negative, got {value}")
    return value

