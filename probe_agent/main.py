from __future__ import annotations

import logging
import signal
import threading
import time
from typing import Callable, Optional

from dotenv import load_dotenv

from .config import AgentConfigError, load_agent_config_from_env, load_log_settings_from_env
from .counter_store import CounterStore
from .metrics_source import CollectionError, PsutilMetricsSource
from .observability import configure_logging
from .reporter import Reporter, TransmissionError
from .version import __version__

logger = logging.getLogger("vps_probe.agent")


def next_tick_after(next_tick: float, *, now: float, interval_s: float) -> float:
    """Advance a fixed-cadence deadline past ``now``.

    Ticks missed while a slow cycle ran are skipped rather than replayed in a
    burst.
    """

    if interval_s <= 0:
        return now
    next_tick += interval_s
    if next_tick <= now:
        missed = int((now - next_tick) // interval_s) + 1
        next_tick += missed * interval_s
    return next_tick


def run_forever(
    reporter: Reporter,
    *,
    interval_s: float,
    stop_event: threading.Event,
    monotonic: Callable[[], float] = time.monotonic,
    max_cycles: Optional[int] = None,
) -> int:
    """Tick the reporter until stop_event is set. Returns the number of cycles run."""

    cycles = 0
    next_tick = monotonic()
    while not stop_event.is_set():
        try:
            result = reporter.run_cycle(stop_event)
            rec = result.reconciliation
            logger.info(
                "reported status=%s delta_rx=%s delta_tx=%s total_rx=%s total_tx=%s saved=%s",
                result.status_code,
                rec.delta_rx,
                rec.delta_tx,
                rec.total_rx,
                rec.total_tx,
                result.state_saved,
            )
        except CollectionError as exc:
            logger.error("collection failed: %s", exc)
        except TransmissionError as exc:
            logger.error("report failed (rolled back): %s", exc)
        except Exception:
            logger.exception("unexpected reporting failure")

        cycles += 1
        if max_cycles is not None and cycles >= max_cycles:
            break

        now = monotonic()
        next_tick = next_tick_after(next_tick, now=now, interval_s=interval_s)
        stop_event.wait(max(0.0, next_tick - now))
    return cycles


def install_signal_handlers(stop_event: threading.Event) -> None:
    def _handle(signum: int, _frame: object) -> None:
        logger.info("received %s; shutting down", signal.Signals(signum).name)
        stop_event.set()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)


def main() -> None:
    load_dotenv()

    log_settings = load_log_settings_from_env()
    configure_logging(level=log_settings.level, log_format=log_settings.log_format)

    try:
        config = load_agent_config_from_env()
    except AgentConfigError as exc:
        raise SystemExit(f"[vps-probe-agent] invalid config: {exc}") from exc

    store = CounterStore.load(config.state_path)
    source = PsutilMetricsSource(disk_path=config.disk_path)
    reporter = Reporter(config=config, store=store, source=source)

    stop_event = threading.Event()
    install_signal_handlers(stop_event)

    logger.info(
        "vps-probe agent %s started node_id=%s server=%s interval=%ss state=%s",
        __version__,
        config.node_id,
        config.server_url,
        config.interval_s,
        config.state_path,
    )

    try:
        run_forever(reporter, interval_s=float(config.interval_s), stop_event=stop_event)
    finally:
        reporter.session.close()
    logger.info("vps-probe agent stopped")


if __name__ == "__main__":
    main()
