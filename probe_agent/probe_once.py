from __future__ import annotations

import argparse
import json
from dataclasses import replace
from pathlib import Path

from dotenv import load_dotenv

from .config import AgentConfigError, load_agent_config_from_env, load_log_settings_from_env
from .counter_store import CounterStore
from .metrics_source import CollectionError, PsutilMetricsSource
from .observability import configure_logging
from .reporter import Reporter, TransmissionError


def main(argv: list[str] | None = None) -> int:
    load_dotenv()

    parser = argparse.ArgumentParser(description="Run a single vps-probe reporting cycle")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the signed report without sending it or touching the state file",
    )
    parser.add_argument("--state-path", default=None, help="Override PROBE_STATE_PATH")
    parser.add_argument("--disk-path", default=None, help="Override PROBE_DISK_PATH")
    args = parser.parse_args(argv)

    log_settings = load_log_settings_from_env()
    configure_logging(level=log_settings.level, log_format=log_settings.log_format)

    try:
        config = load_agent_config_from_env()
    except AgentConfigError as exc:
        raise SystemExit(f"[vps-probe-once] invalid config: {exc}") from exc

    if args.state_path:
        config = replace(config, state_path=Path(args.state_path))
    if args.disk_path:
        config = replace(config, disk_path=args.disk_path)

    reporter = Reporter(
        config=config,
        store=CounterStore.load(config.state_path),
        source=PsutilMetricsSource(disk_path=config.disk_path),
    )

    try:
        if args.dry_run:
            report = reporter.preview()
            print(json.dumps(report.headers, indent=2, sort_keys=True))
            print(report.body.decode("utf-8"))
            return 0

        result = reporter.run_cycle()
    except (CollectionError, TransmissionError) as exc:
        print(f"[vps-probe-once] cycle failed: {exc}")
        return 1
    finally:
        reporter.session.close()

    rec = result.reconciliation
    print(
        "[vps-probe-once] status=%s delta_rx=%s delta_tx=%s total_rx=%s total_tx=%s saved=%s"
        % (result.status_code, rec.delta_rx, rec.delta_tx, rec.total_rx, rec.total_tx, result.state_saved)
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
