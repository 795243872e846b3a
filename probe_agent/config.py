from __future__ import annotations

import logging
import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping

import yaml

logger = logging.getLogger("vps_probe.agent")

DEFAULT_INTERVAL_S = 10
DEFAULT_HTTP_TIMEOUT_S = 10.0
DEFAULT_COLLECT_TIMEOUT_S = 5.0
DEFAULT_DISK_PATH = "/"
DEFAULT_STATE_PATH = "/var/lib/vps-probe/state.json"

# YAML file keys -> env names. Env always wins over the file.
_FILE_KEYS = {
    "server_url": "PROBE_SERVER_URL",
    "hmac_secret": "PROBE_HMAC_SECRET",
    "node_id": "PROBE_NODE_ID",
    "interval_seconds": "PROBE_INTERVAL_SECONDS",
    "disk_path": "PROBE_DISK_PATH",
    "state_path": "PROBE_STATE_PATH",
    "http_timeout_seconds": "PROBE_HTTP_TIMEOUT_SECONDS",
    "collect_timeout_seconds": "PROBE_COLLECT_TIMEOUT_SECONDS",
}


class AgentConfigError(ValueError):
    """Raised when the agent cannot start with the supplied configuration."""


@dataclass(frozen=True)
class AgentConfig:
    server_url: str
    secret: bytes = field(repr=False)
    node_id: str
    hostname: str
    interval_s: int
    disk_path: str
    state_path: Path
    http_timeout_s: float = DEFAULT_HTTP_TIMEOUT_S
    collect_timeout_s: float = DEFAULT_COLLECT_TIMEOUT_S


@dataclass(frozen=True)
class LogSettings:
    level: str
    log_format: str


def load_log_settings_from_env(environ: Mapping[str, str] | None = None) -> LogSettings:
    env = os.environ if environ is None else environ
    level = (env.get("LOG_LEVEL") or "INFO").strip().upper() or "INFO"
    log_format = (env.get("LOG_FORMAT") or "text").strip().lower() or "text"
    if log_format not in {"text", "json"}:
        log_format = "text"
    return LogSettings(level=level, log_format=log_format)


def _load_config_file(path_raw: str) -> dict[str, str]:
    path = Path(path_raw).expanduser()
    if not path.exists():
        raise AgentConfigError(f"PROBE_CONFIG_PATH does not exist: {path}")
    try:
        loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise AgentConfigError(f"failed to parse agent config at {path}: {exc}") from exc
    except OSError as exc:
        raise AgentConfigError(f"failed to read agent config at {path}: {exc}") from exc
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise AgentConfigError(f"agent config at {path} must be a YAML object")

    out: dict[str, str] = {}
    for key, value in loaded.items():
        env_name = _FILE_KEYS.get(str(key))
        if env_name is None:
            raise AgentConfigError(f"unknown agent config key {key!r} in {path}")
        if value is None:
            continue
        out[env_name] = str(value)
    return out


def _parse_positive_int(values: Mapping[str, str], name: str, *, default: int) -> int:
    raw = values.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        logger.warning("invalid %s=%r; using %s", name, raw, default)
        return default
    if value <= 0:
        logger.warning("invalid %s=%r; using %s", name, raw, default)
        return default
    return value


def _parse_positive_float(values: Mapping[str, str], name: str, *, default: float) -> float:
    raw = values.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw.strip())
    except ValueError:
        logger.warning("invalid %s=%r; using %s", name, raw, default)
        return default
    if value <= 0:
        logger.warning("invalid %s=%r; using %s", name, raw, default)
        return default
    return value


def _get_str(values: Mapping[str, str], name: str) -> str:
    return (values.get(name) or "").strip()


def load_agent_config_from_env(
    environ: Mapping[str, str] | None = None,
    *,
    hostname_fn: Callable[[], str] = socket.gethostname,
) -> AgentConfig:
    env: Mapping[str, Any] = os.environ if environ is None else environ

    values: dict[str, str] = {}
    config_path = (env.get("PROBE_CONFIG_PATH") or "").strip()
    if config_path:
        values.update(_load_config_file(config_path))
    for name in _FILE_KEYS.values():
        raw = env.get(name)
        if raw is not None and raw.strip() != "":
            values[name] = raw

    server_url = _get_str(values, "PROBE_SERVER_URL")
    if not server_url:
        raise AgentConfigError("PROBE_SERVER_URL is required")
    if not server_url.startswith(("http://", "https://")):
        raise AgentConfigError("PROBE_SERVER_URL must be an http(s) URL")

    secret = _get_str(values, "PROBE_HMAC_SECRET")
    if not secret:
        raise AgentConfigError("PROBE_HMAC_SECRET is required")

    try:
        hostname = hostname_fn() or ""
    except OSError:
        hostname = ""

    node_id = _get_str(values, "PROBE_NODE_ID") or hostname
    if not node_id:
        raise AgentConfigError("PROBE_NODE_ID is required when the hostname cannot be resolved")

    return AgentConfig(
        server_url=server_url,
        secret=secret.encode("utf-8"),
        node_id=node_id,
        hostname=hostname,
        interval_s=_parse_positive_int(values, "PROBE_INTERVAL_SECONDS", default=DEFAULT_INTERVAL_S),
        disk_path=_get_str(values, "PROBE_DISK_PATH") or DEFAULT_DISK_PATH,
        state_path=Path(_get_str(values, "PROBE_STATE_PATH") or DEFAULT_STATE_PATH),
        http_timeout_s=_parse_positive_float(
            values, "PROBE_HTTP_TIMEOUT_SECONDS", default=DEFAULT_HTTP_TIMEOUT_S
        ),
        collect_timeout_s=_parse_positive_float(
            values, "PROBE_COLLECT_TIMEOUT_SECONDS", default=DEFAULT_COLLECT_TIMEOUT_S
        ),
    )
