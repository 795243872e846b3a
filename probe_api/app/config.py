from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List


def _get_bool(name: str, default: bool = False) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}


def _get_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    return int(v)


def _get_list(name: str, default: List[str]) -> List[str]:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    return [s.strip() for s in v.split(",") if s.strip()]


@dataclass(frozen=True)
class Settings:
    app_env: str
    log_level: str
    log_format: str

    # Secrets / external deps
    database_url: str
    probe_hmac_secret: str = field(repr=False)

    # Ingest hardening
    max_body_bytes: int
    max_clock_skew_s: int

    # Node status
    offline_after_s: int

    enable_docs: bool
    cors_allow_origins: List[str]


def load_settings() -> Settings:
    app_env = (os.getenv("APP_ENV", "dev").strip() or "dev").lower()

    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        if app_env == "dev":
            database_url = "sqlite:///./vps_probe.sqlite"
        else:
            raise RuntimeError("DATABASE_URL must be set when APP_ENV is not 'dev'")

    probe_hmac_secret = os.getenv("PROBE_HMAC_SECRET", "")
    if not probe_hmac_secret:
        if app_env == "dev":
            probe_hmac_secret = "dev-probe-secret"
        else:
            raise RuntimeError("PROBE_HMAC_SECRET must be set when APP_ENV is not 'dev'")

    return Settings(
        app_env=app_env,
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        log_format=os.getenv("LOG_FORMAT", "text"),
        database_url=database_url,
        probe_hmac_secret=probe_hmac_secret,
        max_body_bytes=max(1, _get_int("MAX_BODY_BYTES", 64 * 1024)),
        max_clock_skew_s=max(0, _get_int("MAX_CLOCK_SKEW_S", 5 * 60)),
        offline_after_s=max(1, _get_int("OFFLINE_AFTER_S", 120)),
        enable_docs=_get_bool("ENABLE_DOCS", app_env == "dev"),
        cors_allow_origins=_get_list("CORS_ALLOW_ORIGINS", ["*"] if app_env == "dev" else []),
    )


settings = load_settings()
