from __future__ import annotations

import json
import time
from contextlib import contextmanager
from pathlib import Path
from types import SimpleNamespace

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from probe_agent.signer import sign
from probe_api.app.config import load_settings
from probe_api.app.db import Base
from probe_api.app.models import MetricSample, Node
from probe_api.app.routes import ingest as ingest_routes
from probe_api.app.routes import nodes as nodes_routes


SECRET = "collector-secret"
NOW = 1_700_000_000.0


def _db_override(tmp_path: Path):
    db_path = tmp_path / "ingest-routes.db"
    engine = create_engine(f"sqlite+pysqlite:///{db_path}")
    Base.metadata.create_all(engine)
    session_local = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)

    @contextmanager
    def _db_session():
        session = session_local()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    return engine, session_local, _db_session


@pytest.fixture
def db(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    engine, session_local, db_override = _db_override(tmp_path)
    monkeypatch.setattr(ingest_routes, "db_session", db_override)
    monkeypatch.setattr(
        ingest_routes,
        "settings",
        SimpleNamespace(max_body_bytes=64 * 1024, max_clock_skew_s=300, probe_hmac_secret=SECRET),
    )
    return SimpleNamespace(engine=engine, session_local=session_local, db_session=db_override)


def _report(**overrides) -> dict:
    report = {
        "nodeId": "vps-1",
        "hostname": "vps-1.example",
        "snapshot": {
            "cpuPercent": 12.5,
            "memUsedPercent": 40.0,
            "diskUsedPercent": 55.0,
            "netRxBytes": 2_000,
            "netTxBytes": 800,
            "uptimeSeconds": 3_600,
            "bootTime": 1_699_996_400,
        },
        "bandwidth": {
            "deltaRxBytes": 1_000,
            "deltaTxBytes": 300,
            "totalRxBytes": 5_000,
            "totalTxBytes": 900,
            "rxSpeed": 100,
            "txSpeed": 30,
        },
        "meta": {"version": "0.1.0", "os": "linux", "arch": "amd64", "interval": 10},
    }
    report.update(overrides)
    return report


def _signed(body: bytes, *, ts: int = int(NOW), secret: str = SECRET) -> dict:
    timestamp = str(ts)
    return {
        "timestamp_header": timestamp,
        "signature_header": sign(secret.encode("utf-8"), timestamp, body),
    }


def _ingest(body: bytes, **headers):
    return ingest_routes.process_report(body, now=NOW, **headers)


def _row_counts(session_local) -> tuple[int, int]:
    with session_local() as session:
        nodes = len(session.execute(select(Node)).scalars().all())
        samples = len(session.execute(select(MetricSample)).scalars().all())
    return nodes, samples


def _error(exc: pytest.ExceptionInfo) -> tuple[int, str]:
    return exc.value.status_code, exc.value.detail["error"]


def test_valid_report_upserts_node_and_appends_sample(db) -> None:
    body = json.dumps(_report()).encode("utf-8")

    out = _ingest(body, **_signed(body))

    assert out.ok is True
    with db.session_local() as session:
        node = session.get(Node, "vps-1")
        assert node is not None
        assert node.name == "vps-1.example"
        assert node.cpu_percent == 12.5
        assert node.net_rx_total == 5_000
        assert node.net_tx_speed == 30
        assert node.uptime_seconds == 3_600
        assert (node.agent_version, node.os, node.arch) == ("0.1.0", "linux", "amd64")

        sample = session.execute(select(MetricSample)).scalars().one()
        assert sample.node_id == "vps-1"
        assert (sample.net_rx_bytes, sample.net_tx_bytes) == (1_000, 300)
        assert (sample.net_rx_total, sample.net_tx_total) == (5_000, 900)


def test_repeat_reports_update_node_in_place(db) -> None:
    first = json.dumps(_report()).encode("utf-8")
    _ingest(first, **_signed(first))

    update = _report(hostname=None, meta=None)
    update["snapshot"]["cpuPercent"] = 99.0
    second = json.dumps(update).encode("utf-8")
    _ingest(second, **_signed(second))

    assert _row_counts(db.session_local) == (1, 2)
    with db.session_local() as session:
        node = session.get(Node, "vps-1")
        assert node.name == "vps-1"
        assert node.cpu_percent == 99.0
        assert node.agent_version == "0.1.0"


def test_oversized_body_is_rejected_first(db) -> None:
    body = b"x" * (64 * 1024 + 1)

    with pytest.raises(HTTPException) as exc:
        _ingest(body, timestamp_header=None, signature_header=None)

    assert _error(exc) == (413, "payload_too_large")


@pytest.mark.parametrize("ts", [None, "", "abc", "-1", "1" * 21])
def test_missing_or_malformed_timestamp(db, ts) -> None:
    body = json.dumps(_report()).encode("utf-8")

    with pytest.raises(HTTPException) as exc:
        _ingest(body, timestamp_header=ts, signature_header="0" * 64)

    assert _error(exc) == (401, "missing_timestamp")


@pytest.mark.parametrize("offset", [-301, 301, -100_000])
def test_stale_timestamp_checked_before_signature(db, offset: int) -> None:
    body = json.dumps(_report()).encode("utf-8")

    with pytest.raises(HTTPException) as exc:
        _ingest(body, timestamp_header=str(int(NOW) + offset), signature_header="not-a-signature")

    assert _error(exc) == (401, "stale_timestamp")


def test_skew_boundary_is_inclusive(db) -> None:
    body = json.dumps(_report()).encode("utf-8")

    out = _ingest(body, **_signed(body, ts=int(NOW) - 300))

    assert out.ok is True


@pytest.mark.parametrize(
    "signature",
    [None, "", "abc", "0" * 64],
)
def test_invalid_signature_rejected(db, signature) -> None:
    body = json.dumps(_report()).encode("utf-8")

    with pytest.raises(HTTPException) as exc:
        _ingest(body, timestamp_header=str(int(NOW)), signature_header=signature)

    assert _error(exc) == (401, "invalid_signature")


def test_wrong_secret_is_invalid_signature(db) -> None:
    body = json.dumps(_report()).encode("utf-8")

    with pytest.raises(HTTPException) as exc:
        _ingest(body, **_signed(body, secret="other-secret"))

    assert _error(exc) == (401, "invalid_signature")


def test_signature_checked_before_json(db) -> None:
    body = b"{not json"

    with pytest.raises(HTTPException) as exc:
        _ingest(body, timestamp_header=str(int(NOW)), signature_header="0" * 64)

    assert _error(exc) == (401, "invalid_signature")


@pytest.mark.parametrize("body", [b"{not json", b"\xff\xfe", b""])
def test_signed_garbage_is_invalid_json(db, body: bytes) -> None:
    with pytest.raises(HTTPException) as exc:
        _ingest(body, **_signed(body))

    assert _error(exc) == (400, "invalid_json")


def _mutated(path: tuple[str, ...], value) -> dict:
    report = _report()
    target = report
    for key in path[:-1]:
        target = target[key]
    if value is _DROP:
        target.pop(path[-1])
    else:
        target[path[-1]] = value
    return report


_DROP = object()


@pytest.mark.parametrize(
    "path,value",
    [
        (("nodeId",), "bad id!"),
        (("nodeId",), "-leading-dash"),
        (("nodeId",), "x" * 65),
        (("nodeId",), _DROP),
        (("snapshot", "cpuPercent"), 100.5),
        (("snapshot", "memUsedPercent"), -1),
        (("snapshot", "netRxBytes"), -1),
        (("snapshot", "netRxBytes"), 1.5),
        (("snapshot", "netRxBytes"), "100"),
        (("bandwidth", "totalRxBytes"), 2**53),
        (("bandwidth", "rxSpeed"), True),
        (("bandwidth",), _DROP),
    ],
)
def test_invalid_payload_rejected_without_writes(db, path, value) -> None:
    body = json.dumps(_mutated(path, value)).encode("utf-8")

    with pytest.raises(HTTPException) as exc:
        _ingest(body, **_signed(body))

    assert _error(exc) == (400, "invalid_payload")
    assert _row_counts(db.session_local) == (0, 0)


def test_non_object_json_is_invalid_payload(db) -> None:
    body = b"[1,2,3]"

    with pytest.raises(HTTPException) as exc:
        _ingest(body, **_signed(body))

    assert _error(exc) == (400, "invalid_payload")


def test_http_surface_end_to_end(db, monkeypatch: pytest.MonkeyPatch) -> None:
    from probe_api.app import main as main_module

    monkeypatch.setenv("APP_ENV", "dev")
    monkeypatch.setattr(main_module, "engine", db.engine)
    monkeypatch.setattr(nodes_routes, "db_session", db.db_session)

    app = main_module.create_app(load_settings())
    body = json.dumps(_report()).encode("utf-8")
    ts = str(int(time.time()))
    headers = {
        "Content-Type": "application/json",
        "X-Probe-Timestamp": ts,
        "X-Probe-Signature": sign(SECRET.encode("utf-8"), ts, body),
    }

    with TestClient(app) as client:
        root = client.get("/")
        assert root.json() == {"service": "vps-probe", "status": "ok"}
        assert client.get("/healthz").json()["ok"] is True

        ok = client.post("/v1/ingest", content=body, headers=headers)
        assert ok.status_code == 200
        assert ok.json() == {"ok": True}
        assert ok.headers.get("X-Request-ID")

        bad = client.post("/v1/ingest", content=body, headers={**headers, "X-Probe-Signature": "0" * 64})
        assert bad.status_code == 401
        assert bad.json() == {"ok": False, "error": "invalid_signature"}

        listed = client.get("/v1/nodes")
        assert listed.status_code == 200
        assert [n["id"] for n in listed.json()] == ["vps-1"]

        missing = client.get("/v1/nodes/nope")
        assert missing.status_code == 404
        assert missing.json() == {"error": "not_found"}

        bad_range = client.get("/v1/nodes/vps-1/metrics", params={"range": "7d"})
        assert bad_range.status_code == 400
        assert bad_range.json() == {"error": "invalid_range"}


def test_oversized_content_length_rejected_over_http(db, monkeypatch: pytest.MonkeyPatch) -> None:
    from probe_api.app import main as main_module

    monkeypatch.setattr(main_module, "engine", db.engine)

    app = main_module.create_app(load_settings())
    with TestClient(app) as client:
        resp = client.post("/v1/ingest", content=b"x" * (64 * 1024 + 10))

    assert resp.status_code == 413
    assert resp.json() == {"ok": False, "error": "payload_too_large"}
