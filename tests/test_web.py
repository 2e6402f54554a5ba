from __future__ import annotations

import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sshsentry.config import EngineConfig
from sshsentry.engine import Sentry
from sshsentry.enforcement import TcpWrappersDenylist
from sshsentry.store import FlockLock
from sshsentry.web import app, get_sentry

IP = "203.0.113.5"


@pytest.fixture()
def client(tmp_path):
    log = tmp_path / "auth.log"
    log.write_text(
        "Jan  5 10:00:02 gw sshd[101]: Invalid user admin from 203.0.113.5 port 4242\n"
    )
    config = EngineConfig(
        root_dir=tmp_path,
        ssh_log=log,
        protect_ftp=False,
        protect_mua=False,
        lock_timeout=0.2,
    )
    sentry = Sentry.from_config(config, backends=[TcpWrappersDenylist(config.denylist_path)])
    app.dependency_overrides[get_sentry] = lambda: sentry
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def test_healthz(client, tmp_path):
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "store": str(tmp_path / "sentry.dbm")}


def test_connects_reach_blacklist(client, tmp_path):
    for _ in range(2):
        body = client.post(f"/api/addresses/{IP}/connect").json()
        assert body["status"] == "observed"

    response = client.post(f"/api/addresses/{IP}/connect")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "blacklisted"
    assert body["transition"] == "blacklisted"
    assert body["classifications"]["ssh"]["naughty"] == 1
    assert body["outcomes"] == [
        {"address": IP, "verb": "block", "backend": "tcpwrappers", "ok": True, "detail": None}
    ]
    assert (tmp_path / "hosts.deny").read_text() == f"ALL: {IP} : deny\n"


def test_address_lookup_and_report(client):
    client.post(f"/api/addresses/{IP}/whitelist")

    record = client.get(f"/api/addresses/{IP}").json()
    assert record["status"] == "whitelisted"
    assert record["record"]["seen_count"] == 0
    assert record["record"]["whitelisted_at"] is not None

    report = client.get("/api/report", params={"dump": True}).json()
    assert report["unique_addresses"] == 1
    assert report["whitelisted"] == 1
    assert report["dump"][0]["key"] == "3405803781"


def test_invalid_address_is_422(client):
    response = client.post("/api/addresses/not-an-ip/connect")
    assert response.status_code == 422


def test_invalid_address_never_builds_the_sentry(tmp_path):
    built = []

    def build():
        built.append(True)
        return Sentry.from_config(EngineConfig(root_dir=tmp_path / "missing"), backends=[])

    app.dependency_overrides[get_sentry] = build
    try:
        client = TestClient(app)
        assert client.post("/api/addresses/not-an-ip/blacklist").status_code == 422
        assert client.get("/api/addresses/999.1.1.1").status_code == 422
    finally:
        app.dependency_overrides.clear()

    assert built == []
    assert not (tmp_path / "missing").exists()


def test_unknown_action_is_404(client):
    assert client.post(f"/api/addresses/{IP}/report").status_code == 404
    assert client.post(f"/api/addresses/{IP}/pardon").status_code == 404


def test_busy_store_is_503(client, tmp_path):
    holder = FlockLock(tmp_path / "sentry.dbm.lock")
    holder.acquire()
    try:
        response = client.post(f"/api/addresses/{IP}/blacklist")
    finally:
        holder.release()
    assert response.status_code == 503
    assert not (tmp_path / "hosts.deny").exists()
