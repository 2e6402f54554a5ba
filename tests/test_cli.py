from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sshsentry.cli import EXIT_LOCK, EXIT_OK, EXIT_USAGE, main
from sshsentry.config import get_settings
from sshsentry.store import FlockLock

IP = "203.0.113.5"


@pytest.fixture()
def sentry_env(tmp_path, monkeypatch):
    log = tmp_path / "auth.log"
    log.write_text(
        "Jan  5 10:00:03 gw sshd[101]: Failed password for root from 203.0.113.5 port 4242 ssh2\n"
        "Jan  5 10:00:04 gw sshd[102]: Accepted password for root from 198.51.100.7 port 4000 ssh2\n"
    )
    monkeypatch.setenv("SENTRY_ROOT_DIR", str(tmp_path))
    monkeypatch.setenv("SENTRY_SSH_LOG", str(log))
    monkeypatch.setenv("SENTRY_ADD_TO_PF", "false")
    monkeypatch.setenv("SENTRY_PROTECT_FTP", "false")
    monkeypatch.setenv("SENTRY_PROTECT_MUA", "false")
    monkeypatch.setenv("SENTRY_LOCK_TIMEOUT", "0.2")
    get_settings.cache_clear()
    yield tmp_path
    get_settings.cache_clear()


def test_blacklist_writes_denylist(sentry_env, capsys):
    assert main(["--ip", IP, "--blacklist"]) == EXIT_OK
    assert (sentry_env / "hosts.deny").read_text() == f"ALL: {IP} : deny\n"
    assert f"{IP}: blacklisted" in capsys.readouterr().out


def test_connects_whitelist_successful_login(sentry_env, capsys):
    for _ in range(2):
        assert main(["--ip", "198.51.100.7", "--connect", "--json"]) == EXIT_OK
        assert json.loads(capsys.readouterr().out)["status"] == "observed"

    assert main(["--ip", "198.51.100.7", "--connect", "--json"]) == EXIT_OK
    decision = json.loads(capsys.readouterr().out)
    assert decision["status"] == "whitelisted"
    assert decision["classifications"]["ssh"]["success"] == 1


def test_report_json(sentry_env, capsys):
    main(["--ip", IP, "--connect"])
    main(["--ip", "198.51.100.7", "--whitelist"])
    capsys.readouterr()

    assert main(["--report", "--dbdump", "--json"]) == EXIT_OK
    report = json.loads(capsys.readouterr().out)
    assert report["unique_addresses"] == 2
    assert report["total_seen"] == 1
    assert report["whitelisted"] == 1
    assert len(report["dump"]) == 2


def test_report_text_for_address(sentry_env, capsys):
    main(["--ip", IP, "--connect"])
    capsys.readouterr()

    assert main(["--report", "--ip", IP]) == EXIT_OK
    out = capsys.readouterr().out
    assert "1 unique IPs have connected 1 times" in out
    assert f"{IP}: observed" in out
    assert "ssh: total=1 (failed=1)" in out


def test_invalid_address_exit_code(sentry_env, capsys):
    assert main(["--ip", "300.1.1.1", "--connect"]) == EXIT_USAGE
    assert "invalid address" in capsys.readouterr().err


def test_invalid_address_is_rejected_before_the_store_opens(tmp_path, monkeypatch, capsys):
    root = tmp_path / "missing"
    monkeypatch.setenv("SENTRY_ROOT_DIR", str(root))
    monkeypatch.setenv("SENTRY_ADD_TO_PF", "false")
    get_settings.cache_clear()
    try:
        assert main(["--ip", "not-an-ip", "--blacklist"]) == EXIT_USAGE
    finally:
        get_settings.cache_clear()

    assert "invalid address" in capsys.readouterr().err
    assert not root.exists()


def test_action_requires_ip(sentry_env):
    with pytest.raises(SystemExit) as excinfo:
        main(["--connect"])
    assert excinfo.value.code == 2


def test_lock_timeout_exit_code(sentry_env):
    main(["--report"])
    holder = FlockLock(sentry_env / "sentry.dbm.lock")
    holder.acquire()
    try:
        assert main(["--ip", IP, "--blacklist"]) == EXIT_LOCK
    finally:
        holder.release()
    assert not (sentry_env / "hosts.deny").exists()


def test_import_legacy(sentry_env, capsys):
    seen = sentry_env.joinpath("seen", "203", "0", "113", "5")
    seen.parent.mkdir(parents=True)
    seen.write_text("x\n")

    assert main(["--import-legacy"]) == EXIT_OK
    assert "imported 1 legacy records" in capsys.readouterr().out
