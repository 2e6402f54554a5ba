from __future__ import annotations

import sys
from datetime import timedelta
from pathlib import Path

import pytest
from pydantic import ValidationError

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sshsentry.config import EngineConfig, Settings


def test_settings_read_prefixed_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("SENTRY_ROOT_DIR", str(tmp_path))
    monkeypatch.setenv("SENTRY_ADD_TO_IPSET", "true")
    monkeypatch.setenv("SENTRY_EXPIRE_BLOCK_DAYS", "0")
    monkeypatch.setenv("SENTRY_SSH_LOG", str(tmp_path / "auth.log"))

    settings = Settings()

    assert settings.db_path == tmp_path / "sentry.dbm"
    assert settings.denylist_path == tmp_path / "hosts.deny"
    assert settings.add_to_ipset is True
    assert settings.ssh_log == tmp_path / "auth.log"

    config = EngineConfig.from_settings(settings)
    assert config.block_ttl is None
    assert config.log_paths()["ssh"] == tmp_path / "auth.log"


def test_unknown_lock_strategy_is_rejected(monkeypatch):
    monkeypatch.setenv("SENTRY_LOCK_STRATEGY", "semaphore")
    with pytest.raises(ValidationError):
        Settings()


def test_engine_config_protocols_and_scopes(tmp_path):
    config = EngineConfig(root_dir=tmp_path, protect_ftp=False, protect_smtp=True, protect_mua=False)
    assert config.enabled_protocols == ("ssh", "mail")
    assert config.mail_scopes == ("smtp",)
    assert config.block_ttl == timedelta(days=90)
    assert config.db_path == tmp_path / "sentry.dbm"

    bare = EngineConfig(root_dir=tmp_path, protect_ftp=False, protect_smtp=False, protect_mua=False)
    assert bare.enabled_protocols == ("ssh",)
