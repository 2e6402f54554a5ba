"""Configuration utilities for sshsentry."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from functools import lru_cache
from pathlib import Path
from typing import Dict, Optional, Tuple

from dotenv import load_dotenv
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_ROOT = Path("/var/db/sentry")
DB_FILENAME = "sentry.dbm"
DENYLIST_FILENAME = "hosts.deny"
LOCK_STRATEGIES = ("flock", "lease")

load_dotenv()


class Settings(BaseSettings):
    """Environment-backed settings, read from ``SENTRY_*`` variables."""

    model_config = SettingsConfigDict(
        env_prefix="SENTRY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    root_dir: Path = Field(default=DEFAULT_ROOT)
    db_path: Optional[Path] = Field(default=None)
    denylist_path: Optional[Path] = Field(default=None)

    add_to_tcpwrappers: bool = Field(default=True)
    add_to_pf: bool = Field(default=True)
    add_to_ipset: bool = Field(default=False)
    add_to_ipfw: bool = Field(default=False)
    firewall_table: str = Field(default="sentry_blacklist")
    expire_block_days: int = Field(default=90, ge=0)

    protect_ftp: bool = Field(default=True)
    protect_smtp: bool = Field(default=False)
    protect_mua: bool = Field(default=True)
    ssh_log: Optional[Path] = Field(default=None)
    ftp_log: Optional[Path] = Field(default=None)
    mail_log: Optional[Path] = Field(default=None)

    lock_strategy: str = Field(default="flock")
    lock_timeout: float = Field(default=10.0, gt=0)
    stale_lock_timeout: float = Field(default=1800.0, gt=0)

    seen_threshold: int = Field(default=3, ge=1)
    max_attempts: int = Field(default=10, ge=0)

    @field_validator("root_dir", mode="before")
    @classmethod
    def _expand_root(cls, value):
        if isinstance(value, (str, Path)) and str(value).strip():
            return Path(value).expanduser()
        raise ValueError("root_dir must be a filesystem path")

    @field_validator("db_path", "denylist_path", "ssh_log", "ftp_log", "mail_log", mode="before")
    @classmethod
    def _optional_path(cls, value):
        if value in (None, ""):
            return None
        if isinstance(value, (str, Path)):
            return Path(value).expanduser()
        raise ValueError("expected a filesystem path")

    @field_validator("lock_strategy", mode="before")
    @classmethod
    def _check_strategy(cls, value):
        strategy = str(value).strip().lower()
        if strategy not in LOCK_STRATEGIES:
            raise ValueError(f"lock_strategy must be one of {', '.join(LOCK_STRATEGIES)}")
        return strategy

    @model_validator(mode="after")
    def _derive_paths(self) -> "Settings":
        if self.db_path is None:
            self.db_path = self.root_dir / DB_FILENAME
        if self.denylist_path is None:
            self.denylist_path = self.root_dir / DENYLIST_FILENAME
        return self


@lru_cache()
def get_settings() -> Settings:
    return Settings()


@dataclass(frozen=True)
class EngineConfig:
    """Immutable toggles handed to the decision engine at construction."""

    root_dir: Path = DEFAULT_ROOT
    db_path: Optional[Path] = None
    denylist_path: Optional[Path] = None
    add_to_tcpwrappers: bool = True
    add_to_pf: bool = True
    add_to_ipset: bool = False
    add_to_ipfw: bool = False
    firewall_table: str = "sentry_blacklist"
    expire_block_days: int = 90
    protect_ftp: bool = True
    protect_smtp: bool = False
    protect_mua: bool = True
    ssh_log: Optional[Path] = None
    ftp_log: Optional[Path] = None
    mail_log: Optional[Path] = None
    lock_strategy: str = "flock"
    lock_timeout: float = 10.0
    stale_lock_timeout: float = 1800.0
    seen_threshold: int = 3
    max_attempts: int = 10

    def __post_init__(self) -> None:
        root = Path(self.root_dir)
        object.__setattr__(self, "root_dir", root)
        if self.db_path is None:
            object.__setattr__(self, "db_path", root / DB_FILENAME)
        if self.denylist_path is None:
            object.__setattr__(self, "denylist_path", root / DENYLIST_FILENAME)

    @classmethod
    def from_settings(cls, settings: Settings) -> "EngineConfig":
        return cls(
            root_dir=settings.root_dir,
            db_path=settings.db_path,
            denylist_path=settings.denylist_path,
            add_to_tcpwrappers=settings.add_to_tcpwrappers,
            add_to_pf=settings.add_to_pf,
            add_to_ipset=settings.add_to_ipset,
            add_to_ipfw=settings.add_to_ipfw,
            firewall_table=settings.firewall_table,
            expire_block_days=settings.expire_block_days,
            protect_ftp=settings.protect_ftp,
            protect_smtp=settings.protect_smtp,
            protect_mua=settings.protect_mua,
            ssh_log=settings.ssh_log,
            ftp_log=settings.ftp_log,
            mail_log=settings.mail_log,
            lock_strategy=settings.lock_strategy,
            lock_timeout=settings.lock_timeout,
            stale_lock_timeout=settings.stale_lock_timeout,
            seen_threshold=settings.seen_threshold,
            max_attempts=settings.max_attempts,
        )

    @property
    def block_ttl(self) -> Optional[timedelta]:
        if self.expire_block_days <= 0:
            return None
        return timedelta(days=self.expire_block_days)

    @property
    def enabled_protocols(self) -> Tuple[str, ...]:
        protocols = ["ssh"]
        if self.protect_ftp:
            protocols.append("ftp")
        if self.protect_smtp or self.protect_mua:
            protocols.append("mail")
        return tuple(protocols)

    @property
    def mail_scopes(self) -> Tuple[str, ...]:
        scopes = []
        if self.protect_smtp:
            scopes.append("smtp")
        if self.protect_mua:
            scopes.append("mua")
        return tuple(scopes)

    def log_paths(self) -> Dict[str, Optional[Path]]:
        return {"ssh": self.ssh_log, "ftp": self.ftp_log, "mail": self.mail_log}


__all__ = ["EngineConfig", "Settings", "get_settings"]
