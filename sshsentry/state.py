from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional


__all__ = [
    "RECORD_DELIMITER",
    "ReputationRecord",
    "Status",
    "utcnow",
]

logger = logging.getLogger(__name__)

RECORD_DELIMITER = "^"


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class Status(str, Enum):
    """Reputation status of an address, in query precedence order."""

    WHITELISTED = "whitelisted"
    BLACKLISTED = "blacklisted"
    OBSERVED = "observed"
    UNKNOWN = "unknown"


def _to_epoch(value: Optional[datetime]) -> int:
    if value is None:
        return 0
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


def _from_epoch(value: int) -> Optional[datetime]:
    if value <= 0:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


@dataclass
class ReputationRecord:
    """Persisted per-address state: observation count and list timestamps."""

    seen_count: int = 0
    whitelisted_at: Optional[datetime] = None
    blacklisted_at: Optional[datetime] = None

    @property
    def is_whitelisted(self) -> bool:
        return self.whitelisted_at is not None

    @property
    def is_blacklisted(self) -> bool:
        return self.blacklisted_at is not None

    def block_expired(self, *, now: datetime, ttl: Optional[timedelta]) -> bool:
        """Return ``True`` if the blacklist entry is older than ``ttl``.

        A ``ttl`` of ``None`` or zero means blocks never expire.
        """

        if self.blacklisted_at is None or not ttl:
            return False
        return now - self.blacklisted_at > ttl

    def status(self, *, now: Optional[datetime] = None, ttl: Optional[timedelta] = None) -> Status:
        # whitelist wins even when both timestamps are set
        if self.is_whitelisted:
            return Status.WHITELISTED
        if self.is_blacklisted and not self.block_expired(now=now or utcnow(), ttl=ttl):
            return Status.BLACKLISTED
        if self.seen_count > 0:
            return Status.OBSERVED
        return Status.UNKNOWN

    def copy(self) -> "ReputationRecord":
        return ReputationRecord(
            seen_count=self.seen_count,
            whitelisted_at=self.whitelisted_at,
            blacklisted_at=self.blacklisted_at,
        )

    def reset(self) -> None:
        self.seen_count = 0
        self.whitelisted_at = None
        self.blacklisted_at = None

    def encode(self) -> str:
        """Serialize as ``seen^white^black`` with epoch seconds, 0 for unset."""

        return RECORD_DELIMITER.join(
            (
                str(max(0, int(self.seen_count))),
                str(_to_epoch(self.whitelisted_at)),
                str(_to_epoch(self.blacklisted_at)),
            )
        )

    @classmethod
    def decode(cls, raw: str | bytes | None) -> "ReputationRecord":
        if raw is None:
            return cls()
        if isinstance(raw, bytes):
            raw = raw.decode("ascii", errors="replace")

        parts = raw.split(RECORD_DELIMITER)
        values = []
        for part in parts[:3]:
            part = part.strip()
            try:
                values.append(int(part) if part else 0)
            except ValueError:
                logger.warning("Discarding malformed reputation record %r", raw)
                return cls()
        while len(values) < 3:
            values.append(0)

        seen, white, black = values
        return cls(
            seen_count=max(0, seen),
            whitelisted_at=_from_epoch(white),
            blacklisted_at=_from_epoch(black),
        )

    def as_dict(self) -> Dict[str, object]:
        return {
            "seen_count": self.seen_count,
            "whitelisted_at": self.whitelisted_at.isoformat() if self.whitelisted_at else None,
            "blacklisted_at": self.blacklisted_at.isoformat() if self.blacklisted_at else None,
        }
