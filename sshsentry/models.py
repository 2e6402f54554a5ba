"""Pydantic models used by the sshsentry web service."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class RecordModel(BaseModel):
    """Persisted reputation of one address."""

    seen_count: int = Field(default=0, description="Number of connections observed")
    whitelisted_at: Optional[datetime] = Field(default=None, description="When the address was whitelisted")
    blacklisted_at: Optional[datetime] = Field(default=None, description="When the address was blacklisted")


class DumpEntry(RecordModel):
    key: str


class OutcomeModel(BaseModel):
    """Result of issuing one verb to one enforcement backend."""

    address: str
    verb: str
    backend: str
    ok: bool
    detail: Optional[str] = None


class ClassificationModel(BaseModel):
    """Log evidence counts for one protocol."""

    protocol: str
    address: str
    success: int = 0
    naughty: int = 0
    failed: int = 0
    probed: int = 0
    errors: int = 0
    warnings: int = 0
    info: int = 0
    unknown: int = 0
    total: int = 0
    available: bool = True


class DecisionEnvelope(BaseModel):
    """API envelope for connection events and administrative actions."""

    address: str
    action: str
    status: str
    transition: Optional[str] = None
    record: RecordModel
    outcomes: List[OutcomeModel] = Field(default_factory=list)
    classifications: Dict[str, ClassificationModel] = Field(default_factory=dict)


class ReportEnvelope(BaseModel):
    """Store-wide summary."""

    unique_addresses: int
    total_seen: int
    whitelisted: int
    blacklisted: int
    dump: Optional[List[DumpEntry]] = None


class RecordEnvelope(BaseModel):
    """Reputation and current log evidence for a single address."""

    address: str
    status: str
    record: RecordModel
    classifications: Dict[str, ClassificationModel] = Field(default_factory=dict)
    outcomes: List[OutcomeModel] = Field(default_factory=list)


class HealthEnvelope(BaseModel):
    status: str = "ok"
    store: str


__all__ = [
    "ClassificationModel",
    "DecisionEnvelope",
    "DumpEntry",
    "HealthEnvelope",
    "OutcomeModel",
    "RecordEnvelope",
    "RecordModel",
    "ReportEnvelope",
]
