"""sshsentry exports."""

__version__ = "0.4.0"

from .address import Address, is_valid_address, parse_address
from .classifier import ClassificationResult, LogClassifier
from .config import EngineConfig, Settings, get_settings
from .engine import Action, Decision, DecisionEngine, ReportSummary, Sentry
from .enforcement import (
    EnforcementAction,
    EnforcementOutcome,
    Enforcer,
    IpsetTable,
    LegacyFirewallRule,
    PacketFilterTable,
    TcpWrappersDenylist,
    Verb,
)
from .errors import (
    BackendError,
    LockUnavailable,
    LogUnavailable,
    SentryError,
    StoreIOError,
    ValidationError,
)
from .state import ReputationRecord, Status
from .store import ReputationStore

__all__ = [
    "Action",
    "Address",
    "BackendError",
    "ClassificationResult",
    "Decision",
    "DecisionEngine",
    "EnforcementAction",
    "EnforcementOutcome",
    "Enforcer",
    "EngineConfig",
    "IpsetTable",
    "LegacyFirewallRule",
    "LockUnavailable",
    "LogClassifier",
    "LogUnavailable",
    "PacketFilterTable",
    "ReportSummary",
    "ReputationRecord",
    "ReputationStore",
    "Sentry",
    "SentryError",
    "Settings",
    "Status",
    "StoreIOError",
    "TcpWrappersDenylist",
    "ValidationError",
    "Verb",
    "get_settings",
    "is_valid_address",
    "parse_address",
]
