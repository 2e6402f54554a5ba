"""Decision engine: the per-address state machine and invocation contract."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from .address import Address, parse_address
from .classifier import ClassificationResult, LogClassifier
from .config import EngineConfig, Settings, get_settings
from .enforcement import (
    CommandRunner,
    EnforcementBackend,
    EnforcementOutcome,
    Enforcer,
    IpsetTable,
    LegacyFirewallRule,
    PacketFilterTable,
    TcpWrappersDenylist,
    Verb,
    run_command,
)
from .errors import LogUnavailable, ValidationError
from .legacy import import_legacy
from .state import ReputationRecord, Status, utcnow
from .store import ReputationStore

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class Action(str, Enum):
    CONNECT = "connect"
    WHITELIST = "whitelist"
    BLACKLIST = "blacklist"
    DELIST = "delist"
    REPORT = "report"


class Classifier(Protocol):
    def classify(self, protocol: str, address: Address) -> ClassificationResult:
        ...


@dataclass
class Decision:
    """Outcome of one mutating invocation for one address."""

    address: str
    action: Action
    record: ReputationRecord
    status: Status
    transition: Optional[str] = None
    outcomes: List[EnforcementOutcome] = field(default_factory=list)
    classifications: Dict[str, ClassificationResult] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "address": self.address,
            "action": self.action.value,
            "status": self.status.value,
            "transition": self.transition,
            "record": self.record.as_dict(),
            "outcomes": [outcome.as_dict() for outcome in self.outcomes],
        }
        if self.classifications:
            payload["classifications"] = {
                name: result.as_dict() for name, result in self.classifications.items()
            }
        return payload


@dataclass
class ReportSummary:
    """Store-wide counters, optionally with detail for a single address."""

    unique_addresses: int = 0
    total_seen: int = 0
    whitelisted: int = 0
    blacklisted: int = 0
    address: Optional[str] = None
    record: Optional[ReputationRecord] = None
    status: Optional[Status] = None
    classifications: Dict[str, ClassificationResult] = field(default_factory=dict)
    outcomes: List[EnforcementOutcome] = field(default_factory=list)
    dump: Optional[List[Tuple[str, ReputationRecord]]] = None

    def as_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "unique_addresses": self.unique_addresses,
            "total_seen": self.total_seen,
            "whitelisted": self.whitelisted,
            "blacklisted": self.blacklisted,
        }
        if self.address is not None:
            payload["address"] = self.address
            payload["status"] = self.status.value if self.status else None
            payload["record"] = self.record.as_dict() if self.record else None
            payload["classifications"] = {
                name: result.as_dict() for name, result in self.classifications.items()
            }
            payload["outcomes"] = [outcome.as_dict() for outcome in self.outcomes]
        if self.dump is not None:
            payload["dump"] = [{"key": key, **record.as_dict()} for key, record in self.dump]
        return payload


class DecisionEngine:
    """Applies connection events and administrative actions to the store.

    Each public method holds the store lock for its whole read, decide,
    write and enforce cycle and writes the record at most once. Verbs are
    issued only after the record is stored.
    """

    def __init__(
        self,
        store: ReputationStore,
        classifier: Classifier,
        enforcer: Enforcer,
        config: EngineConfig,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.classifier = classifier
        self.enforcer = enforcer
        self.config = config
        self._clock = clock

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def connect(self, address: Address) -> Decision:
        with self.store.locked():
            record = self._load(address)
            record.seen_count += 1
            decision = self._decision(address, Action.CONNECT, record)
            now = self._now()
            verbs: List[Verb] = []

            if record.is_whitelisted:
                logger.debug("%s is whitelisted", address)
            elif record.is_blacklisted and not record.block_expired(now=now, ttl=self.config.block_ttl):
                logger.debug("%s is blacklisted", address)
            else:
                if record.is_blacklisted:
                    verbs += self._expire_block(address, record, decision)
                verbs += self._evaluate(address, record, decision, now)

            self._commit(address, record, decision, verbs)
        return decision

    def whitelist(self, address: Address) -> Decision:
        with self.store.locked():
            record = self._load(address)
            decision = self._decision(address, Action.WHITELIST, record)
            record.whitelisted_at = self._now()
            record.blacklisted_at = None
            decision.transition = "whitelisted"
            logger.info("Whitelisting %s", address)
            self._commit(address, record, decision, [Verb.ALLOW, Verb.REVOKE_BLOCK])
        return decision

    def blacklist(self, address: Address) -> Decision:
        with self.store.locked():
            record = self._load(address)
            decision = self._decision(address, Action.BLACKLIST, record)
            record.blacklisted_at = self._now()
            record.whitelisted_at = None
            decision.transition = "blacklisted"
            logger.info("Blacklisting %s", address)
            self._commit(address, record, decision, [Verb.BLOCK])
        return decision

    def delist(self, address: Address) -> Decision:
        with self.store.locked():
            record = self._load(address)
            decision = self._decision(address, Action.DELIST, record)
            logger.info("Delisting %s", address)
            record.reset()
            decision.transition = "delisted"
            self._commit(address, record, decision, [Verb.REVOKE_BLOCK, Verb.REVOKE_ALLOW])
        return decision

    def report(self, address: Optional[Address] = None, *, dump: bool = False) -> ReportSummary:
        """Summarize the store; with ``address``, include its record and evidence.

        Reporting never counts as a connection. An expired block found while
        reporting on ``address`` is lifted and persisted.
        """

        summary = ReportSummary()
        with self.store.locked():
            entries = list(self.store.items())
            if address is not None:
                self._report_address(address, summary, entries)

        for _key, record in entries:
            summary.unique_addresses += 1
            summary.total_seen += record.seen_count
            if record.is_whitelisted:
                summary.whitelisted += 1
            if record.is_blacklisted:
                summary.blacklisted += 1
        if dump:
            summary.dump = sorted(entries, key=lambda pair: pair[0])
        return summary

    def import_legacy(self, root_dir: Optional[Path] = None) -> int:
        with self.store.locked():
            return import_legacy(self.store, Path(root_dir or self.config.root_dir))

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _now(self) -> datetime:
        return self._clock().replace(microsecond=0)

    def _load(self, address: Address) -> ReputationRecord:
        return self.store.get(address.key) or ReputationRecord()

    def _commit(
        self,
        address: Address,
        record: ReputationRecord,
        decision: Decision,
        verbs: Sequence[Verb],
    ) -> None:
        # enforcement only follows a record that reached the store
        self.store.put(address.key, record)
        decision.status = record.status(now=self._now(), ttl=self.config.block_ttl)
        if verbs:
            decision.outcomes += self.enforcer.issue(address, verbs)

    def _decision(self, address: Address, action: Action, record: ReputationRecord) -> Decision:
        return Decision(
            address=address.text,
            action=action,
            record=record,
            status=record.status(now=self._now(), ttl=self.config.block_ttl),
        )

    def _expire_block(self, address: Address, record: ReputationRecord, decision: Decision) -> List[Verb]:
        logger.info("Block on %s expired (since %s)", address, record.blacklisted_at)
        record.blacklisted_at = None
        decision.transition = "block_expired"
        return [Verb.REVOKE_BLOCK]

    def _evaluate(
        self,
        address: Address,
        record: ReputationRecord,
        decision: Decision,
        now: datetime,
    ) -> List[Verb]:
        if record.seen_count < self.config.seen_threshold:
            return []

        results = self._classify(address)
        decision.classifications = results
        evidence = [result for result in results.values() if result.available]

        if any(result.success > 0 for result in evidence):
            record.whitelisted_at = now
            decision.transition = "whitelisted"
            logger.info("Whitelisting %s after successful authentication", address)
            return [Verb.ALLOW]
        if any(result.naughty > 0 for result in evidence):
            logger.info("Blacklisting %s for abusive attempts", address)
        elif any(result.total > self.config.max_attempts for result in evidence):
            logger.info("Blacklisting %s for excessive attempts", address)
        else:
            return []
        record.blacklisted_at = now
        decision.transition = "blacklisted"
        return [Verb.BLOCK]

    def _classify(self, address: Address) -> Dict[str, ClassificationResult]:
        results: Dict[str, ClassificationResult] = {}
        for protocol in self.config.enabled_protocols:
            try:
                results[protocol] = self.classifier.classify(protocol, address)
            except LogUnavailable as exc:
                logger.warning("Skipping %s evidence for %s: %s", protocol, address, exc)
                results[protocol] = ClassificationResult(
                    protocol=protocol, address=address.text, available=False
                )
        return results

    def _report_address(
        self,
        address: Address,
        summary: ReportSummary,
        entries: List[Tuple[str, ReputationRecord]],
    ) -> None:
        record = self.store.get(address.key)
        summary.address = address.text
        if record is not None and record.block_expired(now=self._now(), ttl=self.config.block_ttl):
            logger.info("Block on %s expired (since %s)", address, record.blacklisted_at)
            record.blacklisted_at = None
            self.store.put(address.key, record)
            entries[:] = [(key, record if key == address.key else value) for key, value in entries]
            summary.outcomes += self.enforcer.issue(address, [Verb.REVOKE_BLOCK])

        summary.record = record or ReputationRecord()
        summary.status = summary.record.status(now=self._now(), ttl=self.config.block_ttl)
        summary.classifications = self._classify(address)


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def build_backends(config: EngineConfig, *, runner: CommandRunner = run_command) -> List[EnforcementBackend]:
    backends: List[EnforcementBackend] = []
    if config.add_to_tcpwrappers:
        backends.append(TcpWrappersDenylist(config.denylist_path))
    if config.add_to_pf:
        backends.append(PacketFilterTable(config.firewall_table, runner=runner))
    if config.add_to_ipset:
        backends.append(IpsetTable(config.firewall_table, runner=runner))
    if config.add_to_ipfw:
        backends.append(LegacyFirewallRule())
    return backends


class Sentry:
    """Entry point shared by the CLI and the web service."""

    def __init__(self, engine: DecisionEngine) -> None:
        self.engine = engine

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        *,
        classifier: Optional[Classifier] = None,
        backends: Optional[Sequence[EnforcementBackend]] = None,
        runner: CommandRunner = run_command,
        clock: Clock = utcnow,
    ) -> "Sentry":
        store = ReputationStore.open(
            config.db_path,
            lock_strategy=config.lock_strategy,
            lock_timeout=config.lock_timeout,
            stale_lock_timeout=config.stale_lock_timeout,
        )
        if classifier is None:
            classifier = LogClassifier(config.log_paths(), mail_scopes=config.mail_scopes)
        if backends is None:
            backends = build_backends(config, runner=runner)
        engine = DecisionEngine(store, classifier, Enforcer(backends), config, clock=clock)
        return cls(engine)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "Sentry":
        return cls.from_config(EngineConfig.from_settings(settings or get_settings()))

    def dispatch(self, address: Optional[str], action: str, *, dump: bool = False):
        """Validate ``address`` and run ``action`` against it.

        Returns a :class:`Decision`, or a :class:`ReportSummary` for
        ``report``. The address is optional only for ``report``.
        """

        try:
            verb = Action(action)
        except ValueError:
            raise ValidationError(f"unknown action {action!r}") from None

        if verb is Action.REPORT:
            parsed = parse_address(address) if address is not None else None
            return self.engine.report(parsed, dump=dump)

        if address is None:
            raise ValidationError(f"{verb.value} requires an address")
        parsed = parse_address(address)
        handler = {
            Action.CONNECT: self.engine.connect,
            Action.WHITELIST: self.engine.whitelist,
            Action.BLACKLIST: self.engine.blacklist,
            Action.DELIST: self.engine.delist,
        }[verb]
        return handler(parsed)

    def import_legacy(self, root_dir: Optional[Path] = None) -> int:
        return self.engine.import_legacy(root_dir)


__all__ = [
    "Action",
    "Classifier",
    "Decision",
    "DecisionEngine",
    "ReportSummary",
    "Sentry",
    "build_backends",
]
