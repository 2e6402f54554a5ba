"""Log evidence classification for sshsentry.

Every protocol has an ordered rule table; the first rule whose pattern
matches a line's message decides its category. Patterns are anchored and
take the address only from the field the daemon itself writes, never from
user supplied text such as login names or client disconnect messages, so a
forged line cannot attribute an outcome to somebody else's address.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, Mapping, Optional, Pattern, Sequence

from .address import Address, parse_address
from .errors import LogUnavailable, ValidationError

logger = logging.getLogger(__name__)

PROTOCOLS = ("ssh", "ftp", "mail")
CATEGORIES = (
    "success",
    "naughty",
    "failed",
    "probed",
    "errors",
    "warnings",
    "info",
    "unknown",
)


@dataclass
class ClassificationResult:
    """Outcome counts for one (protocol, address) pair."""

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
    available: bool = True

    @property
    def total(self) -> int:
        return sum(getattr(self, category) for category in CATEGORIES)

    def add(self, category: str) -> None:
        if category not in CATEGORIES:
            raise ValueError(f"unknown category {category!r}")
        setattr(self, category, getattr(self, category) + 1)

    def counts(self) -> Dict[str, int]:
        return {category: getattr(self, category) for category in CATEGORIES}

    def as_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = {"protocol": self.protocol, "address": self.address}
        payload.update(self.counts())
        payload["total"] = self.total
        payload["available"] = self.available
        return payload


# ---------------------------------------------------------------------------
# Line shape
# ---------------------------------------------------------------------------

_PROCESS = r"(?P<process>[^\s\[\]:]+)(?:\[(?P<pid>\d+)\])?:\s+(?P<message>.*?)\s*$"
_HEADERS = (
    # Dec  3 12:14:16 host sshd[4026]: ...
    re.compile(
        r"^(?P<timestamp>[A-Z][a-z]{2}\s+\d{1,2}\s+\d{2}:\d{2}:\d{2})\s+(?P<host>\S+)\s+" + _PROCESS
    ),
    # 2024-12-20T07:10:05.913746+01:00 host sshd[4026]: ...
    re.compile(
        r"^(?P<timestamp>\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(?:\.\d+)?(?:Z|[+-]\d{2}:?\d{2})?)"
        r"\s+(?P<host>\S+)\s+" + _PROCESS
    ),
)


@dataclass(frozen=True)
class LogLine:
    """The structurally trusted fields of a syslog line."""

    timestamp: str
    host: str
    process: str
    pid: Optional[str]
    message: str


def parse_log_line(raw: str) -> Optional[LogLine]:
    for pattern in _HEADERS:
        match = pattern.match(raw)
        if match:
            return LogLine(
                timestamp=match.group("timestamp"),
                host=match.group("host"),
                process=match.group("process"),
                pid=match.group("pid"),
                message=match.group("message"),
            )
    return None


def _mention_pattern(address: Address) -> Pattern[str]:
    text = re.escape(address.text)
    if address.version == 4:
        return re.compile(r"(?<![\w.])" + text + r"(?!\w|\.\d)")
    return re.compile(r"(?<![\w:.])" + text + r"(?![\w:])", re.IGNORECASE)


def _same_address(candidate: Optional[str], address: Address) -> bool:
    if not candidate:
        return False
    try:
        return parse_address(candidate.strip("[]")).ip == address.ip
    except ValidationError:
        return False


# ---------------------------------------------------------------------------
# Rule tables
# ---------------------------------------------------------------------------

_ADDR = r"(?P<addr>[0-9A-Fa-f:.]+)"
_IPV4 = r"(?P<addr>\d{1,3}(?:\.\d{1,3}){3})"
_PREAUTH = r"(?: \[preauth\])?"
_SSH_PORT = r" port \d+(?: ssh2)?" + _PREAUTH


@dataclass(frozen=True)
class Rule:
    """One classification rule; ``pattern`` must capture ``addr``."""

    category: str
    pattern: Pattern[str]
    scope: Optional[str] = None

    def match(self, message: str):
        return self.pattern.fullmatch(message)


@dataclass(frozen=True)
class ProtocolRules:
    """Rule table for one protocol's log format."""

    name: str
    processes: Pattern[str]
    rules: Sequence[Rule]
    # address-only patterns for lines no rule classifies
    locators: Sequence[Rule] = field(default_factory=tuple)

    def accepts(self, line: LogLine) -> bool:
        return bool(self.processes.fullmatch(line.process))


def _rule(category: str, pattern: str, scope: Optional[str] = None) -> Rule:
    return Rule(category=category, pattern=re.compile(pattern), scope=scope)


SSH_RULES = ProtocolRules(
    name="ssh",
    processes=re.compile(r"sshd(?:-session)?(?:\(pam_unix\))?"),
    rules=(
        _rule("success", r"Accepted \S+ for .+ from " + _ADDR + r" port \d+(?: ssh2)?(?:: .*)?"),
        _rule("naughty", r"(?:Invalid|Illegal) user .* from " + _ADDR + r"(?: port \d+)?" + _PREAUTH),
        _rule(
            "naughty",
            r"error: maximum authentication attempts exceeded for (?:root|invalid user .*) from "
            + _ADDR
            + _SSH_PORT,
        ),
        _rule(
            "naughty",
            r"error: PAM: authentication error for (?:root|(?:illegal|invalid) user .*) from "
            + _ADDR
            + r"(?: via \S+)?",
        ),
        _rule("failed", r"error: PAM: authentication error for .+ from " + _ADDR + r"(?: via \S+)?"),
        _rule("failed", r"Failed \S+ for .* from " + _ADDR + _SSH_PORT),
        _rule(
            "failed",
            r"(?:pam_unix\(sshd:auth\): |\(pam_unix\) )?"
            r"(?:authentication failure|PAM \d+ more authentication failures?); "
            r"(?:\S+=\S* )*?ruser=\S* rhost=" + _ADDR + r"(?:\s+user=\S+)?",
        ),
        _rule("probed", r"Did not receive identification string from " + _ADDR + r"(?: port \d+)?"),
        _rule("probed", r"Unable to negotiate with " + _ADDR + r" port \d+: .*"),
        _rule("probed", r"banner exchange: Connection from " + _ADDR + r" port \d+: .*"),
        _rule(
            "warnings",
            r"reverse mapping checking getaddrinfo for \S+ \[" + _ADDR + r"\] failed"
            r"(?: - POSSIBLE BREAK-IN ATTEMPT!)?",
        ),
        _rule(
            "warnings",
            r"Address " + _ADDR + r" maps to \S+, but this does not map back to the address"
            r"(?: - POSSIBLE BREAK-IN ATTEMPT!)?",
        ),
        _rule(
            "info",
            r"Connection (?:closed|reset) by (?:(?:invalid |authenticating )?user \S+ )?"
            + _ADDR
            + r"(?: port \d+)?"
            + _PREAUTH,
        ),
        _rule(
            "info",
            r"(?:Received disconnect|Disconnected) from (?:(?:invalid |authenticating )?user \S+ )?"
            r"(?P<addr>[0-9A-Fa-f:.]+?)(?: port \d+)?(?::\s?\d+:.*|" + _PREAUTH + r")",
        ),
        _rule("errors", r"(?:error|fatal): .* (?:from|by) " + _ADDR + _SSH_PORT),
    ),
    locators=(
        _rule("unknown", r".* (?:from|by) " + _ADDR + _SSH_PORT),
        _rule("unknown", r".*\bruser=\S* rhost=" + _ADDR + r"(?:\s+user=\S+)?"),
    ),
)


_DOVECOT_TAIL = (
    r": (?:user=<.*>, )?(?:method=\S+, )?rip=" + _ADDR + r", lip=[0-9A-Fa-f:.]+(?:, .*)?"
)
_DOVECOT_PREFIX = r"(?:[\w-]+-login: )?"
_POSTFIX_CLIENT = r"[^\s\[\]]+\[" + _ADDR + r"\]"


def _vchkpw(category: str, text: str, scope: str) -> Rule:
    services = "smtp|submission" if scope == "smtp" else "pop3|imap"
    return _rule(category, r"vchkpw-(?:" + services + r"): " + text + r".*:" + _IPV4, scope)


MAIL_RULES = ProtocolRules(
    name="mail",
    processes=re.compile(
        r"dovecot|(?:imap|pop3|submission|managesieve)-login|vpopmail|postfix(?:/[\w-]+)*/smtpd"
    ),
    rules=(
        _rule("success", _DOVECOT_PREFIX + r"Login" + _DOVECOT_TAIL, "mua"),
        _rule(
            "naughty",
            _DOVECOT_PREFIX + r"(?:Disconnected|Aborted login) \(auth failed[^()]*\)" + _DOVECOT_TAIL,
            "mua",
        ),
        _rule(
            "probed",
            _DOVECOT_PREFIX + r"(?:Disconnected|Aborted login) \(no auth attempts[^()]*\)" + _DOVECOT_TAIL,
            "mua",
        ),
        _rule(
            "info",
            _DOVECOT_PREFIX + r"(?:Disconnected|Aborted login)(?: \([^()]*\))?" + _DOVECOT_TAIL,
            "mua",
        ),
        _vchkpw("success", r"(?:\(\S+\) )?login success ", "mua"),
        _vchkpw("success", r"(?:\(\S+\) )?login success ", "smtp"),
        _vchkpw("naughty", r"(?:null password given|vpopmail user not found) ", "mua"),
        _vchkpw("naughty", r"(?:null password given|vpopmail user not found) ", "smtp"),
        _vchkpw("failed", r"password fail ", "mua"),
        _vchkpw("failed", r"password fail ", "smtp"),
        _rule(
            "success",
            r"(?:[0-9A-Za-z]+: )?client=" + _POSTFIX_CLIENT + r"(?:, orig_queue_id=\S+)?"
            r", sasl_method=\S+, sasl_username=.*",
            "smtp",
        ),
        _rule("naughty", r"warning: " + _POSTFIX_CLIENT + r": SASL \S+ authentication failed(?::.*)?", "smtp"),
        _rule("naughty", r"NOQUEUE: reject: RCPT from " + _POSTFIX_CLIENT + r": 5\d\d .*", "smtp"),
        _rule("info", r"(?:dis)?connect from " + _POSTFIX_CLIENT + r"(?: .*)?", "smtp"),
    ),
    locators=(
        _rule("unknown", r".*\brip=" + _ADDR + r", lip=[0-9A-Fa-f:.]+(?:, .*)?", "mua"),
        _rule("unknown", r"vchkpw-\w+: .*:" + _IPV4),
        _rule("unknown", r"(?:[0-9A-Za-z]+: )?[\w ]*? from " + _POSTFIX_CLIENT + r"(?::.*)?", "smtp"),
    ),
)


FTP_PROCESSES = re.compile(r"ftpd")
_FTP_CONNECT = re.compile(r"connection from (?P<rdns>\S+) \(" + _ADDR + r"\)")
_FTP_SESSION_RULES = (
    ("info", re.compile(r"ANONYMOUS FTP LOGIN FROM (?P<rdns>[^\s,]+)(?:,? .*)?")),
    ("naughty", re.compile(r"FTP LOGIN REFUSED FROM (?P<rdns>[^\s,]+)(?:,? .*)?")),
    ("failed", re.compile(r"FTP LOGIN FAILED FROM (?P<rdns>[^\s,]+)(?:,? .*)?")),
    ("success", re.compile(r"FTP LOGIN FROM (?P<rdns>[^\s,]+)(?:,? .*)?")),
)

RULE_TABLES: Mapping[str, ProtocolRules] = {"ssh": SSH_RULES, "mail": MAIL_RULES}


# ---------------------------------------------------------------------------
# Classifier
# ---------------------------------------------------------------------------


class LogClassifier:
    """Turns a protocol's log file into outcome counts for one address.

    ``log_paths`` maps protocol names to the log file supplied by the
    deployment. ``mail_scopes`` limits the mail rules to ``"smtp"`` (postfix
    and vchkpw-smtp) and/or ``"mua"`` (dovecot and vchkpw-pop3/imap).
    """

    def __init__(
        self,
        log_paths: Mapping[str, Optional[Path]],
        *,
        mail_scopes: Iterable[str] = ("smtp", "mua"),
    ) -> None:
        self._log_paths = {name: Path(path) if path else None for name, path in log_paths.items()}
        self._mail_scopes: FrozenSet[str] = frozenset(mail_scopes)

    def classify(self, protocol: str, address: Address) -> ClassificationResult:
        """Classify ``protocol``'s log for ``address``.

        Raises :class:`LogUnavailable` if the log is not configured or cannot
        be read.
        """

        if protocol not in PROTOCOLS:
            raise ValueError(f"unknown protocol {protocol!r}")
        path = self._log_paths.get(protocol)
        if path is None:
            raise LogUnavailable(f"no {protocol} log configured")
        logger.debug("Checking %s log %s for %s", protocol, path, address)
        try:
            with path.open("r", encoding="utf-8", errors="replace") as handle:
                return self.classify_lines(protocol, address, handle)
        except OSError as exc:
            raise LogUnavailable(f"unable to read {protocol} log {path}: {exc}") from exc

    def classify_lines(
        self,
        protocol: str,
        address: Address,
        lines: Iterable[str],
    ) -> ClassificationResult:
        if protocol == "ftp":
            result = _classify_ftp(address, lines)
        else:
            scopes = self._mail_scopes if protocol == "mail" else None
            result = _classify_with_rules(RULE_TABLES[protocol], address, lines, scopes)
        logger.debug("%s evidence for %s: %s", protocol, address, result.counts())
        return result


def _in_scope(rule: Rule, scopes: Optional[FrozenSet[str]]) -> bool:
    return scopes is None or rule.scope is None or rule.scope in scopes


def _classify_with_rules(
    table: ProtocolRules,
    address: Address,
    lines: Iterable[str],
    scopes: Optional[FrozenSet[str]],
) -> ClassificationResult:
    result = ClassificationResult(protocol=table.name, address=address.text)
    mention = _mention_pattern(address)

    for raw in lines:
        if address.version == 4 and address.text not in raw:
            continue
        line = parse_log_line(raw)
        if line is None or not table.accepts(line):
            continue
        if not mention.search(line.message):
            continue

        category = _first_match(table.rules, line.message, address, scopes)
        if category is None:
            # no outcome rule fits; count it only if the line provably concerns us
            if _first_match(table.locators, line.message, address, scopes) == "unknown":
                result.add("unknown")
                logger.debug("Unclassified %s line: %s", table.name, raw.rstrip())
            continue
        if category:
            result.add(category)
    return result


def _first_match(
    rules: Sequence[Rule],
    message: str,
    address: Address,
    scopes: Optional[FrozenSet[str]],
) -> Optional[str]:
    """Return the category of the first matching rule.

    ``""`` means a rule matched but the line concerns another address;
    ``None`` means no rule matched at all.
    """

    for rule in rules:
        if not _in_scope(rule, scopes):
            continue
        match = rule.match(message)
        if match is None:
            continue
        if _same_address(match.group("addr"), address):
            return rule.category
        return ""
    return None


def _classify_ftp(address: Address, lines: Iterable[str]) -> ClassificationResult:
    """Classify BSD ftpd logs, where outcomes follow a ``connection from`` line.

    Sessions are keyed by ftpd pid; an outcome line only counts when its
    reverse DNS name matches the one recorded on the session's connect line.
    """

    result = ClassificationResult(protocol="ftp", address=address.text)
    sessions: Dict[str, str] = {}

    for raw in lines:
        line = parse_log_line(raw)
        if line is None or not FTP_PROCESSES.fullmatch(line.process) or line.pid is None:
            continue

        connect = _FTP_CONNECT.fullmatch(line.message)
        if connect is not None:
            if _same_address(connect.group("addr"), address):
                sessions[line.pid] = connect.group("rdns").lower()
            else:
                sessions.pop(line.pid, None)
            continue

        rdns = sessions.get(line.pid)
        if rdns is None:
            continue
        for category, pattern in _FTP_SESSION_RULES:
            match = pattern.fullmatch(line.message)
            if match is None:
                continue
            if match.group("rdns").lower() == rdns:
                result.add(category)
            break
    return result


__all__ = [
    "CATEGORIES",
    "PROTOCOLS",
    "ClassificationResult",
    "LogClassifier",
    "LogLine",
    "ProtocolRules",
    "Rule",
    "parse_log_line",
]
