"""Enforcement backends that apply allow/block verdicts to the host."""
from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol, Sequence

from .address import Address, parse_address
from .errors import BackendError, ValidationError

logger = logging.getLogger(__name__)

CommandRunner = Callable[[Sequence[str]], "subprocess.CompletedProcess[str]"]


class Verb(str, Enum):
    ALLOW = "allow"
    BLOCK = "block"
    REVOKE_ALLOW = "revoke_allow"
    REVOKE_BLOCK = "revoke_block"


_METHODS: Dict[Verb, str] = {
    Verb.ALLOW: "apply_allow",
    Verb.BLOCK: "apply_block",
    Verb.REVOKE_ALLOW: "revoke_allow",
    Verb.REVOKE_BLOCK: "revoke_block",
}


@dataclass(frozen=True)
class EnforcementAction:
    """A verb issued to one backend for one address."""

    address: str
    verb: Verb
    backend: str

    def as_dict(self) -> Dict[str, str]:
        return {"address": self.address, "verb": self.verb.value, "backend": self.backend}


@dataclass(frozen=True)
class EnforcementOutcome:
    """Result of attempting one :class:`EnforcementAction`."""

    action: EnforcementAction
    ok: bool
    detail: str = ""

    def as_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = dict(self.action.as_dict())
        payload["ok"] = self.ok
        if self.detail:
            payload["detail"] = self.detail
        return payload


class EnforcementBackend(Protocol):
    """Capability set every backend provides."""

    name: str

    def apply_allow(self, address: Address) -> None:
        ...

    def apply_block(self, address: Address) -> None:
        ...

    def revoke_allow(self, address: Address) -> None:
        ...

    def revoke_block(self, address: Address) -> None:
        ...


def run_command(argv: Sequence[str]) -> "subprocess.CompletedProcess[str]":
    return subprocess.run(list(argv), capture_output=True, text=True, timeout=10)


# ---------------------------------------------------------------------------
# tcpwrappers denylist
# ---------------------------------------------------------------------------

_DENY_ENTRY = re.compile(
    r"^\s*(?P<scope>[^:#\s][^:]*?)\s*:\s*(?P<addr>\[[^\]]+\]|[^\s:]+)\s*:\s*deny\s*$"
)


class TcpWrappersDenylist:
    """Denylist file included from ``hosts.allow`` by tcpd.

    Entries are written as ``ALL: <addr> : deny``. The include file parser
    rejects a space before the first colon, unlike ``/etc/hosts.allow``.
    """

    name = "tcpwrappers"

    def __init__(self, path: Path, *, scope: str = "ALL") -> None:
        self.path = Path(path)
        self.scope = scope

    @staticmethod
    def format_entry(address: Address, scope: str = "ALL") -> str:
        host = address.text if address.version == 4 else f"[{address.text}]"
        return f"{scope}: {host} : deny\n"

    def entries(self) -> List[str]:
        """Return the addresses currently denied, in file order."""

        denied = []
        for line in self._read_lines():
            match = _DENY_ENTRY.match(line)
            if match:
                denied.append(match.group("addr").strip("[]"))
        return denied

    def apply_block(self, address: Address) -> None:
        lines = self._read_lines()
        if any(self._is_entry_for(line, address) for line in lines):
            logger.debug("%s already denied in %s", address, self.path)
            return
        self._write_atomic([self.format_entry(address, self.scope), *lines])
        logger.info("Added %s to %s", address, self.path)

    def apply_allow(self, address: Address) -> None:
        self._remove(address)

    def revoke_allow(self, address: Address) -> None:
        self._remove(address)

    def revoke_block(self, address: Address) -> None:
        self._remove(address)

    def _remove(self, address: Address) -> None:
        if not self.path.exists():
            logger.debug("%s does not exist, nothing to remove for %s", self.path, address)
            return
        lines = self._read_lines()
        kept = [line for line in lines if not self._is_entry_for(line, address)]
        if len(kept) == len(lines):
            return
        self._write_atomic(kept)
        logger.info("Removed %s from %s", address, self.path)

    @staticmethod
    def _is_entry_for(line: str, address: Address) -> bool:
        match = _DENY_ENTRY.match(line)
        if match is None:
            return False
        try:
            return parse_address(match.group("addr").strip("[]")).ip == address.ip
        except ValidationError:
            return False

    def _read_lines(self) -> List[str]:
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                lines = handle.readlines()
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise BackendError(f"unable to read {self.path}: {exc}") from exc
        if lines and not lines[-1].endswith("\n"):
            lines[-1] += "\n"
        return lines

    def _write_atomic(self, lines: Sequence[str]) -> None:
        try:
            mode = self.path.stat().st_mode & 0o777
        except FileNotFoundError:
            mode = 0o644

        directory = self.path.parent
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=directory)
        except OSError as exc:
            raise BackendError(f"unable to write {self.path}: {exc}") from exc

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.writelines(lines)
                handle.flush()
                os.fsync(handle.fileno())
            os.chmod(tmp_name, mode)
            os.replace(tmp_name, self.path)
        except OSError as exc:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise BackendError(f"unable to replace {self.path}: {exc}") from exc


# ---------------------------------------------------------------------------
# Packet filter tables
# ---------------------------------------------------------------------------


class FirewallTable(ABC):
    """Address table managed through an external firewall control utility."""

    name = "firewall"
    utility = ""
    state_utility: Optional[str] = None
    state_ok_returncodes: Sequence[int] = (0,)

    def __init__(
        self,
        table: str,
        *,
        runner: CommandRunner = run_command,
        executable: Optional[str] = None,
        state_executable: Optional[str] = None,
    ) -> None:
        self.table = table
        self._runner = runner
        self._executable = executable or shutil.which(self.utility)
        if self.state_utility is None:
            self._state_executable = self._executable
        else:
            self._state_executable = state_executable or shutil.which(self.state_utility)

        if not self._executable:
            logger.warning("%s not found; %s enforcement is unavailable", self.utility, self.name)
        elif not self._state_executable:
            logger.warning("%s not found; %s cannot kill existing states", self.state_utility, self.name)

    @property
    def available(self) -> bool:
        return bool(self._executable)

    # command builders -------------------------------------------------------
    @abstractmethod
    def add_command(self, address: Address) -> List[str]:
        ...

    @abstractmethod
    def delete_command(self, address: Address) -> List[str]:
        ...

    @abstractmethod
    def kill_state_command(self, address: Address) -> List[str]:
        ...

    # capability set ---------------------------------------------------------
    def apply_block(self, address: Address) -> None:
        self._run(self.add_command(address), f"add {address} to table {self.table}")
        logger.info("Added %s to %s table %s", address, self.name, self.table)
        if not self._state_executable:
            return
        self._run(
            self.kill_state_command(address),
            f"kill states for {address}",
            ok_returncodes=self.state_ok_returncodes,
        )

    def apply_allow(self, address: Address) -> None:
        self._delete(address)

    def revoke_allow(self, address: Address) -> None:
        self._delete(address)

    def revoke_block(self, address: Address) -> None:
        self._delete(address)

    def _delete(self, address: Address) -> None:
        self._run(self.delete_command(address), f"remove {address} from table {self.table}")
        logger.info("Removed %s from %s table %s", address, self.name, self.table)

    def _run(self, argv: Sequence[str], what: str, *, ok_returncodes: Sequence[int] = (0,)) -> None:
        if not self._executable:
            raise BackendError(f"{self.utility} is not installed, cannot {what}")
        result = self._runner(argv)
        if result.returncode not in ok_returncodes:
            stderr = (result.stderr or "").strip()
            raise BackendError(f"failed to {what}: exit {result.returncode} {stderr}".rstrip())


class PacketFilterTable(FirewallTable):
    """OpenBSD/FreeBSD pf table driven by ``pfctl``."""

    name = "pf"
    utility = "pfctl"

    def add_command(self, address: Address) -> List[str]:
        return [self._executable or self.utility, "-q", "-t", self.table, "-T", "add", address.text]

    def delete_command(self, address: Address) -> List[str]:
        return [self._executable or self.utility, "-q", "-t", self.table, "-T", "delete", address.text]

    def kill_state_command(self, address: Address) -> List[str]:
        return [self._executable or self.utility, "-q", "-k", address.text]


class IpsetTable(FirewallTable):
    """Linux ipset set, with conntrack used to drop established flows."""

    name = "ipset"
    utility = "ipset"
    state_utility = "conntrack"
    # conntrack exits 1 when there were no matching entries
    state_ok_returncodes = (0, 1)

    def add_command(self, address: Address) -> List[str]:
        return [self._executable or self.utility, "add", self.table, address.text, "-exist"]

    def delete_command(self, address: Address) -> List[str]:
        return [self._executable or self.utility, "del", self.table, address.text, "-exist"]

    def kill_state_command(self, address: Address) -> List[str]:
        return [self._state_executable or "conntrack", "-D", "-s", address.text]


class LegacyFirewallRule:
    """ipfw rule management. Log-only until the rule numbering is validated."""

    name = "ipfw"

    def apply_block(self, address: Address) -> None:
        logger.info("ipfw is log-only; would run: ipfw add deny all from %s to any", address)

    def apply_allow(self, address: Address) -> None:
        self._log_delete(address)

    def revoke_allow(self, address: Address) -> None:
        self._log_delete(address)

    def revoke_block(self, address: Address) -> None:
        self._log_delete(address)

    def _log_delete(self, address: Address) -> None:
        logger.info("ipfw is log-only; would run: ipfw delete deny all from %s to any", address)


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


class Enforcer:
    """Issues verbs to every configured backend independently."""

    def __init__(self, backends: Sequence[EnforcementBackend]) -> None:
        self._backends = tuple(backends)

    @property
    def backends(self) -> Sequence[EnforcementBackend]:
        return self._backends

    def issue(self, address: Address, verbs: Sequence[Verb]) -> List[EnforcementOutcome]:
        outcomes: List[EnforcementOutcome] = []
        for verb in verbs:
            for backend in self._backends:
                action = EnforcementAction(address=address.text, verb=verb, backend=backend.name)
                method = getattr(backend, _METHODS[verb])
                try:
                    method(address)
                except (BackendError, OSError, subprocess.SubprocessError) as exc:
                    logger.warning("%s %s on %s failed: %s", verb.value, address, backend.name, exc)
                    outcomes.append(EnforcementOutcome(action=action, ok=False, detail=str(exc)))
                except Exception as exc:
                    logger.exception("Unexpected error during %s %s on %s", verb.value, address, backend.name)
                    outcomes.append(EnforcementOutcome(action=action, ok=False, detail=repr(exc)))
                else:
                    outcomes.append(EnforcementOutcome(action=action, ok=True))
        return outcomes


__all__ = [
    "CommandRunner",
    "EnforcementAction",
    "EnforcementBackend",
    "EnforcementOutcome",
    "Enforcer",
    "FirewallTable",
    "IpsetTable",
    "LegacyFirewallRule",
    "PacketFilterTable",
    "TcpWrappersDenylist",
    "Verb",
    "run_command",
]
