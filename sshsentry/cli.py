"""Command line front end, meant to be spawned by tcpd or run by an operator."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import List, Optional, Sequence

from pydantic import ValidationError as SettingsError

from .address import parse_address
from .config import get_settings
from .engine import Decision, ReportSummary, Sentry
from .errors import LockUnavailable, StoreIOError, ValidationError

logger = logging.getLogger("sshsentry")

EXIT_OK = 0
EXIT_USAGE = 2
EXIT_LOCK = 3
EXIT_STORE = 4


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sshsentry",
        description="Track connecting addresses and white/blacklist them from log evidence.",
    )
    parser.add_argument("--ip", help="address of the connecting client")
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--connect", action="store_true", help="record a connection from --ip")
    group.add_argument("--whitelist", action="store_true", help="whitelist --ip")
    group.add_argument("--blacklist", action="store_true", help="blacklist --ip")
    group.add_argument("--delist", action="store_true", help="remove --ip from both lists")
    group.add_argument("--report", action="store_true", help="summarize the store (and --ip if given)")
    group.add_argument(
        "--import-legacy",
        action="store_true",
        help="import the seen/white/black directory tree of older releases",
    )
    parser.add_argument("--dbdump", action="store_true", help="with --report, list every record")
    parser.add_argument("--json", action="store_true", help="print results as JSON")
    parser.add_argument("-v", "--verbose", action="store_true", help="log debug output")
    return parser


def _selected_action(args: argparse.Namespace) -> str:
    for action in ("connect", "whitelist", "blacklist", "delist", "report"):
        if getattr(args, action):
            return action
    return "import_legacy"


def render_decision(decision: Decision) -> List[str]:
    lines = [f"{decision.address}: {decision.status.value} (seen {decision.record.seen_count} times)"]
    if decision.transition:
        lines.append(f"  transition: {decision.transition}")
    for outcome in decision.outcomes:
        state = "ok" if outcome.ok else f"failed: {outcome.detail}"
        lines.append(f"  {outcome.action.verb.value} via {outcome.action.backend}: {state}")
    return lines


def render_report(summary: ReportSummary) -> List[str]:
    lines = [
        "   -------- summary ---------",
        f"{summary.unique_addresses:4d} unique IPs have connected {summary.total_seen} times",
        f"{summary.whitelisted:4d} IPs are whitelisted",
        f"{summary.blacklisted:4d} IPs are blacklisted",
    ]
    if summary.address is not None and summary.record is not None:
        lines.append("")
        lines.append(f"{summary.address}: {summary.status.value if summary.status else 'unknown'}")
        lines.append(f"  seen {summary.record.seen_count} times")
        for name, result in summary.classifications.items():
            if not result.available:
                lines.append(f"  {name}: log unavailable")
                continue
            counts = ", ".join(f"{key}={value}" for key, value in result.counts().items() if value)
            lines.append(f"  {name}: total={result.total}" + (f" ({counts})" if counts else ""))
    for key, record in summary.dump or []:
        white = record.whitelisted_at.isoformat() if record.whitelisted_at else "-"
        black = record.blacklisted_at.isoformat() if record.blacklisted_at else "-"
        lines.append(f"{key}: seen={record.seen_count}, w={white}, b={black}")
    return lines


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    action = _selected_action(args)
    if action in ("connect", "whitelist", "blacklist", "delist") and not args.ip:
        parser.error(f"--{action} requires --ip")

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        if args.ip is not None:
            parse_address(args.ip)
        sentry = Sentry.from_settings(get_settings())
        if action == "import_legacy":
            imported = sentry.import_legacy()
            print(json.dumps({"imported": imported}) if args.json else f"imported {imported} legacy records")
            return EXIT_OK
        result = sentry.dispatch(args.ip, action, dump=args.dbdump)
    except (ValidationError, SettingsError) as exc:
        print(f"sshsentry: {exc}", file=sys.stderr)
        return EXIT_USAGE
    except LockUnavailable as exc:
        logger.error("Giving up: %s", exc)
        return EXIT_LOCK
    except StoreIOError as exc:
        logger.error("Store failure: %s", exc)
        return EXIT_STORE

    if args.json:
        print(json.dumps(result.as_dict(), indent=2))
    elif isinstance(result, ReportSummary):
        print("\n".join(render_report(result)))
    else:
        print("\n".join(render_decision(result)))
    return EXIT_OK


__all__ = ["build_parser", "main", "render_decision", "render_report"]
