"""Import of the per-address directory tree used by early releases.

Early releases kept one marker file per address under ``seen/A/B/C/D``; the
number of lines counted connections, and matching files under ``white/`` and
``black/`` flagged list membership. :func:`iter_legacy_records` turns that
tree into store records and :func:`import_legacy` loads them once.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional, Sequence

from .address import parse_address
from .errors import ValidationError
from .state import ReputationRecord
from .store import ReputationStore

logger = logging.getLogger(__name__)

_LISTS = ("seen", "white", "black")


@dataclass(frozen=True)
class LegacyEntry:
    """A single address recovered from the legacy tree."""

    address: str
    key: str
    record: ReputationRecord
    paths: Sequence[Path]


def _count_lines(path: Path) -> int:
    with path.open("rb") as handle:
        return sum(1 for _ in handle)


def _marker_time(path: Path) -> Optional[datetime]:
    if not path.is_file():
        return None
    return datetime.fromtimestamp(int(path.stat().st_mtime), tz=timezone.utc)


def iter_legacy_records(root_dir: Path) -> Iterator[LegacyEntry]:
    root = Path(root_dir)
    seen_root = root / "seen"
    if not seen_root.is_dir():
        return

    for seen_path in sorted(seen_root.glob("*/*/*/*")):
        if not seen_path.is_file():
            continue
        octets = seen_path.relative_to(seen_root).parts
        try:
            address = parse_address(".".join(octets))
        except ValidationError:
            logger.warning("Skipping legacy entry %s: not an IPv4 address", seen_path)
            continue
        if address.version != 4:
            logger.warning("Skipping legacy entry %s: not an IPv4 address", seen_path)
            continue

        white_path = root.joinpath("white", *octets)
        black_path = root.joinpath("black", *octets)
        record = ReputationRecord(
            seen_count=_count_lines(seen_path),
            whitelisted_at=_marker_time(white_path),
            blacklisted_at=_marker_time(black_path),
        )
        yield LegacyEntry(
            address=address.text,
            key=address.key,
            record=record,
            paths=(seen_path, white_path, black_path),
        )


def _prune_empty_dirs(root: Path) -> None:
    for name in _LISTS:
        top = root / name
        if not top.is_dir():
            continue
        for dirpath, _dirnames, _filenames in os.walk(top, topdown=False):
            try:
                os.rmdir(dirpath)
            except OSError:
                # still holds files that were not part of the import
                continue


def import_legacy(store: ReputationStore, root_dir: Path) -> int:
    """Load the legacy tree into ``store`` and remove the migrated files.

    The caller must hold the store lock. Returns the number of addresses
    imported; a root without legacy data imports nothing.
    """

    root = Path(root_dir)
    entries = list(iter_legacy_records(root))
    if not entries:
        return 0

    logger.info("Importing %s legacy records from %s", len(entries), root)
    imported = store.bulk_load((entry.key, entry.record) for entry in entries)

    for entry in entries:
        for path in entry.paths:
            try:
                path.unlink()
            except FileNotFoundError:
                continue
    _prune_empty_dirs(root)
    return imported


__all__ = ["LegacyEntry", "import_legacy", "iter_legacy_records"]
