from __future__ import annotations

import os
import sys
from datetime import datetime, timezone
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sshsentry.legacy import import_legacy, iter_legacy_records
from sshsentry.state import ReputationRecord
from sshsentry.store import ReputationStore

MARKED = datetime(2020, 5, 17, 12, 0, tzinfo=timezone.utc)


def _marker(root: Path, kind: str, ip: str, lines: int = 1, mtime: datetime = MARKED) -> Path:
    path = root.joinpath(kind, *ip.split("."))
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(f"{n}\n" for n in range(lines)))
    stamp = mtime.timestamp()
    os.utime(path, (stamp, stamp))
    return path


def build_tree(root: Path) -> None:
    _marker(root, "seen", "203.0.113.5", lines=4)
    _marker(root, "white", "203.0.113.5")
    _marker(root, "seen", "198.51.100.7", lines=12)
    _marker(root, "black", "198.51.100.7")
    _marker(root, "seen", "999.1.1.1", lines=2)


def test_iter_legacy_records_reads_tree(tmp_path):
    build_tree(tmp_path)
    entries = {entry.address: entry for entry in iter_legacy_records(tmp_path)}

    assert set(entries) == {"203.0.113.5", "198.51.100.7"}
    assert entries["203.0.113.5"].record == ReputationRecord(seen_count=4, whitelisted_at=MARKED)
    assert entries["198.51.100.7"].record == ReputationRecord(seen_count=12, blacklisted_at=MARKED)
    assert entries["203.0.113.5"].key == "3405803781"


def test_import_legacy_loads_and_removes_tree(tmp_path):
    build_tree(tmp_path)
    store = ReputationStore.open(tmp_path / "sentry.dbm")

    with store.locked():
        assert import_legacy(store, tmp_path) == 2
        records = dict(store.items())

    assert records["3405803781"].seen_count == 4
    assert records["3325256711"].is_blacklisted
    assert not (tmp_path / "white").exists()
    assert not (tmp_path / "black").exists()
    # the invalid entry is left for the operator
    assert (tmp_path / "seen" / "999" / "1" / "1" / "1").exists()


def test_import_legacy_is_rerunnable(tmp_path):
    build_tree(tmp_path)
    store = ReputationStore.open(tmp_path / "sentry.dbm")

    with store.locked():
        import_legacy(store, tmp_path)
        first = dict(store.items())
        assert import_legacy(store, tmp_path) == 0
        assert dict(store.items()) == first


def test_import_legacy_without_tree_is_noop(tmp_path):
    store = ReputationStore.open(tmp_path / "sentry.dbm")
    with store.locked():
        assert import_legacy(store, tmp_path) == 0
        assert list(store.items()) == []
