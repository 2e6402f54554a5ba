"""Persistent reputation store guarded by a single whole-store lock."""

from __future__ import annotations

import dbm
import errno
import fcntl
import logging
import os
import socket
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator, Optional, Protocol, Tuple

from .errors import LockUnavailable, StoreIOError
from .state import ReputationRecord

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.05
_DBM_ERRORS = (OSError,) + tuple(dbm.error)


class StoreLock(Protocol):
    """Exclusive lock held for one invocation's read-decide-write cycle."""

    path: Path
    timeout: float

    def acquire(self) -> None:
        ...

    def release(self) -> None:
        ...

    @property
    def held(self) -> bool:
        ...


class FlockLock:
    """Local ``flock(2)`` lock, polled until ``timeout`` seconds elapse."""

    def __init__(self, path: Path, *, timeout: float = 10.0) -> None:
        self.path = Path(path)
        self.timeout = timeout
        self._fd: Optional[int] = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> None:
        if self._fd is not None:
            raise LockUnavailable(f"lock {self.path} is already held by this handle")
        try:
            fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o600)
        except OSError as exc:
            raise LockUnavailable(f"unable to open lock file {self.path}: {exc}") from exc

        deadline = time.monotonic() + self.timeout
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except OSError as exc:
                if exc.errno not in (errno.EAGAIN, errno.EACCES, errno.EWOULDBLOCK):
                    os.close(fd)
                    raise LockUnavailable(f"flock of {self.path} failed: {exc}") from exc
                if time.monotonic() >= deadline:
                    os.close(fd)
                    raise LockUnavailable(
                        f"timed out after {self.timeout:g}s waiting for {self.path}"
                    ) from None
                time.sleep(_POLL_INTERVAL)
                continue
            self._fd = fd
            return

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None


class LeaseLock:
    """Lock file lease that is safe on network filesystems.

    The lease is taken by creating the lock file exclusively and writing the
    holder identity into it. A lease whose file has not been touched for
    ``stale_timeout`` seconds is considered abandoned and reclaimed.
    """

    def __init__(
        self,
        path: Path,
        *,
        timeout: float = 10.0,
        stale_timeout: float = 30 * 60,
    ) -> None:
        self.path = Path(path)
        self.timeout = timeout
        self._stale_timeout = stale_timeout
        self._token: Optional[str] = None

    @property
    def held(self) -> bool:
        return self._token is not None

    def acquire(self) -> None:
        if self._token is not None:
            raise LockUnavailable(f"lease {self.path} is already held by this handle")

        token = f"{socket.gethostname()}:{os.getpid()}:{time.time():.6f}"
        deadline = time.monotonic() + self.timeout
        while True:
            try:
                fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            except FileExistsError:
                if self._reclaim_stale():
                    continue
                if time.monotonic() >= deadline:
                    raise LockUnavailable(
                        f"timed out after {self.timeout:g}s waiting for lease {self.path}"
                    ) from None
                time.sleep(_POLL_INTERVAL)
                continue
            except OSError as exc:
                raise LockUnavailable(f"unable to create lease {self.path}: {exc}") from exc

            with os.fdopen(fd, "w") as handle:
                handle.write(token)
                handle.flush()
                os.fsync(handle.fileno())
            self._token = token
            return

    def release(self) -> None:
        if self._token is None:
            return
        token, self._token = self._token, None
        try:
            current = self.path.read_text()
        except FileNotFoundError:
            logger.warning("Lease %s vanished before release", self.path)
            return
        if current != token:
            logger.warning("Lease %s was reclaimed by another holder", self.path)
            return
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass

    def _reclaim_stale(self) -> bool:
        try:
            stale_token = self.path.read_text()
            age = time.time() - self.path.stat().st_mtime
        except FileNotFoundError:
            return True
        if age <= self._stale_timeout:
            return False

        # renamed aside, then restored if its token changed since the read
        grave = self.path.with_name(
            f"{self.path.name}.stale.{os.getpid()}.{threading.get_ident()}"
        )
        try:
            os.rename(self.path, grave)
        except FileNotFoundError:
            return True
        try:
            claimed = grave.read_text()
            if claimed != stale_token:
                logger.debug("Lease %s was renewed while reclaiming it", self.path)
                try:
                    os.link(grave, self.path)
                except FileExistsError:
                    logger.warning("Lease %s was renewed and replaced while reclaiming it", self.path)
                return False
            logger.warning("Reclaimed stale lease %s (%.0fs old)", self.path, age)
        finally:
            try:
                grave.unlink()
            except FileNotFoundError:
                pass
        return True


def build_lock(strategy: str, path: Path, *, timeout: float, stale_timeout: float) -> StoreLock:
    if strategy == "flock":
        return FlockLock(path, timeout=timeout)
    if strategy == "lease":
        return LeaseLock(path, timeout=timeout, stale_timeout=stale_timeout)
    raise ValueError(f"unknown lock strategy {strategy!r}")


class ReputationStore:
    """Key to :class:`ReputationRecord` map persisted in a dbm file.

    Reads and writes are only permitted while the store lock is held; the
    dbm handle is opened on :meth:`acquire` and closed on :meth:`release`.
    """

    def __init__(self, db_path: Path, lock: StoreLock) -> None:
        self._db_path = Path(db_path)
        self._lock = lock
        self._guard = threading.Lock()
        self._db = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    @classmethod
    def open(
        cls,
        location: Path,
        *,
        lock_strategy: str = "flock",
        lock_timeout: float = 10.0,
        stale_lock_timeout: float = 30 * 60,
    ) -> "ReputationStore":
        """Prepare the store at ``location``, creating it if absent."""

        db_path = Path(location)
        try:
            db_path.parent.mkdir(mode=0o750, parents=True, exist_ok=True)
        except OSError as exc:
            raise StoreIOError(f"unable to create store directory {db_path.parent}: {exc}") from exc

        lock = build_lock(
            lock_strategy,
            db_path.with_name(db_path.name + ".lock"),
            timeout=lock_timeout,
            stale_timeout=stale_lock_timeout,
        )
        store = cls(db_path, lock)
        if dbm.whichdb(str(db_path)) is None:
            # the dbm file is created under the lock like any other write
            with store.locked():
                pass
        return store

    @property
    def path(self) -> Path:
        return self._db_path

    def acquire(self) -> StoreLock:
        # threads sharing this store wait here; the file lock only sees processes
        if not self._guard.acquire(timeout=self._lock.timeout):
            raise LockUnavailable(
                f"timed out after {self._lock.timeout:g}s waiting for {self._db_path} in this process"
            )
        try:
            self._lock.acquire()
        except BaseException:
            self._guard.release()
            raise
        try:
            self._db = dbm.open(str(self._db_path), "c", 0o600)
        except _DBM_ERRORS as exc:
            self._release_locks()
            raise StoreIOError(f"unable to open reputation store {self._db_path}: {exc}") from exc
        return self._lock

    def release(self, lock: Optional[StoreLock] = None) -> None:
        if not self._lock.held:
            return
        db, self._db = self._db, None
        try:
            if db is not None:
                db.close()
        finally:
            self._release_locks()

    def _release_locks(self) -> None:
        try:
            self._lock.release()
        finally:
            self._guard.release()

    @contextmanager
    def locked(self) -> Iterator["ReputationStore"]:
        self.acquire()
        try:
            yield self
        finally:
            self.release()

    # ------------------------------------------------------------------
    # Record access
    # ------------------------------------------------------------------
    def get(self, key: str) -> Optional[ReputationRecord]:
        db = self._require_db()
        raw = db.get(key.encode("ascii"))
        if raw is None:
            return None
        return ReputationRecord.decode(raw)

    def put(self, key: str, record: ReputationRecord) -> None:
        db = self._require_db()
        try:
            db[key.encode("ascii")] = record.encode().encode("ascii")
        except _DBM_ERRORS as exc:
            raise StoreIOError(f"unable to write {key} to {self._db_path}: {exc}") from exc

    def items(self) -> Iterator[Tuple[str, ReputationRecord]]:
        db = self._require_db()
        for raw_key in list(db.keys()):
            yield raw_key.decode("ascii"), ReputationRecord.decode(db[raw_key])

    def bulk_load(self, pairs: Iterable[Tuple[str, ReputationRecord]]) -> int:
        """Merge ``pairs`` into the store and return the number written.

        Existing records keep their timestamps and the larger observation
        count wins, so loading the same data twice leaves the store unchanged.
        """

        written = 0
        for key, incoming in pairs:
            existing = self.get(key)
            if existing is None:
                merged = incoming.copy()
            else:
                merged = ReputationRecord(
                    seen_count=max(existing.seen_count, incoming.seen_count),
                    whitelisted_at=existing.whitelisted_at or incoming.whitelisted_at,
                    blacklisted_at=existing.blacklisted_at or incoming.blacklisted_at,
                )
            self.put(key, merged)
            written += 1
        return written

    def _require_db(self):
        if self._db is None:
            raise StoreIOError("reputation store accessed without holding the store lock")
        return self._db


__all__ = [
    "FlockLock",
    "LeaseLock",
    "ReputationStore",
    "StoreLock",
    "build_lock",
]
