"""Error taxonomy for sshsentry."""
from __future__ import annotations


class SentryError(RuntimeError):
    """Base error for every sshsentry failure."""


class ValidationError(SentryError, ValueError):
    """Raised when an address literal is malformed or not admissible."""


class LockUnavailable(SentryError):
    """Raised when the store lock cannot be obtained within the bounded wait."""


class StoreIOError(SentryError):
    """Raised when the reputation store cannot be created, opened or written."""


class LogUnavailable(SentryError):
    """Raised when a protocol's log source is missing or unreadable."""


class BackendError(SentryError):
    """Raised when one enforcement backend fails to apply or revoke an action."""


__all__ = [
    "BackendError",
    "LockUnavailable",
    "LogUnavailable",
    "SentryError",
    "StoreIOError",
    "ValidationError",
]
