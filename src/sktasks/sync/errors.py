"""
Sync error taxonomy.

Each failure has exactly one recovery story:

    DecodeError        -> sanitize and retry, then placeholder (never fatal)
    UnsealError        -> try the next identity path, surface if all fail
    RemoteUnavailable  -> abort the pass, pending state untouched
    PermissionDenied   -> surface, record stays pending
    RemoteError        -> remote answered, but not with something usable

There is deliberately no conflict error: whole-record replacement plus
remote-assigned versions leave nothing field-level to conflict on.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for every sync failure."""


class DecodeError(SyncError):
    """Plaintext could not be parsed into record fields."""


class UnsealError(SyncError):
    """No identity path could decrypt an envelope."""


class RemoteUnavailable(SyncError):
    """Network failure or timeout talking to the remote store.

    Args:
        message: Human-readable reason.
        outcome_unknown: True when a write may or may not have landed.
    """

    def __init__(self, message: str, outcome_unknown: bool = False) -> None:
        super().__init__(message)
        self.outcome_unknown = outcome_unknown


class PermissionDenied(SyncError):
    """The remote store refused the caller (e.g. a read-only delegate)."""


class RemoteError(SyncError):
    """The remote store returned an unexpected error response."""
