"""
Sync data models -- records, envelopes, configuration and state.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Best-effort conversion of an ISO string/datetime to aware UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class Permission(str, Enum):
    """Delegate permission levels. Write implies read."""

    READ = "read"
    WRITE = "write"


class WireFormat(str, Enum):
    """Envelope generations still found on remote stores."""

    LEGACY = "legacy"
    DELEGATE_V1 = "delegate_v1"
    VERSIONED_V3 = "versioned_v3"


class Record(BaseModel):
    """One replicated unit of user data, as held in the local store.

    ``fields`` is the decoded plaintext (JSON-compatible values only).
    ``version`` is only ever assigned by the remote store.
    """

    record_id: str
    owner: str
    collection: str = "tasks"
    fields: dict[str, Any] = Field(default_factory=dict)
    version: int = Field(default=0, ge=0)
    pending: bool = True
    read_delegates: list[str] = Field(default_factory=list)
    write_delegates: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _write_implies_read(self) -> "Record":
        for delegate in self.write_delegates:
            if delegate not in self.read_delegates:
                self.read_delegates.append(delegate)
        return self

    @property
    def deleted(self) -> bool:
        return bool(self.fields.get("deleted"))

    @property
    def updated_at(self) -> Optional[datetime]:
        return parse_timestamp(
            self.fields.get("updated_at") or self.fields.get("created_at")
        )

    @property
    def delegates(self) -> list[str]:
        """Every identity the record must be sealed to besides the owner."""
        return [d for d in self.read_delegates if d != self.owner]

    def permission_for(self, identity: str) -> Optional[Permission]:
        """Effective permission of ``identity`` on this record."""
        if identity == self.owner or identity in self.write_delegates:
            return Permission.WRITE
        if identity in self.read_delegates:
            return Permission.READ
        return None

    def apply_grants(self, grants: list[DelegationGrant]) -> bool:
        """Add delegates from the owner's app-scope and matching record grants.

        Only adds; revoking is explicit. Returns True if a list changed.
        """
        changed = False
        for grant in grants:
            if grant.owner != self.owner or grant.record_id not in (None, self.record_id):
                continue
            if grant.delegate not in self.read_delegates:
                self.read_delegates.append(grant.delegate)
                changed = True
            if (
                Permission.WRITE in grant.permissions
                and grant.delegate not in self.write_delegates
            ):
                self.write_delegates.append(grant.delegate)
                changed = True
        return changed


class SealedEnvelope(BaseModel):
    """Wire representation of a record as stored remotely."""

    record_id: str
    collection: str = "tasks"
    owner: str = ""
    encrypted_data: str
    encrypted_from: Optional[str] = None
    delegate_payloads: dict[str, str] = Field(default_factory=dict)
    read_delegates: list[str] = Field(default_factory=list)
    write_delegates: list[str] = Field(default_factory=list)
    version: int = 0
    updated_at: Optional[datetime] = None
    wire_format: WireFormat = WireFormat.VERSIONED_V3
    legacy_plaintext: bool = Field(
        default=False,
        description="Legacy envelope whose encrypted_data is plain JSON",
    )

    @property
    def missing_delegates(self) -> list[str]:
        """Granted delegates that have no sealed payload (needs re-sealing)."""
        granted = set(self.read_delegates) | set(self.write_delegates)
        granted.discard(self.owner)
        return sorted(d for d in granted if d not in self.delegate_payloads)


class PushResult(BaseModel):
    """Per-record outcome of a push batch."""

    record_id: str
    accepted: bool = True
    version: Optional[int] = None
    error: Optional[str] = None
    denied: bool = False


class DelegationGrant(BaseModel):
    """A grant as listed by the remote store."""

    owner: str
    delegate: str
    permissions: list[Permission] = Field(default_factory=lambda: [Permission.READ])
    record_id: Optional[str] = Field(
        default=None, description="None means app scope (every record)"
    )
    granted_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _write_implies_read(self) -> "DelegationGrant":
        if Permission.WRITE in self.permissions and Permission.READ not in self.permissions:
            self.permissions.insert(0, Permission.READ)
        return self


class SyncResult(BaseModel):
    """Counters and outcomes of one sync pass."""

    owner: str
    collection: str
    pulled: int = 0
    updated: int = 0
    unchanged: int = 0
    kept_local: int = 0
    removed: int = 0
    pushed: int = 0
    hard_deleted: int = 0
    resealed: int = 0
    placeholders: int = 0
    errors: list[str] = Field(default_factory=list)
    denied: list[str] = Field(default_factory=list)
    outcome_unknown: bool = False
    deferred: bool = False
    aborted: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    @property
    def ok(self) -> bool:
        return self.aborted is None and not self.errors and not self.denied


# ---------------------------------------------------------------------------
# Configuration and persisted state
# ---------------------------------------------------------------------------

class RemoteKind(str, Enum):
    """Supported remote store transports."""

    HTTP = "http"
    LOCAL = "local"


class RemoteConfig(BaseModel):
    """Where the sealed envelopes live."""

    kind: RemoteKind = RemoteKind.LOCAL
    enabled: bool = True

    # HTTP
    base_url: Optional[str] = None
    app_id: str = "sktasks"
    timeout_seconds: float = 30.0

    # Local filesystem (USB, NAS, Syncthing folder)
    local_path: Optional[Path] = None


class NotifierConfig(BaseModel):
    """Out-of-band change notifications."""

    enabled: bool = True
    subject: str = "sktasks"
    min_publish_interval: float = 5.0
    replay_window_seconds: int = 300
    poll_interval_seconds: float = 10.0
    broadcast_path: Optional[Path] = None


class SyncConfig(BaseModel):
    """Complete sync configuration for a device."""

    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    collections: list[str] = Field(default_factory=lambda: ["tasks"])
    tracked_owners: list[str] = Field(
        default_factory=list,
        description="Other owners whose records we hold as a delegate",
    )
    background_interval_seconds: int = 300
    notifier: NotifierConfig = Field(default_factory=NotifierConfig)


class SyncState(BaseModel):
    """Sync state persisted to disk between passes."""

    last_sync: Optional[datetime] = None
    last_success: Optional[datetime] = None
    pass_count: int = 0
    pushed_total: int = 0
    pulled_total: int = 0
    last_error: Optional[str] = None
