"""
Notifiers -- tell peers "something changed" and "you may now read this".

Two independent channels on the broadcast medium:

    kind 30080  sync notice      {device_id, subject, timestamp}
                                 sealed to the recipient, rate limited
    kind 30081  delegation       the full list of records (and levels)
                manifest         an owner grants one delegate, sealed to
                                 that delegate; one per (owner, delegate)

Neither channel ever carries record content. A sync notice only makes
the receiver run a sync pass. A manifest replaces the delegate's whole
view: a record missing from the latest manifest has been revoked.

Listeners poll the medium on a daemon thread. Notices from this same
device, for another subject, with a bad signature, or that cannot be
opened are dropped.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from pydantic import BaseModel, Field, ValidationError

from .config import save_config
from .identity import ExecutionContext, short_id
from .pubsub import BroadcastBus, BroadcastEvent, FileBroadcast
from .sync.engine import SyncEngine
from .sync.errors import UnsealError
from .sync.models import DelegationGrant, NotifierConfig, Permission, SyncResult, utcnow
from .sync.store import RecordStore
from .sync.vault import Vault

logger = logging.getLogger("sktasks.notifier")

KIND_SYNC_NOTICE = 30080
KIND_DELEGATION_MANIFEST = 30081


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class SyncNotice(BaseModel):
    """Decrypted content of a sync notice."""

    device_id: str
    subject: str
    timestamp: datetime = Field(default_factory=utcnow)
    author: str = ""


class ManifestEntry(BaseModel):
    """One granted record in a delegation manifest."""

    record_id: str
    permission: Permission = Permission.READ


class DelegationManifest(BaseModel):
    """Everything an owner currently shares with one delegate."""

    owner: str
    delegate: str
    subject: str
    entries: list[ManifestEntry] = Field(default_factory=list)
    issued_at: datetime = Field(default_factory=utcnow)

    def as_map(self) -> dict[str, Permission]:
        return {e.record_id: e.permission for e in self.entries}


class ManifestChange(BaseModel):
    """Difference between two successive manifests from one owner."""

    owner: str
    granted: list[ManifestEntry] = Field(default_factory=list)
    revoked: list[str] = Field(default_factory=list)
    manifest: DelegationManifest


# ---------------------------------------------------------------------------
# Shared polling loop
# ---------------------------------------------------------------------------

class _Listener:
    """Polls the medium on a daemon thread until stopped."""

    poll_interval: float = 10.0

    def poll_once(self) -> int:  # pragma: no cover - overridden
        raise NotImplementedError

    def start(self, interval: Optional[float] = None) -> None:
        """Start polling in the background."""
        if getattr(self, "_thread", None) is not None and self._thread.is_alive():
            return
        self._stop_event = threading.Event()
        period = interval or self.poll_interval
        self._thread = threading.Thread(
            target=self._loop, args=(period,),
            name=f"sktasks-{type(self).__name__}", daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        """Signal the polling thread to stop and wait for it."""
        thread = getattr(self, "_thread", None)
        if thread is None:
            return
        self._stop_event.set()
        thread.join(timeout=timeout)
        self._thread = None

    def _loop(self, interval: float) -> None:
        while not self._stop_event.is_set():
            try:
                count = self.poll_once()
                if count:
                    logger.debug("%s dispatched %d event(s)", type(self).__name__, count)
            except Exception as exc:
                logger.error("%s poll error: %s", type(self).__name__, exc)
            self._stop_event.wait(timeout=interval)


# ---------------------------------------------------------------------------
# Sync notices
# ---------------------------------------------------------------------------

NoticeCallback = Callable[[SyncNotice], None]
NoticePredicate = Callable[[SyncNotice], bool]


class SyncNotifier(_Listener):
    """Publishes and receives "records changed" notices.

    Args:
        context: Local identity and device.
        bus: Broadcast medium.
        subject: Collection/app tag notices are scoped to.
        min_interval: Minimum seconds between notices to one recipient.
        replay_window: How far back (seconds) the first poll looks.
        poll_interval: Default seconds between background polls.
    """

    def __init__(
        self,
        context: ExecutionContext,
        bus: BroadcastBus,
        subject: str = "sktasks",
        min_interval: float = 5.0,
        replay_window: int = 300,
        poll_interval: float = 10.0,
    ) -> None:
        self.context = context
        self.bus = bus
        self.subject = subject
        self.min_interval = min_interval
        self.replay_window = replay_window
        self.poll_interval = poll_interval
        self.vault = Vault(context)

        self._last_publish: dict[str, float] = {}
        self._subscribers: list[tuple[NoticeCallback, Optional[NoticePredicate]]] = []
        self._since = int(time.time()) - replay_window
        self._seen: dict[str, int] = {}

    @property
    def me(self) -> str:
        return self.context.public_id

    def publish(self, subject: Optional[str] = None, recipient: Optional[str] = None) -> bool:
        """Broadcast a notice, unless one went to this recipient too recently.

        Args:
            subject: Subject tag. Defaults to the notifier's subject.
            recipient: Who should sync. Defaults to our own other devices.

        Returns:
            True if a notice was published, False if rate limited.
        """
        subject = subject or self.subject
        recipient = recipient or self.me
        now = time.monotonic()
        last = self._last_publish.get(recipient)
        if last is not None and now - last < self.min_interval:
            logger.debug("Notice to %s rate limited", short_id(recipient))
            return False
        self._last_publish[recipient] = now

        content = json.dumps({
            "device_id": self.context.device_id,
            "subject": subject,
            "timestamp": utcnow().isoformat(),
        })
        event = BroadcastEvent.create(
            self.context,
            KIND_SYNC_NOTICE,
            tags=[["p", recipient], ["d", f"{subject}:{recipient}"], ["t", subject]],
            content=self.vault.seal_to(content, recipient),
        )
        self.bus.publish(event)
        logger.debug("Published sync notice to %s", short_id(recipient))
        return True

    def announce(self, result: SyncResult, store: RecordStore) -> int:
        """Notify everyone affected by the records a pass pushed.

        Recipients are our own devices, the owner (when we wrote as a
        delegate), and every delegate of the owner's records.

        Returns:
            Number of notices published.
        """
        if not result.pushed and not result.hard_deleted:
            return 0
        recipients = [self.me]
        if result.owner != self.me:
            recipients.append(result.owner)
        for record in store.list_by_owner(result.owner, result.collection):
            recipients.extend(record.delegates)
        return sum(
            1 for r in dict.fromkeys(recipients)
            if self.publish(result.collection, recipient=r)
        )

    def subscribe(
        self, callback: NoticeCallback, predicate: Optional[NoticePredicate] = None
    ) -> None:
        """Register a callback for notices addressed to us."""
        self._subscribers.append((callback, predicate))

    def poll_once(self) -> int:
        """Process notices that arrived since the last poll.

        Returns:
            Number of callback invocations.
        """
        events = self.bus.query(
            [KIND_SYNC_NOTICE], tags={"p": [self.me], "t": [self.subject]}, since=self._since,
        )
        dispatched = 0
        for event in events:
            if event.event_id in self._seen:
                continue
            self._seen[event.event_id] = event.created_at
            notice = self._open(event)
            if notice is None:
                continue
            for callback, predicate in self._subscribers:
                if predicate is not None and not predicate(notice):
                    continue
                try:
                    callback(notice)
                    dispatched += 1
                except Exception as exc:
                    logger.error("Notice callback error: %s", exc)

        if events:
            self._since = max(e.created_at for e in events)
            self._seen = {k: v for k, v in self._seen.items() if v >= self._since}
        return dispatched

    def _open(self, event: BroadcastEvent) -> Optional[SyncNotice]:
        if not event.verify():
            logger.warning("Dropping notice with bad signature from %s", short_id(event.author))
            return None
        try:
            data = json.loads(self.vault.unseal_from(event.content, event.author))
            notice = SyncNotice.model_validate({**data, "author": event.author})
        except (UnsealError, json.JSONDecodeError, ValidationError, TypeError) as exc:
            logger.warning("Dropping unreadable notice from %s: %s", short_id(event.author), exc)
            return None
        if notice.device_id == self.context.device_id:
            return None
        if notice.subject != self.subject:
            return None
        return notice


# ---------------------------------------------------------------------------
# Delegation manifests
# ---------------------------------------------------------------------------

ManifestCallback = Callable[[ManifestChange], None]


class DelegationNotifier(_Listener):
    """Publishes and receives per-delegate delegation manifests.

    Args:
        context: Local identity.
        bus: Broadcast medium.
        subject: Collection/app tag manifests are scoped to.
        poll_interval: Default seconds between background polls.
    """

    def __init__(
        self,
        context: ExecutionContext,
        bus: BroadcastBus,
        subject: str = "sktasks",
        poll_interval: float = 10.0,
    ) -> None:
        self.context = context
        self.bus = bus
        self.subject = subject
        self.poll_interval = poll_interval
        self.vault = Vault(context)

        self._callbacks: list[ManifestCallback] = []
        self._known: dict[str, DelegationManifest] = {}
        self._latest_event: dict[str, str] = {}

    @property
    def me(self) -> str:
        return self.context.public_id

    def manifest_for(
        self,
        delegate: str,
        store: RecordStore,
        grants: Optional[list[DelegationGrant]] = None,
    ) -> list[ManifestEntry]:
        """Entries for every live record we own that ``delegate`` may read.

        ``grants`` are the remote store's grants; an app-scope grant covers
        records that were created after it and do not list the delegate yet.
        """
        grants = [g for g in grants or [] if g.delegate == delegate]
        entries = []
        for record in store.list_by_owner(self.me):
            if record.deleted:
                continue
            view = record.model_copy(deep=True)
            view.apply_grants(grants)
            permission = view.permission_for(delegate)
            if permission is None:
                continue
            entries.append(ManifestEntry(record_id=record.record_id, permission=permission))
        return entries

    def publish_manifest(
        self, delegate: str, entries: list[ManifestEntry]
    ) -> DelegationManifest:
        """Replace ``delegate``'s view with exactly ``entries``.

        Returns:
            The manifest that was published.
        """
        manifest = DelegationManifest(
            owner=self.me, delegate=delegate, subject=self.subject, entries=entries,
        )
        event = BroadcastEvent.create(
            self.context,
            KIND_DELEGATION_MANIFEST,
            tags=[["p", delegate], ["d", f"{self.subject}:{delegate}"], ["t", self.subject]],
            content=self.vault.seal_to(manifest.model_dump_json(), delegate),
        )
        self.bus.publish(event)
        logger.info(
            "Published manifest for %s: %d record(s)", short_id(delegate), len(entries),
        )
        return manifest

    def publish_for(
        self,
        delegate: str,
        store: RecordStore,
        grants: Optional[list[DelegationGrant]] = None,
    ) -> DelegationManifest:
        """Build the manifest for ``delegate`` from local records and publish it."""
        return self.publish_manifest(delegate, self.manifest_for(delegate, store, grants))

    def subscribe(self, callback: ManifestCallback) -> None:
        """Register a callback for manifest changes addressed to us."""
        self._callbacks.append(callback)

    def known_manifest(self, owner: str) -> Optional[DelegationManifest]:
        return self._known.get(owner)

    def poll_once(self) -> int:
        """Diff newly published manifests against the last seen ones.

        Returns:
            Number of callback invocations.
        """
        events = self.bus.query(
            [KIND_DELEGATION_MANIFEST], tags={"p": [self.me], "t": [self.subject]},
        )
        dispatched = 0
        for event in events:
            if self._latest_event.get(event.author) == event.event_id:
                continue
            manifest = self._open(event)
            if manifest is None:
                continue
            self._latest_event[event.author] = event.event_id

            change = self._diff(manifest)
            self._known[manifest.owner] = manifest
            if not change.granted and not change.revoked:
                continue
            for callback in self._callbacks:
                try:
                    callback(change)
                    dispatched += 1
                except Exception as exc:
                    logger.error("Manifest callback error: %s", exc)
        return dispatched

    def _open(self, event: BroadcastEvent) -> Optional[DelegationManifest]:
        if not event.verify():
            logger.warning("Dropping manifest with bad signature from %s", short_id(event.author))
            return None
        try:
            manifest = DelegationManifest.model_validate_json(
                self.vault.unseal_from(event.content, event.author)
            )
        except (UnsealError, ValidationError) as exc:
            logger.warning("Dropping unreadable manifest from %s: %s", short_id(event.author), exc)
            return None
        if manifest.owner != event.author or manifest.delegate != self.me:
            logger.warning("Dropping manifest misaddressed by %s", short_id(event.author))
            return None
        return manifest

    def _diff(self, manifest: DelegationManifest) -> ManifestChange:
        previous = self._known.get(manifest.owner)
        before = previous.as_map() if previous else {}
        after = manifest.as_map()
        granted = [e for e in manifest.entries if before.get(e.record_id) != e.permission]
        revoked = sorted(rid for rid in before if rid not in after)
        return ManifestChange(
            owner=manifest.owner, granted=granted, revoked=revoked, manifest=manifest,
        )


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------

def create_bus(config: NotifierConfig, home: Path) -> FileBroadcast:
    """Broadcast medium configured for this device."""
    return FileBroadcast(config.broadcast_path or home / "broadcast")


def connect_engine(
    engine: SyncEngine,
    sync_notifier: Optional[SyncNotifier] = None,
    delegation_notifier: Optional[DelegationNotifier] = None,
) -> None:
    """Make incoming notices and manifest changes trigger sync passes.

    A notice from an owner we hold records for syncs that owner; any
    other notice (our own devices, or a delegate who wrote to our
    records) syncs our own records. A manifest change starts tracking
    the granting owner and syncs them right away.
    """
    if sync_notifier is not None:
        def _on_notice(notice: SyncNotice) -> None:
            owner = notice.author if notice.author in engine.config.tracked_owners else None
            engine.sync(owner=owner, background=True)

        sync_notifier.subscribe(_on_notice)

    if delegation_notifier is not None:
        def _on_manifest(change: ManifestChange) -> None:
            if change.owner not in engine.config.tracked_owners:
                engine.config.tracked_owners.append(change.owner)
                if engine.home is not None:
                    save_config(engine.home, engine.config)
                logger.info("Now tracking records of %s", short_id(change.owner))
            engine.sync(owner=change.owner, background=True)

        delegation_notifier.subscribe(_on_manifest)
