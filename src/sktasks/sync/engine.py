"""
Sync Engine -- pull, detect remote deletions, push.

This is the command center. One pass for one owner runs three phases
in a fixed order and never interleaves them:

    1. Pull    fetch every envelope, adopt strictly newer versions
    2. Delete  a synced, clean record missing remotely was deleted upstream
    3. Push    seal every pending record, let the remote assign versions

Correctness rests on two things only: the remote is the sole authority
for versions, and a pending record is never overwritten by a remote
version that is older than the local edit. Clocks are never trusted
beyond that single tie-break.

    sktasks sync run     ->  one explicit pass (errors surface)
    sktasks notify watch ->  passes triggered by peers (errors logged)
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from ..identity import ExecutionContext, short_id
from .backends import RemoteStore
from .codec import decode_tolerant, encode
from .errors import PermissionDenied, RemoteUnavailable, SyncError, UnsealError
from .models import (
    Record,
    SealedEnvelope,
    SyncConfig,
    SyncResult,
    SyncState,
    WireFormat,
)
from .store import RecordStore
from .vault import Vault

logger = logging.getLogger("sktasks.sync.engine")


class SyncEngine:
    """Orchestrates replication of one device's records.

    Args:
        context: Who is syncing.
        store: Local versioned record store.
        remote: Remote record store (HTTP or local ledger).
        config: Sync configuration. Defaults to SyncConfig().
        home: Home directory for persisted sync state. Optional.
    """

    def __init__(
        self,
        context: ExecutionContext,
        store: RecordStore,
        remote: RemoteStore,
        config: Optional[SyncConfig] = None,
        home: Optional[Path] = None,
    ) -> None:
        self.context = context
        self.store = store
        self.remote = remote
        self.config = config or SyncConfig()
        self.vault = Vault(context)
        self.home = home

        self._guard = threading.Lock()
        self._running: set[str] = set()
        self._rerun: dict[str, list[str]] = {}

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self.state = self._load_state()

    @classmethod
    def from_home(cls, home: Path) -> "SyncEngine":
        """Wire up an engine from the identity and config stored in ``home``."""
        from ..config import load_config
        from ..identity import load_context
        from .backends import create_remote_store

        home = home.expanduser()
        context = load_context(home)
        config = load_config(home)
        remote = create_remote_store(config.remote, context, home)
        return cls(context, RecordStore(home), remote, config, home=home)

    @property
    def me(self) -> str:
        return self.context.public_id

    # -- Public API ---------------------------------------------------------

    def sync(
        self,
        owner: Optional[str] = None,
        collection: Optional[str] = None,
        background: bool = False,
    ) -> SyncResult:
        """Run one sync pass.

        A trigger that arrives while a pass for the same owner is running
        does not start a second pass. It returns a ``deferred`` result and
        the running pass does exactly one more round when it finishes.

        Args:
            owner: Whose records to sync. Defaults to the caller.
            collection: Collection to sync. Defaults to the first configured.
            background: Log and swallow sync errors instead of raising.

        Returns:
            SyncResult of the last round that ran.

        Raises:
            SyncError: Explicit passes only, when a pass aborts.
        """
        owner = owner or self.me
        collection = collection or self.config.collections[0]

        with self._guard:
            if owner in self._running:
                queue = self._rerun.setdefault(owner, [])
                if collection not in queue:
                    queue.append(collection)
                logger.debug("Pass for %s already running, deferring", short_id(owner))
                return SyncResult(owner=owner, collection=collection, deferred=True)
            self._running.add(owner)

        try:
            result = self._run_pass(owner, collection, background)
            while True:
                collection = self._next_deferred(owner)
                if collection is None:
                    break
                logger.debug("Running deferred pass for %s", short_id(owner))
                result = self._run_pass(owner, collection, background)
        except Exception:
            # Triggers already answered with deferred=True still get their pass.
            self._drain_deferred(owner)
            raise
        finally:
            with self._guard:
                self._running.discard(owner)
                self._rerun.pop(owner, None)
        return result

    def sync_all(self, background: bool = False) -> list[SyncResult]:
        """Sync every known owner across every configured collection."""
        owners = [self.me] + [
            o for o in dict.fromkeys(self.config.tracked_owners + self.store.owners())
            if o != self.me
        ]
        results = []
        for owner in owners:
            for collection in self.config.collections:
                results.append(self.sync(owner, collection, background=background))
        return results

    def status(self) -> dict:
        """Get current sync status.

        Returns:
            Dict with state, remote, and local record info.
        """
        pending = self.store.list_pending(self.me)
        return {
            "state": self.state.model_dump(mode="json"),
            "remote": {
                "name": self.remote.name,
                "kind": self.config.remote.kind.value,
                "available": self.remote.available(),
            },
            "records": self.store.count(),
            "pending": len(pending),
            "collections": list(self.config.collections),
            "tracked_owners": list(self.config.tracked_owners),
        }

    # -- Background loop ----------------------------------------------------

    def start(self, interval: Optional[float] = None) -> None:
        """Run background passes on a daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        period = interval or self.config.background_interval_seconds
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._loop, args=(period,), name="sktasks-sync", daemon=True,
        )
        self._thread.start()
        logger.info("Background sync every %ss", period)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _loop(self, interval: float) -> None:
        while not self._stop_event.is_set():
            try:
                self.sync_all(background=True)
            except Exception as exc:
                logger.error("Background sync error: %s", exc)
            self._stop_event.wait(timeout=interval)

    # -- One pass -----------------------------------------------------------

    def _next_deferred(self, owner: str) -> Optional[str]:
        with self._guard:
            queue = self._rerun.get(owner)
            if not queue:
                self._rerun.pop(owner, None)
                return None
            return queue.pop(0)

    def _drain_deferred(self, owner: str) -> None:
        while True:
            collection = self._next_deferred(owner)
            if collection is None:
                return
            try:
                self._run_pass(owner, collection, background=True)
            except Exception as exc:
                logger.error("Deferred sync of %s/%s failed: %s", short_id(owner), collection, exc)

    def _run_pass(self, owner: str, collection: str, background: bool) -> SyncResult:
        result = SyncResult(owner=owner, collection=collection)
        try:
            remote_ids = self._pull(owner, collection, result)
            self._detect_remote_deletions(owner, collection, remote_ids, result)
            self._push(owner, collection, result)
        except SyncError as exc:
            result.aborted = str(exc)
            result.finished_at = datetime.now(timezone.utc)
            self._record(result)
            if background:
                logger.warning(
                    "Background sync of %s/%s failed: %s",
                    short_id(owner), collection, exc,
                )
                return result
            raise

        result.finished_at = datetime.now(timezone.utc)
        self._record(result)
        logger.info(
            "Sync %s/%s: pulled=%d updated=%d removed=%d pushed=%d deleted=%d",
            short_id(owner), collection, result.pulled, result.updated,
            result.removed, result.pushed, result.hard_deleted,
        )
        return result

    def _pull(self, owner: str, collection: str, result: SyncResult) -> set[str]:
        """Phase 1. Nothing local changes until the fetch has succeeded."""
        envelopes = self.remote.fetch(owner, collection)
        local = {r.record_id: r for r in self.store.list_by_owner(owner, collection)}

        remote_ids = set()
        for envelope in envelopes:
            if envelope.owner and envelope.owner != owner:
                logger.debug("Ignoring %s owned by someone else", envelope.record_id)
                continue
            envelope.owner = owner
            remote_ids.add(envelope.record_id)
            self._merge(envelope, local.get(envelope.record_id), result)
        return remote_ids

    def _merge(
        self, envelope: SealedEnvelope, existing: Optional[Record], result: SyncResult
    ) -> None:
        if existing is not None and envelope.version <= existing.version:
            result.unchanged += 1
            self._check_sealing(envelope, existing, result)
            return

        if existing is not None and existing.pending and self._local_is_newer(existing, envelope):
            logger.info(
                "Keeping local edit of %s over remote v%d",
                envelope.record_id, envelope.version,
            )
            result.kept_local += 1
            return

        try:
            plaintext, path = self.vault.open_envelope(envelope)
        except UnsealError as exc:
            logger.warning("Cannot open %s: %s", envelope.record_id, exc)
            result.errors.append(f"{envelope.record_id}: {exc}")
            return

        fields, recovered = decode_tolerant(plaintext, envelope.collection)
        if not recovered:
            result.placeholders += 1
        elif fields.get("deleted"):
            if existing is not None:
                self.store.delete(existing.record_id)
                result.removed += 1
                logger.info("Removed %s, deleted remotely", envelope.record_id)
            return

        record = Record(
            record_id=envelope.record_id,
            owner=envelope.owner,
            collection=envelope.collection,
            fields=fields,
            version=envelope.version,
            pending=False,
            read_delegates=list(envelope.read_delegates),
            write_delegates=list(envelope.write_delegates),
        )
        if recovered and self.me == record.owner and (
            envelope.missing_delegates or envelope.wire_format != WireFormat.VERSIONED_V3
        ):
            record.pending = True
            result.resealed += 1

        self.store.put(record)
        if existing is None:
            result.pulled += 1
        else:
            result.updated += 1
        logger.debug(
            "Adopted %s v%d via %s path", record.record_id, record.version, path,
        )

    def _check_sealing(
        self, envelope: SealedEnvelope, existing: Record, result: SyncResult
    ) -> None:
        """An owner's envelope listing a delegate without a payload is re-sealed."""
        if self.me != existing.owner or existing.pending:
            return
        if envelope.missing_delegates:
            logger.info(
                "%s lacks payloads for %d delegate(s), re-sealing",
                envelope.record_id, len(envelope.missing_delegates),
            )
            existing.pending = True
            self.store.put(existing)
            result.resealed += 1

    @staticmethod
    def _local_is_newer(existing: Record, envelope: SealedEnvelope) -> bool:
        local_ts = existing.updated_at
        if local_ts is None:
            return False
        if envelope.updated_at is None:
            return True
        return local_ts > envelope.updated_at

    def _detect_remote_deletions(
        self, owner: str, collection: str, remote_ids: set[str], result: SyncResult
    ) -> None:
        """Phase 2. Pending records are never removed here."""
        for record in self.store.list_by_owner(owner, collection):
            if record.record_id in remote_ids:
                continue
            if record.version > 0 and not record.pending:
                self.store.delete(record.record_id)
                result.removed += 1
                logger.info("Removed %s, gone from remote store", record.record_id)

    def _push(self, owner: str, collection: str, result: SyncResult) -> None:
        """Phase 3. Only confirmed results touch local state."""
        pending = self.store.list_pending(owner, collection)
        if not pending:
            return

        if owner == self.me:
            # Records created after an app-scope grant still reach the delegate.
            grants = self.remote.list_delegations(owner)
            for record in pending:
                if record.apply_grants(grants):
                    current = self.store.get(record.record_id) or record
                    current.apply_grants(grants)
                    self.store.put(current)

        sent = {r.record_id: r for r in pending}
        envelopes = [self.vault.seal_record(r, encode(r.fields)) for r in pending]

        try:
            results = self.remote.push(envelopes)
        except PermissionDenied as exc:
            logger.warning("Push of %d record(s) refused: %s", len(envelopes), exc)
            result.denied.extend(sent)
            return
        except RemoteUnavailable as exc:
            result.outcome_unknown = exc.outcome_unknown
            raise

        for push_result in results:
            record = sent.get(push_result.record_id)
            if record is None:
                continue
            if not push_result.accepted or push_result.version is None:
                if push_result.denied:
                    result.denied.append(record.record_id)
                else:
                    result.errors.append(
                        f"{record.record_id}: {push_result.error or 'not confirmed'}"
                    )
                continue
            self._confirm(record, push_result.version, result)

    def _confirm(self, record: Record, version: int, result: SyncResult) -> None:
        result.pushed += 1
        version = max(version, record.version)
        current = self.store.get(record.record_id)

        if current is not None and (
            current.fields != record.fields
            or current.read_delegates != record.read_delegates
            or current.write_delegates != record.write_delegates
        ):
            # Edited again while the push was in flight. Keep it pending.
            current.version = max(version, current.version)
            current.pending = True
            self.store.put(current)
            return

        if record.deleted:
            self.store.delete(record.record_id)
            result.hard_deleted += 1
            logger.info("Hard-deleted %s after confirmed push", record.record_id)
            return

        record.version = version
        record.pending = False
        self.store.put(record)

    # -- State --------------------------------------------------------------

    def _state_file(self) -> Optional[Path]:
        return self.home / "sync" / "state.json" if self.home else None

    def _load_state(self) -> SyncState:
        """Load sync state from disk."""
        state_file = self._state_file()
        if state_file is not None and state_file.exists():
            try:
                data = json.loads(state_file.read_text(encoding="utf-8"))
                return SyncState(**data)
            except (json.JSONDecodeError, ValueError) as exc:
                logger.warning("Failed to load sync state: %s", exc)
        return SyncState()

    def _record(self, result: SyncResult) -> None:
        with self._guard:
            self.state.last_sync = result.finished_at
            self.state.pass_count += 1
            self.state.pushed_total += result.pushed
            self.state.pulled_total += result.pulled + result.updated
            if result.ok:
                self.state.last_success = result.finished_at
                self.state.last_error = None
            else:
                self.state.last_error = (
                    result.aborted
                    or "; ".join(result.errors[:3])
                    or f"denied: {len(result.denied)} record(s)"
                )
            state_file = self._state_file()
            if state_file is not None:
                state_file.parent.mkdir(parents=True, exist_ok=True)
                state_file.write_text(self.state.model_dump_json(indent=2), encoding="utf-8")
