"""Tests for sync notices and delegation manifests."""

from __future__ import annotations

from pathlib import Path
from unittest import mock

import pytest

from sktasks.identity import ExecutionContext, Identity
from sktasks.notifier import (
    KIND_DELEGATION_MANIFEST,
    KIND_SYNC_NOTICE,
    DelegationNotifier,
    ManifestEntry,
    SyncNotifier,
    connect_engine,
    create_bus,
)
from sktasks.pubsub import BroadcastEvent, FileBroadcast, MemoryBroadcast
from sktasks.sync.models import NotifierConfig, Permission, Record, SyncConfig, SyncResult
from sktasks.sync.store import RecordStore


@pytest.fixture
def bus() -> MemoryBroadcast:
    return MemoryBroadcast()


def _notifier(identity: Identity, device: str, bus, **kwargs) -> SyncNotifier:
    return SyncNotifier(ExecutionContext(identity, device_id=device), bus, **kwargs)


# ---------------------------------------------------------------------------
# Sync notices
# ---------------------------------------------------------------------------


class TestSyncNotifier:
    """Publishing, rate limiting and receiving notices."""

    def test_other_device_receives(self, bus, alice) -> None:
        laptop = _notifier(alice, "laptop", bus)
        phone = _notifier(alice, "phone", bus)
        received = []
        phone.subscribe(received.append)

        assert laptop.publish()
        assert phone.poll_once() == 1
        assert received[0].device_id == "laptop"
        assert received[0].author == alice.public_id

    def test_own_device_ignored(self, bus, alice) -> None:
        laptop = _notifier(alice, "laptop", bus)
        received = []
        laptop.subscribe(received.append)
        laptop.publish()
        assert laptop.poll_once() == 0
        assert received == []

    def test_content_is_sealed(self, bus, alice) -> None:
        _notifier(alice, "laptop", bus).publish()
        [event] = bus.query([KIND_SYNC_NOTICE])
        assert "laptop" not in event.content
        assert event.tag("p") == alice.public_id

    def test_rate_limited_per_recipient(self, bus, alice, bob) -> None:
        laptop = _notifier(alice, "laptop", bus, min_interval=60)
        assert laptop.publish()
        assert not laptop.publish()
        assert laptop.publish(recipient=bob.public_id)

    def test_no_rate_limit(self, bus, alice) -> None:
        laptop = _notifier(alice, "laptop", bus, min_interval=0)
        assert laptop.publish()
        assert laptop.publish()

    def test_not_redelivered(self, bus, alice) -> None:
        laptop = _notifier(alice, "laptop", bus)
        phone = _notifier(alice, "phone", bus)
        phone.subscribe(lambda notice: None)
        laptop.publish()
        assert phone.poll_once() == 1
        assert phone.poll_once() == 0

    def test_other_subject_ignored(self, bus, alice) -> None:
        laptop = _notifier(alice, "laptop", bus, subject="notes")
        phone = _notifier(alice, "phone", bus, subject="sktasks")
        received = []
        phone.subscribe(received.append)
        laptop.publish()
        phone.poll_once()
        assert received == []

    def test_delegate_notifies_owner(self, bus, alice, agent) -> None:
        worker = _notifier(agent, "agent-box", bus)
        owner = _notifier(alice, "laptop", bus)
        received = []
        owner.subscribe(received.append)
        worker.publish(recipient=alice.public_id)
        owner.poll_once()
        assert received[0].author == agent.public_id

    def test_stranger_cannot_read(self, bus, alice, bob) -> None:
        _notifier(alice, "laptop", bus).publish()
        snoop = _notifier(bob, "bob-phone", bus)
        received = []
        snoop.subscribe(received.append)
        snoop.poll_once()
        assert received == []

    def test_predicate_filters(self, bus, alice) -> None:
        laptop = _notifier(alice, "laptop", bus)
        phone = _notifier(alice, "phone", bus)
        received = []
        phone.subscribe(received.append, predicate=lambda n: n.device_id == "tablet")
        laptop.publish()
        assert phone.poll_once() == 0
        assert received == []

    def test_callback_error_contained(self, bus, alice) -> None:
        laptop = _notifier(alice, "laptop", bus)
        phone = _notifier(alice, "phone", bus)
        received = []
        phone.subscribe(mock.Mock(side_effect=RuntimeError("boom")))
        phone.subscribe(received.append)
        laptop.publish()
        assert phone.poll_once() == 1
        assert len(received) == 1

    def test_unreadable_content_dropped(self, bus, alice_ctx) -> None:
        event = BroadcastEvent.create(
            alice_ctx, KIND_SYNC_NOTICE,
            [["p", alice_ctx.public_id], ["t", "sktasks"]], "not sealed",
        )
        bus.publish(event)
        phone = SyncNotifier(ExecutionContext(alice_ctx.identity, "phone"), bus)
        received = []
        phone.subscribe(received.append)
        assert phone.poll_once() == 0

    def test_announce_recipients(self, bus, alice, bob, agent, home: Path) -> None:
        laptop = _notifier(alice, "laptop", bus, min_interval=0)
        store = RecordStore(home)
        store.put(Record(
            record_id="t1", owner=alice.public_id,
            read_delegates=[bob.public_id], write_delegates=[agent.public_id],
        ))
        result = SyncResult(owner=alice.public_id, collection="tasks", pushed=1)
        assert laptop.announce(result, store) == 3
        recipients = {e.tag("p") for e in bus.query([KIND_SYNC_NOTICE])}
        assert recipients == {alice.public_id, bob.public_id, agent.public_id}

    def test_announce_nothing_pushed(self, bus, alice, home: Path) -> None:
        laptop = _notifier(alice, "laptop", bus)
        result = SyncResult(owner=alice.public_id, collection="tasks")
        assert laptop.announce(result, RecordStore(home)) == 0


# ---------------------------------------------------------------------------
# Delegation manifests
# ---------------------------------------------------------------------------


def _manifests(identity: Identity, bus) -> DelegationNotifier:
    return DelegationNotifier(ExecutionContext(identity, device_id=identity.name), bus)


class TestDelegationNotifier:
    """Manifests replace the delegate's view; diffs drive callbacks."""

    def test_grant_then_revoke(self, bus, alice, bob) -> None:
        owner = _manifests(alice, bus)
        delegate = _manifests(bob, bus)
        changes = []
        delegate.subscribe(changes.append)

        owner.publish_manifest(bob.public_id, [
            ManifestEntry(record_id="t1"),
            ManifestEntry(record_id="t2", permission=Permission.WRITE),
        ])
        assert delegate.poll_once() == 1
        assert {e.record_id for e in changes[0].granted} == {"t1", "t2"}
        assert changes[0].revoked == []
        assert changes[0].owner == alice.public_id

        owner.publish_manifest(bob.public_id, [ManifestEntry(record_id="t2", permission=Permission.WRITE)])
        assert delegate.poll_once() == 1
        assert changes[1].granted == []
        assert changes[1].revoked == ["t1"]
        assert delegate.known_manifest(alice.public_id).as_map() == {"t2": Permission.WRITE}

    def test_permission_change_is_a_grant(self, bus, alice, bob) -> None:
        owner = _manifests(alice, bus)
        delegate = _manifests(bob, bus)
        changes = []
        delegate.subscribe(changes.append)

        owner.publish_manifest(bob.public_id, [ManifestEntry(record_id="t1")])
        delegate.poll_once()
        owner.publish_manifest(bob.public_id, [ManifestEntry(record_id="t1", permission=Permission.WRITE)])
        delegate.poll_once()
        assert changes[1].granted[0].permission == Permission.WRITE

    def test_same_manifest_not_redelivered(self, bus, alice, bob) -> None:
        owner = _manifests(alice, bus)
        delegate = _manifests(bob, bus)
        changes = []
        delegate.subscribe(changes.append)
        owner.publish_manifest(bob.public_id, [ManifestEntry(record_id="t1")])
        delegate.poll_once()
        assert delegate.poll_once() == 0
        assert len(changes) == 1

    def test_one_manifest_per_pair(self, bus, alice, bob) -> None:
        owner = _manifests(alice, bus)
        owner.publish_manifest(bob.public_id, [ManifestEntry(record_id="t1")])
        owner.publish_manifest(bob.public_id, [])
        assert len(bus.query([KIND_DELEGATION_MANIFEST])) == 1

    def test_not_addressed_to_others(self, bus, alice, bob, agent) -> None:
        owner = _manifests(alice, bus)
        other = _manifests(agent, bus)
        changes = []
        other.subscribe(changes.append)
        owner.publish_manifest(bob.public_id, [ManifestEntry(record_id="t1")])
        assert other.poll_once() == 0

    def test_manifest_for(self, alice, bob, agent, home: Path) -> None:
        owner = _manifests(alice, MemoryBroadcast())
        store = RecordStore(home)
        store.put(Record(record_id="r1", owner=alice.public_id, read_delegates=[bob.public_id]))
        store.put(Record(record_id="w1", owner=alice.public_id, write_delegates=[bob.public_id]))
        store.put(Record(record_id="x1", owner=alice.public_id, read_delegates=[agent.public_id]))
        store.put(Record(
            record_id="gone", owner=alice.public_id, read_delegates=[bob.public_id],
            fields={"deleted": True},
        ))
        entries = {e.record_id: e.permission for e in owner.manifest_for(bob.public_id, store)}
        assert entries == {"r1": Permission.READ, "w1": Permission.WRITE}


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


class TestWiring:
    """connect_engine and create_bus."""

    def test_create_bus_default_path(self, home: Path) -> None:
        bus = create_bus(NotifierConfig(), home)
        assert isinstance(bus, FileBroadcast)

    def test_notice_triggers_own_sync(self, bus, alice) -> None:
        engine = mock.Mock(config=SyncConfig(), home=None)
        phone = _notifier(alice, "phone", bus)
        connect_engine(engine, sync_notifier=phone)
        _notifier(alice, "laptop", bus).publish()
        phone.poll_once()
        engine.sync.assert_called_once_with(owner=None, background=True)

    def test_notice_from_tracked_owner(self, bus, alice, bob) -> None:
        engine = mock.Mock(config=SyncConfig(tracked_owners=[alice.public_id]), home=None)
        listener = _notifier(bob, "bob-phone", bus)
        connect_engine(engine, sync_notifier=listener)
        _notifier(alice, "laptop", bus).publish(recipient=bob.public_id)
        listener.poll_once()
        engine.sync.assert_called_once_with(owner=alice.public_id, background=True)

    def test_manifest_starts_tracking(self, bus, alice, bob, home: Path) -> None:
        engine = mock.Mock(config=SyncConfig(), home=home)
        delegate = _manifests(bob, bus)
        connect_engine(engine, delegation_notifier=delegate)
        _manifests(alice, bus).publish_manifest(bob.public_id, [ManifestEntry(record_id="t1")])
        delegate.poll_once()

        assert engine.config.tracked_owners == [alice.public_id]
        assert (home / "config" / "config.yaml").exists()
        engine.sync.assert_called_once_with(owner=alice.public_id, background=True)
