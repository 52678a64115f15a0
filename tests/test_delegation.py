"""Tests for granting and revoking delegates."""

from __future__ import annotations

import pytest

from sktasks.delegation import DelegationManager
from sktasks.identity import ExecutionContext, InvalidIdentity
from sktasks.notifier import DelegationNotifier
from sktasks.pubsub import MemoryBroadcast
from sktasks.sync.models import Permission


@pytest.fixture
def bus() -> MemoryBroadcast:
    return MemoryBroadcast()


@pytest.fixture
def owner(make_device, alice, bus):
    device = make_device("alice", alice)
    device.manager = DelegationManager(
        device.ctx, device.store, device.remote,
        notifier=DelegationNotifier(device.ctx, bus),
    )
    return device


class TestGrant:
    """grant() updates the remote, local records and the manifest."""

    def test_read_grant_marks_pending(self, owner, bob) -> None:
        rid = owner.tasks.create("a").record_id
        owner.engine.sync()

        grant = owner.manager.grant(bob.public_id)
        assert grant.permissions == [Permission.READ]
        record = owner.store.get(rid)
        assert record.read_delegates == [bob.public_id]
        assert record.write_delegates == []
        assert record.pending

    def test_write_grant(self, owner, agent) -> None:
        rid = owner.tasks.create("a").record_id
        owner.manager.grant(agent.public_id, Permission.WRITE)
        record = owner.store.get(rid)
        assert record.write_delegates == [agent.public_id]
        assert agent.public_id in record.read_delegates
        assert owner.manager.delegates() == {agent.public_id: {"read": 0, "write": 1}}

    def test_downgrade_to_read(self, owner, agent) -> None:
        rid = owner.tasks.create("a").record_id
        owner.manager.grant(agent.public_id, Permission.WRITE)
        owner.manager.grant(agent.public_id, Permission.READ)
        record = owner.store.get(rid)
        assert record.write_delegates == []
        assert record.read_delegates == [agent.public_id]

    def test_single_record(self, owner, bob) -> None:
        shared = owner.tasks.create("shared").record_id
        private = owner.tasks.create("private").record_id
        owner.manager.grant(bob.public_id, record_id=shared)
        assert owner.store.get(shared).read_delegates == [bob.public_id]
        assert owner.store.get(private).read_delegates == []

    def test_unknown_record(self, owner, bob) -> None:
        with pytest.raises(KeyError):
            owner.manager.grant(bob.public_id, record_id="task_missing")
        assert owner.remote.list_delegations() == []

    def test_bad_delegate(self, owner) -> None:
        with pytest.raises(InvalidIdentity):
            owner.manager.grant("not-an-id")

    def test_self(self, owner) -> None:
        with pytest.raises(ValueError):
            owner.manager.grant(owner.ctx.public_id)

    def test_manifest_published(self, owner, bob, bus) -> None:
        rid = owner.tasks.create("a").record_id
        owner.manager.grant(bob.public_id)

        listener = DelegationNotifier(ExecutionContext(bob, "bob-phone"), bus)
        changes = []
        listener.subscribe(changes.append)
        listener.poll_once()
        assert [e.record_id for e in changes[0].granted] == [rid]

    def test_remote_grant_listed(self, owner, bob) -> None:
        owner.manager.grant(bob.public_id)
        assert [g.delegate for g in owner.manager.list()] == [bob.public_id]


class TestRevoke:
    """revoke() removes the delegate everywhere."""

    def test_revoke_all(self, owner, bob) -> None:
        owner.tasks.create("a")
        owner.tasks.create("b")
        owner.manager.grant(bob.public_id)
        assert owner.manager.revoke(bob.public_id) == 2
        assert all(not r.read_delegates for r in owner.store.all())
        assert owner.manager.list() == []

    def test_revoke_untouched(self, owner, bob) -> None:
        owner.tasks.create("a")
        assert owner.manager.revoke(bob.public_id) == 0


class TestEndToEnd:
    """Grant, sync, read as the delegate, revoke, sync again."""

    def test_delegate_lifecycle(self, owner, make_device, bob) -> None:
        reader = make_device("bob", bob)
        rid = owner.tasks.create("shared groceries").record_id
        owner.manager.grant(bob.public_id)
        owner.engine.sync()

        reader.engine.sync(owner=owner.ctx.public_id)
        assert reader.store.get(rid).fields["title"] == "shared groceries"

        owner.manager.revoke(bob.public_id)
        owner.engine.sync()
        result = reader.engine.sync(owner=owner.ctx.public_id)
        assert result.removed == 1
        assert reader.store.get(rid) is None

    def test_app_grant_covers_later_records(self, owner, make_device, bob) -> None:
        """Tasks created after an app-wide grant are sealed to the delegate too."""
        reader = make_device("bob", bob)
        owner.manager.grant(bob.public_id)
        rid = owner.tasks.create("added after the grant").record_id
        owner.engine.sync()
        assert owner.store.get(rid).read_delegates == [bob.public_id]

        result = reader.engine.sync(owner=owner.ctx.public_id)
        assert result.errors == []
        assert result.pulled == 1
        assert reader.store.get(rid).fields["title"] == "added after the grant"

    def test_manifest_lists_records_created_after_app_grant(self, owner, bob) -> None:
        owner.manager.grant(bob.public_id, Permission.WRITE)
        rid = owner.tasks.create("later").record_id

        entries = owner.manager.notifier.manifest_for(
            bob.public_id, owner.store, owner.manager.list(),
        )
        assert [(e.record_id, e.permission) for e in entries] == [(rid, Permission.WRITE)]
        assert owner.manager.notifier.manifest_for(bob.public_id, owner.store) == []
