"""Tests for the task service."""

from __future__ import annotations

from pathlib import Path

import pytest

from sktasks.identity import ExecutionContext
from sktasks.sync.errors import PermissionDenied
from sktasks.sync.models import Record, parse_timestamp
from sktasks.sync.store import RecordStore
from sktasks.tasks import (
    InvalidTransition,
    TaskFields,
    TaskNotFound,
    TaskPriority,
    TaskService,
    TaskState,
)


@pytest.fixture
def service(alice_ctx: ExecutionContext, home: Path) -> TaskService:
    return TaskService(alice_ctx, RecordStore(home))


class TestCreate:
    """New tasks start pending at version 0."""

    def test_defaults(self, service: TaskService) -> None:
        record = service.create("Water plants")
        fields = TaskService.fields_of(record)
        assert record.record_id.startswith("task_")
        assert record.version == 0 and record.pending
        assert record.owner == service.me
        assert fields.state == TaskState.NEW
        assert fields.priority == TaskPriority.SAND
        assert not fields.done

    def test_fields(self, service: TaskService) -> None:
        record = service.create("Taxes", priority="boulder", tags=["money"], scheduled_for="2026-04-15")
        assert record.fields["priority"] == "boulder"
        assert record.fields["tags"] == ["money"]
        assert record.fields["scheduled_for"] == "2026-04-15"

    def test_unknown_field(self, service: TaskService) -> None:
        with pytest.raises(ValueError):
            service.create("x", colour="red")

    def test_for_another_owner(self, service: TaskService, bob) -> None:
        record = service.create("for bob", owner=bob.public_id)
        assert record.owner == bob.public_id
        assert record.write_delegates == [service.me]


class TestMutations:
    """update / transition / soft_delete."""

    def test_update_restamps(self, service: TaskService) -> None:
        record = service.create("a")
        created = record.fields["created_at"]
        record.pending = False
        service.store.put(record)

        updated = service.update(record.record_id, title="b")
        assert updated.fields["title"] == "b"
        assert updated.fields["created_at"] == created
        assert updated.updated_at >= parse_timestamp(created)
        assert updated.pending

    def test_update_keeps_version(self, service: TaskService) -> None:
        record = service.create("a")
        record.version = 5
        service.store.put(record)
        assert service.update(record.record_id, title="b").version == 5

    def test_update_rejects_state(self, service: TaskService) -> None:
        record = service.create("a")
        with pytest.raises(ValueError):
            service.update(record.record_id, state="done")

    def test_missing(self, service: TaskService) -> None:
        with pytest.raises(TaskNotFound):
            service.update("task_nope", title="x")

    def test_transitions(self, service: TaskService) -> None:
        rid = service.create("a").record_id
        service.transition(rid, TaskState.READY)
        service.transition(rid, TaskState.IN_PROGRESS)
        done = service.transition(rid, TaskState.DONE)
        assert done.fields["state"] == "done"
        assert done.fields["done"] is True

    def test_invalid_transition(self, service: TaskService) -> None:
        rid = service.create("a").record_id
        service.transition(rid, TaskState.DONE)
        with pytest.raises(InvalidTransition):
            service.transition(rid, TaskState.IN_PROGRESS)

    def test_reopen(self, service: TaskService) -> None:
        rid = service.create("a").record_id
        service.transition(rid, TaskState.DONE)
        reopened = service.transition(rid, TaskState.READY)
        assert reopened.fields["done"] is False

    def test_soft_delete(self, service: TaskService) -> None:
        rid = service.create("a").record_id
        record = service.soft_delete(rid)
        assert record.deleted and record.pending
        assert service.store.get(rid) is not None

    def test_read_only(self, service: TaskService, bob) -> None:
        service.store.put(Record(
            record_id="task_shared", owner=bob.public_id,
            fields={"title": "bob's"}, read_delegates=[service.me],
        ))
        with pytest.raises(PermissionDenied):
            service.update("task_shared", title="mine now")

    def test_write_delegate(self, service: TaskService, bob) -> None:
        service.store.put(Record(
            record_id="task_shared", owner=bob.public_id,
            fields={"title": "bob's"}, write_delegates=[service.me],
        ))
        assert service.update("task_shared", title="helped").fields["title"] == "helped"


class TestListing:
    """list() ordering and filters."""

    def test_heaviest_first_then_oldest(self, service: TaskService) -> None:
        service.create("sand")
        service.create("rock", priority="rock")
        service.create("boulder", priority="boulder")
        service.create("rock 2", priority="rock")
        titles = [r.fields["title"] for r in service.list()]
        assert titles == ["boulder", "rock", "rock 2", "sand"]

    def test_deleted_hidden(self, service: TaskService) -> None:
        rid = service.create("gone").record_id
        service.create("kept")
        service.soft_delete(rid)
        assert [r.fields["title"] for r in service.list()] == ["kept"]
        assert len(service.list(include_deleted=True)) == 2

    def test_state_filter(self, service: TaskService) -> None:
        rid = service.create("a").record_id
        service.create("b")
        service.transition(rid, TaskState.READY)
        assert [r.record_id for r in service.list(state=TaskState.READY)] == [rid]

    def test_other_owner(self, service: TaskService, bob) -> None:
        service.store.put(Record(record_id="t", owner=bob.public_id, fields={"title": "x"}))
        assert service.list() == []
        assert len(service.list(owner=bob.public_id)) == 1


class TestTaskFields:
    """Field model details."""

    def test_comma_tags(self) -> None:
        assert TaskFields(title="x", tags="a, b,,c").tags == ["a", "b", "c"]

    def test_extra_fields_preserved(self) -> None:
        fields = TaskFields.model_validate({"title": "x", "color": "red"})
        assert fields.model_dump()["color"] == "red"
