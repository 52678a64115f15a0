"""
Tasks -- the records people actually care about.

A task moves through a small board:

    new ──► ready ──► in_progress ──► done
     ▲  ╲     │ ▲          │            │
     └───╲────┘ └──────────┘            │
          ╲───────────────────► done    │
                      ready ◄───────────┘

Every mutation goes through TaskService, which re-stamps updated_at,
marks the record pending, and leaves versions alone. Only the remote
store assigns versions. Deleting is always a soft delete; the sync
engine removes the record for good once the remote has confirmed it.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .identity import ExecutionContext, short_id
from .sync.errors import PermissionDenied
from .sync.models import Permission, Record, utcnow
from .sync.store import RecordStore

logger = logging.getLogger("sktasks.tasks")


class TaskState(str, Enum):
    """Board columns."""

    NEW = "new"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    DONE = "done"


class TaskPriority(str, Enum):
    """How heavy a task is, lightest first."""

    SAND = "sand"
    PEBBLE = "pebble"
    ROCK = "rock"
    BOULDER = "boulder"


PRIORITY_WEIGHT = {
    TaskPriority.SAND: 0,
    TaskPriority.PEBBLE: 1,
    TaskPriority.ROCK: 2,
    TaskPriority.BOULDER: 3,
}

ALLOWED_TRANSITIONS: dict[TaskState, set[TaskState]] = {
    TaskState.NEW: {TaskState.READY, TaskState.IN_PROGRESS, TaskState.DONE},
    TaskState.READY: {TaskState.IN_PROGRESS, TaskState.DONE, TaskState.NEW},
    TaskState.IN_PROGRESS: {TaskState.READY, TaskState.DONE},
    TaskState.DONE: {TaskState.READY},
}

EDITABLE_FIELDS = {
    "title", "description", "priority", "tags", "scheduled_for", "assigned_to",
}


class InvalidTransition(ValueError):
    """Raised when a task cannot move to the requested state."""


class TaskNotFound(KeyError):
    """Raised when no task with the given id exists locally."""


class TaskFields(BaseModel):
    """Domain fields of a task, as sealed into the record payload.

    Unknown keys written by other clients are preserved.
    """

    model_config = ConfigDict(extra="allow")

    title: str
    description: str = ""
    state: TaskState = TaskState.NEW
    priority: TaskPriority = TaskPriority.SAND
    tags: list[str] = Field(default_factory=list)
    scheduled_for: Optional[str] = Field(default=None, description="ISO date")
    assigned_to: Optional[str] = Field(default=None, description="Public id of assignee")
    done: bool = False
    deleted: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("tags", mode="before")
    @classmethod
    def _split_tags(cls, value: Any) -> Any:
        # Older clients stored tags as one comma-separated string.
        if isinstance(value, str):
            return [t.strip() for t in value.split(",") if t.strip()]
        return value or []

    @model_validator(mode="after")
    def _done_follows_state(self) -> "TaskFields":
        self.done = self.state == TaskState.DONE
        return self


class TaskService:
    """Create, edit, move and delete tasks in the local store.

    Args:
        context: Who is acting.
        store: Local record store.
        collection: Collection tasks live in.
    """

    def __init__(
        self, context: ExecutionContext, store: RecordStore, collection: str = "tasks"
    ) -> None:
        self.context = context
        self.store = store
        self.collection = collection

    @property
    def me(self) -> str:
        return self.context.public_id

    @staticmethod
    def fields_of(record: Record) -> TaskFields:
        return TaskFields.model_validate(record.fields)

    def get(self, record_id: str) -> Optional[Record]:
        record = self.store.get(record_id)
        if record is None or record.collection != self.collection:
            return None
        return record

    def list(
        self,
        owner: Optional[str] = None,
        include_deleted: bool = False,
        state: Optional[TaskState] = None,
    ) -> list[Record]:
        """Tasks of ``owner`` (default: us), heaviest first, then oldest.

        Args:
            owner: Whose tasks to list.
            include_deleted: Also return soft-deleted tasks and placeholders.
            state: Only tasks in this state.
        """
        records = []
        for record in self.store.list_by_owner(owner or self.me, self.collection):
            if record.deleted and not include_deleted:
                continue
            if state is not None and record.fields.get("state") != state.value:
                continue
            records.append(record)

        def _key(record: Record) -> tuple:
            try:
                weight = PRIORITY_WEIGHT[TaskPriority(record.fields.get("priority", "sand"))]
            except ValueError:
                weight = 0
            return (-weight, str(record.fields.get("created_at", "")))

        return sorted(records, key=_key)

    def create(self, title: str, owner: Optional[str] = None, **fields: Any) -> Record:
        """Create a new pending task at version 0.

        Args:
            title: Task title.
            owner: Owner of the new task. Defaults to us; a delegate may
                create tasks for an owner who granted app-scope write.
            **fields: Any of the editable task fields.

        Returns:
            The stored Record.
        """
        owner = owner or self.me
        unknown = set(fields) - EDITABLE_FIELDS - {"state"}
        if unknown:
            raise ValueError(f"Unknown task field(s): {', '.join(sorted(unknown))}")

        now = utcnow()
        task = TaskFields(title=title, created_at=now, updated_at=now, **fields)
        record = Record(
            record_id=f"task_{uuid.uuid4().hex}",
            owner=owner,
            collection=self.collection,
            fields=task.model_dump(mode="json"),
            version=0,
            pending=True,
            write_delegates=[self.me] if owner != self.me else [],
        )
        self.store.put(record)
        logger.info("Created %s for %s", record.record_id, short_id(owner))
        return record

    def update(self, record_id: str, **changes: Any) -> Record:
        """Edit fields of a task and mark it pending.

        Raises:
            TaskNotFound: No such task.
            PermissionDenied: We may only read this task.
            ValueError: A change names a field that cannot be edited.
        """
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot edit field(s): {', '.join(sorted(unknown))}")
        return self._mutate(record_id, changes)

    def transition(self, record_id: str, state: TaskState) -> Record:
        """Move a task to another board column.

        Raises:
            InvalidTransition: The move is not allowed from the current state.
        """
        record = self._writable(record_id)
        current = TaskState(record.fields.get("state", TaskState.NEW.value))
        state = TaskState(state)
        if state == current:
            return record
        if state not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransition(f"Cannot move task from {current.value} to {state.value}")
        return self._mutate(record_id, {"state": state})

    def soft_delete(self, record_id: str) -> Record:
        """Flag a task deleted. It disappears locally after a confirmed push."""
        return self._mutate(record_id, {"deleted": True})

    def _writable(self, record_id: str) -> Record:
        record = self.get(record_id)
        if record is None:
            raise TaskNotFound(record_id)
        if record.permission_for(self.me) != Permission.WRITE:
            raise PermissionDenied(f"Read-only access to {record_id}")
        return record

    def _mutate(self, record_id: str, changes: dict[str, Any]) -> Record:
        record = self._writable(record_id)
        current = self.fields_of(record)
        merged = {**current.model_dump(), **changes}
        merged["created_at"] = current.created_at
        merged["updated_at"] = utcnow()
        task = TaskFields.model_validate(merged)

        record.fields = task.model_dump(mode="json")
        record.pending = True
        self.store.put(record)
        logger.debug("Updated %s: %s", record_id, ", ".join(sorted(changes)))
        return record
