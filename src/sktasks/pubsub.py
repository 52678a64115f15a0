"""
Broadcast medium -- small signed events for out-of-band signals.

Notifiers never carry record content over this medium. They carry
"something changed" and "here is what you may now read", both as
ciphertext behind plaintext routing tags.

Every event is signed by its author. Readers drop anything whose
signature does not check out. Delivery is best effort with a bounded
replay window, not durable storage.

Replaceable events (kinds 30000-39999) are keyed by (author, kind,
d-tag): publishing a newer one replaces the old one, so the medium
holds at most one per key.

Storage layout (FileBroadcast):
    <path>/
    ├── kind-30080/
    │   ├── evt-<id>.json           # regular events
    │   └── rep-<key-hash>.json     # replaceable events, one per key
    └── kind-30081/
        └── ...

Usage:
    bus = FileBroadcast(home / "broadcast")
    bus.publish(BroadcastEvent.create(ctx, 30080, [["p", me]], content))
    events = bus.query([30080], tags={"p": [me]}, since=cutoff)
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError

from .identity import ExecutionContext, verify

logger = logging.getLogger("sktasks.pubsub")

REPLACEABLE_KINDS = range(30000, 40000)


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class BroadcastEvent(BaseModel):
    """A single signed event on the broadcast medium."""

    event_id: str = ""
    kind: int
    author: str
    created_at: int = Field(default_factory=lambda: int(time.time()))
    tags: list[list[str]] = Field(default_factory=list)
    content: str = ""
    signature: str = ""

    @classmethod
    def create(
        cls,
        context: ExecutionContext,
        kind: int,
        tags: list[list[str]],
        content: str,
        created_at: Optional[int] = None,
    ) -> "BroadcastEvent":
        """Build and sign an event authored by ``context``."""
        event = cls(
            kind=kind,
            author=context.public_id,
            created_at=created_at if created_at is not None else int(time.time()),
            tags=tags,
            content=content,
        )
        payload = event.signing_bytes()
        event.event_id = hashlib.sha256(payload).hexdigest()
        event.signature = context.sign(payload)
        return event

    def signing_bytes(self) -> bytes:
        return json.dumps(
            [self.author, self.kind, self.created_at, self.tags, self.content],
            separators=(",", ":"),
            ensure_ascii=False,
        ).encode("utf-8")

    def verify(self) -> bool:
        """Check the id and the author's signature."""
        payload = self.signing_bytes()
        if self.event_id != hashlib.sha256(payload).hexdigest():
            return False
        return verify(self.author, payload, self.signature)

    def tag(self, name: str) -> Optional[str]:
        """First value of a tag, or None."""
        for tag in self.tags:
            if len(tag) >= 2 and tag[0] == name:
                return tag[1]
        return None

    def tag_values(self, name: str) -> list[str]:
        return [t[1] for t in self.tags if len(t) >= 2 and t[0] == name]

    @property
    def replaceable(self) -> bool:
        return self.kind in REPLACEABLE_KINDS

    @property
    def replace_key(self) -> str:
        return f"{self.author}:{self.kind}:{self.tag('d') or ''}"

    def matches(
        self,
        kinds: Optional[list[int]] = None,
        tags: Optional[dict[str, list[str]]] = None,
        since: Optional[int] = None,
    ) -> bool:
        if kinds is not None and self.kind not in kinds:
            return False
        if since is not None and self.created_at < since:
            return False
        for name, wanted in (tags or {}).items():
            if not set(self.tag_values(name)) & set(wanted):
                return False
        return True


# ---------------------------------------------------------------------------
# Buses
# ---------------------------------------------------------------------------

class BroadcastBus(ABC):
    """Abstract broadcast medium."""

    @abstractmethod
    def publish(self, event: BroadcastEvent) -> BroadcastEvent:
        """Publish a signed event.

        Raises:
            ValueError: If the event is unsigned or its signature is bad.
        """

    @abstractmethod
    def query(
        self,
        kinds: Optional[list[int]] = None,
        tags: Optional[dict[str, list[str]]] = None,
        since: Optional[int] = None,
    ) -> list[BroadcastEvent]:
        """Events matching every filter, oldest first.

        Args:
            kinds: Event kinds to include (None = all).
            tags: Tag name -> acceptable values; every name must match.
            since: Only events created at or after this unix time.
        """

    @staticmethod
    def _check(event: BroadcastEvent) -> None:
        if not event.verify():
            raise ValueError(f"Refusing unsigned or forged event {event.event_id[:12]}")


class MemoryBroadcast(BroadcastBus):
    """In-process medium, shared by reference between notifiers."""

    def __init__(self) -> None:
        self._events: list[BroadcastEvent] = []
        self._lock = threading.Lock()

    def publish(self, event: BroadcastEvent) -> BroadcastEvent:
        self._check(event)
        with self._lock:
            if event.replaceable:
                for existing in self._events:
                    if (
                        existing.replaceable
                        and existing.replace_key == event.replace_key
                        and existing.created_at > event.created_at
                    ):
                        return existing
                self._events = [
                    e for e in self._events
                    if not (e.replaceable and e.replace_key == event.replace_key)
                ]
            self._events.append(event)
        return event

    def query(
        self,
        kinds: Optional[list[int]] = None,
        tags: Optional[dict[str, list[str]]] = None,
        since: Optional[int] = None,
    ) -> list[BroadcastEvent]:
        with self._lock:
            found = [e for e in self._events if e.matches(kinds, tags, since)]
        return sorted(found, key=lambda e: e.created_at)


class FileBroadcast(BroadcastBus):
    """Directory-backed medium, distributable with Syncthing.

    Args:
        path: Root directory of the medium.
        ttl_seconds: Events older than this are ignored and purged.
        max_events: Per-kind cap before the oldest events are pruned.
    """

    def __init__(self, path: Path, ttl_seconds: int = 86400, max_events: int = 1000) -> None:
        self._root = Path(path).expanduser()
        self._ttl = ttl_seconds
        self._max_events = max_events

    def _kind_dir(self, kind: int) -> Path:
        return self._root / f"kind-{kind}"

    def publish(self, event: BroadcastEvent) -> BroadcastEvent:
        self._check(event)
        kind_dir = self._kind_dir(event.kind)
        kind_dir.mkdir(parents=True, exist_ok=True)

        if event.replaceable:
            key_hash = hashlib.sha256(event.replace_key.encode("utf-8")).hexdigest()[:24]
            filename = f"rep-{key_hash}.json"
            current = self._read(kind_dir / filename)
            if current is not None and current.created_at > event.created_at:
                return current
        else:
            filename = f"evt-{event.event_id[:24]}.json"

        tmp_path = kind_dir / f".{filename}.tmp"
        tmp_path.write_text(event.model_dump_json(indent=2), encoding="utf-8")
        os.replace(tmp_path, kind_dir / filename)

        self._prune(kind_dir)
        logger.debug("Published kind %d: %s", event.kind, event.event_id[:12])
        return event

    def query(
        self,
        kinds: Optional[list[int]] = None,
        tags: Optional[dict[str, list[str]]] = None,
        since: Optional[int] = None,
    ) -> list[BroadcastEvent]:
        if not self._root.is_dir():
            return []
        if kinds is None:
            dirs = [d for d in self._root.iterdir() if d.is_dir() and d.name.startswith("kind-")]
        else:
            dirs = [self._kind_dir(k) for k in kinds]

        cutoff = int(time.time()) - self._ttl
        found = []
        for kind_dir in dirs:
            if not kind_dir.is_dir():
                continue
            for path in kind_dir.glob("*.json"):
                event = self._read(path)
                if event is None or event.created_at < cutoff:
                    continue
                if event.matches(kinds, tags, since):
                    found.append(event)
        return sorted(found, key=lambda e: e.created_at)

    def purge_expired(self) -> int:
        """Remove events past their TTL.

        Returns:
            Number of events removed.
        """
        removed = 0
        if not self._root.is_dir():
            return removed
        cutoff = int(time.time()) - self._ttl
        for path in self._root.glob("kind-*/*.json"):
            event = self._read(path)
            if event is not None and event.created_at < cutoff:
                path.unlink()
                removed += 1
        if removed:
            logger.info("Purged %d expired events", removed)
        return removed

    def _read(self, path: Path) -> Optional[BroadcastEvent]:
        if not path.exists():
            return None
        try:
            return BroadcastEvent.model_validate(json.loads(path.read_text(encoding="utf-8")))
        except (json.JSONDecodeError, ValidationError, OSError) as exc:
            logger.warning("Skipping invalid event %s: %s", path.name, exc)
            return None

    def _prune(self, kind_dir: Path) -> None:
        """Remove oldest regular events if the kind exceeds max size."""
        files = sorted(kind_dir.glob("evt-*.json"), key=lambda f: f.stat().st_mtime)
        excess = len(files) - self._max_events
        if excess > 0:
            for f in files[:excess]:
                f.unlink()
            logger.debug("Pruned %d old events from %s", excess, kind_dir.name)
