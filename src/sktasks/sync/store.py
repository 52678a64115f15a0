"""
Versioned record store -- the local table every sync pass reconciles.

One JSON file per record. Every write goes to a hidden temp file in
the same directory and is renamed over the target, so a record on disk
is always a complete (fields, version, pending) triple, never half of
an update.

Storage layout:
    ~/.sktasks/records/
    ├── task_3f2a...-1a2b3c4d.json
    └── ...

No network access happens here.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import threading
from pathlib import Path
from typing import Iterator, Optional

from pydantic import ValidationError

from .models import Record

logger = logging.getLogger("sktasks.sync.store")

_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]")


def safe_name(record_id: str) -> str:
    """Filesystem-safe, collision-resistant file name for a record id."""
    digest = hashlib.sha256(record_id.encode("utf-8")).hexdigest()[:8]
    readable = _UNSAFE.sub("_", record_id)[:80]
    return f"{readable}-{digest}.json"


class RecordStore:
    """Local key-value table of records keyed by ``record_id``.

    Args:
        home: Home directory (~/.sktasks).
    """

    def __init__(self, home: Path) -> None:
        self._home = home
        self._dir = home / "records"
        self._lock = threading.RLock()

    @property
    def path(self) -> Path:
        return self._dir

    def _file_for(self, record_id: str) -> Path:
        return self._dir / safe_name(record_id)

    def get(self, record_id: str) -> Optional[Record]:
        """Return the stored record, or None if absent."""
        path = self._file_for(record_id)
        if not path.exists():
            return None
        return self._read(path)

    def put(self, record: Record) -> Record:
        """Upsert a record, replacing every stored attribute at once.

        Args:
            record: The complete record to store.

        Returns:
            The stored record.
        """
        with self._lock:
            self._dir.mkdir(parents=True, exist_ok=True)
            final_path = self._file_for(record.record_id)
            tmp_path = final_path.with_name(f".{final_path.name}.tmp")
            tmp_path.write_text(record.model_dump_json(indent=2), encoding="utf-8")
            os.replace(tmp_path, final_path)

        logger.debug(
            "Stored %s (v%d, pending=%s)",
            record.record_id, record.version, record.pending,
        )
        return record

    def delete(self, record_id: str) -> bool:
        """Remove every local trace of a record.

        Returns:
            True if the record existed.
        """
        with self._lock:
            path = self._file_for(record_id)
            if not path.exists():
                return False
            path.unlink()
        logger.debug("Deleted %s", record_id)
        return True

    def all(self) -> Iterator[Record]:
        """Iterate over every readable record."""
        if not self._dir.is_dir():
            return
        for path in sorted(self._dir.glob("*.json")):
            record = self._read(path)
            if record is not None:
                yield record

    def list_by_owner(self, owner: str, collection: Optional[str] = None) -> list[Record]:
        """All records owned by ``owner``, optionally in one collection."""
        return [
            r for r in self.all()
            if r.owner == owner and (collection is None or r.collection == collection)
        ]

    def list_pending(self, owner: str, collection: Optional[str] = None) -> list[Record]:
        """Records of ``owner`` with unpushed local mutations."""
        return [r for r in self.list_by_owner(owner, collection) if r.pending]

    def owners(self) -> list[str]:
        """Distinct owners present in the store."""
        return sorted({r.owner for r in self.all()})

    def count(self) -> int:
        return sum(1 for _ in self.all())

    def _read(self, path: Path) -> Optional[Record]:
        try:
            return Record.model_validate(json.loads(path.read_text(encoding="utf-8")))
        except (json.JSONDecodeError, ValidationError, OSError) as exc:
            logger.warning("Skipping unreadable record file %s: %s", path.name, exc)
            return None
