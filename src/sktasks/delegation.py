"""
Delegation -- share records with other devices' owners and with agents.

Granting is three steps, in this order:

    1. tell the remote store (it authorizes fetches and pushes)
    2. add the delegate to each record and mark it pending, so the next
       push re-seals it with a payload the delegate can open
    3. republish the delegate's manifest so they learn about it

Revoking runs the same steps in reverse spirit: the delegate drops out
of the record lists, the records are re-sealed without them, and the
new manifest simply omits what they lost.
"""

from __future__ import annotations

import logging
from typing import Optional

from .identity import ExecutionContext, short_id, split_public_id
from .notifier import DelegationNotifier
from .sync.backends import RemoteStore
from .sync.models import DelegationGrant, Permission, Record
from .sync.store import RecordStore

logger = logging.getLogger("sktasks.delegation")


class DelegationManager:
    """Owner-side grant and revoke.

    Args:
        context: The owner.
        store: Local record store.
        remote: Remote store that enforces grants.
        notifier: Manifest channel. Optional; without it delegates only
            learn about grants on their next full sync.
        collection: Collection grants apply to.
    """

    def __init__(
        self,
        context: ExecutionContext,
        store: RecordStore,
        remote: RemoteStore,
        notifier: Optional[DelegationNotifier] = None,
        collection: str = "tasks",
    ) -> None:
        self.context = context
        self.store = store
        self.remote = remote
        self.notifier = notifier
        self.collection = collection

    @property
    def me(self) -> str:
        return self.context.public_id

    def grant(
        self,
        delegate: str,
        permission: Permission = Permission.READ,
        record_id: Optional[str] = None,
    ) -> DelegationGrant:
        """Grant ``delegate`` read or write access.

        Args:
            delegate: Public id of the delegate.
            permission: READ, or WRITE (which implies READ).
            record_id: A single record, or None for every record we own.

        Returns:
            The grant as recorded by the remote store.

        Raises:
            InvalidIdentity: Malformed delegate id.
            ValueError: Granting to ourselves.
            KeyError: Unknown record_id.
        """
        self._check_delegate(delegate)
        permissions = [Permission.READ]
        if permission == Permission.WRITE:
            permissions.append(Permission.WRITE)

        records = self._records(record_id)
        grant = self.remote.grant_delegate(delegate, permissions, record_id)

        changed = 0
        for record in records:
            before = (list(record.read_delegates), list(record.write_delegates))
            if delegate not in record.read_delegates:
                record.read_delegates.append(delegate)
            if permission == Permission.WRITE:
                if delegate not in record.write_delegates:
                    record.write_delegates.append(delegate)
            elif delegate in record.write_delegates:
                record.write_delegates.remove(delegate)
            if (record.read_delegates, record.write_delegates) != before:
                record.pending = True
                self.store.put(record)
                changed += 1

        logger.info(
            "Granted %s on %s to %s (%d record(s) to re-seal)",
            permission.value, record_id or "all records", short_id(delegate), changed,
        )
        self._announce(delegate)
        return grant

    def revoke(self, delegate: str, record_id: Optional[str] = None) -> int:
        """Revoke ``delegate`` from one record or from everything.

        Returns:
            Number of local records that lost the delegate.
        """
        self._check_delegate(delegate)
        records = self._records(record_id)
        self.remote.revoke_delegate(delegate, record_id)

        changed = 0
        for record in records:
            if delegate not in record.read_delegates and delegate not in record.write_delegates:
                continue
            record.read_delegates = [d for d in record.read_delegates if d != delegate]
            record.write_delegates = [d for d in record.write_delegates if d != delegate]
            record.pending = True
            self.store.put(record)
            changed += 1

        logger.info("Revoked %s from %d record(s)", short_id(delegate), changed)
        self._announce(delegate)
        return changed

    def list(self) -> list[DelegationGrant]:
        """Grants the remote store holds for us."""
        return self.remote.list_delegations(self.me)

    def delegates(self) -> dict[str, dict[str, int]]:
        """Local view: delegate -> {"read": n, "write": n} record counts."""
        summary: dict[str, dict[str, int]] = {}
        for record in self.store.list_by_owner(self.me, self.collection):
            if record.deleted:
                continue
            for delegate in record.delegates:
                counts = summary.setdefault(delegate, {"read": 0, "write": 0})
                key = "write" if delegate in record.write_delegates else "read"
                counts[key] += 1
        return summary

    def _records(self, record_id: Optional[str]) -> list[Record]:
        if record_id is None:
            return [
                r for r in self.store.list_by_owner(self.me, self.collection)
                if not r.deleted
            ]
        record = self.store.get(record_id)
        if record is None or record.owner != self.me:
            raise KeyError(record_id)
        return [record]

    def _check_delegate(self, delegate: str) -> None:
        split_public_id(delegate)
        if delegate == self.me:
            raise ValueError("Cannot delegate to yourself")

    def _announce(self, delegate: str) -> None:
        if self.notifier is not None:
            grants = self.remote.list_delegations(self.me)
            self.notifier.publish_for(delegate, self.store, grants)

