"""
Remote record stores -- where the sealed envelopes live.

One protocol, two transports. The engine never knows which one it has.

HTTP:  A record service that speaks /records/{app}/... and
       /apps/{app}/delegate... Every request is signed (see auth.py).
Local: An append-only ledger on a plain filesystem. For USB drives,
       NAS shares, or a Syncthing folder shared between devices.

Both assign versions, stamp acceptance times, and authorize reads and
writes against the delegate lists. Neither ever sees plaintext.

Local ledger layout:
    <local_path>/
    ├── records/<owner-prefix>/<safe-id>.jsonl   # one line per accepted version
    └── delegations.json                         # app- and record-scope grants
"""

from __future__ import annotations

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Optional
from urllib.parse import quote, urlencode

import requests
from pydantic import ValidationError

from ..identity import ExecutionContext, short_id
from .auth import sign_request
from .errors import PermissionDenied, RemoteError, RemoteUnavailable
from .formats import parse_envelope, to_wire
from .models import (
    DelegationGrant,
    Permission,
    PushResult,
    RemoteConfig,
    RemoteKind,
    SealedEnvelope,
    utcnow,
)
from .store import safe_name

logger = logging.getLogger("sktasks.sync.backends")


class RemoteStore(ABC):
    """Abstract remote record store."""

    def __init__(self, context: ExecutionContext) -> None:
        self.context = context

    @abstractmethod
    def fetch(
        self, owner: str, collection: str, since: Optional[datetime] = None
    ) -> list[SealedEnvelope]:
        """Fetch every envelope of ``owner`` the caller may read.

        Args:
            owner: Record owner.
            collection: Collection to fetch.
            since: Only envelopes accepted after this time.

        Returns:
            List of normalized envelopes.

        Raises:
            RemoteUnavailable: Network failure or timeout.
        """

    @abstractmethod
    def push(self, envelopes: list[SealedEnvelope]) -> list[PushResult]:
        """Submit a batch. The store assigns the next version per record.

        Returns:
            One PushResult per submitted envelope.

        Raises:
            RemoteUnavailable: Network failure. ``outcome_unknown`` is set
                when the batch may have been applied.
            PermissionDenied: The whole batch was refused.
        """

    @abstractmethod
    def grant_delegate(
        self,
        delegate: str,
        permissions: list[Permission],
        record_id: Optional[str] = None,
    ) -> DelegationGrant:
        """Grant ``delegate`` access to the caller's records."""

    @abstractmethod
    def revoke_delegate(self, delegate: str, record_id: Optional[str] = None) -> bool:
        """Revoke a grant. Returns True if one existed."""

    @abstractmethod
    def list_delegations(self, owner: Optional[str] = None) -> list[DelegationGrant]:
        """Grants made by ``owner`` (defaults to the caller)."""

    @abstractmethod
    def available(self) -> bool:
        """Check if this store is currently reachable."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable store name."""


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------

class HttpRemoteStore(RemoteStore):
    """Record service reached over HTTPS with signed request proofs.

    Args:
        context: Caller identity.
        base_url: Service root, e.g. ``https://records.example``.
        app_id: Application namespace on the service.
        timeout: Per-request timeout in seconds.
    """

    def __init__(
        self,
        context: ExecutionContext,
        base_url: str,
        app_id: str = "sktasks",
        timeout: float = 30.0,
    ) -> None:
        super().__init__(context)
        self.base_url = base_url.rstrip("/")
        self.app_id = app_id
        self.timeout = timeout

    @property
    def name(self) -> str:
        return f"http:{self.base_url}"

    def _api_call(
        self,
        method: str,
        endpoint: str,
        query: Optional[dict[str, Any]] = None,
        data: Optional[Any] = None,
        write: bool = False,
    ) -> Any:
        """Make a signed request to the record service.

        Args:
            method: HTTP method.
            endpoint: Path below the base URL.
            query: Query parameters (None values are dropped).
            data: JSON body.
            write: Whether the request mutates remote state.

        Returns:
            Parsed JSON response (None for an empty body).

        Raises:
            RemoteUnavailable: On timeout, connection failure or a 502/503/504.
            PermissionDenied: On 401/403.
            RemoteError: On any other error status or a non-JSON body.
        """
        url = f"{self.base_url}{endpoint}"
        params = {k: v for k, v in (query or {}).items() if v is not None}
        if params:
            url = f"{url}?{urlencode(params)}"
        body = json.dumps(data).encode("utf-8") if data is not None else None

        headers = {"Authorization": sign_request(self.context, method, url, body)}
        if body is not None:
            headers["Content-Type"] = "application/json"

        try:
            resp = requests.request(
                method, url, headers=headers, data=body, timeout=self.timeout,
            )
        except requests.Timeout as exc:
            raise RemoteUnavailable(
                f"{method} {endpoint} timed out after {self.timeout}s",
                outcome_unknown=write,
            ) from exc
        except requests.ConnectionError as exc:
            raise RemoteUnavailable(f"{method} {endpoint}: {exc}") from exc

        if resp.status_code in (401, 403):
            raise PermissionDenied(
                f"{method} {endpoint}: {resp.status_code} {resp.text}"
            )
        if resp.status_code in (502, 503, 504):
            raise RemoteUnavailable(
                f"{method} {endpoint}: {resp.status_code} {resp.text}",
                outcome_unknown=write,
            )
        if resp.status_code >= 400:
            raise RemoteError(
                f"{method} {endpoint}: {resp.status_code} {resp.text}"
            )
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as exc:
            raise RemoteError(f"{method} {endpoint}: response is not JSON") from exc

    def fetch(
        self, owner: str, collection: str, since: Optional[datetime] = None
    ) -> list[SealedEnvelope]:
        result = self._api_call(
            "GET",
            f"/records/{self.app_id}/fetch",
            query={
                "owner": owner,
                "collection": collection,
                "since": since.isoformat() if since else None,
            },
        ) or {}
        raw_records = result.get("records", []) if isinstance(result, dict) else result

        envelopes = []
        for raw in raw_records:
            try:
                envelopes.append(parse_envelope(raw, default_owner=owner))
            except (RemoteError, ValidationError) as exc:
                logger.warning("Skipping malformed remote envelope: %s", exc)
        return envelopes

    def push(self, envelopes: list[SealedEnvelope]) -> list[PushResult]:
        if not envelopes:
            return []
        result = self._api_call(
            "POST",
            f"/records/{self.app_id}/sync",
            data={
                "records": [to_wire(e, self.context.device_id) for e in envelopes],
            },
            write=True,
        ) or {}
        raw_results = result.get("results", []) if isinstance(result, dict) else result

        by_id = {}
        for item in raw_results:
            try:
                res = PushResult.model_validate(item)
            except ValidationError as exc:
                logger.warning("Ignoring malformed push result: %s", exc)
                continue
            if not res.accepted and res.error and "denied" in res.error.lower():
                res.denied = True
            by_id[res.record_id] = res

        # A record the service did not report on was not confirmed.
        return [
            by_id.get(e.record_id)
            or PushResult(record_id=e.record_id, accepted=False, error="no result returned")
            for e in envelopes
        ]

    def grant_delegate(
        self,
        delegate: str,
        permissions: list[Permission],
        record_id: Optional[str] = None,
    ) -> DelegationGrant:
        grant = DelegationGrant(
            owner=self.context.public_id,
            delegate=delegate,
            permissions=permissions,
            record_id=record_id,
        )
        self._api_call(
            "POST",
            f"/apps/{self.app_id}/delegate",
            data={
                "delegate": delegate,
                "permissions": [p.value for p in grant.permissions],
                "record_id": record_id,
            },
            write=True,
        )
        return grant

    def revoke_delegate(self, delegate: str, record_id: Optional[str] = None) -> bool:
        self._api_call(
            "DELETE",
            f"/apps/{self.app_id}/delegate/{quote(delegate, safe='')}",
            query={"record_id": record_id},
            write=True,
        )
        return True

    def list_delegations(self, owner: Optional[str] = None) -> list[DelegationGrant]:
        result = self._api_call(
            "GET",
            f"/apps/{self.app_id}/delegations",
            query={"owner": owner or self.context.public_id},
        ) or {}
        raw = result.get("delegations", []) if isinstance(result, dict) else result
        grants = []
        for item in raw:
            try:
                grants.append(DelegationGrant.model_validate(item))
            except ValidationError as exc:
                logger.warning("Ignoring malformed delegation: %s", exc)
        return grants

    def available(self) -> bool:
        try:
            resp = requests.request("GET", self.base_url, timeout=min(self.timeout, 5.0))
        except requests.RequestException:
            return False
        return resp.status_code < 500


# ---------------------------------------------------------------------------
# Local filesystem ledger
# ---------------------------------------------------------------------------

class LocalRemoteStore(RemoteStore):
    """Append-only envelope ledger on a shared filesystem.

    Behaves like the record service: versions are assigned here,
    acceptance times are stamped here, and the caller in ``context``
    is authorized against the owner's grants.

    Args:
        context: Caller identity.
        path: Ledger root directory.
    """

    def __init__(self, context: ExecutionContext, path: Path) -> None:
        super().__init__(context)
        self.root = Path(path).expanduser()
        self._records = self.root / "records"
        self._delegations_file = self.root / "delegations.json"
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return "local"

    def available(self) -> bool:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError:
            return False
        return self.root.is_dir()

    # -- Ledger helpers -----------------------------------------------------

    def _owner_dir(self, owner: str) -> Path:
        return self._records / owner[:32]

    def _history_file(self, owner: str, record_id: str) -> Path:
        return self._owner_dir(owner) / safe_name(record_id).replace(".json", ".jsonl")

    def _latest(self, path: Path) -> Optional[dict[str, Any]]:
        if not path.exists():
            return None
        latest = None
        for line in path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                latest = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("Corrupt ledger line in %s, ignoring", path.name)
        return latest

    def _load_grants(self) -> list[DelegationGrant]:
        if not self._delegations_file.exists():
            return []
        try:
            data = json.loads(self._delegations_file.read_text(encoding="utf-8"))
            return [DelegationGrant.model_validate(g) for g in data]
        except (json.JSONDecodeError, ValidationError) as exc:
            logger.warning("Failed to load delegations: %s", exc)
            return []

    def _save_grants(self, grants: list[DelegationGrant]) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        tmp_path = self._delegations_file.with_suffix(".json.tmp")
        tmp_path.write_text(
            json.dumps([g.model_dump(mode="json") for g in grants], indent=2),
            encoding="utf-8",
        )
        os.replace(tmp_path, self._delegations_file)

    def _app_grant(
        self, owner: str, caller: str, record_id: str, grants: list[DelegationGrant]
    ) -> Optional[DelegationGrant]:
        for grant in grants:
            if (
                grant.owner == owner
                and grant.delegate == caller
                and grant.record_id in (None, record_id)
            ):
                return grant
        return None

    def _can_read(self, raw: dict[str, Any], caller: str, grants: list[DelegationGrant]) -> bool:
        owner = raw.get("owner", "")
        if caller == owner:
            return True
        if caller in raw.get("read_delegates", []) or caller in raw.get("write_delegates", []):
            return True
        return self._app_grant(owner, caller, raw["record_id"], grants) is not None

    def _can_write(
        self,
        owner: str,
        record_id: str,
        current: Optional[dict[str, Any]],
        caller: str,
        grants: list[DelegationGrant],
    ) -> bool:
        if caller == owner:
            return True
        if current is not None and caller in current.get("write_delegates", []):
            return True
        grant = self._app_grant(owner, caller, record_id, grants)
        return grant is not None and Permission.WRITE in grant.permissions

    # -- RemoteStore --------------------------------------------------------

    def fetch(
        self, owner: str, collection: str, since: Optional[datetime] = None
    ) -> list[SealedEnvelope]:
        caller = self.context.public_id
        owner_dir = self._owner_dir(owner)
        if not owner_dir.is_dir():
            return []

        grants = self._load_grants()
        envelopes = []
        for path in sorted(owner_dir.glob("*.jsonl")):
            raw = self._latest(path)
            if raw is None or raw.get("owner") != owner:
                continue
            if raw.get("collection", "tasks") != collection:
                continue
            if not self._can_read(raw, caller, grants):
                continue
            try:
                envelope = parse_envelope(raw, default_owner=owner)
            except (RemoteError, ValidationError) as exc:
                logger.warning("Skipping malformed ledger entry %s: %s", path.name, exc)
                continue
            if since is not None and envelope.updated_at and envelope.updated_at <= since:
                continue
            envelopes.append(envelope)

        logger.debug(
            "Fetched %d envelope(s) of %s for %s",
            len(envelopes), short_id(owner), short_id(caller),
        )
        return envelopes

    def push(self, envelopes: list[SealedEnvelope]) -> list[PushResult]:
        caller = self.context.public_id
        results = []
        with self._lock:
            grants = self._load_grants()
            for envelope in envelopes:
                results.append(self._accept(envelope, caller, grants))
        return results

    def _accept(
        self, envelope: SealedEnvelope, caller: str, grants: list[DelegationGrant]
    ) -> PushResult:
        path = self._history_file(envelope.owner, envelope.record_id)
        current = self._latest(path)

        if not self._can_write(envelope.owner, envelope.record_id, current, caller, grants):
            logger.info(
                "Rejected write to %s by %s: permission denied",
                envelope.record_id, short_id(caller),
            )
            return PushResult(
                record_id=envelope.record_id,
                accepted=False,
                error="permission denied",
                denied=True,
            )

        accepted = envelope.model_copy()
        accepted.version = (current.get("version", 0) if current else 0) + 1
        accepted.updated_at = utcnow()
        if caller != envelope.owner and current is not None:
            # Only the owner changes who a record is shared with.
            accepted.read_delegates = list(current.get("read_delegates", []))
            accepted.write_delegates = list(current.get("write_delegates", []))

        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(to_wire(accepted, self.context.device_id)) + "\n")

        return PushResult(record_id=envelope.record_id, version=accepted.version)

    def purge(self, record_id: str) -> bool:
        """Drop a record of the caller from the ledger entirely (compaction).

        Peers see the record vanish from fetches and remove their copy.
        """
        path = self._history_file(self.context.public_id, record_id)
        with self._lock:
            if not path.exists():
                return False
            path.unlink()
        logger.info("Purged %s from local ledger", record_id)
        return True

    def grant_delegate(
        self,
        delegate: str,
        permissions: list[Permission],
        record_id: Optional[str] = None,
    ) -> DelegationGrant:
        grant = DelegationGrant(
            owner=self.context.public_id,
            delegate=delegate,
            permissions=permissions,
            record_id=record_id,
        )
        with self._lock:
            grants = [
                g for g in self._load_grants()
                if not (g.owner == grant.owner and g.delegate == delegate and g.record_id == record_id)
            ]
            grants.append(grant)
            self._save_grants(grants)
        logger.info(
            "Granted %s to %s", "/".join(p.value for p in grant.permissions), short_id(delegate)
        )
        return grant

    def revoke_delegate(self, delegate: str, record_id: Optional[str] = None) -> bool:
        owner = self.context.public_id
        with self._lock:
            grants = self._load_grants()
            kept = [
                g for g in grants
                if not (g.owner == owner and g.delegate == delegate and g.record_id == record_id)
            ]
            if len(kept) == len(grants):
                return False
            self._save_grants(kept)
        logger.info("Revoked %s", short_id(delegate))
        return True

    def list_delegations(self, owner: Optional[str] = None) -> list[DelegationGrant]:
        caller = self.context.public_id
        owner = owner or caller
        return [
            g for g in self._load_grants()
            if g.owner == owner and (caller == owner or g.delegate == caller)
        ]


def create_remote_store(
    config: RemoteConfig, context: ExecutionContext, home: Path
) -> RemoteStore:
    """Factory function to create the configured remote store.

    Args:
        config: Remote store configuration.
        context: Caller identity.
        home: Home directory, for the default local ledger path.

    Returns:
        Instantiated RemoteStore.

    Raises:
        ValueError: If the configuration is incomplete or unsupported.
    """
    if config.kind == RemoteKind.HTTP:
        if not config.base_url:
            raise ValueError("HTTP remote store requires base_url")
        return HttpRemoteStore(
            context, config.base_url, app_id=config.app_id, timeout=config.timeout_seconds,
        )
    if config.kind == RemoteKind.LOCAL:
        return LocalRemoteStore(context, config.local_path or home / "remote")
    raise ValueError(f"Unsupported remote store: {config.kind}")
