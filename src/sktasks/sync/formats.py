"""
Wire formats -- three generations of envelope, one normalized model.

Remote stores still hold envelopes written by older clients:

    legacy        no version, no delegates. encrypted_data is either
                  plain JSON fields or a {id, owner, payload} wrapper
                  whose payload is self-sealed.
    delegate_v1   metadata.schema_version >= 1, ciphertext under
                  encrypted_payload, delegate lists in metadata.
    versioned_v3  remote-assigned integer version plus encrypted_from.

detect_format() picks the generation once; parse_envelope() turns any
of them into a SealedEnvelope, so nothing downstream ever branches on
the raw shape. Everything we write goes out as v3.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from .errors import RemoteError
from .models import SealedEnvelope, WireFormat, parse_timestamp

logger = logging.getLogger("sktasks.sync.formats")

SCHEMA_VERSION = 3


def detect_format(raw: dict[str, Any]) -> WireFormat:
    """Classify a raw envelope dict by wire generation."""
    metadata = raw.get("metadata") or {}
    version = raw.get("version")
    if (
        isinstance(version, int) and not isinstance(version, bool)
        and ("encrypted_from" in raw or "encrypted_from" in metadata)
    ):
        return WireFormat.VERSIONED_V3
    schema_version = metadata.get("schema_version") or 0
    if isinstance(schema_version, int) and schema_version >= 1 and raw.get("encrypted_payload"):
        return WireFormat.DELEGATE_V1
    return WireFormat.LEGACY


def _delegates(raw: dict[str, Any], metadata: dict[str, Any], key: str) -> list[str]:
    value = raw.get(key, metadata.get(key)) or []
    return [str(v) for v in value]


def _parse_legacy(raw: dict[str, Any], owner: str) -> dict[str, Any]:
    data = raw.get("encrypted_data")
    if not isinstance(data, str):
        raise RemoteError(f"Legacy envelope {raw.get('record_id')!r} has no encrypted_data")

    try:
        inner: Optional[Any] = json.loads(data)
    except json.JSONDecodeError:
        inner = None

    if isinstance(inner, dict) and isinstance(inner.get("payload"), str) and (
        "id" in inner or "owner" in inner
    ):
        return {
            "owner": inner.get("owner") or owner,
            "encrypted_data": inner["payload"],
            "legacy_plaintext": False,
        }
    if isinstance(inner, dict):
        return {"owner": owner, "encrypted_data": data, "legacy_plaintext": True}
    # Bare self-sealed ciphertext.
    return {"owner": owner, "encrypted_data": data, "legacy_plaintext": False}


def parse_envelope(raw: dict[str, Any], default_owner: str = "") -> SealedEnvelope:
    """Normalize a raw remote envelope of any generation.

    Args:
        raw: Envelope dict as returned by the remote store.
        default_owner: Owner to assume when the envelope does not say.

    Returns:
        SealedEnvelope. Pre-versioned generations get version 0.

    Raises:
        RemoteError: If the envelope carries no usable payload at all.
    """
    if not isinstance(raw, dict) or not raw.get("record_id"):
        raise RemoteError(f"Envelope without record_id: {raw!r:.80}")

    wire_format = detect_format(raw)
    metadata = raw.get("metadata") or {}
    owner = raw.get("owner") or metadata.get("owner") or default_owner

    common = {
        "record_id": str(raw["record_id"]),
        "collection": raw.get("collection") or metadata.get("collection") or "tasks",
        "updated_at": parse_timestamp(raw.get("updated_at")),
        "wire_format": wire_format,
    }

    if wire_format == WireFormat.VERSIONED_V3:
        if not isinstance(raw.get("encrypted_data"), str):
            raise RemoteError(f"v3 envelope {raw['record_id']!r} has no encrypted_data")
        return SealedEnvelope(
            **common,
            owner=owner,
            encrypted_data=raw["encrypted_data"],
            encrypted_from=raw.get("encrypted_from", metadata.get("encrypted_from")),
            delegate_payloads=dict(raw.get("delegate_payloads") or {}),
            read_delegates=_delegates(raw, metadata, "read_delegates"),
            write_delegates=_delegates(raw, metadata, "write_delegates"),
            version=raw["version"],
        )

    if wire_format == WireFormat.DELEGATE_V1:
        payloads = raw.get("delegate_payloads", metadata.get("delegate_payloads")) or {}
        return SealedEnvelope(
            **common,
            owner=owner,
            encrypted_data=raw["encrypted_payload"],
            encrypted_from=metadata.get("encrypted_from"),
            delegate_payloads=dict(payloads),
            read_delegates=_delegates(raw, metadata, "read_delegates"),
            write_delegates=_delegates(raw, metadata, "write_delegates"),
            version=0,
        )

    return SealedEnvelope(**common, **_parse_legacy(raw, owner), version=0)


def to_wire(envelope: SealedEnvelope, device_id: Optional[str] = None) -> dict[str, Any]:
    """Serialize an envelope in the current (v3) wire format."""
    metadata: dict[str, Any] = {
        "owner": envelope.owner,
        "schema_version": SCHEMA_VERSION,
        "read_delegates": list(envelope.read_delegates),
        "write_delegates": list(envelope.write_delegates),
    }
    if device_id:
        metadata["device_id"] = device_id
    return {
        "record_id": envelope.record_id,
        "collection": envelope.collection,
        "owner": envelope.owner,
        "encrypted_data": envelope.encrypted_data,
        "encrypted_from": envelope.encrypted_from,
        "delegate_payloads": dict(envelope.delegate_payloads),
        "read_delegates": list(envelope.read_delegates),
        "write_delegates": list(envelope.write_delegates),
        "version": envelope.version,
        "updated_at": envelope.updated_at.isoformat() if envelope.updated_at else None,
        "metadata": metadata,
    }
