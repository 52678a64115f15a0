"""
Record codec -- fields to canonical JSON and back.

Agents and scripts write records too, and not all of them escape
their strings. The tolerant decoder gives such blobs one sanitizing
retry and, failing that, a hidden placeholder so the junk neither
crashes a sync pass nor silently disappears.
"""

from __future__ import annotations

import json
import logging
from datetime import date, datetime
from enum import Enum
from typing import Any

from .errors import DecodeError
from .models import utcnow

logger = logging.getLogger("sktasks.sync.codec")

PLACEHOLDER_TITLE = "[unreadable record]"

_ESCAPES = {"\n": "\\n", "\r": "\\n", "\t": "\\t", "\b": "\\b", "\f": "\\f"}


def _default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    raise TypeError(f"Cannot encode {type(value).__name__}")


def encode(fields: dict[str, Any]) -> str:
    """Serialize record fields to canonical JSON.

    Keys are sorted and separators compact, so equal fields always
    produce byte-identical output.
    """
    return json.dumps(
        fields, sort_keys=True, separators=(",", ":"),
        ensure_ascii=False, default=_default,
    )


def decode(blob: str) -> dict[str, Any]:
    """Parse a plaintext blob into record fields.

    Raises:
        DecodeError: If the blob is not a JSON object.
    """
    try:
        value = json.loads(blob)
    except (json.JSONDecodeError, TypeError) as exc:
        raise DecodeError(f"Malformed record payload: {exc}") from exc
    if not isinstance(value, dict):
        raise DecodeError(f"Record payload is a {type(value).__name__}, not an object")
    return value


def sanitize(blob: str) -> str:
    """Escape raw control characters inside JSON string literals.

    CR, LF (and CRLF) become ``\\n``, TAB becomes ``\\t``, and any other
    C0 control character inside a string is dropped. Outside strings,
    ordinary JSON whitespace is kept and other control characters are
    removed.
    """
    out: list[str] = []
    in_string = False
    escaped = False
    i = 0
    while i < len(blob):
        ch = blob[i]
        if in_string:
            if escaped:
                escaped = False
                out.append(ch)
            elif ch == "\\":
                escaped = True
                out.append(ch)
            elif ch == '"':
                in_string = False
                out.append(ch)
            elif ch == "\r" and blob[i + 1:i + 2] == "\n":
                out.append("\\n")
                i += 1
            elif ch in _ESCAPES:
                out.append(_ESCAPES[ch])
            elif ord(ch) >= 0x20:
                out.append(ch)
        else:
            if ch == '"':
                in_string = True
                out.append(ch)
            elif ord(ch) >= 0x20 or ch in "\n\r\t":
                out.append(ch)
        i += 1
    return "".join(out)


def placeholder(collection: str = "tasks") -> dict[str, Any]:
    """Safe default fields for a record whose payload is unreadable.

    The record is soft-deleted so normal listings hide it.
    """
    now = utcnow().isoformat()
    fields: dict[str, Any] = {
        "title": PLACEHOLDER_TITLE,
        "deleted": True,
        "created_at": now,
        "updated_at": now,
    }
    if collection == "tasks":
        fields.update({
            "description": "",
            "state": "new",
            "priority": "sand",
            "tags": [],
            "done": False,
        })
    return fields


def decode_tolerant(blob: str, collection: str = "tasks") -> tuple[dict[str, Any], bool]:
    """Decode, else sanitize and retry once, else return a placeholder.

    Args:
        blob: Plaintext payload.
        collection: Collection of the record, picks placeholder defaults.

    Returns:
        Tuple of (fields, recovered). ``recovered`` is False only when the
        fields are a placeholder rather than data from the blob.
    """
    try:
        return decode(blob), True
    except DecodeError as first:
        logger.debug("Primary decode failed: %s", first)

    try:
        fields = decode(sanitize(blob))
        logger.info("Recovered malformed payload after sanitizing")
        return fields, True
    except DecodeError as second:
        logger.warning("Unrecoverable payload, storing placeholder: %s", second)
        return placeholder(collection), False
