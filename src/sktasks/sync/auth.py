"""
Signed request proofs -- no bearer tokens, ever.

Every call to a remote store carries a fresh proof:

    {
      "pubkey":     <caller public id>,
      "method":     "POST",
      "url":        "https://store.example/records/sktasks/sync",
      "created_at": 1760745600,
      "payload":    <sha256 hex of the body, or null>,
      "sig":        <Ed25519 signature over the fields above>
    }

The proof is base64 JSON and travels as ``Authorization: DER <proof>``.
A proof is only good for one method, one URL, one body, and a short
window of time.
"""

from __future__ import annotations

import base64
import hashlib
import json
import time
from typing import Optional

from ..identity import ExecutionContext, verify
from .errors import PermissionDenied

SCHEME = "DER"
MAX_AGE_SECONDS = 60


def body_hash(body: Optional[bytes]) -> Optional[str]:
    return hashlib.sha256(body).hexdigest() if body else None


def _signing_bytes(proof: dict) -> bytes:
    unsigned = {k: v for k, v in proof.items() if k != "sig"}
    return json.dumps(unsigned, sort_keys=True, separators=(",", ":")).encode("utf-8")


def sign_request(
    context: ExecutionContext,
    method: str,
    url: str,
    body: Optional[bytes] = None,
    now: Optional[float] = None,
) -> str:
    """Build the Authorization header value for one request.

    Args:
        context: Caller identity.
        method: HTTP method.
        url: Full request URL including query string.
        body: Raw request body, if any.
        now: Override for the proof timestamp (tests).

    Returns:
        Header value ``"DER <base64 proof>"``.
    """
    proof = {
        "pubkey": context.public_id,
        "method": method.upper(),
        "url": url,
        "created_at": int(now if now is not None else time.time()),
        "payload": body_hash(body),
    }
    proof["sig"] = context.sign(_signing_bytes(proof))
    encoded = base64.b64encode(json.dumps(proof).encode("utf-8")).decode("ascii")
    return f"{SCHEME} {encoded}"


def verify_request(
    header: str,
    method: str,
    url: str,
    body: Optional[bytes] = None,
    max_age: int = MAX_AGE_SECONDS,
    now: Optional[float] = None,
) -> str:
    """Check a request proof and return the caller's public id.

    Raises:
        PermissionDenied: If the proof is malformed, stale, bound to a
            different request, or carries a bad signature.
    """
    scheme, _, encoded = (header or "").partition(" ")
    if scheme != SCHEME or not encoded:
        raise PermissionDenied("Missing or unsupported authorization scheme")
    try:
        proof = json.loads(base64.b64decode(encoded))
    except (ValueError, json.JSONDecodeError) as exc:
        raise PermissionDenied("Unreadable request proof") from exc
    if not isinstance(proof, dict):
        raise PermissionDenied("Unreadable request proof")

    current = now if now is not None else time.time()
    if proof.get("method") != method.upper() or proof.get("url") != url:
        raise PermissionDenied("Proof is bound to a different request")
    if proof.get("payload") != body_hash(body):
        raise PermissionDenied("Proof does not match request body")
    created_at = proof.get("created_at")
    if not isinstance(created_at, int) or abs(current - created_at) > max_age:
        raise PermissionDenied("Request proof expired")

    pubkey = proof.get("pubkey", "")
    if not verify(pubkey, _signing_bytes(proof), proof.get("sig", "")):
        raise PermissionDenied("Bad request signature")
    return pubkey
