"""Tests for signed request proofs."""

from __future__ import annotations

import pytest

from sktasks.identity import ExecutionContext
from sktasks.sync.auth import MAX_AGE_SECONDS, SCHEME, sign_request, verify_request
from sktasks.sync.errors import PermissionDenied

URL = "https://records.example/records/sktasks/sync"
NOW = 1_760_000_000


class TestRequestProofs:
    """sign_request / verify_request."""

    def test_roundtrip(self, alice_ctx: ExecutionContext) -> None:
        header = sign_request(alice_ctx, "post", URL, b'{"a":1}', now=NOW)
        assert header.startswith(f"{SCHEME} ")
        assert verify_request(header, "POST", URL, b'{"a":1}', now=NOW) == alice_ctx.public_id

    def test_no_body(self, alice_ctx: ExecutionContext) -> None:
        header = sign_request(alice_ctx, "GET", URL, now=NOW)
        assert verify_request(header, "GET", URL, now=NOW + 5) == alice_ctx.public_id

    def test_other_url(self, alice_ctx: ExecutionContext) -> None:
        header = sign_request(alice_ctx, "GET", URL, now=NOW)
        with pytest.raises(PermissionDenied):
            verify_request(header, "GET", URL + "?owner=x", now=NOW)

    def test_other_method(self, alice_ctx: ExecutionContext) -> None:
        header = sign_request(alice_ctx, "GET", URL, now=NOW)
        with pytest.raises(PermissionDenied):
            verify_request(header, "DELETE", URL, now=NOW)

    def test_other_body(self, alice_ctx: ExecutionContext) -> None:
        header = sign_request(alice_ctx, "POST", URL, b"one", now=NOW)
        with pytest.raises(PermissionDenied):
            verify_request(header, "POST", URL, b"two", now=NOW)

    def test_expired(self, alice_ctx: ExecutionContext) -> None:
        header = sign_request(alice_ctx, "GET", URL, now=NOW)
        with pytest.raises(PermissionDenied, match="expired"):
            verify_request(header, "GET", URL, now=NOW + MAX_AGE_SECONDS + 1)

    def test_wrong_scheme(self) -> None:
        with pytest.raises(PermissionDenied):
            verify_request("Bearer abc", "GET", URL)

    def test_garbage(self) -> None:
        with pytest.raises(PermissionDenied):
            verify_request(f"{SCHEME} !!!notbase64", "GET", URL)

    def test_forged_pubkey(self, alice_ctx: ExecutionContext, bob_ctx: ExecutionContext) -> None:
        """Swapping in another pubkey breaks the signature."""
        import base64
        import json

        header = sign_request(alice_ctx, "GET", URL, now=NOW)
        proof = json.loads(base64.b64decode(header.split(" ", 1)[1]))
        proof["pubkey"] = bob_ctx.public_id
        forged = f"{SCHEME} " + base64.b64encode(json.dumps(proof).encode()).decode()
        with pytest.raises(PermissionDenied, match="signature"):
            verify_request(forged, "GET", URL, now=NOW)
