"""Tests for identities and execution contexts."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from sktasks.identity import (
    PUBLIC_ID_LENGTH,
    ExecutionContext,
    Identity,
    InvalidIdentity,
    create_identity,
    get_device_id,
    load_context,
    load_identity,
    split_public_id,
    verify,
)


class TestIdentity:
    """Key derivation and signatures."""

    def test_public_id_shape(self, alice: Identity) -> None:
        """Public id is 128 hex chars: two raw 32-byte keys."""
        assert len(alice.public_id) == PUBLIC_ID_LENGTH
        kx, sign = split_public_id(alice.public_id)
        assert len(kx) == 32 and len(sign) == 32

    def test_public_id_is_public_keys(self, alice: Identity) -> None:
        """The id halves are the keys peers agree on and verify with."""
        kx, _ = split_public_id(alice.public_id)
        assert kx == alice._kx_key.public_key().public_bytes_raw()
        _, sign = split_public_id(alice.public_id)
        assert sign == alice._sign_key.public_key().public_bytes_raw()

    def test_same_seed_same_id(self) -> None:
        """Identities are fully determined by their seed."""
        a = Identity(b"\x07" * 32)
        b = Identity.from_seed(a.seed_hex)
        assert a.public_id == b.public_id

    def test_different_seeds_differ(self, alice: Identity, bob: Identity) -> None:
        assert alice.public_id != bob.public_id

    def test_seed_must_be_32_bytes(self) -> None:
        with pytest.raises(InvalidIdentity):
            Identity(b"short")

    def test_bad_hex_seed(self) -> None:
        with pytest.raises(InvalidIdentity):
            Identity.from_seed("zz" * 32)

    def test_sign_and_verify(self, alice: Identity) -> None:
        sig = alice.sign(b"hello")
        assert verify(alice.public_id, b"hello", sig)

    def test_verify_rejects_other_data(self, alice: Identity) -> None:
        sig = alice.sign(b"hello")
        assert not verify(alice.public_id, b"hello!", sig)

    def test_verify_rejects_other_signer(self, alice: Identity, bob: Identity) -> None:
        sig = bob.sign(b"hello")
        assert not verify(alice.public_id, b"hello", sig)

    def test_verify_malformed_id(self) -> None:
        assert not verify("nope", b"x", "AAAA")

    def test_shared_secret_symmetric(self, alice: Identity, bob: Identity) -> None:
        """ECDH gives both sides the same secret."""
        assert alice.shared_secret(bob.public_id) == bob.shared_secret(alice.public_id)

    def test_split_rejects_malformed(self) -> None:
        with pytest.raises(InvalidIdentity):
            split_public_id("ab" * 10)
        with pytest.raises(InvalidIdentity):
            split_public_id("g" * PUBLIC_ID_LENGTH)


class TestPersistence:
    """Identity files and device ids under the home directory."""

    def test_create_and_load(self, home: Path) -> None:
        created = create_identity(home, name="alice")
        loaded = load_identity(home)
        assert loaded is not None
        assert loaded.public_id == created.public_id
        assert loaded.name == "alice"

    def test_identity_json_written(self, home: Path) -> None:
        created = create_identity(home)
        meta = json.loads((home / "identity" / "identity.json").read_text())
        assert meta["public_id"] == created.public_id

    def test_create_twice_refused(self, home: Path) -> None:
        create_identity(home)
        with pytest.raises(FileExistsError):
            create_identity(home)

    def test_force_replaces(self, home: Path) -> None:
        first = create_identity(home)
        second = create_identity(home, force=True)
        assert first.public_id != second.public_id

    def test_load_missing(self, home: Path) -> None:
        assert load_identity(home) is None

    def test_device_id_stable(self, home: Path) -> None:
        assert get_device_id(home) == get_device_id(home)

    def test_load_context(self, home: Path) -> None:
        identity = create_identity(home)
        ctx = load_context(home)
        assert isinstance(ctx, ExecutionContext)
        assert ctx.public_id == identity.public_id
        assert ctx.device_id == get_device_id(home)

    def test_load_context_without_identity(self, home: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_context(home)
