"""
Identity and execution context -- who is acting, from which device.

An identity is a single 32-byte seed. Two keys are derived from it
with HKDF so they never share material:

    seed
    ├── X25519 key   (key agreement -> per-pair conversation keys)
    └── Ed25519 key  (signatures on broadcasts and request proofs)

The public identifier carries both public keys so that anyone who
knows your id can encrypt to you AND verify what you signed:

    public_id = hex(x25519_pub) + hex(ed25519_pub)    # 128 hex chars

Nothing here is global. Callers build an ExecutionContext and hand
it to every component that needs to encrypt, decrypt, or sign.

Storage layout:
    ~/.sktasks/
    ├── identity/identity.json   # name, public_id, created_at
    ├── identity/secret.key      # hex seed (chmod 600)
    └── config/device_id         # stable per-device UUID
"""

from __future__ import annotations

import base64
import json
import logging
import os
import secrets
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519, x25519
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

logger = logging.getLogger("sktasks.identity")

PUBLIC_ID_LENGTH = 128
_KX_INFO = b"sktasks:identity:x25519"
_SIGN_INFO = b"sktasks:identity:ed25519"


class InvalidIdentity(ValueError):
    """Raised when a public identifier or seed is malformed."""


def _derive_seed(seed: bytes, info: bytes) -> bytes:
    """Derive a 32-byte sub-seed with HKDF-SHA256."""
    hkdf = HKDF(algorithm=SHA256(), length=32, salt=None, info=info)
    return hkdf.derive(seed)


def _raw_public(key) -> bytes:
    return key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


def split_public_id(public_id: str) -> tuple[bytes, bytes]:
    """Split a public identifier into its two raw public keys.

    Args:
        public_id: 128-char hex identifier.

    Returns:
        Tuple of (x25519_public_bytes, ed25519_public_bytes).

    Raises:
        InvalidIdentity: If the identifier is not 64 bytes of hex.
    """
    if not isinstance(public_id, str) or len(public_id) != PUBLIC_ID_LENGTH:
        raise InvalidIdentity(f"Malformed public id: {public_id!r}")
    try:
        raw = bytes.fromhex(public_id)
    except ValueError as exc:
        raise InvalidIdentity(f"Public id is not hex: {public_id!r}") from exc
    return raw[:32], raw[32:]


def short_id(public_id: str) -> str:
    """Abbreviated id for log lines and tables."""
    return f"{public_id[:8]}…{public_id[-4:]}" if public_id else "?"


def verify(public_id: str, data: bytes, signature: str) -> bool:
    """Verify an Ed25519 signature made by the holder of ``public_id``.

    Args:
        public_id: Signer's public identifier.
        data: Signed bytes.
        signature: Base64 signature.

    Returns:
        True if the signature is valid.
    """
    try:
        _, sign_pub = split_public_id(public_id)
        key = ed25519.Ed25519PublicKey.from_public_bytes(sign_pub)
        key.verify(base64.b64decode(signature), data)
        return True
    except (InvalidIdentity, InvalidSignature, ValueError):
        return False


class Identity:
    """A user's or agent's key material.

    Args:
        seed: 32 bytes of secret seed.
        name: Optional human label.
    """

    def __init__(self, seed: bytes, name: Optional[str] = None) -> None:
        if len(seed) != 32:
            raise InvalidIdentity("Identity seed must be 32 bytes")
        self._seed = seed
        self.name = name
        self._kx_key = x25519.X25519PrivateKey.from_private_bytes(
            _derive_seed(seed, _KX_INFO)
        )
        self._sign_key = ed25519.Ed25519PrivateKey.from_private_bytes(
            _derive_seed(seed, _SIGN_INFO)
        )
        self.public_id = (
            _raw_public(self._kx_key.public_key()).hex()
            + _raw_public(self._sign_key.public_key()).hex()
        )

    @classmethod
    def generate(cls, name: Optional[str] = None) -> "Identity":
        """Create a brand new random identity."""
        return cls(secrets.token_bytes(32), name=name)

    @classmethod
    def from_seed(cls, seed_hex: str, name: Optional[str] = None) -> "Identity":
        """Restore an identity from its hex seed."""
        try:
            return cls(bytes.fromhex(seed_hex.strip()), name=name)
        except ValueError as exc:
            raise InvalidIdentity("Seed is not valid hex") from exc

    @property
    def seed_hex(self) -> str:
        return self._seed.hex()

    def sign(self, data: bytes) -> str:
        """Sign bytes with the Ed25519 key.

        Returns:
            Base64-encoded signature.
        """
        return base64.b64encode(self._sign_key.sign(data)).decode("ascii")

    def shared_secret(self, peer_public_id: str) -> bytes:
        """Raw X25519 shared secret with another identity.

        Symmetric: A.shared_secret(B) == B.shared_secret(A).
        """
        kx_pub, _ = split_public_id(peer_public_id)
        peer = x25519.X25519PublicKey.from_public_bytes(kx_pub)
        return self._kx_key.exchange(peer)

    def __repr__(self) -> str:
        return f"Identity({short_id(self.public_id)}, name={self.name!r})"


class ExecutionContext:
    """Who is acting, and from which device.

    Threaded explicitly into the vault, the sync engine, remote stores
    and notifiers instead of living in module-level state.

    Args:
        identity: The acting identity (owner or delegate).
        device_id: Stable identifier of this device/session.
    """

    def __init__(self, identity: Identity, device_id: Optional[str] = None) -> None:
        self.identity = identity
        self.device_id = device_id or str(uuid.uuid4())

    @property
    def public_id(self) -> str:
        return self.identity.public_id

    def sign(self, data: bytes) -> str:
        return self.identity.sign(data)

    def __repr__(self) -> str:
        return (
            f"ExecutionContext({short_id(self.public_id)}, "
            f"device={self.device_id[:8]})"
        )


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

def create_identity(home: Path, name: Optional[str] = None, force: bool = False) -> Identity:
    """Generate and persist a new identity under ``home/identity``.

    Args:
        home: Home directory (~/.sktasks).
        name: Optional human label.
        force: Overwrite an existing identity.

    Returns:
        The new Identity.

    Raises:
        FileExistsError: If an identity exists and force is False.
    """
    identity_dir = home / "identity"
    secret_file = identity_dir / "secret.key"
    if secret_file.exists() and not force:
        raise FileExistsError(f"Identity already exists at {secret_file}")

    identity_dir.mkdir(parents=True, exist_ok=True)
    identity = Identity.generate(name=name)

    secret_file.write_text(identity.seed_hex, encoding="utf-8")
    try:
        os.chmod(secret_file, 0o600)
    except OSError as exc:
        logger.debug("Could not restrict secret key permissions: %s", exc)

    (identity_dir / "identity.json").write_text(
        json.dumps(
            {
                "name": name,
                "public_id": identity.public_id,
                "created_at": datetime.now(timezone.utc).isoformat(),
            },
            indent=2,
        ),
        encoding="utf-8",
    )
    logger.info("Created identity %s", short_id(identity.public_id))
    return identity


def load_identity(home: Path) -> Optional[Identity]:
    """Load the persisted identity, or None if there is none."""
    identity_dir = home / "identity"
    secret_file = identity_dir / "secret.key"
    if not secret_file.exists():
        return None

    name = None
    meta_file = identity_dir / "identity.json"
    if meta_file.exists():
        try:
            name = json.loads(meta_file.read_text(encoding="utf-8")).get("name")
        except json.JSONDecodeError:
            logger.warning("identity.json is unreadable, continuing without name")

    return Identity.from_seed(secret_file.read_text(encoding="utf-8"), name=name)


def get_device_id(home: Path) -> str:
    """Return this device's stable id, creating it on first use."""
    device_file = home / "config" / "device_id"
    if device_file.exists():
        value = device_file.read_text(encoding="utf-8").strip()
        if value:
            return value

    device_file.parent.mkdir(parents=True, exist_ok=True)
    device_id = str(uuid.uuid4())
    device_file.write_text(device_id, encoding="utf-8")
    logger.info("Generated device id %s", device_id)
    return device_id


def load_context(home: Path) -> ExecutionContext:
    """Build the execution context for the identity stored in ``home``.

    Raises:
        FileNotFoundError: If no identity has been created yet.
    """
    identity = load_identity(home)
    if identity is None:
        raise FileNotFoundError(
            f"No identity found in {home}. Run 'sktasks init' first."
        )
    return ExecutionContext(identity, device_id=get_device_id(home))
