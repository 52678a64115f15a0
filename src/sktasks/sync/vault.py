"""
The Vault -- per-pair sealing of record payloads.

Never push plaintext. Seal it to the owner. Seal it to every delegate.
Then let the remote store keep ciphertext it cannot read.

Every pair of identities shares one conversation key:

    X25519(my secret, their public)
        -> HKDF-SHA256(info="sktasks:der:conversation")
        -> Fernet key (AES-128-CBC + HMAC-SHA256)

ECDH is symmetric, so the key an owner uses to seal_to(D) is the same
key delegate D uses to unseal_from(owner). Sealing to yourself is the
degenerate pair (me, me).

Opening an envelope tries identity paths in a fixed order:

    1. owner     encrypted_data, sender = encrypted_from or owner
    2. delegate  delegate_payloads[me], sender = encrypted_from or owner
    3. author    encrypted_data, which I sealed to the owner myself

If every path fails the envelope is reported unreadable. Nothing is
ever replaced by empty data.
"""

from __future__ import annotations

import base64
import logging
from typing import Iterable, Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from ..identity import ExecutionContext, InvalidIdentity, short_id
from .errors import UnsealError
from .models import Record, SealedEnvelope, WireFormat

logger = logging.getLogger("sktasks.sync.vault")

CONVERSATION_INFO = b"sktasks:der:conversation"

PATH_OWNER = "owner"
PATH_DELEGATE = "delegate"
PATH_AUTHOR = "author"
PATH_PLAIN = "plain"


def _derive_key(material: bytes, info: bytes, length: int = 32) -> bytes:
    """Derive a key using HKDF-SHA256.

    Args:
        material: Input keying material.
        info: Context and application-specific info string.
        length: Desired output key length in bytes.

    Returns:
        Derived key bytes.
    """
    hkdf = HKDF(algorithm=SHA256(), length=length, salt=None, info=info)
    return hkdf.derive(material)


def _fernet(key_material: bytes) -> Fernet:
    return Fernet(base64.urlsafe_b64encode(key_material[:32]))


class Vault:
    """Seals and opens record payloads for one execution context.

    Args:
        context: Who is sealing/opening.
    """

    def __init__(self, context: ExecutionContext) -> None:
        self.context = context
        self._keys: dict[str, bytes] = {}

    @property
    def me(self) -> str:
        return self.context.public_id

    def conversation_key(self, peer: str) -> bytes:
        """Symmetric key shared between this identity and ``peer``."""
        key = self._keys.get(peer)
        if key is None:
            try:
                secret = self.context.identity.shared_secret(peer)
            except InvalidIdentity as exc:
                raise UnsealError(f"Cannot derive key for {peer!r}: {exc}") from exc
            key = _derive_key(secret, CONVERSATION_INFO)
            self._keys[peer] = key
        return key

    # -- Pairwise primitives ------------------------------------------------

    def seal_to(self, plaintext: str, recipient: str) -> str:
        """Encrypt ``plaintext`` so that ``recipient`` can open it from us."""
        token = _fernet(self.conversation_key(recipient)).encrypt(
            plaintext.encode("utf-8")
        )
        return token.decode("ascii")

    def unseal_from(self, ciphertext: str, sender: str) -> str:
        """Decrypt ciphertext that ``sender`` sealed to us.

        Raises:
            UnsealError: Wrong key, tampered token, or not a token at all.
        """
        try:
            raw = _fernet(self.conversation_key(sender)).decrypt(
                ciphertext.encode("ascii")
            )
        except (InvalidToken, UnicodeEncodeError, ValueError) as exc:
            raise UnsealError(
                f"Cannot unseal payload from {short_id(sender)}"
            ) from exc
        return raw.decode("utf-8")

    def seal_to_self(self, plaintext: str) -> str:
        return self.seal_to(plaintext, self.me)

    def unseal_from_self(self, ciphertext: str) -> str:
        return self.unseal_from(ciphertext, self.me)

    def seal_for_delegates(self, plaintext: str, delegates: Iterable[str]) -> dict[str, str]:
        """One ciphertext per delegate, keyed by delegate id."""
        return {d: self.seal_to(plaintext, d) for d in dict.fromkeys(delegates)}

    # -- Envelopes ----------------------------------------------------------

    def seal_record(self, record: Record, plaintext: str) -> SealedEnvelope:
        """Build the outgoing envelope for a local record.

        The owner seals ``encrypted_data`` to themself. A delegate writing
        on the owner's behalf seals it to the owner instead. Either way
        every current delegate (including a writing delegate) gets its own
        payload.

        Args:
            record: Local record being pushed.
            plaintext: Encoded fields of the record.

        Returns:
            A v3 envelope ready for ``RemoteStore.push``.
        """
        if self.me == record.owner:
            encrypted_data = self.seal_to_self(plaintext)
        else:
            encrypted_data = self.seal_to(plaintext, record.owner)

        return SealedEnvelope(
            record_id=record.record_id,
            collection=record.collection,
            owner=record.owner,
            encrypted_data=encrypted_data,
            encrypted_from=self.me,
            delegate_payloads=self.seal_for_delegates(plaintext, record.delegates),
            read_delegates=list(record.read_delegates),
            write_delegates=list(record.write_delegates),
            version=record.version,
            updated_at=record.updated_at,
            wire_format=WireFormat.VERSIONED_V3,
        )

    def open_envelope(self, envelope: SealedEnvelope) -> tuple[str, str]:
        """Recover the plaintext of an envelope.

        Returns:
            Tuple of (plaintext, path) where path names the identity path
            that succeeded.

        Raises:
            UnsealError: If no identity path can open the envelope.
        """
        if envelope.legacy_plaintext:
            return envelope.encrypted_data, PATH_PLAIN

        sender = envelope.encrypted_from or envelope.owner
        candidates: list[tuple[str, Optional[str], str]] = []
        if self.me == envelope.owner:
            candidates.append((PATH_OWNER, envelope.encrypted_data, sender))
        candidates.append((PATH_DELEGATE, envelope.delegate_payloads.get(self.me), sender))
        if self.me == envelope.encrypted_from and self.me != envelope.owner:
            candidates.append((PATH_AUTHOR, envelope.encrypted_data, envelope.owner))

        failures = []
        for path, ciphertext, peer in candidates:
            if not ciphertext:
                failures.append(f"{path}: no payload")
                continue
            try:
                return self.unseal_from(ciphertext, peer), path
            except UnsealError as exc:
                logger.debug("%s path failed for %s: %s", path, envelope.record_id, exc)
                failures.append(f"{path}: {exc}")

        raise UnsealError(
            f"No identity path opens {envelope.record_id} ({'; '.join(failures)})"
        )
