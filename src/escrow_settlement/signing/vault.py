"""At-rest protection for escrow signing material.

An escrow is controlled either by a locally held Ed25519 keypair or by a
wallet held by a custodial signing service. The two cases are modelled as
separate types and decided once, when a record is loaded, from an explicit
kind column.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import os
from dataclasses import dataclass, field
from typing import ClassVar

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from solders.keypair import Keypair

from escrow_settlement.config import VaultSettings
from escrow_settlement.errors import ConfigurationError, SettlementError

logger = logging.getLogger(__name__)

SEALED_PREFIX = "enc:"
NONCE_BYTES = 12
SECRET_KEY_BYTES = 64


class VaultError(SettlementError):
    """Raised when sealed material cannot be opened."""


@dataclass(frozen=True)
class LocalKey:
    """Escrow controlled by a locally held keypair (64-byte secret key)."""

    secret_key: bytes = field(repr=False)

    kind: ClassVar[str] = "local"

    def __post_init__(self) -> None:
        if len(self.secret_key) != SECRET_KEY_BYTES:
            raise VaultError(f"Local signer key must be {SECRET_KEY_BYTES} bytes")

    def keypair(self) -> Keypair:
        return Keypair.from_bytes(self.secret_key)

    @property
    def pubkey(self) -> str:
        return str(self.keypair().pubkey())


@dataclass(frozen=True)
class CustodialWallet:
    """Escrow controlled by a wallet in the custodial signing service."""

    wallet_id: str

    kind: ClassVar[str] = "custodial"

    def __post_init__(self) -> None:
        if not self.wallet_id.strip():
            raise VaultError("Custodial wallet id must not be empty")


SignerRef = LocalKey | CustodialWallet


def generate_escrow() -> tuple[str, LocalKey]:
    """Create a fresh escrow keypair.

    Returns:
        Tuple of (escrow public key, local signer reference).
    """
    keypair = Keypair()
    return str(keypair.pubkey()), LocalKey(bytes(keypair))


class SecretVault:
    """AES-256-GCM envelope for escrow secret keys.

    The key encryption key is the SHA-256 digest of the configured secret.
    Sealed values look like ``enc:<base64(nonce || ciphertext)>``.
    """

    def __init__(self, secret: str) -> None:
        if not secret or not secret.strip():
            raise ConfigurationError("ESCROW_DB_SECRET is required to seal escrow keys")
        self._aead = AESGCM(hashlib.sha256(secret.encode("utf-8")).digest())

    @classmethod
    def from_settings(cls, settings: VaultSettings) -> SecretVault:
        if settings.secret is None:
            raise ConfigurationError("ESCROW_DB_SECRET is required to seal escrow keys")
        return cls(settings.secret.get_secret_value())

    def encrypt(self, plaintext: bytes) -> str:
        nonce = os.urandom(NONCE_BYTES)
        ciphertext = self._aead.encrypt(nonce, plaintext, None)
        return SEALED_PREFIX + base64.b64encode(nonce + ciphertext).decode("ascii")

    def decrypt(self, sealed: str) -> bytes:
        if not sealed.startswith(SEALED_PREFIX):
            raise VaultError("Sealed value has an unknown format")
        try:
            raw = base64.b64decode(sealed[len(SEALED_PREFIX) :], validate=True)
        except (binascii.Error, ValueError) as e:
            raise VaultError("Sealed value is not valid base64") from e
        if len(raw) <= NONCE_BYTES:
            raise VaultError("Sealed value is truncated")
        try:
            return self._aead.decrypt(raw[:NONCE_BYTES], raw[NONCE_BYTES:], None)
        except InvalidTag as e:
            raise VaultError("Sealed value failed authentication (wrong ESCROW_DB_SECRET?)") from e

    def seal(self, signer: SignerRef) -> tuple[str, str]:
        """Serialize a signer reference to its (kind, payload) columns."""
        if isinstance(signer, LocalKey):
            return LocalKey.kind, self.encrypt(signer.secret_key)
        return CustodialWallet.kind, signer.wallet_id

    def open(self, kind: str, payload: str) -> SignerRef:
        """Deserialize a signer reference from its (kind, payload) columns."""
        if kind == LocalKey.kind:
            return LocalKey(self.decrypt(payload))
        if kind == CustodialWallet.kind:
            return CustodialWallet(payload)
        raise VaultError(f"Unknown signer kind: {kind!r}")
