"""Ed25519 verification of wallet-signed messages."""

from __future__ import annotations

import logging

from solders.pubkey import Pubkey
from solders.signature import Signature

logger = logging.getLogger(__name__)


def is_valid_pubkey(value: str) -> bool:
    try:
        Pubkey.from_string(value)
    except ValueError:
        return False
    return True


def verify_signature(message: str, signature_b58: str, pubkey_b58: str) -> bool:
    """Check a base58 detached signature over a UTF-8 message.

    Malformed keys or signatures verify as False rather than raising.
    """
    try:
        pubkey = Pubkey.from_string(pubkey_b58)
        signature = Signature.from_string(signature_b58)
    except ValueError:
        logger.debug("Rejecting malformed signature or pubkey for %s", pubkey_b58)
        return False
    return signature.verify(pubkey, message.encode("utf-8"))
