"""Data models for payout claims."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Claim:
    """A wallet's payout attempt for one distribution.

    ``tx_sig`` stays None until the transfer is confirmed.
    """

    distribution_id: str
    wallet_pubkey: str
    claimed_at_unix: int
    amount: int
    to_pubkey: str
    tx_sig: str | None = None

    @property
    def is_signed(self) -> bool:
        return bool(self.tx_sig)


@dataclass(frozen=True)
class ClaimOutcome:
    """Result of running the claim protocol."""

    claim: Claim
    tx_sig: str
    idempotent: bool = False
    recovered: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "ok": True,
            "distributionId": self.claim.distribution_id,
            "wallet": self.claim.wallet_pubkey,
            "amount": self.claim.amount,
            "to": self.claim.to_pubkey,
            "signature": self.tx_sig,
            "idempotent": self.idempotent,
            "recovered": self.recovered,
        }
