"""Data models for milestone votes."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class VoteChoice(str, Enum):
    """A holder's verdict on a completed milestone."""

    APPROVE = "approve"
    REJECT = "reject"


@dataclass(frozen=True)
class VoteSignal:
    """One wallet's vote on one milestone. First vote wins."""

    commitment_id: str
    milestone_id: str
    signer_pubkey: str
    vote: VoteChoice
    created_at_unix: int
    weight_usd: float = 0.0
    project_price_usd: float | None = None


@dataclass(frozen=True)
class VoterSnapshot:
    """Holdings of a voter captured when an in-window vote landed."""

    commitment_id: str
    milestone_id: str
    signer_pubkey: str
    project_mint: str
    project_ui_amount: float
    project_price_usd: float | None
    project_value_usd: float
    ship_ui_amount: float
    ship_multiplier_bps: int
    created_at_unix: int

    @property
    def weight(self) -> float:
        """Settlement weight: project holdings scaled by the ship multiplier."""
        return self.project_ui_amount * self.ship_multiplier_bps / 10_000


@dataclass(frozen=True)
class Holdings:
    """Balances a caller reports for a voter at vote time."""

    project_mint: str
    project_ui_amount: float
    project_price_usd: float | None = None
    ship_ui_amount: float = 0.0


@dataclass(frozen=True)
class VoteTally:
    approvals: int = 0
    rejects: int = 0

    def is_approved(self, threshold: int) -> bool:
        return self.approvals >= threshold and self.approvals > self.rejects
