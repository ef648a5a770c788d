"""Data models for commitments and their milestones."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from escrow_settlement.errors import ValidationError
from escrow_settlement.signing.vault import SignerRef

LAMPORTS_PER_SOL = 1_000_000_000
FEE_SPLIT_TOTAL_BPS = 5000


class CommitmentKind(str, Enum):
    """Kind of escrow commitment."""

    PERSONAL = "personal"
    CREATOR_REWARD = "creator_reward"


class CommitmentStatus(str, Enum):
    """Lifecycle status of a commitment."""

    CREATED = "created"
    ACTIVE = "active"
    RESOLVING = "resolving"
    RESOLVED_SUCCESS = "resolved_success"
    RESOLVED_FAILURE = "resolved_failure"
    COMPLETED = "completed"
    FAILED = "failed"
    ARCHIVED = "archived"


class MilestoneStatus(str, Enum):
    """Lifecycle status of a milestone."""

    LOCKED = "locked"
    APPROVED = "approved"
    CLAIMABLE = "claimable"
    RELEASED = "released"
    FAILED = "failed"


def _opt_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    return int(value)


@dataclass(frozen=True)
class Milestone:
    """One deliverable of a reward commitment.

    ``unlock_lamports`` of zero means the unlock is resolved from
    ``unlock_percent`` against the commitment's funding at evaluation time.
    """

    id: str
    title: str
    unlock_lamports: int = 0
    unlock_percent: float | None = None
    status: MilestoneStatus = MilestoneStatus.LOCKED
    due_at_unix: int | None = None
    completed_at_unix: int | None = None
    review_opened_at_unix: int | None = None
    claimable_at_unix: int | None = None
    became_claimable_at_unix: int | None = None
    approved_at_unix: int | None = None
    failed_at_unix: int | None = None
    released_at_unix: int | None = None
    released_tx_sig: str | None = None

    @property
    def is_completed(self) -> bool:
        return self.completed_at_unix is not None

    def to_dict(self) -> dict[str, Any]:
        """Serialize for the commitment's JSON milestone column."""
        return {
            "id": self.id,
            "title": self.title,
            "unlockLamports": self.unlock_lamports,
            "unlockPercent": self.unlock_percent,
            "status": self.status.value,
            "dueAtUnix": self.due_at_unix,
            "completedAtUnix": self.completed_at_unix,
            "reviewOpenedAtUnix": self.review_opened_at_unix,
            "claimableAtUnix": self.claimable_at_unix,
            "becameClaimableAtUnix": self.became_claimable_at_unix,
            "approvedAtUnix": self.approved_at_unix,
            "failedAtUnix": self.failed_at_unix,
            "releasedAtUnix": self.released_at_unix,
            "releasedTxSig": self.released_tx_sig,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Milestone:
        """Create a Milestone from its JSON form."""
        percent = data.get("unlockPercent")
        return cls(
            id=str(data["id"]),
            title=str(data.get("title", "")),
            unlock_lamports=int(data.get("unlockLamports") or 0),
            unlock_percent=float(percent) if percent is not None else None,
            status=MilestoneStatus(data.get("status", MilestoneStatus.LOCKED.value)),
            due_at_unix=_opt_int(data.get("dueAtUnix")),
            completed_at_unix=_opt_int(data.get("completedAtUnix")),
            review_opened_at_unix=_opt_int(data.get("reviewOpenedAtUnix")),
            claimable_at_unix=_opt_int(data.get("claimableAtUnix")),
            became_claimable_at_unix=_opt_int(data.get("becameClaimableAtUnix")),
            approved_at_unix=_opt_int(data.get("approvedAtUnix")),
            failed_at_unix=_opt_int(data.get("failedAtUnix")),
            released_at_unix=_opt_int(data.get("releasedAtUnix")),
            released_tx_sig=data.get("releasedTxSig") or None,
        )


@dataclass(frozen=True)
class FeeSplit:
    """Fixed fee-share recipients kept on every rotation."""

    dev_wallet: str
    dev_bps: int
    creator_wallet: str
    creator_bps: int

    def __post_init__(self) -> None:
        if self.dev_bps < 0 or self.creator_bps < 0:
            raise ValidationError("Fee split bps must be non-negative")
        if self.dev_bps + self.creator_bps != FEE_SPLIT_TOTAL_BPS:
            raise ValidationError(
                f"Fee split must total {FEE_SPLIT_TOTAL_BPS} bps",
                dev_bps=self.dev_bps,
                creator_bps=self.creator_bps,
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "devWallet": self.dev_wallet,
            "devBps": self.dev_bps,
            "creatorWallet": self.creator_wallet,
            "creatorBps": self.creator_bps,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FeeSplit:
        return cls(
            dev_wallet=str(data["devWallet"]),
            dev_bps=int(data["devBps"]),
            creator_wallet=str(data["creatorWallet"]),
            creator_bps=int(data["creatorBps"]),
        )


@dataclass(frozen=True)
class Commitment:
    """An escrow account and the conditions governing its release."""

    id: str
    kind: CommitmentKind
    status: CommitmentStatus
    escrow_pubkey: str
    signer: SignerRef = field(repr=False)
    authority: str
    destination_on_fail: str
    created_at_unix: int
    creator_pubkey: str | None = None
    token_mint: str | None = None
    amount_lamports: int = 0
    deadline_unix: int = 0
    total_funded_lamports: int = 0
    unlocked_lamports: int = 0
    milestones: tuple[Milestone, ...] = ()
    fee_split: FeeSplit | None = None
    resolved_at_unix: int | None = None
    resolved_tx_sig: str | None = None
    version: int = 0

    @property
    def is_reward(self) -> bool:
        return self.kind == CommitmentKind.CREATOR_REWARD

    def milestone(self, milestone_id: str) -> Milestone | None:
        for m in self.milestones:
            if m.id == milestone_id:
                return m
        return None

    def released_lamports(self) -> int:
        return sum(m.unlock_lamports for m in self.milestones if m.status == MilestoneStatus.RELEASED)

    def percent_total(self) -> float:
        return sum(m.unlock_percent or 0.0 for m in self.milestones)
