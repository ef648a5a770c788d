"""Data models for distributions and their allocations."""

from __future__ import annotations

import hashlib
from collections.abc import Iterable
from dataclasses import asdict, dataclass, fields
from enum import Enum
from typing import Any, ClassVar

from escrow_settlement.allocation.engine import Share


class DistributionKind(str, Enum):
    """Which settlement produced a distribution."""

    FAILURE = "failure"
    MILESTONE_FAILURE = "milestone_failure"
    VOTE_REWARD = "vote_reward"


class DistributionStatus(str, Enum):
    OPEN = "open"
    COMPLETED = "completed"


@dataclass(frozen=True)
class Allocation:
    """One wallet's share of a distribution. Immutable once inserted."""

    distribution_id: str
    wallet_pubkey: str
    amount: int
    weight: float


def allocation_digest(allocations: Iterable[Allocation] | Iterable[Share]) -> str:
    """SHA-256 over sorted ``wallet:amount`` lines."""
    lines = []
    for a in allocations:
        wallet = a.wallet_pubkey if isinstance(a, Allocation) else a.recipient
        lines.append(f"{wallet}:{a.amount}")
    lines.sort()
    return hashlib.sha256("\n".join(lines).encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class Distribution:
    """A persisted, create-once record of how a pot was split.

    Every quantity that defines the split is stored, so a retried creation can
    be compared field by field against the stored row.
    """

    id: str
    kind: DistributionKind
    commitment_id: str
    created_at_unix: int
    pot_amount: int
    milestone_id: str = ""
    status: DistributionStatus = DistributionStatus.OPEN
    buyback_amount: int = 0
    voter_pot_amount: int = 0
    treasury_pubkey: str | None = None
    voter_pot_to_treasury: bool = False
    mint_pubkey: str | None = None
    token_program_pubkey: str | None = None
    faucet_owner_pubkey: str | None = None
    allocation_count: int = 0
    allocation_total: int = 0
    allocation_digest: str = ""
    buyback_tx_sig: str | None = None
    voter_pot_tx_sig: str | None = None

    RUNTIME_FIELDS: ClassVar[frozenset[str]] = frozenset(
        {"id", "created_at_unix", "status", "buyback_tx_sig", "voter_pot_tx_sig"}
    )

    def parameters(self) -> dict[str, Any]:
        """Every field that must match between an original and a retried creation."""
        values = asdict(self)
        return {
            f.name: values[f.name].value if isinstance(values[f.name], Enum) else values[f.name]
            for f in fields(self)
            if f.name not in self.RUNTIME_FIELDS
        }

    def mismatched_parameters(self, other: Distribution) -> list[str]:
        mine = self.parameters()
        theirs = other.parameters()
        return sorted(k for k in mine if mine[k] != theirs[k])
