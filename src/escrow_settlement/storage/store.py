"""Persistence contract shared by the durable and in-memory stores.

Every coordination point is a conditional write on the store: the
``resolving`` lock, the commitment version check, the distribution
create-if-absent and the claim unique-key insert. Implementations must make
each of these atomic.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol

from escrow_settlement.claims.models import Claim
from escrow_settlement.commitments.models import (
    Commitment,
    CommitmentKind,
    CommitmentStatus,
    Milestone,
)
from escrow_settlement.settlement.models import (
    Allocation,
    Distribution,
    DistributionKind,
    DistributionStatus,
)
from escrow_settlement.voting.models import VoterSnapshot, VoteSignal

PENDING_TX_SIG = "pending"


def tx_sig_is_empty(value: str | None) -> bool:
    return value is None or value == "" or value == PENDING_TX_SIG


class Store(Protocol):
    """Storage operations used by the engine."""

    # Commitments

    async def create_commitment(self, commitment: Commitment) -> Commitment:
        """Insert a new commitment. Raises ConflictError if the id exists."""
        ...

    async def get_commitment(self, commitment_id: str) -> Commitment | None: ...

    async def list_commitments(
        self,
        *,
        kind: CommitmentKind | None = None,
        statuses: Sequence[CommitmentStatus] | None = None,
    ) -> list[Commitment]: ...

    async def claim_for_resolution(
        self, commitment_id: str, *, from_statuses: Sequence[CommitmentStatus]
    ) -> Commitment | None:
        """Move to ``resolving`` if the status is one of ``from_statuses``.

        Returns the commitment as it was before the update, or None if no row
        matched (someone else holds the lock or it is already resolved).
        """
        ...

    async def release_resolution(self, commitment_id: str, *, restore_status: CommitmentStatus) -> bool:
        """Compensating transition out of ``resolving``."""
        ...

    async def finalize_resolution(
        self,
        commitment_id: str,
        *,
        status: CommitmentStatus,
        resolved_at_unix: int,
        tx_sig: str | None,
    ) -> Commitment | None:
        """Move ``resolving`` to a terminal status. None if not resolving."""
        ...

    async def update_reward_state(
        self,
        commitment_id: str,
        *,
        expected_version: int,
        milestones: Sequence[Milestone],
        total_funded_lamports: int,
        unlocked_lamports: int,
        status: CommitmentStatus,
    ) -> Commitment | None:
        """Write milestones and totals if the version still matches.

        Archived commitments never match. Returns None on a lost race.
        """
        ...

    async def transition_status(
        self,
        commitment_id: str,
        *,
        from_statuses: Sequence[CommitmentStatus],
        status: CommitmentStatus,
    ) -> Commitment | None: ...

    # Votes

    async def record_vote(self, signal: VoteSignal) -> tuple[VoteSignal, bool]:
        """Insert a vote if none exists. Returns (stored vote, inserted)."""
        ...

    async def record_voter_snapshot(self, snapshot: VoterSnapshot) -> tuple[VoterSnapshot, bool]: ...

    async def list_vote_signals(self, commitment_id: str, milestone_id: str | None = None) -> list[VoteSignal]: ...

    async def list_votes_by_signer(self, signer_pubkey: str) -> list[VoteSignal]: ...

    async def list_voter_snapshots(
        self, commitment_id: str, milestone_id: str | None = None
    ) -> list[VoterSnapshot]: ...

    # Distributions

    async def create_distribution(
        self, distribution: Distribution, allocations: Sequence[Allocation]
    ) -> tuple[Distribution, bool]:
        """Insert a distribution and its allocations unless one exists for the parent key.

        Returns (stored distribution, created). Allocations are written only
        when the distribution is created.
        """
        ...

    async def get_distribution(
        self, kind: DistributionKind, commitment_id: str, milestone_id: str = ""
    ) -> Distribution | None: ...

    async def get_distribution_by_id(self, distribution_id: str) -> Distribution | None: ...

    async def list_distributions(
        self, commitment_id: str, kind: DistributionKind | None = None
    ) -> list[Distribution]: ...

    async def list_allocations(self, distribution_id: str) -> list[Allocation]: ...

    async def get_allocation(self, distribution_id: str, wallet_pubkey: str) -> Allocation | None: ...

    async def set_distribution_tx_sigs(
        self,
        distribution_id: str,
        *,
        buyback_tx_sig: str | None = None,
        voter_pot_tx_sig: str | None = None,
    ) -> Distribution | None:
        """Fill transfer signatures that are still empty or ``pending``."""
        ...

    async def set_distribution_status(self, distribution_id: str, status: DistributionStatus) -> bool: ...

    async def reserved_milestone_failure_amount(self, commitment_id: str) -> int:
        """Allocated but unpaid units across the commitment's milestone failure distributions."""
        ...

    # Claims

    async def try_acquire_claim(self, claim: Claim) -> tuple[bool, Claim]:
        """Insert a claim unless one exists. Returns (acquired, stored claim)."""
        ...

    async def finalize_claim(
        self, distribution_id: str, wallet_pubkey: str, tx_sig: str, *, claimed_at_unix: int
    ) -> bool:
        """Set the signature only if it is still null on the row acquired at ``claimed_at_unix``."""
        ...

    async def delete_unsigned_claim(self, distribution_id: str, wallet_pubkey: str, *, claimed_at_unix: int) -> bool:
        """Delete the row acquired at ``claimed_at_unix`` if it is still unsigned."""
        ...

    async def get_claim(self, distribution_id: str, wallet_pubkey: str) -> Claim | None: ...

    async def count_signed_claims(self, distribution_id: str) -> int: ...

    async def close(self) -> None: ...
