"""Dictionary-backed store for tests and database-less deployments.

Each conditional write completes without yielding to the event loop, so it
is atomic with respect to other coroutines in the same process. State is
not shared between processes.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import replace

from escrow_settlement.claims.models import Claim
from escrow_settlement.commitments.models import (
    Commitment,
    CommitmentKind,
    CommitmentStatus,
    Milestone,
)
from escrow_settlement.errors import ConflictError
from escrow_settlement.settlement.models import (
    Allocation,
    Distribution,
    DistributionKind,
    DistributionStatus,
)
from escrow_settlement.storage.store import tx_sig_is_empty
from escrow_settlement.voting.models import VoterSnapshot, VoteSignal

logger = logging.getLogger(__name__)

VoteKey = tuple[str, str, str]
WalletKey = tuple[str, str]


class InMemoryStore:
    """In-process implementation of :class:`~escrow_settlement.storage.store.Store`."""

    def __init__(self) -> None:
        self._commitments: dict[str, Commitment] = {}
        self._votes: dict[VoteKey, VoteSignal] = {}
        self._snapshots: dict[VoteKey, VoterSnapshot] = {}
        self._distributions: dict[str, Distribution] = {}
        self._distribution_keys: dict[tuple[str, str, str], str] = {}
        self._allocations: dict[str, dict[str, Allocation]] = {}
        self._claims: dict[WalletKey, Claim] = {}

    # Commitments

    async def create_commitment(self, commitment: Commitment) -> Commitment:
        if commitment.id in self._commitments:
            raise ConflictError("Commitment already exists", commitment_id=commitment.id)
        self._commitments[commitment.id] = commitment
        return commitment

    async def get_commitment(self, commitment_id: str) -> Commitment | None:
        return self._commitments.get(commitment_id)

    async def list_commitments(
        self,
        *,
        kind: CommitmentKind | None = None,
        statuses: Sequence[CommitmentStatus] | None = None,
    ) -> list[Commitment]:
        out = [
            c
            for c in self._commitments.values()
            if (kind is None or c.kind == kind) and (statuses is None or c.status in statuses)
        ]
        return sorted(out, key=lambda c: (c.created_at_unix, c.id))

    def _swap_status(
        self,
        commitment_id: str,
        from_statuses: Sequence[CommitmentStatus],
        **changes: object,
    ) -> tuple[Commitment, Commitment] | None:
        current = self._commitments.get(commitment_id)
        if current is None or current.status not in from_statuses:
            return None
        updated = replace(current, version=current.version + 1, **changes)  # type: ignore[arg-type]
        self._commitments[commitment_id] = updated
        return current, updated

    async def claim_for_resolution(
        self, commitment_id: str, *, from_statuses: Sequence[CommitmentStatus]
    ) -> Commitment | None:
        swapped = self._swap_status(commitment_id, from_statuses, status=CommitmentStatus.RESOLVING)
        return swapped[0] if swapped else None

    async def release_resolution(self, commitment_id: str, *, restore_status: CommitmentStatus) -> bool:
        return self._swap_status(commitment_id, (CommitmentStatus.RESOLVING,), status=restore_status) is not None

    async def finalize_resolution(
        self,
        commitment_id: str,
        *,
        status: CommitmentStatus,
        resolved_at_unix: int,
        tx_sig: str | None,
    ) -> Commitment | None:
        swapped = self._swap_status(
            commitment_id,
            (CommitmentStatus.RESOLVING,),
            status=status,
            resolved_at_unix=resolved_at_unix,
            resolved_tx_sig=tx_sig,
        )
        return swapped[1] if swapped else None

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
        current = self._commitments.get(commitment_id)
        if current is None or current.version != expected_version:
            return None
        if current.status == CommitmentStatus.ARCHIVED:
            return None
        updated = replace(
            current,
            milestones=tuple(milestones),
            total_funded_lamports=total_funded_lamports,
            unlocked_lamports=unlocked_lamports,
            status=status,
            version=current.version + 1,
        )
        self._commitments[commitment_id] = updated
        return updated

    async def transition_status(
        self,
        commitment_id: str,
        *,
        from_statuses: Sequence[CommitmentStatus],
        status: CommitmentStatus,
    ) -> Commitment | None:
        swapped = self._swap_status(commitment_id, from_statuses, status=status)
        return swapped[1] if swapped else None

    # Votes

    async def record_vote(self, signal: VoteSignal) -> tuple[VoteSignal, bool]:
        key = (signal.commitment_id, signal.milestone_id, signal.signer_pubkey)
        existing = self._votes.get(key)
        if existing is not None:
            return existing, False
        self._votes[key] = signal
        return signal, True

    async def record_voter_snapshot(self, snapshot: VoterSnapshot) -> tuple[VoterSnapshot, bool]:
        key = (snapshot.commitment_id, snapshot.milestone_id, snapshot.signer_pubkey)
        existing = self._snapshots.get(key)
        if existing is not None:
            return existing, False
        self._snapshots[key] = snapshot
        return snapshot, True

    async def list_vote_signals(self, commitment_id: str, milestone_id: str | None = None) -> list[VoteSignal]:
        out = [
            v
            for (cid, mid, _), v in self._votes.items()
            if cid == commitment_id and (milestone_id is None or mid == milestone_id)
        ]
        return sorted(out, key=lambda v: (v.created_at_unix, v.signer_pubkey))

    async def list_votes_by_signer(self, signer_pubkey: str) -> list[VoteSignal]:
        out = [v for v in self._votes.values() if v.signer_pubkey == signer_pubkey]
        return sorted(out, key=lambda v: (v.created_at_unix, v.commitment_id, v.milestone_id))

    async def list_voter_snapshots(
        self, commitment_id: str, milestone_id: str | None = None
    ) -> list[VoterSnapshot]:
        out = [
            s
            for (cid, mid, _), s in self._snapshots.items()
            if cid == commitment_id and (milestone_id is None or mid == milestone_id)
        ]
        return sorted(out, key=lambda s: (s.created_at_unix, s.signer_pubkey))

    # Distributions

    async def create_distribution(
        self, distribution: Distribution, allocations: Sequence[Allocation]
    ) -> tuple[Distribution, bool]:
        key = (distribution.kind.value, distribution.commitment_id, distribution.milestone_id)
        existing_id = self._distribution_keys.get(key)
        if existing_id is not None:
            return self._distributions[existing_id], False
        if distribution.id in self._distributions:
            raise ConflictError("Distribution id already exists", distribution_id=distribution.id)
        self._distributions[distribution.id] = distribution
        self._distribution_keys[key] = distribution.id
        self._allocations[distribution.id] = {a.wallet_pubkey: a for a in allocations}
        logger.info(
            "Created %s distribution %s for %s (%d allocations)",
            distribution.kind.value,
            distribution.id,
            distribution.commitment_id,
            len(allocations),
        )
        return distribution, True

    async def get_distribution(
        self, kind: DistributionKind, commitment_id: str, milestone_id: str = ""
    ) -> Distribution | None:
        distribution_id = self._distribution_keys.get((kind.value, commitment_id, milestone_id))
        return self._distributions.get(distribution_id) if distribution_id else None

    async def get_distribution_by_id(self, distribution_id: str) -> Distribution | None:
        return self._distributions.get(distribution_id)

    async def list_distributions(
        self, commitment_id: str, kind: DistributionKind | None = None
    ) -> list[Distribution]:
        out = [
            d
            for d in self._distributions.values()
            if d.commitment_id == commitment_id and (kind is None or d.kind == kind)
        ]
        return sorted(out, key=lambda d: (d.created_at_unix, d.id))

    async def list_allocations(self, distribution_id: str) -> list[Allocation]:
        rows = self._allocations.get(distribution_id, {})
        return sorted(rows.values(), key=lambda a: (-a.amount, a.wallet_pubkey))

    async def get_allocation(self, distribution_id: str, wallet_pubkey: str) -> Allocation | None:
        return self._allocations.get(distribution_id, {}).get(wallet_pubkey)

    async def set_distribution_tx_sigs(
        self,
        distribution_id: str,
        *,
        buyback_tx_sig: str | None = None,
        voter_pot_tx_sig: str | None = None,
    ) -> Distribution | None:
        current = self._distributions.get(distribution_id)
        if current is None:
            return None
        updated = current
        if buyback_tx_sig and tx_sig_is_empty(updated.buyback_tx_sig):
            updated = replace(updated, buyback_tx_sig=buyback_tx_sig)
        if voter_pot_tx_sig and tx_sig_is_empty(updated.voter_pot_tx_sig):
            updated = replace(updated, voter_pot_tx_sig=voter_pot_tx_sig)
        self._distributions[distribution_id] = updated
        return updated

    async def set_distribution_status(self, distribution_id: str, status: DistributionStatus) -> bool:
        current = self._distributions.get(distribution_id)
        if current is None:
            return False
        self._distributions[distribution_id] = replace(current, status=status)
        return True

    async def reserved_milestone_failure_amount(self, commitment_id: str) -> int:
        reserved = 0
        for d in self._distributions.values():
            if d.commitment_id != commitment_id or d.kind != DistributionKind.MILESTONE_FAILURE:
                continue
            for a in self._allocations.get(d.id, {}).values():
                claim = self._claims.get((d.id, a.wallet_pubkey))
                if claim is None or not claim.is_signed:
                    reserved += a.amount
        return reserved

    # Claims

    async def try_acquire_claim(self, claim: Claim) -> tuple[bool, Claim]:
        key = (claim.distribution_id, claim.wallet_pubkey)
        existing = self._claims.get(key)
        if existing is not None:
            return False, existing
        self._claims[key] = claim
        return True, claim

    async def finalize_claim(
        self, distribution_id: str, wallet_pubkey: str, tx_sig: str, *, claimed_at_unix: int
    ) -> bool:
        key = (distribution_id, wallet_pubkey)
        existing = self._claims.get(key)
        if existing is None or existing.tx_sig is not None or existing.claimed_at_unix != claimed_at_unix:
            return False
        self._claims[key] = replace(existing, tx_sig=tx_sig)
        return True

    async def delete_unsigned_claim(self, distribution_id: str, wallet_pubkey: str, *, claimed_at_unix: int) -> bool:
        key = (distribution_id, wallet_pubkey)
        existing = self._claims.get(key)
        if existing is None or existing.tx_sig is not None or existing.claimed_at_unix != claimed_at_unix:
            return False
        del self._claims[key]
        return True

    async def get_claim(self, distribution_id: str, wallet_pubkey: str) -> Claim | None:
        return self._claims.get((distribution_id, wallet_pubkey))

    async def count_signed_claims(self, distribution_id: str) -> int:
        return sum(1 for (did, _), c in self._claims.items() if did == distribution_id and c.is_signed)

    async def close(self) -> None:
        return None
