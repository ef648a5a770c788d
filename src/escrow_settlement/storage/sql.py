"""Relational implementation of the store on SQLAlchemy async sessions."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from escrow_settlement.claims.models import Claim
from escrow_settlement.commitments.models import (
    Commitment,
    CommitmentKind,
    CommitmentStatus,
    Milestone,
)
from escrow_settlement.errors import ClaimInProgressError, ConflictError
from escrow_settlement.settlement.models import (
    Allocation,
    Distribution,
    DistributionKind,
    DistributionStatus,
)
from escrow_settlement.signing.vault import SecretVault
from escrow_settlement.storage.database import DatabaseManager
from escrow_settlement.storage.models import CommitmentModel
from escrow_settlement.storage.repos import (
    ClaimRepository,
    CommitmentRepository,
    DistributionRepository,
    VoteRepository,
)
from escrow_settlement.voting.models import VoterSnapshot, VoteSignal

logger = logging.getLogger(__name__)


class SqlStore:
    """Durable store. Every call runs in its own transaction."""

    def __init__(self, db: DatabaseManager, vault: SecretVault) -> None:
        self._db = db
        self._vault = vault

    @property
    def db(self) -> DatabaseManager:
        return self._db

    # Commitments

    async def create_commitment(self, commitment: Commitment) -> Commitment:
        async with self._db.transaction() as session:
            inserted = await CommitmentRepository(session, self._vault).insert(commitment)
        if not inserted:
            raise ConflictError("Commitment already exists", commitment_id=commitment.id)
        return commitment

    async def get_commitment(self, commitment_id: str) -> Commitment | None:
        async with self._db.transaction() as session:
            return await CommitmentRepository(session, self._vault).get(commitment_id)

    async def list_commitments(
        self,
        *,
        kind: CommitmentKind | None = None,
        statuses: Sequence[CommitmentStatus] | None = None,
    ) -> list[Commitment]:
        async with self._db.transaction() as session:
            return await CommitmentRepository(session, self._vault).list_all(kind=kind, statuses=statuses)

    async def claim_for_resolution(
        self, commitment_id: str, *, from_statuses: Sequence[CommitmentStatus]
    ) -> Commitment | None:
        async with self._db.transaction() as session:
            repo = CommitmentRepository(session, self._vault)
            prior = await repo.get(commitment_id)
            if prior is None or prior.status not in from_statuses:
                return None
            locked = await repo.update_where(
                commitment_id,
                CommitmentModel.status == prior.status.value,
                status=CommitmentStatus.RESOLVING.value,
            )
            return prior if locked else None

    async def release_resolution(self, commitment_id: str, *, restore_status: CommitmentStatus) -> bool:
        async with self._db.transaction() as session:
            return await CommitmentRepository(session, self._vault).update_where(
                commitment_id,
                CommitmentModel.status == CommitmentStatus.RESOLVING.value,
                status=restore_status.value,
            )

    async def finalize_resolution(
        self,
        commitment_id: str,
        *,
        status: CommitmentStatus,
        resolved_at_unix: int,
        tx_sig: str | None,
    ) -> Commitment | None:
        async with self._db.transaction() as session:
            repo = CommitmentRepository(session, self._vault)
            done = await repo.update_where(
                commitment_id,
                CommitmentModel.status == CommitmentStatus.RESOLVING.value,
                status=status.value,
                resolved_at_unix=resolved_at_unix,
                resolved_tx_sig=tx_sig,
            )
            return await repo.get(commitment_id) if done else None

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
        async with self._db.transaction() as session:
            repo = CommitmentRepository(session, self._vault)
            done = await repo.update_where(
                commitment_id,
                CommitmentModel.version == expected_version,
                CommitmentModel.status != CommitmentStatus.ARCHIVED.value,
                milestones=[m.to_dict() for m in milestones],
                total_funded_lamports=total_funded_lamports,
                unlocked_lamports=unlocked_lamports,
                status=status.value,
            )
            return await repo.get(commitment_id) if done else None

    async def transition_status(
        self,
        commitment_id: str,
        *,
        from_statuses: Sequence[CommitmentStatus],
        status: CommitmentStatus,
    ) -> Commitment | None:
        async with self._db.transaction() as session:
            repo = CommitmentRepository(session, self._vault)
            done = await repo.update_where(
                commitment_id,
                CommitmentModel.status.in_([s.value for s in from_statuses]),
                status=status.value,
            )
            return await repo.get(commitment_id) if done else None

    # Votes

    async def record_vote(self, signal: VoteSignal) -> tuple[VoteSignal, bool]:
        async with self._db.transaction() as session:
            repo = VoteRepository(session)
            inserted = await repo.insert_signal(signal)
            if inserted:
                return signal, True
            stored = await repo.get_signal(signal.commitment_id, signal.milestone_id, signal.signer_pubkey)
            return (stored or signal), False

    async def record_voter_snapshot(self, snapshot: VoterSnapshot) -> tuple[VoterSnapshot, bool]:
        async with self._db.transaction() as session:
            repo = VoteRepository(session)
            inserted = await repo.insert_snapshot(snapshot)
            if inserted:
                return snapshot, True
            stored = await repo.get_snapshot(snapshot.commitment_id, snapshot.milestone_id, snapshot.signer_pubkey)
            return (stored or snapshot), False

    async def list_vote_signals(self, commitment_id: str, milestone_id: str | None = None) -> list[VoteSignal]:
        async with self._db.transaction() as session:
            return await VoteRepository(session).list_signals(commitment_id, milestone_id)

    async def list_votes_by_signer(self, signer_pubkey: str) -> list[VoteSignal]:
        async with self._db.transaction() as session:
            return await VoteRepository(session).list_by_signer(signer_pubkey)

    async def list_voter_snapshots(
        self, commitment_id: str, milestone_id: str | None = None
    ) -> list[VoterSnapshot]:
        async with self._db.transaction() as session:
            return await VoteRepository(session).list_snapshots(commitment_id, milestone_id)

    # Distributions

    async def create_distribution(
        self, distribution: Distribution, allocations: Sequence[Allocation]
    ) -> tuple[Distribution, bool]:
        async with self._db.transaction() as session:
            repo = DistributionRepository(session)
            created = await repo.insert_if_absent(distribution)
            if created:
                await repo.insert_allocations(allocations)
                logger.info(
                    "Created %s distribution %s for %s (%d allocations)",
                    distribution.kind.value,
                    distribution.id,
                    distribution.commitment_id,
                    len(allocations),
                )
                return distribution, True
            stored = await repo.get_by_parent(distribution.kind, distribution.commitment_id, distribution.milestone_id)
        if stored is None:
            raise ConflictError("Distribution insert conflicted on a different key", distribution_id=distribution.id)
        return stored, False

    async def get_distribution(
        self, kind: DistributionKind, commitment_id: str, milestone_id: str = ""
    ) -> Distribution | None:
        async with self._db.transaction() as session:
            return await DistributionRepository(session).get_by_parent(kind, commitment_id, milestone_id)

    async def get_distribution_by_id(self, distribution_id: str) -> Distribution | None:
        async with self._db.transaction() as session:
            return await DistributionRepository(session).get(distribution_id)

    async def list_distributions(
        self, commitment_id: str, kind: DistributionKind | None = None
    ) -> list[Distribution]:
        async with self._db.transaction() as session:
            return await DistributionRepository(session).list_for_commitment(commitment_id, kind)

    async def list_allocations(self, distribution_id: str) -> list[Allocation]:
        async with self._db.transaction() as session:
            return await DistributionRepository(session).list_allocations(distribution_id)

    async def get_allocation(self, distribution_id: str, wallet_pubkey: str) -> Allocation | None:
        async with self._db.transaction() as session:
            return await DistributionRepository(session).get_allocation(distribution_id, wallet_pubkey)

    async def set_distribution_tx_sigs(
        self,
        distribution_id: str,
        *,
        buyback_tx_sig: str | None = None,
        voter_pot_tx_sig: str | None = None,
    ) -> Distribution | None:
        async with self._db.transaction() as session:
            repo = DistributionRepository(session)
            if buyback_tx_sig:
                await repo.fill_tx_sig(distribution_id, "buyback_tx_sig", buyback_tx_sig)
            if voter_pot_tx_sig:
                await repo.fill_tx_sig(distribution_id, "voter_pot_tx_sig", voter_pot_tx_sig)
            return await repo.get(distribution_id)

    async def set_distribution_status(self, distribution_id: str, status: DistributionStatus) -> bool:
        async with self._db.transaction() as session:
            return await DistributionRepository(session).set_status(distribution_id, status)

    async def reserved_milestone_failure_amount(self, commitment_id: str) -> int:
        async with self._db.transaction() as session:
            return await DistributionRepository(session).reserved_milestone_failure_amount(commitment_id)

    # Claims

    async def try_acquire_claim(self, claim: Claim) -> tuple[bool, Claim]:
        for _ in range(2):
            async with self._db.transaction() as session:
                repo = ClaimRepository(session)
                if await repo.insert_if_absent(claim):
                    return True, claim
                stored = await repo.get(claim.distribution_id, claim.wallet_pubkey)
            # A stale row can be deleted between the insert and the read.
            if stored is not None:
                return False, stored
        raise ClaimInProgressError(
            "Claim row is changing concurrently",
            distribution_id=claim.distribution_id,
            wallet=claim.wallet_pubkey,
        )

    async def finalize_claim(
        self, distribution_id: str, wallet_pubkey: str, tx_sig: str, *, claimed_at_unix: int
    ) -> bool:
        async with self._db.transaction() as session:
            return await ClaimRepository(session).set_tx_sig_if_null(
                distribution_id, wallet_pubkey, tx_sig, claimed_at_unix=claimed_at_unix
            )

    async def delete_unsigned_claim(self, distribution_id: str, wallet_pubkey: str, *, claimed_at_unix: int) -> bool:
        async with self._db.transaction() as session:
            return await ClaimRepository(session).delete_unsigned(
                distribution_id, wallet_pubkey, claimed_at_unix=claimed_at_unix
            )

    async def get_claim(self, distribution_id: str, wallet_pubkey: str) -> Claim | None:
        async with self._db.transaction() as session:
            return await ClaimRepository(session).get(distribution_id, wallet_pubkey)

    async def count_signed_claims(self, distribution_id: str) -> int:
        async with self._db.transaction() as session:
            return await ClaimRepository(session).count_signed(distribution_id)

    async def close(self) -> None:
        await self._db.close()
