"""Repository pattern implementations for data access.

Repositories take an ``AsyncSession`` and never commit; the caller's
session scope decides the transaction boundary. Conditional inserts use the
dialect's ``ON CONFLICT DO NOTHING`` and report whether a row was written.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa
from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from escrow_settlement.claims.models import Claim
from escrow_settlement.commitments.models import (
    Commitment,
    CommitmentKind,
    CommitmentStatus,
    FeeSplit,
    Milestone,
)
from escrow_settlement.settlement.models import (
    Allocation,
    Distribution,
    DistributionKind,
    DistributionStatus,
)
from escrow_settlement.signing.vault import SecretVault
from escrow_settlement.storage.models import (
    AllocationModel,
    ClaimModel,
    CommitmentModel,
    DistributionModel,
    VoterSnapshotModel,
    VoteSignalModel,
)
from escrow_settlement.storage.store import PENDING_TX_SIG
from escrow_settlement.voting.models import VoteChoice, VoterSnapshot, VoteSignal

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


def _insert(session: AsyncSession, model: type[Any]) -> Any:
    if session.get_bind().dialect.name == "postgresql":
        return pg_insert(model)
    return sqlite_insert(model)


def _rowcount(result: Any) -> int:
    # SQLAlchemy Result does have rowcount but typing doesn't reflect it
    return int(result.rowcount or 0)


class CommitmentRepository:
    """Repository for commitments. Signer material is sealed with the vault."""

    def __init__(self, session: AsyncSession, vault: SecretVault) -> None:
        self.session = session
        self.vault = vault

    def _to_domain(self, model: CommitmentModel) -> Commitment:
        return Commitment(
            id=model.id,
            kind=CommitmentKind(model.kind),
            status=CommitmentStatus(model.status),
            escrow_pubkey=model.escrow_pubkey,
            signer=self.vault.open(model.signer_kind, model.signer_payload),
            authority=model.authority,
            destination_on_fail=model.destination_on_fail,
            created_at_unix=model.created_at_unix,
            creator_pubkey=model.creator_pubkey,
            token_mint=model.token_mint,
            amount_lamports=model.amount_lamports,
            deadline_unix=model.deadline_unix,
            total_funded_lamports=model.total_funded_lamports,
            unlocked_lamports=model.unlocked_lamports,
            milestones=tuple(Milestone.from_dict(m) for m in model.milestones or []),
            fee_split=FeeSplit.from_dict(model.fee_split) if model.fee_split else None,
            resolved_at_unix=model.resolved_at_unix,
            resolved_tx_sig=model.resolved_tx_sig,
            version=model.version,
        )

    async def get(self, commitment_id: str) -> Commitment | None:
        result = await self.session.execute(select(CommitmentModel).where(CommitmentModel.id == commitment_id))
        model = result.scalar_one_or_none()
        return self._to_domain(model) if model else None

    async def list_all(
        self,
        *,
        kind: CommitmentKind | None = None,
        statuses: Sequence[CommitmentStatus] | None = None,
    ) -> list[Commitment]:
        stmt = select(CommitmentModel)
        if kind is not None:
            stmt = stmt.where(CommitmentModel.kind == kind.value)
        if statuses is not None:
            stmt = stmt.where(CommitmentModel.status.in_([s.value for s in statuses]))
        stmt = stmt.order_by(CommitmentModel.created_at_unix, CommitmentModel.id)
        result = await self.session.execute(stmt)
        return [self._to_domain(m) for m in result.scalars().all()]

    async def insert(self, commitment: Commitment) -> bool:
        signer_kind, signer_payload = self.vault.seal(commitment.signer)
        values = {
            "id": commitment.id,
            "kind": commitment.kind.value,
            "status": commitment.status.value,
            "escrow_pubkey": commitment.escrow_pubkey,
            "signer_kind": signer_kind,
            "signer_payload": signer_payload,
            "authority": commitment.authority,
            "destination_on_fail": commitment.destination_on_fail,
            "creator_pubkey": commitment.creator_pubkey,
            "token_mint": commitment.token_mint,
            "amount_lamports": commitment.amount_lamports,
            "deadline_unix": commitment.deadline_unix,
            "total_funded_lamports": commitment.total_funded_lamports,
            "unlocked_lamports": commitment.unlocked_lamports,
            "milestones": [m.to_dict() for m in commitment.milestones],
            "fee_split": commitment.fee_split.to_dict() if commitment.fee_split else None,
            "created_at_unix": commitment.created_at_unix,
            "version": commitment.version,
        }
        stmt = _insert(self.session, CommitmentModel).values(**values).on_conflict_do_nothing()
        result = await self.session.execute(stmt)
        return _rowcount(result) > 0

    async def update_where(
        self,
        commitment_id: str,
        *conditions: Any,
        **values: Any,
    ) -> bool:
        stmt = (
            update(CommitmentModel)
            .where(CommitmentModel.id == commitment_id, *conditions)
            .values(version=CommitmentModel.version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return _rowcount(result) > 0


def _vote_from_model(model: VoteSignalModel) -> VoteSignal:
    return VoteSignal(
        commitment_id=model.commitment_id,
        milestone_id=model.milestone_id,
        signer_pubkey=model.signer_pubkey,
        vote=VoteChoice(model.vote),
        created_at_unix=model.created_at_unix,
        weight_usd=model.weight_usd,
        project_price_usd=model.project_price_usd,
    )


def _snapshot_from_model(model: VoterSnapshotModel) -> VoterSnapshot:
    return VoterSnapshot(
        commitment_id=model.commitment_id,
        milestone_id=model.milestone_id,
        signer_pubkey=model.signer_pubkey,
        project_mint=model.project_mint,
        project_ui_amount=model.project_ui_amount,
        project_price_usd=model.project_price_usd,
        project_value_usd=model.project_value_usd,
        ship_ui_amount=model.ship_ui_amount,
        ship_multiplier_bps=model.ship_multiplier_bps,
        created_at_unix=model.created_at_unix,
    )


class VoteRepository:
    """Repository for vote signals and voter snapshots."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert_signal(self, signal: VoteSignal) -> bool:
        stmt = (
            _insert(self.session, VoteSignalModel)
            .values(
                commitment_id=signal.commitment_id,
                milestone_id=signal.milestone_id,
                signer_pubkey=signal.signer_pubkey,
                vote=signal.vote.value,
                created_at_unix=signal.created_at_unix,
                weight_usd=signal.weight_usd,
                project_price_usd=signal.project_price_usd,
            )
            .on_conflict_do_nothing(index_elements=["commitment_id", "milestone_id", "signer_pubkey"])
        )
        return _rowcount(await self.session.execute(stmt)) > 0

    async def get_signal(self, commitment_id: str, milestone_id: str, signer_pubkey: str) -> VoteSignal | None:
        model = await self.session.get(VoteSignalModel, (commitment_id, milestone_id, signer_pubkey))
        return _vote_from_model(model) if model else None

    async def list_signals(self, commitment_id: str, milestone_id: str | None = None) -> list[VoteSignal]:
        stmt = select(VoteSignalModel).where(VoteSignalModel.commitment_id == commitment_id)
        if milestone_id is not None:
            stmt = stmt.where(VoteSignalModel.milestone_id == milestone_id)
        stmt = stmt.order_by(VoteSignalModel.created_at_unix, VoteSignalModel.signer_pubkey)
        result = await self.session.execute(stmt)
        return [_vote_from_model(m) for m in result.scalars().all()]

    async def list_by_signer(self, signer_pubkey: str) -> list[VoteSignal]:
        stmt = (
            select(VoteSignalModel)
            .where(VoteSignalModel.signer_pubkey == signer_pubkey)
            .order_by(
                VoteSignalModel.created_at_unix,
                VoteSignalModel.commitment_id,
                VoteSignalModel.milestone_id,
            )
        )
        result = await self.session.execute(stmt)
        return [_vote_from_model(m) for m in result.scalars().all()]

    async def insert_snapshot(self, snapshot: VoterSnapshot) -> bool:
        stmt = (
            _insert(self.session, VoterSnapshotModel)
            .values(
                commitment_id=snapshot.commitment_id,
                milestone_id=snapshot.milestone_id,
                signer_pubkey=snapshot.signer_pubkey,
                project_mint=snapshot.project_mint,
                project_ui_amount=snapshot.project_ui_amount,
                project_price_usd=snapshot.project_price_usd,
                project_value_usd=snapshot.project_value_usd,
                ship_ui_amount=snapshot.ship_ui_amount,
                ship_multiplier_bps=snapshot.ship_multiplier_bps,
                created_at_unix=snapshot.created_at_unix,
            )
            .on_conflict_do_nothing(index_elements=["commitment_id", "milestone_id", "signer_pubkey"])
        )
        return _rowcount(await self.session.execute(stmt)) > 0

    async def get_snapshot(self, commitment_id: str, milestone_id: str, signer_pubkey: str) -> VoterSnapshot | None:
        model = await self.session.get(VoterSnapshotModel, (commitment_id, milestone_id, signer_pubkey))
        return _snapshot_from_model(model) if model else None

    async def list_snapshots(self, commitment_id: str, milestone_id: str | None = None) -> list[VoterSnapshot]:
        stmt = select(VoterSnapshotModel).where(VoterSnapshotModel.commitment_id == commitment_id)
        if milestone_id is not None:
            stmt = stmt.where(VoterSnapshotModel.milestone_id == milestone_id)
        stmt = stmt.order_by(VoterSnapshotModel.created_at_unix, VoterSnapshotModel.signer_pubkey)
        result = await self.session.execute(stmt)
        return [_snapshot_from_model(m) for m in result.scalars().all()]


def _distribution_from_model(model: DistributionModel) -> Distribution:
    return Distribution(
        id=model.id,
        kind=DistributionKind(model.kind),
        commitment_id=model.commitment_id,
        milestone_id=model.milestone_id,
        created_at_unix=model.created_at_unix,
        status=DistributionStatus(model.status),
        pot_amount=model.pot_amount,
        buyback_amount=model.buyback_amount,
        voter_pot_amount=model.voter_pot_amount,
        treasury_pubkey=model.treasury_pubkey,
        voter_pot_to_treasury=model.voter_pot_to_treasury,
        mint_pubkey=model.mint_pubkey,
        token_program_pubkey=model.token_program_pubkey,
        faucet_owner_pubkey=model.faucet_owner_pubkey,
        allocation_count=model.allocation_count,
        allocation_total=model.allocation_total,
        allocation_digest=model.allocation_digest,
        buyback_tx_sig=model.buyback_tx_sig,
        voter_pot_tx_sig=model.voter_pot_tx_sig,
    )


def _empty_sig(column: Any) -> Any:
    return sa.or_(column.is_(None), column == "", column == PENDING_TX_SIG)


class DistributionRepository:
    """Repository for distributions and their allocations."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert_if_absent(self, distribution: Distribution) -> bool:
        stmt = (
            _insert(self.session, DistributionModel)
            .values(
                id=distribution.id,
                kind=distribution.kind.value,
                commitment_id=distribution.commitment_id,
                milestone_id=distribution.milestone_id,
                created_at_unix=distribution.created_at_unix,
                status=distribution.status.value,
                pot_amount=distribution.pot_amount,
                buyback_amount=distribution.buyback_amount,
                voter_pot_amount=distribution.voter_pot_amount,
                treasury_pubkey=distribution.treasury_pubkey,
                voter_pot_to_treasury=distribution.voter_pot_to_treasury,
                mint_pubkey=distribution.mint_pubkey,
                token_program_pubkey=distribution.token_program_pubkey,
                faucet_owner_pubkey=distribution.faucet_owner_pubkey,
                allocation_count=distribution.allocation_count,
                allocation_total=distribution.allocation_total,
                allocation_digest=distribution.allocation_digest,
                buyback_tx_sig=distribution.buyback_tx_sig,
                voter_pot_tx_sig=distribution.voter_pot_tx_sig,
            )
            .on_conflict_do_nothing(index_elements=["kind", "commitment_id", "milestone_id"])
        )
        return _rowcount(await self.session.execute(stmt)) > 0

    async def insert_allocations(self, allocations: Sequence[Allocation]) -> None:
        if not allocations:
            return
        self.session.add_all(
            AllocationModel(
                distribution_id=a.distribution_id,
                wallet_pubkey=a.wallet_pubkey,
                amount=a.amount,
                weight=a.weight,
            )
            for a in allocations
        )
        await self.session.flush()

    async def get_by_parent(
        self, kind: DistributionKind, commitment_id: str, milestone_id: str = ""
    ) -> Distribution | None:
        result = await self.session.execute(
            select(DistributionModel).where(
                (DistributionModel.kind == kind.value)
                & (DistributionModel.commitment_id == commitment_id)
                & (DistributionModel.milestone_id == milestone_id)
            )
        )
        model = result.scalar_one_or_none()
        return _distribution_from_model(model) if model else None

    async def get(self, distribution_id: str) -> Distribution | None:
        model = await self.session.get(DistributionModel, distribution_id, populate_existing=True)
        return _distribution_from_model(model) if model else None

    async def list_for_commitment(
        self, commitment_id: str, kind: DistributionKind | None = None
    ) -> list[Distribution]:
        stmt = select(DistributionModel).where(DistributionModel.commitment_id == commitment_id)
        if kind is not None:
            stmt = stmt.where(DistributionModel.kind == kind.value)
        stmt = stmt.order_by(DistributionModel.created_at_unix, DistributionModel.id)
        result = await self.session.execute(stmt)
        return [_distribution_from_model(m) for m in result.scalars().all()]

    async def list_allocations(self, distribution_id: str) -> list[Allocation]:
        result = await self.session.execute(
            select(AllocationModel)
            .where(AllocationModel.distribution_id == distribution_id)
            .order_by(AllocationModel.amount.desc(), AllocationModel.wallet_pubkey)
        )
        return [
            Allocation(
                distribution_id=m.distribution_id,
                wallet_pubkey=m.wallet_pubkey,
                amount=m.amount,
                weight=m.weight,
            )
            for m in result.scalars().all()
        ]

    async def get_allocation(self, distribution_id: str, wallet_pubkey: str) -> Allocation | None:
        model = await self.session.get(AllocationModel, (distribution_id, wallet_pubkey))
        if model is None:
            return None
        return Allocation(
            distribution_id=model.distribution_id,
            wallet_pubkey=model.wallet_pubkey,
            amount=model.amount,
            weight=model.weight,
        )

    async def fill_tx_sig(self, distribution_id: str, column_name: str, tx_sig: str) -> bool:
        column = getattr(DistributionModel, column_name)
        stmt = (
            update(DistributionModel)
            .where(DistributionModel.id == distribution_id, _empty_sig(column))
            .values({column_name: tx_sig})
            .execution_options(synchronize_session=False)
        )
        return _rowcount(await self.session.execute(stmt)) > 0

    async def set_status(self, distribution_id: str, status: DistributionStatus) -> bool:
        stmt = (
            update(DistributionModel)
            .where(DistributionModel.id == distribution_id)
            .values(status=status.value)
            .execution_options(synchronize_session=False)
        )
        return _rowcount(await self.session.execute(stmt)) > 0

    async def reserved_milestone_failure_amount(self, commitment_id: str) -> int:
        stmt = (
            select(sa.func.coalesce(sa.func.sum(AllocationModel.amount), 0))
            .select_from(AllocationModel)
            .join(DistributionModel, DistributionModel.id == AllocationModel.distribution_id)
            .outerjoin(
                ClaimModel,
                (ClaimModel.distribution_id == AllocationModel.distribution_id)
                & (ClaimModel.wallet_pubkey == AllocationModel.wallet_pubkey),
            )
            .where(
                DistributionModel.commitment_id == commitment_id,
                DistributionModel.kind == DistributionKind.MILESTONE_FAILURE.value,
                ClaimModel.tx_sig.is_(None),
            )
        )
        result = await self.session.execute(stmt)
        return int(result.scalar_one() or 0)


def _claim_from_model(model: ClaimModel) -> Claim:
    return Claim(
        distribution_id=model.distribution_id,
        wallet_pubkey=model.wallet_pubkey,
        claimed_at_unix=model.claimed_at_unix,
        amount=model.amount,
        to_pubkey=model.to_pubkey,
        tx_sig=model.tx_sig,
    )


class ClaimRepository:
    """Repository for payout claims."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert_if_absent(self, claim: Claim) -> bool:
        stmt = (
            _insert(self.session, ClaimModel)
            .values(
                distribution_id=claim.distribution_id,
                wallet_pubkey=claim.wallet_pubkey,
                claimed_at_unix=claim.claimed_at_unix,
                amount=claim.amount,
                to_pubkey=claim.to_pubkey,
                tx_sig=claim.tx_sig,
            )
            .on_conflict_do_nothing(index_elements=["distribution_id", "wallet_pubkey"])
        )
        return _rowcount(await self.session.execute(stmt)) > 0

    async def get(self, distribution_id: str, wallet_pubkey: str) -> Claim | None:
        result = await self.session.execute(
            select(ClaimModel).where(
                (ClaimModel.distribution_id == distribution_id) & (ClaimModel.wallet_pubkey == wallet_pubkey)
            )
        )
        model = result.scalar_one_or_none()
        return _claim_from_model(model) if model else None

    async def set_tx_sig_if_null(
        self, distribution_id: str, wallet_pubkey: str, tx_sig: str, *, claimed_at_unix: int
    ) -> bool:
        stmt = (
            update(ClaimModel)
            .where(
                ClaimModel.distribution_id == distribution_id,
                ClaimModel.wallet_pubkey == wallet_pubkey,
                ClaimModel.tx_sig.is_(None),
                ClaimModel.claimed_at_unix == claimed_at_unix,
            )
            .values(tx_sig=tx_sig)
            .execution_options(synchronize_session=False)
        )
        return _rowcount(await self.session.execute(stmt)) > 0

    async def delete_unsigned(self, distribution_id: str, wallet_pubkey: str, *, claimed_at_unix: int) -> bool:
        stmt = (
            delete(ClaimModel)
            .where(
                ClaimModel.distribution_id == distribution_id,
                ClaimModel.wallet_pubkey == wallet_pubkey,
                ClaimModel.tx_sig.is_(None),
                ClaimModel.claimed_at_unix == claimed_at_unix,
            )
            .execution_options(synchronize_session=False)
        )
        return _rowcount(await self.session.execute(stmt)) > 0

    async def count_signed(self, distribution_id: str) -> int:
        result = await self.session.execute(
            select(sa.func.count())
            .select_from(ClaimModel)
            .where(ClaimModel.distribution_id == distribution_id, ClaimModel.tx_sig.is_not(None))
        )
        return int(result.scalar_one() or 0)
