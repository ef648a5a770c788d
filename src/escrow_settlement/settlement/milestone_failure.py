"""Per-milestone failure settlement for reward commitments."""

from __future__ import annotations

import logging

from escrow_settlement.chain.client import ChainClient
from escrow_settlement.claims.protocol import ClaimProtocol
from escrow_settlement.commitments.models import CommitmentStatus, MilestoneStatus
from escrow_settlement.commitments.service import CommitmentService
from escrow_settlement.commitments.state import OPEN_REWARD_STATUSES, effective_unlock_lamports
from escrow_settlement.errors import ConflictError, FeatureDisabledError, NotFoundError
from escrow_settlement.settlement.base import (
    SettlementPolicy,
    SettlementResult,
    TreasuryPayer,
    build_distribution,
    ensure_distribution,
    fee_reserve,
    snapshot_weights,
    split_pot,
    voter_shares,
)
from escrow_settlement.settlement.models import DistributionKind
from escrow_settlement.storage.store import Store

logger = logging.getLogger(__name__)


class MilestoneFailureSettlement:
    """Forfeits a failed milestone's unlock to buyback and that milestone's voters.

    The pot is the milestone's resolved unlock, capped by the escrow balance
    not already reserved by earlier milestone failure distributions.
    """

    def __init__(
        self,
        store: Store,
        chain: ChainClient,
        commitments: CommitmentService,
        *,
        policy: SettlementPolicy,
        enabled: bool = False,
        claims: ClaimProtocol | None = None,
    ) -> None:
        self._store = store
        self._chain = chain
        self._commitments = commitments
        self._policy = policy
        self._enabled = enabled
        self._treasury = TreasuryPayer(store, chain, claims or ClaimProtocol(store, ttl_seconds=policy.claim_ttl_seconds))

    async def settle(
        self, commitment_id: str, milestone_id: str, *, now_unix: int | None = None
    ) -> SettlementResult:
        if not self._enabled:
            raise FeatureDisabledError("Milestone failure distributions are disabled")
        treasury = self._policy.require_treasury()
        now = now_unix if now_unix is not None else await self._chain.get_current_time()

        commitment = await self._commitments.refresh(commitment_id, now_unix=now, observe_balance=True)
        milestone = commitment.milestone(milestone_id)
        if milestone is None:
            raise NotFoundError("Milestone not found", milestone_id=milestone_id)
        if milestone.status != MilestoneStatus.FAILED:
            raise ConflictError("Milestone has not failed", status=milestone.status.value)

        existing = await self._store.get_distribution(DistributionKind.MILESTONE_FAILURE, commitment_id, milestone_id)
        if existing is not None and await self._treasury.should_resume(existing):
            distribution, created = existing, False
            allocations = await self._store.list_allocations(existing.id)
        else:
            balance = await self._chain.get_balance(commitment.escrow_pubkey)
            released = commitment.released_lamports()
            funded = max(commitment.total_funded_lamports, balance + released)
            forfeited = effective_unlock_lamports(milestone, funded)
            reserved = await self._store.reserved_milestone_failure_amount(commitment_id)
            if existing is not None:
                # Our own unclaimed allocations are not reserved against ourselves.
                reserved -= existing.allocation_total
            snapshots = await self._store.list_voter_snapshots(commitment_id, milestone_id)
            weights = snapshot_weights(snapshots, exclude=(treasury, commitment.escrow_pubkey))
            fees = await fee_reserve(self._chain, commitment, transfers=1 + len(weights))
            available = max(0, balance - reserved - fees)
            pot = min(forfeited, available)
            if pot <= 0:
                raise ConflictError(
                    "Escrow has no unreserved balance for this milestone",
                    balance=balance,
                    reserved=reserved,
                    fees=fees,
                )

            buyback, voter_pot = split_pot(pot, self._policy.buyback_bps)
            shares = voter_shares(voter_pot, weights, dust_threshold=self._policy.dust_threshold)
            planned, planned_allocations = build_distribution(
                kind=DistributionKind.MILESTONE_FAILURE,
                commitment=commitment,
                milestone_id=milestone_id,
                now_unix=now,
                pot_amount=pot,
                shares=shares,
                buyback_amount=buyback,
                voter_pot_amount=voter_pot,
                treasury_pubkey=treasury,
                voter_pot_to_treasury=not shares and voter_pot > 0,
            )
            distribution, created = await ensure_distribution(self._store, planned, planned_allocations)
            allocations = planned_allocations if created else await self._store.list_allocations(distribution.id)

        distribution, treasury_claim = await self._treasury.pay(commitment, distribution, now_unix=now)

        await self._store.transition_status(
            commitment_id,
            from_statuses=OPEN_REWARD_STATUSES,
            status=CommitmentStatus.FAILED,
        )
        logger.info(
            "Milestone %s/%s failure distribution %s: pot %d, buyback %d, %d allocations",
            commitment_id,
            milestone_id,
            distribution.id,
            distribution.pot_amount,
            distribution.buyback_amount,
            len(allocations),
        )
        return SettlementResult(distribution, tuple(allocations), created=created, treasury_claim=treasury_claim)
