"""Failure settlement for personal commitments that missed their deadline."""

from __future__ import annotations

import logging

from escrow_settlement.chain.client import ChainClient
from escrow_settlement.claims.protocol import ClaimProtocol
from escrow_settlement.commitments.models import CommitmentKind, CommitmentStatus
from escrow_settlement.commitments.state import LOCKABLE_STATUSES
from escrow_settlement.errors import (
    ConflictError,
    LockHeldError,
    NotFoundError,
    ValidationError,
)
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


class FailureSettlement:
    """Splits a failed personal commitment's escrow between buyback and voters.

    The run holds the ``resolving`` lock from start to finish and releases it
    back to the prior status on any error. A rerun resumes a distribution whose
    treasury transfer was already started instead of recomputing it.
    """

    def __init__(
        self,
        store: Store,
        chain: ChainClient,
        *,
        policy: SettlementPolicy,
        claims: ClaimProtocol | None = None,
    ) -> None:
        self._store = store
        self._chain = chain
        self._policy = policy
        self._treasury = TreasuryPayer(store, chain, claims or ClaimProtocol(store, ttl_seconds=policy.claim_ttl_seconds))

    async def settle(self, commitment_id: str, *, now_unix: int | None = None) -> SettlementResult:
        commitment = await self._store.get_commitment(commitment_id)
        if commitment is None:
            raise NotFoundError("Commitment not found", commitment_id=commitment_id)
        if commitment.kind == CommitmentKind.CREATOR_REWARD:
            raise ValidationError(
                "Reward commitments settle failures per milestone",
                commitment_id=commitment_id,
            )
        now = now_unix if now_unix is not None else await self._chain.get_current_time()
        if now <= commitment.deadline_unix:
            raise ConflictError("Deadline has not passed", deadline_unix=commitment.deadline_unix)
        treasury = self._policy.require_treasury()

        if commitment.status == CommitmentStatus.RESOLVED_FAILURE:
            existing = await self._store.get_distribution(DistributionKind.FAILURE, commitment_id)
            if existing is not None:
                allocations = await self._store.list_allocations(existing.id)
                return SettlementResult(existing, tuple(allocations), created=False)

        prior = await self._store.claim_for_resolution(commitment_id, from_statuses=LOCKABLE_STATUSES)
        if prior is None:
            raise LockHeldError("Commitment is already resolving or resolved", status=commitment.status.value)

        try:
            existing = await self._store.get_distribution(DistributionKind.FAILURE, commitment_id)
            if existing is not None and await self._treasury.should_resume(existing):
                distribution, created = existing, False
                allocations = await self._store.list_allocations(existing.id)
                logger.info("Resuming failure distribution %s for %s", existing.id, commitment_id)
            else:
                balance = await self._chain.get_balance(prior.escrow_pubkey)
                if balance <= 0:
                    raise ConflictError("Escrow has no balance", escrow=prior.escrow_pubkey)
                snapshots = await self._store.list_voter_snapshots(commitment_id)
                weights = snapshot_weights(snapshots, exclude=(treasury, prior.escrow_pubkey))
                # One treasury transfer plus one claim per voter, all paid by the escrow.
                reserve = await fee_reserve(self._chain, prior, transfers=1 + len(weights))
                pot = balance - reserve
                if pot <= 0:
                    raise ConflictError("Escrow balance does not cover transfer fees", balance=balance, reserve=reserve)
                buyback, voter_pot = split_pot(pot, self._policy.buyback_bps)
                shares = voter_shares(voter_pot, weights, dust_threshold=self._policy.dust_threshold)
                planned, planned_allocations = build_distribution(
                    kind=DistributionKind.FAILURE,
                    commitment=prior,
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

            distribution, treasury_claim = await self._treasury.pay(prior, distribution, now_unix=now)
            resolved = await self._store.finalize_resolution(
                commitment_id,
                status=CommitmentStatus.RESOLVED_FAILURE,
                resolved_at_unix=now,
                tx_sig=treasury_claim.tx_sig if treasury_claim else None,
            )
        except Exception:
            await self._store.release_resolution(commitment_id, restore_status=prior.status)
            logger.exception("Failure settlement of %s failed; lock released", commitment_id)
            raise

        if resolved is None:
            raise LockHeldError("Commitment lock was lost during settlement", commitment_id=commitment_id)
        logger.info(
            "Commitment %s resolved_failure: buyback %d, voter pot %d over %d allocations",
            commitment_id,
            distribution.buyback_amount,
            distribution.voter_pot_amount,
            len(allocations),
        )
        return SettlementResult(distribution, tuple(allocations), created=created, treasury_claim=treasury_claim)
