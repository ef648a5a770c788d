"""Payout flows built on the claim protocol.

Each flow authenticates a signed request, resolves what is owed, and hands
the transfer to :class:`ClaimProtocol`, which guarantees it runs at most
once per (distribution, wallet).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from escrow_settlement.chain.client import ChainClient, MintInfo
from escrow_settlement.claims.models import Claim, ClaimOutcome
from escrow_settlement.claims.protocol import (
    RECOVERY_LOOKBACK_SECONDS,
    ClaimProtocol,
    ClaimRequest,
    release_claim_key,
)
from escrow_settlement.commitments.models import Commitment, MilestoneStatus
from escrow_settlement.commitments.service import CommitmentService
from escrow_settlement.commitments.state import effective_unlock_lamports
from escrow_settlement.config import SettlementSettings
from escrow_settlement.errors import (
    ConfigurationError,
    ConflictError,
    FeatureDisabledError,
    NotFoundError,
    ValidationError,
)
from escrow_settlement.messages import (
    DEFAULT_PREFIX,
    failure_voter_claim_message,
    milestone_claim_message,
    milestone_failure_voter_claim_message,
    require_fresh,
    require_signed,
    vote_reward_claim_message,
)
from escrow_settlement.settlement.base import treasury_amount
from escrow_settlement.settlement.models import Distribution, DistributionKind, DistributionStatus
from escrow_settlement.signing.vault import CustodialWallet
from escrow_settlement.storage.store import Store

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PayoutFlags:
    enable_reward_payouts: bool = False
    enable_failure_distribution_payouts: bool = False
    enable_vote_reward_distributions: bool = False

    @classmethod
    def from_settings(cls, settings: SettlementSettings) -> PayoutFlags:
        return cls(
            enable_reward_payouts=settings.enable_reward_payouts,
            enable_failure_distribution_payouts=settings.enable_failure_distribution_payouts,
            enable_vote_reward_distributions=settings.enable_vote_reward_distributions,
        )


class ClaimService:
    """Voter and creator payouts."""

    def __init__(
        self,
        store: Store,
        chain: ChainClient,
        commitments: CommitmentService,
        *,
        claims: ClaimProtocol | None = None,
        flags: PayoutFlags | None = None,
        message_prefix: str = DEFAULT_PREFIX,
        max_skew_seconds: int = 300,
        faucet_wallet_id: str | None = None,
    ) -> None:
        self._store = store
        self._chain = chain
        self._commitments = commitments
        self._claims = claims or ClaimProtocol(store)
        self._flags = flags or PayoutFlags()
        self._prefix = message_prefix
        self._max_skew = max_skew_seconds
        self._faucet_wallet_id = faucet_wallet_id

    async def _authenticate(self, message: str, signature: str, wallet: str, timestamp_unix: int) -> int:
        now = await self._chain.get_current_time()
        require_fresh(timestamp_unix, now, self._max_skew)
        require_signed(message, signature, wallet)
        return now

    async def _distribution(self, kind: DistributionKind, commitment_id: str, milestone_id: str = "") -> Distribution:
        distribution = await self._store.get_distribution(kind, commitment_id, milestone_id)
        if distribution is None:
            raise NotFoundError(
                "Distribution not found",
                kind=kind.value,
                commitment_id=commitment_id,
                milestone_id=milestone_id or None,
            )
        return distribution

    async def _commitment(self, commitment_id: str) -> Commitment:
        commitment = await self._store.get_commitment(commitment_id)
        if commitment is None:
            raise NotFoundError("Commitment not found", commitment_id=commitment_id)
        return commitment

    async def _mark_completed_if_done(self, distribution: Distribution) -> None:
        if distribution.status == DistributionStatus.COMPLETED:
            return
        expected = distribution.allocation_count
        if distribution.treasury_pubkey and treasury_amount(distribution) > 0:
            expected += 1
        signed = await self._store.count_signed_claims(distribution.id)
        if signed >= expected:
            await self._store.set_distribution_status(distribution.id, DistributionStatus.COMPLETED)
            logger.info("Distribution %s fully claimed", distribution.id)

    async def _pay_lamport_allocation(
        self,
        distribution: Distribution,
        wallet: str,
        *,
        now_unix: int,
    ) -> ClaimOutcome:
        allocation = await self._store.get_allocation(distribution.id, wallet)
        if allocation is None:
            raise NotFoundError("No allocation for wallet", distribution_id=distribution.id, wallet=wallet)
        commitment = await self._commitment(distribution.commitment_id)

        async def execute() -> str:
            return await self._chain.transfer(
                commitment.signer,
                from_pubkey=commitment.escrow_pubkey,
                to_pubkey=wallet,
                amount=allocation.amount,
            )

        async def recover(claim: Claim) -> str | None:
            return await self._chain.find_transfer_signature(
                from_pubkey=commitment.escrow_pubkey,
                to_pubkey=wallet,
                amount=allocation.amount,
                min_block_time=claim.claimed_at_unix - RECOVERY_LOOKBACK_SECONDS,
            )

        outcome = await self._claims.run(
            ClaimRequest(distribution.id, wallet, allocation.amount, wallet),
            now_unix=now_unix,
            execute=execute,
            recover=recover,
        )
        await self._mark_completed_if_done(distribution)
        return outcome

    async def claim_failure_voter(
        self, commitment_id: str, *, wallet: str, timestamp_unix: int, signature: str
    ) -> ClaimOutcome:
        """Pay a voter's share of a personal commitment's failure distribution."""
        message = failure_voter_claim_message(commitment_id, wallet, timestamp_unix, self._prefix)
        now = await self._authenticate(message, signature, wallet, timestamp_unix)
        distribution = await self._distribution(DistributionKind.FAILURE, commitment_id)
        return await self._pay_lamport_allocation(distribution, wallet, now_unix=now)

    async def claim_milestone_failure_voter(
        self,
        commitment_id: str,
        milestone_id: str,
        *,
        wallet: str,
        timestamp_unix: int,
        signature: str,
    ) -> ClaimOutcome:
        """Pay a voter's share of a failed milestone's distribution."""
        if not self._flags.enable_failure_distribution_payouts:
            raise FeatureDisabledError("Milestone failure payouts are disabled")
        message = milestone_failure_voter_claim_message(
            commitment_id, milestone_id, wallet, timestamp_unix, self._prefix
        )
        now = await self._authenticate(message, signature, wallet, timestamp_unix)
        distribution = await self._distribution(DistributionKind.MILESTONE_FAILURE, commitment_id, milestone_id)
        return await self._pay_lamport_allocation(distribution, wallet, now_unix=now)

    async def claim_vote_reward(
        self,
        commitment_id: str,
        milestone_id: str,
        *,
        wallet: str,
        timestamp_unix: int,
        signature: str,
    ) -> ClaimOutcome:
        """Pay a voter's reward tokens from the faucet."""
        if not self._flags.enable_vote_reward_distributions:
            raise FeatureDisabledError("Vote rewards are disabled")
        if not self._faucet_wallet_id:
            raise ConfigurationError("CTS_VOTE_REWARD_FAUCET_WALLET_ID is required")
        message = vote_reward_claim_message(commitment_id, milestone_id, wallet, timestamp_unix, self._prefix)
        now = await self._authenticate(message, signature, wallet, timestamp_unix)
        distribution = await self._distribution(DistributionKind.VOTE_REWARD, commitment_id, milestone_id)
        if not distribution.mint_pubkey or not distribution.faucet_owner_pubkey:
            raise ConfigurationError("Vote reward distribution has no mint or faucet", distribution_id=distribution.id)
        allocation = await self._store.get_allocation(distribution.id, wallet)
        if allocation is None:
            raise NotFoundError("No allocation for wallet", distribution_id=distribution.id, wallet=wallet)

        info = await self._chain.get_token_mint_info(distribution.mint_pubkey)
        if distribution.token_program_pubkey and info.token_program != distribution.token_program_pubkey:
            raise ConflictError(
                "Reward mint token program changed",
                stored=distribution.token_program_pubkey,
                current=info.token_program,
            )
        mint = MintInfo(mint=distribution.mint_pubkey, decimals=info.decimals, token_program=info.token_program)
        faucet_owner = distribution.faucet_owner_pubkey
        faucet = CustodialWallet(self._faucet_wallet_id)

        async def execute() -> str:
            return await self._chain.transfer_token(
                faucet,
                owner_pubkey=faucet_owner,
                to_pubkey=wallet,
                mint=mint,
                amount=allocation.amount,
            )

        async def recover(claim: Claim) -> str | None:
            return await self._chain.find_transfer_signature(
                from_pubkey=faucet_owner,
                to_pubkey=wallet,
                amount=allocation.amount,
                min_block_time=claim.claimed_at_unix - RECOVERY_LOOKBACK_SECONDS,
                mint=mint,
            )

        outcome = await self._claims.run(
            ClaimRequest(distribution.id, wallet, allocation.amount, wallet),
            now_unix=now,
            execute=execute,
            recover=recover,
        )
        await self._mark_completed_if_done(distribution)
        return outcome

    async def release_milestone(self, commitment_id: str, milestone_id: str, *, signature: str) -> ClaimOutcome:
        """Pay a claimable milestone's unlock to the creator.

        Raises:
            FeatureDisabledError: Reward payouts are switched off.
            AuthorizationError: The creator did not sign the claim message.
            ConflictError: The milestone is not claimable, or the escrow cannot
                cover the unlock after reserved failure payouts.
        """
        if not self._flags.enable_reward_payouts:
            raise FeatureDisabledError("Reward payouts are disabled")
        current = await self._commitment(commitment_id)
        if not current.is_reward or not current.creator_pubkey:
            raise ValidationError("Not a reward commitment", commitment_id=commitment_id)
        creator = current.creator_pubkey
        require_signed(milestone_claim_message(commitment_id, milestone_id, self._prefix), signature, creator)

        now = await self._chain.get_current_time()
        commitment = await self._commitments.refresh(commitment_id, now_unix=now, observe_balance=True)
        milestone = commitment.milestone(milestone_id)
        if milestone is None:
            raise NotFoundError("Milestone not found", milestone_id=milestone_id)

        key = release_claim_key(commitment_id, milestone_id)
        if milestone.status == MilestoneStatus.RELEASED:
            claim = await self._store.get_claim(key, creator)
            tx_sig = milestone.released_tx_sig or (claim.tx_sig if claim else None)
            if claim is None or not tx_sig:
                raise ConflictError("Milestone already released", milestone_id=milestone_id)
            return ClaimOutcome(claim=claim, tx_sig=tx_sig, idempotent=True)
        if milestone.status != MilestoneStatus.CLAIMABLE:
            raise ConflictError("Milestone is not claimable", status=milestone.status.value)

        amount = effective_unlock_lamports(milestone, commitment.total_funded_lamports)
        if amount <= 0:
            raise ConflictError("Milestone unlock resolves to zero", milestone_id=milestone_id)

        async def execute() -> str:
            balance = await self._chain.get_balance(commitment.escrow_pubkey)
            reserved = await self._store.reserved_milestone_failure_amount(commitment_id)
            fee = await self._chain.transfer_fee(commitment.signer, from_pubkey=commitment.escrow_pubkey)
            if balance - reserved - fee < amount:
                raise ConflictError(
                    "Escrow balance does not cover the unlock",
                    balance=balance,
                    reserved=reserved,
                    fee=fee,
                    amount=amount,
                )
            return await self._chain.transfer(
                commitment.signer,
                from_pubkey=commitment.escrow_pubkey,
                to_pubkey=creator,
                amount=amount,
            )

        async def recover(claim: Claim) -> str | None:
            return await self._chain.find_transfer_signature(
                from_pubkey=commitment.escrow_pubkey,
                to_pubkey=creator,
                amount=amount,
                min_block_time=claim.claimed_at_unix - RECOVERY_LOOKBACK_SECONDS,
            )

        outcome = await self._claims.run(
            ClaimRequest(key, creator, amount, creator),
            now_unix=now,
            execute=execute,
            recover=recover,
        )
        await self._commitments.mark_released(
            commitment_id,
            milestone_id,
            amount=amount,
            tx_sig=outcome.tx_sig,
            now_unix=now,
        )
        return outcome
