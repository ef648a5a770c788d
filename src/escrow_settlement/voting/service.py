"""Holder voting on completed milestones."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from escrow_settlement.chain.client import ChainClient
from escrow_settlement.commitments.models import Commitment, MilestoneStatus
from escrow_settlement.commitments.service import CommitmentService
from escrow_settlement.commitments.state import in_window, vote_window
from escrow_settlement.errors import ConflictError, NotFoundError, ValidationError
from escrow_settlement.messages import DEFAULT_PREFIX, milestone_vote_message, require_signed
from escrow_settlement.storage.store import Store
from escrow_settlement.voting.models import Holdings, VoteChoice, VoterSnapshot, VoteSignal, VoteTally
from escrow_settlement.voting.tally import EligibilityPolicy, assess_eligibility, tally_votes

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VoteResult:
    signal: VoteSignal
    recorded: bool
    tally: VoteTally
    commitment: Commitment


class VotingService:
    """Records signed holder votes and re-evaluates the milestone."""

    def __init__(
        self,
        store: Store,
        chain: ChainClient,
        commitments: CommitmentService,
        *,
        eligibility: EligibilityPolicy | None = None,
        message_prefix: str = DEFAULT_PREFIX,
    ) -> None:
        self._store = store
        self._chain = chain
        self._commitments = commitments
        self._eligibility = eligibility or EligibilityPolicy()
        self._prefix = message_prefix

    async def cast_vote(
        self,
        commitment_id: str,
        milestone_id: str,
        *,
        signer_pubkey: str,
        vote: VoteChoice,
        signature: str,
        holdings: Holdings,
        now_unix: int | None = None,
    ) -> VoteResult:
        """Record a holder's vote.

        A wallet's first vote on a milestone is kept; later votes are no-ops
        reported with ``recorded=False``.

        Raises:
            AuthorizationError: The signature does not match the vote message.
            ConflictError: The milestone is not open for voting.
            ForbiddenError: The holder does not meet the voting minimum.
        """
        message = milestone_vote_message(
            commitment_id, milestone_id, approve=vote == VoteChoice.APPROVE, prefix=self._prefix
        )
        require_signed(message, signature, signer_pubkey)

        now = now_unix if now_unix is not None else await self._chain.get_current_time()
        commitment = await self._commitments.refresh(commitment_id, now_unix=now)
        if not commitment.is_reward:
            raise ValidationError("Only reward commitments take votes", commitment_id=commitment_id)
        milestone = commitment.milestone(milestone_id)
        if milestone is None:
            raise NotFoundError("Milestone not found", milestone_id=milestone_id)
        if commitment.token_mint and holdings.project_mint != commitment.token_mint:
            raise ValidationError("Holdings are for a different token", mint=holdings.project_mint)

        window = vote_window(milestone, self._commitments.policy.cutoff_seconds)
        if window is None or milestone.status != MilestoneStatus.LOCKED or not in_window(window, now):
            raise ConflictError("Milestone is not open for voting", status=milestone.status.value)

        eligibility = assess_eligibility(holdings, self._eligibility)
        signal, recorded = await self._store.record_vote(
            VoteSignal(
                commitment_id=commitment_id,
                milestone_id=milestone_id,
                signer_pubkey=signer_pubkey,
                vote=vote,
                created_at_unix=now,
                weight_usd=eligibility.weight_usd,
                project_price_usd=holdings.project_price_usd,
            )
        )
        if recorded:
            await self._store.record_voter_snapshot(
                VoterSnapshot(
                    commitment_id=commitment_id,
                    milestone_id=milestone_id,
                    signer_pubkey=signer_pubkey,
                    project_mint=holdings.project_mint,
                    project_ui_amount=holdings.project_ui_amount,
                    project_price_usd=holdings.project_price_usd,
                    project_value_usd=eligibility.value_usd,
                    ship_ui_amount=holdings.ship_ui_amount,
                    ship_multiplier_bps=eligibility.ship_multiplier_bps,
                    created_at_unix=now,
                )
            )
            logger.info("Vote %s by %s on %s/%s", vote.value, signer_pubkey, commitment_id, milestone_id)
        else:
            logger.debug("Duplicate vote by %s on %s/%s ignored", signer_pubkey, commitment_id, milestone_id)

        signals = await self._store.list_vote_signals(commitment_id, milestone_id)
        refreshed = await self._commitments.refresh(commitment_id, now_unix=now)
        return VoteResult(
            signal=signal,
            recorded=recorded,
            tally=tally_votes(signals, window),
            commitment=refreshed,
        )

    async def tally(self, commitment_id: str, milestone_id: str) -> VoteTally:
        commitment = await self._commitments.get(commitment_id)
        milestone = commitment.milestone(milestone_id)
        if milestone is None:
            raise NotFoundError("Milestone not found", milestone_id=milestone_id)
        signals = await self._store.list_vote_signals(commitment_id, milestone_id)
        return tally_votes(signals, vote_window(milestone, self._commitments.policy.cutoff_seconds))
