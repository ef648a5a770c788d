"""Reward-token distributions for wallets that voted on a milestone."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from fractions import Fraction
from typing import Literal

from escrow_settlement.allocation.engine import BPS_DENOMINATOR, Share, weighted_split
from escrow_settlement.chain.client import ChainClient
from escrow_settlement.commitments.models import CommitmentKind
from escrow_settlement.commitments.service import CommitmentService
from escrow_settlement.commitments.state import vote_window
from escrow_settlement.config import VoteRewardSettings
from escrow_settlement.errors import (
    ConfigurationError,
    ConflictError,
    FeatureDisabledError,
    NotFoundError,
)
from escrow_settlement.settlement.base import SettlementResult, build_distribution, ensure_distribution
from escrow_settlement.settlement.models import DistributionKind
from escrow_settlement.storage.store import Store
from escrow_settlement.voting.models import VoterSnapshot
from escrow_settlement.voting.tally import streak_multiplier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VoteRewardPolicy:
    mode: Literal["pool", "fixed"] = "pool"
    pool_ui_amount: int = 0
    per_vote_ui_amount: int = 0
    max_pool_ui_amount: int = 0
    mint: str | None = None
    faucet_owner_pubkey: str | None = None
    participation_window_milestones: int = 20
    streak_grace_misses: int = 2
    dust_threshold: int = 0

    @classmethod
    def from_settings(cls, settings: VoteRewardSettings, *, dust_threshold: int = 0) -> VoteRewardPolicy:
        return cls(
            mode=settings.resolved_mode(),
            pool_ui_amount=settings.pool_ui_amount,
            per_vote_ui_amount=settings.per_vote_ui_amount,
            max_pool_ui_amount=settings.max_pool_ui_amount,
            mint=settings.ship_token_mint,
            faucet_owner_pubkey=settings.faucet_owner_pubkey,
            participation_window_milestones=settings.participation_window_milestones,
            streak_grace_misses=settings.streak_grace_misses,
            dust_threshold=dust_threshold,
        )


def fixed_amount(per_vote_base_units: int, multiplier_bps: int, streak: float) -> int:
    """``floor(per_vote * bps / 10000 * streak)`` in base units."""
    exact = Fraction(per_vote_base_units) * multiplier_bps / BPS_DENOMINATOR * Fraction(streak)
    return exact.numerator // exact.denominator


def pool_shares(pot: int, snapshots: Sequence[VoterSnapshot], streaks: dict[str, float], *, dust_threshold: int = 0) -> list[Share]:
    weights = [(s.signer_pubkey, s.weight * streaks.get(s.signer_pubkey, 1.0)) for s in snapshots]
    if pot <= 0 or not weights:
        return []
    return weighted_split(pot, sorted(weights), dust_threshold=dust_threshold)


def fixed_shares(
    per_vote_base_units: int,
    snapshots: Sequence[VoterSnapshot],
    streaks: dict[str, float],
    *,
    cap: int = 0,
) -> list[Share]:
    """Per-voter amounts, scaled down proportionally when they exceed ``cap``."""
    raw: dict[str, int] = {}
    for s in snapshots:
        amount = fixed_amount(per_vote_base_units, s.ship_multiplier_bps, streaks.get(s.signer_pubkey, 1.0))
        if amount > 0:
            raw[s.signer_pubkey] = raw.get(s.signer_pubkey, 0) + amount
    total = sum(raw.values())
    if cap > 0 and total > cap:
        return weighted_split(cap, sorted((w, float(a)) for w, a in raw.items()))
    return [
        Share(recipient=w, amount=a, weight=float(a))
        for w, a in sorted(raw.items(), key=lambda item: (-item[1], item[0]))
    ]


class VoteRewardSettlement:
    """Creates the reward-token distribution for one milestone's voters.

    Rewards are paid later, per wallet, from the faucet owner's token account.
    """

    def __init__(
        self,
        store: Store,
        chain: ChainClient,
        commitments: CommitmentService,
        *,
        policy: VoteRewardPolicy,
        enabled: bool = False,
    ) -> None:
        self._store = store
        self._chain = chain
        self._commitments = commitments
        self._policy = policy
        self._enabled = enabled

    @property
    def policy(self) -> VoteRewardPolicy:
        return self._policy

    async def streaks(self, wallets: Sequence[str], *, now_unix: int) -> dict[str, float]:
        """Participation multipliers over the most recent ended vote windows.

        Only windows that ended after a wallet's first vote count as misses.
        """
        cutoff = self._commitments.policy.cutoff_seconds
        ended: list[tuple[int, str, str]] = []
        for c in await self._store.list_commitments(kind=CommitmentKind.CREATOR_REWARD):
            for m in c.milestones:
                window = vote_window(m, cutoff)
                if window is not None and window[1] <= now_unix:
                    ended.append((window[1], c.id, m.id))
        ended.sort(reverse=True)
        recent = ended[: self._policy.participation_window_milestones]

        out: dict[str, float] = {}
        for wallet in wallets:
            votes = await self._store.list_votes_by_signer(wallet)
            if not votes:
                out[wallet] = streak_multiplier(0, self._policy.streak_grace_misses)
                continue
            first_seen = min(v.created_at_unix for v in votes)
            voted = {(v.commitment_id, v.milestone_id) for v in votes}
            misses = sum(1 for end, cid, mid in recent if end > first_seen and (cid, mid) not in voted)
            out[wallet] = streak_multiplier(misses, self._policy.streak_grace_misses)
        return out

    async def settle(
        self, commitment_id: str, milestone_id: str, *, now_unix: int | None = None
    ) -> SettlementResult:
        if not self._enabled:
            raise FeatureDisabledError("Vote reward distributions are disabled")
        policy = self._policy
        if not policy.mint or not policy.faucet_owner_pubkey:
            raise ConfigurationError("CTS_SHIP_TOKEN_MINT and CTS_VOTE_REWARD_FAUCET_OWNER_PUBKEY are required")
        now = now_unix if now_unix is not None else await self._chain.get_current_time()

        commitment = await self._commitments.refresh(commitment_id, now_unix=now)
        milestone = commitment.milestone(milestone_id)
        if milestone is None:
            raise NotFoundError("Milestone not found", milestone_id=milestone_id)
        window = vote_window(milestone, self._commitments.policy.cutoff_seconds)
        if window is None or now < window[1]:
            raise ConflictError("Vote window has not ended", milestone_id=milestone_id)

        existing = await self._store.get_distribution(DistributionKind.VOTE_REWARD, commitment_id, milestone_id)
        if existing is not None:
            allocations = await self._store.list_allocations(existing.id)
            return SettlementResult(existing, tuple(allocations), created=False)

        mint = await self._chain.get_token_mint_info(policy.mint)
        unit = 10**mint.decimals
        snapshots = await self._store.list_voter_snapshots(commitment_id, milestone_id)
        wallets = sorted({s.signer_pubkey for s in snapshots})
        # Streaks are measured over windows that ended before this one.
        streaks = await self.streaks(wallets, now_unix=window[1] - 1)

        if policy.mode == "fixed":
            shares = fixed_shares(
                policy.per_vote_ui_amount * unit,
                snapshots,
                streaks,
                cap=policy.max_pool_ui_amount * unit,
            )
            pot = sum(s.amount for s in shares)
        else:
            pot = policy.pool_ui_amount * unit
            shares = pool_shares(pot, snapshots, streaks, dust_threshold=policy.dust_threshold)

        if not shares:
            raise ConflictError("No eligible voters for this milestone", milestone_id=milestone_id)

        planned, planned_allocations = build_distribution(
            kind=DistributionKind.VOTE_REWARD,
            commitment=commitment,
            milestone_id=milestone_id,
            now_unix=now,
            pot_amount=pot,
            shares=shares,
            voter_pot_amount=pot,
            mint_pubkey=mint.mint,
            token_program_pubkey=mint.token_program,
            faucet_owner_pubkey=policy.faucet_owner_pubkey,
        )
        distribution, created = await ensure_distribution(self._store, planned, planned_allocations)
        allocations = planned_allocations if created else await self._store.list_allocations(distribution.id)
        logger.info(
            "Vote reward distribution %s for %s/%s (%s mode): %d base units over %d voters",
            distribution.id,
            commitment_id,
            milestone_id,
            policy.mode,
            distribution.pot_amount,
            len(allocations),
        )
        return SettlementResult(distribution, tuple(allocations), created=created)
