"""Vote tallies, holder eligibility and voter weights."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from escrow_settlement.commitments.models import Commitment
from escrow_settlement.commitments.state import in_window, vote_window
from escrow_settlement.config import VotingSettings
from escrow_settlement.errors import ForbiddenError, ValidationError
from escrow_settlement.voting.models import Holdings, VoteChoice, VoterSnapshot, VoteSignal, VoteTally

SHIP_TIERS_BPS: tuple[tuple[float, int], ...] = (
    (10_000_000, 20_000),
    (100_000, 13_000),
)
BASE_MULTIPLIER_BPS = 10_000

STREAK_MAX = 2.0
STREAK_MIN = 0.5
STREAK_GRACE_PENALTY = 0.05
STREAK_MISS_PENALTY = 0.1


def tally_votes(signals: Iterable[VoteSignal], window: tuple[int, int] | None) -> VoteTally:
    """Count approvals and rejections cast inside ``window``."""
    if window is None:
        return VoteTally()
    approvals = 0
    rejects = 0
    for s in signals:
        if not in_window(window, s.created_at_unix):
            continue
        if s.vote == VoteChoice.APPROVE:
            approvals += 1
        else:
            rejects += 1
    return VoteTally(approvals=approvals, rejects=rejects)


def tally_milestones(
    commitment: Commitment,
    signals: Sequence[VoteSignal],
    cutoff_seconds: int,
) -> dict[str, VoteTally]:
    by_milestone: dict[str, list[VoteSignal]] = {}
    for s in signals:
        by_milestone.setdefault(s.milestone_id, []).append(s)
    return {
        m.id: tally_votes(by_milestone.get(m.id, ()), vote_window(m, cutoff_seconds))
        for m in commitment.milestones
    }


def ship_multiplier_bps(ship_ui_amount: float) -> int:
    for minimum, bps in SHIP_TIERS_BPS:
        if ship_ui_amount >= minimum:
            return bps
    return BASE_MULTIPLIER_BPS


@dataclass(frozen=True)
class EligibilityPolicy:
    min_vote_value_usd: float = 20.0
    price_outage_min_tokens: float = 1000.0

    @classmethod
    def from_settings(cls, settings: VotingSettings) -> EligibilityPolicy:
        return cls(
            min_vote_value_usd=settings.min_vote_value_usd,
            price_outage_min_tokens=settings.price_outage_min_tokens,
        )


@dataclass(frozen=True)
class Eligibility:
    value_usd: float
    weight_usd: float
    ship_multiplier_bps: int


def assess_eligibility(holdings: Holdings, policy: EligibilityPolicy) -> Eligibility:
    """Decide whether a holder may vote and what their vote weighs.

    Raises:
        ValidationError: If the reported holdings are malformed.
        ForbiddenError: If the holder does not hold enough of the project token.
    """
    amount = holdings.project_ui_amount
    if amount < 0 or holdings.ship_ui_amount < 0:
        raise ValidationError("Holdings must be non-negative")

    multiplier = ship_multiplier_bps(holdings.ship_ui_amount)
    price = holdings.project_price_usd
    if price is None or price <= 0:
        if amount < policy.price_outage_min_tokens:
            raise ForbiddenError(
                "Not enough project tokens to vote while price is unavailable",
                min_tokens=policy.price_outage_min_tokens,
            )
        return Eligibility(value_usd=0.0, weight_usd=policy.min_vote_value_usd, ship_multiplier_bps=multiplier)

    value = amount * price
    if value <= policy.min_vote_value_usd:
        raise ForbiddenError(
            "Holding value is below the voting minimum",
            value_usd=value,
            min_usd=policy.min_vote_value_usd,
        )
    return Eligibility(value_usd=value, weight_usd=value, ship_multiplier_bps=multiplier)


def streak_multiplier(misses: int, grace_misses: int) -> float:
    """Participation multiplier in ``[0.5, 2.0]`` that decays with missed windows."""
    misses = max(0, misses)
    penalty = STREAK_GRACE_PENALTY * min(misses, grace_misses)
    penalty += STREAK_MISS_PENALTY * max(0, misses - grace_misses)
    return max(STREAK_MIN, min(STREAK_MAX, STREAK_MAX - penalty))


def voter_weights(snapshots: Iterable[VoterSnapshot]) -> dict[str, float]:
    """Sum snapshot weights per wallet."""
    weights: dict[str, float] = {}
    for snap in snapshots:
        weights[snap.signer_pubkey] = weights.get(snap.signer_pubkey, 0.0) + snap.weight
    return weights
