"""Pure state-machine rules for commitments and milestones.

Nothing here performs I/O. Milestone transitions are evaluated lazily:
every read runs :func:`advance_milestone` with the current time and the
in-window vote tally, so no scheduler is needed.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass, replace

from escrow_settlement.commitments.models import (
    Commitment,
    CommitmentStatus,
    Milestone,
    MilestoneStatus,
)
from escrow_settlement.config import VotingSettings
from escrow_settlement.errors import ConflictError, InvariantViolation
from escrow_settlement.voting.models import VoteTally

_COMMITMENT_TRANSITIONS: dict[CommitmentStatus, frozenset[CommitmentStatus]] = {
    CommitmentStatus.CREATED: frozenset(
        {
            CommitmentStatus.ACTIVE,
            CommitmentStatus.RESOLVING,
            CommitmentStatus.COMPLETED,
            CommitmentStatus.FAILED,
            CommitmentStatus.ARCHIVED,
        }
    ),
    CommitmentStatus.ACTIVE: frozenset(
        {
            CommitmentStatus.RESOLVING,
            CommitmentStatus.COMPLETED,
            CommitmentStatus.FAILED,
            CommitmentStatus.ARCHIVED,
        }
    ),
    # Leaving RESOLVING back to CREATED/ACTIVE is the compensating release.
    CommitmentStatus.RESOLVING: frozenset(
        {
            CommitmentStatus.RESOLVED_SUCCESS,
            CommitmentStatus.RESOLVED_FAILURE,
            CommitmentStatus.CREATED,
            CommitmentStatus.ACTIVE,
        }
    ),
    CommitmentStatus.COMPLETED: frozenset({CommitmentStatus.ACTIVE, CommitmentStatus.ARCHIVED}),
    CommitmentStatus.RESOLVED_SUCCESS: frozenset({CommitmentStatus.ARCHIVED}),
    CommitmentStatus.RESOLVED_FAILURE: frozenset({CommitmentStatus.ARCHIVED}),
    CommitmentStatus.FAILED: frozenset({CommitmentStatus.ARCHIVED}),
    CommitmentStatus.ARCHIVED: frozenset(),
}

_MILESTONE_TRANSITIONS: dict[MilestoneStatus, frozenset[MilestoneStatus]] = {
    MilestoneStatus.LOCKED: frozenset(
        {MilestoneStatus.APPROVED, MilestoneStatus.CLAIMABLE, MilestoneStatus.FAILED}
    ),
    MilestoneStatus.APPROVED: frozenset({MilestoneStatus.CLAIMABLE}),
    MilestoneStatus.CLAIMABLE: frozenset({MilestoneStatus.RELEASED}),
    MilestoneStatus.RELEASED: frozenset(),
    MilestoneStatus.FAILED: frozenset(),
}

LOCKABLE_STATUSES = (CommitmentStatus.CREATED, CommitmentStatus.ACTIVE)
OPEN_REWARD_STATUSES = (CommitmentStatus.CREATED, CommitmentStatus.ACTIVE, CommitmentStatus.COMPLETED)


def can_transition(current: CommitmentStatus, target: CommitmentStatus) -> bool:
    return target in _COMMITMENT_TRANSITIONS[current]


def check_transition(current: CommitmentStatus, target: CommitmentStatus) -> None:
    """Raise ConflictError if ``current -> target`` is not a legal commitment transition."""
    if not can_transition(current, target):
        raise ConflictError(
            f"Commitment cannot move from {current.value} to {target.value}",
            status=current.value,
        )


def check_milestone_transition(current: MilestoneStatus, target: MilestoneStatus) -> None:
    if target == current:
        return
    if target not in _MILESTONE_TRANSITIONS[current]:
        raise ConflictError(
            f"Milestone cannot move from {current.value} to {target.value}",
            status=current.value,
        )


@dataclass(frozen=True)
class MilestonePolicy:
    """Timing and quorum rules for milestone review."""

    cutoff_seconds: int = 86_400
    approval_threshold: int = 15
    claim_delay_seconds: int = 172_800
    delivery_grace_seconds: int = 86_400

    @classmethod
    def from_settings(cls, settings: VotingSettings) -> MilestonePolicy:
        return cls(
            cutoff_seconds=settings.cutoff_seconds,
            approval_threshold=settings.approval_threshold,
            claim_delay_seconds=settings.claim_delay_seconds,
            delivery_grace_seconds=settings.delivery_grace_seconds,
        )


def vote_window(milestone: Milestone, cutoff_seconds: int) -> tuple[int, int] | None:
    """Return the half-open vote window ``[start, end)`` or None if not completed."""
    if milestone.completed_at_unix is None:
        return None
    if milestone.review_opened_at_unix is not None:
        start = milestone.review_opened_at_unix
    elif milestone.due_at_unix is not None:
        start = milestone.due_at_unix
    else:
        start = milestone.completed_at_unix
    return start, start + cutoff_seconds


def in_window(window: tuple[int, int], at_unix: int) -> bool:
    start, end = window
    return start <= at_unix < end


def effective_unlock_lamports(milestone: Milestone, total_funded_lamports: int) -> int:
    """Resolve a milestone's unlock against the current funding."""
    if milestone.unlock_lamports > 0:
        return milestone.unlock_lamports
    percent = milestone.unlock_percent or 0.0
    if not math.isfinite(percent) or percent < 0 or percent > 100:
        raise InvariantViolation("Milestone unlock percent out of range", milestone_id=milestone.id)
    return int(math.floor(total_funded_lamports * percent / 100))


def check_percent_total(milestones: tuple[Milestone, ...] | list[Milestone]) -> None:
    total = sum(m.unlock_percent or 0.0 for m in milestones)
    if total > 100 + 1e-9:
        raise InvariantViolation("Milestone unlock percentages exceed 100", percent_total=total)


def advance_milestone(
    milestone: Milestone,
    *,
    now_unix: int,
    tally: VoteTally,
    policy: MilestonePolicy,
) -> Milestone:
    """Compute the milestone's state as of ``now_unix``.

    Guards are evaluated in this fixed order and are mutually exclusive:

    1. released/failed milestones never change;
    2. claimable milestones only get ``became_claimable_at_unix`` backfilled;
    3. approved milestones become claimable once the claim delay has passed;
    4. uncompleted milestones fail once ``due + grace`` has passed;
    5. milestones completed after ``due + grace`` without an early review fail;
    6. while the vote window is open the milestone stays locked;
    7. after the window, approved tallies approve (or go straight to claimable
       when the delay has passed) and anything else fails.

    Transition timestamps are the instants the rule was satisfied, not the
    read time, so repeated evaluation is stable.
    """
    status = milestone.status

    if status in (MilestoneStatus.RELEASED, MilestoneStatus.FAILED):
        return milestone

    if status == MilestoneStatus.CLAIMABLE:
        if milestone.became_claimable_at_unix is None:
            return replace(milestone, became_claimable_at_unix=milestone.claimable_at_unix or now_unix)
        return milestone

    if status == MilestoneStatus.APPROVED:
        return _promote_if_due(milestone, now_unix=now_unix, policy=policy)

    if milestone.completed_at_unix is None:
        if milestone.due_at_unix is not None:
            grace_end = milestone.due_at_unix + policy.delivery_grace_seconds
            if now_unix >= grace_end:
                return replace(milestone, status=MilestoneStatus.FAILED, failed_at_unix=grace_end)
        return milestone

    if milestone.review_opened_at_unix is None and milestone.due_at_unix is not None:
        grace_end = milestone.due_at_unix + policy.delivery_grace_seconds
        if milestone.completed_at_unix >= grace_end:
            return replace(milestone, status=MilestoneStatus.FAILED, failed_at_unix=milestone.completed_at_unix)

    window = vote_window(milestone, policy.cutoff_seconds)
    if window is None:
        raise InvariantViolation("Completed milestone has no vote window", milestone_id=milestone.id)
    _, window_end = window
    claimable_at = max(window_end, milestone.completed_at_unix + policy.claim_delay_seconds)

    if now_unix < window_end:
        if milestone.claimable_at_unix != claimable_at:
            return replace(milestone, claimable_at_unix=claimable_at)
        return milestone

    if tally.is_approved(policy.approval_threshold):
        approved = replace(
            milestone,
            status=MilestoneStatus.APPROVED,
            approved_at_unix=milestone.approved_at_unix or window_end,
            claimable_at_unix=claimable_at,
        )
        return _promote_if_due(approved, now_unix=now_unix, policy=policy)

    return replace(
        milestone,
        status=MilestoneStatus.FAILED,
        failed_at_unix=window_end,
        claimable_at_unix=claimable_at,
    )


def _promote_if_due(milestone: Milestone, *, now_unix: int, policy: MilestonePolicy) -> Milestone:
    if milestone.completed_at_unix is None:
        raise InvariantViolation("Approved milestone has no completion time", milestone_id=milestone.id)
    desired = milestone.completed_at_unix + policy.claim_delay_seconds
    claimable_at = max(desired, milestone.approved_at_unix or desired)
    if now_unix >= claimable_at:
        return replace(
            milestone,
            status=MilestoneStatus.CLAIMABLE,
            approved_at_unix=milestone.approved_at_unix or claimable_at,
            claimable_at_unix=claimable_at,
            became_claimable_at_unix=claimable_at,
        )
    if milestone.claimable_at_unix != claimable_at:
        return replace(milestone, claimable_at_unix=claimable_at)
    return milestone


def advance_all(
    commitment: Commitment,
    *,
    now_unix: int,
    tallies: Mapping[str, VoteTally],
    policy: MilestonePolicy,
) -> tuple[tuple[Milestone, ...], bool]:
    """Advance every milestone of a commitment.

    Returns:
        Tuple of (new milestones, whether anything changed).
    """
    advanced = tuple(
        advance_milestone(m, now_unix=now_unix, tally=tallies.get(m.id, VoteTally()), policy=policy)
        for m in commitment.milestones
    )
    for before, after in zip(commitment.milestones, advanced, strict=True):
        check_milestone_transition(before.status, after.status)
    return advanced, advanced != commitment.milestones


def reward_status_for(milestones: tuple[Milestone, ...], current: CommitmentStatus) -> CommitmentStatus:
    """Status a reward commitment should hold given its milestones."""
    if current not in OPEN_REWARD_STATUSES:
        return current
    if milestones and all(m.status == MilestoneStatus.RELEASED for m in milestones):
        return CommitmentStatus.COMPLETED
    if current == CommitmentStatus.COMPLETED:
        return CommitmentStatus.ACTIVE
    return current
