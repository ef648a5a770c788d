"""Commitment lifecycle operations.

Every mutation goes through a named transition: the ``resolving`` lock for
personal commitments, or a version-checked rewrite of the milestone list for
reward commitments. Reads of reward commitments run the lazy milestone
evaluation and persist the result when it changed.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace

from escrow_settlement.chain.client import ChainClient
from escrow_settlement.chain.signatures import is_valid_pubkey
from escrow_settlement.claims.models import Claim
from escrow_settlement.claims.protocol import (
    RECOVERY_LOOKBACK_SECONDS,
    ClaimProtocol,
    ClaimRequest,
    resolution_claim_key,
)
from escrow_settlement.commitments.models import (
    Commitment,
    CommitmentKind,
    CommitmentStatus,
    FeeSplit,
    Milestone,
    MilestoneStatus,
)
from escrow_settlement.commitments.state import (
    LOCKABLE_STATUSES,
    MilestonePolicy,
    advance_all,
    can_transition,
    check_milestone_transition,
    check_percent_total,
    check_transition,
    reward_status_for,
)
from escrow_settlement.errors import (
    ConflictError,
    LockHeldError,
    NotFoundError,
    ValidationError,
)
from escrow_settlement.messages import DEFAULT_PREFIX, milestone_completion_message, require_signed
from escrow_settlement.signing.vault import CustodialWallet, SignerRef, generate_escrow
from escrow_settlement.storage.store import Store
from escrow_settlement.voting.tally import tally_milestones

logger = logging.getLogger(__name__)

MAX_UPDATE_ATTEMPTS = 5

RewardMutation = Callable[[Commitment], Commitment | None]


@dataclass(frozen=True)
class MilestoneDraft:
    """Caller input for a new milestone."""

    title: str
    unlock_lamports: int = 0
    unlock_percent: float | None = None
    due_at_unix: int | None = None


def _new_id() -> str:
    return uuid.uuid4().hex


def _require_pubkey(value: str | None, field_name: str) -> str:
    if not value or not is_valid_pubkey(value):
        raise ValidationError(f"Invalid {field_name}", field=field_name)
    return value


def _build_milestone(draft: MilestoneDraft) -> Milestone:
    if not draft.title.strip():
        raise ValidationError("Milestone title is required")
    if draft.unlock_lamports < 0:
        raise ValidationError("Milestone unlock must be non-negative")
    percent = draft.unlock_percent
    if draft.unlock_lamports == 0:
        if percent is None or not (0 < percent <= 100):
            raise ValidationError("Milestone needs unlock_lamports or an unlock_percent in (0, 100]")
    elif percent is not None:
        raise ValidationError("Give either unlock_lamports or unlock_percent, not both")
    return Milestone(
        id=_new_id()[:12],
        title=draft.title.strip(),
        unlock_lamports=draft.unlock_lamports,
        unlock_percent=percent,
        due_at_unix=draft.due_at_unix,
    )


def _check_percent_cap(milestones: Sequence[Milestone]) -> None:
    total = sum(m.unlock_percent or 0.0 for m in milestones)
    if total > 100 + 1e-9:
        raise ValidationError("Milestone unlock percentages exceed 100", percent_total=total)


class CommitmentService:
    """Issues commitments and drives their state transitions."""

    def __init__(
        self,
        store: Store,
        chain: ChainClient,
        *,
        policy: MilestonePolicy | None = None,
        message_prefix: str = DEFAULT_PREFIX,
        claims: ClaimProtocol | None = None,
    ) -> None:
        self._store = store
        self._chain = chain
        self._policy = policy or MilestonePolicy()
        self._prefix = message_prefix
        self._claims = claims or ClaimProtocol(store)

    @property
    def policy(self) -> MilestonePolicy:
        return self._policy

    async def _now(self, now_unix: int | None) -> int:
        return now_unix if now_unix is not None else await self._chain.get_current_time()

    async def get(self, commitment_id: str) -> Commitment:
        commitment = await self._store.get_commitment(commitment_id)
        if commitment is None:
            raise NotFoundError("Commitment not found", commitment_id=commitment_id)
        return commitment

    # Issuing

    async def issue_personal(
        self,
        *,
        authority: str,
        destination_on_fail: str,
        amount_lamports: int,
        deadline_unix: int,
        now_unix: int | None = None,
    ) -> Commitment:
        """Create a personal commitment with a fresh escrow keypair."""
        _require_pubkey(authority, "authority")
        _require_pubkey(destination_on_fail, "destination_on_fail")
        if amount_lamports <= 0:
            raise ValidationError("Amount must be positive", amount_lamports=amount_lamports)
        now = await self._now(now_unix)
        if deadline_unix <= now:
            raise ValidationError("Deadline must be in the future", deadline_unix=deadline_unix)

        escrow_pubkey, signer = generate_escrow()
        commitment = Commitment(
            id=_new_id(),
            kind=CommitmentKind.PERSONAL,
            status=CommitmentStatus.CREATED,
            escrow_pubkey=escrow_pubkey,
            signer=signer,
            authority=authority,
            destination_on_fail=destination_on_fail,
            created_at_unix=now,
            amount_lamports=amount_lamports,
            deadline_unix=deadline_unix,
        )
        await self._store.create_commitment(commitment)
        logger.info("Issued personal commitment %s (escrow %s)", commitment.id, escrow_pubkey)
        return commitment

    async def issue_reward(
        self,
        *,
        creator_pubkey: str,
        token_mint: str | None,
        milestones: Sequence[MilestoneDraft],
        destination_on_fail: str | None = None,
        fee_split: FeeSplit | None = None,
        custodial_escrow: tuple[str, str] | None = None,
        now_unix: int | None = None,
    ) -> Commitment:
        """Create a creator reward commitment.

        Args:
            creator_pubkey: Creator wallet; signs completions and receives releases.
            token_mint: Project token whose holders vote.
            milestones: Initial milestones.
            destination_on_fail: Defaults to the creator.
            fee_split: Optional fixed fee-share recipients.
            custodial_escrow: ``(escrow pubkey, wallet id)`` to use a custodial
                wallet as the escrow instead of a fresh local keypair.
        """
        _require_pubkey(creator_pubkey, "creator_pubkey")
        if token_mint is not None:
            _require_pubkey(token_mint, "token_mint")
        built = [_build_milestone(d) for d in milestones]
        _check_percent_cap(built)
        now = await self._now(now_unix)

        signer: SignerRef
        if custodial_escrow is not None:
            escrow_pubkey = _require_pubkey(custodial_escrow[0], "escrow_pubkey")
            signer = CustodialWallet(custodial_escrow[1])
        else:
            escrow_pubkey, signer = generate_escrow()

        commitment = Commitment(
            id=_new_id(),
            kind=CommitmentKind.CREATOR_REWARD,
            status=CommitmentStatus.ACTIVE,
            escrow_pubkey=escrow_pubkey,
            signer=signer,
            authority=creator_pubkey,
            destination_on_fail=destination_on_fail or creator_pubkey,
            created_at_unix=now,
            creator_pubkey=creator_pubkey,
            token_mint=token_mint,
            milestones=tuple(built),
            fee_split=fee_split,
        )
        await self._store.create_commitment(commitment)
        logger.info(
            "Issued reward commitment %s with %d milestones (escrow %s)",
            commitment.id,
            len(built),
            escrow_pubkey,
        )
        return commitment

    # Reward milestones

    async def _update_reward(self, commitment_id: str, mutate: RewardMutation) -> Commitment:
        """Apply ``mutate`` under the version guard, re-reading on lost races.

        ``mutate`` returns None when nothing needs to change.
        """
        for attempt in range(MAX_UPDATE_ATTEMPTS):
            current = await self.get(commitment_id)
            if not current.is_reward:
                raise ValidationError("Not a reward commitment", commitment_id=commitment_id)
            target = mutate(current)
            if target is None:
                return current
            updated = await self._store.update_reward_state(
                commitment_id,
                expected_version=current.version,
                milestones=target.milestones,
                total_funded_lamports=target.total_funded_lamports,
                unlocked_lamports=target.unlocked_lamports,
                status=target.status,
            )
            if updated is not None:
                return updated
            logger.info("Commitment %s changed concurrently (attempt %d), retrying", commitment_id, attempt + 1)
        raise ConflictError("Commitment is being updated concurrently", commitment_id=commitment_id)

    async def add_milestone(self, commitment_id: str, draft: MilestoneDraft) -> Commitment:
        """Append a milestone; a completed commitment re-opens to active."""
        milestone = _build_milestone(draft)

        def mutate(c: Commitment) -> Commitment:
            if c.status not in (CommitmentStatus.CREATED, CommitmentStatus.ACTIVE, CommitmentStatus.COMPLETED):
                raise ConflictError("Commitment is closed", status=c.status.value)
            milestones = (*c.milestones, milestone)
            _check_percent_cap(milestones)
            status = CommitmentStatus.ACTIVE if c.status == CommitmentStatus.COMPLETED else c.status
            return replace(c, milestones=milestones, status=status)

        updated = await self._update_reward(commitment_id, mutate)
        logger.info("Added milestone %s to %s", milestone.id, commitment_id)
        return updated

    async def complete_milestone(
        self,
        commitment_id: str,
        milestone_id: str,
        *,
        signature: str,
        early_review: bool = False,
        now_unix: int | None = None,
    ) -> Commitment:
        """Mark a milestone delivered on the creator's signed word."""
        commitment = await self.get(commitment_id)
        if not commitment.is_reward or not commitment.creator_pubkey:
            raise ValidationError("Not a reward commitment", commitment_id=commitment_id)
        require_signed(
            milestone_completion_message(commitment_id, milestone_id, self._prefix),
            signature,
            commitment.creator_pubkey,
        )
        now = await self._now(now_unix)

        def mutate(c: Commitment) -> Commitment | None:
            if c.status not in (CommitmentStatus.CREATED, CommitmentStatus.ACTIVE):
                raise ConflictError("Commitment is not active", status=c.status.value)
            m = c.milestone(milestone_id)
            if m is None:
                raise NotFoundError("Milestone not found", milestone_id=milestone_id)
            if m.completed_at_unix is not None:
                return None
            if m.status != MilestoneStatus.LOCKED:
                raise ConflictError("Milestone is no longer open", status=m.status.value)
            done = replace(
                m,
                completed_at_unix=now,
                review_opened_at_unix=now if early_review else m.review_opened_at_unix,
                claimable_at_unix=now + self._policy.claim_delay_seconds,
            )
            milestones = tuple(done if x.id == milestone_id else x for x in c.milestones)
            status = CommitmentStatus.ACTIVE if c.status == CommitmentStatus.CREATED else c.status
            return replace(c, milestones=milestones, status=status)

        updated = await self._update_reward(commitment_id, mutate)
        logger.info("Milestone %s/%s completed (early_review=%s)", commitment_id, milestone_id, early_review)
        return updated

    async def refresh(
        self,
        commitment_id: str,
        *,
        now_unix: int | None = None,
        observe_balance: bool = False,
    ) -> Commitment:
        """Evaluate milestone transitions as of now and persist any change.

        With ``observe_balance`` the escrow balance is read and the funding
        total grows to cover it.
        """
        commitment = await self.get(commitment_id)
        if not commitment.is_reward or commitment.status == CommitmentStatus.ARCHIVED:
            return commitment

        now = await self._now(now_unix)
        signals = await self._store.list_vote_signals(commitment_id)
        balance = await self._chain.get_balance(commitment.escrow_pubkey) if observe_balance else None

        def mutate(c: Commitment) -> Commitment | None:
            if c.status == CommitmentStatus.ARCHIVED:
                return None
            check_percent_total(c.milestones)
            tallies = tally_milestones(c, signals, self._policy.cutoff_seconds)
            milestones, changed = advance_all(c, now_unix=now, tallies=tallies, policy=self._policy)
            total = c.total_funded_lamports
            if balance is not None:
                total = max(total, balance + c.unlocked_lamports)
            status = reward_status_for(milestones, c.status)
            if not changed and total == c.total_funded_lamports and status == c.status:
                return None
            return replace(c, milestones=milestones, total_funded_lamports=total, status=status)

        return await self._update_reward(commitment_id, mutate)

    async def mark_released(
        self,
        commitment_id: str,
        milestone_id: str,
        *,
        amount: int,
        tx_sig: str,
        now_unix: int,
    ) -> Commitment:
        """Record a confirmed milestone payout and recompute totals."""

        def mutate(c: Commitment) -> Commitment | None:
            m = c.milestone(milestone_id)
            if m is None:
                raise NotFoundError("Milestone not found", milestone_id=milestone_id)
            if m.status == MilestoneStatus.RELEASED:
                return None
            check_milestone_transition(m.status, MilestoneStatus.RELEASED)
            released = replace(
                m,
                status=MilestoneStatus.RELEASED,
                unlock_lamports=amount,
                released_at_unix=now_unix,
                released_tx_sig=tx_sig,
            )
            milestones = tuple(released if x.id == milestone_id else x for x in c.milestones)
            unlocked = sum(x.unlock_lamports for x in milestones if x.status == MilestoneStatus.RELEASED)
            total = max(c.total_funded_lamports, unlocked)
            return replace(
                c,
                milestones=milestones,
                unlocked_lamports=unlocked,
                total_funded_lamports=total,
                status=reward_status_for(milestones, c.status),
            )

        updated = await self._update_reward(commitment_id, mutate)
        logger.info("Milestone %s/%s released %d lamports (%s)", commitment_id, milestone_id, amount, tx_sig)
        return updated

    # Personal commitments

    async def resolve_success(self, commitment_id: str, *, now_unix: int | None = None) -> Commitment:
        """Return a personal commitment's escrow to its authority before the deadline."""
        commitment = await self.get(commitment_id)
        if commitment.kind != CommitmentKind.PERSONAL:
            raise ValidationError("Only personal commitments resolve this way", commitment_id=commitment_id)
        now = await self._now(now_unix)
        if now > commitment.deadline_unix:
            raise ConflictError("Deadline has passed", deadline_unix=commitment.deadline_unix)

        prior = await self._store.claim_for_resolution(commitment_id, from_statuses=LOCKABLE_STATUSES)
        if prior is None:
            raise LockHeldError("Commitment is already being resolved", commitment_id=commitment_id)

        key = resolution_claim_key(commitment_id)
        try:
            # A kept claim row means an earlier attempt sent the transfer; reuse its amount.
            earlier = await self._store.get_claim(key, prior.authority)
            amount = earlier.amount if earlier is not None else await self._sweep_amount(prior)

            async def execute() -> str:
                return await self._chain.transfer(
                    prior.signer,
                    from_pubkey=prior.escrow_pubkey,
                    to_pubkey=prior.authority,
                    amount=amount,
                )

            async def recover(claim: Claim) -> str | None:
                return await self._chain.find_transfer_signature(
                    from_pubkey=prior.escrow_pubkey,
                    to_pubkey=prior.authority,
                    amount=amount,
                    min_block_time=claim.claimed_at_unix - RECOVERY_LOOKBACK_SECONDS,
                )

            outcome = await self._claims.run(
                ClaimRequest(key, prior.authority, amount, prior.authority),
                now_unix=now,
                execute=execute,
                recover=recover,
            )
            tx_sig = outcome.tx_sig
            resolved = await self._store.finalize_resolution(
                commitment_id,
                status=CommitmentStatus.RESOLVED_SUCCESS,
                resolved_at_unix=now,
                tx_sig=tx_sig,
            )
        except Exception:
            await self._store.release_resolution(commitment_id, restore_status=prior.status)
            logger.exception("Success resolution of %s failed; lock released", commitment_id)
            raise

        if resolved is None:
            raise LockHeldError("Commitment lock was lost during resolution", commitment_id=commitment_id)
        logger.info("Commitment %s resolved_success (%s)", commitment_id, tx_sig)
        return resolved

    async def _sweep_amount(self, commitment: Commitment) -> int:
        """Whole escrow balance less the fee the escrow pays to send it."""
        balance = await self._chain.get_balance(commitment.escrow_pubkey)
        if balance <= 0:
            raise ConflictError("Escrow is empty", escrow=commitment.escrow_pubkey)
        fee = await self._chain.transfer_fee(commitment.signer, from_pubkey=commitment.escrow_pubkey)
        if balance <= fee:
            raise ConflictError("Escrow balance does not cover the transfer fee", balance=balance, fee=fee)
        return balance - fee

    async def archive(self, commitment_id: str) -> Commitment:
        """Retire a commitment for good. Archived commitments are never reopened."""
        commitment = await self.get(commitment_id)
        if commitment.status == CommitmentStatus.ARCHIVED:
            return commitment
        check_transition(commitment.status, CommitmentStatus.ARCHIVED)
        archivable = [s for s in CommitmentStatus if can_transition(s, CommitmentStatus.ARCHIVED)]
        updated = await self._store.transition_status(
            commitment_id, from_statuses=archivable, status=CommitmentStatus.ARCHIVED
        )
        if updated is None:
            raise ConflictError("Commitment cannot be archived now", status=commitment.status.value)
        logger.info("Commitment %s archived", commitment_id)
        return updated
