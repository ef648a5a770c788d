"""Tests for commitment issuing and lifecycle transitions."""

import pytest
from solders.keypair import Keypair

from conftest import DAY, NOW, SOL, FakeChain, new_pubkey, sign
from escrow_settlement.commitments.models import CommitmentKind, CommitmentStatus, MilestoneStatus
from escrow_settlement.commitments.service import CommitmentService, MilestoneDraft
from escrow_settlement.errors import (
    AuthorizationError,
    ClaimInProgressError,
    ConflictError,
    LockHeldError,
    NotFoundError,
    TransferTimeoutError,
    ValidationError,
)
from escrow_settlement.messages import milestone_completion_message
from escrow_settlement.signing.vault import CustodialWallet, LocalKey
from escrow_settlement.storage.memory import InMemoryStore
from escrow_settlement.voting.models import VoteChoice, VoteSignal


async def issue(commitments: CommitmentService, creator: Keypair, *drafts: MilestoneDraft):
    return await commitments.issue_reward(
        creator_pubkey=str(creator.pubkey()),
        token_mint=new_pubkey(),
        milestones=drafts or (MilestoneDraft(title="Ship beta", unlock_percent=50.0),),
        now_unix=NOW,
    )


async def complete(commitments: CommitmentService, creator: Keypair, cid: str, mid: str, **kwargs):
    signature = sign(creator, milestone_completion_message(cid, mid))
    return await commitments.complete_milestone(cid, mid, signature=signature, now_unix=NOW, **kwargs)


class TestIssue:
    async def test_personal(self, commitments: CommitmentService, store: InMemoryStore) -> None:
        authority = new_pubkey()
        c = await commitments.issue_personal(
            authority=authority,
            destination_on_fail=new_pubkey(),
            amount_lamports=SOL,
            deadline_unix=NOW + DAY,
            now_unix=NOW,
        )
        assert c.kind == CommitmentKind.PERSONAL
        assert c.status == CommitmentStatus.CREATED
        assert isinstance(c.signer, LocalKey)
        assert c.signer.pubkey == c.escrow_pubkey
        assert await store.get_commitment(c.id) == c

    @pytest.mark.parametrize(
        ("amount", "deadline"),
        [(0, NOW + DAY), (SOL, NOW), (SOL, NOW - 1)],
    )
    async def test_personal_validation(self, commitments: CommitmentService, amount: int, deadline: int) -> None:
        with pytest.raises(ValidationError):
            await commitments.issue_personal(
                authority=new_pubkey(),
                destination_on_fail=new_pubkey(),
                amount_lamports=amount,
                deadline_unix=deadline,
                now_unix=NOW,
            )

    async def test_invalid_pubkey(self, commitments: CommitmentService) -> None:
        with pytest.raises(ValidationError):
            await commitments.issue_personal(
                authority="not-a-key",
                destination_on_fail=new_pubkey(),
                amount_lamports=SOL,
                deadline_unix=NOW + DAY,
                now_unix=NOW,
            )

    async def test_reward(self, commitments: CommitmentService, creator: Keypair) -> None:
        c = await issue(commitments, creator)
        assert c.kind == CommitmentKind.CREATOR_REWARD
        assert c.status == CommitmentStatus.ACTIVE
        assert c.destination_on_fail == str(creator.pubkey())
        assert len(c.milestones) == 1
        assert c.milestones[0].status == MilestoneStatus.LOCKED

    async def test_reward_with_custodial_escrow(self, commitments: CommitmentService, creator: Keypair) -> None:
        escrow = new_pubkey()
        c = await commitments.issue_reward(
            creator_pubkey=str(creator.pubkey()),
            token_mint=None,
            milestones=[MilestoneDraft(title="Launch", unlock_lamports=SOL)],
            custodial_escrow=(escrow, "wallet-1"),
            now_unix=NOW,
        )
        assert c.escrow_pubkey == escrow
        assert c.signer == CustodialWallet("wallet-1")

    @pytest.mark.parametrize(
        "drafts",
        [
            [MilestoneDraft(title="a", unlock_percent=60.0), MilestoneDraft(title="b", unlock_percent=50.0)],
            [MilestoneDraft(title="a")],
            [MilestoneDraft(title="a", unlock_lamports=SOL, unlock_percent=10.0)],
            [MilestoneDraft(title=" ", unlock_lamports=SOL)],
        ],
    )
    async def test_reward_milestone_validation(
        self, commitments: CommitmentService, creator: Keypair, drafts: list[MilestoneDraft]
    ) -> None:
        with pytest.raises(ValidationError):
            await issue(commitments, creator, *drafts)


class TestMilestones:
    async def test_complete_requires_creator_signature(
        self, commitments: CommitmentService, creator: Keypair
    ) -> None:
        c = await issue(commitments, creator)
        mid = c.milestones[0].id
        with pytest.raises(AuthorizationError):
            await commitments.complete_milestone(
                c.id, mid, signature=sign(Keypair(), milestone_completion_message(c.id, mid)), now_unix=NOW
            )

    async def test_complete_is_idempotent(self, commitments: CommitmentService, creator: Keypair) -> None:
        c = await issue(commitments, creator)
        mid = c.milestones[0].id
        done = await complete(commitments, creator, c.id, mid)
        assert done.milestones[0].completed_at_unix == NOW
        assert done.milestones[0].claimable_at_unix == NOW + 2 * DAY

        again = await complete(commitments, creator, c.id, mid)
        assert again.version == done.version

    async def test_unknown_milestone(self, commitments: CommitmentService, creator: Keypair) -> None:
        c = await issue(commitments, creator)
        with pytest.raises(NotFoundError):
            await complete(commitments, creator, c.id, "nope")

    async def test_refresh_approves_and_unlocks(
        self,
        commitments: CommitmentService,
        store: InMemoryStore,
        chain: FakeChain,
        creator: Keypair,
    ) -> None:
        c = await issue(commitments, creator)
        mid = c.milestones[0].id
        await complete(commitments, creator, c.id, mid)
        for wallet in ("v1", "v2", "v3"):
            await store.record_vote(VoteSignal(c.id, mid, wallet, VoteChoice.APPROVE, NOW + 10))
        chain.balances[c.escrow_pubkey] = 10 * SOL

        during = await commitments.refresh(c.id, now_unix=NOW + DAY - 1)
        assert during.milestones[0].status == MilestoneStatus.LOCKED

        later = await commitments.refresh(c.id, now_unix=NOW + 2 * DAY, observe_balance=True)
        m = later.milestones[0]
        assert m.status == MilestoneStatus.CLAIMABLE
        assert m.approved_at_unix == NOW + DAY
        assert later.total_funded_lamports == 10 * SOL

    async def test_refresh_fails_rejected_milestone(
        self,
        commitments: CommitmentService,
        store: InMemoryStore,
        creator: Keypair,
    ) -> None:
        c = await issue(commitments, creator)
        mid = c.milestones[0].id
        await complete(commitments, creator, c.id, mid)
        await store.record_vote(VoteSignal(c.id, mid, "v1", VoteChoice.REJECT, NOW + 10))

        out = await commitments.refresh(c.id, now_unix=NOW + DAY)
        assert out.milestones[0].status == MilestoneStatus.FAILED
        assert out.milestones[0].failed_at_unix == NOW + DAY

    async def test_mark_released_completes_commitment(
        self,
        commitments: CommitmentService,
        store: InMemoryStore,
        creator: Keypair,
    ) -> None:
        c = await issue(commitments, creator, MilestoneDraft(title="Launch", unlock_lamports=SOL))
        mid = c.milestones[0].id
        await complete(commitments, creator, c.id, mid)
        for wallet in ("v1", "v2"):
            await store.record_vote(VoteSignal(c.id, mid, wallet, VoteChoice.APPROVE, NOW + 10))
        await commitments.refresh(c.id, now_unix=NOW + 2 * DAY)

        released = await commitments.mark_released(c.id, mid, amount=SOL, tx_sig="sig", now_unix=NOW + 3 * DAY)
        assert released.milestones[0].status == MilestoneStatus.RELEASED
        assert released.unlocked_lamports == SOL
        assert released.status == CommitmentStatus.COMPLETED

        reopened = await commitments.add_milestone(c.id, MilestoneDraft(title="V2", unlock_lamports=SOL))
        assert reopened.status == CommitmentStatus.ACTIVE
        assert len(reopened.milestones) == 2

    async def test_mark_released_requires_claimable(self, commitments: CommitmentService, creator: Keypair) -> None:
        c = await issue(commitments, creator)
        with pytest.raises(ConflictError):
            await commitments.mark_released(c.id, c.milestones[0].id, amount=1, tx_sig="sig", now_unix=NOW)

    async def test_add_milestone_keeps_percent_cap(
        self, commitments: CommitmentService, creator: Keypair
    ) -> None:
        c = await issue(commitments, creator)
        with pytest.raises(ValidationError):
            await commitments.add_milestone(c.id, MilestoneDraft(title="Too much", unlock_percent=60.0))


class TestPersonalResolution:
    async def _personal(self, commitments: CommitmentService, chain: FakeChain):
        c = await commitments.issue_personal(
            authority=new_pubkey(),
            destination_on_fail=new_pubkey(),
            amount_lamports=SOL,
            deadline_unix=NOW + DAY,
            now_unix=NOW,
        )
        chain.balances[c.escrow_pubkey] = SOL
        return c

    async def test_resolve_success_returns_escrow(self, commitments: CommitmentService, chain: FakeChain) -> None:
        c = await self._personal(commitments, chain)
        resolved = await commitments.resolve_success(c.id, now_unix=NOW + 10)

        assert resolved.status == CommitmentStatus.RESOLVED_SUCCESS
        assert resolved.resolved_tx_sig == "sig1"
        assert chain.transfers == [(c.escrow_pubkey, c.authority, SOL)]
        with pytest.raises(LockHeldError):
            await commitments.resolve_success(c.id, now_unix=NOW + 11)

    async def test_after_deadline_rejected(self, commitments: CommitmentService, chain: FakeChain) -> None:
        c = await self._personal(commitments, chain)
        with pytest.raises(ConflictError):
            await commitments.resolve_success(c.id, now_unix=NOW + DAY + 1)

    async def test_transfer_failure_releases_lock(
        self, commitments: CommitmentService, chain: FakeChain, store: InMemoryStore
    ) -> None:
        c = await self._personal(commitments, chain)
        chain.fail_with = RuntimeError("rpc down")
        with pytest.raises(RuntimeError):
            await commitments.resolve_success(c.id, now_unix=NOW + 10)

        stored = await store.get_commitment(c.id)
        assert stored is not None and stored.status == CommitmentStatus.CREATED

    async def test_sweep_leaves_the_fee(self, commitments: CommitmentService, chain: FakeChain) -> None:
        c = await self._personal(commitments, chain)
        chain.fee = 5000

        await commitments.resolve_success(c.id, now_unix=NOW + 10)

        assert chain.transfers == [(c.escrow_pubkey, c.authority, SOL - 5000)]
        assert chain.balances[c.escrow_pubkey] == 0

    async def test_balance_below_fee(
        self, commitments: CommitmentService, chain: FakeChain, store: InMemoryStore
    ) -> None:
        c = await self._personal(commitments, chain)
        chain.balances[c.escrow_pubkey] = 3000
        chain.fee = 5000

        with pytest.raises(ConflictError, match="fee"):
            await commitments.resolve_success(c.id, now_unix=NOW + 10)
        assert chain.transfers == []
        stored = await store.get_commitment(c.id)
        assert stored is not None and stored.status == CommitmentStatus.CREATED

    async def test_retry_after_timeout_adopts_landed_transfer(
        self, commitments: CommitmentService, chain: FakeChain, store: InMemoryStore
    ) -> None:
        c = await self._personal(commitments, chain)
        chain.fail_with = TransferTimeoutError("unconfirmed", signature="sig-maybe")
        with pytest.raises(TransferTimeoutError):
            await commitments.resolve_success(c.id, now_unix=NOW + 10)

        # The first transfer landed after all.
        chain.fail_with = None
        chain.balances[c.escrow_pubkey] = 0
        chain.landed[(c.escrow_pubkey, c.authority, SOL)] = "sig-landed"

        with pytest.raises(ClaimInProgressError):
            await commitments.resolve_success(c.id, now_unix=NOW + 20)
        stored = await store.get_commitment(c.id)
        assert stored is not None and stored.status == CommitmentStatus.CREATED

        resolved = await commitments.resolve_success(c.id, now_unix=NOW + 400)
        assert resolved.status == CommitmentStatus.RESOLVED_SUCCESS
        assert resolved.resolved_tx_sig == "sig-landed"
        assert chain.transfers == []

    async def test_reward_commitment_rejected(self, commitments: CommitmentService, creator: Keypair) -> None:
        c = await issue(commitments, creator)
        with pytest.raises(ValidationError):
            await commitments.resolve_success(c.id, now_unix=NOW)


class TestArchive:
    async def test_archive_is_final(self, commitments: CommitmentService, creator: Keypair) -> None:
        c = await issue(commitments, creator)
        archived = await commitments.archive(c.id)
        assert archived.status == CommitmentStatus.ARCHIVED
        assert (await commitments.archive(c.id)).status == CommitmentStatus.ARCHIVED

        refreshed = await commitments.refresh(c.id, now_unix=NOW + 99 * DAY)
        assert refreshed.status == CommitmentStatus.ARCHIVED
        with pytest.raises(ConflictError):
            await commitments.add_milestone(c.id, MilestoneDraft(title="More", unlock_lamports=SOL))

    async def test_missing(self, commitments: CommitmentService) -> None:
        with pytest.raises(NotFoundError):
            await commitments.get("nope")
