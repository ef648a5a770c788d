"""Tests for recording holder votes."""

import pytest
from solders.keypair import Keypair

from conftest import DAY, NOW, FakeChain, new_pubkey, sign
from escrow_settlement.commitments.models import Commitment, MilestoneStatus
from escrow_settlement.commitments.service import CommitmentService, MilestoneDraft
from escrow_settlement.errors import AuthorizationError, ConflictError, ForbiddenError, ValidationError
from escrow_settlement.messages import milestone_completion_message, milestone_vote_message
from escrow_settlement.storage.memory import InMemoryStore
from escrow_settlement.voting.models import Holdings, VoteChoice
from escrow_settlement.voting.service import VotingService
from escrow_settlement.voting.tally import EligibilityPolicy

MINT = new_pubkey()


@pytest.fixture
def voting(store: InMemoryStore, chain: FakeChain, commitments: CommitmentService) -> VotingService:
    return VotingService(
        store,
        chain,
        commitments,
        eligibility=EligibilityPolicy(min_vote_value_usd=20.0, price_outage_min_tokens=1000.0),
    )


@pytest.fixture
async def reward(commitments: CommitmentService, creator: Keypair) -> Commitment:
    c = await commitments.issue_reward(
        creator_pubkey=str(creator.pubkey()),
        token_mint=MINT,
        milestones=[
            MilestoneDraft(title="Beta", unlock_percent=50.0),
            MilestoneDraft(title="Launch", unlock_percent=50.0),
        ],
        now_unix=NOW,
    )
    mid = c.milestones[0].id
    return await commitments.complete_milestone(
        c.id, mid, signature=sign(creator, milestone_completion_message(c.id, mid)), now_unix=NOW
    )


def holdings(amount: float = 100.0, *, price: float | None = 1.0, mint: str = MINT) -> Holdings:
    return Holdings(project_mint=mint, project_ui_amount=amount, project_price_usd=price)


async def cast(
    voting: VotingService,
    commitment: Commitment,
    voter: Keypair,
    vote: VoteChoice = VoteChoice.APPROVE,
    *,
    milestone_index: int = 0,
    now_unix: int = NOW + 60,
    held: Holdings | None = None,
):
    mid = commitment.milestones[milestone_index].id
    message = milestone_vote_message(commitment.id, mid, approve=vote == VoteChoice.APPROVE)
    return await voting.cast_vote(
        commitment.id,
        mid,
        signer_pubkey=str(voter.pubkey()),
        vote=vote,
        signature=sign(voter, message),
        holdings=held or holdings(),
        now_unix=now_unix,
    )


class TestCastVote:
    async def test_records_vote_and_snapshot(
        self, voting: VotingService, store: InMemoryStore, reward: Commitment
    ) -> None:
        voter = Keypair()
        result = await cast(voting, reward, voter)

        assert result.recorded
        assert result.tally.approvals == 1
        assert result.signal.weight_usd == pytest.approx(100.0)
        snaps = await store.list_voter_snapshots(reward.id, reward.milestones[0].id)
        assert [s.signer_pubkey for s in snaps] == [str(voter.pubkey())]

    async def test_first_vote_is_final(self, voting: VotingService, reward: Commitment) -> None:
        voter = Keypair()
        await cast(voting, reward, voter, VoteChoice.APPROVE)
        second = await cast(voting, reward, voter, VoteChoice.REJECT, now_unix=NOW + 120)

        assert not second.recorded
        assert second.signal.vote == VoteChoice.APPROVE
        assert (second.tally.approvals, second.tally.rejects) == (1, 0)

    async def test_signature_must_match_choice(self, voting: VotingService, reward: Commitment) -> None:
        voter = Keypair()
        mid = reward.milestones[0].id
        approve_sig = sign(voter, milestone_vote_message(reward.id, mid, approve=True))
        with pytest.raises(AuthorizationError):
            await voting.cast_vote(
                reward.id,
                mid,
                signer_pubkey=str(voter.pubkey()),
                vote=VoteChoice.REJECT,
                signature=approve_sig,
                holdings=holdings(),
                now_unix=NOW + 60,
            )

    async def test_uncompleted_milestone_is_closed(self, voting: VotingService, reward: Commitment) -> None:
        with pytest.raises(ConflictError):
            await cast(voting, reward, Keypair(), milestone_index=1)

    async def test_window_closes(self, voting: VotingService, reward: Commitment) -> None:
        with pytest.raises(ConflictError):
            await cast(voting, reward, Keypair(), now_unix=NOW + DAY)

    async def test_small_holder_forbidden(self, voting: VotingService, reward: Commitment) -> None:
        with pytest.raises(ForbiddenError):
            await cast(voting, reward, Keypair(), held=holdings(5.0))

    async def test_wrong_mint(self, voting: VotingService, reward: Commitment) -> None:
        with pytest.raises(ValidationError):
            await cast(voting, reward, Keypair(), held=holdings(mint=new_pubkey()))

    async def test_quorum_approves_after_window(
        self, voting: VotingService, commitments: CommitmentService, reward: Commitment
    ) -> None:
        for _ in range(2):
            await cast(voting, reward, Keypair())
        assert (await voting.tally(reward.id, reward.milestones[0].id)).approvals == 2

        after = await commitments.refresh(reward.id, now_unix=NOW + DAY)
        assert after.milestones[0].status == MilestoneStatus.APPROVED
