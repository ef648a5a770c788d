"""Tests for personal commitment failure settlement."""

import pytest

from conftest import DAY, NOW, SOL, FakeChain, new_pubkey, snapshot
from escrow_settlement.commitments.models import Commitment, CommitmentStatus
from escrow_settlement.commitments.service import CommitmentService, MilestoneDraft
from escrow_settlement.errors import (
    ClaimInProgressError,
    ConfigurationError,
    ConflictError,
    TransferTimeoutError,
    ValidationError,
)
from escrow_settlement.settlement.base import SettlementPolicy
from escrow_settlement.settlement.failure import FailureSettlement
from escrow_settlement.settlement.models import DistributionKind
from escrow_settlement.storage.memory import InMemoryStore

DEADLINE = NOW + DAY
AFTER = DEADLINE + 1


@pytest.fixture
def settlement(store: InMemoryStore, chain: FakeChain, treasury: str) -> FailureSettlement:
    return FailureSettlement(store, chain, policy=SettlementPolicy(treasury_pubkey=treasury))


@pytest.fixture
async def personal(commitments: CommitmentService, chain: FakeChain) -> Commitment:
    c = await commitments.issue_personal(
        authority=new_pubkey(),
        destination_on_fail=new_pubkey(),
        amount_lamports=10 * SOL,
        deadline_unix=DEADLINE,
        now_unix=NOW,
    )
    chain.balances[c.escrow_pubkey] = 10 * SOL
    return c


async def add_voters(store: InMemoryStore, commitment_id: str) -> None:
    await store.record_voter_snapshot(snapshot(commitment_id, "", "a", 300.0))
    await store.record_voter_snapshot(snapshot(commitment_id, "", "b", 700.0))


class TestFailureSettlement:
    async def test_splits_buyback_and_voters(
        self,
        settlement: FailureSettlement,
        personal: Commitment,
        store: InMemoryStore,
        chain: FakeChain,
        treasury: str,
    ) -> None:
        await add_voters(store, personal.id)
        result = await settlement.settle(personal.id, now_unix=AFTER)

        d = result.distribution
        assert result.created
        assert (d.pot_amount, d.buyback_amount, d.voter_pot_amount) == (10 * SOL, 5 * SOL, 5 * SOL)
        assert not d.voter_pot_to_treasury
        assert d.buyback_tx_sig == "sig1"
        amounts = {a.wallet_pubkey: a.amount for a in result.allocations}
        assert amounts == {"a": 1_500_000_000, "b": 3_500_000_000}
        assert chain.transfers == [(personal.escrow_pubkey, treasury, 5 * SOL)]

        stored = await store.get_commitment(personal.id)
        assert stored is not None
        assert stored.status == CommitmentStatus.RESOLVED_FAILURE
        assert stored.resolved_tx_sig == "sig1"

    async def test_rerun_returns_existing(
        self, settlement: FailureSettlement, personal: Commitment, store: InMemoryStore, chain: FakeChain
    ) -> None:
        await add_voters(store, personal.id)
        first = await settlement.settle(personal.id, now_unix=AFTER)
        again = await settlement.settle(personal.id, now_unix=AFTER + 100)

        assert not again.created
        assert again.distribution.id == first.distribution.id
        assert len(chain.transfers) == 1

    async def test_no_voters_sends_everything_to_treasury(
        self,
        settlement: FailureSettlement,
        personal: Commitment,
        chain: FakeChain,
        treasury: str,
    ) -> None:
        result = await settlement.settle(personal.id, now_unix=AFTER)

        d = result.distribution
        assert d.voter_pot_to_treasury
        assert result.allocations == ()
        assert d.voter_pot_tx_sig == d.buyback_tx_sig == "sig1"
        assert chain.transfers == [(personal.escrow_pubkey, treasury, 10 * SOL)]

    async def test_escrow_and_treasury_are_not_voters(
        self,
        settlement: FailureSettlement,
        personal: Commitment,
        store: InMemoryStore,
        treasury: str,
    ) -> None:
        await store.record_voter_snapshot(snapshot(personal.id, "", treasury, 500.0))
        await store.record_voter_snapshot(snapshot(personal.id, "", "a", 100.0))
        result = await settlement.settle(personal.id, now_unix=AFTER)
        assert [a.wallet_pubkey for a in result.allocations] == ["a"]

    async def test_before_deadline_rejected(self, settlement: FailureSettlement, personal: Commitment) -> None:
        with pytest.raises(ConflictError):
            await settlement.settle(personal.id, now_unix=DEADLINE)

    async def test_requires_treasury(self, store: InMemoryStore, chain: FakeChain, personal: Commitment) -> None:
        settlement = FailureSettlement(store, chain, policy=SettlementPolicy())
        with pytest.raises(ConfigurationError):
            await settlement.settle(personal.id, now_unix=AFTER)

    async def test_empty_escrow_releases_lock(
        self, settlement: FailureSettlement, personal: Commitment, store: InMemoryStore, chain: FakeChain
    ) -> None:
        chain.balances[personal.escrow_pubkey] = 0
        with pytest.raises(ConflictError):
            await settlement.settle(personal.id, now_unix=AFTER)
        stored = await store.get_commitment(personal.id)
        assert stored is not None and stored.status == CommitmentStatus.CREATED

    async def test_reward_commitment_rejected(
        self, settlement: FailureSettlement, commitments: CommitmentService, creator
    ) -> None:
        c = await commitments.issue_reward(
            creator_pubkey=str(creator.pubkey()),
            token_mint=None,
            milestones=[MilestoneDraft(title="Launch", unlock_lamports=SOL)],
            now_unix=NOW,
        )
        with pytest.raises(ValidationError):
            await settlement.settle(c.id, now_unix=AFTER)

    async def test_failed_transfer_is_retried_with_same_distribution(
        self, settlement: FailureSettlement, personal: Commitment, store: InMemoryStore, chain: FakeChain
    ) -> None:
        await add_voters(store, personal.id)
        chain.fail_with = RuntimeError("rpc down")
        with pytest.raises(RuntimeError):
            await settlement.settle(personal.id, now_unix=AFTER)
        first = await store.get_distribution(DistributionKind.FAILURE, personal.id)
        assert first is not None

        chain.fail_with = None
        result = await settlement.settle(personal.id, now_unix=AFTER + 10)
        assert result.distribution.id == first.id
        assert not result.created
        assert result.distribution.buyback_tx_sig == "sig1"

    async def test_timed_out_transfer_is_recovered_after_ttl(
        self,
        settlement: FailureSettlement,
        personal: Commitment,
        store: InMemoryStore,
        chain: FakeChain,
        treasury: str,
    ) -> None:
        await add_voters(store, personal.id)
        chain.fail_with = TransferTimeoutError("not confirmed", signature="sig-landed")
        with pytest.raises(TransferTimeoutError):
            await settlement.settle(personal.id, now_unix=AFTER)

        chain.fail_with = None
        with pytest.raises(ClaimInProgressError):
            await settlement.settle(personal.id, now_unix=AFTER + 10)

        # The transfer landed; the balance seen now no longer matches the pot.
        chain.balances[personal.escrow_pubkey] = 5 * SOL
        chain.landed[(personal.escrow_pubkey, treasury, 5 * SOL)] = "sig-landed"
        result = await settlement.settle(personal.id, now_unix=AFTER + 400)

        assert result.treasury_claim is not None and result.treasury_claim.recovered
        assert result.distribution.pot_amount == 10 * SOL
        assert result.distribution.buyback_tx_sig == "sig-landed"
        assert chain.transfers == []

    async def test_pot_keeps_a_fee_per_transfer(
        self,
        settlement: FailureSettlement,
        personal: Commitment,
        store: InMemoryStore,
        chain: FakeChain,
        treasury: str,
    ) -> None:
        await add_voters(store, personal.id)
        chain.fee = 5000

        result = await settlement.settle(personal.id, now_unix=AFTER)

        # Treasury transfer plus one claim for each of the two voters.
        d = result.distribution
        assert d.pot_amount == 10 * SOL - 3 * 5000
        assert d.buyback_amount + d.voter_pot_amount == d.pot_amount
        assert chain.transfers == [(personal.escrow_pubkey, treasury, d.buyback_amount)]
        remaining = chain.balances[personal.escrow_pubkey]
        assert remaining == d.voter_pot_amount + 2 * 5000

    async def test_sweep_to_treasury_leaves_the_fee(
        self, settlement: FailureSettlement, personal: Commitment, chain: FakeChain, treasury: str
    ) -> None:
        chain.fee = 5000

        result = await settlement.settle(personal.id, now_unix=AFTER)

        assert result.distribution.voter_pot_to_treasury
        assert chain.transfers == [(personal.escrow_pubkey, treasury, 10 * SOL - 5000)]
        assert chain.balances[personal.escrow_pubkey] == 0
