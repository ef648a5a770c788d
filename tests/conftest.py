"""Pytest configuration and fixtures."""

from __future__ import annotations

import pytest
from solders.keypair import Keypair

from escrow_settlement.chain.client import MintInfo, TransactionFailedError
from escrow_settlement.chain.signatures import verify_signature
from escrow_settlement.commitments.service import CommitmentService
from escrow_settlement.commitments.state import MilestonePolicy
from escrow_settlement.signing.vault import SignerRef
from escrow_settlement.storage.memory import InMemoryStore
from escrow_settlement.voting.models import VoterSnapshot

NOW = 1_700_000_000
DAY = 86_400
SOL = 1_000_000_000
TOKEN_PROGRAM = "TokenkegQfeZyiNwAJbNbGqPFXCWuBvf9Ss623VQ5DA"


def new_pubkey() -> str:
    return str(Keypair().pubkey())


def sign(keypair: Keypair, message: str) -> str:
    """Base58 detached signature, as a wallet would produce it."""
    return str(keypair.sign_message(message.encode("utf-8")))


def snapshot(
    commitment_id: str,
    milestone_id: str,
    wallet: str,
    amount: float,
    *,
    multiplier_bps: int = 10_000,
    created_at_unix: int = NOW,
    mint: str = "mint",
) -> VoterSnapshot:
    return VoterSnapshot(
        commitment_id=commitment_id,
        milestone_id=milestone_id,
        signer_pubkey=wallet,
        project_mint=mint,
        project_ui_amount=amount,
        project_price_usd=1.0,
        project_value_usd=amount,
        ship_ui_amount=0.0,
        ship_multiplier_bps=multiplier_bps,
        created_at_unix=created_at_unix,
    )


class FakeChain:
    """In-process chain: balances move on transfer, signatures are sequential.

    ``fee`` is charged to the source on every transfer; a transfer the source
    cannot cover together with its fee fails like it would on chain.
    """

    def __init__(self, now: int = NOW) -> None:
        self.now = now
        self.balances: dict[str, int] = {}
        self.transfers: list[tuple[str, str, int]] = []
        self.token_transfers: list[tuple[str, str, str, int]] = []
        self.landed: dict[tuple[str, str, int], str] = {}
        self.fail_with: Exception | None = None
        self.fee = 0
        self.mint_decimals = 6
        self.token_program = TOKEN_PROGRAM
        self._seq = 0

    def _next_sig(self) -> str:
        self._seq += 1
        return f"sig{self._seq}"

    async def get_balance(self, pubkey: str) -> int:
        return self.balances.get(pubkey, 0)

    async def get_current_time(self) -> int:
        return self.now

    async def transfer_fee(self, signer: SignerRef, *, from_pubkey: str) -> int:
        return self.fee

    async def transfer(self, signer: SignerRef, *, from_pubkey: str, to_pubkey: str, amount: int) -> str:
        if self.fail_with is not None:
            raise self.fail_with
        if self.fee and self.balances.get(from_pubkey, 0) < amount + self.fee:
            raise TransactionFailedError("insufficient funds for fee", signature=self._next_sig())
        self.balances[from_pubkey] = self.balances.get(from_pubkey, 0) - amount - self.fee
        self.balances[to_pubkey] = self.balances.get(to_pubkey, 0) + amount
        self.transfers.append((from_pubkey, to_pubkey, amount))
        return self._next_sig()

    async def transfer_token(
        self,
        signer: SignerRef,
        *,
        owner_pubkey: str,
        to_pubkey: str,
        mint: MintInfo,
        amount: int,
    ) -> str:
        if self.fail_with is not None:
            raise self.fail_with
        self.token_transfers.append((owner_pubkey, to_pubkey, mint.mint, amount))
        return self._next_sig()

    async def get_token_mint_info(self, mint: str) -> MintInfo:
        return MintInfo(mint=mint, decimals=self.mint_decimals, token_program=self.token_program)

    async def find_transfer_signature(
        self,
        *,
        from_pubkey: str,
        to_pubkey: str,
        amount: int,
        min_block_time: int,
        max_transactions: int = 50,
        mint: MintInfo | None = None,
    ) -> str | None:
        return self.landed.get((from_pubkey, to_pubkey, amount))

    def verify_signature(self, message: str, signature_b58: str, pubkey_b58: str) -> bool:
        return verify_signature(message, signature_b58, pubkey_b58)


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def policy() -> MilestonePolicy:
    """Short quorum so tests need only a few voters."""
    return MilestonePolicy(
        cutoff_seconds=DAY,
        approval_threshold=2,
        claim_delay_seconds=2 * DAY,
        delivery_grace_seconds=DAY,
    )


@pytest.fixture
def commitments(store: InMemoryStore, chain: FakeChain, policy: MilestonePolicy) -> CommitmentService:
    return CommitmentService(store, chain, policy=policy)


@pytest.fixture
def creator() -> Keypair:
    return Keypair()


@pytest.fixture
def treasury() -> str:
    return new_pubkey()

