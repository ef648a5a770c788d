"""Shared settlement building blocks.

A settlement run computes a :class:`Distribution` and its allocations from
stored voter snapshots, persists them create-if-absent, and pays any
treasury share through the claim protocol so that a retried run cannot send
it twice.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, replace

from escrow_settlement.allocation.engine import Share, split_bps, weighted_split
from escrow_settlement.chain.client import ChainClient
from escrow_settlement.claims.models import Claim, ClaimOutcome
from escrow_settlement.claims.protocol import RECOVERY_LOOKBACK_SECONDS, ClaimProtocol, ClaimRequest
from escrow_settlement.commitments.models import Commitment
from escrow_settlement.config import SettlementSettings
from escrow_settlement.errors import ConfigurationError, ParameterMismatchError
from escrow_settlement.settlement.models import (
    Allocation,
    Distribution,
    DistributionKind,
    allocation_digest,
)
from escrow_settlement.storage.store import Store
from escrow_settlement.voting.models import VoterSnapshot
from escrow_settlement.voting.tally import voter_weights

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SettlementPolicy:
    treasury_pubkey: str | None = None
    buyback_bps: int = 5000
    dust_threshold: int = 0
    claim_ttl_seconds: int = 300

    @classmethod
    def from_settings(cls, settings: SettlementSettings) -> SettlementPolicy:
        return cls(
            treasury_pubkey=settings.buyback_treasury_pubkey,
            buyback_bps=settings.buyback_bps,
            dust_threshold=settings.dust_threshold,
            claim_ttl_seconds=settings.claim_ttl_seconds,
        )

    def require_treasury(self) -> str:
        if not self.treasury_pubkey:
            raise ConfigurationError("CTS_SHIP_BUYBACK_TREASURY_PUBKEY is required")
        return self.treasury_pubkey


@dataclass(frozen=True)
class SettlementResult:
    """What a settlement run produced."""

    distribution: Distribution
    allocations: tuple[Allocation, ...]
    created: bool
    treasury_claim: ClaimOutcome | None = None

    def to_dict(self) -> dict[str, object]:
        d = self.distribution
        return {
            "distributionId": d.id,
            "kind": d.kind.value,
            "commitmentId": d.commitment_id,
            "milestoneId": d.milestone_id or None,
            "pot": d.pot_amount,
            "buyback": d.buyback_amount,
            "voterPot": d.voter_pot_amount,
            "voterPotToTreasury": d.voter_pot_to_treasury,
            "allocations": len(self.allocations),
            "buybackTxSig": d.buyback_tx_sig,
            "voterPotTxSig": d.voter_pot_tx_sig,
            "created": self.created,
        }


def new_distribution_id() -> str:
    return uuid.uuid4().hex


def split_pot(pot: int, buyback_bps: int) -> tuple[int, int]:
    """Return ``(buyback, voter_pot)``; the voter pot takes the rounding remainder."""
    buyback = split_bps(buyback_bps, pot)
    return buyback, pot - buyback


async def fee_reserve(chain: ChainClient, commitment: Commitment, *, transfers: int) -> int:
    """Lamports the escrow keeps back to pay for ``transfers`` outgoing transfers."""
    fee = await chain.transfer_fee(commitment.signer, from_pubkey=commitment.escrow_pubkey)
    return fee * max(0, transfers)


def snapshot_weights(snapshots: Iterable[VoterSnapshot], *, exclude: Iterable[str] = ()) -> dict[str, float]:
    excluded = set(exclude)
    return {w: v for w, v in voter_weights(snapshots).items() if w not in excluded and v > 0}


def voter_shares(voter_pot: int, weights: Mapping[str, float], *, dust_threshold: int = 0) -> list[Share]:
    if voter_pot <= 0 or not weights:
        return []
    return weighted_split(voter_pot, sorted(weights.items()), dust_threshold=dust_threshold)


def build_distribution(
    *,
    kind: DistributionKind,
    commitment: Commitment,
    now_unix: int,
    pot_amount: int,
    shares: Sequence[Share],
    milestone_id: str = "",
    buyback_amount: int = 0,
    voter_pot_amount: int = 0,
    treasury_pubkey: str | None = None,
    voter_pot_to_treasury: bool = False,
    mint_pubkey: str | None = None,
    token_program_pubkey: str | None = None,
    faucet_owner_pubkey: str | None = None,
) -> tuple[Distribution, list[Allocation]]:
    """Assemble a distribution row and its allocations from computed shares."""
    distribution_id = new_distribution_id()
    allocations = [
        Allocation(distribution_id=distribution_id, wallet_pubkey=s.recipient, amount=s.amount, weight=s.weight)
        for s in shares
        if s.amount > 0
    ]
    distribution = Distribution(
        id=distribution_id,
        kind=kind,
        commitment_id=commitment.id,
        milestone_id=milestone_id,
        created_at_unix=now_unix,
        pot_amount=pot_amount,
        buyback_amount=buyback_amount,
        voter_pot_amount=voter_pot_amount,
        treasury_pubkey=treasury_pubkey,
        voter_pot_to_treasury=voter_pot_to_treasury,
        mint_pubkey=mint_pubkey,
        token_program_pubkey=token_program_pubkey,
        faucet_owner_pubkey=faucet_owner_pubkey,
        allocation_count=len(allocations),
        allocation_total=sum(a.amount for a in allocations),
        allocation_digest=allocation_digest(allocations),
    )
    return distribution, allocations


async def ensure_distribution(
    store: Store,
    distribution: Distribution,
    allocations: Sequence[Allocation],
) -> tuple[Distribution, bool]:
    """Create the distribution, or verify a stored one matches it exactly.

    Raises:
        ParameterMismatchError: A distribution for the same parent exists with
            different parameters.
    """
    stored, created = await store.create_distribution(distribution, allocations)
    if created:
        return stored, True
    mismatched = stored.mismatched_parameters(distribution)
    if mismatched:
        logger.error(
            "Distribution %s for %s differs from recomputation in %s",
            stored.id,
            distribution.commitment_id,
            ", ".join(mismatched),
        )
        raise ParameterMismatchError(
            "Existing distribution was created with different parameters",
            existing={k: stored.parameters()[k] for k in mismatched},
            expected={k: distribution.parameters()[k] for k in mismatched},
        )
    return stored, False


def treasury_amount(distribution: Distribution) -> int:
    amount = distribution.buyback_amount
    if distribution.voter_pot_to_treasury:
        amount += distribution.voter_pot_amount
    return amount


class TreasuryPayer:
    """Pays a distribution's treasury share from the commitment escrow."""

    def __init__(self, store: Store, chain: ChainClient, claims: ClaimProtocol) -> None:
        self._store = store
        self._chain = chain
        self._claims = claims

    async def should_resume(self, distribution: Distribution) -> bool:
        """True once money may have moved for ``distribution``.

        Such a distribution is finished as stored rather than recomputed, since
        the escrow balance no longer reflects the original pot.
        """
        if treasury_amount(distribution) <= 0 or distribution.buyback_tx_sig or distribution.voter_pot_tx_sig:
            return True
        if distribution.treasury_pubkey:
            claim = await self._store.get_claim(distribution.id, distribution.treasury_pubkey)
            if claim is not None:
                return True
        return await self._store.count_signed_claims(distribution.id) > 0

    async def pay(
        self,
        commitment: Commitment,
        distribution: Distribution,
        *,
        now_unix: int,
    ) -> tuple[Distribution, ClaimOutcome | None]:
        amount = treasury_amount(distribution)
        treasury = distribution.treasury_pubkey
        if amount <= 0 or not treasury:
            return distribution, None

        async def execute() -> str:
            return await self._chain.transfer(
                commitment.signer,
                from_pubkey=commitment.escrow_pubkey,
                to_pubkey=treasury,
                amount=amount,
            )

        async def recover(claim: Claim) -> str | None:
            return await self._chain.find_transfer_signature(
                from_pubkey=commitment.escrow_pubkey,
                to_pubkey=treasury,
                amount=amount,
                min_block_time=claim.claimed_at_unix - RECOVERY_LOOKBACK_SECONDS,
            )

        outcome = await self._claims.run(
            ClaimRequest(
                distribution_id=distribution.id,
                wallet_pubkey=treasury,
                amount=amount,
                to_pubkey=treasury,
            ),
            now_unix=now_unix,
            execute=execute,
            recover=recover,
        )
        updated = await self._store.set_distribution_tx_sigs(
            distribution.id,
            buyback_tx_sig=outcome.tx_sig if distribution.buyback_amount > 0 else None,
            voter_pot_tx_sig=outcome.tx_sig if distribution.voter_pot_to_treasury else None,
        )
        logger.info(
            "Treasury share of distribution %s paid: %d to %s (%s)",
            distribution.id,
            amount,
            treasury,
            outcome.tx_sig,
        )
        return (updated or replace(distribution, buyback_tx_sig=outcome.tx_sig)), outcome
