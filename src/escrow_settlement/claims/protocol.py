"""Three-phase idempotent claim protocol.

A payout for one (distribution, wallet) pair runs as:

1. acquire: insert the claim row keyed by (distribution, wallet). An existing
   signed row is returned as an idempotent success; an unsigned row younger
   than the TTL means another attempt is in flight; an older one is treated
   as abandoned, checked for a transfer that already landed, and removed.
2. execute: perform the transfer.
3. finalize: record the signature only if the row is still unsigned.

Deletes and finalizes name the row by its ``claimed_at_unix``, so an attempt
never removes or signs a row that a later attempt acquired.

A transfer that times out keeps its row so nobody resubmits while the
first transfer may still land. Any other failure removes the row unless a
matching transfer is found on chain.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace

from escrow_settlement.claims.models import Claim, ClaimOutcome
from escrow_settlement.errors import (
    ClaimInProgressError,
    DependencyError,
    InvariantViolation,
    ParameterMismatchError,
    TransferTimeoutError,
    ValidationError,
)
from escrow_settlement.storage.store import Store

logger = logging.getLogger(__name__)

DEFAULT_CLAIM_TTL_SECONDS = 300
MAX_ACQUIRE_ATTEMPTS = 2
# Landed-transfer searches start this far before the claim was made.
RECOVERY_LOOKBACK_SECONDS = 60

Execute = Callable[[], Awaitable[str]]
Recover = Callable[[Claim], Awaitable[str | None]]


@dataclass(frozen=True)
class ClaimRequest:
    distribution_id: str
    wallet_pubkey: str
    amount: int
    to_pubkey: str


def release_claim_key(commitment_id: str, milestone_id: str) -> str:
    """Claim key for a creator's milestone release."""
    return f"release:{commitment_id}:{milestone_id}"


def resolution_claim_key(commitment_id: str) -> str:
    """Claim key for returning a personal commitment's escrow to its authority."""
    return f"resolve:{commitment_id}"


class ClaimProtocol:
    """Runs payouts at most once per (distribution, wallet)."""

    def __init__(self, store: Store, *, ttl_seconds: int = DEFAULT_CLAIM_TTL_SECONDS) -> None:
        self._store = store
        self._ttl = ttl_seconds

    async def run(
        self,
        request: ClaimRequest,
        *,
        now_unix: int,
        execute: Execute,
        recover: Recover | None = None,
    ) -> ClaimOutcome:
        """Acquire, execute and finalize a claim.

        Args:
            request: What to pay and to whom.
            now_unix: Current time, used for the claim row and TTL checks.
            execute: Performs the transfer and returns its signature.
            recover: Optional lookup for an already landed matching transfer.

        Returns:
            The outcome, flagged ``idempotent`` when a prior attempt had
            already paid out.

        Raises:
            ParameterMismatchError: An existing claim has a different amount or recipient.
            ClaimInProgressError: Another attempt holds a fresh unsigned claim.
            TransferTimeoutError: The transfer may still land; the claim row is kept.
        """
        if request.amount <= 0:
            raise ValidationError("Claim amount must be positive", amount=request.amount)

        attempt_row = Claim(
            distribution_id=request.distribution_id,
            wallet_pubkey=request.wallet_pubkey,
            claimed_at_unix=now_unix,
            amount=request.amount,
            to_pubkey=request.to_pubkey,
        )

        claim: Claim | None = None
        for _ in range(MAX_ACQUIRE_ATTEMPTS):
            acquired, existing = await self._store.try_acquire_claim(attempt_row)
            if acquired:
                claim = existing
                break

            self._check_parameters(existing, request)
            if existing.tx_sig:
                logger.info(
                    "Claim %s/%s already paid (%s)",
                    request.distribution_id,
                    request.wallet_pubkey,
                    existing.tx_sig,
                )
                return ClaimOutcome(claim=existing, tx_sig=existing.tx_sig, idempotent=True)

            age = now_unix - existing.claimed_at_unix
            if age <= self._ttl:
                raise ClaimInProgressError(
                    "Claim already in progress",
                    distribution_id=request.distribution_id,
                    wallet=request.wallet_pubkey,
                    retry_after_seconds=max(0, self._ttl - age),
                )

            if recover is not None:
                found = await recover(existing)
                if found:
                    return await self._finalize(existing, found, recovered=True)

            logger.info(
                "Reclaiming abandoned claim %s/%s (age %ds)",
                request.distribution_id,
                request.wallet_pubkey,
                age,
            )
            # Only the stale row is removed; a newer attempt that reclaimed it first stays.
            await self._store.delete_unsigned_claim(
                request.distribution_id, request.wallet_pubkey, claimed_at_unix=existing.claimed_at_unix
            )

        if claim is None:
            raise ClaimInProgressError(
                "Could not acquire claim",
                distribution_id=request.distribution_id,
                wallet=request.wallet_pubkey,
            )

        try:
            tx_sig = await execute()
        except TransferTimeoutError as e:
            logger.warning(
                "Transfer for claim %s/%s unconfirmed (%s); keeping claim row",
                request.distribution_id,
                request.wallet_pubkey,
                e.signature,
            )
            raise
        except Exception as e:
            found = None
            if recover is not None:
                try:
                    found = await recover(claim)
                except DependencyError:
                    logger.warning(
                        "Could not check for a landed transfer for claim %s/%s; keeping claim row",
                        request.distribution_id,
                        request.wallet_pubkey,
                    )
                    raise e from None
            if found:
                return await self._finalize(claim, found, recovered=True)
            await self._store.delete_unsigned_claim(
                request.distribution_id, request.wallet_pubkey, claimed_at_unix=claim.claimed_at_unix
            )
            logger.error(
                "Claim %s/%s failed, claim row released: %s",
                request.distribution_id,
                request.wallet_pubkey,
                e,
            )
            raise

        return await self._finalize(claim, tx_sig)

    @staticmethod
    def _check_parameters(existing: Claim, request: ClaimRequest) -> None:
        if existing.amount != request.amount or existing.to_pubkey != request.to_pubkey:
            raise ParameterMismatchError(
                "Existing claim was made with different parameters",
                existing={"amount": existing.amount, "to": existing.to_pubkey},
                expected={"amount": request.amount, "to": request.to_pubkey},
            )

    async def _finalize(self, claim: Claim, tx_sig: str, *, recovered: bool = False) -> ClaimOutcome:
        done = await self._store.finalize_claim(
            claim.distribution_id, claim.wallet_pubkey, tx_sig, claimed_at_unix=claim.claimed_at_unix
        )
        if not done:
            current = await self._store.get_claim(claim.distribution_id, claim.wallet_pubkey)
            if current is None:
                # The row was reclaimed while the transfer was running; record what landed.
                acquired, current = await self._store.try_acquire_claim(replace(claim, tx_sig=tx_sig))
                if acquired:
                    current = replace(claim, tx_sig=tx_sig)
            if current.tx_sig != tx_sig:
                raise InvariantViolation(
                    "Claim finalized with a different transfer",
                    distribution_id=claim.distribution_id,
                    wallet=claim.wallet_pubkey,
                    stored=current.tx_sig,
                    attempted=tx_sig,
                )
        logger.info(
            "Claim %s/%s paid %d to %s (%s)%s",
            claim.distribution_id,
            claim.wallet_pubkey,
            claim.amount,
            claim.to_pubkey,
            tx_sig,
            " [recovered]" if recovered else "",
        )
        return ClaimOutcome(claim=replace(claim, tx_sig=tx_sig), tx_sig=tx_sig, recovered=recovered)
