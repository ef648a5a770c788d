"""Tests for the three-phase claim protocol."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from escrow_settlement.claims.models import Claim, ClaimOutcome
from escrow_settlement.claims.protocol import ClaimProtocol, ClaimRequest, release_claim_key
from escrow_settlement.errors import (
    ClaimInProgressError,
    DependencyError,
    ParameterMismatchError,
    TransferTimeoutError,
    ValidationError,
)
from escrow_settlement.storage.memory import InMemoryStore

NOW = 1_700_000_000
REQUEST = ClaimRequest(distribution_id="d1", wallet_pubkey="W", amount=500, to_pubkey="W")


@pytest.fixture
def protocol(store: InMemoryStore) -> ClaimProtocol:
    return ClaimProtocol(store, ttl_seconds=300)


class TestClaimProtocol:
    async def test_pays_and_records_signature(self, protocol: ClaimProtocol, store: InMemoryStore) -> None:
        execute = AsyncMock(return_value="sig-1")
        outcome = await protocol.run(REQUEST, now_unix=NOW, execute=execute)

        assert outcome.tx_sig == "sig-1"
        assert not outcome.idempotent
        stored = await store.get_claim("d1", "W")
        assert stored is not None and stored.tx_sig == "sig-1"
        execute.assert_awaited_once()

    async def test_second_run_is_idempotent(self, protocol: ClaimProtocol) -> None:
        await protocol.run(REQUEST, now_unix=NOW, execute=AsyncMock(return_value="sig-1"))
        again = AsyncMock(return_value="sig-2")
        outcome = await protocol.run(REQUEST, now_unix=NOW + 10_000, execute=again)

        assert outcome.idempotent
        assert outcome.tx_sig == "sig-1"
        again.assert_not_awaited()

    async def test_concurrent_claims_pay_once(self, protocol: ClaimProtocol) -> None:
        calls = 0

        async def execute() -> str:
            nonlocal calls
            calls += 1
            await asyncio.sleep(0)
            return f"sig-{calls}"

        results = await asyncio.gather(
            *(protocol.run(REQUEST, now_unix=NOW, execute=execute) for _ in range(5)),
            return_exceptions=True,
        )

        assert calls == 1
        paid = [r for r in results if not isinstance(r, Exception)]
        assert len(paid) == 1
        assert all(isinstance(r, ClaimInProgressError) for r in results if isinstance(r, Exception))

    async def test_fresh_unsigned_claim_blocks(self, protocol: ClaimProtocol, store: InMemoryStore) -> None:
        await store.try_acquire_claim(Claim("d1", "W", NOW, 500, "W"))
        with pytest.raises(ClaimInProgressError) as exc_info:
            await protocol.run(REQUEST, now_unix=NOW + 100, execute=AsyncMock(return_value="sig"))
        assert exc_info.value.details["retry_after_seconds"] == 200

    async def test_stale_claim_is_reclaimed(self, protocol: ClaimProtocol, store: InMemoryStore) -> None:
        await store.try_acquire_claim(Claim("d1", "W", NOW, 500, "W"))
        recover = AsyncMock(return_value=None)
        outcome = await protocol.run(
            REQUEST, now_unix=NOW + 301, execute=AsyncMock(return_value="sig-new"), recover=recover
        )

        assert outcome.tx_sig == "sig-new"
        recover.assert_awaited_once()
        stored = await store.get_claim("d1", "W")
        assert stored is not None and stored.claimed_at_unix == NOW + 301

    async def test_stale_claim_with_landed_transfer_is_recovered(
        self, protocol: ClaimProtocol, store: InMemoryStore
    ) -> None:
        await store.try_acquire_claim(Claim("d1", "W", NOW, 500, "W"))
        execute = AsyncMock(return_value="sig-new")
        outcome = await protocol.run(
            REQUEST, now_unix=NOW + 301, execute=execute, recover=AsyncMock(return_value="sig-landed")
        )

        assert outcome.recovered
        assert outcome.tx_sig == "sig-landed"
        execute.assert_not_awaited()

    async def test_timeout_keeps_claim_row(self, protocol: ClaimProtocol, store: InMemoryStore) -> None:
        execute = AsyncMock(side_effect=TransferTimeoutError("slow", signature="sig-maybe"))
        with pytest.raises(TransferTimeoutError):
            await protocol.run(REQUEST, now_unix=NOW, execute=execute)

        stored = await store.get_claim("d1", "W")
        assert stored is not None and stored.tx_sig is None
        with pytest.raises(ClaimInProgressError):
            await protocol.run(REQUEST, now_unix=NOW + 1, execute=AsyncMock(return_value="sig"))

    async def test_failure_releases_claim_row(self, protocol: ClaimProtocol, store: InMemoryStore) -> None:
        execute = AsyncMock(side_effect=DependencyError("rpc down"))
        with pytest.raises(DependencyError):
            await protocol.run(REQUEST, now_unix=NOW, execute=execute, recover=AsyncMock(return_value=None))

        assert await store.get_claim("d1", "W") is None
        outcome = await protocol.run(REQUEST, now_unix=NOW + 1, execute=AsyncMock(return_value="sig-2"))
        assert outcome.tx_sig == "sig-2"

    async def test_failure_with_landed_transfer_is_recovered(self, protocol: ClaimProtocol) -> None:
        outcome = await protocol.run(
            REQUEST,
            now_unix=NOW,
            execute=AsyncMock(side_effect=RuntimeError("connection reset")),
            recover=AsyncMock(return_value="sig-landed"),
        )
        assert outcome.recovered
        assert outcome.tx_sig == "sig-landed"

    async def test_failed_recovery_lookup_keeps_row(self, protocol: ClaimProtocol, store: InMemoryStore) -> None:
        with pytest.raises(RuntimeError):
            await protocol.run(
                REQUEST,
                now_unix=NOW,
                execute=AsyncMock(side_effect=RuntimeError("connection reset")),
                recover=AsyncMock(side_effect=DependencyError("rpc down")),
            )
        assert await store.get_claim("d1", "W") is not None

    async def test_parameter_mismatch(self, protocol: ClaimProtocol) -> None:
        await protocol.run(REQUEST, now_unix=NOW, execute=AsyncMock(return_value="sig-1"))
        other = ClaimRequest(distribution_id="d1", wallet_pubkey="W", amount=501, to_pubkey="W")
        with pytest.raises(ParameterMismatchError):
            await protocol.run(other, now_unix=NOW, execute=AsyncMock(return_value="sig-2"))

    async def test_zero_amount_rejected(self, protocol: ClaimProtocol) -> None:
        request = ClaimRequest(distribution_id="d1", wallet_pubkey="W", amount=0, to_pubkey="W")
        with pytest.raises(ValidationError):
            await protocol.run(request, now_unix=NOW, execute=AsyncMock(return_value="sig"))

    async def test_reclaimed_row_is_restored_on_finalize(
        self, protocol: ClaimProtocol, store: InMemoryStore
    ) -> None:
        async def execute() -> str:
            # Another worker reclaimed the row while this transfer was in flight.
            await store.delete_unsigned_claim("d1", "W", claimed_at_unix=NOW)
            return "sig-late"

        outcome = await protocol.run(REQUEST, now_unix=NOW, execute=execute)
        assert outcome.tx_sig == "sig-late"
        stored = await store.get_claim("d1", "W")
        assert stored is not None and stored.tx_sig == "sig-late"

    async def test_concurrent_reclaim_of_stale_row_pays_once(
        self, protocol: ClaimProtocol, store: InMemoryStore
    ) -> None:
        await store.try_acquire_claim(Claim("d1", "W", NOW, 500, "W"))
        transfers: list[int] = []

        async def recover(_claim: Claim) -> str | None:
            await asyncio.sleep(0)
            return None

        async def execute() -> str:
            transfers.append(len(transfers) + 1)
            await asyncio.sleep(0)
            return f"sig{len(transfers)}"

        results = await asyncio.gather(
            *(protocol.run(REQUEST, now_unix=NOW + 301, execute=execute, recover=recover) for _ in range(2)),
            return_exceptions=True,
        )

        assert transfers == [1]
        paid = [r for r in results if isinstance(r, ClaimOutcome)]
        assert [p.tx_sig for p in paid] == ["sig1"]
        assert any(isinstance(r, ClaimInProgressError) for r in results)
        stored = await store.get_claim("d1", "W")
        assert stored is not None and stored.tx_sig == "sig1"

    async def test_failed_attempt_leaves_newer_row(self, protocol: ClaimProtocol, store: InMemoryStore) -> None:
        async def execute() -> str:
            # The row aged out and was reclaimed by a later attempt before this one failed.
            await store.delete_unsigned_claim("d1", "W", claimed_at_unix=NOW)
            await store.try_acquire_claim(Claim("d1", "W", NOW + 400, 500, "W"))
            raise RuntimeError("connection reset")

        with pytest.raises(RuntimeError):
            await protocol.run(REQUEST, now_unix=NOW, execute=execute, recover=AsyncMock(return_value=None))

        stored = await store.get_claim("d1", "W")
        assert stored is not None and stored.claimed_at_unix == NOW + 400

    def test_release_claim_key(self) -> None:
        assert release_claim_key("c1", "m1") == "release:c1:m1"
