"""Tests for SettlementApp wiring and lifecycle."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import DAY, NOW, SOL, FakeChain, new_pubkey
from escrow_settlement.app import AppState, SettlementApp
from escrow_settlement.chain.client import SolanaRpcClient
from escrow_settlement.commitments.models import CommitmentStatus
from escrow_settlement.config import (
    CustodialSettings,
    DatabaseSettings,
    FeeShareSettings,
    RedisSettings,
    SettlementSettings,
    Settings,
)
from escrow_settlement.errors import ConfigurationError
from escrow_settlement.storage.memory import InMemoryStore


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database=DatabaseSettings(DATABASE_URL=None),
        redis=RedisSettings(REDIS_URL=None),
        custodial=CustodialSettings(PRIVY_APP_ID=None, PRIVY_APP_SECRET=None),
        fee_share=FeeShareSettings(BAGS_API_KEY=None),
        settlement=SettlementSettings(CTS_SHIP_BUYBACK_TREASURY_PUBKEY=new_pubkey()),
    )


class TestLifecycle:
    async def test_services_unavailable_before_start(self, settings: Settings) -> None:
        app = SettlementApp(settings)
        assert app.state == AppState.STOPPED
        with pytest.raises(RuntimeError):
            _ = app.commitments

    async def test_injected_collaborators(self, settings: Settings, chain: FakeChain, store: InMemoryStore) -> None:
        app = SettlementApp(settings, store=store, chain=chain)
        await app.start()
        try:
            assert app.state == AppState.RUNNING
            assert app.store is store
            assert app.chain is chain
            c = await app.commitments.issue_personal(
                authority=new_pubkey(),
                destination_on_fail=new_pubkey(),
                amount_lamports=SOL,
                deadline_unix=NOW + DAY,
                now_unix=NOW,
            )
            assert c.status == CommitmentStatus.CREATED
            assert await store.get_commitment(c.id) is not None
        finally:
            await app.stop()

        assert app.state == AppState.STOPPED
        assert app.store is store
        with pytest.raises(RuntimeError):
            _ = app.claims

    async def test_builds_defaults_from_settings(self, settings: Settings) -> None:
        async with SettlementApp(settings) as app:
            assert isinstance(app.store, InMemoryStore)
            assert isinstance(app.chain, SolanaRpcClient)
        with pytest.raises(RuntimeError):
            _ = app.chain

    async def test_cannot_start_twice(self, settings: Settings, chain: FakeChain, store: InMemoryStore) -> None:
        async with SettlementApp(settings, store=store, chain=chain) as app:
            with pytest.raises(RuntimeError):
                await app.start()

    async def test_restart_after_stop(self, settings: Settings, chain: FakeChain, store: InMemoryStore) -> None:
        app = SettlementApp(settings, store=store, chain=chain)
        await app.start()
        await app.stop()
        await app.start()
        assert app.state == AppState.RUNNING
        assert app.voting is not None
        await app.stop()


class TestRotatorWiring:
    async def test_requires_leaderboard_and_router(
        self, settings: Settings, chain: FakeChain, store: InMemoryStore
    ) -> None:
        async with SettlementApp(settings, store=store, chain=chain) as app:
            with pytest.raises(ConfigurationError):
                _ = app.rotator

    async def test_injected_router(self, settings: Settings, chain: FakeChain, store: InMemoryStore) -> None:
        leaderboard = MagicMock()
        leaderboard.top_scores = AsyncMock(return_value=[])
        router = MagicMock()
        router.update_fee_shares = AsyncMock(return_value="cfg")

        async with SettlementApp(settings, store=store, chain=chain, leaderboard=leaderboard, fee_router=router) as app:
            assert await app.rotator.rotate(now_unix=NOW) == []
        router.update_fee_shares.assert_not_awaited()
