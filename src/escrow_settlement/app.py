"""Application wiring for the settlement engine.

:class:`SettlementApp` builds the store, chain client, custodial signer and
services from settings and owns their lifecycle. Callers (HTTP routes, cron
jobs) hold one app and call into its services.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any

from redis.asyncio import Redis

from escrow_settlement.chain.client import ChainClient, SolanaRpcClient
from escrow_settlement.claims.payouts import ClaimService, PayoutFlags
from escrow_settlement.claims.protocol import ClaimProtocol
from escrow_settlement.commitments.service import CommitmentService
from escrow_settlement.commitments.state import MilestonePolicy
from escrow_settlement.config import Settings, get_settings
from escrow_settlement.errors import ConfigurationError
from escrow_settlement.rotation.fee_shares import BagsFeeRouter, FeeRouter, FeeShareRotator, LeaderboardSource
from escrow_settlement.settlement.base import SettlementPolicy
from escrow_settlement.settlement.failure import FailureSettlement
from escrow_settlement.settlement.milestone_failure import MilestoneFailureSettlement
from escrow_settlement.settlement.vote_reward import VoteRewardPolicy, VoteRewardSettlement
from escrow_settlement.signing.custodial import CustodialSigner, PrivySigner
from escrow_settlement.storage.factory import create_store
from escrow_settlement.storage.store import Store
from escrow_settlement.voting.service import VotingService
from escrow_settlement.voting.tally import EligibilityPolicy

logger = logging.getLogger(__name__)


class AppState(str, Enum):
    """App lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


class SettlementApp:
    """Owns the engine's collaborators and services.

    Any collaborator passed in is used as-is and not closed on stop; the rest
    are built from settings.

    Example:
        ```python
        async with SettlementApp() as app:
            commitment = await app.commitments.refresh(commitment_id, observe_balance=True)
            outcome = await app.claims.release_milestone(commitment_id, milestone_id, signature=sig)
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        store: Store | None = None,
        chain: ChainClient | None = None,
        custodial_signer: CustodialSigner | None = None,
        leaderboard: LeaderboardSource | None = None,
        fee_router: FeeRouter | None = None,
        init_schema: bool = False,
    ) -> None:
        self._settings = settings or get_settings()
        self._store = store
        self._chain = chain
        self._custodial = custodial_signer
        self._leaderboard = leaderboard
        self._fee_router = fee_router
        self._init_schema = init_schema
        self._owned: list[Any] = []
        self._redis: Redis | None = None
        self._state = AppState.STOPPED

        self._commitments: CommitmentService | None = None
        self._voting: VotingService | None = None
        self._claims: ClaimService | None = None
        self._failure: FailureSettlement | None = None
        self._milestone_failure: MilestoneFailureSettlement | None = None
        self._vote_rewards: VoteRewardSettlement | None = None
        self._rotator: FeeShareRotator | None = None

    @property
    def state(self) -> AppState:
        return self._state

    @property
    def settings(self) -> Settings:
        return self._settings

    def _require(self, value: Any, name: str) -> Any:
        if value is None:
            raise RuntimeError(f"SettlementApp is not running ({name} unavailable)")
        return value

    @property
    def store(self) -> Store:
        store: Store = self._require(self._store, "store")
        return store

    @property
    def chain(self) -> ChainClient:
        chain: ChainClient = self._require(self._chain, "chain")
        return chain

    @property
    def commitments(self) -> CommitmentService:
        service: CommitmentService = self._require(self._commitments, "commitments")
        return service

    @property
    def voting(self) -> VotingService:
        service: VotingService = self._require(self._voting, "voting")
        return service

    @property
    def claims(self) -> ClaimService:
        service: ClaimService = self._require(self._claims, "claims")
        return service

    @property
    def failure(self) -> FailureSettlement:
        service: FailureSettlement = self._require(self._failure, "failure")
        return service

    @property
    def milestone_failure(self) -> MilestoneFailureSettlement:
        service: MilestoneFailureSettlement = self._require(self._milestone_failure, "milestone_failure")
        return service

    @property
    def vote_rewards(self) -> VoteRewardSettlement:
        service: VoteRewardSettlement = self._require(self._vote_rewards, "vote_rewards")
        return service

    @property
    def rotator(self) -> FeeShareRotator:
        """Fee-share rotator; needs a leaderboard source and a fee router."""
        if self._rotator is None:
            raise ConfigurationError("Fee-share rotation needs a leaderboard source and BAGS_API_KEY")
        return self._rotator

    async def start(self) -> None:
        """Build every collaborator and service.

        Raises:
            RuntimeError: If the app is already running.
        """
        if self._state != AppState.STOPPED:
            raise RuntimeError(f"Cannot start app in state {self._state}")
        self._state = AppState.STARTING
        logging.getLogger("escrow_settlement").setLevel(self._settings.get_logging_level())
        logger.info("Starting settlement app: %s", self._settings.redacted_summary())

        try:
            await self._initialize()
            self._state = AppState.RUNNING
            logger.info("Settlement app started")
        except Exception as e:
            self._state = AppState.ERROR
            logger.error("Failed to start settlement app: %s", e)
            await self._cleanup()
            raise

    async def stop(self) -> None:
        if self._state == AppState.STOPPED:
            return
        self._state = AppState.STOPPING
        logger.info("Stopping settlement app...")
        await self._cleanup()
        self._state = AppState.STOPPED
        logger.info("Settlement app stopped")

    async def _initialize(self) -> None:
        settings = self._settings

        if self._store is None:
            self._store = await create_store(settings, init_schema=self._init_schema)
            self._owned.append(self._store)

        if self._custodial is None and settings.custodial.enabled:
            signer = PrivySigner.from_settings(
                settings.custodial,
                max_retries=settings.solana.max_retries,
                retry_delay_seconds=settings.solana.retry_delay_seconds,
            )
            self._custodial = signer
            self._owned.append(signer)

        if self._chain is None:
            if settings.redis.url:
                self._redis = Redis.from_url(settings.redis.url)
            client = SolanaRpcClient.from_settings(
                settings.solana,
                redis=self._redis,
                custodial_signer=self._custodial,
            )
            self._chain = client
            self._owned.append(client)

        if self._fee_router is None and settings.fee_share.enabled:
            router = BagsFeeRouter.from_settings(settings.fee_share)
            self._fee_router = router
            self._owned.append(router)

        store = self._store
        chain = self._chain
        prefix = settings.settlement.message_prefix
        settlement_policy = SettlementPolicy.from_settings(settings.settlement)
        protocol = ClaimProtocol(store, ttl_seconds=settings.settlement.claim_ttl_seconds)

        self._commitments = CommitmentService(
            store,
            chain,
            policy=MilestonePolicy.from_settings(settings.voting),
            message_prefix=prefix,
            claims=protocol,
        )
        self._voting = VotingService(
            store,
            chain,
            self._commitments,
            eligibility=EligibilityPolicy.from_settings(settings.voting),
            message_prefix=prefix,
        )
        self._claims = ClaimService(
            store,
            chain,
            self._commitments,
            claims=protocol,
            flags=PayoutFlags.from_settings(settings.settlement),
            message_prefix=prefix,
            max_skew_seconds=settings.settlement.claim_max_skew_seconds,
            faucet_wallet_id=settings.vote_reward.faucet_wallet_id,
        )
        self._failure = FailureSettlement(store, chain, policy=settlement_policy, claims=protocol)
        self._milestone_failure = MilestoneFailureSettlement(
            store,
            chain,
            self._commitments,
            policy=settlement_policy,
            enabled=settings.settlement.enable_milestone_failure_distributions,
            claims=protocol,
        )
        self._vote_rewards = VoteRewardSettlement(
            store,
            chain,
            self._commitments,
            policy=VoteRewardPolicy.from_settings(
                settings.vote_reward, dust_threshold=settings.settlement.dust_threshold
            ),
            enabled=settings.settlement.enable_vote_reward_distributions,
        )
        if self._leaderboard is not None and self._fee_router is not None:
            self._rotator = FeeShareRotator.from_settings(
                settings.fee_share, store, self._leaderboard, self._fee_router
            )

    async def _cleanup(self) -> None:
        owned = list(self._owned)
        for resource in reversed(owned):
            try:
                await resource.close()
            except Exception as e:
                logger.warning("Error closing %s: %s", type(resource).__name__, e)
        self._owned.clear()

        # Injected collaborators survive a restart; built ones are rebuilt.
        if any(r is self._store for r in owned):
            self._store = None
        if any(r is self._chain for r in owned):
            self._chain = None
        if any(r is self._custodial for r in owned):
            self._custodial = None
        if any(r is self._fee_router for r in owned):
            self._fee_router = None
        self._commitments = None
        self._voting = None
        self._claims = None
        self._failure = None
        self._milestone_failure = None
        self._vote_rewards = None
        self._rotator = None

        if self._redis is not None:
            try:
                await self._redis.aclose()
            except Exception as e:
                logger.warning("Error closing Redis: %s", e)
            self._redis = None

    async def __aenter__(self) -> SettlementApp:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()
