"""Periodic rotation of fee-share recipients for reward tokens.

For each active reward commitment with a token mint, the top leaderboard
wallets over a trailing window share a 5000 bps raider pool, fixed dev and
creator shares are kept, and the escrow (the fee payer) receives the rest.
The resulting weight table is pushed to the external fee router. Each token
is handled independently; one token failing never stops the batch.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

import httpx

from escrow_settlement.allocation.engine import BPS_DENOMINATOR, Share, equal_split, merge_shares, sqrt_weighted_split
from escrow_settlement.chain.retry import RetryError, with_retry
from escrow_settlement.commitments.models import FEE_SPLIT_TOTAL_BPS, Commitment, CommitmentKind, CommitmentStatus
from escrow_settlement.config import FeeShareSettings
from escrow_settlement.errors import ConfigurationError, DependencyError, DependencyTimeoutError
from escrow_settlement.signing.vault import CustodialWallet
from escrow_settlement.storage.store import Store

logger = logging.getLogger(__name__)

MAX_RECIPIENTS = 15
RAIDER_POOL_BPS = 5000
LEADERBOARD_OVERFETCH = 8
DEFAULT_TIMEOUT_SECONDS = 20.0


@dataclass(frozen=True)
class LeaderboardEntry:
    wallet_pubkey: str
    score: float


@dataclass(frozen=True)
class FeeWeight:
    wallet: str
    bps: int

    def to_dict(self) -> dict[str, Any]:
        return {"wallet": self.wallet, "bps": self.bps}


@dataclass
class RotationResult:
    """Outcome for one token."""

    token_mint: str
    ok: bool
    commitment_id: str | None = None
    weights: list[FeeWeight] = field(default_factory=list)
    dry_run: bool = False
    skipped: bool = False
    reason: str | None = None
    config_key: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tokenMint": self.token_mint,
            "ok": self.ok,
            "commitmentId": self.commitment_id,
            "weights": [w.to_dict() for w in self.weights],
            "dryRun": self.dry_run,
            "skipped": self.skipped,
            "reason": self.reason,
            "configKey": self.config_key,
            "error": self.error,
        }


class LeaderboardSource(Protocol):
    """Supplies engagement scores per token."""

    async def top_scores(self, token_mint: str, *, since_unix: int, limit: int) -> list[LeaderboardEntry] | None:
        """Scores since ``since_unix``, best first; None when the token has no active campaign."""
        ...


class FeeRouter(Protocol):
    """External system that routes trading fees by a weight table."""

    async def supports_mint(self, token_mint: str) -> bool: ...

    async def update_fee_shares(
        self,
        token_mint: str,
        weights: Sequence[FeeWeight],
        *,
        payer_pubkey: str,
        wallet_id: str,
    ) -> str | None: ...


class FeeRouterError(DependencyError):
    """Raised when the fee router rejects or fails a request."""


class _RetryableResponse(Exception):
    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(f"HTTP {status_code}: {body[:200]}")
        self.status_code = status_code


def pick_unique_top_n(entries: Iterable[LeaderboardEntry], *, exclude: set[str], n: int) -> list[LeaderboardEntry]:
    """First ``n`` distinct, non-excluded wallets in leaderboard order."""
    out: list[LeaderboardEntry] = []
    seen: set[str] = set()
    for entry in entries:
        wallet = entry.wallet_pubkey.strip()
        if not wallet or wallet in exclude or wallet in seen:
            continue
        seen.add(wallet)
        out.append(LeaderboardEntry(wallet_pubkey=wallet, score=entry.score))
        if len(out) >= n:
            break
    return out


def allocate_equal_bps(total_bps: int, wallets: Sequence[str]) -> list[FeeWeight]:
    return [FeeWeight(s.recipient, s.amount) for s in equal_split(total_bps, wallets)]


def allocate_sqrt_weighted_bps(total_bps: int, entries: Sequence[LeaderboardEntry]) -> list[FeeWeight]:
    shares = sqrt_weighted_split(total_bps, [(e.wallet_pubkey, e.score) for e in entries])
    return sorted((FeeWeight(s.recipient, s.amount) for s in shares), key=lambda w: w.wallet)


def merge_weights(weights: Iterable[FeeWeight]) -> list[FeeWeight]:
    """Sum bps per wallet and drop empty entries."""
    shares = merge_shares(Share(w.wallet.strip(), w.bps, float(w.bps)) for w in weights if w.wallet.strip())
    return [FeeWeight(s.recipient, s.amount) for s in shares if s.amount > 0]


def build_weight_table(
    commitment: Commitment,
    leaderboard: Sequence[LeaderboardEntry],
    *,
    raider_count: int,
    mode: Literal["sqrt", "equal"] = "sqrt",
) -> list[FeeWeight]:
    """Compute the full fee weight table for one reward commitment.

    The table always sums to 10000 bps.
    """
    payer = commitment.escrow_pubkey
    exclude = {
        w
        for w in (payer, commitment.creator_pubkey, commitment.authority, commitment.destination_on_fail)
        if w
    }
    split = commitment.fee_split
    fixed: list[FeeWeight] = []
    if split is not None:
        exclude.update({split.dev_wallet, split.creator_wallet})
        fixed = [FeeWeight(split.dev_wallet, split.dev_bps), FeeWeight(split.creator_wallet, split.creator_bps)]

    fixed_recipients = len(merge_weights([FeeWeight(payer, 1), *fixed]))
    slots = max(0, min(raider_count, MAX_RECIPIENTS - fixed_recipients))
    picked = pick_unique_top_n(leaderboard, exclude=exclude, n=slots) if slots > 0 else []
    fixed_total = FEE_SPLIT_TOTAL_BPS if split is not None else 0

    if not picked:
        return merge_weights([*fixed, FeeWeight(payer, BPS_DENOMINATOR - fixed_total)])

    if mode == "equal":
        raiders = allocate_equal_bps(RAIDER_POOL_BPS, [p.wallet_pubkey for p in picked])
    else:
        raiders = allocate_sqrt_weighted_bps(RAIDER_POOL_BPS, picked)
    payer_bps = BPS_DENOMINATOR - sum(r.bps for r in raiders) - fixed_total
    return merge_weights([*fixed, FeeWeight(payer, payer_bps), *raiders])


class BagsFeeRouter:
    """HTTP client for the Bags fee-share API."""

    def __init__(
        self,
        *,
        api_key: str,
        api_base_url: str,
        http_client: httpx.AsyncClient | None = None,
        max_retries: int = 3,
        retry_delay_seconds: float = 0.5,
    ) -> None:
        self._api_key = api_key
        self._base_url = api_base_url.rstrip("/")
        self._client = http_client or httpx.AsyncClient(timeout=DEFAULT_TIMEOUT_SECONDS)
        self._owns_client = http_client is None
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds

    @classmethod
    def from_settings(cls, settings: FeeShareSettings, **kwargs: Any) -> BagsFeeRouter:
        if settings.api_key is None:
            raise ConfigurationError("BAGS_API_KEY is required for fee-share rotation")
        return cls(api_key=settings.api_key.get_secret_value(), api_base_url=settings.api_base_url, **kwargs)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        url = f"{self._base_url}{path}"

        @with_retry(
            max_attempts=self._max_retries,
            base_delay=self._retry_delay,
            retry_on=(httpx.TransportError, _RetryableResponse),
        )
        async def _send() -> dict[str, Any]:
            response = await self._client.request(
                method, url, json=json_body, params=params, headers={"x-api-key": self._api_key}
            )
            if response.status_code == 429 or response.status_code >= 500:
                raise _RetryableResponse(response.status_code, response.text)
            if response.status_code >= 400:
                raise FeeRouterError(f"Fee router rejected request ({response.status_code})", path=path)
            payload: dict[str, Any] = response.json()
            return payload

        try:
            return await _send()
        except RetryError as e:
            if isinstance(e.last_exception, httpx.TimeoutException):
                raise DependencyTimeoutError("Fee router timed out", path=path) from e
            raise FeeRouterError("Fee router unavailable", path=path) from e

    async def supports_mint(self, token_mint: str) -> bool:
        payload = await self._request("GET", "/token-launch/creator/v3", params={"tokenMint": token_mint})
        return bool(payload.get("success")) and bool(payload.get("response"))

    async def update_fee_shares(
        self,
        token_mint: str,
        weights: Sequence[FeeWeight],
        *,
        payer_pubkey: str,
        wallet_id: str,
    ) -> str | None:
        body = {
            "baseMint": token_mint,
            "payer": payer_pubkey,
            "walletId": wallet_id,
            "claimersArray": [w.wallet for w in weights],
            "basisPointsArray": [w.bps for w in weights],
        }
        payload = await self._request("POST", "/fee-share/config", json_body=body)
        if not payload.get("success", True):
            raise FeeRouterError(str(payload.get("error") or "Fee share update failed"), token_mint=token_mint)
        response = payload.get("response")
        key = None
        if isinstance(response, dict):
            key = response.get("configKey") or response.get("meteoraConfigKey")
        return str(key) if key else None

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class FeeShareRotator:
    """Recomputes and pushes fee weight tables for a batch of reward tokens."""

    def __init__(
        self,
        store: Store,
        leaderboard: LeaderboardSource,
        router: FeeRouter,
        *,
        raider_count: int = 14,
        window_seconds: int = 7 * 24 * 3600,
        mode: Literal["sqrt", "equal"] = "sqrt",
        batch_limit: int = 50,
    ) -> None:
        self._store = store
        self._leaderboard = leaderboard
        self._router = router
        self._raider_count = raider_count
        self._window_seconds = window_seconds
        self._mode = mode
        self._batch_limit = batch_limit

    @classmethod
    def from_settings(
        cls, settings: FeeShareSettings, store: Store, leaderboard: LeaderboardSource, router: FeeRouter
    ) -> FeeShareRotator:
        return cls(
            store,
            leaderboard,
            router,
            raider_count=settings.raider_count,
            window_seconds=settings.window_seconds,
            mode=settings.mode,
            batch_limit=settings.batch_limit,
        )

    async def _targets(self, token_mint: str | None) -> list[Commitment]:
        commitments = await self._store.list_commitments(
            kind=CommitmentKind.CREATOR_REWARD,
            statuses=[CommitmentStatus.ACTIVE, CommitmentStatus.CREATED],
        )
        targets: list[Commitment] = []
        for c in commitments:
            if len(targets) >= self._batch_limit:
                break
            mint = (c.token_mint or "").strip()
            if not mint or (token_mint and mint != token_mint):
                continue
            try:
                supported = await self._router.supports_mint(mint)
            except DependencyError as e:
                logger.warning("Could not check fee router support for %s: %s", mint, e)
                continue
            if supported:
                targets.append(c)
        return targets

    async def rotate(
        self,
        *,
        token_mint: str | None = None,
        dry_run: bool = False,
        now_unix: int | None = None,
    ) -> list[RotationResult]:
        """Rotate fee shares for every eligible token, or just ``token_mint``."""
        now = now_unix if now_unix is not None else int(time.time())
        since = now - self._window_seconds
        results: list[RotationResult] = []
        for commitment in await self._targets(token_mint):
            results.append(await self._rotate_one(commitment, since_unix=since, dry_run=dry_run))
        logger.info(
            "Fee-share rotation finished: %d tokens, %d ok, dry_run=%s",
            len(results),
            sum(1 for r in results if r.ok),
            dry_run,
        )
        return results

    async def _rotate_one(self, commitment: Commitment, *, since_unix: int, dry_run: bool) -> RotationResult:
        mint = commitment.token_mint or ""
        result = RotationResult(token_mint=mint, ok=False, commitment_id=commitment.id, dry_run=dry_run)
        signer = commitment.signer
        if not isinstance(signer, CustodialWallet):
            result.error = "Commitment escrow signer is not custodial"
            return result
        try:
            entries = await self._leaderboard.top_scores(
                mint, since_unix=since_unix, limit=max(50, self._raider_count * LEADERBOARD_OVERFETCH)
            )
            if entries is None:
                result.ok = True
                result.skipped = True
                result.reason = "no_active_campaign"
                return result
            result.weights = build_weight_table(commitment, entries, raider_count=self._raider_count, mode=self._mode)
            if dry_run:
                result.ok = True
                return result
            result.config_key = await self._router.update_fee_shares(
                mint, result.weights, payer_pubkey=commitment.escrow_pubkey, wallet_id=signer.wallet_id
            )
            result.ok = True
            logger.info("Rotated fee shares for %s: %d recipients", mint, len(result.weights))
        except Exception as e:
            logger.exception("Fee-share rotation failed for %s", mint)
            result.ok = False
            result.error = str(e)
        return result
