"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
escrow settlement engine, loading and validating environment variables
at startup.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from functools import lru_cache
from typing import Literal, TypeVar

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"

_TRUTHY = {"1", "true", "yes", "on"}


def _parse_flag(v: object) -> bool:
    if isinstance(v, bool):
        return v
    if v is None:
        return False
    return str(v).strip().lower() in _TRUTHY


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="DATABASE_URL",
        description="PostgreSQL or SQLite connection string (unset = in-memory store)",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate database URL format."""
        if v is None or not v.strip():
            return None
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL or sqlite+aiosqlite connection string")
        return v

    @property
    def enabled(self) -> bool:
        return self.url is not None


class RedisSettings(BaseSettings):
    """Redis connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string for the chain read cache",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is None or not v.strip():
            return None
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class SolanaSettings(BaseSettings):
    """Solana RPC settings."""

    model_config = SettingsConfigDict(env_prefix="SOLANA_", extra="ignore")

    rpc_url: str = Field(
        default="https://api.mainnet-beta.solana.com",
        alias="SOLANA_RPC_URL",
        description="Primary Solana RPC endpoint",
    )
    fallback_rpc_url: str | None = Field(
        default=None,
        alias="SOLANA_FALLBACK_RPC_URL",
        description="Fallback Solana RPC endpoint",
    )
    commitment: Literal["processed", "confirmed", "finalized"] = Field(
        default="confirmed",
        alias="SOLANA_COMMITMENT",
        description="Commitment level for reads and confirmations",
    )
    fee_payer_secret_key: SecretStr | None = Field(
        default=None,
        alias="SOLANA_FEE_PAYER_SECRET_KEY",
        description="Optional base58 keypair that pays fees for locally signed transfers",
    )
    max_retries: int = Field(
        default=3,
        alias="SOLANA_MAX_RETRIES",
        ge=1,
        le=6,
        description="Attempts per RPC call before failing over",
    )
    retry_delay_seconds: float = Field(
        default=0.25,
        alias="SOLANA_RETRY_DELAY_SECONDS",
        ge=0.0,
        le=30.0,
        description="Initial backoff delay (doubles per attempt)",
    )
    confirm_timeout_seconds: float = Field(
        default=60.0,
        alias="SOLANA_CONFIRM_TIMEOUT_SECONDS",
        ge=1.0,
        le=600.0,
        description="How long to poll for transfer confirmation before reporting a timeout",
    )

    @field_validator("rpc_url", "fallback_rpc_url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate RPC URL format."""
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return v


class VaultSettings(BaseSettings):
    """At-rest encryption settings for escrow signing material."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    secret: SecretStr | None = Field(
        default=None,
        alias="ESCROW_DB_SECRET",
        description="Secret used to derive the escrow key encryption key",
    )


class CustodialSettings(BaseSettings):
    """Custodial wallet (Privy) settings."""

    model_config = SettingsConfigDict(env_prefix="PRIVY_", extra="ignore")

    app_id: str | None = Field(
        default=None,
        alias="PRIVY_APP_ID",
        description="Privy application id",
    )
    app_secret: SecretStr | None = Field(
        default=None,
        alias="PRIVY_APP_SECRET",
        description="Privy application secret",
    )
    authorization_private_keys: SecretStr | None = Field(
        default=None,
        alias="PRIVY_AUTHORIZATION_PRIVATE_KEYS",
        description="Comma-separated P-256 authorization keys (PEM body or wallet-auth: prefix)",
    )
    api_base_url: str = Field(
        default="https://api.privy.io",
        alias="PRIVY_API_BASE_URL",
        description="Privy API host",
    )

    @property
    def enabled(self) -> bool:
        """Check if the custodial signer is configured."""
        return bool(self.app_id) and self.app_secret is not None


class VotingSettings(BaseSettings):
    """Milestone voting and approval settings."""

    model_config = SettingsConfigDict(env_prefix="REWARD_", extra="ignore")

    cutoff_seconds: int = Field(
        default=24 * 3600,
        alias="REWARD_VOTE_CUTOFF_SECONDS",
        ge=1,
        le=90 * 24 * 3600,
        description="Length of the vote window",
    )
    approval_threshold: int = Field(
        default=15,
        alias="REWARD_APPROVAL_THRESHOLD",
        ge=1,
        le=1_000_000,
        description="Minimum approvals for a milestone to pass",
    )
    claim_delay_seconds: int = Field(
        default=48 * 3600,
        alias="REWARD_CLAIM_DELAY_SECONDS",
        ge=0,
        le=365 * 24 * 3600,
        description="Delay after completion before an approved milestone becomes claimable",
    )
    delivery_grace_seconds: int = Field(
        default=24 * 3600,
        alias="REWARD_DELIVERY_GRACE_SECONDS",
        ge=0,
        le=365 * 24 * 3600,
        description="Grace after the due date before an undelivered milestone fails",
    )
    min_vote_value_usd: float = Field(
        default=20.0,
        alias="REWARD_MIN_VOTE_VALUE_USD",
        ge=0.0,
        description="Minimum USD value of holdings required to vote",
    )
    price_outage_min_tokens: float = Field(
        default=1000.0,
        alias="REWARD_PRICE_OUTAGE_MIN_TOKENS",
        ge=0.0,
        description="Token balance required to vote while no price is available",
    )


class SettlementSettings(BaseSettings):
    """Settlement and claim settings."""

    model_config = SettingsConfigDict(env_prefix="CTS_", extra="ignore")

    buyback_treasury_pubkey: str | None = Field(
        default=None,
        alias="CTS_SHIP_BUYBACK_TREASURY_PUBKEY",
        description="Treasury receiving the buyback share",
    )
    buyback_bps: int = Field(
        default=5000,
        alias="CTS_BUYBACK_BPS",
        ge=0,
        le=10_000,
        description="Share of a forfeited pot sent to the buyback treasury",
    )
    dust_threshold: int = Field(
        default=0,
        alias="CTS_ALLOCATION_DUST_THRESHOLD",
        ge=0,
        description="Allocations below this many units are folded into the remainder pass",
    )
    claim_ttl_seconds: int = Field(
        default=300,
        alias="CTS_CLAIM_TTL_SECONDS",
        ge=1,
        le=24 * 3600,
        description="Age after which an unsigned claim is treated as abandoned",
    )
    claim_max_skew_seconds: int = Field(
        default=300,
        alias="CTS_CLAIM_MAX_SKEW_SECONDS",
        ge=1,
        le=3600,
        description="Allowed clock skew for timestamped claim messages",
    )
    message_prefix: str = Field(
        default="Commit To Ship",
        alias="CTS_MESSAGE_PREFIX",
        description="First line of every signed message",
    )
    enable_reward_payouts: bool = Field(
        default=False,
        alias="CTS_ENABLE_REWARD_PAYOUTS",
        description="Allow creators to claim claimable milestones",
    )
    enable_milestone_failure_distributions: bool = Field(
        default=False,
        alias="CTS_ENABLE_MILESTONE_FAILURE_DISTRIBUTIONS",
        description="Allow milestone failure distributions to be created",
    )
    enable_failure_distribution_payouts: bool = Field(
        default=False,
        alias="CTS_ENABLE_FAILURE_DISTRIBUTION_PAYOUTS",
        description="Allow voters to claim milestone failure allocations",
    )
    enable_vote_reward_distributions: bool = Field(
        default=False,
        alias="CTS_ENABLE_VOTE_REWARD_DISTRIBUTIONS",
        description="Allow vote reward distributions to be created and claimed",
    )

    @field_validator(
        "enable_reward_payouts",
        "enable_milestone_failure_distributions",
        "enable_failure_distribution_payouts",
        "enable_vote_reward_distributions",
        mode="before",
    )
    @classmethod
    def _parse_flags(cls, v: object) -> bool:
        return _parse_flag(v)


class VoteRewardSettings(BaseSettings):
    """Vote reward distribution settings."""

    model_config = SettingsConfigDict(env_prefix="CTS_", extra="ignore")

    mode: Literal["pool", "fixed", "auto"] = Field(
        default="auto",
        alias="CTS_VOTE_REWARD_MODE",
        description="pool splits a fixed pool, fixed pays a per-vote amount",
    )
    pool_ui_amount: int = Field(
        default=0,
        alias="CTS_VOTE_REWARD_POOL_UI_AMOUNT",
        ge=0,
        description="Pool size in whole reward tokens",
    )
    per_vote_ui_amount: int = Field(
        default=0,
        alias="CTS_VOTE_REWARD_PER_VOTE_UI_AMOUNT",
        ge=0,
        description="Per-vote amount in whole reward tokens",
    )
    max_pool_ui_amount: int = Field(
        default=0,
        alias="CTS_VOTE_REWARD_MAX_POOL_UI_AMOUNT",
        ge=0,
        description="Cap on a fixed-mode total (0 = uncapped)",
    )
    ship_token_mint: str | None = Field(
        default=None,
        alias="CTS_SHIP_TOKEN_MINT",
        description="Reward token mint",
    )
    faucet_owner_pubkey: str | None = Field(
        default=None,
        alias="CTS_VOTE_REWARD_FAUCET_OWNER_PUBKEY",
        description="Wallet funding vote reward payouts",
    )
    faucet_wallet_id: str | None = Field(
        default=None,
        alias="CTS_VOTE_REWARD_FAUCET_WALLET_ID",
        description="Custodial wallet id of the faucet owner",
    )
    participation_window_milestones: int = Field(
        default=20,
        alias="CTS_PARTICIPATION_WINDOW_MILESTONES",
        ge=1,
        le=1000,
        description="How many recent vote windows count toward streaks",
    )
    streak_grace_misses: int = Field(
        default=2,
        alias="CTS_STREAKS_GRACE_MISSES",
        ge=0,
        le=1000,
        description="Misses penalized at the reduced rate",
    )

    @field_validator("mode", mode="before")
    @classmethod
    def _normalize_mode(cls, v: object) -> str:
        raw = str(v or "").strip().lower()
        if raw in ("fixed", "per_vote", "per-vote", "per_voter", "per-voter"):
            return "fixed"
        if raw == "pool":
            return "pool"
        return "auto"

    def resolved_mode(self) -> Literal["pool", "fixed"]:
        """Resolve ``auto`` against the configured amounts."""
        if self.mode != "auto":
            return self.mode
        if self.per_vote_ui_amount > 0:
            return "fixed"
        return "pool"


class FeeShareSettings(BaseSettings):
    """Fee-share rotation settings."""

    model_config = SettingsConfigDict(env_prefix="BAGS_", extra="ignore")

    api_key: SecretStr | None = Field(
        default=None,
        alias="BAGS_API_KEY",
        description="Fee router API key",
    )
    api_base_url: str = Field(
        default="https://public-api-v2.bags.fm/api/v1",
        alias="BAGS_API_BASE_URL",
        description="Fee router API host",
    )
    raider_count: int = Field(
        default=14,
        alias="BAGS_RAIDER_COUNT",
        ge=1,
        le=14,
        description="Leaderboard wallets to include per token",
    )
    window_seconds: int = Field(
        default=7 * 24 * 3600,
        alias="BAGS_WINDOW_SECONDS",
        ge=60,
        le=30 * 24 * 3600,
        description="Trailing leaderboard window",
    )
    mode: Literal["sqrt", "equal"] = Field(
        default="sqrt",
        alias="BAGS_ROTATION_MODE",
        description="Raider weighting strategy",
    )
    batch_limit: int = Field(
        default=50,
        alias="BAGS_ROTATION_LIMIT",
        ge=1,
        le=100,
        description="Maximum tokens per rotation run",
    )

    @property
    def enabled(self) -> bool:
        return self.api_key is not None


_G = TypeVar("_G", bound=BaseSettings)


def _from_env_file(group: type[_G]) -> Callable[[], _G]:
    """Nested groups only read `.env` when handed the file explicitly."""
    return lambda: group(_env_file=_ENV_FILE, _env_file_encoding=_ENV_FILE_ENCODING)


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from escrow_settlement.config import get_settings

        settings = get_settings()
        print(settings.voting.cutoff_seconds)
        print(settings.log_level)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    database: DatabaseSettings = Field(default_factory=_from_env_file(DatabaseSettings))
    redis: RedisSettings = Field(default_factory=_from_env_file(RedisSettings))
    solana: SolanaSettings = Field(default_factory=_from_env_file(SolanaSettings))
    vault: VaultSettings = Field(default_factory=_from_env_file(VaultSettings))
    custodial: CustodialSettings = Field(default_factory=_from_env_file(CustodialSettings))
    voting: VotingSettings = Field(default_factory=_from_env_file(VotingSettings))
    settlement: SettlementSettings = Field(default_factory=_from_env_file(SettlementSettings))
    vote_reward: VoteRewardSettings = Field(default_factory=_from_env_file(VoteRewardSettings))
    fee_share: FeeShareSettings = Field(default_factory=_from_env_file(FeeShareSettings))

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "database_url": self._redact_url(self.database.url) if self.database.url else "(in-memory)",
            "redis_url": self._redact_url(self.redis.url) if self.redis.url else "(not set)",
            "solana": {
                "rpc_url": self.solana.rpc_url,
                "fallback_rpc_url": self.solana.fallback_rpc_url or "(not set)",
                "commitment": self.solana.commitment,
                "fee_payer": "(set)" if self.solana.fee_payer_secret_key else "(not set)",
            },
            "vault_secret": "(set)" if self.vault.secret else "(not set)",
            "custodial_enabled": str(self.custodial.enabled),
            "voting": {
                "cutoff_seconds": str(self.voting.cutoff_seconds),
                "approval_threshold": str(self.voting.approval_threshold),
                "claim_delay_seconds": str(self.voting.claim_delay_seconds),
                "delivery_grace_seconds": str(self.voting.delivery_grace_seconds),
            },
            "settlement": {
                "buyback_treasury_pubkey": self.settlement.buyback_treasury_pubkey or "(not set)",
                "buyback_bps": str(self.settlement.buyback_bps),
                "claim_ttl_seconds": str(self.settlement.claim_ttl_seconds),
                "enable_reward_payouts": str(self.settlement.enable_reward_payouts),
                "enable_milestone_failure_distributions": str(
                    self.settlement.enable_milestone_failure_distributions
                ),
                "enable_vote_reward_distributions": str(self.settlement.enable_vote_reward_distributions),
            },
            "vote_reward_mode": self.vote_reward.resolved_mode(),
            "fee_share_enabled": str(self.fee_share.enabled),
            "log_level": self.log_level,
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        The Settings instance.

    Raises:
        ValidationError: If environment variables have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
