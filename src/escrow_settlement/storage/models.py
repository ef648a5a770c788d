"""SQLAlchemy models for persistent storage.

This module defines the database schema for commitments, votes, voter
snapshots, distributions, allocations and claims.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class CommitmentModel(Base):
    """SQLAlchemy model for escrow commitments.

    Milestones are embedded as JSON; ``version`` guards concurrent
    read-modify-write of that column.
    """

    __tablename__ = "commitments"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)

    escrow_pubkey: Mapped[str] = mapped_column(String(44), nullable=False, unique=True)
    signer_kind: Mapped[str] = mapped_column(String(16), nullable=False)
    # Sealed secret key for local signers, wallet id for custodial ones.
    signer_payload: Mapped[str] = mapped_column(Text, nullable=False)

    authority: Mapped[str] = mapped_column(String(44), nullable=False)
    destination_on_fail: Mapped[str] = mapped_column(String(44), nullable=False)
    creator_pubkey: Mapped[str | None] = mapped_column(String(44), nullable=True)
    token_mint: Mapped[str | None] = mapped_column(String(44), nullable=True)

    amount_lamports: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    deadline_unix: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_funded_lamports: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    unlocked_lamports: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    milestones: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    fee_split: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    created_at_unix: Mapped[int] = mapped_column(BigInteger, nullable=False)
    resolved_at_unix: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    resolved_tx_sig: Mapped[str | None] = mapped_column(String(128), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    __table_args__ = (
        Index("idx_commitments_kind_status", "kind", "status"),
        Index("idx_commitments_created_at", "created_at_unix"),
    )


class VoteSignalModel(Base):
    """One vote per (commitment, milestone, signer)."""

    __tablename__ = "vote_signals"

    commitment_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    milestone_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    signer_pubkey: Mapped[str] = mapped_column(String(44), primary_key=True)

    vote: Mapped[str] = mapped_column(String(10), nullable=False)
    created_at_unix: Mapped[int] = mapped_column(BigInteger, nullable=False)
    weight_usd: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    project_price_usd: Mapped[float | None] = mapped_column(Float, nullable=True)

    __table_args__ = (
        Index("idx_vote_signals_signer", "signer_pubkey", "created_at_unix"),
        Index("idx_vote_signals_milestone", "commitment_id", "milestone_id"),
    )


class VoterSnapshotModel(Base):
    """Holdings captured when an in-window vote landed."""

    __tablename__ = "voter_snapshots"

    commitment_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    milestone_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    signer_pubkey: Mapped[str] = mapped_column(String(44), primary_key=True)

    project_mint: Mapped[str] = mapped_column(String(44), nullable=False)
    project_ui_amount: Mapped[float] = mapped_column(Float, nullable=False)
    project_price_usd: Mapped[float | None] = mapped_column(Float, nullable=True)
    project_value_usd: Mapped[float] = mapped_column(Float, nullable=False)
    ship_ui_amount: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    ship_multiplier_bps: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at_unix: Mapped[int] = mapped_column(BigInteger, nullable=False)


class DistributionModel(Base):
    """Create-once split of a pot, keyed by its parent."""

    __tablename__ = "distributions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    commitment_id: Mapped[str] = mapped_column(String(64), nullable=False)
    milestone_id: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    created_at_unix: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="open")

    pot_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    buyback_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    voter_pot_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    treasury_pubkey: Mapped[str | None] = mapped_column(String(44), nullable=True)
    voter_pot_to_treasury: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    mint_pubkey: Mapped[str | None] = mapped_column(String(44), nullable=True)
    token_program_pubkey: Mapped[str | None] = mapped_column(String(44), nullable=True)
    faucet_owner_pubkey: Mapped[str | None] = mapped_column(String(44), nullable=True)

    allocation_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    allocation_total: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    allocation_digest: Mapped[str] = mapped_column(String(64), nullable=False, default="")

    buyback_tx_sig: Mapped[str | None] = mapped_column(String(128), nullable=True)
    voter_pot_tx_sig: Mapped[str | None] = mapped_column(String(128), nullable=True)

    __table_args__ = (
        UniqueConstraint("kind", "commitment_id", "milestone_id", name="uq_distributions_parent"),
        Index("idx_distributions_commitment", "commitment_id"),
    )


class AllocationModel(Base):
    """Immutable per-wallet share of a distribution."""

    __tablename__ = "allocations"

    distribution_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    wallet_pubkey: Mapped[str] = mapped_column(String(44), primary_key=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    weight: Mapped[float] = mapped_column(Float, nullable=False)


class ClaimModel(Base):
    """Unit of payout idempotency."""

    __tablename__ = "claims"

    distribution_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    wallet_pubkey: Mapped[str] = mapped_column(String(44), primary_key=True)
    claimed_at_unix: Mapped[int] = mapped_column(BigInteger, nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    to_pubkey: Mapped[str] = mapped_column(String(44), nullable=False)
    tx_sig: Mapped[str | None] = mapped_column(String(128), nullable=True)

    __table_args__ = (Index("idx_claims_distribution", "distribution_id"),)
