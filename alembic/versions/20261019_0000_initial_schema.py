"""Initial schema for commitments, votes, distributions and claims.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Commitments with embedded milestones
    op.create_table(
        "commitments",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("kind", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("escrow_pubkey", sa.String(44), nullable=False),
        sa.Column("signer_kind", sa.String(16), nullable=False),
        sa.Column("signer_payload", sa.Text(), nullable=False),
        sa.Column("authority", sa.String(44), nullable=False),
        sa.Column("destination_on_fail", sa.String(44), nullable=False),
        sa.Column("creator_pubkey", sa.String(44), nullable=True),
        sa.Column("token_mint", sa.String(44), nullable=True),
        sa.Column("amount_lamports", sa.BigInteger(), nullable=False),
        sa.Column("deadline_unix", sa.BigInteger(), nullable=False),
        sa.Column("total_funded_lamports", sa.BigInteger(), nullable=False),
        sa.Column("unlocked_lamports", sa.BigInteger(), nullable=False),
        sa.Column("milestones", sa.JSON(), nullable=False),
        sa.Column("fee_split", sa.JSON(), nullable=True),
        sa.Column("created_at_unix", sa.BigInteger(), nullable=False),
        sa.Column("resolved_at_unix", sa.BigInteger(), nullable=True),
        sa.Column("resolved_tx_sig", sa.String(128), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("escrow_pubkey"),
    )
    op.create_index("idx_commitments_kind_status", "commitments", ["kind", "status"])
    op.create_index("idx_commitments_created_at", "commitments", ["created_at_unix"])

    # Votes, first insert wins
    op.create_table(
        "vote_signals",
        sa.Column("commitment_id", sa.String(64), nullable=False),
        sa.Column("milestone_id", sa.String(64), nullable=False),
        sa.Column("signer_pubkey", sa.String(44), nullable=False),
        sa.Column("vote", sa.String(10), nullable=False),
        sa.Column("created_at_unix", sa.BigInteger(), nullable=False),
        sa.Column("weight_usd", sa.Float(), nullable=False),
        sa.Column("project_price_usd", sa.Float(), nullable=True),
        sa.PrimaryKeyConstraint("commitment_id", "milestone_id", "signer_pubkey"),
    )
    op.create_index("idx_vote_signals_signer", "vote_signals", ["signer_pubkey", "created_at_unix"])
    op.create_index("idx_vote_signals_milestone", "vote_signals", ["commitment_id", "milestone_id"])

    op.create_table(
        "voter_snapshots",
        sa.Column("commitment_id", sa.String(64), nullable=False),
        sa.Column("milestone_id", sa.String(64), nullable=False),
        sa.Column("signer_pubkey", sa.String(44), nullable=False),
        sa.Column("project_mint", sa.String(44), nullable=False),
        sa.Column("project_ui_amount", sa.Float(), nullable=False),
        sa.Column("project_price_usd", sa.Float(), nullable=True),
        sa.Column("project_value_usd", sa.Float(), nullable=False),
        sa.Column("ship_ui_amount", sa.Float(), nullable=False),
        sa.Column("ship_multiplier_bps", sa.Integer(), nullable=False),
        sa.Column("created_at_unix", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("commitment_id", "milestone_id", "signer_pubkey"),
    )

    # Distributions and their allocations
    op.create_table(
        "distributions",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("kind", sa.String(20), nullable=False),
        sa.Column("commitment_id", sa.String(64), nullable=False),
        sa.Column("milestone_id", sa.String(64), nullable=False, server_default=""),
        sa.Column("created_at_unix", sa.BigInteger(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="open"),
        sa.Column("pot_amount", sa.BigInteger(), nullable=False),
        sa.Column("buyback_amount", sa.BigInteger(), nullable=False),
        sa.Column("voter_pot_amount", sa.BigInteger(), nullable=False),
        sa.Column("treasury_pubkey", sa.String(44), nullable=True),
        sa.Column("voter_pot_to_treasury", sa.Boolean(), nullable=False),
        sa.Column("mint_pubkey", sa.String(44), nullable=True),
        sa.Column("token_program_pubkey", sa.String(44), nullable=True),
        sa.Column("faucet_owner_pubkey", sa.String(44), nullable=True),
        sa.Column("allocation_count", sa.Integer(), nullable=False),
        sa.Column("allocation_total", sa.BigInteger(), nullable=False),
        sa.Column("allocation_digest", sa.String(64), nullable=False),
        sa.Column("buyback_tx_sig", sa.String(128), nullable=True),
        sa.Column("voter_pot_tx_sig", sa.String(128), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("kind", "commitment_id", "milestone_id", name="uq_distributions_parent"),
    )
    op.create_index("idx_distributions_commitment", "distributions", ["commitment_id"])

    op.create_table(
        "allocations",
        sa.Column("distribution_id", sa.String(64), nullable=False),
        sa.Column("wallet_pubkey", sa.String(44), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("weight", sa.Float(), nullable=False),
        sa.PrimaryKeyConstraint("distribution_id", "wallet_pubkey"),
    )

    # Claims: one row per (distribution, wallet) payout attempt
    op.create_table(
        "claims",
        sa.Column("distribution_id", sa.String(128), nullable=False),
        sa.Column("wallet_pubkey", sa.String(44), nullable=False),
        sa.Column("claimed_at_unix", sa.BigInteger(), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("to_pubkey", sa.String(44), nullable=False),
        sa.Column("tx_sig", sa.String(128), nullable=True),
        sa.PrimaryKeyConstraint("distribution_id", "wallet_pubkey"),
    )
    op.create_index("idx_claims_distribution", "claims", ["distribution_id"])


def downgrade() -> None:
    op.drop_index("idx_claims_distribution", table_name="claims")
    op.drop_table("claims")
    op.drop_table("allocations")
    op.drop_index("idx_distributions_commitment", table_name="distributions")
    op.drop_table("distributions")
    op.drop_table("voter_snapshots")
    op.drop_index("idx_vote_signals_milestone", table_name="vote_signals")
    op.drop_index("idx_vote_signals_signer", table_name="vote_signals")
    op.drop_table("vote_signals")
    op.drop_index("idx_commitments_created_at", table_name="commitments")
    op.drop_index("idx_commitments_kind_status", table_name="commitments")
    op.drop_table("commitments")
