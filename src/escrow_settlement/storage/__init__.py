"""Storage layer - the Store interface, its SQL and in-memory implementations."""

from escrow_settlement.storage.database import DatabaseManager, to_async_url
from escrow_settlement.storage.factory import create_store
from escrow_settlement.storage.memory import InMemoryStore
from escrow_settlement.storage.models import (
    AllocationModel,
    Base,
    ClaimModel,
    CommitmentModel,
    DistributionModel,
    VoterSnapshotModel,
    VoteSignalModel,
)
from escrow_settlement.storage.sql import SqlStore
from escrow_settlement.storage.store import PENDING_TX_SIG, Store, tx_sig_is_empty

__all__ = [
    "PENDING_TX_SIG",
    "AllocationModel",
    "Base",
    "ClaimModel",
    "CommitmentModel",
    "DatabaseManager",
    "DistributionModel",
    "InMemoryStore",
    "SqlStore",
    "Store",
    "VoteSignalModel",
    "VoterSnapshotModel",
    "create_store",
    "to_async_url",
    "tx_sig_is_empty",
]
