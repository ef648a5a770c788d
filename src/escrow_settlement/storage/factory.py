"""Store selection from settings."""

from __future__ import annotations

import logging

from escrow_settlement.config import Settings
from escrow_settlement.signing.vault import SecretVault
from escrow_settlement.storage.database import DatabaseManager
from escrow_settlement.storage.memory import InMemoryStore
from escrow_settlement.storage.sql import SqlStore
from escrow_settlement.storage.store import Store

logger = logging.getLogger(__name__)


async def create_store(settings: Settings, *, init_schema: bool = False) -> Store:
    """Build the durable store when a database is configured, else the in-memory one.

    Args:
        settings: Application settings.
        init_schema: Create missing tables (tests and local runs; production uses alembic).
    """
    if not settings.database.enabled or settings.database.url is None:
        logger.warning("DATABASE_URL is not set; using the in-memory store")
        return InMemoryStore()

    vault = SecretVault.from_settings(settings.vault)
    db = DatabaseManager.from_settings(settings.database)
    if init_schema:
        await db.create_schema()
    logger.info("Using %s store", db.dialect_name)
    return SqlStore(db, vault)
