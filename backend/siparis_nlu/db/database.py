# backend/siparis_nlu/db/database.py
from typing import Any, Dict

from databases import Database

from ..core.config import Settings, settings
import logging

logger = logging.getLogger(__name__)


def _pool_options(config: Settings) -> Dict[str, Any]:
    # SQLite (testler / yerel deneme) havuz ayarlarını kabul etmez
    if config.DATABASE_URL.startswith("sqlite"):
        return {}
    # min_size max_size'tan küçük veya eşit olmalı (validasyon)
    return {
        "min_size": min(config.DB_POOL_MIN_SIZE, config.DB_POOL_MAX_SIZE),
        "max_size": max(config.DB_POOL_MIN_SIZE, config.DB_POOL_MAX_SIZE),
        "command_timeout": config.DB_COMMAND_TIMEOUT,
    }


def create_database(config: Settings = settings) -> Database:
    """Ana DB (PostgreSQL); intent kayıtları burada tutulur."""
    return Database(config.DATABASE_URL, **_pool_options(config))


async def connect_all(database: Database) -> None:
    if not database.is_connected:
        logger.info("[DB] Connecting to database...")
        await database.connect()


async def disconnect_all(database: Database) -> None:
    if database.is_connected:
        await database.disconnect()
        logger.info("[DB] Database disconnected")
