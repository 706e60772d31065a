"""
Database service for MongoDB operations.
Handles the durable price cache, the append-only query log and per-chat settings.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from crypto_safety_api.models import (
    price_cache_document,
    query_log_document,
)

logger = logging.getLogger(__name__)


class DatabaseService:
    def __init__(self, mongo_url: str, database_name: str):
        self.client = AsyncIOMotorClient(mongo_url)
        self.db: AsyncIOMotorDatabase = self.client[database_name]

        # Collections
        self.price_cache = self.db["price_cache"]
        self.query_logs = self.db["query_logs"]
        self.chat_settings = self.db["chat_settings"]

    async def setup_indexes(self):
        """Create necessary indexes for performance."""
        await self.price_cache.create_index("key", unique=True)
        await self.price_cache.create_index("ttl_at")

        await self.query_logs.create_index("chat_id")
        await self.query_logs.create_index("created_at")

        await self.chat_settings.create_index("chat_id", unique=True)

        logger.info("Database indexes created")

    # =========================================================================
    # PRICE CACHE
    # =========================================================================

    async def get_cached_price(self, key: str, now: Optional[datetime] = None) -> Optional[dict]:
        """
        Get a cached payload by key.

        The store does not expire rows on its own: a row only counts as a hit
        while its ttl_at is still in the future.
        """
        row = await self.price_cache.find_one({"key": key})
        if not row:
            return None
        now = now or datetime.utcnow()
        ttl_at = row.get("ttl_at")
        if ttl_at is None or ttl_at <= now:
            return None
        return row.get("payload")

    async def upsert_cached_price(self, key: str, payload: dict, ttl_seconds: float) -> None:
        """Insert or refresh a cached payload with a new expiry."""
        ttl_at = datetime.utcnow() + timedelta(seconds=ttl_seconds)
        await self.price_cache.update_one(
            {"key": key},
            {
                "$set": price_cache_document(key, payload, ttl_at),
                "$setOnInsert": {"created_at": datetime.utcnow()},
            },
            upsert=True,
        )

    async def purge_expired_cache(self) -> int:
        """Delete cache rows whose ttl_at has passed. Returns the number removed."""
        result = await self.price_cache.delete_many({"ttl_at": {"$lte": datetime.utcnow()}})
        logger.info(f"Purged {result.deleted_count} expired price cache rows")
        return result.deleted_count

    # =========================================================================
    # QUERY LOG
    # =========================================================================

    async def log_query(
        self,
        chat_id: int,
        query_type: str,
        input_text: str,
        outcome: Optional[str] = None,
        latency_ms: Optional[int] = None,
        provider: Optional[str] = None,
        cache_key: Optional[str] = None,
    ) -> None:
        """Append a query log entry. Failures are logged, never raised."""
        try:
            await self.query_logs.insert_one(
                query_log_document(
                    chat_id=chat_id,
                    query_type=query_type,
                    input_text=input_text,
                    outcome=outcome,
                    latency_ms=latency_ms,
                    provider=provider,
                    cache_key=cache_key,
                )
            )
        except Exception as e:
            logger.error(f"Error writing query log for chat {chat_id}: {e}")

    async def get_recent_logs(self, chat_id: Optional[int] = None, limit: int = 5) -> list:
        """Get the most recent query log entries, optionally for one chat."""
        query = {} if chat_id is None else {"chat_id": chat_id}
        cursor = self.query_logs.find(query).sort("created_at", -1).limit(limit)
        return await cursor.to_list(length=limit)

    async def purge_old_logs(self, days: int) -> int:
        """Delete query log entries older than the retention window."""
        cutoff = datetime.utcnow() - timedelta(days=days)
        result = await self.query_logs.delete_many({"created_at": {"$lt": cutoff}})
        logger.info(f"Purged {result.deleted_count} query log entries older than {days} days")
        return result.deleted_count

    # =========================================================================
    # CHAT SETTINGS
    # =========================================================================

    async def get_chat_settings(self, chat_id: int) -> Optional[dict]:
        """Get stored settings for a chat."""
        return await self.chat_settings.find_one({"chat_id": chat_id})

    async def save_chat_settings(self, chat_id: int, settings: dict) -> None:
        """Upsert settings for a chat."""
        now = datetime.utcnow()
        await self.chat_settings.update_one(
            {"chat_id": chat_id},
            {
                "$set": {**settings, "chat_id": chat_id, "updated_at": now},
                "$setOnInsert": {"created_at": now},
            },
            upsert=True,
        )
