"""
Idempotency store for verify callbacks and webhook deliveries.

This module implements a two-tier store:
1. Redis cache for fast lookups (primary)
2. Database table for persistence when Redis is cold or unavailable

Results are saved through their own session, after the caller's
transaction has committed, so a rolled-back mutation is never cached.
"""
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from orderflow.config import Settings, get_settings
from orderflow.database.models import IdempotencyRecord, utcnow
from orderflow.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

REDIS_PREFIX = "idempotency:"


def _remaining_seconds(expires_at: datetime) -> int:
    # SQLite hands back naive datetimes
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return int((expires_at - utcnow()).total_seconds())


class IdempotencyStore:
    """
    Stores computed results keyed by an immutable identifier.

    A second lookup with the same key inside the TTL returns exactly the
    stored payload.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        redis_client: Optional[aioredis.Redis] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize idempotency store.

        Args:
            session_factory: Factory for the store's own database sessions
            redis_client: Optional Redis client (created from settings if a URL is set)
            settings: Optional settings override
        """
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self.redis_client = redis_client

    def _get_redis(self) -> Optional[aioredis.Redis]:
        """Lazily create the Redis client when a URL is configured."""
        if self.redis_client is None and self.settings.redis_url:
            self.redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self.redis_client

    @staticmethod
    def verify_key(gateway_payment_id: str) -> str:
        """Key for a verify callback, derived from the gateway payment id."""
        return f"payment_verify:{gateway_payment_id}"

    @staticmethod
    def webhook_key(event_type: str, entity_id: str) -> str:
        """Key for a webhook delivery."""
        return f"webhook:{event_type}:{entity_id}"

    async def check(self, key: str) -> Optional[Dict[str, Any]]:
        """
        Return the stored result for a key, or None.

        Redis is consulted first; on a miss or Redis error the database
        tier is read and, when found, Redis is re-warmed.
        """
        redis = self._get_redis()
        if redis is not None:
            try:
                cached = await redis.get(f"{REDIS_PREFIX}{key}")
                if cached:
                    logger.info("idempotency_cache_hit", idempotency_key=key, source="redis")
                    metrics.record_idempotency_cache_hit("redis")
                    return json.loads(cached)
            except Exception as e:
                logger.warning("redis_cache_error", error=str(e), idempotency_key=key)

        async with self.session_factory() as session:
            stmt = select(IdempotencyRecord).where(
                IdempotencyRecord.key == key,
                IdempotencyRecord.expires_at > utcnow(),
            )
            record = (await session.execute(stmt)).scalar_one_or_none()

        if record is None:
            logger.info("idempotency_cache_miss", idempotency_key=key)
            metrics.record_idempotency_cache_hit("miss")
            return None

        logger.info("idempotency_cache_hit", idempotency_key=key, source="database")
        metrics.record_idempotency_cache_hit("database")
        await self._cache(key, record.result, _remaining_seconds(record.expires_at))
        return record.result

    async def _cache(
        self, key: str, result: Dict[str, Any], ttl_seconds: int, replace: bool = False
    ) -> None:
        """Write to Redis; unless replacing, an already cached value is kept."""
        redis = self._get_redis()
        if redis is None or ttl_seconds <= 0:
            return
        try:
            await redis.set(
                f"{REDIS_PREFIX}{key}", json.dumps(result), ex=ttl_seconds, nx=not replace
            )
        except Exception as e:
            logger.warning("idempotency_cache_store_error", error=str(e), idempotency_key=key)

    async def save(
        self, key: str, result: Dict[str, Any], ttl_seconds: int, replace: bool = False
    ) -> Dict[str, Any]:
        """
        Store a result for a key unless one is already stored.

        The first writer wins: a live record is kept, so every replay
        returns the same payload. Expired rows are overwritten. Pass
        replace=True only from the caller that applied the state change;
        its result supersedes a placeholder a concurrent duplicate stored.
        The database row is authoritative; Redis errors are logged and
        ignored.

        Returns:
            The payload now stored for the key
        """
        payload = json.loads(json.dumps(result, default=str))
        expires_at = utcnow() + timedelta(seconds=ttl_seconds)
        stored, stored_ttl = payload, ttl_seconds

        try:
            async with self.session_factory() as session:
                existing = await session.get(IdempotencyRecord, key)
                if existing is None:
                    session.add(IdempotencyRecord(key=key, result=payload, expires_at=expires_at))
                elif not replace and _remaining_seconds(existing.expires_at) > 0:
                    stored, stored_ttl = existing.result, _remaining_seconds(existing.expires_at)
                else:
                    existing.result = payload
                    existing.expires_at = expires_at
                    existing.created_at = utcnow()
                await session.commit()
        except IntegrityError:
            # Lost the insert race to a concurrent save
            async with self.session_factory() as session:
                winner = await session.get(IdempotencyRecord, key)
                if winner is not None and replace:
                    winner.result = payload
                    winner.expires_at = expires_at
                    await session.commit()
                elif winner is not None:
                    stored, stored_ttl = winner.result, _remaining_seconds(winner.expires_at)
        except Exception as e:
            logger.warning("idempotency_db_store_error", error=str(e), idempotency_key=key)

        await self._cache(key, stored, stored_ttl, replace=replace and stored is payload)

        if stored is payload:
            logger.info("idempotency_result_stored", idempotency_key=key, ttl_seconds=ttl_seconds)
        else:
            logger.info("idempotency_result_kept", idempotency_key=key)
        return stored

    async def invalidate(self, key: str) -> None:
        """
        Drop a stored result from both tiers.

        Args:
            key: The idempotency key to invalidate
        """
        async with self.session_factory() as session:
            await session.execute(delete(IdempotencyRecord).where(IdempotencyRecord.key == key))
            await session.commit()

        redis = self._get_redis()
        if redis is not None:
            try:
                await redis.delete(f"{REDIS_PREFIX}{key}")
            except Exception as e:
                logger.warning("idempotency_cache_invalidate_error", error=str(e), idempotency_key=key)
        logger.info("idempotency_key_invalidated", idempotency_key=key)

    async def cleanup_expired(self) -> int:
        """Delete expired database rows. Redis expires its own keys."""
        async with self.session_factory() as session:
            result = await session.execute(
                delete(IdempotencyRecord).where(IdempotencyRecord.expires_at <= utcnow())
            )
            await session.commit()
        deleted = result.rowcount or 0
        logger.info("idempotency_expired_keys_deleted", count=deleted)
        return deleted

    async def close(self) -> None:
        """Close Redis connection."""
        if self.redis_client is not None:
            await self.redis_client.aclose()
