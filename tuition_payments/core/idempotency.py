"""
Idempotency guard for payment events.

This module implements a two-tier check:
1. Redis set of recently applied order ids (optional fast path)
2. Applied-record lookup inside the ledger unit of work (authoritative)

Events with an order id apply at most once per order id, whatever their
source or amount. Admin manual entries without an order id always apply.
"""
from typing import Optional

import redis.asyncio as aioredis
import structlog

from tuition_payments.config import Settings, get_settings
from tuition_payments.core.values import (
    AppliedEventRecord,
    Bill,
    OrderKind,
    PaymentEvent,
)
from tuition_payments.database.ledger_store import LedgerUnitOfWork

logger = structlog.get_logger(__name__)


def manual_order_id(bill_id: int, token: str) -> str:
    """Order id for an administrator entry submitted with an idempotency token."""
    return f"{OrderKind.MANUAL.value}-{bill_id}-{token}"


class IdempotencyGuard:
    """
    Decides whether a payment event has already been applied.

    The guard never mutates a bill. should_apply() and record() must be
    called with the same unit of work as the bill update.
    """

    def __init__(
        self,
        redis_client: Optional[aioredis.Redis] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize idempotency guard.

        Args:
            redis_client: Optional Redis client (created from settings.redis_url if not provided)
            settings: Optional settings override
        """
        self.settings = settings or get_settings()
        self.redis_client = redis_client
        self._redis_initialized = False

    async def _ensure_redis(self) -> Optional[aioredis.Redis]:
        """Ensure Redis client is initialized; None when no cache is configured."""
        if self.redis_client is None and self.settings.redis_url:
            self.redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            self._redis_initialized = True
        return self.redis_client

    @staticmethod
    def key_for(event: PaymentEvent) -> Optional[str]:
        """Idempotency key of an event, or None when the event is never deduplicated."""
        if event.external_order_id:
            return event.external_order_id
        return None

    async def seen_recently(self, event: PaymentEvent) -> bool:
        """
        Fast-path check against the Redis cache.

        A miss (or any Redis error) means "unknown"; the ledger check decides.
        """
        key = event.external_order_id
        if not key:
            return False
        try:
            redis = await self._ensure_redis()
            if redis is None:
                return False
            if await redis.exists(f"applied_order:{key}"):
                logger.info("idempotency_cache_hit", order_id=key, source="redis")
                return True
        except Exception as e:
            logger.warning("redis_cache_error", error=str(e), order_id=key)
        return False

    async def should_apply(self, event: PaymentEvent, uow: LedgerUnitOfWork) -> bool:
        """
        Check whether the event still needs to be applied.

        Args:
            event: Incoming payment event
            uow: Open ledger unit of work

        Returns:
            bool: False when an applied record with the same key exists
        """
        key = self.key_for(event)
        if key is None:
            return True

        existing = await uow.find_applied_record(key)
        if existing is not None:
            logger.info(
                "idempotency_cache_hit",
                order_id=key,
                source="ledger",
                existing_source=existing.source.value,
                bill_id=event.bill_id,
            )
            return False

        logger.debug("idempotency_cache_miss", order_id=key)
        return True

    async def record(
        self,
        event: PaymentEvent,
        bill: Bill,
        applied_amount: int,
        uow: LedgerUnitOfWork,
    ) -> AppliedEventRecord:
        """
        Append the applied record for an event.

        Args:
            event: Applied event
            bill: Bill the event was applied to
            applied_amount: Amount that actually moved amount_paid
            uow: Open ledger unit of work

        Returns:
            AppliedEventRecord: The appended record
        """
        record = AppliedEventRecord(
            bill_id=bill.id,
            owner_id=bill.owner_id,
            source=event.source,
            external_order_id=event.external_order_id,
            dedup_key=event.dedup_key,
            amount=applied_amount,
            requested_amount=event.amount,
            method_label=event.method_label,
            occurred_at=event.occurred_at,
        )
        return await uow.append_installment_record(record)

    async def remember(self, event: PaymentEvent) -> None:
        """Cache an applied order id after commit."""
        key = event.external_order_id
        if not key:
            return
        try:
            redis = await self._ensure_redis()
            if redis is None:
                return
            await redis.setex(
                f"applied_order:{key}", self.settings.applied_order_cache_ttl, "1"
            )
            logger.debug("idempotency_key_cached", order_id=key)
        except Exception as e:
            logger.warning("idempotency_cache_store_error", error=str(e), order_id=key)

    async def close(self) -> None:
        """Close Redis connection."""
        if self.redis_client is not None and self._redis_initialized:
            await self.redis_client.aclose()
