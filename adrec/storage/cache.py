"""
Idempotency Cache

Two-tier record of recently notified event ids, used so that redelivered
events never notify a shopper twice.

L1: in-process TTLCache (sub-1ms)
L2: optional Redis, shared between pipeline processes
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Set

import redis.asyncio as redis_asyncio
from cachetools import TTLCache


@dataclass
class CacheStats:
    """Idempotency cache statistics"""
    hits: int = 0
    misses: int = 0
    total_requests: int = 0
    l2_errors: int = 0

    @property
    def hit_rate(self) -> float:
        return self.hits / max(1, self.total_requests)


class IdempotencyCache:
    """
    Bounded window of event ids that already produced a notification.

    `claim()` reserves an id before publishing so two workers handling the
    same event concurrently cannot both publish. With the shared tier the
    reservation is a `SET NX` on a short-lived pending key, so the same holds
    across processes. `confirm()` records the id for the dedup window once
    the publish succeeded and `release()` gives the claim back after a
    failed publish.
    """

    def __init__(
        self,
        window_seconds: float = 3600.0,
        max_entries: int = 100000,
        redis_client: Any = None,
        key_prefix: str = "adrec:notified:",
        claim_ttl: float = 30.0
    ):
        """
        Initialize the idempotency cache

        Args:
            window_seconds: How long a notified event id is remembered
            max_entries: Bound on the in-process window
            redis_client: Optional redis.asyncio client for the shared tier
            key_prefix: Redis key prefix
            claim_ttl: Seconds a pending claim holds the shared key if the
                process dies before confirming or releasing it
        """
        self.window_seconds = window_seconds
        self.max_entries = max_entries
        self.l1_cache = TTLCache(maxsize=max_entries, ttl=window_seconds, timer=time.monotonic)
        self.redis_client = redis_client
        self.key_prefix = key_prefix
        self.claim_ttl = claim_ttl

        self._pending: Set[str] = set()
        self._lock = asyncio.Lock()
        self.stats = CacheStats()

        self.logger = logging.getLogger(__name__)

    @classmethod
    def from_url(cls, redis_url: Optional[str], **kwargs) -> "IdempotencyCache":
        """Build a cache, connecting the Redis tier when a URL is given"""
        client = None
        if redis_url:
            client = redis_asyncio.from_url(redis_url)
        return cls(redis_client=client, **kwargs)

    async def seen(self, event_id: str) -> bool:
        """True if the event id was already notified within the window"""
        self.stats.total_requests += 1
        if event_id in self.l1_cache:
            self.stats.hits += 1
            return True

        if self.redis_client is not None:
            try:
                exists = await self.redis_client.exists(self.key_prefix + event_id)
            except Exception as e:
                self.stats.l2_errors += 1
                self.logger.error(f"Redis lookup failed for {event_id}: {e}")
                exists = False
            if exists:
                self.l1_cache[event_id] = True
                self.stats.hits += 1
                return True

        self.stats.misses += 1
        return False

    async def claim(self, event_id: str) -> bool:
        """
        Reserve an event id for publishing

        Returns:
            False if the id was already notified or is being published
        """
        async with self._lock:
            self.stats.total_requests += 1
            if event_id in self._pending or event_id in self.l1_cache:
                self.stats.hits += 1
                return False

            if self.redis_client is not None:
                try:
                    acquired = await self.redis_client.set(
                        self.key_prefix + event_id, "pending",
                        ex=max(1, int(self.claim_ttl)), nx=True
                    )
                except Exception as e:
                    self.stats.l2_errors += 1
                    self.logger.error(f"Redis claim failed for {event_id}: {e}")
                    acquired = True
                if not acquired:
                    self.stats.hits += 1
                    return False

            self.stats.misses += 1
            self._pending.add(event_id)
            return True

    async def confirm(self, event_id: str):
        """Record a successful publish for the dedup window"""
        self.l1_cache[event_id] = True
        self._pending.discard(event_id)

        if self.redis_client is not None:
            try:
                await self.redis_client.set(
                    self.key_prefix + event_id, 1, ex=max(1, int(self.window_seconds))
                )
            except Exception as e:
                self.stats.l2_errors += 1
                self.logger.error(f"Redis write failed for {event_id}: {e}")

    async def release(self, event_id: str):
        """Drop a claim after a failed publish so a redelivery can retry"""
        self._pending.discard(event_id)

        if self.redis_client is not None:
            try:
                await self.redis_client.delete(self.key_prefix + event_id)
            except Exception as e:
                self.stats.l2_errors += 1
                self.logger.error(f"Redis release failed for {event_id}: {e}")

    def __len__(self) -> int:
        return len(self.l1_cache)

    async def ping(self) -> bool:
        """Health check for the shared tier"""
        if self.redis_client is None:
            return True
        try:
            return bool(await self.redis_client.ping())
        except Exception as e:
            self.logger.error(f"Idempotency cache ping failed: {e}")
            return False

    def get_stats(self) -> Dict[str, Any]:
        return {
            "hit_rate": self.stats.hit_rate,
            "total_requests": self.stats.total_requests,
            "hits": self.stats.hits,
            "misses": self.stats.misses,
            "l2_errors": self.stats.l2_errors,
            "l1_size": len(self.l1_cache),
            "max_entries": self.max_entries,
            "window_seconds": self.window_seconds,
        }

    async def close(self):
        """Close cache connections"""
        self.logger.info("Closing idempotency cache...")

        if self.redis_client is not None:
            await self.redis_client.aclose()

        self.l1_cache.clear()
        self._pending.clear()
