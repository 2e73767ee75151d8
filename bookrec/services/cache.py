"""Per-user recommendation cache in Redis.

Each user has one hash, ``rec:cache:{user_id}``, holding both list slots and
the freshness fields. A write replaces the whole hash in one MULTI/EXEC and
(re)arms a key TTL of ``retention_days``, which is what physically reclaims
entries nobody touches. Freshness is separate and logical: an entry is fresh
iff it is not flagged stale and ``expires_at`` is still ahead of ``now``.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Literal, Optional

import redis.asyncio as redis
import structlog

from bookrec.clock import parse_iso, utcnow
from bookrec.metrics import CACHE_LOOKUPS
from bookrec.schemas.recommendation import CacheEntry, Recommendation

logger = structlog.get_logger()

Slot = Literal["home", "friends"]

MARK_STALE_ATTEMPTS = 3


def cache_key(user_id: int) -> str:
    return f"rec:cache:{user_id}"


def _dump(recommendations: list[Recommendation]) -> str:
    return json.dumps([r.cache_payload() for r in recommendations], default=str)


def _load(raw: Optional[str]) -> list[Recommendation]:
    if not raw:
        return []
    return [Recommendation.model_validate(item) for item in json.loads(raw)]


class RecommendationCache:
    def __init__(self, client: redis.Redis, ttl_hours: float = 1.0, retention_days: int = 7):
        self._redis = client
        self.ttl_hours = ttl_hours
        self.retention_seconds = int(timedelta(days=retention_days).total_seconds())

    async def cache_recommendations(
        self,
        user_id: int,
        home: list[Recommendation],
        friends: Optional[list[Recommendation]] = None,
        *,
        algorithm: str = "hybrid",
        home_requested: Optional[int] = None,
        friends_requested: Optional[int] = None,
        ttl_hours: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> Optional[CacheEntry]:
        """Upsert both slots, clear the stale flag, and start a new TTL window.

        ``home_requested`` / ``friends_requested`` are the sizes the lists were
        generated for (default: their length), so a short list that is all the
        pipeline could produce still satisfies later requests of that size.
        """
        now = now or utcnow()
        friends = friends or []
        entry = CacheEntry(
            user_id=user_id,
            home=home,
            friends=friends,
            algorithm=algorithm,
            generated_at=now,
            expires_at=now + timedelta(hours=ttl_hours if ttl_hours is not None else self.ttl_hours),
            is_stale=False,
            home_requested=max(home_requested or 0, len(home)),
            friends_requested=max(friends_requested or 0, len(friends)),
        )
        key = cache_key(user_id)
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.delete(key)
                pipe.hset(
                    key,
                    mapping={
                        "user_id": str(user_id),
                        "home": _dump(entry.home),
                        "friends": _dump(entry.friends),
                        "algorithm": algorithm,
                        "generated_at": entry.generated_at.isoformat(),
                        "expires_at": entry.expires_at.isoformat(),
                        "is_stale": "0",
                        "home_requested": str(entry.home_requested),
                        "friends_requested": str(entry.friends_requested),
                    },
                )
                pipe.expire(key, self.retention_seconds)
                await pipe.execute()
        except redis.RedisError as exc:
            logger.warning("cache_set_error", user_id=user_id, error=str(exc))
            return None
        logger.info(
            "recommendations_cached",
            user_id=user_id,
            home=len(entry.home),
            friends=len(entry.friends),
            algorithm=algorithm,
        )
        return entry

    async def get_entry(self, user_id: int) -> Optional[CacheEntry]:
        try:
            data = await self._redis.hgetall(cache_key(user_id))
        except redis.RedisError as exc:
            logger.warning("cache_get_error", user_id=user_id, error=str(exc))
            return None
        if not data or "expires_at" not in data:
            return None
        return CacheEntry(
            user_id=user_id,
            home=_load(data.get("home")),
            friends=_load(data.get("friends")),
            algorithm=data.get("algorithm", "hybrid"),
            generated_at=parse_iso(data.get("generated_at")) or parse_iso(data["expires_at"]),
            expires_at=parse_iso(data["expires_at"]),
            is_stale=data.get("is_stale") == "1",
            home_requested=int(data.get("home_requested") or 0),
            friends_requested=int(data.get("friends_requested") or 0),
        )

    async def is_fresh(self, user_id: int, now: Optional[datetime] = None) -> bool:
        entry = await self.get_entry(user_id)
        if entry is None:
            return False
        return await self._check_fresh(entry, now or utcnow())

    async def _check_fresh(self, entry: CacheEntry, now: datetime) -> bool:
        if entry.is_fresh(now):
            return True
        if not entry.is_stale:
            # Time ran out; record it so later checks need not compare clocks
            await self._mark_stale([entry.user_id])
        return False

    async def get_fresh(
        self,
        user_id: int,
        slot: Slot = "home",
        limit: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Optional[list[Recommendation]]:
        """The slot's list (at most ``limit`` items) if it is fresh and can answer a
        request of that size, else None."""
        entry = await self.get_entry(user_id)
        if entry is None:
            CACHE_LOOKUPS.labels(slot=slot, result="miss").inc()
            return None
        if not await self._check_fresh(entry, now or utcnow()):
            CACHE_LOOKUPS.labels(slot=slot, result="stale").inc()
            return None
        items = entry.home if slot == "home" else entry.friends
        if not items:
            CACHE_LOOKUPS.labels(slot=slot, result="empty").inc()
            return None
        if limit is not None and not entry.covers(slot, limit):
            CACHE_LOOKUPS.labels(slot=slot, result="short").inc()
            return None
        CACHE_LOOKUPS.labels(slot=slot, result="hit").inc()
        return items[:limit] if limit is not None else items

    async def get_stale(self, user_id: int, slot: Slot = "home") -> Optional[list[Recommendation]]:
        """Retained content regardless of freshness, for degraded responses only."""
        entry = await self.get_entry(user_id)
        if entry is None:
            return None
        items = entry.home if slot == "home" else entry.friends
        return items or None

    async def invalidate(self, user_id: int) -> None:
        await self.invalidate_many([user_id])

    async def invalidate_many(self, user_ids: Iterable[int]) -> None:
        ids = list(dict.fromkeys(user_ids))
        if not ids:
            return
        await self._mark_stale(ids)
        logger.info("cache_invalidated", user_ids=ids)

    async def _mark_stale(self, user_ids: list[int]) -> None:
        """Flag existing entries stale without ever creating a hash.

        The existence check and the write run under WATCH, so a key that
        expires in between aborts the transaction instead of leaving a
        TTL-less ``is_stale``-only hash behind.
        """
        keys = [cache_key(user_id) for user_id in user_ids]
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                for _ in range(MARK_STALE_ATTEMPTS):
                    try:
                        await pipe.watch(*keys)
                        present = [key for key in keys if await pipe.exists(key)]
                        if not present:
                            await pipe.reset()
                            return
                        pipe.multi()
                        for key in present:
                            pipe.hset(key, "is_stale", "1")
                        await pipe.execute()
                        return
                    except redis.WatchError:
                        await pipe.reset()
                        continue
            logger.warning("cache_invalidate_contended", user_ids=user_ids)
        except redis.RedisError as exc:
            logger.warning("cache_invalidate_error", user_ids=user_ids, error=str(exc))

    async def users_needing_refresh(
        self, user_ids: Iterable[int], now: Optional[datetime] = None
    ) -> list[int]:
        now = now or utcnow()
        stale = []
        for user_id in user_ids:
            if not await self.is_fresh(user_id, now):
                stale.append(user_id)
        return stale
