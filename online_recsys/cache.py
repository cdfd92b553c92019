"""
Recommendation Cache Layer

Two interchangeable key-value stores with per-entry TTL and tag-based
invalidation:
- InMemoryCacheStore: single process, cachetools TLRU cache
- RedisCacheStore: shared, Redis strings + one Redis set per tag

RecommendationCache sits on top of a store and holds per-user point
predictions and per-(user, count) recommendation lists. Store failures are
logged and degrade to a cache miss; they never reach the caller.
"""

import json
import logging
import threading
import time
from collections import defaultdict
from typing import Any, Callable, Dict, Hashable, Iterable, List, NamedTuple, Optional, Set

import redis
from cachetools import TLRUCache

from . import config
from .events import Recommendation
from .exceptions import CacheUnavailable

logger = logging.getLogger(__name__)


# =================================================================
# STORES
# =================================================================

class CacheStore:
    """Contract every cache backend implements."""

    def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    def set(self, key: str, value: Any, ttl: float, tags: Iterable[str] = ()) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> bool:
        raise NotImplementedError

    def invalidate_tag(self, tag: str) -> int:
        raise NotImplementedError

    def ping(self) -> bool:
        raise NotImplementedError


class _Entry(NamedTuple):
    value: Any
    ttl: float


class _TaggedTLRUCache(TLRUCache):
    """TLRUCache that reports keys it drops on its own (LRU eviction, expiry)."""

    def __init__(self, maxsize, ttu, timer, on_remove: Callable[[str], None]):
        super().__init__(maxsize=maxsize, ttu=ttu, timer=timer)
        self._on_remove = on_remove

    def popitem(self):
        key, value = super().popitem()
        self._on_remove(key)
        return key, value

    def expire(self, time=None):
        expired = super().expire(time)
        for key, _ in expired or ():
            self._on_remove(key)
        return expired


class InMemoryCacheStore(CacheStore):
    """
    In-process store backed by cachetools.TLRUCache.

    Each entry carries its own TTL. A tag index maps tag -> keys and a
    reverse index remembers which tags a key was last written with, so
    re-writing a key under different tags never leaves it reachable from a
    stale tag.
    """

    def __init__(self, max_entries: Optional[int] = None,
                 timer: Callable[[], float] = time.monotonic):
        max_entries = max_entries or config.CACHE_CONFIG["max_entries"]
        self._entries = _TaggedTLRUCache(maxsize=max_entries, ttu=self._time_to_use, timer=timer,
                                         on_remove=self._forget_key)
        self._tags: Dict[str, Set[str]] = defaultdict(set)
        self._key_tags: Dict[str, Set[str]] = {}
        self._lock = threading.RLock()

    @staticmethod
    def _time_to_use(key, entry: _Entry, now: float) -> float:
        return now + entry.ttl

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                # Expired but not yet purged
                self._forget_key(key)
                return None
            return entry.value

    def set(self, key: str, value: Any, ttl: float, tags: Iterable[str] = ()) -> None:
        new_tags = set(tags)
        with self._lock:
            self._entries[key] = _Entry(value, ttl)
            for old_tag in self._key_tags.get(key, set()) - new_tags:
                self._discard_from_tag(old_tag, key)
            for tag in new_tags:
                self._tags[tag].add(key)
            self._key_tags[key] = new_tags

    def _discard_from_tag(self, tag: str, key: str) -> None:
        keys = self._tags.get(tag)
        if keys is not None:
            keys.discard(key)
            if not keys:
                del self._tags[tag]

    def _forget_key(self, key: str) -> None:
        for tag in self._key_tags.pop(key, set()):
            self._discard_from_tag(tag, key)

    def delete(self, key: str) -> bool:
        with self._lock:
            self._forget_key(key)
            return self._entries.pop(key, None) is not None

    def invalidate_tag(self, tag: str) -> int:
        with self._lock:
            keys = self._tags.pop(tag, set())
            removed = 0
            for key in keys:
                self._forget_key(key)
                if self._entries.pop(key, None) is not None:
                    removed += 1
            return removed

    def ping(self) -> bool:
        return True

    def tagged_keys(self, tag: str) -> Set[str]:
        """Keys currently indexed under tag."""
        with self._lock:
            return set(self._tags.get(tag, ()))

    def __len__(self) -> int:
        with self._lock:
            self._entries.expire()
            return len(self._entries)


class RedisCacheStore(CacheStore):
    """
    Redis-backed store. Values are JSON encoded; each tag is a Redis set
    (cache_tag:<tag>) holding the keys written with it.
    """

    TAG_PREFIX = "cache_tag:"

    def __init__(self, client: Optional[redis.Redis] = None,
                 url: Optional[str] = None,
                 tag_ttl_buffer: Optional[int] = None):
        self._client = client or redis.Redis.from_url(
            url or config.CACHE_CONFIG["redis_url"], decode_responses=True)
        self.tag_ttl_buffer = (tag_ttl_buffer if tag_ttl_buffer is not None
                               else config.CACHE_CONFIG["tag_ttl_buffer"])

    def _tag_key(self, tag: str) -> str:
        return f"{self.TAG_PREFIX}{tag}"

    def get(self, key: str) -> Optional[Any]:
        try:
            raw = self._client.get(key)
        except redis.RedisError as e:
            raise CacheUnavailable(f"GET {key} failed: {e}") from e
        if raw is None:
            return None
        return json.loads(raw)

    def set(self, key: str, value: Any, ttl: float, tags: Iterable[str] = ()) -> None:
        ttl = max(1, int(ttl))
        try:
            self._client.setex(key, ttl, json.dumps(value))
            for tag in tags:
                tag_key = self._tag_key(tag)
                self._client.sadd(tag_key, key)
                self._client.expire(tag_key, ttl + self.tag_ttl_buffer)
        except redis.RedisError as e:
            raise CacheUnavailable(f"SET {key} failed: {e}") from e

    def delete(self, key: str) -> bool:
        try:
            return bool(self._client.delete(key))
        except redis.RedisError as e:
            raise CacheUnavailable(f"DEL {key} failed: {e}") from e

    def invalidate_tag(self, tag: str) -> int:
        tag_key = self._tag_key(tag)
        try:
            keys = self._client.smembers(tag_key)
            if not keys:
                return 0
            self._client.delete(*keys)
            self._client.delete(tag_key)
        except redis.RedisError as e:
            raise CacheUnavailable(f"Invalidating tag {tag} failed: {e}") from e
        return len(keys)

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except redis.RedisError as e:
            raise CacheUnavailable(f"PING failed: {e}") from e


def create_cache_store(backend: Optional[str] = None) -> CacheStore:
    """Build the store named by CACHE_CONFIG['backend'] ("memory" or "redis")."""
    backend = (backend or config.CACHE_CONFIG["backend"]).lower()
    if backend == "memory":
        return InMemoryCacheStore()
    if backend == "redis":
        return RedisCacheStore()
    raise ValueError(f"Unknown cache backend {backend!r}")


# =================================================================
# RECOMMENDATION CACHE
# =================================================================

class RecommendationCache:
    """
    Point-prediction and recommendation-list cache over a CacheStore.

    Key layout:
    - user-predictions:<user>        {item_id: value}, tag predictions:<user>
    - recommendations:<user>:<count> [Recommendation...], tags user:<user>,
                                     recommendations, popularity
    """

    POPULARITY_TAG = "popularity"
    RECOMMENDATIONS_TAG = "recommendations"

    def __init__(self, store: Optional[CacheStore] = None,
                 recommendation_ttl: Optional[float] = None,
                 prediction_ttl: Optional[float] = None):
        self.store = store if store is not None else create_cache_store()
        self.recommendation_ttl = (recommendation_ttl if recommendation_ttl is not None
                                   else config.CACHE_CONFIG["recommendation_ttl"])
        self.prediction_ttl = (prediction_ttl if prediction_ttl is not None
                               else config.CACHE_CONFIG["prediction_ttl"])
        self._prediction_lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self.stats = {"hits": 0, "misses": 0, "errors": 0}

    # ------------------------------------------------------------------
    # Keys and tags
    # ------------------------------------------------------------------

    @staticmethod
    def user_tag(user_id: Hashable) -> str:
        return f"user:{user_id}"

    @staticmethod
    def prediction_tag(user_id: Hashable) -> str:
        return f"predictions:{user_id}"

    @staticmethod
    def prediction_key(user_id: Hashable) -> str:
        return f"user-predictions:{user_id}"

    @staticmethod
    def recommendation_key(user_id: Hashable, count: int) -> str:
        return f"recommendations:{user_id}:{count}"

    # ------------------------------------------------------------------
    # Degradation
    # ------------------------------------------------------------------

    def _record(self, stat: str) -> None:
        with self._stats_lock:
            self.stats[stat] += 1

    def _guarded(self, operation: str, fn: Callable[[], Any], default: Any = None) -> Any:
        try:
            return fn()
        except Exception as e:
            self._record("errors")
            logger.warning(f"Cache unavailable during {operation}, degrading: {e}")
            return default

    # ------------------------------------------------------------------
    # Point predictions
    # ------------------------------------------------------------------

    def record_point_prediction(self, user_id: Hashable, item_id: Hashable, value: float) -> bool:
        """Write a user's latest value for an item. Returns False if the store failed."""
        key = self.prediction_key(user_id)

        def write():
            with self._prediction_lock:
                current = self.store.get(key) or {}
                current[str(item_id)] = float(value)
                self.store.set(key, current, self.prediction_ttl, tags=[self.prediction_tag(user_id)])
            return True

        return self._guarded("point prediction write", write, default=False)

    def get_point_prediction(self, user_id: Hashable, item_id: Hashable) -> Optional[float]:
        predictions = self.get_point_predictions(user_id)
        value = predictions.get(str(item_id))
        self._record("hits" if value is not None else "misses")
        return value

    def get_point_predictions(self, user_id: Hashable) -> Dict[str, float]:
        key = self.prediction_key(user_id)
        return self._guarded("point prediction read", lambda: self.store.get(key), default=None) or {}

    # ------------------------------------------------------------------
    # Recommendation lists
    # ------------------------------------------------------------------

    def get_recommendations(self, user_id: Hashable, count: int) -> Optional[List[Recommendation]]:
        key = self.recommendation_key(user_id, count)
        cached = self._guarded("recommendation read", lambda: self.store.get(key))
        if cached is None:
            self._record("misses")
            return None

        self._record("hits")
        logger.debug(f"Cache hit for {key}")
        return [Recommendation(item_id=r["item_id"], score=r["score"],
                               explanation=r["explanation"], reasons=tuple(r.get("reasons", ())))
                for r in cached]

    def set_recommendations(self, user_id: Hashable, count: int,
                            recommendations: List[Recommendation]) -> bool:
        key = self.recommendation_key(user_id, count)
        payload = [r.to_dict() for r in recommendations]
        tags = [self.user_tag(user_id), self.RECOMMENDATIONS_TAG, self.POPULARITY_TAG]

        def write():
            self.store.set(key, payload, self.recommendation_ttl, tags=tags)
            return True

        return self._guarded("recommendation write", write, default=False)

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    def invalidate_tag(self, tag: str) -> int:
        removed = self._guarded(f"invalidate tag {tag}", lambda: self.store.invalidate_tag(tag), default=0)
        if removed:
            logger.info(f"Cache invalidated by tag {tag}: {removed} key(s)")
        return removed

    def invalidate_user(self, user_id: Hashable) -> int:
        return self.invalidate_tag(self.user_tag(user_id))

    def invalidate_users(self, user_ids: Iterable[Hashable]) -> int:
        return sum(self.invalidate_user(user_id) for user_id in set(user_ids))

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_stats(self) -> Dict[str, float]:
        with self._stats_lock:
            stats = dict(self.stats)
        total = stats["hits"] + stats["misses"]
        stats["total_requests"] = total
        stats["hit_rate"] = (stats["hits"] / total * 100) if total else 0.0
        return stats

    def health_check(self) -> Dict[str, Any]:
        start = time.perf_counter()
        try:
            self.store.ping()
        except Exception as e:
            return {"status": "unhealthy",
                    "latency_ms": (time.perf_counter() - start) * 1000,
                    "error": str(e)}
        latency_ms = (time.perf_counter() - start) * 1000
        return {"status": "healthy" if latency_ms < 100 else "degraded",
                "latency_ms": latency_ms,
                **self.get_stats()}
