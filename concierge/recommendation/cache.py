"""
AI ranking cache.

Cache entries are keyed by a sha256 over every ranking input:
- normalized user intent
- sorted candidate handles
- result count
- a canonical JSON of constraints, preferences, include and avoid terms

Two backends share one interface:
- DatabaseRankingCache: rows in ``ranking_cache`` (upsert by cache_key)
- RedisRankingCache: ``setex`` with the same TTL

Caching is best-effort. Read errors count as a miss and write errors are
logged; neither ever fails a ranking request.
"""

import hashlib
import json
import os
from datetime import timedelta
from typing import Any, Dict, List, Optional

import redis
from sqlalchemy.orm import sessionmaker

from concierge.core.config import ConciergeConfig, get_config
from concierge.db.database import get_session_factory, utcnow
from concierge.db.models import RankingCacheEntry
from concierge.recommendation.ranking import RankingResult, SOURCE_CACHE
from concierge.utils.logger import get_logger

logger = get_logger("recommendation.cache")

CACHED_REASONING_DEFAULT = "Cached AI-ranked products"


def generate_cache_key(
    user_intent: str,
    handles: List[str],
    result_count: int,
    constraints: Optional[Dict[str, Any]] = None,
    preferences: Optional[Any] = None,
    include_terms: Optional[List[str]] = None,
    avoid_terms: Optional[List[str]] = None,
) -> str:
    """
    Deterministic cache key for a ranking request.

    Candidate order does not matter (handles are sorted); any change to the
    candidate set, constraints or result count changes the key.
    """
    normalized_intent = (user_intent or "").strip().lower()
    product_handles = ",".join(sorted(handles))
    variant_hash = json.dumps({
        "constraints": constraints or {},
        "preferences": preferences or {},
        "includeTerms": sorted(include_terms or []),
        "avoidTerms": sorted(avoid_terms or []),
    }, sort_keys=True)
    raw = f"{normalized_intent}|{product_handles}|{result_count}|{variant_hash}"
    return hashlib.sha256(raw.encode()).hexdigest()


def product_hash(handles: List[str]) -> str:
    return hashlib.sha256(",".join(sorted(handles)).encode()).hexdigest()


class RankingCache:
    """Interface for ranking cache backends."""

    def get(self, cache_key: str, shop_id: Optional[str]) -> Optional[RankingResult]:
        raise NotImplementedError

    def set(
        self,
        cache_key: str,
        shop_id: Optional[str],
        user_intent: str,
        handles: List[str],
        result: RankingResult,
        result_count: int,
    ) -> bool:
        raise NotImplementedError


class DatabaseRankingCache(RankingCache):
    """Ranking cache stored in the ``ranking_cache`` table."""

    def __init__(self, session_factory: Optional[sessionmaker] = None, ttl_hours: int = 36):
        self._session_factory = session_factory
        self.ttl = timedelta(hours=ttl_hours)

    @property
    def session_factory(self) -> sessionmaker:
        return self._session_factory or get_session_factory()

    def get(self, cache_key: str, shop_id: Optional[str]) -> Optional[RankingResult]:
        """Unexpired entry for this shop, newest first. None on miss or error."""
        if not shop_id:
            return None
        try:
            with self.session_factory() as db:
                entry = (
                    db.query(RankingCacheEntry)
                    .filter(
                        RankingCacheEntry.cache_key == cache_key,
                        RankingCacheEntry.shop_id == shop_id,
                        RankingCacheEntry.expires_at > utcnow(),
                    )
                    .order_by(RankingCacheEntry.created_at.desc())
                    .first()
                )
                if entry is None:
                    logger.info("Ranking cache MISS")
                    return None
                handles = entry.ranked_handles
                if isinstance(handles, str):
                    handles = json.loads(handles)
                logger.info("Ranking cache HIT")
                return RankingResult(
                    ranked_handles=list(handles or []),
                    reasoning=entry.reasoning or CACHED_REASONING_DEFAULT,
                    source=SOURCE_CACHE,
                )
        except Exception as e:
            logger.error(f"Ranking cache read error: {e}")
            return None

    def set(self, cache_key, shop_id, user_intent, handles, result, result_count) -> bool:
        if not shop_id:
            return False
        try:
            with self.session_factory() as db:
                entry = db.query(RankingCacheEntry).filter(RankingCacheEntry.cache_key == cache_key).first()
                if entry is None:
                    entry = RankingCacheEntry(cache_key=cache_key)
                    db.add(entry)
                entry.shop_id = shop_id
                entry.user_intent = (user_intent or "")[:1000]
                entry.product_hash = product_hash(handles)
                entry.ranked_handles = list(result.ranked_handles)
                entry.reasoning = (result.reasoning or "")[:2000]
                entry.result_count = result_count
                entry.expires_at = utcnow() + self.ttl
                entry.created_at = utcnow()
                db.commit()
            return True
        except Exception as e:
            logger.error(f"Ranking cache write error for {cache_key[:12]}: {e}")
            return False


class RedisRankingCache(RankingCache):
    """
    Ranking cache in Redis.

    Connection priority:
    1. REDIS_URL
    2. REDIS_HOST + REDIS_PORT (local)
    """

    def __init__(self, client: Optional[redis.Redis] = None, namespace: str = "concierge", ttl_hours: int = 36):
        self.namespace = namespace
        self.ttl_seconds = int(ttl_hours * 3600)
        if client is not None:
            self.client = client
        elif os.getenv("REDIS_URL"):
            self.client = redis.from_url(
                os.getenv("REDIS_URL"),
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
            )
        else:
            self.client = redis.Redis(
                host=os.getenv("REDIS_HOST", "localhost"),
                port=int(os.getenv("REDIS_PORT", "6379")),
                db=int(os.getenv("REDIS_DB", "0")),
                decode_responses=True,
                socket_connect_timeout=2,
                socket_timeout=2,
            )

    def _key(self, shop_id: str, cache_key: str) -> str:
        return f"{self.namespace}:ranking:{shop_id}:{cache_key}"

    def get(self, cache_key: str, shop_id: Optional[str]) -> Optional[RankingResult]:
        if not shop_id:
            return None
        try:
            cached = self.client.get(self._key(shop_id, cache_key))
            if not cached:
                return None
            data = json.loads(cached)
            return RankingResult(
                ranked_handles=list(data.get("rankedHandles") or []),
                reasoning=data.get("reasoning") or CACHED_REASONING_DEFAULT,
                source=SOURCE_CACHE,
            )
        except Exception as e:
            logger.error(f"Ranking cache read error: {e}")
            return None

    def set(self, cache_key, shop_id, user_intent, handles, result, result_count) -> bool:
        if not shop_id:
            return False
        payload = {
            "rankedHandles": list(result.ranked_handles),
            "reasoning": (result.reasoning or "")[:2000],
            "userIntent": (user_intent or "")[:1000],
            "productHash": product_hash(handles),
            "resultCount": result_count,
        }
        try:
            self.client.setex(self._key(shop_id, cache_key), self.ttl_seconds, json.dumps(payload))
            return True
        except Exception as e:
            logger.error(f"Ranking cache write error for {cache_key[:12]}: {e}")
            return False


def get_ranking_cache(config: Optional[ConciergeConfig] = None) -> RankingCache:
    """Build the configured cache backend."""
    config = config or get_config()
    if config.ranking_cache_backend == "redis":
        return RedisRankingCache(ttl_hours=config.ranking_cache_ttl_hours)
    return DatabaseRankingCache(ttl_hours=config.ranking_cache_ttl_hours)
