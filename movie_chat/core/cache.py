from __future__ import annotations

import json
import logging
import time
from threading import Lock
from typing import Any

import redis.asyncio as redis_asyncio

from movie_chat.core.metrics import metrics
from movie_chat.core.settings import SETTINGS

logger = logging.getLogger(__name__)


class MemoryCache:
    def __init__(self) -> None:
        self._store: dict[str, tuple[float | None, Any]] = {}
        self._lock = Lock()

    def get(self, key: str) -> Any | None:
        now = time.time()
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at is not None and expires_at <= now:
                self._store.pop(key, None)
                return None
            return value

    def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        expires_at = None
        if ttl is not None:
            expires_at = time.time() + ttl
        with self._lock:
            self._store[key] = (expires_at, value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)


class CacheClient:
    """Best-effort JSON cache.

    With a Redis URL every operation goes to Redis and any Redis failure
    turns the operation into a no-op (``get_json`` returns None). Without
    one, values live in a process-local ``MemoryCache``.
    """

    def __init__(self, redis_url: str | None) -> None:
        self._redis = None
        self._local = MemoryCache()
        if redis_url:
            try:
                self._redis = redis_asyncio.Redis.from_url(redis_url, decode_responses=True)
            except Exception as exc:
                logger.warning("cache redis init failed, cache disabled: %s", exc)
                self._redis = None
                self._disabled = True
                return
        self._disabled = False

    @property
    def backend(self) -> str:
        if self._redis is not None:
            return "redis"
        return "disabled" if self._disabled else "memory"

    async def get_json(self, key: str) -> Any | None:
        if self._disabled:
            return None
        if self._redis is None:
            value = self._local.get(key)
            metrics.inc("chat_cache_total", {"op": "get", "result": "hit" if value is not None else "miss"})
            return json.loads(value) if isinstance(value, str) else value
        try:
            raw = await self._redis.get(key)
        except Exception as exc:
            logger.warning("cache redis get failed: %s", exc)
            metrics.inc("chat_cache_total", {"op": "get", "result": "error"})
            return None
        if raw is None:
            metrics.inc("chat_cache_total", {"op": "get", "result": "miss"})
            return None
        try:
            value = json.loads(raw)
        except ValueError:
            logger.warning("cache payload for %s is not valid json, ignoring", key)
            metrics.inc("chat_cache_total", {"op": "get", "result": "corrupt"})
            return None
        metrics.inc("chat_cache_total", {"op": "get", "result": "hit"})
        return value

    async def set_json(self, key: str, value: Any, ttl: int | None = None) -> None:
        if self._disabled:
            return
        payload = json.dumps(value, ensure_ascii=False)
        if self._redis is None:
            self._local.set(key, payload, ttl)
            metrics.inc("chat_cache_total", {"op": "set", "result": "ok"})
            return
        try:
            if ttl is not None:
                await self._redis.setex(key, ttl, payload)
            else:
                await self._redis.set(key, payload)
        except Exception as exc:
            logger.warning("cache redis set failed: %s", exc)
            metrics.inc("chat_cache_total", {"op": "set", "result": "error"})
            return
        metrics.inc("chat_cache_total", {"op": "set", "result": "ok"})

    async def delete(self, key: str) -> None:
        if self._disabled:
            return
        if self._redis is None:
            self._local.delete(key)
            return
        try:
            await self._redis.delete(key)
        except Exception as exc:
            logger.warning("cache redis delete failed: %s", exc)
            metrics.inc("chat_cache_total", {"op": "delete", "result": "error"})


_cache: CacheClient | None = None


def get_cache() -> CacheClient:
    global _cache
    if _cache is not None:
        return _cache
    _cache = CacheClient(SETTINGS.redis_url or None)
    return _cache
