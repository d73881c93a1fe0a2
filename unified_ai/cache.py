"""Response caching.

Orchestrated responses are cached under a content hash of the request so a
repeated request is answered without any provider call. ``CacheService``
stores entries in Redis; ``LocalCache`` keeps them in process for deployments
without Redis. Both degrade to a miss on any storage error.
"""

import hashlib
import json
import logging
import threading
import time
from typing import Any, Dict, Optional, Tuple

from redis.asyncio import Redis
from redis.exceptions import RedisError

from .config import Settings

logger = logging.getLogger(__name__)


# Every key lives under this prefix
CACHE_PREFIX = "unified_ai"
CACHE_KEY_SEPARATOR = ":"
CACHE_NAMESPACE = "response"


def canonical_json(value: Any) -> str:
    """Deterministic JSON encoding: sorted keys, no insignificant whitespace."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def generate_cache_key(
    messages: Any,
    strategy: Optional[str] = None,
    requirements: Optional[Dict[str, Any]] = None,
    constraints: Optional[Dict[str, Any]] = None,
    parameters: Optional[Dict[str, Any]] = None,
) -> str:
    """Generate a collision-resistant cache key for a request.

    The key is a SHA-256 over a canonical JSON encoding of every input, so
    structurally different requests never share a key even when their string
    forms look alike.

    Args:
        messages: Request messages as plain JSON-compatible data.
        strategy: Selection strategy name.
        requirements: Capability requirements.
        constraints: Selection constraints.
        parameters: Sampling parameters, tools, model and explicit provider.

    Returns:
        A key of the form ``unified_ai:response:<sha256 hex>``.

    Examples:
        >>> generate_cache_key([{"role": "user", "content": "Hi"}], "balanced")
        'unified_ai:response:3f1c...'
    """
    document = {
        "messages": messages,
        "strategy": strategy,
        "requirements": requirements or {},
        "constraints": constraints or {},
        "parameters": parameters or {},
    }
    digest = hashlib.sha256(canonical_json(document).encode("utf-8")).hexdigest()
    return CACHE_KEY_SEPARATOR.join([CACHE_PREFIX, CACHE_NAMESPACE, digest])


class ResponseCache:
    """Shared bookkeeping for the cache backends.

    Subclasses implement ``get``, ``set``, ``delete``, ``clear``, ``ping`` and
    ``close``. Every storage failure is counted in ``errors`` and reported
    to the caller as a miss (or ``False`` for writes).
    """

    backend = "none"

    def __init__(self, default_ttl: int = 3600, enabled: bool = True):
        self._default_ttl = default_ttl
        self._enabled = enabled
        self.reset_stats()

    @property
    def enabled(self) -> bool:
        return self._enabled

    def _ttl(self, ttl: Optional[int]) -> int:
        return max(0, ttl if ttl is not None else self._default_ttl)

    def _failed(self, operation: str, key: Optional[str], error: Exception) -> None:
        self._stats["errors"] += 1
        target = f" for {key}" if key else ""
        logger.warning(f"{self.backend} cache {operation} failed{target}: {error}")

    def _hit(self, key: str) -> None:
        self._stats["hits"] += 1
        logger.debug(f"Cache hit: {key}")

    def _miss(self, key: str) -> None:
        self._stats["misses"] += 1
        logger.debug(f"Cache miss: {key}")

    def get_stats(self) -> Dict[str, int]:
        """Counters for hits, misses, errors and sets."""
        return dict(self._stats)

    def reset_stats(self) -> None:
        self._stats = {"hits": 0, "misses": 0, "errors": 0, "sets": 0}


class CacheService(ResponseCache):
    """Redis-backed response cache shared across processes.

    Entries are JSON documents written with a TTL under the ``unified_ai:``
    prefix; ``clear`` removes only keys carrying that prefix.
    """

    backend = "redis"

    def __init__(
        self,
        redis_url: Optional[str] = None,
        default_ttl: int = 3600,
        enabled: bool = True,
        redis_client: Optional[Redis] = None,
    ):
        """Initialize the cache service.

        Args:
            redis_url: Redis connection URL.
            default_ttl: Entry lifetime in seconds.
            enabled: Turn the cache off without removing it from the context.
            redis_client: Pre-built client (fakeredis in tests).
        """
        super().__init__(default_ttl, enabled and bool(redis_url or redis_client))
        self._redis_url = redis_url
        self._client: Optional[Redis] = redis_client
        logger.info(
            f"Redis response cache: enabled={self._enabled}, "
            f"url={'***' if redis_url else None}, ttl={default_ttl}s"
        )

    async def _get_client(self) -> Redis:
        if self._client is None:
            if not self._redis_url:
                raise RedisError("Redis URL not configured")
            self._client = Redis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_keepalive=True,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def ping(self) -> bool:
        if not self._enabled:
            return False
        try:
            return bool(await (await self._get_client()).ping())
        except RedisError as e:
            self._failed("ping", None, e)
            return False

    async def get(self, key: str) -> Optional[Any]:
        """Cached document for ``key``, or None on a miss or any failure."""
        if not self._enabled:
            return None
        try:
            raw = await (await self._get_client()).get(key)
        except RedisError as e:
            self._failed("get", key, e)
            return None
        if raw is None:
            self._miss(key)
            return None
        try:
            document = json.loads(raw)
        except json.JSONDecodeError as e:
            self._failed("decode", key, e)
            return None
        self._hit(key)
        return document

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Store ``value`` as JSON; returns False when it could not be written."""
        if not self._enabled:
            return False
        try:
            document = json.dumps(value)
            await (await self._get_client()).set(key, document, ex=self._ttl(ttl) or 1)
        except (RedisError, TypeError) as e:
            self._failed("set", key, e)
            return False
        self._stats["sets"] += 1
        return True

    async def delete(self, key: str) -> bool:
        if not self._enabled:
            return False
        try:
            return await (await self._get_client()).delete(key) > 0
        except RedisError as e:
            self._failed("delete", key, e)
            return False

    async def clear(self) -> bool:
        """Remove every entry written by this package."""
        if not self._enabled:
            return False
        try:
            client = await self._get_client()
            keys = [key async for key in client.scan_iter(match=f"{CACHE_PREFIX}{CACHE_KEY_SEPARATOR}*")]
            if keys:
                await client.delete(*keys)
        except RedisError as e:
            self._failed("clear", None, e)
            return False
        logger.info(f"Cleared {len(keys)} cached responses")
        return True


class LocalCache(ResponseCache):
    """In-process cache with per-entry expiry.

    Values are stored as JSON text so a cached entry can never be mutated
    through a returned object.
    """

    backend = "local"

    def __init__(self, default_ttl: int = 3600, enabled: bool = True, max_entries: int = 1024):
        super().__init__(default_ttl, enabled)
        self._max_entries = max_entries
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    async def get(self, key: str) -> Optional[Any]:
        if not self._enabled:
            return None
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and time.monotonic() >= entry[1]:
                del self._entries[key]
                entry = None
        if entry is None:
            self._miss(key)
            return None
        self._hit(key)
        return json.loads(entry[0])

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        if not self._enabled:
            return False
        try:
            document = json.dumps(value)
        except TypeError as e:
            self._failed("set", key, e)
            return False
        with self._lock:
            if len(self._entries) >= self._max_entries and key not in self._entries:
                # Evict the entry closest to expiry
                soonest = min(self._entries, key=lambda k: self._entries[k][1])
                del self._entries[soonest]
            self._entries[key] = (document, time.monotonic() + self._ttl(ttl))
        self._stats["sets"] += 1
        return True

    async def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    async def clear(self) -> bool:
        with self._lock:
            self._entries.clear()
        return True

    async def ping(self) -> bool:
        return self._enabled

    async def close(self) -> None:
        return None


def create_cache(settings: Settings) -> ResponseCache:
    """Build the cache configured by ``settings``.

    Redis when ``REDIS_URL`` is set, otherwise the in-process cache.
    """
    if settings.redis_url:
        return CacheService(
            redis_url=settings.redis_url,
            default_ttl=settings.cache_ttl,
            enabled=settings.cache_enabled,
        )
    return LocalCache(default_ttl=settings.cache_ttl, enabled=settings.cache_enabled)
