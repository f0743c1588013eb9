import asyncio
import logging
import time
import uuid
from typing import Any

import redis.asyncio as redis

from wishlisty.core.config import settings


logger = logging.getLogger("wishlisty.sweep_lock")

# Delete the key only when it still holds our token
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class SweepLock:
    """Cross-instance mutual exclusion for scheduled sweeps.

    Backed by ``SET NX EX`` in redis. When redis is not configured or is
    unreachable the lock degrades to local-only and ``acquire`` always
    succeeds; the in-process lock of the scheduler still serializes passes.
    """

    def __init__(
        self,
        redis_dsn: str | None = None,
        ttl_seconds: int | None = None,
        client: Any | None = None,
        prefix: str = "wishlisty:sweep",
    ) -> None:
        self._redis_dsn = settings.redis_dsn if redis_dsn is None else redis_dsn
        self._ttl = ttl_seconds or settings.sweep_lock_ttl_seconds
        self._redis: Any | None = client
        self._prefix = prefix
        self._connect_lock = asyncio.Lock()
        self._cooldown_until_monotonic = 0.0
        self._connect_failures = 0
        self._tokens: dict[str, str] = {}
        self._acquired = 0
        self._contended = 0
        self._local_only = 0

    def _key(self, name: str) -> str:
        return f"{self._prefix}:{name}"

    def _in_cooldown(self) -> bool:
        return time.monotonic() < self._cooldown_until_monotonic

    def _mark_redis_failed(self, exc: Exception) -> None:
        self._redis = None
        self._connect_failures += 1
        cooldown = min(60.0, 1.0 * (2 ** min(self._connect_failures, 6)))
        self._cooldown_until_monotonic = time.monotonic() + cooldown
        logger.warning(
            "SweepLock redis unavailable failures=%s cooldown_s=%.0f error=%s",
            self._connect_failures,
            cooldown,
            exc,
        )

    async def _get_redis(self) -> Any | None:
        if self._redis is not None:
            return self._redis
        if not self._redis_dsn or not str(self._redis_dsn).strip():
            return None
        if self._in_cooldown():
            return None
        async with self._connect_lock:
            if self._redis is not None:
                return self._redis
            if self._in_cooldown():
                return None
            try:
                client = redis.from_url(
                    self._redis_dsn,
                    encoding="utf-8",
                    decode_responses=True,
                    socket_connect_timeout=2,
                    socket_timeout=2,
                    retry_on_timeout=True,
                    health_check_interval=30,
                )
                await client.ping()
                self._redis = client
                self._connect_failures = 0
                self._cooldown_until_monotonic = 0.0
                logger.info("SweepLock connected redis=%s", self._redis_dsn)
            except Exception as exc:
                self._mark_redis_failed(exc)
        return self._redis

    async def acquire(self, name: str) -> bool:
        client = await self._get_redis()
        if client is None:
            self._local_only += 1
            return True
        token = uuid.uuid4().hex
        try:
            acquired = await client.set(self._key(name), token, nx=True, ex=self._ttl)
        except redis.RedisError as exc:
            self._mark_redis_failed(exc)
            self._local_only += 1
            return True
        if not acquired:
            self._contended += 1
            logger.info("Sweep %s already running on another instance, skipping", name)
            return False
        self._tokens[name] = token
        self._acquired += 1
        return True

    async def release(self, name: str) -> None:
        token = self._tokens.pop(name, None)
        if token is None:
            return
        client = await self._get_redis()
        if client is None:
            return
        try:
            await client.eval(_RELEASE_SCRIPT, 1, self._key(name), token)
        except redis.RedisError as exc:
            # The key expires on its own after the ttl
            self._mark_redis_failed(exc)

    def snapshot(self) -> dict[str, Any]:
        return {
            "acquired": self._acquired,
            "contended": self._contended,
            "local_only": self._local_only,
            "connect_failures": self._connect_failures,
            "cooldown_s": max(0.0, self._cooldown_until_monotonic - time.monotonic()),
            "ttl_s": self._ttl,
        }
