from __future__ import annotations

import asyncio
import json
import logging
from time import monotonic
from typing import Any, Callable

from redis.asyncio import Redis

from render_engine.settings import Settings

logger = logging.getLogger("uvicorn.error")


class _Miss:
    _instance: _Miss | None = None

    def __new__(cls) -> _Miss:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISS"


MISS = _Miss()


def _redact_url(url: str) -> str:
    if "://" not in url or "@" not in url:
        return url
    scheme, remainder = url.split("://", 1)
    credentials, location = remainder.rsplit("@", 1)
    if ":" in credentials:
        username, _password = credentials.split(":", 1)
        return f"{scheme}://{username}:***@{location}"
    return f"{scheme}://***@{location}"


class CacheBackend:
    """Best-effort key/value access to a Redis-wire-compatible store.

    Every backend exception is caught here and turned into a miss or a no-op,
    so callers never observe cache failures. Once a call fails the backend is
    considered down until the next availability probe is due.
    """

    def __init__(
        self,
        client: Redis | None,
        *,
        key_prefix: str = "",
        operation_timeout_seconds: float = 0.5,
        probe_interval_seconds: float = 5.0,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        self._client = client
        self._key_prefix = key_prefix.strip(":")
        self._operation_timeout = operation_timeout_seconds
        self._probe_interval = probe_interval_seconds
        self._clock = clock
        self._available: bool | None = None
        self._checked_at = 0.0
        self._probe_lock = asyncio.Lock()
        self._background: set[asyncio.Task[None]] = set()

    @classmethod
    def from_settings(cls, settings: Settings) -> CacheBackend:
        client: Redis | None = None
        if settings.redis_enabled:
            client = Redis.from_url(
                settings.redis_url,
                socket_timeout=settings.redis_socket_timeout_seconds,
                socket_connect_timeout=settings.redis_socket_timeout_seconds,
                decode_responses=True,
            )
            logger.info("cache.backend.configured | %s", {"redis_url": _redact_url(settings.redis_url)})
        return cls(
            client,
            key_prefix=settings.redis_key_prefix,
            operation_timeout_seconds=settings.redis_socket_timeout_seconds,
            probe_interval_seconds=settings.redis_probe_interval_seconds,
        )

    @property
    def pending_writes(self) -> int:
        return len(self._background)

    def full_key(self, key: str) -> str:
        if not self._key_prefix:
            return key
        return f"{self._key_prefix}:{key}"

    async def is_available(self) -> bool:
        if self._client is None:
            return False
        now = self._clock()
        if self._available is not None and now - self._checked_at < self._probe_interval:
            return self._available

        async with self._probe_lock:
            now = self._clock()
            if self._available is not None and now - self._checked_at < self._probe_interval:
                return self._available
            try:
                await asyncio.wait_for(self._client.ping(), timeout=self._operation_timeout)
                available = True
            except Exception as exc:
                logger.info("cache.probe_failed | %s", {"reason": type(exc).__name__, "fallback": True})
                available = False
            if available != self._available:
                logger.info("cache.availability_changed | %s", {"available": available})
            self._available = available
            self._checked_at = now
            return available

    async def get(self, key: str) -> Any:
        if self._client is None:
            return MISS
        try:
            raw = await asyncio.wait_for(self._client.get(self.full_key(key)), timeout=self._operation_timeout)
        except Exception as exc:
            self._mark_down("get", key, exc)
            return MISS
        if raw is None:
            return MISS
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.info("cache.decode_failed | %s", {"key": key, "fallback": True})
            return MISS

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        if self._client is None or ttl_seconds <= 0:
            return
        try:
            payload = json.dumps(value, separators=(",", ":"), default=str)
            await asyncio.wait_for(
                self._client.set(self.full_key(key), payload, ex=ttl_seconds),
                timeout=self._operation_timeout,
            )
        except Exception as exc:
            self._mark_down("set", key, exc)

    def set_in_background(self, key: str, value: Any, ttl_seconds: int) -> None:
        if self._client is None or self._available is False:
            return
        task = asyncio.get_running_loop().create_task(self.set(key, value, ttl_seconds))
        self._background.add(task)
        task.add_done_callback(self._forget_task)

    async def delete(self, *keys: str) -> None:
        if self._client is None or not keys:
            return
        try:
            await asyncio.wait_for(
                self._client.delete(*[self.full_key(key) for key in keys]),
                timeout=self._operation_timeout,
            )
        except Exception as exc:
            self._mark_down("delete", ",".join(keys), exc)

    async def drain(self) -> None:
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        if self._client is not None:
            await self._client.aclose()

    def _forget_task(self, task: asyncio.Task[None]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.info("cache.write_failed | %s", {"reason": str(exc), "fallback": True})

    def _mark_down(self, operation: str, key: str, exc: Exception) -> None:
        self._available = False
        self._checked_at = self._clock()
        logger.info(
            "cache.fallback | %s",
            {"operation": operation, "key": key, "reason": type(exc).__name__, "fallback": True},
        )
