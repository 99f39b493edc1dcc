from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Generic, TypeVar

from pydantic import ValidationError

from render_engine.cache.backend import MISS, CacheBackend
from render_engine.schemas import UserBasicInfo, UserContext
from render_engine.settings import Settings

logger = logging.getLogger("uvicorn.error")

T = TypeVar("T")


def _today() -> date:
    return datetime.now(timezone.utc).date()


@dataclass(slots=True)
class CacheLookup(Generic[T]):
    value: T
    cache_hit: bool


class CacheStats:
    def __init__(self) -> None:
        self._counters: dict[str, dict[str, int]] = defaultdict(lambda: {"hits": 0, "misses": 0, "fallbacks": 0})

    def record(self, namespace: str, outcome: str) -> None:
        self._counters[namespace][outcome] += 1

    def snapshot(self) -> dict[str, dict[str, int]]:
        return {namespace: dict(counters) for namespace, counters in self._counters.items()}

    def reset(self) -> None:
        self._counters.clear()


class EntityCache(Generic[T]):
    """Read-through cache for one entity family.

    Values are looked up under ``{namespace}:{entity_id}``. Misses and an
    unavailable backend both fall back to ``compute``; fresh values are written
    back in the background and never delay the caller.
    """

    namespace = ""

    def __init__(self, backend: CacheBackend, stats: CacheStats, *, ttl_seconds: int) -> None:
        self._backend = backend
        self._stats = stats
        self._ttl_seconds = ttl_seconds

    def key(self, entity_id: str | int) -> str:
        return f"{self.namespace}:{entity_id}"

    def ttl_for(self, value: T) -> int:
        _ = value
        return self._ttl_seconds

    def should_store(self, value: T) -> bool:
        return value is not None

    def dump(self, value: T) -> Any:
        return value

    def load(self, raw: Any) -> T:
        return raw

    async def get_or_compute(
        self,
        entity_id: str | int,
        compute: Callable[[], Awaitable[T]],
        *,
        ttl_seconds: int | None = None,
    ) -> CacheLookup[T]:
        key = self.key(entity_id)
        if not await self._backend.is_available():
            self._stats.record(self.namespace, "fallbacks")
            logger.debug("cache.bypass | %s", {"namespace": self.namespace, "key": key, "fallback": True})
            return CacheLookup(value=await compute(), cache_hit=False)

        raw = await self._backend.get(key)
        if raw is not MISS:
            try:
                value = self.load(raw)
            except (ValidationError, TypeError, ValueError, KeyError):
                logger.info("cache.corrupt_entry | %s", {"namespace": self.namespace, "key": key, "fallback": True})
            else:
                self._stats.record(self.namespace, "hits")
                logger.debug("cache.hit | %s", {"namespace": self.namespace, "key": key})
                return CacheLookup(value=value, cache_hit=True)

        self._stats.record(self.namespace, "misses")
        logger.debug("cache.miss | %s", {"namespace": self.namespace, "key": key})
        value = await compute()
        if self.should_store(value):
            ttl = ttl_seconds if ttl_seconds is not None else self.ttl_for(value)
            self._backend.set_in_background(key, self.dump(value), ttl)
        return CacheLookup(value=value, cache_hit=False)

    async def invalidate(self, *entity_ids: str | int) -> None:
        if not entity_ids:
            return
        keys = [self.key(entity_id) for entity_id in entity_ids]
        await self._backend.delete(*keys)
        logger.info("cache.invalidate | %s", {"namespace": self.namespace, "keys": keys})


class UserContextCache(EntityCache[UserContext]):
    namespace = "user_context"

    def dump(self, value: UserContext) -> Any:
        return value.model_dump(mode="json")

    def load(self, raw: Any) -> UserContext:
        return UserContext.model_validate(raw)


class RolePermissionsCache(EntityCache[list[str]]):
    namespace = "role_perms"

    def load(self, raw: Any) -> list[str]:
        if not isinstance(raw, list):
            raise TypeError("role permissions entry must be a list")
        return [str(item) for item in raw]


class UserBasicInfoCache(EntityCache[UserBasicInfo]):
    namespace = "user_basic"

    def dump(self, value: UserBasicInfo) -> Any:
        return value.model_dump(mode="json")

    def load(self, raw: Any) -> UserBasicInfo:
        return UserBasicInfo.model_validate(raw)


class TokenBlacklistCache(EntityCache[bool]):
    namespace = "token_bl"

    def __init__(self, backend: CacheBackend, stats: CacheStats, *, active_ttl_seconds: int, blacklisted_ttl_seconds: int) -> None:
        super().__init__(backend, stats, ttl_seconds=active_ttl_seconds)
        self._blacklisted_ttl_seconds = blacklisted_ttl_seconds

    def ttl_for(self, value: bool) -> int:
        return self._blacklisted_ttl_seconds if value else self._ttl_seconds

    def dump(self, value: bool) -> Any:
        return {"blacklisted": bool(value)}

    def load(self, raw: Any) -> bool:
        return bool(raw["blacklisted"])


class DataSourceResultCache(EntityCache[list[dict[str, Any]]]):
    namespace = "datasource"

    def __init__(
        self,
        backend: CacheBackend,
        stats: CacheStats,
        *,
        today_ttl_seconds: int,
        recent_ttl_seconds: int,
        historical_ttl_seconds: int,
        recent_days: int,
        today: Callable[[], date] = _today,
    ) -> None:
        super().__init__(backend, stats, ttl_seconds=today_ttl_seconds)
        self._recent_ttl_seconds = recent_ttl_seconds
        self._historical_ttl_seconds = historical_ttl_seconds
        self._recent_days = recent_days
        self._today = today

    def ttl_for_range(self, end_date: str | date | None) -> int:
        # Open-ended ranges run up to today.
        if end_date is None:
            return self._ttl_seconds
        if isinstance(end_date, str):
            try:
                end = date.fromisoformat(end_date[:10])
            except ValueError:
                return self._ttl_seconds
        else:
            end = end_date
        today = self._today()
        if end >= today:
            return self._ttl_seconds
        if end >= today - timedelta(days=self._recent_days):
            return self._recent_ttl_seconds
        return self._historical_ttl_seconds

    def should_store(self, value: list[dict[str, Any]]) -> bool:
        return bool(value)

    def load(self, raw: Any) -> list[dict[str, Any]]:
        if not isinstance(raw, list):
            raise TypeError("datasource entry must be a list of rows")
        return [dict(row) for row in raw]


class EntityCaches:
    def __init__(
        self,
        *,
        backend: CacheBackend,
        user_context: UserContextCache,
        role_permissions: RolePermissionsCache,
        user_basic: UserBasicInfoCache,
        token_blacklist: TokenBlacklistCache,
        data_source: DataSourceResultCache,
        stats: CacheStats,
    ) -> None:
        self.backend = backend
        self.user_context = user_context
        self.role_permissions = role_permissions
        self.user_basic = user_basic
        self.token_blacklist = token_blacklist
        self.data_source = data_source
        self.stats = stats

    @classmethod
    def build(cls, backend: CacheBackend, settings: Settings, *, today: Callable[[], date] = _today) -> EntityCaches:
        stats = CacheStats()
        return cls(
            backend=backend,
            user_context=UserContextCache(backend, stats, ttl_seconds=settings.cache_ttl_user_context),
            role_permissions=RolePermissionsCache(backend, stats, ttl_seconds=settings.cache_ttl_role_permissions),
            user_basic=UserBasicInfoCache(backend, stats, ttl_seconds=settings.cache_ttl_user_basic),
            token_blacklist=TokenBlacklistCache(
                backend,
                stats,
                active_ttl_seconds=settings.cache_ttl_token_active,
                blacklisted_ttl_seconds=settings.cache_ttl_token_blacklisted,
            ),
            data_source=DataSourceResultCache(
                backend,
                stats,
                today_ttl_seconds=settings.cache_ttl_datasource_today,
                recent_ttl_seconds=settings.cache_ttl_datasource_recent,
                historical_ttl_seconds=settings.cache_ttl_datasource_historical,
                recent_days=settings.cache_datasource_recent_days,
                today=today,
            ),
            stats=stats,
        )
