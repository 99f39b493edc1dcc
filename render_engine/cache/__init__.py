from render_engine.cache.backend import MISS, CacheBackend
from render_engine.cache.entities import (
    CacheLookup,
    CacheStats,
    DataSourceResultCache,
    EntityCache,
    EntityCaches,
    RolePermissionsCache,
    TokenBlacklistCache,
    UserBasicInfoCache,
    UserContextCache,
)

__all__ = [
    "MISS",
    "CacheBackend",
    "CacheLookup",
    "CacheStats",
    "DataSourceResultCache",
    "EntityCache",
    "EntityCaches",
    "RolePermissionsCache",
    "TokenBlacklistCache",
    "UserBasicInfoCache",
    "UserContextCache",
]
