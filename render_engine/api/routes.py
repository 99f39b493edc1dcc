from __future__ import annotations

import logging
from time import perf_counter

from fastapi import APIRouter, Depends, Header
from sqlalchemy.orm import Session

from render_engine.cache.backend import CacheBackend
from render_engine.cache.entities import EntityCaches
from render_engine.database import get_db
from render_engine.datasources.postgres import PostgresAnalyticsExecutor
from render_engine.errors import EngineError
from render_engine.schemas import (
    AccessContext,
    CacheKeysRequest,
    CacheNamespaceStats,
    CacheStatsResponse,
    DashboardRenderRequest,
    DashboardRenderResponse,
)
from render_engine.security import resolve_access_context
from render_engine.services.definitions import lookup_data_source_table
from render_engine.services.rbac import RbacService
from render_engine.services.renderer import DashboardRenderer
from render_engine.services.transformers import build_default_registry
from render_engine.settings import get_settings

router = APIRouter()
_settings = get_settings()
_caches = EntityCaches.build(CacheBackend.from_settings(_settings), _settings)
_renderer = DashboardRenderer(
    settings=_settings,
    caches=_caches,
    executor=PostgresAnalyticsExecutor(
        _settings.analytics_db_url,
        timeout_seconds=_settings.query_timeout_seconds,
        row_limit=_settings.query_result_rows_max,
        table_for=lookup_data_source_table,
    ),
    registry=build_default_registry(_settings),
)
logger = logging.getLogger("uvicorn.error")


async def require_access_context(
    authorization: str | None = Header(default=None),
    db: Session = Depends(get_db),
) -> AccessContext:
    return await resolve_access_context(authorization, db=db, caches=_caches)


def _require_full_access(access: AccessContext) -> None:
    if access.permission_scope != "all":
        raise EngineError(status_code=403, code="admin_access_required", message="Cache administration requires full analytics access")


def _audit_log(
    *,
    access: AccessContext,
    dashboard_id: str,
    status: str,
    duration_ms: int,
    error_code: str | None = None,
    correlation_id: str | None = None,
) -> None:
    logger.info(
        "engine.audit.render | %s",
        {
            "user_id": access.user_id,
            "permission_scope": access.permission_scope,
            "dashboard_id": dashboard_id,
            "status": status,
            "duration_ms": duration_ms,
            "error_code": error_code,
            "correlation_id": correlation_id,
        },
    )


@router.get("/health")
async def health() -> dict[str, str]:
    cache_up = await _caches.backend.is_available()
    return {"status": "ok", "service": "render-engine", "cache": "up" if cache_up else "down"}


@router.post("/dashboards/{dashboard_id}/render", response_model=DashboardRenderResponse)
async def render_dashboard(
    dashboard_id: str,
    payload: DashboardRenderRequest,
    x_correlation_id: str | None = Header(default=None),
    access: AccessContext = Depends(require_access_context),
    db: Session = Depends(get_db),
) -> DashboardRenderResponse:
    started = perf_counter()
    try:
        result = await _renderer.render(
            dashboard_id=dashboard_id,
            universal_filters=payload.universal_filters,
            access=access,
            db=db,
            nocache=payload.nocache,
            correlation_id=x_correlation_id,
        )
    except EngineError as exc:
        _audit_log(
            access=access,
            dashboard_id=dashboard_id,
            status="error",
            duration_ms=max(0, int((perf_counter() - started) * 1000)),
            error_code=exc.code,
            correlation_id=x_correlation_id,
        )
        raise
    _audit_log(
        access=access,
        dashboard_id=dashboard_id,
        status="ok" if result.metadata.charts_failed == 0 else "partial",
        duration_ms=max(0, int((perf_counter() - started) * 1000)),
        correlation_id=x_correlation_id,
    )
    return result


@router.get("/admin/cache/stats", response_model=CacheStatsResponse)
async def cache_stats(access: AccessContext = Depends(require_access_context)) -> CacheStatsResponse:
    _require_full_access(access)
    return CacheStatsResponse(
        available=await _caches.backend.is_available(),
        namespaces={namespace: CacheNamespaceStats(**counters) for namespace, counters in _caches.stats.snapshot().items()},
    )


@router.post("/admin/cache/roles/{role_id}/invalidate")
async def invalidate_role(
    role_id: str,
    access: AccessContext = Depends(require_access_context),
    db: Session = Depends(get_db),
) -> dict[str, object]:
    _require_full_access(access)
    user_ids = await RbacService(db, _caches).invalidate_role(role_id)
    return {"status": "ok", "role_id": role_id, "users_invalidated": len(user_ids)}


@router.post("/admin/cache/users/{user_id}/invalidate")
async def invalidate_user(
    user_id: str,
    access: AccessContext = Depends(require_access_context),
    db: Session = Depends(get_db),
) -> dict[str, str]:
    _require_full_access(access)
    await RbacService(db, _caches).invalidate_user(user_id)
    return {"status": "ok", "user_id": user_id}


@router.post("/admin/cache/tokens/{token_id}/blacklist")
async def blacklist_token(
    token_id: str,
    access: AccessContext = Depends(require_access_context),
    db: Session = Depends(get_db),
) -> dict[str, str]:
    _require_full_access(access)
    await RbacService(db, _caches).blacklist_token(token_id, reason=f"revoked by {access.user_id}")
    return {"status": "ok", "token_id": token_id}


@router.post("/admin/cache/datasource/invalidate")
async def invalidate_datasource(
    payload: CacheKeysRequest,
    access: AccessContext = Depends(require_access_context),
) -> dict[str, object]:
    _require_full_access(access)
    await _caches.data_source.invalidate(*payload.query_hashes)
    return {"status": "ok", "invalidated": len(payload.query_hashes)}
