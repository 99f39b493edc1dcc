from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from time import perf_counter
from typing import Any, Callable

from sqlalchemy.orm import Session

from render_engine.cache.entities import EntityCaches
from render_engine.datasources.base import AnalyticsQueryExecutor
from render_engine.errors import EngineError
from render_engine.schemas import (
    AccessContext,
    ChartError,
    ChartRenderMetadata,
    DashboardRenderMetadata,
    DashboardRenderResponse,
    QueryOutcome,
    RenderResult,
    ResolvedQuery,
    UniversalFilters,
)
from render_engine.services.deduplicator import QueryDeduplicator
from render_engine.services.definitions import DashboardDefinition, DashboardDefinitionStore
from render_engine.services.filters import (
    ChartDefinitionRecord,
    applied_filter_names,
    build_chart_specification,
    resolve_dashboard_dates,
)
from render_engine.services.rbac import descendant_organization_ids, organization_practice_uids
from render_engine.services.signature import QuerySignatureHasher
from render_engine.services.transformers import TransformerRegistry
from render_engine.settings import Settings

logger = logging.getLogger("uvicorn.error")


def _today() -> date:
    return datetime.now(timezone.utc).date()


@dataclass(slots=True)
class _RenderCounters:
    queries_executed: int = 0
    cache_hits: int = 0
    cache_misses: int = 0


class DashboardRenderer:
    """Renders every chart of a dashboard with one fetch per distinct query.

    Chart pipelines run concurrently. Charts that resolve to the same query
    signature share a single fetch through a per-render ``QueryDeduplicator``.
    A failing chart becomes an error entry and never aborts its siblings.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        caches: EntityCaches,
        executor: AnalyticsQueryExecutor,
        registry: TransformerRegistry,
        today: Callable[[], date] = _today,
    ) -> None:
        self._settings = settings
        self._caches = caches
        self._executor = executor
        self._registry = registry
        self._today = today
        self._hasher = QuerySignatureHasher(registry.group_by_affects_fetch)

    @property
    def hasher(self) -> QuerySignatureHasher:
        return self._hasher

    async def render(
        self,
        *,
        dashboard_id: str,
        universal_filters: UniversalFilters,
        access: AccessContext,
        db: Session,
        nocache: bool = False,
        correlation_id: str | None = None,
    ) -> DashboardRenderResponse:
        render_id = correlation_id or uuid.uuid4().hex
        try:
            return await asyncio.wait_for(
                self._render(
                    dashboard_id=dashboard_id,
                    universal_filters=universal_filters,
                    access=access,
                    db=db,
                    nocache=nocache,
                    render_id=render_id,
                ),
                timeout=self._settings.render_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise EngineError(status_code=504, code="render_timeout", message="Dashboard render timed out") from exc

    async def _render(
        self,
        *,
        dashboard_id: str,
        universal_filters: UniversalFilters,
        access: AccessContext,
        db: Session,
        nocache: bool,
        render_id: str,
    ) -> DashboardRenderResponse:
        started_at = perf_counter()
        dashboard = DashboardDefinitionStore(db).load_dashboard(dashboard_id, access)
        filters = self._resolve_organization_filter(universal_filters, access, db)
        filters = resolve_dashboard_dates(filters, today=self._today())
        logger.info(
            "render.dashboard.start | %s",
            {
                "render_id": render_id,
                "dashboard_id": dashboard_id,
                "user_id": access.user_id,
                "chart_count": len(dashboard.charts),
                "organization_filter": filters.organization_id,
                "practice_uid_count": len(filters.practice_uids) if filters.practice_uids is not None else None,
            },
        )

        if not dashboard.charts:
            return DashboardRenderResponse(
                dashboard_id=dashboard.dashboard_id,
                metadata=DashboardRenderMetadata(
                    total_time_ms=int((perf_counter() - started_at) * 1000),
                    dashboard_filters_applied=applied_filter_names(filters),
                ),
            )

        counters = _RenderCounters()
        semaphore = asyncio.Semaphore(max(1, self._settings.render_chart_concurrency_limit))
        async with QueryDeduplicator[QueryOutcome](render_id=render_id) as dedup:
            results = await asyncio.gather(
                *[
                    self._render_chart(
                        record,
                        filters=filters,
                        access=access,
                        dedup=dedup,
                        semaphore=semaphore,
                        counters=counters,
                        nocache=nocache,
                        render_id=render_id,
                    )
                    for record in dashboard.charts
                ]
            )
            unique_queries = dedup.unique_queries
            deduplicated = dedup.deduplicated

        response = self._assemble(
            dashboard,
            results,
            filters=filters,
            counters=counters,
            unique_queries=unique_queries,
            deduplicated=deduplicated,
            started_at=started_at,
        )
        logger.info(
            "render.dashboard.completed | %s",
            {
                "render_id": render_id,
                "dashboard_id": dashboard_id,
                **response.metadata.model_dump(exclude={"dashboard_filters_applied"}),
            },
        )
        return response

    def _resolve_organization_filter(self, filters: UniversalFilters, access: AccessContext, db: Session) -> UniversalFilters:
        if not filters.organization_id:
            return filters
        organization_id = filters.organization_id
        if access.permission_scope == "organization":
            allowed: set[str] = set()
            for member_of in access.organization_ids:
                allowed.update(descendant_organization_ids(db, member_of))
            if organization_id not in allowed:
                raise EngineError(
                    status_code=403,
                    code="organization_access_denied",
                    message="You do not have access to this organization",
                )
        elif access.permission_scope != "all":
            raise EngineError(
                status_code=403,
                code="organization_access_denied",
                message="Organization filters require organization or full analytics access",
            )
        # An organization without practices still yields an applied, empty scope.
        practice_uids = organization_practice_uids(db, descendant_organization_ids(db, organization_id))
        return filters.model_copy(update={"practice_uids": practice_uids})

    async def _render_chart(
        self,
        record: ChartDefinitionRecord,
        *,
        filters: UniversalFilters,
        access: AccessContext,
        dedup: QueryDeduplicator[QueryOutcome],
        semaphore: asyncio.Semaphore,
        counters: _RenderCounters,
        nocache: bool,
        render_id: str,
    ) -> RenderResult:
        signature: str | None = None
        try:
            chart = build_chart_specification(record, filters, today=self._today)
            self._registry.get(chart.chart_type)
            query = self._hasher.resolve(chart, access)
            signature = self._hasher.signature(query, access)

            async def _compute() -> QueryOutcome:
                return await self._fetch(query, signature, semaphore=semaphore, counters=counters, nocache=nocache)

            outcome, deduped = await dedup.resolve(signature, _compute)
            chart_data = self._registry.transform(chart.chart_type, outcome.rows, chart)
            return RenderResult(
                chart_id=record.chart_id,
                status="ok",
                chart_type=chart.chart_type,
                chart_data=chart_data,
                raw_row_count=len(outcome.rows),
                metadata=ChartRenderMetadata(
                    row_count=len(outcome.rows),
                    query_time_ms=outcome.query_time_ms,
                    cache_hit=outcome.cache_hit,
                    deduped=deduped,
                    query_signature=signature,
                    measure=chart.measure,
                    frequency=chart.frequency,
                    group_by=chart.group_by,
                ),
            )
        except EngineError as exc:
            return self._failed(record, code=exc.code, message=exc.message, signature=signature, render_id=render_id)
        except Exception as exc:
            logger.exception("render.chart.unexpected_error | %s", {"render_id": render_id, "chart_id": record.chart_id})
            return self._failed(record, code="chart_render_failed", message=str(exc) or type(exc).__name__, signature=signature, render_id=render_id)

    async def _fetch(
        self,
        query: ResolvedQuery,
        signature: str,
        *,
        semaphore: asyncio.Semaphore,
        counters: _RenderCounters,
        nocache: bool,
    ) -> QueryOutcome:
        async with semaphore:
            started_at = perf_counter()

            async def _execute() -> list[dict[str, Any]]:
                counters.queries_executed += 1
                return await self._executor.execute_query(query)

            if nocache:
                rows = await _execute()
                cache_hit = False
            else:
                lookup = await self._caches.data_source.get_or_compute(
                    signature,
                    _execute,
                    ttl_seconds=self._caches.data_source.ttl_for_range(query.end_date),
                )
                rows = lookup.value
                cache_hit = lookup.cache_hit
            if cache_hit:
                counters.cache_hits += 1
            else:
                counters.cache_misses += 1
            return QueryOutcome(rows=rows, query_time_ms=int((perf_counter() - started_at) * 1000), cache_hit=cache_hit)

    def _failed(
        self,
        record: ChartDefinitionRecord,
        *,
        code: str,
        message: str,
        signature: str | None,
        render_id: str,
    ) -> RenderResult:
        logger.warning(
            "render.chart.failed | %s",
            {"render_id": render_id, "chart_id": record.chart_id, "chart_type": record.chart_type, "code": code},
        )
        return RenderResult(
            chart_id=record.chart_id,
            status="error",
            chart_type=record.chart_type,
            error=ChartError(code=code, message=message),
            metadata=ChartRenderMetadata(query_signature=signature),
        )

    def _assemble(
        self,
        dashboard: DashboardDefinition,
        results: list[RenderResult],
        *,
        filters: UniversalFilters,
        counters: _RenderCounters,
        unique_queries: int,
        deduplicated: int,
        started_at: float,
    ) -> DashboardRenderResponse:
        charts = {result.chart_id: result for result in results}
        total = len(dashboard.charts)
        rendered = sum(1 for result in results if result.status == "ok")
        return DashboardRenderResponse(
            dashboard_id=dashboard.dashboard_id,
            charts=charts,
            metadata=DashboardRenderMetadata(
                total_time_ms=int((perf_counter() - started_at) * 1000),
                charts_rendered=rendered,
                charts_failed=len(results) - rendered,
                unique_queries=unique_queries,
                queries_executed=counters.queries_executed,
                queries_deduplicated=deduplicated,
                deduplication_rate=round(deduplicated / total * 100) if total else 0,
                cache_hits=counters.cache_hits,
                cache_misses=counters.cache_misses,
                dashboard_filters_applied=applied_filter_names(filters),
                parallel_execution=total > 1,
            ),
        )
