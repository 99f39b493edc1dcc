from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

FilterOp = Literal["eq", "neq", "gt", "lt", "gte", "lte", "in", "not_in", "contains", "is_null", "not_null", "between"]
PermissionScope = Literal["all", "organization", "own", "none"]
RenderStatus = Literal["ok", "error"]


class FilterSpec(BaseModel):
    field: str
    op: FilterOp = "eq"
    value: Any | None = None


class UniversalFilters(BaseModel):
    start_date: str | None = None
    end_date: str | None = None
    date_range_preset: str | None = None
    organization_id: str | None = None
    provider_name: str | None = None
    # Resolved server-side from organization_id, never accepted from clients.
    practice_uids: list[int] | None = Field(default=None, exclude=True)


class DashboardRenderRequest(BaseModel):
    universal_filters: UniversalFilters = Field(default_factory=UniversalFilters)
    nocache: bool = False


class ChartSpecification(BaseModel):
    chart_id: str
    chart_name: str = ""
    chart_type: str
    data_source_id: int
    measure: str | None = None
    frequency: str | None = None
    start_date: str | None = None
    end_date: str | None = None
    practice_uid: int | None = None
    provider_name: str | None = None
    practice_uids: list[int] | None = None
    advanced_filters: list[FilterSpec] = Field(default_factory=list)
    group_by: str | None = None
    color_palette: str | None = None
    stacking_mode: str | None = None
    extra: dict[str, Any] = Field(default_factory=dict)


class AccessContext(BaseModel):
    user_id: str
    permission_scope: PermissionScope = "none"
    accessible_practice_uids: list[int] = Field(default_factory=list)
    provider_uid: int | None = None
    organization_ids: list[str] = Field(default_factory=list)
    is_super_admin: bool = False


class RoleInfo(BaseModel):
    role_id: str
    name: str
    organization_id: str | None = None
    permissions: list[str] = Field(default_factory=list)


class OrganizationInfo(BaseModel):
    organization_id: str
    name: str
    parent_organization_id: str | None = None
    practice_uids: list[int] = Field(default_factory=list)


class UserBasicInfo(BaseModel):
    user_id: str
    email: str
    first_name: str | None = None
    last_name: str | None = None
    is_active: bool = True
    provider_uid: int | None = None


class UserContext(BaseModel):
    user: UserBasicInfo
    roles: list[RoleInfo] = Field(default_factory=list)
    organizations: list[OrganizationInfo] = Field(default_factory=list)

    @property
    def user_id(self) -> str:
        return self.user.user_id

    @property
    def permission_names(self) -> set[str]:
        return {name for role in self.roles for name in role.permissions}


class ResolvedQuery(BaseModel):
    """Fetch-affecting parameters handed to the analytics query executor."""

    data_source_id: int
    measure: str | None = None
    frequency: str | None = None
    start_date: str | None = None
    end_date: str | None = None
    practice_uid: int | None = None
    provider_name: str | None = None
    practice_uids: list[int] | None = None
    provider_uid: int | None = None
    advanced_filters: list[FilterSpec] = Field(default_factory=list)
    group_by: str | None = None


class QueryOutcome(BaseModel):
    rows: list[dict[str, Any]]
    query_time_ms: int = 0
    cache_hit: bool = False


class ChartDataset(BaseModel):
    label: str
    data: list[float | None] = Field(default_factory=list)


class ChartData(BaseModel):
    labels: list[str] = Field(default_factory=list)
    datasets: list[ChartDataset] = Field(default_factory=list)
    measure_type: str | None = None
    value: float | None = None
    columns: list[str] | None = None
    rows: list[dict[str, Any]] | None = None


class ChartError(BaseModel):
    code: str
    message: str


class ChartRenderMetadata(BaseModel):
    row_count: int = 0
    query_time_ms: int = 0
    cache_hit: bool = False
    deduped: bool = False
    query_signature: str | None = None
    measure: str | None = None
    frequency: str | None = None
    group_by: str | None = None


class RenderResult(BaseModel):
    chart_id: str
    status: RenderStatus
    chart_type: str | None = None
    chart_data: ChartData | None = None
    raw_row_count: int = 0
    error: ChartError | None = None
    metadata: ChartRenderMetadata = Field(default_factory=ChartRenderMetadata)


class DashboardRenderMetadata(BaseModel):
    total_time_ms: int = 0
    charts_rendered: int = 0
    charts_failed: int = 0
    unique_queries: int = 0
    queries_executed: int = 0
    queries_deduplicated: int = 0
    deduplication_rate: float = 0.0
    cache_hits: int = 0
    cache_misses: int = 0
    dashboard_filters_applied: list[str] = Field(default_factory=list)
    parallel_execution: bool = False


class DashboardRenderResponse(BaseModel):
    dashboard_id: str
    charts: dict[str, RenderResult] = Field(default_factory=dict)
    metadata: DashboardRenderMetadata = Field(default_factory=DashboardRenderMetadata)


class CacheKeysRequest(BaseModel):
    query_hashes: list[str] = Field(default_factory=list)


class CacheNamespaceStats(BaseModel):
    hits: int = 0
    misses: int = 0
    fallbacks: int = 0


class CacheStatsResponse(BaseModel):
    available: bool
    namespaces: dict[str, CacheNamespaceStats] = Field(default_factory=dict)
