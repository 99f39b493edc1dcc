from __future__ import annotations

from dataclasses import dataclass, field

from sqlalchemy.orm import Session, joinedload

from render_engine.database import SessionLocal
from render_engine.errors import EngineError
from render_engine.models import ChartDataSource, Dashboard, DashboardChart
from render_engine.schemas import AccessContext
from render_engine.services.filters import ChartDefinitionRecord


@dataclass(slots=True)
class DashboardDefinition:
    dashboard_id: str
    dashboard_name: str
    organization_id: str | None
    charts: list[ChartDefinitionRecord] = field(default_factory=list)


def _ensure_dashboard_access(dashboard: Dashboard, access: AccessContext) -> None:
    if access.permission_scope == "all":
        return
    if access.permission_scope == "none":
        raise EngineError(status_code=403, code="dashboard_access_denied", message="You do not have access to this dashboard")
    if dashboard.organization_id is None:
        return
    if access.permission_scope == "organization" and dashboard.organization_id in access.organization_ids:
        return
    if access.permission_scope == "own" and dashboard.created_by == access.user_id:
        return
    raise EngineError(status_code=403, code="dashboard_access_denied", message="You do not have access to this dashboard")


class DashboardDefinitionStore:
    def __init__(self, db: Session) -> None:
        self._db = db

    def load_dashboard(self, dashboard_id: str, access: AccessContext) -> DashboardDefinition:
        dashboard = (
            self._db.query(Dashboard)
            .options(joinedload(Dashboard.charts).joinedload(DashboardChart.chart))
            .filter(Dashboard.dashboard_id == dashboard_id, Dashboard.is_active.is_(True))
            .first()
        )
        if dashboard is None:
            raise EngineError(status_code=404, code="dashboard_not_found", message="Dashboard not found")
        _ensure_dashboard_access(dashboard, access)

        charts: list[ChartDefinitionRecord] = []
        for link in dashboard.charts:
            chart = link.chart
            # Inactive charts are not part of the renderable chart list.
            if chart is None or not chart.is_active:
                continue
            charts.append(
                ChartDefinitionRecord(
                    chart_id=chart.chart_definition_id,
                    chart_name=chart.chart_name,
                    chart_type=chart.chart_type,
                    data_source_id=chart.data_source_id,
                    data_source=dict(chart.data_source or {}),
                    chart_config=dict(chart.chart_config or {}),
                )
            )
        return DashboardDefinition(
            dashboard_id=dashboard.dashboard_id,
            dashboard_name=dashboard.dashboard_name,
            organization_id=dashboard.organization_id,
            charts=charts,
        )


def lookup_data_source_table(data_source_id: int) -> str | None:
    db = SessionLocal()
    try:
        row = (
            db.query(ChartDataSource)
            .filter(ChartDataSource.data_source_id == data_source_id, ChartDataSource.is_active.is_(True))
            .first()
        )
        if row is None:
            return None
        return f"{row.schema_name}.{row.table_name}"
    finally:
        db.close()
