from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Callable

from pydantic import ValidationError

from render_engine.errors import EngineError
from render_engine.schemas import ChartSpecification, FilterSpec, UniversalFilters

_OPERATOR_ALIASES = {
    "=": "eq",
    "==": "eq",
    "equals": "eq",
    "!=": "neq",
    "not_equals": "neq",
    ">": "gt",
    "<": "lt",
    ">=": "gte",
    "<=": "lte",
    "like": "contains",
    "ilike": "contains",
    "not in": "not_in",
}


@dataclass(slots=True)
class ChartDefinitionRecord:
    chart_id: str
    chart_name: str
    chart_type: str
    data_source_id: int | None
    data_source: dict[str, Any] = field(default_factory=dict)
    chart_config: dict[str, Any] = field(default_factory=dict)


def _quarter_start(day: date) -> date:
    return date(day.year, 3 * ((day.month - 1) // 3) + 1, 1)


def _month_start(day: date) -> date:
    return day.replace(day=1)


def _preset_range(preset: str, today: date) -> tuple[date, date] | None:
    if preset == "today":
        return today, today
    if preset == "yesterday":
        yesterday = today - timedelta(days=1)
        return yesterday, yesterday
    if preset.startswith("last_") and preset.endswith("_days"):
        days = preset[len("last_") : -len("_days")]
        if days.isdigit() and int(days) > 0:
            return today - timedelta(days=int(days) - 1), today
        return None
    if preset == "last_12_months":
        start = _month_start(today)
        year, month = start.year - 1, start.month
        return date(year, month, 1), today
    if preset == "this_month":
        return _month_start(today), today
    if preset == "last_month":
        end = _month_start(today) - timedelta(days=1)
        return _month_start(end), end
    if preset == "this_quarter":
        return _quarter_start(today), today
    if preset == "last_quarter":
        end = _quarter_start(today) - timedelta(days=1)
        return _quarter_start(end), end
    if preset in {"this_year", "year_to_date", "ytd"}:
        return date(today.year, 1, 1), today
    if preset == "last_year":
        return date(today.year - 1, 1, 1), date(today.year - 1, 12, 31)
    return None


def resolve_date_range(
    preset: str | None,
    start_date: str | None,
    end_date: str | None,
    *,
    today: date,
) -> tuple[str | None, str | None]:
    """Explicit dates win; a preset only fills the bounds that are missing."""
    if preset and (start_date is None or end_date is None):
        bounds = _preset_range(preset.strip().lower().replace("-", "_"), today)
        if bounds is None:
            raise EngineError(status_code=400, code="invalid_date_preset", message=f"Unknown date range preset: {preset}")
        start_date = start_date or bounds[0].isoformat()
        end_date = end_date or bounds[1].isoformat()
    return start_date, end_date


def resolve_dashboard_dates(universal: UniversalFilters, *, today: date) -> UniversalFilters:
    """Turn the dashboard-level preset into explicit bounds once per render."""
    if not universal.date_range_preset:
        return universal
    start_date, end_date = resolve_date_range(
        universal.date_range_preset,
        universal.start_date,
        universal.end_date,
        today=today,
    )
    return universal.model_copy(update={"start_date": start_date, "end_date": end_date, "date_range_preset": None})


def _filter_op(raw: Any) -> str:
    op = str(raw or "eq").strip().lower()
    return _OPERATOR_ALIASES.get(op, op)


def _as_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    return int(value)


def extract_chart_filters(record: ChartDefinitionRecord) -> dict[str, Any]:
    """Pull the fetch-affecting values out of a stored chart definition."""
    filters = record.data_source.get("filters") or []
    if not isinstance(filters, list):
        raise EngineError(status_code=422, code="invalid_chart_config", message="data_source.filters must be a list")

    extracted: dict[str, Any] = {"advanced_filters": []}
    for item in filters:
        if not isinstance(item, dict):
            continue
        name = item.get("field")
        op = _filter_op(item.get("operator") or item.get("op"))
        value = item.get("value")
        if name == "measure":
            extracted["measure"] = value
        elif name == "frequency":
            extracted["frequency"] = value
        elif name == "practice_uid":
            try:
                extracted["practice_uid"] = _as_int(value)
            except (TypeError, ValueError) as exc:
                raise EngineError(status_code=422, code="invalid_chart_config", message="practice_uid must be a number") from exc
        elif name == "provider_name":
            extracted["provider_name"] = value
        elif name == "date_index" and op == "gte":
            extracted["start_date"] = value
        elif name == "date_index" and op == "lte":
            extracted["end_date"] = value

    advanced = record.data_source.get("advancedFilters") or []
    if not isinstance(advanced, list):
        raise EngineError(status_code=422, code="invalid_chart_config", message="data_source.advancedFilters must be a list")
    for item in advanced:
        if not isinstance(item, dict):
            continue
        try:
            extracted["advanced_filters"].append(
                FilterSpec(field=item.get("field"), op=_filter_op(item.get("operator") or item.get("op")), value=item.get("value"))
            )
        except ValidationError as exc:
            raise EngineError(status_code=422, code="invalid_chart_config", message=f"Invalid advanced filter: {item}") from exc
    return extracted


def build_chart_specification(
    record: ChartDefinitionRecord,
    universal: UniversalFilters,
    *,
    today: Callable[[], date],
) -> ChartSpecification:
    """Merge dashboard-level filters into one chart definition.

    Chart-level values take precedence on conflicting keys. Practice uids
    resolved from the dashboard organization filter are access scope and are
    always applied, even when empty.
    """
    config = record.chart_config if isinstance(record.chart_config, dict) else {}
    series = config.get("series") if isinstance(config.get("series"), dict) else {}
    chart_filters = extract_chart_filters(record)

    try:
        data_source_id = _as_int(config.get("dataSourceId")) or record.data_source_id
    except (TypeError, ValueError) as exc:
        raise EngineError(status_code=422, code="invalid_chart_config", message="dataSourceId must be a number") from exc
    if not data_source_id or data_source_id <= 0:
        raise EngineError(status_code=422, code="invalid_chart_config", message="dataSourceId is required")

    day = today()
    chart_start, chart_end = resolve_date_range(
        config.get("dateRangePreset"),
        chart_filters.get("start_date"),
        chart_filters.get("end_date"),
        today=day,
    )
    dashboard_start, dashboard_end = resolve_date_range(
        universal.date_range_preset,
        universal.start_date,
        universal.end_date,
        today=day,
    )

    group_by = None
    if record.chart_type != "number":
        group_by = series.get("groupBy") or config.get("groupBy")

    known = {"series", "groupBy", "colorPalette", "stackingMode", "dataSourceId", "dateRangePreset"}
    return ChartSpecification(
        chart_id=record.chart_id,
        chart_name=record.chart_name,
        chart_type=record.chart_type,
        data_source_id=data_source_id,
        measure=chart_filters.get("measure"),
        frequency=chart_filters.get("frequency"),
        start_date=chart_start or dashboard_start,
        end_date=chart_end or dashboard_end,
        practice_uid=chart_filters.get("practice_uid"),
        provider_name=chart_filters.get("provider_name") or universal.provider_name,
        practice_uids=universal.practice_uids,
        advanced_filters=chart_filters["advanced_filters"],
        group_by=group_by,
        color_palette=series.get("colorPalette") or config.get("colorPalette"),
        stacking_mode=config.get("stackingMode"),
        extra={key: value for key, value in config.items() if key not in known},
    )


def applied_filter_names(filters: UniversalFilters) -> list[str]:
    applied: list[str] = []
    if filters.start_date or filters.end_date or filters.date_range_preset:
        applied.append("dateRange")
    if filters.organization_id:
        applied.append("organization")
    if filters.practice_uids:
        applied.append("practice")
    if filters.provider_name:
        applied.append("provider")
    return applied
