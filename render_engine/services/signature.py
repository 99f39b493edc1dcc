from __future__ import annotations

import hashlib
import json
from datetime import date, datetime
from typing import Any, Callable

from render_engine.schemas import AccessContext, ChartSpecification, FilterSpec, ResolvedQuery

# Operators whose value is an unordered set of candidates.
_SET_OPS = {"in", "not_in"}
_VALUELESS_OPS = {"is_null", "not_null"}


def _normalize_date(value: str | date | None) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    stripped = str(value).strip()
    if not stripped:
        return None
    try:
        return date.fromisoformat(stripped[:10]).isoformat()
    except ValueError:
        return stripped


def _normalize_text(value: str | None) -> str | None:
    if value is None:
        return None
    return value.strip() or None


def _canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=True, default=str)


def _normalize_filter(item: FilterSpec) -> FilterSpec | None:
    field = item.field.strip()
    if not field:
        return None
    if item.op in _VALUELESS_OPS:
        return FilterSpec(field=field, op=item.op, value=None)
    if item.op in _SET_OPS:
        values = item.value if isinstance(item.value, (list, tuple, set)) else [item.value]
        unique = {_canonical_json(value): value for value in values}
        return FilterSpec(field=field, op=item.op, value=[unique[key] for key in sorted(unique)])
    return FilterSpec(field=field, op=item.op, value=item.value)


def _normalize_filters(filters: list[FilterSpec]) -> list[FilterSpec]:
    unique: dict[str, FilterSpec] = {}
    for item in filters:
        normalized = _normalize_filter(item)
        if normalized is not None:
            unique.setdefault(_canonical_json(normalized.model_dump()), normalized)
    return [unique[key] for key in sorted(unique)]


def _normalize_practice_uids(values: list[int] | None) -> list[int] | None:
    if values is None:
        return None
    return sorted({int(item) for item in values})


class QuerySignatureHasher:
    """Derives the storage query a chart needs and hashes it.

    ``resolve`` produces the canonical query: the executor compiles exactly
    that object and ``signature`` hashes exactly that object, so two charts
    share a signature only when they would run the same SQL. Canonicalisation
    is limited to rewrites that cannot change the fetched rows (whitespace,
    ISO dates, filter order, ``in`` value order and duplicates).

    Chart type, colour palette and stacking mode never take part; the display
    grouping only does for chart types flagged by ``group_by_affects_fetch``.
    """

    def __init__(self, group_by_affects_fetch: Callable[[str], bool] | None = None) -> None:
        self._group_by_affects_fetch = group_by_affects_fetch or (lambda _chart_type: False)

    def resolve(self, chart: ChartSpecification, access: AccessContext) -> ResolvedQuery:
        practice_uids, provider_uid = self._effective_scope(chart, access)
        group_by = _normalize_text(chart.group_by) if self._group_by_affects_fetch(chart.chart_type) else None
        return ResolvedQuery(
            data_source_id=int(chart.data_source_id),
            measure=_normalize_text(chart.measure),
            frequency=_normalize_text(chart.frequency),
            start_date=_normalize_date(chart.start_date),
            end_date=_normalize_date(chart.end_date),
            practice_uid=chart.practice_uid,
            provider_name=_normalize_text(chart.provider_name),
            practice_uids=practice_uids,
            provider_uid=provider_uid,
            advanced_filters=_normalize_filters(list(chart.advanced_filters)),
            group_by=group_by,
        )

    def canonicalize(self, query: ResolvedQuery, access: AccessContext) -> dict[str, Any]:
        payload = query.model_dump(exclude={"practice_uids", "provider_uid"})
        payload["scope"] = {
            "permission_scope": access.permission_scope,
            "practice_uids": query.practice_uids,
            "provider_uid": query.provider_uid,
        }
        return payload

    def signature(self, query: ResolvedQuery, access: AccessContext) -> str:
        canonical = self.canonicalize(query, access)
        return hashlib.sha256(_canonical_json(canonical).encode("utf-8")).hexdigest()

    def hash(self, chart: ChartSpecification, access: AccessContext) -> str:
        return self.signature(self.resolve(chart, access), access)

    def _effective_scope(self, chart: ChartSpecification, access: AccessContext) -> tuple[list[int] | None, int | None]:
        requested = _normalize_practice_uids(chart.practice_uids)
        if access.permission_scope == "all":
            return requested, None
        if access.permission_scope == "organization":
            accessible = set(access.accessible_practice_uids)
            if requested is None:
                return sorted(accessible), None
            return sorted(accessible.intersection(requested)), None
        if access.permission_scope == "own":
            if access.provider_uid is None:
                return [], None
            return requested, access.provider_uid
        return [], None
