from __future__ import annotations

import re
from typing import Any

from render_engine.errors import EngineError
from render_engine.schemas import FilterSpec, ResolvedQuery

DEFAULT_ANALYTICS_TABLE = "ih.agg_app_measures"

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _quote_ident(identifier: str) -> str:
    if not _IDENTIFIER_RE.match(identifier):
        raise EngineError(status_code=400, code="invalid_identifier", message=f"Invalid column or table name: {identifier}")
    return '"' + identifier.replace('"', '""') + '"'


def _qualified_name(name: str) -> str:
    parts = [part for part in name.split(".") if part]
    if not parts:
        raise EngineError(status_code=400, code="invalid_identifier", message="Empty table name")
    return ".".join(_quote_ident(part) for part in parts)


def _apply_filter(filters: list[FilterSpec]) -> tuple[list[str], list[Any]]:
    where_parts: list[str] = []
    params: list[Any] = []

    for item in filters:
        column = _quote_ident(item.field)
        op = item.op
        value = item.value

        if op == "eq":
            where_parts.append(f"{column} = %s")
            params.append(value)
        elif op == "neq":
            where_parts.append(f"{column} <> %s")
            params.append(value)
        elif op == "gt":
            where_parts.append(f"{column} > %s")
            params.append(value)
        elif op == "lt":
            where_parts.append(f"{column} < %s")
            params.append(value)
        elif op == "gte":
            where_parts.append(f"{column} >= %s")
            params.append(value)
        elif op == "lte":
            where_parts.append(f"{column} <= %s")
            params.append(value)
        elif op == "contains":
            where_parts.append(f"{column}::text ILIKE %s")
            params.append(f"%{value}%")
        elif op in {"in", "not_in"}:
            values = value if isinstance(value, list) else [value]
            if not values:
                # Empty IN matches nothing, empty NOT IN matches everything.
                where_parts.append("FALSE" if op == "in" else "TRUE")
                continue
            placeholders = ", ".join(["%s"] * len(values))
            operator = "IN" if op == "in" else "NOT IN"
            where_parts.append(f"{column} {operator} ({placeholders})")
            params.extend(values)
        elif op == "between":
            if not isinstance(value, list) or len(value) != 2:
                raise EngineError(status_code=400, code="invalid_filter", message="between filter requires [start, end]")
            where_parts.append(f"{column} BETWEEN %s AND %s")
            params.extend(value)
        elif op == "is_null":
            where_parts.append(f"{column} IS NULL")
        elif op == "not_null":
            where_parts.append(f"{column} IS NOT NULL")
        else:
            raise EngineError(status_code=400, code="invalid_filter", message=f"Unsupported filter operator: {op}")

    return where_parts, params


def compile_analytics_query(query: ResolvedQuery, *, table: str = DEFAULT_ANALYTICS_TABLE, row_limit: int = 10000) -> tuple[str, list[Any]]:
    """Compile a resolved chart query into a parameterised read-only SELECT.

    Practice scope is fail-closed: an explicit empty scope compiles to
    ``WHERE FALSE`` instead of dropping the predicate.
    """
    where_parts: list[str] = []
    params: list[Any] = []

    if query.measure:
        where_parts.append('"measure" = %s')
        params.append(query.measure)
    if query.frequency:
        where_parts.append('"frequency" = %s')
        params.append(query.frequency)
    if query.start_date:
        where_parts.append('"date_index" >= %s::date')
        params.append(query.start_date[:10])
    if query.end_date:
        where_parts.append('"date_index" <= %s::date')
        params.append(query.end_date[:10])
    if query.practice_uid is not None:
        where_parts.append('"practice_uid" = %s')
        params.append(query.practice_uid)
    if query.provider_name:
        where_parts.append('"provider_name" = %s')
        params.append(query.provider_name)
    if query.practice_uids is not None:
        if not query.practice_uids:
            where_parts.append("FALSE")
        else:
            placeholders = ", ".join(["%s"] * len(query.practice_uids))
            where_parts.append(f'"practice_uid" IN ({placeholders})')
            params.extend(query.practice_uids)
    if query.provider_uid is not None:
        where_parts.append('"provider_uid" = %s')
        params.append(query.provider_uid)

    filter_parts, filter_params = _apply_filter(query.advanced_filters)
    where_parts.extend(filter_parts)
    params.extend(filter_params)

    sql = f"SELECT * FROM {_qualified_name(table)}"
    if where_parts:
        sql += " WHERE " + " AND ".join(where_parts)
    sql += ' ORDER BY "date_index" ASC'
    sql += f" LIMIT {max(1, int(row_limit))}"
    return sql, params
