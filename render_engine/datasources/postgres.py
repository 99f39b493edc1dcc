from __future__ import annotations

import asyncio
import hashlib
import logging
import re
from time import perf_counter
from typing import Any, Callable

from psycopg import AsyncConnection

from render_engine.errors import EngineError
from render_engine.schemas import ResolvedQuery
from render_engine.services.compiler import DEFAULT_ANALYTICS_TABLE, compile_analytics_query

logger = logging.getLogger("uvicorn.error")

_DANGEROUS_PATTERN = re.compile(
    r"\b(insert|update|delete|drop|alter|truncate|create|grant|revoke|merge|call|execute|copy|vacuum|analyze|refresh|reindex)\b",
    re.IGNORECASE,
)


def _validate_sql(sql: str) -> None:
    normalized = " ".join(sql.strip().split())
    lowered = normalized.lower().strip("; ").strip()
    if not lowered:
        raise EngineError(status_code=400, code="empty_query", message="Empty query")
    if ";" in lowered:
        raise EngineError(status_code=400, code="multiple_statements", message="Multiple statements are not allowed")
    if not (lowered.startswith("select ") or lowered.startswith("with ")):
        raise EngineError(status_code=400, code="read_only_only", message="Only read-only SELECT statements are allowed")
    if _DANGEROUS_PATTERN.search(lowered):
        raise EngineError(status_code=400, code="dangerous_sql", message="Dangerous SQL operation blocked")


def sql_hash(sql: str) -> str:
    normalized = " ".join(sql.split()).strip().lower()
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


class PostgresAnalyticsExecutor:
    def __init__(
        self,
        database_url: str,
        *,
        timeout_seconds: int,
        row_limit: int,
        table_for: Callable[[int], str | None] | None = None,
    ) -> None:
        self._database_url = database_url
        self._timeout_seconds = timeout_seconds
        self._row_limit = row_limit
        self._table_for = table_for

    def compile(self, query: ResolvedQuery) -> tuple[str, list[Any]]:
        if self._table_for is None:
            return compile_analytics_query(query, table=DEFAULT_ANALYTICS_TABLE, row_limit=self._row_limit)
        table = self._table_for(query.data_source_id)
        if table is None:
            raise EngineError(
                status_code=404,
                code="datasource_not_found",
                message=f"Data source {query.data_source_id} not found or inactive",
            )
        return compile_analytics_query(query, table=table, row_limit=self._row_limit)

    async def execute_query(self, query: ResolvedQuery) -> list[dict[str, Any]]:
        sql, params = self.compile(query)
        started_at = perf_counter()
        _, rows = await self.execute(sql=sql, params=params, timeout_seconds=self._timeout_seconds)
        logger.info(
            "query.execute | %s",
            {
                "data_source_id": query.data_source_id,
                "sql_hash": sql_hash(sql)[:16],
                "row_count": len(rows),
                "duration_ms": int((perf_counter() - started_at) * 1000),
            },
        )
        return rows

    async def execute(self, *, sql: str, params: list[object], timeout_seconds: int) -> tuple[list[str], list[dict[str, Any]]]:
        _validate_sql(sql)
        conn: AsyncConnection[Any] | None = None
        try:
            conn = await AsyncConnection.connect(self._database_url)
            result = await asyncio.wait_for(conn.execute(sql, params), timeout=timeout_seconds)
            rows = await result.fetchall()
            columns = [desc[0] for desc in result.description or []]
            dict_rows: list[dict[str, Any]] = []
            for row in rows:
                dict_rows.append({column: row[idx] for idx, column in enumerate(columns)})
            return columns, dict_rows
        except asyncio.TimeoutError as exc:
            raise EngineError(status_code=504, code="query_timeout", message="Query execution timed out") from exc
        except EngineError:
            raise
        except Exception as exc:
            raise EngineError(status_code=500, code="datasource_error", message="Datasource execution failed") from exc
        finally:
            if conn:
                await conn.close()
