from __future__ import annotations

from typing import Any, Protocol

from render_engine.schemas import ResolvedQuery


class AnalyticsQueryExecutor(Protocol):
    async def execute_query(self, query: ResolvedQuery) -> list[dict[str, Any]]: ...
