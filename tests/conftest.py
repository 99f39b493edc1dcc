import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("APP_DB_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_ENABLED", "false")
os.environ.setdefault("JWT_SECRET", "test-render-engine-secret")

import asyncio
from datetime import date
from typing import Any

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from render_engine import models
from render_engine.cache.backend import CacheBackend
from render_engine.cache.entities import EntityCaches
from render_engine.database import Base, SessionLocal, engine
from render_engine.errors import EngineError
from render_engine.schemas import ResolvedQuery
from render_engine.settings import Settings

FIXED_TODAY = date(2025, 3, 15)


class FakeClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRedis:
    """In-memory stand-in for the subset of redis.asyncio.Redis the backend uses."""

    def __init__(self, clock: FakeClock) -> None:
        self._clock = clock
        self.store: dict[str, tuple[str, float | None]] = {}
        self.ttls: dict[str, int | None] = {}
        self.fail = False
        self.calls: dict[str, int] = {"get": 0, "set": 0, "delete": 0, "ping": 0}

    def _check(self) -> None:
        if self.fail:
            raise RedisConnectionError("redis unavailable")

    async def ping(self) -> bool:
        self.calls["ping"] += 1
        self._check()
        return True

    async def get(self, key: str) -> str | None:
        self.calls["get"] += 1
        self._check()
        item = self.store.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at is not None and expires_at <= self._clock():
            self.store.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: str, ex: int | None = None) -> bool:
        self.calls["set"] += 1
        self._check()
        self.store[key] = (value, self._clock() + ex if ex else None)
        self.ttls[key] = ex
        return True

    async def delete(self, *keys: str) -> int:
        self.calls["delete"] += 1
        self._check()
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
        return removed

    async def aclose(self) -> None:
        return None


class FakeExecutor:
    def __init__(self, rows: list[dict[str, Any]] | None = None, *, fail_measures: set[str] | None = None, delay: float = 0.0) -> None:
        self.rows = rows if rows is not None else []
        self.fail_measures = fail_measures or set()
        self.delay = delay
        self.calls: list[ResolvedQuery] = []

    async def execute_query(self, query: ResolvedQuery) -> list[dict[str, Any]]:
        self.calls.append(query)
        if self.delay:
            await asyncio.sleep(self.delay)
        if query.measure in self.fail_measures:
            raise EngineError(status_code=500, code="datasource_error", message="Datasource execution failed")
        return [dict(row) for row in self.rows]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_redis(clock: FakeClock) -> FakeRedis:
    return FakeRedis(clock)


@pytest.fixture
def settings() -> Settings:
    return Settings(environment="test")


@pytest.fixture
def backend(fake_redis: FakeRedis, clock: FakeClock) -> CacheBackend:
    return CacheBackend(fake_redis, key_prefix="bcos", probe_interval_seconds=5.0, clock=clock)


@pytest.fixture
def caches(backend: CacheBackend, settings: Settings) -> EntityCaches:
    return EntityCaches.build(backend, settings, today=lambda: FIXED_TODAY)


@pytest.fixture
def db():
    """Database session for tests"""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    yield session
    session.close()
    Base.metadata.drop_all(bind=engine)


def seed_dashboard(
    db,
    *,
    dashboard_id: str = "dash-1",
    charts: list[dict[str, Any]],
    organization_id: str | None = None,
    created_by: str | None = None,
) -> models.Dashboard:
    if db.query(models.ChartDataSource).filter(models.ChartDataSource.data_source_id == 1).first() is None:
        db.add(models.ChartDataSource(data_source_id=1, name="App measures", schema_name="ih", table_name="agg_app_measures"))
    dashboard = models.Dashboard(
        dashboard_id=dashboard_id,
        dashboard_name="Revenue",
        organization_id=organization_id,
        created_by=created_by,
        is_active=True,
    )
    db.add(dashboard)
    for index, chart in enumerate(charts):
        db.add(
            models.ChartDefinition(
                chart_definition_id=chart["id"],
                chart_name=chart.get("name", chart["id"]),
                chart_type=chart["type"],
                data_source_id=1,
                data_source=chart.get("data_source", {}),
                chart_config=chart.get("chart_config", {"dataSourceId": 1}),
                is_active=chart.get("is_active", True),
            )
        )
        db.add(models.DashboardChart(dashboard_id=dashboard_id, chart_definition_id=chart["id"], sort_order=index))
    db.commit()
    return dashboard


def measure_filters(measure: str, frequency: str = "Monthly", start: str = "2024-01-01", end: str = "2024-12-31") -> dict[str, Any]:
    return {
        "filters": [
            {"field": "measure", "operator": "eq", "value": measure},
            {"field": "frequency", "operator": "eq", "value": frequency},
            {"field": "date_index", "operator": "gte", "value": start},
            {"field": "date_index", "operator": "lte", "value": end},
        ]
    }
