import pytest
from fastapi.testclient import TestClient

from render_engine import models
from render_engine.api import routes
from render_engine.security import mint_access_token
from render_engine.services.renderer import DashboardRenderer
from render_engine.services.transformers import build_default_registry
from render_engine.settings import get_settings
from main import app

from conftest import FIXED_TODAY, FakeExecutor, measure_filters, seed_dashboard

ROWS = [{"date_index": "2024-01-01", "measure_value": 5, "measure_type": "count"}]


@pytest.fixture
def client(db, caches, monkeypatch: pytest.MonkeyPatch) -> TestClient:
    settings = get_settings()
    executor = FakeExecutor(ROWS)
    renderer = DashboardRenderer(
        settings=settings,
        caches=caches,
        executor=executor,
        registry=build_default_registry(settings),
        today=lambda: FIXED_TODAY,
    )
    monkeypatch.setattr(routes, "_caches", caches)
    monkeypatch.setattr(routes, "_renderer", renderer)

    db.add_all(
        [
            models.Permission(permission_id="p-all", name="analytics:read:all"),
            models.Permission(permission_id="p-own", name="analytics:read:own"),
            models.Role(role_id="r-admin", name="admin"),
            models.Role(role_id="r-provider", name="provider"),
            models.RolePermission(role_id="r-admin", permission_id="p-all"),
            models.RolePermission(role_id="r-provider", permission_id="p-own"),
            models.User(user_id="u-admin", email="admin@example.com"),
            models.User(user_id="u-provider", email="provider@example.com", provider_uid=42),
            models.UserRole(user_id="u-admin", role_id="r-admin"),
            models.UserRole(user_id="u-provider", role_id="r-provider"),
        ]
    )
    db.commit()
    seed_dashboard(
        db,
        charts=[
            {"id": "visits-line", "type": "line", "data_source": measure_filters("Visits")},
            {"id": "visits-total", "type": "number", "data_source": measure_filters("Visits")},
        ],
    )
    return TestClient(app)


def _headers(user_id: str = "u-admin", token_id: str | None = None) -> dict[str, str]:
    settings = get_settings()
    token = mint_access_token(subject=user_id, secret=settings.jwt_secret, algorithm=settings.jwt_algorithm, token_id=token_id)
    return {"Authorization": f"Bearer {token}", "X-Correlation-Id": "corr-1"}


def test_health_reports_cache_state(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "render-engine", "cache": "up"}


def test_render_dashboard(client: TestClient) -> None:
    response = client.post("/dashboards/dash-1/render", json={"universal_filters": {}}, headers=_headers())
    assert response.status_code == 200
    payload = response.json()
    assert set(payload["charts"]) == {"visits-line", "visits-total"}
    assert payload["charts"]["visits-total"]["chart_data"]["value"] == 5
    assert payload["metadata"]["unique_queries"] == 1
    assert payload["metadata"]["queries_deduplicated"] == 1


def test_render_requires_token(client: TestClient) -> None:
    response = client.post("/dashboards/dash-1/render", json={})
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "missing_token"

    response = client.post("/dashboards/dash-1/render", json={}, headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "invalid_token"


def test_unknown_dashboard_is_404(client: TestClient) -> None:
    response = client.post("/dashboards/missing/render", json={}, headers=_headers())
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "dashboard_not_found"


def test_blacklisted_token_is_rejected(client: TestClient) -> None:
    admin = _headers(token_id="admin-token")
    revoked = _headers(user_id="u-provider", token_id="provider-token")

    assert client.post("/dashboards/dash-1/render", json={}, headers=revoked).status_code == 200

    response = client.post("/admin/cache/tokens/provider-token/blacklist", headers=admin)
    assert response.status_code == 200

    response = client.post("/dashboards/dash-1/render", json={}, headers=revoked)
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "token_revoked"


def test_admin_endpoints_require_full_access(client: TestClient) -> None:
    response = client.get("/admin/cache/stats", headers=_headers(user_id="u-provider"))
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "admin_access_required"

    response = client.get("/admin/cache/stats", headers=_headers())
    assert response.status_code == 200
    body = response.json()
    assert body["available"] is True
    assert "user_context" in body["namespaces"]


def test_admin_invalidation_endpoints(client: TestClient, fake_redis) -> None:
    fake_redis.store["bcos:datasource:abc"] = ("[]", None)

    response = client.post("/admin/cache/datasource/invalidate", json={"query_hashes": ["abc"]}, headers=_headers())
    assert response.json() == {"status": "ok", "invalidated": 1}
    assert "bcos:datasource:abc" not in fake_redis.store

    response = client.post("/admin/cache/roles/r-provider/invalidate", headers=_headers())
    assert response.json() == {"status": "ok", "role_id": "r-provider", "users_invalidated": 1}

    response = client.post("/admin/cache/users/u-provider/invalidate", headers=_headers())
    assert response.json() == {"status": "ok", "user_id": "u-provider"}
