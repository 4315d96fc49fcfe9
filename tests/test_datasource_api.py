"""Tests for the data source API service."""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
import pytest_asyncio
from conftest import CLICKHOUSE_PARAMS, MANAGED_DATASOURCE_ID, ORG_ID
from fastapi.testclient import TestClient

from libs.datasources.connectors.base import ConnectionError, QueryError
from libs.datasources.exceptions import (
    ConflictError,
    CredentialDecryptionError,
    DataSourceError,
    NotFoundError,
    PermissionDeniedError,
    TemplateError,
    UnsupportedOperationError,
    ValidationError,
)
from libs.datasources.schemas import DataSourceType
from services.datasource_api.dependencies import get_registry
from services.datasource_api.errors import status_code_for
from services.datasource_api.main import app

HEADERS = {"X-Organization-Id": ORG_ID, "X-User-Id": "u_1"}


@pytest.fixture
def client():
    """Test client that does not run the lifespan."""
    yield TestClient(app)
    app.dependency_overrides.clear()
    for name in ("services", "db_manager"):
        if hasattr(app.state, name):
            delattr(app.state, name)


@pytest_asyncio.fixture
async def api(services):
    """Async client wired to real services over an in-memory database."""
    app.state.services = services
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    del app.state.services


def test_app_metadata():
    assert app.title == "Data Source API"
    assert app.version == "1.0.0"


def test_health_check(client):
    app.state.db_manager = MagicMock(health_check=AsyncMock(return_value=True))

    response = client.get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["data"]["status"] == "healthy"
    assert data["data"]["checks"] == {"database": "connected"}
    assert response.headers["X-Request-ID"]


def test_health_check_without_database(client):
    response = client.get("/health")
    assert response.json()["data"]["status"] == "unhealthy"


def test_request_id_is_echoed(client):
    response = client.get("/health", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"


def test_services_not_initialized(client):
    response = client.get("/v1/datasources", headers=HEADERS)
    assert response.status_code == 503


def test_organization_header_is_required(client):
    app.dependency_overrides[get_registry] = lambda: MagicMock()
    response = client.get("/v1/datasources")
    assert response.status_code == 422


@pytest.mark.parametrize(
    "error,status_code",
    [
        (ValidationError("bad"), 400),
        (TemplateError("missing", missing=["eventName"]), 400),
        (CredentialDecryptionError("undecryptable"), 400),
        (PermissionDeniedError("denied"), 403),
        (NotFoundError("missing"), 404),
        (ConflictError("taken"), 409),
        (UnsupportedOperationError("nope"), 422),
        (ConnectionError("refused", DataSourceType.SNOWFLAKE), 502),
        (QueryError("syntax", "SELEC 1"), 502),
        (DataSourceError("unknown"), 500),
    ],
)
def test_status_code_for(error, status_code):
    assert status_code_for(error) == status_code


def test_errors_use_the_standard_envelope(client):
    registry = MagicMock()
    registry.get_datasource = AsyncMock(
        side_effect=ValidationError(
            "Invalid clickhouse params", rule="params", field="params"
        )
    )
    app.dependency_overrides[get_registry] = lambda: registry

    response = client.get(
        "/v1/datasources/ds_1", headers={**HEADERS, "X-Request-ID": "req-9"}
    )

    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["error"]["code"] == "validation_error"
    assert body["error"]["rule"] == "params"
    assert body["error"]["field"] == "params"
    assert body["metadata"]["request_id"] == "req-9"


def test_conflict_context_is_returned(client):
    registry = MagicMock()
    registry.delete_datasource = AsyncMock(
        side_effect=ConflictError(
            "Cannot delete. One or more metrics are linked to this data source.",
            {"dependents": "metrics", "count": 2},
        )
    )
    app.dependency_overrides[get_registry] = lambda: registry

    response = client.delete("/v1/datasources/ds_1", headers=HEADERS)

    assert response.status_code == 409
    assert response.json()["error"]["context"] == {"dependents": "metrics", "count": 2}


class TestDataSourceEndpoints:
    @pytest.mark.asyncio
    async def test_create_then_get(self, api):
        response = await api.post(
            "/v1/datasources",
            headers=HEADERS,
            json={
                "name": "Warehouse",
                "type": "clickhouse",
                "params": CLICKHOUSE_PARAMS,
                "projects": ["prj_a"],
            },
        )
        assert response.status_code == 201
        created = response.json()["data"]
        assert created["params"]["password"] == ""

        response = await api.get(f"/v1/datasources/{created['id']}", headers=HEADERS)
        assert response.status_code == 200
        assert response.json()["data"]["name"] == "Warehouse"

    @pytest.mark.asyncio
    async def test_managed_requires_super_admin(self, api):
        response = await api.post("/v1/datasources/managed", headers=HEADERS)
        assert response.status_code == 403

        response = await api.post(
            "/v1/datasources/managed",
            headers={**HEADERS, "X-Super-Admin": "true"},
            json={"datasource_id": "ds_new"},
        )
        assert response.status_code == 201
        assert response.json()["data"]["params"]["username"] == "ds_new_reader"

    @pytest.mark.asyncio
    async def test_unknown_datasource(self, api):
        response = await api.get("/v1/datasources/ds_missing", headers=HEADERS)
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    @pytest.mark.asyncio
    async def test_default_datasource_cannot_be_deleted(self, api, managed_datasource):
        response = await api.delete(
            f"/v1/datasources/{MANAGED_DATASOURCE_ID}",
            headers={**HEADERS, "X-Default-Datasource": MANAGED_DATASOURCE_ID},
        )
        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_update_exposure_query(self, api, managed_datasource):
        response = await api.put(
            f"/v1/datasources/{MANAGED_DATASOURCE_ID}/exposure-queries/user_id",
            headers=HEADERS,
            json={"name": "Users"},
        )
        assert response.status_code == 200
        assert response.json()["data"]["name"] == "Users"


class TestMaterializedColumnEndpoints:
    @pytest.mark.asyncio
    async def test_add_update_delete(self, api, managed_datasource, warehouse):
        base = f"/v1/datasources/{MANAGED_DATASOURCE_ID}/materialized-columns"

        response = await api.post(
            base,
            headers=HEADERS,
            json={"source_field": "plan", "column_name": "plan", "datatype": "string"},
        )
        assert response.status_code == 201

        response = await api.put(
            f"{base}/plan", headers=HEADERS, json={"column_name": "plan_name"}
        )
        assert response.status_code == 200
        columns = response.json()["data"]["settings"]["materialized_columns"]
        assert [c["column_name"] for c in columns] == ["plan_name"]

        response = await api.put(
            f"{base}/plan_name", headers=HEADERS, json={"column_name": "plan_name"}
        )
        assert response.status_code == 409

        response = await api.delete(f"{base}/plan_name", headers=HEADERS)
        assert response.status_code == 200
        assert "plan_name" not in warehouse.column_names()

        response = await api.delete(f"{base}/plan_name", headers=HEADERS)
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_invalid_datatype(self, api, managed_datasource):
        response = await api.post(
            f"/v1/datasources/{MANAGED_DATASOURCE_ID}/materialized-columns",
            headers=HEADERS,
            json={"source_field": "plan", "column_name": "plan", "datatype": "integer"},
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_reconcile(self, api, managed_datasource):
        response = await api.post(
            f"/v1/datasources/{MANAGED_DATASOURCE_ID}/materialized-columns/reconcile",
            headers=HEADERS,
        )
        assert response.status_code == 200
        assert response.json()["data"] == {"added": [], "orphaned": []}


class TestQueryEndpoints:
    @pytest.mark.asyncio
    async def test_test_query(self, api, managed_datasource):
        response = await api.post(
            f"/v1/datasources/{MANAGED_DATASOURCE_ID}/test-query",
            headers=HEADERS,
            json={"sql": "SELECT * FROM events WHERE timestamp > '{{ startDate }}'"},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"]["results"] == [{"id": 1, "value": "a"}, {"id": 2, "value": "b"}]

    @pytest.mark.asyncio
    async def test_query_failure_is_in_the_payload(self, api, managed_datasource, warehouse):
        warehouse.fail_when = lambda sql: True
        response = await api.post(
            f"/v1/datasources/{MANAGED_DATASOURCE_ID}/query",
            headers=HEADERS,
            json={"sql": "SELECT 1", "limit": 10},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is False
        assert "simulated failure" in body["data"]["error"]

    @pytest.mark.asyncio
    async def test_missing_template_variable(self, api, managed_datasource):
        response = await api.post(
            f"/v1/datasources/{MANAGED_DATASOURCE_ID}/test-query",
            headers=HEADERS,
            json={"sql": "SELECT '{{ eventName }}'"},
        )
        assert response.status_code == 400
        assert response.json()["error"]["context"] == {"missing": ["eventName"]}

    @pytest.mark.asyncio
    async def test_get_queries_keeps_order(self, api, services, managed_datasource):
        first = await services.queries.create(ORG_ID, MANAGED_DATASOURCE_ID, "SELECT 1")

        response = await api.get(
            "/v1/queries", headers=HEADERS, params={"ids": f"qry_missing,{first.id}"}
        )

        data = response.json()["data"]
        assert data[0] is None
        assert data[1]["id"] == first.id


class TestDimensionSliceEndpoints:
    @pytest.mark.asyncio
    async def test_start_and_fetch(self, api, services, managed_datasource):
        response = await api.post(
            "/v1/dimension-slices",
            headers=HEADERS,
            json={
                "datasource_id": MANAGED_DATASOURCE_ID,
                "exposure_query_id": "user_id",
                "lookback_days": 7,
            },
        )
        assert response.status_code == 202
        run_id = response.json()["data"]["id"]

        entry = services.in_flight.get(run_id)
        if entry is not None:
            await entry.task

        response = await api.get(f"/v1/dimension-slices/{run_id}", headers=HEADERS)
        assert response.json()["data"]["status"] == "succeeded"

        response = await api.get(
            "/v1/dimension-slices/latest",
            headers=HEADERS,
            params={"datasource_id": MANAGED_DATASOURCE_ID, "exposure_query_id": "user_id"},
        )
        assert response.json()["data"]["id"] == run_id

        response = await api.post(f"/v1/dimension-slices/{run_id}/cancel", headers=HEADERS)
        assert response.json()["data"]["status"] == "succeeded"

    @pytest.mark.asyncio
    async def test_latest_without_runs(self, api, managed_datasource):
        response = await api.get(
            "/v1/dimension-slices/latest",
            headers=HEADERS,
            params={"datasource_id": MANAGED_DATASOURCE_ID, "exposure_query_id": "user_id"},
        )
        assert response.status_code == 200
        assert response.json()["data"] is None
