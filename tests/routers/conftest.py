"""Shared fixtures for router tests."""

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from etl_versioning.services.container import build_services
from etl_versioning.services.data_versioning import StoreSettings
from etl_versioning.services.rollback import RollbackConfig


@pytest.fixture
def services():
    """In-memory service container with short restore timeouts."""
    return build_services(
        config=RollbackConfig(
            max_concurrent=3,
            task_timeout_seconds=1.0,
            restore_max_retries=0,
            restore_retry_delay=0.0,
        ),
        settings=StoreSettings(backend="memory", lock_timeout_seconds=1.0),
    )


@pytest.fixture
def client(services):
    """TestClient whose lifespan and dependencies use the test container."""
    with patch("etl_versioning.main.build_services") as mock_build:
        mock_build.return_value = services
        from etl_versioning.main import app
        from etl_versioning.routers import get_services

        app.dependency_overrides[get_services] = lambda: services

        with TestClient(app, raise_server_exceptions=False) as c:
            yield c

        app.dependency_overrides.clear()


@pytest.fixture
def seeded(client):
    """customers@v2, orders@v3 in proj_1 via the API."""
    client.post("/api/snapshots/customers", json={
        "project_id": "proj_1",
        "records": [{"id": i, "email": f"c{i}@example.com"} for i in range(1, 4)],
    })
    client.post("/api/snapshots/customers", json={
        "project_id": "proj_1",
        "records": [{"id": i, "email": f"c{i}@example.com"} for i in range(2, 6)],
    })
    for n in range(1, 4):
        client.post("/api/snapshots/orders", json={
            "project_id": "proj_1",
            "records": [{"order_id": i} for i in range(n)],
        })
    return client
