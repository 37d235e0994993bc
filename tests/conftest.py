"""
Common pytest fixtures for the etl-versioning test suite.

Provides shared fixtures for:
- In-memory snapshot store and rollback services
- Sample record sets
- MongoDB mocking
"""

import os
from typing import Any, Dict, List
from unittest.mock import MagicMock

import pytest

from etl_versioning.services.data_versioning import DiffEngine, SnapshotStore
from etl_versioning.services.rollback import (
    InMemoryRollbackRepository,
    RestoreCoordinator,
    RetentionManager,
    RollbackConfig,
    RollbackPointManager,
    RollbackScope,
)


# ============================================
# Environment Setup
# ============================================

@pytest.fixture(scope="session", autouse=True)
def setup_test_environment():
    """Set up test environment variables."""
    os.environ.setdefault("ENV", "development")
    os.environ.setdefault("VERSIONING_BACKEND", "memory")
    os.environ.setdefault("LOG_FORMAT", "console")
    os.environ.setdefault("MONGODB_URI", "mongodb://localhost:27017")
    os.environ.setdefault("MONGODB_DATABASE", "test_etl_versioning")
    yield


# ============================================
# Sample Data
# ============================================

def make_customers(count: int, start: int = 1, domain: str = "example.com") -> List[Dict[str, Any]]:
    """id/name/email 고객 레코드"""
    return [
        {"id": i, "name": f"Customer {i}", "email": f"customer{i}@{domain}"}
        for i in range(start, start + count)
    ]


@pytest.fixture
def customers_v1() -> List[Dict[str, Any]]:
    return make_customers(100)


@pytest.fixture
def customers_v2(customers_v1) -> List[Dict[str, Any]]:
    """ids 1-2 삭제, 3-5 이메일 변경, 101-105 추가"""
    records = [dict(r) for r in customers_v1 if r["id"] > 2]
    for record in records:
        if record["id"] in (3, 4, 5):
            record["email"] = f"customer{record['id']}@changed.com"
    records.extend(make_customers(5, start=101))
    return records


# ============================================
# Service Fixtures
# ============================================

@pytest.fixture
def rollback_config() -> RollbackConfig:
    return RollbackConfig(
        max_concurrent=3,
        task_timeout_seconds=1.0,
        restore_max_retries=1,
        restore_retry_delay=0.0,
    )


@pytest.fixture
def store() -> SnapshotStore:
    return SnapshotStore(lock_timeout=1.0)


@pytest.fixture
def diff_engine(store) -> DiffEngine:
    return DiffEngine(store)


@pytest.fixture
def repository() -> InMemoryRollbackRepository:
    return InMemoryRollbackRepository()


@pytest.fixture
def manager(store, repository, rollback_config) -> RollbackPointManager:
    return RollbackPointManager(store, repository=repository, config=rollback_config)


@pytest.fixture
def coordinator(manager) -> RestoreCoordinator:
    return RestoreCoordinator(manager)


@pytest.fixture
def retention(manager) -> RetentionManager:
    return RetentionManager(manager)


@pytest.fixture
def two_sources(store):
    """customers@v2, orders@v5 (프로젝트 proj_1)"""
    store.create_snapshot("customers", make_customers(10), project_id="proj_1")
    store.create_snapshot("customers", make_customers(12), project_id="proj_1")
    for n in range(1, 6):
        store.create_snapshot("orders", [{"order_id": i} for i in range(n * 3)], project_id="proj_1")
    return store


@pytest.fixture
def scope() -> RollbackScope:
    return RollbackScope(project_id="proj_1", data_source_ids=["customers", "orders"])


# ============================================
# MongoDB Fixtures
# ============================================

@pytest.fixture
def mock_mongo_db():
    """Create a mock MongoDB database."""
    mock_db = MagicMock()
    mock_db.data_snapshots = MagicMock()
    mock_db.snapshot_data = MagicMock()
    mock_db.snapshot_pointers = MagicMock()
    collections = {
        "rollback_points": MagicMock(),
        "rollback_operations": MagicMock(),
    }
    mock_db.__getitem__.side_effect = lambda name: collections[name]
    return mock_db


@pytest.fixture
def mock_mongo(mock_mongo_db):
    """Create mock MongoService."""
    mock_instance = MagicMock()
    mock_instance.db = mock_mongo_db
    mock_instance.uri = "mongodb://localhost:27017"
    mock_instance.database_name = "test_etl_versioning"
    return mock_instance


@pytest.fixture
def customer_factory():
    return make_customers
