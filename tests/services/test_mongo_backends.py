"""
Tests for the MongoDB-backed snapshot backend, rollback repository and MongoService.

Covers:
- Snapshot backend collection operations
- Rollback repository queries and upserts
- pymongo error translation
- Connection handling and health check
"""

from datetime import datetime
from unittest.mock import MagicMock, PropertyMock, patch

import pytest
from bson.binary import Binary
from pymongo import ReturnDocument
from pymongo.errors import (
    AutoReconnect,
    ConnectionFailure,
    DuplicateKeyError,
    NetworkTimeout,
    OperationFailure,
    PyMongoError,
    ServerSelectionTimeoutError,
)

from etl_versioning.exceptions import (
    DatabaseConnectionError,
    DatabaseOperationError,
    NotFoundError,
    is_transient,
)
from etl_versioning.services.data_versioning import (
    CompressionType,
    MongoSnapshotBackend,
    Snapshot,
    SnapshotStore,
)
from etl_versioning.services.mongo_service import MongoService, MongoSettings, translate_pymongo_error
from etl_versioning.services.rollback import (
    CapturedSnapshot,
    MongoRollbackRepository,
    OperationStatus,
    RollbackOperation,
    RollbackPoint,
    RollbackPointStatus,
    RollbackPointType,
    RollbackScope,
)


def _snapshot(version: int = 1) -> Snapshot:
    return Snapshot(
        data_source_id="ds_1",
        version=version,
        record_count=2,
        created_at=datetime(2024, 1, 15, 10, 0, 0),
        records_ref="ref_1",
        snapshot_id=f"snap_{version}",
        project_id="proj_1",
        size_bytes=30,
        stored_size_bytes=30,
        compression=CompressionType.NONE,
    )


def _point(point_id: str = "rp_1") -> RollbackPoint:
    return RollbackPoint(
        id=point_id,
        name="before import",
        type=RollbackPointType.MANUAL,
        scope=RollbackScope(project_id="proj_1", data_source_ids=["ds_1"]),
        snapshots=[CapturedSnapshot("ds_1", "snap_1", 1, 2)],
        created_at=datetime(2024, 1, 15, 10, 0, 0),
    )


@pytest.fixture
def backend(mock_mongo):
    return MongoSnapshotBackend(mock_mongo)


@pytest.fixture
def mongo_repository(mock_mongo):
    return MongoRollbackRepository(mock_mongo)


# ============================================
# Snapshot backend
# ============================================

class TestMongoSnapshotBackend:
    """Tests for MongoSnapshotBackend collection access."""

    def test_allocate_version_uses_atomic_increment(self, backend, mock_mongo_db):
        """Version allocation is a single find_one_and_update with upsert."""
        mock_mongo_db.snapshot_pointers.find_one_and_update.return_value = {"_id": "ds_1", "last_version": 3}

        version = backend.allocate_version("ds_1", "proj_1")

        assert version == 3
        args, kwargs = mock_mongo_db.snapshot_pointers.find_one_and_update.call_args
        assert args[0] == {"_id": "ds_1"}
        assert args[1]["$inc"] == {"last_version": 1}
        assert args[1]["$setOnInsert"]["project_id"] == "proj_1"
        assert kwargs["upsert"] is True
        assert kwargs["return_document"] == ReturnDocument.AFTER

    def test_save_writes_payload_and_metadata(self, backend, mock_mongo_db):
        """Payload goes to snapshot_data, metadata to data_snapshots."""
        backend.save(_snapshot(), b"payload")

        payload_doc = mock_mongo_db.snapshot_data.insert_one.call_args[0][0]
        assert payload_doc["_id"] == "ref_1"
        assert isinstance(payload_doc["data"], Binary)

        meta_doc = mock_mongo_db.data_snapshots.insert_one.call_args[0][0]
        assert meta_doc["_id"] == "snap_1"
        assert meta_doc["version"] == 1
        assert meta_doc["compression"] == "none"

    def test_get_returns_snapshot(self, backend, mock_mongo_db):
        """Stored documents are converted back to Snapshot."""
        doc = _snapshot(2).to_dict()
        doc["_id"] = doc["snapshot_id"]
        mock_mongo_db.data_snapshots.find_one.return_value = doc

        snapshot = backend.get("ds_1", 2)

        assert snapshot == _snapshot(2)
        mock_mongo_db.data_snapshots.find_one.assert_called_with({"data_source_id": "ds_1", "version": 2})

    def test_get_missing(self, backend, mock_mongo_db):
        mock_mongo_db.data_snapshots.find_one.return_value = None
        assert backend.get("ds_1", 9) is None

    def test_list_versions(self, backend, mock_mongo_db):
        mock_mongo_db.data_snapshots.find.return_value.sort.return_value = [
            {"version": 1}, {"version": 2}, {"version": 5},
        ]
        assert backend.list_versions("ds_1") == [1, 2, 5]

    def test_load_payload(self, backend, mock_mongo_db):
        mock_mongo_db.snapshot_data.find_one.return_value = {"_id": "ref_1", "data": Binary(b"abc")}
        assert backend.load_payload("ref_1") == b"abc"

        mock_mongo_db.snapshot_data.find_one.return_value = None
        assert backend.load_payload("ref_1") is None

    def test_delete_removes_metadata_and_payload(self, backend, mock_mongo_db):
        mock_mongo_db.data_snapshots.find_one.return_value = {"_id": "snap_1", "records_ref": "ref_1"}

        assert backend.delete("ds_1", 1) is True
        mock_mongo_db.data_snapshots.delete_one.assert_called_with({"_id": "snap_1"})
        mock_mongo_db.snapshot_data.delete_one.assert_called_with({"_id": "ref_1"})

    def test_delete_missing(self, backend, mock_mongo_db):
        mock_mongo_db.data_snapshots.find_one.return_value = None
        assert backend.delete("ds_1", 1) is False
        mock_mongo_db.data_snapshots.delete_one.assert_not_called()

    def test_current_version(self, backend, mock_mongo_db):
        mock_mongo_db.snapshot_pointers.find_one.return_value = {"_id": "ds_1", "current_version": 4}
        assert backend.get_current_version("ds_1") == 4

        mock_mongo_db.snapshot_pointers.find_one.return_value = {"_id": "ds_1", "last_version": 1}
        assert backend.get_current_version("ds_1") is None

    def test_set_current_version(self, backend, mock_mongo_db):
        backend.set_current_version("ds_1", 2)

        args, kwargs = mock_mongo_db.snapshot_pointers.update_one.call_args
        assert args[0] == {"_id": "ds_1"}
        assert args[1]["$set"]["current_version"] == 2
        assert kwargs["upsert"] is True

    def test_list_data_sources_by_project(self, backend, mock_mongo_db):
        mock_mongo_db.snapshot_pointers.find.return_value.sort.return_value = [{"_id": "a"}, {"_id": "b"}]

        assert backend.list_data_sources("proj_1") == ["a", "b"]
        assert mock_mongo_db.snapshot_pointers.find.call_args[0][0] == {"project_id": "proj_1"}

    def test_ensure_indexes(self, backend, mock_mongo_db):
        backend.ensure_indexes()
        _, kwargs = mock_mongo_db.data_snapshots.create_index.call_args_list[0]
        assert kwargs["unique"] is True


class TestMongoErrorTranslation:
    """Tests for pymongo error translation in db_operation."""

    def test_operation_failure(self, backend, mock_mongo_db):
        mock_mongo_db.data_snapshots.find_one.side_effect = OperationFailure("not primary")

        with pytest.raises(DatabaseOperationError) as exc_info:
            backend.get("ds_1", 1)

        assert exc_info.value.details["collection"] == "data_snapshots"
        assert exc_info.value.details["operation"] == "read"
        assert is_transient(exc_info.value)

    def test_duplicate_key(self, backend, mock_mongo_db):
        mock_mongo_db.snapshot_data.insert_one.side_effect = DuplicateKeyError("E11000")

        with pytest.raises(DatabaseOperationError) as exc_info:
            backend.save(_snapshot(), b"x")

        assert "Duplicate key" in exc_info.value.details["reason"]

    def test_connection_failure(self, backend, mock_mongo_db):
        mock_mongo_db.snapshot_pointers.find_one.side_effect = ServerSelectionTimeoutError("no servers")

        with pytest.raises(DatabaseConnectionError) as exc_info:
            backend.get_current_version("ds_1")

        assert exc_info.value.details["host"] == "mongodb://localhost:27017"

    def test_store_raises_not_found_over_mongo(self, backend, mock_mongo_db):
        mock_mongo_db.data_snapshots.find_one.return_value = None
        store = SnapshotStore(backend=backend, lock_timeout=0.1)

        with pytest.raises(NotFoundError):
            store.get_snapshot("ds_1", 1)

    def test_store_create_over_mongo(self, backend, mock_mongo_db):
        mock_mongo_db.snapshot_pointers.find_one_and_update.return_value = {"last_version": 7}
        store = SnapshotStore(backend=backend)

        snapshot = store.create_snapshot("ds_1", [{"id": 1}], project_id="proj_1")

        assert snapshot.version == 7
        set_call = mock_mongo_db.snapshot_pointers.update_one.call_args[0]
        assert set_call[1]["$set"]["current_version"] == 7


# ============================================
# Rollback repository
# ============================================

class TestMongoRollbackRepository:
    """Tests for MongoRollbackRepository."""

    def test_save_point_upserts_by_id(self, mongo_repository, mock_mongo_db):
        mongo_repository.save_point(_point())

        collection = mock_mongo_db["rollback_points"]
        args, kwargs = collection.replace_one.call_args
        assert args[0] == {"_id": "rp_1"}
        assert args[1]["_id"] == "rp_1"
        assert "id" not in args[1]
        assert args[1]["state"]["snapshots"][0]["version"] == 1
        assert kwargs["upsert"] is True

    def test_get_point(self, mongo_repository, mock_mongo_db):
        doc = _point().to_dict()
        doc["_id"] = doc.pop("id")
        mock_mongo_db["rollback_points"].find_one.return_value = doc

        point = mongo_repository.get_point("rp_1")

        assert point.id == "rp_1"
        assert point.snapshots == [CapturedSnapshot("ds_1", "snap_1", 1, 2)]

    def test_get_missing_point(self, mongo_repository, mock_mongo_db):
        mock_mongo_db["rollback_points"].find_one.return_value = None
        assert mongo_repository.get_point("rp_x") is None

    def test_list_points_query(self, mongo_repository, mock_mongo_db):
        collection = mock_mongo_db["rollback_points"]
        collection.find.return_value.sort.return_value = []

        mongo_repository.list_points(project_id="proj_1", data_source_id="ds_1")

        query = collection.find.call_args[0][0]
        assert query["scope.project_id"] == "proj_1"
        assert query["state.snapshots.data_source_id"] == "ds_1"
        assert query["status"] == {"$ne": "deleted"}

    def test_list_points_by_status(self, mongo_repository, mock_mongo_db):
        collection = mock_mongo_db["rollback_points"]
        collection.find.return_value.sort.return_value = []

        mongo_repository.list_points(status=RollbackPointStatus.EXPIRED)

        assert collection.find.call_args[0][0] == {"status": "expired"}

    def test_list_deleted_requires_include_deleted(self, mongo_repository, mock_mongo_db):
        collection = mock_mongo_db["rollback_points"]

        assert mongo_repository.list_points(status=RollbackPointStatus.DELETED) == []
        collection.find.assert_not_called()

    def test_update_point_status_with_expected(self, mongo_repository, mock_mongo_db):
        collection = mock_mongo_db["rollback_points"]
        collection.update_one.return_value = MagicMock(modified_count=0)

        changed = mongo_repository.update_point_status(
            "rp_1", RollbackPointStatus.USED, expected=[RollbackPointStatus.ACTIVE]
        )

        assert changed is False
        query, update = collection.update_one.call_args[0]
        assert query == {"_id": "rp_1", "status": {"$in": ["active"]}}
        assert update == {"$set": {"status": "used"}}

    def test_save_and_list_operations(self, mongo_repository, mock_mongo_db):
        collection = mock_mongo_db["rollback_operations"]
        operation = RollbackOperation(id="op_1", rollback_point_id="rp_1", status=OperationStatus.COMPLETED)

        mongo_repository.save_operation(operation)
        assert collection.replace_one.call_args[0][1]["status"] == "completed"

        doc = operation.to_dict()
        doc["_id"] = doc.pop("id")
        collection.find.return_value.sort.return_value.limit.return_value = [doc]

        result = mongo_repository.list_operations(rollback_point_id="rp_1", limit=5)

        assert [op.id for op in result] == ["op_1"]
        assert collection.find.call_args[0][0] == {"rollback_point_id": "rp_1"}
        collection.find.return_value.sort.return_value.limit.assert_called_with(5)

    def test_list_active_operations(self, mongo_repository, mock_mongo_db):
        collection = mock_mongo_db["rollback_operations"]
        collection.find.return_value.sort.return_value = []

        mongo_repository.list_active_operations()

        query = collection.find.call_args[0][0]
        assert query == {"status": {"$in": ["pending", "in-progress"]}}

    def test_repository_error_translation(self, mongo_repository, mock_mongo_db):
        mock_mongo_db["rollback_operations"].find_one.side_effect = OperationFailure("boom")

        with pytest.raises(DatabaseOperationError):
            mongo_repository.get_operation("op_1")


# ============================================
# MongoService
# ============================================

class TestMongoService:
    """Tests for MongoService connection handling."""

    def test_client_pings_on_connect(self):
        with patch("etl_versioning.services.mongo_service.MongoClient") as mock_client_cls:
            mongo = MongoService(uri="mongodb://db:27017", database_name="versions")
            client = mongo.client

            assert client is mock_client_cls.return_value
            client.admin.command.assert_called_with("ping")
            assert mongo.db is client.__getitem__.return_value
            client.__getitem__.assert_called_with("versions")

    def test_client_connection_failure(self):
        with patch("etl_versioning.services.mongo_service.MongoClient") as mock_client_cls:
            mock_client_cls.return_value.admin.command.side_effect = ConnectionFailure("refused")
            mongo = MongoService(uri="mongodb://db:27017")

            with pytest.raises(DatabaseConnectionError):
                mongo.client
            assert mongo._client is None

    def test_context_manager_closes(self):
        with patch.object(MongoService, "close") as mock_close:
            with MongoService() as mongo:
                assert mongo is not None
            mock_close.assert_called_once()

    def test_close_with_client(self):
        mongo = MongoService()
        client = MagicMock()
        mongo._client = client

        mongo.close()

        client.close.assert_called_once()
        assert mongo._client is None

    def test_health_check_healthy(self):
        with patch.object(MongoService, "client", new_callable=PropertyMock) as mock_client_prop:
            mock_client_prop.return_value = MagicMock()
            result = MongoService(database_name="versions").health_check()

        assert result["status"] == "healthy"
        assert result["database"] == "versions"
        assert "latency_ms" in result

    def test_health_check_unhealthy(self):
        with patch.object(MongoService, "client", new_callable=PropertyMock) as mock_client_prop:
            mock_client_prop.side_effect = DatabaseConnectionError("refused", "mongodb://db:27017")
            result = MongoService().health_check()

        assert result["status"] == "unhealthy"
        assert "error" in result


class TestTranslatePymongoError:
    """Tests for translate_pymongo_error."""

    def test_network_timeout_is_operation_error(self):
        error = translate_pymongo_error(NetworkTimeout("slow"), "snapshot_pointers", "update")
        assert isinstance(error, DatabaseOperationError)
        assert error.details["reason"].startswith("Network timeout")

    def test_auto_reconnect_is_connection_error(self):
        error = translate_pymongo_error(AutoReconnect("failover"), "data_snapshots", "read", host="mongodb://db")
        assert isinstance(error, DatabaseConnectionError)
        assert error.details["host"] == "mongodb://db"

    def test_unknown_driver_error(self):
        error = translate_pymongo_error(PyMongoError("odd"), "data_snapshots", "read")
        assert isinstance(error, DatabaseOperationError)
        assert "PyMongoError" in error.details["reason"]


class TestMongoSettings:
    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("MONGODB_URI", "mongodb://db:27017")
        monkeypatch.setenv("MONGODB_DATABASE", "versions")
        monkeypatch.setenv("MONGODB_TIMEOUT", "1500")

        settings = MongoSettings.from_env()

        assert settings == MongoSettings("mongodb://db:27017", "versions", 1500)
        assert MongoService().database_name == "versions"
