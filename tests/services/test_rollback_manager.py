"""
Tests for RollbackPointManager.

Tests cover:
- All-or-nothing capture of current snapshot versions
- Input validation
- Expiry, soft delete and listing
- Pre-pipeline rollback points and max point enforcement
"""

from datetime import timedelta

import pytest

from etl_versioning.exceptions import CaptureError, NotFoundError, ValidationError
from etl_versioning.services.rollback import (
    RollbackConfig,
    RollbackPointManager,
    RollbackPointStatus,
    RollbackPointType,
    RollbackScope,
)


# ============================================
# Capture
# ============================================

class TestCreateRollbackPoint:
    def test_captures_current_versions(self, manager, two_sources, scope):
        point = manager.create_rollback_point(scope, name="before import", created_by="alice")

        captured = {s.data_source_id: s for s in point.snapshots}
        assert captured["customers"].version == 2
        assert captured["orders"].version == 5
        assert captured["customers"].record_count == 12
        assert point.status == RollbackPointStatus.ACTIVE
        assert point.type == RollbackPointType.MANUAL
        assert point.items_captured == 2
        assert point.data_size == sum(s.size_bytes for s in point.snapshots)
        assert point.expires_at is None

    def test_captured_versions_match_current_data(self, manager, diff_engine, two_sources):
        two_sources.create_snapshot(
            "products", [{"sku": f"P-{i}", "price": i * 100} for i in range(5)], project_id="proj_1"
        )
        keys = {"customers": "id", "orders": "order_id", "products": "sku"}
        point = manager.create_rollback_point(
            RollbackScope(project_id="proj_1", data_source_ids=list(keys)), name="cp"
        )

        assert point.items_captured == 3
        for captured in point.snapshots:
            ds = captured.data_source_id
            comparison = diff_engine.compare(
                two_sources.get_snapshot(ds, captured.version),
                two_sources.get_current_snapshot(ds),
                keys[ds],
            )
            assert comparison.has_changes is False

    def test_captures_pointer_after_restore(self, manager, two_sources, scope):
        two_sources.set_current_pointer("orders", 3)
        point = manager.create_rollback_point(scope, name="cp")
        assert {s.data_source_id: s.version for s in point.snapshots}["orders"] == 3

    def test_project_scope_resolves_all_sources(self, manager, two_sources):
        point = manager.create_rollback_point(RollbackScope(project_id="proj_1"), name="all")
        assert sorted(point.data_source_ids) == ["customers", "orders"]

    def test_failed_lookup_persists_nothing(self, manager, two_sources, repository):
        scope = RollbackScope(project_id="proj_1", data_source_ids=["customers", "missing"])

        with pytest.raises(CaptureError) as exc_info:
            manager.create_rollback_point(scope, name="broken")

        assert exc_info.value.details["data_source_id"] == "missing"
        assert repository.list_points(include_deleted=True) == []

    def test_expiry(self, manager, two_sources, scope):
        point = manager.create_rollback_point(scope, name="cp", expires_in_days=3)
        delta = point.expires_at - point.created_at
        assert delta == timedelta(days=3)

    def test_default_expiry_from_config(self, store, repository, two_sources, scope):
        manager = RollbackPointManager(store, repository, RollbackConfig(default_expiry_days=10))
        point = manager.create_rollback_point(scope, name="cp")
        assert point.expires_at - point.created_at == timedelta(days=10)

    def test_type_from_string(self, manager, two_sources, scope):
        point = manager.create_rollback_point(scope, name="cp", point_type="scheduled")
        assert point.type == RollbackPointType.SCHEDULED

    @pytest.mark.parametrize("kwargs", [
        {"name": "  "},
        {"name": "cp", "point_type": "weekly"},
        {"name": "cp", "expires_in_days": 0},
        {"name": "cp", "expires_in_days": -2},
    ])
    def test_invalid_input(self, manager, two_sources, scope, kwargs):
        with pytest.raises(ValidationError):
            manager.create_rollback_point(scope, **kwargs)

    @pytest.mark.parametrize("scope", [
        RollbackScope(project_id="", data_source_ids=["customers"]),
        RollbackScope(project_id="proj_1", data_source_ids=[]),
        RollbackScope(project_id="proj_1", data_source_ids=["customers", "customers"]),
        RollbackScope(project_id="empty_project"),
    ])
    def test_invalid_scope(self, manager, two_sources, scope):
        with pytest.raises(ValidationError):
            manager.create_rollback_point(scope, name="cp")

    def test_returned_point_is_a_copy(self, manager, two_sources, scope):
        point = manager.create_rollback_point(scope, name="cp")
        point.status = RollbackPointStatus.USED
        point.snapshots.clear()

        stored = manager.get_rollback_point(point.id)
        assert stored.status == RollbackPointStatus.ACTIVE
        assert len(stored.snapshots) == 2


# ============================================
# Lookup / delete
# ============================================

class TestLookupAndDelete:
    def test_get_missing(self, manager):
        with pytest.raises(NotFoundError):
            manager.get_rollback_point("nope")

    def test_soft_delete(self, manager, two_sources, scope):
        point = manager.create_rollback_point(scope, name="cp")

        assert manager.delete_rollback_point(point.id) is True

        with pytest.raises(NotFoundError):
            manager.get_rollback_point(point.id)
        assert manager.list_rollback_points() == []
        assert manager.list_rollback_points(status="deleted") == []
        # snapshots untouched
        assert two_sources.list_versions("orders") == [1, 2, 3, 4, 5]

    def test_delete_twice(self, manager, two_sources, scope):
        point = manager.create_rollback_point(scope, name="cp")
        manager.delete_rollback_point(point.id)
        with pytest.raises(NotFoundError):
            manager.delete_rollback_point(point.id)

    def test_list_filters(self, manager, two_sources, scope):
        manual = manager.create_rollback_point(scope, name="m")
        auto = manager.create_rollback_point(
            RollbackScope(project_id="proj_1", data_source_ids=["orders"]), name="a", point_type="auto"
        )

        assert [p.id for p in manager.list_rollback_points(point_type="auto")] == [auto.id]
        assert {p.id for p in manager.list_rollback_points(data_source_id="customers")} == {manual.id}
        assert len(manager.list_rollback_points(project_id="proj_1")) == 2
        assert manager.list_rollback_points(project_id="other") == []

    def test_list_invalid_status(self, manager):
        with pytest.raises(ValidationError):
            manager.list_rollback_points(status="bogus")


# ============================================
# Pre-pipeline / limits / statistics
# ============================================

class TestPrePipelineAndLimits:
    def test_pre_pipeline_point(self, manager, two_sources):
        point = manager.create_pre_pipeline_rollback("pl_1", "Nightly", "proj_1", ["orders"])

        assert point.type == RollbackPointType.PRE_PIPELINE
        assert point.scope.pipeline_ids == ["pl_1"]
        assert point.expires_at - point.created_at == timedelta(days=7)
        assert manager.find_pre_pipeline_rollback_point("pl_1").id == point.id
        assert manager.find_pre_pipeline_rollback_point("pl_2") is None

    def test_pre_pipeline_disabled(self, store, two_sources):
        manager = RollbackPointManager(store, config=RollbackConfig(auto_create_before_pipeline=False))
        assert manager.create_pre_pipeline_rollback("pl_1", "Nightly", "proj_1", ["orders"]) is None

    def test_max_points_expires_oldest(self, store, two_sources, scope):
        manager = RollbackPointManager(store, config=RollbackConfig(max_rollback_points=2))
        manager.create_rollback_point(scope, name="1")
        manager.create_rollback_point(scope, name="2")
        manager.create_rollback_point(scope, name="3")

        active = manager.list_rollback_points(status="active")
        expired = manager.list_rollback_points(status="expired")
        assert len(active) == 2
        assert len(expired) == 1
        assert expired[0].created_at <= min(p.created_at for p in active)

    def test_statistics(self, manager, two_sources, scope):
        manager.create_rollback_point(scope, name="1")
        stats = manager.get_statistics()

        assert stats["total_rollback_points"] == 1
        assert stats["active_rollback_points"] == 1
        assert stats["total_restore_operations"] == 0
        assert stats["total_data_size_captured"] > 0
