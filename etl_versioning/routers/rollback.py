"""
Rollback API Router.

This module provides REST API endpoints for rollback point management,
restore operations (live and dry-run), restore history and retention sweeps.
"""

from typing import Optional

from fastapi import APIRouter, Body, Depends, Query

from etl_versioning.core import get_logger
from etl_versioning.models.schemas import (
    RestoreRequest,
    RollbackHistoryResponse,
    RollbackOperationResponse,
    RollbackPointCreateRequest,
    RollbackPointListResponse,
    RollbackPointResponse,
    SweepRequest,
    SweepResponse,
)
from etl_versioning.routers import get_services
from etl_versioning.services.container import VersioningServices
from etl_versioning.services.rollback import RetentionPolicy, RollbackScope

logger = get_logger(__name__)

router = APIRouter()


# ============================================================
# Rollback Points
# ============================================================

@router.post("/points", response_model=RollbackPointResponse, status_code=201)
def create_rollback_point(
    request: RollbackPointCreateRequest,
    services: VersioningServices = Depends(get_services),
):
    """Capture the current snapshot versions of every data source in scope."""
    point = services.rollback_manager.create_rollback_point(
        scope=RollbackScope(
            project_id=request.scope.project_id,
            data_source_ids=request.scope.data_source_ids,
            pipeline_ids=request.scope.pipeline_ids,
        ),
        name=request.name,
        description=request.description,
        point_type=request.type,
        expires_in_days=request.expires_in_days,
        created_by=request.created_by,
    )
    return point.to_dict()


@router.get("/points", response_model=RollbackPointListResponse)
def list_rollback_points(
    project_id: Optional[str] = None,
    status: Optional[str] = None,
    point_type: Optional[str] = Query(None, alias="type"),
    data_source_id: Optional[str] = None,
    services: VersioningServices = Depends(get_services),
):
    """List rollback points, newest first. Deleted points are never returned."""
    points = services.rollback_manager.list_rollback_points(
        project_id=project_id,
        status=status,
        point_type=point_type,
        data_source_id=data_source_id,
    )
    return {"rollback_points": [p.to_dict() for p in points], "total": len(points)}


@router.get("/points/{rollback_point_id}", response_model=RollbackPointResponse)
def get_rollback_point(
    rollback_point_id: str,
    services: VersioningServices = Depends(get_services),
):
    return services.rollback_manager.get_rollback_point(rollback_point_id).to_dict()


@router.delete("/points/{rollback_point_id}")
def delete_rollback_point(
    rollback_point_id: str,
    services: VersioningServices = Depends(get_services),
):
    """Soft delete. Captured snapshots are kept."""
    services.rollback_manager.delete_rollback_point(rollback_point_id)
    return {"success": True, "id": rollback_point_id}


# ============================================================
# Restore
# ============================================================

@router.post("/restore", response_model=RollbackOperationResponse)
async def restore_rollback_point(
    request: RestoreRequest,
    services: VersioningServices = Depends(get_services),
):
    """Restore a rollback point. `dry_run=true` previews without moving pointers."""
    operation = await services.restore_coordinator.restore(
        request.rollback_point_id,
        reason=request.reason,
        dry_run=request.dry_run,
        initiated_by=request.initiated_by,
        continue_on_error=request.continue_on_error,
    )
    return operation.to_dict()


@router.post("/pipelines/{pipeline_id}/restore", response_model=RollbackOperationResponse)
async def rollback_failed_pipeline(
    pipeline_id: str,
    reason: Optional[str] = Body(None, embed=True),
    services: VersioningServices = Depends(get_services),
):
    """Restore the most recent pre-pipeline rollback point of a failed pipeline."""
    operation = await services.restore_coordinator.rollback_failed_pipeline(pipeline_id, reason=reason)
    return operation.to_dict()


@router.get("/history", response_model=RollbackHistoryResponse)
def get_restore_history(
    rollback_point_id: Optional[str] = None,
    status: Optional[str] = None,
    limit: Optional[int] = Query(None, ge=1, le=1000),
    services: VersioningServices = Depends(get_services),
):
    operations = services.restore_coordinator.get_history(
        rollback_point_id=rollback_point_id,
        status=status,
        limit=limit,
    )
    return {"operations": [op.to_dict() for op in operations], "total": len(operations)}


@router.get("/operations/active", response_model=RollbackHistoryResponse)
def list_active_operations(services: VersioningServices = Depends(get_services)):
    operations = services.restore_coordinator.list_active_operations()
    return {"operations": [op.to_dict() for op in operations], "total": len(operations)}


@router.get("/operations/{operation_id}", response_model=RollbackOperationResponse)
def get_operation(
    operation_id: str,
    services: VersioningServices = Depends(get_services),
):
    return services.restore_coordinator.get_operation(operation_id).to_dict()


# ============================================================
# Statistics / Retention
# ============================================================

@router.get("/statistics")
def get_statistics(services: VersioningServices = Depends(get_services)):
    return services.rollback_manager.get_statistics()


@router.post("/retention/sweep", response_model=SweepResponse)
def run_retention_sweep(
    request: Optional[SweepRequest] = None,
    services: VersioningServices = Depends(get_services),
):
    """Expire, delete and garbage-collect once."""
    collect_garbage = request.collect_garbage if request is not None else True
    result = services.retention_manager.sweep(collect_garbage=collect_garbage)
    return result.to_dict()


@router.get("/retention/{data_source_id}")
def get_retention_info(
    data_source_id: str,
    services: VersioningServices = Depends(get_services),
):
    return services.retention_manager.get_retention_info(data_source_id)


@router.put("/retention/{data_source_id}")
def set_retention_policy(
    data_source_id: str,
    policy: dict = Body(...),
    services: VersioningServices = Depends(get_services),
):
    retention_policy = RetentionPolicy.from_dict(policy)
    services.retention_manager.set_policy(data_source_id, retention_policy)
    return {"data_source_id": data_source_id, "policy": retention_policy.to_dict()}
