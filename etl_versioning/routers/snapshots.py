"""
Snapshot API Router.

Endpoints for creating snapshot versions of a data source,
listing and reading versions, and comparing two versions.
"""

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from etl_versioning.core import get_logger
from etl_versioning.models.schemas import (
    CompareRequest,
    SnapshotCreateRequest,
    SnapshotResponse,
    SnapshotVersionListResponse,
)
from etl_versioning.routers import get_services
from etl_versioning.services.container import VersioningServices
from etl_versioning.services.data_versioning import DiffOptions

logger = get_logger(__name__)

router = APIRouter()


@router.post("/{data_source_id}", response_model=SnapshotResponse, status_code=201)
def create_snapshot(
    data_source_id: str,
    request: SnapshotCreateRequest,
    services: VersioningServices = Depends(get_services),
):
    """Store a new version and move the source's current pointer to it."""
    snapshot = services.snapshot_store.create_snapshot(
        data_source_id,
        request.records,
        project_id=request.project_id,
        created_by=request.created_by,
        metadata=request.metadata,
    )
    return snapshot.to_dict()


@router.get("/{data_source_id}/versions", response_model=SnapshotVersionListResponse)
def list_versions(
    data_source_id: str,
    services: VersioningServices = Depends(get_services),
):
    versions = services.snapshot_store.list_versions(data_source_id)
    return {
        "data_source_id": data_source_id,
        "versions": versions,
        "current_version": services.snapshot_store.get_current_version(data_source_id),
        "total": len(versions),
    }


@router.get("/{data_source_id}/versions/{version}", response_model=SnapshotResponse)
def get_version(
    data_source_id: str,
    version: int,
    services: VersioningServices = Depends(get_services),
):
    return services.snapshot_store.get_snapshot(data_source_id, version).to_dict()


@router.post("/{data_source_id}/compare")
def compare_versions(
    data_source_id: str,
    request: CompareRequest,
    services: VersioningServices = Depends(get_services),
):
    """Compare two versions. `format` selects json, csv or text output."""
    engine = services.diff_engine
    comparison = engine.compare_versions(
        data_source_id,
        request.from_version,
        request.to_version,
        request.key_field,
        options=DiffOptions(**request.options.model_dump()),
    )

    if request.format == "csv":
        return PlainTextResponse(engine.to_csv(comparison), media_type="text/csv")
    if request.format == "text":
        return PlainTextResponse(engine.to_text(comparison))

    result = comparison.to_dict()
    result["summary_text"] = engine.summary_text(comparison)
    return result
