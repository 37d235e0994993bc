"""
Pydantic schemas for API request/response models.

These models define the structure of data for the snapshot and
rollback REST API, providing validation and OpenAPI documentation.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field


# ============================================================
# Snapshot Models
# ============================================================

class SnapshotCreateRequest(BaseModel):
    records: List[Dict[str, Any]] = Field(..., description="Full record set of the data source")
    project_id: Optional[str] = None
    created_by: str = "system"
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SnapshotResponse(BaseModel):
    snapshot_id: str
    data_source_id: str
    project_id: Optional[str] = None
    version: int
    record_count: int
    created_at: datetime
    records_ref: str
    size_bytes: int
    stored_size_bytes: int
    compression: str
    data_hash: str
    created_by: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SnapshotVersionListResponse(BaseModel):
    data_source_id: str
    versions: List[int]
    current_version: Optional[int] = None
    total: int


class DiffOptionsModel(BaseModel):
    ignore_fields: List[str] = Field(default_factory=list)
    case_sensitive: bool = True
    trim_strings: bool = False
    include_unchanged: bool = False
    max_records: Optional[int] = Field(None, ge=0)


class CompareRequest(BaseModel):
    from_version: int = Field(..., ge=1)
    to_version: int = Field(..., ge=1)
    key_field: Union[str, List[str]] = Field(..., description="Field name or list of fields for a composite key")
    options: DiffOptionsModel = Field(default_factory=DiffOptionsModel)
    format: str = Field("json", pattern="^(json|csv|text)$")


# ============================================================
# Rollback Models
# ============================================================

class RollbackScopeModel(BaseModel):
    project_id: str = Field(..., min_length=1)
    data_source_ids: Optional[List[str]] = None
    pipeline_ids: Optional[List[str]] = None


class RollbackPointCreateRequest(BaseModel):
    name: str
    description: Optional[str] = None
    type: str = Field("manual", description="manual, auto, pre-pipeline or scheduled")
    scope: RollbackScopeModel
    expires_in_days: Optional[int] = None
    created_by: Optional[str] = None


class CapturedSnapshotModel(BaseModel):
    data_source_id: str
    snapshot_id: str
    version: int
    record_count: int
    size_bytes: int = 0


class RollbackPointStateModel(BaseModel):
    snapshots: List[CapturedSnapshotModel]


class RollbackPointMetadataModel(BaseModel):
    data_size: int
    items_captured: int
    capture_time_ms: float


class RollbackPointResponse(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    type: str
    created_at: datetime
    created_by: Optional[str] = None
    scope: RollbackScopeModel
    state: RollbackPointStateModel
    metadata: RollbackPointMetadataModel
    expires_at: Optional[datetime] = None
    status: str


class RollbackPointListResponse(BaseModel):
    rollback_points: List[RollbackPointResponse]
    total: int


class RestoreRequest(BaseModel):
    rollback_point_id: str
    reason: Optional[str] = None
    dry_run: bool = False
    continue_on_error: Optional[bool] = None
    initiated_by: Optional[str] = None


class OperationErrorModel(BaseModel):
    data_source_id: str
    error: str
    error_code: str


class RestoredSetModel(BaseModel):
    data_sources: List[str]
    snapshots: List[str]
    records_restored: int


class SourcePreviewModel(BaseModel):
    data_source_id: str
    current_version: Optional[int] = None
    target_version: int
    would_change: bool
    record_delta: int


class RollbackOperationResponse(BaseModel):
    id: str
    rollback_point_id: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    status: str
    restored: RestoredSetModel
    duration_ms: Optional[float] = None
    errors: List[OperationErrorModel] = Field(default_factory=list)
    initiated_by: Optional[str] = None
    reason: Optional[str] = None
    dry_run: bool = False
    preview: List[SourcePreviewModel] = Field(default_factory=list)


class RollbackHistoryResponse(BaseModel):
    operations: List[RollbackOperationResponse]
    total: int


class SweepRequest(BaseModel):
    collect_garbage: bool = True


class SweepResponse(BaseModel):
    swept_at: datetime
    expired: List[str]
    deleted: List[str]
    collected: Dict[str, List[int]]
    retained_referenced: Dict[str, List[int]]
    collected_count: int
