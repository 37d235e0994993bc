"""
Rollback Models - 롤백 포인트 및 복원 작업 데이터 모델

RollbackPoint 는 생성 후 status 외에는 변경되지 않으며,
RollbackOperation 은 복원 작업의 감사 기록입니다.
"""

import os
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ...exceptions import ValidationError


def _parse_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, str):
        return datetime.fromisoformat(value)
    return value


def coerce_enum(enum_cls, value, field_name: str):
    """문자열을 Enum 으로 변환 (잘못된 값은 ValidationError)"""
    if value is None or isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(e.value for e in enum_cls)
        raise ValidationError(field_name, f"must be one of {allowed}", value)


def _env_optional_int(name: str, default: Optional[int]) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    value = int(raw)
    return value if value > 0 else None


class RollbackPointType(str, Enum):
    """롤백 포인트 타입"""
    MANUAL = "manual"
    AUTO = "auto"
    PRE_PIPELINE = "pre-pipeline"
    SCHEDULED = "scheduled"


class RollbackPointStatus(str, Enum):
    """롤백 포인트 상태 (deleted 는 종료 상태)"""
    ACTIVE = "active"
    EXPIRED = "expired"
    USED = "used"
    DELETED = "deleted"


class OperationStatus(str, Enum):
    """
    복원 작업 상태

    pending -> in-progress -> completed | partial | failed
    """
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"

    @property
    def is_terminal(self) -> bool:
        return self in (OperationStatus.COMPLETED, OperationStatus.FAILED, OperationStatus.PARTIAL)


# ==================== 설정 ====================

@dataclass
class RollbackConfig:
    """롤백 서비스 설정"""
    max_concurrent: int = 5
    task_timeout_seconds: float = 30.0
    continue_on_error: bool = True
    max_rollback_points: int = 50
    default_expiry_days: Optional[int] = None
    pre_pipeline_expiry_days: int = 7
    auto_create_before_pipeline: bool = True
    single_use: bool = False
    expired_grace_days: Optional[int] = 7
    sweep_interval_seconds: float = 0
    restore_max_retries: int = 2
    restore_retry_delay: float = 0.2

    @classmethod
    def from_env(cls) -> "RollbackConfig":
        return cls(
            max_concurrent=int(os.getenv("ROLLBACK_MAX_CONCURRENT", "5")),
            task_timeout_seconds=float(os.getenv("ROLLBACK_TASK_TIMEOUT_SECONDS", "30")),
            continue_on_error=os.getenv("ROLLBACK_CONTINUE_ON_ERROR", "true").lower() == "true",
            max_rollback_points=int(os.getenv("ROLLBACK_MAX_POINTS", "50")),
            default_expiry_days=_env_optional_int("ROLLBACK_DEFAULT_EXPIRY_DAYS", None),
            pre_pipeline_expiry_days=int(os.getenv("ROLLBACK_PRE_PIPELINE_EXPIRY_DAYS", "7")),
            auto_create_before_pipeline=(
                os.getenv("ROLLBACK_AUTO_CREATE_BEFORE_PIPELINE", "true").lower() == "true"
            ),
            single_use=os.getenv("ROLLBACK_SINGLE_USE", "false").lower() == "true",
            expired_grace_days=_env_optional_int("ROLLBACK_EXPIRED_GRACE_DAYS", 7),
            sweep_interval_seconds=float(os.getenv("ROLLBACK_SWEEP_INTERVAL_SECONDS", "0")),
            restore_max_retries=int(os.getenv("ROLLBACK_RESTORE_MAX_RETRIES", "2")),
            restore_retry_delay=float(os.getenv("ROLLBACK_RESTORE_RETRY_DELAY", "0.2")),
        )


# ==================== 롤백 포인트 ====================

@dataclass
class RollbackScope:
    """캡처 범위"""
    project_id: str
    data_source_ids: Optional[List[str]] = None
    pipeline_ids: Optional[List[str]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project_id": self.project_id,
            "data_source_ids": list(self.data_source_ids) if self.data_source_ids is not None else None,
            "pipeline_ids": list(self.pipeline_ids) if self.pipeline_ids is not None else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RollbackScope":
        return cls(
            project_id=data.get("project_id"),
            data_source_ids=data.get("data_source_ids"),
            pipeline_ids=data.get("pipeline_ids"),
        )


@dataclass(frozen=True)
class CapturedSnapshot:
    """롤백 포인트에 고정된 소스별 스냅샷 버전"""
    data_source_id: str
    snapshot_id: str
    version: int
    record_count: int
    size_bytes: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "data_source_id": self.data_source_id,
            "snapshot_id": self.snapshot_id,
            "version": self.version,
            "record_count": self.record_count,
            "size_bytes": self.size_bytes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CapturedSnapshot":
        return cls(
            data_source_id=data["data_source_id"],
            snapshot_id=data.get("snapshot_id", ""),
            version=int(data["version"]),
            record_count=data.get("record_count", 0),
            size_bytes=data.get("size_bytes", 0),
        )


@dataclass
class RollbackPoint:
    """롤백 포인트 (체크포인트)"""
    id: str
    name: str
    type: RollbackPointType
    scope: RollbackScope
    snapshots: List[CapturedSnapshot]
    created_at: datetime = field(default_factory=datetime.utcnow)
    description: Optional[str] = None
    created_by: Optional[str] = None
    status: RollbackPointStatus = RollbackPointStatus.ACTIVE
    expires_at: Optional[datetime] = None

    # 메타데이터
    data_size: int = 0
    items_captured: int = 0
    capture_time_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "type": self.type.value,
            "created_at": self.created_at,
            "created_by": self.created_by,
            "scope": self.scope.to_dict(),
            "state": {"snapshots": [s.to_dict() for s in self.snapshots]},
            "metadata": {
                "data_size": self.data_size,
                "items_captured": self.items_captured,
                "capture_time_ms": self.capture_time_ms,
            },
            "expires_at": self.expires_at,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RollbackPoint":
        metadata = data.get("metadata") or {}
        state = data.get("state") or {}
        return cls(
            id=str(data.get("id", data.get("_id", ""))),
            name=data.get("name", ""),
            description=data.get("description"),
            type=RollbackPointType(data.get("type", "manual")),
            created_at=_parse_datetime(data.get("created_at")) or datetime.utcnow(),
            created_by=data.get("created_by"),
            scope=RollbackScope.from_dict(data.get("scope") or {}),
            snapshots=[CapturedSnapshot.from_dict(s) for s in state.get("snapshots", [])],
            data_size=metadata.get("data_size", 0),
            items_captured=metadata.get("items_captured", 0),
            capture_time_ms=metadata.get("capture_time_ms", 0.0),
            expires_at=_parse_datetime(data.get("expires_at")),
            status=RollbackPointStatus(data.get("status", "active")),
        )

    @property
    def data_source_ids(self) -> List[str]:
        return [s.data_source_id for s in self.snapshots]

    @property
    def pipeline_id(self) -> Optional[str]:
        """pre-pipeline 포인트의 파이프라인 ID"""
        if self.scope.pipeline_ids:
            return self.scope.pipeline_ids[0]
        return None

    def is_expired(self, now: datetime = None) -> bool:
        if self.status == RollbackPointStatus.EXPIRED:
            return True
        if self.expires_at is None:
            return False
        return (now or datetime.utcnow()) >= self.expires_at


# ==================== 복원 작업 ====================

@dataclass
class OperationError:
    data_source_id: str
    error: str
    error_code: str = "R001"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "data_source_id": self.data_source_id,
            "error": self.error,
            "error_code": self.error_code,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OperationError":
        return cls(
            data_source_id=data["data_source_id"],
            error=data.get("error", ""),
            error_code=data.get("error_code", "R001"),
        )


@dataclass
class RestoredSet:
    data_sources: List[str] = field(default_factory=list)
    snapshots: List[str] = field(default_factory=list)
    records_restored: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "data_sources": list(self.data_sources),
            "snapshots": list(self.snapshots),
            "records_restored": self.records_restored,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RestoredSet":
        return cls(
            data_sources=list(data.get("data_sources", [])),
            snapshots=list(data.get("snapshots", [])),
            records_restored=data.get("records_restored", 0),
        )


@dataclass
class SourcePreview:
    """dry-run 결과 (소스별)"""
    data_source_id: str
    current_version: Optional[int]
    target_version: int
    would_change: bool
    record_delta: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "data_source_id": self.data_source_id,
            "current_version": self.current_version,
            "target_version": self.target_version,
            "would_change": self.would_change,
            "record_delta": self.record_delta,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SourcePreview":
        return cls(
            data_source_id=data["data_source_id"],
            current_version=data.get("current_version"),
            target_version=int(data["target_version"]),
            would_change=bool(data.get("would_change", False)),
            record_delta=data.get("record_delta", 0),
        )


@dataclass
class RollbackOperation:
    """복원 작업 감사 기록"""
    id: str
    rollback_point_id: str
    started_at: datetime = field(default_factory=datetime.utcnow)
    status: OperationStatus = OperationStatus.PENDING
    restored: RestoredSet = field(default_factory=RestoredSet)
    errors: List[OperationError] = field(default_factory=list)
    completed_at: Optional[datetime] = None
    duration_ms: Optional[float] = None
    initiated_by: Optional[str] = None
    reason: Optional[str] = None
    dry_run: bool = False
    preview: List[SourcePreview] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "rollback_point_id": self.rollback_point_id,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "status": self.status.value,
            "restored": self.restored.to_dict(),
            "duration_ms": self.duration_ms,
            "errors": [e.to_dict() for e in self.errors],
            "initiated_by": self.initiated_by,
            "reason": self.reason,
            "dry_run": self.dry_run,
            "preview": [p.to_dict() for p in self.preview],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RollbackOperation":
        return cls(
            id=str(data.get("id", data.get("_id", ""))),
            rollback_point_id=data["rollback_point_id"],
            started_at=_parse_datetime(data.get("started_at")) or datetime.utcnow(),
            completed_at=_parse_datetime(data.get("completed_at")),
            status=OperationStatus(data.get("status", "pending")),
            restored=RestoredSet.from_dict(data.get("restored") or {}),
            duration_ms=data.get("duration_ms"),
            errors=[OperationError.from_dict(e) for e in data.get("errors") or []],
            initiated_by=data.get("initiated_by"),
            reason=data.get("reason"),
            dry_run=bool(data.get("dry_run", False)),
            preview=[SourcePreview.from_dict(p) for p in data.get("preview") or []],
        )

    def add_error(self, data_source_id: str, exc: Exception):
        self.errors.append(OperationError(
            data_source_id=data_source_id,
            error=getattr(exc, "message", str(exc)),
            error_code=getattr(exc, "error_code", "R001"),
        ))
