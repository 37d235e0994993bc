"""
Rollback Point Manager - 롤백 포인트 생성/조회/삭제

범위 내 모든 데이터 소스의 현재 스냅샷 포인터를 한 번에 캡처하여
불변 체크포인트로 저장합니다. 하나라도 조회에 실패하면 아무것도
저장하지 않습니다.
"""

import threading
import time
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId

from ...core import get_logger
from ...exceptions import CaptureError, NotFoundError, ValidationError
from ..data_versioning.snapshot import SnapshotStore
from .models import (
    CapturedSnapshot,
    OperationStatus,
    RollbackConfig,
    RollbackPoint,
    RollbackPointStatus,
    RollbackPointType,
    RollbackScope,
    coerce_enum,
)
from .repository import InMemoryRollbackRepository, RollbackRepository

logger = get_logger(__name__)


class RollbackPointManager:
    """
    롤백 포인트 관리자

    capture_lock 은 캡처와 보존 정책 GC 를 직렬화합니다.
    """

    def __init__(
        self,
        snapshot_store: SnapshotStore,
        repository: RollbackRepository = None,
        config: RollbackConfig = None,
    ):
        self.snapshot_store = snapshot_store
        self.repository = repository or InMemoryRollbackRepository()
        self.config = config or RollbackConfig()
        self.capture_lock = threading.RLock()

    # ==================== 생성 ====================

    def create_rollback_point(
        self,
        scope: RollbackScope,
        name: str,
        description: str = None,
        point_type: Union[str, RollbackPointType] = RollbackPointType.MANUAL,
        expires_in_days: int = None,
        created_by: str = None,
    ) -> RollbackPoint:
        """
        롤백 포인트 생성

        Args:
            scope: 캡처 범위 (data_source_ids 생략 시 프로젝트 전체)
            name: 이름
            description: 설명
            point_type: manual | auto | pre-pipeline | scheduled
            expires_in_days: 만료 기간 (None이면 config.default_expiry_days)
            created_by: 생성자

        Returns:
            생성된 RollbackPoint

        Raises:
            ValidationError: 잘못된 입력
            CaptureError: 소스 스냅샷 조회 실패 (아무것도 저장되지 않음)
        """
        point_type = self._validate_create(scope, name, point_type, expires_in_days)

        start = time.perf_counter()
        with self.capture_lock:
            data_source_ids = self._resolve_sources(scope)
            snapshots = []
            for data_source_id in data_source_ids:
                try:
                    current = self.snapshot_store.get_current_snapshot(data_source_id)
                except Exception as e:
                    logger.warning(
                        "rollback_capture_failed",
                        data_source_id=data_source_id,
                        error=str(e),
                    )
                    raise CaptureError(data_source_id, getattr(e, "message", str(e)), cause=e) from e

                snapshots.append(CapturedSnapshot(
                    data_source_id=data_source_id,
                    snapshot_id=current.snapshot_id,
                    version=current.version,
                    record_count=current.record_count,
                    size_bytes=current.size_bytes,
                ))

            now = datetime.utcnow()
            days = expires_in_days if expires_in_days is not None else self.config.default_expiry_days

            point = RollbackPoint(
                id=str(ObjectId()),
                name=name.strip(),
                description=description,
                type=point_type,
                created_at=now,
                created_by=created_by,
                scope=RollbackScope(
                    project_id=scope.project_id,
                    data_source_ids=list(scope.data_source_ids) if scope.data_source_ids else None,
                    pipeline_ids=list(scope.pipeline_ids) if scope.pipeline_ids else None,
                ),
                snapshots=snapshots,
                status=RollbackPointStatus.ACTIVE,
                expires_at=now + timedelta(days=days) if days else None,
                data_size=sum(s.size_bytes for s in snapshots),
                items_captured=len(snapshots),
                capture_time_ms=round((time.perf_counter() - start) * 1000, 2),
            )
            self.repository.save_point(point)

        logger.info(
            "rollback_point_created",
            rollback_point_id=point.id,
            name=point.name,
            type=point.type.value,
            data_sources=len(snapshots),
            expires_at=point.expires_at.isoformat() if point.expires_at else None,
        )

        self._enforce_max_rollback_points()
        return point

    def create_pre_pipeline_rollback(
        self,
        pipeline_id: str,
        pipeline_name: str,
        project_id: str,
        data_source_ids: List[str],
    ) -> Optional[RollbackPoint]:
        """파이프라인 실행 전 자동 롤백 포인트 (비활성화 시 None)"""
        if not self.config.auto_create_before_pipeline:
            return None

        return self.create_rollback_point(
            scope=RollbackScope(
                project_id=project_id,
                data_source_ids=data_source_ids,
                pipeline_ids=[pipeline_id],
            ),
            name=f"Pre-pipeline: {pipeline_name}",
            description=f"Automatic rollback point before pipeline {pipeline_id}",
            point_type=RollbackPointType.PRE_PIPELINE,
            expires_in_days=self.config.pre_pipeline_expiry_days,
            created_by="system",
        )

    # ==================== 조회 ====================

    def get_rollback_point(self, rollback_point_id: str) -> RollbackPoint:
        point = self.repository.get_point(rollback_point_id)
        if point is None or point.status == RollbackPointStatus.DELETED:
            raise NotFoundError("RollbackPoint", rollback_point_id)
        return point

    def list_rollback_points(
        self,
        project_id: str = None,
        status: Union[str, RollbackPointStatus] = None,
        point_type: Union[str, RollbackPointType] = None,
        data_source_id: str = None,
    ) -> List[RollbackPoint]:
        """최신순, deleted 제외"""
        status = coerce_enum(RollbackPointStatus, status, "status")
        point_type = coerce_enum(RollbackPointType, point_type, "type")
        if status == RollbackPointStatus.DELETED:
            return []
        return self.repository.list_points(
            project_id=project_id,
            status=status,
            point_type=point_type,
            data_source_id=data_source_id,
        )

    def find_pre_pipeline_rollback_point(self, pipeline_id: str) -> Optional[RollbackPoint]:
        """파이프라인의 가장 최근 활성 pre-pipeline 포인트"""
        now = datetime.utcnow()
        for point in self.repository.list_points(
            status=RollbackPointStatus.ACTIVE,
            point_type=RollbackPointType.PRE_PIPELINE,
        ):
            if pipeline_id in (point.scope.pipeline_ids or []) and not point.is_expired(now):
                return point
        return None

    # ==================== 상태 변경 ====================

    def delete_rollback_point(self, rollback_point_id: str) -> bool:
        """soft delete (스냅샷은 삭제하지 않음)"""
        self.get_rollback_point(rollback_point_id)
        deleted = self.repository.update_point_status(rollback_point_id, RollbackPointStatus.DELETED)
        logger.info("rollback_point_deleted", rollback_point_id=rollback_point_id)
        return deleted

    def mark_used(self, rollback_point_id: str) -> bool:
        return self.repository.update_point_status(
            rollback_point_id,
            RollbackPointStatus.USED,
            expected=[RollbackPointStatus.ACTIVE],
        )

    def claim_for_restore(self, rollback_point_id: str) -> bool:
        """single-use 복원 선점 (active -> used, 원자적)"""
        return self.mark_used(rollback_point_id)

    def release_claim(self, rollback_point_id: str) -> bool:
        return self.repository.update_point_status(
            rollback_point_id,
            RollbackPointStatus.ACTIVE,
            expected=[RollbackPointStatus.USED],
        )

    # ==================== 통계 ====================

    def get_statistics(self) -> Dict[str, Any]:
        points = self.repository.list_points()
        operations = self.repository.list_operations()

        return {
            "total_rollback_points": len(points),
            "active_rollback_points": sum(1 for p in points if p.status == RollbackPointStatus.ACTIVE),
            "expired_rollback_points": sum(1 for p in points if p.status == RollbackPointStatus.EXPIRED),
            "used_rollback_points": sum(1 for p in points if p.status == RollbackPointStatus.USED),
            "total_restore_operations": len(operations),
            "successful_restores": sum(1 for o in operations if o.status == OperationStatus.COMPLETED),
            "partial_restores": sum(1 for o in operations if o.status == OperationStatus.PARTIAL),
            "failed_restores": sum(1 for o in operations if o.status == OperationStatus.FAILED),
            "total_data_size_captured": sum(p.data_size for p in points),
        }

    # ==================== 내부 헬퍼 ====================

    def _validate_create(
        self,
        scope: RollbackScope,
        name: str,
        point_type,
        expires_in_days: Optional[int],
    ) -> RollbackPointType:
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("name", "must be a non-empty string", name)
        if scope is None or not scope.project_id:
            raise ValidationError("scope.project_id", "is required")

        if scope.data_source_ids is not None:
            ids = scope.data_source_ids
            if len(ids) == 0:
                raise ValidationError("scope.data_source_ids", "must not be empty")
            if any(not isinstance(i, str) or not i.strip() for i in ids):
                raise ValidationError("scope.data_source_ids", "must contain non-empty ids", ids)
            if len(set(ids)) != len(ids):
                raise ValidationError("scope.data_source_ids", "must not contain duplicates", ids)

        if expires_in_days is not None and (
            isinstance(expires_in_days, bool) or expires_in_days <= 0
        ):
            raise ValidationError("expires_in_days", "must be a positive number of days", expires_in_days)

        return coerce_enum(RollbackPointType, point_type, "type")

    def _resolve_sources(self, scope: RollbackScope) -> List[str]:
        if scope.data_source_ids:
            return list(scope.data_source_ids)

        sources = self.snapshot_store.list_data_sources(scope.project_id)
        if not sources:
            raise ValidationError(
                "scope", f"project '{scope.project_id}' has no data sources", scope.project_id
            )
        return sources

    def _enforce_max_rollback_points(self):
        """활성 포인트가 최대치를 넘으면 오래된 것부터 만료"""
        limit = self.config.max_rollback_points
        if not limit or limit <= 0:
            return

        active = self.repository.list_points(status=RollbackPointStatus.ACTIVE)
        for point in active[limit:]:
            if self.repository.update_point_status(
                point.id, RollbackPointStatus.EXPIRED, expected=[RollbackPointStatus.ACTIVE]
            ):
                logger.info("rollback_point_expired_over_limit", rollback_point_id=point.id, limit=limit)
