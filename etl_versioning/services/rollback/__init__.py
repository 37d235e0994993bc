"""
Rollback Service

롤백 포인트 생성, 복원, 보존 정책:
- RollbackPointManager: 다중 소스 체크포인트 캡처
- RestoreCoordinator: 동시성 제한/부분 실패 추적 복원
- RetentionManager: 만료 처리 및 미참조 스냅샷 정리
"""

from .models import (
    CapturedSnapshot,
    OperationError,
    OperationStatus,
    RestoredSet,
    RollbackConfig,
    RollbackOperation,
    RollbackPoint,
    RollbackPointStatus,
    RollbackPointType,
    RollbackScope,
    SourcePreview,
)
from .repository import (
    InMemoryRollbackRepository,
    MongoRollbackRepository,
    RollbackRepository,
)
from .manager import RollbackPointManager
from .restore import RestoreCoordinator
from .retention import (
    RetentionManager,
    RetentionPolicy,
    RetentionStrategy,
    SweepResult,
)

__all__ = [
    "CapturedSnapshot",
    "OperationError",
    "OperationStatus",
    "RestoredSet",
    "RollbackConfig",
    "RollbackOperation",
    "RollbackPoint",
    "RollbackPointStatus",
    "RollbackPointType",
    "RollbackScope",
    "SourcePreview",
    "InMemoryRollbackRepository",
    "MongoRollbackRepository",
    "RollbackRepository",
    "RollbackPointManager",
    "RestoreCoordinator",
    "RetentionManager",
    "RetentionPolicy",
    "RetentionStrategy",
    "SweepResult",
]
