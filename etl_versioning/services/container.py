"""
Service container - 설정에 따라 저장소/매니저 구성

VERSIONING_BACKEND=memory (기본) 또는 mongo
"""

from dataclasses import dataclass
from typing import Optional

from ..core import get_logger
from .data_versioning.diff import DiffEngine
from .data_versioning.snapshot import (
    InMemorySnapshotBackend,
    MongoSnapshotBackend,
    SnapshotStore,
    StoreSettings,
)
from .mongo_service import MongoService
from .rollback.manager import RollbackPointManager
from .rollback.models import RollbackConfig
from .rollback.repository import InMemoryRollbackRepository, MongoRollbackRepository
from .rollback.restore import RestoreCoordinator
from .rollback.retention import RetentionManager, RetentionPolicy, RetentionStrategy

logger = get_logger(__name__)


@dataclass
class VersioningServices:
    snapshot_store: SnapshotStore
    diff_engine: DiffEngine
    rollback_manager: RollbackPointManager
    restore_coordinator: RestoreCoordinator
    retention_manager: RetentionManager
    config: RollbackConfig
    mongo_service: Optional[MongoService] = None

    def close(self):
        if self.mongo_service is not None:
            self.mongo_service.close()


def build_services(
    mongo_service: MongoService = None,
    config: RollbackConfig = None,
    settings: StoreSettings = None,
) -> VersioningServices:
    """
    서비스 구성

    Args:
        mongo_service: MongoService (None 이면 settings.backend 에 따라 생성)
        config: 롤백 설정 (기본 RollbackConfig.from_env())
        settings: 스냅샷 저장소 설정 (기본 StoreSettings.from_env())
    """
    config = config or RollbackConfig.from_env()
    settings = settings or StoreSettings.from_env()

    if mongo_service is None and settings.backend == "mongo":
        mongo_service = MongoService()

    if mongo_service is not None:
        snapshot_backend = MongoSnapshotBackend(mongo_service)
        repository = MongoRollbackRepository(mongo_service)
        snapshot_backend.ensure_indexes()
        repository.ensure_indexes()
    else:
        snapshot_backend = InMemorySnapshotBackend()
        repository = InMemoryRollbackRepository()

    store = SnapshotStore(
        backend=snapshot_backend,
        lock_timeout=settings.lock_timeout_seconds,
        compress=settings.compress,
    )
    manager = RollbackPointManager(store, repository=repository, config=config)

    services = VersioningServices(
        snapshot_store=store,
        diff_engine=DiffEngine(store),
        rollback_manager=manager,
        restore_coordinator=RestoreCoordinator(manager),
        retention_manager=RetentionManager(
            manager,
            default_policy=RetentionPolicy(
                strategy=RetentionStrategy.KEEP_LAST,
                value=settings.retention_keep_last,
            ),
        ),
        config=config,
        mongo_service=mongo_service,
    )

    logger.info(
        "versioning_services_built",
        backend="mongo" if mongo_service is not None else "memory",
        max_concurrent=config.max_concurrent,
        max_rollback_points=config.max_rollback_points,
    )
    return services
