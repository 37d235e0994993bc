"""
Retention Manager - 롤백 포인트 만료 및 스냅샷 버전 정리

sweep 단계:
1. expires_at 이 지난 active/used 포인트 -> expired
2. expires_at + grace 기간이 지난 expired 포인트 -> deleted
3. 소스별 보존 정책 범위 밖이면서 참조 카운트가 0 인 버전 삭제

참조 카운트 = 삭제되지 않은 롤백 포인트의 캡처 수 + 현재 포인터.
"""

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from ...core import get_logger
from ...exceptions import ConflictError, NotFoundError, ValidationError
from ..data_versioning.snapshot import Snapshot
from .manager import RollbackPointManager
from .models import RollbackConfig, RollbackPointStatus

logger = get_logger(__name__)

DEFAULT_KEEP_LAST = 10
DEFAULT_KEEP_DAYS = 30


class RetentionStrategy(str, Enum):
    """버전 보존 전략"""
    KEEP_ALL = "keep-all"
    KEEP_LAST = "keep-last"
    KEEP_DAYS = "keep-days"


@dataclass
class RetentionPolicy:
    """소스별 버전 보존 정책"""
    strategy: RetentionStrategy = RetentionStrategy.KEEP_LAST
    value: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"strategy": self.strategy.value, "value": self.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RetentionPolicy":
        try:
            strategy = RetentionStrategy(data.get("strategy", RetentionStrategy.KEEP_LAST.value))
        except ValueError:
            raise ValidationError("strategy", "must be keep-all, keep-last or keep-days", data.get("strategy"))
        value = data.get("value")
        if value is not None and (isinstance(value, bool) or not isinstance(value, int) or value < 0):
            raise ValidationError("value", "must be a non-negative integer", value)
        return cls(strategy=strategy, value=value)

    @property
    def effective_value(self) -> Optional[int]:
        """0 또는 미지정이면 전략별 기본값"""
        if self.strategy == RetentionStrategy.KEEP_ALL:
            return None
        if self.value:
            return self.value
        return DEFAULT_KEEP_LAST if self.strategy == RetentionStrategy.KEEP_LAST else DEFAULT_KEEP_DAYS

    def outside_window(self, snapshots: List[Snapshot], now: datetime) -> List[int]:
        """정책 범위 밖 버전 (오름차순)"""
        if self.strategy == RetentionStrategy.KEEP_ALL:
            return []

        ordered = sorted(snapshots, key=lambda s: s.version)
        if self.strategy == RetentionStrategy.KEEP_LAST:
            keep = self.effective_value
            return [s.version for s in ordered[:-keep]] if len(ordered) > keep else []

        cutoff = now - timedelta(days=self.effective_value)
        return [s.version for s in ordered if s.created_at < cutoff]


@dataclass
class SweepResult:
    """sweep 실행 결과"""
    swept_at: datetime
    expired: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    collected: Dict[str, List[int]] = field(default_factory=dict)
    retained_referenced: Dict[str, List[int]] = field(default_factory=dict)

    @property
    def collected_count(self) -> int:
        return sum(len(v) for v in self.collected.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "swept_at": self.swept_at,
            "expired": list(self.expired),
            "deleted": list(self.deleted),
            "collected": {k: list(v) for k, v in self.collected.items()},
            "retained_referenced": {k: list(v) for k, v in self.retained_referenced.items()},
            "collected_count": self.collected_count,
        }


class RetentionManager:
    """롤백 포인트 만료/삭제 및 스냅샷 GC"""

    def __init__(
        self,
        manager: RollbackPointManager,
        config: RollbackConfig = None,
        default_policy: RetentionPolicy = None,
    ):
        self.manager = manager
        self.snapshot_store = manager.snapshot_store
        self.repository = manager.repository
        self.config = config or manager.config
        self.default_policy = default_policy or RetentionPolicy()
        self._policies: Dict[str, RetentionPolicy] = {}

    # ==================== 정책 ====================

    def set_policy(self, data_source_id: str, policy: RetentionPolicy):
        self._policies[data_source_id] = policy
        logger.info("retention_policy_set", data_source_id=data_source_id, **policy.to_dict())

    def get_policy(self, data_source_id: str) -> RetentionPolicy:
        return self._policies.get(data_source_id, self.default_policy)

    def get_retention_info(self, data_source_id: str, now: datetime = None) -> Dict[str, Any]:
        """소스의 버전 현황과 정책상 삭제 예상 버전 수"""
        now = now or datetime.utcnow()
        snapshots = self._load_snapshots(data_source_id)
        policy = self.get_policy(data_source_id)
        candidates = policy.outside_window(snapshots, now)
        referenced = self.reference_counts().get(data_source_id, {})

        return {
            "data_source_id": data_source_id,
            "policy": policy.to_dict(),
            "total_versions": len(snapshots),
            "oldest_version_at": min((s.created_at for s in snapshots), default=None),
            "newest_version_at": max((s.created_at for s in snapshots), default=None),
            "estimated_deletable_versions": sum(1 for v in candidates if not referenced.get(v)),
        }

    # ==================== 참조 카운트 ====================

    def reference_counts(self) -> Dict[str, Dict[int, int]]:
        """{data_source_id: {version: count}}"""
        counts: Dict[str, Dict[int, int]] = defaultdict(lambda: defaultdict(int))

        for point in self.repository.list_points():
            for captured in point.snapshots:
                counts[captured.data_source_id][captured.version] += 1

        for data_source_id in self.snapshot_store.list_data_sources():
            current = self.snapshot_store.get_current_version(data_source_id)
            if current is not None:
                counts[data_source_id][current] += 1

        return {ds: dict(versions) for ds, versions in counts.items()}

    # ==================== Sweep ====================

    def sweep(self, now: datetime = None, collect_garbage: bool = True) -> SweepResult:
        """
        만료/삭제/GC 실행 (멱등)

        Args:
            now: 기준 시각 (기본 현재)
            collect_garbage: 스냅샷 버전 정리 여부
        """
        now = now or datetime.utcnow()
        result = SweepResult(swept_at=now)

        for point in self.repository.list_points():
            if point.status not in (RollbackPointStatus.ACTIVE, RollbackPointStatus.USED):
                continue
            if point.expires_at is not None and now >= point.expires_at:
                if self.repository.update_point_status(
                    point.id,
                    RollbackPointStatus.EXPIRED,
                    expected=[RollbackPointStatus.ACTIVE, RollbackPointStatus.USED],
                ):
                    result.expired.append(point.id)

        grace_days = self.config.expired_grace_days
        if grace_days is not None:
            grace = timedelta(days=grace_days)
            for point in self.repository.list_points(status=RollbackPointStatus.EXPIRED):
                if point.expires_at is not None and now >= point.expires_at + grace:
                    if self.repository.update_point_status(
                        point.id,
                        RollbackPointStatus.DELETED,
                        expected=[RollbackPointStatus.EXPIRED],
                    ):
                        result.deleted.append(point.id)

        if collect_garbage:
            with self.manager.capture_lock:
                self._collect_garbage(now, result)

        logger.info(
            "retention_sweep_completed",
            expired=len(result.expired),
            deleted=len(result.deleted),
            collected=result.collected_count,
        )
        return result

    def _collect_garbage(self, now: datetime, result: SweepResult):
        counts = self.reference_counts()

        for data_source_id in self.snapshot_store.list_data_sources():
            policy = self.get_policy(data_source_id)
            if policy.strategy == RetentionStrategy.KEEP_ALL:
                continue

            candidates = policy.outside_window(self._load_snapshots(data_source_id), now)
            referenced = counts.get(data_source_id, {})

            for version in candidates:
                if referenced.get(version, 0) > 0:
                    result.retained_referenced.setdefault(data_source_id, []).append(version)
                    continue
                try:
                    self.snapshot_store.delete_version(data_source_id, version)
                except (ConflictError, NotFoundError) as e:
                    logger.warning(
                        "retention_delete_skipped",
                        data_source_id=data_source_id,
                        version=version,
                        error=e.message,
                    )
                    continue
                result.collected.setdefault(data_source_id, []).append(version)

    def _load_snapshots(self, data_source_id: str) -> List[Snapshot]:
        snapshots = []
        for version in self.snapshot_store.list_versions(data_source_id):
            try:
                snapshots.append(self.snapshot_store.get_snapshot(data_source_id, version))
            except NotFoundError:
                continue
        return snapshots

    # ==================== 백그라운드 실행 ====================

    async def run_periodically(self, interval_seconds: float, stop_event: asyncio.Event):
        """stop_event 가 설정될 때까지 interval_seconds 간격으로 sweep"""
        logger.info("retention_sweeper_started", interval_seconds=interval_seconds)
        while not stop_event.is_set():
            try:
                await asyncio.to_thread(self.sweep)
            except Exception as e:
                logger.error("retention_sweep_failed", error=str(e), exc_info=True)

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("retention_sweeper_stopped")
