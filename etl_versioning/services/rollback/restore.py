"""
Restore Coordinator - 롤백 포인트 복원

롤백 포인트에 캡처된 소스별 스냅샷 버전으로 현재 포인터를 되돌립니다.

- 소스별 태스크를 Semaphore 로 동시 실행 수 제한
- 태스크별 타임아웃 (소스 Lock 대기 한도)
- 일시적 저장소 오류 재시도
- 부분 실패 추적 (completed / partial / failed)
- dry-run 미리보기 (포인터를 변경하지 않음)

상태 전이: pending -> in-progress -> completed | partial | failed
"""

import asyncio
import time
from datetime import datetime
from typing import Dict, List, Optional, Union

from bson import ObjectId

from ...core import get_logger, log_context
from ...exceptions import (
    ConflictError,
    ExpiredError,
    FatalError,
    NotFoundError,
    RestoreError,
    RestoreTimeoutError,
    ValidationError,
    VersioningSystemException,
)
from ...utils.retry import retry_async_operation, storage_retry_config
from .manager import RollbackPointManager
from .models import (
    CapturedSnapshot,
    OperationStatus,
    RollbackConfig,
    RollbackOperation,
    RollbackPoint,
    RollbackPointStatus,
    SourcePreview,
    coerce_enum,
)

logger = get_logger(__name__)


class RestoreCoordinator:
    """롤백 포인트 복원 실행기"""

    def __init__(self, manager: RollbackPointManager, config: RollbackConfig = None):
        self.manager = manager
        self.snapshot_store = manager.snapshot_store
        self.repository = manager.repository
        self.config = config or manager.config

    # ==================== 복원 ====================

    async def restore(
        self,
        rollback_point_id: str,
        reason: str = None,
        dry_run: bool = False,
        initiated_by: str = None,
        continue_on_error: bool = None,
        max_concurrent: int = None,
        task_timeout: float = None,
    ) -> RollbackOperation:
        """
        롤백 포인트 복원

        Args:
            rollback_point_id: 롤백 포인트 ID
            reason: 복원 사유 (live 복원 시 필수)
            dry_run: True면 포인터를 변경하지 않고 미리보기만 기록
            initiated_by: 요청자
            continue_on_error: 소스 실패 시 나머지 계속 진행 여부
            max_concurrent: 동시 복원 소스 수
            task_timeout: 소스별 Lock 대기 한도 (초)

        Returns:
            종료 상태의 RollbackOperation

        Raises:
            ValidationError: reason 누락 또는 잘못된 옵션
            NotFoundError: 없거나 삭제된 롤백 포인트
            ExpiredError: 만료된 롤백 포인트
            ConflictError: single_use 설정에서 이미 사용됐거나 다른 복원이 선점한 포인트
        """
        if not dry_run and (not isinstance(reason, str) or not reason.strip()):
            raise ValidationError("reason", "is required for a live restore", reason)

        continue_on_error = self.config.continue_on_error if continue_on_error is None else continue_on_error
        max_concurrent = self.config.max_concurrent if max_concurrent is None else max_concurrent
        task_timeout = self.config.task_timeout_seconds if task_timeout is None else task_timeout
        if max_concurrent < 1:
            raise ValidationError("max_concurrent", "must be at least 1", max_concurrent)
        if task_timeout <= 0:
            raise ValidationError("task_timeout", "must be positive", task_timeout)

        point = await self._resolve_point(rollback_point_id)

        claimed = not dry_run and self.config.single_use
        if claimed:
            # single-use 포인트는 복원 시작 전에 선점 (동시 복원 중 하나만 통과)
            won = await asyncio.to_thread(self.manager.claim_for_restore, point.id)
            if not won:
                raise ConflictError(point.id, "rollback point is already being restored or used")

        start = time.perf_counter()
        operation = RollbackOperation(
            id=str(ObjectId()),
            rollback_point_id=point.id,
            started_at=datetime.utcnow(),
            status=OperationStatus.PENDING,
            initiated_by=initiated_by,
            reason=reason,
            dry_run=dry_run,
        )

        with log_context(operation_id=operation.id, rollback_point_id=point.id):
            try:
                await self._persist(operation)
                operation.status = OperationStatus.IN_PROGRESS
                await self._persist(operation)
                return await self._run(operation, point, start, continue_on_error, max_concurrent, task_timeout)
            except asyncio.CancelledError:
                if not operation.status.is_terminal:
                    logger.warning("restore_cancelled", dry_run=dry_run)
                    self._fail_unfinished(operation, point, "restore cancelled before this source finished")
                    await self._finalize(operation, point, start)
                raise
            except Exception:
                if claimed and not operation.status.is_terminal:
                    await asyncio.to_thread(self.manager.release_claim, point.id)
                raise

    async def _run(
        self,
        operation: RollbackOperation,
        point: RollbackPoint,
        start: float,
        continue_on_error: bool,
        max_concurrent: int,
        task_timeout: float,
    ) -> RollbackOperation:
        logger.info(
            "restore_started",
            dry_run=operation.dry_run,
            data_sources=len(point.snapshots),
        )

        try:
            self._verify_point_state(point)
        except FatalError as e:
            logger.error("restore_aborted_corrupt_point", error=e.message)
            for data_source_id in dict.fromkeys(point.data_source_ids):
                operation.add_error(data_source_id, e)
            return await self._finalize(operation, point, start, forced=OperationStatus.FAILED)

        if operation.dry_run:
            await self._preview(point, operation)
            return await self._finalize(operation, point, start)

        await self._restore_sources(point, operation, continue_on_error, max_concurrent, task_timeout)
        return await self._finalize(operation, point, start)

    async def rollback_failed_pipeline(
        self,
        pipeline_id: str,
        reason: str = None,
        initiated_by: str = None,
    ) -> RollbackOperation:
        """실패한 파이프라인의 가장 최근 pre-pipeline 포인트로 복원"""
        point = await asyncio.to_thread(self.manager.find_pre_pipeline_rollback_point, pipeline_id)
        if point is None:
            raise NotFoundError("Pre-pipeline rollback point", pipeline_id)

        return await self.restore(
            point.id,
            reason=reason or f"Pipeline {pipeline_id} failed",
            initiated_by=initiated_by or "system",
        )

    # ==================== 조회 ====================

    def get_operation(self, operation_id: str) -> RollbackOperation:
        operation = self.repository.get_operation(operation_id)
        if operation is None:
            raise NotFoundError("RollbackOperation", operation_id)
        return operation

    def get_history(
        self,
        rollback_point_id: str = None,
        status: Union[str, OperationStatus] = None,
        limit: int = None,
    ) -> List[RollbackOperation]:
        """최신순 복원 이력"""
        status = coerce_enum(OperationStatus, status, "status")
        return self.repository.list_operations(
            rollback_point_id=rollback_point_id,
            status=status,
            limit=limit,
        )

    def list_active_operations(self) -> List[RollbackOperation]:
        """pending / in-progress 작업 (저장소 기준)"""
        return self.repository.list_active_operations()

    # ==================== 내부 ====================

    async def _resolve_point(self, rollback_point_id: str) -> RollbackPoint:
        point = await asyncio.to_thread(self.repository.get_point, rollback_point_id)
        if point is None or point.status == RollbackPointStatus.DELETED:
            raise NotFoundError("RollbackPoint", rollback_point_id)
        if point.is_expired():
            raise ExpiredError(rollback_point_id, point.expires_at)
        if self.config.single_use and point.status == RollbackPointStatus.USED:
            raise ConflictError(rollback_point_id, "rollback point has already been used")
        return point

    @staticmethod
    def _verify_point_state(point: RollbackPoint):
        if not point.snapshots:
            raise FatalError(point.id, "no captured snapshots")

        ids = point.data_source_ids
        if len(set(ids)) != len(ids):
            raise FatalError(point.id, "duplicate data sources in captured state")

        invalid = [s.data_source_id for s in point.snapshots if s.version < 1]
        if invalid:
            raise FatalError(point.id, f"invalid captured version for {', '.join(invalid)}")

        if point.scope.data_source_ids:
            outside = [i for i in ids if i not in point.scope.data_source_ids]
            if outside:
                raise FatalError(point.id, f"captured sources outside scope: {', '.join(outside)}")

    async def _preview(self, point: RollbackPoint, operation: RollbackOperation):
        for captured in point.snapshots:
            try:
                preview = await asyncio.to_thread(self._preview_source, captured)
            except VersioningSystemException as e:
                operation.add_error(captured.data_source_id, e)
                continue

            operation.preview.append(preview)
            self._record_restored(operation, captured)

    def _preview_source(self, captured: CapturedSnapshot) -> SourcePreview:
        ds = captured.data_source_id
        self.snapshot_store.get_snapshot(ds, captured.version)

        current_version = self.snapshot_store.get_current_version(ds)
        current_count = 0
        if current_version is not None:
            try:
                current_count = self.snapshot_store.get_snapshot(ds, current_version).record_count
            except NotFoundError:
                current_count = 0

        return SourcePreview(
            data_source_id=ds,
            current_version=current_version,
            target_version=captured.version,
            would_change=current_version != captured.version,
            record_delta=captured.record_count - current_count,
        )

    async def _restore_sources(
        self,
        point: RollbackPoint,
        operation: RollbackOperation,
        continue_on_error: bool,
        max_concurrent: int,
        task_timeout: float,
    ):
        semaphore = asyncio.Semaphore(max_concurrent)
        halt = asyncio.Event()
        halt_reason = "not started: restore halted after an earlier failure"
        retry_config = storage_retry_config(
            max_retries=self.config.restore_max_retries,
            base_delay=self.config.restore_retry_delay,
        )

        async def restore_one(captured: CapturedSnapshot):
            ds = captured.data_source_id
            async with semaphore:
                if halt.is_set():
                    operation.add_error(ds, RestoreError(ds, halt_reason))
                    return

                # 재시도 포함 소스당 대기 한도는 task_timeout
                deadline = time.monotonic() + task_timeout

                def move_pointer():
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise ConflictError(ds, f"lock wait exceeded {task_timeout}s")
                    return asyncio.to_thread(
                        self.snapshot_store.set_current_pointer, ds, captured.version, remaining
                    )

                try:
                    await retry_async_operation(move_pointer, config=retry_config)
                except ConflictError:
                    operation.add_error(ds, RestoreTimeoutError(ds, task_timeout))
                except VersioningSystemException as e:
                    operation.add_error(ds, e)
                except Exception as e:
                    logger.exception("restore_source_unexpected_error", data_source_id=ds)
                    operation.add_error(ds, RestoreError(ds, str(e), cause=e))
                else:
                    self._record_restored(operation, captured)
                    return

                logger.warning(
                    "restore_source_failed",
                    data_source_id=ds,
                    error=operation.errors[-1].error,
                )
                if not continue_on_error:
                    halt.set()

        tasks = [asyncio.create_task(restore_one(captured)) for captured in point.snapshots]
        try:
            await asyncio.wait(tasks)
        except asyncio.CancelledError:
            halt_reason = "not started: restore cancelled"
            halt.set()
            await asyncio.wait(tasks)
            raise

    @staticmethod
    def _fail_unfinished(operation: RollbackOperation, point: RollbackPoint, message: str):
        """복원/미리보기도 에러도 기록되지 않은 소스에 에러 추가"""
        seen = set(operation.restored.data_sources) | {e.data_source_id for e in operation.errors}
        for ds in dict.fromkeys(point.data_source_ids):
            if ds not in seen:
                operation.add_error(ds, RestoreError(ds, message))

    @staticmethod
    def _record_restored(operation: RollbackOperation, captured: CapturedSnapshot):
        operation.restored.data_sources.append(captured.data_source_id)
        operation.restored.snapshots.append(captured.snapshot_id)
        operation.restored.records_restored += captured.record_count

    async def _finalize(
        self,
        operation: RollbackOperation,
        point: RollbackPoint,
        start: float,
        forced: Optional[OperationStatus] = None,
    ) -> RollbackOperation:
        order: Dict[str, int] = {ds: i for i, ds in enumerate(point.data_source_ids)}
        pairs = sorted(
            zip(operation.restored.data_sources, operation.restored.snapshots),
            key=lambda pair: order.get(pair[0], len(order)),
        )
        operation.restored.data_sources = [ds for ds, _ in pairs]
        operation.restored.snapshots = [sid for _, sid in pairs]
        operation.errors.sort(key=lambda e: order.get(e.data_source_id, len(order)))

        if forced is not None:
            operation.status = forced
        elif not operation.errors:
            operation.status = OperationStatus.COMPLETED
        elif operation.restored.data_sources:
            operation.status = OperationStatus.PARTIAL
        else:
            operation.status = OperationStatus.FAILED

        operation.completed_at = datetime.utcnow()
        operation.duration_ms = round((time.perf_counter() - start) * 1000, 2)
        await self._persist(operation)

        if not operation.dry_run:
            if operation.status == OperationStatus.COMPLETED:
                await asyncio.to_thread(self.manager.mark_used, point.id)
            elif self.config.single_use:
                # 실패/부분 복원은 선점 해제 (재시도 가능)
                await asyncio.to_thread(self.manager.release_claim, point.id)

        logger.info(
            "restore_finished",
            status=operation.status.value,
            dry_run=operation.dry_run,
            restored=len(operation.restored.data_sources),
            errors=len(operation.errors),
            records_restored=operation.restored.records_restored,
            duration_ms=operation.duration_ms,
        )
        return operation

    async def _persist(self, operation: RollbackOperation):
        await asyncio.to_thread(self.repository.save_operation, operation)
