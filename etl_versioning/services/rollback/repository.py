"""
Rollback Repository - 롤백 포인트/복원 작업 영속화

- InMemoryRollbackRepository: 인메모리 (기본, 테스트용)
- MongoRollbackRepository: rollback_points, rollback_operations 컬렉션

저장소는 항상 복사본을 반환하므로 호출자가 반환 객체를 수정해도
저장된 상태는 변하지 않습니다. 롤백 포인트의 상태 변경은
update_point_status 로만 가능합니다.
"""

import copy
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING, DESCENDING

from ..mongo_service import db_operation
from .models import (
    OperationStatus,
    RollbackOperation,
    RollbackPoint,
    RollbackPointStatus,
    RollbackPointType,
)


class RollbackRepository(ABC):
    """롤백 메타데이터 저장소 인터페이스"""

    @abstractmethod
    def save_point(self, point: RollbackPoint) -> None:
        pass

    @abstractmethod
    def get_point(self, point_id: str) -> Optional[RollbackPoint]:
        """deleted 포함 조회 (필터링은 호출자 책임)"""
        pass

    @abstractmethod
    def list_points(
        self,
        project_id: Optional[str] = None,
        status: Optional[RollbackPointStatus] = None,
        point_type: Optional[RollbackPointType] = None,
        data_source_id: Optional[str] = None,
        include_deleted: bool = False,
    ) -> List[RollbackPoint]:
        """최신순"""
        pass

    @abstractmethod
    def update_point_status(
        self,
        point_id: str,
        status: RollbackPointStatus,
        expected: Optional[List[RollbackPointStatus]] = None,
    ) -> bool:
        """
        상태 변경 (expected 가 주어지면 현재 상태가 그 중 하나일 때만)

        Returns:
            변경 여부
        """
        pass

    @abstractmethod
    def save_operation(self, operation: RollbackOperation) -> None:
        """upsert"""
        pass

    @abstractmethod
    def get_operation(self, operation_id: str) -> Optional[RollbackOperation]:
        pass

    @abstractmethod
    def list_operations(
        self,
        rollback_point_id: Optional[str] = None,
        status: Optional[OperationStatus] = None,
        limit: Optional[int] = None,
    ) -> List[RollbackOperation]:
        """최신순"""
        pass

    def list_active_operations(self) -> List[RollbackOperation]:
        active = []
        for status in (OperationStatus.PENDING, OperationStatus.IN_PROGRESS):
            active.extend(self.list_operations(status=status))
        return sorted(active, key=lambda op: op.started_at, reverse=True)


def _point_matches(
    doc: Dict[str, Any],
    project_id: Optional[str],
    status: Optional[RollbackPointStatus],
    point_type: Optional[RollbackPointType],
    data_source_id: Optional[str],
    include_deleted: bool,
) -> bool:
    if not include_deleted and doc["status"] == RollbackPointStatus.DELETED.value:
        return False
    if project_id and doc["scope"].get("project_id") != project_id:
        return False
    if status and doc["status"] != status.value:
        return False
    if point_type and doc["type"] != point_type.value:
        return False
    if data_source_id and data_source_id not in [
        s["data_source_id"] for s in doc["state"]["snapshots"]
    ]:
        return False
    return True


class InMemoryRollbackRepository(RollbackRepository):
    """인메모리 저장소"""

    def __init__(self):
        self._lock = threading.RLock()
        self._points: Dict[str, Dict[str, Any]] = {}
        self._operations: Dict[str, Dict[str, Any]] = {}

    def save_point(self, point: RollbackPoint) -> None:
        with self._lock:
            self._points[point.id] = copy.deepcopy(point.to_dict())

    def get_point(self, point_id: str) -> Optional[RollbackPoint]:
        with self._lock:
            doc = self._points.get(point_id)
            return RollbackPoint.from_dict(copy.deepcopy(doc)) if doc else None

    def list_points(
        self,
        project_id: Optional[str] = None,
        status: Optional[RollbackPointStatus] = None,
        point_type: Optional[RollbackPointType] = None,
        data_source_id: Optional[str] = None,
        include_deleted: bool = False,
    ) -> List[RollbackPoint]:
        with self._lock:
            docs = [
                copy.deepcopy(doc) for doc in self._points.values()
                if _point_matches(doc, project_id, status, point_type, data_source_id, include_deleted)
            ]
        points = [RollbackPoint.from_dict(doc) for doc in docs]
        return sorted(points, key=lambda p: p.created_at, reverse=True)

    def update_point_status(
        self,
        point_id: str,
        status: RollbackPointStatus,
        expected: Optional[List[RollbackPointStatus]] = None,
    ) -> bool:
        with self._lock:
            doc = self._points.get(point_id)
            if doc is None:
                return False
            if expected is not None and doc["status"] not in [s.value for s in expected]:
                return False
            doc["status"] = status.value
            return True

    def save_operation(self, operation: RollbackOperation) -> None:
        with self._lock:
            self._operations[operation.id] = copy.deepcopy(operation.to_dict())

    def get_operation(self, operation_id: str) -> Optional[RollbackOperation]:
        with self._lock:
            doc = self._operations.get(operation_id)
            return RollbackOperation.from_dict(copy.deepcopy(doc)) if doc else None

    def list_operations(
        self,
        rollback_point_id: Optional[str] = None,
        status: Optional[OperationStatus] = None,
        limit: Optional[int] = None,
    ) -> List[RollbackOperation]:
        with self._lock:
            docs = [
                copy.deepcopy(doc) for doc in self._operations.values()
                if (rollback_point_id is None or doc["rollback_point_id"] == rollback_point_id)
                and (status is None or doc["status"] == status.value)
            ]
        operations = sorted(
            (RollbackOperation.from_dict(doc) for doc in docs),
            key=lambda op: op.started_at,
            reverse=True,
        )
        return operations[:limit] if limit else operations


class MongoRollbackRepository(RollbackRepository):
    """
    MongoDB 저장소

    Collections:
        rollback_points:     {_id: point_id, name, type, scope, state, metadata, status, ...}
        rollback_operations: {_id: operation_id, rollback_point_id, status, restored, errors, ...}
    """

    POINTS_COLLECTION = "rollback_points"
    OPERATIONS_COLLECTION = "rollback_operations"

    def __init__(self, mongo_service):
        self.mongo = mongo_service

    def _get_points_collection(self):
        return self.mongo.db[self.POINTS_COLLECTION]

    def _get_operations_collection(self):
        return self.mongo.db[self.OPERATIONS_COLLECTION]

    @db_operation("rollback_points", "create_index")
    def ensure_indexes(self):
        """필요한 인덱스 생성"""
        points = self._get_points_collection()
        points.create_index([("scope.project_id", ASCENDING), ("created_at", DESCENDING)])
        points.create_index([("status", ASCENDING), ("expires_at", ASCENDING)])
        points.create_index("state.snapshots.data_source_id")

        operations = self._get_operations_collection()
        operations.create_index([("rollback_point_id", ASCENDING), ("started_at", DESCENDING)])
        operations.create_index("status")

    @staticmethod
    def _to_doc(data: Dict[str, Any]) -> Dict[str, Any]:
        doc = dict(data)
        doc["_id"] = doc.pop("id")
        return doc

    @db_operation("rollback_points", "write")
    def save_point(self, point: RollbackPoint) -> None:
        doc = self._to_doc(point.to_dict())
        self._get_points_collection().replace_one({"_id": doc["_id"]}, doc, upsert=True)

    @db_operation("rollback_points", "read")
    def get_point(self, point_id: str) -> Optional[RollbackPoint]:
        doc = self._get_points_collection().find_one({"_id": point_id})
        return RollbackPoint.from_dict(doc) if doc else None

    @db_operation("rollback_points", "read")
    def list_points(
        self,
        project_id: Optional[str] = None,
        status: Optional[RollbackPointStatus] = None,
        point_type: Optional[RollbackPointType] = None,
        data_source_id: Optional[str] = None,
        include_deleted: bool = False,
    ) -> List[RollbackPoint]:
        if status == RollbackPointStatus.DELETED and not include_deleted:
            return []

        query: Dict[str, Any] = {}
        if project_id:
            query["scope.project_id"] = project_id
        if status:
            query["status"] = status.value
        elif not include_deleted:
            query["status"] = {"$ne": RollbackPointStatus.DELETED.value}
        if point_type:
            query["type"] = point_type.value
        if data_source_id:
            query["state.snapshots.data_source_id"] = data_source_id

        cursor = self._get_points_collection().find(query).sort("created_at", DESCENDING)
        return [RollbackPoint.from_dict(doc) for doc in cursor]

    @db_operation("rollback_points", "update")
    def update_point_status(
        self,
        point_id: str,
        status: RollbackPointStatus,
        expected: Optional[List[RollbackPointStatus]] = None,
    ) -> bool:
        query: Dict[str, Any] = {"_id": point_id}
        if expected is not None:
            query["status"] = {"$in": [s.value for s in expected]}
        result = self._get_points_collection().update_one(query, {"$set": {"status": status.value}})
        return result.modified_count > 0

    @db_operation("rollback_operations", "write")
    def save_operation(self, operation: RollbackOperation) -> None:
        doc = self._to_doc(operation.to_dict())
        self._get_operations_collection().replace_one({"_id": doc["_id"]}, doc, upsert=True)

    @db_operation("rollback_operations", "read")
    def get_operation(self, operation_id: str) -> Optional[RollbackOperation]:
        doc = self._get_operations_collection().find_one({"_id": operation_id})
        return RollbackOperation.from_dict(doc) if doc else None

    @db_operation("rollback_operations", "read")
    def list_operations(
        self,
        rollback_point_id: Optional[str] = None,
        status: Optional[OperationStatus] = None,
        limit: Optional[int] = None,
    ) -> List[RollbackOperation]:
        query: Dict[str, Any] = {}
        if rollback_point_id:
            query["rollback_point_id"] = rollback_point_id
        if status:
            query["status"] = status.value

        cursor = self._get_operations_collection().find(query).sort("started_at", DESCENDING)
        if limit:
            cursor = cursor.limit(limit)
        return [RollbackOperation.from_dict(doc) for doc in cursor]

    @db_operation("rollback_operations", "read")
    def list_active_operations(self) -> List[RollbackOperation]:
        cursor = self._get_operations_collection().find({
            "status": {"$in": [OperationStatus.PENDING.value, OperationStatus.IN_PROGRESS.value]}
        }).sort("started_at", DESCENDING)
        return [RollbackOperation.from_dict(doc) for doc in cursor]
