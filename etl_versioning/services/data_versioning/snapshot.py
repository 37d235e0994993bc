"""
Snapshot Store - 데이터 소스별 버전 스냅샷 저장소

기능:
- 스냅샷 생성 (버전 자동 증가, 현재 포인터 이동)
- 버전/ID 기반 조회, 레코드 로드
- 현재 포인터 변경 (복원용)
- 버전 삭제 (보존 정책용)

버전 번호는 데이터 소스별로 단조 증가하며 삭제 후에도 재사용되지 않습니다.
같은 데이터 소스에 대한 쓰기는 소스별 Lock으로 직렬화됩니다.
"""

import gzip
import hashlib
import json
import os
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from bson import ObjectId
from bson.binary import Binary
from pymongo import ASCENDING, ReturnDocument

from ...core import get_logger
from ...exceptions import ConflictError, NotFoundError, ValidationError
from ..mongo_service import db_operation

logger = get_logger(__name__)

COMPRESSION_THRESHOLD_BYTES = 1024


class CompressionType(str, Enum):
    """압축 타입"""
    NONE = "none"
    GZIP = "gzip"


@dataclass
class StoreSettings:
    """스냅샷 저장소 설정"""
    backend: str = "memory"
    lock_timeout_seconds: float = 30.0
    compress: bool = True
    retention_keep_last: int = 10

    @classmethod
    def from_env(cls) -> "StoreSettings":
        return cls(
            backend=os.getenv("VERSIONING_BACKEND", "memory").lower(),
            lock_timeout_seconds=float(os.getenv("SNAPSHOT_LOCK_TIMEOUT_SECONDS", "30")),
            compress=os.getenv("SNAPSHOT_COMPRESS", "true").lower() == "true",
            retention_keep_last=int(os.getenv("SNAPSHOT_RETENTION_KEEP_LAST", "10")),
        )


@dataclass(frozen=True)
class Snapshot:
    """불변 스냅샷 메타데이터 (레코드 본문은 records_ref로 참조)"""
    data_source_id: str
    version: int
    record_count: int
    created_at: datetime
    records_ref: str
    snapshot_id: str
    project_id: Optional[str] = None
    size_bytes: int = 0
    stored_size_bytes: int = 0
    compression: CompressionType = CompressionType.NONE
    data_hash: str = ""
    created_by: str = "system"
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "snapshot_id": self.snapshot_id,
            "data_source_id": self.data_source_id,
            "project_id": self.project_id,
            "version": self.version,
            "record_count": self.record_count,
            "created_at": self.created_at,
            "records_ref": self.records_ref,
            "size_bytes": self.size_bytes,
            "stored_size_bytes": self.stored_size_bytes,
            "compression": self.compression.value,
            "data_hash": self.data_hash,
            "created_by": self.created_by,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Snapshot":
        created_at = data.get("created_at")
        if isinstance(created_at, str):
            created_at = datetime.fromisoformat(created_at)
        elif created_at is None:
            created_at = datetime.utcnow()

        return cls(
            data_source_id=str(data["data_source_id"]),
            version=int(data["version"]),
            record_count=data.get("record_count", 0),
            created_at=created_at,
            records_ref=str(data.get("records_ref", "")),
            snapshot_id=str(data.get("snapshot_id", data.get("_id", ""))),
            project_id=data.get("project_id"),
            size_bytes=data.get("size_bytes", 0),
            stored_size_bytes=data.get("stored_size_bytes", 0),
            compression=CompressionType(data.get("compression", "none")),
            data_hash=data.get("data_hash", ""),
            created_by=data.get("created_by", "system"),
            metadata=data.get("metadata") or {},
        )

    @property
    def compression_ratio(self) -> float:
        """압축률 (0-1, 낮을수록 좋음)"""
        if self.size_bytes == 0:
            return 1.0
        return self.stored_size_bytes / self.size_bytes


# ==================== 저장소 백엔드 ====================

class SnapshotBackend(ABC):
    """스냅샷 영속화 백엔드"""

    @abstractmethod
    def allocate_version(self, data_source_id: str, project_id: Optional[str] = None) -> int:
        """다음 버전 번호를 원자적으로 할당"""
        pass

    @abstractmethod
    def save(self, snapshot: Snapshot, payload: bytes) -> None:
        pass

    @abstractmethod
    def get(self, data_source_id: str, version: int) -> Optional[Snapshot]:
        pass

    @abstractmethod
    def get_by_id(self, snapshot_id: str) -> Optional[Snapshot]:
        pass

    @abstractmethod
    def list_versions(self, data_source_id: str) -> List[int]:
        pass

    @abstractmethod
    def load_payload(self, records_ref: str) -> Optional[bytes]:
        pass

    @abstractmethod
    def delete(self, data_source_id: str, version: int) -> bool:
        pass

    @abstractmethod
    def get_current_version(self, data_source_id: str) -> Optional[int]:
        pass

    @abstractmethod
    def set_current_version(self, data_source_id: str, version: int) -> None:
        pass

    @abstractmethod
    def list_data_sources(self, project_id: Optional[str] = None) -> List[str]:
        pass


class InMemorySnapshotBackend(SnapshotBackend):
    """인메모리 백엔드 (개발/테스트용)"""

    def __init__(self):
        self._lock = threading.RLock()
        self._snapshots: Dict[str, Dict[int, Snapshot]] = {}
        self._by_id: Dict[str, Snapshot] = {}
        self._payloads: Dict[str, bytes] = {}
        self._pointers: Dict[str, Dict[str, Any]] = {}

    def allocate_version(self, data_source_id: str, project_id: Optional[str] = None) -> int:
        with self._lock:
            pointer = self._pointers.setdefault(
                data_source_id,
                {"project_id": project_id, "last_version": 0, "current_version": None},
            )
            if pointer["project_id"] is None and project_id:
                pointer["project_id"] = project_id
            pointer["last_version"] += 1
            return pointer["last_version"]

    def save(self, snapshot: Snapshot, payload: bytes) -> None:
        with self._lock:
            self._snapshots.setdefault(snapshot.data_source_id, {})[snapshot.version] = snapshot
            self._by_id[snapshot.snapshot_id] = snapshot
            self._payloads[snapshot.records_ref] = payload

    def get(self, data_source_id: str, version: int) -> Optional[Snapshot]:
        with self._lock:
            return self._snapshots.get(data_source_id, {}).get(version)

    def get_by_id(self, snapshot_id: str) -> Optional[Snapshot]:
        with self._lock:
            return self._by_id.get(snapshot_id)

    def list_versions(self, data_source_id: str) -> List[int]:
        with self._lock:
            return sorted(self._snapshots.get(data_source_id, {}))

    def load_payload(self, records_ref: str) -> Optional[bytes]:
        with self._lock:
            return self._payloads.get(records_ref)

    def delete(self, data_source_id: str, version: int) -> bool:
        with self._lock:
            snapshot = self._snapshots.get(data_source_id, {}).pop(version, None)
            if snapshot is None:
                return False
            self._by_id.pop(snapshot.snapshot_id, None)
            self._payloads.pop(snapshot.records_ref, None)
            return True

    def get_current_version(self, data_source_id: str) -> Optional[int]:
        with self._lock:
            pointer = self._pointers.get(data_source_id)
            return pointer["current_version"] if pointer else None

    def set_current_version(self, data_source_id: str, version: int) -> None:
        with self._lock:
            pointer = self._pointers.setdefault(
                data_source_id,
                {"project_id": None, "last_version": version, "current_version": None},
            )
            pointer["current_version"] = version

    def list_data_sources(self, project_id: Optional[str] = None) -> List[str]:
        with self._lock:
            return sorted(
                ds for ds, pointer in self._pointers.items()
                if project_id is None or pointer["project_id"] == project_id
            )


class MongoSnapshotBackend(SnapshotBackend):
    """
    MongoDB 백엔드

    Collections:
        data_snapshots:    스냅샷 메타데이터 (_id = snapshot_id)
        snapshot_data:     압축된 레코드 본문 (_id = records_ref)
        snapshot_pointers: 소스별 last_version / current_version (_id = data_source_id)
    """

    def __init__(self, mongo_service):
        self.mongo = mongo_service

    # ==================== 컬렉션 접근 ====================

    def _get_snapshots_collection(self):
        return self.mongo.db.data_snapshots

    def _get_snapshot_data_collection(self):
        return self.mongo.db.snapshot_data

    def _get_pointers_collection(self):
        return self.mongo.db.snapshot_pointers

    @db_operation("data_snapshots", "create_index")
    def ensure_indexes(self):
        """필요한 인덱스 생성"""
        snapshots = self._get_snapshots_collection()
        snapshots.create_index([("data_source_id", ASCENDING), ("version", ASCENDING)], unique=True)
        snapshots.create_index("project_id")
        self._get_pointers_collection().create_index("project_id")

    # ==================== 백엔드 연산 ====================

    @db_operation("snapshot_pointers", "update")
    def allocate_version(self, data_source_id: str, project_id: Optional[str] = None) -> int:
        doc = self._get_pointers_collection().find_one_and_update(
            {"_id": data_source_id},
            {
                "$inc": {"last_version": 1},
                "$setOnInsert": {"project_id": project_id, "created_at": datetime.utcnow()},
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return int(doc["last_version"])

    @db_operation("data_snapshots", "insert")
    def save(self, snapshot: Snapshot, payload: bytes) -> None:
        self._get_snapshot_data_collection().insert_one({
            "_id": snapshot.records_ref,
            "snapshot_id": snapshot.snapshot_id,
            "data": Binary(payload),
        })
        doc = snapshot.to_dict()
        doc["_id"] = snapshot.snapshot_id
        self._get_snapshots_collection().insert_one(doc)

    @db_operation("data_snapshots", "read")
    def get(self, data_source_id: str, version: int) -> Optional[Snapshot]:
        doc = self._get_snapshots_collection().find_one(
            {"data_source_id": data_source_id, "version": version}
        )
        return Snapshot.from_dict(doc) if doc else None

    @db_operation("data_snapshots", "read")
    def get_by_id(self, snapshot_id: str) -> Optional[Snapshot]:
        doc = self._get_snapshots_collection().find_one({"_id": snapshot_id})
        return Snapshot.from_dict(doc) if doc else None

    @db_operation("data_snapshots", "read")
    def list_versions(self, data_source_id: str) -> List[int]:
        cursor = self._get_snapshots_collection().find(
            {"data_source_id": data_source_id}, {"version": 1}
        ).sort("version", ASCENDING)
        return [int(doc["version"]) for doc in cursor]

    @db_operation("snapshot_data", "read")
    def load_payload(self, records_ref: str) -> Optional[bytes]:
        doc = self._get_snapshot_data_collection().find_one({"_id": records_ref})
        if not doc:
            return None
        return bytes(doc["data"])

    @db_operation("data_snapshots", "delete")
    def delete(self, data_source_id: str, version: int) -> bool:
        snapshots = self._get_snapshots_collection()
        doc = snapshots.find_one({"data_source_id": data_source_id, "version": version})
        if not doc:
            return False
        snapshots.delete_one({"_id": doc["_id"]})
        self._get_snapshot_data_collection().delete_one({"_id": doc.get("records_ref")})
        return True

    @db_operation("snapshot_pointers", "read")
    def get_current_version(self, data_source_id: str) -> Optional[int]:
        doc = self._get_pointers_collection().find_one({"_id": data_source_id})
        if not doc or doc.get("current_version") is None:
            return None
        return int(doc["current_version"])

    @db_operation("snapshot_pointers", "update")
    def set_current_version(self, data_source_id: str, version: int) -> None:
        self._get_pointers_collection().update_one(
            {"_id": data_source_id},
            {"$set": {"current_version": version, "updated_at": datetime.utcnow()}},
            upsert=True,
        )

    @db_operation("snapshot_pointers", "read")
    def list_data_sources(self, project_id: Optional[str] = None) -> List[str]:
        query = {"project_id": project_id} if project_id else {}
        cursor = self._get_pointers_collection().find(query, {"_id": 1}).sort("_id", ASCENDING)
        return [str(doc["_id"]) for doc in cursor]


# ==================== 스냅샷 저장소 ====================

class SnapshotStore:
    """
    스냅샷 저장소

    스냅샷 생성, 조회, 현재 포인터 관리를 담당합니다.
    """

    def __init__(
        self,
        backend: SnapshotBackend = None,
        lock_timeout: float = 30.0,
        compress: bool = True,
    ):
        """
        Args:
            backend: 저장소 백엔드 (None이면 인메모리)
            lock_timeout: 포인터 변경 시 소스 Lock 대기 시간 (초)
            compress: 1KB 이상 페이로드 gzip 압축 여부
        """
        self.backend = backend or InMemorySnapshotBackend()
        self.lock_timeout = lock_timeout
        self.compress = compress
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _source_lock(self, data_source_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(data_source_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[data_source_id] = lock
            return lock

    @staticmethod
    def _validate_data_source_id(data_source_id: str):
        if not isinstance(data_source_id, str) or not data_source_id.strip():
            raise ValidationError("data_source_id", "must be a non-empty string", data_source_id)

    # ==================== 스냅샷 생성 ====================

    def create_snapshot(
        self,
        data_source_id: str,
        records: List[Dict[str, Any]],
        project_id: str = None,
        created_by: str = "system",
        metadata: Dict[str, Any] = None,
    ) -> Snapshot:
        """
        스냅샷 생성 후 현재 포인터를 새 버전으로 이동

        Args:
            data_source_id: 데이터 소스 ID
            records: 레코드 목록
            project_id: 프로젝트 ID
            created_by: 생성자
            metadata: 추가 메타데이터

        Returns:
            생성된 Snapshot

        Raises:
            ValidationError: 잘못된 소스 ID 또는 레코드 형식
            ConflictError: 같은 소스에 대한 쓰기가 진행 중
        """
        self._validate_data_source_id(data_source_id)
        if not isinstance(records, list):
            raise ValidationError("records", "must be a list of objects", type(records).__name__)
        for index, record in enumerate(records):
            if not isinstance(record, dict):
                raise ValidationError(f"records[{index}]", "must be an object", record)

        lock = self._source_lock(data_source_id)
        if not lock.acquire(blocking=False):
            raise ConflictError(data_source_id, "another write is in flight")

        try:
            data_bytes = json.dumps(records, default=str, ensure_ascii=False).encode("utf-8")
            original_size = len(data_bytes)

            compression = CompressionType.NONE
            payload = data_bytes
            if self.compress and original_size > COMPRESSION_THRESHOLD_BYTES:
                payload = gzip.compress(data_bytes)
                compression = CompressionType.GZIP

            version = self.backend.allocate_version(data_source_id, project_id)
            snapshot = Snapshot(
                data_source_id=data_source_id,
                version=version,
                record_count=len(records),
                created_at=datetime.utcnow(),
                records_ref=str(ObjectId()),
                snapshot_id=str(ObjectId()),
                project_id=project_id,
                size_bytes=original_size,
                stored_size_bytes=len(payload),
                compression=compression,
                data_hash=hashlib.sha256(data_bytes).hexdigest(),
                created_by=created_by,
                metadata=dict(metadata or {}),
            )

            self.backend.save(snapshot, payload)
            self.backend.set_current_version(data_source_id, version)
        finally:
            lock.release()

        logger.info(
            "snapshot_created",
            data_source_id=data_source_id,
            version=version,
            records=snapshot.record_count,
            compression_ratio=round(snapshot.compression_ratio, 2),
        )
        return snapshot

    # ==================== 스냅샷 조회 ====================

    def get_snapshot(self, data_source_id: str, version: int) -> Snapshot:
        snapshot = self.backend.get(data_source_id, version)
        if snapshot is None:
            raise NotFoundError("Snapshot", f"{data_source_id}@v{version}")
        return snapshot

    def get_snapshot_by_id(self, snapshot_id: str) -> Snapshot:
        snapshot = self.backend.get_by_id(snapshot_id)
        if snapshot is None:
            raise NotFoundError("Snapshot", snapshot_id)
        return snapshot

    def get_current_version(self, data_source_id: str) -> Optional[int]:
        return self.backend.get_current_version(data_source_id)

    def get_current_snapshot(self, data_source_id: str) -> Snapshot:
        """현재 포인터가 가리키는 스냅샷 (메타데이터만)"""
        version = self.backend.get_current_version(data_source_id)
        if version is None:
            raise NotFoundError("Current snapshot", data_source_id)
        return self.get_snapshot(data_source_id, version)

    def list_versions(self, data_source_id: str) -> List[int]:
        """오름차순 버전 목록 (호출마다 새 리스트)"""
        return list(self.backend.list_versions(data_source_id))

    def list_data_sources(self, project_id: str = None) -> List[str]:
        return list(self.backend.list_data_sources(project_id))

    def get_records(self, snapshot: Snapshot) -> List[Dict[str, Any]]:
        """스냅샷 레코드 로드 및 압축 해제"""
        payload = self.backend.load_payload(snapshot.records_ref)
        if payload is None:
            raise NotFoundError("Snapshot data", snapshot.records_ref)

        if snapshot.compression == CompressionType.GZIP:
            payload = gzip.decompress(payload)
        return json.loads(payload.decode("utf-8"))

    # ==================== 포인터 / 삭제 ====================

    def set_current_pointer(
        self,
        data_source_id: str,
        version: int,
        timeout: float = None,
    ) -> Snapshot:
        """
        현재 포인터를 지정 버전으로 변경 (이전 버전은 삭제하지 않음)

        진행 중인 쓰기가 있으면 timeout 까지 대기 후 ConflictError.
        """
        wait = self.lock_timeout if timeout is None else timeout
        lock = self._source_lock(data_source_id)
        if not lock.acquire(timeout=wait):
            raise ConflictError(data_source_id, f"lock wait exceeded {wait}s")

        try:
            snapshot = self.get_snapshot(data_source_id, version)
            previous = self.backend.get_current_version(data_source_id)
            self.backend.set_current_version(data_source_id, version)
        finally:
            lock.release()

        logger.info(
            "snapshot_pointer_moved",
            data_source_id=data_source_id,
            from_version=previous,
            to_version=version,
        )
        return snapshot

    def delete_version(self, data_source_id: str, version: int) -> None:
        """버전 물리 삭제 (현재 버전은 거부)"""
        lock = self._source_lock(data_source_id)
        if not lock.acquire(timeout=self.lock_timeout):
            raise ConflictError(data_source_id, f"lock wait exceeded {self.lock_timeout}s")

        try:
            if self.backend.get_current_version(data_source_id) == version:
                raise ConflictError(data_source_id, f"version {version} is the current version")
            if not self.backend.delete(data_source_id, version):
                raise NotFoundError("Snapshot", f"{data_source_id}@v{version}")
        finally:
            lock.release()

        logger.info("snapshot_deleted", data_source_id=data_source_id, version=version)

    # ==================== 통계 ====================

    def get_stats(self, data_source_id: str) -> Dict[str, Any]:
        """소스별 스냅샷 통계"""
        versions = self.list_versions(data_source_id)
        snapshots = [self.backend.get(data_source_id, v) for v in versions]
        snapshots = [s for s in snapshots if s is not None]

        total_size = sum(s.size_bytes for s in snapshots)
        total_stored = sum(s.stored_size_bytes for s in snapshots)

        return {
            "data_source_id": data_source_id,
            "version_count": len(versions),
            "current_version": self.get_current_version(data_source_id),
            "latest_version": versions[-1] if versions else None,
            "total_size_bytes": total_size,
            "total_stored_bytes": total_stored,
            "compression_ratio": round(total_stored / total_size, 2) if total_size else 1.0,
        }
