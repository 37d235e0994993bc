"""
MongoDB Service for the versioning backends.

Owns the pymongo client and translates driver errors into the
service's database exceptions.
"""

import os
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Dict, Any, Callable, TypeVar
from functools import wraps
from pymongo import MongoClient
from pymongo.errors import (
    ConnectionFailure,
    ServerSelectionTimeoutError,
    DuplicateKeyError,
    OperationFailure,
    AutoReconnect,
    NetworkTimeout,
    WriteError,
    WriteConcernError,
    ExecutionTimeout,
    PyMongoError,
)

from ..exceptions import (
    VersioningSystemException,
    DatabaseException,
    DatabaseConnectionError,
    DatabaseOperationError,
)

logger = logging.getLogger(__name__)

T = TypeVar('T')


# ============================================
# pymongo 예외 변환
# ============================================

def translate_pymongo_error(
    error: PyMongoError,
    collection_name: str,
    operation: str,
    host: str = "",
) -> DatabaseException:
    """
    pymongo 예외 -> DatabaseException

    NetworkTimeout 은 ConnectionFailure 의 하위 클래스지만 연산 단위 타임아웃으로 취급.
    """
    if isinstance(error, DuplicateKeyError):
        reason = f"Duplicate key: {str(error)[:100]}"
    elif isinstance(error, NetworkTimeout):
        reason = f"Network timeout: {error}"
    elif isinstance(error, (ConnectionFailure, ServerSelectionTimeoutError, AutoReconnect)):
        return DatabaseConnectionError(reason=str(error), host=host)
    elif isinstance(error, ExecutionTimeout):
        reason = f"Execution timeout: {error}"
    elif isinstance(error, (WriteError, WriteConcernError, OperationFailure)):
        reason = str(error)
    else:
        reason = f"{type(error).__name__}: {error}"

    return DatabaseOperationError(operation=operation, collection=collection_name, reason=reason)


def db_operation(collection_name: str, operation: str):
    """
    백엔드 메서드용 DB 연산 데코레이터

    - pymongo 예외를 DatabaseException 계층으로 변환 (재시도 판단은 is_transient)
    - 도메인 예외(NotFoundError 등)는 그대로 전파

    Args:
        collection_name: 컬렉션 이름
        operation: 연산 유형 (read, write, update, delete, create_index)
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(self, *args, **kwargs) -> T:
            try:
                return func(self, *args, **kwargs)

            except VersioningSystemException:
                raise

            except PyMongoError as e:
                host = getattr(getattr(self, 'mongo', None), 'uri', '')
                translated = translate_pymongo_error(e, collection_name, operation, host)
                logger.error(
                    f"DB {operation} failed in {func.__name__} "
                    f"({collection_name}): [{translated.error_code}] {e}"
                )
                raise translated from e

        return wrapper
    return decorator


# ============================================
# MongoDB 서비스 클래스
# ============================================

@dataclass
class MongoSettings:
    """MongoDB 접속 설정"""
    uri: str = "mongodb://localhost:27017"
    database_name: str = "etl_versioning"
    timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> "MongoSettings":
        return cls(
            uri=os.getenv('MONGODB_URI', cls.uri),
            database_name=os.getenv('MONGODB_DATABASE', cls.database_name),
            timeout_ms=int(os.getenv('MONGODB_TIMEOUT', str(cls.timeout_ms))),
        )


class MongoService:
    """
    MongoDB connection holder for the snapshot store and rollback repository.

    Usage:
        with MongoService() as mongo:
            backend = MongoSnapshotBackend(mongo)

    Collections:
        data_snapshots      - snapshot metadata, unique (data_source_id, version)
        snapshot_data       - compressed record payloads keyed by records_ref
        snapshot_pointers   - current pointer and last allocated version per source
        rollback_points     - checkpoint metadata
        rollback_operations - restore audit records
    """

    def __init__(self, uri: Optional[str] = None, database_name: Optional[str] = None):
        settings = MongoSettings.from_env()
        self.uri = uri or settings.uri
        self.database_name = database_name or settings.database_name
        self._connection_timeout = settings.timeout_ms
        self._client: Optional[MongoClient] = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    @property
    def client(self) -> MongoClient:
        """
        Lazily connect and ping.

        Raises:
            DatabaseConnectionError: 연결 실패 시
        """
        if self._client is None:
            client = MongoClient(
                self.uri,
                serverSelectionTimeoutMS=self._connection_timeout,
                connectTimeoutMS=self._connection_timeout,
                retryWrites=True,
                retryReads=True
            )
            try:
                client.admin.command('ping')
            except (ConnectionFailure, ServerSelectionTimeoutError) as e:
                client.close()
                raise DatabaseConnectionError(reason=str(e), host=self.uri) from e

            logger.debug(f"MongoDB connection established ({self.database_name})")
            self._client = client

        return self._client

    @property
    def db(self):
        return self.client[self.database_name]

    def close(self):
        """Close the MongoDB connection safely."""
        if self._client:
            try:
                self._client.close()
            except PyMongoError as e:
                logger.warning(f"Error closing MongoDB connection: {e}")
            finally:
                self._client = None

    def health_check(self) -> Dict[str, Any]:
        """
        Ping the metadata store.

        Returns:
            {"status": "healthy" | "unhealthy", "database", "latency_ms" | "error"}
        """
        try:
            start = datetime.utcnow()
            self.client.admin.command('ping')
            latency = (datetime.utcnow() - start).total_seconds() * 1000
        except Exception as e:
            return {
                "status": "unhealthy",
                "error": str(e),
                "database": self.database_name
            }

        return {
            "status": "healthy",
            "latency_ms": round(latency, 2),
            "database": self.database_name
        }
