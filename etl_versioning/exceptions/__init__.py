"""
커스텀 예외 클래스 체계
모든 버전 관리/롤백 예외는 이 계층을 따름
"""
from typing import Optional, Dict, Any, List
from datetime import datetime
from enum import Enum


class ErrorSeverity(str, Enum):
    """에러 심각도"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class VersioningSystemException(Exception):
    """시스템 최상위 예외 클래스"""

    def __init__(
        self,
        message: str,
        error_code: str = "E000",
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        cause: Optional[Exception] = None
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.recoverable = recoverable
        self.severity = severity
        self.cause = cause
        self.timestamp = datetime.utcnow()
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """예외를 딕셔너리로 변환"""
        return {
            "error_code": self.error_code,
            "error_type": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
            "severity": self.severity.value,
            "timestamp": self.timestamp.isoformat(),
            "cause": str(self.cause) if self.cause else None
        }

    def __str__(self):
        return f"[{self.error_code}] {self.message}"

    def __repr__(self):
        return f"{self.__class__.__name__}(code={self.error_code}, message={self.message})"


# ============================================
# Validation 예외 (V001-V099)
# ============================================

class ValidationError(VersioningSystemException):
    """요청 검증 실패 (영속화 이전에 거부)"""
    def __init__(self, field: str, reason: str, value: Any = None):
        super().__init__(
            message=f"'{field}' 검증 실패: {reason}",
            error_code="V001",
            details={"field": field, "reason": reason, "value": str(value)[:100] if value is not None else None},
            recoverable=False,
            severity=ErrorSeverity.LOW
        )


# ============================================
# 조회 예외 (N001-N099)
# ============================================

class NotFoundError(VersioningSystemException):
    """롤백 포인트, 스냅샷 또는 버전을 찾을 수 없음"""
    def __init__(self, resource: str, identifier: Any):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code="N001",
            details={"resource": resource, "identifier": str(identifier)},
            recoverable=False,
            severity=ErrorSeverity.LOW
        )


class ExpiredError(VersioningSystemException):
    """만료된 롤백 포인트"""
    def __init__(self, rollback_point_id: str, expires_at: Optional[datetime] = None):
        super().__init__(
            message=f"Rollback point expired: {rollback_point_id}",
            error_code="N002",
            details={
                "rollback_point_id": rollback_point_id,
                "expires_at": expires_at.isoformat() if expires_at else None,
            },
            recoverable=False,
            severity=ErrorSeverity.LOW
        )


# ============================================
# 동시성 예외 (C001-C099)
# ============================================

class ConflictError(VersioningSystemException):
    """동시 쓰기 충돌 또는 재사용 불가 상태"""
    def __init__(self, resource_id: str, reason: str):
        super().__init__(
            message=f"Conflict on '{resource_id}': {reason}",
            error_code="C001",
            details={"resource_id": resource_id, "reason": reason},
            recoverable=True,
            severity=ErrorSeverity.MEDIUM
        )


# ============================================
# 스냅샷/캡처 예외 (M001, P001)
# ============================================

class MalformedSnapshotError(VersioningSystemException):
    """스냅샷 내 레코드 키 중복/누락 - diff 불가"""
    def __init__(self, data_source_id: str, reason: str, keys: Optional[List[str]] = None):
        super().__init__(
            message=f"Malformed snapshot for '{data_source_id}': {reason}",
            error_code="M001",
            details={"data_source_id": data_source_id, "reason": reason, "keys": (keys or [])[:20]},
            recoverable=False,
            severity=ErrorSeverity.MEDIUM
        )


class CaptureError(VersioningSystemException):
    """롤백 포인트 생성 중 소스 조회 실패 - 전체 생성 중단"""
    def __init__(self, data_source_id: str, reason: str, cause: Optional[Exception] = None):
        super().__init__(
            message=f"Capture failed for data source '{data_source_id}': {reason}",
            error_code="P001",
            details={"data_source_id": data_source_id, "reason": reason},
            recoverable=True,
            severity=ErrorSeverity.HIGH,
            cause=cause
        )


# ============================================
# 복원 예외 (R001-R099, F001)
# ============================================

class RestoreError(VersioningSystemException):
    """데이터 소스 단위 복원 실패 (RollbackOperation.errors 에 기록)"""
    def __init__(self, data_source_id: str, reason: str, cause: Optional[Exception] = None):
        super().__init__(
            message=f"Restore failed for data source '{data_source_id}': {reason}",
            error_code="R001",
            details={"data_source_id": data_source_id, "reason": reason},
            recoverable=True,
            severity=ErrorSeverity.HIGH,
            cause=cause
        )


class RestoreTimeoutError(RestoreError):
    """소스별 복원 태스크 타임아웃"""
    def __init__(self, data_source_id: str, timeout: float):
        super().__init__(data_source_id, f"timed out after {timeout}s")
        self.error_code = "R002"
        self.details["timeout"] = timeout


class FatalError(VersioningSystemException):
    """롤백 포인트 메타데이터 손상 - 복원 전체 중단"""
    def __init__(self, rollback_point_id: str, reason: str):
        super().__init__(
            message=f"Rollback point '{rollback_point_id}' is corrupted: {reason}",
            error_code="F001",
            details={"rollback_point_id": rollback_point_id, "reason": reason},
            recoverable=False,
            severity=ErrorSeverity.CRITICAL
        )


# ============================================
# 데이터베이스 예외 (D001-D099)
# ============================================

class DatabaseException(VersioningSystemException):
    """데이터베이스 관련 예외"""
    pass


class DatabaseConnectionError(DatabaseException):
    """DB 연결 실패"""
    def __init__(self, reason: str, host: str = ""):
        super().__init__(
            message=f"Database connection failed: {reason}",
            error_code="D001",
            details={"reason": reason, "host": host},
            recoverable=True,
            severity=ErrorSeverity.CRITICAL
        )


class DatabaseOperationError(DatabaseException):
    """DB 연산 실패"""
    def __init__(self, operation: str, collection: str, reason: str):
        super().__init__(
            message=f"Database operation failed ({operation}): {reason}",
            error_code="D002",
            details={
                "operation": operation,
                "collection": collection,
                "reason": reason
            },
            recoverable=True,
            severity=ErrorSeverity.HIGH
        )


# ============================================
# 예외 매핑 및 유틸리티
# ============================================

HTTP_STATUS_MAPPING = {
    ValidationError: 400,
    NotFoundError: 404,
    ExpiredError: 410,
    ConflictError: 409,
    MalformedSnapshotError: 422,
    CaptureError: 424,
}


def get_http_status(exc: VersioningSystemException) -> int:
    """예외 타입에 대응하는 HTTP 상태 코드"""
    for exc_type, status in HTTP_STATUS_MAPPING.items():
        if isinstance(exc, exc_type):
            return status
    return 500


def is_transient(exc: Exception) -> bool:
    """재시도 가능한 일시적 저장소 오류인지"""
    return isinstance(exc, DatabaseException) and getattr(exc, "recoverable", False)


__all__ = [
    "VersioningSystemException",
    "ErrorSeverity",
    "ValidationError",
    "NotFoundError",
    "ExpiredError",
    "ConflictError",
    "MalformedSnapshotError",
    "CaptureError",
    "RestoreError",
    "RestoreTimeoutError",
    "FatalError",
    "DatabaseException",
    "DatabaseConnectionError",
    "DatabaseOperationError",
    "HTTP_STATUS_MAPPING",
    "get_http_status",
    "is_transient",
]
