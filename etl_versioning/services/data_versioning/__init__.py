"""
Data Versioning Service

스냅샷 버전 저장 및 비교:
- FieldValue: 필드 값 분류
- SnapshotStore: 소스별 불변 스냅샷 버전 저장소
- DiffEngine: 두 버전 간 레코드/필드 레벨 비교
"""

from .values import FieldValue, ValueKind, values_equal
from .snapshot import (
    CompressionType,
    InMemorySnapshotBackend,
    MongoSnapshotBackend,
    Snapshot,
    SnapshotBackend,
    SnapshotStore,
    StoreSettings,
)
from .diff import (
    ChangeType,
    ComparisonStatistics,
    ComparisonSummary,
    DiffEngine,
    DiffOptions,
    ExportFormat,
    FieldChange,
    RecordChange,
    SnapshotComparison,
)

__all__ = [
    "FieldValue",
    "ValueKind",
    "values_equal",
    "CompressionType",
    "InMemorySnapshotBackend",
    "MongoSnapshotBackend",
    "Snapshot",
    "SnapshotBackend",
    "SnapshotStore",
    "StoreSettings",
    "ChangeType",
    "ComparisonStatistics",
    "ComparisonSummary",
    "DiffEngine",
    "DiffOptions",
    "ExportFormat",
    "FieldChange",
    "RecordChange",
    "SnapshotComparison",
]
