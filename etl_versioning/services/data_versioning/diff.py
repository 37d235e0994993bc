"""
Diff Engine - 스냅샷 비교 엔진

기능:
- 같은 데이터 소스의 두 스냅샷 버전 간 레코드/필드 레벨 비교
- 변경 요약 및 통계 (변경률, 자주 변경된 필드)
- 비교 결과 내보내기 (json, csv, text)

비교는 스냅샷을 변경하지 않으며 공유 상태가 없습니다.
"""

import csv
import io
import json
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Union

from ...core import get_logger
from ...exceptions import MalformedSnapshotError, ValidationError
from .snapshot import Snapshot, SnapshotStore
from .values import FieldValue, values_equal

logger = get_logger(__name__)

KeyField = Union[str, Sequence[str]]

COMPOSITE_KEY_SEPARATOR = "|"
TOP_CHANGED_FIELDS_LIMIT = 10


class ChangeType(str, Enum):
    """변경 타입"""
    ADDED = "added"
    REMOVED = "removed"
    MODIFIED = "modified"
    UNCHANGED = "unchanged"


class ExportFormat(str, Enum):
    JSON = "json"
    CSV = "csv"
    TEXT = "text"


@dataclass
class DiffOptions:
    """비교 옵션"""
    ignore_fields: List[str] = field(default_factory=list)
    case_sensitive: bool = True
    trim_strings: bool = False
    include_unchanged: bool = False
    max_records: Optional[int] = None


@dataclass
class FieldChange:
    """필드 변경 정보"""
    field: str
    old_value: Any
    new_value: Any
    change_type: ChangeType
    value_type: str
    display_old_value: str
    display_new_value: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field": self.field,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "change_type": self.change_type.value,
            "value_type": self.value_type,
            "display_old_value": self.display_old_value,
            "display_new_value": self.display_new_value,
        }


@dataclass
class RecordChange:
    """레코드 변경 정보"""
    key: str
    change_type: ChangeType
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    field_changes: List[FieldChange] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "change_type": self.change_type.value,
            "before": self.before,
            "after": self.after,
            "field_changes": [fc.to_dict() for fc in self.field_changes],
        }


@dataclass
class ComparisonSummary:
    total_records_from: int = 0
    total_records_to: int = 0
    added: int = 0
    removed: int = 0
    modified: int = 0
    unchanged: int = 0
    change_percentage: float = 0.0

    @property
    def total_changes(self) -> int:
        return self.added + self.removed + self.modified

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_records_from": self.total_records_from,
            "total_records_to": self.total_records_to,
            "added": self.added,
            "removed": self.removed,
            "modified": self.modified,
            "unchanged": self.unchanged,
            "change_percentage": round(self.change_percentage, 2),
        }


@dataclass
class ComparisonStatistics:
    total_field_changes: int = 0
    fields_changed: List[str] = field(default_factory=list)
    top_changed_fields: List[Dict[str, Any]] = field(default_factory=list)
    largest_change_key: Optional[str] = None
    average_field_changes_per_record: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_field_changes": self.total_field_changes,
            "fields_changed": list(self.fields_changed),
            "top_changed_fields": [dict(entry) for entry in self.top_changed_fields],
            "largest_change_key": self.largest_change_key,
            "average_field_changes_per_record": round(self.average_field_changes_per_record, 2),
        }


@dataclass
class SnapshotComparison:
    """스냅샷 비교 결과"""
    data_source_id: Optional[str]
    from_snapshot_id: Optional[str]
    to_snapshot_id: Optional[str]
    from_version: Optional[int]
    to_version: Optional[int]
    comparison_key: str
    summary: ComparisonSummary
    changes: List[RecordChange]
    statistics: ComparisonStatistics
    computed_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "data_source_id": self.data_source_id,
            "from_snapshot_id": self.from_snapshot_id,
            "to_snapshot_id": self.to_snapshot_id,
            "from_version": self.from_version,
            "to_version": self.to_version,
            "comparison_key": self.comparison_key,
            "computed_at": self.computed_at.isoformat(),
            "summary": self.summary.to_dict(),
            "changes": [c.to_dict() for c in self.changes],
            "statistics": self.statistics.to_dict(),
        }

    @property
    def has_changes(self) -> bool:
        return self.summary.total_changes > 0


class DiffEngine:
    """
    스냅샷 비교 엔진

    같은 데이터 소스의 두 스냅샷을 key_field 기준으로 매칭하여
    추가/삭제/수정/변경없음을 분류합니다.
    """

    def __init__(self, snapshot_store: SnapshotStore = None):
        """
        Args:
            snapshot_store: 레코드 로드용 저장소 (compare_records만 쓰면 불필요)
        """
        self.snapshot_store = snapshot_store

    # ==================== 스냅샷 비교 ====================

    def compare(
        self,
        from_snapshot: Snapshot,
        to_snapshot: Snapshot,
        key_field: KeyField,
        options: DiffOptions = None,
    ) -> SnapshotComparison:
        """
        두 스냅샷 비교

        Raises:
            ValidationError: 서로 다른 데이터 소스의 스냅샷
            NotFoundError: 스냅샷 데이터 없음
            MalformedSnapshotError: 키 중복/누락
        """
        if from_snapshot.data_source_id != to_snapshot.data_source_id:
            raise ValidationError(
                "to_snapshot",
                f"belongs to '{to_snapshot.data_source_id}', "
                f"expected '{from_snapshot.data_source_id}'",
            )
        if self.snapshot_store is None:
            raise ValidationError("snapshot_store", "required to load snapshot records")

        from_records = self.snapshot_store.get_records(from_snapshot)
        to_records = self.snapshot_store.get_records(to_snapshot)

        comparison = self.compare_records(
            from_records,
            to_records,
            key_field,
            options=options,
            data_source_id=from_snapshot.data_source_id,
        )
        comparison.from_snapshot_id = from_snapshot.snapshot_id
        comparison.to_snapshot_id = to_snapshot.snapshot_id
        comparison.from_version = from_snapshot.version
        comparison.to_version = to_snapshot.version

        logger.info(
            "snapshots_compared",
            data_source_id=from_snapshot.data_source_id,
            from_version=from_snapshot.version,
            to_version=to_snapshot.version,
            added=comparison.summary.added,
            removed=comparison.summary.removed,
            modified=comparison.summary.modified,
        )
        return comparison

    def compare_versions(
        self,
        data_source_id: str,
        from_version: int,
        to_version: int,
        key_field: KeyField,
        options: DiffOptions = None,
    ) -> SnapshotComparison:
        """버전 번호로 비교"""
        if self.snapshot_store is None:
            raise ValidationError("snapshot_store", "required to load snapshot records")
        from_snapshot = self.snapshot_store.get_snapshot(data_source_id, from_version)
        to_snapshot = self.snapshot_store.get_snapshot(data_source_id, to_version)
        return self.compare(from_snapshot, to_snapshot, key_field, options)

    def compare_records(
        self,
        from_records: List[Dict[str, Any]],
        to_records: List[Dict[str, Any]],
        key_field: KeyField,
        options: DiffOptions = None,
        data_source_id: str = None,
    ) -> SnapshotComparison:
        """
        레코드 목록 비교 (순수 계산)

        Args:
            from_records: 이전 레코드
            to_records: 이후 레코드
            key_field: 키 필드 이름 또는 복합 키 필드 목록
            options: 비교 옵션
            data_source_id: 결과에 기록할 소스 ID

        Returns:
            SnapshotComparison
        """
        options = options or DiffOptions()
        key_fields = self._normalize_key_field(key_field)
        source = data_source_id or "records"

        from_map = self._index_by_key(from_records, key_fields, source, "from")
        to_map = self._index_by_key(to_records, key_fields, source, "to")

        summary = ComparisonSummary(
            total_records_from=len(from_map),
            total_records_to=len(to_map),
        )
        changes: List[RecordChange] = []
        field_counter: Counter = Counter()
        total_field_changes = 0
        largest_change_key = None
        largest_change_count = 0

        for key, after in to_map.items():
            before = from_map.get(key)
            if before is None:
                summary.added += 1
                changes.append(RecordChange(key=key, change_type=ChangeType.ADDED, after=after))
                continue

            field_changes = self._compare_fields(before, after, options)
            if not field_changes:
                summary.unchanged += 1
                if options.include_unchanged:
                    changes.append(RecordChange(
                        key=key, change_type=ChangeType.UNCHANGED, before=before, after=after
                    ))
                continue

            summary.modified += 1
            total_field_changes += len(field_changes)
            field_counter.update(fc.field for fc in field_changes)
            if len(field_changes) > largest_change_count:
                largest_change_count = len(field_changes)
                largest_change_key = key
            changes.append(RecordChange(
                key=key,
                change_type=ChangeType.MODIFIED,
                before=before,
                after=after,
                field_changes=field_changes,
            ))

        for key, before in from_map.items():
            if key not in to_map:
                summary.removed += 1
                changes.append(RecordChange(key=key, change_type=ChangeType.REMOVED, before=before))

        denominator = max(summary.total_records_from, summary.total_records_to)
        if denominator:
            summary.change_percentage = summary.total_changes / denominator * 100

        ranked = sorted(field_counter.items(), key=lambda item: (-item[1], item[0]))
        statistics = ComparisonStatistics(
            total_field_changes=total_field_changes,
            fields_changed=sorted(field_counter),
            top_changed_fields=[
                {"field": name, "count": count}
                for name, count in ranked[:TOP_CHANGED_FIELDS_LIMIT]
            ],
            largest_change_key=largest_change_key,
            average_field_changes_per_record=(
                total_field_changes / summary.modified if summary.modified else 0.0
            ),
        )

        if options.max_records is not None:
            changes = changes[:max(options.max_records, 0)]

        return SnapshotComparison(
            data_source_id=data_source_id,
            from_snapshot_id=None,
            to_snapshot_id=None,
            from_version=None,
            to_version=None,
            comparison_key=COMPOSITE_KEY_SEPARATOR.join(key_fields),
            summary=summary,
            changes=changes,
            statistics=statistics,
        )

    # ==================== 내보내기 ====================

    def summary_text(self, comparison: SnapshotComparison) -> str:
        """한 줄 요약"""
        s = comparison.summary
        if not comparison.has_changes:
            return "No changes detected"

        parts = []
        if s.added:
            parts.append(f"{s.added} added")
        if s.removed:
            parts.append(f"{s.removed} removed")
        if s.modified:
            parts.append(f"{s.modified} modified")
        return f"{', '.join(parts)} ({s.change_percentage:.2f}% changed)"

    def to_text(self, comparison: SnapshotComparison) -> str:
        s = comparison.summary
        lines = [
            f"Snapshot comparison: {comparison.data_source_id or '-'} "
            f"v{comparison.from_version} -> v{comparison.to_version}",
            f"Key: {comparison.comparison_key}",
            f"Records: {s.total_records_from} -> {s.total_records_to}",
            f"Added: {s.added}  Removed: {s.removed}  Modified: {s.modified}  "
            f"Unchanged: {s.unchanged}",
            f"Change: {s.change_percentage:.2f}%",
        ]
        if comparison.statistics.top_changed_fields:
            top = ", ".join(
                f"{entry['field']}({entry['count']})"
                for entry in comparison.statistics.top_changed_fields
            )
            lines.append(f"Top changed fields: {top}")

        lines.append("")
        for change in comparison.changes:
            lines.append(f"[{change.change_type.value}] {change.key}")
            for fc in change.field_changes:
                lines.append(f"    {fc.field}: {fc.display_old_value} -> {fc.display_new_value}")
        return "\n".join(lines)

    def to_csv(self, comparison: SnapshotComparison) -> str:
        """레코드/필드 변경을 행 단위 CSV로"""
        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(["key", "change_type", "field", "old_value", "new_value", "value_type"])
        for change in comparison.changes:
            if not change.field_changes:
                writer.writerow([change.key, change.change_type.value, "", "", "", ""])
                continue
            for fc in change.field_changes:
                writer.writerow([
                    change.key,
                    change.change_type.value,
                    fc.field,
                    fc.display_old_value,
                    fc.display_new_value,
                    fc.value_type,
                ])
        return buffer.getvalue()

    def export(self, comparison: SnapshotComparison, format: str = "json") -> str:
        try:
            export_format = ExportFormat(format)
        except ValueError:
            raise ValidationError("format", "must be one of json, csv, text", format)

        if export_format == ExportFormat.CSV:
            return self.to_csv(comparison)
        if export_format == ExportFormat.TEXT:
            return self.to_text(comparison)
        return json.dumps(comparison.to_dict(), default=str, ensure_ascii=False, indent=2)

    # ==================== 내부 헬퍼 ====================

    @staticmethod
    def _normalize_key_field(key_field: KeyField) -> List[str]:
        if isinstance(key_field, str):
            fields = [key_field]
        else:
            fields = list(key_field or [])
        if not fields or any(not isinstance(f, str) or not f.strip() for f in fields):
            raise ValidationError("key_field", "must be a field name or a list of field names", key_field)
        return fields

    @staticmethod
    def _index_by_key(
        records: List[Dict[str, Any]],
        key_fields: List[str],
        data_source_id: str,
        side: str,
    ) -> Dict[str, Dict[str, Any]]:
        """key → record (삽입 순서 유지)"""
        index: Dict[str, Dict[str, Any]] = {}
        duplicates: List[str] = []
        missing = 0

        for record in records:
            parts = []
            for name in key_fields:
                value = FieldValue.of(record.get(name))
                if value.is_empty:
                    break
                parts.append(value.canonical())
            else:
                key = COMPOSITE_KEY_SEPARATOR.join(parts)
                if key in index:
                    duplicates.append(key)
                else:
                    index[key] = record
                continue
            missing += 1

        if missing:
            raise MalformedSnapshotError(
                data_source_id,
                f"{missing} record(s) in '{side}' missing key field "
                f"'{COMPOSITE_KEY_SEPARATOR.join(key_fields)}'",
            )
        if duplicates:
            raise MalformedSnapshotError(
                data_source_id,
                f"duplicate keys in '{side}'",
                keys=duplicates,
            )
        return index

    def _compare_fields(
        self,
        before: Dict[str, Any],
        after: Dict[str, Any],
        options: DiffOptions,
    ) -> List[FieldChange]:
        ignored = set(options.ignore_fields)
        names = list(before)
        names.extend(name for name in after if name not in before)

        changes = []
        for name in names:
            if name in ignored:
                continue
            old_raw, new_raw = before.get(name), after.get(name)
            if values_equal(self._prepare(old_raw, options), self._prepare(new_raw, options)):
                continue

            old_value, new_value = FieldValue.of(old_raw), FieldValue.of(new_raw)
            if old_value.is_empty:
                change_type = ChangeType.ADDED
            elif new_value.is_empty:
                change_type = ChangeType.REMOVED
            else:
                change_type = ChangeType.MODIFIED

            changes.append(FieldChange(
                field=name,
                old_value=old_value.to_plain(),
                new_value=new_value.to_plain(),
                change_type=change_type,
                value_type=new_value.kind.value,
                display_old_value=old_value.display(),
                display_new_value=new_value.display(),
            ))
        return changes

    @staticmethod
    def _prepare(value: Any, options: DiffOptions) -> Any:
        if not isinstance(value, str):
            return value
        if options.trim_strings:
            value = value.strip()
        if not options.case_sensitive:
            value = value.lower()
        return value
