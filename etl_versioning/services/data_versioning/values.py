"""
Field Values - 레코드 필드 값 분류

레코드 필드 값을 닫힌 타입 집합으로 분류하고,
비교/키 생성/표시용 문자열을 제공합니다.
"""

import json
import math
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping, Optional


class ValueKind(str, Enum):
    """필드 값 타입"""
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    NULL = "null"
    OBJECT = "object"
    ARRAY = "array"


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=str)
    return str(value)


def _format_number(value: Any) -> str:
    if isinstance(value, Decimal):
        value = float(value) if value != value.to_integral_value() else int(value)
    if isinstance(value, float):
        if math.isfinite(value) and value.is_integer():
            return str(int(value))
        return repr(value)
    return str(value)


@dataclass(frozen=True)
class FieldValue:
    """분류된 필드 값"""
    kind: ValueKind
    raw: Any = None

    @classmethod
    def of(cls, value: Any) -> "FieldValue":
        if isinstance(value, FieldValue):
            return value
        if value is None:
            return cls(ValueKind.NULL, None)
        # bool is a subclass of int
        if isinstance(value, bool):
            return cls(ValueKind.BOOLEAN, value)
        if isinstance(value, (int, float, Decimal)):
            return cls(ValueKind.NUMBER, value)
        if isinstance(value, str):
            return cls(ValueKind.STRING, value)
        if isinstance(value, Mapping):
            return cls(ValueKind.OBJECT, dict(value))
        if isinstance(value, (list, tuple, set, frozenset)):
            return cls(ValueKind.ARRAY, list(value))
        if isinstance(value, (datetime, date)):
            return cls(ValueKind.STRING, value.isoformat())
        return cls(ValueKind.STRING, str(value))

    @property
    def is_empty(self) -> bool:
        """null 또는 빈 문자열"""
        return self.kind == ValueKind.NULL or (self.kind == ValueKind.STRING and self.raw == "")

    @property
    def numeric(self) -> Optional[float]:
        """숫자로 해석 가능한 경우 float 값"""
        if self.kind == ValueKind.NUMBER:
            return float(self.raw)
        if self.kind == ValueKind.STRING:
            text = self.raw.strip()
            if not text:
                return None
            try:
                number = float(text)
            except ValueError:
                return None
            return number if math.isfinite(number) else None
        return None

    def canonical(self) -> str:
        """동등성 비교 및 복합 키 생성용 정규 문자열"""
        if self.kind == ValueKind.NULL:
            return ""
        if self.kind == ValueKind.BOOLEAN:
            return "true" if self.raw else "false"
        if self.kind == ValueKind.NUMBER:
            return _format_number(self.raw)
        if self.kind in (ValueKind.OBJECT, ValueKind.ARRAY):
            return json.dumps(self.raw, sort_keys=True, separators=(",", ":"),
                              default=_json_default, ensure_ascii=False)
        return self.raw

    def display(self) -> str:
        """UI 표시용 문자열"""
        if self.kind == ValueKind.NULL:
            return "null"
        if self.kind == ValueKind.ARRAY:
            return f"[{len(self.raw)} items]"
        if self.kind == ValueKind.OBJECT:
            return json.dumps(self.raw, default=_json_default, ensure_ascii=False)
        return self.canonical()

    def to_plain(self) -> Any:
        """JSON 직렬화 가능한 원래 값"""
        if self.kind == ValueKind.NUMBER and isinstance(self.raw, Decimal):
            return float(self.raw)
        if self.kind in (ValueKind.OBJECT, ValueKind.ARRAY):
            return json.loads(json.dumps(self.raw, default=_json_default))
        return self.raw


def values_equal(a: Any, b: Any) -> bool:
    """
    두 필드 값의 동등성

    - 둘 다 비어 있으면(null, 누락, 빈 문자열) 같음
    - 정규 문자열이 같으면 같음
    - 둘 다 숫자로 해석되고 수치가 같으면 같음
    """
    left, right = FieldValue.of(a), FieldValue.of(b)

    if left.is_empty and right.is_empty:
        return True
    if left.is_empty or right.is_empty:
        return False
    if left.canonical() == right.canonical():
        return True

    left_num, right_num = left.numeric, right.numeric
    if left_num is not None and right_num is not None:
        return left_num == right_num
    return False
