from __future__ import annotations

import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Iterable, Mapping, Sequence

from dualwrite.core.classifier import DiffClassifier
from dualwrite.core.diff_engine import join_path, snapshot
from dualwrite.core.recorder import DiffRecorder
from dualwrite.core.types import (
    BACKEND_PRIMARY,
    DiffOp,
    DiffRecord,
    FULFILLED,
    OP_ADD,
    OP_REMOVE,
    OP_REPLACE,
)
from dualwrite.logging_utils import get_logger

logger = get_logger(__name__)

IGNORE_FIELDS = ("createdAt", "updatedAt", "deletedAt", "created_at", "updated_at", "deleted_at")
EXISTS_FIELD = "_exists"

_CAMEL_RE = re.compile(r"_([a-z0-9])")
_SNAKE_RE = re.compile(r"(?<!^)(?=[A-Z])")


def to_camel(name: str) -> str:
    return _CAMEL_RE.sub(lambda m: m.group(1).upper(), name)


def to_snake(name: str) -> str:
    return _SNAKE_RE.sub("_", name).lower()


def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float, Decimal)) and not isinstance(v, bool)


def values_match(a: Any, b: Any, tolerance: float) -> bool:
    if isinstance(a, bool) or isinstance(b, bool):
        return type(a) is type(b) and a == b
    if _is_number(a) and _is_number(b):
        return abs(float(a) - float(b)) < tolerance
    return a == b


@dataclass
class ReconcileMismatch:
    id: Any
    field: str
    primary_value: Any
    secondary_value: Any

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "field": self.field,
            "primaryValue": self.primary_value,
            "secondaryValue": self.secondary_value,
        }


@dataclass
class ReconcileResult:
    entity: str
    total_records: int
    details: list[ReconcileMismatch] = field(default_factory=list)
    record_id: str | None = None

    @property
    def mismatches(self) -> int:
        return len(self.details)

    @property
    def consistent(self) -> bool:
        return not self.details

    def to_dict(self) -> dict:
        return {
            "entity": self.entity,
            "totalRecords": self.total_records,
            "mismatches": self.mismatches,
            "details": [d.to_dict() for d in self.details],
            "recordId": self.record_id,
        }


class Reconciler:
    """
    Batch comparison of one entity's rows as stored by the legacy (primary) and new (secondary) backend.

    Secondary rows use snake_case columns; primary rows may use camelCase attributes for the same
    field. Timestamps are ignored, numbers within `tolerance` are equal. A primary row with no
    counterpart reports field `_exists` (True/False); so does a secondary-only row (False/True).
    """

    def __init__(
        self,
        recorder: DiffRecorder | None = None,
        classifier: DiffClassifier | None = None,
        tolerance: float = 0.01,
        ignore_fields: Iterable[str] = IGNORE_FIELDS,
    ) -> None:
        self.recorder = recorder
        self.classifier = classifier or DiffClassifier()
        self.tolerance = float(tolerance)
        self.ignore_fields = set(ignore_fields)

    def _lookup(self, row: Mapping[str, Any], name: str) -> Any:
        if name in row:
            return row[name]
        return row.get(to_camel(name))

    def _fields(self, p_row: Mapping[str, Any], s_row: Mapping[str, Any]) -> list[str]:
        names = {to_snake(k) for k in p_row} | {to_snake(k) for k in s_row}
        return sorted(n for n in names if n not in self.ignore_fields and to_camel(n) not in self.ignore_fields)

    def reconcile(
        self,
        entity: str,
        primary_rows: Sequence[Mapping[str, Any]],
        secondary_rows: Sequence[Mapping[str, Any]],
        key: str = "id",
        fields: Sequence[str] | None = None,
        record: bool = False,
    ) -> ReconcileResult:
        by_id = {}
        for row in secondary_rows:
            by_id[self._lookup(row, key)] = row

        result = ReconcileResult(entity=entity, total_records=len(primary_rows))
        seen = set()

        for p_row in primary_rows:
            ident = self._lookup(p_row, key)
            seen.add(ident)
            s_row = by_id.get(ident)
            if s_row is None:
                result.details.append(ReconcileMismatch(ident, EXISTS_FIELD, True, False))
                continue

            for name in (fields if fields is not None else self._fields(p_row, s_row)):
                if name in self.ignore_fields:
                    continue
                pv = self._lookup(p_row, name)
                sv = self._lookup(s_row, name)
                if not values_match(pv, sv, self.tolerance):
                    result.details.append(ReconcileMismatch(ident, name, pv, sv))

        for ident in by_id:
            if ident not in seen:
                result.details.append(ReconcileMismatch(ident, EXISTS_FIELD, False, True))

        if result.details:
            logger.warning("[DUAL-WRITE] reconcile %s: %d mismatch(es) over %d record(s)",
                           entity, result.mismatches, result.total_records)
        else:
            logger.info("[DUAL-WRITE] reconcile %s: %d record(s) consistent", entity, result.total_records)

        if record and self.recorder is not None:
            rec = self.to_record(result, by_id)
            if self.recorder.record(rec):
                result.record_id = rec.id
        return result

    def to_record(self, result: ReconcileResult, secondary_by_id: Mapping[Any, Mapping[str, Any]] | None = None) -> DiffRecord:
        secondary_by_id = secondary_by_id or {}
        ops: list[DiffOp] = []
        for d in result.details:
            row_path = join_path("", d.id)
            if d.field != EXISTS_FIELD:
                ops.append(DiffOp(OP_REPLACE, join_path(row_path, d.field), snapshot(d.secondary_value)))
            elif d.primary_value:
                ops.append(DiffOp(OP_REMOVE, row_path))
            else:
                ops.append(DiffOp(OP_ADD, row_path, snapshot(secondary_by_id.get(d.id))))

        endpoint = f"reconcile.{result.entity}"
        return DiffRecord(
            api_endpoint=endpoint,
            operation="reconcile",
            severity=self.classifier.classify(endpoint, ops),
            diff=ops,
            primary_result_status=FULFILLED,
            secondary_result_status=FULFILLED,
            authoritative_backend=BACKEND_PRIMARY,
            payload={"totalRecords": result.total_records, "mismatches": result.mismatches},
        )
