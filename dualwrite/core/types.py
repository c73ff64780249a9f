from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from dualwrite.utils.crypto import fingerprint as _fingerprint
from dualwrite.utils.ids import new_diff_id
from dualwrite.utils.time import now_utc, iso

SEVERITY_INFO = "info"
SEVERITY_WARNING = "warning"
SEVERITY_ERROR = "error"
SEVERITIES = (SEVERITY_INFO, SEVERITY_WARNING, SEVERITY_ERROR)

FULFILLED = "fulfilled"
REJECTED = "rejected"

BACKEND_PRIMARY = "primary"      # legacy
BACKEND_SECONDARY = "secondary"  # new

OP_ADD = "add"
OP_REMOVE = "remove"
OP_REPLACE = "replace"


class _Missing:
    __slots__ = ()

    def __repr__(self) -> str:
        return "<missing>"


MISSING: Any = _Missing()


@dataclass(frozen=True)
class DiffOp:
    op: str
    path: str
    value: Any = MISSING

    def to_dict(self) -> dict:
        d: dict = {"op": self.op, "path": self.path}
        if self.value is not MISSING:
            d["value"] = self.value
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "DiffOp":
        return cls(op=str(d["op"]), path=str(d["path"]), value=d["value"] if "value" in d else MISSING)


@dataclass
class DiffRecord:
    """One persisted comparison between the two backends for a single logical operation."""

    api_endpoint: str
    operation: str
    severity: str
    diff: list[DiffOp]
    primary_result_status: str
    secondary_result_status: str
    authoritative_backend: str = BACKEND_PRIMARY
    primary_error: str | None = None
    secondary_error: str | None = None
    needs_review: bool = False
    payload: Any = None
    id: str = field(default_factory=new_diff_id)
    created_at: datetime = field(default_factory=now_utc)

    @property
    def diff_dicts(self) -> list[dict]:
        return [op.to_dict() for op in self.diff]

    @property
    def fingerprint(self) -> str:
        return _fingerprint(self.diff_dicts)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "apiEndpoint": self.api_endpoint,
            "operation": self.operation,
            "severity": self.severity,
            "diff": self.diff_dicts,
            "fingerprint": self.fingerprint,
            "needsReview": bool(self.needs_review),
            "authoritativeBackend": self.authoritative_backend,
            "primaryResultStatus": self.primary_result_status,
            "secondaryResultStatus": self.secondary_result_status,
            "primaryError": self.primary_error,
            "secondaryError": self.secondary_error,
            "payload": self.payload,
            "createdAt": iso(self.created_at),
        }
