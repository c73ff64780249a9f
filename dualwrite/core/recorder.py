from __future__ import annotations

import json
from datetime import datetime
from typing import Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from dualwrite.config import settings
from dualwrite.core.errors import DiffPersistenceFailed
from dualwrite.core.types import (
    DiffOp,
    DiffRecord,
    SEVERITIES,
    SEVERITY_ERROR,
    SEVERITY_INFO,
    SEVERITY_WARNING,
)
from dualwrite.database import models
from dualwrite.database.engine import SessionLocal
from dualwrite.database.repo import Repo
from dualwrite.logging_utils import get_logger
from dualwrite.utils.crypto import fingerprint
from dualwrite.utils.time import days_ago, hours_ago, now_utc

logger = get_logger(__name__)


def _severities(severity: str | Iterable[str]) -> list[str]:
    items = [severity] if isinstance(severity, str) else list(severity)
    out = []
    for s in items:
        s = str(s).strip().lower()
        if s not in SEVERITIES:
            raise ValueError(f"unknown severity: {s}")
        if s not in out:
            out.append(s)
    return out


def _json_safe(value):
    try:
        json.dumps(value)
        return value
    except (TypeError, ValueError):
        return repr(value)[:500]


def _persistable_ops(ops: list[dict]) -> list[dict]:
    return [{**d, "value": _json_safe(d["value"])} if "value" in d else d for d in ops]


def row_to_record(row: models.DualWriteDiff) -> DiffRecord:
    return DiffRecord(
        id=row.id,
        api_endpoint=row.api_endpoint,
        operation=row.operation,
        severity=row.severity,
        diff=[DiffOp.from_dict(d) for d in (row.diff or [])],
        primary_result_status=row.primary_result_status,
        secondary_result_status=row.secondary_result_status,
        authoritative_backend=row.authoritative_backend,
        primary_error=row.primary_error,
        secondary_error=row.secondary_error,
        needs_review=bool(row.needs_review),
        payload=row.payload,
        created_at=row.created_at,
    )


class DiffRecorder:
    """
    Persistence for DiffRecords (dual_write_diffs).

    record() is best-effort: it never raises into the orchestrator path.
    cleanup() only deletes the severities it is asked for (info by default).
    """

    def __init__(self, session_factory: sessionmaker | None = None, store_payload: bool | None = None) -> None:
        self._session_factory = session_factory or SessionLocal
        self.store_payload = bool(settings.DIFF_STORE_PAYLOAD if store_payload is None else store_payload)

    def record_strict(self, rec: DiffRecord) -> None:
        try:
            ops = _persistable_ops(rec.diff_dicts)
            with self._session_factory() as s:
                Repo(s).diffs.add(
                    id=rec.id,
                    api_endpoint=rec.api_endpoint,
                    operation=rec.operation,
                    severity=rec.severity,
                    diff=ops,
                    fingerprint=fingerprint(ops),
                    needs_review=rec.needs_review,
                    authoritative_backend=rec.authoritative_backend,
                    primary_result_status=rec.primary_result_status,
                    secondary_result_status=rec.secondary_result_status,
                    primary_error=rec.primary_error,
                    secondary_error=rec.secondary_error,
                    payload=_json_safe(rec.payload) if self.store_payload else None,
                    created_at=rec.created_at,
                )
                s.commit()
        except (SQLAlchemyError, TypeError, ValueError) as e:
            # TypeError/ValueError: diff values the JSON column cannot serialize
            raise DiffPersistenceFailed(f"failed to persist diff {rec.id} for {rec.api_endpoint}") from e

    def record(self, rec: DiffRecord) -> bool:
        try:
            self.record_strict(rec)
        except DiffPersistenceFailed as e:
            logger.error("[DUAL-WRITE] %s (dropped): %r", e, e.__cause__)
            return False
        if rec.severity != SEVERITY_INFO:
            logger.warning(
                "[DUAL-WRITE] %s %s.%s: %d op(s), primary=%s secondary=%s",
                rec.severity.upper(),
                rec.api_endpoint,
                rec.operation,
                len(rec.diff),
                rec.primary_result_status,
                rec.secondary_result_status,
            )
        return True

    def write_event(self, event_type: str, severity: str, payload: dict, endpoint: str | None = None) -> bool:
        """Best-effort system_events row (alerts that have no DiffRecord of their own)."""
        try:
            with self._session_factory() as s:
                Repo(s).system_events.write_event(
                    event_type=event_type,
                    correlation_id=None,
                    severity=severity,
                    payload=_json_safe(payload),
                    endpoint=endpoint,
                )
                s.commit()
        except SQLAlchemyError as e:
            logger.error("[DUAL-WRITE] failed to write %s event: %r", event_type, e)
            return False
        return True

    def cleanup(self, retention_days: int | float | None = None, severity: str | Iterable[str] = SEVERITY_INFO) -> int:
        days = settings.DIFF_RETENTION_DAYS if retention_days is None else retention_days
        if float(days) < 0:
            raise ValueError("retention_days must be >= 0")
        sev = _severities(severity)
        cutoff = days_ago(days)
        with self._session_factory() as s:
            deleted = Repo(s).diffs.delete_older_than(cutoff, sev)
            s.commit()
        logger.info("[DUAL-WRITE] cleanup: deleted %d %s record(s) older than %s days", deleted, "/".join(sev), days)
        return deleted

    def apply_retention_policy(self) -> dict[str, int]:
        policy: dict[str, int | None] = {
            SEVERITY_INFO: settings.DIFF_RETENTION_DAYS,
            SEVERITY_WARNING: settings.DIFF_RETENTION_WARNING_DAYS,
            SEVERITY_ERROR: settings.DIFF_RETENTION_ERROR_DAYS,
        }
        out: dict[str, int] = {}
        for sev, days in policy.items():
            if days is None:
                continue
            out[sev] = self.cleanup(days, severity=sev)

        with self._session_factory() as s:
            Repo(s).system_events.write_event(
                event_type="DIFF_RETENTION_RUN",
                correlation_id=None,
                severity="INFO",
                payload={"deleted": out, "policy": policy},
            )
            s.commit()
        return out

    def get(self, diff_id: str) -> DiffRecord | None:
        with self._session_factory() as s:
            row = Repo(s).diffs.get(diff_id)
            return None if row is None else row_to_record(row)

    def list_by_time_range(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        severity: str | None = None,
        limit: int = 200,
    ) -> list[DiffRecord]:
        if severity:
            severity = _severities(severity)[0]
        with self._session_factory() as s:
            return [row_to_record(r) for r in Repo(s).diffs.list_between(start, end, severity, limit)]

    def list_by_endpoint(
        self,
        api_endpoint: str,
        since: datetime | None = None,
        limit: int = 200,
        until: datetime | None = None,
        severity: str | None = None,
    ) -> list[DiffRecord]:
        if severity:
            severity = _severities(severity)[0]
        with self._session_factory() as s:
            rows = Repo(s).diffs.list_by_endpoint(api_endpoint, since, limit, until=until, severity=severity)
            return [row_to_record(r) for r in rows]

    def summary(self, hours: int | float = 24) -> dict:
        """Diff counts by severity over the last N hours, grouped by endpoint."""
        since = hours_ago(hours)
        with self._session_factory() as s:
            rows = Repo(s).diffs.counts_by_endpoint_severity(since)

        endpoints: dict[str, dict[str, int]] = {}
        totals = {sev: 0 for sev in SEVERITIES}
        for ep, sev, cnt in rows:
            bucket = endpoints.setdefault(ep, {x: 0 for x in SEVERITIES})
            bucket[sev] = bucket.get(sev, 0) + cnt
            totals[sev] = totals.get(sev, 0) + cnt

        for bucket in endpoints.values():
            bucket["total"] = sum(bucket[x] for x in SEVERITIES)
        totals["total"] = sum(totals[x] for x in SEVERITIES)

        return {
            "since": since.isoformat(),
            "generated_at": now_utc().isoformat(),
            "hours": hours,
            "endpoints": endpoints,
            "totals": totals,
        }
