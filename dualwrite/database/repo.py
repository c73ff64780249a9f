from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from sqlalchemy import select, delete, func
from sqlalchemy.orm import Session

from dualwrite.database import models
from dualwrite.utils.time import now_utc


@dataclass
class SystemEventsRepo:
    s: Session

    def write_event(
        self,
        event_type: str,
        correlation_id: str | None,
        severity: str,
        payload: dict,
        endpoint: str | None = None,
    ) -> None:
        self.s.add(
            models.SystemEvent(
                event_type=event_type,
                severity=severity,
                correlation_id=correlation_id,
                endpoint=endpoint,
                payload=payload,
                time=now_utc(),
            )
        )

    def recent(self, event_type: str | None = None, limit: int = 50) -> list[models.SystemEvent]:
        q = select(models.SystemEvent)
        if event_type:
            q = q.where(models.SystemEvent.event_type == event_type)
        q = q.order_by(models.SystemEvent.id.desc()).limit(int(limit))
        return list(self.s.execute(q).scalars().all())


@dataclass
class DualWriteConfigRepo:
    s: Session

    def get(self, key: str) -> models.DualWriteConfig | None:
        return self.s.execute(
            select(models.DualWriteConfig).where(models.DualWriteConfig.key == key)
        ).scalar_one_or_none()

    def get_for_update(self, key: str) -> models.DualWriteConfig | None:
        # Row lock on Postgres; SQLite serializes writers at the file level anyway.
        return self.s.execute(
            select(models.DualWriteConfig).where(models.DualWriteConfig.key == key).with_for_update()
        ).scalar_one_or_none()

    def upsert(self, key: str, value: dict) -> models.DualWriteConfig:
        row = self.get_for_update(key)
        now = now_utc()
        if row is None:
            row = models.DualWriteConfig(key=key, value=dict(value), updated_at=now)
            self.s.add(row)
        else:
            # full replace, never a merge
            row.value = dict(value)
            row.updated_at = now
        self.s.flush()
        return row

    def insert_if_absent(self, key: str, value: dict) -> tuple[models.DualWriteConfig, bool]:
        row = self.get_for_update(key)
        if row is not None:
            return row, False
        row = models.DualWriteConfig(key=key, value=dict(value), updated_at=now_utc())
        self.s.add(row)
        self.s.flush()
        return row, True

    def list_all(self) -> list[models.DualWriteConfig]:
        return list(
            self.s.execute(select(models.DualWriteConfig).order_by(models.DualWriteConfig.key.asc())).scalars().all()
        )


@dataclass
class DiffsRepo:
    s: Session

    def add(
        self,
        *,
        id: str,
        api_endpoint: str,
        operation: str,
        severity: str,
        diff: list[dict],
        fingerprint: str,
        needs_review: bool,
        authoritative_backend: str,
        primary_result_status: str,
        secondary_result_status: str,
        primary_error: str | None,
        secondary_error: str | None,
        payload,
        created_at: datetime,
    ) -> models.DualWriteDiff:
        row = models.DualWriteDiff(
            id=id,
            api_endpoint=api_endpoint,
            operation=operation,
            severity=severity,
            diff=diff,
            fingerprint=fingerprint,
            needs_review=bool(needs_review),
            authoritative_backend=authoritative_backend,
            primary_result_status=primary_result_status,
            secondary_result_status=secondary_result_status,
            primary_error=primary_error[:500] if primary_error else None,
            secondary_error=secondary_error[:500] if secondary_error else None,
            payload=payload,
            created_at=created_at,
        )
        self.s.add(row)
        return row

    def get(self, diff_id: str) -> models.DualWriteDiff | None:
        return self.s.get(models.DualWriteDiff, diff_id)

    def list_between(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        severity: str | None = None,
        limit: int = 200,
    ) -> list[models.DualWriteDiff]:
        q = select(models.DualWriteDiff)
        if start is not None:
            q = q.where(models.DualWriteDiff.created_at >= start)
        if end is not None:
            q = q.where(models.DualWriteDiff.created_at < end)
        if severity:
            q = q.where(models.DualWriteDiff.severity == severity)
        q = q.order_by(models.DualWriteDiff.created_at.desc(), models.DualWriteDiff.id.asc()).limit(int(limit))
        return list(self.s.execute(q).scalars().all())

    def list_by_endpoint(
        self,
        api_endpoint: str,
        since: datetime | None = None,
        limit: int = 200,
        until: datetime | None = None,
        severity: str | None = None,
    ) -> list[models.DualWriteDiff]:
        q = select(models.DualWriteDiff).where(models.DualWriteDiff.api_endpoint == api_endpoint)
        if since is not None:
            q = q.where(models.DualWriteDiff.created_at >= since)
        if until is not None:
            q = q.where(models.DualWriteDiff.created_at < until)
        if severity:
            q = q.where(models.DualWriteDiff.severity == severity)
        q = q.order_by(models.DualWriteDiff.created_at.desc(), models.DualWriteDiff.id.asc()).limit(int(limit))
        return list(self.s.execute(q).scalars().all())

    def delete_older_than(self, cutoff: datetime, severities: Iterable[str]) -> int:
        sev = [str(x) for x in severities]
        if not sev:
            return 0
        res = self.s.execute(
            delete(models.DualWriteDiff)
            .where(
                models.DualWriteDiff.created_at < cutoff,
                models.DualWriteDiff.severity.in_(sev),
            )
            .execution_options(synchronize_session=False)
        )
        return int(res.rowcount or 0)

    def counts_by_endpoint_severity(self, since: datetime) -> list[tuple[str, str, int]]:
        rows = self.s.execute(
            select(
                models.DualWriteDiff.api_endpoint,
                models.DualWriteDiff.severity,
                func.count(models.DualWriteDiff.id),
            )
            .where(models.DualWriteDiff.created_at >= since)
            .group_by(models.DualWriteDiff.api_endpoint, models.DualWriteDiff.severity)
            .order_by(models.DualWriteDiff.api_endpoint.asc())
        ).all()
        return [(str(ep), str(sev), int(cnt)) for ep, sev, cnt in rows]


@dataclass
class Repo:
    s: Session

    @property
    def system_events(self) -> SystemEventsRepo:
        return SystemEventsRepo(self.s)

    @property
    def dual_write_config(self) -> DualWriteConfigRepo:
        return DualWriteConfigRepo(self.s)

    @property
    def diffs(self) -> DiffsRepo:
        return DiffsRepo(self.s)
