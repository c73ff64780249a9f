from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Body, Depends, HTTPException, Query

from dualwrite.core.errors import ConfigUnavailable, FlagNotFound
from dualwrite.core.feature_flags import FeatureFlags, FeatureFlagStore, apply_toggle
from dualwrite.core.recorder import DiffRecorder
from dualwrite.core.types import SEVERITIES, SEVERITY_INFO
from dualwrite.utils.time import now_utc_str, to_utc


router = APIRouter()

_flag_store: FeatureFlagStore | None = None
_recorder: DiffRecorder | None = None


def get_flag_store() -> FeatureFlagStore:
    global _flag_store
    if _flag_store is None:
        _flag_store = FeatureFlagStore()
    return _flag_store


def get_recorder() -> DiffRecorder:
    global _recorder
    if _recorder is None:
        _recorder = DiffRecorder()
    return _recorder


def _parse_ts(v: str | None, name: str) -> datetime | None:
    """ISO-8601; naive timestamps are taken as UTC."""
    if not v:
        return None
    try:
        return to_utc(datetime.fromisoformat(v.strip().replace("Z", "+00:00")))
    except ValueError:
        raise HTTPException(status_code=400, detail=f"{name} must be an ISO-8601 timestamp")


def _flags_out(store: FeatureFlagStore, key: str | None) -> dict:
    cfg = store.get(key)
    flags = FeatureFlags.from_value(cfg.value)
    return {
        **cfg.to_dict(),
        "mode": flags.mode,
        "authoritativeBackend": flags.authoritative_backend,
    }


@router.get("/health")
def health() -> dict:
    return {"ok": True, "time": now_utc_str()}


@router.get("/admin/dual_write/flags")
def get_flags(key: str | None = None, store: FeatureFlagStore = Depends(get_flag_store)) -> dict:
    try:
        return _flags_out(store, key)
    except FlagNotFound as e:
        raise HTTPException(status_code=404, detail=f"flag config not found: {e.key}")
    except ConfigUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.put("/admin/dual_write/flags")
def toggle_flags(payload: dict = Body(...), store: FeatureFlagStore = Depends(get_flag_store)) -> dict:
    """
    Operator toggle.

    Body: {"dualWrite": "on"|"off", "primary": "legacy"|"new", "key": optional}
    Omitted fields keep their current value.
    """
    key = payload.get("key")
    try:
        cfg = apply_toggle(store, dual_write=payload.get("dualWrite"), primary=payload.get("primary"), key=key)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ConfigUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
    flags = FeatureFlags.from_value(cfg.value)
    return {**cfg.to_dict(), "mode": flags.mode, "authoritativeBackend": flags.authoritative_backend}


@router.patch("/admin/dual_write/flags")
def patch_flags(payload: dict = Body(...), store: FeatureFlagStore = Depends(get_flag_store)) -> dict:
    """Raw patch merged into the stored value: {"key": optional, "value": {...}}."""
    key = payload.get("key")
    patch = payload.get("value")
    if not isinstance(patch, dict) or not patch:
        raise HTTPException(status_code=400, detail="value must be a non-empty object")
    try:
        cfg = store.toggle(key, patch)
    except (TypeError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ConfigUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
    return cfg.to_dict()


@router.get("/admin/dual_write/diffs")
def list_diffs(
    endpoint: str | None = None,
    severity: str | None = None,
    start: str | None = None,
    end: str | None = None,
    limit: int = Query(200, ge=1, le=1000),
    recorder: DiffRecorder = Depends(get_recorder),
) -> dict:
    if severity and severity.strip().lower() not in SEVERITIES:
        raise HTTPException(status_code=400, detail=f"severity must be one of {list(SEVERITIES)}")

    start_dt = _parse_ts(start, "start")
    end_dt = _parse_ts(end, "end")

    if endpoint:
        items = recorder.list_by_endpoint(endpoint, since=start_dt, until=end_dt, severity=severity, limit=limit)
    else:
        items = recorder.list_by_time_range(start_dt, end_dt, severity=severity, limit=limit)

    return {"count": len(items), "items": [r.to_dict() for r in items]}


@router.get("/admin/dual_write/diffs/summary")
def diffs_summary(hours: float = Query(24, gt=0, le=24 * 365), recorder: DiffRecorder = Depends(get_recorder)) -> dict:
    return recorder.summary(hours=hours)


@router.get("/admin/dual_write/diffs/{diff_id}")
def get_diff(diff_id: str, recorder: DiffRecorder = Depends(get_recorder)) -> dict:
    rec = recorder.get(diff_id)
    if rec is None:
        raise HTTPException(status_code=404, detail="diff not found")
    return rec.to_dict()


@router.post("/admin/dual_write/diffs/cleanup")
def cleanup_diffs(payload: dict = Body(default={}), recorder: DiffRecorder = Depends(get_recorder)) -> dict:
    """Body: {"retentionDays": 30, "severity": "info" | ["info", "warning"]} (both optional)."""
    days = payload.get("retentionDays")
    severity = payload.get("severity") or SEVERITY_INFO
    try:
        deleted = recorder.cleanup(days, severity=severity)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"deleted": deleted, "severity": severity, "retentionDays": days}
