from __future__ import annotations

import copy
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from dualwrite.config import settings
from dualwrite.core.errors import ConfigUnavailable, FlagNotFound
from dualwrite.core.flag_cache import FlagCache
from dualwrite.core.types import BACKEND_PRIMARY, BACKEND_SECONDARY
from dualwrite.database import models
from dualwrite.database.engine import SessionLocal
from dualwrite.database.repo import Repo
from dualwrite.logging_utils import get_logger
from dualwrite.utils.time import iso

logger = get_logger(__name__)

ENABLE_DUAL_WRITE = "enableDualWrite"
ENABLE_SUPABASE_PRIMARY = "enableSupabasePrimary"
_BOOL_KEYS = (ENABLE_DUAL_WRITE, ENABLE_SUPABASE_PRIMARY)


@dataclass(frozen=True)
class FeatureFlagConfig:
    key: str
    value: dict
    updated_at: datetime

    def to_dict(self) -> dict:
        return {"key": self.key, "value": dict(self.value), "updatedAt": iso(self.updated_at)}


@dataclass(frozen=True)
class FeatureFlags:
    """Typed view over a flag config value. Unknown keys are kept in `extras`."""

    enable_dual_write: bool = False
    enable_supabase_primary: bool = False
    extras: dict = field(default_factory=dict)

    @classmethod
    def defaults(cls) -> "FeatureFlags":
        return cls(
            enable_dual_write=bool(settings.FLAG_DEFAULT_ENABLE_DUAL_WRITE),
            enable_supabase_primary=bool(settings.FLAG_DEFAULT_ENABLE_SUPABASE_PRIMARY),
        )

    @classmethod
    def from_value(cls, value: Mapping[str, Any]) -> "FeatureFlags":
        extras = {k: v for k, v in value.items() if k not in _BOOL_KEYS}
        return cls(
            enable_dual_write=bool(value.get(ENABLE_DUAL_WRITE, False)),
            enable_supabase_primary=bool(value.get(ENABLE_SUPABASE_PRIMARY, False)),
            extras=extras,
        )

    def to_value(self) -> dict:
        out = dict(self.extras)
        out[ENABLE_DUAL_WRITE] = bool(self.enable_dual_write)
        out[ENABLE_SUPABASE_PRIMARY] = bool(self.enable_supabase_primary)
        return out

    @property
    def authoritative_backend(self) -> str:
        return BACKEND_SECONDARY if self.enable_supabase_primary else BACKEND_PRIMARY

    @property
    def mode(self) -> str:
        target = "new" if self.enable_supabase_primary else "legacy"
        if self.enable_dual_write:
            return f"dual-write-{target}-authoritative"
        return f"single-write-{target}"


def _validate_value(value: Mapping[str, Any]) -> None:
    if not isinstance(value, Mapping):
        raise TypeError("flag value must be a mapping")
    for k in _BOOL_KEYS:
        if k in value and not isinstance(value[k], bool):
            raise ValueError(f"{k} must be a boolean")
    for k, v in value.items():
        if not isinstance(k, str):
            raise ValueError("flag keys must be strings")
        if v is not None and not isinstance(v, (bool, str, int, float)):
            raise ValueError(f"{k}: flag values must be boolean/string/number")


def _to_config(row: models.DualWriteConfig) -> FeatureFlagConfig:
    return FeatureFlagConfig(key=str(row.key), value=dict(row.value or {}), updated_at=row.updated_at)


def _copy(cfg: FeatureFlagConfig) -> FeatureFlagConfig:
    # callers must never be able to mutate the cached dict
    return FeatureFlagConfig(key=cfg.key, value=copy.deepcopy(cfg.value), updated_at=cfg.updated_at)


class FeatureFlagStore:
    """
    Persistent flag configs (dual_write_config) with a shared TTL cache.

    - get(): fresh cache hit, else DB read; DB failure falls back to a cached value
      no older than max_stale_sec, otherwise ConfigUnavailable.
    - set(): full replace, serialized per process and row-locked in one transaction;
      invalidates the cache and stores the written value (read-after-write).
    - toggle(): read-modify-write over set(); concurrent togglers can lose updates,
      automated toggling must serialize its own sequence.
    """

    def __init__(
        self,
        session_factory: sessionmaker | None = None,
        cache: FlagCache | None = None,
        max_stale_sec: float | None = None,
        default_key: str | None = None,
    ) -> None:
        self._session_factory = session_factory or SessionLocal
        self.cache = cache or FlagCache(ttl_sec=settings.FLAG_CACHE_TTL_SEC)
        self.max_stale_sec = float(settings.FLAG_CACHE_MAX_STALE_SEC if max_stale_sec is None else max_stale_sec)
        self.default_key = default_key or settings.FLAG_CONFIG_KEY
        self._write_lock = threading.Lock()

    def _load(self, key: str) -> FeatureFlagConfig | None:
        with self._session_factory() as s:
            row = Repo(s).dual_write_config.get(key)
            return None if row is None else _to_config(row)

    def get(self, key: str | None = None) -> FeatureFlagConfig:
        key = key or self.default_key

        cached = self.cache.get_fresh(key)
        if cached is not None:
            return _copy(cached)

        version = self.cache.version(key)
        try:
            cfg = self._load(key)
        except SQLAlchemyError as e:
            stale = self.cache.get_within(key, self.max_stale_sec)
            if stale is not None:
                logger.warning("[DUAL-WRITE] flag store unreachable, serving cached %s (age %.1fs): %r",
                               key, self.cache.age_of(key) or 0.0, e)
                return _copy(stale)
            raise ConfigUnavailable(f"flag store unreachable and no usable cache for {key}") from e

        if cfg is None:
            raise FlagNotFound(key)

        # a set() that committed while we were loading wins; our row may predate it
        self.cache.put_if_version(key, cfg, version)
        return _copy(cfg)

    def set(self, key: str | None, value: Mapping[str, Any]) -> FeatureFlagConfig:
        key = key or self.default_key
        _validate_value(value)

        with self._write_lock:
            self.cache.invalidate(key)
            try:
                with self._session_factory() as s:
                    repo = Repo(s)
                    row = repo.dual_write_config.upsert(key, dict(value))
                    repo.system_events.write_event(
                        event_type="DUAL_WRITE_FLAGS_SET",
                        correlation_id=key,
                        severity="INFO",
                        payload={"key": key, "value": dict(value)},
                    )
                    s.commit()
                    cfg = _to_config(row)
            except SQLAlchemyError as e:
                raise ConfigUnavailable(f"failed to write flag config {key}") from e
            self.cache.put(key, cfg)

        logger.info("[DUAL-WRITE] flags %s set: %s", key, cfg.value)
        return _copy(cfg)

    def toggle(self, key: str | None, patch: Mapping[str, Any]) -> FeatureFlagConfig:
        key = key or self.default_key
        try:
            current = self._load(key)
        except SQLAlchemyError as e:
            raise ConfigUnavailable(f"flag store unreachable for {key}") from e
        base = current.value if current is not None else FeatureFlags.defaults().to_value()
        merged = {**base, **dict(patch)}
        return self.set(key, merged)

    def list(self) -> list[FeatureFlagConfig]:
        try:
            with self._session_factory() as s:
                return [_to_config(r) for r in Repo(s).dual_write_config.list_all()]
        except SQLAlchemyError as e:
            raise ConfigUnavailable("flag store unreachable") from e

    def seed_defaults(self, key: str | None = None, value: Mapping[str, Any] | None = None) -> tuple[FeatureFlagConfig, bool]:
        """Create the flag row on first deploy; an existing row is left untouched."""
        key = key or self.default_key
        seed = dict(value) if value is not None else FeatureFlags.defaults().to_value()
        _validate_value(seed)

        with self._write_lock:
            with self._session_factory() as s:
                row, created = Repo(s).dual_write_config.insert_if_absent(key, seed)
                s.commit()
                cfg = _to_config(row)
            if created:
                self.cache.invalidate(key)
                logger.info("[DUAL-WRITE] seeded flags %s: %s", key, cfg.value)
        return _copy(cfg), created

    def flags(self, key: str | None = None) -> FeatureFlags:
        """Typed flags; a missing row means defaults. ConfigUnavailable propagates."""
        try:
            return FeatureFlags.from_value(self.get(key).value)
        except FlagNotFound:
            return FeatureFlags.defaults()


def apply_toggle(
    store: FeatureFlagStore,
    dual_write: str | bool | None = None,
    primary: str | None = None,
    key: str | None = None,
) -> FeatureFlagConfig:
    """
    Operator control surface: {dualWrite: on|off, primary: legacy|new} -> store write.
    Omitted fields keep their current value.
    """
    patch: dict[str, Any] = {}

    if dual_write is not None:
        if isinstance(dual_write, bool):
            patch[ENABLE_DUAL_WRITE] = dual_write
        else:
            v = str(dual_write).strip().lower()
            if v not in {"on", "off"}:
                raise ValueError("dualWrite must be 'on' or 'off'")
            patch[ENABLE_DUAL_WRITE] = v == "on"

    if primary is not None:
        v = str(primary).strip().lower()
        if v not in {"legacy", "new"}:
            raise ValueError("primary must be 'legacy' or 'new'")
        patch[ENABLE_SUPABASE_PRIMARY] = v == "new"

    if not patch:
        raise ValueError("nothing to toggle")

    return store.toggle(key, patch)
