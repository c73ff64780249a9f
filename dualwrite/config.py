from __future__ import annotations

import json

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # --- Runtime / env ---
    ENV: str = "prod"
    LOG_LEVEL: str = "INFO"

    # Reverse proxy prefix for the operator API (empty = mounted at /)
    API_ROOT_PATH: str = ""

    # --- Database (flag + diff persistence) ---
    DATABASE_URL: str = "sqlite:///./data/dualwrite.sqlite3"
    # Upper bound for a single flag/diff statement. SQLite: busy_timeout, Postgres: statement_timeout.
    DB_STATEMENT_TIMEOUT_MS: int = 5000

    # --- Feature flags ---
    FLAG_CONFIG_KEY: str = "dual_write_feature_flags"
    # Fresh window: cached flags younger than this are served without a DB read.
    FLAG_CACHE_TTL_SEC: float = 10.0
    # Fallback window: on DB failure, cached flags up to this age are still served.
    FLAG_CACHE_MAX_STALE_SEC: float = 60.0
    FLAG_DEFAULT_ENABLE_DUAL_WRITE: bool = False
    FLAG_DEFAULT_ENABLE_SUPABASE_PRIMARY: bool = False

    # --- Orchestrator ---
    BACKEND_CALL_TIMEOUT_SEC: float = 10.0
    # Operations that only exist on the new backend (RPC-only); never compared.
    SECONDARY_ONLY_OPERATIONS: str = ""

    # --- Diff engine / classifier ---
    DIFF_MAX_DEPTH: int = 64
    DIFF_STORE_PAYLOAD: bool = True
    # {"budget.recordSpending": {"critical": ["id", "amount"], "volatile": ["updatedAt"], "required": []}, "*": {...}}
    CLASSIFIER_RULES_JSON: str = "{}"

    # --- Background comparisons ---
    BACKGROUND_MAX_LIFETIME_SEC: float = 30.0
    BACKGROUND_MAX_PENDING: int = 1000

    # --- Retention ---
    DIFF_RETENTION_DAYS: int = 30
    # None = keep forever
    DIFF_RETENTION_WARNING_DAYS: int | None = None
    DIFF_RETENTION_ERROR_DAYS: int | None = None

    # Retention loop is optional for API-only deployments/testing.
    START_RETENTION_JOB: bool = False
    RETENTION_INTERVAL_SEC: int = 24 * 3600

    @field_validator("API_ROOT_PATH", mode="before")
    @classmethod
    def _root_path_strip(cls, v: object) -> str:
        s = "" if v is None else str(v).strip()
        if not s:
            return ""
        # normalize: ensure leading slash, no trailing slash
        if not s.startswith("/"):
            s = "/" + s
        return s.rstrip("/")

    @field_validator("CLASSIFIER_RULES_JSON", mode="before")
    @classmethod
    def _coerce_rules_json(cls, v: object) -> str:
        if v is None:
            return "{}"
        s = str(v).strip()
        if not s:
            return "{}"
        parsed = json.loads(s)
        if not isinstance(parsed, dict):
            raise ValueError("CLASSIFIER_RULES_JSON must be a JSON object")
        return s

    @field_validator("DIFF_RETENTION_WARNING_DAYS", "DIFF_RETENTION_ERROR_DAYS", mode="before")
    @classmethod
    def _blank_is_none(cls, v: object) -> object:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    def secondary_only_operations(self) -> set[str]:
        return {x.strip() for x in (self.SECONDARY_ONLY_OPERATIONS or "").split(",") if x.strip()}

    def classifier_rules(self) -> dict:
        return json.loads(self.CLASSIFIER_RULES_JSON or "{}")


settings = Settings()
