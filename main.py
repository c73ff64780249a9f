from fastapi import FastAPI

from dualwrite.api.router import get_flag_store, get_recorder, router
from dualwrite.config import settings
from dualwrite.core.retention import RetentionJob
from dualwrite.database.engine import init_engine, init_schema_check
from dualwrite.logging_utils import get_logger

logger = get_logger("dualwrite.main")


app = FastAPI(
    title="dual-write consistency service",
    version="1.0.0",
    # Reverse-proxy aware Swagger/OpenAPI paths:
    root_path=settings.API_ROOT_PATH,
    docs_url="/docs",
    redoc_url=None,
    openapi_url="/openapi.json",
)

app.include_router(router)

_retention_job: RetentionJob | None = None


@app.on_event("startup")
async def _startup() -> None:
    global _retention_job

    init_engine()
    init_schema_check()

    # Seed the flag row so the first request does not race on it; existing rows are untouched.
    cfg, created = get_flag_store().seed_defaults()
    logger.info("[DUAL-WRITE] flags %s (%s): %s", cfg.key, "seeded" if created else "existing", cfg.value)

    # Retention is optional; default off for API-only deployments/tests.
    if settings.START_RETENTION_JOB:
        _retention_job = RetentionJob(recorder=get_recorder())
        _retention_job.start()


@app.on_event("shutdown")
async def _shutdown() -> None:
    global _retention_job

    if _retention_job:
        _retention_job.stop()
        _retention_job = None
