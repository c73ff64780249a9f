from __future__ import annotations

from typing import Optional

from sqlalchemy import create_engine, text, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from dualwrite.config import settings

_engine: Optional[Engine] = None

# IMPORTANT:
# - SessionLocal must be callable at import time.
# - We configure its bind lazily in init_engine().
SessionLocal = sessionmaker(autocommit=False, autoflush=False, future=True, expire_on_commit=False)


def _sqlite_pragmas(busy_timeout_ms: int):
    def _apply(dbapi_connection, _connection_record) -> None:
        # NOTE: sqlite3.Connection interface
        try:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON;")
            cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)};")
            cursor.close()
        except Exception:
            # best-effort; do not block engine creation
            pass

    return _apply


def build_engine(url: str, statement_timeout_ms: int | None = None) -> Engine:
    """Create an Engine with the connect args and pragmas this service relies on.

    The statement timeout is what bounds every flag read/write: a flag lookup never
    blocks longer than this on a locked or unreachable database.
    """
    url = str(url).strip()
    timeout_ms = int(settings.DB_STATEMENT_TIMEOUT_MS if statement_timeout_ms is None else statement_timeout_ms)

    connect_args: dict = {}

    # SQLite needs special handling for threads.
    is_sqlite = url.startswith("sqlite:")
    if is_sqlite:
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = max(0.001, timeout_ms / 1000.0)
    else:
        connect_args["options"] = f"-c timezone=UTC -c statement_timeout={timeout_ms}"

    eng = create_engine(
        url,
        future=True,
        pool_pre_ping=True,
        connect_args=connect_args,
    )

    if is_sqlite:
        event.listen(eng, "connect", _sqlite_pragmas(timeout_ms))

    return eng


def make_session_factory(url: str, create_schema: bool = True) -> sessionmaker:
    """Isolated engine + session factory (tests, one-off tools)."""
    eng = build_engine(url)
    if create_schema:
        from dualwrite.database.models import Base

        Base.metadata.create_all(bind=eng)
    return sessionmaker(bind=eng, autocommit=False, autoflush=False, future=True, expire_on_commit=False)


def init_engine() -> None:
    """Initialize the global SQLAlchemy Engine + bind SessionLocal.

    Safe to call multiple times.
    """
    global _engine

    if _engine is not None:
        return

    url = str(settings.DATABASE_URL).strip()
    if url.startswith("sqlite:///") and not url.startswith("sqlite:///:memory:"):
        from pathlib import Path

        Path(url[len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)

    _engine = build_engine(url)

    # Bind the already-imported SessionLocal factory.
    SessionLocal.configure(bind=_engine)


def get_engine() -> Engine:
    if _engine is None:
        init_engine()
    assert _engine is not None
    return _engine


def init_schema_check() -> None:
    """Connectivity + schema bootstrap.

    - verify connectivity
    - create tables if missing (create_all is safe on empty DB)
    """
    eng = get_engine()
    with eng.connect() as conn:
        conn.execute(text("SELECT 1"))
        conn.commit()

    from dualwrite.database.models import Base

    Base.metadata.create_all(bind=eng)
