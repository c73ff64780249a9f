from __future__ import annotations

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    BigInteger,
    String,
)
from sqlalchemy import JSON
from sqlalchemy.orm import declarative_base

Base = declarative_base()

# IMPORTANT (SQLite autoincrement):
# SQLite only auto-increments when the PRIMARY KEY column is exactly "INTEGER PRIMARY KEY".
# Using BIGINT for an autoincrement PK will NOT bind to rowid and will fail inserts (id stays NULL).
AUTO_PK = Integer().with_variant(BigInteger, "postgresql")


# ---------------------------
# Feature flags (one row per key)
# ---------------------------

class DualWriteConfig(Base):
    __tablename__ = "dual_write_config"

    key = Column(String(128), primary_key=True)
    value = Column(JSON, nullable=False, default=dict)
    updated_at = Column(DateTime(timezone=True), nullable=False)


# ---------------------------
# Comparison outcomes (append-only, purged by retention)
# ---------------------------

class DualWriteDiff(Base):
    __tablename__ = "dual_write_diffs"

    id = Column(String(36), primary_key=True)
    api_endpoint = Column(String(128), nullable=False, index=True)
    operation = Column(String(128), nullable=False)

    severity = Column(String(16), nullable=False, default="info")  # info / warning / error
    diff = Column(JSON, nullable=False, default=list)  # ordered [{op, path, value?}]
    fingerprint = Column(String(64), nullable=False, index=True)
    needs_review = Column(Boolean, nullable=False, default=False)

    authoritative_backend = Column(String(16), nullable=False, default="primary")  # primary / secondary
    primary_result_status = Column(String(16), nullable=False)  # fulfilled / rejected
    secondary_result_status = Column(String(16), nullable=False)
    primary_error = Column(String(512), nullable=True)
    secondary_error = Column(String(512), nullable=True)

    payload = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)

    __table_args__ = (
        Index("ix_dual_write_diffs_severity_created", "severity", "created_at"),
        Index("ix_dual_write_diffs_endpoint_created", "api_endpoint", "created_at"),
    )


# ---------------------------
# Operator-facing audit trail
# ---------------------------

class SystemEvent(Base):
    __tablename__ = "system_events"

    id = Column(AUTO_PK, primary_key=True, autoincrement=True)
    event_type = Column(String(64), nullable=False, index=True)
    severity = Column(String(16), nullable=False, default="INFO")

    correlation_id = Column(String(64), nullable=True, index=True)
    endpoint = Column(String(128), nullable=True, index=True)

    payload = Column(JSON, nullable=False, default=dict)
    time = Column(DateTime(timezone=True), nullable=False, index=True)

    __table_args__ = (Index("ix_system_events_type_time", "event_type", "time"),)
