from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Use JSONB on Postgres and plain JSON elsewhere so SQLite test databases work.
JSONType = JSON().with_variant(JSONB(), "postgresql")
# Credits are dollar amounts; return floats so budget math stays in one numeric type.
Money = Numeric(12, 6, asdecimal=False)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class Query(Base):
    __tablename__ = "queries"
    __table_args__ = (
        Index("ix_queries_tenant_project_created", "tenant_id", "project_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    project_id: Mapped[str] = mapped_column(String)
    question: Mapped[str] = mapped_column(Text)
    generated_sql: Mapped[str | None] = mapped_column(Text, nullable=True)
    explanation: Mapped[str | None] = mapped_column(Text, nullable=True)
    assumptions: Mapped[str | None] = mapped_column(Text, nullable=True)
    visualization_type: Mapped[str] = mapped_column(String, default="table")
    visualization_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    columns_json: Mapped[list[Any]] = mapped_column(JSONType, default=list)
    # Row count, column names and a handful of sample rows; full results are never stored.
    result_summary_json: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    execution_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(String, default="success")
    error_type: Mapped[str | None] = mapped_column(String, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    # interactive | cache | background
    source: Mapped[str] = mapped_column(String, default="interactive")
    background_job_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, server_default=func.now()
    )


class Insight(Base):
    __tablename__ = "insights"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    project_id: Mapped[str] = mapped_column(String)
    query_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    insight_type: Mapped[str] = mapped_column(String)
    severity: Mapped[str] = mapped_column(String)
    title: Mapped[str] = mapped_column(String)
    description: Mapped[str] = mapped_column(Text)
    evidence_json: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    # interactive | background_analysis
    source: Mapped[str] = mapped_column(String, default="interactive")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, server_default=func.now()
    )


class QueryCacheEntry(Base):
    __tablename__ = "query_cache"
    __table_args__ = (
        UniqueConstraint("tenant_id", "question_hash", "schema_hash", name="uq_query_cache_key"),
        Index("ix_query_cache_expires_at", "expires_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    project_id: Mapped[str] = mapped_column(String, index=True)
    question: Mapped[str] = mapped_column(Text)
    question_hash: Mapped[str] = mapped_column(String(64))
    schema_hash: Mapped[str] = mapped_column(String(64))
    result_json: Mapped[dict[str, Any]] = mapped_column(JSONType)
    hit_count: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, server_default=func.now()
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class RateLimitWindow(Base):
    __tablename__ = "rate_limit_windows"

    # One counter row per tenant/endpoint/window, created lazily on first request.
    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    endpoint: Mapped[str] = mapped_column(String, primary_key=True)
    window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), primary_key=True)
    request_count: Mapped[int] = mapped_column(Integer, default=0)


class BackgroundJob(Base):
    __tablename__ = "background_jobs"
    __table_args__ = (
        Index("ix_background_jobs_tenant_status", "tenant_id", "status"),
        Index("ix_background_jobs_tenant_project", "tenant_id", "project_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String)
    project_id: Mapped[str] = mapped_column(String)
    # queued | running | completed | paused_credits | failed
    status: Mapped[str] = mapped_column(String, default="queued")
    credits_budget: Mapped[float] = mapped_column(Money)
    credits_used: Mapped[float] = mapped_column(Money, default=0.0)
    total_questions_planned: Mapped[int] = mapped_column(Integer, default=0)
    questions_completed: Mapped[int] = mapped_column(Integer, default=0)
    findings_json: Mapped[list[Any]] = mapped_column(JSONType, default=list)
    executive_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Polled by the run loop at step boundaries so any worker process can honor a cancel.
    cancel_requested: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, server_default=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, server_default=func.now(), onupdate=_utc_now
    )


class CreditUsage(Base):
    __tablename__ = "credit_usage"

    # Track per-tenant spend within calendar-month boundaries.
    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), primary_key=True)
    credits_allocated: Mapped[float] = mapped_column(Money)
    credits_used: Mapped[float] = mapped_column(Money, default=0.0)
    query_count: Mapped[int] = mapped_column(Integer, default=0)
    background_analysis_count: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, server_default=func.now(), onupdate=_utc_now
    )
