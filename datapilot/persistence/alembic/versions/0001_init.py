"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-17 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None

_JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")
_MONEY = sa.Numeric(12, 6)


def upgrade() -> None:
    op.create_table(
        "queries",
        sa.Column("id", sa.String(), primary_key=True),
        # Avoid index=True here because we create explicit indexes below.
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("question", sa.Text(), nullable=False),
        sa.Column("generated_sql", sa.Text(), nullable=True),
        sa.Column("explanation", sa.Text(), nullable=True),
        sa.Column("assumptions", sa.Text(), nullable=True),
        sa.Column("visualization_type", sa.String(), nullable=False, server_default="table"),
        sa.Column("visualization_description", sa.Text(), nullable=True),
        sa.Column("columns_json", _JSON, nullable=False),
        sa.Column("result_summary_json", _JSON, nullable=False),
        sa.Column("execution_time_ms", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="success"),
        sa.Column("error_type", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("source", sa.String(), nullable=False, server_default="interactive"),
        sa.Column("background_job_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_queries_tenant_id", "queries", ["tenant_id"])
    op.create_index("ix_queries_background_job_id", "queries", ["background_job_id"])
    op.create_index(
        "ix_queries_tenant_project_created", "queries", ["tenant_id", "project_id", "created_at"]
    )

    op.create_table(
        "insights",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("query_id", sa.String(), nullable=True),
        sa.Column("insight_type", sa.String(), nullable=False),
        sa.Column("severity", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("evidence_json", _JSON, nullable=False),
        sa.Column("source", sa.String(), nullable=False, server_default="interactive"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_insights_tenant_id", "insights", ["tenant_id"])
    op.create_index("ix_insights_query_id", "insights", ["query_id"])

    op.create_table(
        "query_cache",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("question", sa.Text(), nullable=False),
        sa.Column("question_hash", sa.String(64), nullable=False),
        sa.Column("schema_hash", sa.String(64), nullable=False),
        sa.Column("result_json", _JSON, nullable=False),
        sa.Column("hit_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("tenant_id", "question_hash", "schema_hash", name="uq_query_cache_key"),
    )
    op.create_index("ix_query_cache_tenant_id", "query_cache", ["tenant_id"])
    op.create_index("ix_query_cache_project_id", "query_cache", ["project_id"])
    # Support the hourly sweep of expired entries.
    op.create_index("ix_query_cache_expires_at", "query_cache", ["expires_at"])

    op.create_table(
        "rate_limit_windows",
        sa.Column("tenant_id", sa.String(), primary_key=True),
        sa.Column("endpoint", sa.String(), primary_key=True),
        sa.Column("window_start", sa.DateTime(timezone=True), primary_key=True),
        sa.Column("request_count", sa.Integer(), nullable=False, server_default="0"),
    )

    op.create_table(
        "background_jobs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="queued"),
        sa.Column("credits_budget", _MONEY, nullable=False),
        sa.Column("credits_used", _MONEY, nullable=False, server_default="0"),
        sa.Column("total_questions_planned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("questions_completed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("findings_json", _JSON, nullable=False),
        sa.Column("executive_summary", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("cancel_requested", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    # Live-job counts drive the per-tenant concurrency cap.
    op.create_index("ix_background_jobs_tenant_status", "background_jobs", ["tenant_id", "status"])
    op.create_index("ix_background_jobs_tenant_project", "background_jobs", ["tenant_id", "project_id"])

    op.create_table(
        "credit_usage",
        sa.Column("tenant_id", sa.String(), primary_key=True),
        sa.Column("period_start", sa.DateTime(timezone=True), primary_key=True),
        sa.Column("credits_allocated", _MONEY, nullable=False),
        sa.Column("credits_used", _MONEY, nullable=False, server_default="0"),
        sa.Column("query_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("background_analysis_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("credit_usage")
    op.drop_index("ix_background_jobs_tenant_project", table_name="background_jobs")
    op.drop_index("ix_background_jobs_tenant_status", table_name="background_jobs")
    op.drop_table("background_jobs")
    op.drop_table("rate_limit_windows")
    op.drop_index("ix_query_cache_expires_at", table_name="query_cache")
    op.drop_index("ix_query_cache_project_id", table_name="query_cache")
    op.drop_index("ix_query_cache_tenant_id", table_name="query_cache")
    op.drop_table("query_cache")
    op.drop_index("ix_insights_query_id", table_name="insights")
    op.drop_index("ix_insights_tenant_id", table_name="insights")
    op.drop_table("insights")
    op.drop_index("ix_queries_tenant_project_created", table_name="queries")
    op.drop_index("ix_queries_background_job_id", table_name="queries")
    op.drop_index("ix_queries_tenant_id", table_name="queries")
    op.drop_table("queries")
