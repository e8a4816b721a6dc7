from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


JobStatus = Literal["queued", "running", "completed", "paused_credits", "failed"]

ACTIVE_JOB_STATUSES: tuple[str, ...] = ("queued", "running")
FINISHED_JOB_STATUSES: tuple[str, ...] = ("completed", "paused_credits")


class PlanQuestion(BaseModel):
    question: str
    rationale: str = ""
    estimated_complexity: Literal["simple", "moderate", "complex"] = "moderate"


class Finding(BaseModel):
    # Outcome of one plan step; appended to the job and never edited afterwards.
    question_index: int
    question: str
    rationale: str = ""
    status: Literal["success", "no_results", "error"]
    query_id: str | None = None
    visualization_type: str | None = None
    row_count: int = 0
    insight_count: int = 0
    error: str | None = None


class ResultSummary(BaseModel):
    row_count: int = 0
    column_names: list[str] = Field(default_factory=list)
    sample_rows: list[dict[str, Any]] = Field(default_factory=list)


class JobSnapshot(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str
    project_id: str
    status: JobStatus
    credits_budget: float
    credits_used: float
    total_questions_planned: int
    questions_completed: int
    findings: list[Finding] = Field(default_factory=list)
    executive_summary: str | None = None
    error_message: str | None = None
    cancel_requested: bool = False
    insight_count: int | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


class JobQueryRecord(BaseModel):
    id: str
    question: str
    generated_sql: str | None = None
    explanation: str | None = None
    visualization_type: str
    status: str
    execution_time_ms: int | None = None
    result_summary: ResultSummary
    insight_count: int = 0
    created_at: datetime | None = None


class GeneratedInsight(BaseModel):
    type: str = "info"
    severity: str = "info"
    title: str = ""
    description: str = ""
    evidence: dict[str, Any] = Field(default_factory=dict)
