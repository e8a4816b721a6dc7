from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


AskErrorType = Literal[
    "configuration_error",
    "schema_error",
    "no_data",
    "api_error",
    "sql_validation_error",
    "timeout_error",
    "sql_execution_error",
    "server_error",
]

VISUALIZATION_TYPES: tuple[str, ...] = (
    "table",
    "bar_chart",
    "line_chart",
    "pie_chart",
    "scatter_plot",
    "area_chart",
    "heatmap",
    "single_number",
    "grouped_bar_chart",
)


class AskResult(BaseModel):
    # Tagged outcome of one question; failures carry error_type instead of raising.
    success: bool
    error_type: AskErrorType | None = None
    error: str | None = None
    explanation: str = ""
    assumptions: str = ""
    sql: str = ""
    visualization: str = ""
    visualization_type: str = "table"
    columns: list[str] = Field(default_factory=list)
    column_types: dict[str, str] = Field(default_factory=dict)
    rows: list[dict[str, Any]] = Field(default_factory=list)
    row_count: int = 0
    truncated: bool = False
    query_time_ms: int | None = None
    # Token usage of the provider call, zero when the provider was never reached.
    input_tokens: int = 0
    output_tokens: int = 0
    source: Literal["interactive", "cache", "background"] = "interactive"

    @classmethod
    def failure(cls, error_type: AskErrorType, message: str, **fields: Any) -> "AskResult":
        return cls(success=False, error_type=error_type, error=message, **fields)


class ParsedReply(BaseModel):
    explanation: str = ""
    assumptions: str = ""
    sql: str = ""
    visualization: str = ""
    visualization_type: str = "table"


class SqlValidation(BaseModel):
    valid: bool
    reason: str | None = None
