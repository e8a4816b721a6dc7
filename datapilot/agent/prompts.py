from __future__ import annotations

import json
import logging
import re
from typing import Any

from pydantic import ValidationError

from datapilot.core.errors import AnalysisPlanError
from datapilot.domain.analysis import PlanQuestion
from datapilot.domain.state import VISUALIZATION_TYPES, ParsedReply

logger = logging.getLogger(__name__)


QUERY_SYSTEM_PROMPT = """You are a data analyst assistant. You help users explore their data by writing SQLite SQL queries.

You have access to the following database schema:

{schema_context}

RULES:
1. Write a single SQLite-compatible SQL query that answers the user's question.
2. Always use double quotes around table and column names to handle spaces and special characters.
3. Use SQLite syntax; window functions are fine but QUALIFY, PIVOT and similar extensions are not.
4. If the question is ambiguous, make reasonable assumptions and state them under ASSUMPTIONS.
5. Limit results to {max_rows} rows maximum (add LIMIT {max_rows} if no limit is specified).
6. For aggregations, always include meaningful column aliases using AS.
7. If the question cannot be answered with the available data, explain why and suggest what data would be needed.
8. Never use DELETE, UPDATE, INSERT, DROP, ALTER, CREATE or any other DDL/DML. SELECT queries only.
9. For percentage calculations, multiply by 100.0 to get a proper percentage.
10. Use CAST() or printf() for formatting numbers when needed.

Respond in this exact format:

EXPLANATION:
[1-3 sentences explaining your interpretation of the question and approach]

ASSUMPTIONS:
[Any assumptions you made, or "None" if the question was unambiguous]

SQL:
```sql
[Your SQLite SQL query here]
```

VISUALIZATION:
[Recommend the single best visualization type for this result from: {visualization_types}. Explain in one sentence why this visualization fits.]

VISUALIZATION_TYPE:
[Just the type name from the list above, nothing else]"""


PLAN_PROMPT = """You are a senior data analyst beginning an exploratory analysis of a business database. Your goal is to find hidden insights, anomalies, cost-saving opportunities and patterns the business owner hasn't thought to look for.

SCHEMA:
{schema_context}

Generate exactly {question_count} analytical questions to explore, ordered from most likely to reveal valuable insights to least. Focus on:
1. Money leaks: overspending, pricing anomalies, unprofitable segments
2. Concentration risks: over-reliance on one customer, product or region
3. Trend breaks: sudden changes that deserve investigation
4. Pareto analysis: are 20% of X causing 80% of Y?
5. Missing data patterns: columns with lots of nulls might indicate process issues
6. Cross-table relationships: correlations between different datasets
7. Seasonality and time patterns
8. Outlier detection: values far from the mean

Respond as JSON:
[
  {{
    "question": "The natural language question",
    "rationale": "Why this might reveal something valuable",
    "estimated_complexity": "simple|moderate|complex"
  }}
]

Return ONLY valid JSON, no explanation text."""


SUMMARY_PROMPT = """You just completed an exploratory analysis of a business database. Here are the insights discovered:

{insights_json}

Write a 3-5 sentence executive summary of the most important findings. Prioritize actionable items. Start with the most critical finding. Be specific with numbers."""


INSIGHT_SYSTEM_PROMPT = "You are a data analyst. Respond only with valid JSON."

INSIGHT_PROMPT = """You are a senior business analyst reviewing query results. Analyze the data and provide 2-4 concise, actionable business insights.

DATA CONTEXT:
User asked: "{question}"
SQL: {sql}
Query returned {row_count} rows with columns: {column_names}

RESULTS:
{formatted_results}

SCHEMA CONTEXT:
{schema_context}

For each insight, respond in this exact JSON format:
[
  {{
    "type": "anomaly|trend|opportunity|warning|correlation",
    "severity": "info|warning|critical|opportunity",
    "title": "Short headline (max 80 chars)",
    "description": "2-3 sentence explanation with specific numbers from the data.",
    "evidence": {{"metric": "value", "comparison": "value", "delta": "value or percentage"}}
  }}
]

RULES:
1. Be specific: cite actual numbers from the results.
2. Look for outliers, concentration risks, trends, missing data patterns, suspicious values, growth or decline rates and Pareto distributions.
3. Compare against business common sense and flag anything unusual.
4. Severity guide: "critical" needs immediate attention, "warning" should be investigated, "opportunity" is potential upside, "info" is an interesting observation.
5. If the data is too simple or small for meaningful insights, return 1 insight at most.
6. Do NOT invent data that isn't in the results.

Respond ONLY with a valid JSON array. No markdown code blocks, no explanation text."""


_SECTION_LABELS = ("EXPLANATION", "ASSUMPTIONS", "SQL", "VISUALIZATION_TYPE", "VISUALIZATION")
# Labels must start a line, optionally behind markdown markers such as ** or ##.
# VISUALIZATION_TYPE is listed first so it wins over its prefix.
_SECTION_RE = re.compile(
    r"^[ \t]*(?:[#>*_-]+[ \t]*)?("
    + "|".join(_SECTION_LABELS)
    + r")[ \t]*(?:\*\*|__)?[ \t]*:(?:[ \t]*(?:\*\*|__))?",
    re.IGNORECASE | re.MULTILINE,
)
_SQL_FENCE_RE = re.compile(r"```sql\s*(.*?)```", re.IGNORECASE | re.DOTALL)
_JSON_ARRAY_RE = re.compile(r"\[.*\]", re.DOTALL)


def build_query_prompt(
    schema_context: str,
    question: str,
    *,
    conversation_context: list[dict[str, Any]] | None = None,
    max_rows: int = 1000,
) -> tuple[str, str]:
    system_prompt = QUERY_SYSTEM_PROMPT.format(
        schema_context=schema_context,
        max_rows=max_rows,
        visualization_types=", ".join(VISUALIZATION_TYPES),
    )
    if not conversation_context:
        return system_prompt, question
    # Prior turns let follow-up questions like "and by region?" resolve against earlier SQL.
    lines = ["Earlier questions in this conversation:"]
    for turn in conversation_context:
        prior_question = str(turn.get("question") or "").strip()
        if not prior_question:
            continue
        lines.append(f"- Q: {prior_question}")
        prior_sql = str(turn.get("sql") or "").strip()
        if prior_sql:
            lines.append(f"  SQL: {prior_sql}")
    if len(lines) == 1:
        return system_prompt, question
    lines.append("")
    lines.append(f"Current question: {question}")
    return system_prompt, "\n".join(lines)


def _split_sections(text: str) -> dict[str, str]:
    matches = list(_SECTION_RE.finditer(text))
    sections: dict[str, str] = {}
    for index, match in enumerate(matches):
        label = match.group(1).upper()
        end = matches[index + 1].start() if index + 1 < len(matches) else len(text)
        # First occurrence wins so echoed labels inside prose cannot override real sections.
        sections.setdefault(label, text[match.end():end].strip())
    return sections


def parse_query_reply(text: str | None) -> ParsedReply:
    # Never raise: a reply we cannot read becomes an empty query for the validator to reject.
    if not text:
        return ParsedReply()
    try:
        sections = _split_sections(text)
        fence = _SQL_FENCE_RE.search(text)
        sql = fence.group(1).strip() if fence else ""
        raw_type = sections.get("VISUALIZATION_TYPE", "")
        tokens = raw_type.split()
        visualization_type = tokens[0].strip("`*[].,").lower() if tokens else "table"
        if visualization_type not in VISUALIZATION_TYPES:
            visualization_type = "table"
        return ParsedReply(
            explanation=sections.get("EXPLANATION", ""),
            assumptions=sections.get("ASSUMPTIONS", ""),
            sql=sql,
            visualization=sections.get("VISUALIZATION", ""),
            visualization_type=visualization_type,
        )
    except Exception:  # noqa: BLE001 - parsing must degrade, never crash the ask path
        logger.warning("query_reply_parse_failed length=%s", len(text), exc_info=True)
        return ParsedReply()


def build_plan_prompt(schema_context: str, question_count: int) -> str:
    return PLAN_PROMPT.format(schema_context=schema_context, question_count=question_count)


def extract_json_array(text: str) -> list[Any] | None:
    # Models sometimes wrap JSON in prose or fences; take the outermost bracketed span.
    match = _JSON_ARRAY_RE.search(text or "")
    if not match:
        return None
    payload = json.loads(match.group(0))
    if not isinstance(payload, list):
        return None
    return payload


def parse_plan_reply(text: str, *, limit: int) -> list[PlanQuestion]:
    try:
        items = extract_json_array(text)
    except ValueError as exc:
        raise AnalysisPlanError("Failed to generate analysis plan") from exc
    if items is None:
        return []
    questions: list[PlanQuestion] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        try:
            question = PlanQuestion.model_validate(item)
        except ValidationError:
            # Keep usable questions even when the complexity label drifts.
            if not item.get("question"):
                continue
            question = PlanQuestion(
                question=str(item["question"]),
                rationale=str(item.get("rationale") or ""),
            )
        if question.question.strip():
            questions.append(question)
    return questions[:limit]


def build_summary_prompt(insights: list[dict[str, Any]]) -> str:
    return SUMMARY_PROMPT.format(insights_json=json.dumps(insights, indent=2, default=str))


def build_insight_prompt(
    *,
    question: str,
    sql: str,
    columns: list[str],
    row_count: int,
    formatted_results: str,
    schema_context: str | None,
) -> str:
    return INSIGHT_PROMPT.format(
        question=question,
        sql=sql,
        row_count=row_count,
        column_names=", ".join(columns),
        formatted_results=formatted_results,
        schema_context=schema_context or "No schema context available",
    )
