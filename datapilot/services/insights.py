from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any

from datapilot.agent.prompts import INSIGHT_SYSTEM_PROMPT, build_insight_prompt, extract_json_array
from datapilot.core.config import Settings, get_settings
from datapilot.domain.analysis import GeneratedInsight
from datapilot.providers.llm.base import CompletionProvider


logger = logging.getLogger(__name__)

INSIGHT_TYPES = ("anomaly", "trend", "opportunity", "warning", "correlation")
INSIGHT_SEVERITIES = ("info", "warning", "critical", "opportunity")
_MAX_INSIGHTS = 4
_MAX_TITLE_CHARS = 80
_MAX_DESCRIPTION_CHARS = 500
_MAX_CELL_CHARS = 50


@dataclass
class InsightBatch:
    insights: list[GeneratedInsight] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    error: str | None = None


def _format_cell(value: Any) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else f"{value:.2f}"
    text = str(value)
    return text if len(text) <= _MAX_CELL_CHARS else f"{text[:47]}..."


def format_results_for_prompt(
    columns: list[str], rows: list[dict[str, Any]], max_rows: int = 200
) -> str:
    # Compact pipe table keeps prompts small while still showing real values.
    lines = [" | ".join(columns), " | ".join("---" for _ in columns)]
    for row in rows[:max_rows]:
        lines.append(" | ".join(_format_cell(row.get(column)) for column in columns))
    if len(rows) > max_rows:
        lines.append(f"... ({len(rows) - max_rows} more rows truncated)")
    return "\n".join(lines)


def parse_insight_reply(text: str) -> list[GeneratedInsight]:
    try:
        items = extract_json_array(text)
    except ValueError:
        logger.warning("insight_reply_parse_failed length=%s", len(text or ""))
        return []
    if items is None:
        logger.warning("insight_reply_missing_array")
        return []
    insights: list[GeneratedInsight] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        evidence = item.get("evidence")
        insights.append(
            GeneratedInsight(
                type=item.get("type") if item.get("type") in INSIGHT_TYPES else "info",
                severity=item.get("severity") if item.get("severity") in INSIGHT_SEVERITIES else "info",
                title=str(item.get("title") or "")[:_MAX_TITLE_CHARS],
                description=str(item.get("description") or "")[:_MAX_DESCRIPTION_CHARS],
                evidence=evidence if isinstance(evidence, dict) else {},
            )
        )
    return insights[:_MAX_INSIGHTS]


class InsightGenerator:
    def __init__(self, provider: CompletionProvider, settings: Settings | None = None) -> None:
        self._provider = provider
        self._settings = settings or get_settings()

    async def generate(
        self,
        *,
        question: str,
        sql: str,
        columns: list[str],
        rows: list[dict[str, Any]],
        schema_context: str | None,
    ) -> InsightBatch:
        # Insights are optional enrichment; every failure returns an empty batch instead of raising.
        if not self._provider.is_configured():
            return InsightBatch(error="API key not configured")
        if not rows:
            return InsightBatch()
        prompt = build_insight_prompt(
            question=question,
            sql=sql,
            columns=columns,
            row_count=len(rows),
            formatted_results=format_results_for_prompt(
                columns, rows, max_rows=self._settings.insight_max_rows
            ),
            schema_context=schema_context,
        )
        try:
            completion = await self._provider.complete(
                INSIGHT_SYSTEM_PROMPT,
                prompt,
                max_tokens=self._settings.insight_max_tokens,
                temperature=0.3,
            )
        except Exception as exc:  # noqa: BLE001 - insight failures never fail the caller
            logger.warning("insight_generation_failed error=%s", exc)
            return InsightBatch(error=str(exc))
        return InsightBatch(
            insights=parse_insight_reply(completion.text),
            input_tokens=completion.input_tokens,
            output_tokens=completion.output_tokens,
        )
