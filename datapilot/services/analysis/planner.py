from __future__ import annotations

from dataclasses import dataclass, field
import logging

from datapilot.agent.prompts import build_plan_prompt, build_summary_prompt, parse_plan_reply
from datapilot.core.config import Settings, get_settings
from datapilot.core.errors import ProviderConfigError
from datapilot.domain.analysis import GeneratedInsight, PlanQuestion
from datapilot.providers.llm.base import CompletionProvider


logger = logging.getLogger(__name__)

NO_INSIGHTS_SUMMARY = "No significant insights were discovered in this analysis."
FALLBACK_SUMMARY = "Analysis complete. Review individual findings for details."
_PLAN_SYSTEM_PROMPT = "You are a senior data analyst. Respond only with valid JSON."
_SUMMARY_SYSTEM_PROMPT = "You are a senior data analyst writing for business owners."


@dataclass(frozen=True)
class AnalysisPlan:
    questions: list[PlanQuestion] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass(frozen=True)
class ExecutiveSummary:
    text: str
    input_tokens: int = 0
    output_tokens: int = 0


async def generate_analysis_plan(
    provider: CompletionProvider,
    schema_context: str,
    *,
    settings: Settings | None = None,
) -> AnalysisPlan:
    # Planning failures propagate: without a plan the job has nothing to run.
    settings = settings or get_settings()
    if not provider.is_configured():
        raise ProviderConfigError("Completion provider API key not configured")
    completion = await provider.complete(
        _PLAN_SYSTEM_PROMPT,
        build_plan_prompt(schema_context, settings.analysis_plan_size),
        max_tokens=settings.analysis_plan_max_tokens,
        temperature=0.3,
    )
    questions = parse_plan_reply(completion.text, limit=settings.analysis_plan_size)
    logger.info("analysis_plan_generated questions=%s", len(questions))
    return AnalysisPlan(
        questions=questions,
        input_tokens=completion.input_tokens,
        output_tokens=completion.output_tokens,
    )


async def generate_executive_summary(
    provider: CompletionProvider,
    insights: list[GeneratedInsight],
    *,
    settings: Settings | None = None,
) -> ExecutiveSummary:
    settings = settings or get_settings()
    if not insights:
        return ExecutiveSummary(text=NO_INSIGHTS_SUMMARY)
    if not provider.is_configured():
        return ExecutiveSummary(text=FALLBACK_SUMMARY)
    payload = [
        {
            "type": insight.type,
            "severity": insight.severity,
            "title": insight.title,
            "description": insight.description,
        }
        for insight in insights
    ]
    try:
        completion = await provider.complete(
            _SUMMARY_SYSTEM_PROMPT,
            build_summary_prompt(payload),
            max_tokens=settings.analysis_summary_max_tokens,
            temperature=0.3,
        )
    except Exception as exc:  # noqa: BLE001 - findings are already saved; keep the job completable
        logger.warning("executive_summary_failed error=%s", exc)
        return ExecutiveSummary(text=FALLBACK_SUMMARY)
    return ExecutiveSummary(
        text=completion.text.strip() or FALLBACK_SUMMARY,
        input_tokens=completion.input_tokens,
        output_tokens=completion.output_tokens,
    )
