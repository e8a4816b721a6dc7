from __future__ import annotations

import json

import pytest

from datapilot.agent.prompts import INSIGHT_SYSTEM_PROMPT
from datapilot.providers.llm.fake import FakeCompletionProvider
from datapilot.services.insights import (
    InsightGenerator,
    format_results_for_prompt,
    parse_insight_reply,
)
from datapilot.tests.utils.fakes import INSIGHT_REPLY


def test_format_results_renders_pipe_table_and_truncates() -> None:
    rows = [{"region": "north", "revenue": 10.0, "note": None, "flag": True} for _ in range(3)]
    text = format_results_for_prompt(["region", "revenue", "note", "flag"], rows, max_rows=2)
    lines = text.splitlines()
    assert lines[0] == "region | revenue | note | flag"
    assert lines[2] == "north | 10 | NULL | true"
    assert lines[-1] == "... (1 more rows truncated)"


def test_parse_insight_reply_normalizes_unknown_labels() -> None:
    reply = "```json\n" + json.dumps(
        [
            {
                "type": "prophecy",
                "severity": "catastrophic",
                "title": "x" * 120,
                "description": "Revenue doubled.",
                "evidence": "not a dict",
            }
        ]
    ) + "\n```"
    [insight] = parse_insight_reply(reply)
    assert insight.type == "info"
    assert insight.severity == "info"
    assert len(insight.title) == 80
    assert insight.evidence == {}


def test_parse_insight_reply_caps_count_and_survives_garbage() -> None:
    many = json.dumps([{"type": "trend", "title": f"t{index}"} for index in range(6)])
    assert len(parse_insight_reply(many)) == 4
    assert parse_insight_reply("no json at all") == []
    assert parse_insight_reply("[not valid json]") == []


@pytest.mark.asyncio
async def test_generator_returns_parsed_insights_with_usage() -> None:
    provider = FakeCompletionProvider([INSIGHT_REPLY], input_tokens=300, output_tokens=80)
    batch = await InsightGenerator(provider).generate(
        question="revenue by region",
        sql="SELECT 1",
        columns=["region", "total_revenue"],
        rows=[{"region": "north", "total_revenue": 132.47}],
        schema_context=None,
    )
    assert [insight.title for insight in batch.insights] == ["North leads revenue"]
    assert (batch.input_tokens, batch.output_tokens) == (300, 80)
    assert provider.calls[0]["system_prompt"] == INSIGHT_SYSTEM_PROMPT
    assert "No schema context available" in provider.calls[0]["user_message"]


@pytest.mark.asyncio
async def test_generator_skips_empty_results_and_unconfigured_provider() -> None:
    provider = FakeCompletionProvider()
    empty = await InsightGenerator(provider).generate(
        question="q", sql="SELECT 1", columns=["a"], rows=[], schema_context=None
    )
    assert empty.insights == []
    assert provider.calls == []

    unconfigured = await InsightGenerator(FakeCompletionProvider(configured=False)).generate(
        question="q", sql="SELECT 1", columns=["a"], rows=[{"a": 1}], schema_context=None
    )
    assert unconfigured.error == "API key not configured"


@pytest.mark.asyncio
async def test_generator_swallows_provider_failures() -> None:
    provider = FakeCompletionProvider([RuntimeError("overloaded")])
    batch = await InsightGenerator(provider).generate(
        question="q", sql="SELECT 1", columns=["a"], rows=[{"a": 1}], schema_context="Table: t (1 rows)"
    )
    assert batch.insights == []
    assert batch.error == "overloaded"
    assert batch.input_tokens == 0
