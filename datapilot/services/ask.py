from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from datapilot.agent.prompts import build_query_prompt, parse_query_reply
from datapilot.core.config import Settings, get_settings
from datapilot.datastores.base import NO_TABLES_MARKER, DataStore
from datapilot.domain.state import AskResult
from datapilot.providers.llm.base import CompletionProvider
from datapilot.services.sql_safety import validate_sql
from datapilot.services.telemetry import increment_counter

logger = logging.getLogger(__name__)

NO_DATA_MESSAGE = "Upload some data first, then ask questions about it."
API_ERROR_MESSAGE = "Something went wrong connecting to the AI. Please try again."
TIMEOUT_MESSAGE = "That query took too long to run. Try a more specific question or add filters."
CONFIG_MESSAGE = "The AI provider is not configured. Set an API key to enable questions."


def infer_column_type(value: Any) -> str:
    # Booleans are ints in Python but read as text to clients.
    if isinstance(value, bool) or value is None:
        return "TEXT"
    if isinstance(value, int):
        return "INTEGER"
    if isinstance(value, float):
        return "INTEGER" if value.is_integer() else "REAL"
    return "TEXT"


class AskService:
    """Answers one natural-language question against a tenant data store.

    Every expected failure comes back as a tagged AskResult. The execution timeout
    is best effort: when it fires the caller gets timeout_error, but the statement
    keeps running in the store's worker thread until the driver finishes it.
    """

    def __init__(self, provider: CompletionProvider, settings: Settings | None = None) -> None:
        self._provider = provider
        self._settings = settings or get_settings()

    async def ask(
        self,
        data_store: DataStore,
        question: str,
        *,
        timeout_ms: int | None = None,
        conversation_context: list[dict[str, Any]] | None = None,
        schema_context: str | None = None,
    ) -> AskResult:
        try:
            return await self._ask(
                data_store,
                question,
                timeout_ms=timeout_ms,
                conversation_context=conversation_context,
                schema_context=schema_context,
            )
        except Exception:  # noqa: BLE001 - the ask boundary returns tagged results only
            logger.exception("ask_unexpected_error")
            increment_counter("ask_errors_total.server_error")
            return AskResult.failure("server_error", "An unexpected error occurred.")

    async def _ask(
        self,
        data_store: DataStore,
        question: str,
        *,
        timeout_ms: int | None,
        conversation_context: list[dict[str, Any]] | None,
        schema_context: str | None,
    ) -> AskResult:
        settings = self._settings
        if not self._provider.is_configured():
            return AskResult.failure("configuration_error", CONFIG_MESSAGE)

        if schema_context is None:
            try:
                schema_context = await data_store.gather_schema_context()
            except Exception as exc:  # noqa: BLE001 - surface as a tagged schema failure
                logger.warning("ask_schema_error error=%s", type(exc).__name__)
                return AskResult.failure("schema_error", f"Could not read your data: {exc}")
        if not schema_context or NO_TABLES_MARKER in schema_context:
            return AskResult.failure("no_data", NO_DATA_MESSAGE)

        system_prompt, user_message = build_query_prompt(
            schema_context,
            question,
            conversation_context=conversation_context,
            max_rows=settings.ask_max_rows,
        )
        try:
            completion = await self._provider.complete(
                system_prompt,
                user_message,
                max_tokens=settings.ask_max_tokens,
                temperature=settings.ask_temperature,
            )
        except Exception as exc:  # noqa: BLE001 - any provider failure maps to api_error
            logger.warning("ask_provider_error provider=%s error=%s", self._provider.name, exc)
            increment_counter("ask_errors_total.api_error")
            return AskResult.failure("api_error", API_ERROR_MESSAGE)

        parsed = parse_query_reply(completion.text)
        reply_fields = {
            "explanation": parsed.explanation,
            "assumptions": parsed.assumptions,
            "sql": parsed.sql,
            "visualization": parsed.visualization,
            "visualization_type": parsed.visualization_type,
            "input_tokens": completion.input_tokens,
            "output_tokens": completion.output_tokens,
        }

        validation = validate_sql(parsed.sql)
        if not validation.valid:
            logger.info("ask_sql_rejected reason=%s", validation.reason)
            increment_counter("ask_errors_total.sql_validation_error")
            return AskResult.failure(
                "sql_validation_error",
                f"Generated query was rejected: {validation.reason}",
                **reply_fields,
            )

        timeout_s = (timeout_ms or settings.ask_timeout_ms) / 1000.0
        start = time.monotonic()
        try:
            result = await asyncio.wait_for(data_store.execute(parsed.sql), timeout=timeout_s)
        except asyncio.TimeoutError:
            logger.warning("ask_query_timeout timeout_s=%.1f", timeout_s)
            increment_counter("ask_errors_total.timeout_error")
            return AskResult.failure("timeout_error", TIMEOUT_MESSAGE, **reply_fields)
        except Exception as exc:  # noqa: BLE001 - driver errors are reported back verbatim
            logger.info("ask_query_failed error=%s", exc)
            increment_counter("ask_errors_total.sql_execution_error")
            return AskResult.failure(
                "sql_execution_error", f"Query failed: {exc}", **reply_fields
            )
        query_time_ms = int((time.monotonic() - start) * 1000)

        max_rows = settings.ask_max_rows
        rows = result.rows[:max_rows]
        columns = result.columns or (list(rows[0].keys()) if rows else [])
        column_types = (
            {column: infer_column_type(rows[0].get(column)) for column in columns} if rows else {}
        )
        increment_counter("ask_success_total")
        return AskResult(
            success=True,
            columns=columns,
            column_types=column_types,
            rows=rows,
            row_count=len(result.rows),
            truncated=len(result.rows) >= max_rows,
            query_time_ms=query_time_ms,
            **reply_fields,
        )
