from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from datapilot.datastores.base import NO_TABLES_MARKER, DataStore
from datapilot.domain.state import AskResult
from datapilot.persistence.repos import insights as insights_repo
from datapilot.persistence.repos import queries as queries_repo
from datapilot.services.ask import AskService
from datapilot.services.credits import CreditLedger
from datapilot.services.insights import InsightGenerator
from datapilot.services.query_cache import QueryCache, question_hash, schema_hash


logger = logging.getLogger(__name__)

# Token counts describe the original call, not the cached replay.
_CACHE_EXCLUDE = {"input_tokens", "output_tokens", "source"}


@dataclass(frozen=True)
class InteractiveAnswer:
    result: AskResult
    query_id: str | None
    schema_context: str | None = None

    @property
    def cached(self) -> bool:
        return self.result.source == "cache"


class InteractiveAskFlow:
    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        ask_service: AskService,
        cache: QueryCache,
        ledger: CreditLedger,
        insight_generator: InsightGenerator,
    ) -> None:
        self._session_factory = session_factory
        self._ask = ask_service
        self._cache = cache
        self._ledger = ledger
        self._insights = insight_generator

    async def answer(
        self,
        *,
        tenant_id: str,
        project_id: str,
        question: str,
        data_store: DataStore,
        conversation_context: list[dict[str, Any]] | None = None,
        timeout_ms: int | None = None,
    ) -> InteractiveAnswer:
        schema_context = await self._schema_context(data_store)
        hashes: tuple[str, str] | None = None
        # Follow-up questions depend on prior turns, so only standalone questions use the cache.
        if schema_context and NO_TABLES_MARKER not in schema_context and not conversation_context:
            hashes = (question_hash(question), schema_hash(schema_context))
            cached = await self._cache.get(tenant_id, *hashes)
            if cached is not None:
                result = AskResult.model_validate({**cached, "source": "cache"})
                query_id = await self._record(tenant_id, project_id, question, result)
                logger.info("interactive_ask_cache_hit tenant_id=%s project_id=%s", tenant_id, project_id)
                return InteractiveAnswer(result=result, query_id=query_id, schema_context=schema_context)

        result = await self._ask.ask(
            data_store,
            question,
            timeout_ms=timeout_ms,
            conversation_context=conversation_context,
            schema_context=schema_context,
        )
        query_id = await self._record(tenant_id, project_id, question, result)
        if result.success and hashes is not None:
            await self._cache.set(
                tenant_id,
                project_id,
                question,
                *hashes,
                result.model_dump(mode="json", exclude=_CACHE_EXCLUDE),
            )
        await self._track(tenant_id, result.input_tokens, result.output_tokens, "query")
        return InteractiveAnswer(result=result, query_id=query_id, schema_context=schema_context)

    async def generate_insights_for(
        self,
        *,
        tenant_id: str,
        project_id: str,
        query_id: str,
        question: str,
        result: AskResult,
        schema_context: str | None,
    ) -> int:
        # Runs after the response is sent; failures are logged and never reach the client.
        batch = await self._insights.generate(
            question=question,
            sql=result.sql,
            columns=result.columns,
            rows=result.rows,
            schema_context=schema_context,
        )
        await self._track(tenant_id, batch.input_tokens, batch.output_tokens, "insights")
        if not batch.insights:
            return 0
        try:
            async with self._session_factory() as session:
                insights_repo.create_insights(
                    session,
                    tenant_id=tenant_id,
                    project_id=project_id,
                    query_id=query_id,
                    insights=batch.insights,
                    source="interactive",
                )
                await session.commit()
        except Exception as exc:  # noqa: BLE001 - storage outages surface as driver or OS errors
            logger.warning("interactive_insights_save_failed query_id=%s", query_id, exc_info=exc)
            return 0
        return len(batch.insights)

    async def _schema_context(self, data_store: DataStore) -> str | None:
        # Leave schema failures to the ask path, which reports them as schema_error.
        try:
            return await data_store.gather_schema_context()
        except Exception as exc:  # noqa: BLE001 - reported by the ask path instead
            logger.warning("interactive_schema_context_failed error=%s", type(exc).__name__)
            return None

    async def _record(
        self, tenant_id: str, project_id: str, question: str, result: AskResult
    ) -> str | None:
        try:
            async with self._session_factory() as session:
                query = await queries_repo.create_query(
                    session,
                    tenant_id=tenant_id,
                    project_id=project_id,
                    question=question,
                    result=result,
                    source=result.source,
                )
                await session.commit()
                return query.id
        except Exception as exc:  # noqa: BLE001 - storage outages surface as driver or OS errors
            logger.warning("interactive_query_save_failed tenant_id=%s", tenant_id, exc_info=exc)
            return None

    async def _track(self, tenant_id: str, input_tokens: int, output_tokens: int, purpose) -> None:
        try:
            await self._ledger.track_usage(tenant_id, input_tokens, output_tokens, purpose)
        except Exception as exc:  # noqa: BLE001 - storage outages surface as driver or OS errors
            logger.warning("credit_tracking_failed tenant_id=%s purpose=%s", tenant_id, purpose, exc_info=exc)
