from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from datapilot.core.config import Settings, get_settings
from datapilot.datastores.registry import DataStoreRegistry
from datapilot.providers.llm.base import CompletionProvider
from datapilot.providers.llm.factory import get_completion_provider
from datapilot.services.analysis.dispatch import AnalysisDispatcher
from datapilot.services.analysis.runner import AnalysisRunner, JobCancellations
from datapilot.services.analysis.service import BackgroundAnalysisService
from datapilot.services.ask import AskService
from datapilot.services.credits import CreditLedger
from datapilot.services.insights import InsightGenerator
from datapilot.services.interactive import InteractiveAskFlow
from datapilot.services.query_cache import QueryCache
from datapilot.services.rate_limit import RateLimiter, limits_from_settings


logger = logging.getLogger(__name__)


@dataclass
class Services:
    # Built once per process and handed to routes and workers; nothing here is module state.
    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    provider: CompletionProvider
    data_stores: DataStoreRegistry
    ask: AskService
    cache: QueryCache
    rate_limiter: RateLimiter
    ledger: CreditLedger
    insights: InsightGenerator
    interactive: InteractiveAskFlow
    analysis: BackgroundAnalysisService

    async def aclose(self) -> None:
        await self.analysis.dispatcher.shutdown()
        await self.data_stores.close_all()


def build_services(
    settings: Settings | None = None,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    provider: CompletionProvider | None = None,
    data_stores: DataStoreRegistry | None = None,
    time_provider: Callable[[], datetime] | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Services:
    settings = settings or get_settings()
    if session_factory is None:
        # Import lazily so tests can point DATABASE_URL elsewhere before the engine exists.
        from datapilot.persistence.db import SessionLocal

        session_factory = SessionLocal
    provider = provider or get_completion_provider(settings)
    data_stores = data_stores or DataStoreRegistry(settings)

    ask = AskService(provider, settings)
    cache = QueryCache(
        session_factory,
        ttl_seconds=settings.query_cache_ttl_s,
        time_provider=time_provider,
    )
    rate_limiter = RateLimiter(
        session_factory,
        limits=limits_from_settings(settings),
        max_concurrent_jobs=settings.analysis_max_concurrent_jobs,
        cleanup_horizon_seconds=settings.rate_limit_cleanup_horizon_s,
        time_provider=time_provider,
    )
    ledger = CreditLedger(session_factory, settings, time_provider=time_provider)
    insights = InsightGenerator(provider, settings)
    cancellations = JobCancellations()
    runner = AnalysisRunner(
        session_factory=session_factory,
        provider=provider,
        ask_service=ask,
        insight_generator=insights,
        ledger=ledger,
        cancellations=cancellations,
        settings=settings,
        sleep=sleep,
        time_provider=time_provider,
    )
    analysis = BackgroundAnalysisService(
        session_factory=session_factory,
        ledger=ledger,
        dispatcher=AnalysisDispatcher(runner, settings),
        cancellations=cancellations,
        settings=settings,
    )
    interactive = InteractiveAskFlow(
        session_factory=session_factory,
        ask_service=ask,
        cache=cache,
        ledger=ledger,
        insight_generator=insights,
    )
    logger.info(
        "services_built provider=%s analysis_mode=%s",
        provider.name,
        settings.analysis_execution_mode,
    )
    return Services(
        settings=settings,
        session_factory=session_factory,
        provider=provider,
        data_stores=data_stores,
        ask=ask,
        cache=cache,
        rate_limiter=rate_limiter,
        ledger=ledger,
        insights=insights,
        interactive=interactive,
        analysis=analysis,
    )
