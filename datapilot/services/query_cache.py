from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import hashlib
import logging
import re
from typing import Any, Callable
from uuid import uuid4

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from datapilot.domain.models import QueryCacheEntry
from datapilot.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")
_TABLE_LINE_RE = re.compile(r"Table: (\S+).*?(\d+) rows")


@dataclass(frozen=True)
class CacheStats:
    entries: int
    total_hits: int
    last_cached_at: datetime | None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _sha256(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def question_hash(question: str) -> str:
    # Case and spacing differences should hit the same entry.
    normalized = _WHITESPACE_RE.sub(" ", (question or "").strip().lower())
    return _sha256(normalized)


def schema_hash(schema_context: str) -> str:
    # Only table names and row counts feed the hash, so formatting changes keep entries valid.
    entries = sorted(
        f"{name}:{count}" for name, count in _TABLE_LINE_RE.findall(schema_context or "")
    )
    return _sha256("|".join(entries))


class QueryCache:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        ttl_seconds: int = 3600,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._ttl = timedelta(seconds=ttl_seconds)
        # Allow time injection for deterministic expiry tests.
        self._time_provider = time_provider or _utc_now

    async def get(self, tenant_id: str, q_hash: str, s_hash: str) -> dict[str, Any] | None:
        now = self._time_provider()
        try:
            async with self._session_factory() as session:
                entry = (
                    await session.execute(
                        select(QueryCacheEntry).where(
                            QueryCacheEntry.tenant_id == tenant_id,
                            QueryCacheEntry.question_hash == q_hash,
                            QueryCacheEntry.schema_hash == s_hash,
                            QueryCacheEntry.expires_at > now,
                        )
                    )
                ).scalar_one_or_none()
                if entry is None:
                    increment_counter("query_cache_miss_total")
                    return None
                await session.execute(
                    update(QueryCacheEntry)
                    .where(QueryCacheEntry.id == entry.id)
                    .values(hit_count=QueryCacheEntry.hit_count + 1)
                )
                await session.commit()
                increment_counter("query_cache_hit_total")
                return dict(entry.result_json)
        except Exception as exc:  # noqa: BLE001 - storage outages surface as driver or OS errors
            # Treat storage failures as a miss so questions still get answered.
            logger.warning("query_cache_get_failed tenant_id=%s", tenant_id, exc_info=exc)
            return None

    async def set(
        self,
        tenant_id: str,
        project_id: str,
        question: str,
        q_hash: str,
        s_hash: str,
        result: dict[str, Any],
    ) -> None:
        now = self._time_provider()
        expires_at = now + self._ttl
        try:
            async with self._session_factory() as session:
                if await self._overwrite(
                    session, tenant_id, project_id, question, q_hash, s_hash, result, now, expires_at
                ):
                    await session.commit()
                    return
                session.add(
                    QueryCacheEntry(
                        id=uuid4().hex,
                        tenant_id=tenant_id,
                        project_id=project_id,
                        question=question,
                        question_hash=q_hash,
                        schema_hash=s_hash,
                        result_json=result,
                        hit_count=0,
                        created_at=now,
                        expires_at=expires_at,
                    )
                )
                try:
                    await session.commit()
                except IntegrityError:
                    # A concurrent writer created the row first; last write still wins.
                    await session.rollback()
                    await self._overwrite(
                        session, tenant_id, project_id, question, q_hash, s_hash, result, now, expires_at
                    )
                    await session.commit()
        except Exception as exc:  # noqa: BLE001 - storage outages surface as driver or OS errors
            logger.warning("query_cache_set_failed tenant_id=%s", tenant_id, exc_info=exc)

    @staticmethod
    async def _overwrite(
        session: AsyncSession,
        tenant_id: str,
        project_id: str,
        question: str,
        q_hash: str,
        s_hash: str,
        result: dict[str, Any],
        now: datetime,
        expires_at: datetime,
    ) -> bool:
        outcome = await session.execute(
            update(QueryCacheEntry)
            .where(
                QueryCacheEntry.tenant_id == tenant_id,
                QueryCacheEntry.question_hash == q_hash,
                QueryCacheEntry.schema_hash == s_hash,
            )
            .values(
                project_id=project_id,
                question=question,
                result_json=result,
                hit_count=0,
                created_at=now,
                expires_at=expires_at,
            )
        )
        return bool(outcome.rowcount)

    async def invalidate_tenant(self, tenant_id: str) -> int:
        return await self._delete(
            delete(QueryCacheEntry).where(QueryCacheEntry.tenant_id == tenant_id),
            scope="tenant",
            key=tenant_id,
        )

    async def invalidate_project(self, project_id: str, *, tenant_id: str | None = None) -> int:
        statement = delete(QueryCacheEntry).where(QueryCacheEntry.project_id == project_id)
        if tenant_id is not None:
            statement = statement.where(QueryCacheEntry.tenant_id == tenant_id)
        return await self._delete(
            statement,
            scope="project",
            key=project_id,
        )

    async def cleanup(self) -> int:
        deleted = await self._delete(
            delete(QueryCacheEntry).where(QueryCacheEntry.expires_at <= self._time_provider()),
            scope="expired",
            key="*",
        )
        if deleted:
            logger.info("query_cache_cleanup deleted=%s", deleted)
        return deleted

    async def _delete(self, statement, *, scope: str, key: str) -> int:
        try:
            async with self._session_factory() as session:
                result = await session.execute(statement)
                await session.commit()
                return result.rowcount or 0
        except Exception as exc:  # noqa: BLE001 - storage outages surface as driver or OS errors
            logger.warning("query_cache_delete_failed scope=%s key=%s", scope, key, exc_info=exc)
            return 0

    async def stats(self, tenant_id: str) -> CacheStats:
        async with self._session_factory() as session:
            row = (
                await session.execute(
                    select(
                        func.count(QueryCacheEntry.id),
                        func.coalesce(func.sum(QueryCacheEntry.hit_count), 0),
                        func.max(QueryCacheEntry.created_at),
                    ).where(QueryCacheEntry.tenant_id == tenant_id)
                )
            ).one()
        return CacheStats(entries=int(row[0] or 0), total_hits=int(row[1] or 0), last_cached_at=row[2])
