from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from datapilot.persistence.db import SessionLocal
from datapilot.services.query_cache import QueryCache, question_hash, schema_hash
from datapilot.tests.utils.fakes import unique_id, unreachable_session_factory


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


def test_question_hash_ignores_case_and_spacing() -> None:
    assert question_hash("  Revenue   by REGION ") == question_hash("revenue by region")
    assert question_hash("revenue by region") != question_hash("revenue by product")


def test_schema_hash_tracks_tables_and_row_counts_only() -> None:
    base = "Table: orders (4 rows)\nColumns:\n  - \"id\" INTEGER"
    reformatted = "Table: orders (4 rows)\nColumns:\n  - \"id\" BIGINT\nSample rows:\n  id=1"
    grown = "Table: orders (5 rows)\nColumns:\n  - \"id\" INTEGER"
    assert schema_hash(base) == schema_hash(reformatted)
    assert schema_hash(base) != schema_hash(grown)


@pytest.mark.asyncio
async def test_cache_roundtrip_counts_hits_and_expires() -> None:
    clock = _Clock()
    cache = QueryCache(SessionLocal, ttl_seconds=3600, time_provider=clock)
    tenant_id = unique_id("t-cache")
    q_hash, s_hash = question_hash("total revenue"), schema_hash("Table: orders (4 rows)")

    assert await cache.get(tenant_id, q_hash, s_hash) is None
    await cache.set(tenant_id, "p1", "total revenue", q_hash, s_hash, {"success": True, "sql": "SELECT 1"})

    assert await cache.get(tenant_id, q_hash, s_hash) == {"success": True, "sql": "SELECT 1"}
    await cache.get(tenant_id, q_hash, s_hash)
    stats = await cache.stats(tenant_id)
    assert stats.entries == 1
    assert stats.total_hits == 2

    clock.now += timedelta(seconds=3601)
    assert await cache.get(tenant_id, q_hash, s_hash) is None
    assert await cache.cleanup() >= 1
    assert (await cache.stats(tenant_id)).entries == 0


@pytest.mark.asyncio
async def test_cache_set_overwrites_existing_entry() -> None:
    cache = QueryCache(SessionLocal, ttl_seconds=3600)
    tenant_id = unique_id("t-cache")
    q_hash, s_hash = question_hash("q"), schema_hash("Table: orders (4 rows)")

    await cache.set(tenant_id, "p1", "q", q_hash, s_hash, {"sql": "SELECT 1"})
    await cache.get(tenant_id, q_hash, s_hash)
    await cache.set(tenant_id, "p1", "q", q_hash, s_hash, {"sql": "SELECT 2"})

    assert await cache.get(tenant_id, q_hash, s_hash) == {"sql": "SELECT 2"}
    stats = await cache.stats(tenant_id)
    assert stats.entries == 1
    assert stats.total_hits == 1


@pytest.mark.asyncio
async def test_cache_entries_are_tenant_scoped() -> None:
    cache = QueryCache(SessionLocal, ttl_seconds=3600)
    tenant_a, tenant_b = unique_id("t-a"), unique_id("t-b")
    q_hash, s_hash = question_hash("q"), schema_hash("Table: orders (4 rows)")

    await cache.set(tenant_a, "p1", "q", q_hash, s_hash, {"sql": "SELECT 1"})
    assert await cache.get(tenant_b, q_hash, s_hash) is None


@pytest.mark.asyncio
async def test_invalidate_project_only_touches_that_project() -> None:
    cache = QueryCache(SessionLocal, ttl_seconds=3600)
    tenant_id = unique_id("t-cache")
    s_hash = schema_hash("Table: orders (4 rows)")

    await cache.set(tenant_id, "p1", "q1", question_hash("q1"), s_hash, {"sql": "SELECT 1"})
    await cache.set(tenant_id, "p2", "q2", question_hash("q2"), s_hash, {"sql": "SELECT 2"})

    assert await cache.invalidate_project("p1", tenant_id=tenant_id) == 1
    assert await cache.get(tenant_id, question_hash("q1"), s_hash) is None
    assert await cache.get(tenant_id, question_hash("q2"), s_hash) == {"sql": "SELECT 2"}
    assert await cache.invalidate_tenant(tenant_id) == 1


@pytest.mark.asyncio
async def test_invalidate_tenant_leaves_other_tenants_alone() -> None:
    cache = QueryCache(SessionLocal, ttl_seconds=3600)
    tenant_a, tenant_b = unique_id("t-a"), unique_id("t-b")
    q_hash, s_hash = question_hash("q"), schema_hash("Table: orders (4 rows)")

    await cache.set(tenant_a, "p1", "q", q_hash, s_hash, {"sql": "SELECT 1"})
    await cache.set(tenant_a, "p2", "q", question_hash("q2"), s_hash, {"sql": "SELECT 2"})
    await cache.set(tenant_b, "p1", "q", q_hash, s_hash, {"sql": "SELECT 3"})

    assert await cache.invalidate_tenant(tenant_a) == 2
    assert (await cache.stats(tenant_a)).entries == 0
    assert await cache.get(tenant_b, q_hash, s_hash) == {"sql": "SELECT 3"}


@pytest.mark.asyncio
async def test_cache_degrades_to_miss_when_storage_is_unreachable() -> None:
    cache = QueryCache(unreachable_session_factory, ttl_seconds=3600)
    q_hash, s_hash = question_hash("q"), schema_hash("Table: orders (4 rows)")

    assert await cache.get("t-down", q_hash, s_hash) is None
    await cache.set("t-down", "p1", "q", q_hash, s_hash, {"sql": "SELECT 1"})
    assert await cache.invalidate_tenant("t-down") == 0
    assert await cache.invalidate_project("p1") == 0
    assert await cache.cleanup() == 0
