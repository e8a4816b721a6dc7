from __future__ import annotations

import asyncio

import pytest

from datapilot.core.config import Settings
from datapilot.datastores.base import DataStoreResult
from datapilot.datastores.sql_store import SqlDataStore
from datapilot.providers.llm.fake import FakeCompletionProvider
from datapilot.services.ask import AskService, infer_column_type
from datapilot.tests.utils.fakes import REVENUE_BY_REGION_SQL, connected_orders_store, query_reply


class _SlowStore:
    # Minimal store whose execute never finishes within the test timeout.
    connected = True

    async def connect(self) -> None:
        return None

    async def disconnect(self) -> None:
        return None

    async def execute(self, sql, params=None) -> DataStoreResult:
        await asyncio.sleep(5)
        return DataStoreResult(rows=[])

    async def get_tables(self) -> list[str]:
        return ["orders"]

    async def get_columns(self, table: str) -> list[dict[str, str]]:
        return []

    async def gather_schema_context(self) -> str:
        return "Table: orders (1 rows)"


class _BrokenSchemaStore(_SlowStore):
    async def gather_schema_context(self) -> str:
        raise RuntimeError("file is corrupt")


@pytest.mark.asyncio
async def test_ask_returns_rows_and_metadata(tmp_path) -> None:
    store = await connected_orders_store(tmp_path / "orders.db")
    provider = FakeCompletionProvider([query_reply(REVENUE_BY_REGION_SQL)])
    try:
        result = await AskService(provider).ask(store, "revenue by region")
    finally:
        await store.disconnect()

    assert result.success is True
    assert result.error_type is None
    assert result.columns == ["region", "total_revenue"]
    assert result.column_types == {"region": "TEXT", "total_revenue": "REAL"}
    assert [row["region"] for row in result.rows] == ["north", "south", "west"]
    assert result.row_count == 3
    assert result.truncated is False
    assert result.visualization_type == "bar_chart"
    assert result.input_tokens == 100
    assert result.output_tokens == 50
    assert result.query_time_ms is not None
    assert "Table: orders (4 rows)" in provider.calls[0]["system_prompt"]


@pytest.mark.asyncio
async def test_ask_truncates_to_max_rows(tmp_path) -> None:
    store = await connected_orders_store(tmp_path / "orders.db")
    provider = FakeCompletionProvider([query_reply('SELECT * FROM "orders"')])
    try:
        result = await AskService(provider, Settings(ask_max_rows=2)).ask(store, "all orders")
    finally:
        await store.disconnect()

    assert len(result.rows) == 2
    assert result.row_count == 4
    assert result.truncated is True


@pytest.mark.asyncio
async def test_ask_without_configured_provider(tmp_path) -> None:
    store = await connected_orders_store(tmp_path / "orders.db")
    provider = FakeCompletionProvider(configured=False)
    try:
        result = await AskService(provider).ask(store, "revenue by region")
    finally:
        await store.disconnect()

    assert result.success is False
    assert result.error_type == "configuration_error"
    assert provider.calls == []


@pytest.mark.asyncio
async def test_ask_on_empty_store_reports_no_data(tmp_path) -> None:
    store = SqlDataStore(f"sqlite:///{tmp_path / 'empty.db'}")
    await store.connect()
    provider = FakeCompletionProvider()
    try:
        result = await AskService(provider).ask(store, "anything?")
    finally:
        await store.disconnect()

    assert result.error_type == "no_data"
    assert provider.calls == []


@pytest.mark.asyncio
async def test_ask_maps_schema_failures() -> None:
    result = await AskService(FakeCompletionProvider()).ask(_BrokenSchemaStore(), "anything?")
    assert result.error_type == "schema_error"
    assert "file is corrupt" in (result.error or "")


@pytest.mark.asyncio
async def test_ask_maps_provider_failures_to_api_error(tmp_path) -> None:
    store = await connected_orders_store(tmp_path / "orders.db")
    provider = FakeCompletionProvider([RuntimeError("upstream down")])
    try:
        result = await AskService(provider).ask(store, "revenue by region")
    finally:
        await store.disconnect()

    assert result.error_type == "api_error"
    assert result.input_tokens == 0


@pytest.mark.asyncio
async def test_ask_rejects_unsafe_sql_but_keeps_reply(tmp_path) -> None:
    store = await connected_orders_store(tmp_path / "orders.db")
    provider = FakeCompletionProvider([query_reply('DELETE FROM "orders"')])
    try:
        result = await AskService(provider).ask(store, "remove everything")
        remaining = await store.execute('SELECT COUNT(*) AS n FROM "orders"')
    finally:
        await store.disconnect()

    assert result.error_type == "sql_validation_error"
    assert result.sql == 'DELETE FROM "orders"'
    assert result.explanation
    assert result.input_tokens == 100
    assert remaining.rows == [{"n": 4}]


@pytest.mark.asyncio
async def test_ask_reports_execution_errors(tmp_path) -> None:
    store = await connected_orders_store(tmp_path / "orders.db")
    provider = FakeCompletionProvider([query_reply('SELECT * FROM "missing_table"')])
    try:
        result = await AskService(provider).ask(store, "what is missing?")
    finally:
        await store.disconnect()

    assert result.error_type == "sql_execution_error"
    assert (result.error or "").startswith("Query failed:")


@pytest.mark.asyncio
async def test_ask_times_out_slow_queries() -> None:
    provider = FakeCompletionProvider([query_reply('SELECT * FROM "orders"')])
    result = await AskService(provider).ask(_SlowStore(), "slow question", timeout_ms=20)
    assert result.error_type == "timeout_error"
    assert result.sql == 'SELECT * FROM "orders"'


def test_infer_column_type() -> None:
    assert infer_column_type(3) == "INTEGER"
    assert infer_column_type(3.0) == "INTEGER"
    assert infer_column_type(3.5) == "REAL"
    assert infer_column_type(True) == "TEXT"
    assert infer_column_type(None) == "TEXT"
    assert infer_column_type("north") == "TEXT"
