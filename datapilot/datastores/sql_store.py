from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Sequence

from sqlalchemy import create_engine, event, inspect
from sqlalchemy.engine import Connection, Engine

from datapilot.core.errors import DataStoreNotConnectedError
from datapilot.datastores.base import NO_TABLES_MARKER, DataStoreResult

logger = logging.getLogger(__name__)

_SAMPLE_ROWS = 3
_NUMERIC_TYPE_HINTS = ("INT", "REAL", "FLOAT", "DOUBLE", "NUMERIC", "DECIMAL")


def _json_safe(value: Any) -> Any:
    # Coerce driver types into JSON-serializable values for caching and API responses.
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    return value


def _enable_query_only(dbapi_connection, _connection_record) -> None:
    # SQLite refuses writes on this connection even if a statement slips past validation.
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA query_only = ON")
    cursor.close()


class SqlDataStore:
    """Tenant data store backed by a synchronous SQLAlchemy engine.

    Every call runs in a worker thread. A caller that stops waiting (for example on
    a timeout) does not interrupt the statement already running in that thread.
    """

    def __init__(self, url: str, *, read_only: bool = True) -> None:
        self._url = url
        self._read_only = read_only
        self._engine: Engine | None = None

    @property
    def url(self) -> str:
        return self._url

    @property
    def connected(self) -> bool:
        return self._engine is not None

    async def connect(self) -> None:
        if self._engine is not None:
            return
        connect_args: dict[str, Any] = {}
        is_sqlite = self._url.startswith("sqlite")
        if is_sqlite:
            connect_args["check_same_thread"] = False
        engine = create_engine(self._url, connect_args=connect_args, pool_pre_ping=True)
        if is_sqlite and self._read_only:
            event.listen(engine, "connect", _enable_query_only)
        self._engine = engine
        logger.info("data_store_connected dialect=%s", engine.dialect.name)

    async def disconnect(self) -> None:
        engine, self._engine = self._engine, None
        if engine is not None:
            await asyncio.to_thread(engine.dispose)

    def _require_engine(self) -> Engine:
        if self._engine is None:
            raise DataStoreNotConnectedError("Not connected. Call connect() first.")
        return self._engine

    async def execute(self, sql: str, params: Sequence[Any] | None = None) -> DataStoreResult:
        engine = self._require_engine()
        return await asyncio.to_thread(self._execute_sync, engine, sql, params)

    async def get_tables(self) -> list[str]:
        engine = self._require_engine()
        return await asyncio.to_thread(self._tables_sync, engine)

    async def get_columns(self, table: str) -> list[dict[str, str]]:
        engine = self._require_engine()
        return await asyncio.to_thread(self._columns_sync, engine, table)

    async def gather_schema_context(self) -> str:
        engine = self._require_engine()
        return await asyncio.to_thread(self._schema_context_sync, engine)

    @staticmethod
    def _execute_sync(engine: Engine, sql: str, params: Sequence[Any] | None) -> DataStoreResult:
        # Pass SQL straight to the driver so literal colons in generated text are not read as binds.
        with engine.connect() as conn:
            if params:
                result = conn.exec_driver_sql(sql, tuple(params))
            else:
                result = conn.exec_driver_sql(sql)
            columns = list(result.keys())
            rows = [
                {key: _json_safe(value) for key, value in row.items()}
                for row in result.mappings().all()
            ]
            conn.rollback()
        return DataStoreResult(rows=rows, columns=columns)

    @staticmethod
    def _tables_sync(engine: Engine) -> list[str]:
        with engine.connect() as conn:
            return sorted(inspect(conn).get_table_names())

    @staticmethod
    def _columns_sync(engine: Engine, table: str) -> list[dict[str, str]]:
        with engine.connect() as conn:
            return [
                {"name": column["name"], "type": str(column["type"])}
                for column in inspect(conn).get_columns(table)
            ]

    def _schema_context_sync(self, engine: Engine) -> str:
        with engine.connect() as conn:
            tables = sorted(inspect(conn).get_table_names())
            if not tables:
                return f"{NO_TABLES_MARKER}. Upload a file to get started."
            sections = [self._describe_table(conn, table) for table in tables]
        return "\n\n".join(sections)

    @staticmethod
    def _describe_table(conn: Connection, table: str) -> str:
        quote = conn.dialect.identifier_preparer.quote
        quoted_table = quote(table)
        row_count = conn.exec_driver_sql(f"SELECT COUNT(*) FROM {quoted_table}").scalar() or 0
        columns = inspect(conn).get_columns(table)
        # Keep "Table: name (N rows)" stable; the query cache derives its schema hash from it.
        lines = [f"Table: {table} ({int(row_count)} rows)", "Columns:"]
        numeric_columns: list[str] = []
        for column in columns:
            type_name = str(column["type"]) or "TEXT"
            lines.append(f'  - "{column["name"]}" {type_name}')
            if any(hint in type_name.upper() for hint in _NUMERIC_TYPE_HINTS):
                numeric_columns.append(column["name"])

        sample = conn.exec_driver_sql(f"SELECT * FROM {quoted_table} LIMIT {_SAMPLE_ROWS}")
        sample_rows = [dict(row) for row in sample.mappings().all()]
        if sample_rows:
            lines.append("Sample rows:")
            for row in sample_rows:
                rendered = ", ".join(f"{key}={_json_safe(value)!r}" for key, value in row.items())
                lines.append(f"  {rendered}")

        if numeric_columns and row_count:
            lines.append("Ranges:")
            for name in numeric_columns:
                quoted = quote(name)
                low, high = conn.exec_driver_sql(
                    f"SELECT MIN({quoted}), MAX({quoted}) FROM {quoted_table}"
                ).one()
                lines.append(f'  - "{name}": {_json_safe(low)} to {_json_safe(high)}')
        return "\n".join(lines)
