from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence


NO_TABLES_MARKER = "No tables found"


@dataclass(frozen=True)
class DataStoreResult:
    rows: list[dict[str, Any]]
    columns: list[str] = field(default_factory=list)


class DataStore(Protocol):
    async def connect(self) -> None:
        ...

    async def disconnect(self) -> None:
        ...

    @property
    def connected(self) -> bool:
        ...

    async def execute(self, sql: str, params: Sequence[Any] | None = None) -> DataStoreResult:
        ...

    async def get_tables(self) -> list[str]:
        ...

    async def get_columns(self, table: str) -> list[dict[str, str]]:
        ...

    async def gather_schema_context(self) -> str:
        ...
