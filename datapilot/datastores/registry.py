from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path
from typing import Callable

from datapilot.core.config import Settings, get_settings
from datapilot.datastores.base import DataStore
from datapilot.datastores.sql_store import SqlDataStore

logger = logging.getLogger(__name__)

_SAFE_ID_RE = re.compile(r"^[A-Za-z0-9_.-]+$")

StoreFactory = Callable[[str, str], DataStore]


def _safe_id(value: str, label: str) -> str:
    # Tenant/project ids become path segments; reject anything that could escape the data dir.
    if not _SAFE_ID_RE.match(value) or value in {".", ".."}:
        raise ValueError(f"Invalid {label}: {value!r}")
    return value


class DataStoreRegistry:
    def __init__(
        self,
        settings: Settings | None = None,
        *,
        factory: StoreFactory | None = None,
    ) -> None:
        # One connected store per tenant/project, owned by this object rather than module state.
        self._settings = settings or get_settings()
        self._factory = factory or self._default_factory
        self._stores: dict[tuple[str, str], DataStore] = {}
        self._lock = asyncio.Lock()

    def store_url(self, tenant_id: str, project_id: str) -> str:
        tenant_id = _safe_id(tenant_id, "tenant_id")
        project_id = _safe_id(project_id, "project_id")
        template = self._settings.tenant_data_url_template
        if template:
            return template.format(tenant_id=tenant_id, project_id=project_id)
        tenant_dir = Path(self._settings.tenant_data_dir) / tenant_id
        tenant_dir.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{tenant_dir / f'{project_id}.db'}"

    def _default_factory(self, tenant_id: str, project_id: str) -> DataStore:
        return SqlDataStore(self.store_url(tenant_id, project_id))

    async def get(self, tenant_id: str, project_id: str) -> DataStore:
        key = (tenant_id, project_id)
        async with self._lock:
            store = self._stores.get(key)
            if store is None:
                store = self._factory(tenant_id, project_id)
                self._stores[key] = store
            if not store.connected:
                await store.connect()
        return store

    async def invalidate(self, tenant_id: str, project_id: str) -> None:
        # Drop the cached connection after uploads or deletes so the next call sees fresh data.
        async with self._lock:
            store = self._stores.pop((tenant_id, project_id), None)
        if store is not None:
            await store.disconnect()
            logger.info("data_store_invalidated tenant_id=%s project_id=%s", tenant_id, project_id)

    async def close_all(self) -> None:
        async with self._lock:
            stores = list(self._stores.values())
            self._stores.clear()
        for store in stores:
            await store.disconnect()
