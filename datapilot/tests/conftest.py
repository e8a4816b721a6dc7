from __future__ import annotations

import asyncio
import os
from pathlib import Path
import tempfile

import pytest

# Point the engine at a throwaway SQLite database before datapilot.persistence.db is imported.
_TEST_ROOT = Path(tempfile.mkdtemp(prefix="datapilot-tests-"))
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_ROOT / 'datapilot.db'}")
os.environ.setdefault("TENANT_DATA_DIR", str(_TEST_ROOT / "tenants"))
os.environ.setdefault("LLM_PROVIDER", "fake")
os.environ.setdefault("ANALYSIS_EXECUTION_MODE", "inline")
os.environ.setdefault("ANALYSIS_STEP_DELAY_MS", "0")
os.environ.setdefault("MAINTENANCE_ENABLED", "false")

from datapilot.core.config import get_settings  # noqa: E402
from datapilot.domain.models import Base  # noqa: E402
from datapilot.persistence.db import engine  # noqa: E402
from datapilot.services.telemetry import reset_telemetry  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def create_schema() -> None:
    # Create tables once per session; tests isolate themselves with unique tenant ids.
    async def _create() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        await engine.dispose()

    asyncio.run(_create())
    yield


@pytest.fixture(autouse=True)
async def dispose_engine_between_tests() -> None:
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    yield
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_state_between_tests() -> None:
    yield
    get_settings.cache_clear()
    reset_telemetry()
