from __future__ import annotations

import os
import tempfile

# Point settings at a throwaway SQLite file before any lexhost module builds the engine.
_DB_DIR = tempfile.mkdtemp(prefix="lexhost-tests-")
_DB_PATH = os.path.join(_DB_DIR, "lexhost.db")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_PATH}"
os.environ["ADMIN_SECRET"] = "test-admin-secret"
os.environ["CURSOR_SECRET"] = "test-cursor-secret"

import pytest  # noqa: E402
from sqlalchemy import create_engine, delete  # noqa: E402

from lexhost.core.config import get_settings  # noqa: E402
from lexhost.domain.models import Admin, BackfillJob, Base, Lexicon, StoredRecord  # noqa: E402
from lexhost.persistence.db import SessionLocal, engine  # noqa: E402
from lexhost.services.telemetry import reset_telemetry  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def create_schema() -> None:
    # Build tables once with a sync engine; the async engine shares the same file.
    sync_engine = create_engine(f"sqlite:///{_DB_PATH}")
    Base.metadata.create_all(sync_engine)
    sync_engine.dispose()
    yield


@pytest.fixture(autouse=True)
async def dispose_engine_between_tests() -> None:
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    yield
    await engine.dispose()


@pytest.fixture(autouse=True)
async def reset_tables_between_tests() -> None:
    async with SessionLocal() as session:
        for model in (StoredRecord, Lexicon, Admin, BackfillJob):
            await session.execute(delete(model))
        await session.commit()
    reset_telemetry()
    yield


@pytest.fixture(autouse=True)
def clear_settings_cache() -> None:
    # Tests that monkeypatch env vars must not leak cached settings.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
