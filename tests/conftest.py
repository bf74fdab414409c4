import os

import pytest

from db import DatabaseManager, get_db_manager
from models import Base


@pytest.fixture(scope="function")
async def test_db(tmp_path, monkeypatch):
    """Fresh database per test: a SQLite file, or TEST_DATABASE_URL when set."""
    url = os.environ.get("TEST_DATABASE_URL") or f"sqlite+aiosqlite:///{tmp_path / 'history.db'}"
    monkeypatch.setenv("DATABASE_URL", url)
    monkeypatch.setenv("TEST_MODE", "true")

    # Reset DatabaseManager to pick up the new environment
    await DatabaseManager.cleanup_all_instances()

    manager = get_db_manager()
    await manager.initialize()

    engine = await manager.get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield manager

    await DatabaseManager.cleanup_all_instances()
