import logging

import pytest

from db import DatabaseManager
from logger import parse_log_level


@pytest.fixture
async def fresh_manager():
    await DatabaseManager.cleanup_all_instances()
    yield DatabaseManager()
    await DatabaseManager.cleanup_all_instances()


@pytest.fixture
def postgres_env(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("TEST_DATABASE_NAME", raising=False)
    monkeypatch.delenv("TEST_MODE", raising=False)
    monkeypatch.setenv("POSTGRES_USER", "importer")
    monkeypatch.setenv("POSTGRES_PASSWORD", "secret")
    monkeypatch.setenv("POSTGRES_HOST", "db.local")
    monkeypatch.setenv("POSTGRES_DB", "history")
    monkeypatch.setenv("DB_PORT", "5433")


async def test_url_from_postgres_settings(postgres_env, fresh_manager):
    url = fresh_manager.create_database_url()

    assert url.drivername == "postgresql+asyncpg"
    assert (url.username, url.host, url.port, url.database) == ("importer", "db.local", 5433, "history")


async def test_test_mode_uses_test_db(postgres_env, monkeypatch, fresh_manager):
    monkeypatch.setenv("TEST_MODE", "true")
    assert fresh_manager.create_database_url().database == "test_db"

    monkeypatch.setenv("TEST_DATABASE_NAME", "history_ci")
    assert fresh_manager.create_database_url().database == "history_ci"


async def test_database_url_wins(postgres_env, monkeypatch, fresh_manager):
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///local.db")
    url = fresh_manager.create_database_url()

    assert url.get_backend_name() == "sqlite"
    assert fresh_manager._engine_options(url) == {"echo": False}


async def test_one_manager_per_process(fresh_manager):
    assert DatabaseManager() is fresh_manager


@pytest.mark.parametrize("value, level", [("d", logging.DEBUG), ("info", logging.INFO),
                                          ("w", logging.WARNING), ("error", logging.ERROR)])
def test_parse_log_level(value, level):
    assert parse_log_level(value) == level


def test_parse_log_level_rejects_unknown():
    with pytest.raises(ValueError):
        parse_log_level("loud")
