import os
import sys
from logging.config import fileConfig
from sqlalchemy import create_engine, pool
from alembic import context
from dotenv import load_dotenv

sys.path.append(os.path.join(os.path.dirname(os.path.dirname(__file__)), "src"))

load_dotenv()

from models import Base

config = context.config

def get_database_url():
    """Sync database URL for Alembic (psycopg2 instead of asyncpg)"""
    if database_url := os.environ.get("DATABASE_URL"):
        return database_url.replace("+asyncpg", "").replace("+aiosqlite", "")

    if test_db := os.environ.get("TEST_DATABASE_NAME"):
        database_name = test_db
    elif os.getenv("TEST_MODE"):
        database_name = "test_db"
    else:
        database_name = os.environ.get("POSTGRES_DB", "history")

    return f"postgresql://{os.environ['POSTGRES_USER']}:{os.environ['POSTGRES_PASSWORD']}@{os.environ['POSTGRES_HOST']}:{os.environ['DB_PORT']}/{database_name}"

config.set_main_option("sqlalchemy.url", get_database_url())

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata

def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode."""
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()

def run_migrations_online() -> None:
    """Run migrations in 'online' mode."""
    connectable = create_engine(
        config.get_main_option("sqlalchemy.url"),
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata
        )

        with context.begin_transaction():
            context.run_migrations()

if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
