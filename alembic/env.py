import os
import sys
from logging.config import fileConfig

from dotenv import load_dotenv
from sqlalchemy import engine_from_config, pool

from alembic import context

# Make the messenger package importable when alembic runs from the project root
sys.path.insert(0, os.path.realpath(os.path.join(os.path.dirname(__file__), "..")))

from messenger.models import metadata  # noqa: E402

load_dotenv()

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)


def sync_database_url(url: str) -> str:
    """Migrations run on the synchronous driver of the configured database."""
    return url.replace("+aiosqlite", "").replace("+asyncpg", "+psycopg2")


# An explicitly configured URL (e.g. from a test harness) wins over the environment
if not config.get_main_option("sqlalchemy.url") and os.getenv("DATABASE_URL"):
    config.set_main_option("sqlalchemy.url", sync_database_url(os.environ["DATABASE_URL"]))

target_metadata = metadata


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode, emitting SQL without a connection."""
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        render_as_batch=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode against a live connection."""
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            render_as_batch=True,
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
