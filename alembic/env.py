"""
Alembic environment for the agent engine schema.

The target database is the one db.py connects to: DATABASE_URL when set
(PostgreSQL), otherwise agent_engine.db under DATA_DIR. Migrations are
raw-SQL style, so there is no declarative metadata to autogenerate from.

Revisions are tracked in agent_engine_version so the engine can share a
PostgreSQL database with other services that run their own Alembic history.
"""

import os
import sys
from logging.config import fileConfig

from sqlalchemy import engine_from_config, pool
from alembic import context

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from db import _database_url, _sqlite_path  # noqa: E402

VERSION_TABLE = "agent_engine_version"

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = None


def _sqlalchemy_url():
    url = _database_url()
    if not url:
        return f"sqlite:///{_sqlite_path()}"
    # SQLAlchemy 2.x only accepts the postgresql:// scheme
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    return url


config.set_main_option("sqlalchemy.url", _sqlalchemy_url())


def run_migrations_offline() -> None:
    """Emit the migration SQL to stdout without connecting."""
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        version_table=VERSION_TABLE,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Apply migrations over a live connection."""
    engine = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with engine.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            version_table=VERSION_TABLE,
            # batch mode rebuilds tables for ALTERs SQLite cannot do in place
            render_as_batch=connection.dialect.name == "sqlite",
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
