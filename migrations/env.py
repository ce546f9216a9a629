# migrations/env.py
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool

from models import schema  # noqa: F401  registers the tables on Base.metadata
from models.base import Base, database_url, make_engine

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata

_COMPARE = {"compare_type": True, "compare_server_default": True,
            "render_as_batch": database_url().startswith("sqlite")}


def run_migrations_offline() -> None:
    """Emit SQL to stdout (alembic upgrade --sql)."""
    context.configure(url=database_url(), target_metadata=target_metadata,
                      literal_binds=True, **_COMPARE)
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    engine = make_engine(database_url(), poolclass=pool.NullPool)
    with engine.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata,
                          **_COMPARE)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
