"""Alembic environment for the batch tables and the job queue table.

Migrations run synchronously through psycopg2 against the same database the
service uses; the DSN comes from ``DatabaseConfig`` with the driver scheme
swapped in. There is no SQLAlchemy metadata: revisions are hand-written.
"""

from logging.config import fileConfig

from sqlalchemy import create_engine, pool

from alembic import context
from taxcredit_service.db import DatabaseConfig

if context.config.config_file_name is not None:
    fileConfig(context.config.config_file_name)

URL = DatabaseConfig.get_connection_string("postgresql+psycopg2")


def run_offline() -> None:
    """Emit SQL to stdout (``alembic upgrade head --sql``)."""
    context.configure(url=URL, literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()


def run_online() -> None:
    engine = create_engine(URL, poolclass=pool.NullPool)
    with engine.connect() as connection:
        context.configure(connection=connection)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_offline()
else:
    run_online()
