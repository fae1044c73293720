"""
ledger_service/migrations/env.py — Alembic environment.

The database URL comes from ledger_service.config, so migrations see the
same .env handling as the app: DATABASE_URL, or TEST_DATABASE_URL when
TEST_RUN=1. Run from the project root: `alembic upgrade head`.
"""

from __future__ import annotations

import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from ledger_service.app.extensions import db
from ledger_service.app.models import (  # noqa: F401
    dirty_group,
    expense,
    expense_payer,
    group,
    membership,
)
from ledger_service.config import config_by_name

target_metadata = db.metadata

_config_name = "testing" if os.getenv("TEST_RUN") else "development"
db_url = config_by_name[_config_name].SQLALCHEMY_DATABASE_URI

config = context.config
# configparser interpolation: a literal % in a password must be doubled.
config.set_main_option("sqlalchemy.url", db_url.replace("%", "%%"))

if config.config_file_name is not None:
    fileConfig(config.config_file_name)


def run_migrations_offline() -> None:
    context.configure(
        url=db_url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            render_as_batch=connection.dialect.name == "sqlite",
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
