"""Alembic entrypoint for the registration schema (PostgreSQL only)."""

import asyncio
import sys
from logging.config import fileConfig
from pathlib import Path

from alembic import context
from sqlalchemy import pool
from sqlalchemy.ext.asyncio import async_engine_from_config

sys.path.append(str(Path(__file__).resolve().parents[3]))

from libs.common.config import get_settings  # noqa: E402
from libs.db.base import Base  # noqa: E402
from services.registration_service import models  # noqa: E402

settings = get_settings()
config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

if settings.is_sqlite:
    raise RuntimeError(
        "Registration migrations target PostgreSQL; SQLite databases are built "
        "with metadata.create_all()"
    )

target_metadata = Base.metadata
OWNED_TABLES = frozenset(model.__tablename__ for model in models.ALL_MODELS)
VERSION_TABLE = "alembic_version_registration"

config.set_main_option("sqlalchemy.url", settings.DATABASE_URL.replace("%", "%%"))


def include_object(obj, name, type_, reflected, compare_to):
    if type_ == "table":
        return name in OWNED_TABLES
    table = getattr(obj, "table", None)
    if table is not None:
        return table.name in OWNED_TABLES
    return True


def _configure(**kwargs) -> None:
    context.configure(
        target_metadata=target_metadata,
        version_table=VERSION_TABLE,
        include_object=include_object,
        compare_type=True,
        **kwargs,
    )
    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    engine = async_engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
        connect_args={"prepare_threshold": 0},
    )
    async with engine.connect() as connection:
        await connection.run_sync(lambda conn: _configure(connection=conn))
    await engine.dispose()


if context.is_offline_mode():
    _configure(
        url=config.get_main_option("sqlalchemy.url"),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
else:
    asyncio.run(run_migrations_online())
