from __future__ import annotations

import logging
import os
from logging.config import fileConfig
from pathlib import Path

from alembic import context
from sqlalchemy.engine import Connection, Engine
from dotenv import load_dotenv

from instantwin.db.engine import DEFAULT_SQLITE_URL, make_engine
from instantwin.db.utils import resolve_sqlite_url
from instantwin.models import Base  # noqa: F401 - import registers every campaign table

ROOT_DIR = Path(__file__).resolve().parents[1]
load_dotenv(ROOT_DIR / ".env")

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)
logger = logging.getLogger("alembic.env")

# Campaign, prize, participation and grant tables share one naming-convention
# MetaData, so constraint names match between SQLite and PostgreSQL.
target_metadata = Base.metadata


def _configured_database_url() -> str:
    env_url = os.getenv("DB_URL")
    if env_url:
        return resolve_sqlite_url(env_url, ROOT_DIR)
    return DEFAULT_SQLITE_URL


DATABASE_URL = _configured_database_url()

# Percent signs need to be escaped due to ConfigParser interpolation rules.
config.set_main_option("sqlalchemy.url", DATABASE_URL.replace("%", "%%"))


def include_object(obj, name, type_, reflected, compare_to) -> bool:
    """Leave tables the engine does not own alone when sharing a database."""
    if type_ == "table" and reflected and compare_to is None:
        return False
    return True


def process_revision_directives(context_, revision, directives) -> None:
    """Skip writing an empty revision when autogenerate finds nothing."""
    if getattr(config.cmd_opts, "autogenerate", False):
        script = directives[0]
        if script.upgrade_ops.is_empty():
            directives[:] = []
            logger.info("No changes to the instantwin schema detected.")


def _configure_kwargs() -> dict:
    return {
        "target_metadata": target_metadata,
        "compare_type": True,
        "compare_server_default": True,
        "include_object": include_object,
        "process_revision_directives": process_revision_directives,
    }


def run_migrations_offline() -> None:
    """Emit SQL for the campaign schema without a live connection."""

    context.configure(
        url=DATABASE_URL,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_configure_kwargs(),
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Migrate through the same engine the draw workflows use."""

    connectable: Engine | Connection = make_engine(database_url=DATABASE_URL)

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            render_as_batch=connection.engine.dialect.name == "sqlite",
            **_configure_kwargs(),
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
