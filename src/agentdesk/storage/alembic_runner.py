"""Programmatic Alembic entry points for the job store schema."""

from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from sqlalchemy import Engine

logger = logging.getLogger(__name__)

_PROJECT_ROOT = Path(__file__).resolve().parents[3]


def build_alembic_config(db_path: Path) -> Config:
    """Alembic config pointing the repo migrations at ``db_path``."""

    config = Config(str(_PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(_PROJECT_ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def upgrade_head(db_path: Path) -> None:
    """Apply migrations up to head; a no-op for an up-to-date database."""

    command.upgrade(build_alembic_config(db_path), "head")
    logger.debug("Job store schema at head db_path=%s", db_path)


def current_revision(engine: Engine) -> str | None:
    """Revision stamped in the database, ``None`` before the first migration."""

    with engine.connect() as connection:
        return MigrationContext.configure(connection).get_current_revision()
