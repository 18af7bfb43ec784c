"""Apply the Alembic migrations shipped in ``handoff_hub/migrations``.

Migration modules are named ``NNN_description.py`` and expose ``upgrade()``
written against :mod:`alembic.op`. They run in file-name order, each inside
its own transaction, and the ids of applied migrations are recorded in
``handoff_hub_migrations`` so running this again only applies new files.
"""

from __future__ import annotations

import importlib
import logging
from pathlib import Path

from alembic.operations import Operations
from alembic.runtime.migration import MigrationContext
from sqlalchemy import Column, DateTime, Engine, MetaData, String, Table, insert, select

from ..core.clock import utcnow

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parents[1] / "migrations"
MIGRATIONS_PACKAGE = "handoff_hub.migrations"

applied_migrations = Table(
    "handoff_hub_migrations",
    MetaData(),
    Column("id", String(length=128), primary_key=True),
    Column("applied_at", DateTime(timezone=True), nullable=False),
)


def migration_ids() -> list[str]:
    return sorted(
        path.stem
        for path in MIGRATIONS_DIR.glob("[0-9][0-9][0-9]_*.py")
        if path.is_file()
    )


def apply_migrations(engine: Engine) -> list[str]:
    """Apply every migration not yet recorded and return their ids."""

    applied_migrations.create(engine, checkfirst=True)
    with engine.connect() as conn:
        done = set(conn.execute(select(applied_migrations.c.id)).scalars())

    applied: list[str] = []
    for migration_id in migration_ids():
        if migration_id in done:
            continue
        module = importlib.import_module(f"{MIGRATIONS_PACKAGE}.{migration_id}")
        with engine.begin() as conn:
            context = MigrationContext.configure(connection=conn)
            with Operations.context(context):
                module.upgrade()
            conn.execute(
                insert(applied_migrations).values(id=migration_id, applied_at=utcnow())
            )
        logger.info("Applied migration %s", migration_id)
        applied.append(migration_id)
    return applied


__all__ = ["apply_migrations", "migration_ids"]
