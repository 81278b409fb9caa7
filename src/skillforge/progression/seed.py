"""Achievement catalog seed, derived from the static rule table."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from skillforge.db.models import Achievement
from skillforge.progression.achievements import ACHIEVEMENT_RULES

logger = logging.getLogger(__name__)


def dialect_insert(db: AsyncSession):
    """PostgreSQL and SQLite share the ON CONFLICT upsert API."""
    if db.bind is not None and db.bind.dialect.name == "sqlite":
        return sqlite_insert
    return pg_insert


async def seed_achievements(db: AsyncSession) -> int:
    """Upsert every achievement rule into the catalog. Returns rows seeded."""
    insert = dialect_insert(db)
    now = datetime.now(timezone.utc)
    seeded = 0
    for rule in ACHIEVEMENT_RULES:
        stmt = insert(Achievement).values(**rule.catalog_row(), created_at=now)
        stmt = stmt.on_conflict_do_update(
            index_elements=["id"],
            set_={
                "name": stmt.excluded.name,
                "description": stmt.excluded.description,
                "rarity": stmt.excluded.rarity,
                "icon_name": stmt.excluded.icon_name,
            },
        )
        await db.execute(stmt)
        seeded += 1

    await db.commit()
    logger.info("Seeded %d achievement definitions", seeded)
    return seeded
