"""Standalone achievement backfill.

Seeds the achievement catalog, then checks every user and awards any
achievement they have earned but not received. Safe to run repeatedly.

Usage: python -m skillforge.workers.backfill_runner
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from skillforge.config import get_settings
from skillforge.database import close_db, get_session_factory, init_db
from skillforge.db.models import User
from skillforge.progression.exceptions import ProgressionError
from skillforge.progression.seed import seed_achievements
from skillforge.progression.service import ProgressionService

logger = logging.getLogger(__name__)


@dataclass
class BackfillReport:
    total_users: int = 0
    users_processed: int = 0
    users_failed: int = 0
    total_awarded: int = 0
    awarded_by_user: dict[str, list[str]] = field(default_factory=dict)


async def backfill_user(db: AsyncSession, user_id: str) -> list[str]:
    """Award one user's missing achievements in its own transaction."""
    try:
        # Serialize with concurrent completions by the same user.
        await db.execute(select(User.id).where(User.id == user_id).with_for_update())
        granted = await ProgressionService(db).award_achievements(user_id)
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    return [a.id for a in granted]


async def backfill_achievements(session_factory: async_sessionmaker[AsyncSession]) -> BackfillReport:
    """Run the backfill over every user; one failing user does not stop the rest."""
    async with session_factory() as db:
        await seed_achievements(db)
        user_ids = list((await db.execute(select(User.id).order_by(User.created_at))).scalars())

    report = BackfillReport(total_users=len(user_ids))
    logger.info("Checking %d users for missing achievements", len(user_ids))

    for user_id in user_ids:
        try:
            async with session_factory() as db:
                awarded = await backfill_user(db, user_id)
        except (SQLAlchemyError, ProgressionError):
            logger.exception("Backfill failed for user %s", user_id)
            report.users_failed += 1
            continue

        report.users_processed += 1
        if awarded:
            report.awarded_by_user[user_id] = awarded
            report.total_awarded += len(awarded)
            logger.info("User %s: awarded %s", user_id, ", ".join(awarded))

    logger.info(
        "Backfill complete: %d/%d users processed, %d achievements awarded, %d failures",
        report.users_processed, report.total_users, report.total_awarded, report.users_failed,
    )
    return report


async def main() -> None:
    """Initialize the database and run the backfill once."""
    settings = get_settings()
    await init_db(settings.database_url)
    try:
        await backfill_achievements(get_session_factory())
    finally:
        await close_db()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    asyncio.run(main())
