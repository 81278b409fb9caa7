"""Integration: achievement catalog seeding and the backfill runner."""

from __future__ import annotations

import pytest
from sqlalchemy import func, select, update

from skillforge.database import get_session_factory
from skillforge.db.models import Achievement, Skill, SkillStatus, Task, User, UserAchievement
from skillforge.progression.seed import seed_achievements
from skillforge.progression.service import ProgressionService
from skillforge.workers.backfill_runner import backfill_achievements, backfill_user
from tests.conftest import T0, create_user

pytestmark = pytest.mark.asyncio


class TestSeedAchievements:
    async def test_seeds_full_catalog(self, db_session):
        assert await seed_achievements(db_session) == 12
        count = (await db_session.execute(select(func.count()).select_from(Achievement))).scalar_one()
        assert count == 12

    async def test_is_idempotent_and_refreshes_text(self, db_session):
        await seed_achievements(db_session)
        await db_session.execute(
            update(Achievement).where(Achievement.id == "first-task").values(name="Old name")
        )
        await db_session.commit()

        await seed_achievements(db_session)

        count = (await db_session.execute(select(func.count()).select_from(Achievement))).scalar_one()
        assert count == 12
        row = await db_session.get(Achievement, "first-task", populate_existing=True)
        assert row.name == "Task Master"


class TestCatalogRows:
    async def test_missing_row_is_created_on_grant(self, db_session):
        service = ProgressionService(db_session)

        row = await service._ensure_catalog_row("first-task", T0)

        assert row.id == "first-task"
        assert row.name == "Task Master"
        count = (await db_session.execute(select(func.count()).select_from(Achievement))).scalar_one()
        assert count == 1

    async def test_row_inserted_concurrently_is_reused(self, db_session, monkeypatch):
        await seed_achievements(db_session)
        service = ProgressionService(db_session)

        async def not_seen_yet(*args, **kwargs):
            return None

        # Another transaction inserts the row after this one looked for it.
        monkeypatch.setattr(db_session, "get", not_seen_yet)
        row = await service._ensure_catalog_row("first-task", T0)

        assert row.id == "first-task"
        count = (await db_session.execute(
            select(func.count()).select_from(Achievement).where(Achievement.id == "first-task")
        )).scalar_one()
        assert count == 1


class TestBackfill:
    async def test_awards_missing_achievements(self, db_session, path):
        # Progress recorded without going through the engine.
        await db_session.execute(
            update(Task).where(Task.skill_id == path.skill_a).values(completed=True, completed_at=T0)
        )
        await db_session.execute(
            update(Skill)
            .where(Skill.id == path.skill_a)
            .values(status=SkillStatus.COMPLETED.value, completed_at=T0)
        )
        await db_session.execute(update(User).where(User.id == path.user_id).values(current_streak=7))
        await db_session.commit()

        report = await backfill_achievements(get_session_factory())

        assert report.total_users == 1
        assert report.users_processed == 1
        assert report.users_failed == 0
        assert sorted(report.awarded_by_user[path.user_id]) == [
            "first-skill", "first-task", "first-tree", "streak-7",
        ]
        assert report.total_awarded == 4

    async def test_second_run_awards_nothing(self, db_session, path):
        first = await backfill_achievements(get_session_factory())
        assert first.awarded_by_user[path.user_id] == ["first-tree"]

        second = await backfill_achievements(get_session_factory())
        assert second.total_awarded == 0
        assert second.awarded_by_user == {}

        earned = (await db_session.execute(
            select(func.count()).select_from(UserAchievement).where(UserAchievement.user_id == path.user_id)
        )).scalar_one()
        assert earned == 1

    async def test_user_without_progress(self, db_session):
        user = await create_user(db_session, "idle@example.com")
        assert await backfill_user(db_session, user.id) == []

    async def test_every_user_is_checked(self, db_session, path, outsider_path):
        report = await backfill_achievements(get_session_factory())
        assert report.total_users == 2
        assert set(report.awarded_by_user) == {path.user_id, outsider_path.user_id}
