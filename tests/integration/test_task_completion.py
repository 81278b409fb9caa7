"""Integration: single task completion against a real (SQLite) database."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from skillforge.config import Settings
from skillforge.database import get_session_factory
from skillforge.db.models import Activity, Skill, Task, User, UserAchievement
from skillforge.progression.evaluation import QualityEvaluator, TaskEvaluation
from skillforge.progression.exceptions import (
    AlreadyCompletedError,
    EvaluationError,
    ForbiddenError,
    InvalidRequestError,
    NotFoundError,
    TransactionFailedError,
)
from skillforge.progression.service import ProgressionService

pytestmark = pytest.mark.asyncio


class FakeEvaluator(QualityEvaluator):
    """Returns a fixed evaluation, or raises the configured error."""

    def __init__(self, suggested_xp: float = 80, error: Exception | None = None, delay: float = 0) -> None:
        self.suggested_xp = suggested_xp
        self.error = error
        self.delay = delay
        self.calls = 0

    async def evaluate(self, task_title, task_description, submission, base_xp):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return TaskEvaluation(
            quality_score=8,
            suggested_xp=self.suggested_xp,
            feedback="Solid work.",
            improvements=["Add docstrings"],
        )


class FakeRedis:
    def __init__(self) -> None:
        self.channels: list[str] = []

    async def publish(self, channel: str, message: str) -> int:
        self.channels.append(channel)
        return 1


@pytest_asyncio.fixture
async def service(db_session: AsyncSession, clock) -> ProgressionService:
    return ProgressionService(db_session, clock=clock)


async def _reload(db: AsyncSession, model, ident):
    return await db.get(model, ident, populate_existing=True)


async def _activities(db: AsyncSession, user_id: str) -> list[Activity]:
    result = await db.execute(
        select(Activity).where(Activity.user_id == user_id).execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


class TestCompleteTask:
    """Happy path: XP, levels, statuses, unlocks, activities, achievements."""

    async def test_first_task_starts_skill(self, service, db_session, path):
        result = await service.complete_task(path.a1, path.user_id)

        assert result.xp_awarded == 50
        assert result.base_xp == 50
        assert result.quality_score is None
        assert result.skill.id == path.skill_a
        assert result.skill.status == "IN_PROGRESS"
        assert result.skill.current_xp == 50
        assert result.skill.current_level == 1
        assert result.skill.leveled_up is False
        assert result.user.total_xp == 50
        assert result.user.level == 1
        assert result.user.xp_to_next_level == 100
        assert result.user.current_streak == 1
        assert result.user.longest_streak == 1
        assert result.unlocked_skill_ids == []
        assert [a.id for a in result.new_achievements] == ["first-tree", "first-task"]

        task = await _reload(db_session, Task, path.a1)
        assert task.completed is True
        assert task.completed_at is not None
        assert task.xp_awarded == 50

        user = await _reload(db_session, User, path.user_id)
        assert user.total_xp == 50
        assert user.last_active_at is not None

    async def test_last_task_completes_skill_and_unlocks_dependent(self, service, db_session, path):
        await service.complete_task(path.a1, path.user_id)
        result = await service.complete_task(path.a2, path.user_id)

        assert result.skill.status == "COMPLETED"
        assert result.skill.current_xp == 100
        assert result.skill.current_level == 2
        assert result.skill.leveled_up is True
        assert result.user.total_xp == 100
        assert result.unlocked_skill_ids == [path.skill_b]
        assert [a.id for a in result.new_achievements] == ["first-skill"]

        skill_a = await _reload(db_session, Skill, path.skill_a)
        assert skill_a.status == "COMPLETED"
        assert skill_a.completed_at is not None
        assert skill_a.xp_to_next_level == 49

        skill_b = await _reload(db_session, Skill, path.skill_b)
        assert skill_b.status == "AVAILABLE"
        assert skill_b.unlocked_at is not None

        activities = await _activities(db_session, path.user_id)
        types = sorted(a.type for a in activities)
        assert types == ["SKILL_UNLOCKED", "TASK_COMPLETE", "TASK_COMPLETE"]
        skill_activity = next(a for a in activities if a.type == "SKILL_UNLOCKED")
        assert skill_activity.description == "Completed skill: Basics"

    async def test_user_level_up_is_recorded(self, service, db_session, path):
        await service.complete_task(path.a1, path.user_id)
        await service.complete_task(path.a2, path.user_id)
        result = await service.complete_task(path.b1, path.user_id)

        assert result.user.total_xp == 200
        assert result.user.level == 2
        assert result.user.leveled_up is True
        assert result.skill.status == "COMPLETED"

        level_ups = [a for a in await _activities(db_session, path.user_id) if a.type == "LEVEL_UP"]
        assert len(level_ups) == 1
        assert level_ups[0].description == "Leveled up to 2!"
        assert level_ups[0].xp_gained == 0

    async def test_task_in_locked_skill_keeps_status(self, service, db_session, path):
        result = await service.complete_task(path.b1, path.user_id)

        assert result.skill.status == "LOCKED"
        assert result.skill.current_xp == 100
        assert result.user.total_xp == 100

    async def test_locked_skill_finished_early_completes_on_unlock(self, service, db_session, path):
        await service.complete_task(path.b1, path.user_id)
        await service.complete_task(path.a1, path.user_id)
        result = await service.complete_task(path.a2, path.user_id)

        assert result.skill.status == "COMPLETED"
        assert result.unlocked_skill_ids == [path.skill_b]
        assert "first-skill" in [a.id for a in result.new_achievements]

        skill_b = await _reload(db_session, Skill, path.skill_b)
        assert skill_b.status == "COMPLETED"
        assert skill_b.completed_at is not None
        assert skill_b.current_xp == 100

        descriptions = [a.description for a in await _activities(db_session, path.user_id)]
        assert "Completed skill: Basics" in descriptions
        assert "Completed skill: Decorators" in descriptions

    async def test_achievements_are_granted_once(self, service, db_session, path):
        await service.complete_task(path.a1, path.user_id)
        await service.complete_task(path.c1, path.user_id)

        result = await db_session.execute(
            select(UserAchievement.achievement_id).where(UserAchievement.user_id == path.user_id)
        )
        assert sorted(result.scalars().all()) == ["first-task", "first-tree"]

    async def test_publishes_after_commit(self, db_session, path, clock):
        redis = FakeRedis()
        service = ProgressionService(db_session, redis=redis, clock=clock)
        await service.complete_task(path.a1, path.user_id)
        await service.complete_task(path.a2, path.user_id)

        assert "pubsub:task_completed" in redis.channels
        assert "pubsub:skill_unlocked" in redis.channels
        assert "pubsub:achievement_unlocked" in redis.channels


class TestCompletionGuards:
    """Errors abort before any write."""

    async def test_already_completed(self, service, db_session, path):
        await service.complete_task(path.a1, path.user_id)

        with pytest.raises(AlreadyCompletedError):
            await service.complete_task(path.a1, path.user_id)

        user = await _reload(db_session, User, path.user_id)
        assert user.total_xp == 50
        task_activities = [a for a in await _activities(db_session, path.user_id) if a.type == "TASK_COMPLETE"]
        assert len(task_activities) == 1

    async def test_foreign_task_is_forbidden(self, service, db_session, path, outsider_path):
        with pytest.raises(ForbiddenError):
            await service.complete_task(outsider_path.a1, path.user_id)

        task = await _reload(db_session, Task, outsider_path.a1)
        assert task.completed_at is None

    async def test_missing_task(self, service, path):
        with pytest.raises(NotFoundError):
            await service.complete_task("no-such-task", path.user_id)

    async def test_empty_task_id(self, service, path):
        with pytest.raises(InvalidRequestError):
            await service.complete_task("", path.user_id)

    async def test_no_publish_on_failure(self, db_session, path, clock):
        redis = FakeRedis()
        service = ProgressionService(db_session, redis=redis, clock=clock)
        with pytest.raises(NotFoundError):
            await service.complete_task("no-such-task", path.user_id)
        assert redis.channels == []

    async def test_concurrent_completion_awards_once(self, db_session, path, clock):
        """Another request completes the task while this one is being evaluated."""

        class RacingEvaluator(FakeEvaluator):
            async def evaluate(self, *args):
                async with get_session_factory()() as other:
                    await ProgressionService(other, clock=clock).complete_task(path.a1, path.user_id)
                return await super().evaluate(*args)

        service = ProgressionService(db_session, evaluator=RacingEvaluator(), clock=clock)
        with pytest.raises(AlreadyCompletedError):
            await service.complete_task(path.a1, path.user_id, submission="my answer")

        user = await _reload(db_session, User, path.user_id)
        assert user.total_xp == 50

    async def test_storage_failure_rolls_back(self, service, db_session, path, monkeypatch):
        async def boom(*args, **kwargs):
            raise OperationalError("UPDATE users", {}, Exception("disk I/O error"))

        monkeypatch.setattr(service, "_write_plan", boom)

        with pytest.raises(TransactionFailedError) as exc_info:
            await service.complete_task(path.a1, path.user_id)
        assert "try again" in exc_info.value.message

        task = await _reload(db_session, Task, path.a1)
        assert task.completed_at is None
        user = await _reload(db_session, User, path.user_id)
        assert user.total_xp == 0


class TestStreaks:
    """Streaks follow UTC calendar days of completions."""

    async def test_consecutive_days_and_break(self, service, path, clock):
        first = await service.complete_task(path.a1, path.user_id)
        assert first.user.current_streak == 1

        clock.now += timedelta(hours=23)
        second = await service.complete_task(path.a2, path.user_id)
        assert second.user.current_streak == 2
        assert second.user.longest_streak == 2

        clock.now += timedelta(days=4)
        third = await service.complete_task(path.c1, path.user_id)
        assert third.user.current_streak == 1
        assert third.user.longest_streak == 2
        assert third.user.streak_broken is True

    async def test_same_day_does_not_increment(self, service, path, clock):
        await service.complete_task(path.a1, path.user_id)
        clock.now += timedelta(hours=2)
        result = await service.complete_task(path.c1, path.user_id)
        assert result.user.current_streak == 1


class TestQualityEvaluation:
    """Submissions are scored; evaluation failures fall back to base XP."""

    async def test_evaluated_xp_is_awarded(self, db_session, path, clock):
        evaluator = FakeEvaluator(suggested_xp=80)
        service = ProgressionService(db_session, evaluator=evaluator, clock=clock)

        result = await service.complete_task(path.a1, path.user_id, submission="x = 1", notes="easy")

        assert result.xp_awarded == 80
        assert result.base_xp == 50
        assert result.quality_score == 8
        assert result.feedback == "Solid work."
        assert result.user.total_xp == 80

        task = await _reload(db_session, Task, path.a1)
        assert task.xp_awarded == 80
        assert task.quality_score == 8
        assert task.ai_feedback == "Solid work."
        assert task.submission == "x = 1"
        assert task.notes == "easy"

    async def test_suggested_xp_is_clamped(self, db_session, path, clock):
        service = ProgressionService(db_session, evaluator=FakeEvaluator(suggested_xp=500), clock=clock)
        result = await service.complete_task(path.a1, path.user_id, submission="x = 1")
        assert result.xp_awarded == 100

    async def test_evaluation_error_falls_back(self, db_session, path, clock):
        evaluator = FakeEvaluator(error=EvaluationError("upstream 502"))
        service = ProgressionService(db_session, evaluator=evaluator, clock=clock)

        result = await service.complete_task(path.a1, path.user_id, submission="x = 1")

        assert evaluator.calls == 1
        assert result.xp_awarded == 50
        assert result.quality_score is None
        assert result.feedback is None

    async def test_unexpected_error_falls_back(self, db_session, path, clock):
        service = ProgressionService(db_session, evaluator=FakeEvaluator(error=RuntimeError("bug")), clock=clock)
        result = await service.complete_task(path.a1, path.user_id, submission="x = 1")
        assert result.xp_awarded == 50

    async def test_timeout_falls_back(self, db_session, path, clock):
        settings = Settings(evaluation_timeout_seconds=0.05)
        service = ProgressionService(
            db_session, evaluator=FakeEvaluator(delay=5), clock=clock, settings=settings,
        )
        result = await service.complete_task(path.a1, path.user_id, submission="x = 1")
        assert result.xp_awarded == 50
        assert result.quality_score is None

    async def test_blank_submission_skips_evaluation(self, db_session, path, clock):
        evaluator = FakeEvaluator()
        service = ProgressionService(db_session, evaluator=evaluator, clock=clock)
        result = await service.complete_task(path.a1, path.user_id, submission="   ")
        assert evaluator.calls == 0
        assert result.xp_awarded == 50
