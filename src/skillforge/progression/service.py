"""Progression service: task completion, bulk completion and tree deletion.

Every public operation runs in one transaction. Same-user invocations are
serialized by locking the user row (SELECT ... FOR UPDATE) before any
progression write, and tasks are completed with a conditional
``UPDATE ... WHERE completed_at IS NULL`` so concurrent completions of one
task award XP exactly once.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import AsyncIterator, Callable, Iterable
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from skillforge.config import Settings, get_settings
from skillforge.db.models import (
    Achievement,
    Activity,
    ActivityType,
    Skill,
    SkillStatus,
    SkillTree,
    Task,
    User,
    UserAchievement,
    skill_prerequisites,
)
from skillforge.progression.achievements import (
    RULES_BY_ID,
    ActivityRef,
    ProgressSnapshot,
    SkillRef,
    TaskRef,
    TreeRef,
    UserStats,
    check_new_achievements,
)
from skillforge.progression.evaluation import QualityEvaluator, TaskEvaluation, awarded_xp
from skillforge.progression.events import publish_completion
from skillforge.progression.exceptions import (
    AlreadyCompletedError,
    ForbiddenError,
    InvalidRequestError,
    NotFoundError,
    ProgressionError,
    TransactionFailedError,
)
from skillforge.progression.leveling import USER_CURVE, calculate_user_level
from skillforge.progression.planner import (
    CompletionPlan,
    SkillChange,
    SkillState,
    TaskState,
    UserChange,
    UserState,
    plan_bulk_completion,
    plan_single_completion,
)
from skillforge.progression.schemas import (
    AchievementResponse,
    BulkCompletionResult,
    CompletionResult,
    EarnedAchievementResponse,
    ProgressSummary,
    SkillProgress,
    TreeDeletionResult,
    UserProgress,
)
from skillforge.progression.seed import dialect_insert
from skillforge.progression.unlocks import PrerequisiteGraph

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --- Row -> state conversions ---


def _task_state(task: Task) -> TaskState:
    return TaskState(
        id=task.id,
        skill_id=task.skill_id,
        title=task.title,
        xp_reward=task.xp_reward,
        completed_at=task.completed_at,
    )


def _skill_state(skill: Skill) -> SkillState:
    return SkillState(
        id=skill.id,
        tree_id=skill.tree_id,
        name=skill.name,
        status=skill.status,
        current_xp=skill.current_xp,
        current_level=skill.current_level,
        max_level=skill.max_level,
    )


def _user_state(user: User) -> UserState:
    return UserState(
        id=user.id,
        total_xp=user.total_xp,
        level=user.level,
        current_streak=user.current_streak,
        longest_streak=user.longest_streak,
        last_active_at=user.last_active_at,
    )


# --- Plan -> response conversions ---


def _skill_progress(change: SkillChange, plan: CompletionPlan) -> SkillProgress:
    """A skill unlocked later in the same batch reports its final status."""
    completed_on_unlock = change.skill_id in plan.completed_on_unlock_ids
    if completed_on_unlock:
        status = SkillStatus.COMPLETED.value
    elif change.skill_id in plan.unlocked_skill_ids:
        status = SkillStatus.AVAILABLE.value
    else:
        status = change.status_after
    return SkillProgress(
        id=change.skill_id,
        name=change.name,
        xp_gained=change.xp_gained,
        current_xp=change.xp_after,
        current_level=change.level_after,
        xp_to_next_level=change.xp_to_next_level,
        status=status,
        leveled_up=change.leveled_up,
        completed=change.newly_completed or completed_on_unlock,
    )


def _user_progress(change: UserChange) -> UserProgress:
    return UserProgress(
        total_xp=change.xp_after,
        level=change.level_after,
        leveled_up=change.leveled_up,
        xp_to_next_level=change.xp_to_next_level,
        current_streak=change.streak.current_streak,
        longest_streak=change.streak.longest_streak,
        streak_broken=change.streak.streak_broken,
    )


def _achievement_response(achievement: Achievement) -> AchievementResponse:
    return AchievementResponse(
        id=achievement.id,
        name=achievement.name,
        description=achievement.description,
        rarity=achievement.rarity,
        icon_name=achievement.icon_name,
    )


class ProgressionService:
    """Completion orchestrator over the leveling, streak, unlock and achievement rules."""

    def __init__(
        self,
        db: AsyncSession,
        evaluator: QualityEvaluator | None = None,
        redis: object | None = None,
        clock: Callable[[], datetime] | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.db = db
        self.evaluator = evaluator
        self.redis = redis
        self.clock = clock or _utcnow
        self.settings = settings or get_settings()

    @asynccontextmanager
    async def _transaction(self, action: str) -> AsyncIterator[None]:
        """Commit once on success; roll back everything on any failure."""
        try:
            yield
            await self.db.commit()
        except ProgressionError:
            await self.db.rollback()
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.exception("%s failed, transaction rolled back", action)
            raise TransactionFailedError() from e

    # --- Single completion ---

    async def complete_task(
        self,
        task_id: str,
        owner_id: str,
        submission: str | None = None,
        notes: str | None = None,
    ) -> CompletionResult:
        """Complete one task, award XP and cascade all progression effects."""
        if not task_id:
            raise InvalidRequestError("task_id is required")

        async with self._transaction(f"Completion of task {task_id}"):
            task = await self._load_owned_task(task_id, owner_id)
            if task.completed_at is not None:
                raise AlreadyCompletedError("Task already completed")

            evaluation = await self._evaluate(task, submission)

            user = await self._lock_user(owner_id)
            # Re-read under the lock; the pre-check rows may be stale.
            task = await self._load_owned_task(task_id, owner_id)
            if task.completed_at is not None:
                raise AlreadyCompletedError("Task already completed")
            skill = await self._load_skill(task.skill_id)
            graph, statuses = await self._load_graph([skill.tree_id])
            # A dependent may be unlocked with all of its tasks already done.
            tasks_by_skill = await self._load_tasks_by_skill(list(statuses))

            base_xp = task.xp_reward
            xp = base_xp
            if evaluation is not None:
                xp = awarded_xp(evaluation, base_xp, self.settings.evaluation_max_xp_multiplier)

            now = self.clock()
            plan = plan_single_completion(
                _task_state(task),
                _skill_state(skill),
                tasks_by_skill,
                graph,
                statuses,
                _user_state(user),
                xp,
                now,
            )

            values = {
                "completed": True,
                "completed_at": now,
                "submission": submission,
                "notes": notes,
                "xp_awarded": xp,
            }
            if evaluation is not None:
                values["quality_score"] = evaluation.quality_score
                values["ai_feedback"] = evaluation.feedback
            await self._mark_completed([task.id], values)
            await self._write_plan(owner_id, plan)
            await self._add_single_activities(owner_id, task, skill, plan, evaluation)
            granted = await self.award_achievements(owner_id, now)

            skill_change = plan.skill_changes[0]
            result = CompletionResult(
                task_id=task.id,
                xp_awarded=xp,
                base_xp=base_xp,
                quality_score=evaluation.quality_score if evaluation else None,
                feedback=evaluation.feedback if evaluation else None,
                improvements=evaluation.improvements if evaluation else None,
                skill=_skill_progress(skill_change, plan),
                user=_user_progress(plan.user),
                unlocked_skill_ids=list(plan.unlocked_skill_ids),
                new_achievements=[_achievement_response(a) for a in granted],
            )

        logger.info(
            "User %s completed task %s: +%d XP, level %d -> %d, unlocked %d skills",
            owner_id, task_id, xp, plan.user.level_before, plan.user.level_after,
            len(plan.unlocked_skill_ids),
        )
        await self._publish(owner_id, plan, granted)
        return result

    async def _evaluate(self, task: Task, submission: str | None) -> TaskEvaluation | None:
        """Score the submission; any failure or timeout falls back to base XP."""
        if self.evaluator is None or not submission or not submission.strip():
            return None
        try:
            return await asyncio.wait_for(
                self.evaluator.evaluate(
                    task.title,
                    task.description or "",
                    submission,
                    task.xp_reward,
                ),
                timeout=self.settings.evaluation_timeout_seconds,
            )
        except Exception:
            logger.warning(
                "Quality evaluation failed for task %s, awarding base XP",
                task.id,
                exc_info=True,
            )
            return None

    async def _add_single_activities(
        self,
        owner_id: str,
        task: Task,
        skill: Skill,
        plan: CompletionPlan,
        evaluation: TaskEvaluation | None,
    ) -> None:
        now = plan.completed_at
        skill_change = plan.skill_changes[0]
        self.db.add(Activity(
            user_id=owner_id,
            skill_id=skill.id,
            task_id=task.id,
            type=ActivityType.TASK_COMPLETE.value,
            xp_gained=plan.xp_awarded,
            description=f"Completed task: {task.title}",
            activity_metadata={
                "task_title": task.title,
                "quality_score": evaluation.quality_score if evaluation else None,
                "skill_leveled_up": skill_change.leveled_up,
                "user_leveled_up": plan.user.leveled_up,
                "unlocked_skills": list(plan.unlocked_skill_ids),
            },
            created_at=now,
        ))
        if plan.user.leveled_up:
            self.db.add(Activity(
                user_id=owner_id,
                type=ActivityType.LEVEL_UP.value,
                xp_gained=0,
                description=f"Leveled up to {plan.user.level_after}!",
                activity_metadata={"level": plan.user.level_after},
                created_at=now,
            ))
        if skill_change.newly_completed:
            self._add_skill_completed(owner_id, skill.id, skill.name, now)
        for skill_id, name in (await self._skill_names(plan.completed_on_unlock_ids)).items():
            self._add_skill_completed(owner_id, skill_id, name, now)

    def _add_skill_completed(self, owner_id: str, skill_id: str, name: str, now: datetime) -> None:
        self.db.add(Activity(
            user_id=owner_id,
            skill_id=skill_id,
            type=ActivityType.SKILL_UNLOCKED.value,
            xp_gained=0,
            description=f"Completed skill: {name}",
            activity_metadata={"skill_name": name},
            created_at=now,
        ))

    async def _skill_names(self, skill_ids: Iterable[str]) -> dict[str, str]:
        ids = list(skill_ids)
        if not ids:
            return {}
        result = await self.db.execute(select(Skill.id, Skill.name).where(Skill.id.in_(ids)))
        names = {row.id: row.name for row in result.all()}
        return {skill_id: names[skill_id] for skill_id in ids if skill_id in names}

    # --- Bulk completion ---

    def _validate_bulk_ids(self, task_ids: Iterable[str] | None) -> list[str]:
        ids = list(task_ids or [])
        if not ids:
            raise InvalidRequestError("task_ids must be a non-empty list")
        if any(not isinstance(i, str) or not i for i in ids):
            raise InvalidRequestError("task_ids must contain non-empty strings")
        unique_ids = list(dict.fromkeys(ids))
        if len(unique_ids) > self.settings.bulk_max_tasks:
            raise InvalidRequestError(
                f"Cannot complete more than {self.settings.bulk_max_tasks} tasks at once"
            )
        return unique_ids

    async def complete_tasks_bulk(self, task_ids: list[str], owner_id: str) -> BulkCompletionResult:
        """Complete a batch of tasks at base XP in one transaction."""
        unique_ids = self._validate_bulk_ids(task_ids)

        async with self._transaction("Bulk completion"):
            user = await self._lock_user(owner_id)

            result = await self.db.execute(
                select(Task, SkillTree.user_id)
                .join(Skill, Skill.id == Task.skill_id)
                .join(SkillTree, SkillTree.id == Skill.tree_id)
                .where(Task.id.in_(unique_ids))
                .execution_options(populate_existing=True)
            )
            found = {task.id: (task, tree_owner) for task, tree_owner in result.all()}

            missing = [i for i in unique_ids if i not in found]
            if missing:
                raise NotFoundError(f"Tasks not found: {', '.join(missing)}")
            if any(tree_owner != owner_id for _, tree_owner in found.values()):
                raise ForbiddenError("You do not own all of these tasks")

            pending = [found[i][0] for i in unique_ids if found[i][0].completed_at is None]
            skipped = [i for i in unique_ids if found[i][0].completed_at is not None]
            if not pending:
                raise AlreadyCompletedError("All tasks are already completed")

            skill_ids = list(dict.fromkeys(t.skill_id for t in pending))
            skills_result = await self.db.execute(
                select(Skill)
                .where(Skill.id.in_(skill_ids))
                .execution_options(populate_existing=True)
            )
            skills = {s.id: _skill_state(s) for s in skills_result.scalars()}
            graph, statuses = await self._load_graph({s.tree_id for s in skills.values()})
            tasks_by_skill = await self._load_tasks_by_skill(list(statuses))

            now = self.clock()
            plan = plan_bulk_completion(
                [_task_state(t) for t in pending],
                skills,
                tasks_by_skill,
                graph,
                statuses,
                _user_state(user),
                now,
            )

            await self._mark_completed(
                list(plan.task_ids),
                {
                    "completed": True,
                    "completed_at": now,
                    "xp_awarded": Task.xp_reward,
                },
            )
            await self._write_plan(owner_id, plan)
            self.db.add(Activity(
                user_id=owner_id,
                type=ActivityType.TASK_COMPLETE.value,
                xp_gained=plan.xp_awarded,
                description=f"Completed {len(pending)} tasks in bulk",
                activity_metadata={
                    "task_count": len(pending),
                    "task_ids": list(plan.task_ids),
                    "completed_skills": plan.completed_skill_ids,
                },
                created_at=now,
            ))
            granted = await self.award_achievements(owner_id, now)

            bulk_result = BulkCompletionResult(
                completed_task_ids=list(plan.task_ids),
                skipped_task_ids=skipped,
                xp_awarded=plan.xp_awarded,
                skills=[_skill_progress(c, plan) for c in plan.skill_changes],
                user=_user_progress(plan.user),
                unlocked_skill_ids=list(plan.unlocked_skill_ids),
                new_achievements=[_achievement_response(a) for a in granted],
            )

        logger.info(
            "User %s bulk-completed %d tasks (%d skipped): +%d XP",
            owner_id, len(plan.task_ids), len(skipped), plan.xp_awarded,
        )
        await self._publish(owner_id, plan, granted)
        return bulk_result

    # --- Tree deletion ---

    async def delete_skill_tree(self, tree_id: str, owner_id: str) -> TreeDeletionResult:
        """Delete a tree and take back the XP its completed tasks awarded."""
        async with self._transaction(f"Deletion of skill tree {tree_id}"):
            tree = await self.db.get(SkillTree, tree_id)
            if tree is None:
                raise NotFoundError("Skill tree not found")
            if tree.user_id != owner_id:
                raise ForbiddenError("You do not own this skill tree")

            user = await self._lock_user(owner_id)

            skill_ids = list(
                (await self.db.execute(select(Skill.id).where(Skill.tree_id == tree_id))).scalars()
            )
            task_ids = list(
                (await self.db.execute(select(Task.id).where(Task.skill_id.in_(skill_ids)))).scalars()
            )
            xp_deducted = int((await self.db.execute(
                select(func.coalesce(func.sum(func.coalesce(Task.xp_awarded, Task.xp_reward)), 0))
                .where(Task.skill_id.in_(skill_ids), Task.completed_at.is_not(None))
            )).scalar_one())

            total_xp = max(0, user.total_xp - xp_deducted)
            level = calculate_user_level(total_xp)
            now = self.clock()

            await self.db.execute(
                update(User)
                .where(User.id == owner_id)
                .values(total_xp=total_xp, level=level, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await self.db.execute(
                update(Activity)
                .where(or_(Activity.skill_id.in_(skill_ids), Activity.task_id.in_(task_ids)))
                .values(skill_id=None, task_id=None)
                .execution_options(synchronize_session=False)
            )
            await self.db.execute(
                delete(skill_prerequisites).where(or_(
                    skill_prerequisites.c.skill_id.in_(skill_ids),
                    skill_prerequisites.c.prerequisite_id.in_(skill_ids),
                ))
            )
            await self.db.execute(
                delete(Task).where(Task.id.in_(task_ids)).execution_options(synchronize_session=False)
            )
            await self.db.execute(
                delete(Skill).where(Skill.tree_id == tree_id).execution_options(synchronize_session=False)
            )
            await self.db.execute(
                delete(SkillTree).where(SkillTree.id == tree_id).execution_options(synchronize_session=False)
            )

        logger.info(
            "User %s deleted skill tree %s: %d skills, %d tasks, -%d XP",
            owner_id, tree_id, len(skill_ids), len(task_ids), xp_deducted,
        )
        return TreeDeletionResult(
            tree_id=tree_id,
            skills_deleted=len(skill_ids),
            tasks_deleted=len(task_ids),
            xp_deducted=xp_deducted,
            total_xp=total_xp,
            level=level,
        )

    # --- Progress summary ---

    async def get_progress(self, owner_id: str) -> ProgressSummary:
        """Level, streak and achievement summary for one user."""
        result = await self.db.execute(
            select(User).where(User.id == owner_id).execution_options(populate_existing=True)
        )
        user = result.scalar_one_or_none()
        if user is None:
            raise NotFoundError("User not found")

        progress = USER_CURVE.level_progress(user.total_xp)

        skills_completed = (await self.db.execute(
            select(func.count())
            .select_from(Skill)
            .join(SkillTree, SkillTree.id == Skill.tree_id)
            .where(SkillTree.user_id == owner_id, Skill.completed_at.is_not(None))
        )).scalar_one()
        tasks_completed = (await self.db.execute(
            select(func.count())
            .select_from(Task)
            .join(Skill, Skill.id == Task.skill_id)
            .join(SkillTree, SkillTree.id == Skill.tree_id)
            .where(SkillTree.user_id == owner_id, Task.completed_at.is_not(None))
        )).scalar_one()

        earned = (await self.db.execute(
            select(UserAchievement)
            .where(UserAchievement.user_id == owner_id)
            .order_by(UserAchievement.unlocked_at)
        )).scalars().all()

        return ProgressSummary(
            user_id=user.id,
            total_xp=user.total_xp,
            level=user.level,
            xp_into_level=progress["xp_into_level"],
            xp_for_level=progress["xp_for_level"],
            xp_to_next_level=progress["xp_to_next_level"],
            next_level=progress["next_level"],
            current_streak=user.current_streak,
            longest_streak=user.longest_streak,
            last_active_at=user.last_active_at,
            skills_completed=skills_completed,
            tasks_completed=tasks_completed,
            achievements=[
                EarnedAchievementResponse(
                    **_achievement_response(ua.achievement).model_dump(),
                    unlocked_at=ua.unlocked_at,
                )
                for ua in earned
            ],
        )

    # --- Achievements ---

    async def award_achievements(self, owner_id: str, now: datetime | None = None) -> list[Achievement]:
        """Grant every satisfied achievement the user has not earned yet.

        Runs inside the caller's transaction and does not commit. The user
        row lock makes the read-check-insert sequence race-free.
        """
        now = now or self.clock()
        snapshot = await self._load_snapshot(owner_id)
        earned = set((await self.db.execute(
            select(UserAchievement.achievement_id).where(UserAchievement.user_id == owner_id)
        )).scalars())

        granted: list[Achievement] = []
        for achievement_id in check_new_achievements(snapshot, earned):
            achievement = await self._ensure_catalog_row(achievement_id, now)
            self.db.add(UserAchievement(
                user_id=owner_id,
                achievement_id=achievement_id,
                unlocked_at=now,
            ))
            granted.append(achievement)

        if granted:
            await self.db.flush()
            logger.info(
                "User %s earned achievements: %s",
                owner_id, ", ".join(a.id for a in granted),
            )
        return granted

    async def _ensure_catalog_row(self, achievement_id: str, now: datetime) -> Achievement:
        """Catalog rows are seeded at start-up; create one lazily if missing.

        ON CONFLICT DO NOTHING lets concurrent grants of the same missing row
        both succeed.
        """
        achievement = await self.db.get(Achievement, achievement_id)
        if achievement is None:
            insert = dialect_insert(self.db)
            await self.db.execute(
                insert(Achievement)
                .values(**RULES_BY_ID[achievement_id].catalog_row(), created_at=now)
                .on_conflict_do_nothing(index_elements=["id"])
            )
            achievement = (await self.db.execute(
                select(Achievement).where(Achievement.id == achievement_id)
            )).scalar_one()
        return achievement

    async def _load_snapshot(self, owner_id: str) -> ProgressSnapshot:
        """Read the user's aggregate progress as committed in this transaction."""
        user_row = (await self.db.execute(
            select(User.total_xp, User.level, User.current_streak, User.longest_streak)
            .where(User.id == owner_id)
        )).one_or_none()
        if user_row is None:
            raise NotFoundError("User not found")

        trees = (await self.db.execute(
            select(SkillTree.id).where(SkillTree.user_id == owner_id)
        )).scalars().all()
        skills = (await self.db.execute(
            select(Skill.id, Skill.tree_id, Skill.status, Skill.completed_at)
            .join(SkillTree, SkillTree.id == Skill.tree_id)
            .where(SkillTree.user_id == owner_id)
        )).all()
        tasks = (await self.db.execute(
            select(Task.id, Task.completed_at)
            .join(Skill, Skill.id == Task.skill_id)
            .join(SkillTree, SkillTree.id == Skill.tree_id)
            .where(SkillTree.user_id == owner_id)
        )).all()
        activities = (await self.db.execute(
            select(Activity.type, Activity.created_at).where(Activity.user_id == owner_id)
        )).all()

        return ProgressSnapshot(
            user=UserStats(
                total_xp=user_row.total_xp,
                level=user_row.level,
                current_streak=user_row.current_streak,
                longest_streak=user_row.longest_streak,
            ),
            skill_trees=tuple(TreeRef(id=t) for t in trees),
            skills=tuple(
                SkillRef(id=s.id, tree_id=s.tree_id, status=s.status, completed_at=s.completed_at)
                for s in skills
            ),
            tasks=tuple(TaskRef(id=t.id, completed_at=t.completed_at) for t in tasks),
            activities=tuple(ActivityRef(type=a.type, created_at=a.created_at) for a in activities),
        )

    # --- Loading helpers ---

    async def _lock_user(self, owner_id: str) -> User:
        result = await self.db.execute(
            select(User)
            .where(User.id == owner_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        user = result.scalar_one_or_none()
        if user is None:
            raise NotFoundError("User not found")
        return user

    async def _load_owned_task(self, task_id: str, owner_id: str) -> Task:
        result = await self.db.execute(
            select(Task, SkillTree.user_id)
            .join(Skill, Skill.id == Task.skill_id)
            .join(SkillTree, SkillTree.id == Skill.tree_id)
            .where(Task.id == task_id)
            .execution_options(populate_existing=True)
        )
        row = result.one_or_none()
        if row is None:
            raise NotFoundError("Task not found")
        task, tree_owner = row
        if tree_owner != owner_id:
            raise ForbiddenError("You do not own this task")
        return task

    async def _load_skill(self, skill_id: str) -> Skill:
        result = await self.db.execute(
            select(Skill).where(Skill.id == skill_id).execution_options(populate_existing=True)
        )
        skill = result.scalar_one_or_none()
        if skill is None:
            raise NotFoundError("Skill not found")
        return skill

    async def _load_tasks_by_skill(self, skill_ids: list[str]) -> dict[str, list[TaskState]]:
        result = await self.db.execute(
            select(Task.id, Task.skill_id, Task.title, Task.xp_reward, Task.completed_at)
            .where(Task.skill_id.in_(skill_ids))
        )
        by_skill: dict[str, list[TaskState]] = defaultdict(list)
        for row in result.all():
            by_skill[row.skill_id].append(TaskState(
                id=row.id,
                skill_id=row.skill_id,
                title=row.title,
                xp_reward=row.xp_reward,
                completed_at=row.completed_at,
            ))
        return by_skill

    async def _load_graph(self, tree_ids: Iterable[str]) -> tuple[PrerequisiteGraph, dict[str, str]]:
        """Prerequisite edges touching the given trees plus the status of every skill involved."""
        result = await self.db.execute(
            select(Skill.id, Skill.status).where(Skill.tree_id.in_(list(tree_ids)))
        )
        statuses = {row.id: row.status for row in result.all()}

        edge_result = await self.db.execute(
            select(skill_prerequisites.c.skill_id, skill_prerequisites.c.prerequisite_id)
            .where(or_(
                skill_prerequisites.c.skill_id.in_(list(statuses)),
                skill_prerequisites.c.prerequisite_id.in_(list(statuses)),
            ))
        )
        edges = [(row.skill_id, row.prerequisite_id) for row in edge_result.all()]

        # Cross-tree edges reference skills outside the loaded trees.
        outside = {sid for edge in edges for sid in edge} - set(statuses)
        if outside:
            extra = await self.db.execute(
                select(Skill.id, Skill.status).where(Skill.id.in_(list(outside)))
            )
            statuses.update({row.id: row.status for row in extra.all()})

        return PrerequisiteGraph.from_edges(edges), statuses

    # --- Writes ---

    async def _mark_completed(self, task_ids: list[str], values: dict) -> None:
        """Conditionally complete tasks; losing a race raises AlreadyCompletedError."""
        result = await self.db.execute(
            update(Task)
            .where(Task.id.in_(task_ids), Task.completed_at.is_(None))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != len(task_ids):
            raise AlreadyCompletedError("Task already completed")

    async def _write_plan(self, owner_id: str, plan: CompletionPlan) -> None:
        now = plan.completed_at
        for change in plan.skill_changes:
            values = {
                "current_xp": change.xp_after,
                "current_level": change.level_after,
                "xp_to_next_level": change.xp_to_next_level,
                "status": change.status_after,
                "updated_at": now,
            }
            if change.newly_completed:
                values["completed_at"] = now
            await self.db.execute(
                update(Skill)
                .where(Skill.id == change.skill_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )

        available = [i for i in plan.unlocked_skill_ids if i not in plan.completed_on_unlock_ids]
        if available:
            await self.db.execute(
                update(Skill)
                .where(Skill.id.in_(available), Skill.status == SkillStatus.LOCKED.value)
                .values(status=SkillStatus.AVAILABLE.value, unlocked_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
        if plan.completed_on_unlock_ids:
            await self.db.execute(
                update(Skill)
                .where(
                    Skill.id.in_(list(plan.completed_on_unlock_ids)),
                    Skill.status == SkillStatus.LOCKED.value,
                )
                .values(
                    status=SkillStatus.COMPLETED.value,
                    unlocked_at=now,
                    completed_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )

        streak = plan.user.streak
        await self.db.execute(
            update(User)
            .where(User.id == owner_id)
            .values(
                total_xp=plan.user.xp_after,
                level=plan.user.level_after,
                current_streak=streak.current_streak,
                longest_streak=streak.longest_streak,
                last_active_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

    async def _publish(self, owner_id: str, plan: CompletionPlan, granted: list[Achievement]) -> None:
        await publish_completion(
            self.redis,
            user_id=owner_id,
            task_ids=list(plan.task_ids),
            xp_awarded=plan.xp_awarded,
            old_level=plan.user.level_before,
            new_level=plan.user.level_after,
            unlocked_skill_ids=list(plan.unlocked_skill_ids),
            achievement_ids=[a.id for a in granted],
        )
