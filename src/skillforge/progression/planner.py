"""Pure completion planning.

Given the state loaded under the user row lock, compute every change a
completion causes (task, skills, dependent unlocks, user XP, streak)
without touching the database. The service then writes the plan in one
transaction.
"""

from __future__ import annotations

from collections import defaultdict, deque
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime

from skillforge.db.models import SkillStatus
from skillforge.progression.leveling import (
    calculate_skill_level,
    calculate_user_level,
    xp_to_next_skill_level,
    xp_to_next_user_level,
)
from skillforge.progression.streaks import StreakUpdate, calculate_streak
from skillforge.progression.unlocks import PrerequisiteGraph, resolve_unlocks

# --- Loaded state ---


@dataclass(frozen=True)
class TaskState:
    id: str
    skill_id: str
    title: str
    xp_reward: int
    completed_at: datetime | None = None


@dataclass(frozen=True)
class SkillState:
    id: str
    tree_id: str
    name: str
    status: str
    current_xp: int
    current_level: int
    max_level: int


@dataclass(frozen=True)
class UserState:
    id: str
    total_xp: int
    level: int
    current_streak: int
    longest_streak: int
    last_active_at: datetime | None = None


# --- Planned changes ---


@dataclass(frozen=True)
class SkillChange:
    skill_id: str
    name: str
    xp_gained: int
    xp_before: int
    xp_after: int
    level_before: int
    level_after: int
    status_before: str
    status_after: str
    xp_to_next_level: int

    @property
    def leveled_up(self) -> bool:
        return self.level_after > self.level_before

    @property
    def newly_completed(self) -> bool:
        return (
            self.status_after == SkillStatus.COMPLETED.value
            and self.status_before != SkillStatus.COMPLETED.value
        )


@dataclass(frozen=True)
class UserChange:
    xp_before: int
    xp_after: int
    level_before: int
    level_after: int
    xp_to_next_level: int
    streak: StreakUpdate

    @property
    def leveled_up(self) -> bool:
        return self.level_after > self.level_before


@dataclass(frozen=True)
class CompletionPlan:
    completed_at: datetime
    task_ids: tuple[str, ...]
    xp_awarded: int
    skill_changes: tuple[SkillChange, ...]
    unlocked_skill_ids: tuple[str, ...]
    user: UserChange
    # Unlocked skills whose tasks were all done already; they go straight to COMPLETED.
    completed_on_unlock_ids: tuple[str, ...] = ()

    @property
    def completed_skill_ids(self) -> list[str]:
        completed = [c.skill_id for c in self.skill_changes if c.newly_completed]
        return completed + list(self.completed_on_unlock_ids)


# --- Transforms ---


def next_skill_status(status: str, all_tasks_completed: bool) -> str:
    """Status after one or more of the skill's tasks were completed.

    Only AVAILABLE and IN_PROGRESS skills move; LOCKED, COMPLETED and
    MASTERED keep their status.
    """
    if status not in (SkillStatus.AVAILABLE.value, SkillStatus.IN_PROGRESS.value):
        return status
    if all_tasks_completed:
        return SkillStatus.COMPLETED.value
    return SkillStatus.IN_PROGRESS.value


def advance_skill(skill: SkillState, xp_gained: int, all_tasks_completed: bool) -> SkillChange:
    """Add XP to a skill once and recompute its level and status."""
    xp_after = skill.current_xp + xp_gained
    level_after = max(skill.current_level, calculate_skill_level(xp_after, skill.max_level))
    return SkillChange(
        skill_id=skill.id,
        name=skill.name,
        xp_gained=xp_gained,
        xp_before=skill.current_xp,
        xp_after=xp_after,
        level_before=skill.current_level,
        level_after=min(level_after, skill.max_level),
        status_before=skill.status,
        status_after=next_skill_status(skill.status, all_tasks_completed),
        xp_to_next_level=xp_to_next_skill_level(xp_after, skill.max_level),
    )


def advance_user(user: UserState, xp_gained: int, now: datetime) -> UserChange:
    """Add XP to the user, recompute level and roll the streak forward."""
    xp_after = user.total_xp + xp_gained
    return UserChange(
        xp_before=user.total_xp,
        xp_after=xp_after,
        level_before=user.level,
        level_after=calculate_user_level(xp_after),
        xp_to_next_level=xp_to_next_user_level(xp_after),
        streak=calculate_streak(user.last_active_at, user.current_streak, user.longest_streak, now),
    )


def _all_completed(skill_tasks: Sequence[TaskState], completing: set[str]) -> bool:
    return all(t.completed_at is not None or t.id in completing for t in skill_tasks)


def cascade_unlocks(
    graph: PrerequisiteGraph,
    statuses: Mapping[str, str],
    skill_changes: Iterable[SkillChange],
    tasks_by_skill: Mapping[str, Sequence[TaskState]],
    completing: set[str],
) -> tuple[list[str], list[str]]:
    """Unlock dependents of newly completed skills.

    Runs against the post-update status of every changed skill, so a
    dependent of two skills completed in the same batch sees both. A
    dependent whose tasks are all done already (they were completed while
    it was LOCKED) is completed on unlock and cascades in turn.

    Returns (unlocked ids, ids of those completed on unlock).
    """
    changes = list(skill_changes)
    current = dict(statuses)
    for change in changes:
        current[change.skill_id] = change.status_after

    pending = deque(c.skill_id for c in changes if c.newly_completed)
    unlocked: list[str] = []
    completed: list[str] = []
    while pending:
        for skill_id in resolve_unlocks(pending.popleft(), graph, current):
            unlocked.append(skill_id)
            skill_tasks = tasks_by_skill.get(skill_id, ())
            if skill_tasks and _all_completed(skill_tasks, completing):
                current[skill_id] = SkillStatus.COMPLETED.value
                completed.append(skill_id)
                pending.append(skill_id)
            else:
                current[skill_id] = SkillStatus.AVAILABLE.value
    return unlocked, completed


def plan_single_completion(
    task: TaskState,
    skill: SkillState,
    tasks_by_skill: Mapping[str, Sequence[TaskState]],
    graph: PrerequisiteGraph,
    statuses: Mapping[str, str],
    user: UserState,
    xp_awarded: int,
    now: datetime,
) -> CompletionPlan:
    """Plan the completion of one task with an already-decided XP award.

    ``tasks_by_skill`` covers the task's skill and every skill it may unlock.
    """
    completing = {task.id}
    skill_change = advance_skill(
        skill, xp_awarded, _all_completed(tasks_by_skill.get(skill.id, ()), completing),
    )
    unlocked, completed_on_unlock = cascade_unlocks(
        graph, statuses, [skill_change], tasks_by_skill, completing,
    )
    return CompletionPlan(
        completed_at=now,
        task_ids=(task.id,),
        xp_awarded=xp_awarded,
        skill_changes=(skill_change,),
        unlocked_skill_ids=tuple(unlocked),
        user=advance_user(user, xp_awarded, now),
        completed_on_unlock_ids=tuple(completed_on_unlock),
    )


def plan_bulk_completion(
    tasks: Sequence[TaskState],
    skills: Mapping[str, SkillState],
    tasks_by_skill: Mapping[str, Sequence[TaskState]],
    graph: PrerequisiteGraph,
    statuses: Mapping[str, str],
    user: UserState,
    now: datetime,
) -> CompletionPlan:
    """Plan a batch completion at base XP.

    XP is aggregated per skill so each skill is advanced exactly once, and
    unlocks cascade only after every skill change is known.
    """
    completing = {t.id for t in tasks}
    xp_by_skill: dict[str, int] = defaultdict(int)
    for task in tasks:
        xp_by_skill[task.skill_id] += task.xp_reward

    skill_changes = tuple(
        advance_skill(
            skills[skill_id],
            xp_gained,
            _all_completed(tasks_by_skill.get(skill_id, ()), completing),
        )
        for skill_id, xp_gained in xp_by_skill.items()
    )
    unlocked, completed_on_unlock = cascade_unlocks(
        graph, statuses, skill_changes, tasks_by_skill, completing,
    )
    total_xp = sum(xp_by_skill.values())
    return CompletionPlan(
        completed_at=now,
        task_ids=tuple(t.id for t in tasks),
        xp_awarded=total_xp,
        skill_changes=skill_changes,
        unlocked_skill_ids=tuple(unlocked),
        user=advance_user(user, total_xp, now),
        completed_on_unlock_ids=tuple(completed_on_unlock),
    )
