"""Achievement rules evaluated against a point-in-time progress snapshot.

Every rule is a pure predicate over ``ProgressSnapshot``; rules are
independent, so evaluation order does not matter. The catalog order below is
the order in which new achievements are reported.
"""

from __future__ import annotations

from collections.abc import Callable, Collection
from dataclasses import dataclass
from datetime import datetime

from skillforge.db.models import Rarity
from skillforge.progression.unlocks import DONE_STATUSES


@dataclass(frozen=True)
class UserStats:
    total_xp: int
    level: int
    current_streak: int
    longest_streak: int


@dataclass(frozen=True)
class TreeRef:
    id: str


@dataclass(frozen=True)
class SkillRef:
    id: str
    tree_id: str
    status: str
    completed_at: datetime | None = None


@dataclass(frozen=True)
class TaskRef:
    id: str
    completed_at: datetime | None = None


@dataclass(frozen=True)
class ActivityRef:
    type: str
    created_at: datetime


@dataclass(frozen=True)
class ProgressSnapshot:
    """Read-only view of a user's aggregated progress."""

    user: UserStats
    skill_trees: tuple[TreeRef, ...] = ()
    skills: tuple[SkillRef, ...] = ()
    tasks: tuple[TaskRef, ...] = ()
    activities: tuple[ActivityRef, ...] = ()

    @property
    def completed_skill_count(self) -> int:
        return sum(1 for s in self.skills if s.completed_at is not None)

    @property
    def completed_task_count(self) -> int:
        return sum(1 for t in self.tasks if t.completed_at is not None)


Predicate = Callable[[ProgressSnapshot], bool]


@dataclass(frozen=True)
class AchievementRule:
    id: str
    name: str
    description: str
    rarity: Rarity
    icon_name: str
    predicate: Predicate

    def catalog_row(self) -> dict:
        """Column values for the achievements catalog table."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "rarity": self.rarity.value,
            "icon_name": self.icon_name,
        }


# --- Predicate builders ---


def completed_skills_at_least(n: int) -> Predicate:
    return lambda snap: snap.completed_skill_count >= n


def completed_tasks_at_least(n: int) -> Predicate:
    return lambda snap: snap.completed_task_count >= n


def trees_at_least(n: int) -> Predicate:
    return lambda snap: len(snap.skill_trees) >= n


def streak_at_least(days: int) -> Predicate:
    return lambda snap: snap.user.current_streak >= days


def level_at_least(level: int) -> Predicate:
    return lambda snap: snap.user.level >= level


def any_tree_complete(snap: ProgressSnapshot) -> bool:
    """A tree counts when it has skills and all of them are COMPLETED or MASTERED."""
    for tree in snap.skill_trees:
        statuses = [s.status for s in snap.skills if s.tree_id == tree.id]
        if statuses and all(status in DONE_STATUSES for status in statuses):
            return True
    return False


ACHIEVEMENT_RULES: tuple[AchievementRule, ...] = (
    # Common: first steps
    AchievementRule("first-skill", "First Steps", "Complete your first skill",
                    Rarity.COMMON, "\U0001f331", completed_skills_at_least(1)),
    AchievementRule("first-tree", "Tree Planter", "Create your first skill tree",
                    Rarity.COMMON, "\U0001f333", trees_at_least(1)),
    AchievementRule("first-task", "Task Master", "Complete your first task",
                    Rarity.COMMON, "\u2705", completed_tasks_at_least(1)),
    # Rare: consistency
    AchievementRule("streak-7", "Week Warrior", "Maintain a 7-day streak",
                    Rarity.RARE, "\U0001f525", streak_at_least(7)),
    AchievementRule("skills-10", "Dedicated Learner", "Complete 10 skills",
                    Rarity.RARE, "\U0001f4da", completed_skills_at_least(10)),
    AchievementRule("level-10", "Rising Star", "Reach level 10",
                    Rarity.RARE, "\u2b50", level_at_least(10)),
    # Epic: dedication
    AchievementRule("streak-30", "Month Master", "Maintain a 30-day streak",
                    Rarity.EPIC, "\U0001f525", streak_at_least(30)),
    AchievementRule("skills-50", "Knowledge Seeker", "Complete 50 skills",
                    Rarity.EPIC, "\U0001f393", completed_skills_at_least(50)),
    AchievementRule("tree-complete", "Tree Master", "Complete an entire skill tree",
                    Rarity.EPIC, "\U0001f3c6", any_tree_complete),
    # Legendary: mastery
    AchievementRule("streak-100", "Unstoppable", "Maintain a 100-day streak",
                    Rarity.LEGENDARY, "\U0001f48e", streak_at_least(100)),
    AchievementRule("level-50", "Grandmaster", "Reach level 50",
                    Rarity.LEGENDARY, "\U0001f451", level_at_least(50)),
    AchievementRule("skills-100", "Polymath", "Complete 100 skills",
                    Rarity.LEGENDARY, "\U0001f9d9", completed_skills_at_least(100)),
)

RULES_BY_ID: dict[str, AchievementRule] = {rule.id: rule for rule in ACHIEVEMENT_RULES}


def check_new_achievements(
    snapshot: ProgressSnapshot,
    already_earned_ids: Collection[str],
) -> list[str]:
    """Ids of rules satisfied by the snapshot that the user has not earned yet."""
    earned = set(already_earned_ids)
    return [
        rule.id
        for rule in ACHIEVEMENT_RULES
        if rule.id not in earned and rule.predicate(snapshot)
    ]
