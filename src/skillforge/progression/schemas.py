"""Pydantic request/response models for progression endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


# --- Requests ---


class CompleteTaskRequest(BaseModel):
    submission: str | None = None
    notes: str | None = None


class BulkCompleteRequest(BaseModel):
    task_ids: list[str] = Field(default_factory=list)


# --- Achievements ---


class AchievementResponse(BaseModel):
    id: str
    name: str
    description: str
    rarity: str
    icon_name: str | None = None


class EarnedAchievementResponse(AchievementResponse):
    unlocked_at: datetime


class AchievementCatalogResponse(BaseModel):
    achievements: list[AchievementResponse]
    total: int


# --- Completion ---


class SkillProgress(BaseModel):
    id: str
    name: str | None = None
    xp_gained: int = 0
    current_xp: int
    current_level: int
    xp_to_next_level: int = 0
    status: str
    leveled_up: bool = False
    completed: bool = False


class UserProgress(BaseModel):
    total_xp: int
    level: int
    leveled_up: bool = False
    xp_to_next_level: int
    current_streak: int
    longest_streak: int
    streak_broken: bool = False


class CompletionResult(BaseModel):
    task_id: str
    xp_awarded: int
    base_xp: int
    quality_score: float | None = None
    feedback: str | None = None
    improvements: list[str] | None = None
    skill: SkillProgress
    user: UserProgress
    unlocked_skill_ids: list[str] = []
    new_achievements: list[AchievementResponse] = []


class BulkCompletionResult(BaseModel):
    completed_task_ids: list[str]
    skipped_task_ids: list[str] = []
    xp_awarded: int
    skills: list[SkillProgress]
    user: UserProgress
    unlocked_skill_ids: list[str] = []
    new_achievements: list[AchievementResponse] = []


# --- Tree deletion ---


class TreeDeletionResult(BaseModel):
    tree_id: str
    skills_deleted: int
    tasks_deleted: int
    xp_deducted: int
    total_xp: int
    level: int


# --- Progress summary ---


class ProgressSummary(BaseModel):
    user_id: str
    total_xp: int
    level: int
    xp_into_level: int
    xp_for_level: int
    xp_to_next_level: int
    next_level: int
    current_streak: int
    longest_streak: int
    last_active_at: datetime | None = None
    skills_completed: int = 0
    tasks_completed: int = 0
    achievements: list[EarnedAchievementResponse] = []
