"""Progression API endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from skillforge.dependencies import get_current_user_id, get_db, get_evaluator, get_redis_dep
from skillforge.progression.achievements import ACHIEVEMENT_RULES
from skillforge.progression.evaluation import QualityEvaluator
from skillforge.progression.schemas import (
    AchievementCatalogResponse,
    AchievementResponse,
    BulkCompleteRequest,
    BulkCompletionResult,
    CompleteTaskRequest,
    CompletionResult,
    ProgressSummary,
    TreeDeletionResult,
)
from skillforge.progression.service import ProgressionService

router = APIRouter(prefix="/api/v1", tags=["Progression"])


def _service(
    db: AsyncSession = Depends(get_db),
    redis: object = Depends(get_redis_dep),
    evaluator: QualityEvaluator | None = Depends(get_evaluator),
) -> ProgressionService:
    return ProgressionService(db, evaluator=evaluator, redis=redis)


# ── Completion ──


@router.post("/tasks/bulk-complete", response_model=BulkCompletionResult)
async def bulk_complete_tasks(
    body: BulkCompleteRequest,
    user_id: str = Depends(get_current_user_id),
    service: ProgressionService = Depends(_service),
):
    """Complete up to the configured number of tasks at base XP."""
    return await service.complete_tasks_bulk(body.task_ids, user_id)


@router.post("/tasks/{task_id}/complete", response_model=CompletionResult)
async def complete_task(
    task_id: str,
    body: CompleteTaskRequest | None = None,
    user_id: str = Depends(get_current_user_id),
    service: ProgressionService = Depends(_service),
):
    """Complete one task, optionally with a submission for quality evaluation."""
    body = body or CompleteTaskRequest()
    return await service.complete_task(
        task_id,
        user_id,
        submission=body.submission,
        notes=body.notes,
    )


# ── Skill trees ──


@router.delete("/skill-trees/{tree_id}", response_model=TreeDeletionResult)
async def delete_skill_tree(
    tree_id: str,
    user_id: str = Depends(get_current_user_id),
    service: ProgressionService = Depends(_service),
):
    """Delete a skill tree and deduct the XP its tasks awarded."""
    return await service.delete_skill_tree(tree_id, user_id)


# ── Achievements & progress ──


@router.get("/achievements", response_model=AchievementCatalogResponse)
async def list_achievements():
    """Full achievement catalog in display order."""
    items = [
        AchievementResponse(
            id=rule.id,
            name=rule.name,
            description=rule.description,
            rarity=rule.rarity.value,
            icon_name=rule.icon_name,
        )
        for rule in ACHIEVEMENT_RULES
    ]
    return AchievementCatalogResponse(achievements=items, total=len(items))


@router.get("/progress/me", response_model=ProgressSummary)
async def my_progress(
    user_id: str = Depends(get_current_user_id),
    service: ProgressionService = Depends(_service),
):
    """Level, streak and earned achievements for the caller."""
    return await service.get_progress(user_id)
