"""Liveness, readiness and version probes."""

from fastapi import APIRouter, Depends
from sqlalchemy import func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from skillforge.config import get_settings
from skillforge.database import get_session
from skillforge.db.models import Achievement
from skillforge.progression.achievements import ACHIEVEMENT_RULES
from skillforge.progression.evaluation import get_quality_evaluator
from skillforge.redis_client import redis_status

router = APIRouter()


async def _catalog_status(db: AsyncSession) -> str:
    """Start-up seeding only logs failures, so report a partial catalog here."""
    seeded = (await db.execute(select(func.count()).select_from(Achievement))).scalar_one()
    expected = len(ACHIEVEMENT_RULES)
    if seeded < expected:
        return f"incomplete: {seeded}/{expected} achievements seeded"
    return "ok"


@router.get("/health")
async def health() -> dict[str, str]:
    """Liveness probe: 200 while the process is up."""
    return {"status": "healthy"}


@router.get("/ready")
async def readiness(
    db: AsyncSession = Depends(get_session),  # noqa: B008
) -> dict[str, object]:
    """Readiness probe: database, achievement catalog and, when enabled, Redis."""
    checks: dict[str, object] = {}

    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = "ok"
        checks["achievement_catalog"] = await _catalog_status(db)
    except SQLAlchemyError as exc:
        checks["database"] = f"error: {exc}"

    checks["redis"] = await redis_status()

    all_ok = all(v in ("ok", "disabled") for v in checks.values())
    return {"status": "ready" if all_ok else "degraded", "checks": checks}


@router.get("/version")
async def version() -> dict[str, object]:
    """API version, environment and whether submissions are quality-scored."""
    settings = get_settings()
    return {
        "version": settings.app_version,
        "environment": settings.environment,
        "quality_evaluation": get_quality_evaluator() is not None,
    }
