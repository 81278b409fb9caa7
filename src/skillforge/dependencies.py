"""Shared FastAPI dependencies."""

from collections.abc import AsyncGenerator

from fastapi import Header, HTTPException

from skillforge.database import get_session as _get_session
from skillforge.progression.evaluation import QualityEvaluator, get_quality_evaluator
from skillforge.redis_client import get_redis as _get_redis

get_db = _get_session


async def get_redis_dep() -> AsyncGenerator[object, None]:
    """Yield the Redis client as a FastAPI dependency."""
    yield _get_redis()


def get_evaluator() -> QualityEvaluator | None:
    """Quality evaluator built from settings; overridden in tests."""
    return get_quality_evaluator()


async def get_current_user_id(x_user_id: str | None = Header(default=None)) -> str:
    """Owner id set by the authenticating gateway in front of the API."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id.strip()
