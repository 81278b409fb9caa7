"""Shared test fixtures.

Tests run against a throwaway SQLite file through aiosqlite; the schema is
created straight from the ORM metadata.
"""

from __future__ import annotations

import os
from collections.abc import AsyncGenerator
from dataclasses import dataclass
from datetime import datetime, timezone

# Settings are cached on first use, so configure them before importing the app.
os.environ["SKILLFORGE_REDIS_ENABLED"] = "false"
os.environ["SKILLFORGE_EVALUATION_ENABLED"] = "false"
os.environ["SKILLFORGE_LOG_FORMAT"] = "console"

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy import insert  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession  # noqa: E402

from skillforge.config import get_settings  # noqa: E402
from skillforge.database import close_db, get_engine, get_session_factory, init_db  # noqa: E402
from skillforge.db.base import Base  # noqa: E402
from skillforge.db.models import (  # noqa: E402
    Skill,
    SkillStatus,
    SkillTree,
    Task,
    User,
    skill_prerequisites,
)

get_settings.cache_clear()

T0 = datetime(2026, 3, 2, 10, 0, 0, tzinfo=timezone.utc)


@dataclass
class LearningPath:
    """Ids of a seeded tree.

    A (AVAILABLE, tasks a1=50, a2=50) unlocks B (LOCKED, task b1=100).
    C (AVAILABLE, tasks c1=30, c2=20) has no prerequisites.
    """

    user_id: str
    tree_id: str
    skill_a: str
    skill_b: str
    skill_c: str
    a1: str
    a2: str
    b1: str
    c1: str
    c2: str


async def create_user(db: AsyncSession, email: str, **fields) -> User:
    user = User(email=email, name=email.split("@")[0], created_at=T0, updated_at=T0, **fields)
    db.add(user)
    await db.commit()
    return user


async def create_learning_path(db: AsyncSession, user_id: str, name: str = "Python") -> LearningPath:
    """Seed one tree with three skills and a single prerequisite edge."""
    tree = SkillTree(user_id=user_id, name=name, created_at=T0)
    db.add(tree)
    await db.flush()

    def skill(skill_name: str, status: SkillStatus) -> Skill:
        return Skill(tree_id=tree.id, name=skill_name, status=status.value, created_at=T0)

    a = skill("Basics", SkillStatus.AVAILABLE)
    b = skill("Decorators", SkillStatus.LOCKED)
    c = skill("Tooling", SkillStatus.AVAILABLE)
    db.add_all([a, b, c])
    await db.flush()

    await db.execute(insert(skill_prerequisites).values(skill_id=b.id, prerequisite_id=a.id))

    def task(skill_id: str, title: str, xp: int, order: int) -> Task:
        return Task(skill_id=skill_id, title=title, xp_reward=xp, order=order, created_at=T0)

    a1 = task(a.id, "Variables", 50, 0)
    a2 = task(a.id, "Functions", 50, 1)
    b1 = task(b.id, "Write a decorator", 100, 0)
    c1 = task(c.id, "Set up a venv", 30, 0)
    c2 = task(c.id, "Run pytest", 20, 1)
    db.add_all([a1, a2, b1, c1, c2])
    await db.commit()

    return LearningPath(
        user_id=user_id,
        tree_id=tree.id,
        skill_a=a.id,
        skill_b=b.id,
        skill_c=c.id,
        a1=a1.id,
        a2=a2.id,
        b1=b1.id,
        c1=c1.id,
        c2=c2.id,
    )


class Clock:
    """Settable clock for streak and timestamp assertions."""

    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest_asyncio.fixture
async def database(tmp_path) -> AsyncGenerator[str, None]:
    """Fresh SQLite database with the full schema."""
    url = f"sqlite+aiosqlite:///{tmp_path / 'skillforge.db'}"
    await init_db(url)
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield url
    await close_db()


@pytest_asyncio.fixture
async def db_session(database: str) -> AsyncGenerator[AsyncSession, None]:
    """Direct database session for setup and assertions."""
    async with get_session_factory()() as session:
        yield session


@pytest_asyncio.fixture
async def learner(db_session: AsyncSession) -> User:
    return await create_user(db_session, "learner@example.com")


@pytest_asyncio.fixture
async def path(db_session: AsyncSession, learner: User) -> LearningPath:
    return await create_learning_path(db_session, learner.id)


@pytest_asyncio.fixture
async def outsider_path(db_session: AsyncSession) -> LearningPath:
    """A tree owned by somebody else."""
    other = await create_user(db_session, "other@example.com")
    return await create_learning_path(db_session, other.id, name="Rust")


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest_asyncio.fixture
async def client(database: str) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client over the app; the database fixture stands in for the lifespan."""
    from skillforge.dependencies import get_evaluator
    from skillforge.main import create_app

    app = create_app()
    app.dependency_overrides[get_evaluator] = lambda: None

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
