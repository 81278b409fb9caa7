"""Progression tables.

Creates users, skill_trees, skills, skill_prerequisites, tasks, activities,
achievements and user_achievements.

Revision ID: 001_progression_tables
Revises:
Create Date: 2026-10-19
"""

from collections.abc import Sequence

from alembic import op

revision: str = "001_progression_tables"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # --- Users ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS users (
            id VARCHAR(36) PRIMARY KEY,
            email VARCHAR(320) UNIQUE NOT NULL,
            name VARCHAR(128),
            total_xp INTEGER NOT NULL DEFAULT 0,
            level INTEGER NOT NULL DEFAULT 1,
            current_streak INTEGER NOT NULL DEFAULT 0,
            longest_streak INTEGER NOT NULL DEFAULT 0,
            last_active_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ DEFAULT NOW(),
            updated_at TIMESTAMPTZ DEFAULT NOW()
        )
    """)

    # --- Skill Trees ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS skill_trees (
            id VARCHAR(36) PRIMARY KEY,
            user_id VARCHAR(36) NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            name VARCHAR(200) NOT NULL,
            description TEXT,
            domain VARCHAR(100) NOT NULL DEFAULT 'general',
            created_at TIMESTAMPTZ DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_skill_trees_user_id
        ON skill_trees(user_id)
    """)

    # --- Skills ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS skills (
            id VARCHAR(36) PRIMARY KEY,
            tree_id VARCHAR(36) NOT NULL REFERENCES skill_trees(id) ON DELETE CASCADE,
            name VARCHAR(200) NOT NULL,
            description TEXT,
            current_level INTEGER NOT NULL DEFAULT 1,
            max_level INTEGER NOT NULL DEFAULT 10,
            current_xp INTEGER NOT NULL DEFAULT 0,
            xp_to_next_level INTEGER NOT NULL DEFAULT 65,
            status VARCHAR(16) NOT NULL DEFAULT 'LOCKED',
            unlocked_at TIMESTAMPTZ,
            completed_at TIMESTAMPTZ,
            mastered_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ DEFAULT NOW(),
            updated_at TIMESTAMPTZ DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_skills_tree_id
        ON skills(tree_id)
    """)

    # --- Skill Prerequisites (many-to-many) ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS skill_prerequisites (
            skill_id VARCHAR(36) NOT NULL REFERENCES skills(id) ON DELETE CASCADE,
            prerequisite_id VARCHAR(36) NOT NULL REFERENCES skills(id) ON DELETE CASCADE,
            PRIMARY KEY (skill_id, prerequisite_id)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_skill_prerequisites_prerequisite
        ON skill_prerequisites(prerequisite_id)
    """)

    # --- Tasks ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS tasks (
            id VARCHAR(36) PRIMARY KEY,
            skill_id VARCHAR(36) NOT NULL REFERENCES skills(id) ON DELETE CASCADE,
            title VARCHAR(300) NOT NULL,
            description TEXT,
            type VARCHAR(16) NOT NULL DEFAULT 'PRACTICE',
            "order" INTEGER NOT NULL DEFAULT 0,
            xp_reward INTEGER NOT NULL,
            completed BOOLEAN NOT NULL DEFAULT false,
            completed_at TIMESTAMPTZ,
            submission TEXT,
            notes TEXT,
            quality_score DOUBLE PRECISION,
            ai_feedback TEXT,
            xp_awarded INTEGER,
            created_at TIMESTAMPTZ DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_tasks_skill_order
        ON tasks(skill_id, "order")
    """)

    # --- Activities (append-only log) ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS activities (
            id VARCHAR(36) PRIMARY KEY,
            user_id VARCHAR(36) NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            skill_id VARCHAR(36) REFERENCES skills(id) ON DELETE SET NULL,
            task_id VARCHAR(36) REFERENCES tasks(id) ON DELETE SET NULL,
            type VARCHAR(32) NOT NULL,
            xp_gained INTEGER NOT NULL DEFAULT 0,
            description TEXT,
            metadata JSONB,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_activities_user_created
        ON activities(user_id, created_at)
    """)

    # --- Achievement Catalog ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS achievements (
            id VARCHAR(64) PRIMARY KEY,
            name VARCHAR(128) NOT NULL,
            description TEXT NOT NULL,
            rarity VARCHAR(16) NOT NULL,
            icon_name VARCHAR(32) NOT NULL,
            created_at TIMESTAMPTZ DEFAULT NOW()
        )
    """)

    # --- User Achievements ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS user_achievements (
            id VARCHAR(36) PRIMARY KEY,
            user_id VARCHAR(36) NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            achievement_id VARCHAR(64) NOT NULL REFERENCES achievements(id),
            unlocked_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT user_achievements_user_id_achievement_id_key UNIQUE (user_id, achievement_id)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_user_achievements_user_id
        ON user_achievements(user_id)
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS user_achievements CASCADE")
    op.execute("DROP TABLE IF EXISTS achievements CASCADE")
    op.execute("DROP TABLE IF EXISTS activities CASCADE")
    op.execute("DROP TABLE IF EXISTS tasks CASCADE")
    op.execute("DROP TABLE IF EXISTS skill_prerequisites CASCADE")
    op.execute("DROP TABLE IF EXISTS skills CASCADE")
    op.execute("DROP TABLE IF EXISTS skill_trees CASCADE")
    op.execute("DROP TABLE IF EXISTS users CASCADE")
