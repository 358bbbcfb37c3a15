"""
TymeLyne - Schema Provisioning
Async PostgreSQL with asyncpg. Creates the tables the hosted API exposes,
their unique keys and counter triggers, and seeds the achievement catalog.
"""

import logging
from typing import Any, List, Optional

import asyncpg

from .achievements import ACHIEVEMENT_DEFINITIONS
from .config import DatabaseConfig, get_database_config
from .database import COUNTER_COLUMNS, UNIQUE_KEYS

logger = logging.getLogger(__name__)


class Database:
    """Async database connection manager."""

    def __init__(self, config: Optional[DatabaseConfig] = None):
        self._config = config or get_database_config()
        self._pool = None

    async def connect(self):
        """Create connection pool."""
        self._pool = await asyncpg.create_pool(
            self._config.url,
            min_size=self._config.min_pool_size,
            max_size=self._config.max_pool_size,
        )
        logger.info("Database connected")

    async def disconnect(self):
        """Close connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("Database disconnected")

    async def fetch(self, query: str, *args) -> List[dict]:
        """Fetch multiple rows."""
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, *args)
            return [dict(row) for row in rows]

    async def fetch_one(self, query: str, *args) -> Optional[dict]:
        """Fetch single row."""
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, *args)
            return dict(row) if row else None

    async def execute(self, query: str, *args) -> str:
        """Execute a statement (DDL, INSERT, UPDATE, DELETE)."""
        async with self._pool.acquire() as conn:
            return await conn.execute(query, *args)

    async def executemany(self, query: str, args: List[tuple]) -> None:
        async with self._pool.acquire() as conn:
            await conn.executemany(query, args)


# ============================================
# TABLE DEFINITIONS
# ============================================

TABLE_SCHEMA = """
CREATE TABLE IF NOT EXISTS profiles (
    id UUID PRIMARY KEY,
    email TEXT,
    first_name TEXT,
    last_name TEXT,
    username TEXT,
    experience_points INTEGER NOT NULL DEFAULT 0,
    level INTEGER NOT NULL DEFAULT 1,
    timezone TEXT,
    language TEXT,
    avatar_url TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS goals (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    owner_id UUID NOT NULL REFERENCES profiles(id) ON DELETE CASCADE,
    title TEXT NOT NULL,
    description TEXT DEFAULT '',
    progress INTEGER NOT NULL DEFAULT 0 CHECK (progress BETWEEN 0 AND 100),
    deadline DATE,
    completed BOOLEAN NOT NULL DEFAULT false,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS tasks (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    owner_id UUID NOT NULL REFERENCES profiles(id) ON DELETE CASCADE,
    goal_id UUID REFERENCES goals(id) ON DELETE SET NULL,
    title TEXT NOT NULL,
    description TEXT DEFAULT '',
    due_date DATE,
    category TEXT,
    completed BOOLEAN NOT NULL DEFAULT false,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS achievements (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    code TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    icon TEXT NOT NULL DEFAULT 'award',
    category TEXT NOT NULL DEFAULT 'other',
    threshold INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS user_achievements (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    owner_id UUID NOT NULL REFERENCES profiles(id) ON DELETE CASCADE,
    achievement_code TEXT NOT NULL,
    earned_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS user_streaks (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    owner_id UUID NOT NULL REFERENCES profiles(id) ON DELETE CASCADE,
    streak_type TEXT NOT NULL
        CHECK (streak_type IN ('daily_login', 'task_completion', 'goal_progress', 'weekly_review')),
    current_count INTEGER NOT NULL DEFAULT 0,
    longest_count INTEGER NOT NULL DEFAULT 0,
    last_updated_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS posts (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    author_id UUID NOT NULL REFERENCES profiles(id) ON DELETE CASCADE,
    content TEXT NOT NULL CHECK (char_length(content) BETWEEN 1 AND 1000),
    like_count INTEGER NOT NULL DEFAULT 0,
    comment_count INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS post_likes (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    post_id UUID NOT NULL REFERENCES posts(id) ON DELETE CASCADE,
    owner_id UUID NOT NULL REFERENCES profiles(id) ON DELETE CASCADE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS comments (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    post_id UUID NOT NULL REFERENCES posts(id) ON DELETE CASCADE,
    author_id UUID NOT NULL REFERENCES profiles(id) ON DELETE CASCADE,
    content TEXT NOT NULL CHECK (char_length(content) BETWEEN 1 AND 500),
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS challenges (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    creator_id UUID REFERENCES profiles(id) ON DELETE SET NULL,
    title TEXT NOT NULL,
    description TEXT DEFAULT '',
    start_date TIMESTAMPTZ NOT NULL,
    end_date TIMESTAMPTZ NOT NULL,
    goal_type TEXT NOT NULL DEFAULT 'goal' CHECK (goal_type IN ('habit', 'goal', 'progress')),
    target_count INTEGER NOT NULL DEFAULT 1 CHECK (target_count > 0),
    participant_count INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    CHECK (end_date >= start_date)
);

CREATE TABLE IF NOT EXISTS user_challenges (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    challenge_id UUID NOT NULL REFERENCES challenges(id) ON DELETE CASCADE,
    owner_id UUID NOT NULL REFERENCES profiles(id) ON DELETE CASCADE,
    progress INTEGER NOT NULL DEFAULT 0 CHECK (progress >= 0),
    joined_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS user_preferences (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    owner_id UUID NOT NULL REFERENCES profiles(id) ON DELETE CASCADE,
    dark_mode BOOLEAN NOT NULL DEFAULT false,
    email_notifications BOOLEAN NOT NULL DEFAULT true,
    push_notifications BOOLEAN NOT NULL DEFAULT true,
    weekly_report BOOLEAN NOT NULL DEFAULT true,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE INDEX IF NOT EXISTS idx_goals_owner ON goals(owner_id, completed);
CREATE INDEX IF NOT EXISTS idx_tasks_owner ON tasks(owner_id, completed);
CREATE INDEX IF NOT EXISTS idx_tasks_goal ON tasks(goal_id);
CREATE INDEX IF NOT EXISTS idx_posts_created ON posts(created_at DESC);
CREATE INDEX IF NOT EXISTS idx_comments_post ON comments(post_id, created_at);
CREATE INDEX IF NOT EXISTS idx_challenges_start ON challenges(start_date);
"""

COUNTER_FUNCTION = """
CREATE OR REPLACE FUNCTION {name}() RETURNS trigger AS $$
BEGIN
    IF TG_OP = 'INSERT' THEN
        UPDATE {parent} SET {counter} = {counter} + 1 WHERE id = NEW.{fk};
        RETURN NEW;
    ELSE
        UPDATE {parent} SET {counter} = GREATEST({counter} - 1, 0) WHERE id = OLD.{fk};
        RETURN OLD;
    END IF;
END;
$$ LANGUAGE plpgsql;

DROP TRIGGER IF EXISTS {name}_trg ON {child};
CREATE TRIGGER {name}_trg AFTER INSERT OR DELETE ON {child}
    FOR EACH ROW EXECUTE FUNCTION {name}();
"""


def unique_constraint_sql() -> List[str]:
    """One idempotent ADD CONSTRAINT per natural key (skipping primary keys)."""
    statements = []
    for table, columns in UNIQUE_KEYS.items():
        if columns == ("id",):
            continue
        name = f"{table}_{'_'.join(columns)}_key"
        statements.append(f"""
DO $$
BEGIN
    IF NOT EXISTS (SELECT 1 FROM pg_constraint WHERE conname = '{name}') THEN
        ALTER TABLE {table} ADD CONSTRAINT {name} UNIQUE ({', '.join(columns)});
    END IF;
END;
$$;""")
    return statements


def counter_trigger_sql() -> List[str]:
    return [
        COUNTER_FUNCTION.format(
            name=f"{child}_{counter}", child=child, parent=parent, fk=fk, counter=counter
        )
        for child, (parent, fk, counter) in COUNTER_COLUMNS.items()
    ]


# ============================================
# PROVISIONING
# ============================================

async def ensure_tables(db: Database) -> None:
    """Create tables, unique keys and counter triggers if they don't exist."""
    await db.execute(TABLE_SCHEMA)
    for statement in unique_constraint_sql():
        await db.execute(statement)
    for statement in counter_trigger_sql():
        await db.execute(statement)
    logger.info("Schema ensured")


async def seed_achievement_definitions(db: Database) -> int:
    """Insert catalog rows that are missing; existing codes are left untouched."""
    rows = [
        (code, data["title"], data["description"], data["icon"], data["category"], data["threshold"])
        for code, data in ACHIEVEMENT_DEFINITIONS.items()
    ]
    before = await db.fetch_one("SELECT count(*) AS n FROM achievements")
    await db.executemany(
        """INSERT INTO achievements (code, title, description, icon, category, threshold)
           VALUES ($1, $2, $3, $4, $5, $6)
           ON CONFLICT (code) DO NOTHING""",
        rows
    )
    after = await db.fetch_one("SELECT count(*) AS n FROM achievements")
    inserted = after["n"] - before["n"]
    logger.info(f"Achievement catalog seeded: {inserted} new of {len(rows)} definitions")
    return inserted


async def provision(config: Optional[DatabaseConfig] = None) -> dict:
    """Connect, ensure the schema, seed the catalog and disconnect."""
    db = Database(config)
    await db.connect()
    try:
        await ensure_tables(db)
        seeded = await seed_achievement_definitions(db)
        tables: List[Any] = await db.fetch(
            """SELECT table_name FROM information_schema.tables
               WHERE table_schema = 'public' ORDER BY table_name"""
        )
    finally:
        await db.disconnect()
    return {"success": True, "tables": [t["table_name"] for t in tables], "achievements_inserted": seeded}
