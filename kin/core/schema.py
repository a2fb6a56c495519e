"""SQLite schema management (code-first approach)."""

import logging

from kin.core.db_client import DBClient


logger = logging.getLogger(__name__)


TABLE_SCHEMAS: dict[str, str] = {
    "task_completions": """CREATE TABLE IF NOT EXISTS task_completions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        created TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
        user_id TEXT NOT NULL,
        family_id TEXT NOT NULL,
        task_kind TEXT NOT NULL,
        completed_date TEXT NOT NULL,
        proof_ref TEXT,
        status TEXT NOT NULL CHECK (status IN ('pending', 'verified', 'rejected')),
        verification TEXT,
        details TEXT NOT NULL DEFAULT '{}',
        verified_at TEXT
    )""",
    "points": """CREATE TABLE IF NOT EXISTS points (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        created TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
        user_id TEXT NOT NULL,
        family_id TEXT NOT NULL,
        points INTEGER NOT NULL,
        source TEXT NOT NULL,
        completion_id INTEGER REFERENCES task_completions(id) ON DELETE SET NULL
    )""",
    "member_stats": """CREATE TABLE IF NOT EXISTS member_stats (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        updated TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
        user_id TEXT NOT NULL,
        family_id TEXT NOT NULL,
        current_streak INTEGER NOT NULL DEFAULT 0,
        weekly_goal INTEGER
    )""",
    "achievements": """CREATE TABLE IF NOT EXISTS achievements (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        created TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
        user_id TEXT NOT NULL,
        family_id TEXT NOT NULL,
        achievement_type TEXT NOT NULL,
        week_start TEXT NOT NULL,
        week_end TEXT NOT NULL,
        data TEXT NOT NULL DEFAULT '{}'
    )""",
    "family_tasks": """CREATE TABLE IF NOT EXISTS family_tasks (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        created TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
        family_id TEXT NOT NULL,
        kind TEXT NOT NULL,
        name TEXT NOT NULL,
        metrics TEXT NOT NULL DEFAULT '[]',
        points INTEGER NOT NULL DEFAULT 10,
        verification_prompt TEXT NOT NULL DEFAULT '',
        is_active INTEGER NOT NULL DEFAULT 1
    )""",
}


INDEXES: list[str] = [
    # At most one verified completion per (user, task, day); pending and rejected rows are unconstrained
    """CREATE UNIQUE INDEX IF NOT EXISTS idx_completion_verified_slot
        ON task_completions (user_id, task_kind, completed_date) WHERE status = 'verified'""",
    "CREATE INDEX IF NOT EXISTS idx_completion_user_date ON task_completions (user_id, completed_date)",
    "CREATE INDEX IF NOT EXISTS idx_points_user ON points (user_id)",
    "CREATE INDEX IF NOT EXISTS idx_points_completion ON points (completion_id)",
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_member_stats_user ON member_stats (user_id)",
    """CREATE UNIQUE INDEX IF NOT EXISTS idx_achievement_week
        ON achievements (user_id, family_id, achievement_type, week_start)""",
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_family_task_kind ON family_tasks (family_id, kind)",
]


def build_schema_script() -> str:
    """Return the full DDL script (tables first, then indexes)."""
    statements = [*TABLE_SCHEMAS.values(), *INDEXES]
    return ";\n".join(statements) + ";"


async def init_db(db: DBClient) -> None:
    """Create all tables and indexes if they do not exist yet."""
    await db.execute_script(build_schema_script())
    logger.info("Database schema initialized", extra={"tables": list(TABLE_SCHEMAS), "db_path": str(db.path)})
