from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterable
from pathlib import Path

DEFAULT_DB_PATH = Path.home() / ".sessionmem" / "memory.sqlite"
SCHEMA_VERSION = 1

LEGACY_FTS_TRIGGERS = ("observations_ai", "observations_au", "observations_ad")

logger = logging.getLogger(__name__)


def connect(
    db_path: Path | str, *, timeout: float = 30.0, check_same_thread: bool = True
) -> sqlite3.Connection:
    """Open an autocommit connection; callers own their BEGIN/COMMIT."""
    path = Path(db_path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(
        path, timeout=timeout, isolation_level=None, check_same_thread=check_same_thread
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    try:
        conn.execute("PRAGMA journal_mode = WAL")
    except sqlite3.OperationalError:
        conn.execute("PRAGMA journal_mode = DELETE")
    conn.execute("PRAGMA synchronous = NORMAL")
    return conn


def schema_version(conn: sqlite3.Connection) -> int:
    row = conn.execute("PRAGMA user_version").fetchone()
    return int(row[0]) if row else 0


def initialize_schema(conn: sqlite3.Connection) -> None:
    if schema_version(conn) >= SCHEMA_VERSION:
        return
    _initialize_schema_v1(conn)
    conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
    logger.info("database schema initialized (version %s)", SCHEMA_VERSION)


def _initialize_schema_v1(conn: sqlite3.Connection) -> None:
    fts_existed = _table_exists(conn, "observations_fts")
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS sessions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            session_id TEXT UNIQUE NOT NULL,
            project TEXT NOT NULL,
            user_prompt TEXT,
            prompt_counter INTEGER DEFAULT 0,
            started_at TEXT NOT NULL,
            started_at_epoch INTEGER NOT NULL,
            completed_at TEXT,
            completed_at_epoch INTEGER,
            status TEXT CHECK(status IN ('active', 'completed', 'failed')) NOT NULL DEFAULT 'active'
        );
        CREATE INDEX IF NOT EXISTS idx_sessions_session_id ON sessions(session_id);
        CREATE INDEX IF NOT EXISTS idx_sessions_project ON sessions(project);
        CREATE INDEX IF NOT EXISTS idx_sessions_status ON sessions(status);

        CREATE TABLE IF NOT EXISTS observations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            session_id TEXT NOT NULL,
            project TEXT NOT NULL,
            type TEXT NOT NULL CHECK(type IN ('decision', 'bugfix', 'feature', 'refactor', 'discovery', 'change')),
            title TEXT,
            subtitle TEXT,
            facts TEXT,
            narrative TEXT,
            concepts TEXT,
            files_read TEXT,
            files_modified TEXT,
            prompt_number INTEGER,
            discovery_tokens INTEGER DEFAULT 0,
            created_at TEXT NOT NULL,
            created_at_epoch INTEGER NOT NULL,
            FOREIGN KEY(session_id) REFERENCES sessions(session_id) ON DELETE CASCADE
        );
        CREATE INDEX IF NOT EXISTS idx_observations_session_id ON observations(session_id);
        CREATE INDEX IF NOT EXISTS idx_observations_project ON observations(project);
        CREATE INDEX IF NOT EXISTS idx_observations_type ON observations(type);
        CREATE INDEX IF NOT EXISTS idx_observations_created ON observations(created_at_epoch DESC);

        CREATE TABLE IF NOT EXISTS session_summaries (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            session_id TEXT NOT NULL,
            project TEXT NOT NULL,
            request TEXT,
            investigated TEXT,
            learned TEXT,
            completed TEXT,
            next_steps TEXT,
            notes TEXT,
            prompt_number INTEGER,
            discovery_tokens INTEGER DEFAULT 0,
            created_at TEXT NOT NULL,
            created_at_epoch INTEGER NOT NULL,
            FOREIGN KEY(session_id) REFERENCES sessions(session_id) ON DELETE CASCADE
        );
        CREATE INDEX IF NOT EXISTS idx_summaries_session_id ON session_summaries(session_id);
        CREATE INDEX IF NOT EXISTS idx_summaries_project ON session_summaries(project);
        CREATE INDEX IF NOT EXISTS idx_summaries_created ON session_summaries(created_at_epoch DESC);

        CREATE TABLE IF NOT EXISTS user_prompts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            session_id TEXT NOT NULL,
            prompt_number INTEGER NOT NULL,
            prompt_text TEXT NOT NULL,
            created_at TEXT NOT NULL,
            created_at_epoch INTEGER NOT NULL,
            FOREIGN KEY(session_id) REFERENCES sessions(session_id) ON DELETE CASCADE
        );
        CREATE INDEX IF NOT EXISTS idx_prompts_session_id ON user_prompts(session_id);
        CREATE INDEX IF NOT EXISTS idx_prompts_created ON user_prompts(created_at_epoch DESC);

        CREATE VIRTUAL TABLE IF NOT EXISTS observations_fts USING fts5(
            title, subtitle, narrative, facts,
            content='observations',
            content_rowid='id'
        );
        """
    )
    _ensure_column(conn, "observations", "discovery_tokens", "INTEGER DEFAULT 0")
    _ensure_column(conn, "session_summaries", "discovery_tokens", "INTEGER DEFAULT 0")
    _ensure_column(conn, "sessions", "completed_at_epoch", "INTEGER")
    # The write path maintains observations_fts itself; older databases carried
    # triggers that would index every row twice.
    for trigger in LEGACY_FTS_TRIGGERS:
        conn.execute(f"DROP TRIGGER IF EXISTS {trigger}")
    if not fts_existed:
        row = conn.execute("SELECT COUNT(*) FROM observations").fetchone()
        if row and int(row[0]) > 0:
            conn.execute("INSERT INTO observations_fts(observations_fts) VALUES('rebuild')")
            logger.info("search index rebuilt for %s existing observations", int(row[0]))


def _table_exists(conn: sqlite3.Connection, name: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?",
        (name,),
    ).fetchone()
    return row is not None


def _ensure_column(conn: sqlite3.Connection, table: str, column: str, column_type: str) -> None:
    existing = {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}
    if column in existing:
        return
    conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {column_type}")


def dump_list(values: Iterable[str] | None) -> str:
    return json.dumps([str(v) for v in values or []], ensure_ascii=False, separators=(",", ":"))


def load_list(text: str | None) -> list[str]:
    if not text:
        return []
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return []
    if not isinstance(parsed, list):
        return []
    return [str(item) for item in parsed if item is not None]
