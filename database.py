"""
SQLite database initialization and connection for Tarely.
Self-bootstrapping: creates DB file, tables, indexes, and constraints on first run.
"""
from __future__ import annotations

import sqlite3
from pathlib import Path

# Default DB path: project directory
_DEFAULT_DB_PATH = Path(__file__).resolve().parent / "tarely.db"

# Wait up to this many seconds for locks (API workers share one file)
_CONNECT_TIMEOUT = 30.0

_SCHEMA = """
-- Workspaces group tasks
CREATE TABLE IF NOT EXISTS workspaces (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT,
    icon TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_workspaces_name ON workspaces(name);

-- Primary table: tasks
-- importance: 1-10
-- recurrence_*: flat repetition rule, all NULL for one-off tasks
-- next_due_at: live anchor of a recurring task (advanced in place on completion)
-- version: bumped on every write; used for version-checked updates
CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    workspace_id TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT,
    importance INTEGER NOT NULL DEFAULT 5 CHECK (importance >= 1 AND importance <= 10),
    completed INTEGER NOT NULL DEFAULT 0,
    completed_at TEXT,
    due_date TEXT,
    next_due_at TEXT,
    recurrence_frequency TEXT CHECK (recurrence_frequency IN ('daily', 'weekly', 'monthly', 'yearly')),
    recurrence_interval INTEGER CHECK (recurrence_interval >= 1),
    recurrence_days_of_week TEXT,
    recurrence_day_of_month INTEGER,
    recurrence_month_of_year INTEGER,
    recurrence_ends_at TEXT,
    source TEXT NOT NULL DEFAULT 'manual' CHECK (source IN ('ai', 'manual')),
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 1,
    FOREIGN KEY (workspace_id) REFERENCES workspaces(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_tasks_workspace ON tasks(workspace_id);
CREATE INDEX IF NOT EXISTS idx_tasks_completed ON tasks(completed);
CREATE INDEX IF NOT EXISTS idx_tasks_next_due_at ON tasks(next_due_at);

-- History log for task events (audit / analytics)
CREATE TABLE IF NOT EXISTS task_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    event TEXT NOT NULL,
    payload TEXT,
    FOREIGN KEY (task_id) REFERENCES tasks(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_task_history_task ON task_history(task_id);
CREATE INDEX IF NOT EXISTS idx_task_history_timestamp ON task_history(timestamp);
"""

# Columns added after the first schema; ALTER is a no-op on databases that already have them
_ADDED_COLUMNS = (
    ("tasks", "next_due_at", "TEXT"),
    ("tasks", "recurrence_ends_at", "TEXT"),
    ("tasks", "version", "INTEGER NOT NULL DEFAULT 1"),
)


def get_db_path() -> Path:
    """Return the database file path (from config if set)."""
    from config import load as load_config

    path = load_config().database_path
    if path:
        return Path(path)
    return _DEFAULT_DB_PATH


def _add_missing_columns(conn: sqlite3.Connection) -> None:
    for table, column, decl in _ADDED_COLUMNS:
        try:
            conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {decl}")
        except sqlite3.OperationalError as e:
            if "duplicate column" not in str(e).lower():
                raise


def init_database(path: Path | None = None) -> Path:
    """
    Ensure the database exists and is initialized. Creates file and all tables/indexes.
    Returns the path to the database file.
    """
    db_path = path or get_db_path()
    db_path = db_path.resolve()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), timeout=_CONNECT_TIMEOUT)
    try:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.executescript(_SCHEMA)
        _add_missing_columns(conn)
        conn.commit()
    finally:
        conn.close()
    return db_path


def get_connection(path: Path | None = None) -> sqlite3.Connection:
    """Return a connection to the database, bootstrapping it if needed."""
    db_path = path or get_db_path()
    init_database(db_path)
    conn = sqlite3.connect(str(db_path), timeout=_CONNECT_TIMEOUT)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys = ON")
    conn.row_factory = sqlite3.Row
    return conn


def migrate() -> Path:
    """Run database init + migrations. Use this to migrate manually: python -m database"""
    return init_database()


if __name__ == "__main__":
    p = migrate()
    print("Database migrated:", p)
