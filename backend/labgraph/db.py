from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager

from dotenv import load_dotenv

BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
DATA_DIR = os.path.join(BASE_DIR, "data")

load_dotenv(os.path.join(BASE_DIR, ".env"))

DB_PATH = os.getenv("LABGRAPH_DB_PATH") or os.path.join(DATA_DIR, "app.db")


# table -> extra columns beyond id/title/timestamps; new entries are added
# to existing databases on startup
ENTITY_TABLE_COLUMNS = {
    "notes": {"title": "TEXT", "content": "TEXT", "type": "TEXT DEFAULT 'daily'"},
    "projects": {"name": "TEXT", "description": "TEXT", "status": "TEXT DEFAULT 'active'"},
    "experiments": {
        "name": "TEXT",
        "description": "TEXT",
        "project_id": "TEXT",
        "status": "TEXT DEFAULT 'planning'",
    },
    "pdfs": {"title": "TEXT", "file_path": "TEXT"},
    "highlights": {"text": "TEXT", "pdf_id": "TEXT", "page": "INTEGER", "color": "TEXT"},
    "database_entries": {
        "name": "TEXT",
        "type": "TEXT",
        "description": "TEXT",
        "synonyms": "TEXT",
    },
    "tasks": {
        "title": "TEXT",
        "description": "TEXT",
        "status": "TEXT DEFAULT 'todo'",
        "priority": "INTEGER DEFAULT 2",
        "deadline": "TEXT",
    },
    "protocols": {"name": "TEXT", "description": "TEXT", "category": "TEXT"},
    "recipes": {"name": "TEXT", "description": "TEXT", "category": "TEXT"},
    "literature_notes": {"title": "TEXT", "authors": "TEXT", "year": "INTEGER", "notes": "TEXT"},
}


LINKS_COLUMNS = {
    "metadata": "TEXT",
    "origin": "TEXT DEFAULT 'manual'",
}


WORKFLOWS_COLUMNS = {
    "metadata": "TEXT",
}


def _get_existing_columns(conn: sqlite3.Connection, table: str) -> set[str]:
    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return {row[1] for row in rows}


def _ensure_columns(conn: sqlite3.Connection, table: str, columns: dict[str, str]) -> None:
    existing = _get_existing_columns(conn, table)
    for name, definition in columns.items():
        if name in existing:
            continue
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {name} {definition}")


def ensure_db() -> None:
    os.makedirs(os.path.dirname(DB_PATH) or ".", exist_ok=True)
    with sqlite3.connect(DB_PATH) as conn:
        for table, columns in ENTITY_TABLE_COLUMNS.items():
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    created_at INTEGER,
                    updated_at INTEGER
                );
                """
            )
            _ensure_columns(conn, table, columns)
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS links (
                id TEXT PRIMARY KEY,
                source_type TEXT NOT NULL,
                source_id TEXT NOT NULL,
                target_type TEXT NOT NULL,
                target_id TEXT NOT NULL,
                created_at INTEGER
            );
            """
        )
        _ensure_columns(conn, "links", LINKS_COLUMNS)
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS task_dependencies (
                id TEXT PRIMARY KEY,
                from_task_id TEXT NOT NULL,
                to_task_id TEXT NOT NULL,
                dependency_type TEXT NOT NULL DEFAULT 'blocks',
                created_at INTEGER
            );
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                description TEXT,
                type TEXT NOT NULL,
                created_at INTEGER,
                updated_at INTEGER
            );
            """
        )
        _ensure_columns(conn, "workflows", WORKFLOWS_COLUMNS)
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_tasks (
                workflow_id TEXT NOT NULL,
                task_id TEXT NOT NULL,
                workflow_order INTEGER NOT NULL,
                PRIMARY KEY (workflow_id, task_id)
            );
            """
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_links_source ON links(source_type, source_id)"
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_links_target ON links(target_type, target_id)"
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_links_created ON links(created_at)")
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_deps_from ON task_dependencies(from_task_id)"
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_deps_to ON task_dependencies(to_task_id)")
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_workflow_tasks_order "
            "ON workflow_tasks(workflow_id, workflow_order)"
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_notes_title ON notes(title)")
        conn.execute("UPDATE links SET origin = 'manual' WHERE origin IS NULL")
        conn.commit()


def _casefold(value):
    return value.casefold() if isinstance(value, str) else value


@contextmanager
def get_conn():
    ensure_db()
    conn = sqlite3.connect(DB_PATH)
    conn.row_factory = sqlite3.Row
    # sqlite LOWER() only folds ASCII
    conn.create_function("casefold", 1, _casefold, deterministic=True)
    try:
        yield conn
        conn.commit()
    finally:
        conn.close()
