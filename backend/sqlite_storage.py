"""
sqlite_storage.py

SQLite-backed durable task store. Blocking sqlite3 calls run in a worker
thread so the event loop only suspends on them.
"""

import asyncio
import json
import logging
import sqlite3
from typing import Any, Dict, List, Optional

from taskengine.config import config
from taskengine.task_schema import Task

logger = logging.getLogger(__name__)

_JSON_COLUMNS = ("dependencies", "context", "child_task_ids", "comments")
_BOOL_COLUMNS = ("is_subtask", "is_parent")
_COLUMNS = (
    "id", "source_message_id", "thread_id", "from_address", "subject",
    "description", "deadline", "priority", "dependencies", "context",
    "status", "created_at", "updated_at", "parent_task_id", "is_subtask",
    "is_parent", "child_task_ids", "comments",
)


def task_to_row(task: Task) -> Dict[str, Any]:
    data = task.model_dump()
    row = {name: data.get(name) for name in _COLUMNS}
    for name in _JSON_COLUMNS:
        row[name] = json.dumps(data.get(name) or ({} if name == "context" else []))
    for name in _BOOL_COLUMNS:
        row[name] = 1 if data.get(name) else 0
    return row


def row_to_task(row: Dict[str, Any]) -> Task:
    data = dict(row)
    for name in _JSON_COLUMNS:
        data[name] = json.loads(data.get(name) or ("{}" if name == "context" else "[]"))
    for name in _BOOL_COLUMNS:
        data[name] = bool(data.get(name))
    return Task(**data)


class SqliteTaskStore:
    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or config['db_path']
        self._initialized = False

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        if self._initialized:
            return
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS tasks (
                    id TEXT PRIMARY KEY,
                    source_message_id TEXT,
                    thread_id TEXT,
                    from_address TEXT,
                    subject TEXT,
                    description TEXT NOT NULL,
                    deadline TEXT,
                    priority TEXT NOT NULL,
                    dependencies TEXT,
                    context TEXT,
                    status TEXT NOT NULL,
                    created_at TEXT,
                    updated_at TEXT,
                    parent_task_id TEXT,
                    is_subtask INTEGER DEFAULT 0,
                    is_parent INTEGER DEFAULT 0,
                    child_task_ids TEXT,
                    comments TEXT
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_thread ON tasks(thread_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_message ON tasks(source_message_id)")
        self._initialized = True
        logger.info("Task database initialized at %s", self.db_path)

    # -----------------------------
    # Blocking helpers
    # -----------------------------

    def _fetch_one(self, task_id: str) -> Optional[Task]:
        self.init_db()
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return row_to_task(dict(row)) if row else None

    def _fetch_open(self, column: str, value: str) -> List[Task]:
        self.init_db()
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM tasks WHERE {column} = ? AND status != 'COMPLETED' ORDER BY created_at",
                (value,),
            ).fetchall()
        return [row_to_task(dict(row)) for row in rows]

    def _write(self, task: Task) -> None:
        self.init_db()
        row = task_to_row(task)
        columns = ", ".join(_COLUMNS)
        placeholders = ", ".join("?" for _ in _COLUMNS)
        updates = ", ".join(f"{name} = excluded.{name}" for name in _COLUMNS if name not in ("id", "created_at"))
        with self._connect() as conn:
            conn.execute(
                f"INSERT INTO tasks ({columns}) VALUES ({placeholders}) "
                f"ON CONFLICT(id) DO UPDATE SET {updates}",
                [row[name] for name in _COLUMNS],
            )
            conn.commit()

    # -----------------------------
    # DurableTaskStore
    # -----------------------------

    async def get_task(self, task_id: str) -> Optional[Task]:
        return await asyncio.to_thread(self._fetch_one, task_id)

    async def task_exists(self, task_id: str) -> bool:
        return (await self.get_task(task_id)) is not None

    async def upsert_task(self, task: Task) -> None:
        await asyncio.to_thread(self._write, task)

    async def get_tasks_by_thread(self, thread_id: str) -> List[Task]:
        return await asyncio.to_thread(self._fetch_open, "thread_id", thread_id)

    async def get_tasks_by_message(self, message_id: str) -> List[Task]:
        return await asyncio.to_thread(self._fetch_open, "source_message_id", message_id)

    async def close(self) -> None:
        return None
