from typing import List, Optional

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from taskengine.task_schema import Task


CREATE_TASKS_TABLE = """
CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    source_message_id TEXT,
    thread_id TEXT,
    from_address TEXT,
    subject TEXT,
    description TEXT NOT NULL,
    deadline TEXT,
    priority TEXT NOT NULL,
    dependencies JSONB NOT NULL DEFAULT '[]',
    context JSONB NOT NULL DEFAULT '{}',
    status TEXT NOT NULL,
    created_at TEXT,
    updated_at TEXT,
    parent_task_id TEXT,
    is_subtask BOOLEAN NOT NULL DEFAULT FALSE,
    is_parent BOOLEAN NOT NULL DEFAULT FALSE,
    child_task_ids JSONB NOT NULL DEFAULT '[]',
    comments JSONB NOT NULL DEFAULT '[]'
)
"""

_COLUMNS = (
    "id", "source_message_id", "thread_id", "from_address", "subject",
    "description", "deadline", "priority", "dependencies", "context",
    "status", "created_at", "updated_at", "parent_task_id", "is_subtask",
    "is_parent", "child_task_ids", "comments",
)
_JSON_COLUMNS = {"dependencies", "context", "child_task_ids", "comments"}


class PostgresTaskStore:
    def __init__(self, conn_string: str):
        self.conn_string = conn_string
        self.conn: Optional[psycopg.AsyncConnection] = None

    async def connect(self) -> "PostgresTaskStore":
        try:
            self.conn = await psycopg.AsyncConnection.connect(self.conn_string, row_factory=dict_row)
        except psycopg.Error as e:
            raise RuntimeError(f"Failed to connect to Postgres: {e}") from e
        async with self.conn.cursor() as cur:
            await cur.execute(CREATE_TASKS_TABLE)
        await self.conn.commit()
        return self

    def _require_conn(self) -> psycopg.AsyncConnection:
        if self.conn is None:
            raise RuntimeError("PostgresTaskStore.connect() has not been awaited")
        return self.conn

    async def get_task(self, task_id: str) -> Optional[Task]:
        conn = self._require_conn()
        async with conn.cursor() as cur:
            await cur.execute("SELECT * FROM tasks WHERE id = %s", (task_id,))
            row = await cur.fetchone()
        return Task(**row) if row else None

    async def task_exists(self, task_id: str) -> bool:
        conn = self._require_conn()
        async with conn.cursor() as cur:
            await cur.execute("SELECT 1 FROM tasks WHERE id = %s", (task_id,))
            return (await cur.fetchone()) is not None

    async def upsert_task(self, task: Task) -> None:
        conn = self._require_conn()
        data = task.model_dump()
        values = [Jsonb(data[c]) if c in _JSON_COLUMNS else data[c] for c in _COLUMNS]
        columns = ", ".join(_COLUMNS)
        placeholders = ", ".join(["%s"] * len(_COLUMNS))
        updates = ", ".join(f"{c} = EXCLUDED.{c}" for c in _COLUMNS if c not in ("id", "created_at"))
        try:
            async with conn.cursor() as cur:
                await cur.execute(
                    f"""
                    INSERT INTO tasks ({columns})
                    VALUES ({placeholders})
                    ON CONFLICT (id) DO UPDATE SET {updates}
                    """,
                    values,
                )
            await conn.commit()
        except Exception:
            await conn.rollback()
            raise

    async def _open_tasks(self, column: str, value: str) -> List[Task]:
        conn = self._require_conn()
        async with conn.cursor() as cur:
            await cur.execute(
                f"SELECT * FROM tasks WHERE {column} = %s AND status != 'COMPLETED' ORDER BY created_at",
                (value,),
            )
            rows = await cur.fetchall()
        return [Task(**row) for row in rows]

    async def get_tasks_by_thread(self, thread_id: str) -> List[Task]:
        return await self._open_tasks("thread_id", thread_id)

    async def get_tasks_by_message(self, message_id: str) -> List[Task]:
        return await self._open_tasks("source_message_id", message_id)

    async def close(self) -> None:
        if self.conn is not None:
            await self.conn.close()
            self.conn = None
