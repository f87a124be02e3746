from typing import Dict, List, Optional, Protocol

from taskengine.task_schema import Task


class DurableTaskStore(Protocol):
    """System of record for tasks; the in-memory facade reconciles against it."""

    async def get_task(self, task_id: str) -> Optional[Task]:
        ...

    async def task_exists(self, task_id: str) -> bool:
        ...

    async def upsert_task(self, task: Task) -> None:
        ...

    async def get_tasks_by_thread(self, thread_id: str) -> List[Task]:
        ...

    async def get_tasks_by_message(self, message_id: str) -> List[Task]:
        ...

    async def close(self) -> None:
        ...


class InMemoryTaskStore:
    """Process-local store. Hands out copies so callers never share state with it."""

    def __init__(self):
        self._rows: Dict[str, Task] = {}

    async def get_task(self, task_id: str) -> Optional[Task]:
        task = self._rows.get(task_id)
        return task.model_copy(deep=True) if task else None

    async def task_exists(self, task_id: str) -> bool:
        return task_id in self._rows

    async def upsert_task(self, task: Task) -> None:
        self._rows[task.id] = task.model_copy(deep=True)

    async def get_tasks_by_thread(self, thread_id: str) -> List[Task]:
        return [
            t.model_copy(deep=True) for t in self._rows.values()
            if t.thread_id == thread_id and t.status != "COMPLETED"
        ]

    async def get_tasks_by_message(self, message_id: str) -> List[Task]:
        return [
            t.model_copy(deep=True) for t in self._rows.values()
            if t.source_message_id == message_id and t.status != "COMPLETED"
        ]

    async def close(self) -> None:
        return None

    def __len__(self) -> int:
        return len(self._rows)
