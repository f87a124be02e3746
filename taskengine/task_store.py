"""
task_store.py

In-memory task index (by id, by source message, by thread) reconciled
against the durable store on read-miss. Store failures are logged and the
index keeps serving.
"""

import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from backend.storage import DurableTaskStore, InMemoryTaskStore
from taskengine.date_utils import parse_deadline
from taskengine.task_schema import PRIORITY_RANK, Task, normalize_description, priority_rank

logger = logging.getLogger(__name__)


class KeyedLocks:
    """
    One asyncio.Lock per key. A key's lock is dropped once nobody holds
    or waits on it, so quiet threads do not accumulate locks.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, key: Optional[str]):
        key = key or ""
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class TaskStoreFacade:
    def __init__(self, store: Optional[DurableTaskStore] = None):
        self.store = store if store is not None else InMemoryTaskStore()
        self.tasks: Dict[str, Task] = {}
        self.tasks_by_message: Dict[str, List[str]] = defaultdict(list)
        self.tasks_by_thread: Dict[str, List[str]] = defaultdict(list)
        self.thread_locks = KeyedLocks()

    # -----------------------------
    # Index bookkeeping
    # -----------------------------

    def _index(self, task: Task) -> Task:
        """Indexes task. An object already indexed under the id is updated in place and kept."""
        current = self.tasks.get(task.id)
        if current is not None and current is not task:
            for name in Task.model_fields:
                if name != "id":
                    setattr(current, name, getattr(task, name))
            task = current
        self.tasks[task.id] = task
        if task.source_message_id and task.id not in self.tasks_by_message[task.source_message_id]:
            self.tasks_by_message[task.source_message_id].append(task.id)
        if task.thread_id and task.id not in self.tasks_by_thread[task.thread_id]:
            self.tasks_by_thread[task.thread_id].append(task.id)
        return task

    def _merge_loaded(self, loaded: List[Task]) -> None:
        for task in loaded:
            if task.id not in self.tasks:
                self._index(task)

    # -----------------------------
    # Facade operations
    # -----------------------------

    async def exists(self, task_id: str) -> bool:
        if task_id in self.tasks:
            return True
        try:
            return await self.store.task_exists(task_id)
        except Exception as exc:
            logger.error("Error checking task existence for %s: %s", task_id, exc)
            return False

    async def get(self, task_id: str) -> Optional[Task]:
        task = self.tasks.get(task_id)
        if task is not None:
            return task
        try:
            task = await self.store.get_task(task_id)
        except Exception as exc:
            logger.error("Error loading task %s from store: %s", task_id, exc)
            return None
        return self._index(task) if task else None

    async def upsert(self, task: Task) -> Task:
        task = self._index(task)
        try:
            await self.store.upsert_task(task)
        except Exception as exc:
            logger.error("Error writing task %s to store: %s", task.id, exc)
        return task

    async def by_thread(self, thread_id: str) -> List[Task]:
        try:
            self._merge_loaded(await self.store.get_tasks_by_thread(thread_id))
        except Exception as exc:
            logger.error("Error getting tasks by thread %s: %s", thread_id, exc)
        return [
            self.tasks[tid] for tid in self.tasks_by_thread.get(thread_id, [])
            if not self.tasks[tid].is_completed
        ]

    async def by_message(self, message_id: str) -> List[Task]:
        try:
            self._merge_loaded(await self.store.get_tasks_by_message(message_id))
        except Exception as exc:
            logger.error("Error getting tasks by message %s: %s", message_id, exc)
        return [
            self.tasks[tid] for tid in self.tasks_by_message.get(message_id, [])
            if not self.tasks[tid].is_completed
        ]

    async def register(self, task: Task) -> Optional[Task]:
        """
        Inserts a newly extracted task unless an open task in the same
        thread has the same normalized description, or a task with the
        same id already exists. Returns the stored task, or None when the
        new one was suppressed.
        """
        async with self.thread_locks.hold(task.thread_id):
            current = await self.get(task.id)
            if current is not None:
                # Same text, thread, deadline and priority; a COMPLETED one stays closed.
                logger.info("Task %s already exists (%s), skipping re-extraction", task.id, current.status)
                return None

            normalized = normalize_description(task.description)
            if task.thread_id:
                existing = await self.by_thread(task.thread_id)
            else:
                existing = [t for t in self.tasks.values() if t.thread_id is None and not t.is_completed]
            for other in existing:
                if normalize_description(other.description) == normalized:
                    logger.info(
                        "Similar task already exists in thread %s, skipping %r (kept %s)",
                        task.thread_id, task.description, other.id,
                    )
                    return None
            stored = await self.upsert(task)
            logger.info("Registered task %s: %s", stored.id, stored.description)
            return stored

    # -----------------------------
    # Queries over the index
    # -----------------------------

    def query(
        self,
        status: Optional[str] = None,
        priority: Optional[str] = None,
        deadline_before: Optional[str] = None,
        message_id: Optional[str] = None,
    ) -> List[Task]:
        """Filters indexed tasks; sorted by urgency, then earliest valid deadline."""
        tasks = list(self.tasks.values())
        if status:
            tasks = [t for t in tasks if t.status == status]
        if priority:
            tasks = [t for t in tasks if t.priority == priority]
        if deadline_before:
            cutoff = parse_deadline(deadline_before)
            if cutoff is not None:
                tasks = [
                    t for t in tasks
                    if parse_deadline(t.deadline) is not None and parse_deadline(t.deadline) <= cutoff
                ]
        if message_id:
            tasks = [t for t in tasks if t.source_message_id == message_id]
        return sorted(tasks, key=_urgency_key)

    def tasks_by_priority(self) -> Dict[str, List[Task]]:
        grouped: Dict[str, List[Task]] = {label: [] for label in PRIORITY_RANK}
        for task in self.tasks.values():
            if not task.is_completed:
                grouped.setdefault(task.priority, []).append(task)
        return grouped

    def due_within(self, days: int = 7, now: Optional[datetime] = None) -> List[Task]:
        cutoff = (now or datetime.now(timezone.utc)) + timedelta(days=days)
        if cutoff.tzinfo is None:
            cutoff = cutoff.replace(tzinfo=timezone.utc)
        due = []
        for task in self.tasks.values():
            deadline = parse_deadline(task.deadline)
            if task.is_completed or deadline is None:
                continue
            if deadline <= cutoff:
                due.append(task)
        return sorted(due, key=_urgency_key)


def _urgency_key(task: Task):
    deadline = parse_deadline(task.deadline)
    return (
        priority_rank(task.priority),
        deadline is None,
        deadline or datetime.max.replace(tzinfo=timezone.utc),
    )
