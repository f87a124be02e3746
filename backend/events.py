"""
events.py

Task events are queued explicitly and handed to subscribers by
`EventDispatcher.dispatch()`; nothing is broadcast as a side effect of a
mutation.
"""

import inspect
import logging
from collections import deque
from typing import Any, Callable, Deque, List, Literal, Optional, Protocol

from pydantic import BaseModel, Field

from taskengine.task_schema import Task, utc_now_iso

logger = logging.getLogger(__name__)

TASK_CREATED = "task:created"
TASK_UPDATED = "task:updated"

EventType = Literal["task:created", "task:updated"]


class TaskEvent(BaseModel):
    type: EventType
    task: Task
    old_status: Optional[str] = None
    emitted_at: str = Field(default_factory=utc_now_iso)


class CompletionNotice(BaseModel):
    """Request to tell the originating thread that a task was completed."""
    task_id: str
    thread_id: Optional[str] = None
    source_message_id: Optional[str] = None
    description: str
    comment: Optional[str] = None
    deadline: Optional[str] = None
    completed_at: str = Field(default_factory=utc_now_iso)

    @classmethod
    def for_task(cls, task: Task, comment: Optional[str] = None) -> "CompletionNotice":
        return cls(
            task_id=task.id,
            thread_id=task.thread_id,
            source_message_id=task.source_message_id,
            description=task.description,
            comment=comment,
            deadline=task.deadline,
        )

    def render(self) -> str:
        lines = [f"Task Completed: {self.description}", "Status: Completed"]
        if self.comment:
            lines.append(f"Completion Notes: {self.comment}")
        if self.deadline:
            lines.append(f"Original Deadline: {self.deadline}")
        lines.append(f"Completed At: {self.completed_at}")
        lines.append("")
        lines.append("This is an automated update regarding the task from our previous communication.")
        return "\n".join(lines)


class MessagingFacade(Protocol):
    """Outbound channel to the thread a task came from."""

    async def send_thread_update(self, notice: CompletionNotice) -> None:
        ...


Subscriber = Callable[[TaskEvent], Any]


class EventDispatcher:
    def __init__(self):
        self.queue: Deque[TaskEvent] = deque()
        self.subscribers: List[Subscriber] = []

    def subscribe(self, handler: Subscriber) -> None:
        self.subscribers.append(handler)

    def emit(self, event: TaskEvent) -> None:
        self.queue.append(event)

    def created(self, task: Task) -> None:
        self.emit(TaskEvent(type=TASK_CREATED, task=task.model_copy(deep=True)))

    def updated(self, task: Task, old_status: Optional[str] = None) -> None:
        self.emit(TaskEvent(
            type=TASK_UPDATED,
            task=task.model_copy(deep=True),
            old_status=old_status if old_status is not None else task.status,
        ))

    def pending(self) -> List[TaskEvent]:
        return list(self.queue)

    async def dispatch(self) -> int:
        """Drains the queue in FIFO order. Returns the number of events delivered."""
        delivered = 0
        while self.queue:
            event = self.queue.popleft()
            for handler in self.subscribers:
                try:
                    result = handler(event)
                    if inspect.isawaitable(result):
                        await result
                except Exception as exc:
                    logger.error("Event subscriber failed on %s for task %s: %s", event.type, event.task.id, exc)
            delivered += 1
        return delivered
