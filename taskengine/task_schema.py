# taskengine/task_schema.py

from __future__ import annotations
import hashlib
import re
from datetime import datetime, timezone
from typing import Optional, Literal, Dict, Any, List, Iterable
from pydantic import BaseModel, Field, field_validator, model_validator


TaskStatus = Literal["PENDING", "COMPLETED"]
TaskPriority = Literal["HIGH", "MEDIUM", "LOW"]

# Lower rank = more urgent
PRIORITY_RANK: Dict[str, int] = {"HIGH": 0, "MEDIUM": 1, "LOW": 2}
UNKNOWN_PRIORITY_RANK = 3


class TaskEngineError(Exception):
    """Base class for task engine errors surfaced to callers."""


class TaskNotFoundError(TaskEngineError):
    def __init__(self, task_id: str):
        super().__init__(f"Task {task_id} not found")
        self.task_id = task_id


class TaskStateError(TaskEngineError):
    """Raised for an illegal status transition (COMPLETED is terminal)."""


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def priority_rank(priority: Optional[str]) -> int:
    return PRIORITY_RANK.get(priority or "", UNKNOWN_PRIORITY_RANK)


def most_urgent(priorities: Iterable[Optional[str]], default: str = "LOW") -> str:
    best = default
    for priority in priorities:
        if priority_rank(priority) < priority_rank(best):
            best = priority
    return best


def normalize_description(description: str) -> str:
    return re.sub(r"\s+", " ", (description or "").strip().lower())


def make_task_id(
    description: str,
    thread_id: Optional[str] = None,
    deadline: Optional[str] = None,
    priority: Optional[str] = None,
    salt: Iterable[str] = (),
) -> str:
    """
    Deterministic task id: re-extracting the same content from the same
    thread reproduces the same id.
    """
    components = [
        thread_id or "",
        normalize_description(description),
        deadline or "",
        priority or "",
        *salt,
    ]
    digest = hashlib.sha256("::".join(components).encode("utf-8")).hexdigest()
    return f"task_{digest[:12]}"


class IncomingMessage(BaseModel):
    """A message handed to an extraction run."""
    id: str
    thread_id: Optional[str] = None
    subject: Optional[str] = None
    from_address: Optional[str] = None
    body: str = ""


class ExtractedTask(BaseModel):
    """One candidate task as returned by the semantic classifier."""
    description: str = Field(..., min_length=1)
    deadline: Optional[str] = None
    priority: TaskPriority = "MEDIUM"
    dependencies: List[str] = Field(default_factory=list)
    context: Optional[str] = None

    @field_validator('priority', mode='before')
    @classmethod
    def normalize_priority(cls, v):
        """Upper-cases the label; anything unrecognised becomes MEDIUM."""
        label = str(v or "").strip().upper()
        return label if label in PRIORITY_RANK else "MEDIUM"

    @field_validator('dependencies', mode='before')
    @classmethod
    def coerce_dependencies(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            return [v] if v.strip() else []
        return [str(d) for d in v if str(d).strip()]

    @field_validator('deadline', mode='before')
    @classmethod
    def blank_deadline(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        return v if v and v.lower() not in {"null", "none"} else None


class TaskComment(BaseModel):
    content: str
    timestamp: str = Field(default_factory=utc_now_iso)


class Task(BaseModel):
    id: str = Field(..., description="Stable task ID, immutable once created")
    description: str = Field(..., description="Free text task content")

    priority: TaskPriority = "MEDIUM"
    deadline: Optional[str] = Field(default=None, description="ISO date or date-time as received")
    dependencies: List[str] = Field(default_factory=list, description="Prerequisite descriptions")
    status: TaskStatus = "PENDING"

    parent_task_id: Optional[str] = None
    is_subtask: bool = False
    child_task_ids: List[str] = Field(default_factory=list)
    is_parent: bool = False

    source_message_id: Optional[str] = None
    thread_id: Optional[str] = None
    from_address: Optional[str] = None
    subject: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)

    comments: List[TaskComment] = Field(default_factory=list)
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)

    @model_validator(mode='after')
    def check_grouping(self):
        if self.is_subtask and self.is_parent:
            raise ValueError(f"Task {self.id} cannot be both a subtask and a parent")
        if self.is_parent and not self.child_task_ids:
            raise ValueError(f"Parent task {self.id} has no children")
        return self

    @classmethod
    def from_extracted(cls, extracted: ExtractedTask, message: IncomingMessage) -> "Task":
        return cls(
            id=make_task_id(extracted.description, message.thread_id, extracted.deadline, extracted.priority),
            description=extracted.description,
            priority=extracted.priority,
            deadline=extracted.deadline,
            dependencies=list(extracted.dependencies),
            source_message_id=message.id,
            thread_id=message.thread_id,
            from_address=message.from_address,
            subject=message.subject,
            context={
                "email_subject": message.subject,
                "email_from": message.from_address,
                "extracted_context": extracted.context,
                "extracted_at": utc_now_iso(),
            },
        )

    @property
    def is_completed(self) -> bool:
        return self.status == "COMPLETED"

    @property
    def rank(self) -> int:
        return priority_rank(self.priority)

    def touch(self) -> None:
        self.updated_at = utc_now_iso()

    def add_comment(self, content: str) -> None:
        self.comments.append(TaskComment(content=content))
        self.touch()

    def to_storage_dict(self) -> Dict[str, Any]:
        return self.model_dump()
