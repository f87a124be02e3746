"""
Shared fakes for the root-level test modules. Nothing here talks to a
network or a database server.
"""
import asyncio
from typing import Dict, FrozenSet, List, Optional, Sequence

import pytest

from taskengine.task_schema import ExtractedTask, IncomingMessage, Task, make_task_id


class ScriptedClassifier:
    """
    SemanticClassifier with canned answers. Similarity is looked up by the
    unordered pair of descriptions; unknown pairs get `default_score`.
    """

    def __init__(
        self,
        extracted: Optional[List[dict]] = None,
        scores: Optional[Dict[FrozenSet[str], float]] = None,
        default_score: float = 0.0,
        summary: str = "Combined work",
        fail_extract: bool = False,
        fail_compare: bool = False,
        fail_summary: bool = False,
    ):
        self.extracted = extracted or []
        self.scores = scores or {}
        self.default_score = default_score
        self.summary = summary
        self.fail_extract = fail_extract
        self.fail_compare = fail_compare
        self.fail_summary = fail_summary
        self.compare_calls: List[tuple] = []
        self.summarize_calls: List[List[str]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def extract_tasks(self, message: IncomingMessage) -> List[ExtractedTask]:
        if self.fail_extract:
            raise ConnectionError("classifier unavailable")
        return [ExtractedTask(**item) for item in self.extracted]

    async def compare_similarity(self, text1: str, text2: str) -> float:
        self.compare_calls.append((text1, text2))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            if self.fail_compare:
                raise TimeoutError("classifier unavailable")
            return self.scores.get(frozenset((text1, text2)), self.default_score)
        finally:
            self.in_flight -= 1

    async def summarize(self, descriptions: Sequence[str]) -> str:
        self.summarize_calls.append(list(descriptions))
        if self.fail_summary:
            raise TimeoutError("classifier unavailable")
        return self.summary


class RecordingMessenger:
    def __init__(self, fail: bool = False):
        self.notices = []
        self.fail = fail

    async def send_thread_update(self, notice) -> None:
        if self.fail:
            raise ConnectionError("mail relay down")
        self.notices.append(notice)


class FailingStore:
    """Durable store whose every call errors."""

    async def get_task(self, task_id):
        raise ConnectionError("store down")

    async def task_exists(self, task_id):
        raise ConnectionError("store down")

    async def upsert_task(self, task):
        raise ConnectionError("store down")

    async def get_tasks_by_thread(self, thread_id):
        raise ConnectionError("store down")

    async def get_tasks_by_message(self, message_id):
        raise ConnectionError("store down")

    async def close(self):
        return None


@pytest.fixture
def classifier_factory():
    return ScriptedClassifier


@pytest.fixture
def messenger():
    return RecordingMessenger()


@pytest.fixture
def failing_store():
    return FailingStore()


@pytest.fixture
def make_task():
    def _make(
        description: str,
        priority: str = "MEDIUM",
        thread_id: Optional[str] = "thread-1",
        deadline: Optional[str] = None,
        dependencies: Sequence[str] = (),
        **fields,
    ) -> Task:
        return Task(
            id=fields.pop("id", None) or make_task_id(description, thread_id, deadline, priority),
            description=description,
            priority=priority,
            thread_id=thread_id,
            deadline=deadline,
            dependencies=list(dependencies),
            **fields,
        )
    return _make


@pytest.fixture
def message():
    return IncomingMessage(
        id="msg-1",
        thread_id="thread-1",
        subject="Q1 planning",
        from_address="lead@example.com",
        body="Please send the report and review the budget.",
    )


@pytest.fixture
def failing_messenger():
    return RecordingMessenger(fail=True)
