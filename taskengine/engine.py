"""
engine.py

Extraction runs and task lifecycle: extracted tasks are registered
(exact duplicates suppressed), clustered, grouped under synthesized
parents and priority-propagated; every mutation is persisted and queued
as an event.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from backend.events import CompletionNotice, EventDispatcher, MessagingFacade
from taskengine.classifier import SemanticClassifier
from taskengine.clustering import Cluster, ClusterBuilder
from taskengine.date_utils import normalize_deadline
from taskengine.graph import TaskGraph
from taskengine.propagation import PriorityPropagator
from taskengine.similarity import PairwiseComparator, SimilarityCache
from taskengine.synthesis import ParentSynthesizer
from taskengine.task_schema import (
    IncomingMessage,
    Task,
    TaskNotFoundError,
    TaskStateError,
)
from taskengine.task_store import KeyedLocks, TaskStoreFacade

logger = logging.getLogger(__name__)

VALID_STATUSES = ("PENDING", "COMPLETED")


@dataclass
class ConsolidationResult:
    tasks: List[Task]
    parents: List[Task] = field(default_factory=list)
    clusters: List[Cluster] = field(default_factory=list)
    escalated_ids: List[str] = field(default_factory=list)
    graph: Dict[str, Any] = field(default_factory=dict)

    @property
    def all_tasks(self) -> List[Task]:
        return [*self.tasks, *self.parents]


class ConsolidationEngine:
    def __init__(
        self,
        classifier: SemanticClassifier,
        store: Optional[TaskStoreFacade] = None,
        dispatcher: Optional[EventDispatcher] = None,
        messaging: Optional[MessagingFacade] = None,
        cache: Optional[SimilarityCache] = None,
        cluster_threshold: Optional[float] = None,
        batch_size: Optional[int] = None,
        transitive: bool = False,
        escalate_dependents: Optional[bool] = None,
    ):
        self.classifier = classifier
        self.store = store if store is not None else TaskStoreFacade()
        self.dispatcher = dispatcher if dispatcher is not None else EventDispatcher()
        self.messaging = messaging
        self.cache = cache if cache is not None else SimilarityCache()
        self.comparator = PairwiseComparator(classifier, self.cache)
        self.cluster_builder = ClusterBuilder(
            self.comparator, threshold=cluster_threshold, batch_size=batch_size, transitive=transitive,
        )
        self.synthesizer = ParentSynthesizer(classifier)
        self.propagator = PriorityPropagator(escalate_dependents=escalate_dependents)
        self.run_locks = KeyedLocks()

    # -----------------------------
    # Extraction runs
    # -----------------------------

    async def process_message(self, message: IncomingMessage) -> ConsolidationResult:
        """One extraction run. Runs over the same thread never interleave."""
        async with self.run_locks.hold(message.thread_id):
            await self.store.by_message(message.id)

            try:
                extracted = await self.classifier.extract_tasks(message)
            except Exception as exc:
                logger.error("Error extracting tasks from message %s: %s", message.id, exc)
                extracted = []

            if not extracted:
                logger.info("No new tasks found in message %s", message.id)
                return ConsolidationResult(tasks=[])

            registered: List[Task] = []
            for item in extracted:
                item = item.model_copy(update={"deadline": normalize_deadline(item.deadline)})
                stored = await self.store.register(Task.from_extracted(item, message))
                if stored is not None:
                    self.dispatcher.created(stored)
                    registered.append(stored)

            return await self.consolidate(registered)

    async def consolidate(self, tasks: Sequence[Task]) -> ConsolidationResult:
        tasks = list(tasks)
        clusters = await self.cluster_builder.cluster(tasks)

        parents: List[Task] = []
        for cluster in clusters:
            if len(cluster) < 2:
                continue
            try:
                parent = await self.synthesizer.synthesize(cluster)
            except Exception as exc:
                logger.error("Error creating parent task for %d tasks: %s", len(cluster), exc)
                continue
            parent = await self.store.upsert(parent)
            self.dispatcher.created(parent)
            parents.append(parent)
            for member in cluster:
                await self.store.upsert(member)
                self.dispatcher.updated(member)

        batch = [*tasks, *parents]
        before = {task.id: task.priority for task in batch}
        self.propagator.propagate(batch)
        escalated_ids: List[str] = []
        for task in batch:
            if task.id in escalated_ids or before[task.id] == task.priority:
                continue
            escalated_ids.append(task.id)
            await self.store.upsert(task)
            self.dispatcher.updated(task)

        return ConsolidationResult(
            tasks=tasks,
            parents=parents,
            clusters=clusters,
            escalated_ids=escalated_ids,
            graph=TaskGraph.from_tasks(batch).to_dict(),
        )

    # -----------------------------
    # Lifecycle
    # -----------------------------

    async def _require(self, task_id: str) -> Task:
        task = await self.store.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    async def save_task(self, task: Task) -> Task:
        """Create-or-update, for callers that handle TaskNotFoundError by creating."""
        existed = await self.store.exists(task.id)
        stored = await self.store.upsert(task)
        if existed:
            self.dispatcher.updated(stored)
        else:
            self.dispatcher.created(stored)
        return stored

    async def update_task(self, task_id: str, **changes: Any) -> Task:
        task = await self._require(task_id)
        if changes.get("id", task_id) != task_id:
            raise ValueError(f"Task id is immutable ({task_id})")
        if task.is_completed and changes.get("status", "COMPLETED") != "COMPLETED":
            raise TaskStateError(f"Task {task_id} is already COMPLETED")

        old_status = task.status
        candidate = Task.model_validate({**task.model_dump(), **changes, "id": task_id})
        candidate.touch()
        task = await self.store.upsert(candidate)
        self.dispatcher.updated(task, old_status)
        logger.info("Updated task %s", task_id)
        return task

    async def update_task_status(self, task_id: str, status: str, comment: Optional[str] = None) -> Task:
        if status not in VALID_STATUSES:
            raise ValueError(f"Unknown task status {status!r}")
        task = await self._require(task_id)
        if task.is_completed and status != "COMPLETED":
            raise TaskStateError(f"Task {task_id} is already COMPLETED")

        old_status = task.status
        task.status = status
        if comment:
            task.add_comment(comment)
        task.touch()
        await self.store.upsert(task)
        self.dispatcher.updated(task, old_status)

        if status == "COMPLETED" and old_status != "COMPLETED":
            await self._notify_completion(task, comment)
        return task

    async def _notify_completion(self, task: Task, comment: Optional[str]) -> None:
        if self.messaging is None or not (task.thread_id or task.source_message_id):
            return
        try:
            await self.messaging.send_thread_update(CompletionNotice.for_task(task, comment))
            logger.info("Sent completion notice for task %s", task.id)
        except Exception as exc:
            logger.error("Error sending task completion notice for %s: %s", task.id, exc)
