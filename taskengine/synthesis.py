import logging
from typing import Sequence

from taskengine.classifier import SemanticClassifier
from taskengine.date_utils import earliest_deadline
from taskengine.task_schema import Task, make_task_id, most_urgent

logger = logging.getLogger(__name__)


def fallback_description(size: int) -> str:
    return f"Combined task group ({size} tasks)"


def _shared(values):
    """The common value when all members agree, else None."""
    distinct = set(values)
    return distinct.pop() if len(distinct) == 1 else None


class ParentSynthesizer:
    """Creates one parent task for a cluster of similar tasks."""

    def __init__(self, classifier: SemanticClassifier):
        self.classifier = classifier

    async def describe(self, cluster: Sequence[Task]) -> str:
        try:
            description = await self.classifier.summarize([t.description for t in cluster])
        except Exception as exc:
            logger.error("Error generating parent task description (%d tasks): %s", len(cluster), exc)
            return fallback_description(len(cluster))
        description = (description or "").strip()
        if not description:
            logger.warning("Empty parent description from classifier, using template")
            return fallback_description(len(cluster))
        return description

    async def synthesize(self, cluster: Sequence[Task]) -> Task:
        """
        Builds the parent (most urgent priority, earliest valid deadline)
        and marks every member as its subtask.
        """
        cluster = list(cluster)
        if len(cluster) < 2:
            raise ValueError("A parent task needs a cluster of at least two tasks")

        description = await self.describe(cluster)
        deadline = earliest_deadline(t.deadline for t in cluster)
        priority = most_urgent(t.priority for t in cluster)
        thread_id = _shared(t.thread_id for t in cluster)
        child_ids = [t.id for t in cluster]

        parent = Task(
            id=make_task_id(description, thread_id, deadline, priority, salt=sorted(child_ids)),
            description=description,
            priority=priority,
            deadline=deadline,
            status="PENDING",
            is_parent=True,
            child_task_ids=child_ids,
            thread_id=thread_id,
            source_message_id=_shared(t.source_message_id for t in cluster),
            subject=_shared(t.subject for t in cluster),
            from_address=_shared(t.from_address for t in cluster),
        )

        for member in cluster:
            member.parent_task_id = parent.id
            member.is_subtask = True
            member.touch()

        logger.info("Created parent task %s for %d subtasks", parent.id, len(cluster))
        return parent
