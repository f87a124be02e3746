"""
propagation.py

Escalates priorities along declared dependencies.
"""

import logging
from typing import Dict, List, Optional, Sequence

from taskengine.config import config
from taskengine.graph import TaskGraph
from taskengine.task_schema import Task

logger = logging.getLogger(__name__)


class PriorityPropagator:
    """
    A prerequisite is escalated to the urgency of any task that depends on
    it. With `escalate_dependents` (the default) a dependent is also lifted
    to the urgency of its prerequisite, so a chain ends up at the most
    urgent level present in it.

    Priorities only ever move toward HIGH, and the pass runs to a fixed
    point, so a second run over the same batch changes nothing. COMPLETED
    tasks are neither escalated nor used as a source of escalation.
    """

    def __init__(self, escalate_dependents: Optional[bool] = None):
        self.escalate_dependents = (
            config['escalate_dependents'] if escalate_dependents is None else escalate_dependents
        )
        self.last_graph: Optional[TaskGraph] = None

    def propagate(self, tasks: Sequence[Task]) -> List[Task]:
        tasks = list(tasks)
        by_id: Dict[str, Task] = {task.id: task for task in tasks}

        graph = TaskGraph()
        graph.add_tasks(tasks)
        graph.add_dependency_links(tasks)
        self.last_graph = graph
        for entry in graph.unresolved:
            logger.debug("Unresolved dependency %r on task %s", entry["dependency"], entry["task_id"])

        edges = graph.dependency_edges()
        # Each step moves one task strictly toward HIGH, so this terminates.
        changed = True
        while changed:
            changed = False
            for dependent_id, prerequisite_id in edges:
                dependent = by_id[dependent_id]
                prerequisite = by_id[prerequisite_id]
                if dependent.is_completed or prerequisite.is_completed:
                    continue
                if prerequisite.rank > dependent.rank:
                    self._escalate(prerequisite, dependent.priority, dependent)
                    changed = True
                elif self.escalate_dependents and dependent.rank > prerequisite.rank:
                    self._escalate(dependent, prerequisite.priority, prerequisite)
                    changed = True
        return tasks

    @staticmethod
    def _escalate(task: Task, priority: str, source: Task) -> None:
        logger.info(
            "Escalating task %s from %s to %s (linked to %s)",
            task.id, task.priority, priority, source.id,
        )
        task.priority = priority
        task.touch()
