"""
clustering.py

Groups similar tasks from one extraction run.

The default pass links each anchor (the first unassigned task) to every
later unassigned task scoring above the threshold against it. Members
are never compared with each other, so cohesion is only guaranteed
relative to the anchor. The transitive variant compares every pair and
returns connected components instead.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Sequence, Set, Tuple

import networkx as nx

from taskengine.config import config
from taskengine.similarity import PairwiseComparator
from taskengine.task_schema import Task

logger = logging.getLogger(__name__)

Cluster = List[Task]


def is_locked(task: Task) -> bool:
    """Tasks whose grouping must not change: completed, or already grouped."""
    return task.is_completed or task.is_parent or task.is_subtask


class ClusterBuilder:
    def __init__(
        self,
        comparator: PairwiseComparator,
        threshold: Optional[float] = None,
        batch_size: Optional[int] = None,
        transitive: bool = False,
    ):
        self.comparator = comparator
        self.threshold = config['cluster_threshold'] if threshold is None else threshold
        self.batch_size = config['batch_size'] if batch_size is None else batch_size
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.transitive = transitive

    async def cluster(self, tasks: Sequence[Task]) -> List[Cluster]:
        """
        Returns clusters in input order; every input task appears in
        exactly one cluster. If the pass fails outright, each task comes
        back as its own singleton.
        """
        tasks = list(tasks)
        try:
            if self.transitive:
                clusters = await self._transitive_clusters(tasks)
            else:
                clusters = await self._anchor_clusters(tasks)
        except Exception as exc:
            logger.error("Error grouping similar tasks, falling back to singletons: %s", exc)
            return self._singletons(tasks)

        grouped = sum(1 for c in clusters if len(c) > 1)
        logger.info("Clustered %d tasks into %d clusters (%d multi-task)", len(tasks), len(clusters), grouped)
        return clusters

    @staticmethod
    def _singletons(tasks: Sequence[Task]) -> List[Cluster]:
        seen: Set[str] = set()
        clusters: List[Cluster] = []
        for task in tasks:
            if task.id in seen:
                continue
            seen.add(task.id)
            clusters.append([task])
        return clusters

    async def _compare_batched(self, pairs: Sequence[Tuple[Task, Task]]) -> List[float]:
        """
        At most batch_size comparisons are outstanding at once; each batch
        is awaited in full before the next one starts.
        """
        scores: List[float] = []
        for start in range(0, len(pairs), self.batch_size):
            batch = pairs[start:start + self.batch_size]
            scores.extend(await asyncio.gather(*(self.comparator.compare(a, b) for a, b in batch)))
        return scores

    async def _anchor_clusters(self, tasks: List[Task]) -> List[Cluster]:
        assigned: Set[str] = set()
        clusters: List[Cluster] = []

        for i, anchor in enumerate(tasks):
            if anchor.id in assigned:
                continue
            assigned.add(anchor.id)
            if is_locked(anchor):
                clusters.append([anchor])
                continue

            candidates: List[Task] = []
            for other in tasks[i + 1:]:
                if other.id in assigned or other.id == anchor.id or is_locked(other):
                    continue
                if any(c.id == other.id for c in candidates):
                    continue
                candidates.append(other)

            scores = await self._compare_batched([(anchor, other) for other in candidates])
            members = [other for other, score in zip(candidates, scores) if score > self.threshold]
            for member in members:
                assigned.add(member.id)
            clusters.append([anchor, *members])

        return clusters

    async def _transitive_clusters(self, tasks: List[Task]) -> List[Cluster]:
        unique: List[Task] = []
        index: Dict[str, int] = {}
        for task in tasks:
            if task.id not in index:
                index[task.id] = len(unique)
                unique.append(task)

        open_tasks = [t for t in unique if not is_locked(t)]
        pairs = [
            (a, b)
            for i, a in enumerate(open_tasks)
            for b in open_tasks[i + 1:]
        ]
        scores = await self._compare_batched(pairs)

        graph = nx.Graph()
        graph.add_nodes_from(t.id for t in unique)
        graph.add_edges_from(
            (a.id, b.id) for (a, b), score in zip(pairs, scores) if score > self.threshold
        )

        clusters = [
            sorted((unique[index[task_id]] for task_id in component), key=lambda t: index[t.id])
            for component in nx.connected_components(graph)
        ]
        clusters.sort(key=lambda c: index[c[0].id])
        return clusters
