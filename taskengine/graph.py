import networkx as nx
from typing import List, Dict, Optional, Any, Sequence
import json

from .task_schema import Task


DEPENDS_ON = "DependsOn"
PARENT_OF = "ParentOf"


class TaskGraph:
    def __init__(self):
        """Directed graph of tasks: dependency edges and parent/child edges."""
        self.graph = nx.DiGraph()
        self.unresolved: List[Dict[str, str]] = []

    @classmethod
    def from_tasks(cls, tasks: Sequence[Task]) -> "TaskGraph":
        tg = cls()
        tg.add_tasks(tasks)
        tg.add_dependency_links(tasks)
        tg.add_parent_links(tasks)
        return tg

    def add_tasks(self, tasks: Sequence[Task]):
        for task in tasks:
            self.graph.add_node(
                task.id,
                description=task.description,
                priority=task.priority,
                status=task.status,
                deadline=task.deadline,
                thread_id=task.thread_id,
                is_parent=task.is_parent,
                is_subtask=task.is_subtask,
            )

    def add_dependency_links(self, tasks: Sequence[Task]):
        """
        Adds dependent -> prerequisite edges.

        Dependencies are description strings, matched exactly against the
        batch. When several tasks share the text, the first one in batch
        order wins. Strings with no match are recorded in `unresolved`.
        """
        first_by_description: Dict[str, Task] = {}
        for task in tasks:
            first_by_description.setdefault(task.description, task)

        for task in tasks:
            for dependency in task.dependencies:
                prerequisite = first_by_description.get(dependency)
                if prerequisite is None or prerequisite.id == task.id:
                    self.unresolved.append({"task_id": task.id, "dependency": dependency})
                    continue
                self.graph.add_edge(task.id, prerequisite.id, type=DEPENDS_ON)

    def add_parent_links(self, tasks: Sequence[Task]):
        for task in tasks:
            if not task.is_parent:
                continue
            for child_id in task.child_task_ids:
                if self.graph.has_node(child_id):
                    self.graph.add_edge(task.id, child_id, type=PARENT_OF)

    def dependency_edges(self) -> List[tuple]:
        """(dependent_id, prerequisite_id) pairs in insertion order."""
        return [
            (u, v) for u, v, data in self.graph.edges(data=True)
            if data.get("type") == DEPENDS_ON
        ]

    def prerequisites(self, task_id: str) -> List[str]:
        if task_id not in self.graph:
            return []
        return [
            v for v in self.graph.successors(task_id)
            if self.graph.edges[task_id, v].get("type") == DEPENDS_ON
        ]

    def children(self, task_id: str) -> List[str]:
        if task_id not in self.graph:
            return []
        return [
            v for v in self.graph.successors(task_id)
            if self.graph.edges[task_id, v].get("type") == PARENT_OF
        ]

    def has_dependency_cycle(self) -> bool:
        dep_view = nx.DiGraph(self.dependency_edges())
        return not nx.is_directed_acyclic_graph(dep_view)

    def get_subgraph(self, node_id: str, depth: int = 1) -> Dict[str, Any]:
        """
        Node-link dictionary of everything reachable from node_id within
        depth hops, plus its direct predecessors.
        """
        if node_id not in self.graph:
            return {"nodes": [], "links": []}

        subgraph_nodes = set(
            nx.single_source_shortest_path_length(self.graph, node_id, cutoff=depth).keys()
        )
        for pred in self.graph.predecessors(node_id):
            subgraph_nodes.add(pred)

        return nx.node_link_data(self.graph.subgraph(subgraph_nodes), edges="links")

    def to_dict(self) -> Dict[str, Any]:
        return nx.node_link_data(self.graph, edges="links")

    def to_json(self, indent: Optional[int] = 2) -> str:
        """Serialize full graph to JSON node-link format."""
        return json.dumps(self.to_dict(), indent=indent)

    def from_json(self, payload: str):
        """Load graph from JSON node-link format."""
        data = json.loads(payload)
        self.graph = nx.node_link_graph(data, directed=True, edges="links")
