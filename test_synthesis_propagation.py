"""
Parent synthesis and priority propagation.

Run: pytest test_synthesis_propagation.py
"""
import asyncio

import pytest

from taskengine.graph import TaskGraph
from taskengine.propagation import PriorityPropagator
from taskengine.synthesis import ParentSynthesizer
from taskengine.task_schema import priority_rank


# ── Parent synthesis ─────────────────────────────────────────────────────────

def test_parent_takes_earliest_deadline_and_most_urgent_priority(classifier_factory, make_task):
    cluster = [
        make_task("Send report", priority="MEDIUM", deadline="2024-01-10"),
        make_task("send the report", priority="LOW"),
        make_task("send report to finance", priority="HIGH", deadline="2024-01-05"),
    ]
    classifier = classifier_factory(summary="Send the report to finance")

    parent = asyncio.run(ParentSynthesizer(classifier).synthesize(cluster))

    assert parent.deadline == "2024-01-05"
    assert parent.priority == "HIGH"
    assert parent.description == "Send the report to finance"
    assert parent.is_parent and not parent.is_subtask
    assert parent.status == "PENDING"
    assert parent.child_task_ids == [t.id for t in cluster]
    assert classifier.summarize_calls == [[t.description for t in cluster]]


def test_members_become_subtasks(classifier_factory, make_task):
    cluster = [make_task("Send report"), make_task("send the report")]
    parent = asyncio.run(ParentSynthesizer(classifier_factory()).synthesize(cluster))
    for member in cluster:
        assert member.is_subtask
        assert member.parent_task_id == parent.id
        assert not member.is_parent
    assert parent.id not in {m.id for m in cluster}


def test_invalid_deadlines_are_ignored(classifier_factory, make_task):
    cluster = [
        make_task("Send report", deadline="next-ish week"),
        make_task("send the report", deadline="2024-02-30"),
    ]
    parent = asyncio.run(ParentSynthesizer(classifier_factory()).synthesize(cluster))
    assert parent.deadline is None


def test_mixed_date_and_datetime_deadlines(classifier_factory, make_task):
    cluster = [
        make_task("Send report", deadline="2024-01-05T09:00:00+02:00"),
        make_task("send the report", deadline="2024-01-05"),
    ]
    parent = asyncio.run(ParentSynthesizer(classifier_factory()).synthesize(cluster))
    assert parent.deadline == "2024-01-05"


def test_summary_failure_uses_template(classifier_factory, make_task):
    cluster = [make_task("Send report", priority="LOW"), make_task("send the report", priority="MEDIUM")]
    parent = asyncio.run(ParentSynthesizer(classifier_factory(fail_summary=True)).synthesize(cluster))
    assert parent.description == "Combined task group (2 tasks)"
    assert parent.priority == "MEDIUM"


def test_blank_summary_uses_template(classifier_factory, make_task):
    cluster = [make_task("a"), make_task("b"), make_task("c")]
    parent = asyncio.run(ParentSynthesizer(classifier_factory(summary="   ")).synthesize(cluster))
    assert parent.description == "Combined task group (3 tasks)"


def test_singleton_cluster_is_rejected(classifier_factory, make_task):
    with pytest.raises(ValueError):
        asyncio.run(ParentSynthesizer(classifier_factory()).synthesize([make_task("Send report")]))


# ── Priority propagation ─────────────────────────────────────────────────────

def test_prerequisite_inherits_dependent_urgency(make_task):
    report = make_task("Send report", priority="LOW")
    review = make_task("Review budget", priority="HIGH", dependencies=["Send report"])

    PriorityPropagator().propagate([report, review])

    assert report.priority == "HIGH"
    assert review.priority == "HIGH"


def test_dependent_is_lifted_to_prerequisite_urgency(make_task):
    report = make_task("Send report", priority="HIGH")
    review = make_task("Review budget", priority="LOW", dependencies=["Send report"])

    PriorityPropagator().propagate([report, review])

    assert review.priority == "HIGH"
    assert report.priority == "HIGH"


def test_dependents_stay_put_when_disabled(make_task):
    report = make_task("Send report", priority="HIGH")
    review = make_task("Review budget", priority="LOW", dependencies=["Send report"])

    PriorityPropagator(escalate_dependents=False).propagate([report, review])

    assert review.priority == "LOW"


def test_chain_propagates_transitively(make_task):
    a = make_task("Collect receipts", priority="LOW")
    b = make_task("File expenses", priority="LOW", dependencies=["Collect receipts"])
    c = make_task("Close books", priority="HIGH", dependencies=["File expenses"])

    PriorityPropagator(escalate_dependents=False).propagate([a, b, c])

    assert [a.priority, b.priority, c.priority] == ["HIGH", "HIGH", "HIGH"]


def test_propagation_is_idempotent_and_monotonic(make_task):
    tasks = [
        make_task("Collect receipts", priority="LOW"),
        make_task("File expenses", priority="MEDIUM", dependencies=["Collect receipts", "Missing step"]),
        make_task("Close books", priority="LOW", dependencies=["File expenses"]),
        make_task("Plan offsite", priority="HIGH"),
    ]
    before = {t.id: priority_rank(t.priority) for t in tasks}
    propagator = PriorityPropagator()

    propagator.propagate(tasks)
    after_first = {t.id: t.priority for t in tasks}
    propagator.propagate(tasks)

    assert {t.id: t.priority for t in tasks} == after_first
    assert all(priority_rank(t.priority) <= before[t.id] for t in tasks)
    assert tasks[3].priority == "HIGH"


def test_dependency_match_is_exact_and_first_wins(make_task):
    first = make_task("Send report", priority="LOW", thread_id="t-1")
    second = make_task("Send report", priority="LOW", thread_id="t-2")
    lowercase = make_task("send report", priority="LOW")
    review = make_task("Review budget", priority="HIGH", dependencies=["Send report"])

    PriorityPropagator().propagate([first, second, lowercase, review])

    assert first.priority == "HIGH"
    assert second.priority == "LOW"
    assert lowercase.priority == "LOW"


def test_completed_tasks_are_not_escalated(make_task):
    done = make_task("Send report", priority="LOW", status="COMPLETED")
    review = make_task("Review budget", priority="HIGH", dependencies=["Send report"])

    PriorityPropagator().propagate([done, review])

    assert done.priority == "LOW"


def test_dependency_cycle_terminates(make_task):
    a = make_task("Task A", priority="LOW", dependencies=["Task B"])
    b = make_task("Task B", priority="MEDIUM", dependencies=["Task A"])

    PriorityPropagator().propagate([a, b])

    assert a.priority == b.priority == "MEDIUM"
    assert TaskGraph.from_tasks([a, b]).has_dependency_cycle()


def test_task_graph_edges_and_json(make_task):
    report = make_task("Send report")
    review = make_task("Review budget", dependencies=["Send report", "Unknown"])
    graph = TaskGraph.from_tasks([report, review])

    assert graph.dependency_edges() == [(review.id, report.id)]
    assert graph.prerequisites(review.id) == [report.id]
    assert graph.unresolved == [{"task_id": review.id, "dependency": "Unknown"}]

    restored = TaskGraph()
    restored.from_json(graph.to_json())
    assert set(restored.graph.nodes) == {report.id, review.id}
