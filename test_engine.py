"""
Extraction runs end to end, plus the task lifecycle operations.

Run: pytest test_engine.py
"""
import asyncio

import pytest

from backend.events import CompletionNotice, EventDispatcher, TASK_CREATED, TASK_UPDATED
from taskengine.engine import ConsolidationEngine
from taskengine.task_schema import IncomingMessage, TaskNotFoundError, TaskStateError

EXTRACTED = [
    {"description": "Send report", "priority": "HIGH"},
    {"description": "send the report", "priority": "MEDIUM"},
    {"description": "Review budget", "priority": "LOW", "dependencies": ["Send report"]},
]


def _scenario_classifier(classifier_factory, **kwargs):
    return classifier_factory(
        extracted=EXTRACTED,
        scores={frozenset(("Send report", "send the report")): 0.9},
        summary="Send the report",
        **kwargs,
    )


def test_extraction_run_end_to_end(classifier_factory, message):
    engine = ConsolidationEngine(_scenario_classifier(classifier_factory))

    result = asyncio.run(engine.process_message(message))

    t1, t2, t3 = result.tasks
    assert [t.description for t in result.tasks] == ["Send report", "send the report", "Review budget"]
    assert len(result.parents) == 1
    parent = result.parents[0]
    assert parent.priority == "HIGH"
    assert parent.child_task_ids == [t1.id, t2.id]
    assert t1.parent_task_id == t2.parent_task_id == parent.id
    assert t3.parent_task_id is None
    assert t3.priority == "HIGH"
    assert t3.id in result.escalated_ids
    assert [[t.id for t in c] for c in result.clusters] == [[t1.id, t2.id], [t3.id]]
    assert {"source": t3.id, "target": t1.id, "type": "DependsOn"} in result.graph["links"]
    assert all(t.thread_id == "thread-1" and t.source_message_id == "msg-1" for t in result.tasks)


def test_events_are_queued_until_dispatched(classifier_factory, message):
    dispatcher = EventDispatcher()
    seen = []
    dispatcher.subscribe(seen.append)
    engine = ConsolidationEngine(_scenario_classifier(classifier_factory), dispatcher=dispatcher)

    async def run():
        await engine.process_message(message)
        queued = len(dispatcher.pending())
        delivered = await dispatcher.dispatch()
        return queued, delivered

    queued, delivered = asyncio.run(run())

    assert queued == delivered == len(seen)
    created = [e for e in seen if e.type == TASK_CREATED]
    assert len(created) == 4
    assert any(e.type == TASK_UPDATED and e.task.is_subtask for e in seen)
    assert dispatcher.pending() == []


def test_failing_subscriber_does_not_block_others(classifier_factory, message):
    dispatcher = EventDispatcher()
    received = []

    def broken(event):
        raise RuntimeError("socket closed")

    async def record(event):
        received.append(event.type)

    dispatcher.subscribe(broken)
    dispatcher.subscribe(record)
    engine = ConsolidationEngine(_scenario_classifier(classifier_factory), dispatcher=dispatcher)

    async def run():
        await engine.process_message(message)
        await dispatcher.dispatch()

    asyncio.run(run())
    assert received and received[0] == TASK_CREATED


def test_rerun_of_same_message_creates_nothing(classifier_factory, message):
    engine = ConsolidationEngine(_scenario_classifier(classifier_factory))

    async def run():
        first = await engine.process_message(message)
        second = await engine.process_message(message)
        return first, second

    first, second = asyncio.run(run())
    assert len(first.tasks) == 3
    assert second.tasks == []
    assert len(engine.store.tasks) == 4


def test_concurrent_runs_on_one_thread_do_not_duplicate(classifier_factory, message):
    engine = ConsolidationEngine(_scenario_classifier(classifier_factory))
    other = message.model_copy(update={"id": "msg-2"})

    async def run():
        return await asyncio.gather(engine.process_message(message), engine.process_message(other))

    results = asyncio.run(run())
    assert sum(len(r.tasks) for r in results) == 3


def test_classifier_outage_during_run(classifier_factory, message):
    classifier = _scenario_classifier(classifier_factory, fail_compare=True, fail_summary=True)
    result = asyncio.run(ConsolidationEngine(classifier).process_message(message))

    assert len(result.tasks) == 3
    assert result.parents == []
    assert all(len(c) == 1 for c in result.clusters)


def test_extraction_failure_yields_empty_run(classifier_factory, message):
    engine = ConsolidationEngine(classifier_factory(fail_extract=True))
    result = asyncio.run(engine.process_message(message))
    assert result.tasks == [] and result.parents == []


def test_natural_deadlines_are_normalized(classifier_factory):
    classifier = classifier_factory(extracted=[
        {"description": "Submit slides", "deadline": "Feb 20, 2026 at 3pm"},
        {"description": "Call mentor", "deadline": "sometime"},
    ])
    msg = IncomingMessage(id="m-9", thread_id="t-9", body="...")
    result = asyncio.run(ConsolidationEngine(classifier).process_message(msg))
    assert [t.deadline for t in result.tasks] == ["2026-02-20T15:00:00", None]


def test_completion_notifies_thread(classifier_factory, message, messenger):
    engine = ConsolidationEngine(_scenario_classifier(classifier_factory), messaging=messenger)

    async def run():
        result = await engine.process_message(message)
        task = result.tasks[2]
        updated = await engine.update_task_status(task.id, "COMPLETED", "Budget approved")
        return task, updated

    task, updated = asyncio.run(run())

    assert updated.status == "COMPLETED"
    assert updated.comments[-1].content == "Budget approved"
    assert len(messenger.notices) == 1
    notice = messenger.notices[0]
    assert isinstance(notice, CompletionNotice)
    assert notice.description == "Review budget"
    assert notice.comment == "Budget approved"
    assert notice.thread_id == "thread-1"
    assert "Completion Notes: Budget approved" in notice.render()
    last = engine.dispatcher.pending()[-1]
    assert last.type == TASK_UPDATED and last.old_status == "PENDING"


def test_completed_is_terminal(classifier_factory, message, messenger):
    engine = ConsolidationEngine(_scenario_classifier(classifier_factory), messaging=messenger)

    async def run():
        result = await engine.process_message(message)
        task_id = result.tasks[0].id
        await engine.update_task_status(task_id, "COMPLETED")
        await engine.update_task_status(task_id, "COMPLETED")
        with pytest.raises(TaskStateError):
            await engine.update_task_status(task_id, "PENDING")
        with pytest.raises(TaskStateError):
            await engine.update_task(task_id, status="PENDING")

    asyncio.run(run())
    assert len(messenger.notices) == 1


def test_messaging_failure_is_not_raised(classifier_factory, message, failing_messenger):
    engine = ConsolidationEngine(_scenario_classifier(classifier_factory), messaging=failing_messenger)

    async def run():
        result = await engine.process_message(message)
        return await engine.update_task_status(result.tasks[0].id, "COMPLETED")

    assert asyncio.run(run()).status == "COMPLETED"


def test_update_missing_task_raises_not_found(classifier_factory, make_task):
    engine = ConsolidationEngine(classifier_factory())

    async def run():
        with pytest.raises(TaskNotFoundError) as excinfo:
            await engine.update_task("task_missing", priority="HIGH")
        assert excinfo.value.task_id == "task_missing"
        with pytest.raises(TaskNotFoundError):
            await engine.update_task_status("task_missing", "COMPLETED")
        created = await engine.save_task(make_task("Send report", id="task_missing"))
        return await engine.update_task(created.id, priority="HIGH")

    updated = asyncio.run(run())
    assert updated.priority == "HIGH"
    types = [e.type for e in engine.dispatcher.pending()]
    assert types == [TASK_CREATED, TASK_UPDATED]


def test_task_id_is_immutable(classifier_factory, make_task):
    engine = ConsolidationEngine(classifier_factory())

    async def run():
        task = await engine.save_task(make_task("Send report"))
        with pytest.raises(ValueError):
            await engine.update_task(task.id, id="task_other")

    asyncio.run(run())


def test_unknown_status_is_rejected(classifier_factory, make_task):
    engine = ConsolidationEngine(classifier_factory())

    async def run():
        task = await engine.save_task(make_task("Send report"))
        with pytest.raises(ValueError):
            await engine.update_task_status(task.id, "ARCHIVED")

    asyncio.run(run())


def test_reextracting_completed_task_keeps_it_completed(classifier_factory, message):
    classifier = classifier_factory(extracted=[{"description": "Send report", "priority": "HIGH"}])
    engine = ConsolidationEngine(classifier)
    follow_up = message.model_copy(update={"id": "msg-2"})

    async def run():
        first = await engine.process_message(message)
        task_id = first.tasks[0].id
        await engine.update_task_status(task_id, "COMPLETED", "done")
        rerun = await engine.process_message(follow_up)
        return task_id, rerun, await engine.store.store.get_task(task_id)

    task_id, rerun, durable = asyncio.run(run())

    assert rerun.tasks == []
    stored = engine.store.tasks[task_id]
    assert stored.status == "COMPLETED"
    assert [c.content for c in stored.comments] == ["done"]
    assert durable.status == "COMPLETED"
    assert len(engine.run_locks) == 0
