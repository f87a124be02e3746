import argparse
import asyncio
import os
import sys

# Add parent directory to path
sys.path.append(os.path.join(os.path.dirname(__file__), '..'))

from backend.events import EventDispatcher
from backend.sqlite_storage import SqliteTaskStore
from taskengine.classifier import LLMClassifier
from taskengine.config import configure_logging
from taskengine.engine import ConsolidationEngine
from taskengine.task_schema import IncomingMessage

SAMPLE_BODY = """
Hi team,

Please send the Q1 report to finance by Feb 20, 2026 at 3pm. This is urgent.
Also, someone needs to send the quarterly report over to the finance team.
Once the report is out, review the budget for next quarter.

Thanks,
Dana
"""


async def run(db_path):
    dispatcher = EventDispatcher()
    dispatcher.subscribe(lambda event: print(f"  event: {event.type} {event.task.id} {event.task.description!r}"))
    engine = ConsolidationEngine(LLMClassifier(), store=SqliteTaskStore(db_path), dispatcher=dispatcher)

    message = IncomingMessage(
        id="smoke-msg-1",
        thread_id="smoke-thread-1",
        subject="Q1 report and budget",
        from_address="dana@example.com",
        body=SAMPLE_BODY,
    )

    # 1) Extract + consolidate
    result = await engine.process_message(message)
    print("tasks_created:", len(result.tasks))
    print("parents_created:", len(result.parents))
    print("escalated:", len(result.escalated_ids))

    # 2) Events
    print("events:")
    await dispatcher.dispatch()

    # 3) Ranked view
    for task in engine.store.query():
        marker = "P" if task.is_parent else ("S" if task.is_subtask else "-")
        print(f"  [{marker}] {task.priority:<6} {task.deadline or '-':<20} {task.description}")


def main():
    parser = argparse.ArgumentParser(description="Run one sample message through the engine")
    parser.add_argument("--db", default="smoke_tasks.db", help="SQLite database path")
    args = parser.parse_args()

    configure_logging()
    asyncio.run(run(args.db))


if __name__ == "__main__":
    main()
