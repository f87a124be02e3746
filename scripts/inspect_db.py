import argparse
import asyncio
import json
import os
import sys

# Add parent directory to path
sys.path.append(os.path.join(os.path.dirname(__file__), '..'))

from backend.sqlite_storage import SqliteTaskStore
from taskengine.config import config


async def load(store, args):
    if args.task:
        task = await store.get_task(args.task)
        return [task] if task else []
    if args.message:
        return await store.get_tasks_by_message(args.message)
    return await store.get_tasks_by_thread(args.thread)


def main():
    parser = argparse.ArgumentParser(description="Inspect stored tasks")
    parser.add_argument("thread", nargs="?", help="Thread id whose open tasks to print")
    parser.add_argument("--message", help="Print open tasks extracted from this message id")
    parser.add_argument("--task", help="Print a single task by id")
    parser.add_argument("--db", default=config['db_path'], help="SQLite database path")
    args = parser.parse_args()

    if not (args.thread or args.message or args.task):
        parser.print_usage()
        print("\nUsage: python scripts/inspect_db.py <thread_id> [--message ID] [--task ID]")
        sys.exit(1)

    if not os.path.exists(args.db):
        print(f"❌ Database '{args.db}' does not exist. Run scripts/create_db.py first.")
        sys.exit(1)

    tasks = asyncio.run(load(SqliteTaskStore(args.db), args))
    if not tasks:
        print("   (No matching tasks)")
        return

    print(f"\n🔍 {len(tasks)} task(s)\n")
    for i, task in enumerate(tasks):
        print(f"--- Task {i+1} ---")
        print(json.dumps(task.to_storage_dict(), indent=2))
        print("")


if __name__ == "__main__":
    main()
