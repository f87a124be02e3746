import argparse
import asyncio
import os
import sys

# Add parent directory to path
sys.path.append(os.path.join(os.path.dirname(__file__), '..'))

from backend.postgres_storage import PostgresTaskStore
from backend.sqlite_storage import SqliteTaskStore
from taskengine.config import config


async def create_postgres(conn_string):
    store = await PostgresTaskStore(conn_string).connect()
    await store.close()


def create_database(db_path=None, postgres=None):
    try:
        if postgres:
            print("Creating 'tasks' table in Postgres...")
            asyncio.run(create_postgres(postgres))
        else:
            store = SqliteTaskStore(db_path)
            print(f"Creating 'tasks' table in {store.db_path}...")
            store.init_db()
        print("✅ Task table ready.")
    except Exception as e:
        print(f"❌ Failed to create task table: {e}")
        sys.exit(1)


def main():
    parser = argparse.ArgumentParser(description="Create the task table")
    parser.add_argument("--db", default=config['db_path'], help="SQLite database path")
    parser.add_argument("--postgres", help="Postgres connection string (uses Postgres instead of SQLite)")
    args = parser.parse_args()
    create_database(args.db, args.postgres)


if __name__ == "__main__":
    main()
