import argparse
import os
import sys

# Add parent directory to path
sys.path.append(os.path.join(os.path.dirname(__file__), '..'))

from backend.postgres_storage import open_store
from standup.logging_setup import configure_logging
from standup.ticket_ids import TicketAllocator


def create_database(database_url=None, db_path=None, starting_number=1):
    """Creates the schema (idempotent) and the ticket counter if it is missing."""
    store = open_store(database_url, db_path)
    try:
        allocator = TicketAllocator(store)
        if allocator.initialize(starting_number):
            print(f"✅ Ticket counter created; next ticket is {allocator.format(starting_number)}.")
        else:
            print(f"ℹ️ Ticket counter already at {allocator.peek()}; left unchanged.")
    finally:
        store.close()


def main():
    parser = argparse.ArgumentParser(description="Create the task store schema and ticket counter")
    parser.add_argument("--database-url", help="PostgreSQL URL (defaults to DATABASE_URL)")
    parser.add_argument("--db-path", help="SQLite file when no PostgreSQL URL is set")
    parser.add_argument("--start", type=int, default=1, help="Number of the first ticket to issue")
    args = parser.parse_args()

    configure_logging()
    create_database(args.database_url, args.db_path, args.start)


if __name__ == "__main__":
    main()
