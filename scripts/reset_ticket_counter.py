"""
Overwrites the ticket counter. Privileged: the next ticket issued will be
<prefix>-<count + 1>, even if that number is already in use.
"""
import argparse
import os
import sys

sys.path.append(os.path.join(os.path.dirname(__file__), '..'))

from backend.postgres_storage import open_store
from standup.logging_setup import configure_logging
from standup.ticket_ids import TicketAllocator


def main():
    parser = argparse.ArgumentParser(description="Reset the ticket counter (privileged)")
    parser.add_argument("--count", type=int, default=0, help="New counter value (highest number already issued)")
    parser.add_argument("--yes", action="store_true", help="Skip the confirmation prompt")
    parser.add_argument("--database-url")
    parser.add_argument("--db-path")
    args = parser.parse_args()

    if args.count < 0:
        parser.error("--count must be >= 0")

    configure_logging()
    store = open_store(args.database_url, args.db_path)
    try:
        allocator = TicketAllocator(store)
        current = allocator.peek()
        print(f"Current counter: {current} (last ticket {allocator.format(current)})")
        print(f"New counter:     {args.count} (next ticket {allocator.format(args.count + 1)})")

        if not args.yes:
            answer = input("Proceed? [y/N] ").strip().lower()
            if answer not in ("y", "yes"):
                print("Aborted.")
                return

        allocator.reset(args.count)
        print("✅ Counter reset.")
    finally:
        store.close()


if __name__ == "__main__":
    main()
