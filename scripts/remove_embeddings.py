import argparse
import os
import sys

sys.path.append(os.path.join(os.path.dirname(__file__), '..'))

from backend.postgres_storage import open_store
from standup.embeddings import TaskEmbeddingIndex
from standup.logging_setup import configure_logging
from standup.ticket_ids import normalize_ticket_id


def remove_embeddings(store, ticket_ids=None) -> int:
    """Unsets embedding fields on the given tickets, or on every task when ticket_ids is empty."""
    if not ticket_ids:
        ticket_ids = [l.ticket_id for l in store.iter_tasks() if l.task.embedding is not None]
    # Invalidation never calls the embedder
    index = TaskEmbeddingIndex(store, embedder=None)
    removed = 0
    for ticket_id in ticket_ids:
        if index.invalidate(ticket_id):
            removed += 1
        else:
            print(f"⚠️ {ticket_id}: no embedding or task not found")
    return removed


def main():
    parser = argparse.ArgumentParser(description="Remove stored task embeddings")
    parser.add_argument("tickets", nargs="*", help="Ticket IDs (e.g. SP-12); omit with --all")
    parser.add_argument("--all", action="store_true", help="Remove embeddings from every task")
    parser.add_argument("--database-url")
    parser.add_argument("--db-path")
    args = parser.parse_args()

    if not args.tickets and not args.all:
        parser.error("give ticket IDs or --all")

    configure_logging()
    store = open_store(args.database_url, args.db_path)
    try:
        tickets = [normalize_ticket_id(t) for t in args.tickets]
        removed = remove_embeddings(store, tickets)
        print(f"✅ Removed {removed} embedding(s).")
    finally:
        store.close()


if __name__ == "__main__":
    main()
