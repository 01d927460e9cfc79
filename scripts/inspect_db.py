
import os
import sys
import argparse
import json

# Add parent directory to path
sys.path.append(os.path.join(os.path.dirname(__file__), '..'))

from backend.postgres_storage import open_store
from standup.embeddings import TaskEmbeddingIndex
from standup.ticket_ids import TicketAllocator, normalize_ticket_id


def show_overview(store):
    allocator = TicketAllocator(store)
    tasks = store.iter_tasks()
    active = [t for t in tasks if t.task.status != "Completed"]
    print(f"\n🎫 Ticket counter: {allocator.peek()} (last issued {allocator.format(allocator.peek())})")
    print(f"📋 Tasks: {len(tasks)} total, {len(active)} active")

    stats = TaskEmbeddingIndex(store, embedder=None).stats()
    print(f"🧭 Embeddings: {stats['tasks_with_embeddings']}/{stats['total_tasks']} ({stats['coverage']})")
    for model, count in stats["models"].items():
        print(f"   - {model}: {count}")


def show_containers(store, limit=5, participant=None):
    containers = (
        store.get_containers_by_participant(participant, limit)
        if participant else store.get_containers(limit=limit)
    )
    if not containers:
        print("   (No containers)")
        return
    for container in containers:
        print(f"\n--- Container {container.id} @ {container.timestamp} ---")
        for name, lists in container.participants.items():
            for kind, tasks in lists.items():
                for task in tasks:
                    print(f"  [{task.ticket_id}] {name} / {kind} / {task.status}: {task.title}")


def show_task(store, ticket_id):
    located = store.find_task(normalize_ticket_id(ticket_id))
    if located is None:
        print(f"❌ {ticket_id} not found.")
        return
    record = located.task.model_dump(exclude={"embedding"}, exclude_none=True)
    record["has_embedding"] = located.task.embedding is not None
    print(f"\n🔍 {located.ticket_id} at {located.path}\n")
    print(json.dumps(record, indent=2))


def main():
    parser = argparse.ArgumentParser(description="Inspect the task store")
    parser.add_argument("ticket", nargs="?", help="Show one ticket in full")
    parser.add_argument("--containers", action="store_true", help="List recent containers")
    parser.add_argument("--participant", help="Only containers that include this participant")
    parser.add_argument("--limit", type=int, default=5, help="Number of containers to show")
    parser.add_argument("--cron", help="Show bookkeeping for a job name")
    parser.add_argument("--database-url")
    parser.add_argument("--db-path")

    args = parser.parse_args()

    store = open_store(args.database_url, args.db_path)
    try:
        if args.ticket:
            show_task(store, args.ticket)
        elif args.containers or args.participant:
            show_containers(store, args.limit, args.participant)
        elif args.cron:
            print(json.dumps(store.get_cron_run(args.cron), indent=2))
        else:
            show_overview(store)
    finally:
        store.close()


if __name__ == "__main__":
    main()
