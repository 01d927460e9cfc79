"""
Backfills embeddings for every task whose embedding is missing or stale.
Unchanged tasks are skipped by content hash, so the script is safe to re-run.
"""
import argparse
import os
import sys
import time

sys.path.append(os.path.join(os.path.dirname(__file__), '..'))

from backend.postgres_storage import open_store
from standup.embeddings import TaskEmbeddingIndex, build_embedder, is_stale
from standup.logging_setup import configure_logging


def backfill(index: TaskEmbeddingIndex, include_completed: bool = True, delay: float = 0.0) -> dict:
    counts = {"generated": 0, "skipped": 0, "failed": 0}
    for located in index.store.iter_tasks(include_completed=include_completed):
        task = located.task
        if not is_stale(task):
            counts["skipped"] += 1
            continue
        context = {"assignee": task.assignee, "type": task.type, "status": task.status, "title": task.title}
        if index.upsert(task.ticket_id, task.embeddable_text(), context):
            counts["generated"] += 1
        else:
            counts["failed"] += 1
        if delay:
            time.sleep(delay)
    return counts


def main():
    parser = argparse.ArgumentParser(description="Generate missing or stale task embeddings")
    parser.add_argument("--active-only", action="store_true", help="Skip completed tasks")
    parser.add_argument("--backend", help="sentence-transformers or openai (defaults to EMBEDDING_BACKEND)")
    parser.add_argument("--delay", type=float, default=0.0, help="Seconds to sleep between embeddings")
    parser.add_argument("--database-url")
    parser.add_argument("--db-path")
    args = parser.parse_args()

    configure_logging()
    store = open_store(args.database_url, args.db_path)
    try:
        index = TaskEmbeddingIndex(store, build_embedder(args.backend))
        counts = backfill(index, include_completed=not args.active_only, delay=args.delay)
        print(f"✅ Generated {counts['generated']}, skipped {counts['skipped']}, failed {counts['failed']}")
        stats = index.stats()
        print(f"   Coverage: {stats['tasks_with_embeddings']}/{stats['total_tasks']} ({stats['coverage']})")
    finally:
        store.close()


if __name__ == "__main__":
    main()
