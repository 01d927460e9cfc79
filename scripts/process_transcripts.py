"""
Runs the transcript-to-ticket pipeline.

    python scripts/process_transcripts.py --path transcripts/          # files, all of them
    python scripts/process_transcripts.py --stored                     # stored transcripts since last run
    python scripts/process_transcripts.py --path t.vtt --no-tracker --no-embeddings
"""
import argparse
import json
import os
import sys

sys.path.append(os.path.join(os.path.dirname(__file__), '..'))

from backend.jira import JiraTracker
from backend.postgres_storage import open_store
from standup.config import config
from standup.embeddings import TaskEmbeddingIndex, build_embedder
from standup.extraction import SimilarityJudge, TaskExtractor, TitleGenerator
from standup.llm import LLMClient
from standup.logging_setup import configure_logging
from standup.matcher import TaskMatcher
from standup.notes import MeetingNotesGenerator
from standup.pipeline import TranscriptPipeline
from standup.run_tracking import DEFAULT_JOB
from standup.ticket_ids import TicketAllocator
from standup.transcripts import FileTranscriptSource, StoredTranscriptSource


def build_pipeline(store, use_embeddings=True, use_tracker=True, use_notes=True) -> TranscriptPipeline:
    llm = LLMClient()
    index = TaskEmbeddingIndex(store, build_embedder()) if use_embeddings else None
    matcher = TaskMatcher.build(
        index=index,
        judge=SimilarityJudge(llm),
        prefix=config['ticket_prefix'],
        vector_threshold=config['vector_threshold'],
    )
    return TranscriptPipeline(
        store=store,
        extractor=TaskExtractor(llm),
        matcher=matcher,
        allocator=TicketAllocator(store),
        index=index,
        titles=TitleGenerator(llm),
        tracker=JiraTracker() if use_tracker else None,
        notes=MeetingNotesGenerator(llm) if use_notes else None,
    )


def main():
    parser = argparse.ArgumentParser(description="Turn meeting transcripts into tracked tickets")
    source_group = parser.add_mutually_exclusive_group(required=True)
    source_group.add_argument("--path", help="Transcript file or directory (.json / .vtt)")
    source_group.add_argument("--stored", action="store_true", help="Read transcripts saved in the store")
    parser.add_argument("--job", default=DEFAULT_JOB, help="Job name for run bookkeeping")
    parser.add_argument("--save", action="store_true", help="Also save file transcripts into the store")
    parser.add_argument("--no-tracker", action="store_true", help="Do not file Jira issues")
    parser.add_argument("--no-embeddings", action="store_true", help="Skip the vector similarity tier")
    parser.add_argument("--no-notes", action="store_true", help="Skip meeting notes")
    parser.add_argument("--notes-dir", help="Write meeting notes as markdown files here")
    parser.add_argument("--log-dir", help="Also log to a rotating file in this directory")
    parser.add_argument("--database-url")
    parser.add_argument("--db-path")
    args = parser.parse_args()

    configure_logging(log_dir=args.log_dir)
    store = open_store(args.database_url, args.db_path)
    pipeline = None
    try:
        pipeline = build_pipeline(
            store,
            use_embeddings=not args.no_embeddings,
            use_tracker=not args.no_tracker,
            use_notes=not args.no_notes,
        )
        if args.stored:
            summaries = pipeline.run(StoredTranscriptSource(store), job_name=args.job)
        else:
            transcripts = FileTranscriptSource(args.path).fetch()
            if args.save:
                for t in transcripts:
                    store.store_transcript(t.meeting_id, t.date, [e.to_dict() for e in t.entries])
            summaries = pipeline.process_many(transcripts)

        for summary in summaries:
            print(json.dumps(summary.as_dict(), indent=2))
            if summary.notes and args.notes_dir:
                os.makedirs(args.notes_dir, exist_ok=True)
                out = os.path.join(args.notes_dir, f"{summary.transcript}.md")
                with open(out, "w", encoding="utf-8") as f:
                    f.write(summary.notes)
                print(f"📝 Notes written to {out}")

        if any(s.aborted for s in summaries):
            sys.exit(1)
    finally:
        if pipeline is not None and pipeline.tracker is not None:
            pipeline.tracker.close()
        store.close()


if __name__ == "__main__":
    main()
