"""
End-to-end pipeline tests on a throwaway SQLite store. Extraction, embeddings
and the tracker are scripted; matching, merging and storage are real.

Run: python test_pipeline.py   (or pytest)
"""
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

import pytest

from standup.db import SqliteTaskStore
from standup.errors import StorageError, TrackerError
from standup.extraction import TaskExtractor
from standup.llm import LLMClient
from standup.matcher import MatchDecision, TaskMatcher
from standup.notes import MeetingNotesGenerator
from standup.pipeline import TranscriptPipeline
from standup.run_tracking import calculate_dynamic_time_window
from standup.task_schema import CandidateTask, FiledIssue, LocatedTask, TaskPath, TaskRecord
from standup.ticket_ids import TicketAllocator
from standup.transcripts import StoredTranscriptSource, Transcript, TranscriptEntry


class ScriptedExtractor:
    """Candidates keyed by transcript meeting_id."""

    def __init__(self, by_meeting):
        self.by_meeting = by_meeting
        self.pool_sizes = []

    def extract(self, transcript, existing=()):
        self.pool_sizes.append(len(existing))
        result = self.by_meeting[transcript.meeting_id]
        if isinstance(result, Exception):
            raise result
        return result


class RecordingIndex:
    def __init__(self):
        self.upserts = []

    def upsert(self, task_id, text, context=None):
        self.upserts.append((task_id, text))
        return True


class FakeTracker:
    def __init__(self, error=None):
        self.error = error
        self.requests = []

    def create_issue(self, request):
        self.requests.append(request)
        if self.error:
            raise self.error
        key = f"PROJ-{len(self.requests)}"
        return FiledIssue(issue_key=key, issue_url=f"https://jira.example/browse/{key}")


class ExplodingTitles:
    def generate(self, description):
        if "bad" in description:
            raise ValueError("title rejected")
        return description[:20]


class StaleTargetMatcher:
    """Always answers UPDATE against a path that no longer holds the task."""

    def match(self, candidate, pool):
        target = LocatedTask(
            task=TaskRecord(ticket_id="SP-7", description="Old", assignee="Alice"),
            path=TaskPath("gone", "Alice", "Coding", 3),
        )
        return MatchDecision(action="UPDATE", confidence=1.0, method="explicit_id",
                             target=target, delta={"status": "Completed"})


class ContainerlessStore:
    """Delegates to a real store but refuses to create containers."""

    def __init__(self, store):
        self._store = store

    def __getattr__(self, name):
        return getattr(self._store, name)

    def create_container(self, *args, **kwargs):
        raise StorageError("disk full")


def _candidate(description, assignee="Alice", **extra):
    return CandidateTask.model_validate({"description": description, "assignee": assignee, **extra})


def _transcript(meeting_id="standup-1"):
    return Transcript(meeting_id=meeting_id, entries=[TranscriptEntry(speaker="Alice", text="Morning")])


def _store(tmp_path):
    return SqliteTaskStore(str(tmp_path / "pipeline.db"))


def _seed_sp7(store):
    container_id = store.create_container(timestamp="2024-05-01T09:00:00+00:00")
    store.create_task(container_id, "Alice", "Coding", {
        "ticket_id": "SP-7", "title": "Login page", "description": "Build the login page",
        "assignee": "Alice", "time_taken": 2.0,
    })
    TicketAllocator(store, prefix="SP").initialize(8)


def _pipeline(store, extractor=None, matcher=None, sleeps=None, **kwargs):
    sleeps = sleeps if sleeps is not None else []
    return TranscriptPipeline(
        store=store,
        extractor=extractor or ScriptedExtractor({}),
        matcher=matcher or TaskMatcher.build(prefix="SP"),
        allocator=TicketAllocator(store, prefix="SP"),
        sleep=sleeps.append,
        **kwargs,
    )


def test_explicit_reference_updates_existing_task(tmp_path):
    print("\n── Test: SP-7 Update End To End ──")
    store = _store(tmp_path)
    _seed_sp7(store)
    index = RecordingIndex()
    extractor = ScriptedExtractor({"standup-1": [
        _candidate("Finished the login page, spent 3 hours", existing_task_id="SP-7"),
    ]})
    pipeline = _pipeline(store, extractor, index=index)

    summary = pipeline.process_transcript(_transcript())

    assert (summary.created, summary.updated, summary.unchanged, summary.failed) == (0, 1, 0, 0)
    task = store.find_task("SP-7").task
    assert task.status == "Completed"
    assert task.time_taken == 5.0
    assert task.description == "Build the login page\n\nUpdate: Finished the login page, spent 3 hours"
    assert task.last_modified is not None
    assert summary.updated_tasks[0]["changes"] == ["description", "status", "time_taken"]
    assert summary.updated_tasks[0]["method"] == "explicit_id"
    assert TicketAllocator(store).peek() == 7, "Updates never allocate IDs"
    assert index.upserts == [("SP-7", task.embeddable_text())]
    assert extractor.pool_sizes == [1]
    print("  ✓ Status, accumulated time and appended description stored")


def test_new_work_gets_next_ticket_id(tmp_path):
    print("\n── Test: New Task Allocation ──")
    store = _store(tmp_path)
    TicketAllocator(store, prefix="SP").initialize(42)
    index = RecordingIndex()
    pipeline = _pipeline(store, index=index)

    summary = pipeline.process_candidates([_candidate("Set up the staging database", assignee="Bob")])

    assert summary.created == 1
    assert summary.created_tasks == [{"ticket_id": "SP-42", "title": "Set up the staging database", "assignee": "Bob"}]
    located = store.find_task("SP-42")
    assert located.path.participant == "Bob" and located.path.list_kind == "Coding"
    assert located.task.created_at is not None
    assert index.upserts[0][0] == "SP-42"
    print("  ✓ Counter at 41 issues SP-42")


def test_duplicates_in_one_run_collapse(tmp_path):
    store = _store(tmp_path)
    pipeline = _pipeline(store)

    summary = pipeline.process_candidates([
        _candidate("Set up the staging database", assignee="Bob"),
        _candidate("Set up the staging database", assignee="Bob"),
    ])

    assert summary.created == 1
    assert summary.unchanged == 1
    assert TicketAllocator(store).peek() == 1
    assert len(store.get_containers()) == 1


def test_throttle_uses_injected_sleep(tmp_path):
    store = _store(tmp_path)
    sleeps = []
    pipeline = _pipeline(store, sleeps=sleeps, throttle_every=3, throttle_seconds=0.5)

    candidates = [_candidate(f"Independent task number {i}", assignee=f"Person{i}") for i in range(7)]
    summary = pipeline.process_candidates(candidates)

    assert summary.created == 7
    assert sleeps == [0.5, 0.5]


def test_stale_update_counts_as_failure(tmp_path):
    store = _store(tmp_path)
    pipeline = _pipeline(store, matcher=StaleTargetMatcher())

    summary = pipeline.process_candidates([_candidate("Finished SP-7")])
    assert summary.failed == 1
    assert summary.updated == 0
    assert "SP-7" in summary.errors[0]


def test_per_task_value_error_does_not_stop_batch(tmp_path):
    store = _store(tmp_path)
    pipeline = _pipeline(store, titles=ExplodingTitles())

    summary = pipeline.process_candidates([
        _candidate("A bad task description", assignee="Alice"),
        _candidate("Write the onboarding guide", assignee="Carol"),
    ])
    assert summary.failed == 1
    assert summary.created == 1
    assert store.find_task("SP-2").task.title == "Write the onboarding"


def test_tracker_is_best_effort(tmp_path):
    print("\n── Test: Tracker Filing ──")
    store = _store(tmp_path)
    failing = _pipeline(store, tracker=FakeTracker(error=TrackerError("Jira down")))
    summary = failing.process_candidates([_candidate("Write the onboarding guide", assignee="Carol")])

    assert summary.created == 1
    assert store.find_task("SP-1").task.issue_key is None
    print("  ✓ Tracker failure keeps the local ticket")

    tracker = FakeTracker()
    working = _pipeline(store, tracker=tracker)
    working.process_candidates([_candidate("Plan the team offsite", assignee="Dana", priority="High")])

    task = store.find_task("SP-2").task
    assert task.issue_key == "PROJ-1"
    assert task.issue_url == "https://jira.example/browse/PROJ-1"
    assert tracker.requests[0].assignee == "Dana"
    assert tracker.requests[0].priority == "High"
    print("  ✓ Issue key stored separately from the ticket ID")


def test_storage_error_aborts_transcript_only(tmp_path):
    store = _store(tmp_path)
    extractor = ScriptedExtractor({
        "broken": [_candidate("Anything new", assignee="Eve")],
        "fine": [],
    })
    with pytest.raises(StorageError):
        _pipeline(ContainerlessStore(store), extractor).process_transcript(_transcript("broken"))

    flaky = ScriptedExtractor({"first": RuntimeError("model offline"), "second": [_candidate("Review the PR")]})
    summaries = _pipeline(store, flaky).process_many([_transcript("first"), _transcript("second")])

    assert summaries[0].aborted and "model offline" in summaries[0].errors[0]
    assert not summaries[1].aborted and summaries[1].created == 1


def test_notes_generated_for_touched_tasks(tmp_path):
    store = _store(tmp_path)
    extractor = ScriptedExtractor({"standup-1": [_candidate("Write the onboarding guide", assignee="Carol")]})
    summary = _pipeline(store, extractor, notes=MeetingNotesGenerator()).process_transcript(_transcript())

    assert "# Meeting Notes: standup-1" in summary.notes
    assert "SP-1: Write the onboarding guide" in summary.notes

    quiet = ScriptedExtractor({"standup-1": []})
    assert _pipeline(store, quiet, notes=MeetingNotesGenerator()).process_transcript(_transcript()).notes is None


class WindowedSource:
    def __init__(self, transcripts):
        self.transcripts = transcripts
        self.windows = []

    def fetch(self, start=None, end=None):
        self.windows.append((start, end))
        return self.transcripts


def test_run_records_window(tmp_path):
    print("\n── Test: Scheduled Run Bookkeeping ──")
    store = _store(tmp_path)
    extractor = ScriptedExtractor({"standup-1": [_candidate("Review the PR")]})
    pipeline = _pipeline(store, extractor)
    source = WindowedSource([_transcript()])
    first_run = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)

    assert calculate_dynamic_time_window(store, "job", first_run, fallback_minutes=60).window_type == "fallback"
    pipeline.run(source, job_name="job", now=first_run)

    record = store.get_cron_run("job")
    assert record["last_status"] == "success"
    assert record["last_successful_run"] == first_run.isoformat()
    assert record["metadata"]["created"] == 1
    print("  ✓ First run uses the fallback window and records success")

    second_run = first_run + timedelta(minutes=30)
    source.transcripts = []
    pipeline.run(source, job_name="job", now=second_run)
    assert source.windows[-1] == (first_run.isoformat(), second_run.isoformat())

    window = calculate_dynamic_time_window(store, "job", second_run + timedelta(minutes=15))
    assert window.window_type == "dynamic"
    assert window.duration_minutes == 15
    assert store.get_cron_run("job")["total_runs"] == 2
    print("  ✓ Next run starts at the last success")

class TimingOutCompletions:
    def __init__(self):
        self.calls = 0

    def create(self, **kwargs):
        self.calls += 1
        raise TimeoutError("model unavailable")


def test_model_outage_keeps_window_open(tmp_path):
    print("\n── Test: Extraction Outage ──")
    store = _store(tmp_path)
    store.store_transcript("standup-9", "2024-05-01T09:30:00+00:00",
                           [{"speaker": "Alice", "text": "I finished the login page"}])
    completions = TimingOutCompletions()
    llm = LLMClient(client=SimpleNamespace(chat=SimpleNamespace(completions=completions)), model="test-model")
    pipeline = _pipeline(store, TaskExtractor(llm))
    first_run = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)

    summaries = pipeline.run(StoredTranscriptSource(store), job_name="job", now=first_run)

    assert len(summaries) == 1
    assert summaries[0].aborted
    assert "model unavailable" in summaries[0].errors[0]
    assert completions.calls == 2
    record = store.get_cron_run("job")
    assert record["last_status"] == "failed"
    assert record["last_successful_run"] is None
    print("  ✓ Outage aborts the transcript and is not recorded as success")

    later = first_run + timedelta(minutes=30)
    window = calculate_dynamic_time_window(store, "job", later, fallback_minutes=60)
    assert window.window_type == "fallback"
    assert window.start <= datetime(2024, 5, 1, 9, 30, tzinfo=timezone.utc)
    print("  ✓ Next window still covers the unprocessed transcript")



def main():
    print("=" * 60)
    print("  PIPELINE — TEST")
    print("=" * 60)

    for test in (test_explicit_reference_updates_existing_task, test_new_work_gets_next_ticket_id,
                 test_duplicates_in_one_run_collapse, test_throttle_uses_injected_sleep,
                 test_stale_update_counts_as_failure, test_per_task_value_error_does_not_stop_batch,
                 test_tracker_is_best_effort, test_storage_error_aborts_transcript_only,
                 test_notes_generated_for_touched_tasks, test_run_records_window,
                 test_model_outage_keeps_window_open):
        test(Path(tempfile.mkdtemp()))
    print("\n  ✓ ALL TESTS PASSED")


if __name__ == "__main__":
    main()
