"""
pipeline.py

Transcript -> candidate tasks -> match -> create or merge -> embeddings,
tracker tickets and meeting notes.

A run reads the active task pool once, then keeps that snapshot current in
memory as it creates and updates tasks, so two mentions of the same new work
in one transcript collapse onto one ticket.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from standup.config import config
from standup.errors import StorageError, TrackerError
from standup.matcher import MatchDecision
from standup.merge import fallback_title
from standup.run_tracking import DEFAULT_JOB, calculate_dynamic_time_window, record_run
from standup.task_schema import CandidateTask, LocatedTask, TaskRecord, TicketRequest, utc_now
from standup.transcripts import Transcript

logger = logging.getLogger(__name__)


@dataclass
class BatchSummary:
    transcript: str = ""
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)
    created_tasks: List[Dict[str, Any]] = field(default_factory=list)
    updated_tasks: List[Dict[str, Any]] = field(default_factory=list)
    notes: Optional[str] = None
    aborted: bool = False

    @property
    def total(self) -> int:
        return self.created + self.updated + self.unchanged + self.failed

    def as_dict(self) -> Dict[str, Any]:
        return {
            "transcript": self.transcript,
            "created": self.created,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "failed": self.failed,
            "errors": list(self.errors),
            "aborted": self.aborted,
        }


def _embedding_context(task: TaskRecord) -> Dict[str, Any]:
    return {"assignee": task.assignee, "type": task.type, "status": task.status, "title": task.title}


class TranscriptPipeline:

    def __init__(self, store, extractor, matcher, allocator, index=None, titles=None,
                 tracker=None, notes=None, throttle_every: Optional[int] = None,
                 throttle_seconds: Optional[float] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.store = store
        self.extractor = extractor
        self.matcher = matcher
        self.allocator = allocator
        self.index = index
        self.titles = titles
        self.tracker = tracker
        self.notes = notes
        self.throttle_every = throttle_every if throttle_every is not None else config['throttle_every']
        self.throttle_seconds = throttle_seconds if throttle_seconds is not None else config['throttle_seconds']
        self._sleep = sleep

    # ── Entry points ─────────────────────────────────────────────────────────

    def process_transcript(self, transcript: Transcript) -> BatchSummary:
        """
        Processes one transcript. Extraction, storage and allocation errors propagate;
        per-task matching or merge failures are counted in the summary.
        """
        pool = self.store.get_active_tasks()
        candidates = self.extractor.extract(transcript, pool)
        summary = self.process_candidates(candidates, pool, label=transcript.label)

        if self.notes is not None and summary.total:
            summary.notes = self.notes.generate(transcript, summary.created_tasks, summary.updated_tasks)
        return summary

    def process_candidates(self, candidates: Sequence[CandidateTask],
                           pool: Optional[List[LocatedTask]] = None,
                           label: str = "") -> BatchSummary:
        pool = list(pool) if pool is not None else self.store.get_active_tasks()
        summary = BatchSummary(transcript=label)
        container_id: Optional[str] = None

        logger.info("[Pipeline] %s: %d candidate(s) against %d active task(s)", label or "batch", len(candidates), len(pool))
        for i, candidate in enumerate(candidates):
            self._throttle(i)
            decision = self.matcher.match(candidate, pool)
            try:
                if decision.is_update:
                    self._apply_update(decision, pool, summary)
                else:
                    if container_id is None:
                        container_id = self.store.create_container()
                    self._create(candidate, decision, container_id, pool, summary)
            except StorageError:
                raise
            except ValueError as e:
                summary.failed += 1
                summary.errors.append(f"{candidate.assignee}: {candidate.description[:60]}: {e}")
                logger.error("[Pipeline] Could not apply task for %s: %s", candidate.assignee, e)

        logger.info(
            "[Pipeline] %s: created=%d updated=%d unchanged=%d failed=%d",
            label or "batch", summary.created, summary.updated, summary.unchanged, summary.failed,
        )
        return summary

    def process_many(self, transcripts: Sequence[Transcript]) -> List[BatchSummary]:
        summaries = []
        for transcript in transcripts:
            try:
                summaries.append(self.process_transcript(transcript))
            except Exception as e:
                logger.exception("[Pipeline] Transcript %s failed", transcript.label)
                summaries.append(BatchSummary(transcript=transcript.label, errors=[str(e)], aborted=True))
        return summaries

    def run(self, source, job_name: str = DEFAULT_JOB, now: Optional[datetime] = None) -> List[BatchSummary]:
        """Fetches transcripts since the job's last successful run, processes them and records the run."""
        window = calculate_dynamic_time_window(self.store, job_name, now)
        logger.info("[Pipeline] %s window %s -> %s (%s)", job_name, window.start, window.end, window.window_type)
        try:
            transcripts = source.fetch(*window.as_iso())
        except Exception as e:
            record_run(self.store, job_name, "failed", window.end, {"error": str(e)})
            raise

        summaries = self.process_many(transcripts)
        aborted = sum(1 for s in summaries if s.aborted)
        status = "success" if not aborted else ("failed" if aborted == len(summaries) else "partial")
        record_run(self.store, job_name, status, window.end, {
            "window_type": window.window_type,
            "duration_minutes": window.duration_minutes,
            "transcripts": len(summaries),
            "created": sum(s.created for s in summaries),
            "updated": sum(s.updated for s in summaries),
            "failed": sum(s.failed for s in summaries),
            "aborted": aborted,
        })
        return summaries

    # ── Steps ────────────────────────────────────────────────────────────────

    def _throttle(self, position: int) -> None:
        if self.throttle_every and position and position % self.throttle_every == 0 and self.throttle_seconds > 0:
            logger.debug("[Pipeline] Throttling %.1fs after %d candidates", self.throttle_seconds, position)
            self._sleep(self.throttle_seconds)

    def _apply_update(self, decision: MatchDecision, pool: List[LocatedTask], summary: BatchSummary) -> None:
        target = decision.target
        if not decision.delta:
            summary.unchanged += 1
            logger.info("[Pipeline] %s: nothing new", target.ticket_id)
            return

        delta = {**decision.delta, "last_modified": utc_now()}
        result = self.store.apply_update(target.path, delta, expected_ticket_id=target.ticket_id)
        if not result.matched:
            summary.failed += 1
            summary.errors.append(f"{target.ticket_id}: task no longer at {target.path}")
            logger.error("[Pipeline] Update of %s matched nothing at %s", target.ticket_id, target.path)
            return
        if not result.modified:
            summary.unchanged += 1
            return

        updated = target.with_changes(delta)
        for position, item in enumerate(pool):
            if item.ticket_id == target.ticket_id:
                pool[position] = updated
                break

        summary.updated += 1
        summary.updated_tasks.append({
            "ticket_id": target.ticket_id,
            "title": updated.task.title,
            "changes": sorted(decision.delta),
            "method": decision.method,
            "confidence": round(decision.confidence, 3),
        })
        logger.info("[Pipeline] Updated %s (%s) via %s", target.ticket_id, ", ".join(sorted(decision.delta)), decision.method)

        if self.index is not None and ("description" in delta or "status" in delta):
            self.index.upsert(target.ticket_id, updated.task.embeddable_text(), _embedding_context(updated.task))

    def _create(self, candidate: CandidateTask, decision: MatchDecision, container_id: str,
                pool: List[LocatedTask], summary: BatchSummary) -> None:
        payload = dict(decision.new_task or {})
        ticket_id = self.allocator.allocate()
        title = self.titles.generate(candidate.description) if self.titles else fallback_title(candidate.description)
        now = utc_now()

        record = TaskRecord.model_validate({
            **payload,
            "ticket_id": ticket_id,
            "title": title,
            "created_at": now,
            "last_modified": now,
        })
        path = self.store.create_task(container_id, candidate.assignee, candidate.type, record.to_storage_dict())
        located = LocatedTask(task=record, path=path)
        pool.append(located)

        summary.created += 1
        summary.created_tasks.append({"ticket_id": ticket_id, "title": title, "assignee": candidate.assignee})
        logger.info("[Pipeline] Created %s for %s: %s", ticket_id, candidate.assignee, title)

        if self.index is not None:
            self.index.upsert(ticket_id, record.embeddable_text(), _embedding_context(record))

        if self.tracker is not None:
            self._file_ticket(located, pool)

    def _file_ticket(self, located: LocatedTask, pool: List[LocatedTask]) -> None:
        task = located.task
        try:
            issue = self.tracker.create_issue(TicketRequest.from_task(task))
        except TrackerError as e:
            logger.error("[Pipeline] Ticket filing failed for %s; keeping local ticket: %s", task.ticket_id, e)
            return

        fields = {"issue_key": issue.issue_key, "issue_url": issue.issue_url}
        self.store.set_task_fields(task.ticket_id, fields)
        for position, item in enumerate(pool):
            if item.ticket_id == task.ticket_id:
                pool[position] = item.with_changes(fields)
                break
