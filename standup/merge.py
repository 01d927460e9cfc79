"""
merge.py

Rules for folding a newly mentioned task into an existing record, and for
shaping the payload of a brand-new one. Everything here is pure: the caller
decides whether and where to write.
"""

import re
from typing import Any, Dict, Optional

from standup.task_schema import CandidateTask, TaskRecord

_HOURS = r"(\d+(?:\.\d+)?)\s*(?:hours?|hrs?|h)"

ESTIMATE_PATTERNS = [
    re.compile(rf"(?:take|might take|estimated?|will take|need)\s*{_HOURS}\b", re.IGNORECASE),
    re.compile(rf"{_HOURS}\s*(?:estimated?|needed|required)", re.IGNORECASE),
]

SPENT_PATTERNS = [
    re.compile(rf"(?:spent|took|completed in|worked for)\s*{_HOURS}\b", re.IGNORECASE),
    re.compile(rf"{_HOURS}\s*(?:spent|taken|worked)", re.IGNORECASE),
]

COMPLETED_CUES = ("completed", "finished", "done with", "is done", "have completed")
IN_PROGRESS_CUES = ("started", "working on", "begun", "in progress", "currently", "am working")


def _first_hours(text: Optional[str], patterns) -> float:
    if not text:
        return 0.0
    for pattern in patterns:
        match = pattern.search(text)
        if match:
            return float(match.group(1))
    return 0.0


def parse_time_estimate(text: Optional[str]) -> float:
    """Hours from phrases like "might take 4 hours" or "6h estimated"; 0 when absent."""
    return _first_hours(text, ESTIMATE_PATTERNS)


def parse_time_spent(text: Optional[str]) -> float:
    """Hours from phrases like "spent 2 hours" or "3 hrs worked"; 0 when absent."""
    return _first_hours(text, SPENT_PATTERNS)


def parse_status_update(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    lower = text.lower()
    if any(cue in lower for cue in COMPLETED_CUES):
        return "Completed"
    if any(cue in lower for cue in IN_PROGRESS_CUES):
        return "In-progress"
    return None


def _normalized(text: Optional[str]) -> str:
    return " ".join((text or "").lower().split())


def prepare_task_update(candidate: CandidateTask, existing: TaskRecord) -> Dict[str, Any]:
    """
    Returns the delta to apply to existing. An empty dict means nothing new
    was said and the write should be skipped.

    - description: appended as an "Update:" paragraph when the wording differs
    - status: the candidate's own status (unless To-do) beats text cues
    - time_taken: accumulates
    - estimated_time: set only while the existing estimate is zero
    """
    delta: Dict[str, Any] = {}

    if _normalized(candidate.description) != _normalized(existing.description):
        delta["description"] = f"{existing.description}\n\nUpdate: {candidate.description}"

    status = parse_status_update(candidate.description)
    if candidate.status and candidate.status != "To-do":
        status = candidate.status
    if status and status != existing.status:
        delta["status"] = status

    spent = parse_time_spent(candidate.description)
    if spent > 0:
        delta["time_taken"] = (existing.time_taken or 0.0) + spent

    if not existing.estimated_time:
        estimate = parse_time_estimate(candidate.description)
        if estimate > 0:
            delta["estimated_time"] = estimate

    return delta


def prepare_new_task(candidate: CandidateTask) -> Dict[str, Any]:
    """CREATE payload for candidate; ticket_id, title and timestamps are added by the caller."""
    payload: Dict[str, Any] = {
        "description": candidate.description,
        "assignee": candidate.assignee,
        "type": candidate.type,
        "status": candidate.status or parse_status_update(candidate.description) or "To-do",
        "estimated_time": candidate.estimated_time or parse_time_estimate(candidate.description),
        "time_taken": candidate.time_taken or parse_time_spent(candidate.description),
        "is_future_plan": candidate.is_future_plan,
    }
    if candidate.priority:
        payload["priority"] = candidate.priority
    if candidate.story_points is not None:
        payload["story_points"] = candidate.story_points
    return payload


_TITLE_PREFIX = re.compile(r"^(?:purpose|context|task|action item|todo|goal)\s*:\s*", re.IGNORECASE)


def fallback_title(description: str, max_words: int = 5, max_length: int = 50) -> str:
    """
    Deterministic title: drops "Purpose:"-style prefixes and parentheticals,
    then keeps the first few words.
    """
    text = _TITLE_PREFIX.sub("", (description or "").strip())
    text = re.sub(r"\([^)]*\)", "", text)
    text = re.split(r"[.\n]", text, maxsplit=1)[0]
    words = text.split()[:max_words]
    title = " ".join(words).strip(" ,;:-")
    if len(title) > max_length:
        title = title[:max_length].rstrip()
    return title[:1].upper() + title[1:] if title else "Untitled task"


def clean_title(raw: Optional[str], description: str, max_length: int = 50) -> str:
    """Tidies a generated title, falling back to the deterministic one when empty."""
    title = (raw or "").strip().strip('"\'').strip()
    title = re.sub(r"^title\s*:\s*", "", title, flags=re.IGNORECASE)
    title = title.splitlines()[0].strip() if title else ""
    if not title:
        return fallback_title(description, max_length=max_length)
    if len(title) > max_length:
        title = title[:max_length].rstrip()
    return title
