import logging
import re
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError

from standup.errors import ExtractionError
from standup.merge import clean_title, fallback_title
from standup.task_schema import LIST_KINDS, CandidateTask, LocatedTask, SimilarityJudgment
from standup.transcripts import Transcript

logger = logging.getLogger(__name__)

# ── Prompts ───────────────────────────────────────────────────────────────────

EXTRACTION_SYSTEM_PROMPT = (
    "You are an expert meeting analyst who extracts actionable tasks from meeting transcripts. "
    "You understand project context, recognize references to existing work, and extract complete descriptions."
)

EXTRACTION_RULES = """Rules:
- Extract the COMPLETE context of each task, joining details spread across sentences.
- Assignee: "I will"/"for me" is the speaker; "[Name] will/should/needs to" is that person, even if absent.
- Future plans ("future plan", "down the line", "on our roadmap") go under "TBD" with "is_future_plan": true.
- Ticket references (SP-12, SP 12, sp12) go in "existing_task_id".
- Status must be exactly "To-do", "In-progress" or "Completed".
- "will take 5 hours" is estimated_time; "spent 3 hours" is time_taken. Hours as numbers; 1 day = 8 hours.
- Type is "Coding" for engineering work, otherwise "Non-Coding"."""

EXTRACTION_FORMAT = """Return JSON:
{
  "tasks": {
    "<Participant Name>": {
      "Coding": [
        {
          "description": "<complete task description>",
          "existing_task_id": "SP-XX or null",
          "status": "To-do|In-progress|Completed",
          "estimated_time": <hours>,
          "time_taken": <hours>,
          "is_future_plan": false,
          "priority": "Highest|High|Medium|Low|Lowest or null",
          "story_points": <number or null>
        }
      ],
      "Non-Coding": []
    }
  }
}"""

JUDGE_SYSTEM_PROMPT = "You decide whether two task descriptions from standup meetings refer to the same work item."

TITLE_SYSTEM_PROMPT = "You write short task titles for an issue tracker."

_WORD_NUMBERS = {
    "one": 1, "two": 2, "three": 3, "four": 4, "five": 5, "six": 6, "seven": 7,
    "eight": 8, "nine": 9, "ten": 10, "couple": 2, "few": 3, "several": 4, "a": 1, "an": 1,
}


def parse_time_to_hours(value: Any) -> Optional[float]:
    """
    Hours from an LLM-supplied time value: numbers pass through, "3 hours",
    "2 days" (8h each), "half day" and small number words are understood.
    """
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    text = str(value).lower().strip()
    if not text:
        return None

    match = re.search(r"(\d+(?:\.\d+)?)\s*(?:hours?|hrs?|h)\b", text)
    if match:
        return float(match.group(1))
    match = re.search(r"(\d+(?:\.\d+)?)\s*days?", text)
    if match:
        return float(match.group(1)) * 8
    if "half day" in text or "half-day" in text or "morning" in text or "afternoon" in text:
        return 4.0
    if "full day" in text or "whole day" in text:
        return 8.0
    for word, number in _WORD_NUMBERS.items():
        if re.search(rf"\b{word}\b", text):
            if "hour" in text or "hr" in text:
                return float(number)
            if "day" in text:
                return float(number * 8)
    match = re.search(r"(\d+(?:\.\d+)?)", text)
    if match:
        return float(match.group(1)) * (8 if "day" in text else 1)
    return None


def flatten_extracted_tasks(data: Dict[str, Any]) -> List[CandidateTask]:
    """
    Turns {participant: {Coding: [...], Non-Coding: [...]}} into candidates.
    Bare strings become descriptions; malformed items are dropped with a warning.
    """
    participants = data.get("tasks", data) if isinstance(data, dict) else {}
    if not isinstance(participants, dict):
        logger.warning("[Extraction] Unexpected task payload shape: %s", type(participants).__name__)
        return []

    candidates: List[CandidateTask] = []
    for participant, lists in participants.items():
        if not isinstance(lists, dict):
            logger.warning("[Extraction] Skipping participant %s: no task lists", participant)
            continue
        for kind in LIST_KINDS:
            for item in lists.get(kind) or []:
                if isinstance(item, str):
                    item = {"description": item}
                if not isinstance(item, dict):
                    logger.warning("[Extraction] Dropping malformed %s task for %s: %r", kind, participant, item)
                    continue
                fields = dict(item)
                for key in ("estimated_time", "estimatedTime", "time_taken", "timeTaken", "timeSpent"):
                    if key in fields:
                        fields[key] = parse_time_to_hours(fields[key])
                for key in ("existing_task_id", "existingTaskId"):
                    if key in fields and str(fields[key]).strip().upper() in ("NONE", "NULL", ""):
                        fields[key] = None
                fields["assignee"] = participant
                fields["type"] = kind
                try:
                    candidates.append(CandidateTask.model_validate(fields))
                except ValidationError as e:
                    logger.warning("[Extraction] Dropping invalid task for %s: %s", participant, e.errors()[0].get("msg"))
    return candidates


def _existing_tasks_context(existing: Sequence[LocatedTask], limit: int = 20) -> str:
    if not existing:
        return "Existing tasks: none."
    lines = [
        f"- {item.ticket_id}: {item.task.description[:200]} ({item.task.status}, assigned to {item.task.assignee})"
        for item in list(existing)[:limit]
    ]
    return "Existing tasks:\n" + "\n".join(lines)


class TaskExtractor:
    """Pulls candidate tasks per participant out of a transcript."""

    def __init__(self, llm):
        self.llm = llm

    def build_prompt(self, transcript_text: str, existing: Sequence[LocatedTask]) -> str:
        return f"""From the following meeting transcript, extract every actionable task.

{_existing_tasks_context(existing)}

{EXTRACTION_RULES}

Transcript:
\"\"\"
{transcript_text}
\"\"\"

{EXTRACTION_FORMAT}"""

    def extract(self, transcript: Transcript, existing: Sequence[LocatedTask] = ()) -> List[CandidateTask]:
        text = transcript.format()
        if not text:
            logger.info("[Extraction] %s has no usable entries", transcript.label)
            return []

        try:
            parsed = self.llm.chat_json(EXTRACTION_SYSTEM_PROMPT, self.build_prompt(text, existing),
                                        tag="Extraction", raise_errors=True)
        except Exception as e:
            raise ExtractionError(f"Extraction failed for {transcript.label}: {e}") from e
        if parsed is None:
            raise ExtractionError(f"Extraction returned no parseable JSON for {transcript.label}")

        candidates = flatten_extracted_tasks(parsed)
        logger.info("[Extraction] Extracted %d task(s) from %s", len(candidates), transcript.label)
        return candidates


class TitleGenerator:
    def __init__(self, llm=None, max_length: int = 50):
        self.llm = llm
        self.max_length = max_length

    def generate(self, description: str) -> str:
        if not description or not description.strip():
            return "Untitled task"
        if self.llm is None:
            return fallback_title(description, max_length=self.max_length)
        prompt = (
            f"Write a title of at most five words (max {self.max_length} characters) for this task. "
            f"Return only the title.\n\nTask: {description}"
        )
        try:
            raw = self.llm.chat_text(TITLE_SYSTEM_PROMPT, prompt, temperature=0.3, max_tokens=30)
        except Exception as e:
            logger.warning("[Titles] Title generation failed, using fallback: %s", e)
            return fallback_title(description, max_length=self.max_length)
        return clean_title(raw, description, self.max_length)


class SimilarityJudge:
    def __init__(self, llm):
        self.llm = llm

    def judge(self, new_description: str, existing_description: str,
              context: Optional[Dict[str, Any]] = None) -> SimilarityJudgment:
        """
        Asks the model whether two descriptions are the same task. Exceptions
        from the call propagate; unparseable output is a non-match.
        """
        context = context or {}
        prompt = f"""Compare these two tasks for {context.get('assignee', 'the same person')}.

New task ({context.get('new_type', 'unknown type')}):
\"\"\"{new_description}\"\"\"

Existing task {context.get('existing_ticket_id', '')} ({context.get('existing_type', 'unknown type')}, {context.get('existing_status', 'unknown status')}):
\"\"\"{existing_description}\"\"\"

Treat progress reports, status changes and added detail about the same work as a match.
Different features, components or deliverables are not a match.

Return JSON:
{{
  "is_match": true|false,
  "confidence": 0.0-1.0,
  "reasoning": "<one sentence>",
  "similarities": ["..."],
  "differences": ["..."]
}}"""
        parsed = self.llm.chat_json(JUDGE_SYSTEM_PROMPT, prompt, temperature=0.1, max_tokens=400, tag="Judge",
                                    raise_errors=True)
        if parsed is None:
            return SimilarityJudgment(is_match=False, confidence=0.0, reasoning="Unparseable judge response")
        try:
            return SimilarityJudgment.model_validate(parsed)
        except ValidationError as e:
            logger.warning("[Judge] Invalid judgment payload: %s", e.errors()[0].get("msg"))
            return SimilarityJudgment(is_match=False, confidence=0.0, reasoning="Invalid judge response")
