import logging
from typing import Dict, List, Optional, Sequence

from standup.transcripts import Transcript

logger = logging.getLogger(__name__)

NOTES_SYSTEM_PROMPT = (
    "You are a professional meeting notes generator. You write well-structured, "
    "outcome-focused notes in a clear professional tone."
)

NOTES_SECTIONS = """Structure the notes in markdown with these sections:
## Meeting Summary
Two or three sentences on the meeting's purpose and outcomes.
## Key Discussion Points
Main topics, with important technical details or concerns.
## Decisions Made
Explicit decisions and their context.
## Tasks Created
"SP-XXX: Title - brief context" for each new task.
## Tasks Updated
"SP-XXX - what changed" for each updated task.
## Next Steps
Follow-ups, future plans, deadlines and blockers.

Write in past tense. Prefer bullet points. Avoid verbatim quotes unless they record a decision."""


def _task_lines(tasks: Sequence[Dict], empty: str, with_title: bool) -> str:
    if not tasks:
        return empty
    lines = []
    for i, task in enumerate(tasks, start=1):
        ticket_id = task.get("ticket_id", "Unknown")
        if with_title:
            lines.append(f"{i}. {ticket_id}: {task.get('title') or task.get('description', '')}")
        else:
            changed = ", ".join(task.get("changes", [])) or "updated"
            lines.append(f"{i}. {ticket_id} ({changed})")
    return "\n".join(lines)


class MeetingNotesGenerator:
    """Markdown meeting notes from a transcript and the tickets the run touched."""

    def __init__(self, llm=None):
        self.llm = llm

    def build_prompt(self, transcript: Transcript, created: Sequence[Dict],
                     updated: Sequence[Dict], attendees: str) -> str:
        return f"""Generate meeting notes from this transcript and the task processing results.

{NOTES_SECTIONS}

Meeting transcript:
\"\"\"
{transcript.format()}
\"\"\"

Tasks created during processing:
{_task_lines(created, "No new tasks were created.", with_title=True)}

Tasks updated during processing:
{_task_lines(updated, "No existing tasks were updated.", with_title=False)}

Meeting attendees: {attendees or "Not specified"}"""

    def generate(self, transcript: Transcript, created: Sequence[Dict] = (),
                 updated: Sequence[Dict] = (), attendees: Optional[str] = None) -> str:
        attendees = attendees if attendees is not None else ", ".join(transcript.attendees())
        if self.llm is not None:
            try:
                notes = self.llm.chat_text(
                    NOTES_SYSTEM_PROMPT,
                    self.build_prompt(transcript, created, updated, attendees),
                    temperature=0.3,
                )
                if notes:
                    logger.info("[Notes] Generated %d chars of notes for %s", len(notes), transcript.label)
                    return notes
            except Exception as e:
                logger.error("[Notes] Generation failed for %s, using plain summary: %s", transcript.label, e)
        return self.plain_summary(transcript, created, updated, attendees)

    def plain_summary(self, transcript: Transcript, created: Sequence[Dict],
                      updated: Sequence[Dict], attendees: str) -> str:
        lines: List[str] = [f"# Meeting Notes: {transcript.label}", ""]
        lines.append(f"**Attendees:** {attendees or 'Not specified'}")
        lines += ["", "## Tasks Created", _task_lines(created, "None", with_title=True)]
        lines += ["", "## Tasks Updated", _task_lines(updated, "None", with_title=False)]
        return "\n".join(lines)
