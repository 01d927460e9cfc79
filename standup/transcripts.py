"""
transcripts.py

Meeting transcripts: the entry model, WebVTT parsing, speaker/text cleanup
and the sources the pipeline reads from.
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

_VOICE_TAG = re.compile(r"<v\s*([^>]*)>")
_ANY_TAG = re.compile(r"<[^>]*>")
_CUE_ID = re.compile(r"^[a-f0-9-]+/\d+-\d+$")


@dataclass
class TranscriptEntry:
    speaker: str
    text: str
    timestamp: Optional[str] = None

    def cleaned(self) -> Optional["TranscriptEntry"]:
        """Speaker taken from a <v Name> tag when present; markup stripped. None if empty."""
        text = self.text or ""
        speaker = self.speaker or ""
        voice = _VOICE_TAG.search(text)
        if voice:
            speaker = voice.group(1).strip()
            if not speaker:
                return None
        speaker = re.sub(r"^v\s+", "", _ANY_TAG.sub("", speaker)).strip() or "Unknown"
        text = _ANY_TAG.sub("", text).strip()
        if not text:
            return None
        return TranscriptEntry(speaker=speaker, text=text, timestamp=self.timestamp)

    def to_dict(self) -> Dict[str, Any]:
        return {"speaker": self.speaker, "text": self.text, "timestamp": self.timestamp}


@dataclass
class Transcript:
    entries: List[TranscriptEntry]
    meeting_id: Optional[str] = None
    date: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def cleaned_entries(self) -> List[TranscriptEntry]:
        return [e for e in (entry.cleaned() for entry in self.entries) if e is not None]

    def format(self) -> str:
        """One "Speaker: text" line per non-empty entry."""
        return "\n".join(f"{e.speaker}: {e.text}" for e in self.cleaned_entries())

    def attendees(self) -> List[str]:
        seen: List[str] = []
        for entry in self.cleaned_entries():
            if entry.speaker not in seen and entry.speaker != "Unknown":
                seen.append(entry.speaker)
        return seen

    @property
    def label(self) -> str:
        return self.meeting_id or self.date or "transcript"


def entries_from_dicts(items: List[Dict[str, Any]]) -> List[TranscriptEntry]:
    entries = []
    for item in items or []:
        if not isinstance(item, dict):
            continue
        entries.append(TranscriptEntry(
            speaker=str(item.get("speaker") or ""),
            text=str(item.get("text") or ""),
            timestamp=item.get("timestamp") or item.get("startTime"),
        ))
    return entries


def parse_vtt(content: str) -> List[TranscriptEntry]:
    """
    Parses WebVTT cues. The cue start time becomes the entry timestamp; the
    speaker comes from the <v Name> voice tag on the cue text.
    """
    entries: List[TranscriptEntry] = []
    pending_start: Optional[str] = None
    for raw in content.splitlines():
        line = raw.strip()
        if not line or line == "WEBVTT":
            continue
        if " --> " in line:
            pending_start = line.split(" --> ")[0].strip()
            continue
        if _CUE_ID.match(line):
            continue
        if pending_start is None:
            continue
        entries.append(TranscriptEntry(speaker="", text=line, timestamp=pending_start))
        pending_start = None
    return [e for e in (entry.cleaned() for entry in entries) if e is not None]


# ── Sources ───────────────────────────────────────────────────────────────────

def _in_window(date: Optional[str], start: Optional[str], end: Optional[str]) -> bool:
    if not date:
        return True
    if start and date < start:
        return False
    if end and date > end:
        return False
    return True


class FileTranscriptSource:
    """Reads *.json and *.vtt transcripts from a directory, or a single file."""

    def __init__(self, path: str):
        self.path = path

    def _files(self) -> List[str]:
        if os.path.isfile(self.path):
            return [self.path]
        if not os.path.isdir(self.path):
            raise FileNotFoundError(f"Transcript path not found: {self.path}")
        return sorted(
            os.path.join(self.path, name)
            for name in os.listdir(self.path)
            if name.lower().endswith((".json", ".vtt"))
        )

    def load(self, file_path: str) -> Transcript:
        with open(file_path, "r", encoding="utf-8") as f:
            content = f.read()

        mtime = datetime.fromtimestamp(os.path.getmtime(file_path), tz=timezone.utc).isoformat()
        meeting_id = os.path.splitext(os.path.basename(file_path))[0]

        if file_path.lower().endswith(".vtt"):
            return Transcript(entries=parse_vtt(content), meeting_id=meeting_id, date=mtime)

        data = json.loads(content)
        if isinstance(data, list):
            return Transcript(entries=entries_from_dicts(data), meeting_id=meeting_id, date=mtime)
        return Transcript(
            entries=entries_from_dicts(data.get("entries") or data.get("transcript") or []),
            meeting_id=data.get("meeting_id") or meeting_id,
            date=data.get("date") or mtime,
            metadata={k: v for k, v in data.items() if k not in ("entries", "transcript")},
        )

    def fetch(self, start: Optional[str] = None, end: Optional[str] = None) -> List[Transcript]:
        transcripts = []
        for file_path in self._files():
            try:
                transcript = self.load(file_path)
            except (OSError, ValueError) as e:
                logger.error("[Transcripts] Could not read %s: %s", file_path, e)
                continue
            if _in_window(transcript.date, start, end):
                transcripts.append(transcript)
        logger.info("[Transcripts] Loaded %d transcript(s) from %s", len(transcripts), self.path)
        return transcripts


class StoredTranscriptSource:
    """Transcripts previously saved with store.store_transcript."""

    def __init__(self, store):
        self.store = store

    def fetch(self, start: Optional[str] = None, end: Optional[str] = None) -> List[Transcript]:
        rows = self.store.get_transcripts(start, end)
        transcripts = [
            Transcript(
                entries=entries_from_dicts(row["entries"]),
                meeting_id=row.get("meeting_id"),
                date=row.get("meeting_date"),
            )
            for row in rows
        ]
        skipped = [t for t in transcripts if not t.entries]
        if skipped:
            logger.warning("[Transcripts] Skipping %d stored transcript(s) with no entries", len(skipped))
        return [t for t in transcripts if t.entries]
