"""
Transcript parsing and sources.

Run: python test_transcripts.py   (or pytest)
"""
import json
import tempfile
from pathlib import Path

from standup.db import SqliteTaskStore
from standup.transcripts import (
    FileTranscriptSource,
    StoredTranscriptSource,
    Transcript,
    TranscriptEntry,
    parse_vtt,
)

VTT = """WEBVTT

3f2a9c1e-7b4d-4e1a-9c2f-1a2b3c4d5e6f/12-0
00:00:01.000 --> 00:00:04.000
<v Alice Smith>I finished SP-7 yesterday.</v>

3f2a9c1e-7b4d-4e1a-9c2f-1a2b3c4d5e6f/13-0
00:00:05.000 --> 00:00:09.000
<v Bob>Next I will build the <b>login</b> page.</v>

00:00:10.000 --> 00:00:11.000
<v Bob></v>
"""


def test_parse_vtt():
    print("\n── Test: WebVTT Parsing ──")
    entries = parse_vtt(VTT)

    assert [(e.speaker, e.text) for e in entries] == [
        ("Alice Smith", "I finished SP-7 yesterday."),
        ("Bob", "Next I will build the login page."),
    ]
    assert entries[0].timestamp == "00:00:01.000"
    print("  ✓ Cue ids skipped; speakers from voice tags; empty cues dropped")


def test_transcript_format_and_attendees():
    transcript = Transcript(entries=[
        TranscriptEntry(speaker="Alice", text="Morning all"),
        TranscriptEntry(speaker="", text="<v Bob>Working on the API</v>"),
        TranscriptEntry(speaker="Alice", text="   "),
        TranscriptEntry(speaker="", text="no speaker here"),
    ], meeting_id="standup-1")

    assert transcript.format() == "Alice: Morning all\nBob: Working on the API\nUnknown: no speaker here"
    assert transcript.attendees() == ["Alice", "Bob"]
    assert transcript.label == "standup-1"
    assert Transcript(entries=[]).label == "transcript"


def test_file_source_reads_json_and_vtt(tmp_path):
    print("\n── Test: File Transcript Source ──")
    (tmp_path / "b_meeting.vtt").write_text(VTT, encoding="utf-8")
    (tmp_path / "a_meeting.json").write_text(json.dumps({
        "meeting_id": "daily-42",
        "date": "2024-05-01T09:00:00+00:00",
        "entries": [{"speaker": "Carol", "text": "Reviewing the schema", "startTime": "00:00:02"}],
        "team": "platform",
    }), encoding="utf-8")
    (tmp_path / "c_list.json").write_text(json.dumps([{"speaker": "Dan", "text": "Hi"}]), encoding="utf-8")
    (tmp_path / "broken.json").write_text("{not json", encoding="utf-8")
    (tmp_path / "notes.txt").write_text("ignored", encoding="utf-8")

    transcripts = FileTranscriptSource(str(tmp_path)).fetch()
    assert [t.meeting_id for t in transcripts] == ["daily-42", "b_meeting", "c_list"]

    daily = transcripts[0]
    assert daily.entries[0].timestamp == "00:00:02"
    assert daily.metadata["team"] == "platform"
    assert transcripts[1].entries[0].speaker == "Alice Smith"
    print("  ✓ JSON object, JSON list and VTT files load; unreadable files skipped")

    windowed = FileTranscriptSource(str(tmp_path / "a_meeting.json")).fetch(
        start="2024-05-02T00:00:00+00:00", end="2024-05-03T00:00:00+00:00"
    )
    assert windowed == []


def test_stored_source(tmp_path):
    store = SqliteTaskStore(str(tmp_path / "transcripts.db"))
    store.store_transcript("standup-1", "2024-05-01T09:00:00+00:00",
                           [{"speaker": "Alice", "text": "Shipped it"}])
    store.store_transcript("standup-2", "2024-05-01T10:00:00+00:00", [])

    transcripts = StoredTranscriptSource(store).fetch()
    assert [t.meeting_id for t in transcripts] == ["standup-1"]
    assert transcripts[0].format() == "Alice: Shipped it"
    assert transcripts[0].date == "2024-05-01T09:00:00+00:00"


def main():
    print("=" * 60)
    print("  TRANSCRIPTS — TEST")
    print("=" * 60)

    test_parse_vtt()
    test_transcript_format_and_attendees()
    test_file_source_reads_json_and_vtt(Path(tempfile.mkdtemp()))
    test_stored_source(Path(tempfile.mkdtemp()))
    print("\n  ✓ ALL TESTS PASSED")


if __name__ == "__main__":
    main()
