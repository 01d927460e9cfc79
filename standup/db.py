"""
db.py

SQLite task store: the ticket counter, per-run task containers, raw transcripts
and cron bookkeeping. Container documents are JSON; tasks are addressed by
(container, participant, list, index) paths.
"""

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional

from standup.errors import StorageError
from standup.task_schema import (
    LIST_KINDS,
    LocatedTask,
    TaskContainer,
    TaskPath,
    UpdateResult,
    utc_now,
)

logger = logging.getLogger(__name__)


# ── Document helpers shared with the PostgreSQL store ─────────────────────────

def empty_lists() -> Dict[str, List[Dict[str, Any]]]:
    return {kind: [] for kind in LIST_KINDS}


def resolve_path(participants: Dict[str, Any], path: TaskPath) -> Optional[Dict[str, Any]]:
    lists = participants.get(path.participant)
    if not isinstance(lists, dict):
        return None
    tasks = lists.get(path.list_kind)
    if not isinstance(tasks, list) or not 0 <= path.index < len(tasks):
        return None
    task = tasks[path.index]
    return task if isinstance(task, dict) else None


def append_task(participants: Dict[str, Any], container_id: str, assignee: str,
                list_kind: str, payload: Dict[str, Any]) -> TaskPath:
    if list_kind not in LIST_KINDS:
        raise ValueError(f"Unknown task list '{list_kind}'")
    lists = participants.setdefault(assignee, empty_lists())
    for kind in LIST_KINDS:
        lists.setdefault(kind, [])
    lists[list_kind].append(payload)
    return TaskPath(container_id, assignee, list_kind, len(lists[list_kind]) - 1)


def patch_task(participants: Dict[str, Any], path: TaskPath, delta: Dict[str, Any],
               expected_ticket_id: Optional[str] = None,
               unset: Iterable[str] = ()) -> UpdateResult:
    task = resolve_path(participants, path)
    if task is None:
        return UpdateResult(matched=False, modified=False)
    if expected_ticket_id is not None and task.get("ticket_id") != expected_ticket_id:
        return UpdateResult(matched=False, modified=False)

    modified = False
    for key, value in delta.items():
        if task.get(key) != value:
            task[key] = value
            modified = True
    for key in unset:
        if key in task:
            del task[key]
            modified = True
    return UpdateResult(matched=True, modified=modified)


def find_in_participants(participants: Dict[str, Any], container_id: str,
                         ticket_id: str) -> Optional[TaskPath]:
    for participant, lists in participants.items():
        for kind in LIST_KINDS:
            for index, task in enumerate(lists.get(kind, []) or []):
                if isinstance(task, dict) and task.get("ticket_id") == ticket_id:
                    return TaskPath(container_id, participant, kind, index)
    return None


def build_container(container_id: str, timestamp: str, participants: Dict[str, Any]) -> TaskContainer:
    # Nested tasks carry their participant key as assignee.
    normalized: Dict[str, Any] = {}
    for participant, lists in participants.items():
        normalized[participant] = {
            kind: [{**task, "assignee": task.get("assignee") or participant} for task in lists.get(kind, []) or []]
            for kind in LIST_KINDS
        }
    return TaskContainer(id=container_id, timestamp=timestamp, participants=normalized)


# ── SQLite store ──────────────────────────────────────────────────────────────

class SqliteTaskStore:
    """
    Task store on a single SQLite file. Each call opens and closes its own
    connection, so close() has nothing to release.
    """

    def __init__(self, db_path: str, timeout: float = 30.0):
        self.db_path = db_path
        self.timeout = timeout
        self.init_db()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.db_path, timeout=self.timeout, isolation_level=None)
        except sqlite3.Error as e:
            raise StorageError(f"Failed to open SQLite store at {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        except sqlite3.Error as e:
            raise StorageError(f"SQLite operation failed: {e}") from e
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS counters (
                    name TEXT PRIMARY KEY,
                    value INTEGER NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS task_containers (
                    id TEXT PRIMARY KEY,
                    timestamp TEXT NOT NULL,
                    participants TEXT NOT NULL DEFAULT '{}'
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS transcripts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    meeting_id TEXT,
                    meeting_date TEXT NOT NULL,
                    entries TEXT NOT NULL,
                    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS cron_runs (
                    job_name TEXT PRIMARY KEY,
                    last_run TEXT,
                    last_successful_run TEXT,
                    last_status TEXT,
                    total_runs INTEGER NOT NULL DEFAULT 0,
                    metadata TEXT
                )
                """
            )
    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    # ── Counter ──────────────────────────────────────────────────────────────

    def increment_counter(self, name: str) -> int:
        with self._connect() as conn:
            # The autocommit write completes only once the RETURNING cursor is drained
            rows = conn.execute(
                """
                INSERT INTO counters (name, value) VALUES (?, 1)
                ON CONFLICT(name) DO UPDATE SET value = value + 1
                RETURNING value
                """,
                (name,),
            ).fetchall()
            return int(rows[0]["value"])

    def init_counter(self, name: str, value: int) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "INSERT INTO counters (name, value) VALUES (?, ?) ON CONFLICT(name) DO NOTHING",
                (name, value),
            )
            return cur.rowcount == 1

    def set_counter(self, name: str, value: int) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO counters (name, value) VALUES (?, ?)
                ON CONFLICT(name) DO UPDATE SET value = excluded.value
                """,
                (name, value),
            )

    def get_counter(self, name: str) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM counters WHERE name = ?", (name,)).fetchone()
            return int(row["value"]) if row else 0

    # ── Containers and tasks ─────────────────────────────────────────────────

    def create_container(self, participants: Optional[Dict[str, Any]] = None,
                         timestamp: Optional[str] = None) -> str:
        container_id = uuid.uuid4().hex
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO task_containers (id, timestamp, participants) VALUES (?, ?, ?)",
                (container_id, timestamp or utc_now(), json.dumps(participants or {})),
            )
        logger.info("[Store] Created container %s", container_id)
        return container_id

    def _load_participants(self, conn: sqlite3.Connection, container_id: str) -> Optional[Dict[str, Any]]:
        row = conn.execute(
            "SELECT participants FROM task_containers WHERE id = ?", (container_id,)
        ).fetchone()
        return json.loads(row["participants"]) if row else None

    def _save_participants(self, conn: sqlite3.Connection, container_id: str,
                           participants: Dict[str, Any]) -> None:
        conn.execute(
            "UPDATE task_containers SET participants = ? WHERE id = ?",
            (json.dumps(participants), container_id),
        )

    def create_task(self, container_id: str, assignee: str, list_kind: str,
                    payload: Dict[str, Any]) -> TaskPath:
        with self._transaction() as conn:
            participants = self._load_participants(conn, container_id)
            if participants is None:
                raise StorageError(f"Container {container_id} not found")
            path = append_task(participants, container_id, assignee, list_kind, payload)
            self._save_participants(conn, container_id, participants)
        return path

    def apply_update(self, path: TaskPath, delta: Dict[str, Any],
                     expected_ticket_id: Optional[str] = None,
                     unset: Iterable[str] = ()) -> UpdateResult:
        with self._transaction() as conn:
            participants = self._load_participants(conn, path.container_id)
            if participants is None:
                return UpdateResult(matched=False, modified=False)
            result = patch_task(participants, path, delta, expected_ticket_id, unset)
            if result.modified:
                self._save_participants(conn, path.container_id, participants)
        return result

    def get_container(self, container_id: str) -> Optional[TaskContainer]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, timestamp, participants FROM task_containers WHERE id = ?",
                (container_id,),
            ).fetchone()
        return _row_to_container(row) if row else None

    def get_containers(self, start: Optional[str] = None, end: Optional[str] = None,
                       limit: int = 50) -> List[TaskContainer]:
        clauses, params = [], []
        if start:
            clauses.append("timestamp >= ?")
            params.append(start)
        if end:
            clauses.append("timestamp <= ?")
            params.append(end)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT id, timestamp, participants FROM task_containers {where} "
                "ORDER BY timestamp DESC LIMIT ?",
                params,
            ).fetchall()
        return [_row_to_container(r) for r in rows]

    def get_containers_by_participant(self, participant: str, limit: int = 10) -> List[TaskContainer]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, timestamp, participants FROM task_containers
                WHERE EXISTS (SELECT 1 FROM json_each(task_containers.participants) WHERE key = ?)
                ORDER BY timestamp DESC LIMIT ?
                """,
                (participant, limit),
            ).fetchall()
        return [_row_to_container(r) for r in rows]

    def iter_tasks(self, include_completed: bool = True) -> List[LocatedTask]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id, timestamp, participants FROM task_containers ORDER BY timestamp ASC, rowid ASC"
            ).fetchall()
        located: List[LocatedTask] = []
        for row in rows:
            for item in _row_to_container(row).located_tasks():
                if include_completed or item.task.status != "Completed":
                    located.append(item)
        return located

    def get_active_tasks(self) -> List[LocatedTask]:
        return self.iter_tasks(include_completed=False)

    def find_task(self, ticket_id: str) -> Optional[LocatedTask]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT c.id, c.timestamp, c.participants
                FROM task_containers c, json_tree(c.participants) t
                WHERE t.key = 'ticket_id' AND t.value = ?
                ORDER BY c.timestamp ASC
                LIMIT 1
                """,
                (ticket_id,),
            ).fetchone()
        if not row:
            return None
        for item in _row_to_container(row).located_tasks():
            if item.ticket_id == ticket_id:
                return item
        return None

    def set_task_fields(self, ticket_id: str, fields: Dict[str, Any]) -> bool:
        located = self.find_task(ticket_id)
        if located is None:
            return False
        return self.apply_update(located.path, fields, expected_ticket_id=ticket_id).matched

    def unset_task_fields(self, ticket_id: str, names: Iterable[str]) -> bool:
        located = self.find_task(ticket_id)
        if located is None:
            return False
        result = self.apply_update(located.path, {}, expected_ticket_id=ticket_id, unset=names)
        return result.modified

    # ── Transcripts ──────────────────────────────────────────────────────────

    def store_transcript(self, meeting_id: Optional[str], meeting_date: str,
                         entries: List[Dict[str, Any]]) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "INSERT INTO transcripts (meeting_id, meeting_date, entries) VALUES (?, ?, ?)",
                (meeting_id, meeting_date, json.dumps(entries)),
            )
            return int(cur.lastrowid)

    def get_transcripts(self, start: Optional[str] = None, end: Optional[str] = None) -> List[Dict[str, Any]]:
        clauses, params = [], []
        if start:
            clauses.append("meeting_date >= ?")
            params.append(start)
        if end:
            clauses.append("meeting_date <= ?")
            params.append(end)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT id, meeting_id, meeting_date, entries FROM transcripts {where} ORDER BY meeting_date ASC, id ASC",
                params,
            ).fetchall()
        return [
            {
                "id": row["id"],
                "meeting_id": row["meeting_id"],
                "meeting_date": row["meeting_date"],
                "entries": json.loads(row["entries"]),
            }
            for row in rows
        ]

    # ── Cron bookkeeping ─────────────────────────────────────────────────────

    def get_cron_run(self, job_name: str) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM cron_runs WHERE job_name = ?", (job_name,)).fetchone()
        if not row:
            return None
        record = dict(row)
        record["metadata"] = json.loads(record["metadata"]) if record.get("metadata") else {}
        return record

    def record_cron_run(self, job_name: str, run_at: str, status: str,
                        metadata: Optional[Dict[str, Any]] = None) -> None:
        successful = run_at if status == "success" else None
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO cron_runs (job_name, last_run, last_successful_run, last_status, total_runs, metadata)
                VALUES (?, ?, ?, ?, 1, ?)
                ON CONFLICT(job_name) DO UPDATE SET
                    last_run = excluded.last_run,
                    last_successful_run = COALESCE(excluded.last_successful_run, cron_runs.last_successful_run),
                    last_status = excluded.last_status,
                    total_runs = cron_runs.total_runs + 1,
                    metadata = excluded.metadata
                """,
                (job_name, run_at, successful, status, json.dumps(metadata or {})),
            )


def _row_to_container(row: sqlite3.Row) -> TaskContainer:
    return build_container(row["id"], row["timestamp"], json.loads(row["participants"]))
