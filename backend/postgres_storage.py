import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional

import psycopg2
from psycopg2.extras import Json

from standup.config import config, require
from standup.db import SqliteTaskStore, append_task, build_container, patch_task
from standup.errors import StorageError
from standup.task_schema import LocatedTask, TaskContainer, TaskPath, UpdateResult, utc_now

logger = logging.getLogger(__name__)

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS counters (
        name TEXT PRIMARY KEY,
        value BIGINT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS task_containers (
        id TEXT PRIMARY KEY,
        timestamp TEXT NOT NULL,
        participants JSONB NOT NULL DEFAULT '{}'::jsonb
    )
    """,
    "CREATE INDEX IF NOT EXISTS task_containers_participants_gin ON task_containers USING gin (participants)",
    """
    CREATE TABLE IF NOT EXISTS transcripts (
        id BIGSERIAL PRIMARY KEY,
        meeting_id TEXT,
        meeting_date TEXT NOT NULL,
        entries JSONB NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS cron_runs (
        job_name TEXT PRIMARY KEY,
        last_run TEXT,
        last_successful_run TEXT,
        last_status TEXT,
        total_runs INTEGER NOT NULL DEFAULT 0,
        metadata JSONB
    )
    """,
]

# Any task in any participant's Coding/Non-Coding list with the given ticket_id
_TICKET_PATH = '$.*.*[*] ? (@.ticket_id == $tid)'


class PostgresTaskStore:
    """Task store on PostgreSQL. Container documents are JSONB; patches lock the row."""

    def __init__(self, conn_string: Optional[str] = None):
        conn_string = require('database_url', conn_string)
        try:
            self.conn = psycopg2.connect(conn_string)
        except psycopg2.Error as e:
            raise StorageError(f"Failed to connect to Postgres: {e}") from e

    def close(self) -> None:
        self.conn.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def _execute(self, sql: str, params: Optional[tuple] = None, fetch: str = "none"):
        try:
            with self.conn.cursor() as cur:
                cur.execute(sql, params)
                if fetch == "one":
                    result = cur.fetchone()
                elif fetch == "all":
                    result = cur.fetchall()
                else:
                    result = cur.rowcount
            self.conn.commit()
            return result
        except psycopg2.Error as e:
            self.conn.rollback()
            raise StorageError(f"Postgres operation failed: {e}") from e

    def init_db(self) -> None:
        for statement in SCHEMA:
            self._execute(statement)
        logger.info("[Store] Postgres schema ready")

    # ── Counter ──────────────────────────────────────────────────────────────

    def increment_counter(self, name: str) -> int:
        row = self._execute(
            """
            INSERT INTO counters (name, value) VALUES (%s, 1)
            ON CONFLICT (name) DO UPDATE SET value = counters.value + 1
            RETURNING value
            """,
            (name,),
            fetch="one",
        )
        return int(row[0])

    def init_counter(self, name: str, value: int) -> bool:
        inserted = self._execute(
            "INSERT INTO counters (name, value) VALUES (%s, %s) ON CONFLICT (name) DO NOTHING",
            (name, value),
        )
        return inserted == 1

    def set_counter(self, name: str, value: int) -> None:
        self._execute(
            """
            INSERT INTO counters (name, value) VALUES (%s, %s)
            ON CONFLICT (name) DO UPDATE SET value = EXCLUDED.value
            """,
            (name, value),
        )

    def get_counter(self, name: str) -> int:
        row = self._execute("SELECT value FROM counters WHERE name = %s", (name,), fetch="one")
        return int(row[0]) if row else 0

    # ── Containers and tasks ─────────────────────────────────────────────────

    def create_container(self, participants: Optional[Dict[str, Any]] = None,
                         timestamp: Optional[str] = None) -> str:
        container_id = uuid.uuid4().hex
        self._execute(
            "INSERT INTO task_containers (id, timestamp, participants) VALUES (%s, %s, %s)",
            (container_id, timestamp or utc_now(), Json(participants or {})),
        )
        logger.info("[Store] Created container %s", container_id)
        return container_id

    def _locked_update(self, container_id: str, mutate):
        """Runs mutate(participants) under a row lock and writes back when it reports a change."""
        try:
            with self.conn:
                with self.conn.cursor() as cur:
                    cur.execute(
                        "SELECT participants FROM task_containers WHERE id = %s FOR UPDATE",
                        (container_id,),
                    )
                    row = cur.fetchone()
                    if row is None:
                        return None, False
                    participants = row[0]
                    result, changed = mutate(participants)
                    if changed:
                        cur.execute(
                            "UPDATE task_containers SET participants = %s WHERE id = %s",
                            (Json(participants), container_id),
                        )
                    return result, True
        except psycopg2.Error as e:
            raise StorageError(f"Postgres update of container {container_id} failed: {e}") from e

    def create_task(self, container_id: str, assignee: str, list_kind: str,
                    payload: Dict[str, Any]) -> TaskPath:
        def mutate(participants):
            return append_task(participants, container_id, assignee, list_kind, payload), True

        path, found = self._locked_update(container_id, mutate)
        if not found:
            raise StorageError(f"Container {container_id} not found")
        return path

    def apply_update(self, path: TaskPath, delta: Dict[str, Any],
                     expected_ticket_id: Optional[str] = None,
                     unset: Iterable[str] = ()) -> UpdateResult:
        unset = list(unset)

        def mutate(participants):
            result = patch_task(participants, path, delta, expected_ticket_id, unset)
            return result, result.modified

        result, found = self._locked_update(path.container_id, mutate)
        if not found:
            return UpdateResult(matched=False, modified=False)
        return result

    def get_container(self, container_id: str) -> Optional[TaskContainer]:
        row = self._execute(
            "SELECT id, timestamp, participants FROM task_containers WHERE id = %s",
            (container_id,),
            fetch="one",
        )
        return build_container(*row) if row else None

    def get_containers(self, start: Optional[str] = None, end: Optional[str] = None,
                       limit: int = 50) -> List[TaskContainer]:
        clauses, params = [], []
        if start:
            clauses.append("timestamp >= %s")
            params.append(start)
        if end:
            clauses.append("timestamp <= %s")
            params.append(end)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        rows = self._execute(
            f"SELECT id, timestamp, participants FROM task_containers {where} ORDER BY timestamp DESC LIMIT %s",
            tuple(params),
            fetch="all",
        )
        return [build_container(*row) for row in rows]

    def get_containers_by_participant(self, participant: str, limit: int = 10) -> List[TaskContainer]:
        rows = self._execute(
            """
            SELECT id, timestamp, participants FROM task_containers
            WHERE participants ? %s
            ORDER BY timestamp DESC LIMIT %s
            """,
            (participant, limit),
            fetch="all",
        )
        return [build_container(*row) for row in rows]

    def iter_tasks(self, include_completed: bool = True) -> List[LocatedTask]:
        rows = self._execute(
            "SELECT id, timestamp, participants FROM task_containers ORDER BY timestamp ASC, id ASC",
            fetch="all",
        )
        located: List[LocatedTask] = []
        for row in rows:
            for item in build_container(*row).located_tasks():
                if include_completed or item.task.status != "Completed":
                    located.append(item)
        return located

    def get_active_tasks(self) -> List[LocatedTask]:
        return self.iter_tasks(include_completed=False)

    def find_task(self, ticket_id: str) -> Optional[LocatedTask]:
        row = self._execute(
            """
            SELECT id, timestamp, participants FROM task_containers
            WHERE jsonb_path_exists(participants, %s::jsonpath, jsonb_build_object('tid', %s::text))
            ORDER BY timestamp ASC
            LIMIT 1
            """,
            (_TICKET_PATH, ticket_id),
            fetch="one",
        )
        if not row:
            return None
        for item in build_container(*row).located_tasks():
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
        return self.apply_update(located.path, {}, expected_ticket_id=ticket_id, unset=names).modified

    # ── Transcripts ──────────────────────────────────────────────────────────

    def store_transcript(self, meeting_id: Optional[str], meeting_date: str,
                         entries: List[Dict[str, Any]]) -> int:
        row = self._execute(
            "INSERT INTO transcripts (meeting_id, meeting_date, entries) VALUES (%s, %s, %s) RETURNING id",
            (meeting_id, meeting_date, Json(entries)),
            fetch="one",
        )
        return int(row[0])

    def get_transcripts(self, start: Optional[str] = None, end: Optional[str] = None) -> List[Dict[str, Any]]:
        clauses, params = [], []
        if start:
            clauses.append("meeting_date >= %s")
            params.append(start)
        if end:
            clauses.append("meeting_date <= %s")
            params.append(end)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._execute(
            f"SELECT id, meeting_id, meeting_date, entries FROM transcripts {where} ORDER BY meeting_date ASC, id ASC",
            tuple(params),
            fetch="all",
        )
        return [
            {"id": r[0], "meeting_id": r[1], "meeting_date": r[2], "entries": r[3]}
            for r in rows
        ]

    # ── Cron bookkeeping ─────────────────────────────────────────────────────

    def get_cron_run(self, job_name: str) -> Optional[Dict[str, Any]]:
        row = self._execute(
            """
            SELECT job_name, last_run, last_successful_run, last_status, total_runs, metadata
            FROM cron_runs WHERE job_name = %s
            """,
            (job_name,),
            fetch="one",
        )
        if not row:
            return None
        keys = ("job_name", "last_run", "last_successful_run", "last_status", "total_runs", "metadata")
        record = dict(zip(keys, row))
        record["metadata"] = record["metadata"] or {}
        return record

    def record_cron_run(self, job_name: str, run_at: str, status: str,
                        metadata: Optional[Dict[str, Any]] = None) -> None:
        successful = run_at if status == "success" else None
        self._execute(
            """
            INSERT INTO cron_runs (job_name, last_run, last_successful_run, last_status, total_runs, metadata)
            VALUES (%s, %s, %s, %s, 1, %s)
            ON CONFLICT (job_name) DO UPDATE SET
                last_run = EXCLUDED.last_run,
                last_successful_run = COALESCE(EXCLUDED.last_successful_run, cron_runs.last_successful_run),
                last_status = EXCLUDED.last_status,
                total_runs = cron_runs.total_runs + 1,
                metadata = EXCLUDED.metadata
            """,
            (job_name, run_at, successful, status, Json(metadata or {})),
        )


def open_store(database_url: Optional[str] = None, db_path: Optional[str] = None):
    """PostgreSQL when a URL is configured, otherwise the local SQLite file."""
    database_url = database_url or config['database_url']
    if database_url:
        store = PostgresTaskStore(database_url)
        store.init_db()
        return store
    return SqliteTaskStore(require('db_path', db_path))
