from __future__ import annotations

import datetime as dt
import logging
import queue
import sqlite3
import threading
from collections.abc import Callable, Iterable, Iterator, Mapping
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from .. import db
from ..errors import StorageError, ValidationError
from ..observation_types import coerce_observation_type
from . import search as store_search
from .types import (
    Observation,
    ObservationInput,
    Session,
    StoredRecord,
    Summary,
    SummaryInput,
    UserPrompt,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], dt.datetime]

SUMMARY_FIELDS = ("request", "investigated", "learned", "completed", "next_steps", "notes")


def utc_now() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


def _require(value: str | None, name: str) -> str:
    text = str(value or "").strip()
    if not text:
        raise ValidationError(f"{name} is required")
    return text


def _as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, Iterable):
        return [str(item) for item in value if item is not None]
    return [str(value)]


def _text_or_none(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text if text.strip() else None


def _observation_input(value: ObservationInput | Mapping[str, Any] | None) -> ObservationInput:
    if isinstance(value, ObservationInput):
        return value
    data = dict(value or {})
    return ObservationInput(
        type=data.get("type"),
        title=data.get("title"),
        subtitle=data.get("subtitle"),
        facts=_as_list(data.get("facts")),
        narrative=data.get("narrative"),
        concepts=_as_list(data.get("concepts")),
        files_read=_as_list(data.get("files_read")),
        files_modified=_as_list(data.get("files_modified")),
    )


def _summary_input(value: SummaryInput | Mapping[str, Any] | None) -> SummaryInput:
    if isinstance(value, SummaryInput):
        return value
    data = dict(value or {})
    return SummaryInput(**{key: data.get(key) for key in SUMMARY_FIELDS})


def _row_to_session(row: sqlite3.Row) -> Session:
    return Session(
        id=int(row["id"]),
        session_id=row["session_id"],
        project=row["project"] or "",
        user_prompt=row["user_prompt"],
        prompt_counter=int(row["prompt_counter"] or 0),
        started_at=row["started_at"],
        started_at_epoch=int(row["started_at_epoch"]),
        completed_at=row["completed_at"],
        completed_at_epoch=(
            int(row["completed_at_epoch"]) if row["completed_at_epoch"] is not None else None
        ),
        status=row["status"],
    )


def _row_to_observation(row: sqlite3.Row) -> Observation:
    return Observation(
        id=int(row["id"]),
        session_id=row["session_id"],
        project=row["project"],
        type=coerce_observation_type(row["type"]),
        title=row["title"],
        subtitle=row["subtitle"],
        facts=db.load_list(row["facts"]),
        narrative=row["narrative"],
        concepts=db.load_list(row["concepts"]),
        files_read=db.load_list(row["files_read"]),
        files_modified=db.load_list(row["files_modified"]),
        prompt_number=int(row["prompt_number"]) if row["prompt_number"] is not None else None,
        discovery_tokens=int(row["discovery_tokens"] or 0),
        created_at=row["created_at"],
        created_at_epoch=int(row["created_at_epoch"]),
    )


def _row_to_summary(row: sqlite3.Row) -> Summary:
    return Summary(
        id=int(row["id"]),
        session_id=row["session_id"],
        project=row["project"],
        request=row["request"],
        investigated=row["investigated"],
        learned=row["learned"],
        completed=row["completed"],
        next_steps=row["next_steps"],
        notes=row["notes"],
        prompt_number=int(row["prompt_number"]) if row["prompt_number"] is not None else None,
        discovery_tokens=int(row["discovery_tokens"] or 0),
        created_at=row["created_at"],
        created_at_epoch=int(row["created_at_epoch"]),
    )


def _row_to_prompt(row: sqlite3.Row) -> UserPrompt:
    return UserPrompt(
        id=int(row["id"]),
        session_id=row["session_id"],
        prompt_number=int(row["prompt_number"]),
        prompt_text=row["prompt_text"],
        created_at=row["created_at"],
        created_at_epoch=int(row["created_at_epoch"]),
    )


class SessionStore:
    """SQLite-backed store for sessions, observations, summaries and prompts.

    One instance is shared by every request handler in a process. Connections
    are pooled per store; writes run in ``BEGIN IMMEDIATE`` transactions so the
    database holds a single writer while WAL readers proceed concurrently.
    """

    MAX_IDLE_CONNECTIONS = 8

    def __init__(
        self,
        db_path: Path | str = db.DEFAULT_DB_PATH,
        *,
        clock: Clock | None = None,
        timeout: float = 30.0,
    ):
        self.db_path = Path(db_path).expanduser()
        self.clock = clock or utc_now
        self._timeout = timeout
        self._idle: queue.LifoQueue[sqlite3.Connection] = queue.LifoQueue()
        self._open: set[sqlite3.Connection] = set()
        self._lock = threading.Lock()
        self._closed = False
        with self._connection() as conn:
            try:
                db.initialize_schema(conn)
            except sqlite3.Error as exc:
                raise StorageError(f"schema initialization failed: {exc}") from exc

    # -- connections and transactions ---------------------------------------

    def _checkout(self) -> sqlite3.Connection:
        if self._closed:
            raise StorageError("store is closed")
        try:
            return self._idle.get_nowait()
        except queue.Empty:
            pass
        try:
            conn = db.connect(self.db_path, timeout=self._timeout, check_same_thread=False)
        except sqlite3.Error as exc:
            raise StorageError(f"cannot open database {self.db_path}: {exc}") from exc
        with self._lock:
            self._open.add(conn)
        return conn

    def _checkin(self, conn: sqlite3.Connection) -> None:
        if not self._closed and self._idle.qsize() < self.MAX_IDLE_CONNECTIONS:
            self._idle.put(conn)
            return
        with self._lock:
            self._open.discard(conn)
        conn.close()

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        conn = self._checkout()
        try:
            yield conn
        finally:
            self._checkin(conn)

    @contextmanager
    def _read(self) -> Iterator[sqlite3.Connection]:
        with self._connection() as conn:
            try:
                yield conn
            except sqlite3.Error as exc:
                raise StorageError(f"read failed: {exc}") from exc

    @contextmanager
    def _write(self) -> Iterator[sqlite3.Connection]:
        with self._connection() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as exc:
                raise StorageError(f"cannot begin write transaction: {exc}") from exc
            try:
                yield conn
            except BaseException as exc:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                if isinstance(exc, sqlite3.Error):
                    raise StorageError(f"write failed: {exc}") from exc
                raise
            try:
                conn.execute("COMMIT")
            except sqlite3.Error as exc:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise StorageError(f"commit failed: {exc}") from exc

    def _timestamp(self) -> tuple[str, int]:
        now = self.clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=dt.UTC)
        return now.astimezone(dt.UTC).isoformat(), int(now.timestamp() * 1000)

    # -- sessions ------------------------------------------------------------

    def _upsert_session(
        self, conn: sqlite3.Connection, session_id: str, project: str, user_prompt: str
    ) -> int:
        started_at, started_at_epoch = self._timestamp()
        conn.execute(
            """
            INSERT INTO sessions(session_id, project, user_prompt, started_at, started_at_epoch, status)
            VALUES (?, ?, ?, ?, ?, 'active')
            ON CONFLICT(session_id) DO UPDATE SET
                project = CASE
                    WHEN excluded.project != '' THEN excluded.project ELSE sessions.project
                END,
                user_prompt = CASE
                    WHEN COALESCE(excluded.user_prompt, '') != '' THEN excluded.user_prompt
                    ELSE sessions.user_prompt
                END
            """,
            (session_id, project, user_prompt, started_at, started_at_epoch),
        )
        row = conn.execute(
            "SELECT id FROM sessions WHERE session_id = ?", (session_id,)
        ).fetchone()
        if row is None:
            raise StorageError(f"session {session_id!r} missing after upsert")
        return int(row["id"])

    def create_session(self, session_id: str, project: str, user_prompt: str = "") -> int:
        """Create the session or refresh its non-empty fields; returns the internal id."""

        session_id = _require(session_id, "session_id")
        project = _require(project, "project")
        with self._write() as conn:
            db_id = self._upsert_session(conn, session_id, project, user_prompt or "")
        logger.debug("session upserted", extra={"session_id": session_id, "db_id": db_id})
        return db_id

    def get_session(self, session_id: str) -> Session | None:
        with self._read() as conn:
            row = conn.execute(
                "SELECT * FROM sessions WHERE session_id = ?", (session_id,)
            ).fetchone()
        return _row_to_session(row) if row else None

    def increment_prompt_counter(self, session_id: str) -> int:
        with self._write() as conn:
            conn.execute(
                """
                UPDATE sessions SET prompt_counter = COALESCE(prompt_counter, 0) + 1
                WHERE session_id = ?
                """,
                (session_id,),
            )
            row = conn.execute(
                "SELECT prompt_counter FROM sessions WHERE session_id = ?", (session_id,)
            ).fetchone()
        if row is None or not row["prompt_counter"]:
            logger.warning("prompt counter incremented for unknown session %r", session_id)
            return 1
        return int(row["prompt_counter"])

    def get_prompt_counter(self, session_id: str) -> int:
        with self._read() as conn:
            row = conn.execute(
                "SELECT prompt_counter FROM sessions WHERE session_id = ?", (session_id,)
            ).fetchone()
        return int(row["prompt_counter"] or 0) if row else 0

    def get_prompt_number(self, session_id: str) -> int:
        return self.get_prompt_counter(session_id) or 1

    def mark_session_completed(self, session_id: str) -> bool:
        completed_at, completed_at_epoch = self._timestamp()
        with self._write() as conn:
            cur = conn.execute(
                """
                UPDATE sessions SET status = 'completed', completed_at = ?, completed_at_epoch = ?
                WHERE session_id = ?
                """,
                (completed_at, completed_at_epoch, session_id),
            )
        return cur.rowcount > 0

    def get_all_projects(self) -> list[str]:
        with self._read() as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT project FROM sessions
                WHERE project IS NOT NULL AND project != ''
                ORDER BY project ASC
                """
            ).fetchall()
        return [row["project"] for row in rows]

    # -- observations --------------------------------------------------------

    def store_observation(
        self,
        session_id: str,
        project: str,
        observation: ObservationInput | Mapping[str, Any],
        prompt_number: int | None = None,
        discovery_tokens: int = 0,
    ) -> StoredRecord:
        session_id = _require(session_id, "session_id")
        project = _require(project, "project")
        fields = _observation_input(observation)
        values = {
            "type": coerce_observation_type(fields.type),
            "title": _text_or_none(fields.title),
            "subtitle": _text_or_none(fields.subtitle),
            "facts": db.dump_list(fields.facts),
            "narrative": _text_or_none(fields.narrative),
            "concepts": db.dump_list(fields.concepts),
            "files_read": db.dump_list(fields.files_read),
            "files_modified": db.dump_list(fields.files_modified),
        }
        created_at, created_at_epoch = self._timestamp()
        with self._write() as conn:
            self._upsert_session(conn, session_id, project, "")
            cur = conn.execute(
                """
                INSERT INTO observations(
                    session_id, project, type, title, subtitle, facts, narrative, concepts,
                    files_read, files_modified, prompt_number, discovery_tokens,
                    created_at, created_at_epoch
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    session_id,
                    project,
                    values["type"],
                    values["title"],
                    values["subtitle"],
                    values["facts"],
                    values["narrative"],
                    values["concepts"],
                    values["files_read"],
                    values["files_modified"],
                    prompt_number,
                    max(0, int(discovery_tokens or 0)),
                    created_at,
                    created_at_epoch,
                ),
            )
            if cur.lastrowid is None:
                raise StorageError("failed to create observation")
            observation_id = int(cur.lastrowid)
            store_search.index_observation(conn, observation_id, values)
        logger.info(
            "observation stored",
            extra={"observation_id": observation_id, "type": values["type"]},
        )
        return StoredRecord(id=observation_id, created_at_epoch=created_at_epoch)

    def get_observation_by_id(self, observation_id: int) -> Observation | None:
        with self._read() as conn:
            row = conn.execute(
                "SELECT * FROM observations WHERE id = ?", (int(observation_id),)
            ).fetchone()
        return _row_to_observation(row) if row else None

    def get_recent_observations(self, project: str, limit: int = 50) -> list[Observation]:
        with self._read() as conn:
            rows = conn.execute(
                """
                SELECT * FROM observations
                WHERE project = ?
                ORDER BY created_at_epoch DESC, id DESC
                LIMIT ?
                """,
                (project, max(0, int(limit))),
            ).fetchall()
        return [_row_to_observation(row) for row in rows]

    def search_observations(
        self, query: str, project: str | None = None, limit: int = 20
    ) -> list[Observation]:
        with self._read() as conn:
            rows = store_search.search_rows(conn, query, project=project, limit=limit)
        return [_row_to_observation(row) for row in rows]

    def delete_observation(self, observation_id: int) -> bool:
        """Remove one observation and its index entry (maintenance only)."""

        with self._write() as conn:
            row = conn.execute(
                "SELECT id, title, subtitle, narrative, facts FROM observations WHERE id = ?",
                (int(observation_id),),
            ).fetchone()
            if row is None:
                return False
            store_search.unindex_observation(conn, int(row["id"]), dict(row))
            conn.execute("DELETE FROM observations WHERE id = ?", (int(row["id"]),))
        return True

    def rebuild_search_index(self) -> None:
        with self._write() as conn:
            store_search.rebuild_index(conn)

    # -- summaries -----------------------------------------------------------

    def store_summary(
        self,
        session_id: str,
        project: str,
        summary: SummaryInput | Mapping[str, Any],
        prompt_number: int | None = None,
        discovery_tokens: int = 0,
    ) -> StoredRecord:
        session_id = _require(session_id, "session_id")
        project = _require(project, "project")
        fields = _summary_input(summary)
        texts = [_text_or_none(getattr(fields, name)) for name in SUMMARY_FIELDS]
        created_at, created_at_epoch = self._timestamp()
        with self._write() as conn:
            self._upsert_session(conn, session_id, project, "")
            cur = conn.execute(
                """
                INSERT INTO session_summaries(
                    session_id, project, request, investigated, learned, completed,
                    next_steps, notes, prompt_number, discovery_tokens,
                    created_at, created_at_epoch
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    session_id,
                    project,
                    *texts,
                    prompt_number,
                    max(0, int(discovery_tokens or 0)),
                    created_at,
                    created_at_epoch,
                ),
            )
            if cur.lastrowid is None:
                raise StorageError("failed to create summary")
            summary_id = int(cur.lastrowid)
        logger.info("summary stored", extra={"summary_id": summary_id})
        return StoredRecord(id=summary_id, created_at_epoch=created_at_epoch)

    def get_recent_summaries(self, project: str, limit: int = 10) -> list[Summary]:
        with self._read() as conn:
            rows = conn.execute(
                """
                SELECT * FROM session_summaries
                WHERE project = ?
                ORDER BY created_at_epoch DESC, id DESC
                LIMIT ?
                """,
                (project, max(0, int(limit))),
            ).fetchall()
        return [_row_to_summary(row) for row in rows]

    def get_summaries_for_session(self, session_id: str) -> list[Summary]:
        with self._read() as conn:
            rows = conn.execute(
                """
                SELECT * FROM session_summaries
                WHERE session_id = ?
                ORDER BY created_at_epoch DESC, id DESC
                """,
                (session_id,),
            ).fetchall()
        return [_row_to_summary(row) for row in rows]

    # -- user prompts --------------------------------------------------------

    def save_user_prompt(self, session_id: str, prompt_number: int, prompt_text: str) -> int:
        session_id = _require(session_id, "session_id")
        created_at, created_at_epoch = self._timestamp()
        with self._write() as conn:
            cur = conn.execute(
                """
                INSERT INTO user_prompts(
                    session_id, prompt_number, prompt_text, created_at, created_at_epoch
                )
                VALUES (?, ?, ?, ?, ?)
                """,
                (session_id, int(prompt_number), prompt_text, created_at, created_at_epoch),
            )
            if cur.lastrowid is None:
                raise StorageError("failed to add prompt")
        return int(cur.lastrowid)

    def get_user_prompts(self, session_id: str) -> list[UserPrompt]:
        with self._read() as conn:
            rows = conn.execute(
                """
                SELECT * FROM user_prompts
                WHERE session_id = ?
                ORDER BY prompt_number ASC, id ASC
                """,
                (session_id,),
            ).fetchall()
        return [_row_to_prompt(row) for row in rows]

    def close(self) -> None:
        self._closed = True
        with self._lock:
            connections = list(self._open)
            self._open.clear()
        while True:
            try:
                self._idle.get_nowait()
            except queue.Empty:
                break
        for conn in connections:
            conn.close()
