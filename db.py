import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from queue import Empty
from typing import Any, Dict, Iterable, Iterator, Optional, Sequence
from uuid import uuid4

from db_pool import SQLiteConnectionPool, is_transient
from errors import TransientStoreError

logger = logging.getLogger(__name__)

DB_PATH = os.getenv("DB_PATH", "data.db")

SUBMISSION_STATUSES = ("pending", "submitted", "approved", "rejected")
PROOF_TYPES = ("text", "link", "file")
XP_SOURCES = ("task_approval", "checkin", "custom_task")

# Initialize connection pool
_pool = SQLiteConnectionPool(
    DB_PATH,
    max_connections=int(os.getenv("DB_MAX_CONNECTIONS", "10")),
    busy_timeout=float(os.getenv("DB_BUSY_TIMEOUT", "5.0")),
)


def _conn():
    """Return a context manager for acquiring a pooled SQLite connection."""
    return _pool.get_connection()


@contextmanager
def _store_guard(operation: str) -> Iterator[None]:
    try:
        yield
    except Empty as exc:
        logger.error("Connection pool exhausted during %s", operation)
        raise TransientStoreError(
            "No store connection became available; retry the request.",
            message_ar="الخدمة مشغولة حالياً، يرجى المحاولة مرة أخرى",
            operation=operation,
        ) from exc
    except sqlite3.OperationalError as exc:
        if not is_transient(exc):
            raise
        logger.error("Store busy during %s: %s", operation, exc, exc_info=True)
        raise TransientStoreError(
            "The store is busy; retry the request.",
            message_ar="الخدمة مشغولة حالياً، يرجى المحاولة مرة أخرى",
            operation=operation,
        ) from exc


@contextmanager
def transaction(immediate: bool = True) -> Iterator[sqlite3.Connection]:
    """Serializable write transaction; busy/locked errors surface as ``TransientStoreError``."""
    with _store_guard("transaction"):
        with _pool.transaction(immediate=immediate) as con:
            yield con


def _exec(sql: str, params: Iterable = ()):
    with _store_guard("exec"), _pool.get_connection() as con:
        cur = con.execute(sql, params)
        con.commit()
        return cur

def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    with _store_guard("query"), _pool.get_connection() as con:
        cur = con.execute(sql, params)
        return cur.fetchall()


def _query_on(con: Optional[sqlite3.Connection], sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    if con is None:
        return _query(sql, params)
    return con.execute(sql, params).fetchall()


def _row_to_dict(row: Optional[sqlite3.Row], bool_fields: Sequence[str] = ()) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    data = dict(row)
    for field in bool_fields:
        if field in data and data[field] is not None:
            data[field] = bool(data[field])
    return data


def json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"))


def new_id() -> str:
    return uuid4().hex


def init():
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    with _conn() as con:
        con.executescript(
            """
            PRAGMA foreign_keys = ON;
            PRAGMA journal_mode=WAL;

            CREATE TABLE IF NOT EXISTS learners (
              id                TEXT PRIMARY KEY,
              full_name         TEXT NOT NULL,
              role              TEXT NOT NULL DEFAULT 'learner' CHECK (role IN ('admin','learner')),
              status            TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending','approved','rejected')),
              level             TEXT,
              english_level     TEXT,
              xp_total          INTEGER NOT NULL DEFAULT 0 CHECK (xp_total >= 0),
              streak_days       INTEGER NOT NULL DEFAULT 0,
              last_checkin_date TEXT,
              team_id           TEXT,
              data_progress     REAL,
              english_progress  REAL,
              soft_progress     REAL,
              overall_progress  REAL,
              created_at        TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              updated_at        TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_learners_xp ON learners(xp_total DESC, streak_days DESC);
            CREATE INDEX IF NOT EXISTS idx_learners_team ON learners(team_id);

            CREATE TABLE IF NOT EXISTS teams (
              id         TEXT PRIMARY KEY,
              name       TEXT NOT NULL,
              code       TEXT UNIQUE,
              leader_id  TEXT NOT NULL,
              created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              FOREIGN KEY(leader_id) REFERENCES learners(id)
            );

            CREATE TABLE IF NOT EXISTS lessons (
              id               TEXT PRIMARY KEY,
              title            TEXT NOT NULL,
              track            TEXT NOT NULL,
              level            TEXT,
              english_level    TEXT,
              published        INTEGER NOT NULL DEFAULT 0,
              video_link       TEXT,
              duration_minutes INTEGER,
              order_index      INTEGER DEFAULT 0,
              created_at       TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              updated_at       TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_lessons_track ON lessons(track, published);

            CREATE TABLE IF NOT EXISTS tasks (
              id            TEXT PRIMARY KEY,
              title         TEXT NOT NULL,
              description   TEXT,
              track         TEXT NOT NULL,
              xp            INTEGER NOT NULL DEFAULT 0 CHECK (xp >= 0),
              level         TEXT,
              published     INTEGER NOT NULL DEFAULT 0,
              resource_link TEXT,
              deadline      TEXT,
              created_at    TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              updated_at    TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS lesson_completions (
              id          INTEGER PRIMARY KEY AUTOINCREMENT,
              learner_id  TEXT NOT NULL,
              lesson_id   TEXT NOT NULL,
              watched     INTEGER NOT NULL DEFAULT 0,
              watched_at  TIMESTAMP,
              created_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              UNIQUE(learner_id, lesson_id),
              FOREIGN KEY(learner_id) REFERENCES learners(id),
              FOREIGN KEY(lesson_id) REFERENCES lessons(id)
            );

            CREATE TABLE IF NOT EXISTS task_submissions (
              id               TEXT PRIMARY KEY,
              learner_id       TEXT NOT NULL,
              task_id          TEXT NOT NULL,
              status           TEXT NOT NULL DEFAULT 'pending'
                               CHECK (status IN ('pending','submitted','approved','rejected')),
              completion_proof TEXT,
              proof_type       TEXT CHECK (proof_type IS NULL OR proof_type IN ('text','link','file')),
              submitted_at     TIMESTAMP,
              reviewed_at      TIMESTAMP,
              reviewer_id      TEXT,
              review_note      TEXT,
              xp_granted       INTEGER,
              created_at       TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              updated_at       TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              UNIQUE(learner_id, task_id),
              FOREIGN KEY(learner_id) REFERENCES learners(id),
              FOREIGN KEY(task_id) REFERENCES tasks(id)
            );

            CREATE INDEX IF NOT EXISTS idx_submissions_status ON task_submissions(status, submitted_at);

            CREATE TABLE IF NOT EXISTS daily_checkins (
              id            INTEGER PRIMARY KEY AUTOINCREMENT,
              learner_id    TEXT NOT NULL,
              date          TEXT NOT NULL,
              data_task     INTEGER NOT NULL DEFAULT 0,
              lang_task     INTEGER NOT NULL DEFAULT 0,
              soft_task     INTEGER NOT NULL DEFAULT 0,
              xp_generated  INTEGER NOT NULL DEFAULT 0,
              created_at    TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              UNIQUE(learner_id, date),
              FOREIGN KEY(learner_id) REFERENCES learners(id)
            );

            CREATE TABLE IF NOT EXISTS custom_lessons (
              id           TEXT PRIMARY KEY,
              learner_id   TEXT NOT NULL,
              title        TEXT NOT NULL,
              description  TEXT,
              track        TEXT NOT NULL DEFAULT 'custom',
              video_link   TEXT,
              completed    INTEGER NOT NULL DEFAULT 0,
              completed_at TIMESTAMP,
              created_at   TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              updated_at   TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              FOREIGN KEY(learner_id) REFERENCES learners(id)
            );

            CREATE TABLE IF NOT EXISTS custom_tasks (
              id           TEXT PRIMARY KEY,
              learner_id   TEXT NOT NULL,
              title        TEXT NOT NULL,
              description  TEXT,
              track        TEXT NOT NULL DEFAULT 'custom',
              xp_value     INTEGER NOT NULL DEFAULT 0 CHECK (xp_value >= 0),
              completed    INTEGER NOT NULL DEFAULT 0,
              completed_at TIMESTAMP,
              created_at   TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              updated_at   TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              FOREIGN KEY(learner_id) REFERENCES learners(id)
            );

            CREATE TABLE IF NOT EXISTS xp_events (
              id            INTEGER PRIMARY KEY AUTOINCREMENT,
              learner_id    TEXT NOT NULL,
              source        TEXT NOT NULL CHECK (source IN ('task_approval','checkin','custom_task')),
              direction     TEXT NOT NULL CHECK (direction IN ('credit','debit')),
              requested     INTEGER NOT NULL,
              applied       INTEGER NOT NULL,
              balance_after INTEGER NOT NULL,
              related_id    TEXT,
              created_at    TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              FOREIGN KEY(learner_id) REFERENCES learners(id)
            );

            CREATE INDEX IF NOT EXISTS idx_xp_events_learner ON xp_events(learner_id, id DESC);

            CREATE TABLE IF NOT EXISTS activity_statements (
              id          INTEGER PRIMARY KEY AUTOINCREMENT,
              learner_id  TEXT NOT NULL,
              verb        TEXT NOT NULL,
              object_id   TEXT NOT NULL,
              xp_earned   INTEGER NOT NULL DEFAULT 0,
              description TEXT,
              context     TEXT,
              created_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_activity_learner ON activity_statements(learner_id, id DESC);
            """
        )

# -------------- learners --------------
_LEARNER_COLUMNS = (
    "id, full_name, role, status, level, english_level, xp_total, streak_days, "
    "last_checkin_date, team_id, data_progress, english_progress, soft_progress, overall_progress, "
    "created_at, updated_at"
)


def upsert_learner(
    learner_id: str,
    full_name: str,
    *,
    role: str = "learner",
    status: str = "pending",
    level: Optional[str] = None,
    english_level: Optional[str] = None,
) -> Dict[str, Any]:
    _exec(
        """
        INSERT INTO learners(id, full_name, role, status, level, english_level)
        VALUES (?,?,?,?,?,?)
        ON CONFLICT(id) DO UPDATE SET
          full_name=excluded.full_name,
          role=excluded.role,
          level=excluded.level,
          english_level=excluded.english_level,
          updated_at=CURRENT_TIMESTAMP
        """,
        (learner_id, full_name, role, status, level, english_level),
    )
    return get_learner(learner_id)  # type: ignore[return-value]


def get_learner(learner_id: str, con: Optional[sqlite3.Connection] = None) -> Optional[Dict[str, Any]]:
    rows = _query_on(con, f"SELECT {_LEARNER_COLUMNS} FROM learners WHERE id = ?", (learner_id,))
    return _row_to_dict(rows[0]) if rows else None


def set_learner_status(learner_id: str, status: str) -> int:
    cur = _exec(
        "UPDATE learners SET status = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
        (status, learner_id),
    )
    return cur.rowcount


def update_cached_progress(
    learner_id: str,
    data_progress: float,
    english_progress: float,
    soft_progress: float,
    overall_progress: float,
) -> None:
    _exec(
        """
        UPDATE learners
        SET data_progress = ?, english_progress = ?, soft_progress = ?, overall_progress = ?,
            updated_at = CURRENT_TIMESTAMP
        WHERE id = ?
        """,
        (data_progress, english_progress, soft_progress, overall_progress, learner_id),
    )


def set_streak(con: sqlite3.Connection, learner_id: str, streak_days: int, last_checkin_date: str) -> None:
    con.execute(
        """
        UPDATE learners SET streak_days = ?, last_checkin_date = ?, updated_at = CURRENT_TIMESTAMP
        WHERE id = ?
        """,
        (int(streak_days), last_checkin_date, learner_id),
    )


def list_learners(team_id: Optional[str] = None) -> list[Dict[str, Any]]:
    """Non-admin learners, optionally limited to one team, highest XP first."""
    sql = (
        "SELECT id, full_name, status, level, english_level, xp_total, streak_days, team_id "
        "FROM learners WHERE role != 'admin'"
    )
    params: list[Any] = []
    if team_id is not None:
        sql += " AND team_id = ?"
        params.append(team_id)
    sql += " ORDER BY xp_total DESC, streak_days DESC, full_name ASC"
    return [dict(r) for r in _query(sql, params)]

# -------------- teams --------------
def create_team(
    name: str,
    leader_id: str,
    *,
    team_id: Optional[str] = None,
    code: Optional[str] = None,
) -> Dict[str, Any]:
    team_id = team_id or new_id()
    _exec(
        "INSERT INTO teams(id, name, code, leader_id) VALUES (?,?,?,?)",
        (team_id, name, code, leader_id),
    )
    return get_team(team_id)  # type: ignore[return-value]


def get_team(team_id: str) -> Optional[Dict[str, Any]]:
    rows = _query("SELECT id, name, code, leader_id, created_at FROM teams WHERE id = ?", (team_id,))
    return _row_to_dict(rows[0]) if rows else None


def set_learner_team(learner_id: str, team_id: Optional[str]) -> int:
    cur = _exec(
        "UPDATE learners SET team_id = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
        (team_id, learner_id),
    )
    return cur.rowcount

# -------------- catalog --------------
def upsert_lesson(
    lesson_id: str,
    title: str,
    track: str,
    *,
    level: Optional[str] = None,
    english_level: Optional[str] = None,
    published: bool = False,
    video_link: Optional[str] = None,
    duration_minutes: Optional[int] = None,
    order_index: Optional[int] = None,
) -> Dict[str, Any]:
    insert_position = 0 if order_index is None else int(order_index)
    update_position = None if order_index is None else int(order_index)
    _exec(
        """
        INSERT INTO lessons(id, title, track, level, english_level, published, video_link,
                            duration_minutes, order_index)
        VALUES (?,?,?,?,?,?,?,?,?)
        ON CONFLICT(id) DO UPDATE SET
          title=excluded.title,
          track=excluded.track,
          level=excluded.level,
          english_level=excluded.english_level,
          published=excluded.published,
          video_link=excluded.video_link,
          duration_minutes=excluded.duration_minutes,
          order_index=COALESCE(?, lessons.order_index),
          updated_at=CURRENT_TIMESTAMP
        """,
        (
            lesson_id,
            title,
            track,
            level,
            english_level,
            1 if published else 0,
            video_link,
            duration_minutes,
            insert_position,
            update_position,
        ),
    )
    return get_lesson(lesson_id)  # type: ignore[return-value]


def get_lesson(lesson_id: str, con: Optional[sqlite3.Connection] = None) -> Optional[Dict[str, Any]]:
    rows = _query_on(
        con,
        """
        SELECT id, title, track, level, english_level, published, video_link, duration_minutes,
               order_index, created_at
        FROM lessons WHERE id = ?
        """,
        (lesson_id,),
    )
    return _row_to_dict(rows[0], ("published",)) if rows else None


def list_published_lessons(con: Optional[sqlite3.Connection] = None) -> list[sqlite3.Row]:
    return _query_on(
        con,
        "SELECT id, track, level, english_level FROM lessons WHERE published = 1",
    )


def upsert_task(
    task_id: str,
    title: str,
    track: str,
    *,
    xp: int = 0,
    level: Optional[str] = None,
    published: bool = False,
    description: Optional[str] = None,
    resource_link: Optional[str] = None,
    deadline: Optional[str] = None,
) -> Dict[str, Any]:
    _exec(
        """
        INSERT INTO tasks(id, title, description, track, xp, level, published, resource_link, deadline)
        VALUES (?,?,?,?,?,?,?,?,?)
        ON CONFLICT(id) DO UPDATE SET
          title=excluded.title,
          description=excluded.description,
          track=excluded.track,
          xp=excluded.xp,
          level=excluded.level,
          published=excluded.published,
          resource_link=excluded.resource_link,
          deadline=excluded.deadline,
          updated_at=CURRENT_TIMESTAMP
        """,
        (task_id, title, description, track, int(xp), level, 1 if published else 0, resource_link, deadline),
    )
    return get_task(task_id)  # type: ignore[return-value]


def get_task(task_id: str, con: Optional[sqlite3.Connection] = None) -> Optional[Dict[str, Any]]:
    rows = _query_on(
        con,
        """
        SELECT id, title, description, track, xp, level, published, resource_link, deadline, created_at
        FROM tasks WHERE id = ?
        """,
        (task_id,),
    )
    return _row_to_dict(rows[0], ("published",)) if rows else None


def list_published_tasks(con: Optional[sqlite3.Connection] = None) -> list[sqlite3.Row]:
    return _query_on(con, "SELECT id, track, level, xp FROM tasks WHERE published = 1")

# -------------- lesson completions --------------
def upsert_lesson_completion(learner_id: str, lesson_id: str, watched: bool) -> Dict[str, Any]:
    _exec(
        """
        INSERT INTO lesson_completions(learner_id, lesson_id, watched, watched_at)
        VALUES (?,?,?, CASE WHEN ? THEN CURRENT_TIMESTAMP ELSE NULL END)
        ON CONFLICT(learner_id, lesson_id) DO UPDATE SET
          watched=excluded.watched,
          watched_at=excluded.watched_at
        """,
        (learner_id, lesson_id, 1 if watched else 0, 1 if watched else 0),
    )
    rows = _query(
        """
        SELECT learner_id, lesson_id, watched, watched_at
        FROM lesson_completions WHERE learner_id = ? AND lesson_id = ?
        """,
        (learner_id, lesson_id),
    )
    return _row_to_dict(rows[0], ("watched",))  # type: ignore[return-value]


def list_watched_lesson_ids(learner_id: str, con: Optional[sqlite3.Connection] = None) -> set[str]:
    rows = _query_on(
        con,
        "SELECT DISTINCT lesson_id FROM lesson_completions WHERE learner_id = ? AND watched = 1",
        (learner_id,),
    )
    return {row["lesson_id"] for row in rows}

# -------------- task submissions --------------
_SUBMISSION_COLUMNS = (
    "id, learner_id, task_id, status, completion_proof, proof_type, submitted_at, "
    "reviewed_at, reviewer_id, review_note, xp_granted, created_at, updated_at"
)


def get_submission(submission_id: str, con: Optional[sqlite3.Connection] = None) -> Optional[Dict[str, Any]]:
    rows = _query_on(
        con, f"SELECT {_SUBMISSION_COLUMNS} FROM task_submissions WHERE id = ?", (submission_id,)
    )
    return _row_to_dict(rows[0]) if rows else None


def get_submission_for(
    learner_id: str, task_id: str, con: Optional[sqlite3.Connection] = None
) -> Optional[Dict[str, Any]]:
    rows = _query_on(
        con,
        f"SELECT {_SUBMISSION_COLUMNS} FROM task_submissions WHERE learner_id = ? AND task_id = ?",
        (learner_id, task_id),
    )
    return _row_to_dict(rows[0]) if rows else None


def save_submission_proof(
    con: sqlite3.Connection,
    learner_id: str,
    task_id: str,
    proof: str,
    proof_type: str,
) -> int:
    """Insert or resubmit a proof; never touches an approved submission."""
    cur = con.execute(
        """
        INSERT INTO task_submissions(id, learner_id, task_id, status, completion_proof, proof_type, submitted_at)
        VALUES (?,?,?,'submitted',?,?,CURRENT_TIMESTAMP)
        ON CONFLICT(learner_id, task_id) DO UPDATE SET
          status='submitted',
          completion_proof=excluded.completion_proof,
          proof_type=excluded.proof_type,
          submitted_at=CURRENT_TIMESTAMP,
          reviewed_at=NULL,
          reviewer_id=NULL,
          review_note=NULL,
          updated_at=CURRENT_TIMESTAMP
        WHERE task_submissions.status != 'approved'
        """,
        (new_id(), learner_id, task_id, proof, proof_type),
    )
    return cur.rowcount


def resolve_submission(
    con: sqlite3.Connection,
    submission_id: str,
    status: str,
    *,
    reviewer_id: Optional[str],
    note: Optional[str],
    xp_granted: Optional[int],
) -> int:
    """Move a ``submitted`` row to ``status``; returns 0 when it was not ``submitted``."""
    cur = con.execute(
        """
        UPDATE task_submissions
        SET status = ?, reviewer_id = ?, review_note = ?, xp_granted = ?,
            reviewed_at = CURRENT_TIMESTAMP, updated_at = CURRENT_TIMESTAMP
        WHERE id = ? AND status = 'submitted'
        """,
        (status, reviewer_id, note, xp_granted, submission_id),
    )
    return cur.rowcount


def list_pending_submissions(limit: int = 100) -> list[Dict[str, Any]]:
    rows = _query(
        """
        SELECT s.id, s.learner_id, s.task_id, s.status, s.completion_proof, s.proof_type,
               s.submitted_at, t.title AS task_title, t.xp AS task_xp, l.full_name AS learner_name
        FROM task_submissions AS s
        JOIN tasks AS t ON t.id = s.task_id
        JOIN learners AS l ON l.id = s.learner_id
        WHERE s.status = 'submitted'
        ORDER BY s.submitted_at ASC
        LIMIT ?
        """,
        (int(limit),),
    )
    return [dict(r) for r in rows]


def list_approved_task_ids(learner_id: str, con: Optional[sqlite3.Connection] = None) -> set[str]:
    rows = _query_on(
        con,
        "SELECT DISTINCT task_id FROM task_submissions WHERE learner_id = ? AND status = 'approved'",
        (learner_id,),
    )
    return {row["task_id"] for row in rows}

# -------------- daily check-in --------------
_CHECKIN_BOOL_FIELDS = ("data_task", "lang_task", "soft_task")


def get_checkin(
    learner_id: str, date: str, con: Optional[sqlite3.Connection] = None
) -> Optional[Dict[str, Any]]:
    rows = _query_on(
        con,
        """
        SELECT id, learner_id, date, data_task, lang_task, soft_task, xp_generated, created_at
        FROM daily_checkins WHERE learner_id = ? AND date = ?
        """,
        (learner_id, date),
    )
    return _row_to_dict(rows[0], _CHECKIN_BOOL_FIELDS) if rows else None


def ensure_checkin_row(con: sqlite3.Connection, learner_id: str, date: str) -> None:
    con.execute(
        "INSERT OR IGNORE INTO daily_checkins(learner_id, date) VALUES (?, ?)",
        (learner_id, date),
    )


def claim_checkin_flag(
    con: sqlite3.Connection, learner_id: str, date: str, column: str, award: int
) -> int:
    """Compare-and-swap the track flag from 0 to 1; returns the affected row count."""
    if column not in _CHECKIN_BOOL_FIELDS:
        raise ValueError(f"Unknown check-in column: {column}")
    cur = con.execute(
        f"""
        UPDATE daily_checkins
        SET {column} = 1, xp_generated = xp_generated + ?
        WHERE learner_id = ? AND date = ? AND {column} = 0
        """,
        (int(award), learner_id, date),
    )
    return cur.rowcount

# -------------- custom items --------------
_CUSTOM_TABLES = {"lesson": "custom_lessons", "task": "custom_tasks"}


def _custom_table(kind: str) -> str:
    try:
        return _CUSTOM_TABLES[kind]
    except KeyError:
        raise ValueError(f"Unknown custom item kind: {kind}") from None


def create_custom_lesson(
    learner_id: str,
    title: str,
    *,
    description: Optional[str] = None,
    track: str = "custom",
    video_link: Optional[str] = None,
    item_id: Optional[str] = None,
) -> Dict[str, Any]:
    item_id = item_id or new_id()
    _exec(
        """
        INSERT INTO custom_lessons(id, learner_id, title, description, track, video_link)
        VALUES (?,?,?,?,?,?)
        """,
        (item_id, learner_id, title, description, track, video_link),
    )
    return get_custom_item("lesson", item_id)  # type: ignore[return-value]


def create_custom_task(
    learner_id: str,
    title: str,
    xp_value: int,
    *,
    description: Optional[str] = None,
    track: str = "custom",
    item_id: Optional[str] = None,
) -> Dict[str, Any]:
    item_id = item_id or new_id()
    _exec(
        """
        INSERT INTO custom_tasks(id, learner_id, title, description, track, xp_value)
        VALUES (?,?,?,?,?,?)
        """,
        (item_id, learner_id, title, description, track, int(xp_value)),
    )
    return get_custom_item("task", item_id)  # type: ignore[return-value]


def get_custom_item(
    kind: str, item_id: str, con: Optional[sqlite3.Connection] = None
) -> Optional[Dict[str, Any]]:
    table = _custom_table(kind)
    extra = ", xp_value" if kind == "task" else ", video_link"
    rows = _query_on(
        con,
        f"""
        SELECT id, learner_id, title, description, track, completed, completed_at, created_at{extra}
        FROM {table} WHERE id = ?
        """,
        (item_id,),
    )
    if not rows:
        return None
    data = _row_to_dict(rows[0], ("completed",))
    data["kind"] = kind  # type: ignore[index]
    return data


def set_custom_completed(con: sqlite3.Connection, kind: str, item_id: str, completed: bool) -> int:
    """Flip ``completed`` only when it differs; returns the affected row count."""
    table = _custom_table(kind)
    cur = con.execute(
        f"""
        UPDATE {table}
        SET completed = ?,
            completed_at = CASE WHEN ? THEN CURRENT_TIMESTAMP ELSE NULL END,
            updated_at = CURRENT_TIMESTAMP
        WHERE id = ? AND completed != ?
        """,
        (1 if completed else 0, 1 if completed else 0, item_id, 1 if completed else 0),
    )
    return cur.rowcount


def list_custom_items(kind: str, learner_id: str, con: Optional[sqlite3.Connection] = None) -> list[Dict[str, Any]]:
    table = _custom_table(kind)
    rows = _query_on(
        con,
        f"SELECT id, title, track, completed FROM {table} WHERE learner_id = ? ORDER BY created_at DESC",
        (learner_id,),
    )
    return [_row_to_dict(r, ("completed",)) for r in rows]  # type: ignore[misc]

# -------------- xp ledger --------------
def adjust_xp(con: sqlite3.Connection, learner_id: str, delta: int) -> Optional[tuple[int, int]]:
    """Apply ``delta`` to ``xp_total`` clamped at zero; returns ``(before, after)``.

    Must run inside a write transaction so the before/after reads bracket the update.
    """
    rows = con.execute("SELECT xp_total FROM learners WHERE id = ?", (learner_id,)).fetchall()
    if not rows:
        return None
    before = int(rows[0]["xp_total"])
    con.execute(
        """
        UPDATE learners SET xp_total = MAX(0, xp_total + ?), updated_at = CURRENT_TIMESTAMP
        WHERE id = ?
        """,
        (int(delta), learner_id),
    )
    after = int(
        con.execute("SELECT xp_total FROM learners WHERE id = ?", (learner_id,)).fetchone()["xp_total"]
    )
    return before, after


def insert_xp_event(
    con: sqlite3.Connection,
    learner_id: str,
    source: str,
    direction: str,
    requested: int,
    applied: int,
    balance_after: int,
    related_id: Optional[str] = None,
) -> int:
    cur = con.execute(
        """
        INSERT INTO xp_events(learner_id, source, direction, requested, applied, balance_after, related_id)
        VALUES (?,?,?,?,?,?,?)
        """,
        (learner_id, source, direction, int(requested), int(applied), int(balance_after), related_id),
    )
    return int(cur.lastrowid)


def list_xp_events(learner_id: str, limit: int = 100) -> list[Dict[str, Any]]:
    rows = _query(
        """
        SELECT id, learner_id, source, direction, requested, applied, balance_after, related_id, created_at
        FROM xp_events WHERE learner_id = ?
        ORDER BY id DESC
        LIMIT ?
        """,
        (learner_id, int(limit)),
    )
    return [dict(r) for r in rows]


def sum_xp_events(learner_id: str) -> int:
    rows = _query(
        """
        SELECT COALESCE(SUM(CASE WHEN direction = 'credit' THEN applied ELSE -applied END), 0) AS total
        FROM xp_events WHERE learner_id = ?
        """,
        (learner_id,),
    )
    return int(rows[0]["total"])

# -------------- activity feed --------------
def insert_activity_statement(
    learner_id: str,
    verb: str,
    object_id: str,
    xp_earned: int,
    description: Optional[str],
    context_json: Optional[str],
) -> int:
    cur = _exec(
        """
        INSERT INTO activity_statements(learner_id, verb, object_id, xp_earned, description, context)
        VALUES (?,?,?,?,?,?)
        """,
        (learner_id, verb, object_id, int(xp_earned), description, context_json),
    )
    return int(cur.lastrowid)


def list_activity_statements(learner_id: str, limit: int = 20) -> list[Dict[str, Any]]:
    rows = _query(
        """
        SELECT id, learner_id, verb, object_id, xp_earned, description, context, created_at
        FROM activity_statements WHERE learner_id = ?
        ORDER BY id DESC
        LIMIT ?
        """,
        (learner_id, int(limit)),
    )
    items = []
    for row in rows:
        item = dict(row)
        raw = item.get("context")
        if raw:
            try:
                item["context"] = json.loads(raw)
            except json.JSONDecodeError:
                item["context"] = {}
        items.append(item)
    return items
