import logging
import os
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Optional

import psycopg2
from psycopg2.extras import RealDictCursor

from errors import ClaimError, NotFound
from models import AnalysisJob, ClaimedAnalysis, ClaimedRender, RenderJob

logger = logging.getLogger(__name__)

# A postgres:// DSN selects PostgreSQL; otherwise the SQLite file at DB_PATH is used.
DATABASE_URL = os.environ.get("DATABASE_URL", "")
DB_PATH = os.environ.get("DB_PATH", "/data/bpm.db")

ERROR_MESSAGE_MAX_CHARS = 500
MIN_TARGET_BPM = 40.0
MAX_TARGET_BPM = 260.0

SQLITE_SCHEMA = """
PRAGMA journal_mode = WAL;

CREATE TABLE IF NOT EXISTS tracks (
    id TEXT PRIMARY KEY,
    original_object_key TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS track_analysis (
    id TEXT PRIMARY KEY,
    track_id TEXT NOT NULL UNIQUE REFERENCES tracks(id),
    status TEXT NOT NULL DEFAULT 'queued',
    bpm REAL,
    confidence REAL,
    error_message TEXT,
    created_at TEXT NOT NULL,
    started_at TEXT,
    finished_at TEXT
);

CREATE TABLE IF NOT EXISTS render_jobs (
    id TEXT PRIMARY KEY,
    track_id TEXT NOT NULL REFERENCES tracks(id),
    target_bpm REAL NOT NULL,
    tempo_ratio REAL NOT NULL DEFAULT 1.0,
    preserve_pitch INTEGER NOT NULL DEFAULT 1,
    status TEXT NOT NULL DEFAULT 'queued',
    output_object_key TEXT,
    error_message TEXT,
    created_at TEXT NOT NULL,
    started_at TEXT,
    finished_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_track_analysis_queue ON track_analysis (status, created_at);
CREATE INDEX IF NOT EXISTS idx_render_jobs_queue ON render_jobs (status, created_at);
"""

POSTGRES_SCHEMA = """
CREATE TABLE IF NOT EXISTS tracks (
    id UUID PRIMARY KEY,
    original_object_key TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS track_analysis (
    id UUID PRIMARY KEY,
    track_id UUID NOT NULL UNIQUE REFERENCES tracks(id),
    status TEXT NOT NULL DEFAULT 'queued',
    bpm DOUBLE PRECISION,
    confidence DOUBLE PRECISION,
    error_message TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    finished_at TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS render_jobs (
    id UUID PRIMARY KEY,
    track_id UUID NOT NULL REFERENCES tracks(id),
    target_bpm DOUBLE PRECISION NOT NULL,
    tempo_ratio DOUBLE PRECISION NOT NULL DEFAULT 1.0,
    preserve_pitch BOOLEAN NOT NULL DEFAULT TRUE,
    status TEXT NOT NULL DEFAULT 'queued',
    output_object_key TEXT,
    error_message TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    finished_at TIMESTAMPTZ
);

ALTER TABLE track_analysis ADD COLUMN IF NOT EXISTS started_at TIMESTAMPTZ;
ALTER TABLE render_jobs ADD COLUMN IF NOT EXISTS started_at TIMESTAMPTZ;

CREATE INDEX IF NOT EXISTS idx_track_analysis_queue ON track_analysis (status, created_at);
CREATE INDEX IF NOT EXISTS idx_render_jobs_queue ON render_jobs (status, created_at);
"""

# The subquery picks the oldest queued row. On PostgreSQL it locks that row and
# skips rows already locked by a concurrent claim; on SQLite the surrounding
# BEGIN IMMEDIATE holds the database write lock instead.
CLAIM_ANALYSIS_SQL = """
UPDATE track_analysis
SET status='running', started_at=?, error_message=NULL
WHERE status='queued' AND id = (
    SELECT id FROM track_analysis
    WHERE status='queued'
    ORDER BY created_at ASC
    LIMIT 1{lock}
)
RETURNING id, track_id
"""

CLAIM_RENDER_SQL = """
UPDATE render_jobs
SET status='running', started_at=?, error_message=NULL
WHERE status='queued' AND id = (
    SELECT id FROM render_jobs
    WHERE status='queued'
    ORDER BY created_at ASC
    LIMIT 1{lock}
)
RETURNING id, track_id, target_bpm, preserve_pitch
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def is_postgres() -> bool:
    return DATABASE_URL.startswith(("postgres://", "postgresql://"))


class PostgresConnection:
    """psycopg2 connection exposing the sqlite3-style execute() used in this module."""

    def __init__(self, conn):
        self._conn = conn

    def execute(self, sql: str, params=()):
        cur = self._conn.cursor(cursor_factory=RealDictCursor)
        cur.execute(sql.replace("?", "%s"), params)
        return cur

    def executescript(self, script: str):
        with self._conn.cursor() as cur:
            cur.execute(script)

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    def close(self):
        self._conn.close()


def get_connection():
    if is_postgres():
        return PostgresConnection(psycopg2.connect(DATABASE_URL))
    conn = sqlite3.connect(DB_PATH, timeout=30, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


@contextmanager
def db():
    conn = get_connection()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_db():
    conn = get_connection()
    try:
        if is_postgres():
            conn.executescript(POSTGRES_SCHEMA)
        else:
            conn.executescript(SQLITE_SCHEMA)
            # Migrations for databases created before claims were timestamped
            for table in ("track_analysis", "render_jobs"):
                try:
                    conn.execute(f"ALTER TABLE {table} ADD COLUMN started_at TEXT")
                except sqlite3.OperationalError:
                    pass  # column already exists
        conn.commit()
    finally:
        conn.close()
    logger.info(f"Database ready ({'postgres' if is_postgres() else DB_PATH})")


def truncate_message(message: str) -> str:
    return message[:ERROR_MESSAGE_MAX_CHARS]


def _claim(sql: str) -> Optional[dict]:
    lock = "\n    FOR UPDATE SKIP LOCKED" if is_postgres() else ""
    try:
        with db() as conn:
            if not is_postgres():
                conn.execute("BEGIN IMMEDIATE")
            rows = conn.execute(sql.format(lock=lock), (_now(),)).fetchall()
    except (sqlite3.Error, psycopg2.Error) as e:
        raise ClaimError(str(e)) from e
    return dict(rows[0]) if rows else None


def claim_next_analysis_job() -> Optional[ClaimedAnalysis]:
    """Move the oldest queued analysis job to running and return it, or None."""
    row = _claim(CLAIM_ANALYSIS_SQL)
    if row is None:
        return None
    return ClaimedAnalysis(id=str(row["id"]), track_id=str(row["track_id"]))


def claim_next_render_job() -> Optional[ClaimedRender]:
    """Move the oldest queued render job to running and return it, or None."""
    row = _claim(CLAIM_RENDER_SQL)
    if row is None:
        return None
    return ClaimedRender(
        id=str(row["id"]),
        track_id=str(row["track_id"]),
        target_bpm=float(row["target_bpm"]),
        preserve_pitch=bool(row["preserve_pitch"]),
    )


# Terminal writes only apply to running rows, so done/failed are never overwritten.


def mark_analysis_done(analysis_id: str, bpm: float, confidence: float) -> bool:
    with db() as conn:
        cur = conn.execute(
            """
            UPDATE track_analysis
            SET bpm=?, confidence=?, status='done', error_message=NULL, finished_at=?
            WHERE id=? AND status='running'
            """,
            (bpm, confidence, _now(), analysis_id),
        )
        return cur.rowcount == 1


def mark_analysis_failed(analysis_id: str, message: str) -> bool:
    with db() as conn:
        cur = conn.execute(
            """
            UPDATE track_analysis
            SET status='failed', error_message=?, finished_at=?
            WHERE id=? AND status='running'
            """,
            (truncate_message(message), _now(), analysis_id),
        )
        return cur.rowcount == 1


def mark_render_done(render_id: str, tempo_ratio: float, output_key: str) -> bool:
    with db() as conn:
        cur = conn.execute(
            """
            UPDATE render_jobs
            SET tempo_ratio=?, output_object_key=?, status='done', error_message=NULL, finished_at=?
            WHERE id=? AND status='running'
            """,
            (tempo_ratio, output_key, _now(), render_id),
        )
        return cur.rowcount == 1


def mark_render_failed(render_id: str, message: str) -> bool:
    with db() as conn:
        cur = conn.execute(
            """
            UPDATE render_jobs
            SET status='failed', error_message=?, finished_at=?
            WHERE id=? AND status='running'
            """,
            (truncate_message(message), _now(), render_id),
        )
        return cur.rowcount == 1


def reclaim_stale_jobs(max_age_minutes: float) -> int:
    """Requeue jobs left running longer than max_age_minutes by a crashed worker."""
    cutoff = (datetime.now(timezone.utc) - timedelta(minutes=max_age_minutes)).isoformat()
    reclaimed = 0
    with db() as conn:
        for table in ("track_analysis", "render_jobs"):
            rows = conn.execute(
                f"""
                UPDATE {table}
                SET status='queued', started_at=NULL
                WHERE status='running' AND (started_at IS NULL OR started_at < ?)
                RETURNING id
                """,
                (cutoff,),
            ).fetchall()
            reclaimed += len(rows)
    if reclaimed:
        logger.warning(f"Requeued {reclaimed} job(s) stuck running for over {max_age_minutes:g} minutes")
    return reclaimed


def enqueue_analysis(track_id: str) -> str:
    """Queue analysis for a track, resetting its existing analysis row if there is one."""
    with db() as conn:
        if not conn.execute("SELECT id FROM tracks WHERE id=?", (track_id,)).fetchone():
            raise NotFound(f"track {track_id} not found")
        rows = conn.execute(
            """
            INSERT INTO track_analysis (id, track_id, status, created_at)
            VALUES (?, ?, 'queued', ?)
            ON CONFLICT (track_id) DO UPDATE
              SET status='queued', bpm=NULL, confidence=NULL, error_message=NULL,
                  created_at=excluded.created_at, started_at=NULL, finished_at=NULL
            RETURNING id
            """,
            (str(uuid.uuid4()), track_id, _now()),
        ).fetchall()
    return str(rows[0]["id"])


def enqueue_render(track_id: str, target_bpm: float, preserve_pitch: bool = True) -> str:
    if not MIN_TARGET_BPM <= target_bpm <= MAX_TARGET_BPM:
        raise ValueError(f"target_bpm must be between {MIN_TARGET_BPM:g} and {MAX_TARGET_BPM:g}")
    render_id = str(uuid.uuid4())
    with db() as conn:
        if not conn.execute("SELECT id FROM tracks WHERE id=?", (track_id,)).fetchone():
            raise NotFound(f"track {track_id} not found")
        # tempo_ratio is a placeholder until the render knows the detected BPM
        conn.execute(
            """
            INSERT INTO render_jobs (id, track_id, target_bpm, tempo_ratio, preserve_pitch, status, created_at)
            VALUES (?, ?, ?, 1.0, ?, 'queued', ?)
            """,
            (render_id, track_id, target_bpm, preserve_pitch, _now()),
        )
    return render_id


def get_track_source(track_id: str) -> Optional[str]:
    with db() as conn:
        row = conn.execute("SELECT original_object_key FROM tracks WHERE id=?", (track_id,)).fetchone()
    return row["original_object_key"] if row else None


def _analysis_from_row(row) -> AnalysisJob:
    return AnalysisJob(
        id=str(row["id"]),
        track_id=str(row["track_id"]),
        status=row["status"],
        bpm=row["bpm"],
        confidence=row["confidence"],
        error_message=row["error_message"],
        created_at=row["created_at"],
        started_at=row["started_at"],
        finished_at=row["finished_at"],
    )


def _render_from_row(row) -> RenderJob:
    return RenderJob(
        id=str(row["id"]),
        track_id=str(row["track_id"]),
        target_bpm=row["target_bpm"],
        tempo_ratio=row["tempo_ratio"],
        preserve_pitch=bool(row["preserve_pitch"]),
        status=row["status"],
        output_object_key=row["output_object_key"],
        error_message=row["error_message"],
        created_at=row["created_at"],
        started_at=row["started_at"],
        finished_at=row["finished_at"],
    )


def get_analysis_for_track(track_id: str) -> Optional[AnalysisJob]:
    with db() as conn:
        row = conn.execute("SELECT * FROM track_analysis WHERE track_id=?", (track_id,)).fetchone()
    return _analysis_from_row(row) if row else None


def get_render_job(render_id: str) -> Optional[RenderJob]:
    with db() as conn:
        row = conn.execute("SELECT * FROM render_jobs WHERE id=?", (render_id,)).fetchone()
    return _render_from_row(row) if row else None


def queue_counts() -> dict:
    counts = {}
    with db() as conn:
        for kind, table in (("analysis", "track_analysis"), ("render", "render_jobs")):
            by_status = {status: 0 for status in ("queued", "running", "done", "failed")}
            for row in conn.execute(f"SELECT status, COUNT(*) AS n FROM {table} GROUP BY status").fetchall():
                by_status[row["status"]] = row["n"]
            counts[kind] = by_status
    return counts
