"""
SQLite database for sessions, images, jobs, variants and idempotency keys.

Every job status change is a single conditional UPDATE keyed by job id and
guarded by the allowed predecessor statuses, so concurrent writers can never
interleave a read and a write on the same job row.
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from .models import JobStatus

# Default database path
DEFAULT_DB_PATH = Path("data/image_studio.db")

TERMINAL_VALUES = (JobStatus.DONE.value, JobStatus.ERROR.value, JobStatus.FAILED.value)


def _ensure_db_dir(db_path: Path) -> None:
    """Ensure the database directory exists."""
    db_path.parent.mkdir(parents=True, exist_ok=True)


def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    """
    Serialize datetime to ISO format string.

    Fixed precision keeps stored values lexicographically comparable.
    """
    return dt.isoformat(timespec="microseconds") if dt else None


def _deserialize_datetime(s: Optional[str]) -> Optional[datetime]:
    """Deserialize ISO format string to datetime."""
    if not s:
        return None
    return datetime.fromisoformat(s)


class JobDatabase:
    """
    SQLite persistence for the image studio.

    Thread-safe: SQLite handles concurrent access with WAL mode, and every
    multi-statement operation runs inside an immediate transaction.
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        _ensure_db_dir(self.db_path)
        self._init_db()

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Get a database connection with proper settings."""
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Connection holding the write lock from the first statement."""
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            yield conn

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._get_connection() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS sessions (
                    id TEXT PRIMARY KEY,
                    project_id TEXT,
                    context TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS images (
                    id TEXT PRIMARY KEY,
                    session_id TEXT,
                    kind TEXT NOT NULL,
                    filename TEXT NOT NULL,
                    path TEXT NOT NULL,
                    thumbnail_path TEXT,
                    width INTEGER,
                    height INTEGER,
                    mime_type TEXT NOT NULL,
                    s3_key TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    session_id TEXT,
                    input_image_id TEXT,
                    project_id TEXT,
                    type TEXT NOT NULL,
                    status TEXT NOT NULL,
                    prompt TEXT,
                    backend_used TEXT,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    error_msg TEXT,
                    last_error TEXT,
                    feature_id TEXT,
                    feature_context TEXT NOT NULL DEFAULT '{}',
                    result_variant_ids TEXT NOT NULL DEFAULT '[]',
                    idempotency_key TEXT,
                    created_at TEXT NOT NULL,
                    queued_at TEXT,
                    started_at TEXT,
                    finished_at TEXT,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_jobs_created_at ON jobs(created_at DESC);
                CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);
                CREATE INDEX IF NOT EXISTS idx_jobs_session ON jobs(session_id);

                CREATE TABLE IF NOT EXISTS variants (
                    id TEXT PRIMARY KEY,
                    job_id TEXT NOT NULL REFERENCES jobs(id) ON DELETE CASCADE,
                    image_id TEXT NOT NULL,
                    score REAL NOT NULL,
                    metadata TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_variants_job ON variants(job_id);

                CREATE TABLE IF NOT EXISTS idempotency_keys (
                    scope TEXT NOT NULL,
                    key TEXT NOT NULL,
                    job_id TEXT NOT NULL REFERENCES jobs(id) ON DELETE CASCADE,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (scope, key)
                );
            """)

    # Sessions

    def create_session(self, session_id: str, project_id: Optional[str], context: Dict[str, Any], now: datetime) -> Dict[str, Any]:
        with self._get_connection() as conn:
            conn.execute(
                "INSERT INTO sessions (id, project_id, context, created_at, updated_at) VALUES (?, ?, ?, ?, ?)",
                (session_id, project_id, json.dumps(context), _serialize_datetime(now), _serialize_datetime(now)),
            )
            row = conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
            return self._session_row_to_dict(row)

    def get_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
            return self._session_row_to_dict(row) if row else None

    def update_session_context(self, session_id: str, context: Dict[str, Any], now: datetime) -> bool:
        with self._get_connection() as conn:
            cursor = conn.execute(
                "UPDATE sessions SET context = ?, updated_at = ? WHERE id = ?",
                (json.dumps(context), _serialize_datetime(now), session_id),
            )
            return cursor.rowcount > 0

    # Images

    def insert_image(self, image: Dict[str, Any]) -> Dict[str, Any]:
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO images (
                    id, session_id, kind, filename, path, thumbnail_path,
                    width, height, mime_type, s3_key, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                image["id"],
                image.get("session_id"),
                image["kind"],
                image["filename"],
                str(image["path"]),
                str(image["thumbnail_path"]) if image.get("thumbnail_path") else None,
                image.get("width"),
                image.get("height"),
                image["mime_type"],
                image.get("s3_key"),
                _serialize_datetime(image["created_at"]),
            ))
            row = conn.execute("SELECT * FROM images WHERE id = ?", (image["id"],)).fetchone()
            return self._image_row_to_dict(row)

    def get_image(self, image_id: str) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM images WHERE id = ?", (image_id,)).fetchone()
            return self._image_row_to_dict(row) if row else None

    # Jobs

    def create_job(
        self,
        job: Dict[str, Any],
        idempotency: Optional[Tuple[str, str]] = None,
        valid_since: Optional[datetime] = None,
    ) -> Tuple[Dict[str, Any], bool]:
        """
        Insert a job, or return the job already registered under the same key.

        Args:
            job: Job column values
            idempotency: Optional (scope, key) pair
            valid_since: Keys created before this instant are expired

        Returns:
            (job, created) where created is False for an idempotent replay
        """
        with self._transaction() as conn:
            if idempotency is not None:
                scope, key = idempotency
                existing = conn.execute(
                    "SELECT job_id, created_at FROM idempotency_keys WHERE scope = ? AND key = ?",
                    (scope, key),
                ).fetchone()
                if existing is not None:
                    fresh = valid_since is None or existing["created_at"] >= _serialize_datetime(valid_since)
                    row = conn.execute("SELECT * FROM jobs WHERE id = ?", (existing["job_id"],)).fetchone()
                    if fresh and row is not None:
                        return self._job_row_to_dict(row), False
                    conn.execute("DELETE FROM idempotency_keys WHERE scope = ? AND key = ?", (scope, key))

            conn.execute("""
                INSERT INTO jobs (
                    id, session_id, input_image_id, project_id, type, status, prompt,
                    attempts, feature_id, feature_context, idempotency_key,
                    created_at, queued_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?, ?)
            """, (
                job["id"],
                job.get("session_id"),
                job.get("input_image_id"),
                job.get("project_id"),
                job["type"],
                job["status"],
                job.get("prompt"),
                job.get("feature_id"),
                json.dumps(job.get("feature_context") or {}),
                idempotency[1] if idempotency else None,
                _serialize_datetime(job["created_at"]),
                _serialize_datetime(job.get("queued_at")),
                _serialize_datetime(job["created_at"]),
            ))
            if idempotency is not None:
                conn.execute(
                    "INSERT INTO idempotency_keys (scope, key, job_id, created_at) VALUES (?, ?, ?, ?)",
                    (idempotency[0], idempotency[1], job["id"], _serialize_datetime(job["created_at"])),
                )
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job["id"],)).fetchone()
            return self._job_row_to_dict(row), True

    def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        """
        Retrieve a job by ID.

        Returns:
            Job data dictionary or None if not found
        """
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
            return self._job_row_to_dict(row) if row else None

    def list_jobs(
        self,
        status: Optional[str] = None,
        session_id: Optional[str] = None,
        limit: int = 50,
    ) -> List[Dict[str, Any]]:
        """List jobs newest first, optionally filtered by status and session."""
        clauses = []
        values: List[Any] = []
        if status is not None:
            clauses.append("status = ?")
            values.append(status)
        if session_id is not None:
            clauses.append("session_id = ?")
            values.append(session_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        values.append(limit)

        with self._get_connection() as conn:
            rows = conn.execute(f"SELECT * FROM jobs {where} ORDER BY created_at DESC LIMIT ?", values).fetchall()
            return [self._job_row_to_dict(row) for row in rows]

    def transition_job(
        self,
        job_id: str,
        target: str,
        allowed_from: Sequence[str],
        now: datetime,
        error_message: Optional[str] = None,
        backend_used: Optional[str] = None,
        result_variant_ids: Optional[List[str]] = None,
        max_attempts: int = 3,
        exhausted_message: str = "Maximum retry attempts exceeded",
    ) -> Optional[Dict[str, Any]]:
        """
        Apply a status change as one conditional UPDATE.

        A transition into ``queued`` for a job whose attempts already reached
        ``max_attempts`` is written as ``failed`` instead. ``last_error`` only
        ever changes to a new non-null message.

        Returns:
            The updated job, or None if the job does not exist or its current
            status is not in ``allowed_from``
        """
        params: Dict[str, Any] = {
            "id": job_id,
            "target": target,
            "now": _serialize_datetime(now),
            "error": error_message,
            "backend": backend_used,
            "variants": json.dumps(result_variant_ids) if result_variant_ids is not None else None,
            "cap": max_attempts,
            "exhausted": exhausted_message,
        }
        predecessors = []
        for index, status in enumerate(allowed_from):
            params[f"from_{index}"] = status
            predecessors.append(f":from_{index}")
        if not predecessors:
            return None

        if target == JobStatus.QUEUED.value:
            assignments = [
                "status = CASE WHEN attempts >= :cap THEN 'failed' ELSE 'queued' END",
                "error_msg = CASE WHEN attempts >= :cap THEN :exhausted ELSE :error END",
                "last_error = CASE WHEN attempts >= :cap THEN :exhausted ELSE COALESCE(:error, last_error) END",
                "queued_at = CASE WHEN attempts >= :cap THEN queued_at ELSE :now END",
                "finished_at = CASE WHEN attempts >= :cap THEN :now ELSE finished_at END",
            ]
        else:
            assignments = [
                "status = :target",
                "error_msg = :error",
                "last_error = COALESCE(:error, last_error)",
            ]
            if target == JobStatus.RUNNING.value:
                assignments.append("started_at = :now")
            elif target in TERMINAL_VALUES:
                assignments.append("finished_at = :now")

        assignments += [
            "backend_used = COALESCE(:backend, backend_used)",
            "result_variant_ids = COALESCE(:variants, result_variant_ids)",
            "updated_at = :now",
        ]

        with self._transaction() as conn:
            cursor = conn.execute(
                f"UPDATE jobs SET {', '.join(assignments)} WHERE id = :id AND status IN ({', '.join(predecessors)})",
                params,
            )
            if cursor.rowcount == 0:
                return None
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
            return self._job_row_to_dict(row)

    def increment_attempts(self, job_id: str, max_attempts: int, now: datetime) -> Optional[Dict[str, Any]]:
        """
        Increment the attempt counter, never past ``max_attempts``.

        Returns:
            The job after the update (unchanged when already at the cap), or
            None if the job does not exist
        """
        with self._transaction() as conn:
            conn.execute(
                "UPDATE jobs SET attempts = attempts + 1, updated_at = ? WHERE id = ? AND attempts < ?",
                (_serialize_datetime(now), job_id, max_attempts),
            )
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
            return self._job_row_to_dict(row) if row else None

    def recover_stalled(
        self,
        stalled_before: datetime,
        now: datetime,
        max_attempts: int,
        recovery_message: str,
        exhausted_message: str,
        exclude_ids: Sequence[str] = (),
    ) -> int:
        """
        Move jobs left running since before ``stalled_before`` out of running.

        Jobs with attempts to spare go back to queued; the rest fail. Jobs in
        ``exclude_ids`` are still being processed and are left alone.

        Returns:
            Number of jobs moved
        """
        cutoff = _serialize_datetime(stalled_before)
        stamp = _serialize_datetime(now)
        excluded = ""
        if exclude_ids:
            excluded = f" AND id NOT IN ({', '.join('?' for _ in exclude_ids)})"
        with self._transaction() as conn:
            requeued = conn.execute("""
                UPDATE jobs
                SET status = 'queued', queued_at = ?, error_msg = ?, last_error = ?, updated_at = ?
                WHERE status = 'running' AND started_at < ? AND attempts < ?""" + excluded,
                (stamp, recovery_message, recovery_message, stamp, cutoff, max_attempts, *exclude_ids),
            ).rowcount
            failed = conn.execute("""
                UPDATE jobs
                SET status = 'failed', finished_at = ?, error_msg = ?, last_error = ?, updated_at = ?
                WHERE status = 'running' AND started_at < ? AND attempts >= ?""" + excluded,
                (stamp, exhausted_message, exhausted_message, stamp, cutoff, max_attempts, *exclude_ids),
            ).rowcount
            return requeued + failed

    def list_retryable(self, limit: int, max_attempts: int) -> List[Dict[str, Any]]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM jobs WHERE status = 'queued' AND attempts < ? ORDER BY queued_at ASC LIMIT ?",
                (max_attempts, limit),
            ).fetchall()
            return [self._job_row_to_dict(row) for row in rows]

    # Variants

    def insert_variant(
        self,
        variant_id: str,
        job_id: str,
        image_id: str,
        score: float,
        metadata: Dict[str, Any],
        now: datetime,
    ) -> Dict[str, Any]:
        with self._get_connection() as conn:
            conn.execute(
                "INSERT INTO variants (id, job_id, image_id, score, metadata, created_at) VALUES (?, ?, ?, ?, ?, ?)",
                (variant_id, job_id, image_id, score, json.dumps(metadata), _serialize_datetime(now)),
            )
            row = conn.execute("SELECT * FROM variants WHERE id = ?", (variant_id,)).fetchone()
            return self._variant_row_to_dict(row)

    def list_variants(self, job_id: str) -> List[Dict[str, Any]]:
        """Variants of a job joined with their image paths, best score first."""
        with self._get_connection() as conn:
            rows = conn.execute("""
                SELECT v.*, i.path AS image_path, i.thumbnail_path AS thumbnail_path, i.s3_key AS s3_key
                FROM variants v LEFT JOIN images i ON i.id = v.image_id
                WHERE v.job_id = ?
                ORDER BY v.score DESC, v.created_at ASC
            """, (job_id,)).fetchall()
            return [self._variant_row_to_dict(row) for row in rows]

    # Row conversion

    def _session_row_to_dict(self, row: sqlite3.Row) -> Dict[str, Any]:
        return {
            "id": row["id"],
            "project_id": row["project_id"],
            "context": json.loads(row["context"] or "{}"),
            "created_at": _deserialize_datetime(row["created_at"]),
            "updated_at": _deserialize_datetime(row["updated_at"]),
        }

    def _image_row_to_dict(self, row: sqlite3.Row) -> Dict[str, Any]:
        return {
            "id": row["id"],
            "session_id": row["session_id"],
            "kind": row["kind"],
            "filename": row["filename"],
            "path": Path(row["path"]),
            "thumbnail_path": Path(row["thumbnail_path"]) if row["thumbnail_path"] else None,
            "width": row["width"],
            "height": row["height"],
            "mime_type": row["mime_type"],
            "s3_key": row["s3_key"],
            "created_at": _deserialize_datetime(row["created_at"]),
        }

    def _job_row_to_dict(self, row: sqlite3.Row) -> Dict[str, Any]:
        """Convert a database row to a job data dictionary."""
        return {
            "id": row["id"],
            "session_id": row["session_id"],
            "input_image_id": row["input_image_id"],
            "project_id": row["project_id"],
            "type": row["type"],
            "status": row["status"],
            "prompt": row["prompt"],
            "backend_used": row["backend_used"],
            "attempts": row["attempts"],
            "error_msg": row["error_msg"],
            "last_error": row["last_error"],
            "feature_id": row["feature_id"],
            "feature_context": json.loads(row["feature_context"] or "{}"),
            "result_variant_ids": json.loads(row["result_variant_ids"] or "[]"),
            "idempotency_key": row["idempotency_key"],
            "created_at": _deserialize_datetime(row["created_at"]),
            "queued_at": _deserialize_datetime(row["queued_at"]),
            "started_at": _deserialize_datetime(row["started_at"]),
            "finished_at": _deserialize_datetime(row["finished_at"]),
            "updated_at": _deserialize_datetime(row["updated_at"]),
        }

    def _variant_row_to_dict(self, row: sqlite3.Row) -> Dict[str, Any]:
        keys = row.keys()
        return {
            "id": row["id"],
            "job_id": row["job_id"],
            "image_id": row["image_id"],
            "score": row["score"],
            "metadata": json.loads(row["metadata"] or "{}"),
            "image_path": row["image_path"] if "image_path" in keys else None,
            "thumbnail_path": row["thumbnail_path"] if "thumbnail_path" in keys else None,
            "s3_key": row["s3_key"] if "s3_key" in keys else None,
            "created_at": _deserialize_datetime(row["created_at"]),
        }
