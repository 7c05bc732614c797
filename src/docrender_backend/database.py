"""
SQLite database for durable pipeline state.

This module persists jobs, their page artifacts, the generated documents and
the per-user access grants. Every mutation that workers race on is a single
conditional statement (or an IMMEDIATE transaction), so the job row acts as a
compare-and-swap cell without a distributed lock.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .errors import ClaimConflict, JobNotFound, StorageFailure
from .models import (
    AccessGrant,
    DocumentRecord,
    JobRecord,
    JobStage,
    JobStatus,
    PageArtifact,
)
from .utils import deserialize_datetime, ensure_directory, serialize_datetime, utcnow

logger = logging.getLogger(__name__)

# Default database path
DEFAULT_DB_PATH = Path("data/docrender.db")

_UNSET = object()


class JobDatabase:
    """
    SQLite database for job, artifact, document and access persistence.

    Thread-safe: each call opens its own connection and SQLite serializes
    writers; read-modify-write sequences run under BEGIN IMMEDIATE.
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        ensure_directory(self.db_path.parent)
        self._init_db()

    @contextmanager
    def _get_connection(self, immediate: bool = False):
        """Get a database connection with proper settings."""
        try:
            conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        except sqlite3.Error as exc:
            raise StorageFailure(f"Cannot open database {self.db_path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA foreign_keys=ON")
            if immediate:
                conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise StorageFailure(str(exc)) from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    email TEXT,
                    created_by TEXT,
                    assigned_quota TEXT,
                    total_pages INTEGER NOT NULL,
                    completed_pages INTEGER NOT NULL DEFAULT 0,
                    layout_pages TEXT NOT NULL,
                    stage TEXT NOT NULL,
                    status TEXT NOT NULL,
                    output_document_id TEXT,
                    error TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS page_artifacts (
                    job_id TEXT NOT NULL REFERENCES jobs(id) ON DELETE CASCADE,
                    page_index INTEGER NOT NULL,
                    storage_key TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (job_id, page_index)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS documents (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    file_key TEXT NOT NULL,
                    file_url TEXT NOT NULL,
                    total_prints INTEGER NOT NULL DEFAULT 0,
                    mime_type TEXT NOT NULL,
                    document_type TEXT NOT NULL,
                    created_by TEXT,
                    source_job_id TEXT UNIQUE,
                    created_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS document_access (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    document_id TEXT NOT NULL REFERENCES documents(id),
                    assigned_quota INTEGER NOT NULL,
                    used_prints INTEGER NOT NULL DEFAULT 0,
                    session_token TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (user_id, document_id)
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_user_created
                ON jobs(user_id, created_at DESC)
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_status
                ON jobs(status)
            """)

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def create_job(self, job: JobRecord) -> None:
        """
        Insert a new job record.

        Args:
            job: The job to persist; artifacts are ignored (new jobs have none)
        """
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO jobs (
                    id, user_id, email, created_by, assigned_quota,
                    total_pages, completed_pages, layout_pages, stage, status,
                    output_document_id, error, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                job.id,
                job.user_id,
                job.email,
                job.created_by,
                json.dumps(job.assigned_quota),
                job.total_pages,
                job.completed_pages,
                json.dumps([page.model_dump(mode="json", by_alias=True) for page in job.layout_pages]),
                job.stage.value,
                job.status.value,
                job.output_document_id,
                job.error,
                serialize_datetime(job.created_at),
                serialize_datetime(job.updated_at),
            ))

    def get_job(self, job_id: str) -> Optional[JobRecord]:
        """
        Retrieve a job by ID, including its page artifacts.

        Args:
            job_id: The job ID

        Returns:
            JobRecord or None if not found
        """
        with self._get_connection() as conn:
            return self._fetch_job(conn, job_id)

    def list_jobs(self, user_id: Optional[str] = None, unfinished_only: bool = False) -> List[JobRecord]:
        """
        List jobs ordered by creation time (newest first).

        Args:
            user_id: Restrict to one owner
            unfinished_only: Skip jobs whose status is completed

        Returns:
            List of job records
        """
        clauses = []
        values: List[Any] = []
        if user_id is not None:
            clauses.append("user_id = ?")
            values.append(user_id)
        if unfinished_only:
            clauses.append("status != ?")
            values.append(JobStatus.COMPLETED.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._get_connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM jobs {where} ORDER BY created_at DESC", values
            ).fetchall()
            return [self._row_to_job(row, self._fetch_artifacts(conn, row["id"])) for row in rows]

    def record_page_artifact(self, job_id: str, page_index: int, storage_key: str) -> JobRecord:
        """
        Attach a rendered page to its job and bump the completion counter.

        The artifact insert, the counter increment and the stage/status change
        happen in one transaction. A page slot that already holds an artifact
        keeps it and the counter is left alone, so completed_pages always
        equals the number of distinct page indices. A job already merging or
        completed keeps its stage.

        Args:
            job_id: The job ID
            page_index: Zero-based page slot
            storage_key: Blob key of the rendered page

        Returns:
            The job as it reads after the update

        Raises:
            JobNotFound: If the job does not exist
        """
        now = serialize_datetime(utcnow())
        with self._get_connection(immediate=True) as conn:
            exists = conn.execute("SELECT 1 FROM jobs WHERE id = ?", (job_id,)).fetchone()
            if not exists:
                raise JobNotFound(job_id)

            cursor = conn.execute("""
                INSERT OR IGNORE INTO page_artifacts (job_id, page_index, storage_key, created_at)
                VALUES (?, ?, ?, ?)
            """, (job_id, page_index, storage_key, now))
            inserted = 1 if cursor.rowcount == 1 else 0
            if not inserted:
                logger.info(f"Page {page_index} of job {job_id} already has an artifact; keeping the first")

            conn.execute("""
                UPDATE jobs SET
                    completed_pages = completed_pages + ?,
                    stage = CASE WHEN stage IN (?, ?) THEN stage ELSE ? END,
                    status = CASE WHEN stage IN (?, ?) THEN status ELSE ? END,
                    updated_at = ?
                WHERE id = ?
            """, (
                inserted,
                JobStage.MERGING.value, JobStage.COMPLETED.value, JobStage.RENDERING.value,
                JobStage.MERGING.value, JobStage.COMPLETED.value, JobStatus.PROCESSING.value,
                now,
                job_id,
            ))
            return self._fetch_job(conn, job_id)

    def claim_job(
        self,
        job_id: str,
        stage: JobStage,
        status: JobStatus,
        from_stages: Optional[Iterable[JobStage]] = None,
        exclude_stages: Optional[Iterable[JobStage]] = None,
    ) -> JobRecord:
        """
        Conditionally move a job to a new stage.

        The update only applies while output_document_id is unset and the
        current stage satisfies the given predicate. Exactly one of several
        concurrent callers can win a claim whose target stage falls outside
        from_stages.

        Args:
            job_id: The job ID
            stage: Target stage
            status: Target status
            from_stages: Current stage must be one of these
            exclude_stages: Current stage must not be one of these

        Returns:
            The job as it reads after the claim

        Raises:
            ClaimConflict: If no job matched the predicate
        """
        clauses = ["id = ?", "output_document_id IS NULL"]
        values: List[Any] = [stage.value, status.value, serialize_datetime(utcnow()), job_id]
        if from_stages is not None:
            allowed = [s.value for s in from_stages]
            clauses.append(f"stage IN ({', '.join('?' for _ in allowed)})")
            values.extend(allowed)
        if exclude_stages is not None:
            excluded = [s.value for s in exclude_stages]
            clauses.append(f"stage NOT IN ({', '.join('?' for _ in excluded)})")
            values.extend(excluded)

        with self._get_connection(immediate=True) as conn:
            cursor = conn.execute(
                f"UPDATE jobs SET stage = ?, status = ?, updated_at = ? WHERE {' AND '.join(clauses)}",
                values,
            )
            if cursor.rowcount != 1:
                raise ClaimConflict(job_id, stage.value)
            return self._fetch_job(conn, job_id)

    def update_job(
        self,
        job_id: str,
        stage: Optional[JobStage] = None,
        status: Optional[JobStatus] = None,
        error: Any = _UNSET,
        require_output_unset: bool = False,
    ) -> bool:
        """
        Update job status fields and refresh updated_at.

        Args:
            job_id: The job ID
            stage: New stage, if changing
            status: New status, if changing
            error: New error message (None clears it), if changing
            require_output_unset: Only apply while output_document_id is NULL

        Returns:
            True if a row was updated
        """
        updates = ["updated_at = ?"]
        values: List[Any] = [serialize_datetime(utcnow())]

        if stage is not None:
            updates.append("stage = ?")
            values.append(stage.value)

        if status is not None:
            updates.append("status = ?")
            values.append(status.value)

        if error is not _UNSET:
            updates.append("error = ?")
            values.append(error)

        where = "id = ?"
        values.append(job_id)
        if require_output_unset:
            where += " AND output_document_id IS NULL"

        with self._get_connection() as conn:
            cursor = conn.execute(f"UPDATE jobs SET {', '.join(updates)} WHERE {where}", values)
            return cursor.rowcount > 0

    def mark_failed(self, job_id: str, error: str) -> bool:
        """Mark a job failed unless it has already produced its document."""
        return self.update_job(
            job_id,
            stage=JobStage.FAILED,
            status=JobStatus.FAILED,
            error=error,
            require_output_unset=True,
        )

    def complete_job(self, job_id: str, document_id: str) -> None:
        """
        Record the final document and mark the job completed.

        Args:
            job_id: The job ID
            document_id: The merged document's ID
        """
        with self._get_connection() as conn:
            conn.execute("""
                UPDATE jobs SET
                    stage = ?, status = ?, output_document_id = ?, error = NULL, updated_at = ?
                WHERE id = ?
            """, (
                JobStage.COMPLETED.value,
                JobStatus.COMPLETED.value,
                document_id,
                serialize_datetime(utcnow()),
                job_id,
            ))

    # ------------------------------------------------------------------
    # Documents and access grants
    # ------------------------------------------------------------------

    def create_document(self, document: DocumentRecord) -> DocumentRecord:
        """
        Insert a document, or return the one already created for the same job.

        Args:
            document: Document to store

        Returns:
            The stored document (the pre-existing one on a source_job_id clash)
        """
        with self._get_connection(immediate=True) as conn:
            conn.execute("""
                INSERT INTO documents (
                    id, title, file_key, file_url, total_prints, mime_type,
                    document_type, created_by, source_job_id, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(source_job_id) DO NOTHING
            """, (
                document.id,
                document.title,
                document.file_key,
                document.file_url,
                document.total_prints,
                document.mime_type,
                document.document_type,
                document.created_by,
                document.source_job_id,
                serialize_datetime(document.created_at),
            ))
            if document.source_job_id:
                row = conn.execute(
                    "SELECT * FROM documents WHERE source_job_id = ?", (document.source_job_id,)
                ).fetchone()
            else:
                row = conn.execute("SELECT * FROM documents WHERE id = ?", (document.id,)).fetchone()
            return self._row_to_document(row)

    def get_document(self, document_id: str) -> Optional[DocumentRecord]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM documents WHERE id = ?", (document_id,)).fetchone()
            return self._row_to_document(row) if row else None

    def get_document_for_job(self, job_id: str) -> Optional[DocumentRecord]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM documents WHERE source_job_id = ?", (job_id,)).fetchone()
            return self._row_to_document(row) if row else None

    def upsert_access_grant(
        self,
        grant_id: str,
        user_id: str,
        document_id: str,
        assigned_quota: int,
        session_token: str,
    ) -> AccessGrant:
        """
        Create or overwrite the access grant for a (user, document) pair.

        Re-running for the same pair resets used prints, replaces the quota
        and the session token, and keeps the original grant id.
        """
        now = serialize_datetime(utcnow())
        with self._get_connection(immediate=True) as conn:
            conn.execute("""
                INSERT INTO document_access (
                    id, user_id, document_id, assigned_quota, used_prints,
                    session_token, created_at, updated_at
                ) VALUES (?, ?, ?, ?, 0, ?, ?, ?)
                ON CONFLICT(user_id, document_id) DO UPDATE SET
                    assigned_quota = excluded.assigned_quota,
                    used_prints = 0,
                    session_token = excluded.session_token,
                    updated_at = excluded.updated_at
            """, (grant_id, user_id, document_id, assigned_quota, session_token, now, now))
            row = conn.execute(
                "SELECT * FROM document_access WHERE user_id = ? AND document_id = ?",
                (user_id, document_id),
            ).fetchone()
            return self._row_to_grant(row)

    def get_access_grant(self, user_id: str, document_id: str) -> Optional[AccessGrant]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM document_access WHERE user_id = ? AND document_id = ?",
                (user_id, document_id),
            ).fetchone()
            return self._row_to_grant(row) if row else None

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    def _fetch_job(self, conn: sqlite3.Connection, job_id: str) -> Optional[JobRecord]:
        row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        if not row:
            return None
        return self._row_to_job(row, self._fetch_artifacts(conn, job_id))

    def _fetch_artifacts(self, conn: sqlite3.Connection, job_id: str) -> List[PageArtifact]:
        rows = conn.execute(
            "SELECT page_index, storage_key FROM page_artifacts WHERE job_id = ? ORDER BY rowid",
            (job_id,),
        ).fetchall()
        return [PageArtifact(page_index=r["page_index"], storage_key=r["storage_key"]) for r in rows]

    def _row_to_job(self, row: sqlite3.Row, artifacts: List[PageArtifact]) -> JobRecord:
        """Convert a database row to a job record."""
        return JobRecord(
            id=row["id"],
            user_id=row["user_id"],
            email=row["email"],
            created_by=row["created_by"],
            assigned_quota=json.loads(row["assigned_quota"]) if row["assigned_quota"] else None,
            total_pages=row["total_pages"],
            completed_pages=row["completed_pages"],
            page_artifacts=artifacts,
            layout_pages=json.loads(row["layout_pages"] or "[]"),
            stage=JobStage(row["stage"]),
            status=JobStatus(row["status"]),
            output_document_id=row["output_document_id"],
            error=row["error"],
            created_at=deserialize_datetime(row["created_at"]),
            updated_at=deserialize_datetime(row["updated_at"]),
        )

    def _row_to_document(self, row: sqlite3.Row) -> DocumentRecord:
        data: Dict[str, Any] = dict(row)
        data["created_at"] = deserialize_datetime(data["created_at"])
        return DocumentRecord(**data)

    def _row_to_grant(self, row: sqlite3.Row) -> AccessGrant:
        data: Dict[str, Any] = dict(row)
        data["created_at"] = deserialize_datetime(data["created_at"])
        data["updated_at"] = deserialize_datetime(data["updated_at"])
        return AccessGrant(**data)
