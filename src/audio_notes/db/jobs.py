from __future__ import annotations

import uuid
from typing import Any

from audio_notes.db.database import Database
from audio_notes.types import PipelineState

ACTIVE_STATUSES = tuple(state.value for state in PipelineState if not state.is_terminal)
RUNNING_STATUSES = tuple(status for status in ACTIVE_STATUSES if status != PipelineState.QUEUED.value)


class JobsRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    def enqueue(
        self,
        *,
        audio_path: str,
        mode: str,
        language: str = "auto",
        instructions: str = "",
        analyze: bool = True,
    ) -> dict[str, Any]:
        job_id = str(uuid.uuid4())
        with self.db.lock:
            self.db.conn.execute(
                """
                INSERT INTO jobs(id, audio_path, mode, language, instructions, analyze, status)
                VALUES (?, ?, ?, ?, ?, ?, 'queued')
                """,
                (job_id, audio_path, mode, language, instructions, int(analyze)),
            )
            self.db.conn.commit()

        job = self.get(job_id)
        if job is None:
            raise RuntimeError("Failed to create job")
        return job

    def get(self, job_id: str) -> dict[str, Any] | None:
        row = self.db.conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return dict(row) if row is not None else None

    def find_active_by_audio_path(self, audio_path: str) -> dict[str, Any] | None:
        placeholders = ",".join("?" for _ in ACTIVE_STATUSES)
        row = self.db.conn.execute(
            f"""
            SELECT * FROM jobs
            WHERE audio_path = ? AND status IN ({placeholders})
            ORDER BY created_at ASC, rowid ASC
            LIMIT 1
            """,
            (audio_path, *ACTIVE_STATUSES),
        ).fetchone()
        return dict(row) if row is not None else None

    def claim_next(self) -> dict[str, Any] | None:
        with self.db.lock:
            self.db.conn.execute("BEGIN IMMEDIATE")
            row = self.db.conn.execute(
                """
                SELECT * FROM jobs
                WHERE status = 'queued'
                ORDER BY created_at ASC, rowid ASC
                LIMIT 1
                """
            ).fetchone()
            if row is None:
                self.db.conn.commit()
                return None

            job_id = row["id"]
            self.db.conn.execute(
                """
                UPDATE jobs
                SET status = 'validating', started_at = datetime('now')
                WHERE id = ?
                """,
                (job_id,),
            )
            self.db.conn.commit()

        return self.get(str(job_id))

    def set_status(self, job_id: str, status: str) -> None:
        with self.db.lock:
            self.db.conn.execute("UPDATE jobs SET status = ? WHERE id = ?", (status, job_id))
            self.db.conn.commit()

    def set_progress(self, job_id: str, progress: int, message: str) -> None:
        with self.db.lock:
            self.db.conn.execute(
                "UPDATE jobs SET progress = MAX(progress, ?), message = ? WHERE id = ?",
                (progress, message, job_id),
            )
            self.db.conn.commit()

    def mark_completed(self, job_id: str, document_path: str, analysis_error: str | None) -> None:
        with self.db.lock:
            self.db.conn.execute(
                """
                UPDATE jobs
                SET status = 'complete', completed_at = datetime('now'), progress = 100,
                    document_path = ?, analysis_error = ?, error = NULL, error_kind = NULL
                WHERE id = ?
                """,
                (document_path, analysis_error, job_id),
            )
            self.db.conn.commit()

    def mark_failed(self, job_id: str, error_kind: str, error: str) -> None:
        with self.db.lock:
            self.db.conn.execute(
                """
                UPDATE jobs
                SET status = 'failed', completed_at = datetime('now'), error_kind = ?, error = ?
                WHERE id = ?
                """,
                (error_kind, error, job_id),
            )
            self.db.conn.commit()

    def mark_cancelled(self, job_id: str) -> None:
        with self.db.lock:
            self.db.conn.execute(
                """
                UPDATE jobs
                SET status = 'cancelled', completed_at = datetime('now'), error_kind = 'cancelled'
                WHERE id = ?
                """,
                (job_id,),
            )
            self.db.conn.commit()

    def cancel_if_queued(self, job_id: str) -> bool:
        with self.db.lock:
            cursor = self.db.conn.execute(
                """
                UPDATE jobs
                SET status = 'cancelled', completed_at = datetime('now'), error_kind = 'cancelled'
                WHERE id = ? AND status = 'queued'
                """,
                (job_id,),
            )
            self.db.conn.commit()
        return cursor.rowcount > 0

    def fail_interrupted(self) -> int:
        """Jobs left running by a previous process can never finish; fail them."""
        placeholders = ",".join("?" for _ in RUNNING_STATUSES)
        with self.db.lock:
            cursor = self.db.conn.execute(
                f"""
                UPDATE jobs
                SET status = 'failed', completed_at = datetime('now'), error_kind = 'fatal',
                    error = 'Interrupted by server restart'
                WHERE status IN ({placeholders})
                """,
                RUNNING_STATUSES,
            )
            self.db.conn.commit()
        return cursor.rowcount
