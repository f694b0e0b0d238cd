from __future__ import annotations

from typing import Any

from audio_notes.db.database import Database


class RecentTranscriptionsRepository:
    """Most-recent-first list of finished documents, capped at ``max_entries``."""

    def __init__(self, db: Database, max_entries: int = 10) -> None:
        self.db = db
        self.max_entries = max(1, max_entries)

    def record(
        self,
        *,
        job_id: str | None,
        audio_file_name: str,
        document_path: str,
        duration: str,
        language: str,
    ) -> None:
        with self.db.lock:
            self.db.conn.execute(
                """
                INSERT INTO recent_transcriptions(job_id, audio_file_name, document_path, duration, language)
                VALUES (?, ?, ?, ?, ?)
                """,
                (job_id, audio_file_name, document_path, duration, language),
            )
            self.db.conn.execute(
                """
                DELETE FROM recent_transcriptions
                WHERE id NOT IN (
                    SELECT id FROM recent_transcriptions ORDER BY id DESC LIMIT ?
                )
                """,
                (self.max_entries,),
            )
            self.db.conn.commit()

    def list_recent(self, limit: int | None = None) -> list[dict[str, Any]]:
        effective = self.max_entries if limit is None else max(1, min(limit, self.max_entries))
        rows = self.db.conn.execute(
            "SELECT * FROM recent_transcriptions ORDER BY id DESC LIMIT ?",
            (effective,),
        ).fetchall()
        return [dict(row) for row in rows]
