from __future__ import annotations

import sqlite3
from pathlib import Path
from threading import Lock


class Database:
    def __init__(self, path: Path) -> None:
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()
        self._conn = sqlite3.connect(str(path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._initialize()

    @property
    def conn(self) -> sqlite3.Connection:
        return self._conn

    @property
    def lock(self) -> Lock:
        return self._lock

    def _initialize(self) -> None:
        with self._lock:
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")

            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS jobs (
                  id TEXT PRIMARY KEY,
                  audio_path TEXT NOT NULL,
                  mode TEXT NOT NULL,
                  language TEXT NOT NULL DEFAULT 'auto',
                  instructions TEXT NOT NULL DEFAULT '',
                  analyze INTEGER NOT NULL DEFAULT 1,
                  status TEXT NOT NULL DEFAULT 'queued',
                  progress INTEGER NOT NULL DEFAULT 0,
                  message TEXT,
                  created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%d %H:%M:%f', 'now')),
                  started_at TEXT,
                  completed_at TEXT,
                  error_kind TEXT,
                  error TEXT,
                  analysis_error TEXT,
                  document_path TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_jobs_status_created_at
                ON jobs(status, created_at);

                CREATE INDEX IF NOT EXISTS idx_jobs_audio_path_status
                ON jobs(audio_path, status);

                CREATE TABLE IF NOT EXISTS recent_transcriptions (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  job_id TEXT,
                  audio_file_name TEXT NOT NULL,
                  document_path TEXT NOT NULL,
                  transcribed_at TEXT NOT NULL DEFAULT (datetime('now')),
                  duration TEXT,
                  language TEXT
                );
                """
            )
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()
