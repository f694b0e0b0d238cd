from __future__ import annotations

import json
import logging
from pathlib import Path
from threading import Lock, Thread
from typing import Any

from fastmcp import FastMCP
from mcp.types import ToolAnnotations

from audio_notes.cancellation import CancellationToken
from audio_notes.config import Settings
from audio_notes.db.jobs import JobsRepository
from audio_notes.db.recent import RecentTranscriptionsRepository
from audio_notes.errors import AlreadyInProgress, AudioNotesError, JobCancelled, error_payload
from audio_notes.preflight import run_doctor
from audio_notes.services.audio import AudioNormalizer
from audio_notes.services.models import ModelManager
from audio_notes.types import MODEL_SIZES, PROCESSING_MODES
from audio_notes.utils.formatting import (
    estimate_transcription_time,
    format_estimated_time,
    is_audio_file,
)
from audio_notes.worker import BackgroundWorker

logger = logging.getLogger(__name__)


class ToolRegistry:
    def __init__(
        self,
        *,
        settings: Settings,
        jobs: JobsRepository,
        recent: RecentTranscriptionsRepository,
        models: ModelManager,
        normalizer: AudioNormalizer,
        worker: BackgroundWorker | None = None,
    ) -> None:
        self.settings = settings
        self.jobs = jobs
        self.recent = recent
        self.models = models
        self.normalizer = normalizer
        self.worker = worker
        self._downloads_lock = Lock()
        self._downloads: dict[str, dict[str, Any]] = {}
        self._download_tokens: dict[str, CancellationToken] = {}

    def register(self, mcp: FastMCP) -> None:
        _ro = ToolAnnotations(readOnlyHint=True)

        @mcp.tool(annotations=ToolAnnotations(readOnlyHint=False, idempotentHint=True))
        def transcribe(
            audio_path: str,
            mode: str | None = None,
            language: str | None = None,
            instructions: str = "",
            analyze: bool = True,
        ) -> dict[str, Any]:
            """Queue an audio file for transcription and analysis.

            Args:
                audio_path: Path to the audio file on the server
                mode: "local" (whisper.cpp) or "cloud-whisper" (OpenAI). Defaults to PROCESSING_MODE.
                language: Language code, or "auto" to detect. Defaults to LANGUAGE.
                instructions: Extra instructions appended to the analysis prompt
                analyze: Produce summary, key points, action items and follow-ups

            Returns:
                The job id and status. A file with an active job returns that job.
            """
            return self.transcribe(
                audio_path=audio_path,
                mode=mode,
                language=language,
                instructions=instructions,
                analyze=analyze,
            )

        @mcp.tool(annotations=_ro)
        def job_status(job_id: str) -> dict[str, Any]:
            job = self.jobs.get(job_id)
            if job is None:
                return {"error": "job_not_found", "job_id": job_id}
            return job

        @mcp.tool(annotations=ToolAnnotations(readOnlyHint=False, idempotentHint=True))
        def cancel_job(job_id: str) -> dict[str, Any]:
            return self.cancel_job(job_id)

        @mcp.tool(annotations=_ro)
        def list_recent(limit: int = 10) -> dict[str, Any]:
            items = self.recent.list_recent(limit)
            return {"count": len(items), "items": items}

        @mcp.tool(annotations=_ro)
        def read_document(
            job_id: str,
            format: str = "markdown",
            offset: int = 0,
            limit: int | None = None,
        ) -> dict[str, Any]:
            """Read the document produced by a completed job.

            Args:
                job_id: The job that produced the document
                format: "markdown" for the note, "json" for the raw transcript segments
                offset: Number of lines (markdown) or segments (json) to skip (default: 0)
                limit: Max lines/segments to return. None returns all remaining.

            Returns:
                Document content with pagination info (total, offset, count).
            """
            return self.read_document(job_id, format=format, offset=offset, limit=limit)

        @mcp.tool(annotations=_ro)
        def list_models() -> dict[str, Any]:
            return {"models": self.list_models(), "selected": self.settings.model_size}

        @mcp.tool(annotations=ToolAnnotations(readOnlyHint=False, idempotentHint=True))
        def download_model(size: str) -> dict[str, Any]:
            """Start downloading a whisper.cpp model in the background.

            Args:
                size: One of tiny, base, small, medium, large

            Returns:
                "installed" when already present, otherwise "downloading". Poll list_models for progress.
            """
            return self.download_model(size)

        @mcp.tool(annotations=ToolAnnotations(readOnlyHint=False, idempotentHint=True))
        def cancel_download(size: str) -> dict[str, Any]:
            """Cancel a model download started by download_model. The partial file is removed."""
            return self.cancel_download(size)

        @mcp.tool(annotations=_ro)
        def doctor() -> dict[str, Any]:
            return run_doctor(self.settings, self.models)

    def transcribe(
        self,
        *,
        audio_path: str,
        mode: str | None = None,
        language: str | None = None,
        instructions: str = "",
        analyze: bool = True,
    ) -> dict[str, Any]:
        resolved_mode = (mode or self.settings.processing_mode).strip().lower()
        if resolved_mode not in PROCESSING_MODES:
            return {
                "error": "unsupported_mode",
                "mode": resolved_mode,
                "supported_modes": list(PROCESSING_MODES),
            }

        path = Path(audio_path).expanduser().resolve()
        if not path.is_file():
            return {"error": "audio_not_found", "audio_path": str(path)}
        if not is_audio_file(path.name):
            return {"error": "unsupported_audio_format", "audio_path": str(path)}

        active = self.jobs.find_active_by_audio_path(str(path))
        if active is not None:
            return {
                "job_id": active["id"],
                "status": active["status"],
                "deduplicated": True,
            }

        job = self.jobs.enqueue(
            audio_path=str(path),
            mode=resolved_mode,
            language=(language or self.settings.language).strip() or "auto",
            instructions=instructions,
            analyze=analyze,
        )
        duration = self.normalizer.probe_duration(path)
        response: dict[str, Any] = {
            "job_id": job["id"],
            "status": job["status"],
            "deduplicated": False,
        }
        if duration > 0:
            estimate = estimate_transcription_time(
                duration, self.settings.model_size, is_local=resolved_mode == "local"
            )
            response["estimated_time"] = format_estimated_time(estimate)
        return response

    def cancel_job(self, job_id: str) -> dict[str, Any]:
        job = self.jobs.get(job_id)
        if job is None:
            return {"error": "job_not_found", "job_id": job_id}
        if self.jobs.cancel_if_queued(job_id):
            return {"job_id": job_id, "status": "cancelled"}
        if self.worker is not None and self.worker.cancel(job_id):
            return {"job_id": job_id, "status": "cancelling"}
        return {"error": "job_not_cancellable", "job_id": job_id, "status": job["status"]}

    def read_document(
        self,
        job_id: str,
        *,
        format: str = "markdown",
        offset: int = 0,
        limit: int | None = None,
    ) -> dict[str, Any]:
        job = self.jobs.get(job_id)
        if job is None:
            return {"error": "job_not_found", "job_id": job_id}
        if not job.get("document_path"):
            return {"error": "document_not_ready", "job_id": job_id, "status": job["status"]}

        markdown_path = Path(str(job["document_path"]))
        offset = max(0, offset)

        if format == "markdown":
            full = markdown_path.read_text(encoding="utf-8") if markdown_path.exists() else ""
            lines = full.splitlines(keepends=True)
            page = lines[offset:] if limit is None else lines[offset:offset + limit]
            return {
                "job_id": job_id,
                "format": format,
                "path": str(markdown_path),
                "content": "".join(page),
                "total_lines": len(lines),
                "offset": offset,
                "lines_returned": len(page),
            }

        if format == "json":
            json_path = markdown_path.with_name(f"{markdown_path.stem}.transcript.json")
            payload = json.loads(json_path.read_text(encoding="utf-8")) if json_path.exists() else {}
            segments = payload.get("segments", [])
            page = segments[offset:] if limit is None else segments[offset:offset + limit]
            return {
                "job_id": job_id,
                "format": "json",
                "path": str(json_path),
                "language": payload.get("language"),
                "content": page,
                "total_segments": len(segments),
                "offset": offset,
                "segments_returned": len(page),
            }

        return {
            "error": "unsupported_format",
            "supported_formats": ["markdown", "json"],
        }

    def list_models(self) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        with self._downloads_lock:
            downloads = {size: dict(state) for size, state in self._downloads.items()}
        for info in self.models.list_models():
            item = {
                "size": info.size,
                "installed": info.installed,
                "downloading": info.downloading,
                "expected_bytes": info.expected_bytes,
                "path": str(info.path),
                "url": info.url,
            }
            if info.size in downloads:
                item["download"] = downloads[info.size]
            items.append(item)
        return items

    def download_model(self, size: str) -> dict[str, Any]:
        if size not in MODEL_SIZES:
            return {"error": "unknown_model_size", "size": size, "supported_sizes": list(MODEL_SIZES)}
        if self.models.check_model_exists(size):
            return {"size": size, "status": "installed", "path": str(self.models.model_path(size))}
        if self.models.is_downloading(size):
            return {"error": "already_in_progress", "size": size}

        token = CancellationToken()
        with self._downloads_lock:
            self._downloads[size] = {"status": "downloading", "downloaded": 0, "total": 0, "error": None}
            self._download_tokens[size] = token
        thread = Thread(target=self._download, args=(size, token), name=f"model-download-{size}", daemon=True)
        thread.start()
        return {"size": size, "status": "downloading", "url": self.models.model_url(size)}

    def cancel_download(self, size: str) -> dict[str, Any]:
        with self._downloads_lock:
            token = self._download_tokens.get(size)
        if token is None:
            return {"error": "download_not_running", "size": size}
        logger.info("Cancelling %s model download", size)
        token.cancel()
        return {"size": size, "status": "cancelling"}

    def _download(self, size: str, token: CancellationToken) -> None:
        def on_progress(downloaded: int, total: int) -> None:
            with self._downloads_lock:
                self._downloads[size].update(downloaded=downloaded, total=total)

        try:
            self.models.acquire(size, on_progress, cancel=token)
        except AlreadyInProgress:
            # The other request owns the progress entry.
            self._finish_download(size, token)
            return
        except JobCancelled:
            self._finish_download(size, token, status="cancelled")
            return
        except AudioNotesError as exc:
            logger.warning("Model download %s failed: %s", size, exc.detail)
            self._finish_download(size, token, status="failed", error=error_payload(exc))
            return
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception("Model download %s failed", size)
            self._finish_download(size, token, status="failed", error=error_payload(exc))
            return
        self._finish_download(size, token, status="installed")

    def _finish_download(self, size: str, token: CancellationToken, **state: Any) -> None:
        with self._downloads_lock:
            self._downloads[size].update(state)
            if self._download_tokens.get(size) is token:
                del self._download_tokens[size]
