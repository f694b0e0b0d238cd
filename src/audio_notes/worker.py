from __future__ import annotations

import logging
from pathlib import Path
from threading import Event, Lock, Thread
from typing import Any

from audio_notes.cancellation import CancellationToken
from audio_notes.db.jobs import JobsRepository
from audio_notes.pipeline import PipelineOutcome, TranscriptionPipeline
from audio_notes.services.audio import AudioNormalizer
from audio_notes.types import AudioSource, PipelineState, TranscriptionJob

logger = logging.getLogger(__name__)


class BackgroundWorker:
    def __init__(
        self,
        *,
        jobs: JobsRepository,
        pipeline: TranscriptionPipeline,
        normalizer: AudioNormalizer,
        poll_interval_seconds: float,
        worker_count: int = 1,
    ) -> None:
        self.jobs = jobs
        self.pipeline = pipeline
        self.normalizer = normalizer
        self.poll_interval_seconds = poll_interval_seconds
        self._stop_event = Event()
        self._tokens_lock = Lock()
        self._tokens: dict[str, CancellationToken] = {}
        self._threads = [
            Thread(target=self._run_loop, name=f"audio-notes-worker-{index}", daemon=True)
            for index in range(max(1, worker_count))
        ]

    def start(self) -> None:
        for thread in self._threads:
            if not thread.is_alive():
                thread.start()

    def stop(self, timeout_seconds: float = 10.0) -> None:
        self._stop_event.set()
        with self._tokens_lock:
            tokens = list(self._tokens.values())
        for token in tokens:
            token.cancel()
        for thread in self._threads:
            if thread.is_alive():
                thread.join(timeout=timeout_seconds)

    @property
    def is_running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads) and not self._stop_event.is_set()

    def cancel(self, job_id: str) -> bool:
        """Signal a running job; returns False when this worker is not running it."""
        with self._tokens_lock:
            token = self._tokens.get(job_id)
        if token is None:
            return False
        logger.info("Cancelling job %s", job_id)
        token.cancel()
        return True

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            job = self._claim()
            if job is None:
                self._stop_event.wait(self.poll_interval_seconds)
                continue

            job_id = str(job["id"])
            try:
                logger.info("Processing job %s", job_id)
                self.process_job(job)
            except Exception as exc:  # pylint: disable=broad-except
                message = str(exc).strip() or "Unknown worker error"
                logger.exception("Job %s failed: %s", job_id, message)
                self.jobs.mark_failed(job_id, "fatal", message[:2000])

    def _claim(self) -> dict[str, Any] | None:
        # Claim and token registration share the lock that cancel() takes.
        with self._tokens_lock:
            job = self.jobs.claim_next()
            if job is not None:
                self._tokens[str(job["id"])] = CancellationToken()
        return job

    def process_job(self, job: dict[str, Any]) -> PipelineOutcome:
        job_id = str(job["id"])
        with self._tokens_lock:
            token = self._tokens.setdefault(job_id, CancellationToken())

        try:
            audio_path = Path(str(job["audio_path"]))
            duration = self.normalizer.probe_duration(audio_path) if audio_path.is_file() else None
            transcription_job = TranscriptionJob(
                id=job_id,
                audio=AudioSource.from_path(audio_path, duration=duration or None),
                mode=job["mode"],
                language=str(job["language"] or "auto"),
                instructions=str(job["instructions"] or ""),
                analyze=bool(job["analyze"]),
            )
            outcome = self.pipeline.run(
                transcription_job,
                cancel=token,
                on_state=lambda state: self._on_state(job_id, state),
                on_progress=lambda percent, message: self.jobs.set_progress(job_id, percent, message),
            )
        finally:
            with self._tokens_lock:
                self._tokens.pop(job_id, None)

        self._record_outcome(outcome)
        return outcome

    def _on_state(self, job_id: str, state: PipelineState) -> None:
        # Terminal states are written with their details by _record_outcome.
        if not state.is_terminal:
            self.jobs.set_status(job_id, state.value)

    def _record_outcome(self, outcome: PipelineOutcome) -> None:
        job_id = outcome.job_id
        if outcome.state is PipelineState.COMPLETE and outcome.document is not None:
            self.jobs.mark_completed(job_id, str(outcome.document.markdown_path), outcome.analysis_error)
            logger.info("Completed job %s -> %s", job_id, outcome.document.markdown_path)
        elif outcome.state is PipelineState.CANCELLED:
            self.jobs.mark_cancelled(job_id)
        else:
            kind = outcome.error_kind.value if outcome.error_kind is not None else "fatal"
            detail = outcome.error_detail or "Unknown pipeline error"
            if outcome.failed_state is not None:
                detail = f"{outcome.failed_state.value}: {detail}"
            self.jobs.mark_failed(job_id, kind, detail[:2000])
