from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, TypeVar

from audio_notes.cancellation import CancellationToken
from audio_notes.config import Settings
from audio_notes.db.recent import RecentTranscriptionsRepository
from audio_notes.errors import (
    AudioNotesError,
    ConfigurationError,
    CredentialMissing,
    EmptyTranscript,
    EngineMissing,
    ErrorKind,
    InvalidAudioSource,
    InvalidCredential,
    JobCancelled,
    ModelMissing,
    SaveFailed,
    classify,
    describe_os_error,
)
from audio_notes.services.analyzer import Analyzer, build_analyzer
from audio_notes.services.audio import AudioNormalizer, resolve_binary
from audio_notes.services.models import ModelManager
from audio_notes.services.storage import StorageService
from audio_notes.services.transcriber import Transcriber, build_transcriber
from audio_notes.types import (
    AnalysisResult,
    DocumentFields,
    PipelineState,
    ProgressCallback,
    SavedDocument,
    TranscriptionJob,
    TranscriptResult,
)
from audio_notes.utils.formatting import format_duration, is_audio_file

logger = logging.getLogger(__name__)

T = TypeVar("T")

LARGE_FILE_BYTES = 100 * 1024 * 1024
DOCUMENT_TAGS = ("meeting", "transcription")

ALLOWED_TRANSITIONS: dict[PipelineState, frozenset[PipelineState]] = {
    PipelineState.QUEUED: frozenset({PipelineState.VALIDATING, PipelineState.CANCELLED, PipelineState.FAILED}),
    PipelineState.VALIDATING: frozenset(
        {PipelineState.TRANSCRIBING, PipelineState.CANCELLED, PipelineState.FAILED}
    ),
    # Straight to saving when the job did not ask for analysis.
    PipelineState.TRANSCRIBING: frozenset(
        {PipelineState.ANALYZING, PipelineState.SAVING, PipelineState.CANCELLED, PipelineState.FAILED}
    ),
    PipelineState.ANALYZING: frozenset({PipelineState.SAVING, PipelineState.CANCELLED, PipelineState.FAILED}),
    PipelineState.SAVING: frozenset({PipelineState.COMPLETE, PipelineState.CANCELLED, PipelineState.FAILED}),
}

# Overall job progress bands per stage.
VALIDATING_PROGRESS = 5
CONVERSION_BAND = (10, 20)
TRANSCRIPTION_BAND = (20, 60)
ANALYSIS_BAND = (65, 85)
SAVING_PROGRESS = 90

StateCallback = Callable[[PipelineState], None]
TranscriberFactory = Callable[[str, Path], Transcriber]
AnalyzerFactory = Callable[[], Analyzer]


@dataclass(slots=True)
class PipelineOutcome:
    job_id: str
    state: PipelineState
    failed_state: PipelineState | None = None
    error: BaseException | None = None
    error_kind: ErrorKind | None = None
    transcript: TranscriptResult | None = None
    analysis: AnalysisResult | None = None
    analysis_error: str | None = None
    document: SavedDocument | None = None

    @property
    def error_detail(self) -> str | None:
        if self.error is None:
            return None
        if isinstance(self.error, AudioNotesError):
            return str(self.error)
        return str(self.error) or type(self.error).__name__


class _RunState:
    def __init__(self, job_id: str, on_state: StateCallback | None, on_progress: ProgressCallback | None) -> None:
        self.job_id = job_id
        self.state = PipelineState.QUEUED
        self.progress = 0
        self._on_state = on_state
        self._on_progress = on_progress

    def advance(self, target: PipelineState) -> None:
        if target not in ALLOWED_TRANSITIONS.get(self.state, frozenset()):
            raise RuntimeError(f"Illegal pipeline transition {self.state.value} -> {target.value}")
        logger.info("Job %s: %s -> %s", self.job_id, self.state.value, target.value)
        self.state = target
        if self._on_state is not None:
            self._on_state(target)

    def report(self, percent: int, message: str) -> None:
        # Estimates from different stages must never move the bar backwards.
        percent = max(self.progress, min(100, percent))
        self.progress = percent
        if self._on_progress is not None:
            self._on_progress(percent, message)

    def band(self, bounds: tuple[int, int]) -> ProgressCallback:
        low, high = bounds

        def scaled(percent: int, message: str) -> None:
            self.report(low + (high - low) * max(0, min(100, percent)) // 100, message)

        return scaled


class TranscriptionPipeline:
    """Runs one job through validate, transcribe, analyze and save.

    This is the only place retry and degrade decisions are made: components
    below raise typed failures and never retry on their own.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        normalizer: AudioNormalizer,
        models: ModelManager,
        storage: StorageService,
        recent: RecentTranscriptionsRepository | None = None,
        transcriber_factory: TranscriberFactory | None = None,
        analyzer_factory: AnalyzerFactory | None = None,
    ) -> None:
        self.settings = settings
        self.normalizer = normalizer
        self.models = models
        self.storage = storage
        self.recent = recent
        self.transcriber_factory = transcriber_factory or (
            lambda mode, model_path: build_transcriber(settings, mode, model_path)
        )
        self.analyzer_factory = analyzer_factory or (lambda: build_analyzer(settings))

    def run(
        self,
        job: TranscriptionJob,
        *,
        cancel: CancellationToken | None = None,
        on_state: StateCallback | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> PipelineOutcome:
        cancel = cancel or CancellationToken()
        run = _RunState(job.id, on_state, on_progress)
        outcome = PipelineOutcome(job_id=job.id, state=PipelineState.QUEUED)

        try:
            cancel.raise_if_cancelled()
            run.advance(PipelineState.VALIDATING)
            run.report(VALIDATING_PROGRESS, "Validating settings...")
            model_path = self._validate(job)

            cancel.raise_if_cancelled()
            run.advance(PipelineState.TRANSCRIBING)
            outcome.transcript = self._transcribe(job, model_path, cancel, run)

            if job.analyze:
                cancel.raise_if_cancelled()
                run.advance(PipelineState.ANALYZING)
                outcome.analysis, outcome.analysis_error = self._analyze(job, outcome.transcript, cancel, run)

            cancel.raise_if_cancelled()
            run.advance(PipelineState.SAVING)
            run.report(SAVING_PROGRESS, "Saving document...")
            outcome.document = self._save(job, outcome.transcript, outcome.analysis, outcome.analysis_error)

            run.advance(PipelineState.COMPLETE)
            run.report(100, "Complete!")
        except Exception as exc:  # pylint: disable=broad-except
            kind = classify(exc)
            if kind is ErrorKind.CANCELLED or cancel.cancelled:
                logger.info("Job %s cancelled during %s", job.id, run.state.value)
                outcome.failed_state = run.state
                outcome.error = exc if isinstance(exc, JobCancelled) else JobCancelled()
                outcome.error_kind = ErrorKind.CANCELLED
                outcome.document = None
                run.advance(PipelineState.CANCELLED)
            else:
                logger.error("Job %s failed during %s (%s): %s", job.id, run.state.value, kind.value, exc)
                outcome.failed_state = run.state
                outcome.error = exc
                outcome.error_kind = kind
                run.advance(PipelineState.FAILED)

        outcome.state = run.state
        return outcome

    def _validate(self, job: TranscriptionJob) -> Path | None:
        audio = job.audio
        if not audio.path.is_file():
            raise InvalidAudioSource(
                f"Audio file not found: {audio.path}",
                hint="Check the path; it must be readable by the server process.",
            )
        if not is_audio_file(audio.name):
            raise InvalidAudioSource(
                f"Unsupported audio format: {audio.path.suffix or '(none)'}",
                hint="Supported formats: m4a, mp3, wav, ogg, flac, webm, mp4.",
            )
        if audio.size_bytes > LARGE_FILE_BYTES:
            logger.warning(
                "Large file detected (%.1f MB); transcription may take a while",
                audio.size_bytes / (1024 * 1024),
            )

        model_path: Path | None = None
        if job.mode == "local":
            if resolve_binary(self.settings.whisper_binary) is None:
                raise EngineMissing(
                    f"Whisper engine not found (configured command: '{self.settings.whisper_binary}').",
                    hint="Build whisper.cpp and set WHISPER_BINARY to the whisper-cli path, "
                    "or switch PROCESSING_MODE to cloud-whisper.",
                )
            size = self.settings.model_size
            if not self.models.check_model_exists(size):
                raise ModelMissing(
                    f"Whisper model '{size}' is not downloaded.",
                    hint=f"Run the download_model tool for '{size}', or place "
                    f"{self.models.model_path(size).name} in {self.models.models_dir}.",
                )
            model_path = self.models.model_path(size)
        elif job.mode == "cloud-whisper":
            _check_key(
                self.settings.openai_api_key,
                prefix="sk-",
                service="OpenAI",
                env_name="OPENAI_API_KEY",
            )
        else:
            raise ConfigurationError(
                f"Unsupported processing mode '{job.mode}'",
                hint="Use 'local' or 'cloud-whisper'.",
            )

        if job.analyze:
            _check_key(
                self.settings.openrouter_api_key,
                prefix="sk-or-",
                service="OpenRouter",
                env_name="OPENROUTER_API_KEY",
            )
            if not self.settings.openrouter_model:
                raise ConfigurationError(
                    "OpenRouter model name is not configured.",
                    hint="Set OPENROUTER_MODEL, e.g. meta-llama/llama-3.2-3b-instruct.",
                )
        return model_path

    def _transcribe(
        self,
        job: TranscriptionJob,
        model_path: Path | None,
        cancel: CancellationToken,
        run: _RunState,
    ) -> TranscriptResult:
        transcriber = self.transcriber_factory(job.mode, model_path or Path())
        conversion = run.band(CONVERSION_BAND)
        conversion(0, "Preparing audio...")

        with self.normalizer.normalize(
            job.audio,
            cancel=cancel,
            on_progress=lambda percent: conversion(percent, "Converting audio..."),
        ) as audio:
            transcript = _with_one_retry(
                "transcription",
                lambda: transcriber.transcribe(
                    audio.path,
                    job.language_hint,
                    cancel=cancel,
                    on_progress=run.band(TRANSCRIPTION_BAND),
                ),
                cancel,
                retry_if=lambda exc: classify(exc) is ErrorKind.TRANSIENT,
            )
            if transcript.duration <= 0:
                transcript.duration = (
                    job.audio.duration or _last_segment_end(transcript) or self.normalizer.probe_duration(audio.path)
                )

        if transcript.is_empty:
            raise EmptyTranscript("Transcription produced no text")
        # Unsegmented engine output is one segment spanning the whole recording.
        if len(transcript.segments) == 1 and transcript.segments[0].end <= transcript.segments[0].start:
            transcript.segments[0].end = transcript.duration
        return transcript

    def _analyze(
        self,
        job: TranscriptionJob,
        transcript: TranscriptResult,
        cancel: CancellationToken,
        run: _RunState,
    ) -> tuple[AnalysisResult | None, str | None]:
        low, _ = ANALYSIS_BAND
        run.report(low, "Analyzing transcription...")
        instructions = job.instructions or self.settings.custom_instructions
        try:
            analyzer = self.analyzer_factory()
            analysis = _with_one_retry(
                "analysis",
                lambda: analyzer.analyze(transcript.text, instructions, cancel=cancel),
                cancel,
                retry_if=lambda exc: classify(exc) not in (ErrorKind.CONFIGURATION, ErrorKind.CANCELLED),
            )
        except Exception as exc:  # pylint: disable=broad-except
            if classify(exc) is ErrorKind.CANCELLED or cancel.cancelled:
                raise
            # Keep the finished transcript; the document records why analysis is missing.
            logger.warning("Analysis failed for job %s, saving transcript only: %s", job.id, exc)
            return None, str(exc).strip() or type(exc).__name__
        run.report(ANALYSIS_BAND[1], "Analysis complete")
        return analysis, None

    def _save(
        self,
        job: TranscriptionJob,
        transcript: TranscriptResult,
        analysis: AnalysisResult | None,
        analysis_error: str | None,
    ) -> SavedDocument:
        fields = DocumentFields(
            source_filename=job.audio.name,
            title=job.audio.path.stem,
            duration=transcript.duration,
            language=transcript.language,
            speaker_count=transcript.speaker_count,
            tags=list(DOCUMENT_TAGS),
            transcript=transcript,
            analysis=analysis,
            analysis_error=analysis_error,
            transcribed_at=datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
            diarization_requested=transcript.speakers is not None,
            include_timestamps=self.settings.include_timestamps,
        )
        try:
            document = self.storage.persist(fields)
        except OSError as exc:
            raise SaveFailed(f"Could not save document: {describe_os_error(exc)}") from exc

        if self.recent is not None:
            try:
                self.recent.record(
                    job_id=job.id,
                    audio_file_name=job.audio.name,
                    document_path=str(document.markdown_path),
                    duration=format_duration(transcript.duration),
                    language=transcript.language,
                )
            except sqlite3.Error as exc:
                raise SaveFailed(f"Document saved but the recent list could not be updated: {exc}") from exc
        return document


def _check_key(key: str, *, prefix: str, service: str, env_name: str) -> None:
    if not key:
        raise CredentialMissing(
            f"{service} API key is not configured.",
            hint=f"Set {env_name} in the environment or .env file.",
        )
    if not key.startswith(prefix):
        raise InvalidCredential(
            f"{service} API key has an unexpected format (should start with '{prefix}').",
            hint=f"Check {env_name}.",
        )


def _with_one_retry(
    step: str,
    action: Callable[[], T],
    cancel: CancellationToken,
    *,
    retry_if: Callable[[BaseException], bool],
) -> T:
    try:
        return action()
    except Exception as exc:  # pylint: disable=broad-except
        if cancel.cancelled or not retry_if(exc):
            raise
        logger.warning("%s failed (%s), retrying once: %s", step.capitalize(), classify(exc).value, exc)
    cancel.raise_if_cancelled()
    return action()


def _last_segment_end(transcript: TranscriptResult) -> float:
    return max((segment.end for segment in transcript.segments), default=0.0)


