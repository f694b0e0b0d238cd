import dataclasses
import json
import threading
from pathlib import Path
from typing import Any

import pytest

from audio_notes.cancellation import CancellationToken
from audio_notes.db.database import Database
from audio_notes.db.recent import RecentTranscriptionsRepository
from audio_notes.errors import (
    CredentialMissing,
    EngineMissing,
    ErrorKind,
    InvalidCredential,
    JobCancelled,
    MalformedResponse,
    NetworkError,
    SaveFailed,
    Unauthorized,
)
from audio_notes.pipeline import TranscriptionPipeline
from audio_notes.services.audio import AudioNormalizer, NormalizedAudio
from audio_notes.services.models import ModelManager
from audio_notes.services.storage import StorageService
from audio_notes.types import (
    AnalysisResult,
    AudioSource,
    PipelineState,
    TranscriptionJob,
    TranscriptResult,
    TranscriptSegment,
)

ENGINE_SCRIPT = """
import json

print("whisper_init_from_file: loading model")
print(json.dumps({
    "result": {"language": "en"},
    "transcription": [
        {"offsets": {"from": 0, "to": 45000}, "text": " First half of the call."},
        {"offsets": {"from": 45000, "to": 90000}, "text": " Second half of the call."},
    ],
}))
"""


def _transcript() -> TranscriptResult:
    return TranscriptResult(
        text="We agreed to ship on Friday.",
        segments=[TranscriptSegment(start=0.0, end=3.0, text="We agreed to ship on Friday.")],
        language="en",
        duration=3.0,
    )


class FakeTranscriber:
    name = "fake"

    def __init__(self, *outcomes: Any) -> None:
        self.outcomes = list(outcomes)
        self.calls = 0

    def transcribe(self, audio_path: Path, language: str | None, *, cancel=None, on_progress=None) -> TranscriptResult:
        self.calls += 1
        outcome = self.outcomes[min(self.calls, len(self.outcomes)) - 1]
        if isinstance(outcome, BaseException):
            raise outcome
        if on_progress is not None:
            on_progress(50, "Transcribing audio...")
        return outcome


class FakeAnalyzer:
    def __init__(self, *outcomes: Any) -> None:
        self.outcomes = list(outcomes)
        self.calls = 0
        self.instructions: list[str] = []

    def analyze(self, transcript_text: str, custom_instructions: str = "", *, cancel=None) -> AnalysisResult:
        self.calls += 1
        self.instructions.append(custom_instructions)
        outcome = self.outcomes[min(self.calls, len(self.outcomes)) - 1]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class BlockingTranscriber:
    name = "blocking"

    def transcribe(self, audio_path: Path, language: str | None, *, cancel=None, on_progress=None) -> TranscriptResult:
        assert cancel is not None
        cancel.wait(5)
        raise JobCancelled("Transcription cancelled")


class TempNormalizer:
    """Always produces a temporary artifact so cleanup can be observed."""

    def __init__(self, work_dir: Path) -> None:
        self.work_dir = work_dir
        self.created: list[Path] = []

    def normalize(self, source: AudioSource, *, cancel=None, on_progress=None) -> NormalizedAudio:
        self.work_dir.mkdir(parents=True, exist_ok=True)
        path = self.work_dir / f"{source.path.stem}-normalized.wav"
        path.write_bytes(b"RIFF")
        self.created.append(path)
        return NormalizedAudio(path, is_temporary=True)


class FailingStorage:
    output_dir = Path("/nonexistent")

    def persist(self, fields):
        raise SaveFailed("Could not save document: Not enough disk space")


@pytest.fixture
def env(tmp_path: Path, make_settings, make_executable, write_wav) -> dict[str, Any]:
    engine = make_executable("whisper-cli", ENGINE_SCRIPT)
    ffmpeg_marker = tmp_path / "ffmpeg-was-called"
    ffmpeg = make_executable("ffmpeg", f"open({str(ffmpeg_marker)!r}, 'w').close()\n")
    settings = make_settings(whisper_binary=str(engine), ffmpeg_binary=str(ffmpeg))
    models = ModelManager(settings.models_dir, min_valid_bytes=1000)
    models.model_path("tiny").write_bytes(b"m" * 2000)
    db = Database(settings.database_path)
    return {
        "settings": settings,
        "models": models,
        "recent": RecentTranscriptionsRepository(db, 10),
        "storage": StorageService(settings.output_dir),
        "normalizer": AudioNormalizer(
            ffmpeg_binary=settings.ffmpeg_binary,
            ffprobe_binary=settings.ffprobe_binary,
            work_dir=settings.work_dir,
        ),
        "audio": write_wav(tmp_path / "audio" / "weekly sync.wav", seconds=1.0),
        "ffmpeg_marker": ffmpeg_marker,
    }


def _pipeline(env: dict[str, Any], *, transcriber=None, analyzer=None, **overrides: Any) -> TranscriptionPipeline:
    options = {
        "settings": env["settings"],
        "normalizer": env["normalizer"],
        "models": env["models"],
        "storage": env["storage"],
        "recent": env["recent"],
    }
    if transcriber is not None:
        options["transcriber_factory"] = lambda mode, model_path: transcriber
    if analyzer is not None:
        options["analyzer_factory"] = lambda: analyzer
    options.update(overrides)
    return TranscriptionPipeline(**options)


def _job(env: dict[str, Any], **overrides: Any) -> TranscriptionJob:
    values = {"id": "job-1", "audio": AudioSource.from_path(env["audio"]), "mode": "local"}
    values.update(overrides)
    return TranscriptionJob(**values)


def test_successful_run_visits_every_state(env: dict[str, Any]) -> None:
    analysis = AnalysisResult(summary="Shipping Friday.", key_points=["Ship Friday"])
    analyzer = FakeAnalyzer(analysis)
    states: list[PipelineState] = []
    progress: list[int] = []

    outcome = _pipeline(env, transcriber=FakeTranscriber(_transcript()), analyzer=analyzer).run(
        _job(env, instructions="Focus on dates"),
        on_state=states.append,
        on_progress=lambda percent, _: progress.append(percent),
    )

    assert outcome.state is PipelineState.COMPLETE
    assert states == [
        PipelineState.VALIDATING,
        PipelineState.TRANSCRIBING,
        PipelineState.ANALYZING,
        PipelineState.SAVING,
        PipelineState.COMPLETE,
    ]
    assert progress == sorted(progress)
    assert progress[-1] == 100
    assert analyzer.instructions == ["Focus on dates"]
    assert outcome.document is not None
    assert "## Summary" in outcome.document.markdown_path.read_text(encoding="utf-8")
    assert env["recent"].list_recent()[0]["audio_file_name"] == "weekly sync.wav"


def test_analysis_failing_twice_still_completes_with_transcript(env: dict[str, Any]) -> None:
    analyzer = FakeAnalyzer(MalformedResponse("no content"), MalformedResponse("no content"))

    outcome = _pipeline(env, transcriber=FakeTranscriber(_transcript()), analyzer=analyzer).run(_job(env))

    assert outcome.state is PipelineState.COMPLETE
    assert analyzer.calls == 2
    assert outcome.analysis is None
    assert outcome.analysis_error is not None
    assert outcome.document is not None
    markdown = outcome.document.markdown_path.read_text(encoding="utf-8")
    assert "We agreed to ship on Friday." in markdown
    assert "Analysis unavailable" in markdown


def test_analysis_recovers_on_retry(env: dict[str, Any]) -> None:
    analyzer = FakeAnalyzer(NetworkError("reset"), AnalysisResult(summary="ok"))

    outcome = _pipeline(env, transcriber=FakeTranscriber(_transcript()), analyzer=analyzer).run(_job(env))

    assert outcome.state is PipelineState.COMPLETE
    assert outcome.analysis is not None
    assert outcome.analysis_error is None


def test_analysis_configuration_error_is_not_retried(env: dict[str, Any]) -> None:
    analyzer = FakeAnalyzer(Unauthorized("bad key"))

    outcome = _pipeline(env, transcriber=FakeTranscriber(_transcript()), analyzer=analyzer).run(_job(env))

    assert outcome.state is PipelineState.COMPLETE
    assert analyzer.calls == 1
    assert outcome.analysis is None


def test_transcription_failing_twice_fails_without_document(env: dict[str, Any]) -> None:
    transcriber = FakeTranscriber(NetworkError("timed out"), NetworkError("timed out"))

    outcome = _pipeline(env, transcriber=transcriber, analyzer=FakeAnalyzer(AnalysisResult())).run(_job(env))

    assert outcome.state is PipelineState.FAILED
    assert outcome.failed_state is PipelineState.TRANSCRIBING
    assert outcome.error_kind is ErrorKind.TRANSIENT
    assert transcriber.calls == 2
    assert outcome.document is None
    assert not env["settings"].output_dir.exists() or list(env["settings"].output_dir.glob("*.md")) == []
    assert env["recent"].list_recent() == []


def test_transient_transcription_failure_retries_once(env: dict[str, Any]) -> None:
    transcriber = FakeTranscriber(NetworkError("reset"), _transcript())

    outcome = _pipeline(env, transcriber=transcriber, analyzer=FakeAnalyzer(AnalysisResult())).run(_job(env))

    assert outcome.state is PipelineState.COMPLETE
    assert transcriber.calls == 2


def test_configuration_transcription_failure_is_not_retried(env: dict[str, Any]) -> None:
    transcriber = FakeTranscriber(Unauthorized("bad key"))

    outcome = _pipeline(env, transcriber=transcriber).run(_job(env, analyze=False))

    assert outcome.state is PipelineState.FAILED
    assert outcome.error_kind is ErrorKind.CONFIGURATION
    assert transcriber.calls == 1


def test_empty_transcript_fails(env: dict[str, Any]) -> None:
    empty = TranscriptResult(text="  ", segments=[], language="en")

    outcome = _pipeline(env, transcriber=FakeTranscriber(empty)).run(_job(env, analyze=False))

    assert outcome.state is PipelineState.FAILED
    assert outcome.failed_state is PipelineState.TRANSCRIBING


def test_cancel_during_transcription_cleans_up(env: dict[str, Any], tmp_path: Path) -> None:
    normalizer = TempNormalizer(tmp_path / "work")
    token = CancellationToken()
    threading.Timer(0.1, token.cancel).start()
    states: list[PipelineState] = []

    outcome = _pipeline(env, transcriber=BlockingTranscriber(), normalizer=normalizer).run(
        _job(env), cancel=token, on_state=states.append
    )

    assert outcome.state is PipelineState.CANCELLED
    assert outcome.failed_state is PipelineState.TRANSCRIBING
    assert states[-1] is PipelineState.CANCELLED
    assert normalizer.created and not normalizer.created[0].exists()
    assert outcome.document is None
    assert not env["settings"].output_dir.exists() or list(env["settings"].output_dir.iterdir()) == []


def test_cancel_before_start(env: dict[str, Any]) -> None:
    token = CancellationToken()
    token.cancel()
    transcriber = FakeTranscriber(_transcript())

    outcome = _pipeline(env, transcriber=transcriber).run(_job(env), cancel=token)

    assert outcome.state is PipelineState.CANCELLED
    assert transcriber.calls == 0


def test_missing_engine_fails_validation_before_spawning(env: dict[str, Any]) -> None:
    settings = dataclasses.replace(env["settings"], whisper_binary="definitely-missing-whisper-cli")
    created: list[str] = []

    pipeline = _pipeline(
        env,
        settings=settings,
        transcriber_factory=lambda mode, model_path: created.append(mode),
    )
    outcome = pipeline.run(_job(env))

    assert outcome.state is PipelineState.FAILED
    assert outcome.failed_state is PipelineState.VALIDATING
    assert isinstance(outcome.error, EngineMissing)
    assert outcome.error_kind is ErrorKind.CONFIGURATION
    assert created == []


def test_missing_model_fails_validation(env: dict[str, Any]) -> None:
    env["models"].model_path("tiny").unlink()

    outcome = _pipeline(env, transcriber=FakeTranscriber(_transcript())).run(_job(env))

    assert outcome.failed_state is PipelineState.VALIDATING
    assert outcome.error_kind is ErrorKind.CONFIGURATION


def test_cloud_mode_with_empty_key_never_calls_network(env: dict[str, Any]) -> None:
    created: list[str] = []

    outcome = _pipeline(env, transcriber_factory=lambda mode, model_path: created.append(mode)).run(
        _job(env, mode="cloud-whisper")
    )

    assert outcome.state is PipelineState.FAILED
    assert outcome.failed_state is PipelineState.VALIDATING
    assert isinstance(outcome.error, CredentialMissing)
    assert created == []


def test_malformed_analysis_key_fails_validation(env: dict[str, Any]) -> None:
    settings = dataclasses.replace(env["settings"], openrouter_api_key="not-a-key")

    outcome = _pipeline(env, settings=settings, transcriber=FakeTranscriber(_transcript())).run(_job(env))

    assert isinstance(outcome.error, InvalidCredential)
    assert outcome.failed_state is PipelineState.VALIDATING


def test_unsupported_audio_extension_fails_validation(env: dict[str, Any], tmp_path: Path) -> None:
    notes = tmp_path / "notes.txt"
    notes.write_text("hello")

    outcome = _pipeline(env, transcriber=FakeTranscriber(_transcript())).run(
        _job(env, audio=AudioSource.from_path(notes))
    )

    assert outcome.failed_state is PipelineState.VALIDATING
    assert outcome.error_kind is ErrorKind.CONFIGURATION


def test_save_failure_is_reported_from_saving(env: dict[str, Any]) -> None:
    outcome = _pipeline(env, transcriber=FakeTranscriber(_transcript()), storage=FailingStorage()).run(
        _job(env, analyze=False)
    )

    assert outcome.state is PipelineState.FAILED
    assert outcome.failed_state is PipelineState.SAVING
    assert outcome.error_kind is ErrorKind.RESOURCE
    assert env["recent"].list_recent() == []


def test_local_end_to_end_with_conformant_wav(env: dict[str, Any], write_wav, tmp_path: Path) -> None:
    audio = write_wav(tmp_path / "audio" / "ninety.wav", seconds=90.0)

    outcome = _pipeline(env).run(_job(env, audio=AudioSource.from_path(audio, duration=90.0), analyze=False))

    assert outcome.state is PipelineState.COMPLETE
    assert outcome.transcript is not None
    assert outcome.transcript.language == "en"
    assert len(outcome.transcript.segments) == 2
    assert not env["ffmpeg_marker"].exists()
    sidecar = json.loads(outcome.document.transcript_json_path.read_text(encoding="utf-8"))
    assert sidecar["segments"][1]["start"] == 45.0


def test_unsegmented_engine_output_spans_whole_recording(env: dict[str, Any], make_executable, write_wav, tmp_path: Path) -> None:
    make_executable("whisper-cli", "print('Just one unsegmented line of speech.')\n")
    audio = write_wav(tmp_path / "audio" / "plain.wav", seconds=2.0)

    outcome = _pipeline(env).run(_job(env, audio=AudioSource.from_path(audio), analyze=False))

    assert outcome.state is PipelineState.COMPLETE
    assert outcome.transcript is not None
    assert outcome.transcript.duration == pytest.approx(2.0)
    assert len(outcome.transcript.segments) == 1
    assert outcome.transcript.segments[0].end == pytest.approx(2.0)
