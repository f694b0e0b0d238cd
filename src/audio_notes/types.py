from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Literal

ProcessingMode = Literal["local", "cloud-whisper"]
ModelSize = Literal["tiny", "base", "small", "medium", "large"]

PROCESSING_MODES: tuple[str, ...] = ("local", "cloud-whisper")
MODEL_SIZES: tuple[str, ...] = ("tiny", "base", "small", "medium", "large")

# (percent, message)
ProgressCallback = Callable[[int, str], None]
# (bytes_downloaded, bytes_total)
DownloadProgressCallback = Callable[[int, int], None]


class PipelineState(str, Enum):
    QUEUED = "queued"
    VALIDATING = "validating"
    TRANSCRIBING = "transcribing"
    ANALYZING = "analyzing"
    SAVING = "saving"
    COMPLETE = "complete"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({PipelineState.COMPLETE, PipelineState.CANCELLED, PipelineState.FAILED})


@dataclass(frozen=True, slots=True)
class AudioSource:
    path: Path
    size_bytes: int
    duration: float | None = None

    @property
    def name(self) -> str:
        return self.path.name

    @classmethod
    def from_path(cls, path: Path, duration: float | None = None) -> AudioSource:
        size = path.stat().st_size if path.exists() else 0
        return cls(path=path, size_bytes=size, duration=duration)


@dataclass(frozen=True, slots=True)
class TranscriptionJob:
    id: str
    audio: AudioSource
    mode: ProcessingMode
    language: str = "auto"
    instructions: str = ""
    analyze: bool = True

    @property
    def language_hint(self) -> str | None:
        if not self.language or self.language == "auto":
            return None
        return self.language


@dataclass(slots=True)
class TranscriptSegment:
    start: float
    end: float
    text: str
    speaker: int | None = None


@dataclass(slots=True)
class SpeakerInfo:
    id: int
    label: str


@dataclass(slots=True)
class TranscriptResult:
    text: str
    segments: list[TranscriptSegment]
    language: str
    duration: float = 0.0
    # None: diarization was not requested. []: requested, engine produced no labels.
    speakers: list[SpeakerInfo] | None = None

    @property
    def is_empty(self) -> bool:
        return not self.text.strip() and not any(segment.text.strip() for segment in self.segments)

    @property
    def speaker_count(self) -> int:
        return len(self.speakers) if self.speakers else 0


@dataclass(slots=True)
class AnalysisResult:
    summary: str = ""
    key_points: list[str] = field(default_factory=list)
    action_items: list[str] = field(default_factory=list)
    follow_ups: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class AudioProbe:
    container: str | None
    codec: str | None
    sample_rate: int | None
    channels: int | None
    duration: float | None


@dataclass(frozen=True, slots=True)
class ModelInfo:
    size: str
    installed: bool
    downloading: bool
    expected_bytes: int
    path: Path
    url: str


@dataclass(slots=True)
class DocumentFields:
    """Everything the document assembler needs, and nothing more."""

    source_filename: str
    title: str
    duration: float
    language: str
    speaker_count: int
    tags: list[str]
    transcript: TranscriptResult
    analysis: AnalysisResult | None
    analysis_error: str | None
    transcribed_at: str
    diarization_requested: bool = False
    include_timestamps: bool = True


@dataclass(frozen=True, slots=True)
class SavedDocument:
    markdown_path: Path
    transcript_json_path: Path
