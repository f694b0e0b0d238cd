from __future__ import annotations

import json
import logging
import re
import shutil
import subprocess
import uuid
import wave
from pathlib import Path
from typing import Callable

from audio_notes.cancellation import CancellationToken
from audio_notes.errors import ConversionFailed, ConversionUnavailable, JobCancelled
from audio_notes.types import AudioProbe, AudioSource
from audio_notes.utils.formatting import parse_clock

logger = logging.getLogger(__name__)

DURATION_RE = re.compile(r"Duration: (\d{2}):(\d{2}):(\d{2}(?:\.\d+)?)")
TIME_RE = re.compile(r"time=(\d{2}):(\d{2}):(\d{2}(?:\.\d+)?)")

# percent of the conversion done, 0-100
ConversionProgress = Callable[[int], None]


class NormalizedAudio:
    """Engine-ready audio owned by one pipeline run.

    When the source was already conformant this wraps the source path itself
    and ``cleanup`` leaves it alone; otherwise it owns a temporary file.
    """

    def __init__(self, path: Path, *, is_temporary: bool) -> None:
        self.path = path
        self.is_temporary = is_temporary

    def cleanup(self) -> None:
        if self.is_temporary:
            self.path.unlink(missing_ok=True)

    def __enter__(self) -> NormalizedAudio:
        return self

    def __exit__(self, *_: object) -> None:
        self.cleanup()

    def __repr__(self) -> str:
        return f"NormalizedAudio(path={str(self.path)!r}, is_temporary={self.is_temporary})"


def resolve_binary(command: str) -> str | None:
    normalized = command.strip()
    if not normalized:
        return None
    if "/" in normalized or "\\" in normalized:
        candidate = Path(normalized).expanduser()
        return str(candidate) if candidate.is_file() else None
    return shutil.which(normalized)


def build_ffmpeg_command(
    ffmpeg_bin: str,
    input_path: Path,
    output_path: Path,
    sample_rate: int,
    channels: int,
    codec: str,
) -> list[str]:
    return [
        ffmpeg_bin,
        "-nostdin",
        "-i",
        str(input_path),
        "-vn",
        "-ar",
        str(sample_rate),
        "-ac",
        str(channels),
        "-c:a",
        codec,
        "-y",
        str(output_path),
    ]


class AudioNormalizer:
    def __init__(
        self,
        *,
        ffmpeg_binary: str,
        ffprobe_binary: str,
        work_dir: Path,
        sample_rate: int = 16000,
        channels: int = 1,
        codec: str = "pcm_s16le",
    ) -> None:
        self.ffmpeg_binary = ffmpeg_binary
        self.ffprobe_binary = ffprobe_binary
        self.work_dir = work_dir
        self.sample_rate = sample_rate
        self.channels = channels
        self.codec = codec

    def probe(self, path: Path) -> AudioProbe:
        if path.suffix.lower() == ".wav":
            probe = self._probe_wav_header(path)
            if probe is not None:
                return probe
        return self._probe_with_ffprobe(path)

    def is_conformant(self, probe: AudioProbe) -> bool:
        return (
            probe.container == "wav"
            and probe.codec == self.codec
            and probe.sample_rate == self.sample_rate
            and probe.channels == self.channels
        )

    def probe_duration(self, path: Path) -> float:
        duration = self.probe(path).duration
        return duration if duration is not None else 0.0

    def normalize(
        self,
        source: AudioSource,
        *,
        cancel: CancellationToken | None = None,
        on_progress: ConversionProgress | None = None,
    ) -> NormalizedAudio:
        probe = self.probe(source.path)
        if self.is_conformant(probe):
            logger.info("Audio %s already %s Hz mono PCM, no conversion", source.name, self.sample_rate)
            return NormalizedAudio(source.path, is_temporary=False)

        ffmpeg = resolve_binary(self.ffmpeg_binary)
        if ffmpeg is None:
            raise ConversionUnavailable(
                f"ffmpeg not found (configured command: '{self.ffmpeg_binary}'). "
                "It is required to convert audio for the speech engine.",
                hint="Install ffmpeg (brew install ffmpeg / sudo apt install ffmpeg / choco install ffmpeg) "
                "or set FFMPEG_BINARY.",
            )

        self.work_dir.mkdir(parents=True, exist_ok=True)
        output_path = self.work_dir / f"{source.path.stem}-{uuid.uuid4().hex[:8]}.wav"
        try:
            self._run_ffmpeg(ffmpeg, source.path, output_path, cancel=cancel, on_progress=on_progress)
        except BaseException:
            output_path.unlink(missing_ok=True)
            raise
        return NormalizedAudio(output_path, is_temporary=True)

    def _run_ffmpeg(
        self,
        ffmpeg: str,
        input_path: Path,
        output_path: Path,
        *,
        cancel: CancellationToken | None,
        on_progress: ConversionProgress | None,
    ) -> None:
        command = build_ffmpeg_command(
            ffmpeg, input_path, output_path, self.sample_rate, self.channels, self.codec
        )
        logger.info("Converting %s to %s Hz mono WAV", input_path.name, self.sample_rate)
        try:
            process = subprocess.Popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
            )
        except FileNotFoundError as exc:
            raise ConversionUnavailable(f"Failed to run ffmpeg: {exc}") from exc

        unregister = cancel.on_cancel(process.kill) if cancel is not None else (lambda: None)
        stderr_lines: list[str] = []
        duration = 0.0
        try:
            assert process.stderr is not None
            # ffmpeg rewrites its status line with \r; text mode splits on it.
            for line in process.stderr:
                stderr_lines.append(line)
                if duration <= 0:
                    match = DURATION_RE.search(line)
                    if match:
                        duration = parse_clock(*match.groups())
                    continue
                match = TIME_RE.search(line)
                if match and on_progress is not None:
                    position = parse_clock(*match.groups())
                    on_progress(min(100, int(position / duration * 100)))
            returncode = process.wait()
        finally:
            unregister()
            if process.poll() is None:
                process.kill()
                process.wait()

        if cancel is not None and cancel.cancelled:
            raise JobCancelled("Audio conversion cancelled")
        diagnostics = "".join(stderr_lines[-40:])
        if returncode != 0:
            raise ConversionFailed(f"FFmpeg conversion failed (exit code {returncode})", diagnostics)
        if not output_path.exists() or output_path.stat().st_size == 0:
            raise ConversionFailed("FFmpeg conversion failed: output file not created", diagnostics)
        if on_progress is not None:
            on_progress(100)

    @staticmethod
    def _probe_wav_header(path: Path) -> AudioProbe | None:
        try:
            with wave.open(str(path), "rb") as reader:
                rate = reader.getframerate()
                frames = reader.getnframes()
                return AudioProbe(
                    container="wav",
                    codec="pcm_s16le" if reader.getsampwidth() == 2 else f"pcm_{reader.getsampwidth() * 8}",
                    sample_rate=rate,
                    channels=reader.getnchannels(),
                    duration=frames / rate if rate else None,
                )
        except (wave.Error, EOFError, OSError):
            # Compressed or non-RIFF payload behind a .wav name.
            return None

    def _probe_with_ffprobe(self, path: Path) -> AudioProbe:
        fallback = AudioProbe(
            container=path.suffix.lower().lstrip(".") or None,
            codec=None,
            sample_rate=None,
            channels=None,
            duration=None,
        )
        ffprobe = resolve_binary(self.ffprobe_binary)
        if ffprobe is None:
            return fallback

        cmd = [
            ffprobe,
            "-v",
            "error",
            "-print_format",
            "json",
            "-show_format",
            "-show_streams",
            "-select_streams",
            "a:0",
            str(path),
        ]
        try:
            completed = subprocess.run(cmd, capture_output=True, text=True, check=False, timeout=30)
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.warning("ffprobe failed for %s: %s", path.name, exc)
            return fallback
        if completed.returncode != 0:
            logger.warning("ffprobe exited %s for %s", completed.returncode, path.name)
            return fallback

        try:
            payload = json.loads(completed.stdout or "{}")
        except json.JSONDecodeError:
            return fallback

        streams = payload.get("streams") or []
        stream = streams[0] if streams and isinstance(streams[0], dict) else {}
        fmt = payload.get("format") or {}
        container = str(fmt.get("format_name") or "").split(",")[0] or fallback.container
        return AudioProbe(
            container=container,
            codec=_as_str(stream.get("codec_name")),
            sample_rate=_as_int(stream.get("sample_rate")),
            channels=_as_int(stream.get("channels")),
            duration=_as_float(fmt.get("duration") or stream.get("duration")),
        )


def _as_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _as_int(value: object) -> int | None:
    try:
        return int(str(value)) if value is not None else None
    except (TypeError, ValueError):
        return None


def _as_float(value: object) -> float | None:
    try:
        return float(str(value)) if value is not None else None
    except (TypeError, ValueError):
        return None
