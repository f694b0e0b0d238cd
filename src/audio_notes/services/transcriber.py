from __future__ import annotations

import json
import logging
import subprocess
import uuid
from pathlib import Path
from threading import Thread
from typing import Any, Protocol

import httpx

from audio_notes.cancellation import CancellationToken, InterruptibleCall
from audio_notes.config import Settings
from audio_notes.errors import (
    EngineCrashed,
    EngineDependencyMissing,
    EngineMissing,
    JobCancelled,
    MalformedResponse,
    NetworkError,
    PayloadTooLarge,
    RateLimited,
    RemoteError,
    ServerError,
    Unauthorized,
)
from audio_notes.types import ProgressCallback, SpeakerInfo, TranscriptResult, TranscriptSegment

logger = logging.getLogger(__name__)

# POSIX "command not found / loader failure" and the Windows loader statuses
# STATUS_DLL_NOT_FOUND and STATUS_ENTRYPOINT_NOT_FOUND (unsigned and signed).
MISSING_RUNTIME_EXIT_CODES = frozenset({127, 0xC0000135, 0xC0000139, -1073741515, -1073741511})

# The engine reports no fractional progress, so each stdout line nudges an
# estimate forward by PROGRESS_STEP until PROGRESS_CEILING; success snaps to 100.
PROGRESS_START = 5
PROGRESS_STEP = 5
PROGRESS_CEILING = 90


class Transcriber(Protocol):
    name: str

    def transcribe(
        self,
        audio_path: Path,
        language: str | None,
        *,
        cancel: CancellationToken | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> TranscriptResult:
        """Turn engine-ready audio into a transcript."""


def _report(on_progress: ProgressCallback | None, percent: int, message: str) -> None:
    if on_progress is not None:
        on_progress(percent, message)


def _find_structured_payload(output: str) -> dict[str, Any] | None:
    decoder = json.JSONDecoder()
    index = output.find("{")
    while index != -1:
        try:
            value, _ = decoder.raw_decode(output, index)
        except json.JSONDecodeError:
            value = None
        if isinstance(value, dict) and ("transcription" in value or "segments" in value):
            return value
        index = output.find("{", index + 1)
    return None


def _as_seconds(value: object, *, millis: bool = False) -> float:
    try:
        number = float(str(value)) if value is not None else 0.0
    except (TypeError, ValueError):
        return 0.0
    return number / 1000.0 if millis else number


def _as_speaker(value: object) -> int | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return int(str(value))
    except (TypeError, ValueError):
        return None


def _segments_from_payload(payload: dict[str, Any]) -> list[TranscriptSegment]:
    segments: list[TranscriptSegment] = []
    raw_items = payload.get("transcription")
    if isinstance(raw_items, list):
        for item in raw_items:
            if not isinstance(item, dict):
                continue
            offsets = item.get("offsets") if isinstance(item.get("offsets"), dict) else {}
            segments.append(
                TranscriptSegment(
                    start=_as_seconds(offsets.get("from"), millis=True),
                    end=_as_seconds(offsets.get("to"), millis=True),
                    text=str(item.get("text") or "").strip(),
                    speaker=_as_speaker(item.get("speaker")),
                )
            )
    else:
        for item in payload.get("segments") or []:
            if not isinstance(item, dict):
                continue
            segments.append(
                TranscriptSegment(
                    start=_as_seconds(item.get("start")),
                    end=_as_seconds(item.get("end")),
                    text=str(item.get("text") or "").strip(),
                    speaker=_as_speaker(item.get("speaker")),
                )
            )
    segments.sort(key=lambda segment: segment.start)
    return [segment for segment in segments if segment.text]


def _speakers_for(segments: list[TranscriptSegment], diarize: bool) -> list[SpeakerInfo] | None:
    if not diarize:
        return None
    ids = sorted({segment.speaker for segment in segments if segment.speaker is not None})
    return [SpeakerInfo(id=speaker_id, label=f"Speaker {speaker_id}") for speaker_id in ids]


def parse_engine_output(
    output: str,
    *,
    language_hint: str | None,
    duration_hint: float = 0.0,
    diarize: bool = False,
) -> TranscriptResult:
    """Parse engine output, tolerating log noise around the JSON payload.

    Output with no recognisable payload becomes one unsegmented transcript.
    """
    payload = _find_structured_payload(output)
    if payload is None:
        text = output.strip()
        segments = [TranscriptSegment(start=0.0, end=duration_hint, text=text)] if text else []
        return TranscriptResult(
            text=text,
            segments=segments,
            language=language_hint or "auto",
            duration=duration_hint,
            speakers=_speakers_for(segments, diarize),
        )

    segments = _segments_from_payload(payload)
    result_block = payload.get("result") if isinstance(payload.get("result"), dict) else {}
    language = result_block.get("language") or payload.get("language") or language_hint or "auto"
    duration = max((segment.end for segment in segments), default=0.0) or duration_hint
    return TranscriptResult(
        text=" ".join(segment.text for segment in segments).strip(),
        segments=segments,
        language=str(language),
        duration=duration,
        speakers=_speakers_for(segments, diarize),
    )


class WhisperCppTranscriber:
    """Runs a local whisper.cpp build as a subprocess.

    Progress is an approximation: monotonic, capped below 100 until exit.
    """

    name = "local"

    def __init__(
        self,
        *,
        binary_path: str,
        model_path: Path,
        work_dir: Path,
        threads: int = 4,
        diarize: bool = False,
    ) -> None:
        self.binary_path = binary_path
        self.model_path = model_path
        self.work_dir = work_dir
        self.threads = threads
        self.diarize = diarize

    def build_command(self, audio_path: Path, language: str | None, output_prefix: Path) -> list[str]:
        command = [
            self.binary_path,
            "-m",
            str(self.model_path),
            "-f",
            str(audio_path),
            "-t",
            str(self.threads),
            "-oj",
            "-of",
            str(output_prefix),
        ]
        if language:
            command.extend(["-l", language])
        return command

    def transcribe(
        self,
        audio_path: Path,
        language: str | None,
        *,
        cancel: CancellationToken | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> TranscriptResult:
        self.work_dir.mkdir(parents=True, exist_ok=True)
        output_prefix = self.work_dir / f"engine-{uuid.uuid4().hex[:8]}"
        output_file = output_prefix.with_name(output_prefix.name + ".json")
        command = self.build_command(audio_path, language, output_prefix)
        _report(on_progress, PROGRESS_START, "Starting transcription...")

        try:
            process = subprocess.Popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
            )
        except FileNotFoundError as exc:
            raise EngineMissing(
                f"Speech engine not found: {self.binary_path}",
                hint="Install whisper.cpp and set WHISPER_BINARY to its executable.",
            ) from exc
        except PermissionError as exc:
            raise EngineMissing(
                f"Speech engine is not executable: {self.binary_path}",
                hint="Check the file permissions of WHISPER_BINARY.",
            ) from exc

        logger.info("Started speech engine pid=%s model=%s", process.pid, self.model_path.name)
        unregister = cancel.on_cancel(process.kill) if cancel is not None else (lambda: None)
        stdout_chunks: list[str] = []
        stderr_chunks: list[str] = []
        stderr_reader = Thread(
            target=lambda: stderr_chunks.extend(process.stderr or []),
            name="whisper-stderr",
            daemon=True,
        )
        stderr_reader.start()
        progress = PROGRESS_START
        try:
            assert process.stdout is not None
            for line in process.stdout:
                stdout_chunks.append(line)
                progress = min(PROGRESS_CEILING, progress + PROGRESS_STEP)
                _report(on_progress, progress, "Transcribing audio...")
            returncode = process.wait()
            stderr_reader.join(timeout=5)
        finally:
            unregister()
            if process.poll() is None:
                process.kill()
                process.wait()

        try:
            if cancel is not None and cancel.cancelled:
                raise JobCancelled("Transcription cancelled")

            stderr = "".join(stderr_chunks)
            logger.info("Speech engine exited with code %s", returncode)
            if returncode in MISSING_RUNTIME_EXIT_CODES:
                raise EngineDependencyMissing(returncode, stderr)
            if returncode != 0:
                raise EngineCrashed(returncode, stderr)

            output = "".join(stdout_chunks)
            if _find_structured_payload(output) is None and output_file.exists():
                output = output_file.read_text(encoding="utf-8", errors="replace")
            result = parse_engine_output(output, language_hint=language, diarize=self.diarize)
        finally:
            output_file.unlink(missing_ok=True)

        _report(on_progress, 100, "Transcription complete!")
        return result


class OpenAIWhisperTranscriber:
    name = "cloud-whisper"

    def __init__(
        self,
        *,
        api_key: str,
        url: str = "https://api.openai.com/v1/audio/transcriptions",
        model: str = "whisper-1",
        timeout_seconds: float = 600.0,
        diarize: bool = False,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.url = url
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.diarize = diarize
        self.transport = transport

    def transcribe(
        self,
        audio_path: Path,
        language: str | None,
        *,
        cancel: CancellationToken | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> TranscriptResult:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        data: dict[str, Any] = {
            "model": self.model,
            "response_format": "verbose_json",
            "timestamp_granularities[]": "segment",
        }
        if language:
            data["language"] = language

        _report(on_progress, 10, "Uploading audio...")
        def upload() -> httpx.Response:
            with audio_path.open("rb") as audio_stream:
                files = {"file": (audio_path.name, audio_stream, "audio/wav")}
                return client.post(self.url, headers=headers, data=data, files=files)

        with httpx.Client(timeout=self.timeout_seconds, transport=self.transport) as client:
            try:
                response = InterruptibleCall(cancel, name="openai-transcription").run(
                    upload,
                    on_abandon=client.close,
                    cancel_message="Transcription request aborted",
                )
            except httpx.TimeoutException as exc:
                raise NetworkError("Transcription request timed out") from exc
            except httpx.TransportError as exc:
                raise NetworkError(f"Network error: unable to reach transcription API ({exc})") from exc

        raise_for_api_status(response, service="OpenAI")
        try:
            payload = response.json()
        except ValueError as exc:
            raise MalformedResponse(f"OpenAI returned a non-JSON body: {response.text[:400]}") from exc
        if not isinstance(payload, dict):
            raise MalformedResponse("OpenAI transcription response is not an object")

        _report(on_progress, 90, "Processing results...")
        result = self._parse_response(payload, language)
        _report(on_progress, 100, "Transcription complete!")
        return result

    def _parse_response(self, payload: dict[str, Any], language: str | None) -> TranscriptResult:
        segments = _segments_from_payload({"segments": payload.get("segments") or []})
        text = str(payload.get("text") or "").strip() or " ".join(s.text for s in segments).strip()
        duration = _as_seconds(payload.get("duration")) or max((s.end for s in segments), default=0.0)
        return TranscriptResult(
            text=text,
            segments=segments,
            language=str(payload.get("language") or language or "auto"),
            duration=duration,
            speakers=_speakers_for(segments, self.diarize),
        )


def _api_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:400] or response.reason_phrase
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
    return response.text[:400] or response.reason_phrase


def raise_for_api_status(response: httpx.Response, *, service: str) -> None:
    status = response.status_code
    if status < 400:
        return
    message = _api_error_message(response)
    if status in (401, 403):
        raise Unauthorized(
            f"{service} API authentication failed ({status}): {message}",
            hint="Check the API key in your environment configuration.",
        )
    if status == 413:
        raise PayloadTooLarge(
            f"File too large for the {service} API: {message}",
            hint="Use local processing mode, or split the audio into smaller segments.",
        )
    if status == 429:
        raise RateLimited(f"{service} API rate limit exceeded: {message}")
    if status >= 500:
        raise ServerError(f"{service} API server error ({status}): {message}")
    raise RemoteError(f"{service} API error ({status}): {message}", status_code=status)


def build_transcriber(settings: Settings, mode: str, model_path: Path) -> Transcriber:
    if mode == "local":
        return WhisperCppTranscriber(
            binary_path=settings.whisper_binary,
            model_path=model_path,
            work_dir=settings.work_dir,
            threads=settings.whisper_threads,
            diarize=settings.enable_diarization,
        )
    if mode == "cloud-whisper":
        return OpenAIWhisperTranscriber(
            api_key=settings.openai_api_key,
            url=settings.openai_transcription_url,
            model=settings.openai_transcription_model,
            timeout_seconds=settings.request_timeout_seconds,
            diarize=settings.enable_diarization,
        )
    raise ValueError(f"Unsupported processing mode '{mode}'. Supported modes: local, cloud-whisper.")
