from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from audio_notes.types import MODEL_SIZES, PROCESSING_MODES


@dataclass(slots=True)
class Settings:
    host: str
    port: int
    mcp_path: str
    health_path: str
    log_level: str
    poll_interval_seconds: float
    worker_count: int
    data_dir: Path
    database_path: Path
    output_dir: Path
    models_dir: Path
    work_dir: Path
    processing_mode: str
    model_size: str
    language: str
    whisper_binary: str
    whisper_threads: int
    ffmpeg_binary: str
    ffprobe_binary: str
    openai_api_key: str
    openai_transcription_url: str
    openai_transcription_model: str
    openrouter_api_key: str
    openrouter_model: str
    openrouter_url: str
    custom_instructions: str
    include_timestamps: bool
    enable_diarization: bool
    max_recent_transcriptions: int
    request_timeout_seconds: float
    download_connect_timeout_seconds: float
    download_stall_timeout_seconds: float
    download_max_attempts: int
    download_retry_backoff_seconds: float


def _as_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _as_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


def _as_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _choice(name: str, default: str, allowed: tuple[str, ...]) -> str:
    value = os.getenv(name, default).strip().lower() or default
    if value not in allowed:
        raise RuntimeError(f"{name} must be one of: {', '.join(allowed)} (got '{value}')")
    return value


def _normalized_path(path: str) -> str:
    if not path.startswith("/"):
        path = f"/{path}"
    return path


def load_settings() -> Settings:
    load_dotenv()
    data_dir = Path(os.getenv("DATA_DIR", "data")).resolve()
    database_path = Path(os.getenv("DATABASE_PATH", str(data_dir / "audio_notes.sqlite3"))).resolve()

    return Settings(
        host=os.getenv("HOST", "0.0.0.0"),
        port=_as_int("PORT", 3000),
        mcp_path=_normalized_path(os.getenv("MCP_PATH", "/mcp")),
        health_path=_normalized_path(os.getenv("HEALTH_PATH", "/healthz")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        poll_interval_seconds=_as_float("POLL_INTERVAL_SECONDS", 2.0),
        worker_count=max(1, _as_int("WORKER_COUNT", 1)),
        data_dir=data_dir,
        database_path=database_path,
        output_dir=Path(os.getenv("OUTPUT_DIR", str(data_dir / "notes"))).resolve(),
        models_dir=Path(os.getenv("MODELS_DIR", str(data_dir / "models"))).resolve(),
        work_dir=Path(os.getenv("WORK_DIR", str(data_dir / "_work"))).resolve(),
        processing_mode=_choice("PROCESSING_MODE", "local", PROCESSING_MODES),
        model_size=_choice("MODEL_SIZE", "medium", MODEL_SIZES),
        language=os.getenv("LANGUAGE", "auto").strip() or "auto",
        whisper_binary=os.getenv("WHISPER_BINARY", "whisper-cli"),
        whisper_threads=max(1, _as_int("WHISPER_THREADS", 4)),
        ffmpeg_binary=os.getenv("FFMPEG_BINARY", "ffmpeg"),
        ffprobe_binary=os.getenv("FFPROBE_BINARY", "ffprobe"),
        openai_api_key=os.getenv("OPENAI_API_KEY", "").strip(),
        openai_transcription_url=os.getenv(
            "OPENAI_TRANSCRIPTION_URL", "https://api.openai.com/v1/audio/transcriptions"
        ),
        openai_transcription_model=os.getenv("OPENAI_TRANSCRIPTION_MODEL", "whisper-1"),
        openrouter_api_key=os.getenv("OPENROUTER_API_KEY", "").strip(),
        openrouter_model=os.getenv("OPENROUTER_MODEL", "meta-llama/llama-3.2-3b-instruct").strip(),
        openrouter_url=os.getenv("OPENROUTER_URL", "https://openrouter.ai/api/v1/chat/completions"),
        custom_instructions=os.getenv("CUSTOM_INSTRUCTIONS", ""),
        include_timestamps=_as_bool("INCLUDE_TIMESTAMPS", True),
        enable_diarization=_as_bool("ENABLE_DIARIZATION", False),
        max_recent_transcriptions=max(1, _as_int("MAX_RECENT_TRANSCRIPTIONS", 10)),
        request_timeout_seconds=_as_float("REQUEST_TIMEOUT_SECONDS", 600.0),
        download_connect_timeout_seconds=_as_float("DOWNLOAD_CONNECT_TIMEOUT_SECONDS", 30.0),
        download_stall_timeout_seconds=_as_float("DOWNLOAD_STALL_TIMEOUT_SECONDS", 120.0),
        download_max_attempts=max(1, _as_int("DOWNLOAD_MAX_ATTEMPTS", 2)),
        download_retry_backoff_seconds=_as_float("DOWNLOAD_RETRY_BACKOFF_SECONDS", 2.0),
    )
