import dataclasses
import socket
import stat
import sys
import threading
import wave
from pathlib import Path
from typing import Any, Callable, Iterator

import pytest

from audio_notes.config import Settings


@pytest.fixture
def make_settings(tmp_path: Path) -> Callable[..., Settings]:
    def factory(**overrides: Any) -> Settings:
        data_dir = tmp_path / "data"
        settings = Settings(
            host="127.0.0.1",
            port=3000,
            mcp_path="/mcp",
            health_path="/healthz",
            log_level="INFO",
            poll_interval_seconds=0.05,
            worker_count=1,
            data_dir=data_dir,
            database_path=data_dir / "test.sqlite3",
            output_dir=data_dir / "notes",
            models_dir=data_dir / "models",
            work_dir=data_dir / "_work",
            processing_mode="local",
            model_size="tiny",
            language="auto",
            whisper_binary="definitely-missing-whisper-cli",
            whisper_threads=2,
            ffmpeg_binary="definitely-missing-ffmpeg",
            ffprobe_binary="definitely-missing-ffprobe",
            openai_api_key="",
            openai_transcription_url="https://api.openai.com/v1/audio/transcriptions",
            openai_transcription_model="whisper-1",
            openrouter_api_key="sk-or-test",
            openrouter_model="meta-llama/llama-3.2-3b-instruct",
            openrouter_url="https://openrouter.ai/api/v1/chat/completions",
            custom_instructions="",
            include_timestamps=True,
            enable_diarization=False,
            max_recent_transcriptions=10,
            request_timeout_seconds=5.0,
            download_connect_timeout_seconds=5.0,
            download_stall_timeout_seconds=5.0,
            download_max_attempts=2,
            download_retry_backoff_seconds=0.0,
        )
        return dataclasses.replace(settings, **overrides)

    return factory


@pytest.fixture
def write_wav() -> Callable[..., Path]:
    def factory(
        path: Path,
        *,
        seconds: float = 1.0,
        sample_rate: int = 16000,
        channels: int = 1,
    ) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        frames = int(seconds * sample_rate)
        with wave.open(str(path), "wb") as writer:
            writer.setnchannels(channels)
            writer.setsampwidth(2)
            writer.setframerate(sample_rate)
            writer.writeframes(b"\x00\x00" * frames * channels)
        return path

    return factory


@pytest.fixture
def make_executable(tmp_path: Path) -> Callable[[str, str], Path]:
    """Write a Python script that stands in for an external tool."""

    def factory(name: str, body: str) -> Path:
        bin_dir = tmp_path / "bin"
        bin_dir.mkdir(parents=True, exist_ok=True)
        script = bin_dir / name
        script.write_text(f"#!{sys.executable}\n{body}", encoding="utf-8")
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return script

    return factory


RawResponder = Callable[[str, socket.socket, threading.Event], None]


@pytest.fixture
def raw_http_server() -> Iterator[Callable[[RawResponder], str]]:
    """Serve hand-written HTTP from a real local socket; returns the base URL.

    The responder gets the request path, the connection and an event that is
    set at teardown, so it can stall a client for as long as the test runs.
    """
    release = threading.Event()
    listeners: list[socket.socket] = []

    def start(respond: RawResponder) -> str:
        listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        listener.bind(("127.0.0.1", 0))
        listener.listen(8)
        listeners.append(listener)

        def handle(conn: socket.socket) -> None:
            with conn:
                request = b""
                while b"\r\n\r\n" not in request:
                    data = conn.recv(65536)
                    if not data:
                        return
                    request += data
                path = request.split(b" ", 2)[1].decode("ascii")
                try:
                    respond(path, conn, release)
                except OSError:
                    pass

        def serve() -> None:
            while True:
                try:
                    conn, _ = listener.accept()
                except OSError:
                    return
                threading.Thread(target=handle, args=(conn,), daemon=True).start()

        threading.Thread(target=serve, daemon=True).start()
        return f"http://127.0.0.1:{listener.getsockname()[1]}"

    yield start
    release.set()
    for listener in listeners:
        listener.close()
