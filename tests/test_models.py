import errno
import socket
import threading
import time
from pathlib import Path
from typing import Callable, Iterator

import httpx
import pytest

from audio_notes.cancellation import CancellationToken
from audio_notes.errors import (
    AlreadyInProgress,
    ConnectionTimeout,
    IncompleteDownload,
    InstallFailed,
    JobCancelled,
    NetworkUnreachable,
    NotFound,
    ServerError,
    StalledTransfer,
    TooManyRedirects,
)
from audio_notes.services.models import ModelManager

MODEL_BYTES = b"m" * 5000


def _manager(tmp_path: Path, handler: Callable[[httpx.Request], httpx.Response], **kwargs) -> ModelManager:
    options = {
        "connect_timeout_seconds": 2.0,
        "stall_timeout_seconds": 2.0,
        "retry_backoff_seconds": 0.0,
        "install_retry_delay_seconds": 0.0,
        "min_valid_bytes": 1000,
    }
    options.update(kwargs)
    return ModelManager(tmp_path / "models", transport=httpx.MockTransport(handler), **options)


def _chunks(data: bytes, size: int = 1000, delay: float = 0.0) -> Iterator[bytes]:
    for index in range(0, len(data), size):
        if delay:
            time.sleep(delay)
        yield data[index:index + size]


def _model_response(data: bytes = MODEL_BYTES, total: int | None = None, delay: float = 0.0) -> httpx.Response:
    length = len(data) if total is None else total
    return httpx.Response(200, headers={"content-length": str(length)}, content=_chunks(data, delay=delay))


def test_acquire_downloads_and_reports_progress(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/":
            return httpx.Response(200)
        assert request.url.path.endswith("/ggml-tiny.bin")
        return _model_response()

    manager = _manager(tmp_path, handler)
    progress: list[tuple[int, int]] = []

    path = manager.acquire("tiny", lambda done, total: progress.append((done, total)))

    assert path.read_bytes() == MODEL_BYTES
    assert manager.check_model_exists("tiny")
    assert progress[-1] == (5000, 5000)
    assert [done for done, _ in progress] == sorted(done for done, _ in progress)
    assert not path.with_name(path.name + ".download").exists()


def test_acquire_is_idempotent_when_installed(tmp_path: Path) -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        return httpx.Response(500)

    manager = _manager(tmp_path, handler)
    manager.model_path("tiny").write_bytes(MODEL_BYTES)

    assert manager.acquire("tiny") == manager.model_path("tiny")
    assert calls == []


def test_interrupted_download_retries_without_exposing_partial_file(tmp_path: Path) -> None:
    attempts: list[int] = []
    manager: ModelManager

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/":
            return httpx.Response(200)
        attempts.append(1)
        if len(attempts) == 1:
            return _model_response(MODEL_BYTES[:2000], total=len(MODEL_BYTES))
        assert not manager.check_model_exists("tiny")
        assert not manager.model_path("tiny").exists()
        return _model_response()

    manager = _manager(tmp_path, handler)
    path = manager.acquire("tiny")

    assert len(attempts) == 2
    assert path.read_bytes() == MODEL_BYTES


def test_failed_download_leaves_no_asset(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/":
            return httpx.Response(200)
        return _model_response(MODEL_BYTES[:2000], total=len(MODEL_BYTES))

    manager = _manager(tmp_path, handler)

    with pytest.raises(IncompleteDownload):
        manager.acquire("tiny")

    assert not manager.check_model_exists("tiny")
    assert list((tmp_path / "models").iterdir()) == []
    assert "tiny" in manager.last_errors


def test_not_found_is_not_retried(tmp_path: Path) -> None:
    attempts: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/":
            return httpx.Response(200)
        attempts.append(1)
        return httpx.Response(404)

    manager = _manager(tmp_path, handler)

    with pytest.raises(NotFound):
        manager.acquire("tiny")
    assert len(attempts) == 1


def test_unreachable_host_fails_preflight(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    manager = _manager(tmp_path, handler, max_attempts=1)

    with pytest.raises(NetworkUnreachable):
        manager.acquire("tiny")


def test_too_many_redirects(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/":
            return httpx.Response(200)
        return httpx.Response(302, headers={"location": f"{request.url.path}x"})

    manager = _manager(tmp_path, handler)

    with pytest.raises(TooManyRedirects):
        manager.acquire("tiny")


def test_redirects_within_limit_are_followed(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/":
            return httpx.Response(200)
        if request.url.path.count("x") < 3:
            return httpx.Response(302, headers={"location": f"{request.url.path}x"})
        return _model_response()

    manager = _manager(tmp_path, handler)

    assert manager.acquire("tiny").read_bytes() == MODEL_BYTES


def test_stalled_transfer_is_detected(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/":
            return httpx.Response(200)
        return _model_response(delay=0.5)

    manager = _manager(tmp_path, handler, stall_timeout_seconds=0.2, max_attempts=1)

    with pytest.raises(StalledTransfer):
        manager.acquire("tiny")
    assert not manager.model_path("tiny").exists()


def test_concurrent_acquire_rejected(tmp_path: Path) -> None:
    release = threading.Event()
    started = threading.Event()

    def slow_chunks() -> Iterator[bytes]:
        started.set()
        release.wait(5)
        yield from _chunks(MODEL_BYTES)

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/":
            return httpx.Response(200)
        return httpx.Response(200, headers={"content-length": str(len(MODEL_BYTES))}, content=slow_chunks())

    manager = _manager(tmp_path, handler, stall_timeout_seconds=10.0)
    results: list[object] = []
    worker = threading.Thread(target=lambda: results.append(manager.acquire("tiny")))
    worker.start()
    assert started.wait(5)

    with pytest.raises(AlreadyInProgress):
        manager.acquire("tiny")
    assert manager.is_downloading("tiny")

    release.set()
    worker.join(5)
    assert results == [manager.model_path("tiny")]
    assert manager.check_model_exists("tiny")
    assert not manager.is_downloading("tiny")


def test_cancel_stops_download_without_retry(tmp_path: Path) -> None:
    attempts: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/":
            return httpx.Response(200)
        attempts.append(1)
        return _model_response(delay=0.05)

    manager = _manager(tmp_path, handler)
    token = CancellationToken()

    with pytest.raises(JobCancelled):
        manager.acquire("tiny", lambda done, _: token.cancel() if done >= 1000 else None, cancel=token)

    assert len(attempts) == 1
    assert list((tmp_path / "models").iterdir()) == []


def test_list_models_reports_catalogue(tmp_path: Path) -> None:
    manager = _manager(tmp_path, lambda _: httpx.Response(500))
    manager.model_path("base").write_bytes(MODEL_BYTES)

    models = {info.size: info for info in manager.list_models()}

    assert set(models) == {"tiny", "base", "small", "medium", "large"}
    assert models["base"].installed is True
    assert models["tiny"].installed is False
    assert models["large"].url.endswith("ggml-large-v3.bin")


def test_unknown_size_is_not_found(tmp_path: Path) -> None:
    manager = _manager(tmp_path, lambda _: httpx.Response(500))

    with pytest.raises(NotFound):
        manager.model_path("huge")


def test_short_body_is_incomplete_download(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/":
            return httpx.Response(200)
        return _model_response(MODEL_BYTES[:3000], total=len(MODEL_BYTES))

    manager = _manager(tmp_path, handler, max_attempts=1)

    with pytest.raises(IncompleteDownload, match="3000 of 5000"):
        manager.acquire("tiny")
    assert list((tmp_path / "models").iterdir()) == []


def test_reachable_host_with_server_error_is_not_reported_unreachable(tmp_path: Path) -> None:
    paths: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        return httpx.Response(503)

    manager = _manager(tmp_path, handler, max_attempts=2)

    with pytest.raises(ServerError, match="reachable"):
        manager.acquire("tiny")
    assert paths == ["/", "/"]


def test_install_failure_after_bounded_retries(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    moves: list[object] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/":
            return httpx.Response(200)
        return _model_response()

    def refuse(src: object, dst: object) -> None:
        moves.append(dst)
        raise PermissionError(errno.EACCES, "file is locked")

    manager = _manager(tmp_path, handler, install_retries=3)
    monkeypatch.setattr("audio_notes.services.models.os.replace", refuse)

    with pytest.raises(InstallFailed, match="Permission denied"):
        manager.acquire("tiny")

    assert len(moves) == 3
    assert list((tmp_path / "models").iterdir()) == []


def _preflight_ok(conn: socket.socket) -> None:
    conn.sendall(b"HTTP/1.1 200 OK\r\nContent-Length: 0\r\nConnection: close\r\n\r\n")


def test_cancel_interrupts_stalled_socket_read(tmp_path: Path, raw_http_server) -> None:
    def respond(path: str, conn: socket.socket, release: threading.Event) -> None:
        if path == "/":
            _preflight_ok(conn)
            return
        conn.sendall(b"HTTP/1.1 200 OK\r\nContent-Length: 10000000\r\n\r\n" + b"m" * 2_000_000)
        release.wait(30)

    base_url = raw_http_server(respond)
    manager = ModelManager(
        tmp_path / "models",
        connect_timeout_seconds=8.0,
        stall_timeout_seconds=8.0,
        retry_backoff_seconds=0.0,
        base_url=f"{base_url}/models",
        transport=httpx.HTTPTransport(),
    )
    token = CancellationToken()
    threading.Timer(0.5, token.cancel).start()
    started = time.monotonic()

    with pytest.raises(JobCancelled):
        manager.acquire("tiny", cancel=token)

    assert time.monotonic() - started < 2.0
    assert list((tmp_path / "models").iterdir()) == []
    assert not manager.is_downloading("tiny")


def test_connect_clock_fires_when_headers_never_arrive(tmp_path: Path, raw_http_server) -> None:
    def respond(path: str, conn: socket.socket, release: threading.Event) -> None:
        if path == "/":
            _preflight_ok(conn)
            return
        release.wait(30)

    base_url = raw_http_server(respond)
    manager = ModelManager(
        tmp_path / "models",
        connect_timeout_seconds=1.0,
        stall_timeout_seconds=8.0,
        max_attempts=1,
        base_url=f"{base_url}/models",
        transport=httpx.HTTPTransport(),
    )
    started = time.monotonic()

    with pytest.raises(ConnectionTimeout, match="within 1 seconds"):
        manager.acquire("tiny")

    assert time.monotonic() - started < 3.0
    assert "tiny" in manager.last_errors
