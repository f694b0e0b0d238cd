from __future__ import annotations

import logging
import os
import socket
import time
from pathlib import Path
from threading import Lock, Timer
from typing import Any, Callable
from urllib.parse import urlsplit

import httpx

from audio_notes.cancellation import CancellationToken, InterruptibleCall
from audio_notes.errors import (
    AlreadyInProgress,
    AudioNotesError,
    ConnectionTimeout,
    ErrorKind,
    IncompleteDownload,
    InstallFailed,
    JobCancelled,
    NetworkError,
    NetworkUnreachable,
    NotFound,
    RemoteError,
    ServerError,
    StalledTransfer,
    StorageError,
    TooManyRedirects,
    Unauthorized,
    classify,
    describe_os_error,
)
from audio_notes.types import MODEL_SIZES, DownloadProgressCallback, ModelInfo

logger = logging.getLogger(__name__)

MODEL_BASE_URL = "https://huggingface.co/ggerganov/whisper.cpp/resolve/main"
MODEL_FILES = {
    "tiny": "ggml-tiny.bin",
    "base": "ggml-base.bin",
    "small": "ggml-small.bin",
    "medium": "ggml-medium.bin",
    "large": "ggml-large-v3.bin",
}
EXPECTED_BYTES = {
    "tiny": 75 * 1024 * 1024,
    "base": 142 * 1024 * 1024,
    "small": 466 * 1024 * 1024,
    "medium": int(1.5 * 1024 * 1024 * 1024),
    "large": int(2.9 * 1024 * 1024 * 1024),
}
MIN_VALID_BYTES = 1_000_000
MAX_REDIRECTS = 5
PREFLIGHT_TIMEOUT_SECONDS = 10.0
CHUNK_SIZE = 256 * 1024


class _TransferWatchdog:
    """Two independent clocks for one transfer.

    The connect clock runs until response headers arrive. The stall clock is
    re-armed by every chunk; it fires only after ``stall_timeout`` seconds with
    no data, however long the transfer has been running overall.
    """

    def __init__(
        self,
        connect_timeout: float,
        stall_timeout: float,
        abort: Callable[[AudioNotesError], None],
    ) -> None:
        self.connect_timeout = connect_timeout
        self.stall_timeout = stall_timeout
        self._abort = abort
        self._lock = Lock()
        self._connect_timer: Timer | None = None
        self._stall_timer: Timer | None = None
        self._last_progress = time.monotonic()
        self._stopped = False
        self.fired: str | None = None
        self.stalled_for = 0.0

    def start(self) -> None:
        with self._lock:
            self._connect_timer = Timer(self.connect_timeout, self._fire, args=("connect",))
            self._connect_timer.daemon = True
            self._connect_timer.start()

    def headers_received(self) -> None:
        with self._lock:
            if self._connect_timer is not None:
                self._connect_timer.cancel()
                self._connect_timer = None
            self._last_progress = time.monotonic()
            self._arm_stall(self.stall_timeout)

    def chunk_received(self) -> None:
        # Cheap reset: the armed timer re-checks this timestamp when it fires.
        self._last_progress = time.monotonic()

    def _arm_stall(self, delay: float) -> None:
        if self._stopped:
            return
        self._stall_timer = Timer(max(delay, 0.01), self._check_stall)
        self._stall_timer.daemon = True
        self._stall_timer.start()

    def _check_stall(self) -> None:
        with self._lock:
            if self._stopped or self.fired:
                return
            idle = time.monotonic() - self._last_progress
            if idle < self.stall_timeout:
                self._arm_stall(self.stall_timeout - idle)
                return
        self._fire("stall")

    def _fire(self, reason: str) -> None:
        with self._lock:
            if self._stopped or self.fired:
                return
            self.fired = reason
            self.stalled_for = time.monotonic() - self._last_progress
        logger.error("Transfer aborted by %s timeout", reason)
        self._abort(self.error())

    def stop(self) -> None:
        with self._lock:
            self._stopped = True
            for timer in (self._connect_timer, self._stall_timer):
                if timer is not None:
                    timer.cancel()

    def error(self) -> AudioNotesError:
        if self.fired == "connect":
            return ConnectionTimeout(
                f"Connection timeout - no response from server within {round(self.connect_timeout)} seconds"
            )
        return StalledTransfer(max(self.stalled_for, self.stall_timeout))


class ModelManager:
    """Acquires and validates local speech model files.

    One acquisition per model size may be in flight; a concurrent request for
    the same size is rejected with ``AlreadyInProgress``.
    """

    def __init__(
        self,
        models_dir: Path,
        *,
        connect_timeout_seconds: float = 30.0,
        stall_timeout_seconds: float = 120.0,
        max_attempts: int = 2,
        retry_backoff_seconds: float = 2.0,
        install_retries: int = 3,
        install_retry_delay_seconds: float = 1.0,
        min_valid_bytes: int = MIN_VALID_BYTES,
        base_url: str = MODEL_BASE_URL,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.models_dir = models_dir
        self.models_dir.mkdir(parents=True, exist_ok=True)
        self.connect_timeout_seconds = connect_timeout_seconds
        self.stall_timeout_seconds = stall_timeout_seconds
        self.max_attempts = max(1, max_attempts)
        self.retry_backoff_seconds = retry_backoff_seconds
        self.install_retries = max(1, install_retries)
        self.install_retry_delay_seconds = install_retry_delay_seconds
        self.min_valid_bytes = min_valid_bytes
        self.base_url = base_url.rstrip("/")
        self.transport = transport
        self._lock = Lock()
        self._in_flight: set[str] = set()
        self.last_errors: dict[str, str] = {}

    @staticmethod
    def _check_size(size: str) -> str:
        if size not in MODEL_FILES:
            raise NotFound(
                f"Unknown model size '{size}'",
                hint=f"Choose one of: {', '.join(MODEL_SIZES)}.",
            )
        return size

    def model_path(self, size: str) -> Path:
        return self.models_dir / MODEL_FILES[self._check_size(size)]

    def model_url(self, size: str) -> str:
        return f"{self.base_url}/{MODEL_FILES[self._check_size(size)]}"

    def check_model_exists(self, size: str) -> bool:
        path = self.model_path(size)
        try:
            return path.is_file() and path.stat().st_size > self.min_valid_bytes
        except OSError:
            return False

    def is_downloading(self, size: str) -> bool:
        with self._lock:
            return size in self._in_flight

    def list_models(self) -> list[ModelInfo]:
        return [
            ModelInfo(
                size=size,
                installed=self.check_model_exists(size),
                downloading=self.is_downloading(size),
                expected_bytes=EXPECTED_BYTES[size],
                path=self.model_path(size),
                url=self.model_url(size),
            )
            for size in MODEL_SIZES
        ]

    def acquire(
        self,
        size: str,
        on_progress: DownloadProgressCallback | None = None,
        *,
        cancel: CancellationToken | None = None,
    ) -> Path:
        path = self.model_path(size)
        if self.check_model_exists(size):
            return path

        with self._lock:
            if size in self._in_flight:
                raise AlreadyInProgress(f"Download of {size} model is already in progress")
            self._in_flight.add(size)

        try:
            attempt = 1
            while True:
                try:
                    if attempt > 1:
                        logger.info("Retrying %s model download (attempt %s/%s)", size, attempt, self.max_attempts)
                    self._attempt(size, on_progress, cancel)
                    self.last_errors.pop(size, None)
                    logger.info("%s model installed at %s", size, path)
                    return path
                except JobCancelled:
                    logger.info("Download of %s model cancelled", size)
                    raise
                except AudioNotesError as exc:
                    logger.warning("Download attempt %s for %s failed: %s", attempt, size, exc.detail)
                    transient = classify(exc) is ErrorKind.TRANSIENT
                    if not transient or attempt >= self.max_attempts:
                        self.last_errors[size] = exc.detail
                        if transient:
                            self._log_manual_instructions(size)
                        raise
                attempt += 1
                if cancel is not None:
                    if cancel.wait(self.retry_backoff_seconds):
                        raise JobCancelled("Download cancelled by user")
                else:
                    time.sleep(self.retry_backoff_seconds)
        finally:
            with self._lock:
                self._in_flight.discard(size)

    def _attempt(
        self,
        size: str,
        on_progress: DownloadProgressCallback | None,
        cancel: CancellationToken | None,
    ) -> None:
        url = self.model_url(size)
        final_path = self.model_path(size)
        temp_path = final_path.with_name(final_path.name + ".download")
        try:
            self._preflight(url, cancel)
            downloaded = self._stream_to_file(url, temp_path, on_progress, cancel)
            if downloaded <= self.min_valid_bytes:
                raise RemoteError(
                    f"Downloaded file for {size} model is only {downloaded} bytes; expected a model binary"
                )
            self._install(temp_path, final_path)
        except BaseException:
            temp_path.unlink(missing_ok=True)
            raise

    def _preflight(self, url: str, cancel: CancellationToken | None) -> None:
        parts = urlsplit(url)
        root = f"{parts.scheme}://{parts.netloc}/"
        client = httpx.Client(timeout=PREFLIGHT_TIMEOUT_SECONDS, transport=self.transport)
        try:
            call = InterruptibleCall(cancel, name="model-preflight")
            response = call.run(
                lambda: client.get(root),
                on_abandon=client.close,
                cancel_message="Download cancelled by user",
            )
        except httpx.HTTPError as exc:
            raise NetworkUnreachable(
                f"Cannot reach {parts.netloc}: {exc}",
                hint="Check firewall/antivirus or proxy settings, or download the model manually.",
            ) from exc
        finally:
            client.close()
        if response.status_code >= 500:
            raise ServerError(f"{parts.netloc} is reachable but returned a server error ({response.status_code})")

    def _stream_to_file(
        self,
        url: str,
        temp_path: Path,
        on_progress: DownloadProgressCallback | None,
        cancel: CancellationToken | None,
    ) -> int:
        timeout = httpx.Timeout(
            connect=self.connect_timeout_seconds,
            read=self.stall_timeout_seconds,
            write=self.stall_timeout_seconds,
            pool=self.connect_timeout_seconds,
        )
        client = httpx.Client(
            timeout=timeout,
            follow_redirects=True,
            max_redirects=MAX_REDIRECTS,
            transport=self.transport,
        )
        call = InterruptibleCall(cancel, name=f"model-download-{temp_path.stem}")
        watchdog = _TransferWatchdog(self.connect_timeout_seconds, self.stall_timeout_seconds, call.interrupt)
        live: dict[str, Any] = {}

        def transfer() -> int:
            downloaded = 0
            with client.stream("GET", url) as response:
                live["response"] = response
                watchdog.headers_received()
                self._raise_for_status(response, url)
                total = int(response.headers.get("content-length") or 0)
                if call.interrupted:
                    return downloaded
                with temp_path.open("wb") as out_file:
                    for chunk in response.iter_bytes(CHUNK_SIZE):
                        if call.interrupted:
                            return downloaded
                        out_file.write(chunk)
                        downloaded += len(chunk)
                        watchdog.chunk_received()
                        if on_progress is not None:
                            on_progress(downloaded, total)
            if total and downloaded < total:
                raise IncompleteDownload(f"Connection closed after {downloaded} of {total} bytes")
            return downloaded

        def release() -> None:
            response = live.get("response")
            if response is not None:
                _shutdown_socket(response)
            client.close()

        try:
            watchdog.start()
            return call.run(transfer, on_abandon=release, cancel_message="Download cancelled by user")
        except AudioNotesError:
            raise
        except httpx.TooManyRedirects as exc:
            raise TooManyRedirects(f"Too many redirects (more than {MAX_REDIRECTS}) for {url}") from exc
        except httpx.ConnectTimeout as exc:
            raise ConnectionTimeout("Connection timeout - unable to reach server") from exc
        except httpx.TimeoutException as exc:
            raise StalledTransfer(self.stall_timeout_seconds) from exc
        except httpx.HTTPError as exc:
            raise NetworkError(f"Network connection issue during download: {exc}") from exc
        except OSError as exc:
            raise StorageError(f"Cannot write {temp_path.name}: {describe_os_error(exc)}") from exc
        finally:
            watchdog.stop()
            client.close()

    @staticmethod
    def _raise_for_status(response: httpx.Response, url: str) -> None:
        status = response.status_code
        if status == 200:
            return
        if status == 404:
            raise NotFound(f"Model file not found at {url}")
        if status in (401, 403):
            raise Unauthorized(f"Access denied by model store ({status}) for {url}")
        if status >= 500:
            raise ServerError(f"HTTP {status}: {response.reason_phrase}")
        raise RemoteError(f"HTTP {status}: {response.reason_phrase}", status_code=status)

    def _install(self, temp_path: Path, final_path: Path) -> None:
        for attempt in range(1, self.install_retries + 1):
            try:
                os.replace(temp_path, final_path)
                return
            except OSError as exc:
                logger.warning("Install move failed (attempt %s/%s): %s", attempt, self.install_retries, exc)
                if attempt >= self.install_retries:
                    raise InstallFailed(f"Failed to finalize download: {describe_os_error(exc)}") from exc
                time.sleep(self.install_retry_delay_seconds)

    def _log_manual_instructions(self, size: str) -> None:
        logger.info(
            "Manual download: open %s, save it as %s and copy it to %s",
            self.model_url(size),
            MODEL_FILES[size],
            self.models_dir,
        )


def _shutdown_socket(response: httpx.Response) -> None:
    """Wake a reader blocked on ``response``'s socket."""
    stream = response.extensions.get("network_stream")
    sock = stream.get_extra_info("socket") if stream is not None else None
    if sock is None:
        return
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
