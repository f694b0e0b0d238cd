from __future__ import annotations

import errno
from enum import Enum

import httpx


class ErrorKind(str, Enum):
    CONFIGURATION = "configuration"
    TRANSIENT = "transient"
    RESOURCE = "resource"
    CANCELLED = "cancelled"
    FATAL = "fatal"


class AudioNotesError(RuntimeError):
    """Base failure carrying the kind the orchestrator classifies on."""

    kind: ErrorKind = ErrorKind.FATAL

    def __init__(self, detail: str, *, hint: str | None = None) -> None:
        message = detail if hint is None else f"{detail}\n\nSolution: {hint}"
        super().__init__(message)
        self.detail = detail
        self.hint = hint


# Configuration


class ConfigurationError(AudioNotesError):
    kind = ErrorKind.CONFIGURATION


class CredentialMissing(ConfigurationError):
    pass


class InvalidCredential(ConfigurationError):
    pass


class EngineMissing(ConfigurationError):
    pass


class EngineDependencyMissing(ConfigurationError):
    def __init__(self, exit_code: int, stderr: str) -> None:
        super().__init__(
            f"Speech engine could not start: a runtime library is missing (exit code {exit_code}).",
            hint="Install the engine's runtime dependencies or use a build matching this platform.",
        )
        self.exit_code = exit_code
        self.stderr = stderr


class ModelMissing(ConfigurationError):
    pass


class ConversionUnavailable(ConfigurationError):
    pass


class InvalidAudioSource(ConfigurationError):
    pass


class Unauthorized(ConfigurationError):
    pass


class NotFound(ConfigurationError):
    pass


class PayloadTooLarge(ConfigurationError):
    pass


class TooManyRedirects(ConfigurationError):
    pass


class AlreadyInProgress(ConfigurationError):
    pass


# Transient


class TransientError(AudioNotesError):
    kind = ErrorKind.TRANSIENT


class RateLimited(TransientError):
    pass


class NetworkError(TransientError):
    pass


class NetworkUnreachable(TransientError):
    pass


class ServerError(TransientError):
    pass


class ConnectionTimeout(TransientError):
    pass


class StalledTransfer(TransientError):
    def __init__(self, seconds: float) -> None:
        super().__init__(f"Download stalled - no data received for {round(seconds)} seconds")
        self.seconds = seconds


class IncompleteDownload(TransientError):
    pass


# Resource


class ResourceError(AudioNotesError):
    kind = ErrorKind.RESOURCE


class InstallFailed(ResourceError):
    pass


class StorageError(ResourceError):
    pass


class SaveFailed(ResourceError):
    pass


# Fatal


class ConversionFailed(AudioNotesError):
    def __init__(self, detail: str, diagnostics: str = "") -> None:
        text = detail if not diagnostics.strip() else f"{detail}\n{diagnostics.strip()}"
        super().__init__(text)
        self.diagnostics = diagnostics


class EngineCrashed(AudioNotesError):
    def __init__(self, exit_code: int, stderr: str) -> None:
        super().__init__(f"Speech engine exited with code {exit_code}: {stderr.strip()[:2000]}")
        self.exit_code = exit_code
        self.stderr = stderr


class RemoteError(AudioNotesError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class MalformedResponse(AudioNotesError):
    pass


class EmptyTranscript(AudioNotesError):
    pass


# Cancellation


class JobCancelled(AudioNotesError):
    kind = ErrorKind.CANCELLED

    def __init__(self, detail: str = "Cancelled by user") -> None:
        super().__init__(detail)


def classify(exc: BaseException) -> ErrorKind:
    if isinstance(exc, AudioNotesError):
        return exc.kind
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return ErrorKind.TRANSIENT
    if isinstance(exc, OSError):
        return ErrorKind.RESOURCE
    return ErrorKind.FATAL


def is_retryable(exc: BaseException) -> bool:
    return classify(exc) is ErrorKind.TRANSIENT


def describe_os_error(exc: OSError) -> str:
    if exc.errno == errno.ENOSPC:
        return "Not enough disk space"
    if exc.errno in (errno.EACCES, errno.EPERM) or isinstance(exc, PermissionError):
        return "Permission denied - check antivirus or folder permissions"
    return exc.strerror or str(exc)


def error_payload(exc: BaseException) -> dict[str, str | None]:
    kind = classify(exc)
    if isinstance(exc, AudioNotesError):
        return {"kind": kind.value, "detail": exc.detail, "hint": exc.hint, "type": type(exc).__name__}
    return {"kind": kind.value, "detail": str(exc) or type(exc).__name__, "hint": None, "type": type(exc).__name__}
