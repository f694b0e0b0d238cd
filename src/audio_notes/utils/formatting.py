from __future__ import annotations

import math

AUDIO_EXTENSIONS = ("m4a", "mp3", "wav", "ogg", "flac", "webm", "mp4")

# Local engine processing time as a multiple of audio duration.
REALTIME_MULTIPLIERS = {
    "tiny": 0.15,
    "base": 0.2,
    "small": 0.35,
    "medium": 0.5,
    "large": 0.8,
}
CLOUD_REALTIME_MULTIPLIER = 0.1


def is_audio_file(filename: str) -> bool:
    _, dot, ext = filename.rpartition(".")
    return bool(dot) and ext.lower() in AUDIO_EXTENSIONS


def format_timestamp(seconds: float) -> str:
    whole = int(max(seconds, 0))
    hours, rem = divmod(whole, 3600)
    minutes, secs = divmod(rem, 60)
    if hours > 0:
        return f"{hours:02d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def format_duration(seconds: float) -> str:
    whole = int(max(seconds, 0))
    hours, rem = divmod(whole, 3600)
    minutes, secs = divmod(rem, 60)
    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def parse_clock(hours: str, minutes: str, seconds: str) -> float:
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


def estimate_transcription_time(duration_seconds: float, model_size: str, is_local: bool) -> float:
    if not is_local:
        return duration_seconds * CLOUD_REALTIME_MULTIPLIER
    return duration_seconds * REALTIME_MULTIPLIERS.get(model_size, 0.5)


def _plural(count: int, unit: str) -> str:
    return f"{count} {unit}{'s' if count > 1 else ''}"


def format_estimated_time(seconds: float) -> str:
    if seconds < 60:
        return f"~{math.ceil(seconds)} seconds"

    minutes = math.ceil(seconds / 60)
    if minutes < 60:
        return f"~{_plural(minutes, 'minute')}"

    hours, remaining = divmod(minutes, 60)
    if remaining == 0:
        return f"~{_plural(hours, 'hour')}"
    return f"~{_plural(hours, 'hour')} {_plural(remaining, 'minute')}"
