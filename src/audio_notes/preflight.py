from __future__ import annotations

import logging
from typing import Any

from audio_notes.config import Settings
from audio_notes.services.audio import resolve_binary
from audio_notes.services.models import ModelManager

logger = logging.getLogger(__name__)


def _binary_report(command: str) -> dict[str, Any]:
    resolved = resolve_binary(command)
    return {"command": command, "found": resolved is not None, "path": resolved}


def _key_report(key: str, prefix: str) -> dict[str, Any]:
    # Only shape is reported, never the key itself.
    return {"configured": bool(key), "valid_format": bool(key) and key.startswith(prefix)}


def run_doctor(settings: Settings, models: ModelManager) -> dict[str, Any]:
    installed = [info.size for info in models.list_models() if info.installed]
    report: dict[str, Any] = {
        "processing_mode": settings.processing_mode,
        "model_size": settings.model_size,
        "ffmpeg": _binary_report(settings.ffmpeg_binary),
        "ffprobe": _binary_report(settings.ffprobe_binary),
        "whisper": _binary_report(settings.whisper_binary),
        "models_dir": str(models.models_dir),
        "installed_models": installed,
        "selected_model_installed": settings.model_size in installed,
        "openai_key": _key_report(settings.openai_api_key, "sk-"),
        "openrouter_key": _key_report(settings.openrouter_api_key, "sk-or-"),
        "openrouter_model": settings.openrouter_model,
        "output_dir": str(settings.output_dir),
    }
    report["errors"] = preflight_errors(report)
    report["ok"] = not report["errors"]
    return report


def preflight_errors(report: dict[str, Any]) -> list[str]:
    """Actionable problems that would stop a job in the current mode."""
    errors: list[str] = []
    if report["processing_mode"] == "local":
        if not report["whisper"]["found"]:
            errors.append(
                f"Whisper engine '{report['whisper']['command']}' not found. "
                "Build whisper.cpp and set WHISPER_BINARY, or use PROCESSING_MODE=cloud-whisper."
            )
        if not report["selected_model_installed"]:
            errors.append(
                f"Model '{report['model_size']}' is not installed in {report['models_dir']}. "
                "Run the download_model tool."
            )
    elif not report["openai_key"]["configured"]:
        errors.append("OPENAI_API_KEY is not set; cloud transcription needs it.")
    elif not report["openai_key"]["valid_format"]:
        errors.append("OPENAI_API_KEY has an unexpected format (should start with 'sk-').")

    if not report["ffmpeg"]["found"]:
        errors.append(
            "ffmpeg not found; only 16 kHz mono WAV input can be transcribed. "
            "Install ffmpeg or set FFMPEG_BINARY."
        )
    if not report["openrouter_key"]["configured"]:
        errors.append("OPENROUTER_API_KEY is not set; jobs must be submitted with analyze=false.")
    elif not report["openrouter_key"]["valid_format"]:
        errors.append("OPENROUTER_API_KEY has an unexpected format (should start with 'sk-or-').")
    if not report["openrouter_model"]:
        errors.append("OPENROUTER_MODEL is empty.")
    return errors


def log_preflight(settings: Settings, models: ModelManager) -> None:
    for problem in run_doctor(settings, models)["errors"]:
        logger.warning("Preflight: %s", problem)
