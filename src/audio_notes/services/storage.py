from __future__ import annotations

import json
import logging
import os
import re
import uuid
from pathlib import Path

from audio_notes.errors import SaveFailed, describe_os_error
from audio_notes.types import DocumentFields, SavedDocument, TranscriptResult
from audio_notes.utils.formatting import format_duration, format_timestamp

logger = logging.getLogger(__name__)

TOC_MIN_DURATION_SECONDS = 600


def _sanitize_path_component(value: str, fallback: str) -> str:
    clean = re.sub(r"[^\w. -]+", "_", value.strip())
    clean = clean.strip("._ ")
    return clean or fallback


def _quote(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _frontmatter(fields: DocumentFields) -> list[str]:
    tags = ", ".join(fields.tags)
    return [
        "---",
        f"audio_file: {_quote(fields.source_filename)}",
        f"duration: {_quote(format_duration(fields.duration))}",
        f"transcribed_date: {fields.transcribed_at}",
        f"language: {_quote(fields.language)}",
        f"speakers: {fields.speaker_count}",
        f"tags: [{tags}]",
        "---",
        "",
    ]


def _transcript_lines(transcript: TranscriptResult, include_timestamps: bool) -> list[str]:
    if not include_timestamps or not transcript.segments:
        return [transcript.text.strip(), ""]

    lines: list[str] = []
    for segment in transcript.segments:
        speaker = f"**Speaker {segment.speaker}:** " if segment.speaker is not None else ""
        lines.append(f"[{format_timestamp(segment.start)}] {speaker}{segment.text.strip()}")
        lines.append("")
    return lines


def to_markdown(fields: DocumentFields) -> str:
    lines = _frontmatter(fields)
    analysis = fields.analysis

    lines.append(f"# {fields.title}")
    lines.append("")
    lines.append(
        f"> Audio Transcription | {format_duration(fields.duration)} | {fields.language.upper()}"
    )
    lines.append("")

    if fields.diarization_requested:
        lines.extend(
            [
                "> **Speaker Labels**",
                "> To rename speakers, use Find & Replace:",
                "> - Find: `**Speaker 1:**` → Replace with: `**Alice:**`",
                "> - Find: `**Speaker 2:**` → Replace with: `**Bob:**`",
                "",
            ]
        )

    if fields.duration > TOC_MIN_DURATION_SECONDS:
        lines.append("## Table of Contents")
        lines.append("")
        if analysis is not None:
            lines.append("- [Summary](#summary)")
            lines.append("- [Key Points](#key-points)")
            if analysis.action_items:
                lines.append("- [Action Items](#action-items)")
            if analysis.follow_ups:
                lines.append("- [Follow-up Questions](#follow-up-questions)")
        lines.append("- [Full Transcription](#full-transcription)")
        lines.append("")
        lines.append("---")
        lines.append("")

    if analysis is None:
        if fields.analysis_error:
            lines.append("> **Analysis unavailable**")
            lines.append(f"> {fields.analysis_error.splitlines()[0]}")
            lines.append("")
    else:
        lines.extend(["## Summary", "", analysis.summary.strip(), ""])
        lines.extend(["## Key Points", ""])
        lines.extend(f"- {point}" for point in analysis.key_points)
        lines.append("")
        if analysis.action_items:
            lines.extend(["## Action Items", ""])
            lines.extend(f"- [ ] {item}" for item in analysis.action_items)
            lines.append("")
        if analysis.follow_ups:
            lines.extend(["## Follow-up Questions", ""])
            lines.extend(f"- {question}" for question in analysis.follow_ups)
            lines.append("")

    lines.extend(["## Full Transcription", ""])
    lines.extend(_transcript_lines(fields.transcript, fields.include_timestamps))
    return "\n".join(lines).rstrip() + "\n"


def transcript_payload(transcript: TranscriptResult) -> dict[str, object]:
    return {
        "text": transcript.text,
        "language": transcript.language,
        "duration": transcript.duration,
        "speakers": (
            None
            if transcript.speakers is None
            else [{"id": speaker.id, "label": speaker.label} for speaker in transcript.speakers]
        ),
        "segments": [
            {
                "start": segment.start,
                "end": segment.end,
                "speaker": segment.speaker,
                "text": segment.text,
            }
            for segment in transcript.segments
        ],
    }


def _write_atomic(path: Path, content: str) -> None:
    temp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex[:8]}.tmp")
    try:
        temp_path.write_text(content, encoding="utf-8")
        os.replace(temp_path, path)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise


class StorageService:
    def __init__(self, output_dir: Path) -> None:
        self.output_dir = output_dir
        self.output_dir.mkdir(parents=True, exist_ok=True)

    def _reserve_stem(self, stem: str) -> str:
        """Claim the first free note name by creating it exclusively."""
        candidate = stem
        counter = 1
        while True:
            try:
                with (self.output_dir / f"{candidate}.md").open("x", encoding="utf-8"):
                    return candidate
            except FileExistsError:
                counter += 1
                candidate = f"{stem} ({counter})"

    def persist(self, fields: DocumentFields) -> SavedDocument:
        base = _sanitize_path_component(Path(fields.source_filename).stem, "transcript")
        try:
            stem = self._reserve_stem(base)
        except OSError as exc:
            raise SaveFailed(f"Could not save document {base}.md: {describe_os_error(exc)}") from exc
        markdown_path = self.output_dir / f"{stem}.md"
        transcript_json_path = self.output_dir / f"{stem}.transcript.json"

        try:
            _write_atomic(
                transcript_json_path,
                json.dumps(transcript_payload(fields.transcript), indent=2, ensure_ascii=False),
            )
            _write_atomic(markdown_path, to_markdown(fields))
        except OSError as exc:
            transcript_json_path.unlink(missing_ok=True)
            markdown_path.unlink(missing_ok=True)
            raise SaveFailed(f"Could not save document {markdown_path.name}: {describe_os_error(exc)}") from exc

        logger.info("Saved document %s", markdown_path)
        return SavedDocument(markdown_path=markdown_path, transcript_json_path=transcript_json_path)
