from __future__ import annotations

import logging
import re
from typing import Any, Protocol

import httpx

from audio_notes.cancellation import CancellationToken, InterruptibleCall
from audio_notes.config import Settings
from audio_notes.errors import MalformedResponse, NetworkError
from audio_notes.services.transcriber import raise_for_api_status
from audio_notes.types import AnalysisResult

logger = logging.getLogger(__name__)

ANALYSIS_PROMPT = """You are an expert at analyzing meeting transcriptions and extracting actionable insights.

Your task is to analyze the provided transcription and extract the following information:

1. **Summary**: A brief 2-3 sentence overview of the main topics discussed
2. **Key Points**: A bulleted list of the most important points, decisions, or topics
3. **Action Items**: Specific tasks or actions that were assigned or need to be done (format as checkbox items with assignee if mentioned)
4. **Follow-up Questions**: Any unresolved questions or topics that need further discussion

Format your response as follows:

## Summary
[Your summary here]

## Key Points
- [Point 1]
- [Point 2]

## Action Items
- [ ] [Task 1] (@assignee if mentioned)
- [ ] [Task 2]

## Follow-up Questions
- [Question 1]
- [Question 2]
"""

HEADING_RE = re.compile(r"^\s{0,3}#{1,6}\s*(.+?)\s*#*\s*$", re.MULTILINE)
BULLET_RE = re.compile(r"^\s*(?:[-*+]|\d+[.)])\s+(.+?)\s*$")
CHECKBOX_RE = re.compile(r"^\s*[-*+]\s+\[[ xX]?\]\s+(.+?)\s*$")

SECTION_ALIASES = {
    "summary": ("summary",),
    "key_points": ("key points", "key point", "highlights"),
    "action_items": ("action items", "action item", "tasks"),
    "follow_ups": ("follow-up questions", "follow-up question", "follow-ups", "follow ups", "follow-up"),
}


class Analyzer(Protocol):
    def analyze(
        self,
        transcript_text: str,
        custom_instructions: str = "",
        *,
        cancel: CancellationToken | None = None,
    ) -> AnalysisResult:
        """Derive summary, key points, action items and follow-ups."""


def build_analysis_prompt(custom_instructions: str = "") -> str:
    prompt = ANALYSIS_PROMPT
    if custom_instructions.strip():
        prompt += f"\n\nAdditional Instructions:\n{custom_instructions}\n"
    return prompt


def _split_sections(content: str) -> dict[str, str]:
    sections: dict[str, str] = {}
    headings = list(HEADING_RE.finditer(content))
    for index, heading in enumerate(headings):
        title = heading.group(1).strip().strip("*").strip().rstrip(":").lower()
        end = headings[index + 1].start() if index + 1 < len(headings) else len(content)
        body = content[heading.end() : end]
        for key, aliases in SECTION_ALIASES.items():
            if key not in sections and title in aliases:
                sections[key] = body
    return sections


def _bullets(body: str) -> list[str]:
    items: list[str] = []
    for line in body.splitlines():
        match = BULLET_RE.match(line)
        if match:
            items.append(match.group(1).strip())
    return items


def _checkboxes(body: str) -> list[str]:
    items = [m.group(1).strip() for m in map(CHECKBOX_RE.match, body.splitlines()) if m]
    # Models sometimes drop the checkbox; plain bullets are still action items.
    return items or _bullets(body)


def parse_analysis(content: str) -> AnalysisResult:
    """Extract the four labelled sections; a missing section yields an empty field."""
    sections = _split_sections(content)
    return AnalysisResult(
        summary=sections.get("summary", "").strip(),
        key_points=_bullets(sections.get("key_points", "")),
        action_items=_checkboxes(sections.get("action_items", "")),
        follow_ups=_bullets(sections.get("follow_ups", "")),
    )


class OpenRouterAnalyzer:
    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        url: str = "https://openrouter.ai/api/v1/chat/completions",
        timeout_seconds: float = 600.0,
        temperature: float = 0.7,
        max_tokens: int = 2000,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.transport = transport

    def build_request(self, transcript_text: str, custom_instructions: str = "") -> dict[str, Any]:
        return {
            "model": self.model,
            "messages": [
                {"role": "system", "content": build_analysis_prompt(custom_instructions)},
                {"role": "user", "content": f"Please analyze this transcription:\n\n{transcript_text}"},
            ],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }

    def analyze(
        self,
        transcript_text: str,
        custom_instructions: str = "",
        *,
        cancel: CancellationToken | None = None,
    ) -> AnalysisResult:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "X-Title": "audio-notes-mcp",
        }
        request_payload = self.build_request(transcript_text, custom_instructions)
        with httpx.Client(timeout=self.timeout_seconds, transport=self.transport) as client:
            try:
                response = InterruptibleCall(cancel, name="openrouter-request").run(
                    lambda: client.post(self.url, headers=headers, json=request_payload),
                    on_abandon=client.close,
                    cancel_message="Analysis request aborted",
                )
            except httpx.TimeoutException as exc:
                raise NetworkError("Analysis request timed out") from exc
            except httpx.TransportError as exc:
                raise NetworkError(f"Network error: unable to reach analysis API ({exc})") from exc

        raise_for_api_status(response, service="OpenRouter")

        try:
            payload = response.json()
        except ValueError as exc:
            raise MalformedResponse(f"OpenRouter returned a non-JSON body: {response.text[:400]}") from exc

        content = _first_message_content(payload)
        if content is None:
            raise MalformedResponse("OpenRouter response has no message content")
        logger.info("Analysis response received (%s chars)", len(content))
        return parse_analysis(content)


def _first_message_content(payload: object) -> str | None:
    if not isinstance(payload, dict):
        return None
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    message = choices[0].get("message")
    if not isinstance(message, dict):
        return None
    content = message.get("content")
    return content if isinstance(content, str) else None


def build_analyzer(settings: Settings) -> Analyzer:
    return OpenRouterAnalyzer(
        api_key=settings.openrouter_api_key,
        model=settings.openrouter_model,
        url=settings.openrouter_url,
        timeout_seconds=settings.request_timeout_seconds,
    )
