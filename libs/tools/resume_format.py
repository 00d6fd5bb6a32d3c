from __future__ import annotations

import asyncio
from typing import Optional

from libs.core import logging as core_logging
from libs.core.llm_provider import LLMProvider, LLMProviderError
from libs.core.models import FormatResult
from libs.core.resume_state import parse_json_payload

LOGGER = core_logging.get_logger("resume_format")

DEFAULT_STYLE_HINT = (
    "Ensure headings, spacing, and bullet lists follow best practices for a "
    "professional resume preview."
)
UNSTRUCTURED_SUMMARY = "Formatter returned unstructured markdown; showing the direct output."
UNCHANGED_SUMMARY = "Formatter could not adjust the markdown. Showing original content."

FORMATTER_INSTRUCTIONS = """You specialize in polishing markdown resumes so they render cleanly in preview panes.

- Work only with the markdown provided to you.
- Preserve all factual content while restructuring headings, bullet lists, spacing, and emphasis.
- Prefer concise bullet lists, consistent heading levels, and blank lines between sections.
- Avoid introducing new sections or speculative content unless explicitly instructed.
- Keep the summary short (one sentence) and highlight the biggest formatting changes."""


class FormatterError(Exception):
    def __init__(self, detail: str, status_code: int = 502) -> None:
        super().__init__(detail)
        self.detail = detail
        self.status_code = status_code


def build_format_prompt(markdown: str, style_hints: Optional[str] = None) -> str:
    return "\n".join(
        [
            "Polish the resume markdown so it renders cleanly in a professional preview.",
            f"Style guidance: {(style_hints or '').strip() or DEFAULT_STYLE_HINT}",
            "",
            "Return ONLY a JSON object with this shape (no code fences):",
            '{ "markdown": "<full rewritten markdown>", "summary": "<short change summary>" }',
            "",
            "Resume markdown:",
            markdown,
        ]
    )


def interpret_formatter_output(raw_text: str, original: str) -> FormatResult:
    text = (raw_text or "").strip()
    if not text:
        return FormatResult(markdown=original, summary=UNCHANGED_SUMMARY)
    try:
        parsed = parse_json_payload(text)
    except ValueError:
        parsed = None
    if (
        isinstance(parsed, dict)
        and isinstance(parsed.get("markdown"), str)
        and isinstance(parsed.get("summary"), str)
    ):
        return FormatResult(markdown=parsed["markdown"], summary=parsed["summary"])
    return FormatResult(markdown=text, summary=UNSTRUCTURED_SUMMARY)


async def format_resume_markdown(
    markdown: str, style_hints: Optional[str], provider: LLMProvider
) -> FormatResult:
    if not isinstance(markdown, str) or not markdown.strip():
        raise FormatterError("Provide non-empty markdown to format.", status_code=400)
    prompt = build_format_prompt(markdown, style_hints)
    try:
        response = await asyncio.to_thread(provider.generate, prompt, FORMATTER_INSTRUCTIONS)
    except LLMProviderError as exc:
        LOGGER.warning("resume_format_failed", provider=provider.name, error=str(exc))
        raise FormatterError(str(exc) or "Formatter agent returned an unexpected response.") from exc
    result = interpret_formatter_output(response.content, markdown)
    LOGGER.info(
        "resume_format_finished",
        provider=provider.name,
        input_chars=len(markdown),
        output_chars=len(result.markdown),
        summary=core_logging.preview(result.summary, 120),
    )
    return result
