from __future__ import annotations

import asyncio

import pytest

from libs.core.llm_provider import LLMProviderError, LLMResponse, MockLLMProvider
from libs.tools.resume_format import (
    DEFAULT_STYLE_HINT,
    UNCHANGED_SUMMARY,
    UNSTRUCTURED_SUMMARY,
    FormatterError,
    build_format_prompt,
    format_resume_markdown,
)


class _FakeProvider:
    name = "fake"

    def __init__(self, content: str = "", error: Exception | None = None) -> None:
        self.content = content
        self.error = error
        self.prompts: list[tuple[str, str | None]] = []

    def generate(self, prompt: str, system: str | None = None) -> LLMResponse:
        self.prompts.append((prompt, system))
        if self.error is not None:
            raise self.error
        return LLMResponse(content=self.content)


def test_build_format_prompt_uses_default_style_hint() -> None:
    prompt = build_format_prompt("# Jane", "   ")
    assert f"Style guidance: {DEFAULT_STYLE_HINT}" in prompt
    assert prompt.endswith("Resume markdown:\n# Jane")
    assert "Style guidance: ATS-friendly" in build_format_prompt("# Jane", " ATS-friendly ")


def test_format_returns_structured_reply() -> None:
    provider = _FakeProvider('```json\n{"markdown": "# Jane\\n\\n- Python", "summary": "Tidied lists."}\n```')
    result = asyncio.run(format_resume_markdown("#Jane\n*Python", "modern", provider))
    assert result.markdown == "# Jane\n\n- Python"
    assert result.summary == "Tidied lists."
    prompt, system = provider.prompts[0]
    assert "Style guidance: modern" in prompt
    assert system


def test_format_uses_unstructured_reply_directly() -> None:
    provider = _FakeProvider("# Jane\n\n- Python")
    result = asyncio.run(format_resume_markdown("#Jane", None, provider))
    assert result.markdown == "# Jane\n\n- Python"
    assert result.summary == UNSTRUCTURED_SUMMARY


def test_format_keeps_original_when_reply_is_empty() -> None:
    result = asyncio.run(format_resume_markdown("#Jane", None, MockLLMProvider()))
    assert result.markdown == "#Jane"
    assert result.summary == UNCHANGED_SUMMARY


def test_format_rejects_blank_markdown() -> None:
    with pytest.raises(FormatterError) as excinfo:
        asyncio.run(format_resume_markdown("  ", None, _FakeProvider("x")))
    assert excinfo.value.status_code == 400


def test_format_provider_failure_is_502() -> None:
    provider = _FakeProvider(error=LLMProviderError("openai API connection error: refused"))
    with pytest.raises(FormatterError) as excinfo:
        asyncio.run(format_resume_markdown("# Jane", None, provider))
    assert excinfo.value.status_code == 502
    assert "refused" in excinfo.value.detail
