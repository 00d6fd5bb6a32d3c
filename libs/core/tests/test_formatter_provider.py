from __future__ import annotations

import io
import json
from urllib.error import HTTPError

import pytest

from libs.core import llm_provider as llm_provider_module
from libs.core.config import LLMSettings
from libs.core.llm_provider import (
    ChatCompletionsProvider,
    LLMProviderError,
    MockLLMProvider,
    extract_message_text,
    resolve_provider,
)


class _FakeHTTPResponse:
    def __init__(self, payload: dict) -> None:
        self._raw = json.dumps(payload).encode("utf-8")

    def read(self) -> bytes:
        return self._raw

    def __enter__(self) -> "_FakeHTTPResponse":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        return False


def _completion(text: str) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": text}}]}


def test_chat_completions_provider_sends_messages(monkeypatch) -> None:
    captured: list[tuple[str, dict, dict]] = []

    def _fake_urlopen(request, timeout=0):  # type: ignore[no-untyped-def]
        captured.append((request.full_url, json.loads(request.data.decode("utf-8")), dict(request.headers)))
        return _FakeHTTPResponse(_completion('  {"ok": true}  '))

    monkeypatch.setattr(llm_provider_module, "urlopen", _fake_urlopen)

    provider = ChatCompletionsProvider(
        name="openai",
        model="gpt-4o-mini",
        base_url="https://api.openai.com/",
        api_key="test-key",
        temperature=0.2,
        max_output_tokens=256,
    )
    response = provider.generate("hello", system="be brief")

    assert response.content == '{"ok": true}'
    url, body, headers = captured[0]
    assert url == "https://api.openai.com/v1/chat/completions"
    assert body["messages"] == [
        {"role": "system", "content": "be brief"},
        {"role": "user", "content": "hello"},
    ]
    assert body["temperature"] == 0.2
    assert body["max_tokens"] == 256
    assert headers["Authorization"] == "Bearer test-key"


def test_chat_completions_provider_retries_transient_errors(monkeypatch) -> None:
    state = {"count": 0}

    def _fake_urlopen(request, timeout=0):  # type: ignore[no-untyped-def]
        state["count"] += 1
        if state["count"] == 1:
            raise HTTPError(request.full_url, 503, "busy", hdrs=None, fp=io.BytesIO(b"busy"))
        return _FakeHTTPResponse(_completion("done"))

    monkeypatch.setattr(llm_provider_module, "urlopen", _fake_urlopen)
    monkeypatch.setattr(llm_provider_module.time, "sleep", lambda _s: None)

    provider = ChatCompletionsProvider(
        name="ollama", model="qwen3:8b", base_url="http://ollama:11434/v1", max_retries=1
    )
    assert provider.endpoint == "http://ollama:11434/v1/chat/completions"
    assert provider.generate("hi").content == "done"
    assert state["count"] == 2


def test_chat_completions_provider_raises_on_client_error(monkeypatch) -> None:
    def _fake_urlopen(request, timeout=0):  # type: ignore[no-untyped-def]
        raise HTTPError(request.full_url, 400, "bad", hdrs=None, fp=io.BytesIO(b"bad request"))

    monkeypatch.setattr(llm_provider_module, "urlopen", _fake_urlopen)
    provider = ChatCompletionsProvider(name="openai", model="m", base_url="https://x", max_retries=3)
    with pytest.raises(LLMProviderError, match="bad request"):
        provider.generate("hi")


def test_extract_message_text_shapes() -> None:
    assert extract_message_text({}) == ""
    assert extract_message_text(_completion(" text ")) == "text"
    assert (
        extract_message_text(
            {"choices": [{"message": {"content": [{"type": "text", "text": "a"}, {"text": "b"}]}}]}
        )
        == "ab"
    )


def test_resolve_provider_by_name() -> None:
    assert isinstance(resolve_provider(LLMSettings()), MockLLMProvider)
    with pytest.raises(ValueError):
        resolve_provider(LLMSettings(provider="openai", model="gpt-4o-mini"))
    with pytest.raises(ValueError):
        resolve_provider(LLMSettings(provider="ollama"))

    ollama = resolve_provider(
        LLMSettings(provider="ollama", base_url="http://ollama:11434", model="qwen3:8b")
    )
    assert isinstance(ollama, ChatCompletionsProvider)
    assert ollama.name == "ollama"
    assert ollama.endpoint == "http://ollama:11434/v1/chat/completions"
