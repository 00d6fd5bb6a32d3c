from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from libs.core.config import LLMSettings

RETRYABLE_STATUS = {429, 500, 502, 503, 504}


@dataclass
class LLMResponse:
    content: str


class LLMProviderError(Exception):
    pass


class LLMProvider:
    name = "base"

    def generate(self, prompt: str, system: Optional[str] = None) -> LLMResponse:  # pragma: no cover - interface
        raise NotImplementedError


class MockLLMProvider(LLMProvider):
    """Offline stand-in. Returns no text, so callers keep their input."""

    name = "mock"

    def generate(self, prompt: str, system: Optional[str] = None) -> LLMResponse:
        return LLMResponse(content="")


class ChatCompletionsProvider(LLMProvider):
    """OpenAI-compatible ``/v1/chat/completions`` client (OpenAI or Ollama)."""

    def __init__(
        self,
        name: str,
        model: str,
        base_url: str,
        api_key: str = "",
        temperature: Optional[float] = None,
        max_output_tokens: Optional[int] = None,
        timeout_s: float = 30.0,
        max_retries: int = 0,
    ) -> None:
        self.name = name
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self.timeout_s = timeout_s
        self.max_retries = max_retries

    @property
    def endpoint(self) -> str:
        if self.base_url.endswith("/v1"):
            return f"{self.base_url}/chat/completions"
        return f"{self.base_url}/v1/chat/completions"

    def build_payload(self, prompt: str, system: Optional[str] = None) -> Dict[str, Any]:
        messages: List[Dict[str, str]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        payload: Dict[str, Any] = {"model": self.model, "messages": messages}
        if self.temperature is not None:
            payload["temperature"] = self.temperature
        if self.max_output_tokens is not None:
            payload["max_tokens"] = self.max_output_tokens
        return payload

    def generate(self, prompt: str, system: Optional[str] = None) -> LLMResponse:
        payload = self.build_payload(prompt, system)
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        attempts = self.max_retries + 1
        for attempt in range(attempts):
            request = Request(
                self.endpoint,
                data=json.dumps(payload).encode("utf-8"),
                headers=headers,
                method="POST",
            )
            try:
                with urlopen(request, timeout=self.timeout_s) as response:
                    body = response.read().decode("utf-8")
                return LLMResponse(content=extract_message_text(json.loads(body)))
            except HTTPError as exc:
                detail = exc.read().decode("utf-8") if exc.fp else str(exc)
                if exc.code in RETRYABLE_STATUS and attempt < attempts - 1:
                    time.sleep(min(2**attempt, 8))
                    continue
                raise LLMProviderError(f"{self.name} API error: {detail}") from exc
            except (URLError, TimeoutError) as exc:
                if attempt < attempts - 1:
                    time.sleep(min(2**attempt, 8))
                    continue
                raise LLMProviderError(f"{self.name} API connection error: {exc}") from exc
            except json.JSONDecodeError as exc:
                raise LLMProviderError(f"{self.name} API returned invalid JSON: {exc}") from exc
        raise LLMProviderError(f"{self.name} API request failed after retries")


def extract_message_text(response: Dict[str, Any]) -> str:
    choices = response.get("choices") or []
    if not choices:
        return ""
    message = choices[0].get("message") or {}
    content = message.get("content")
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, list):
        return "".join(
            part.get("text", "") for part in content if isinstance(part, dict)
        ).strip()
    return ""


def resolve_provider(settings: LLMSettings) -> LLMProvider:
    name = (settings.provider or "mock").lower()
    if name == "openai":
        if not settings.api_key:
            raise ValueError("OPENAI_API_KEY is required when LLM_PROVIDER=openai")
        if not settings.model:
            raise ValueError("OPENAI_MODEL is required when LLM_PROVIDER=openai")
        return ChatCompletionsProvider(
            name="openai",
            model=settings.model,
            base_url=settings.base_url or "https://api.openai.com",
            api_key=settings.api_key,
            temperature=settings.temperature,
            max_output_tokens=settings.max_output_tokens,
            timeout_s=settings.timeout_s or 30.0,
            max_retries=settings.max_retries or 0,
        )
    if name == "ollama":
        if not settings.base_url:
            raise ValueError("OLLAMA_API_URL is required when LLM_PROVIDER=ollama")
        return ChatCompletionsProvider(
            name="ollama",
            model=settings.model,
            base_url=settings.base_url,
            temperature=settings.temperature,
            max_output_tokens=settings.max_output_tokens,
            timeout_s=settings.timeout_s or 120.0,
            max_retries=settings.max_retries or 0,
        )
    return MockLLMProvider()
