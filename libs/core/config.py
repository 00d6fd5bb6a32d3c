"""Process configuration.

``load_settings`` is the single place that reads the environment. Everything
else receives the frozen records built here.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

DEFAULT_TIMEOUT_MS = 120_000
DEFAULT_MAX_UPLOAD_BYTES = 5 * 1024 * 1024
DEFAULT_OUTPUT_SUBDIR = Path(".cache") / "markdown2pdf"

MARKITDOWN_TOOL_ID = "convert_to_markdown"
MARKDOWN2PDF_TOOL_ID = "create_pdf_from_markdown"


@dataclass(frozen=True)
class ServiceSettings:
    """Raw, unparsed connection settings for one remote MCP tool server."""

    name: str
    env_prefix: str
    tool_id: str
    default_url: str
    url: Optional[str] = None
    transport: Optional[str] = None
    timeout: Optional[str] = None
    headers: Optional[str] = None
    command: Optional[str] = None
    args: Optional[str] = None
    env: Optional[str] = None
    launcher_script: Optional[Path] = None
    launcher_interpreter: str = "node"
    fallback_command: str = "npx"
    fallback_args: tuple[str, ...] = ()

    def variable(self, suffix: str) -> str:
        return f"{self.env_prefix}_MCP_{suffix}"


@dataclass(frozen=True)
class LLMSettings:
    provider: str = "mock"
    api_key: str = ""
    model: str = ""
    base_url: str = ""
    temperature: Optional[float] = None
    max_output_tokens: Optional[int] = None
    timeout_s: Optional[float] = None
    max_retries: Optional[int] = None


@dataclass(frozen=True)
class GatewaySettings:
    markitdown: ServiceSettings
    markdown2pdf: ServiceSettings
    output_dir: Path
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES
    llm: LLMSettings = field(default_factory=LLMSettings)
    state_variant: str = "markdown"
    otel_endpoint: Optional[str] = None
    mcp_allowed_hosts: tuple[str, ...] = ()
    cors_origins: tuple[str, ...] = ("http://localhost:3000",)


def _parse_optional_int(value: str | None) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        return None


def _parse_optional_float(value: str | None) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _positive_int(value: str | None, default: int) -> int:
    parsed = _parse_optional_int((value or "").strip() or None)
    if parsed is None or parsed <= 0:
        return default
    return parsed


def _csv(value: str | None) -> tuple[str, ...]:
    return tuple(item.strip() for item in (value or "").split(",") if item.strip())


def _service_settings(
    env: Mapping[str, str],
    *,
    name: str,
    env_prefix: str,
    tool_id: str,
    default_url: str,
    launcher_script: Optional[Path],
    fallback_command: str,
    fallback_args: tuple[str, ...],
) -> ServiceSettings:
    def read(suffix: str) -> Optional[str]:
        return env.get(f"{env_prefix}_MCP_{suffix}")

    return ServiceSettings(
        name=name,
        env_prefix=env_prefix,
        tool_id=tool_id,
        default_url=default_url,
        url=read("URL"),
        transport=read("TRANSPORT"),
        timeout=read("TIMEOUT"),
        headers=read("HEADERS"),
        command=read("COMMAND"),
        args=read("ARGS"),
        env=read("ENV"),
        launcher_script=launcher_script,
        fallback_command=fallback_command,
        fallback_args=fallback_args,
    )


def _llm_settings(env: Mapping[str, str]) -> LLMSettings:
    provider = (env.get("LLM_PROVIDER") or "mock").strip().lower()
    if provider == "ollama":
        base_url = env.get("NOS_OLLAMA_API_URL") or env.get("OLLAMA_API_URL") or ""
        model = (
            env.get("NOS_MODEL_NAME_AT_ENDPOINT")
            or env.get("MODEL_NAME_AT_ENDPOINT")
            or "qwen3:8b"
        )
    else:
        base_url = env.get("OPENAI_BASE_URL") or "https://api.openai.com"
        model = env.get("OPENAI_MODEL") or ""
    return LLMSettings(
        provider=provider,
        api_key=env.get("OPENAI_API_KEY", ""),
        model=model,
        base_url=base_url,
        temperature=_parse_optional_float(env.get("OPENAI_TEMPERATURE")),
        max_output_tokens=_parse_optional_int(env.get("OPENAI_MAX_OUTPUT_TOKENS")),
        timeout_s=_parse_optional_float(env.get("OPENAI_TIMEOUT_S")),
        max_retries=_parse_optional_int(env.get("OPENAI_MAX_RETRIES")),
    )


def load_settings(
    environ: Mapping[str, str] | None = None, cwd: Path | None = None
) -> GatewaySettings:
    env = os.environ if environ is None else environ
    workdir = (cwd or Path.cwd()).resolve()

    markitdown = _service_settings(
        env,
        name="markitdown",
        env_prefix="MARKITDOWN",
        tool_id=MARKITDOWN_TOOL_ID,
        default_url="http://127.0.0.1:3001/mcp",
        launcher_script=None,
        fallback_command="uvx",
        fallback_args=("markitdown-mcp",),
    )
    markdown2pdf = _service_settings(
        env,
        name="markdown2pdf",
        env_prefix="MARKDOWN2PDF",
        tool_id=MARKDOWN2PDF_TOOL_ID,
        default_url="http://127.0.0.1:3002/mcp",
        launcher_script=workdir / "scripts" / "start-markdown2pdf-mcp.mjs",
        fallback_command="npx",
        fallback_args=("-y", "markdown2pdf-mcp"),
    )

    configured_dir = (env.get("MARKDOWN2PDF_OUTPUT_DIR") or "").strip()
    output_dir = Path(configured_dir) if configured_dir else workdir / DEFAULT_OUTPUT_SUBDIR
    if not output_dir.is_absolute():
        output_dir = workdir / output_dir

    variant = (env.get("RESUME_STATE_VARIANT") or "markdown").strip().lower()
    if variant not in {"markdown", "structured"}:
        variant = "markdown"

    return GatewaySettings(
        markitdown=markitdown,
        markdown2pdf=markdown2pdf,
        output_dir=output_dir,
        max_upload_bytes=_positive_int(
            env.get("MARKITDOWN_MAX_UPLOAD_BYTES"), DEFAULT_MAX_UPLOAD_BYTES
        ),
        llm=_llm_settings(env),
        state_variant=variant,
        otel_endpoint=(env.get("OTEL_EXPORTER_OTLP_ENDPOINT") or "").strip() or None,
        mcp_allowed_hosts=_csv(env.get("MCP_ALLOWED_HOSTS")),
        cors_origins=_csv(env.get("CORS_ORIGINS")) or ("http://localhost:3000",),
    )
