from __future__ import annotations

import asyncio
import json
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Union
from urllib.parse import urlparse

from libs.core import logging as core_logging
from libs.core.config import DEFAULT_TIMEOUT_MS, ServiceSettings
from libs.framework.tool_runtime import ConfigurationError

LOGGER = core_logging.get_logger("mcp_transport")

OUTPUT_DIR_ENV_KEY = "M2P_OUTPUT_DIR"


@dataclass(frozen=True)
class NetworkTarget:
    url: str
    timeout_ms: int
    headers: dict[str, str] | None = None

    @property
    def timeout_s(self) -> float:
        return self.timeout_ms / 1000.0


@dataclass(frozen=True)
class ProcessTarget:
    command: str
    args: tuple[str, ...]
    env: dict[str, str] = field(default_factory=dict)
    timeout_ms: int = DEFAULT_TIMEOUT_MS

    @property
    def timeout_s(self) -> float:
        return self.timeout_ms / 1000.0


ToolServerConfig = Union[NetworkTarget, ProcessTarget]


class OutputDirectory:
    """Scratch directory shared by every gateway in the process, created on first use."""

    def __init__(self, configured: Path | str) -> None:
        self._configured = Path(configured)
        self._resolved: Path | None = None
        self._lock = asyncio.Lock()

    @property
    def resolved(self) -> Path | None:
        return self._resolved

    async def ensure(self) -> Path:
        if self._resolved is not None:
            return self._resolved
        async with self._lock:
            if self._resolved is None:
                target = self._configured.resolve()
                await asyncio.to_thread(target.mkdir, parents=True, exist_ok=True)
                LOGGER.info("output_dir_ready", path=str(target))
                self._resolved = target
        return self._resolved


def parse_timeout_ms(raw: str | None) -> int:
    if raw is None or not raw.strip():
        return DEFAULT_TIMEOUT_MS
    try:
        parsed = int(raw.strip(), 10)
    except ValueError:
        return DEFAULT_TIMEOUT_MS
    return parsed if parsed > 0 else DEFAULT_TIMEOUT_MS


def parse_string_map(raw: str | None, *, variable: str) -> dict[str, str] | None:
    if raw is None or not raw.strip():
        return None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        LOGGER.warning(
            "mcp_config_json_invalid",
            variable=variable,
            error=str(exc),
            hint="Expected a JSON object of key/value pairs.",
        )
        return None
    if not isinstance(parsed, dict):
        LOGGER.warning(
            "mcp_config_json_invalid",
            variable=variable,
            error=f"expected object, got {type(parsed).__name__}",
            hint="Expected a JSON object of key/value pairs.",
        )
        return None
    return {str(key): str(value) for key, value in parsed.items()}


def parse_args(raw: str | None, *, variable: str) -> tuple[str, ...] | None:
    if raw is None or not raw.strip():
        return None
    candidate = raw.strip()
    if candidate.startswith("["):
        try:
            parsed: Any = json.loads(candidate)
        except json.JSONDecodeError as exc:
            LOGGER.warning("mcp_config_args_invalid", variable=variable, error=str(exc))
            return None
        if not isinstance(parsed, list):
            LOGGER.warning("mcp_config_args_invalid", variable=variable, error="expected array")
            return None
        return tuple(str(item) for item in parsed)
    try:
        return tuple(shlex.split(candidate))
    except ValueError as exc:
        LOGGER.warning("mcp_config_args_invalid", variable=variable, error=str(exc))
        return None


def validate_url(raw: str, *, variable: str, default_url: str) -> str:
    parsed = urlparse(raw)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ConfigurationError(
            f"Invalid {variable} value '{raw}'. "
            f"Provide a fully qualified URL (e.g. {default_url})."
        )
    return raw


class TransportResolver:
    def __init__(self, service: ServiceSettings, output_dir: OutputDirectory) -> None:
        self._service = service
        self._output_dir = output_dir

    def wants_process(self) -> bool:
        service = self._service
        transport = (service.transport or "").strip().lower()
        if transport == "stdio":
            return True
        if transport == "http":
            return False
        if service.url is None:
            return bool((service.command or "").strip())
        return not service.url.strip()

    async def resolve(self) -> ToolServerConfig:
        timeout_ms = parse_timeout_ms(self._service.timeout)
        if self.wants_process():
            return await self._resolve_process(timeout_ms)
        return self._resolve_network(timeout_ms)

    def _resolve_network(self, timeout_ms: int) -> NetworkTarget:
        service = self._service
        raw_url = (service.url or "").strip() or service.default_url
        url = validate_url(
            raw_url, variable=service.variable("URL"), default_url=service.default_url
        )
        headers = parse_string_map(service.headers, variable=service.variable("HEADERS"))
        target = NetworkTarget(url=url, timeout_ms=timeout_ms, headers=headers)
        LOGGER.info(
            "mcp_transport_resolved",
            service=service.name,
            transport="http",
            url=url,
            timeout_ms=timeout_ms,
            header_names=sorted(headers or {}),
        )
        return target

    async def _resolve_process(self, timeout_ms: int) -> ProcessTarget:
        service = self._service
        configured_command = (service.command or "").strip()
        configured_args = parse_args(service.args, variable=service.variable("ARGS"))
        if configured_command:
            command = configured_command
            args = configured_args or ()
            source = "configured"
        else:
            command, args, source = await self._default_launcher()

        env = parse_string_map(service.env, variable=service.variable("ENV")) or {}
        output_dir = await self._output_dir.ensure()
        env[OUTPUT_DIR_ENV_KEY] = str(output_dir)

        target = ProcessTarget(command=command, args=tuple(args), env=env, timeout_ms=timeout_ms)
        LOGGER.info(
            "mcp_transport_resolved",
            service=service.name,
            transport="stdio",
            command=command,
            args=list(target.args),
            launcher=source,
            timeout_ms=timeout_ms,
            env_keys=sorted(env),
        )
        return target

    async def _default_launcher(self) -> tuple[str, tuple[str, ...], str]:
        service = self._service
        script = service.launcher_script
        if script is not None and await asyncio.to_thread(script.is_file):
            return service.launcher_interpreter, (str(script),), "launcher_script"
        if script is not None:
            LOGGER.info(
                "mcp_launcher_script_missing",
                service=service.name,
                script=str(script),
                fallback=" ".join((service.fallback_command, *service.fallback_args)),
            )
        return service.fallback_command, tuple(service.fallback_args), "fallback"
