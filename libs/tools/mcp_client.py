from __future__ import annotations

import asyncio
import inspect
import json
import time
from contextlib import AsyncExitStack
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, Mapping, Union

import httpx
from mcp import ClientSession, StdioServerParameters
from mcp.client import streamable_http
from mcp.client.stdio import stdio_client

from libs.core import logging as core_logging, tracing
from libs.core.config import ServiceSettings
from libs.framework.tool_runtime import (
    GatewayError,
    MalformedResponseError,
    ToolExecutionError,
    ToolUnavailableError,
    classify_tool_error,
)
from libs.tools.mcp_transport import (
    NetworkTarget,
    OutputDirectory,
    ProcessTarget,
    ToolServerConfig,
    TransportResolver,
)

LOGGER = core_logging.get_logger("mcp_client")

Connector = Callable[[ToolServerConfig, AsyncExitStack], Awaitable[Any]]


@dataclass(frozen=True)
class PlainTextResponse:
    text: str


@dataclass(frozen=True)
class ContentEnvelope:
    parts: tuple[Any, ...]


ToolResponse = Union[PlainTextResponse, ContentEnvelope]


def decode_tool_response(raw: Any) -> ToolResponse:
    if isinstance(raw, str):
        return PlainTextResponse(raw)
    if isinstance(raw, Mapping):
        content = raw.get("content")
    else:
        content = getattr(raw, "content", None)
    if isinstance(content, (list, tuple)):
        return ContentEnvelope(tuple(content))
    raise MalformedResponseError("Tool response did not include text content.")


def _part_text(part: Any) -> Any:
    if isinstance(part, Mapping):
        return part.get("text")
    return getattr(part, "text", None)


def extract_text(raw: Any) -> str:
    """Return the canonical text payload of a tool response."""
    decoded = decode_tool_response(raw)
    if isinstance(decoded, PlainTextResponse):
        return decoded.text
    for part in decoded.parts:
        text = _part_text(part)
        if isinstance(text, str):
            return text
    raise MalformedResponseError("Tool response did not include text content.")


def extract_mcp_error_detail(result: Any) -> str:
    structured = getattr(result, "structuredContent", None)
    if isinstance(structured, dict):
        return json.dumps(structured, ensure_ascii=True)
    content = getattr(result, "content", None)
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            text = _part_text(item)
            if isinstance(text, str) and text.strip():
                parts.append(text.strip())
        if parts:
            return " | ".join(parts)
    return ""


def flatten_exception_messages(exc: BaseException) -> list[str]:
    messages = [str(exc)]
    nested = getattr(exc, "exceptions", None)
    if isinstance(nested, (list, tuple)):
        for child in nested:
            if isinstance(child, BaseException):
                messages.extend(flatten_exception_messages(child))
    deduped: list[str] = []
    seen: set[str] = set()
    for message in messages:
        normalized = message.strip()
        if not normalized or normalized in seen:
            continue
        seen.add(normalized)
        deduped.append(normalized)
    return deduped or [exc.__class__.__name__]


def find_tool_name(names: Any, tool_id: str) -> str | None:
    available = sorted(str(name) for name in names)
    if tool_id in available:
        return tool_id
    suffix = f"_{tool_id}"
    for name in available:
        if name.endswith(suffix):
            return name
    return None


def _streamable_http_factory() -> Callable[..., Any]:
    factory = getattr(streamable_http, "streamable_http_client", None)
    if factory is None:
        factory = streamable_http.streamablehttp_client
    return factory


def streamable_http_client_kwargs(
    params: Mapping[str, Any], target: NetworkTarget
) -> dict[str, Any]:
    """Best-effort kwargs for SDK versions that take headers and timeouts directly."""
    timeout = timedelta(milliseconds=target.timeout_ms)
    candidates: dict[str, Any] = {
        "headers": target.headers,
        "timeout": timeout,
        "sse_read_timeout": timeout,
    }
    return {
        name: value for name, value in candidates.items() if name in params and value is not None
    }


async def _open_streamable_http(target: NetworkTarget, stack: AsyncExitStack) -> tuple[Any, Any]:
    factory = _streamable_http_factory()
    try:
        params: Mapping[str, Any] = inspect.signature(factory).parameters
    except (TypeError, ValueError):
        params = {}
    if "http_client" in params:
        http_client = await stack.enter_async_context(
            httpx.AsyncClient(
                headers=target.headers or None,
                timeout=httpx.Timeout(target.timeout_s, connect=min(10.0, target.timeout_s)),
                follow_redirects=True,
            )
        )
        streams = await stack.enter_async_context(factory(target.url, http_client=http_client))
    else:
        streams = await stack.enter_async_context(
            factory(target.url, **streamable_http_client_kwargs(params, target))
        )
    return streams[0], streams[1]


async def open_mcp_session(config: ToolServerConfig, stack: AsyncExitStack) -> ClientSession:
    if isinstance(config, ProcessTarget):
        params = StdioServerParameters(
            command=config.command, args=list(config.args), env=dict(config.env)
        )
        read_stream, write_stream = await stack.enter_async_context(stdio_client(params))
    else:
        read_stream, write_stream = await _open_streamable_http(config, stack)
    session = await stack.enter_async_context(
        ClientSession(
            read_stream,
            write_stream,
            read_timeout_seconds=timedelta(milliseconds=config.timeout_ms),
        )
    )
    await session.initialize()
    return session


async def _hold_session(
    config: ToolServerConfig,
    connector: Connector,
    ready: asyncio.Future,
    stop: asyncio.Event,
) -> None:
    # Transport contexts are entered and exited by this one task.
    try:
        async with AsyncExitStack() as stack:
            session = await connector(config, stack)
            if ready.done():
                return
            ready.set_result(session)
            await stop.wait()
    except asyncio.CancelledError:
        if not ready.done():
            ready.cancel()
        raise
    except Exception as exc:  # noqa: BLE001
        if not ready.done():
            ready.set_exception(exc)
            return
        LOGGER.warning(
            "mcp_connection_closed_with_error",
            error="; ".join(flatten_exception_messages(exc)),
            error_type=exc.__class__.__name__,
        )


class _Connection:
    def __init__(self, session: Any, task: asyncio.Task, stop: asyncio.Event) -> None:
        self.session = session
        self._task = task
        self._stop = stop

    @classmethod
    async def open(cls, config: ToolServerConfig, connector: Connector) -> "_Connection":
        loop = asyncio.get_running_loop()
        ready: asyncio.Future = loop.create_future()
        stop = asyncio.Event()
        task = asyncio.create_task(_hold_session(config, connector, ready, stop))
        try:
            session = await ready
        except BaseException:
            stop.set()
            if not task.done():
                task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise
        return cls(session, task, stop)

    @property
    def alive(self) -> bool:
        return not self._task.done()

    async def close(self) -> None:
        self._stop.set()
        await asyncio.gather(self._task, return_exceptions=True)


@dataclass(frozen=True)
class BoundTool:
    tool_id: str
    name: str
    description: str | None
    input_schema: dict[str, Any]
    session: Any
    timeout_ms: int


class GatewayClient:
    """One lazily opened MCP session per remote service.

    The discovered tool map is cached for the life of the process. Concurrent
    first callers share a single discovery task; a failed discovery is
    forgotten before its error reaches the callers so the next call starts
    from scratch.
    """

    def __init__(
        self,
        service: ServiceSettings,
        output_dir: OutputDirectory,
        *,
        connector: Connector | None = None,
        resolver: TransportResolver | None = None,
    ) -> None:
        self._service = service
        self._resolver = resolver or TransportResolver(service, output_dir)
        self._connector = connector or open_mcp_session
        self._config: ToolServerConfig | None = None
        self._connection: _Connection | None = None
        self._tools: dict[str, BoundTool] | None = None
        self._pending: asyncio.Task | None = None

    @property
    def service(self) -> ServiceSettings:
        return self._service

    @property
    def tool_id(self) -> str:
        return self._service.tool_id

    @property
    def connected(self) -> bool:
        return self._tools is not None

    async def ensure_tools(self) -> dict[str, BoundTool]:
        if self._tools is not None:
            if self._connection is None or self._connection.alive:
                return self._tools
            LOGGER.info("mcp_connection_lost", service=self._service.name)
            await self._invalidate()
        pending = self._pending
        if pending is None:
            pending = asyncio.ensure_future(self._discover())
            self._pending = pending
        try:
            return await asyncio.shield(pending)
        except BaseException:
            if self._pending is pending and pending.done():
                self._pending = None
            raise

    async def get_tool(self) -> BoundTool:
        tools = await self.ensure_tools()
        return tools[self.tool_id]

    async def call_tool(self, arguments: dict[str, Any]) -> Any:
        tool = await self.get_tool()
        started_at = time.monotonic()
        attributes = {
            "mcp.service": self._service.name,
            "mcp.tool_name": tool.name,
            "mcp.timeout_ms": tool.timeout_ms,
        }
        with tracing.start_span("mcp_gateway.call_tool", attributes=attributes) as span:
            try:
                result = await tool.session.call_tool(
                    tool.name,
                    arguments,
                    read_timeout_seconds=timedelta(milliseconds=tool.timeout_ms),
                )
            except Exception as exc:  # noqa: BLE001
                detail = "; ".join(flatten_exception_messages(exc))
                LOGGER.warning(
                    "mcp_tool_call_failed",
                    service=self._service.name,
                    tool_name=tool.name,
                    error=detail,
                    error_type=exc.__class__.__name__,
                    error_code=classify_tool_error(exc),
                    duration_ms=int(max(0.0, time.monotonic() - started_at) * 1000),
                )
                await self._invalidate(tool.session)
                raise ToolUnavailableError(
                    f"Call to '{tool.name}' on the {self._service.name} MCP server failed: {detail}",
                    tool_id=self.tool_id,
                ) from exc
            if getattr(result, "isError", False):
                detail = extract_mcp_error_detail(result) or "no detail"
                tracing.set_span_attributes(span, {"mcp.status": "tool_error"})
                LOGGER.warning(
                    "mcp_tool_reported_error",
                    service=self._service.name,
                    tool_name=tool.name,
                    error=detail,
                )
                raise ToolExecutionError(f"'{tool.name}' reported an error: {detail}")
            tracing.set_span_attributes(span, {"mcp.status": "ok"})
            LOGGER.info(
                "mcp_tool_call_finished",
                service=self._service.name,
                tool_name=tool.name,
                duration_ms=int(max(0.0, time.monotonic() - started_at) * 1000),
            )
            return result

    async def reset(self) -> None:
        pending = self._pending
        if pending is not None:
            await asyncio.gather(pending, return_exceptions=True)
        self._pending = None
        self._config = None
        await self._invalidate()

    async def aclose(self) -> None:
        await self.reset()

    async def _resolve_config(self) -> ToolServerConfig:
        if self._config is None:
            self._config = await self._resolver.resolve()
        return self._config

    async def _discover(self) -> dict[str, BoundTool]:
        service = self._service
        started_at = time.monotonic()
        attributes = {"mcp.service": service.name, "mcp.tool_id": service.tool_id}
        with tracing.start_span("mcp_gateway.discover", attributes=attributes) as span:
            try:
                config = await self._resolve_config()
                connection = await _Connection.open(config, self._connector)
                try:
                    listing = await connection.session.list_tools()
                    discovered = {
                        str(getattr(tool, "name", "")): tool
                        for tool in getattr(listing, "tools", None) or []
                    }
                    matched = find_tool_name(discovered, service.tool_id)
                    if matched is None:
                        raise ToolUnavailableError(
                            f"{service.name} MCP server did not expose '{service.tool_id}'. "
                            "Ensure the server is running and reachable.",
                            tool_id=service.tool_id,
                        )
                except BaseException:
                    await connection.close()
                    raise
            except Exception as exc:  # noqa: BLE001
                self._forget_pending()
                error = exc
                if not isinstance(exc, GatewayError):
                    detail = "; ".join(flatten_exception_messages(exc))
                    error = ToolUnavailableError(
                        f"{service.name} MCP server is unreachable; "
                        f"could not discover '{service.tool_id}': {detail}",
                        tool_id=service.tool_id,
                    )
                LOGGER.warning(
                    "mcp_discovery_failed",
                    service=service.name,
                    tool_id=service.tool_id,
                    error=str(error),
                    error_code=classify_tool_error(error),
                    duration_ms=int(max(0.0, time.monotonic() - started_at) * 1000),
                )
                if error is exc:
                    raise
                raise error from exc

            tool = discovered[matched]
            bound = BoundTool(
                tool_id=service.tool_id,
                name=matched,
                description=getattr(tool, "description", None),
                input_schema=dict(getattr(tool, "inputSchema", None) or {}),
                session=connection.session,
                timeout_ms=config.timeout_ms,
            )
            self._connection = connection
            self._tools = {service.tool_id: bound}
            self._forget_pending()
            tracing.set_span_attributes(
                span, {"mcp.tool_name": matched, "mcp.tools_total": len(discovered)}
            )
            LOGGER.info(
                "mcp_discovery_finished",
                service=service.name,
                tool_id=service.tool_id,
                tool_name=matched,
                tools_total=len(discovered),
                duration_ms=int(max(0.0, time.monotonic() - started_at) * 1000),
            )
            return self._tools

    def _forget_pending(self) -> None:
        if self._pending is asyncio.current_task():
            self._pending = None

    async def _invalidate(self, session: Any = None) -> None:
        connection = self._connection
        if connection is None:
            self._tools = None
            return
        if session is not None and connection.session is not session:
            return
        self._connection = None
        self._tools = None
        await connection.close()
