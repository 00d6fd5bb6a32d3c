from __future__ import annotations

import asyncio


class GatewayError(Exception):
    error_code = "runtime.gateway_error"

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class ConfigurationError(GatewayError):
    error_code = "config.invalid"


class ToolUnavailableError(GatewayError):
    error_code = "runtime.upstream_unavailable"

    def __init__(self, detail: str, tool_id: str | None = None) -> None:
        super().__init__(detail)
        self.tool_id = tool_id


class MalformedResponseError(GatewayError):
    error_code = "contract.output_invalid"


class InvalidInputError(GatewayError):
    error_code = "contract.input_invalid"


class RenderOutputNotFoundError(GatewayError):
    error_code = "contract.render_output_missing"


class ToolExecutionError(GatewayError):
    error_code = "runtime.tool_error"


def classify_tool_error(exc: BaseException) -> str:
    if isinstance(exc, GatewayError):
        return exc.error_code
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return "runtime.timeout"
    if isinstance(exc, FileNotFoundError):
        return "runtime.artifact_missing"
    if isinstance(exc, OSError):
        return "runtime.io_error"
    lowered = str(exc).lower()
    if "timed out" in lowered or "timeout" in lowered:
        return "runtime.timeout"
    return "runtime.unhandled"


def describe_error(exc: BaseException) -> str:
    message = str(exc).strip()
    if message:
        return message
    return exc.__class__.__name__
