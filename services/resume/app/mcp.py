from __future__ import annotations

import time
from typing import Any, Callable, Dict

from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.server import TransportSecuritySettings
from pydantic import ValidationError

from libs.core import logging as core_logging
from libs.core.models import RenderRequest
from libs.tools.resume_format import FormatterError, format_resume_markdown as run_format

from services.resume.app.runtime import ResumeRuntime

LOGGER = core_logging.get_logger("resume")

DEFAULT_ALLOWED_HOSTS = [
    "resume",
    "resume:8000",
    "localhost",
    "localhost:8000",
    "localhost:*",
    "127.0.0.1",
    "127.0.0.1:8000",
    "127.0.0.1:*",
]


def _validation_message(exc: ValidationError) -> str:
    return "; ".join(error.get("msg", "invalid value") for error in exc.errors())


def create_mcp_asgi_app(get_runtime: Callable[[], ResumeRuntime], allowed_hosts: list[str] | None = None):
    mcp = FastMCP(
        "resume-copilot",
        transport_security=TransportSecuritySettings(
            allowed_hosts=list(allowed_hosts or DEFAULT_ALLOWED_HOSTS)
        ),
    )

    @mcp.tool()
    async def generate_resume_pdf(
        markdown: str,
        page_size: str = "letter",
        margin: str = "normal",
        orientation: str = "portrait",
        show_page_numbers: bool = False,
        watermark: str | None = None,
        watermark_scope: str | None = None,
        file_name: str | None = None,
    ) -> Dict[str, Any]:
        """Render resume markdown to a PDF, or return the markdown for download when rendering is unavailable."""
        try:
            request = RenderRequest(
                markdown=markdown,
                page_size=page_size,
                margin=margin,
                orientation=orientation,
                show_page_numbers=show_page_numbers,
                watermark=watermark,
                watermark_scope=watermark_scope,
                file_name=file_name,
            )
        except ValidationError as exc:
            raise ValueError(_validation_message(exc)) from exc
        started_at = time.monotonic()
        result = await get_runtime().markdown2pdf.render(request)
        LOGGER.info(
            "mcp_generate_resume_pdf_finished",
            kind=result.kind,
            duration_ms=int(max(0.0, time.monotonic() - started_at) * 1000),
        )
        return result.model_dump(by_alias=True, exclude_none=True)

    @mcp.tool()
    async def format_resume_markdown(markdown: str, style_hints: str | None = None) -> Dict[str, Any]:
        """Clean up resume markdown without changing factual content."""
        runtime = get_runtime()
        try:
            result = await run_format(markdown, style_hints, runtime.provider)
        except FormatterError as exc:
            raise RuntimeError(exc.detail) from exc
        return {"markdown": result.markdown.strip(), "summary": result.summary}

    @mcp.tool()
    async def convert_to_markdown(uri: str) -> Dict[str, Any]:
        """Convert a document URI (http, file or data) into markdown."""
        markdown = await get_runtime().markitdown.convert(uri)
        return {"markdown": markdown.strip()}

    @mcp.tool()
    def get_resume() -> Dict[str, Any]:
        """Return the shared resume document."""
        store = get_runtime().state
        return {"state": store.state, "version": store.version, "variant": store.variant}

    @mcp.tool()
    def update_resume(update: Dict[str, Any] | str) -> Dict[str, Any]:
        """Merge a partial update into the shared resume document."""
        store = get_runtime().state
        report = store.apply_update(update)
        return {
            "applied": report.applied,
            "reason": report.reason,
            "state": store.state,
            "version": store.version,
        }

    mcp_app = mcp.streamable_http_app()
    session_manager = mcp_app.routes[0].app.session_manager
    return mcp_app, session_manager
