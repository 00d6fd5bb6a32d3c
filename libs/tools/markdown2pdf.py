from __future__ import annotations

import asyncio
import base64
import re
import time
import uuid
from pathlib import Path
from typing import Any

from libs.core import logging as core_logging, tracing
from libs.core.models import (
    Margin,
    MarkdownFallbackResult,
    PdfRenderResult,
    RenderLayout,
    RenderRequest,
    RenderResult,
)
from libs.framework.tool_runtime import (
    ConfigurationError,
    RenderOutputNotFoundError,
    classify_tool_error,
    describe_error,
)
from libs.tools.mcp_client import GatewayClient, extract_text
from libs.tools.mcp_transport import OutputDirectory

LOGGER = core_logging.get_logger("markdown2pdf")

MARGIN_BORDERS = {
    Margin.narrow: "12mm",
    Margin.normal: "20mm",
    Margin.wide: "25mm",
}

_UNSAFE_FILENAME_CHARS = re.compile(r'[/\\?%*:|"<>]')
_CREATED_PATH_PATTERN = re.compile(
    r"PDF file created successfully at:\s*(.+)$", re.IGNORECASE | re.MULTILINE
)
_PDF_SUFFIX = re.compile(r"\.pdf$", re.IGNORECASE)


def generate_default_filename() -> str:
    return f"resume-{uuid.uuid4().hex[:8]}.pdf"


def sanitize_filename(value: str | None) -> str:
    cleaned = _UNSAFE_FILENAME_CHARS.sub(" ", value or "").strip()
    if not cleaned:
        return generate_default_filename()
    if cleaned.lower().endswith(".pdf"):
        return cleaned
    return f"{cleaned}.pdf"


def ensure_markdown_extension(file_name: str) -> str:
    base = _PDF_SUFFIX.sub("", file_name).strip()
    if not base:
        return "resume.md"
    if base.lower().endswith(".md"):
        return base
    return f"{base}.md"


def extract_pdf_path(log_text: str) -> str | None:
    matches = _CREATED_PATH_PATTERN.findall(log_text or "")
    if not matches:
        return None
    return matches[-1].strip() or None


def normalize_render_request(request: RenderRequest) -> tuple[str, RenderLayout]:
    layout = RenderLayout(
        page_size=request.page_size,
        margin=request.margin,
        orientation=request.orientation,
        show_page_numbers=request.show_page_numbers,
        watermark=request.watermark or None,
        watermark_scope=request.watermark_scope if request.watermark else None,
    )
    return sanitize_filename(request.file_name), layout


def build_tool_arguments(markdown: str, output_path: Path, layout: RenderLayout) -> dict[str, Any]:
    arguments: dict[str, Any] = {
        "markdown": markdown,
        "outputFilename": str(output_path),
        "paperFormat": layout.page_size.value,
        "paperOrientation": layout.orientation.value,
        "paperBorder": MARGIN_BORDERS[layout.margin],
        "showPageNumbers": layout.show_page_numbers,
    }
    if layout.watermark:
        arguments["watermark"] = layout.watermark
        if layout.watermark_scope is not None:
            arguments["watermarkScope"] = layout.watermark_scope.value
    return arguments


class Markdown2PdfGateway:
    """Renders markdown through the remote renderer and never raises.

    Every failure on the remote path turns into a markdown-download result so
    the caller always has something to hand back to the user.
    """

    def __init__(self, client: GatewayClient, output_dir: OutputDirectory) -> None:
        self._client = client
        self._output_dir = output_dir

    @property
    def client(self) -> GatewayClient:
        return self._client

    async def render(self, request: RenderRequest) -> RenderResult:
        file_name, layout = normalize_render_request(request)
        started_at = time.monotonic()
        attributes = {
            "render.page_size": layout.page_size.value,
            "render.margin": layout.margin.value,
            "render.orientation": layout.orientation.value,
        }
        with tracing.start_span("markdown2pdf.render", attributes=attributes) as span:
            try:
                result: RenderResult = await self._render_remote(
                    request.markdown, file_name, layout
                )
            except Exception as exc:  # noqa: BLE001
                result = self._fallback(request.markdown, file_name, exc)
            tracing.set_span_attributes(
                span, {"render.kind": result.kind, "render.bytes": result.byte_length}
            )
        LOGGER.info(
            "markdown2pdf_render_finished",
            kind=result.kind,
            file_name=result.file_name,
            byte_length=result.byte_length,
            duration_ms=int(max(0.0, time.monotonic() - started_at) * 1000),
        )
        return result

    async def _render_remote(
        self, markdown: str, file_name: str, layout: RenderLayout
    ) -> PdfRenderResult:
        output_dir = await self._output_dir.ensure()
        output_path = output_dir / f"{uuid.uuid4().hex}-{file_name}"
        raw = await self._client.call_tool(build_tool_arguments(markdown, output_path, layout))
        log_text = extract_text(raw)
        created = extract_pdf_path(log_text)
        if created is None:
            raise RenderOutputNotFoundError(
                "Markdown2PDF did not report where the PDF was written. "
                f"Log: {core_logging.preview(log_text)}"
            )
        pdf_path = Path(created)
        content = await asyncio.to_thread(pdf_path.read_bytes)
        await self._discard(pdf_path)
        return PdfRenderResult(
            pdf_base64=base64.b64encode(content).decode("ascii"),
            file_name=file_name,
            byte_length=len(content),
            layout=layout,
            log=log_text,
        )

    async def _discard(self, path: Path) -> None:
        try:
            await asyncio.to_thread(path.unlink)
        except OSError as exc:
            LOGGER.warning("markdown2pdf_cleanup_failed", path=str(path), error=str(exc))

    def _fallback(self, markdown: str, file_name: str, exc: Exception) -> MarkdownFallbackResult:
        reason = describe_error(exc)
        fields = {
            "error": reason,
            "error_type": exc.__class__.__name__,
            "error_code": classify_tool_error(exc),
        }
        if isinstance(exc, ConfigurationError):
            LOGGER.error("markdown2pdf_fallback", **fields)
        else:
            LOGGER.warning("markdown2pdf_fallback", **fields)
        return MarkdownFallbackResult(
            markdown=markdown,
            file_name=ensure_markdown_extension(file_name),
            byte_length=len(markdown.encode("utf-8")),
            reason=reason,
        )
