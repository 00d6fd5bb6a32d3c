from __future__ import annotations

import base64
import io
import time

from pypdf import PdfReader

from libs.core import logging as core_logging, tracing
from libs.framework.tool_runtime import InvalidInputError, classify_tool_error
from libs.tools.mcp_client import GatewayClient, extract_text

LOGGER = core_logging.get_logger("markitdown")

PDF_CONTENT_TYPE = "application/pdf"


def build_data_uri(content: bytes, content_type: str | None) -> str:
    media_type = (content_type or "").strip() or "application/octet-stream"
    payload = base64.b64encode(content).decode("ascii")
    return f"data:{media_type};base64,{payload}"


def is_pdf_upload(file_name: str | None, content_type: str | None) -> bool:
    if (content_type or "").split(";")[0].strip().lower() == PDF_CONTENT_TYPE:
        return True
    return (file_name or "").lower().endswith(".pdf")


def extract_pdf_text(raw: bytes) -> str:
    """Plain text of every page, used when the remote converter is down."""
    reader = PdfReader(io.BytesIO(raw))
    pages = []
    for page in reader.pages:
        text = page.extract_text() or ""
        if text.strip():
            pages.append(text.strip())
    return "\n\n".join(pages)


class MarkitdownGateway:
    def __init__(self, client: GatewayClient) -> None:
        self._client = client

    @property
    def client(self) -> GatewayClient:
        return self._client

    async def convert(self, uri: str) -> str:
        if not isinstance(uri, str) or not uri.strip():
            raise InvalidInputError("MarkItDown conversion requires a non-empty uri.")
        started_at = time.monotonic()
        scheme = uri.split(":", 1)[0] if ":" in uri else ""
        with tracing.start_span("markitdown.convert", attributes={"uri.scheme": scheme}):
            try:
                result = await self._client.call_tool({"uri": uri})
                markdown = extract_text(result)
            except Exception as exc:
                LOGGER.warning(
                    "markitdown_convert_failed",
                    uri_scheme=scheme,
                    error=str(exc),
                    error_code=classify_tool_error(exc),
                )
                raise
        LOGGER.info(
            "markitdown_convert_finished",
            uri_scheme=scheme,
            markdown_chars=len(markdown),
            duration_ms=int(max(0.0, time.monotonic() - started_at) * 1000),
        )
        return markdown
