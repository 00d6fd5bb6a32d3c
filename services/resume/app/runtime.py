from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional

from libs.core import logging as core_logging
from libs.core.config import GatewaySettings
from libs.core.llm_provider import LLMProvider, resolve_provider
from libs.core.models import ConversionResponse
from libs.core.resume_state import ResumeStateStore
from libs.framework.tool_runtime import classify_tool_error
from libs.tools.markdown2pdf import Markdown2PdfGateway
from libs.tools.markitdown import (
    MarkitdownGateway,
    build_data_uri,
    extract_pdf_text,
    is_pdf_upload,
)
from libs.tools.mcp_client import GatewayClient
from libs.tools.mcp_transport import OutputDirectory

LOGGER = core_logging.get_logger("resume")


@dataclass
class ResumeRuntime:
    settings: GatewaySettings
    markitdown: MarkitdownGateway
    markdown2pdf: Markdown2PdfGateway
    provider: LLMProvider
    state: ResumeStateStore

    async def convert_upload(
        self, content: bytes, file_name: str, content_type: Optional[str]
    ) -> ConversionResponse:
        """Convert an uploaded document, reading PDFs locally when the converter is down."""
        uri = build_data_uri(content, content_type)
        try:
            markdown = await self.markitdown.convert(uri)
            converter = "markitdown"
        except Exception as exc:
            if not is_pdf_upload(file_name, content_type):
                raise
            LOGGER.warning(
                "markitdown_local_fallback",
                file_name=file_name,
                error=str(exc),
                error_code=classify_tool_error(exc),
            )
            try:
                markdown = await asyncio.to_thread(extract_pdf_text, content)
            except Exception as local_exc:  # noqa: BLE001
                LOGGER.warning("pdf_text_extraction_failed", file_name=file_name, error=str(local_exc))
                raise exc from local_exc
            if not markdown.strip():
                raise
            converter = "pypdf"
        return ConversionResponse(markdown=markdown.strip(), file_name=file_name, converter=converter)

    async def aclose(self) -> None:
        await asyncio.gather(
            self.markitdown.client.aclose(),
            self.markdown2pdf.client.aclose(),
            return_exceptions=True,
        )


def build_runtime(settings: GatewaySettings, provider: LLMProvider | None = None) -> ResumeRuntime:
    # One output directory for the whole process; both gateways share it.
    output_dir = OutputDirectory(settings.output_dir)
    markitdown_client = GatewayClient(settings.markitdown, output_dir)
    markdown2pdf_client = GatewayClient(settings.markdown2pdf, output_dir)
    return ResumeRuntime(
        settings=settings,
        markitdown=MarkitdownGateway(markitdown_client),
        markdown2pdf=Markdown2PdfGateway(markdown2pdf_client, output_dir),
        provider=provider or resolve_provider(settings.llm),
        state=ResumeStateStore(settings.state_variant),
    )
