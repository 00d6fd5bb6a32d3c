from __future__ import annotations

import base64
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

WATERMARK_MAX_LENGTH = 15
FILE_NAME_MAX_LENGTH = 120


class PageSize(str, Enum):
    letter = "letter"
    a4 = "a4"
    a3 = "a3"
    a5 = "a5"
    legal = "legal"
    tabloid = "tabloid"


class Margin(str, Enum):
    narrow = "narrow"
    normal = "normal"
    wide = "wide"


class Orientation(str, Enum):
    portrait = "portrait"
    landscape = "landscape"


class WatermarkScope(str, Enum):
    all_pages = "all-pages"
    first_page = "first-page"


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RenderRequest(ApiModel):
    markdown: str = Field(min_length=1)
    page_size: PageSize = PageSize.letter
    margin: Margin = Margin.normal
    orientation: Orientation = Orientation.portrait
    show_page_numbers: bool = False
    watermark: Optional[str] = Field(
        default=None, max_length=WATERMARK_MAX_LENGTH, pattern=r"^[A-Z0-9 -]+$"
    )
    watermark_scope: Optional[WatermarkScope] = None
    file_name: Optional[str] = Field(default=None, max_length=FILE_NAME_MAX_LENGTH)

    @field_validator("markdown")
    @classmethod
    def _markdown_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("markdown must not be empty")
        return value

    @field_validator("watermark", mode="before")
    @classmethod
    def _normalize_watermark(cls, value: object) -> object:
        if isinstance(value, str):
            cleaned = value.strip().upper()
            return cleaned or None
        return value

    @field_validator("file_name", mode="before")
    @classmethod
    def _normalize_file_name(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip() or None
        return value


class RenderLayout(ApiModel):
    page_size: PageSize
    margin: Margin
    orientation: Orientation
    show_page_numbers: bool
    watermark: Optional[str] = None
    watermark_scope: Optional[WatermarkScope] = None


class PdfRenderResult(ApiModel):
    kind: Literal["pdf"] = "pdf"
    pdf_base64: str
    file_name: str
    content_type: Literal["application/pdf"] = "application/pdf"
    byte_length: int
    layout: RenderLayout
    log: Optional[str] = None

    @property
    def pdf_bytes(self) -> bytes:
        return base64.b64decode(self.pdf_base64)


class MarkdownFallbackResult(ApiModel):
    kind: Literal["markdown-download"] = "markdown-download"
    markdown: str
    file_name: str
    content_type: Literal["text/markdown"] = "text/markdown"
    byte_length: int
    reason: Optional[str] = None


RenderResult = Annotated[
    Union[PdfRenderResult, MarkdownFallbackResult], Field(discriminator="kind")
]


class FormatRequest(ApiModel):
    markdown: str
    style_hints: Optional[str] = None


class FormatResult(ApiModel):
    markdown: str
    summary: str


class ConversionResponse(ApiModel):
    markdown: str
    file_name: str
    converter: str = "markitdown"
