from __future__ import annotations

import json
import time
from typing import Any

from fastapi import FastAPI, File, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import Counter, make_asgi_app
from pydantic import ValidationError

from libs.core import logging as core_logging, tracing
from libs.core.config import load_settings
from libs.core.models import RenderRequest
from libs.framework.tool_runtime import classify_tool_error, describe_error
from libs.tools.resume_format import FormatterError, format_resume_markdown

from services.resume.app.mcp import create_mcp_asgi_app
from services.resume.app.runtime import ResumeRuntime, build_runtime

core_logging.configure_logging("resume")
LOGGER = core_logging.get_logger("resume")

SETTINGS = load_settings()
tracing.configure_tracing("resume", SETTINGS.otel_endpoint)

app = FastAPI(title="Resume Copilot Gateway")
app.add_middleware(
    CORSMiddleware,
    allow_origins=list(SETTINGS.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.state.runtime = build_runtime(SETTINGS)

metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)

pdf_renders_total = Counter("resume_pdf_renders_total", "Resume render results", ["kind"])
markitdown_conversions_total = Counter(
    "markitdown_conversions_total", "Document conversions", ["outcome"]
)
resume_updates_total = Counter("resume_updates_total", "Resume state updates", ["applied"])


def _runtime() -> ResumeRuntime:
    return app.state.runtime


MCP_APP, MCP_SESSION_MANAGER = create_mcp_asgi_app(
    _runtime, list(SETTINGS.mcp_allowed_hosts) or None
)
app.mount("/mcp/rpc", MCP_APP)


@app.on_event("startup")
async def _startup_mcp_session_manager() -> None:
    session_cm = MCP_SESSION_MANAGER.run()
    app.state._mcp_session_cm = session_cm
    await session_cm.__aenter__()


@app.on_event("shutdown")
async def _shutdown() -> None:
    await _runtime().aclose()
    session_cm = getattr(app.state, "_mcp_session_cm", None)
    if session_cm is not None:
        await session_cm.__aexit__(None, None, None)


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


async def _read_json(request: Request) -> Any:
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None


async def _read_upload(file: UploadFile, limit: int) -> bytes | None:
    """Read at most ``limit`` bytes; ``None`` means the upload is over the limit."""
    if file.size is not None and file.size > limit:
        return None
    content = await file.read(limit + 1)
    if len(content) > limit:
        return None
    return content


@app.post("/api/markitdown")
async def convert_upload(file: UploadFile | None = File(default=None)) -> JSONResponse:
    if file is None:
        markitdown_conversions_total.labels(outcome="rejected").inc()
        return _error("Expected a single file upload under the `file` field.", 400)
    limit = _runtime().settings.max_upload_bytes
    content = await _read_upload(file, limit)
    if content is None:
        markitdown_conversions_total.labels(outcome="too_large").inc()
        return _error(
            f"File is too large. The current limit is {limit / (1024 * 1024):.1f} MB.", 413
        )
    file_name = file.filename or "upload"
    started_at = time.monotonic()
    try:
        result = await _runtime().convert_upload(content, file_name, file.content_type)
    except Exception as exc:  # noqa: BLE001
        markitdown_conversions_total.labels(outcome="failed").inc()
        LOGGER.error(
            "markitdown_upload_failed",
            file_name=file_name,
            error=describe_error(exc),
            error_code=classify_tool_error(exc),
        )
        return _error(describe_error(exc), 502)
    markitdown_conversions_total.labels(outcome=result.converter).inc()
    LOGGER.info(
        "markitdown_upload_converted",
        file_name=file_name,
        converter=result.converter,
        bytes=len(content),
        duration_ms=int(max(0.0, time.monotonic() - started_at) * 1000),
    )
    return JSONResponse(result.model_dump(by_alias=True))


@app.post("/api/resume-pdf")
async def render_resume_pdf(request: Request) -> JSONResponse:
    payload = await _read_json(request)
    if payload is None:
        return _error("Expected a JSON payload with resume markdown and layout options.", 400)
    try:
        render_request = RenderRequest.model_validate(payload)
    except ValidationError as exc:
        message = "; ".join(error.get("msg", "invalid value") for error in exc.errors())
        return _error(message or "Invalid payload provided for PDF generation.", 400)
    result = await _runtime().markdown2pdf.render(render_request)
    pdf_renders_total.labels(kind=result.kind).inc()
    return JSONResponse(result.model_dump(mode="json", by_alias=True, exclude_none=True))


@app.post("/api/format-resume")
async def format_resume(request: Request) -> JSONResponse:
    payload = await _read_json(request)
    if not isinstance(payload, dict):
        return _error("Expected a JSON payload with resume markdown.", 400)
    markdown = payload.get("markdown")
    style_hints = payload.get("styleHints")
    try:
        result = await format_resume_markdown(
            markdown if isinstance(markdown, str) else "",
            style_hints if isinstance(style_hints, str) else None,
            _runtime().provider,
        )
    except FormatterError as exc:
        LOGGER.error("format_resume_failed", error=exc.detail, status_code=exc.status_code)
        return _error(exc.detail, exc.status_code)
    return JSONResponse({"markdown": result.markdown.strip(), "summary": result.summary})


@app.get("/api/resume")
def get_resume() -> JSONResponse:
    store = _runtime().state
    return JSONResponse({"state": store.state, "version": store.version, "variant": store.variant})


@app.post("/api/resume")
async def update_resume(request: Request) -> JSONResponse:
    body = await request.body()
    text = body.decode("utf-8", errors="replace")
    try:
        update: Any = json.loads(text)
    except json.JSONDecodeError:
        # Raw agent output; the merge contract repairs or rejects it.
        update = text
    if isinstance(update, dict) and "update" in update:
        update = update["update"]
    store = _runtime().state
    report = store.apply_update(update)
    resume_updates_total.labels(applied=str(report.applied).lower()).inc()
    return JSONResponse(
        {
            "applied": report.applied,
            "reason": report.reason,
            "state": store.state,
            "version": store.version,
        }
    )


@app.get("/healthz")
def healthz() -> dict[str, Any]:
    runtime = _runtime()
    return {
        "status": "ok",
        "markitdownConnected": runtime.markitdown.client.connected,
        "markdown2pdfConnected": runtime.markdown2pdf.client.connected,
    }
