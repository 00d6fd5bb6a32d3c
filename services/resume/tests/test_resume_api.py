from __future__ import annotations

import asyncio
import dataclasses
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient

from libs.core.config import load_settings
from libs.core.llm_provider import LLMProviderError, LLMResponse
from libs.core.resume_state import ResumeStateStore
from libs.framework.tool_runtime import ToolUnavailableError
from libs.tools.markdown2pdf import Markdown2PdfGateway
from libs.tools.markitdown import MarkitdownGateway
from libs.tools.mcp_transport import OutputDirectory
from services.resume.app import main
from services.resume.app import runtime as runtime_module
from services.resume.app.runtime import ResumeRuntime


class _FakeToolClient:
    def __init__(self, result: Any = None, error: BaseException | None = None) -> None:
        self.result = result
        self.error = error
        self.calls: list[dict] = []
        self.connected = False

    async def call_tool(self, arguments: dict) -> Any:
        self.calls.append(arguments)
        if self.error is not None:
            raise self.error
        return self.result

    async def aclose(self) -> None:
        return None


class _FakeProvider:
    name = "fake"

    def __init__(self, content: str = "", error: Exception | None = None) -> None:
        self.content = content
        self.error = error

    def generate(self, prompt: str, system: str | None = None) -> LLMResponse:
        if self.error is not None:
            raise self.error
        return LLMResponse(content=self.content)


def _install_runtime(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    *,
    converter: _FakeToolClient | None = None,
    renderer: _FakeToolClient | None = None,
    provider: Any = None,
    max_upload_bytes: int | None = None,
) -> ResumeRuntime:
    settings = load_settings({}, cwd=tmp_path)
    if max_upload_bytes is not None:
        settings = dataclasses.replace(settings, max_upload_bytes=max_upload_bytes)
    output_dir = OutputDirectory(tmp_path / "out")
    runtime = ResumeRuntime(
        settings=settings,
        markitdown=MarkitdownGateway(converter or _FakeToolClient(result="# Converted")),  # type: ignore[arg-type]
        markdown2pdf=Markdown2PdfGateway(
            renderer or _FakeToolClient(error=ToolUnavailableError("renderer down")),  # type: ignore[arg-type]
            output_dir,
        ),
        provider=provider or _FakeProvider(),
        state=ResumeStateStore(),
    )
    monkeypatch.setattr(main.app.state, "runtime", runtime)
    return runtime


client = TestClient(main.app)


def test_markitdown_converts_upload(monkeypatch, tmp_path) -> None:
    converter = _FakeToolClient(result={"content": [{"type": "text", "text": "  # CV\n\nText  \n"}]})
    _install_runtime(monkeypatch, tmp_path, converter=converter)

    response = client.post(
        "/api/markitdown",
        files={"file": ("cv.docx", b"docx-bytes", "application/vnd.ms-word")},
    )

    assert response.status_code == 200
    assert response.json() == {"markdown": "# CV\n\nText", "fileName": "cv.docx", "converter": "markitdown"}
    assert converter.calls[0]["uri"].startswith("data:application/vnd.ms-word;base64,")


def test_markitdown_requires_file_field(monkeypatch, tmp_path) -> None:
    _install_runtime(monkeypatch, tmp_path)
    response = client.post("/api/markitdown", files={"upload": ("cv.txt", b"x", "text/plain")})
    assert response.status_code == 400
    assert "file" in response.json()["error"]


def test_markitdown_rejects_large_upload(monkeypatch, tmp_path) -> None:
    converter = _FakeToolClient(result="unused")
    _install_runtime(monkeypatch, tmp_path, converter=converter, max_upload_bytes=4)
    response = client.post("/api/markitdown", files={"file": ("cv.txt", b"too large", "text/plain")})
    assert response.status_code == 413
    assert "too large" in response.json()["error"]
    assert converter.calls == []


def test_upload_read_is_bounded_by_limit() -> None:
    class _Upload:
        def __init__(self, data: bytes, size: int | None) -> None:
            self.data = data
            self.size = size
            self.reads: list[int] = []

        async def read(self, size: int = -1) -> bytes:
            self.reads.append(size)
            return self.data if size < 0 else self.data[:size]

    declared = _Upload(b"x" * 64, size=64)
    assert asyncio.run(main._read_upload(declared, 8)) is None  # type: ignore[arg-type]
    assert declared.reads == []

    streamed = _Upload(b"x" * 64, size=None)
    assert asyncio.run(main._read_upload(streamed, 8)) is None  # type: ignore[arg-type]
    assert streamed.reads == [9]

    small = _Upload(b"abc", size=None)
    assert asyncio.run(main._read_upload(small, 8)) == b"abc"  # type: ignore[arg-type]


def test_markitdown_failure_for_non_pdf_is_502(monkeypatch, tmp_path) -> None:
    converter = _FakeToolClient(error=ToolUnavailableError("markitdown MCP server is unreachable"))
    _install_runtime(monkeypatch, tmp_path, converter=converter)
    response = client.post("/api/markitdown", files={"file": ("cv.txt", b"x", "text/plain")})
    assert response.status_code == 502
    assert response.json() == {"error": "markitdown MCP server is unreachable"}


def test_markitdown_failure_for_pdf_uses_local_text(monkeypatch, tmp_path) -> None:
    converter = _FakeToolClient(error=ToolUnavailableError("markitdown MCP server is unreachable"))
    _install_runtime(monkeypatch, tmp_path, converter=converter)
    monkeypatch.setattr(runtime_module, "extract_pdf_text", lambda _raw: "Jane Doe\nEngineer\n")

    response = client.post("/api/markitdown", files={"file": ("cv.pdf", b"%PDF-1.4", "application/pdf")})

    assert response.status_code == 200
    assert response.json() == {"markdown": "Jane Doe\nEngineer", "fileName": "cv.pdf", "converter": "pypdf"}


def test_resume_pdf_validation_errors(monkeypatch, tmp_path) -> None:
    _install_runtime(monkeypatch, tmp_path)
    bad_json = client.post(
        "/api/resume-pdf", content=b"{not json", headers={"Content-Type": "application/json"}
    )
    assert bad_json.status_code == 400
    invalid = client.post("/api/resume-pdf", json={"markdown": "# Jane", "watermark": "draft!!"})
    assert invalid.status_code == 400
    assert invalid.json()["error"]


def test_resume_pdf_falls_back_when_renderer_is_down(monkeypatch, tmp_path) -> None:
    _install_runtime(monkeypatch, tmp_path)
    response = client.post("/api/resume-pdf", json={"markdown": "# Jane", "fileName": "Jane CV"})
    assert response.status_code == 200
    body = response.json()
    assert body["kind"] == "markdown-download"
    assert body["fileName"] == "Jane CV.md"
    assert body["markdown"] == "# Jane"
    assert body["contentType"] == "text/markdown"
    assert body["reason"] == "renderer down"


def test_resume_pdf_returns_pdf(monkeypatch, tmp_path) -> None:
    class _Renderer(_FakeToolClient):
        async def call_tool(self, arguments: dict) -> Any:
            self.calls.append(arguments)
            Path(arguments["outputFilename"]).write_bytes(b"%PDF-1.7")
            return f"PDF file created successfully at: {arguments['outputFilename']}"

    renderer = _Renderer()
    _install_runtime(monkeypatch, tmp_path, renderer=renderer)
    response = client.post(
        "/api/resume-pdf",
        json={"markdown": "# Jane", "pageSize": "a4", "margin": "narrow", "watermark": "draft"},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["kind"] == "pdf"
    assert body["byteLength"] == 8
    assert body["layout"] == {
        "pageSize": "a4",
        "margin": "narrow",
        "orientation": "portrait",
        "showPageNumbers": False,
        "watermark": "DRAFT",
    }
    assert renderer.calls[0]["paperBorder"] == "12mm"


def test_format_resume_route(monkeypatch, tmp_path) -> None:
    _install_runtime(
        monkeypatch,
        tmp_path,
        provider=_FakeProvider('{"markdown": "# Jane\\n", "summary": "Normalized headings."}'),
    )
    response = client.post("/api/format-resume", json={"markdown": "#Jane", "styleHints": "ATS"})
    assert response.status_code == 200
    assert response.json() == {"markdown": "# Jane", "summary": "Normalized headings."}

    missing = client.post("/api/format-resume", json={"styleHints": "ATS"})
    assert missing.status_code == 400
    assert missing.json() == {"error": "Provide non-empty markdown to format."}


def test_format_resume_provider_failure(monkeypatch, tmp_path) -> None:
    _install_runtime(monkeypatch, tmp_path, provider=_FakeProvider(error=LLMProviderError("model offline")))
    response = client.post("/api/format-resume", json={"markdown": "# Jane"})
    assert response.status_code == 502
    assert response.json() == {"error": "model offline"}


def test_resume_state_routes(monkeypatch, tmp_path) -> None:
    _install_runtime(monkeypatch, tmp_path)

    initial = client.get("/api/resume").json()
    assert initial["version"] == 0
    assert initial["state"]["markdownResume"].startswith("# Resume Snapshot")

    applied = client.post("/api/resume", json={"markdownResume": "# Jane Doe"}).json()
    assert applied["applied"] is True
    assert applied["version"] == 1

    fenced = client.post(
        "/api/resume",
        content="```markdown\n# Jane Doe\n```".encode("utf-8"),
        headers={"Content-Type": "text/plain"},
    ).json()
    assert fenced["applied"] is False
    assert fenced["reason"] == "unchanged"
    assert fenced["version"] == 1

    wrapped = client.post("/api/resume", json={"update": {"markdownResume": "# Jane Q. Doe"}}).json()
    assert wrapped["applied"] is True
    assert wrapped["state"] == {"markdownResume": "# Jane Q. Doe"}


def test_metrics_and_health(monkeypatch, tmp_path) -> None:
    _install_runtime(monkeypatch, tmp_path)
    client.post("/api/resume-pdf", json={"markdown": "# Jane"})
    metrics = client.get("/metrics/")
    assert metrics.status_code == 200
    assert "resume_pdf_renders_total" in metrics.text
    health = client.get("/healthz").json()
    assert health == {"status": "ok", "markitdownConnected": False, "markdown2pdfConnected": False}
