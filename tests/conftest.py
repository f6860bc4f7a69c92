import io
import json
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import pytest
from pypdf import PdfWriter

from backend.app import db, services
from backend.app.schemas import (
    AnalysisStatus,
    AnalyzedFile,
    CitationData,
    DocumentAnalysis,
    ThematicStatus,
)


def make_pdf_bytes(pages: int = 1) -> bytes:
    writer = PdfWriter()
    for _ in range(pages):
        writer.add_blank_page(width=300, height=400)
    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


def make_analysis(title: str, topic: str = "Immunology", literature_type: str = "Primary Research") -> DocumentAnalysis:
    return DocumentAnalysis(
        title=title,
        summary=f"Summary of {title}.",
        key_points=[f"{title} finding one", f"{title} finding two"],
        citation_data=CitationData(
            title=title,
            journal="Journal of Tests",
            year="2024",
            authors=["Doe, J.", "Roe, R."],
            literature_type=literature_type,
            main_topic=topic,
        ),
        thematic_tags=[topic.lower()],
    )


def completed_file(filename: str, topic: str = "Immunology", thematic: ThematicStatus = ThematicStatus.UNKNOWN) -> AnalyzedFile:
    return AnalyzedFile(
        filename=filename,
        status=AnalysisStatus.COMPLETED,
        result=make_analysis(filename.removesuffix(".pdf"), topic),
        thematic_status=thematic,
    )


class FakeResponses:
    """Stands in for ``AsyncOpenAI().responses`` and records every request."""

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []
        self.outliers: list[dict[str, str]] = []
        self.main_theme = "Immunology: T-Cell Exhaustion"
        self.answer = "T cells become exhausted (Doe, 2024)."
        self.citations: list[tuple[str, str]] = []
        self.report = {
            "background": "Background on T-cell exhaustion.",
            "methods": "Flow cytometry and single-cell sequencing.",
            "results": "Exhausted cells express PD-1.",
            "discussion": "Checkpoint blockade partially restores function.",
            "references": ["Doe, J. (2024). Exhaustion. Journal of Tests."],
        }
        self.error: Exception | None = None

    async def create(self, **kwargs: Any) -> SimpleNamespace:
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error

        schema_name = kwargs.get("text", {}).get("format", {}).get("name")
        if schema_name == "document_analysis":
            filename = kwargs["input"][0]["content"][0]["filename"]
            payload = make_analysis(filename.removesuffix(".pdf")).model_dump()
            return SimpleNamespace(output_text=json.dumps(payload), output=[])
        if schema_name == "outlier_report":
            payload = {"main_theme": self.main_theme, "outliers": self.outliers}
            return SimpleNamespace(output_text=json.dumps(payload), output=[])
        if schema_name == "report_structure":
            return SimpleNamespace(output_text=json.dumps(self.report), output=[])

        annotations = [SimpleNamespace(type="url_citation", title=title, url=url) for title, url in self.citations]
        message = SimpleNamespace(
            type="message",
            content=[SimpleNamespace(type="output_text", text=self.answer, annotations=annotations)],
        )
        return SimpleNamespace(output_text=self.answer, output=[message])

    def calls_for(self, schema_name: str | None) -> list[dict[str, Any]]:
        return [c for c in self.calls if c.get("text", {}).get("format", {}).get("name") == schema_name]


@pytest.fixture
def fake_responses(monkeypatch: pytest.MonkeyPatch) -> FakeResponses:
    responses = FakeResponses()
    client = SimpleNamespace(responses=responses)
    monkeypatch.setattr(services, "_get_client", lambda: client)
    return responses


@pytest.fixture
def temp_db(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    path = tmp_path / "readforme.db"
    monkeypatch.setattr(db, "DB_PATH", path)
    db.init_db()
    return path
