import io
from datetime import datetime, timezone

from pypdf import PdfReader

from backend.app.report_pdf import render_report_pdf, report_filename
from backend.app.schemas import ReportStructure


def _text(pdf_bytes: bytes) -> tuple[int, str]:
    reader = PdfReader(io.BytesIO(pdf_bytes))
    return len(reader.pages), "\n".join(page.extract_text() or "" for page in reader.pages)


def test_short_report_fits_one_page_with_fixed_sections() -> None:
    report = ReportStructure(
        background="Exhaustion arises under chronic stimulation.",
        methods="n/a",
        results="PD-1 high cells lose effector function.",
        discussion="Blockade restores part of the response.",
        references=["Doe, J. (2024). Exhaustion. Journal of Tests, 1(2), 3-4."],
    )

    pages, text = _text(render_report_pdf(report, "T cells", datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)))

    assert pages == 1
    assert "ReadForMe Analysis" in text
    assert "Project Context: T cells" in text
    assert "Completion Timestamp: 2024-05-01 12:00:00" in text
    assert "Background & Introduction" in text
    assert "Experimental Methods" not in text
    assert text.index("Results & Conclusions") < text.index("Discussion & Gap Analysis") < text.index("References (APA)")


def test_long_report_paginates() -> None:
    paragraph = "Chronic antigen exposure drives a distinct differentiation program. " * 60
    report = ReportStructure(
        background=paragraph,
        methods=paragraph,
        results=paragraph,
        discussion=paragraph,
        references=[f"Author {i}, A. (2020). Title number {i}. Journal, {i}(1), 1-10." for i in range(80)],
    )

    pages, text = _text(render_report_pdf(report, "Long project"))

    assert pages > 3
    assert "Title number 79" in text


def test_no_references_section_when_empty() -> None:
    report = ReportStructure(background="Some background text.", methods="", results="", discussion="", references=[])

    _, text = _text(render_report_pdf(report, "Empty refs"))

    assert "References (APA)" not in text


def test_report_filename() -> None:
    assert report_filename("My  T cell\tproject") == "ReadForMe_Analysis_My_T_cell_project.pdf"
