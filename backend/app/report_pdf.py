import io
import re
from datetime import datetime

from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.lib.utils import simpleSplit
from reportlab.pdfgen import canvas

from .schemas import ReportStructure, utc_now

PAGE_WIDTH, PAGE_HEIGHT = A4
MARGIN = 20 * mm
TEXT_WIDTH = PAGE_WIDTH - 2 * MARGIN

# Minimum space left on the page before a new block starts; otherwise break first.
SECTION_MIN_SPACE = 47 * mm
REFERENCES_MIN_SPACE = 67 * mm

SECTIONS = (
    ("Background & Introduction", "background"),
    ("Experimental Methods", "methods"),
    ("Results & Conclusions", "results"),
    ("Discussion & Gap Analysis", "discussion"),
)


def report_filename(nickname: str) -> str:
    slug = re.sub(r"\s+", "_", nickname.strip())
    return f"ReadForMe_Analysis_{slug}.pdf"


class _ReportWriter:
    def __init__(self, buffer: io.BytesIO) -> None:
        self.canvas = canvas.Canvas(buffer, pagesize=A4)
        self.y = PAGE_HEIGHT - MARGIN

    def new_page(self) -> None:
        self.canvas.showPage()
        self.y = PAGE_HEIGHT - MARGIN

    def ensure_space(self, needed: float) -> None:
        at_top = self.y >= PAGE_HEIGHT - MARGIN
        if self.y - needed < MARGIN and not at_top:
            self.new_page()

    def line(self, text: str, font: str, size: float, leading: float, color: tuple[float, float, float]) -> None:
        self.ensure_space(leading)
        self.canvas.setFont(font, size)
        self.canvas.setFillColorRGB(*color)
        self.canvas.drawString(MARGIN, self.y - size, text)
        self.y -= leading

    def paragraph(self, text: str, font: str, size: float, leading: float, color: tuple[float, float, float]) -> None:
        for raw_line in text.splitlines() or [""]:
            for wrapped in simpleSplit(raw_line, font, size, TEXT_WIDTH) or [""]:
                self.line(wrapped, font, size, leading, color)

    def divider(self) -> None:
        self.canvas.setStrokeColorRGB(0.78, 0.78, 0.78)
        self.canvas.line(MARGIN, self.y, PAGE_WIDTH - MARGIN, self.y)
        self.y -= 8 * mm

    def finish(self) -> None:
        self.canvas.save()


def render_report_pdf(report: ReportStructure, nickname: str, generated_at: datetime | None = None) -> bytes:
    """Lay out a synthesized report as an A4 PDF.

    Sections keep a fixed order and are skipped when they carry fewer than five
    characters. References follow in an appendix, one wrapped entry at a time.
    """
    generated_at = generated_at or utc_now()
    buffer = io.BytesIO()
    writer = _ReportWriter(buffer)
    writer.canvas.setTitle(f"ReadForMe Analysis - {nickname}")

    writer.line("ReadForMe Analysis", "Helvetica-Bold", 24, 12 * mm, (0.12, 0.25, 0.69))
    writer.line(f"Project Context: {nickname}", "Helvetica", 14, 8 * mm, (0.39, 0.39, 0.39))
    writer.line(
        f"Completion Timestamp: {generated_at.strftime('%Y-%m-%d %H:%M:%S %Z').strip()}",
        "Helvetica",
        10,
        10 * mm,
        (0.59, 0.59, 0.59),
    )
    writer.divider()

    for title, field in SECTIONS:
        content = getattr(report, field) or ""
        if len(content.strip()) < 5:
            continue
        writer.ensure_space(SECTION_MIN_SPACE)
        writer.line(title, "Helvetica-Bold", 16, 10 * mm, (0, 0, 0))
        writer.paragraph(content, "Helvetica", 11, 6 * mm, (0.24, 0.24, 0.24))
        writer.y -= 10 * mm

    if report.references:
        writer.ensure_space(REFERENCES_MIN_SPACE)
        writer.line("References (APA)", "Helvetica-Bold", 14, 10 * mm, (0, 0, 0))
        for ref in report.references:
            lines = simpleSplit(ref, "Helvetica", 10, TEXT_WIDTH) or [""]
            writer.ensure_space(len(lines) * 5 * mm + 5 * mm)
            for wrapped in lines:
                writer.line(wrapped, "Helvetica", 10, 5 * mm, (0, 0, 0))
            writer.y -= 5 * mm

    writer.finish()
    return buffer.getvalue()
