# research_backend/report.py
"""
Report artifact assembly.

The generator interface takes everything a report needs and returns bytes.
Two renderers ship:
- PdfReportGenerator: the emailed and downloadable PDF (fpdf2, core fonts)
- MarkdownReportGenerator: a plain UTF-8 markdown document

Both lay out the same sections: title, creation time, prompt, refined prompt
(only when it differs) and one section per provider.
"""
import re
import datetime
from dataclasses import dataclass
from typing import List, Optional, Tuple

from fpdf import FPDF
from fpdf.enums import XPos, YPos

REPORT_FORMATS = ("pdf", "markdown")


def sanitize_filename(title: str, max_length: int = 50) -> str:
    """Lowercase, non-alphanumerics collapsed to single hyphens, trimmed, capped."""
    slug = re.sub(r"[^a-z0-9]", "-", title, flags=re.IGNORECASE).lower()
    slug = re.sub(r"-+", "-", slug).strip("-")
    return slug[:max_length] or "research-report"


@dataclass(frozen=True)
class ReportArtifact:
    content: bytes
    filename: str
    content_type: str


class ReportGenerator:
    content_type = "application/octet-stream"
    extension = "bin"

    def generate(self, title: str, initial_prompt: str, refined_prompt: Optional[str],
                 openai_result: str, gemini_result: str, created_at: datetime.datetime) -> bytes:
        raise NotImplementedError

    def filename_for(self, title: str) -> str:
        return f"{sanitize_filename(title)} Research Report.{self.extension}"

    def build(self, title: str, initial_prompt: str, refined_prompt: Optional[str],
              openai_result: str, gemini_result: str, created_at: datetime.datetime) -> ReportArtifact:
        content = self.generate(title, initial_prompt, refined_prompt, openai_result, gemini_result, created_at)
        return ReportArtifact(content=content, filename=self.filename_for(title), content_type=self.content_type)

    @staticmethod
    def sections(initial_prompt: str, refined_prompt: Optional[str],
                 openai_result: str, gemini_result: str) -> List[Tuple[str, str]]:
        out = [("Research Prompt", initial_prompt)]
        if refined_prompt and refined_prompt != initial_prompt:
            out.append(("Refined Prompt", refined_prompt))
        out.append(("OpenAI Deep Research", openai_result))
        out.append(("Gemini Research", gemini_result))
        return out

    @staticmethod
    def created_line(created_at: datetime.datetime) -> str:
        return f"Research session created {created_at.strftime('%Y-%m-%d %H:%M UTC')}"


class MarkdownReportGenerator(ReportGenerator):
    content_type = "text/markdown; charset=utf-8"
    extension = "md"

    def generate(self, title, initial_prompt, refined_prompt, openai_result, gemini_result, created_at):
        lines = [f"# {title}", "", f"_{self.created_line(created_at)}_", ""]
        for heading, body in self.sections(initial_prompt, refined_prompt, openai_result, gemini_result):
            lines += [f"## {heading}", "", body, ""]
        return "\n".join(lines).encode("utf-8")


# Core PDF fonts only cover latin-1; common typographic characters get ASCII stand-ins.
_PDF_REPLACEMENTS = {
    "\u2018": "'", "\u2019": "'", "\u201c": '"', "\u201d": '"',
    "\u2013": "-", "\u2014": "-", "\u2022": "*", "\u2026": "...", "\u00a0": " ",
}


def pdf_safe(text: str) -> str:
    for src, dst in _PDF_REPLACEMENTS.items():
        text = text.replace(src, dst)
    return text.encode("latin-1", "replace").decode("latin-1")


class PdfReportGenerator(ReportGenerator):
    content_type = "application/pdf"
    extension = "pdf"

    def __init__(self, font: str = "Helvetica"):
        self.font = font

    def _paragraph(self, pdf: FPDF, text: str, size: int, style: str = "", height: float = 6) -> None:
        pdf.set_font(self.font, style=style, size=size)
        pdf.multi_cell(0, height, pdf_safe(text), new_x=XPos.LMARGIN, new_y=YPos.NEXT)

    def generate(self, title, initial_prompt, refined_prompt, openai_result, gemini_result, created_at):
        pdf = FPDF(format="A4")
        pdf.set_title(pdf_safe(title))
        pdf.set_auto_page_break(auto=True, margin=15)
        pdf.add_page()

        self._paragraph(pdf, title, 18, style="B", height=10)
        self._paragraph(pdf, self.created_line(created_at), 9, style="I")
        pdf.ln(4)
        for heading, body in self.sections(initial_prompt, refined_prompt, openai_result, gemini_result):
            self._paragraph(pdf, heading, 14, style="B", height=8)
            self._paragraph(pdf, body or "", 10, height=5)
            pdf.ln(4)
        return bytes(pdf.output())


def generator_for(report_format: str) -> ReportGenerator:
    """Renderer for a REPORT_FORMAT value; unknown formats are a config error."""
    fmt = (report_format or "pdf").strip().lower()
    if fmt == "pdf":
        return PdfReportGenerator()
    if fmt == "markdown":
        return MarkdownReportGenerator()
    raise ValueError(f"unknown report format {report_format!r}; expected one of {', '.join(REPORT_FORMATS)}")
