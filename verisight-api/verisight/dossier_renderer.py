import io
import logging
import textwrap
from datetime import date
from pathlib import Path
from typing import List, Optional, Tuple, Union

from PIL import Image, ImageDraw, ImageFont
from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from verisight.config import settings
from verisight.detection_vectors import align_findings
from verisight.errors import RenderExportError
from verisight.schemas import ForensicReport
from verisight.session import SessionContext

logger = logging.getLogger("VeriSightEngine")

SHEET_WIDTH = 794  # 210mm at 96 dpi
RENDER_SCALE = 2

AUTHENTIC_RGB = (16, 185, 129)
MANIPULATED_RGB = (239, 68, 68)
WATERMARK_ALPHA = 0.2

STATUS_FILL = {
    "PASS": (220, 252, 231),
    "WARN": (254, 249, 195),
    "FAIL": (254, 226, 226),
}

RGB = Tuple[int, int, int]


def dossier_filename(today: Optional[date] = None) -> str:
    return f"VeriSight_Report_{(today or date.today()).isoformat()}.pdf"


def watermark_text(report: ForensicReport) -> Tuple[str, RGB]:
    if report.is_authentic:
        return "VERIFIED AUTHENTIC", AUTHENTIC_RGB
    return "MANIPULATION DETECTED", MANIPULATED_RGB


class _Sheet:
    """Draws the printable dossier template on a white raster, in CSS pixels times `scale`."""

    def __init__(self, scale: int):
        self.scale = scale
        self.width = SHEET_WIDTH * scale
        self.padding = 38 * scale
        self.commands = []
        self.y = self.padding
        self._font_cache = {}

    def font(self, size: int) -> ImageFont.FreeTypeFont:
        if size not in self._font_cache:
            self._font_cache[size] = ImageFont.load_default(size=size * self.scale)
        return self._font_cache[size]

    def px(self, value: float) -> int:
        return int(value * self.scale)

    def box(self, height: float, fill: RGB = (255, 255, 255), border: int = 2):
        top = self.y
        self.commands.append(("rect", (self.padding, top, self.width - self.padding, top + self.px(height)), fill, self.px(border)))
        return top

    def text(self, xy: Tuple[int, int], value: str, size: int, fill: RGB = (0, 0, 0), anchor: str = "la"):
        self.commands.append(("text", xy, value, size, fill, anchor))

    def render(self) -> Image.Image:
        image = Image.new("RGB", (self.width, self.y + self.padding), "white")
        draw = ImageDraw.Draw(image)
        for command in self.commands:
            if command[0] == "rect":
                _, bounds, fill, border = command
                draw.rectangle(bounds, fill=fill, outline=(0, 0, 0), width=border)
            else:
                _, xy, value, size, fill, anchor = command
                draw.text(xy, value, font=self.font(size), fill=fill, anchor=anchor)
        return image


def render_report_sheet(report: ForensicReport, scale: int = RENDER_SCALE) -> Image.Image:
    """
    Rasterizes the dossier template for `report`: header, Section A (score and verdict)
    and Section B (the ten detection vectors in display order).
    """
    sheet = _Sheet(scale)
    left = sheet.padding
    right = sheet.width - sheet.padding
    center = sheet.width // 2

    # Header
    top = sheet.box(64)
    sheet.text((left + sheet.px(12), top + sheet.px(12)), "FORENSIC INTELLIGENCE DOSSIER", 22)
    sheet.text((left + sheet.px(12), top + sheet.px(42)), "CONFIDENTIAL // VERISIGHT DEFENSE SYSTEMS", 10, (75, 85, 99))
    sheet.text((right - sheet.px(12), top + sheet.px(12)), "CLASS: TOP SECRET", 10, anchor="ra")
    sheet.text((right - sheet.px(12), top + sheet.px(34)), "VERISIGHT", 20, (67, 56, 202), anchor="ra")
    sheet.y += sheet.px(64 + 8)

    # Section (A)
    top = sheet.box(22, fill=(209, 213, 219))
    sheet.text((left + sheet.px(8), top + sheet.px(5)), "SECTION (A): TARGET ANALYSIS", 11)
    sheet.y += sheet.px(22)
    top = sheet.box(120)
    verdict_rgb = (21, 128, 61) if report.is_authentic else (185, 28, 28)
    sheet.text((center, top + sheet.px(14)), f"{report.score}/100", 36, anchor="ma")
    sheet.text((center, top + sheet.px(58)), report.verdict_label, 20, verdict_rgb, anchor="ma")
    sheet.text((center, top + sheet.px(84)), f"CONFIDENCE: {report.confidence_level}", 10, anchor="ma")
    sheet.text((center, top + sheet.px(100)), "VERIFIED BY: VERISIGHT AI", 10, anchor="ma")
    sheet.y += sheet.px(120 + 16)

    # Section (B)
    top = sheet.box(22, fill=(209, 213, 219))
    sheet.text((left + sheet.px(8), top + sheet.px(5)), "SECTION (B): 10-VECTOR SCAN", 11)
    sheet.y += sheet.px(22)
    for finding in align_findings(report.analysis):
        lines: List[str] = textwrap.wrap(finding.detail, width=78) or [""]
        row_height = max(22, 8 + 13 * len(lines))
        top = sheet.box(row_height, border=1)
        sheet.text((left + sheet.px(6), top + sheet.px(6)), finding.category, 10)
        badge_x = left + sheet.px(190)
        sheet.commands.append(
            ("rect", (badge_x, top + sheet.px(4), badge_x + sheet.px(40), top + sheet.px(18)), STATUS_FILL[finding.status], sheet.px(1))
        )
        sheet.text((badge_x + sheet.px(20), top + sheet.px(6)), finding.status, 8, anchor="ma")
        for index, line in enumerate(lines):
            sheet.text((left + sheet.px(244), top + sheet.px(6 + 13 * index)), line, 10)
        sheet.y += sheet.px(row_height)

    sheet.y += sheet.px(24)
    sheet.text((center, sheet.y), report.summary[:160], 9, (107, 114, 128), anchor="ma")
    sheet.y += sheet.px(16)
    return sheet.render()


def _stamp_watermark(pdf: canvas.Canvas, report: ForensicReport, session: SessionContext):
    text, (r, g, b) = watermark_text(report)
    page_width, page_height = A4
    pdf.saveState()
    pdf.setFillColorRGB(r / 255, g / 255, b / 255)
    pdf.setFillAlpha(WATERMARK_ALPHA)
    pdf.setFont("Helvetica-Bold", 40)
    pdf.translate(page_width / 2, page_height / 2)
    pdf.rotate(45)
    pdf.drawCentredString(0, 0, text)
    pdf.drawCentredString(0, -14 * mm, f"AGENT: {session.operator_id}")
    pdf.restoreState()


def build_dossier_pdf(
    report: ForensicReport,
    session: SessionContext,
    sheet: Optional[Image.Image] = None,
) -> bytes:
    """
    Builds the watermarked A4 dossier. The sheet is scaled to the page width and
    continues on further pages when it's taller than one page.

    Raises:
        RenderExportError: rasterizing or writing the document failed.
    """
    try:
        sheet = sheet if sheet is not None else render_report_sheet(report)
        buffer = io.BytesIO()
        pdf = canvas.Canvas(buffer, pagesize=A4)
        pdf.setTitle(f"VeriSight Forensic Dossier ({report.verdict_label})")
        pdf.setAuthor(session.operator_id)

        page_width, page_height = A4
        points_per_pixel = page_width / sheet.width
        slice_height = int(page_height / points_per_pixel)
        for top in range(0, sheet.height, slice_height):
            page_slice = sheet.crop((0, top, sheet.width, min(top + slice_height, sheet.height)))
            draw_height = page_slice.height * points_per_pixel
            pdf.drawImage(ImageReader(page_slice), 0, page_height - draw_height, width=page_width, height=draw_height)
            _stamp_watermark(pdf, report, session)
            pdf.showPage()

        pdf.save()
        return buffer.getvalue()
    except Exception as e:
        logger.error(f"PDF Error: {e}", exc_info=True)
        raise RenderExportError(f"PDF Error: {e}") from e


def export_dossier(
    report: ForensicReport,
    session: SessionContext,
    output_dir: Union[str, Path, None] = None,
    today: Optional[date] = None,
) -> Path:
    """Writes the dossier as `VeriSight_Report_<YYYY-MM-DD>.pdf` into `output_dir`."""
    document = build_dossier_pdf(report, session)
    target_dir = Path(output_dir or settings.DOSSIER_DIR)
    try:
        target_dir.mkdir(parents=True, exist_ok=True)
        target = target_dir / dossier_filename(today)
        target.write_bytes(document)
    except OSError as e:
        logger.error(f"PDF Error: could not save dossier to {target_dir}: {e}")
        raise RenderExportError(f"PDF Error: could not save dossier: {e}") from e

    logger.info(f"Dossier for agent {session.operator_id} saved to {target}")
    return target
