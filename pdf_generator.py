import base64
import io
import logging
import re
from datetime import date, datetime
from typing import List, Optional

from PIL import Image, UnidentifiedImageError
from reportlab.graphics import renderPDF
from reportlab.graphics.barcode.qr import QrCodeWidget
from reportlab.graphics.shapes import Drawing
from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.lib.utils import ImageReader
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfgen import canvas

from errors import DocumentExportError, FieldError, ValidationError
from models import Prescription

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

MARGIN = 20 * mm
HEADER_HEIGHT = 40 * mm
FOOTER_HEIGHT = 40 * mm
HEADER_COLOR = (37 / 255, 99 / 255, 235 / 255)


# --- Helpers ---

def _to_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).date()
    except ValueError:
        pass
    try:
        return datetime.strptime(value[:10], "%Y-%m-%d").date()
    except ValueError:
        return None


def _fmt_date(value: Optional[str]) -> str:
    d = _to_date(value)
    return d.strftime("%d-%m-%Y") if d else (value or "")


def calculate_age(dob: str, today: Optional[date] = None) -> Optional[int]:
    """Age in whole years on `today`, or None if dob is not a date."""
    birth = _to_date(dob)
    if birth is None:
        return None
    today = today or date.today()
    return today.year - birth.year - ((today.month, today.day) < (birth.month, birth.day))


def _wrap(text: str, font: str, size: float, max_width: float) -> List[str]:
    words = (text or "").replace("\n", " ").split()
    if not words:
        return [""]
    lines: List[str] = []
    current = ""
    for word in words:
        candidate = (current + " " + word).strip()
        if pdfmetrics.stringWidth(candidate, font, size) <= max_width:
            current = candidate
        else:
            if current:
                lines.append(current)
            current = word
    if current:
        lines.append(current)
    return lines


def _decode_data_url(data_url: str) -> bytes:
    payload = data_url.split(",", 1)[1] if data_url.startswith("data:") else data_url
    return base64.b64decode(payload, validate=True)


def signature_data_url(image_bytes: bytes) -> str:
    """Normalises an uploaded signature image to a PNG data URL for the doctor profile."""
    try:
        image = Image.open(io.BytesIO(image_bytes))
        image.load()
    except (UnidentifiedImageError, OSError) as e:
        logger.error(f"Signature upload is not a readable image: {e}")
        raise ValidationError([FieldError(field="signature", message="Signature must be an image file")],
                              kind="doctor_profile") from e
    buffer = io.BytesIO()
    image.convert("RGBA").save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode("ascii")


def pdf_filename(prescription: Prescription) -> str:
    name = re.sub(r"\s+", "_", prescription.patient_data.name)
    return f"prescription_{name}_{prescription.id}.pdf"


# --- Rendering ---

class _Writer:
    """Tracks the current baseline while text flows down the page."""

    def __init__(self, pdf: canvas.Canvas, width: float, height: float):
        self.pdf = pdf
        self.width = width
        self.height = height
        self.y = height - MARGIN

    def text(self, text: str, size: float = 10, bold: bool = False, gap: float = 0):
        font = "Helvetica-Bold" if bold else "Helvetica"
        self.pdf.setFont(font, size)
        for line in _wrap(text, font, size, self.width - 2 * MARGIN):
            if self.ensure_room():
                self.pdf.setFont(font, size)
            self.pdf.drawString(MARGIN, self.y, line)
            self.y -= size * 0.4 * mm * 1.1
        self.y -= gap

    def heading(self, text: str, size: float = 14):
        self.y -= 4 * mm
        self.text(text, size=size, bold=True, gap=2 * mm)

    def ensure_room(self) -> bool:
        """Starts a new page when the baseline reaches the footer area. A new page resets the font."""
        if self.y < FOOTER_HEIGHT + 20 * mm:
            self.pdf.showPage()
            self.y = self.height - MARGIN
            return True
        return False


def _draw_header(pdf: canvas.Canvas, prescription: Prescription, width: float, height: float):
    doctor = prescription.doctor_data
    pdf.setFillColorRGB(*HEADER_COLOR)
    pdf.rect(0, height - HEADER_HEIGHT, width, HEADER_HEIGHT, stroke=0, fill=1)

    pdf.setFillColorRGB(1, 1, 1)
    pdf.setFont("Helvetica-Bold", 16)
    pdf.drawString(MARGIN, height - 15 * mm, "PRESCRIPTION")
    pdf.setFont("Helvetica", 10)
    pdf.drawString(MARGIN, height - 22 * mm, f"Dr. {doctor.name}, {doctor.degree}")
    pdf.setFont("Helvetica", 8)
    pdf.drawString(MARGIN, height - 27 * mm, f"Reg No: {doctor.registration_number}")
    pdf.drawString(MARGIN, height - 31 * mm, doctor.hospital)
    pdf.setFillColorRGB(0, 0, 0)


def _draw_footer(pdf: canvas.Canvas, prescription: Prescription, width: float, include_qr: bool):
    footer_y = FOOTER_HEIGHT
    pdf.setFont("Helvetica", 8)
    pdf.drawString(MARGIN + (25 * mm if include_qr else 0), footer_y, f"Date: {_fmt_date(prescription.created_at)}")
    pdf.drawString(MARGIN + (25 * mm if include_qr else 0), footer_y - 5 * mm, f"Prescription ID: {prescription.id}")

    signature = prescription.doctor_data.signature
    if signature:
        try:
            reader = ImageReader(io.BytesIO(_decode_data_url(signature)))
            pdf.drawImage(reader, width - 80 * mm, footer_y, 60 * mm, 20 * mm,
                          preserveAspectRatio=True, mask="auto")
        except Exception as e:
            logger.warning(f"Could not add signature to PDF: {e}")

    if include_qr and prescription.qr_code:
        widget = QrCodeWidget(prescription.qr_code)
        x1, y1, x2, y2 = widget.getBounds()
        size = 20 * mm
        drawing = Drawing(size, size, transform=[size / (x2 - x1), 0, 0, size / (y2 - y1), 0, 0])
        drawing.add(widget)
        renderPDF.draw(drawing, pdf, MARGIN, footer_y - 5 * mm)
        pdf.setFont("Helvetica", 6)
        pdf.drawString(MARGIN, footer_y - 8 * mm, "Scan to verify")

    pdf.setFont("Helvetica", 8)
    pdf.drawString(MARGIN, 10 * mm, "-- Prescription generated by MedScript --")


def generate_pdf(prescription: Prescription, include_qr: bool = True, today: Optional[date] = None) -> bytes:
    """
    Renders a prescription as an A4 PDF.

    Args:
        prescription: The saved prescription to render.
        include_qr: Draw the verification QR code in the footer.
        today: Reference date for the patient's age (defaults to today).

    Returns:
        The PDF file contents.

    Raises:
        DocumentExportError: rendering failed.
    """
    logger.info(f"Generating PDF for prescription {prescription.id}")
    try:
        buffer = io.BytesIO()
        width, height = A4
        pdf = canvas.Canvas(buffer, pagesize=A4)
        pdf.setTitle(f"Prescription {prescription.id}")

        _draw_header(pdf, prescription, width, height)
        writer = _Writer(pdf, width, height)
        writer.y = height - HEADER_HEIGHT - 10 * mm

        patient = prescription.patient_data
        writer.heading("PATIENT INFORMATION")
        age = calculate_age(patient.dob, today)
        info = [
            f"Name: {patient.name}",
            f"Age: {age} years" if age is not None else "Age: -",
            f"Gender: {patient.gender}",
            f"Mobile: {patient.mobile}",
            f"DOB: {_fmt_date(patient.dob)}",
        ]
        if patient.address:
            info.append(f"Address: {patient.address}")
        if patient.height:
            info.append(f"Height: {patient.height} {patient.height_unit}")
        if patient.weight:
            info.append(f"Weight: {patient.weight} {patient.weight_unit}")
        for line in info:
            writer.text(line, gap=1 * mm)

        writer.heading("MEDICAL DETAILS")
        writer.text(f"Chief Complaint: {patient.chief_complaint}", gap=2 * mm)
        writer.text(f"Diagnosis: {patient.diagnosis}", gap=2 * mm)
        if patient.notes:
            writer.text(f"Notes: {patient.notes}", gap=2 * mm)

        writer.heading("MEDICATIONS")
        for index, med in enumerate(prescription.medications, start=1):
            writer.text(f"{index}. {med.name} {med.strength} - {med.dose} - {med.route} - "
                        f"{med.frequency} - {med.duration}")
            if med.quantity:
                writer.text(f"   Quantity: {med.quantity}")
            if med.instructions:
                writer.text(f"   Instructions: {med.instructions}")
            writer.y -= 1 * mm

        if patient.followup_date:
            writer.heading("FOLLOW-UP", size=12)
            writer.text(f"Next visit: {_fmt_date(patient.followup_date)} {patient.followup_time or ''}".strip())

        _draw_footer(pdf, prescription, width, include_qr)
        pdf.showPage()
        pdf.save()
    except Exception as e:
        logger.error(f"Error generating PDF for {prescription.id}: {e}", exc_info=True)
        raise DocumentExportError("Failed to generate PDF") from e

    return buffer.getvalue()
