import io
from typing import Any, Dict, Optional

from jinja2 import Template
from PIL import Image
from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib.utils import ImageReader, simpleSplit
from reportlab.pdfgen import canvas

from .store import CertificateTemplate


class CertificateRenderer:
    """Draws a one-page landscape certificate, optionally with a QR image."""

    def __init__(self, pagesize=landscape(A4)):
        self.pagesize = pagesize

    def render(self, template: CertificateTemplate, data: Dict[str, Any],
               qr_image: Optional[Image.Image] = None) -> bytes:
        buffer = io.BytesIO()
        width, height = self.pagesize
        pdf = canvas.Canvas(buffer, pagesize=self.pagesize)
        pdf.setTitle(f"{template.title} - {data.get('recipient_name', '')}")

        pdf.setLineWidth(3)
        pdf.rect(30, 30, width - 60, height - 60)

        pdf.setFont("Helvetica-Bold", 32)
        pdf.drawCentredString(width / 2, height - 130, template.title)

        pdf.setFont("Helvetica-Bold", 26)
        pdf.drawCentredString(width / 2, height - 220, data.get("recipient_name", ""))

        pdf.setFont("Helvetica", 14)
        body = Template(template.body).render(**data)
        for i, line in enumerate(simpleSplit(" ".join(body.split()), "Helvetica", 14, width - 160)):
            pdf.drawCentredString(width / 2, height - 270 - i * 20, line)

        pdf.setFont("Helvetica", 10)
        pdf.drawString(60, 60, f"Certificate No. {data.get('certificate_number', '')}")
        pdf.drawString(60, 46, f"Issued {data.get('issued_date', '')}")

        if qr_image is not None:
            pdf.drawImage(ImageReader(qr_image), width - 170, 50, width=110, height=110)

        pdf.showPage()
        pdf.save()
        return buffer.getvalue()
