"""PDF generation and stamping with reportlab overlays merged through pypdf."""
import re
from datetime import datetime
from html import unescape
from io import BytesIO
from typing import List, Optional
from pypdf import PdfReader, PdfWriter
from reportlab.lib.pagesizes import letter
from reportlab.lib.utils import ImageReader, simpleSplit
from reportlab.pdfgen import canvas

SIGNED_NOTICE = "This document has been electronically signed and is legally binding."

_BLOCK_TAGS = re.compile(r"</?(p|div|br|h[1-6]|li|ul|ol|tr|table|section)\b[^>]*>", re.IGNORECASE)
_ANY_TAG = re.compile(r"<[^>]+>")


def html_to_text(body_html: str) -> str:
    text = _BLOCK_TAGS.sub("\n", body_html or "")
    text = unescape(_ANY_TAG.sub("", text))
    lines = [re.sub(r"[ \t]+", " ", ln).strip() for ln in text.splitlines()]
    out, blank = [], False
    for ln in lines:
        if not ln:
            if not blank and out:
                out.append("")
            blank = True
            continue
        out.append(ln)
        blank = False
    return "\n".join(out).strip()


def pdf_date(when: datetime) -> str:
    return when.strftime("D:%Y%m%d%H%M%S+00'00'")


def render_contract_pdf(title: str, contract_number: str, body_html: str, brand: str = "") -> bytes:
    buf = BytesIO()
    width, height = letter
    c = canvas.Canvas(buf, pagesize=letter)
    c.setTitle(f"{contract_number} - {title}")
    margin = 72
    usable = width - 2 * margin

    def header():
        c.setFont("Helvetica-Bold", 16)
        c.drawString(margin, height - margin, title[:80])
        c.setFont("Helvetica", 9)
        c.drawString(margin, height - margin - 16, f"{contract_number}{f'  |  {brand}' if brand else ''}")
        return height - margin - 44

    y = header()
    c.setFont("Helvetica", 10)
    for paragraph in html_to_text(body_html).split("\n"):
        wrapped = simpleSplit(paragraph, "Helvetica", 10, usable) or [""]
        for line in wrapped:
            if y < margin:
                c.showPage()
                y = header()
                c.setFont("Helvetica", 10)
            c.drawString(margin, y, line)
            y -= 14
    # the signature panel occupies y=100..220 of the last page
    if y < 240:
        c.showPage()
        header()
    c.showPage()
    c.save()
    return buf.getvalue()


def _signature_overlay(width, height, image_bytes: bytes, lines: List[str]) -> bytes:
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=(width, height))
    box_x, box_y = 50, 100
    box_w, box_h = width - 100, 120
    c.setStrokeColorRGB(0.6, 0.6, 0.6)
    c.rect(box_x, box_y, box_w, box_h, stroke=1, fill=0)
    c.drawImage(ImageReader(BytesIO(image_bytes)), box_x + 20, box_y + 40, width=200, height=60, mask="auto")
    text_x = box_x + 260
    text_y = box_y + box_h - 20
    c.setFillColorRGB(0, 0, 0)
    c.setFont("Helvetica-Bold", 10)
    c.drawString(text_x, text_y, lines[0])
    c.setFont("Helvetica", 9)
    for line in lines[1:]:
        text_y -= 14
        c.drawString(text_x, text_y, line[:60])
    c.setFont("Helvetica-Oblique", 8)
    c.drawString(box_x + 20, box_y + 15, SIGNED_NOTICE)
    c.showPage()
    c.save()
    return buf.getvalue()


def stamp_signature(
    pdf_bytes: bytes,
    image_bytes: bytes,
    signer_name: str,
    signer_email: str,
    signed_at: datetime,
    contract_number: str,
) -> bytes:
    """Overlay the signature panel on the last page and set signed metadata."""
    reader = PdfReader(BytesIO(pdf_bytes))
    writer = PdfWriter()
    for p in reader.pages:
        writer.add_page(p)
    last = writer.pages[-1]
    width = float(last.mediabox.width)
    height = float(last.mediabox.height)
    overlay = _signature_overlay(width, height, image_bytes, [
        "Electronically Signed By:",
        signer_name,
        signer_email,
        f"Date: {signed_at.strftime('%Y-%m-%d %H:%M:%S')} UTC",
        f"Contract: {contract_number}",
    ])
    last.merge_page(PdfReader(BytesIO(overlay)).pages[0])
    writer.add_metadata({
        "/Title": f"{contract_number} - Signed",
        "/Subject": "Electronically signed contract",
        "/ModDate": pdf_date(signed_at),
    })
    out = BytesIO()
    writer.write(out)
    return out.getvalue()


def signed_filename(contract_number: str, pdf_hash: str) -> str:
    return f"contract_{contract_number}_signed_{pdf_hash[:16]}.pdf"


def _certificate(info: dict, signers: List[dict]) -> bytes:
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=letter)
    c.setFont("Helvetica-Bold", 14)
    c.drawString(72, 750, "Certificate of Completion")
    c.setFont("Helvetica", 10)
    y = 720
    for k, v in info.items():
        c.drawString(72, y, f"{k}: {v}"[:95])
        y -= 14
    y -= 10
    for s in signers:
        if y < 150:
            c.showPage()
            c.setFont("Helvetica", 10)
            y = 750
        c.setFont("Helvetica-Bold", 10)
        c.drawString(72, y, f"{s['sequence_number']}. {s['name']} <{s['email']}>"[:95])
        c.setFont("Helvetica", 9)
        c.drawString(72, y - 13, f"Role: {s.get('role') or 'Signer'}  Signed: {s.get('signed_at') or '-'}"[:110])
        c.drawString(72, y - 26, f"Signature SHA256: {s.get('signature_hash') or '-'}"[:110])
        if s.get("image"):
            c.drawImage(ImageReader(BytesIO(s["image"])), 380, y - 40, width=150, height=45, mask="auto")
        y -= 70
    c.showPage()
    c.save()
    return buf.getvalue()


def seal_envelope_pdf(original: Optional[bytes], info: dict, signers: List[dict]) -> bytes:
    """Original pages (when a document is attached) followed by the certificate."""
    writer = PdfWriter()
    if original:
        for p in PdfReader(BytesIO(original)).pages:
            writer.add_page(p)
    writer.append_pages_from_reader(PdfReader(BytesIO(_certificate(info, signers))))
    writer.add_metadata({"/Title": f"{info.get('Envelope', 'Envelope')} - Completed"})
    out = BytesIO()
    writer.write(out)
    return out.getvalue()
