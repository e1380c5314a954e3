from io import BytesIO

import pytest
from docx import Document as DocxDocument

from documents.services.text_extract import UnsupportedFileType, extract_text


def _docx_bytes(*paragraphs):
    doc = DocxDocument()
    for text in paragraphs:
        doc.add_paragraph(text)
    buf = BytesIO()
    doc.save(buf)
    return buf.getvalue()


def _pdf_bytes(text):
    stream = b"BT /F1 12 Tf 72 720 Td (" + text.encode("latin-1") + b") Tj ET"
    objects = [
        b"<< /Type /Catalog /Pages 2 0 R >>",
        b"<< /Type /Pages /Kids [3 0 R] /Count 1 >>",
        b"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] "
        b"/Resources << /Font << /F1 5 0 R >> >> /Contents 4 0 R >>",
        b"<< /Length %d >>\nstream\n" % len(stream) + stream + b"\nendstream",
        b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>",
    ]
    out = bytearray(b"%PDF-1.4\n")
    offsets = []
    for number, body in enumerate(objects, start=1):
        offsets.append(len(out))
        out += b"%d 0 obj\n" % number + body + b"\nendobj\n"
    xref_at = len(out)
    out += b"xref\n0 %d\n0000000000 65535 f \n" % (len(objects) + 1)
    for offset in offsets:
        out += b"%010d 00000 n \n" % offset
    out += b"trailer\n<< /Size %d /Root 1 0 R >>\nstartxref\n%d\n%%%%EOF\n" % (len(objects) + 1, xref_at)
    return bytes(out)


def test_extract_docx_paragraphs():
    data = _docx_bytes("Mutual Non-Disclosure Agreement", "Between ____ and Acme.")
    assert extract_text("NDA.DOCX", data) == "Mutual Non-Disclosure Agreement\nBetween ____ and Acme."


def test_extract_pdf_text():
    text = extract_text("lease.pdf", _pdf_bytes("The Tenant shall pay rent."))
    assert "The Tenant shall pay rent." in text


def test_extract_pdf_requires_pdf_header():
    with pytest.raises(UnsupportedFileType, match="expected PDF"):
        extract_text("foo.pdf", b"PK\x03\x04 not really a pdf")


def test_extract_txt_replaces_undecodable_bytes():
    assert extract_text("notes.txt", b"caf\xe9 terms") == "caf\ufffd terms"


def test_extract_unknown_extension():
    with pytest.raises(UnsupportedFileType):
        extract_text("slides.pptx", b"...")
