from __future__ import annotations

from io import BytesIO

from docx import Document as DocxDocument
from pypdf import PdfReader

SUPPORTED_EXTENSIONS = (".pdf", ".docx", ".txt")


class UnsupportedFileType(ValueError):
    pass


def extract_text(filename: str, data: bytes) -> str:
    """Extract plain text from an uploaded PDF, DOCX or TXT file."""
    name = (filename or "").lower()
    if name.endswith(".pdf"):
        if not bytes(data[:5]).startswith(b"%PDF-"):
            raise UnsupportedFileType("invalid file content (expected PDF)")
        reader = PdfReader(BytesIO(data))
        pages = [page.extract_text() or "" for page in reader.pages]
        return "\n\n".join(pages).strip()
    if name.endswith(".docx"):
        doc = DocxDocument(BytesIO(data))
        return "\n".join(p.text for p in doc.paragraphs).strip()
    if name.endswith(".txt"):
        return data.decode("utf-8", errors="replace")
    raise UnsupportedFileType("unsupported file type, expected .pdf, .docx or .txt")
