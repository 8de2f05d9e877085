"""Plain-text extraction for uploaded evidence files."""
from __future__ import annotations

import logging
import re
from collections.abc import Callable
from io import BytesIO

logger = logging.getLogger(__name__)

# (file bytes, content type) -> text; "" when nothing could be extracted
TextExtractor = Callable[[bytes, str | None], str]


def clean_extracted_text(text: str) -> str:
    text = (text or "").replace("\x00", "")
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def _extract_pdf_text(pdf_bytes: bytes) -> str:
    try:
        import pdfplumber
    except Exception as e:
        logger.warning("pdfplumber not available: %s", e)
        return ""

    text = []
    try:
        with pdfplumber.open(BytesIO(pdf_bytes)) as pdf:
            for page in pdf.pages:
                page_text = page.extract_text() or ""
                text.append(page_text)
    except Exception as e:
        logger.warning("PDF text extraction failed: %s", e)
        return ""
    return "\n".join(text)


def extract_text(file_bytes: bytes, content_type: str | None = None) -> str:
    """
    Default extractor: PDFs through pdfplumber, text/* decoded as UTF-8.
    Anything else yields "" (the caller treats that as "no text").
    """
    ct = (content_type or "").split(";")[0].strip().lower()
    if ct == "application/pdf" or file_bytes[:5] == b"%PDF-":
        return clean_extracted_text(_extract_pdf_text(file_bytes))
    if ct.startswith("text/"):
        return clean_extracted_text(file_bytes.decode("utf-8", errors="ignore"))
    logger.info("No extractor for content_type=%s (size=%s bytes)", ct or "(unknown)", len(file_bytes))
    return ""
