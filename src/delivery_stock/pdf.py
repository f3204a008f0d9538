"""Text extraction from text-based delivery schedule PDFs."""
from __future__ import annotations

import io
from typing import List

import pdfplumber

from .delivery import DeliveryDocument
from .logging import get_logger
from .normalize import clean_line
from .parser import parse_delivery_lines

logger = get_logger(__name__)


class NoSlipsFoundError(ValueError):
    """The PDF produced no slips, which usually means it is a scanned image."""


def extract_pdf_lines(data: bytes) -> List[str]:
    """Return one cleaned fragment per word run, pages in reading order."""

    if not data:
        raise ValueError("PDF content is required")
    lines: List[str] = []
    with pdfplumber.open(io.BytesIO(data)) as pdf:
        for page in pdf.pages:
            for word in page.extract_words(keep_blank_chars=True, use_text_flow=True):
                text = clean_line(word.get("text"))
                if text:
                    lines.append(text)
    return lines


def parse_delivery_pdf(data: bytes) -> DeliveryDocument:
    lines = extract_pdf_lines(data)
    document = parse_delivery_lines(lines)
    if not document.slips:
        logger.warning("delivery_pdf_without_slips", fragments=len(lines))
        raise NoSlipsFoundError(
            "No delivery slips could be extracted from this PDF (it may be a scanned image)"
        )
    return document


__all__ = ["NoSlipsFoundError", "extract_pdf_lines", "parse_delivery_pdf"]
