"""
PDF page text extraction.

PageTextExtractor -- pdfplumber character-level extraction, one string per
          page.  Page boundaries are preserved because the segmenter needs
          them to split multi-invoice documents.  Pages that yield no text
          (e.g. scanned images) come back as empty strings rather than being
          dropped, so page numbering stays aligned with the source PDF.

A file pdfplumber cannot open, or a PDF with no extractable text on any
page, raises EmptyDocument.
"""
from __future__ import annotations

import io
import logging

from .errors import EmptyDocument

logger = logging.getLogger(__name__)


class PageTextExtractor:
    """Fast per-page plain-text extraction using pdfplumber."""

    def extract(self, content: bytes, filename: str = "<upload>") -> list[str]:
        """
        Page texts for any supported upload.

        PDFs go through pdfplumber; anything else is decoded as UTF-8 text
        with form feeds (\\f) as page breaks.
        """
        if content[:5] == b"%PDF-" or filename.lower().endswith(".pdf"):
            return self.extract_pages(content, filename)
        return split_text_pages(content.decode("utf-8", errors="replace"), filename)

    def extract_pages(self, content: bytes, filename: str = "<upload>") -> list[str]:
        """
        Return the text of every page in the PDF, in page order.

        Raises EmptyDocument if the PDF cannot be parsed, has no pages, or
        has no text on any page (likely a scanned PDF).
        """
        try:
            import pdfplumber
        except ImportError:
            raise RuntimeError(
                "pdfplumber is not installed. Run: pip install pdfplumber"
            )

        pages_text: list[str] = []
        try:
            with pdfplumber.open(io.BytesIO(content)) as pdf:
                for i, page in enumerate(pdf.pages):
                    text = page.extract_text()
                    if text:
                        pages_text.append(text.strip())
                    else:
                        logger.debug("Page %d yielded no text (may be scanned)", i + 1)
                        pages_text.append("")
        except Exception as e:
            # pdfminer raises a range of parser errors for damaged files
            logger.warning("pdfplumber could not read %s: %s", filename, e)
            raise EmptyDocument(f"Could not read {filename} as a PDF: {e}") from e

        if not pages_text:
            raise EmptyDocument(f"No pages could be read from {filename}")

        if not any(pages_text):
            logger.warning("No text extracted from %s -- likely a scanned PDF", filename)
            raise EmptyDocument(f"No extractable text in {filename} (scanned PDF?)")

        logger.info(
            "pdfplumber extracted %d chars from %s (%d pages)",
            sum(len(t) for t in pages_text), filename, len(pages_text),
        )
        return pages_text


def split_text_pages(text: str, filename: str = "<upload>") -> list[str]:
    """Split plain text on form feeds, keeping blank pages so numbering holds."""
    if not text.strip():
        raise EmptyDocument(f"No text in {filename}")
    return [page.strip() for page in text.split("\f")]
