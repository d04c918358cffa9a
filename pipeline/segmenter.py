"""
Multi-invoice document segmentation.

A single uploaded PDF frequently carries several invoices back to back
(supplier statements, scanned batches).  DocumentSegmenter walks the pages
in order and starts a new PageGroup whenever a page's invoice number differs
from the one the open group is working on.

Boundary rules
--------------
  - The first page always opens group 0.
  - A page's invoice number is the FIRST header-keyword token on the page
    that contains a digit ("Invoice #A100", "Tax Invoice No: 4471").
  - A token different from the open group's number opens a new group.
  - An open group with no number yet adopts the first token it sees.
  - A group already holding max_pages_per_group pages is closed.
  - Everything else (continuation pages, blank pages) joins the open group.

The union of the returned groups is always pages 1..N exactly once, in order.
"""
import logging
import re
from typing import Optional, Sequence

from models.document import PageGroup, SegmentationResult
from .errors import EmptyDocument

logger = logging.getLogger(__name__)

DEFAULT_MAX_PAGES = 20
DEFAULT_MAX_PAGES_PER_GROUP = 10
DEFAULT_KEYWORDS = ("tax invoice", "invoice", "inv", "bill")


def build_invoice_number_pattern(keywords: Sequence[str]) -> re.Pattern:
    """
    Compile the header pattern: keyword, optional '#', 'No', 'Number' marker,
    then the candidate token.
    """
    # Longest first so "tax invoice" wins over "invoice"
    alternatives = "|".join(
        re.escape(k.strip()).replace(r"\ ", r"\s+")
        for k in sorted(keywords, key=len, reverse=True)
        if k.strip()
    )
    return re.compile(
        rf"\b(?:{alternatives})\b\.?"
        r"(?:\s*(?:#|no\b\.?|num(?:ber)?\b|nr\b\.?)\s*[:.]?|\s*:)?"
        r"\s*#?\s*"
        r"([A-Z0-9][A-Z0-9\-_/]*)",
        re.IGNORECASE,
    )


class DocumentSegmenter:
    """
    Partitions a document's page texts into ordered PageGroups.

    Usage:
        segmenter = DocumentSegmenter(max_pages=20)
        result = segmenter.segment(pages)
    """

    def __init__(
        self,
        max_pages: int = DEFAULT_MAX_PAGES,
        max_pages_per_group: int = DEFAULT_MAX_PAGES_PER_GROUP,
        keywords: Sequence[str] = DEFAULT_KEYWORDS,
    ):
        if max_pages < 1 or max_pages_per_group < 1:
            raise ValueError("Page ceilings must be at least 1")
        self.max_pages = max_pages
        self.max_pages_per_group = max_pages_per_group
        self._pattern = build_invoice_number_pattern(keywords)

    def find_invoice_number(self, text: str) -> Optional[str]:
        """Return the first invoice-number token on the page, upper-cased."""
        text = text or ""
        pos = 0
        while True:
            match = self._pattern.search(text, pos)
            if match is None:
                return None
            token = match.group(1).strip("-_/")
            if any(ch.isdigit() for ch in token):
                return token.upper()
            # "Tax Invoice\nInvoice No: 7" -- the rejected token may be the next keyword
            pos = match.start() + 1

    def segment(self, pages: Sequence[str]) -> SegmentationResult:
        if not pages:
            raise EmptyDocument("Document has no pages")

        warnings: list[str] = []
        ignored = max(0, len(pages) - self.max_pages)
        if ignored:
            msg = (
                f"Document has {len(pages)} pages; only the first {self.max_pages} "
                f"were processed ({ignored} ignored)"
            )
            logger.warning(msg)
            warnings.append(msg)
            pages = pages[: self.max_pages]

        groups: list[dict] = []
        current: Optional[dict] = None

        for page_no, text in enumerate(pages, start=1):
            token = self.find_invoice_number(text)

            if current is None:
                current = {"numbers": [], "pages": [], "hint": token}
            elif len(current["numbers"]) >= self.max_pages_per_group:
                logger.debug("Page %d: group ceiling reached, starting new group", page_no)
                groups.append(current)
                current = {"numbers": [], "pages": [], "hint": token}
            elif token is not None and current["hint"] is None:
                current["hint"] = token
            elif token is not None and token != current["hint"]:
                logger.debug(
                    "Page %d: invoice number %s differs from %s, starting new group",
                    page_no, token, current["hint"],
                )
                groups.append(current)
                current = {"numbers": [], "pages": [], "hint": token}

            current["numbers"].append(page_no)
            current["pages"].append(text or "")

        groups.append(current)

        page_groups = [
            PageGroup(
                index=i,
                page_numbers=g["numbers"],
                pages=g["pages"],
                invoice_number_hint=g["hint"],
            )
            for i, g in enumerate(groups)
        ]
        logger.info(
            "Segmented %d page(s) into %d invoice group(s)", len(pages), len(page_groups)
        )
        return SegmentationResult(
            groups=page_groups,
            page_count=len(pages),
            ignored_pages=ignored,
            warnings=warnings,
        )
