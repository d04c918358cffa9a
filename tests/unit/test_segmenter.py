"""
Unit tests for document segmentation.
"""
import pytest

from pipeline.errors import EmptyDocument
from pipeline.segmenter import DocumentSegmenter


def _all_pages(result):
    return [n for g in result.groups for n in g.page_numbers]


@pytest.mark.unit
class TestDocumentSegmenter:
    """Tests for DocumentSegmenter class."""

    @pytest.fixture
    def segmenter(self):
        """Provide a default segmenter instance."""
        return DocumentSegmenter()

    def test_distinct_invoice_numbers_split_pages(self, segmenter):
        """Two pages with different invoice numbers become two one-page groups."""
        result = segmenter.segment(["Invoice #A100\nTotal: 10.00", "Invoice #B200\nTotal: 20.00"])

        assert len(result.groups) == 2
        assert result.groups[0].page_numbers == [1]
        assert result.groups[1].page_numbers == [2]
        assert result.groups[0].invoice_number_hint == "A100"
        assert result.groups[1].invoice_number_hint == "B200"

    def test_continuation_pages_stay_with_their_invoice(self, segmenter):
        """Pages without a number, or repeating the same number, join the open group."""
        pages = [
            "Tax Invoice\nInvoice No: INV-7\nLine 1",
            "continued...\nLine 2",
            "Invoice No: INV-7 (page 3)\nTotal: 99.00",
            "Invoice No: INV-8\nTotal: 5.00",
        ]
        result = segmenter.segment(pages)

        assert [g.page_numbers for g in result.groups] == [[1, 2, 3], [4]]
        assert result.groups[0].page_range == "1-3"

    def test_first_number_seen_is_adopted_by_open_group(self, segmenter):
        """A leading cover page without a number adopts the first number that appears."""
        result = segmenter.segment(["Cover letter", "Invoice #C300", "Invoice #C300"])

        assert len(result.groups) == 1
        assert result.groups[0].invoice_number_hint == "C300"
        assert result.groups[0].page_numbers == [1, 2, 3]

    def test_no_numbers_yields_single_group(self, segmenter):
        """A document with no recognisable numbers is one invoice."""
        result = segmenter.segment(["page one", "page two", ""])

        assert len(result.groups) == 1
        assert result.groups[0].invoice_number_hint is None
        assert result.groups[0].page_numbers == [1, 2, 3]

    def test_pages_cover_document_without_gaps_or_overlap(self, segmenter):
        """Union of groups equals the page sequence in order."""
        pages = ["Invoice #A1", "x", "Invoice #A2", "Invoice #A2", "y", "Invoice #A3"]
        result = segmenter.segment(pages)

        assert _all_pages(result) == list(range(1, len(pages) + 1))
        assert [g.index for g in result.groups] == list(range(len(result.groups)))

    def test_group_ceiling_starts_new_group(self):
        """A group is closed when it reaches max_pages_per_group."""
        segmenter = DocumentSegmenter(max_pages_per_group=2)
        result = segmenter.segment(["Invoice #Z9", "more", "more", "more", "more"])

        assert [g.page_numbers for g in result.groups] == [[1, 2], [3, 4], [5]]

    def test_page_cap_ignores_extra_pages_with_warning(self):
        """Pages beyond max_pages are dropped and reported."""
        segmenter = DocumentSegmenter(max_pages=3)
        result = segmenter.segment(["Invoice #1A"] * 5)

        assert result.page_count == 3
        assert result.ignored_pages == 2
        assert _all_pages(result) == [1, 2, 3]
        assert len(result.warnings) == 1
        assert "only the first 3" in result.warnings[0]

    def test_empty_document_raises(self, segmenter):
        """No pages at all is an error."""
        with pytest.raises(EmptyDocument):
            segmenter.segment([])

    def test_words_without_digits_are_not_invoice_numbers(self, segmenter):
        """'Invoice Date' must not be taken for an invoice number."""
        assert segmenter.find_invoice_number("Invoice Date: 2024-01-01") is None
        assert segmenter.find_invoice_number("Invoice #: inv-1001") == "INV-1001"

    def test_custom_keywords(self):
        """Keywords are configurable."""
        segmenter = DocumentSegmenter(keywords=["rechnung"])
        assert segmenter.find_invoice_number("Rechnung Nr. 4711") == "4711"
        assert segmenter.find_invoice_number("Invoice #A100") is None

    def test_number_found_after_heading_line(self, segmenter):
        """A 'Tax Invoice' heading directly above the numbered line does not hide the number."""
        assert segmenter.find_invoice_number("Tax Invoice\nInvoice No: INV-7") == "INV-7"
