"""
Unit tests for the regex pattern parser and learned patterns.
"""
import asyncio

import pytest

from models.extraction import ExtractionOptions
from models.training import LearnedPattern
from pipeline.providers import PatternAdapter
from pipeline.text_parser import DEFAULT_PATTERN_CONFIDENCE, PatternParser, learn_patterns


@pytest.mark.unit
class TestPatternParser:
    """Tests for PatternParser class."""

    def test_extracts_core_fields(self, sample_invoice_text):
        """Number, date, vendor, amounts and tabular line items are found."""
        fields, confidences = PatternParser().parse(sample_invoice_text)

        assert fields["invoice_number"] == "INV-1001"
        assert fields["invoice_date"] == "2024-03-01"
        assert fields["vendor_name"] == "Acme Steel Ltd"
        assert fields["subtotal"] == 3000.00
        assert fields["tax_amount"] == 300.00
        assert fields["total"] == 3300.00
        assert fields["line_items"][0]["description"] == "Steel beams"
        assert fields["line_items"][0]["quantity"] == 25.0
        assert fields["line_items"][0]["total"] == 3000.00
        assert confidences["total"] == DEFAULT_PATTERN_CONFIDENCE

    def test_subtotal_line_is_not_the_total(self):
        """'Subtotal' must not be read as the grand total."""
        fields, _ = PatternParser().parse("Subtotal: 90.00\nTax: 9.00\nTotal: 99.00")
        assert fields["total"] == 99.00
        assert fields["subtotal"] == 90.00

    def test_empty_text(self):
        fields, confidences = PatternParser().parse("")
        assert fields["total"] is None
        assert fields["line_items"] == []
        assert confidences == {}

    def test_learned_pattern_overrides_builtin(self):
        """A learned label takes precedence and carries its own confidence."""
        text = "Amount payable to us: 1,250.00\nTotal: 999.00"
        learned = LearnedPattern(
            field="total",
            pattern=learn_patterns(text, "total", 1250.0)[0],
            confidence=0.9,
        )

        fields, confidences = PatternParser([learned]).parse(text)

        assert fields["total"] == 1250.00
        assert confidences["total"] == 0.9

    def test_invalid_learned_pattern_is_skipped(self, sample_invoice_text):
        bad = LearnedPattern(field="total", pattern="([unclosed", confidence=1.0)
        fields, _ = PatternParser([bad]).parse(sample_invoice_text)
        assert fields["total"] == 3300.00


@pytest.mark.unit
class TestLearnPatterns:
    """Tests for learn_patterns."""

    def test_learned_patterns_reextract_the_value(self):
        text = "Vendor Ref\nBalance owing: $5,000.00\nThank you"
        patterns = learn_patterns(text, "total", 5000.0)

        assert patterns
        parsed, _ = PatternParser([LearnedPattern(field="total", pattern=p) for p in patterns]).parse(text)
        assert parsed["total"] == 5000.00

    def test_value_not_on_page_learns_nothing(self, sample_invoice_text):
        assert learn_patterns(sample_invoice_text, "total", 123456.78) == []

    def test_line_items_not_learnable(self, sample_invoice_text):
        assert learn_patterns(sample_invoice_text, "line_items", [{"total": 1}]) == []


@pytest.mark.unit
class TestPatternAdapter:
    """Tests for the local pattern provider."""

    def test_returns_provider_output(self, sample_invoice_text):
        output = asyncio.run(PatternAdapter().extract(sample_invoice_text, ExtractionOptions()))

        assert output.fields["total"] == 3300.00
        assert output.confidence is None
        assert output.field_confidences["total"] == DEFAULT_PATTERN_CONFIDENCE
