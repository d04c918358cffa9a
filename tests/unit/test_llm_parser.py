"""
Unit tests for prompt building and LLM response normalisation.
"""
import pytest

from pipeline.llm_parser import (
    build_prompt,
    extract_confidences,
    normalise_date,
    normalise_fields,
    parse_amount,
    parse_json_response,
    validate_fields,
)


@pytest.mark.unit
class TestParseJsonResponse:
    """Tests for parse_json_response."""

    def test_plain_json(self):
        assert parse_json_response('{"total": 10}') == {"total": 10}

    def test_code_fences_stripped(self):
        raw = '```json\n{"invoice_number": "INV-1"}\n```'
        assert parse_json_response(raw) == {"invoice_number": "INV-1"}

    def test_preamble_ignored(self):
        raw = 'Sure! Here is the data: {"total": 5} Hope that helps.'
        assert parse_json_response(raw) == {"total": 5}

    def test_trailing_commas_repaired(self):
        raw = '{"line_items": [{"total": 1},], "total": 1,}'
        assert parse_json_response(raw) == {"line_items": [{"total": 1}], "total": 1}

    def test_garbage_returns_none(self):
        assert parse_json_response("I could not read this invoice.") is None
        assert parse_json_response("{not json at all}") is None
        assert parse_json_response("") is None


@pytest.mark.unit
class TestNormaliseFields:
    """Tests for mapping provider output onto the pipeline's field names."""

    def test_camel_case_aliases(self):
        fields = normalise_fields({
            "invoiceNumber": " INV-9 ",
            "vendorName": "Acme",
            "invoiceDate": "01/03/2024",
            "totalAmount": "$1,100.00",
            "taxAmount": "100",
            "lineItems": [{"description": "Bolts", "quantity": "2", "unitPrice": "5.00", "amount": "10"}],
        })

        assert fields["invoice_number"] == "INV-9"
        assert fields["vendor_name"] == "Acme"
        assert fields["invoice_date"] == "2024-03-01"
        assert fields["total"] == 1100.00
        assert fields["tax_amount"] == 100.00
        assert fields["line_items"] == [
            {"description": "Bolts", "quantity": 2.0, "unit_price": 5.0, "total": 10.0, "category": None},
        ]

    def test_supplier_object_supplies_vendor(self):
        fields = normalise_fields({"supplier": {"name": "Beta Pty Ltd"}, "total": 1})
        assert fields["vendor_name"] == "Beta Pty Ltd"

    def test_empty_line_items_dropped(self):
        fields = normalise_fields({"total": 1, "line_items": [{}, "junk", {"description": "Real"}]})
        assert [li["description"] for li in fields["line_items"]] == ["Real"]


@pytest.mark.unit
class TestAmountsAndDates:
    """Tests for amount and date coercion."""

    @pytest.mark.parametrize("raw,expected", [
        ("$1,234.567", 1234.57),
        ("NZ$ 99", 99.0),
        ("(250.00)", -250.0),
        (12, 12.0),
        ("", None),
        (None, None),
    ])
    def test_parse_amount(self, raw, expected):
        assert parse_amount(raw) == expected

    def test_parse_amount_leaves_text_alone(self):
        assert parse_amount("see attached") == "see attached"

    @pytest.mark.parametrize("raw,expected", [
        ("2024-03-01", "2024-03-01"),
        ("01/03/2024", "2024-03-01"),
        ("1st March 2024", "2024-03-01"),
        ("Mar 1, 2024", "2024-03-01"),
        ("someday", "someday"),
    ])
    def test_normalise_date(self, raw, expected):
        assert normalise_date(raw) == expected


@pytest.mark.unit
class TestValidateAndConfidence:
    """Tests for result validation and self-reported confidence."""

    def test_missing_total_is_invalid(self):
        assert validate_fields({"total": None}) == ["missing required field 'total'"]

    def test_non_numeric_amounts_are_invalid(self):
        problems = validate_fields({"total": "abc", "line_items": [{"total": "x"}]})
        assert any("'total' is not numeric" in p for p in problems)
        assert any("line_items[0].total" in p for p in problems)

    def test_valid_result(self, sample_fields):
        assert validate_fields(sample_fields) == []

    def test_confidences_scaled_and_clamped(self):
        overall, per_field = extract_confidences({
            "confidence": 85,
            "field_confidences": {"total": 0.9, "vendor_name": 1.7, "bogus": "high"},
        })
        assert overall == pytest.approx(0.85)
        assert per_field == {"total": 0.9, "vendor_name": pytest.approx(0.017)}

    def test_prompt_includes_hint_and_text(self):
        prompt = build_prompt("Invoice #A100 Total 10", invoice_number_hint="A100")
        assert "appears to be A100" in prompt
        assert "Invoice #A100 Total 10" in prompt
        assert "appears to be" not in build_prompt("text")
