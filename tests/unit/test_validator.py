"""
Unit tests for invoice validation functionality.
"""
from datetime import date, timedelta

import pytest

from models.invoice import InvoiceFields, LineItem
from pipeline.validator import InvoiceValidator, parse_iso_date


@pytest.mark.unit
class TestInvoiceValidator:
    """Tests for InvoiceValidator class."""

    @pytest.fixture
    def validator(self):
        """Provide a default validator instance."""
        return InvoiceValidator()

    def test_no_warnings_for_valid_invoice(self, validator):
        """Test a valid invoice has no warnings."""
        invoice = InvoiceFields(
            invoice_number="INV-001",
            vendor_name="Test Supplier",
            invoice_date=date.today().isoformat(),
            line_items=[
                LineItem(description="Item 1", quantity=1, unit_price=100, total=100)
            ],
            subtotal=100,
            tax_amount=10,
            total=110,
        )

        warnings = validator.validate(invoice)

        assert [w for w in warnings if w.severity == "warning"] == []

    def test_line_items_subtotal_mismatch(self, validator):
        """Test detection of subtotal vs line items mismatch."""
        invoice = InvoiceFields(
            line_items=[
                LineItem(description="Item 1", quantity=2, unit_price=50, total=100),
                LineItem(description="Item 2", quantity=1, unit_price=50, total=50),
            ],
            subtotal=200,  # Wrong - should be 150
            total=200,
        )

        warnings = validator.validate(invoice)

        mismatches = [w for w in warnings if w.type == "line_items_subtotal_mismatch"]
        assert len(mismatches) == 1
        assert mismatches[0].expected_value == "150.00"

    def test_grand_total_mismatch(self, validator):
        """Test detection of grand total errors."""
        invoice = InvoiceFields(subtotal=1000, tax_amount=100, total=1000)

        warnings = validator.validate(invoice)

        mismatches = [w for w in warnings if w.type == "grand_total_mismatch"]
        assert len(mismatches) == 1
        assert mismatches[0].expected_value == "1100.00"

    def test_rounding_within_tolerance(self, validator):
        """A few cents of rounding is not a mismatch."""
        invoice = InvoiceFields(subtotal=100.00, tax_amount=15.00, total=115.03)

        warnings = validator.validate(invoice)

        assert not any(w.type == "grand_total_mismatch" for w in warnings)

    def test_inconsistent_line_items_warning(self, validator):
        """quantity x unit price vs line total beyond one cent is flagged once, listing every bad line."""
        invoice = InvoiceFields(
            line_items=[
                LineItem(description="Good", quantity=2, unit_price=10, total=20),
                LineItem(description="Bad", quantity=3, unit_price=10, total=35),
                LineItem(description="Also bad", quantity=1, unit_price=5, total=5.02),
            ],
            total=60.02,
        )

        warnings = [w for w in validator.validate(invoice) if w.type == "inconsistent_line_items"]

        assert len(warnings) == 1
        assert warnings[0].line_indexes == [1, 2]

    def test_line_within_one_cent_is_consistent(self, validator):
        """A one-cent difference is tolerated."""
        invoice = InvoiceFields(
            line_items=[LineItem(description="Widget", quantity=3, unit_price=3.33, total=10.00)],
            total=10.00,
        )

        assert not any(w.type == "inconsistent_line_items" for w in validator.validate(invoice))

    def test_partial_line_items_are_not_checked(self, validator):
        """Lines missing quantity or price cannot be inconsistent."""
        invoice = InvoiceFields(line_items=[LineItem(description="Lump sum", total=500)], total=500)

        assert not any(w.type == "inconsistent_line_items" for w in validator.validate(invoice))

    def test_missing_key_fields(self, validator):
        """Missing number, date, vendor and total are each reported."""
        warnings = validator.validate(InvoiceFields())
        types = {w.type for w in warnings}

        assert {"missing_invoice_number", "missing_invoice_date",
                "missing_vendor_name", "missing_total"} <= types
        assert any(w.type == "missing_line_items" and w.severity == "info" for w in warnings)

    def test_negative_and_zero_totals(self, validator):
        """Zero and negative totals are flagged."""
        assert any(w.type == "zero_total" for w in validator.validate(InvoiceFields(total=0)))
        assert any(w.type == "negative_amount" for w in validator.validate(InvoiceFields(total=-5)))

    def test_future_date(self, validator):
        """Test detection of invoices dated in the future."""
        today = date(2024, 6, 1)
        invoice = InvoiceFields(invoice_date=(today + timedelta(days=30)).isoformat(), total=1)

        warnings = validator.validate(invoice, today=today)

        assert any(w.type == "invoice_date_future" for w in warnings)

    def test_old_date_is_info(self, validator):
        """Very old invoices are informational."""
        today = date(2024, 6, 1)
        invoice = InvoiceFields(invoice_date="2022-01-01", total=1)

        warnings = [w for w in validator.validate(invoice, today=today) if w.type == "invoice_date_too_old"]

        assert len(warnings) == 1
        assert warnings[0].severity == "info"

    def test_invalid_date(self, validator):
        """A date that did not normalise to ISO is reported."""
        warnings = validator.validate(InvoiceFields(invoice_date="sometime in May", total=1))

        assert any(w.type == "invalid_invoice_date" for w in warnings)


@pytest.mark.unit
def test_parse_iso_date():
    assert parse_iso_date("2024-02-29") == date(2024, 2, 29)
    assert parse_iso_date("29/02/2024") is None
    assert parse_iso_date(None) is None
