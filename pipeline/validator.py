"""
Structural consistency checks for extracted invoices.

Checks:
  Line items:   quantity x unit price vs line total (inconsistent_line_items)
  Arithmetic:   line item sum vs subtotal, subtotal + tax vs total
  Dates:        unparseable, future invoices, very old invoices
  Data quality: missing key fields, negative/zero amounts

Every finding is an InvoiceWarning.  None of them block review or approval;
they are surfaced to the reviewer and fed into confidence scoring.
"""
import logging
from datetime import date, datetime, timedelta
from typing import Optional

from models.invoice import InvoiceFields, InvoiceWarning

logger = logging.getLogger(__name__)

# Configurable thresholds (can be overridden via Config)
MAX_DAYS_IN_PAST = 365      # warn if invoice date > this many days ago
MAX_DAYS_IN_FUTURE = 7      # warn if invoice date > this many days ahead
ARITHMETIC_TOLERANCE = 0.05 # $0.05 absolute tolerance for totals
LINE_ITEM_TOLERANCE = 0.01  # one cent for qty x price vs line total

INCONSISTENT_LINE_ITEMS = "inconsistent_line_items"


class InvoiceValidator:
    """
    Produces a list of InvoiceWarning objects for an extracted invoice.

    Usage:
        validator = InvoiceValidator()
        warnings = validator.validate(invoice)
    """

    def __init__(
        self,
        max_days_past: int = MAX_DAYS_IN_PAST,
        max_days_future: int = MAX_DAYS_IN_FUTURE,
        arithmetic_tolerance: float = ARITHMETIC_TOLERANCE,
        line_item_tolerance: float = LINE_ITEM_TOLERANCE,
    ):
        self.max_days_past = max_days_past
        self.max_days_future = max_days_future
        self.arithmetic_tolerance = arithmetic_tolerance
        self.line_item_tolerance = line_item_tolerance

    def validate(self, invoice: InvoiceFields, today: Optional[date] = None) -> list[InvoiceWarning]:
        """Run all checks and return combined warnings list."""
        issues: list[InvoiceWarning] = []
        issues.extend(self._check_data_quality(invoice))
        issues.extend(self.check_line_items(invoice))
        issues.extend(self._check_arithmetic(invoice))
        issues.extend(self._check_dates(invoice, today or date.today()))
        return issues

    # ------------------------------------------------------------------
    # Line item checks
    # ------------------------------------------------------------------

    def inconsistent_line_indexes(self, invoice: InvoiceFields) -> list[int]:
        return [
            i for i, item in enumerate(invoice.line_items)
            if not item.is_consistent(self.line_item_tolerance)
        ]

    def check_line_items(self, invoice: InvoiceFields) -> list[InvoiceWarning]:
        bad = self.inconsistent_line_indexes(invoice)
        if not bad:
            return []
        details = ", ".join(
            f"line {i + 1} ({invoice.line_items[i].quantity:g} x "
            f"{invoice.line_items[i].unit_price:.2f} != {invoice.line_items[i].total:.2f})"
            for i in bad
        )
        return [InvoiceWarning(
            type=INCONSISTENT_LINE_ITEMS,
            description=f"Quantity x unit price does not match the line total: {details}",
            field="line_items",
            line_indexes=bad,
        )]

    # ------------------------------------------------------------------
    # Data quality checks
    # ------------------------------------------------------------------

    def _check_data_quality(self, inv: InvoiceFields) -> list[InvoiceWarning]:
        issues = []

        if not inv.invoice_number:
            issues.append(InvoiceWarning(
                type="missing_invoice_number",
                description="No invoice number found on the invoice",
                field="invoice_number",
            ))

        if not inv.invoice_date:
            issues.append(InvoiceWarning(
                type="missing_invoice_date",
                description="No invoice date found on the invoice",
                field="invoice_date",
            ))

        if not inv.vendor_name:
            issues.append(InvoiceWarning(
                type="missing_vendor_name",
                description="No vendor name could be extracted",
                field="vendor_name",
            ))

        if inv.total is None:
            issues.append(InvoiceWarning(
                type="missing_total",
                description="No total amount found on the invoice",
                field="total",
            ))
        elif inv.total == 0:
            issues.append(InvoiceWarning(
                type="zero_total",
                description="Invoice total is zero",
                field="total",
                invoice_value="0.00",
            ))
        elif inv.total < 0:
            issues.append(InvoiceWarning(
                type="negative_amount",
                description=f"Invoice total is negative: {inv.total:.2f}",
                field="total",
                invoice_value=str(inv.total),
            ))

        if not inv.line_items:
            issues.append(InvoiceWarning(
                type="missing_line_items",
                severity="info",
                description="No line items extracted -- arithmetic cross-checks skipped",
                field="line_items",
            ))

        for i, item in enumerate(inv.line_items):
            if item.total is not None and item.total < 0:
                issues.append(InvoiceWarning(
                    type="negative_amount",
                    description=f"Line item {i + 1} has a negative total: {item.total:.2f}",
                    field=f"line_items[{i}].total",
                    invoice_value=str(item.total),
                    line_indexes=[i],
                ))

        return issues

    # ------------------------------------------------------------------
    # Arithmetic checks
    # ------------------------------------------------------------------

    def _check_arithmetic(self, inv: InvoiceFields) -> list[InvoiceWarning]:
        issues = []
        tol = self.arithmetic_tolerance

        # Sum of line item totals vs subtotal
        if inv.line_items and inv.subtotal is not None:
            items_with_total = [li for li in inv.line_items if li.total is not None]
            if items_with_total:
                computed_subtotal = sum(li.total for li in items_with_total)
                if abs(computed_subtotal - inv.subtotal) > tol:
                    issues.append(InvoiceWarning(
                        type="line_items_subtotal_mismatch",
                        description=(
                            f"Sum of line items ({computed_subtotal:.2f}) does not match "
                            f"stated subtotal ({inv.subtotal:.2f})"
                        ),
                        field="subtotal",
                        invoice_value=f"{inv.subtotal:.2f}",
                        expected_value=f"{computed_subtotal:.2f}",
                    ))

        # Grand total vs subtotal + tax
        if inv.total is not None and inv.subtotal is not None:
            components = inv.subtotal + (inv.tax_amount or 0.0)
            if abs(components - inv.total) > tol:
                issues.append(InvoiceWarning(
                    type="grand_total_mismatch",
                    description=(
                        f"Grand total ({inv.total:.2f}) does not match "
                        f"subtotal + tax ({components:.2f})"
                    ),
                    field="total",
                    invoice_value=f"{inv.total:.2f}",
                    expected_value=f"{components:.2f}",
                ))

        return issues

    # ------------------------------------------------------------------
    # Date checks
    # ------------------------------------------------------------------

    def _check_dates(self, inv: InvoiceFields, today: date) -> list[InvoiceWarning]:
        issues = []
        if not inv.invoice_date:
            return issues

        inv_date = parse_iso_date(inv.invoice_date)
        if inv_date is None:
            issues.append(InvoiceWarning(
                type="invalid_invoice_date",
                description=f"Invoice date '{inv.invoice_date}' is not a valid date",
                field="invoice_date",
                invoice_value=inv.invoice_date,
                expected_value="YYYY-MM-DD",
            ))
            return issues

        days_ago = (today - inv_date).days
        days_ahead = (inv_date - today).days

        if days_ahead > self.max_days_future:
            issues.append(InvoiceWarning(
                type="invoice_date_future",
                description=f"Invoice date {inv.invoice_date} is {days_ahead} days in the future",
                field="invoice_date",
                invoice_value=inv.invoice_date,
                expected_value=f"<= {today.isoformat()}",
            ))

        if days_ago > self.max_days_past:
            issues.append(InvoiceWarning(
                type="invoice_date_too_old",
                severity="info",
                description=(
                    f"Invoice date {inv.invoice_date} is {days_ago} days in the past "
                    f"(threshold: {self.max_days_past} days)"
                ),
                field="invoice_date",
                invoice_value=inv.invoice_date,
                expected_value=f">= {(today - timedelta(days=self.max_days_past)).isoformat()}",
            ))

        return issues


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------

def parse_iso_date(date_str: Optional[str]) -> Optional[date]:
    if not date_str:
        return None
    try:
        return datetime.strptime(date_str.strip(), "%Y-%m-%d").date()
    except ValueError:
        return None
