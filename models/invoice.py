import uuid
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from .extraction import ExtractionAttempt

ReviewStatus = Literal["unreviewed", "approved", "rejected"]

# Fields that carry a confidence score, in display order
SCORED_FIELDS = (
    "invoice_number",
    "vendor_name",
    "invoice_date",
    "subtotal",
    "tax_amount",
    "total",
    "line_items",
)

# Fields an operator may correct during review
CORRECTABLE_FIELDS = SCORED_FIELDS + ("description",)

AMOUNT_FIELDS = ("subtotal", "tax_amount", "total")


class LineItem(BaseModel):
    """A single line item on an invoice."""
    description: Optional[str] = None
    quantity: Optional[float] = None
    unit_price: Optional[float] = None
    total: Optional[float] = None           # quantity * unit_price
    category: Optional[str] = None          # optional estimate category tag
    total_computed: bool = False            # total filled in from qty x price

    def is_consistent(self, tolerance: float = 0.01) -> bool:
        if self.quantity is None or self.unit_price is None or self.total is None:
            return True
        return abs(self.quantity * self.unit_price - self.total) <= tolerance + 1e-9


class InvoiceWarning(BaseModel):
    """A soft, non-blocking issue attached to an extracted invoice."""
    type: str                               # e.g. inconsistent_line_items, grand_total_mismatch
    severity: Literal["warning", "info"] = "warning"
    description: str
    field: Optional[str] = None
    invoice_value: Optional[str] = None
    expected_value: Optional[str] = None
    line_indexes: List[int] = Field(default_factory=list)


class InvoiceFields(BaseModel):
    """
    The financial fields shared by drafts and scored invoices.
    All monetary values are plain numbers in the invoice currency.
    Dates are ISO 8601 strings (YYYY-MM-DD).
    """
    invoice_number: Optional[str] = None
    vendor_name: Optional[str] = None
    invoice_date: Optional[str] = None      # YYYY-MM-DD
    description: Optional[str] = None
    subtotal: Optional[float] = None        # Pre-tax total
    tax_amount: Optional[float] = None
    total: Optional[float] = None           # Grand total payable
    line_items: List[LineItem] = Field(default_factory=list)

    def field_values(self) -> Dict[str, Any]:
        """Correctable field values as plain JSON-friendly data."""
        data = self.model_dump(include=set(CORRECTABLE_FIELDS))
        data["line_items"] = [
            {k: v for k, v in item.items() if k != "total_computed"}
            for item in data["line_items"]
        ]
        return data


class ParsedInvoiceDraft(InvoiceFields):
    """Accepted provider output for one page group, before scoring."""
    page_group_index: int = 0
    page_numbers: List[int] = Field(default_factory=list)
    provider: str
    provider_confidence: Optional[float] = None
    provider_field_confidences: Dict[str, float] = Field(default_factory=dict)
    attempts: List[ExtractionAttempt] = Field(default_factory=list)


class ParsedInvoice(InvoiceFields):
    """
    The scored, reviewable result for one page group.

    Extracted fields are never overwritten by review; corrections are kept
    in an append-only log and replayed on read.
    """
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    document_id: Optional[str] = None
    project_id: Optional[str] = None

    confidence: float = 0.0                 # aggregate, 0-1
    field_confidences: Dict[str, float] = Field(default_factory=dict)
    needs_review: bool = True               # advisory only
    warnings: List[InvoiceWarning] = Field(default_factory=list)

    page_group_index: int = 0
    page_numbers: List[int] = Field(default_factory=list)
    provider: Optional[str] = None
    attempts: List[ExtractionAttempt] = Field(default_factory=list)

    status: ReviewStatus = "unreviewed"
    rejection_reason: Optional[str] = None

    @property
    def page_range(self) -> str:
        if not self.page_numbers:
            return ""
        first, last = self.page_numbers[0], self.page_numbers[-1]
        return str(first) if first == last else f"{first}-{last}"
