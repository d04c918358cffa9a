from typing import List, Optional

from pydantic import BaseModel, Field

from .extraction import ExtractionFailure
from .invoice import SCORED_FIELDS, ParsedInvoice


class QualityMetrics(BaseModel):
    """Document-level quality indicators, each in [0, 1]."""
    overall_accuracy: float = 0.0           # mean aggregate confidence of extracted invoices
    extraction_quality: float = 0.0         # share of scored fields that were populated
    parsing_success: float = 0.0            # share of page groups that produced an invoice


class ExtractionJobResult(BaseModel):
    """
    The complete output of processing one uploaded document.
    Invoices are in page-group order; failed groups are listed separately.
    """
    document_id: str
    filename: str
    page_count: int = 0
    invoices: List[ParsedInvoice] = Field(default_factory=list)
    failures: List[ExtractionFailure] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)

    # --- Summary ---
    total_amount: float = 0.0
    total_cost: float = 0.0                 # USD across every provider call
    summary: str = ""
    quality_metrics: Optional[QualityMetrics] = None

    def compute_summary(self) -> None:
        """Populate the rollup, summary string and quality metrics."""
        self.total_amount = round(sum(inv.total or 0.0 for inv in self.invoices), 2)
        attempts = [a for inv in self.invoices for a in inv.attempts]
        attempts += [a for f in self.failures for a in f.attempts]
        self.total_cost = round(sum(a.cost for a in attempts), 6)

        group_count = len(self.invoices) + len(self.failures)
        if self.invoices:
            mean_conf = sum(inv.confidence for inv in self.invoices) / len(self.invoices)
            populated = sum(
                1
                for inv in self.invoices
                for name in SCORED_FIELDS
                if _is_populated(getattr(inv, name))
            )
            completeness = populated / (len(self.invoices) * len(SCORED_FIELDS))
        else:
            mean_conf = 0.0
            completeness = 0.0

        self.quality_metrics = QualityMetrics(
            overall_accuracy=round(mean_conf, 4),
            extraction_quality=round(completeness, 4),
            parsing_success=round(len(self.invoices) / group_count, 4) if group_count else 0.0,
        )

        summary = f"Extracted {len(self.invoices)} invoice(s). Total: ${self.total_amount:,.2f}"
        if self.invoices:
            summary += f" (Confidence: {mean_conf * 100:.0f}%)"
        if self.failures:
            ranges = ", ".join(f.page_range for f in self.failures)
            summary += f"; {len(self.failures)} page group(s) need manual entry: pages {ranges}"
        review = sum(1 for inv in self.invoices if inv.needs_review)
        if review:
            summary += f"; {review} flagged for review"
        self.summary = summary


def _is_populated(value) -> bool:
    if value is None:
        return False
    if isinstance(value, (list, str)):
        return len(value) > 0
    return True
