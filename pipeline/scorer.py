"""
Per-field and aggregate confidence scoring.

Each scored field starts from the provider's own confidence (per-field if it
reported one, else its overall figure, else a neutral 0.5) and is then
adjusted by:

  consistency   subtotal + tax = total, line items sum to the subtotal,
                quantity x price = line total, the date parses
  training      a structurally similar past invoice, approved by a reviewer,
                carried the same value for this field

Field confidences are clamped to [0, 1].  The invoice's aggregate is the
mean of field confidences weighted by the length of each field's text, so a
long line-item table counts for more than a two-digit tax figure.
"""
import logging
import math
from typing import Any, Iterable, Optional, Sequence

from rapidfuzz import fuzz

from models.invoice import SCORED_FIELDS, InvoiceFields, ParsedInvoice, ParsedInvoiceDraft
from models.training import DocumentSignature, TrainingExample
from .validator import InvoiceValidator, parse_iso_date

logger = logging.getLogger(__name__)

# Signature component weights (sum to 1.0)
_SIGNATURE_WEIGHTS = {
    "vendor":            0.40,
    "number_shape":      0.20,
    "line_count_bucket": 0.15,
    "has_tax":           0.10,
    "has_subtotal":      0.10,
    "page_count":        0.05,
}

AMOUNT_EQUALITY_TOLERANCE = 0.005


# ---------------------------------------------------------------------------
# Structural signatures
# ---------------------------------------------------------------------------

def _line_count_bucket(count: int) -> int:
    if count <= 1:
        return count
    if count <= 5:
        return 2
    if count <= 10:
        return 3
    return 4


def _number_shape(number: Optional[str]) -> str:
    if not number:
        return ""
    return "".join(
        "9" if ch.isdigit() else "A" if ch.isalpha() else ch
        for ch in number.strip().upper()
    )


def _normalise_vendor(name: Optional[str]) -> str:
    if not name:
        return ""
    cleaned = "".join(ch if ch.isalnum() or ch.isspace() else " " for ch in name.lower())
    return " ".join(cleaned.split())


def build_signature(invoice: InvoiceFields, page_count: int = 1) -> DocumentSignature:
    return DocumentSignature(
        vendor=_normalise_vendor(invoice.vendor_name),
        number_shape=_number_shape(invoice.invoice_number),
        line_count_bucket=_line_count_bucket(len(invoice.line_items)),
        has_tax=invoice.tax_amount is not None,
        has_subtotal=invoice.subtotal is not None,
        page_count=max(1, page_count),
    )


def signature_similarity(a: DocumentSignature, b: DocumentSignature) -> float:
    """Weighted structural similarity in [0, 1]."""
    vendor = fuzz.token_sort_ratio(a.vendor, b.vendor) / 100.0 if a.vendor and b.vendor else 0.0
    parts = {
        "vendor":            vendor,
        "number_shape":      1.0 if a.number_shape and a.number_shape == b.number_shape else 0.0,
        "line_count_bucket": 1.0 if a.line_count_bucket == b.line_count_bucket else 0.0,
        "has_tax":           1.0 if a.has_tax == b.has_tax else 0.0,
        "has_subtotal":      1.0 if a.has_subtotal == b.has_subtotal else 0.0,
        "page_count":        1.0 if a.page_count == b.page_count else 0.0,
    }
    return round(sum(_SIGNATURE_WEIGHTS[k] * v for k, v in parts.items()), 6)


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------

def _line_key(items: Iterable[Any]) -> list[tuple]:
    key = []
    for item in items:
        data = item if isinstance(item, dict) else item.model_dump()
        total = data.get("total")
        key.append((
            (data.get("description") or "").strip().lower(),
            round(float(total), 2) if isinstance(total, (int, float)) else None,
        ))
    return key


def values_equal(a: Any, b: Any) -> bool:
    """Loose equality used to decide whether a past approval confirms a value."""
    if a is None or b is None:
        return False
    if isinstance(a, list) or isinstance(b, list):
        if not isinstance(a, list) or not isinstance(b, list) or not a:
            return False
        return _line_key(a) == _line_key(b)
    if isinstance(a, (int, float)) and isinstance(b, (int, float)):
        return abs(float(a) - float(b)) <= AMOUNT_EQUALITY_TOLERANCE
    return str(a).strip().casefold() == str(b).strip().casefold()


def render_field(value: Any) -> str:
    """Text rendering used for length weighting."""
    if value is None:
        return ""
    if isinstance(value, list):
        parts = []
        for item in value:
            data = item if isinstance(item, dict) else item.model_dump()
            total = data.get("total")
            parts.append(data.get("description") or "")
            if isinstance(total, (int, float)):
                parts.append(f"{total:.2f}")
        return " ".join(p for p in parts if p)
    if isinstance(value, float):
        return f"{value:.2f}"
    return str(value)


def field_weight(value: Any) -> int:
    return max(1, len(render_field(value)))


def aggregate_confidence(invoice: InvoiceFields, field_confidences: dict[str, float]) -> float:
    """Length-weighted mean of field confidences."""
    total_weight = 0
    weighted = 0.0
    for name in SCORED_FIELDS:
        weight = field_weight(getattr(invoice, name))
        total_weight += weight
        weighted += weight * field_confidences.get(name, 0.0)
    return weighted / total_weight if total_weight else 0.0


def _populated(value: Any) -> bool:
    return value is not None and value != "" and value != []


# ---------------------------------------------------------------------------
# ConfidenceScorer
# ---------------------------------------------------------------------------

class ConfidenceScorer:
    """
    Turns an accepted draft into a scored ParsedInvoice.

    Deterministic: the same draft and the same training examples always
    produce the same scores (recency is measured against the newest example
    in the supplied set, not the wall clock).
    """

    def __init__(
        self,
        validator: Optional[InvoiceValidator] = None,
        neutral_confidence: float = 0.5,
        consistency_bonus: float = 0.1,
        consistency_penalty: float = 0.2,
        similarity_bonus: float = 0.15,
        signature_threshold: float = 0.6,
        recency_half_life_days: float = 90.0,
        review_threshold: float = 0.7,
    ):
        self.validator = validator or InvoiceValidator()
        self.neutral_confidence = neutral_confidence
        self.consistency_bonus = consistency_bonus
        self.consistency_penalty = consistency_penalty
        self.similarity_bonus = similarity_bonus
        self.signature_threshold = signature_threshold
        self.recency_half_life_days = recency_half_life_days
        self.review_threshold = review_threshold

    @classmethod
    def from_config(cls, config) -> "ConfidenceScorer":
        return cls(
            validator=InvoiceValidator(
                max_days_past=config.max_invoice_age_days,
                max_days_future=config.max_future_days,
                arithmetic_tolerance=config.arithmetic_tolerance,
                line_item_tolerance=config.line_item_tolerance,
            ),
            neutral_confidence=config.neutral_confidence,
            consistency_bonus=config.consistency_bonus,
            consistency_penalty=config.consistency_penalty,
            similarity_bonus=config.similarity_bonus,
            signature_threshold=config.signature_threshold,
            recency_half_life_days=config.recency_half_life_days,
            review_threshold=config.review_threshold,
        )

    def score(
        self,
        draft: ParsedInvoiceDraft,
        training_examples: Sequence[TrainingExample] = (),
    ) -> ParsedInvoice:
        base = self._base_confidences(draft)
        consistency = self._consistency_adjustments(draft)
        training = self._training_bonuses(draft, training_examples)

        field_confidences: dict[str, float] = {}
        for name in SCORED_FIELDS:
            if not _populated(getattr(draft, name)):
                field_confidences[name] = 0.0
                continue
            value = base[name] + consistency.get(name, 0.0) + training.get(name, 0.0)
            field_confidences[name] = round(min(1.0, max(0.0, value)), 6)

        aggregate = aggregate_confidence(draft, field_confidences)
        warnings = self.validator.validate(draft)

        invoice = ParsedInvoice(
            **draft.model_dump(include=set(InvoiceFields.model_fields)),
            confidence=aggregate,
            field_confidences=field_confidences,
            needs_review=aggregate < self.review_threshold,
            warnings=warnings,
            page_group_index=draft.page_group_index,
            page_numbers=list(draft.page_numbers),
            provider=draft.provider,
            attempts=list(draft.attempts),
        )
        logger.info(
            "Scored pages %s: confidence=%.2f%s (%d warning(s))",
            invoice.page_range or "?", aggregate,
            " [needs review]" if invoice.needs_review else "", len(warnings),
        )
        return invoice

    # ------------------------------------------------------------------

    def _base_confidences(self, draft: ParsedInvoiceDraft) -> dict[str, float]:
        fallback = (
            draft.provider_confidence
            if draft.provider_confidence is not None
            else self.neutral_confidence
        )
        return {
            name: draft.provider_field_confidences.get(name, fallback)
            for name in SCORED_FIELDS
        }

    def _consistency_adjustments(self, draft: ParsedInvoiceDraft) -> dict[str, float]:
        adj: dict[str, float] = {}
        bonus, penalty = self.consistency_bonus, self.consistency_penalty
        tol = self.validator.arithmetic_tolerance

        def add(name: str, delta: float) -> None:
            adj[name] = adj.get(name, 0.0) + delta

        # subtotal + tax = total
        if draft.subtotal is not None and draft.total is not None:
            ok = abs(draft.subtotal + (draft.tax_amount or 0.0) - draft.total) <= tol
            targets = ["subtotal", "total"] + (["tax_amount"] if draft.tax_amount is not None else [])
            for name in targets:
                add(name, bonus if ok else -penalty)

        # line items sum to the subtotal (or the total when there is no subtotal)
        line_totals = [li.total for li in draft.line_items if li.total is not None]
        if line_totals:
            target = "subtotal" if draft.subtotal is not None else "total"
            stated = getattr(draft, target)
            if stated is not None:
                if abs(sum(line_totals) - stated) <= tol:
                    add("line_items", bonus)
                    add(target, bonus)
                else:
                    add("line_items", -penalty)

        # quantity x price = line total
        if draft.line_items:
            bad = self.validator.inconsistent_line_indexes(draft)
            if bad:
                add("line_items", -penalty * len(bad) / len(draft.line_items))

        if draft.invoice_date and parse_iso_date(draft.invoice_date) is None:
            add("invoice_date", -penalty)

        return adj

    def _training_bonuses(
        self,
        draft: ParsedInvoiceDraft,
        examples: Sequence[TrainingExample],
    ) -> dict[str, float]:
        if not examples:
            return {}

        signature = build_signature(draft, len(draft.page_numbers) or 1)
        newest = max(ex.created_at for ex in examples)
        bonuses: dict[str, float] = {}

        for ex in examples:
            similarity = signature_similarity(signature, ex.signature)
            if similarity < self.signature_threshold:
                continue
            age_days = max(0.0, (newest - ex.created_at).total_seconds() / 86400.0)
            recency = math.pow(0.5, age_days / self.recency_half_life_days) if self.recency_half_life_days > 0 else 1.0
            approved = ex.approved_values()
            for name in SCORED_FIELDS:
                current = getattr(draft, name)
                if not _populated(current):
                    continue
                if name == "line_items":
                    current = [li.model_dump() for li in current]
                if values_equal(approved.get(name), current):
                    candidate = self.similarity_bonus * similarity * recency
                    if candidate > bonuses.get(name, 0.0):
                        bonuses[name] = candidate

        if bonuses:
            logger.debug("Training bonuses for pages %s: %s", draft.page_numbers, bonuses)
        return bonuses
