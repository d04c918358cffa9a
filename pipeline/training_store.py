"""
Review outcomes, corrections and the training data derived from them.

Approving an invoice records one Correction per field the reviewer changed
and a TrainingExample (even when nothing changed, so approvals as-is still
teach the scorer which values were right).  Rejecting records only the
reason.  Both are terminal: an invoice leaves 'unreviewed' exactly once.

Corrections on fields the pattern provider can read are also turned into
learned regexes, using the page text the invoice was extracted from.
"""
import logging
from typing import Any, Optional

from pydantic import ValidationError

from models.invoice import AMOUNT_FIELDS, CORRECTABLE_FIELDS, InvoiceFields, LineItem, ParsedInvoice
from models.training import Correction, DocumentMetadata, LearnedPattern, TrainingExample
from .database import STATUS_APPROVED, STATUS_REJECTED, STATUS_UNREVIEWED, Database
from .errors import InvoiceNotFound, ReviewStateError
from .llm_parser import normalise_date, parse_amount
from .scorer import build_signature
from .text_parser import learn_patterns

logger = logging.getLogger(__name__)


def normalise_correction(field: str, value: Any) -> Any:
    """
    Coerce a reviewer-supplied value to the type the field holds.

    Raises ValueError for unknown fields and non-numeric amounts.
    """
    if field not in CORRECTABLE_FIELDS:
        raise ValueError(
            f"Field {field!r} cannot be corrected. Must be one of {', '.join(CORRECTABLE_FIELDS)}"
        )
    if value is None or value == "":
        return None
    if field in AMOUNT_FIELDS:
        amount = parse_amount(value)
        if not isinstance(amount, float):
            raise ValueError(f"{field} must be numeric, got {value!r}")
        return amount
    if field == "invoice_date":
        return normalise_date(value)
    if field == "line_items":
        if not isinstance(value, list):
            raise ValueError("line_items must be a list")
        try:
            items = [LineItem.model_validate(item) for item in value]
        except ValidationError as e:
            raise ValueError(f"invalid line_items: {e}") from e
        return [item.model_dump(exclude={"total_computed"}) for item in items]
    return str(value).strip()


class TrainingStore:
    """
    Review operations over a Database.

    Usage:
        store = TrainingStore(db)
        example = store.approve(invoice_id, {"total": 5000})
        store.reject(other_id, "duplicate")
    """

    def __init__(self, db: Database):
        self.db = db

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_invoice(self, invoice_id: str) -> ParsedInvoice:
        invoice = self.db.get_invoice(invoice_id)
        if invoice is None:
            raise InvoiceNotFound(f"Invoice {invoice_id} not found")
        return invoice

    def current_values(self, invoice: ParsedInvoice) -> dict[str, Any]:
        """Extracted field values with stored corrections replayed in order."""
        values = invoice.field_values()
        for corr in self.db.get_corrections(invoice.id):
            values[corr.field] = corr.corrected_value
        return values

    def corrected_invoice(self, invoice: ParsedInvoice) -> ParsedInvoice:
        """A copy of the invoice whose fields carry the reviewer's corrections."""
        corrections = self.db.get_corrections(invoice.id)
        if not corrections:
            return invoice
        values = invoice.field_values()
        for corr in corrections:
            values[corr.field] = corr.corrected_value
        fields = InvoiceFields.model_validate(values)
        return invoice.model_copy(update={
            name: getattr(fields, name) for name in CORRECTABLE_FIELDS
        })

    def training_examples(self) -> list[TrainingExample]:
        return self.db.list_training_examples()

    def learned_patterns(self, field: Optional[str] = None) -> list[LearnedPattern]:
        return self.db.list_learned_patterns(field)

    def stats(self) -> dict:
        patterns = self.db.list_learned_patterns()
        return {
            "training_examples":     len(self.db.list_training_examples()),
            "corrections_by_field":  self.db.correction_counts(),
            "learned_patterns":      len(patterns),
            "invoices":              self.db.get_stats(),
        }

    # ------------------------------------------------------------------
    # Review
    # ------------------------------------------------------------------

    def record_correction(
        self,
        original: ParsedInvoice,
        corrected: Optional[dict[str, Any]] = None,
        metadata: Optional[DocumentMetadata] = None,
    ) -> TrainingExample:
        """
        Build the Corrections and TrainingExample for an approval.

        Every field whose corrected value differs from its current value is
        captured verbatim.  Nothing is written here; approve() stores the
        result atomically with the status change.
        """
        current = self.current_values(original)
        sequence = self.db.next_correction_sequence(original.id)
        corrections: list[Correction] = []

        for field, raw in (corrected or {}).items():
            value = normalise_correction(field, raw)
            if value == current.get(field):
                continue
            corrections.append(Correction(
                invoice_id=original.id,
                field=field,
                original_value=current.get(field),
                corrected_value=value,
                sequence=sequence,
            ))
            sequence += 1

        example = TrainingExample(
            invoice_id=original.id,
            original=current,
            corrections=corrections,
            metadata=metadata or self._metadata(original),
        )
        approved = InvoiceFields.model_validate(example.approved_values())
        return example.model_copy(update={
            "signature": build_signature(approved, len(original.page_numbers) or 1),
        })

    def approve(
        self,
        invoice_id: str,
        corrected_fields: Optional[dict[str, Any]] = None,
        actor: str = "system",
    ) -> TrainingExample:
        invoice = self.get_invoice(invoice_id)
        self._require_unreviewed(invoice, "approve")

        example = self.record_correction(invoice, corrected_fields)
        if not self.db.record_review(
            invoice_id,
            STATUS_APPROVED,
            corrections=example.corrections,
            training_example=example,
            actor=actor,
        ):
            raise ReviewStateError(f"Invoice {invoice_id} was reviewed concurrently")

        logger.info(
            "Approved invoice %s with %d correction(s)", invoice_id, len(example.corrections)
        )
        self._learn(invoice_id, example.corrections)
        return example

    def reject(self, invoice_id: str, reason: str, actor: str = "system") -> None:
        if not reason or not reason.strip():
            raise ValueError("A rejection reason is required")
        invoice = self.get_invoice(invoice_id)
        self._require_unreviewed(invoice, "reject")

        if not self.db.record_review(
            invoice_id, STATUS_REJECTED, rejection_reason=reason.strip(), actor=actor,
        ):
            raise ReviewStateError(f"Invoice {invoice_id} was reviewed concurrently")
        logger.info("Rejected invoice %s: %s", invoice_id, reason.strip())

    # ------------------------------------------------------------------

    @staticmethod
    def _require_unreviewed(invoice: ParsedInvoice, action: str) -> None:
        if invoice.status != STATUS_UNREVIEWED:
            raise ReviewStateError(
                f"Cannot {action} invoice {invoice.id}: it is already {invoice.status}"
            )

    def _metadata(self, invoice: ParsedInvoice) -> DocumentMetadata:
        document = self.db.get_document(invoice.document_id) if invoice.document_id else None
        return DocumentMetadata(
            filename=document.filename if document else None,
            page_count=len(invoice.page_numbers),
            size=document.size if document else 0,
        )

    def _learn(self, invoice_id: str, corrections: list[Correction]) -> None:
        if not corrections:
            return
        text = self.db.get_source_text(invoice_id)
        if not text:
            return
        for corr in corrections:
            for pattern in learn_patterns(text, corr.field, corr.corrected_value):
                learned = self.db.upsert_learned_pattern(
                    corr.field, pattern, str(corr.corrected_value)
                )
                logger.debug(
                    "Learned pattern for %s (confidence %.1f): %s",
                    corr.field, learned.confidence, pattern,
                )
