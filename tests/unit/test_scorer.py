"""
Unit tests for confidence scoring.
"""
from datetime import datetime, timedelta, timezone

import pytest

from models.invoice import LineItem, ParsedInvoiceDraft
from models.training import Correction, TrainingExample
from pipeline.scorer import (
    ConfidenceScorer,
    aggregate_confidence,
    build_signature,
    field_weight,
    signature_similarity,
    values_equal,
)


@pytest.fixture
def draft(sample_fields) -> ParsedInvoiceDraft:
    fields = dict(sample_fields)
    fields["line_items"] = [LineItem(**li) for li in fields["line_items"]]
    return ParsedInvoiceDraft(**fields, provider="openai", page_numbers=[1], provider_confidence=0.8)


def _example(draft, corrections=(), created_at=None, **overrides) -> TrainingExample:
    original = draft.field_values()
    original.update(overrides)
    kwargs = {}
    if created_at is not None:
        kwargs["created_at"] = created_at
    return TrainingExample(
        invoice_id="past",
        original=original,
        corrections=list(corrections),
        signature=build_signature(draft, 1),
        **kwargs,
    )


@pytest.mark.unit
class TestConfidenceScorer:
    """Tests for ConfidenceScorer class."""

    @pytest.fixture
    def scorer(self):
        """Provide a default scorer instance."""
        return ConfidenceScorer()

    def test_scores_are_within_unit_interval(self, scorer, draft):
        """Every field confidence and the aggregate lie in [0, 1]."""
        invoice = scorer.score(draft)

        assert 0.0 <= invoice.confidence <= 1.0
        assert all(0.0 <= c <= 1.0 for c in invoice.field_confidences.values())

    def test_aggregate_is_length_weighted_mean(self, scorer, draft):
        """The aggregate equals the mean of field confidences weighted by rendered length."""
        invoice = scorer.score(draft)

        weights = {name: field_weight(getattr(invoice, name)) for name in invoice.field_confidences}
        expected = sum(weights[n] * c for n, c in invoice.field_confidences.items()) / sum(weights.values())
        assert invoice.confidence == pytest.approx(expected)
        assert invoice.confidence == pytest.approx(aggregate_confidence(invoice, invoice.field_confidences))

    def test_deterministic(self, scorer, draft):
        """Same draft and training set give identical scores."""
        examples = [_example(draft)]
        a = scorer.score(draft, examples)
        b = scorer.score(draft, examples)

        assert a.confidence == b.confidence
        assert a.field_confidences == b.field_confidences

    def test_consistent_totals_raise_confidence(self, scorer, draft):
        """subtotal + tax = total earns a bonus over the provider's figure."""
        invoice = scorer.score(draft)

        assert invoice.field_confidences["total"] > 0.8
        assert invoice.field_confidences["tax_amount"] > 0.8

    def test_inconsistent_totals_lower_confidence(self, scorer, draft):
        """A grand total that does not add up is penalised and warned about."""
        broken = draft.model_copy(update={"total": 4000.00})
        invoice = scorer.score(broken)

        assert invoice.field_confidences["total"] < 0.8
        assert any(w.type == "grand_total_mismatch" for w in invoice.warnings)

    def test_unpopulated_field_scores_zero(self, scorer, draft):
        """A field the provider did not return has zero confidence."""
        invoice = scorer.score(draft.model_copy(update={"tax_amount": None, "subtotal": None}))

        assert invoice.field_confidences["tax_amount"] == 0.0
        assert invoice.field_confidences["subtotal"] == 0.0

    def test_provider_field_confidence_preferred(self, scorer, draft):
        """Per-field self-reported confidence overrides the overall figure."""
        tuned = draft.model_copy(update={"provider_field_confidences": {"vendor_name": 0.3}})
        invoice = scorer.score(tuned)

        assert invoice.field_confidences["vendor_name"] == pytest.approx(0.3)
        assert invoice.field_confidences["invoice_number"] == pytest.approx(0.8)

    def test_neutral_confidence_when_provider_silent(self, scorer, draft):
        """Without any self-reported figure the base is 0.5."""
        silent = draft.model_copy(update={"provider_confidence": None})
        invoice = scorer.score(silent)

        assert invoice.field_confidences["vendor_name"] == pytest.approx(0.5)

    def test_needs_review_below_threshold(self, draft):
        """needs_review is set when the aggregate falls below the review threshold."""
        low = draft.model_copy(update={"provider_confidence": 0.2})
        assert ConfidenceScorer(review_threshold=0.7).score(low).needs_review is True
        assert ConfidenceScorer(review_threshold=0.1).score(draft).needs_review is False

    def test_inconsistent_line_item_warning(self, scorer, draft):
        """quantity x unit price != total flags the line and lowers line item confidence."""
        bad_line = draft.model_copy(update={
            "line_items": [LineItem(description="Steel beams", quantity=25, unit_price=120.00, total=2900.00)],
        })
        clean = scorer.score(draft)
        flagged = scorer.score(bad_line)

        warnings = [w for w in flagged.warnings if w.type == "inconsistent_line_items"]
        assert len(warnings) == 1
        assert warnings[0].line_indexes == [0]
        assert not any(w.type == "inconsistent_line_items" for w in clean.warnings)
        assert flagged.field_confidences["line_items"] < clean.field_confidences["line_items"]

    def test_similar_approved_example_adds_bonus(self, scorer, draft):
        """A structurally similar approved invoice with the same value boosts that field."""
        without = scorer.score(draft)
        with_history = scorer.score(draft, [_example(draft)])

        assert with_history.field_confidences["vendor_name"] > without.field_confidences["vendor_name"]

    def test_corrected_value_that_differs_gives_no_bonus(self, scorer, draft):
        """If reviewers corrected the total to something else, the current total gets no bonus."""
        fix = Correction(invoice_id="past", field="total", original_value=3300.0, corrected_value=3500.0)
        without = scorer.score(draft)
        with_history = scorer.score(draft, [_example(draft, corrections=[fix])])

        assert with_history.field_confidences["total"] == without.field_confidences["total"]
        assert with_history.field_confidences["vendor_name"] > without.field_confidences["vendor_name"]

    def test_dissimilar_example_ignored(self, scorer, draft):
        """Examples below the signature threshold contribute nothing."""
        other = draft.model_copy(update={
            "vendor_name": "Zebra Plumbing Co", "invoice_number": "99", "tax_amount": None,
            "subtotal": None, "line_items": [],
        })
        example = TrainingExample(
            invoice_id="past",
            original=other.field_values(),
            signature=build_signature(other, 4),
        )
        assert scorer.score(draft, [example]).field_confidences == scorer.score(draft).field_confidences

    def test_recent_examples_weigh_more(self, scorer, draft):
        """An old example alone gives a smaller bonus than a fresh one."""
        now = datetime(2024, 6, 1, tzinfo=timezone.utc)
        old = _example(draft, created_at=now - timedelta(days=180), vendor_name="Acme Steel Ltd")
        newer_other = _example(draft, created_at=now, vendor_name="Someone Else")

        fresh = scorer.score(draft, [_example(draft, created_at=now)])
        aged = scorer.score(draft, [old, newer_other])

        assert aged.field_confidences["vendor_name"] < fresh.field_confidences["vendor_name"]


@pytest.mark.unit
class TestSignatures:
    """Tests for structural signature helpers."""

    def test_identical_signatures_score_one(self, draft):
        sig = build_signature(draft, 1)
        assert signature_similarity(sig, sig) == pytest.approx(1.0)

    def test_number_shape_masks_digits_and_letters(self, draft):
        assert build_signature(draft).number_shape == "AAA-9999"

    def test_values_equal_is_loose_for_amounts_and_case(self):
        assert values_equal(3300.0, 3300.001)
        assert values_equal("ACME Steel", "acme steel ")
        assert not values_equal(None, None)
        assert not values_equal(3300.0, 3301.0)
