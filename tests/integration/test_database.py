"""
Integration tests for database operations.
"""
import json

import pytest

from models.document import UploadedDocument
from models.estimate import MatchResult
from models.invoice import ParsedInvoice
from models.training import Correction, TrainingExample
from pipeline.database import (
    Database,
    LEARNED_PATTERN_INITIAL_CONFIDENCE,
    STATUS_APPROVED,
    STATUS_REJECTED,
    STATUS_UNREVIEWED,
)


@pytest.mark.integration
class TestDatabase:
    """Integration tests for Database class."""

    def test_save_and_get_document(self, test_db):
        """Test storing the original bytes of an upload."""
        document = UploadedDocument.from_bytes("batch.pdf", b"%PDF-1.4 fake", channel="supplier_portal")

        test_db.save_document(document, page_count=3)

        stored = test_db.get_document(document.id)
        assert stored.content == b"%PDF-1.4 fake"
        assert stored.channel == "supplier_portal"
        assert stored.content_hash == document.content_hash
        assert test_db.get_audit_log(document.id)[0]["action"] == "uploaded"

    def test_save_extraction_and_get_invoice(self, test_db, stored_invoice):
        """Test the full invoice round-trips through extracted_data."""
        invoice = test_db.get_invoice(stored_invoice.id)

        assert invoice.status == STATUS_UNREVIEWED
        assert invoice.total == 4800.00
        assert invoice.line_items[0].description == "Steel beams"
        assert "5,000.00" in test_db.get_source_text(stored_invoice.id)
        assert test_db.get_invoice("missing") is None

    def test_list_invoices_filters(self, test_db, stored_invoice):
        """Test status and project filters on the summary listing."""
        other = ParsedInvoice(invoice_number="X-1", total=10.0, project_id="P-200")
        test_db.save_extraction([other])

        assert {r["id"] for r in test_db.list_invoices()} == {stored_invoice.id, other.id}
        assert [r["id"] for r in test_db.list_invoices(project_id="P-200")] == [other.id]
        assert [r["id"] for r in test_db.list_invoices(status=STATUS_UNREVIEWED, project_id="P-100")] == [
            stored_invoice.id
        ]
        assert test_db.list_invoices(status=STATUS_APPROVED) == []

    def test_list_invoices_rejects_unknown_status(self, test_db):
        with pytest.raises(ValueError):
            test_db.list_invoices(status="exported")

    def test_record_review_is_compare_and_set(self, test_db, stored_invoice):
        """Only the first review of an unreviewed invoice takes effect."""
        correction = Correction(
            invoice_id=stored_invoice.id, field="total",
            original_value=4800.0, corrected_value=5000.0, sequence=1,
        )
        example = TrainingExample(invoice_id=stored_invoice.id, corrections=[correction])

        assert test_db.record_review(
            stored_invoice.id, STATUS_APPROVED, corrections=[correction], training_example=example
        ) is True
        assert test_db.record_review(stored_invoice.id, STATUS_REJECTED, rejection_reason="late") is False

        invoice = test_db.get_invoice(stored_invoice.id)
        assert invoice.status == STATUS_APPROVED
        assert invoice.rejection_reason is None
        assert [c.corrected_value for c in test_db.get_corrections(stored_invoice.id)] == [5000.0]
        assert [e.id for e in test_db.list_training_examples()] == [example.id]
        assert test_db.next_correction_sequence(stored_invoice.id) == 2

    def test_record_review_rejects_unreviewed_target(self, test_db, stored_invoice):
        with pytest.raises(ValueError):
            test_db.record_review(stored_invoice.id, STATUS_UNREVIEWED)

    def test_approved_invoices(self, test_db, stored_invoice):
        assert test_db.approved_invoices("P-100") == []

        test_db.record_review(stored_invoice.id, STATUS_APPROVED)

        assert [i.id for i in test_db.approved_invoices("P-100")] == [stored_invoice.id]
        assert test_db.approved_invoices("P-999") == []

    def test_learned_pattern_confidence_grows_and_caps(self, test_db):
        """New patterns start at 0.7 and gain 0.1 per sighting up to 1.0."""
        first = test_db.upsert_learned_pattern("total", r"\bowing\W*(\d+)", "5000.0")
        assert first.confidence == LEARNED_PATTERN_INITIAL_CONFIDENCE

        second = test_db.upsert_learned_pattern("total", r"\bowing\W*(\d+)", "120.0")
        assert second.confidence == pytest.approx(0.8)
        assert second.examples == ["5000.0", "120.0"]

        for _ in range(5):
            latest = test_db.upsert_learned_pattern("total", r"\bowing\W*(\d+)", "120.0")
        assert latest.confidence == 1.0
        assert len(test_db.list_learned_patterns("total")) == 1
        assert test_db.list_learned_patterns("vendor_name") == []

    def test_replace_match_result(self, test_db):
        """A second run replaces the stored result for the project."""
        test_db.replace_match_result(MatchResult(project_id="P-100", invoice_ids=["a"]))
        test_db.replace_match_result(MatchResult(project_id="P-100", invoice_ids=["a", "b"]))

        assert test_db.get_match_result("P-100").invoice_ids == ["a", "b"]
        assert test_db.get_match_result("P-200") is None
        assert [e["action"] for e in test_db.get_audit_log("P-100")] == ["matched", "matched"]

    def test_audit_log_detail_is_json(self, test_db):
        test_db.log_audit("inv-1", "note", actor="alice", detail={"k": 1})

        entry = test_db.get_audit_log("inv-1")[0]
        assert entry["actor"] == "alice"
        assert json.loads(entry["detail"]) == {"k": 1}

    def test_stats(self, test_db, stored_invoice):
        """Test aggregate counts by review status."""
        test_db.save_extraction([ParsedInvoice(total=1.0, needs_review=False)])
        test_db.record_review(stored_invoice.id, STATUS_REJECTED, rejection_reason="duplicate")

        stats = test_db.get_stats()

        assert stats["total"] == 2
        assert stats["rejected"] == 1
        assert stats["unreviewed"] == 1
        assert stats["needs_review"] == 1
        assert stats["training_examples"] == 0

    def test_schema_is_idempotent(self, test_config, stored_invoice):
        """Opening a second handle on an existing file keeps its data."""
        again = Database(test_config.db_path)
        assert again.get_invoice(stored_invoice.id) is not None
