"""
Main pipeline orchestrator.

InvoiceProcessor ties together page extraction, segmentation, provider
extraction, confidence scoring, review and reconciliation.

One process() call handles one uploaded document:

  1. PageTextExtractor     -- PDF (or plain text) -> one string per page
  2. DocumentSegmenter     -- pages -> PageGroups, one per logical invoice
  3. ExtractionOrchestrator -- each group through the provider chain,
                              groups running concurrently under a semaphore
  4. ConfidenceScorer      -- per-field and aggregate confidence + warnings
  5. Database              -- document and invoices stored in one go, only
                              after every group has finished

Groups every provider failed on become ExtractionFailure entries on the
result rather than errors, so the reviewer can key them in by hand.
"""
import asyncio
import logging
from pathlib import Path
from typing import Callable, Optional, Sequence, Union

from config import Config
from models.document import PageGroup, UploadChannel, UploadedDocument
from models.estimate import MatchResult, ProjectEstimate
from models.extraction import ExtractionFailure, JobStage
from models.invoice import ParsedInvoice, ParsedInvoiceDraft
from models.result import ExtractionJobResult
from models.training import TrainingExample
from .database import Database
from .errors import ExtractionExhausted
from .estimates import EstimateLoader
from .extractor import PageTextExtractor
from .orchestrator import ExtractionOrchestrator, RetryPolicy
from .providers import ProviderAdapter, build_adapters
from .reconciler import ReconciliationMatcher
from .scorer import ConfidenceScorer
from .segmenter import DocumentSegmenter
from .training_store import TrainingStore

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[JobStage, str], None]


class InvoiceProcessor:
    """
    Orchestrates the full invoice processing pipeline.

    Pass `adapters` to replace the providers built from config.provider_order
    (tests use this to run without network access).
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        adapters: Optional[Sequence[ProviderAdapter]] = None,
        db: Optional[Database] = None,
    ):
        self.config = config or Config()
        self.config.ensure_output_dir()

        self.db = db or Database(self.config.db_path)
        self.extractor = PageTextExtractor()
        self.segmenter = DocumentSegmenter(
            max_pages=self.config.max_pages,
            max_pages_per_group=self.config.max_pages_per_group,
            keywords=self.config.invoice_keywords,
        )
        self.policy = RetryPolicy.from_config(self.config)
        self.scorer = ConfidenceScorer.from_config(self.config)
        self.matcher = ReconciliationMatcher.from_config(self.config)
        self.training = TrainingStore(self.db)
        self.estimates = EstimateLoader(self.config.estimates_csv)
        self._adapters = list(adapters) if adapters is not None else None

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------

    def adapters(self) -> list[ProviderAdapter]:
        """Provider chain for one job; learned patterns are read fresh each time."""
        if self._adapters is not None:
            return list(self._adapters)
        return build_adapters(self.config, self.db.list_learned_patterns())

    async def process(
        self,
        document: UploadedDocument,
        project_id: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> ExtractionJobResult:
        """
        Process one uploaded document end-to-end.

        Returns an ExtractionJobResult and writes the document and its
        invoices to the SQLite DB.  Raises EmptyDocument when there is
        nothing to segment.
        """
        def report(stage: JobStage, detail: str = "") -> None:
            logger.debug("Job %s: %s %s", document.id, stage, detail)
            if on_progress is not None:
                on_progress(stage, detail)

        project_id = project_id or document.project_id
        logger.info("=== Processing: %s (%s) ===", document.filename, document.channel)

        try:
            report("uploading", document.filename)
            pages = await asyncio.to_thread(self.extractor.extract, document.content, document.filename)

            report("segmenting", f"{len(pages)} page(s)")
            segmentation = self.segmenter.segment(pages)

            report("extracting", f"{len(segmentation.groups)} invoice group(s)")
            outcomes = await self._extract_groups(segmentation.groups)

            report("scoring")
            examples = self.training.training_examples()
            invoices: list[ParsedInvoice] = []
            failures: list[ExtractionFailure] = []
            source_texts: dict[str, str] = {}
            for group, outcome in zip(segmentation.groups, outcomes):
                if isinstance(outcome, ExtractionFailure):
                    failures.append(outcome)
                    continue
                invoice = self._score(outcome, examples, document.id, project_id)
                invoices.append(invoice)
                source_texts[invoice.id] = group.text

            result = ExtractionJobResult(
                document_id=document.id,
                filename=document.filename,
                page_count=segmentation.page_count,
                invoices=invoices,
                failures=failures,
                warnings=list(segmentation.warnings),
            )
            result.compute_summary()

            self._save_result(document, result, source_texts)
        except Exception as e:
            logger.error("Processing failed for %s: %s", document.filename, e)
            report("error", str(e))
            raise

        report("complete", result.summary)
        logger.info("=== Done: %s ===", result.summary)
        return result

    def process_file(
        self,
        path: Union[str, Path],
        channel: UploadChannel = "internal",
        project_id: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> ExtractionJobResult:
        """Synchronous wrapper for the CLI: read a file from disk and process it."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"File not found: {path}")
        document = UploadedDocument.from_bytes(
            path.name, path.read_bytes(), channel=channel, project_id=project_id
        )
        return asyncio.run(self.process(document, project_id=project_id, on_progress=on_progress))

    async def _extract_groups(
        self, groups: Sequence[PageGroup]
    ) -> list[Union[ParsedInvoiceDraft, ExtractionFailure]]:
        orchestrator = ExtractionOrchestrator(self.adapters(), self.policy)
        semaphore = asyncio.Semaphore(max(1, self.config.max_concurrency))

        async def run(group: PageGroup) -> Union[ParsedInvoiceDraft, ExtractionFailure]:
            async with semaphore:
                try:
                    return await orchestrator.extract_invoice(group)
                except ExtractionExhausted as e:
                    return ExtractionFailure(
                        page_group_index=group.index,
                        page_range=group.page_range,
                        page_numbers=list(group.page_numbers),
                        reasons=list(e.reasons),
                        attempts=list(e.attempts),
                    )

        return list(await asyncio.gather(*(run(g) for g in groups)))

    def _score(
        self,
        draft: ParsedInvoiceDraft,
        examples: Sequence[TrainingExample],
        document_id: str,
        project_id: Optional[str],
    ) -> ParsedInvoice:
        invoice = self.scorer.score(draft, examples)
        invoice.document_id = document_id
        invoice.project_id = project_id
        return invoice

    def _save_result(
        self,
        document: UploadedDocument,
        result: ExtractionJobResult,
        source_texts: dict[str, str],
    ) -> None:
        self.db.save_document(document, result.page_count)
        self.db.save_extraction(result.invoices, source_texts)
        for failure in result.failures:
            self.db.log_audit(
                document.id, "extraction_failed",
                detail={"page_range": failure.page_range, "reasons": failure.reasons},
            )
        logger.info(
            "Saved to DB: %s  invoices=%d  failures=%d",
            document.filename, len(result.invoices), len(result.failures),
        )

    # ------------------------------------------------------------------
    # Review
    # ------------------------------------------------------------------

    def approve(self, invoice_id: str, corrected_fields: Optional[dict] = None, actor: str = "system") -> TrainingExample:
        return self.training.approve(invoice_id, corrected_fields, actor=actor)

    def reject(self, invoice_id: str, reason: str, actor: str = "system") -> None:
        self.training.reject(invoice_id, reason, actor=actor)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def match_project(self, project_id: str, estimate: Optional[ProjectEstimate] = None) -> MatchResult:
        """
        Reconcile the project's approved invoices against its estimate and
        replace the stored MatchResult.  Reviewer corrections are applied
        before matching.
        """
        if estimate is None:
            estimate = self.estimates.load(project_id)
        if estimate.project_id != project_id:
            estimate = estimate.model_copy(update={"project_id": project_id})
        invoices = [
            self.training.corrected_invoice(inv)
            for inv in self.db.approved_invoices(project_id)
        ]
        result = self.matcher.match(invoices, estimate)
        self.db.replace_match_result(result)
        return result

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def check_setup(self) -> dict:
        """Verify that all dependencies and connections are ready."""
        status = {}

        try:
            import pdfplumber  # noqa: F401
            status["pdfplumber"] = {"ok": True}
        except ImportError:
            status["pdfplumber"] = {
                "ok": False,
                "error": "pdfplumber not installed. Run: pip install pdfplumber",
            }

        for adapter in self.adapters():
            status[f"provider:{adapter.name}"] = adapter.check_connection()

        status["estimates_csv"] = {
            "path": str(self.config.estimates_csv),
            "exists": self.config.estimates_csv.exists(),
        }
        status["output_dir"] = {
            "path": str(self.config.output_dir),
            "exists": self.config.output_dir.exists(),
        }
        status["database"] = {
            "path": str(self.config.db_path),
            "exists": self.config.db_path.exists(),
        }
        return status
