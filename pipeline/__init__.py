from .extractor import PageTextExtractor
from .segmenter import DocumentSegmenter
from .providers import ProviderAdapter, ProviderKind, build_adapters
from .orchestrator import ExtractionOrchestrator, RetryPolicy
from .validator import InvoiceValidator
from .scorer import ConfidenceScorer
from .training_store import TrainingStore
from .reconciler import ReconciliationMatcher
from .estimates import EstimateLoader
from .database import Database
from .processor import InvoiceProcessor

__all__ = [
    "PageTextExtractor", "DocumentSegmenter",
    "ProviderAdapter", "ProviderKind", "build_adapters",
    "ExtractionOrchestrator", "RetryPolicy", "InvoiceValidator",
    "ConfidenceScorer", "TrainingStore", "ReconciliationMatcher",
    "EstimateLoader", "Database", "InvoiceProcessor",
]
