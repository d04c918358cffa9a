from .document import UploadedDocument, PageGroup, SegmentationResult
from .extraction import ExtractionOptions, ProviderOutput, ExtractionAttempt, ExtractionFailure
from .invoice import LineItem, InvoiceWarning, ParsedInvoiceDraft, ParsedInvoice
from .result import ExtractionJobResult, QualityMetrics
from .training import Correction, TrainingExample, DocumentMetadata, DocumentSignature, LearnedPattern
from .estimate import EstimateCategory, ProjectEstimate, LineItemAssignment, CategoryVariance, MatchResult

__all__ = [
    "UploadedDocument", "PageGroup", "SegmentationResult",
    "ExtractionOptions", "ProviderOutput", "ExtractionAttempt", "ExtractionFailure",
    "LineItem", "InvoiceWarning", "ParsedInvoiceDraft", "ParsedInvoice",
    "ExtractionJobResult", "QualityMetrics",
    "Correction", "TrainingExample", "DocumentMetadata", "DocumentSignature", "LearnedPattern",
    "EstimateCategory", "ProjectEstimate", "LineItemAssignment", "CategoryVariance", "MatchResult",
]
