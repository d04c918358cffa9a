import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class DocumentMetadata(BaseModel):
    """Lightweight facts about the source document of an invoice."""
    filename: Optional[str] = None
    page_count: int = 0
    size: int = 0                           # bytes


class DocumentSignature(BaseModel):
    """
    Structural fingerprint used to compare an extraction with past examples.
    Built from the extracted fields, never from raw text.
    """
    vendor: str = ""                        # lower-cased, punctuation stripped
    number_shape: str = ""                  # e.g. "AAA-9999" for "INV-2041"
    line_count_bucket: int = 0              # 0, 1, 2-5 -> 2, 6-10 -> 3, 11+ -> 4
    has_tax: bool = False
    has_subtotal: bool = False
    page_count: int = 1


class Correction(BaseModel):
    """A single field-level edit made by a reviewer."""
    model_config = ConfigDict(frozen=True)

    invoice_id: str
    field: str
    original_value: Any = None
    corrected_value: Any = None
    confidence: float = 1.0
    sequence: int = 0
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class TrainingExample(BaseModel):
    """An approved extraction bundled with its corrections. Never edited."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    invoice_id: str
    original: Dict[str, Any] = Field(default_factory=dict)
    corrections: List[Correction] = Field(default_factory=list)
    metadata: DocumentMetadata = Field(default_factory=DocumentMetadata)
    signature: DocumentSignature = Field(default_factory=DocumentSignature)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def approved_values(self) -> Dict[str, Any]:
        """Original values with this example's corrections applied, latest wins."""
        values = dict(self.original)
        for corr in sorted(self.corrections, key=lambda c: c.sequence):
            values[corr.field] = corr.corrected_value
        return values


class LearnedPattern(BaseModel):
    """A regex learned from where a corrected value sat in the page text."""
    field: str
    pattern: str
    confidence: float = 0.7
    examples: List[str] = Field(default_factory=list)
