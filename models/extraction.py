from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

AttemptOutcome = Literal["success", "timeout", "error"]
ErrorKind = Literal["transient", "permanent"]
JobStage = Literal["uploading", "segmenting", "extracting", "scoring", "complete", "error"]


class ExtractionOptions(BaseModel):
    """Knobs passed to every provider call."""
    temperature: float = 0.0                # determinism control
    max_tokens: int = 4000                  # response length budget
    invoice_number_hint: Optional[str] = None


class ProviderOutput(BaseModel):
    """What a provider adapter hands back: normalised fields plus the raw text."""
    fields: Dict[str, Any] = Field(default_factory=dict)
    confidence: Optional[float] = None      # self-reported, 0-1
    field_confidences: Dict[str, float] = Field(default_factory=dict)
    raw: str = ""
    input_tokens: Optional[int] = None      # as reported by the API, when it does
    output_tokens: Optional[int] = None


class ExtractionAttempt(BaseModel):
    """One provider call for one page group."""
    provider: str
    attempt_number: int = 1                 # 1 = first call, 2+ = retries
    started_at: datetime
    finished_at: datetime
    outcome: AttemptOutcome
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    raw_response: Optional[str] = None
    self_reported_confidence: Optional[float] = None
    cost: float = 0.0                       # USD, from the provider's per-1k token rate
    accepted: bool = False


class ExtractionFailure(BaseModel):
    """A page group for which every provider failed; needs manual entry."""
    page_group_index: int
    page_range: str
    page_numbers: List[int]
    reasons: List[str] = Field(default_factory=list)
    attempts: List[ExtractionAttempt] = Field(default_factory=list)
