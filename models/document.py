import hashlib
import uuid
from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

UploadChannel = Literal["internal", "supplier_portal"]


class UploadedDocument(BaseModel):
    """
    An uploaded invoice file exactly as received.

    Never mutated after creation; kept for audit and re-processing.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    filename: str
    content: bytes = Field(repr=False)
    size: int
    uploaded_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    channel: UploadChannel = "internal"
    content_hash: str
    project_id: Optional[str] = None

    @classmethod
    def from_bytes(
        cls,
        filename: str,
        content: bytes,
        channel: UploadChannel = "internal",
        project_id: Optional[str] = None,
    ) -> "UploadedDocument":
        return cls(
            filename=filename,
            content=content,
            size=len(content),
            channel=channel,
            content_hash=hashlib.sha256(content).hexdigest(),
            project_id=project_id,
        )


class PageGroup(BaseModel):
    """A contiguous run of pages believed to hold one invoice."""
    index: int                              # 0-based position within the document
    page_numbers: List[int]                 # 1-based, ascending
    pages: List[str] = Field(default_factory=list, repr=False)
    invoice_number_hint: Optional[str] = None

    @property
    def text(self) -> str:
        return "\n\n".join(self.pages)

    @property
    def page_range(self) -> str:
        first, last = self.page_numbers[0], self.page_numbers[-1]
        return str(first) if first == last else f"{first}-{last}"


class SegmentationResult(BaseModel):
    groups: List[PageGroup]
    page_count: int                         # pages actually segmented
    ignored_pages: int = 0                  # pages dropped by the page cap
    warnings: List[str] = Field(default_factory=list)
