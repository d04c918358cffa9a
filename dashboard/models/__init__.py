"""
Pydantic models for review API requests.
"""
from typing import Any, Optional

from pydantic import BaseModel, Field


class ApproveRequest(BaseModel):
    corrected_fields: dict[str, Any] = Field(default_factory=dict)   # { "total": 5000, … }
    actor: str = "dashboard"


class RejectRequest(BaseModel):
    reason: str
    actor: str = "dashboard"


class EstimateCategoryIn(BaseModel):
    id: str
    name: str
    budget: float
    description: Optional[str] = None


class MatchRequest(BaseModel):
    # Omit to load the project's categories from estimates.csv
    categories: Optional[list[EstimateCategoryIn]] = None
