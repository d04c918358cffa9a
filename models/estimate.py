from typing import List, Literal, Optional

from pydantic import BaseModel, Field

VarianceStatus = Literal["under", "over", "on_target"]


class EstimateCategory(BaseModel):
    """One budgeted line of a project's cost estimate."""
    id: str
    name: str
    budget: float
    description: Optional[str] = None


class ProjectEstimate(BaseModel):
    project_id: str
    categories: List[EstimateCategory] = Field(default_factory=list)


class LineItemAssignment(BaseModel):
    """Where one invoice line item landed (category_id None means unmatched)."""
    invoice_id: str
    line_index: int
    description: Optional[str] = None
    amount: float = 0.0
    category_id: Optional[str] = None
    score: float = 0.0                      # best score seen, 0-1


class CategoryVariance(BaseModel):
    category_id: str
    category_name: str
    estimated: float
    actual: float = 0.0
    variance: float = 0.0                   # actual - estimated
    variance_pct: float = 0.0               # variance / estimated * 100, 1 dp
    status: VarianceStatus = "on_target"
    matched_items: int = 0


class MatchResult(BaseModel):
    """
    Reconciliation of approved invoice line items against one project estimate.
    Replaced wholesale on every run; contains no timestamps.
    """
    project_id: str
    invoice_ids: List[str] = Field(default_factory=list)
    assignments: List[LineItemAssignment] = Field(default_factory=list)
    categories: List[CategoryVariance] = Field(default_factory=list)
    unmatched: List[LineItemAssignment] = Field(default_factory=list)

    # --- Totals rollup ---
    total_estimated: float = 0.0
    total_actual: float = 0.0               # matched actuals only
    total_variance: float = 0.0
    total_variance_pct: float = 0.0
    unmatched_total: float = 0.0
