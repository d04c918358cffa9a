"""
Estimate reconciliation: assigns approved invoice line items to a project's
budget categories and reports the variance per category.

Scoring for one line item against one category:

    score = text_weight   x text similarity   (rapidfuzz token_set_ratio)
          + budget_weight x budget proximity  (amount vs remaining budget)

The best category at or above min_score wins; anything below is left
unmatched.  Remaining budget shrinks as items are assigned, so items are
processed in a fixed (invoice id, line index) order to keep the result
identical from run to run.
"""
import logging
import re
from dataclasses import dataclass
from typing import Optional, Sequence

from rapidfuzz import fuzz

from models.estimate import (
    CategoryVariance,
    EstimateCategory,
    LineItemAssignment,
    MatchResult,
    ProjectEstimate,
)
from models.invoice import LineItem, ParsedInvoice

logger = logging.getLogger(__name__)

MIN_MATCH_SCORE = 0.4
TEXT_WEIGHT = 0.7
BUDGET_WEIGHT = 0.3
ON_TARGET_BAND_PCT = 5.0


def _normalise(text: Optional[str]) -> str:
    if not text:
        return ""
    return " ".join(re.sub(r"[^\w\s]", " ", text.lower()).split())


def _line_amount(item: LineItem) -> float:
    if item.total is not None:
        return item.total
    if item.quantity is not None and item.unit_price is not None:
        return round(item.quantity * item.unit_price, 2)
    return 0.0


def budget_proximity(amount: float, remaining: float) -> float:
    if remaining <= 0 or amount <= 0:
        return 0.0
    return min(amount, remaining) / max(amount, remaining)


def variance_status(estimated: float, variance: float, band_pct: float = ON_TARGET_BAND_PCT) -> str:
    if estimated == 0:
        if variance == 0:
            return "on_target"
    elif abs(variance) <= abs(estimated) * band_pct / 100.0:
        return "on_target"
    return "over" if variance > 0 else "under"


def _variance_pct(estimated: float, variance: float) -> float:
    return round(variance / estimated * 100.0, 1) if estimated else 0.0


@dataclass
class _Candidate:
    category: EstimateCategory
    score: float
    remaining: float


class ReconciliationMatcher:
    """
    Pure function object: the same invoices and estimate always give the
    same MatchResult, and nothing is read or written outside the arguments.
    """

    def __init__(
        self,
        min_score: float = MIN_MATCH_SCORE,
        text_weight: float = TEXT_WEIGHT,
        budget_weight: float = BUDGET_WEIGHT,
        on_target_band_pct: float = ON_TARGET_BAND_PCT,
    ):
        self.min_score = min_score
        self.text_weight = text_weight
        self.budget_weight = budget_weight
        self.on_target_band_pct = on_target_band_pct

    @classmethod
    def from_config(cls, config) -> "ReconciliationMatcher":
        return cls(
            min_score=config.match_min_score,
            text_weight=config.match_text_weight,
            budget_weight=config.match_budget_weight,
            on_target_band_pct=config.on_target_band_pct,
        )

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def text_similarity(self, item: LineItem, category: EstimateCategory) -> float:
        if item.category:
            tag = item.category.strip().casefold()
            if tag in (category.id.casefold(), category.name.casefold()):
                return 1.0
        desc = _normalise(item.description)
        if not desc:
            return 0.0
        best = fuzz.token_set_ratio(desc, _normalise(category.name))
        if category.description:
            best = max(best, fuzz.token_set_ratio(desc, _normalise(category.description)))
        return best / 100.0

    def score(self, item: LineItem, amount: float, category: EstimateCategory, remaining: float) -> float:
        return (
            self.text_weight * self.text_similarity(item, category)
            + self.budget_weight * budget_proximity(amount, remaining)
        )

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    def match(self, approved_invoices: Sequence[ParsedInvoice], estimate: ProjectEstimate) -> MatchResult:
        remaining = {c.id: c.budget for c in estimate.categories}
        actuals = {c.id: 0.0 for c in estimate.categories}
        counts = {c.id: 0 for c in estimate.categories}
        assignments: list[LineItemAssignment] = []

        invoices = sorted(approved_invoices, key=lambda inv: inv.id)
        for inv in invoices:
            for index, item in enumerate(inv.line_items):
                amount = _line_amount(item)
                best = self._best_category(item, amount, estimate.categories, remaining)

                assignment = LineItemAssignment(
                    invoice_id=inv.id,
                    line_index=index,
                    description=item.description,
                    amount=amount,
                    score=round(best.score, 6) if best else 0.0,
                )
                if best and best.score >= self.min_score:
                    cat_id = best.category.id
                    assignment.category_id = cat_id
                    remaining[cat_id] -= amount
                    actuals[cat_id] += amount
                    counts[cat_id] += 1
                    logger.debug(
                        "Line %s[%d] '%s' -> %s (score %.3f)",
                        inv.id, index, item.description, cat_id, best.score,
                    )
                assignments.append(assignment)

        categories = []
        for cat in estimate.categories:
            actual = round(actuals[cat.id], 2)
            variance = round(actual - cat.budget, 2)
            categories.append(CategoryVariance(
                category_id=cat.id,
                category_name=cat.name,
                estimated=cat.budget,
                actual=actual,
                variance=variance,
                variance_pct=_variance_pct(cat.budget, variance),
                status=variance_status(cat.budget, variance, self.on_target_band_pct),
                matched_items=counts[cat.id],
            ))
        categories.sort(key=lambda c: (-abs(c.variance), c.category_id))

        unmatched = [a for a in assignments if a.category_id is None]
        total_estimated = round(sum(c.budget for c in estimate.categories), 2)
        total_actual = round(sum(c.actual for c in categories), 2)
        total_variance = round(total_actual - total_estimated, 2)

        result = MatchResult(
            project_id=estimate.project_id,
            invoice_ids=[inv.id for inv in invoices],
            assignments=assignments,
            categories=categories,
            unmatched=unmatched,
            total_estimated=total_estimated,
            total_actual=total_actual,
            total_variance=total_variance,
            total_variance_pct=_variance_pct(total_estimated, total_variance),
            unmatched_total=round(sum(a.amount for a in unmatched), 2),
        )
        logger.info(
            "Project %s: %d line item(s) matched, %d unmatched (variance %.2f)",
            estimate.project_id, len(assignments) - len(unmatched), len(unmatched), total_variance,
        )
        return result

    def _best_category(
        self,
        item: LineItem,
        amount: float,
        categories: Sequence[EstimateCategory],
        remaining: dict[str, float],
    ) -> Optional[_Candidate]:
        candidates = [
            _Candidate(cat, self.score(item, amount, cat, remaining[cat.id]), remaining[cat.id])
            for cat in categories
        ]
        if not candidates:
            return None
        # Ties: larger remaining budget, then category id
        candidates.sort(key=lambda c: (-round(c.score, 6), -c.remaining, c.category.id))
        return candidates[0]
