"""
Project estimate loading.

estimates.csv columns:
  project_id, id, name, budget, description

project_id may be omitted, in which case every row belongs to whichever
project is asked for (one file per project).
"""
import csv
import logging
from pathlib import Path

from models.estimate import EstimateCategory, ProjectEstimate

logger = logging.getLogger(__name__)


class EstimateLoader:
    """Reads budget categories for a project from a CSV file."""

    def __init__(self, csv_path: str | Path):
        self.csv_path = Path(csv_path)

    def load(self, project_id: str) -> ProjectEstimate:
        estimate = ProjectEstimate(project_id=project_id)
        if not self.csv_path.exists():
            logger.warning("Estimates CSV not found: %s, no categories loaded", self.csv_path)
            return estimate

        seen: set[str] = set()
        with open(self.csv_path, newline="", encoding="utf-8") as f:
            for line_no, row in enumerate(csv.DictReader(f), start=2):
                row_project = (row.get("project_id") or "").strip()
                if row_project and row_project != project_id:
                    continue
                cat_id = (row.get("id") or "").strip()
                name = (row.get("name") or "").strip()
                if not cat_id or not name:
                    logger.warning("%s line %d: missing id or name, skipped", self.csv_path.name, line_no)
                    continue
                if cat_id in seen:
                    logger.warning("%s line %d: duplicate category id %s, skipped",
                                   self.csv_path.name, line_no, cat_id)
                    continue
                budget = _to_float(row.get("budget"))
                if budget is None:
                    logger.warning("%s line %d: budget for %s is not numeric, skipped",
                                   self.csv_path.name, line_no, cat_id)
                    continue
                seen.add(cat_id)
                estimate.categories.append(EstimateCategory(
                    id=cat_id,
                    name=name,
                    budget=budget,
                    description=(row.get("description") or "").strip() or None,
                ))

        logger.info(
            "Loaded %d estimate categor%s for project %s",
            len(estimate.categories), "y" if len(estimate.categories) == 1 else "ies", project_id,
        )
        return estimate


def _to_float(value) -> float | None:
    if value is None:
        return None
    try:
        return float(str(value).replace(",", "").replace("$", "").strip())
    except ValueError:
        return None
