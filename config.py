"""
Central configuration for the invoice extraction and reconciliation pipeline.

All paths, thresholds, provider settings and heuristic weights are defined here.
Override via environment variables or by passing a Config instance directly.

Settings priority (highest wins):
  1. Environment variables
  2. config/pipeline_settings.json  (admin-editable, persisted)
  3. Hardcoded defaults in this file
"""
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# Project root (directory containing this file)
PROJECT_ROOT = Path(__file__).parent

# Default data locations (relative to project root)
DEFAULT_ESTIMATES_CSV = PROJECT_ROOT / "data" / "estimates.csv"
DEFAULT_OUTPUT_DIR    = PROJECT_ROOT / "output"
DEFAULT_DB_PATH       = DEFAULT_OUTPUT_DIR / "pipeline.db"

DEFAULT_PROVIDER_ORDER = "openai,gemini,anthropic,pattern"
DEFAULT_INVOICE_KEYWORDS = ["tax invoice", "invoice", "inv", "bill"]


def _env_list(name: str, default: str) -> list[str]:
    raw = os.getenv(name, default)
    return [part.strip().lower() for part in raw.split(",") if part.strip()]


@dataclass
class Config:
    # --- Provider order ---
    # Providers are tried left to right; the first valid result wins.
    # Known kinds: openai, anthropic, gemini, pattern
    provider_order: list[str] = field(
        default_factory=lambda: _env_list("PROVIDER_ORDER", DEFAULT_PROVIDER_ORDER)
    )

    # --- OpenAI-compatible provider ---
    # Works with Ollama, OpenAI, Groq, Azure OpenAI, or any OpenAI-compatible backend.
    #
    # Ollama (default):   LLM_BASE_URL=http://localhost:11434/v1   LLM_API_KEY=ollama
    # OpenAI:             LLM_BASE_URL=https://api.openai.com/v1   LLM_API_KEY=sk-...
    llm_model: str = field(
        default_factory=lambda: os.getenv("LLM_MODEL", "llama3.2")
    )
    llm_base_url: str = field(
        default_factory=lambda: os.getenv("LLM_BASE_URL", "http://localhost:11434/v1")
    )
    llm_api_key: str = field(
        default_factory=lambda: os.getenv("LLM_API_KEY", "ollama")
    )

    # --- Anthropic provider ---
    anthropic_api_key: Optional[str] = field(
        default_factory=lambda: os.getenv("ANTHROPIC_API_KEY")
    )
    anthropic_model: str = field(
        default_factory=lambda: os.getenv("ANTHROPIC_MODEL", "claude-3-5-haiku-latest")
    )

    # --- Gemini provider ---
    gemini_api_key: Optional[str] = field(
        default_factory=lambda: os.getenv("GEMINI_API_KEY", os.getenv("GOOGLE_API_KEY"))
    )
    gemini_model: str = field(
        default_factory=lambda: os.getenv("GEMINI_MODEL", "gemini-1.5-flash")
    )

    # --- Extraction policy ---
    extraction_temperature: float = 0.0
    extraction_max_tokens:  int   = 4000
    provider_timeout_seconds: float = field(
        default_factory=lambda: float(os.getenv("PROVIDER_TIMEOUT", "10"))
    )
    max_retries: int = field(
        default_factory=lambda: int(os.getenv("PROVIDER_MAX_RETRIES", "1"))
    )
    retry_backoff_seconds: float = 0.5
    max_concurrency: int = field(
        default_factory=lambda: int(os.getenv("EXTRACTION_CONCURRENCY", "3"))
    )
    required_fields: list[str] = field(default_factory=lambda: ["total"])

    # --- Cost (USD per 1,000 tokens) ---
    # The OpenAI-compatible default is a local Ollama model, so it is free.
    # Set OPENAI_COST_PER_1K when pointing LLM_BASE_URL at a paid endpoint.
    openai_cost_per_1k: float = field(
        default_factory=lambda: float(os.getenv("OPENAI_COST_PER_1K", "0"))
    )
    anthropic_cost_per_1k: float = 0.003
    gemini_cost_per_1k:    float = 0.00015
    # Fallback stops once one page group has cost this much; 0 = no ceiling
    max_cost_per_invoice: float = field(
        default_factory=lambda: float(os.getenv("MAX_COST_PER_INVOICE", "0.05"))
    )

    # --- Segmentation ---
    max_pages:           int = 20     # Pages beyond this are ignored (with a warning)
    max_pages_per_group: int = 10     # Safety ceiling for one logical invoice
    invoice_keywords: list[str] = field(
        default_factory=lambda: list(DEFAULT_INVOICE_KEYWORDS)
    )

    # --- Validation thresholds ---
    max_invoice_age_days:   int   = 365   # Warn if invoice is older than this
    max_future_days:        int   = 7     # Warn if invoice date is this far ahead
    arithmetic_tolerance:   float = 0.05  # $0.05 rounding tolerance for totals
    line_item_tolerance:    float = 0.01  # qty x price vs line total

    # --- Confidence scoring ---
    neutral_confidence:     float = 0.5
    consistency_bonus:      float = 0.1
    consistency_penalty:    float = 0.2
    similarity_bonus:       float = 0.15
    signature_threshold:    float = 0.6
    recency_half_life_days: float = 90.0
    review_threshold:       float = 0.7

    # --- Reconciliation ---
    match_min_score:     float = 0.4
    match_text_weight:   float = 0.7
    match_budget_weight: float = 0.3
    on_target_band_pct:  float = 5.0

    # --- Data / output paths ---
    estimates_csv: Path = field(
        default_factory=lambda: Path(os.getenv("ESTIMATES_CSV", str(DEFAULT_ESTIMATES_CSV)))
    )
    output_dir: Path = field(
        default_factory=lambda: Path(os.getenv("OUTPUT_DIR", str(DEFAULT_OUTPUT_DIR)))
    )
    db_path: Path = field(
        default_factory=lambda: Path(os.getenv("DB_PATH", str(DEFAULT_DB_PATH)))
    )

    def __post_init__(self) -> None:
        """Overlay runtime-tunable settings from pipeline_settings.json if present."""
        config_dir = Path(os.getenv("CONFIG_DIR", str(PROJECT_ROOT / "config")))
        settings_file = config_dir / "pipeline_settings.json"
        if not settings_file.exists():
            return
        _type_map: dict[str, type] = {
            "provider_order":            list,
            "provider_timeout_seconds":  float,
            "max_retries":               int,
            "retry_backoff_seconds":     float,
            "max_concurrency":           int,
            "required_fields":           list,
            "extraction_temperature":    float,
            "extraction_max_tokens":     int,
            "openai_cost_per_1k":        float,
            "anthropic_cost_per_1k":     float,
            "gemini_cost_per_1k":        float,
            "max_cost_per_invoice":      float,
            "max_pages":                 int,
            "max_pages_per_group":       int,
            "invoice_keywords":          list,
            "arithmetic_tolerance":      float,
            "line_item_tolerance":       float,
            "max_invoice_age_days":      int,
            "max_future_days":           int,
            "neutral_confidence":        float,
            "consistency_bonus":         float,
            "consistency_penalty":       float,
            "similarity_bonus":          float,
            "signature_threshold":       float,
            "recency_half_life_days":    float,
            "review_threshold":          float,
            "match_min_score":           float,
            "match_text_weight":         float,
            "match_budget_weight":       float,
            "on_target_band_pct":        float,
        }
        try:
            with open(settings_file, encoding="utf-8") as f:
                overrides = {k: v for k, v in json.load(f).items() if not k.startswith("_")}
            for key, val in overrides.items():
                if key in _type_map and hasattr(self, key):
                    setattr(self, key, _type_map[key](val))
        except (OSError, ValueError, TypeError) as exc:
            logger.warning("Failed to load pipeline_settings.json: %s", exc)

    def ensure_output_dir(self) -> None:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
