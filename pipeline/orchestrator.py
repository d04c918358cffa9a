"""
Provider fallback, retry and timeout policy for a single page group.

For each PageGroup the orchestrator walks the configured providers in order:

  transient failure (timeout, rate limit, 5xx)
      -> retry the same provider up to max_retries times, then fall through
  permanent failure (bad credentials, malformed request, unusable output)
      -> fall through immediately
  valid result (required fields present, amounts numeric)
      -> accepted; no further providers are called
  any other exception from an adapter
      -> logged with its traceback and treated as permanent

Fallback exists for availability only: the first valid result wins no
matter which provider produced it.  Every call is recorded as an
ExtractionAttempt with its cost; exactly one is marked accepted, or none
when the orchestrator gives up with ExtractionExhausted.  Once the calls
for one group have cost max_cost_per_invoice, no further call is made.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Sequence

from pydantic import ValidationError

from models.document import PageGroup
from models.extraction import ExtractionAttempt, ExtractionOptions, ProviderOutput
from models.invoice import LineItem, ParsedInvoiceDraft
from .errors import PERMANENT, TRANSIENT, ExtractionExhausted, ProviderError
from .llm_parser import validate_fields
from .providers import ProviderAdapter

logger = logging.getLogger(__name__)


@dataclass
class RetryPolicy:
    """One retry/timeout policy for every provider."""
    timeout_seconds: float = 10.0
    max_retries: int = 1
    backoff_seconds: float = 0.5
    required_fields: tuple = ("total",)
    options: ExtractionOptions = field(default_factory=ExtractionOptions)
    max_cost_per_invoice: Optional[float] = None    # USD; None = unlimited

    @classmethod
    def from_config(cls, config) -> "RetryPolicy":
        return cls(
            timeout_seconds=config.provider_timeout_seconds,
            max_retries=config.max_retries,
            backoff_seconds=config.retry_backoff_seconds,
            required_fields=tuple(config.required_fields),
            max_cost_per_invoice=(
                config.max_cost_per_invoice if config.max_cost_per_invoice > 0 else None
            ),
            options=ExtractionOptions(
                temperature=config.extraction_temperature,
                max_tokens=config.extraction_max_tokens,
            ),
        )


def fill_computed_totals(draft: ParsedInvoiceDraft) -> None:
    """
    For any line item where total is None but both quantity and unit_price are
    known, compute total = round(quantity * unit_price, 2) and set the
    total_computed flag.
    """
    for item in draft.line_items:
        if item.total is not None:
            continue
        if item.quantity is None or item.unit_price is None:
            continue
        item.total = round(item.quantity * item.unit_price, 2)
        item.total_computed = True


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ExtractionOrchestrator:
    """
    Runs one page group through the provider chain.

    Usage:
        orchestrator = ExtractionOrchestrator(adapters, RetryPolicy())
        draft = await orchestrator.extract_invoice(group)
    """

    def __init__(self, adapters: Sequence[ProviderAdapter], policy: Optional[RetryPolicy] = None):
        self.adapters = list(adapters)
        self.policy = policy or RetryPolicy()

    def estimate_cost(self, text: str) -> float:
        """
        Worst-case price of extracting `text`: one call to every provider,
        capped at the per-invoice ceiling.
        """
        total = sum(adapter.estimate_cost(text) for adapter in self.adapters)
        ceiling = self.policy.max_cost_per_invoice
        if ceiling is not None:
            total = min(total, ceiling)
        return round(total, 6)

    def _over_budget(self, spent: float) -> bool:
        ceiling = self.policy.max_cost_per_invoice
        return ceiling is not None and spent >= ceiling

    async def extract_invoice(self, group: PageGroup) -> ParsedInvoiceDraft:
        attempts: list[ExtractionAttempt] = []
        reasons: list[str] = []
        options = self.policy.options.model_copy(
            update={"invoice_number_hint": group.invoice_number_hint}
        )
        spent = 0.0
        budget_hit = False

        for adapter in self.adapters:
            for attempt_number in range(1, self.policy.max_retries + 2):
                if self._over_budget(spent):
                    budget_hit = True
                    break
                draft, attempt, error = await self._attempt(adapter, attempt_number, group, options)
                attempts.append(attempt)
                spent += attempt.cost

                if draft is not None:
                    attempt.accepted = True
                    draft.attempts = attempts
                    logger.info(
                        "Pages %s: accepted %s result (attempt %d, %d call(s) total)",
                        group.page_range, adapter.name, attempt_number, len(attempts),
                    )
                    return draft

                if error.kind == PERMANENT:
                    logger.warning(
                        "Pages %s: %s failed permanently, falling back: %s",
                        group.page_range, adapter.name, error.message,
                    )
                    reasons.append(f"{adapter.name}: {error.message}")
                    break

                if attempt_number <= self.policy.max_retries:
                    logger.warning(
                        "Pages %s: %s transient failure (attempt %d), retrying: %s",
                        group.page_range, adapter.name, attempt_number, error.message,
                    )
                    if self.policy.backoff_seconds > 0:
                        await asyncio.sleep(self.policy.backoff_seconds * attempt_number)
                else:
                    logger.warning(
                        "Pages %s: %s still failing after %d retry(ies), falling back: %s",
                        group.page_range, adapter.name, self.policy.max_retries, error.message,
                    )
                    reasons.append(f"{adapter.name}: {error.message}")
            if budget_hit:
                break

        if budget_hit:
            logger.warning(
                "Pages %s: cost limit reached ($%.4f spent, limit $%.4f), not trying further providers",
                group.page_range, spent, self.policy.max_cost_per_invoice,
            )
            reasons.append(
                f"cost limit reached: ${spent:.4f} spent, limit ${self.policy.max_cost_per_invoice:.4f}"
            )
        if not self.adapters:
            reasons.append("no extraction providers configured")
        logger.error("Pages %s: all providers exhausted", group.page_range)
        raise ExtractionExhausted(group.page_range, attempts, reasons)

    async def _attempt(
        self,
        adapter: ProviderAdapter,
        attempt_number: int,
        group: PageGroup,
        options: ExtractionOptions,
    ) -> tuple[Optional[ParsedInvoiceDraft], ExtractionAttempt, Optional[ProviderError]]:
        """One timed provider call; returns (draft, attempt, error) with exactly one of draft/error set."""
        started = _now()
        try:
            output = await asyncio.wait_for(
                adapter.extract(group.text, options),
                timeout=self.policy.timeout_seconds,
            )
        except asyncio.TimeoutError:
            error = ProviderError(
                TRANSIENT, f"timed out after {self.policy.timeout_seconds:g}s", adapter.name
            )
            return None, self._record(adapter, attempt_number, started, "timeout", error), error
        except ProviderError as error:
            return None, self._record(adapter, attempt_number, started, "error", error), error
        except Exception as exc:
            logger.exception("Pages %s: unexpected error from %s", group.page_range, adapter.name)
            error = ProviderError(PERMANENT, f"{type(exc).__name__}: {exc}", adapter.name)
            return None, self._record(adapter, attempt_number, started, "error", error), error

        cost = adapter.call_cost(group.text, output)
        draft, problems = self._to_draft(adapter, output, group)
        if draft is None:
            error = ProviderError(PERMANENT, "invalid result: " + "; ".join(problems), adapter.name)
            attempt = self._record(adapter, attempt_number, started, "error", error, output, cost)
            return None, attempt, error

        attempt = self._record(adapter, attempt_number, started, "success", None, output, cost)
        return draft, attempt, None

    def _to_draft(
        self,
        adapter: ProviderAdapter,
        output: ProviderOutput,
        group: PageGroup,
    ) -> tuple[Optional[ParsedInvoiceDraft], list[str]]:
        problems = validate_fields(output.fields, self.policy.required_fields)
        if problems:
            return None, problems
        fields = dict(output.fields)
        try:
            fields["line_items"] = [LineItem.model_validate(li) for li in fields.get("line_items") or []]
            draft = ParsedInvoiceDraft(
                **fields,
                page_group_index=group.index,
                page_numbers=list(group.page_numbers),
                provider=adapter.name,
                provider_confidence=output.confidence,
                provider_field_confidences=dict(output.field_confidences),
            )
        except (ValidationError, TypeError) as e:
            return None, [f"schema validation failed: {e}"]
        fill_computed_totals(draft)
        return draft, []

    @staticmethod
    def _record(
        adapter: ProviderAdapter,
        attempt_number: int,
        started: datetime,
        outcome: str,
        error: Optional[ProviderError],
        output: Optional[ProviderOutput] = None,
        cost: float = 0.0,
    ) -> ExtractionAttempt:
        return ExtractionAttempt(
            provider=adapter.name,
            attempt_number=attempt_number,
            started_at=started,
            finished_at=_now(),
            outcome=outcome,
            error_kind=error.kind if error else None,
            error_message=error.message if error else None,
            raw_response=output.raw if output else None,
            self_reported_confidence=output.confidence if output else None,
            cost=cost,
        )
