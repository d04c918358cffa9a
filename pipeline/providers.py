"""
Provider adapters: one class per extraction backend, all behind one contract.

    await adapter.extract(text, options) -> ProviderOutput
    raises ProviderError(kind="transient" | "permanent")

Backends
--------
  openai     Any OpenAI-compatible endpoint (Ollama by default, OpenAI, Groq,
             Azure OpenAI).  LLM_BASE_URL / LLM_MODEL / LLM_API_KEY.
  anthropic  Claude via the Anthropic Messages API.  ANTHROPIC_API_KEY.
  gemini     Google Gemini via google-generativeai.  GEMINI_API_KEY.
  pattern    Local regex parser plus learned patterns.  No network.

SDK exceptions never leave this module: they are translated into
ProviderError so the orchestrator can decide between retry and fallback.
Timeouts are NOT enforced here -- the orchestrator wraps every call.

Cost: every adapter carries a USD rate per 1,000 tokens (0 for pattern and
local models).  Calls are priced from the token counts the API reports,
or from a ~4 characters per token estimate when it reports none.
"""
import asyncio
import logging
import math
from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional

from config import Config
from models.extraction import ExtractionOptions, ProviderOutput
from models.training import LearnedPattern
from .errors import PERMANENT, TRANSIENT, ProviderError
from .llm_parser import (
    build_prompt,
    extract_confidences,
    normalise_fields,
    parse_json_response,
)
from .text_parser import PatternParser

logger = logging.getLogger(__name__)

_SYSTEM_PROMPT = (
    "You are a data extraction assistant. Return ONLY valid JSON. "
    "No markdown, no explanation, no preamble. Start with { and end with }."
)


class ProviderKind(str, Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"
    PATTERN = "pattern"


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text or "") / 4)


class ProviderAdapter(ABC):
    """Base class for every extraction backend."""

    kind: ProviderKind
    cost_per_1k: float = 0.0

    @property
    def name(self) -> str:
        return self.kind.value

    @abstractmethod
    async def extract(self, text: str, options: ExtractionOptions) -> ProviderOutput:
        ...

    def check_connection(self) -> dict:
        return {"ok": True}

    def estimate_cost(self, text: str) -> float:
        """Expected price of sending `text`, before any call is made."""
        return round(estimate_tokens(text) / 1000 * self.cost_per_1k, 6)

    def call_cost(self, text: str, output: ProviderOutput) -> float:
        """Price of a completed call, from reported usage when available."""
        if not self.cost_per_1k:
            return 0.0
        if output.input_tokens is not None or output.output_tokens is not None:
            tokens = (output.input_tokens or 0) + (output.output_tokens or 0)
        else:
            tokens = estimate_tokens(text) + estimate_tokens(output.raw)
        return round(tokens / 1000 * self.cost_per_1k, 6)


# ---------------------------------------------------------------------------
# LLM-backed adapters
# ---------------------------------------------------------------------------

class LLMAdapter(ProviderAdapter):
    """
    Shared request/parse flow for chat-style LLM backends.

    Subclasses implement _complete() (one raw completion plus the reported
    (input, output) token usage, or None) and _classify() (SDK exception ->
    ProviderError).
    """

    def __init__(self, model: str, cost_per_1k: float = 0.0):
        self.model = model
        self.cost_per_1k = cost_per_1k
        self._client = None

    @abstractmethod
    async def _complete(
        self, prompt: str, options: ExtractionOptions
    ) -> tuple[str, Optional[tuple[int, int]]]:
        ...

    @abstractmethod
    def _classify(self, exc: Exception) -> ProviderError:
        ...

    async def extract(self, text: str, options: ExtractionOptions) -> ProviderOutput:
        prompt = build_prompt(text, options.invoice_number_hint)
        logger.debug("%s extraction request (model=%s, %d chars)", self.name, self.model, len(text))
        try:
            raw, usage = await self._complete(prompt, options)
        except ProviderError:
            raise
        except Exception as exc:
            raise self._classify(exc) from exc

        data = parse_json_response(raw)
        if data is None:
            # Deterministic prompt: the same call will not fix itself
            raise ProviderError(PERMANENT, "response was not valid JSON", self.name)

        overall, per_field = extract_confidences(data)
        input_tokens, output_tokens = usage if usage else (None, None)
        return ProviderOutput(
            fields=normalise_fields(data),
            confidence=overall,
            field_confidences=per_field,
            raw=raw,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )


def _status_kind(status: Optional[int]) -> str:
    if status is None:
        return PERMANENT
    if status == 408 or status == 429 or status >= 500:
        return TRANSIENT
    return PERMANENT


class OpenAIAdapter(LLMAdapter):
    """
    Any OpenAI-compatible chat completions endpoint.

    Defaults to Ollama's OpenAI-compatible endpoint so a local deployment
    works without credentials.  Recommended models for this task:
      - gpt-4o-mini    (OpenAI, excellent JSON accuracy, cost-effective)
      - qwen2.5:7b     (Ollama, best local JSON accuracy)
      - llama3.2       (Ollama, good general extraction)
    """

    kind = ProviderKind.OPENAI

    def __init__(
        self,
        model: str = "llama3.2",
        base_url: str = "http://localhost:11434/v1",
        api_key: str = "ollama",
        cost_per_1k: float = 0.0,
    ):
        super().__init__(model, cost_per_1k)
        self.base_url = base_url
        self.api_key = api_key

    def _get_client(self):
        """Lazily initialise the async OpenAI client."""
        if self._client is None:
            try:
                from openai import AsyncOpenAI
            except ImportError:
                raise RuntimeError(
                    "openai package not installed. Run: pip install openai"
                )
            self._client = AsyncOpenAI(base_url=self.base_url, api_key=self.api_key)
        return self._client

    async def _complete(self, prompt: str, options: ExtractionOptions) -> str:
        response = await self._get_client().chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": _SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            temperature=options.temperature,
            max_tokens=options.max_tokens,
        )
        usage = response.usage
        tokens = (usage.prompt_tokens, usage.completion_tokens) if usage else None
        return (response.choices[0].message.content or "").strip(), tokens

    def _classify(self, exc: Exception) -> ProviderError:
        import openai

        if isinstance(exc, (openai.APITimeoutError, openai.APIConnectionError)):
            return ProviderError(TRANSIENT, f"connection problem: {exc}", self.name)
        if isinstance(exc, openai.APIStatusError):
            return ProviderError(
                _status_kind(exc.status_code), f"HTTP {exc.status_code}: {exc}", self.name
            )
        logger.debug("Unclassified %s error: %r", self.name, exc)
        return ProviderError(PERMANENT, f"{type(exc).__name__}: {exc}", self.name)

    def check_connection(self) -> dict:
        """
        Verify the endpoint is reachable and the configured model is available.
        """
        try:
            from openai import OpenAI

            client = OpenAI(base_url=self.base_url, api_key=self.api_key)
            available = [m.id for m in client.models.list().data]
            return {
                "ok": True,
                "base_url": self.base_url,
                "model_available": any(self.model in m for m in available),
                "available_models": available,
            }
        except Exception as e:
            return {
                "ok": False,
                "base_url": self.base_url,
                "error": str(e),
                "model_available": False,
            }


class AnthropicAdapter(LLMAdapter):
    """Claude via the async Anthropic Messages API."""

    kind = ProviderKind.ANTHROPIC

    def __init__(self, api_key: str, model: str = "claude-3-5-haiku-latest", cost_per_1k: float = 0.003):
        super().__init__(model, cost_per_1k)
        self.api_key = api_key

    def _get_client(self):
        if self._client is None:
            try:
                from anthropic import AsyncAnthropic
            except ImportError:
                raise RuntimeError(
                    "anthropic package not installed. Run: pip install anthropic"
                )
            self._client = AsyncAnthropic(api_key=self.api_key)
        return self._client

    async def _complete(self, prompt: str, options: ExtractionOptions) -> str:
        msg = await self._get_client().messages.create(
            model=self.model,
            max_tokens=options.max_tokens,
            temperature=options.temperature,
            system=_SYSTEM_PROMPT,
            messages=[{"role": "user", "content": prompt}],
        )
        chunks = [getattr(block, "text", "") for block in (msg.content or [])]
        usage = msg.usage
        tokens = (usage.input_tokens, usage.output_tokens) if usage else None
        return "".join(c for c in chunks if c).strip(), tokens

    def _classify(self, exc: Exception) -> ProviderError:
        import anthropic

        if isinstance(exc, (anthropic.APITimeoutError, anthropic.APIConnectionError)):
            return ProviderError(TRANSIENT, f"connection problem: {exc}", self.name)
        if isinstance(exc, anthropic.APIStatusError):
            return ProviderError(
                _status_kind(exc.status_code), f"HTTP {exc.status_code}: {exc}", self.name
            )
        logger.debug("Unclassified %s error: %r", self.name, exc)
        return ProviderError(PERMANENT, f"{type(exc).__name__}: {exc}", self.name)

    def check_connection(self) -> dict:
        return {"ok": bool(self.api_key), "model": self.model}


class GeminiAdapter(LLMAdapter):
    """Google Gemini via google-generativeai."""

    kind = ProviderKind.GEMINI

    def __init__(self, api_key: str, model: str = "gemini-1.5-flash", cost_per_1k: float = 0.00015):
        super().__init__(model, cost_per_1k)
        self.api_key = api_key

    def _get_client(self):
        if self._client is None:
            try:
                import google.generativeai as genai
            except ImportError:
                raise RuntimeError(
                    "google-generativeai package not installed. Run: pip install google-generativeai"
                )
            genai.configure(api_key=self.api_key)
            self._client = genai.GenerativeModel(self.model, system_instruction=_SYSTEM_PROMPT)
        return self._client

    async def _complete(self, prompt: str, options: ExtractionOptions) -> str:
        response = await self._get_client().generate_content_async(
            prompt,
            generation_config={
                "temperature": options.temperature,
                "max_output_tokens": options.max_tokens,
                "response_mime_type": "application/json",
            },
        )
        try:
            text = (response.text or "").strip()
        except ValueError as exc:
            # Raised when the candidate was blocked or carries no text parts
            raise ProviderError(PERMANENT, f"no text in response: {exc}", self.name) from exc
        usage = getattr(response, "usage_metadata", None)
        tokens = (usage.prompt_token_count, usage.candidates_token_count) if usage else None
        return text, tokens

    def _classify(self, exc: Exception) -> ProviderError:
        from google.api_core import exceptions as gexc

        transient_types = (
            gexc.DeadlineExceeded,
            gexc.ResourceExhausted,
            gexc.ServiceUnavailable,
            gexc.InternalServerError,
            gexc.TooManyRequests,
            gexc.RetryError,
        )
        if isinstance(exc, transient_types):
            return ProviderError(TRANSIENT, f"{type(exc).__name__}: {exc}", self.name)
        if isinstance(exc, gexc.GoogleAPICallError):
            return ProviderError(_status_kind(exc.code), f"{type(exc).__name__}: {exc}", self.name)
        logger.debug("Unclassified %s error: %r", self.name, exc)
        return ProviderError(PERMANENT, f"{type(exc).__name__}: {exc}", self.name)

    def check_connection(self) -> dict:
        return {"ok": bool(self.api_key), "model": self.model}


# ---------------------------------------------------------------------------
# Local pattern adapter
# ---------------------------------------------------------------------------

class PatternAdapter(ProviderAdapter):
    """Regex extraction over the page text, seeded with learned patterns."""

    kind = ProviderKind.PATTERN

    def __init__(self, learned_patterns: Optional[list[LearnedPattern]] = None):
        self._parser = PatternParser(learned_patterns)

    async def extract(self, text: str, options: ExtractionOptions) -> ProviderOutput:
        fields, confidences = self._parser.parse(text)
        # Yield once so a cancelled job is noticed between groups
        await asyncio.sleep(0)
        return ProviderOutput(
            fields=fields,
            confidence=None,
            field_confidences=confidences,
            raw=text[:2000],
        )


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def build_adapters(
    config: Config,
    learned_patterns: Optional[list[LearnedPattern]] = None,
) -> list[ProviderAdapter]:
    """
    Instantiate adapters in config.provider_order.

    Providers whose credentials are missing are skipped with a log line
    rather than failing permanently on every call.
    """
    adapters: list[ProviderAdapter] = []
    for name in config.provider_order:
        try:
            kind = ProviderKind(name)
        except ValueError:
            logger.warning("Unknown provider %r in provider_order -- ignored", name)
            continue

        if kind is ProviderKind.OPENAI:
            adapters.append(OpenAIAdapter(
                model=config.llm_model,
                base_url=config.llm_base_url,
                api_key=config.llm_api_key,
                cost_per_1k=config.openai_cost_per_1k,
            ))
        elif kind is ProviderKind.ANTHROPIC:
            if not config.anthropic_api_key:
                logger.info("ANTHROPIC_API_KEY not set -- anthropic provider disabled")
                continue
            adapters.append(AnthropicAdapter(
                config.anthropic_api_key, config.anthropic_model, config.anthropic_cost_per_1k
            ))
        elif kind is ProviderKind.GEMINI:
            if not config.gemini_api_key:
                logger.info("GEMINI_API_KEY not set -- gemini provider disabled")
                continue
            adapters.append(GeminiAdapter(
                config.gemini_api_key, config.gemini_model, config.gemini_cost_per_1k
            ))
        elif kind is ProviderKind.PATTERN:
            adapters.append(PatternAdapter(learned_patterns))

    if not adapters:
        logger.warning("No extraction providers configured; every extraction will fail")
    return adapters
