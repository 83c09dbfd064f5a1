# =============================================================================
# Perplexity Search Adapter — Online Search LLM
# =============================================================================
#
# Sends one research sub-question to Perplexity's sonar model and wraps the
# free-text answer in a PerplexityResult.
#
# DESIGN DECISION: Errors become values, not exceptions.
# A failed call returns a PerplexityResult with confidence="failed" and the
# error message set. The search orchestrator treats such a result as
# "no data from this provider" and carries on with the other provider.
#
# DESIGN DECISION: Reuse the OpenAI-compatible LLM provider.
# Perplexity's chat completions API is OpenAI-compatible, so the client is
# built with create_provider_from_id() rather than a separate HTTP layer.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime

from app.config import Settings, is_configured_key, settings
from app.services.llm import LLMProvider, create_provider_from_id

logger = logging.getLogger(__name__)

PROVIDER_NAME = "perplexity"


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class PerplexityResult:
    """One free-text answer from Perplexity for one sub-question."""

    query: str
    content: str | None
    confidence: str  # "high" on success, "failed" on error
    search_id: str
    timestamp: str = field(
        default_factory=lambda: datetime.now(UTC).isoformat()
    )
    error: str | None = None
    source: str = PROVIDER_NAME

    @property
    def ok(self) -> bool:
        return self.error is None and bool(self.content)

    def to_dict(self) -> dict:
        return {
            "query": self.query,
            "source": self.source,
            "content": self.content,
            "timestamp": self.timestamp,
            "confidence": self.confidence,
            "searchId": self.search_id,
            "error": self.error,
        }


@dataclass
class PerplexityBatch:
    """Results of searching several sub-questions at once."""

    successful: list[PerplexityResult]
    failed: list[PerplexityResult]
    batch_id: str

    @property
    def total(self) -> int:
        return len(self.successful) + len(self.failed)


# ---------------------------------------------------------------------------
# Prompt
# ---------------------------------------------------------------------------


def create_financial_search_prompt(sub_question: str) -> str:
    """Build the research prompt sent to Perplexity for one sub-question."""
    return (
        "You are a financial research assistant. Please provide a "
        "comprehensive answer to the following financial question using "
        "current, accurate information. Include specific data, numbers, and "
        "recent developments when available. Focus on providing factual, "
        "well-sourced information.\n\n"
        f"Question: {sub_question}\n\n"
        "Please structure your response to include:\n"
        "1. A clear, direct answer to the question\n"
        "2. Recent relevant data or statistics\n"
        "3. Key factors or context that influence this topic\n"
        "4. Any important recent developments or trends\n\n"
        "Provide specific numbers, percentages, and dates when available. "
        "Ensure all information is current and accurate."
    )


def validate_search_question(question: str | None) -> tuple[bool, str | None]:
    """
    Check that a question is worth sending to Perplexity.

    Returns (is_valid, error_message).
    """
    if not question or not isinstance(question, str):
        return False, "Question must be a non-empty string"
    if len(question.strip()) < 10:
        return False, "Question is too short (minimum 10 characters)"
    if len(question) > 500:
        return False, "Question is too long (maximum 500 characters)"
    return True, None


def _millis() -> int:
    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class PerplexityClient:
    """
    Perplexity search adapter.

    The underlying LLM provider is created lazily on first use so that the
    application can start (and report status) without a Perplexity key.
    """

    def __init__(
        self,
        config: Settings | None = None,
        llm: LLMProvider | None = None,
    ) -> None:
        self._config = config or settings
        self._llm = llm

    @property
    def is_configured(self) -> bool:
        return self._llm is not None or is_configured_key(
            self._config.perplexity_api_key
        )

    def _get_llm(self) -> LLMProvider:
        if self._llm is None:
            cfg = self._config
            if not is_configured_key(cfg.perplexity_api_key):
                raise ValueError(
                    "PERPLEXITY_API_KEY is required (not the placeholder value)"
                )
            self._llm = create_provider_from_id(
                f"openai_compatible/{cfg.perplexity_model}"
                f"@{cfg.perplexity_base_url}",
                api_key=cfg.perplexity_api_key,
                temperature=cfg.perplexity_temperature,
                max_tokens=cfg.perplexity_max_tokens,
                timeout=cfg.perplexity_timeout_seconds,
                max_retries=cfg.perplexity_max_retries,
            )
            logger.info(
                "Perplexity client ready (model=%s, timeout=%ss, retries=%d)",
                cfg.perplexity_model,
                cfg.perplexity_timeout_seconds,
                cfg.perplexity_max_retries,
            )
        return self._llm

    async def search(self, sub_question: str) -> PerplexityResult:
        """
        Search one sub-question.

        Never raises: configuration and API errors are returned as a
        PerplexityResult with `error` set and confidence "failed".
        """
        logger.info("Perplexity search: '%s'", sub_question[:80])
        try:
            llm = self._get_llm()
            response = await llm.complete(
                messages=[{
                    "role": "user",
                    "content": create_financial_search_prompt(sub_question),
                }],
            )
        except Exception as e:
            logger.warning("Perplexity search failed: %s", e)
            return PerplexityResult(
                query=sub_question,
                content=None,
                confidence="failed",
                search_id=f"pplx_error_{_millis()}",
                error=str(e),
            )

        logger.info(
            "Perplexity search complete: %d chars", len(response.content),
        )
        return PerplexityResult(
            query=sub_question,
            content=response.content,
            confidence="high",
            search_id=f"pplx_{_millis()}",
        )

    async def search_many(self, sub_questions: list[str]) -> PerplexityBatch:
        """Search several sub-questions concurrently and partition the results."""
        logger.info("Perplexity batch search: %d questions", len(sub_questions))
        results = await asyncio.gather(
            *(self.search(q) for q in sub_questions),
        )
        return PerplexityBatch(
            successful=[r for r in results if r.error is None],
            failed=[r for r in results if r.error is not None],
            batch_id=f"batch_{_millis()}",
        )
