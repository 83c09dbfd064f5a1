# =============================================================================
# Unit Tests — Perplexity Search Adapter
# =============================================================================
#
# The LLM provider is an AsyncMock; no network access or API key needed.
# =============================================================================

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

from app.config import Settings
from app.services.llm import LLMResponse
from app.services.perplexity import (
    PerplexityClient,
    create_financial_search_prompt,
    validate_search_question,
)


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _llm(content: str = "Rates are 5.25%.") -> AsyncMock:
    llm = AsyncMock()
    llm.complete.return_value = LLMResponse(
        content=content, model="sonar", input_tokens=10, output_tokens=5,
    )
    return llm


class TestSearch:
    def test_success_is_high_confidence(self):
        client = PerplexityClient(llm=_llm())
        result = _run(client.search("What is the current fed funds rate?"))

        assert result.ok
        assert result.confidence == "high"
        assert result.content == "Rates are 5.25%."
        assert result.search_id.startswith("pplx_")
        assert result.source == "perplexity"

    def test_prompt_contains_question(self):
        llm = _llm()
        _run(PerplexityClient(llm=llm).search("Apple P/E ratio today"))

        messages = llm.complete.call_args.kwargs["messages"]
        assert "Question: Apple P/E ratio today" in messages[0]["content"]

    def test_llm_error_becomes_failed_result(self):
        llm = AsyncMock()
        llm.complete.side_effect = RuntimeError("rate limited")

        result = _run(PerplexityClient(llm=llm).search("Tesla earnings"))

        assert not result.ok
        assert result.confidence == "failed"
        assert result.error == "rate limited"
        assert result.search_id.startswith("pplx_error_")

    def test_missing_key_becomes_failed_result(self):
        cfg = Settings(perplexity_api_key="", _env_file=None)
        client = PerplexityClient(config=cfg)

        assert not client.is_configured
        result = _run(client.search("Tesla earnings"))
        assert result.error is not None
        assert "PERPLEXITY_API_KEY" in result.error


class TestSearchMany:
    def test_partitions_results(self):
        llm = AsyncMock()
        llm.complete.side_effect = [
            LLMResponse(content="ok", model="sonar", input_tokens=1, output_tokens=1),
            RuntimeError("boom"),
        ]
        batch = _run(PerplexityClient(llm=llm).search_many(["q one", "q two"]))

        assert batch.total == 2
        assert len(batch.successful) == 1
        assert len(batch.failed) == 1
        assert batch.batch_id.startswith("batch_")


class TestValidation:
    def test_valid_question(self):
        assert validate_search_question("What is the S&P 500 level?") == (True, None)

    def test_empty(self):
        ok, error = validate_search_question("")
        assert not ok
        assert "non-empty" in error

    def test_too_short(self):
        ok, error = validate_search_question("GDP?")
        assert not ok
        assert "too short" in error

    def test_too_long(self):
        ok, error = validate_search_question("x" * 501)
        assert not ok
        assert "too long" in error

    def test_prompt_asks_for_numbers(self):
        prompt = create_financial_search_prompt("CPI trend")
        assert "Question: CPI trend" in prompt
        assert "specific numbers" in prompt
