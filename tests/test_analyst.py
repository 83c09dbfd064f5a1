# =============================================================================
# Unit Tests — Analyst Agent
# =============================================================================

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

from app.agents.analyst import (
    SYSTEM_PROMPT,
    Analyst,
    build_answer_prompt,
    count_results_used,
    format_search_results,
)
from app.services.llm import LLMResponse


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


PAYLOAD = {
    "results": {
        "total": 2,
        "items": [
            {
                "title": "Fed holds rates",
                "content": "The Federal Reserve kept rates unchanged.",
                "url": "https://www.reuters.com/fed",
                "source": "firecrawl",
                "relevanceScore": 92,
            },
            {
                "content": "Rates are 4.25% to 4.50%.",
                "source": "perplexity",
            },
        ],
    },
}


def _llm(content: str = "Rates are unchanged [Source: 1].") -> AsyncMock:
    llm = AsyncMock()
    llm.complete.return_value = LLMResponse(
        content=content, model="gemini-2.0-flash", input_tokens=300, output_tokens=40,
    )
    return llm


class TestFormatSearchResults:
    def test_numbered_blocks(self):
        text = format_search_results(PAYLOAD)

        assert text.startswith("### Search Result 1:")
        assert "**Title:** Fed holds rates" in text
        assert "**Source:** https://www.reuters.com/fed" in text
        assert "**Relevance Score:** 92" in text
        assert "### Search Result 2:" in text
        assert "**Provider:** perplexity" in text

    def test_optional_fields_omitted(self):
        second = format_search_results(PAYLOAD).split("### Search Result 2:")[1]
        assert "**Title:**" not in second
        assert "**Source:**" not in second

    def test_no_payload(self):
        assert format_search_results(None) == "No search results available."
        assert format_search_results({"results": "oops"}) == "No search results available."

    def test_empty_items(self):
        assert format_search_results({"results": {"items": []}}) == "No search results found."

    def test_prompt_layout(self):
        prompt = build_answer_prompt("Where are rates?", PAYLOAD)
        assert prompt.startswith("## User Question:\nWhere are rates?")
        assert "## Search Results:\n### Search Result 1:" in prompt
        assert prompt.endswith("Please provide your answer now:")

    def test_count_results_used(self):
        assert count_results_used(PAYLOAD) == 2
        assert count_results_used({"results": {"total": 4, "items": []}}) == 4
        assert count_results_used(None) == 0


class TestGenerateAnswer:
    def test_success(self):
        llm = _llm()
        answer = _run(Analyst(llm).generate_answer("Where are rates?", PAYLOAD))

        assert answer.status == "completed"
        assert answer.answer == "Rates are unchanged [Source: 1]."
        assert answer.answer_id.startswith("answer_")
        assert answer.search_results_used == 2
        assert llm.complete.call_args.kwargs["system"] == SYSTEM_PROMPT

    def test_llm_failure_falls_back(self):
        llm = AsyncMock()
        llm.complete.side_effect = RuntimeError("model overloaded")

        answer = _run(Analyst(llm).generate_answer("Where are rates?", PAYLOAD))

        assert answer.status == "fallback"
        assert answer.error == "model overloaded"
        assert answer.answer_id.startswith("fallback_answer_")
        assert '"Where are rates?"' in answer.answer
        assert answer.answer.startswith("I apologize")

    def test_no_llm_falls_back(self):
        answer = _run(Analyst(None).generate_answer("Where are rates?", PAYLOAD))
        assert answer.status == "fallback"
        assert answer.error == "No answering LLM configured"


class TestStreamAnswer:
    def test_chunks_reassemble(self):
        seen = []

        async def on_chunk(chunk, answer):
            seen.append(chunk)

        text = "x" * 60
        answer = _run(Analyst(_llm(text)).stream_answer(
            "Where are rates?", PAYLOAD, on_chunk=on_chunk, chunk_size=25, delay=0,
        ))

        assert "".join(c.text for c in seen) == answer.answer == text
        assert [c.progress for c in seen] == [42, 83, 100]
        assert seen[-1].is_last

    def test_without_callback(self):
        answer = _run(Analyst(_llm()).stream_answer("Where are rates?", PAYLOAD))
        assert answer.status == "completed"
