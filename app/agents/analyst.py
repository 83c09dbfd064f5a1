# =============================================================================
# Analyst Agent — Cited Answer Synthesis
# =============================================================================
#
# The analyst takes the user's question and the processed search payload,
# then asks the answering LLM for a cited answer grounded in those results.
#
# DESIGN DECISION: Search results formatted as numbered blocks.
# Each item becomes "### Search Result N" with title, content, source URL,
# provider and relevance, so the model can cite them as [Source: N].
#
# DESIGN DECISION: LLM failure is an answer, not an exception.
# generate_answer() returns an apologetic FinalAnswer with status
# "fallback" when the model call fails. The chat route can always render
# something.
#
# DESIGN DECISION: Streaming replays a finished answer.
# stream_answer() generates the whole answer first and then hands it to the
# caller in fixed-size slices. Token streaming from the provider is not
# used, which keeps the LLMProvider protocol a single complete() call.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from app.services.llm import LLMProvider
from app.services.streaming import TextChunk, chunk_text

logger = logging.getLogger(__name__)

ANSWER_CHUNK_SIZE = 25
ANSWER_CHUNK_DELAY = 0.05

SYSTEM_PROMPT = (
    "You are a financial research assistant. Your task is to provide a "
    "comprehensive, accurate answer to the user's question based on the "
    "search results provided."
)

ANSWER_INSTRUCTIONS = (
    "## Instructions:\n"
    "1. Provide a comprehensive answer that directly addresses the user's question\n"
    "2. Use ONLY the information from the search results provided\n"
    "3. Include specific citations using [Source: X] format for each key fact\n"
    "4. If the search results don't contain enough information, clearly state "
    "what is missing\n"
    "5. Organize your response with clear sections if appropriate\n"
    "6. Include relevant numbers, dates, and specific details when available\n"
    "7. If there is conflicting information in the sources, acknowledge and "
    "explain the discrepancy\n\n"
    "## Answer Format:\n"
    "- Start with a direct answer to the question\n"
    "- Provide supporting details with citations\n"
    "- End with a brief summary if the answer is long\n"
    "- Use clear, professional language suitable for financial topics\n\n"
    "Please provide your answer now:"
)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class FinalAnswer:
    """Answer text plus the bookkeeping the chat response needs."""

    answer_id: str
    original_question: str
    answer: str
    search_results_used: int
    status: str = "completed"  # "completed" or "fallback"
    model: str | None = None
    error: str | None = None
    timestamp: str = field(default_factory=lambda: datetime.now(UTC).isoformat())


# ---------------------------------------------------------------------------
# Prompt Construction
# ---------------------------------------------------------------------------


def _result_items(payload: dict[str, Any] | None) -> list[dict] | None:
    results = (payload or {}).get("results")
    if not isinstance(results, dict):
        return None
    items = results.get("items")
    return items if isinstance(items, list) else None


def format_search_results(payload: dict[str, Any] | None) -> str:
    """
    Render search items as numbered markdown blocks.

    Works for both the processed shape and the unranked fallback shape,
    since both keep their records under results.items.

    Example output:
        ### Search Result 1:
        **Title:** Fed holds rates steady
        **Content:** The Federal Reserve kept...
        **Source:** https://www.reuters.com/...
        **Provider:** firecrawl
        **Relevance Score:** 92
    """
    items = _result_items(payload)
    if items is None:
        return "No search results available."
    if not items:
        return "No search results found."

    blocks = []
    for i, item in enumerate(items, 1):
        lines = [f"### Search Result {i}:"]
        if item.get("title"):
            lines.append(f"**Title:** {item['title']}")
        lines.append(f"**Content:** {item.get('content') or 'No content available'}")
        if item.get("url"):
            lines.append(f"**Source:** {item['url']}")
        lines.append(f"**Provider:** {item.get('source') or 'Unknown'}")
        if item.get("relevanceScore"):
            lines.append(f"**Relevance Score:** {item['relevanceScore']}")
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


def build_answer_prompt(question: str, payload: dict[str, Any] | None) -> str:
    return (
        f"## User Question:\n{question}\n\n"
        f"## Search Results:\n{format_search_results(payload)}\n\n"
        f"{ANSWER_INSTRUCTIONS}"
    )


def count_results_used(payload: dict[str, Any] | None) -> int:
    items = _result_items(payload)
    if items:
        return len(items)
    results = (payload or {}).get("results") or {}
    return int(results.get("total") or 0) if isinstance(results, dict) else 0


def fallback_answer_text(question: str) -> str:
    return (
        "I apologize, but I encountered an error while generating a "
        f'comprehensive answer to your question: "{question}". This could '
        "be due to technical issues with the AI model. Please try again, or "
        "contact support if the issue persists."
    )


# ---------------------------------------------------------------------------
# Analyst
# ---------------------------------------------------------------------------


class Analyst:
    """
    Answering adapter around an LLMProvider.

    With no provider (no answering LLM configured) every answer is the
    fallback apology.
    """

    def __init__(self, llm: LLMProvider | None) -> None:
        self._llm = llm

    async def generate_answer(
        self, question: str, payload: dict[str, Any] | None,
    ) -> FinalAnswer:
        used = count_results_used(payload)
        logger.info(
            "Analyst generating answer for '%s' from %d results",
            question[:80], used,
        )
        try:
            if self._llm is None:
                raise ValueError("No answering LLM configured")
            response = await self._llm.complete(
                messages=[{
                    "role": "user",
                    "content": build_answer_prompt(question, payload),
                }],
                system=SYSTEM_PROMPT,
            )
        except Exception as e:
            logger.warning("Answer generation failed: %s", e)
            return FinalAnswer(
                answer_id=f"fallback_answer_{int(time.time() * 1000)}",
                original_question=question,
                answer=fallback_answer_text(question),
                search_results_used=used,
                status="fallback",
                error=str(e),
            )

        logger.info(
            "Analyst complete: model=%s, tokens=%d+%d",
            response.model, response.input_tokens, response.output_tokens,
        )
        return FinalAnswer(
            answer_id=f"answer_{int(time.time() * 1000)}",
            original_question=question,
            answer=response.content,
            search_results_used=used,
            model=response.model,
        )

    async def stream_answer(
        self,
        question: str,
        payload: dict[str, Any] | None,
        on_chunk: Callable[[TextChunk, FinalAnswer], Awaitable[None]] | None = None,
        chunk_size: int = ANSWER_CHUNK_SIZE,
        delay: float = ANSWER_CHUNK_DELAY,
    ) -> FinalAnswer:
        """Generate the answer, then feed it to `on_chunk` slice by slice."""
        answer = await self.generate_answer(question, payload)
        if on_chunk is None:
            return answer

        for chunk in chunk_text(answer.answer, chunk_size):
            await on_chunk(chunk, answer)
            if not chunk.is_last and delay > 0:
                await asyncio.sleep(delay)
        return answer
