"""Shared fixtures: in-process search providers and a wired search service."""

from __future__ import annotations

import asyncio

import pytest

from app.agents.orchestrator import FinancialSearchService, WorkflowConfig
from app.services.firecrawl import FirecrawlExtraction, FirecrawlPage, ScrapeOutcome
from app.services.operation_store import OperationStore
from app.services.perplexity import PerplexityResult
from app.services.results_processor import ResultsProcessor
from app.services.search_orchestrator import OrchestratorConfig, SearchOrchestrator


class StubPerplexity:
    """Answers every sub-question immediately with a high-confidence result."""

    def __init__(self) -> None:
        self.calls: list[str] = []

    async def search(self, sub_question: str) -> PerplexityResult:
        self.calls.append(sub_question)
        return PerplexityResult(
            query=sub_question,
            content=(
                f"Research answer for {sub_question}: the Federal Reserve held "
                "its policy rate steady while inflation continued to ease."
            ),
            confidence="high",
            search_id=f"pplx_{len(self.calls)}",
        )


class StubFirecrawl:
    """Returns one scraped page per query."""

    def __init__(self) -> None:
        self.calls: list[str] = []

    async def extract_for_query(self, query: str) -> FirecrawlExtraction:
        self.calls.append(query)
        n = len(self.calls)
        page = FirecrawlPage(
            title=f"Market coverage {n}",
            url=f"https://www.reuters.com/markets/{n}",
            content=f"Page {n} about {query}. Stocks moved as traders weighed earnings.",
            summary="Reuters market coverage of the latest session",
            relevance_score=80,
        )
        return FirecrawlExtraction(
            query=query,
            successful=[ScrapeOutcome(url=page.url, success=True, page=page)],
            failed=[],
            extraction_id=f"fc_{n}",
        )


@pytest.fixture
def perplexity() -> StubPerplexity:
    return StubPerplexity()


@pytest.fixture
def firecrawl() -> StubFirecrawl:
    return StubFirecrawl()


@pytest.fixture
def make_service(perplexity, firecrawl):
    """Factory for a FinancialSearchService over the stub providers."""

    def build(planner=None, processor=None, config=None, **orchestrator_config):
        orchestrator_config.setdefault("batch_delay", 0)

        async def no_sleep(seconds: float) -> None:
            await asyncio.sleep(0)

        orchestrator = SearchOrchestrator(
            perplexity=perplexity,
            firecrawl=firecrawl,
            config=OrchestratorConfig(**orchestrator_config),
            store=OperationStore(ttl_seconds=60),
            sleep=no_sleep,
        )
        return FinancialSearchService(
            orchestrator=orchestrator,
            processor=processor or ResultsProcessor(),
            planner=planner,
            config=config or WorkflowConfig(),
        )

    return build


@pytest.fixture(autouse=True)
def _reset_sse_exit_event():
    # sse-starlette caches an exit event bound to the first event loop it
    # sees; each TestClient runs its own loop.
    from sse_starlette.sse import AppStatus

    if hasattr(AppStatus, "should_exit_event"):
        AppStatus.should_exit_event = None
    yield
