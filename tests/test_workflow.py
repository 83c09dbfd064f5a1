# =============================================================================
# Unit Tests — Plan → Search → Process Workflow
# =============================================================================
#
# Runs the compiled LangGraph workflow end to end over stub providers
# (see conftest.py). Planner and processor failures are injected with
# AsyncMock / MagicMock.
# =============================================================================

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

from app.agents.orchestrator import (
    WorkflowConfig,
    WorkflowOptions,
    build_search_payload,
    create_fallback_results,
)
from app.agents.planner import Planner
from app.errors import ProcessingError
from app.services.llm import LLMResponse
from app.services.search_orchestrator import (
    BatchResult,
    CombinedEntry,
    CombinedResult,
    SearchOutcome,
    SearchStatus,
)

QUESTION = "What is the outlook for US interest rates?"
SUB_QUESTIONS = [
    "What is the current federal funds rate?",
    "What has the Fed signalled about future rate moves?",
    "How are bond markets pricing rate cuts?",
]


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _planner(sub_questions=SUB_QUESTIONS) -> Planner:
    llm = AsyncMock()
    llm.complete.return_value = LLMResponse(
        content=json.dumps({
            "originalQuestion": QUESTION,
            "subQuestions": sub_questions,
            "researchFocus": "Current policy and market expectations",
        }),
        model="gemini-2.0-flash",
        input_tokens=100,
        output_tokens=60,
    )
    return Planner(llm)


# ---------------------------------------------------------------------------
# Test: Planning Stage
# ---------------------------------------------------------------------------


class TestPlanningStage:
    def test_planned_sub_questions_are_searched(self, make_service, perplexity):
        result = _run(make_service(planner=_planner()).execute(QUESTION))

        workflow = result["workflow"]
        assert workflow["status"] == "completed"
        assert workflow["subQuestions"] == SUB_QUESTIONS
        assert workflow["planId"].startswith("plan_")
        assert sorted(perplexity.calls) == sorted(SUB_QUESTIONS)
        assert workflow["steps"]["searching"]["totalQueries"] == 3
        assert workflow["steps"]["searching"]["successful"] == 3
        # The three answers share the "Perplexity Result" title and merge.
        assert result["results"]["total"] == 4
        assert sorted(i["source"] for i in result["results"]["items"]) == [
            "firecrawl", "firecrawl", "firecrawl", "perplexity",
        ]

    def test_planning_disabled_uses_original_query(self, make_service, perplexity):
        result = _run(make_service(planner=None).execute(QUESTION))

        workflow = result["workflow"]
        assert workflow["subQuestions"] == [QUESTION]
        assert workflow["status"] == "completed"
        assert "planId" not in workflow
        assert workflow["steps"]["planning"]["note"].startswith("Planning disabled")
        assert perplexity.calls == [QUESTION]

    def test_planning_disabled_per_request(self, make_service, perplexity):
        service = make_service(planner=_planner())
        _run(service.execute(QUESTION, WorkflowOptions(enable_planning=False)))
        assert perplexity.calls == [QUESTION]

    def test_planner_exception_falls_back_to_query(self, make_service, perplexity):
        planner = AsyncMock()
        planner.plan.side_effect = RuntimeError("planner crashed")

        result = _run(make_service(planner=planner).execute(QUESTION))

        workflow = result["workflow"]
        assert workflow["subQuestions"] == [QUESTION]
        assert workflow["status"] == "fallback"
        step = workflow["steps"]["planning"]
        assert step["success"] is False
        assert step["fallback"] is True
        assert step["error"] == "planner crashed"
        assert perplexity.calls == [QUESTION]
        assert result["results"]["total"] == 2

    def test_sub_questions_capped(self, make_service, perplexity):
        service = make_service(
            planner=_planner(), config=WorkflowConfig(max_sub_questions=2),
        )
        result = _run(service.execute(QUESTION))

        assert result["workflow"]["subQuestions"] == SUB_QUESTIONS[:2]
        assert len(perplexity.calls) == 2


# ---------------------------------------------------------------------------
# Test: Search Stage
# ---------------------------------------------------------------------------


class TestSearchStage:
    def test_single_query_wrapped_as_batch(self, make_service):
        result = _run(make_service().execute(QUESTION))
        assert result["workflow"]["steps"]["searching"]["batchId"].startswith(
            "single_search_",
        )

    def test_search_disabled_returns_error_payload(self, make_service, perplexity):
        service = make_service(config=WorkflowConfig(enable_search=False))
        result = _run(service.execute(QUESTION))

        workflow = result["workflow"]
        assert workflow["status"] == "failed"
        assert workflow["error"] == "searching failed: Search is disabled"
        assert workflow["steps"]["processing"] is None
        assert result["results"] == {"total": 0, "items": [], "error": "Search failed"}
        assert perplexity.calls == []

    def test_no_providers_is_a_search_failure(self, make_service):
        result = _run(make_service().execute(
            QUESTION,
            WorkflowOptions(enable_perplexity=False, enable_firecrawl=False),
        ))
        assert result["workflow"]["error"] == (
            "searching failed: No search providers enabled"
        )

    def test_provider_toggle_is_forwarded(self, make_service, perplexity, firecrawl):
        _run(make_service().execute(QUESTION, WorkflowOptions(enable_firecrawl=False)))
        assert perplexity.calls == [QUESTION]
        assert firecrawl.calls == []


# ---------------------------------------------------------------------------
# Test: Processing Stage
# ---------------------------------------------------------------------------


class TestProcessingStage:
    def test_processed_payload(self, make_service):
        result = _run(make_service().execute(QUESTION))

        assert result["metadata"]["deduplicationApplied"] is True
        assert result["results"]["topResult"] is not None
        assert result["workflow"]["steps"]["processing"]["totalResults"] == 2

    def test_processing_failure_returns_raw_items(self, make_service):
        processor = MagicMock()
        processor.run.side_effect = ProcessingError("bad record")

        result = _run(make_service(processor=processor).execute(QUESTION))

        assert result["workflow"]["status"] == "fallback"
        assert result["metadata"] == {
            "fallback": True, "sourcesUsed": ["firecrawl", "perplexity"],
        }
        assert result["results"]["total"] == 2
        assert result["results"]["note"].startswith("Fallback results")
        assert result["workflow"]["steps"]["processing"]["error"] == "bad record"

    def test_processing_disabled(self, make_service):
        result = _run(make_service().execute(
            QUESTION, WorkflowOptions(enable_results_processing=False),
        ))
        assert result["workflow"]["status"] == "completed"
        assert result["metadata"]["fallback"] is True


# ---------------------------------------------------------------------------
# Test: Payload Builders & Status
# ---------------------------------------------------------------------------


def _outcome(status: SearchStatus, with_results: bool = True) -> SearchOutcome:
    results = CombinedResult(
        query="q", search_id="search_1",
        all_results=[CombinedEntry(source="perplexity", content="answer")],
    ) if with_results else None
    return SearchOutcome(query="q", status=status, results=results)


class TestPayloadBuilders:
    def test_partial_success_outcomes_are_merged(self):
        batch = BatchResult(
            batch_id="b",
            queries=["q1", "q2", "q3"],
            results=[
                _outcome(SearchStatus.COMPLETED),
                _outcome(SearchStatus.PARTIAL_SUCCESS),
                _outcome(SearchStatus.FAILED, with_results=False),
            ],
        )
        payload = build_search_payload(batch, "question", "search_x")

        assert len(payload.results) == 2
        assert payload.sources == ["perplexity"]

    def test_fallback_item_defaults(self):
        batch = BatchResult(batch_id="b", queries=["q"], results=[
            SearchOutcome(
                query="q", status=SearchStatus.COMPLETED,
                results=CombinedResult(
                    query="q", search_id="s",
                    all_results=[CombinedEntry(source="firecrawl", content=None)],
                ),
            ),
        ])
        output = create_fallback_results(build_search_payload(batch, "q", "s"))

        [item] = output["results"]["items"]
        assert item == {
            "source": "firecrawl",
            "title": "Search Result",
            "content": "No content available",
            "url": None,
            "relevanceScore": 50,
        }


class TestStatus:
    def test_get_status(self, make_service):
        status = make_service(planner=_planner()).get_status()

        assert status["initialized"] is True
        assert status["config"]["planningAvailable"] is True
        assert status["config"]["enable_search"] is True
        assert status["config"]["search"]["fallback_enabled"] is True
