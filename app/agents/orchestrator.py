# =============================================================================
# LangGraph Workflow — Plan → Search → Process
# =============================================================================
#
# The workflow wires the planner, the search orchestrator and the results
# processor into a LangGraph StateGraph. Every stage records a step entry
# (success, error, fallback) so the final payload carries a trace of what
# happened.
#
# GRAPH TOPOLOGY:
#   START ──▶ plan ──▶ search ──┬──▶ process ──▶ END
#                               └──▶ END  (search disabled or failed)
#
# DEGRADATION PER STAGE:
#   plan     fails → search the original question as the only sub-question
#   search   fails → error payload (no results to fall back on)
#   process  fails → unranked item list, no scoring
#
# DESIGN DECISION: Graph compiled per service instance.
# Nodes are bound methods that close over the injected planner,
# orchestrator and processor, so each FinancialSearchService owns its
# compiled graph. The application builds exactly one service at startup.
#
# DESIGN DECISION: Failures travel through state, not exceptions.
# The search node stores its error in state and a conditional edge routes
# to END. The step trace survives, which an exception escaping
# graph.ainvoke() would lose.
# =============================================================================

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import Any

from langgraph.graph import END, START, StateGraph
from typing_extensions import TypedDict

from app.agents.planner import Planner, ResearchPlan
from app.config import Settings, settings
from app.errors import PlanningError, ProcessingError, WorkflowError
from app.services.results_processor import ResultsProcessor, SearchPayload
from app.services.search_orchestrator import (
    BatchResult,
    SearchOrchestrator,
    new_search_id,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Configuration & Options
# ---------------------------------------------------------------------------


@dataclass
class WorkflowConfig:
    enable_planning: bool = True
    enable_search: bool = True
    enable_results_processing: bool = True
    max_sub_questions: int = 5
    max_concurrent_queries: int = 3
    search_timeout: float = 120.0

    @classmethod
    def from_settings(cls, cfg: Settings | None = None) -> WorkflowConfig:
        cfg = cfg or settings
        return cls(
            enable_planning=cfg.workflow_enable_planning,
            enable_search=cfg.workflow_enable_search,
            enable_results_processing=cfg.workflow_enable_results_processing,
            max_sub_questions=cfg.workflow_max_sub_questions,
            max_concurrent_queries=cfg.search_max_concurrent_queries,
            search_timeout=cfg.search_timeout_seconds,
        )


@dataclass
class WorkflowOptions:
    """Per-request overrides. None means "use the service config"."""

    enable_planning: bool | None = None
    enable_search: bool | None = None
    enable_results_processing: bool | None = None
    search_timeout: float | None = None
    max_concurrent: int | None = None
    enable_perplexity: bool | None = None
    enable_firecrawl: bool | None = None


# ---------------------------------------------------------------------------
# Workflow State Schema
# ---------------------------------------------------------------------------


class WorkflowState(TypedDict, total=False):
    """
    State that flows through the workflow graph.

    Uses total=False so nodes only return the keys they update.
    """

    # --- Input (set by execute) ---
    query: str
    search_id: str
    options: WorkflowOptions

    # --- Intermediate (set by nodes) ---
    plan: ResearchPlan | None
    sub_questions: list[str]
    batch: BatchResult | None
    steps: dict[str, dict[str, Any]]
    fallback: bool
    error: str | None

    # --- Output (set by process node) ---
    payload: dict[str, Any]


def _with_step(state: WorkflowState, name: str, step: dict[str, Any]) -> dict:
    return {**state.get("steps", {}), name: step}


def _enabled(configured: bool, override: bool | None) -> bool:
    return configured and override is not False


# ---------------------------------------------------------------------------
# Payload Builders
# ---------------------------------------------------------------------------


def build_search_payload(
    batch: BatchResult, query: str, search_id: str,
) -> SearchPayload:
    """Merge every sub-question outcome that carries data into one payload."""
    combined = [o.results for o in batch.results if o.results is not None]
    sources = sorted({
        entry.source for result in combined for entry in result.all_results
    })
    return SearchPayload(
        search_id=search_id,
        query=query,
        results=combined,
        duration_ms=batch.duration_ms,
        sources=sources,
    )


def create_fallback_results(payload: SearchPayload) -> dict[str, Any]:
    """Unranked items straight from the providers, used when processing is off."""
    items = [
        {
            "source": entry.source,
            "title": entry.title or "Search Result",
            "content": entry.content or "No content available",
            "url": entry.url,
            "relevanceScore": entry.relevance_score or 50,
        }
        for combined in payload.results
        for entry in combined.all_results
    ]
    return {
        "search": {
            "id": payload.search_id,
            "query": payload.query,
            "timestamp": datetime.now(UTC).isoformat(),
            "fallback": True,
        },
        "results": {
            "total": len(items),
            "items": items,
            "note": "Fallback results - limited processing applied",
        },
        "metadata": {
            "fallback": True,
            "sourcesUsed": sorted({item["source"] for item in items}),
        },
    }


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class FinancialSearchService:
    """
    Runs the plan → search → process workflow for one question at a time.

    Args:
        orchestrator: Parallel multi-provider search.
        processor: Ranking/dedup pipeline.
        planner: Sub-question generator. None disables planning.
        config: Stage toggles and limits.
    """

    def __init__(
        self,
        orchestrator: SearchOrchestrator,
        processor: ResultsProcessor,
        planner: Planner | None = None,
        config: WorkflowConfig | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.processor = processor
        self.planner = planner
        self.config = config or WorkflowConfig.from_settings()
        self.initialized = True
        self._graph = self._build_graph()

    def _build_graph(self):
        builder = StateGraph(WorkflowState)
        builder.add_node("plan", self._plan_node)
        builder.add_node("search", self._search_node)
        builder.add_node("process", self._process_node)

        builder.add_edge(START, "plan")
        builder.add_edge("plan", "search")
        builder.add_conditional_edges(
            "search",
            lambda state: END if state.get("error") else "process",
            {"process": "process", END: END},
        )
        builder.add_edge("process", END)
        return builder.compile()

    # -----------------------------------------------------------------------
    # Nodes
    # -----------------------------------------------------------------------

    async def _plan_node(self, state: WorkflowState) -> dict:
        query = state["query"]
        options = state["options"]

        if self.planner is None or not _enabled(
            self.config.enable_planning, options.enable_planning,
        ):
            return {
                "plan": None,
                "sub_questions": [query],
                "steps": _with_step(state, "planning", {
                    "success": True,
                    "subQuestions": [query],
                    "note": "Planning disabled - using original query",
                }),
            }

        try:
            plan = await self.planner.plan(query)
            if not plan.sub_questions:
                raise PlanningError("Invalid planning result structure")
        except Exception as e:
            logger.warning("Planning failed, searching original query: %s", e)
            return {
                "plan": None,
                "sub_questions": [query],
                "fallback": True,
                "steps": _with_step(state, "planning", {
                    "success": False,
                    "error": str(e),
                    "fallback": True,
                    "subQuestions": [query],
                }),
            }

        sub_questions = plan.sub_questions[: self.config.max_sub_questions]
        logger.info("Planning produced %d sub-questions", len(sub_questions))
        return {
            "plan": plan,
            "sub_questions": sub_questions,
            "steps": _with_step(state, "planning", {
                "success": True,
                "subQuestions": sub_questions,
                "planId": plan.plan_id,
                "planStatus": plan.status,
            }),
        }

    async def _search_node(self, state: WorkflowState) -> dict:
        options = state["options"]
        sub_questions = state["sub_questions"]

        if not _enabled(self.config.enable_search, options.enable_search):
            error = str(WorkflowError("searching", "Search is disabled"))
            return {
                "error": error,
                "steps": _with_step(state, "searching", {
                    "success": False, "error": error,
                }),
            }

        timeout = options.search_timeout or self.config.search_timeout
        try:
            if len(sub_questions) == 1:
                outcome = await self.orchestrator.execute_parallel_search(
                    sub_questions[0],
                    timeout=timeout,
                    enable_perplexity=options.enable_perplexity,
                    enable_firecrawl=options.enable_firecrawl,
                )
                batch = BatchResult(
                    batch_id=f"single_{outcome.search_id}",
                    queries=list(sub_questions),
                    results=[outcome],
                    duration_ms=outcome.duration_ms or 0,
                )
            else:
                batch = await self.orchestrator.execute_batch_search(
                    sub_questions,
                    max_concurrent=(
                        options.max_concurrent
                        or self.config.max_concurrent_queries
                    ),
                    timeout=timeout,
                    enable_perplexity=options.enable_perplexity,
                    enable_firecrawl=options.enable_firecrawl,
                )
        except Exception as e:
            logger.error("Search stage failed: %s", e)
            error = str(WorkflowError("searching", str(e)))
            return {
                "error": error,
                "steps": _with_step(state, "searching", {
                    "success": False, "error": error,
                }),
            }

        logger.info(
            "Search stage complete: %d successful, %d failed",
            len(batch.successful), len(batch.failed),
        )
        return {
            "batch": batch,
            "steps": _with_step(state, "searching", {
                "success": True,
                "batchId": batch.batch_id,
                "totalQueries": len(batch.results),
                "successful": len(batch.successful),
                "failed": len(batch.failed),
            }),
        }

    async def _process_node(self, state: WorkflowState) -> dict:
        options = state["options"]
        payload = build_search_payload(
            state["batch"], state["query"], state["search_id"],
        )

        if not _enabled(
            self.config.enable_results_processing,
            options.enable_results_processing,
        ):
            return {
                "payload": create_fallback_results(payload),
                "steps": _with_step(state, "processing", {
                    "success": True,
                    "note": "Results processing disabled - returning raw results",
                }),
            }

        try:
            processed = self.processor.run(payload)
        except ProcessingError as e:
            logger.error("Processing stage failed, returning raw results: %s", e)
            return {
                "payload": create_fallback_results(payload),
                "fallback": True,
                "steps": _with_step(state, "processing", {
                    "success": False, "error": str(e), "fallback": True,
                }),
            }

        results = processed["results"]
        return {
            "payload": processed,
            "steps": _with_step(state, "processing", {
                "success": True,
                "totalResults": results["total"],
                "averageQuality": results["averageQuality"],
                "categories": len(results["categories"]),
            }),
        }

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    async def execute(
        self, query: str, options: WorkflowOptions | None = None,
    ) -> dict[str, Any]:
        """
        Run the full workflow and return the final payload.

        Never raises for stage failures: a failed search yields the error
        payload, whose workflow block carries an "error" key.
        """
        search_id = new_search_id()
        started = time.monotonic()
        start_time = datetime.now(UTC).isoformat()
        logger.info("Starting financial search %s for '%s'", search_id, query[:80])

        state: WorkflowState = await self._graph.ainvoke({
            "query": query,
            "search_id": search_id,
            "options": options or WorkflowOptions(),
            "steps": {"planning": None, "searching": None, "processing": None},
            "fallback": False,
            "error": None,
        })

        duration_ms = int((time.monotonic() - started) * 1000)
        workflow = {
            "searchId": search_id,
            "userQuery": query,
            "startTime": start_time,
            "endTime": datetime.now(UTC).isoformat(),
            "duration": duration_ms,
            "steps": state.get("steps", {}),
            "subQuestions": state.get("sub_questions", [query]),
        }

        if state.get("error"):
            logger.error("Financial search %s failed: %s", search_id, state["error"])
            workflow["status"] = "failed"
            workflow["error"] = state["error"]
            return {
                "search": {
                    "id": search_id,
                    "query": query,
                    "timestamp": datetime.now(UTC).isoformat(),
                    "duration": duration_ms,
                    "error": state["error"],
                },
                "results": {"total": 0, "items": [], "error": "Search failed"},
                "metadata": {"error": state["error"], "processingTime": duration_ms},
                "workflow": workflow,
            }

        workflow["status"] = "fallback" if state.get("fallback") else "completed"
        plan = state.get("plan")
        if plan is not None:
            workflow["planId"] = plan.plan_id

        payload = dict(state["payload"])
        payload["workflow"] = workflow
        logger.info(
            "Financial search %s %s in %dms",
            search_id, workflow["status"], duration_ms,
        )
        return payload

    def get_status(self) -> dict[str, Any]:
        return {
            "initialized": self.initialized,
            "config": {
                **asdict(self.config),
                "planningAvailable": self.planner is not None,
                "search": asdict(self.orchestrator.config),
            },
            "timestamp": datetime.now(UTC).isoformat(),
        }
