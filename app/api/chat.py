# =============================================================================
# Chat API — Financial Research Chat Endpoints
# =============================================================================
#
# POST /api/chat           — plan → search → process → answer, as JSON
# POST /api/chat/stream    — research plan streamed as Server-Sent Events
# GET  /api/chat/status    — feature flags and search service state
# GET  /api/chat/searches  — in-flight and recently finished searches
# POST /api/chat/searches/{search_id}/cancel — advisory cancel
#
# FLOW (POST /api/chat):
#   1. Validate the message (empty → 400)
#   2. FinancialSearchService.execute() runs the LangGraph workflow
#   3. Analyst.generate_answer() writes the cited answer
#   4. Any workflow failure → apologetic fallback body, still HTTP 200
#
# SSE EVENT ORDER (POST /api/chat/stream):
#   planning_start → planning_complete | planning_error
#   → message_start → message_chunk × n → message_end
#
# This router is thin by design: request validation, error handling and
# response mapping. The work happens in the agents package.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import time
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException
from sse_starlette.sse import EventSourceResponse

from app.agents.analyst import Analyst
from app.agents.orchestrator import FinancialSearchService
from app.agents.planner import Planner, ResearchPlan
from app.api.deps import get_analyst, get_app_settings, get_planner, get_search_service
from app.config import Settings
from app.errors import PlanningError, ValidationError, WorkflowError
from app.models.requests import ChatRequest
from app.models.responses import (
    ActiveSearch,
    ActiveSearchesResponse,
    CancelSearchResponse,
    ChatFallbackResponse,
    ChatFeatures,
    ChatResponse,
    ChatStatusResponse,
    ErrorResponse,
    SearchServiceStatus,
    WorkflowRefs,
)
from app.services.streaming import sse_event, stream_message

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/chat", tags=["Chat"])

EMPTY_MESSAGE_ERROR = "Message is required and must be a non-empty string"


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _message_id() -> str:
    return f"msg_{int(time.time() * 1000)}"


def require_message(body: ChatRequest) -> str:
    """Return the message, or raise ValidationError (→ HTTP 400)."""
    if not isinstance(body.message, str) or not body.message.strip():
        raise ValidationError(EMPTY_MESSAGE_ERROR)
    return body.message


# ---------------------------------------------------------------------------
# POST /api/chat — full workflow, JSON answer
# ---------------------------------------------------------------------------


@router.post(
    "",
    response_model=ChatResponse | ChatFallbackResponse,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    summary="Ask a financial question",
    description=(
        "Plans research sub-questions, searches Perplexity and Firecrawl in "
        "parallel, ranks the results and returns a cited answer. Workflow "
        "failures produce an apologetic answer with status 'fallback'."
    ),
)
async def chat(
    body: ChatRequest,
    service: FinancialSearchService = Depends(get_search_service),
    analyst: Analyst = Depends(get_analyst),
) -> ChatResponse | ChatFallbackResponse:
    message = require_message(body)
    logger.info("Chat request received: '%s'", message[:80])

    try:
        payload = await service.execute(message)
        workflow = payload.get("workflow", {})
        if workflow.get("error"):
            raise WorkflowError("workflow", workflow["error"])
        answer = await analyst.generate_answer(message, payload)
    except Exception as e:
        logger.error("Chat workflow failed: %s", e)
        return ChatFallbackResponse(
            id=_message_id(),
            original_question=message,
            answer=(
                "I apologize, but I encountered an issue while researching "
                f'your question: "{message}". This could be due to API '
                "limitations or temporary service issues. Please try again "
                "in a moment."
            ),
            error=str(e),
            timestamp=_now_iso(),
        )

    logger.info(
        "Chat workflow completed: search=%s, answer=%s, results=%d",
        workflow.get("searchId"), answer.answer_id, answer.search_results_used,
    )
    return ChatResponse(
        id=_message_id(),
        original_question=message,
        answer=answer.answer,
        search_results_used=answer.search_results_used,
        workflow=WorkflowRefs(
            plan_id=workflow.get("planId"),
            search_id=workflow.get("searchId"),
            answer_id=answer.answer_id,
        ),
        timestamp=_now_iso(),
    )


# ---------------------------------------------------------------------------
# POST /api/chat/stream — research plan over SSE
# ---------------------------------------------------------------------------


def plan_summary(question: str, plan: ResearchPlan) -> str:
    lines = [
        f'I\'ve analyzed your question: "{question}"',
        "",
        f"Here's my research plan with {len(plan.sub_questions)} key areas "
        "to investigate:",
        "",
    ]
    for i, sub_question in enumerate(plan.sub_questions, 1):
        lines.extend([f"{i}. {sub_question}", ""])
    lines.extend([
        f"Research Focus: {plan.research_focus}",
        "",
        "Note: This is the planning step. In the next phase, I would research "
        "each of these sub-questions and provide a comprehensive answer.",
    ])
    return "\n".join(lines)


def planning_failure_message(question: str, error: str) -> str:
    return (
        f'I received your question: "{question}"\n\n'
        "Unfortunately, I encountered an issue generating a research plan: "
        f"{error}\n\n"
        "This could be due to:\n"
        "- Missing or invalid Google API key\n"
        "- Network connectivity issues\n"
        "- API rate limiting\n\n"
        "Please check your configuration and try again."
    )


async def plan_events(message: str, planner: Planner | None, cfg: Settings):
    """
    SSE event generator for one streamed chat request.

    sse-starlette cancels the generator when the client disconnects; the
    CancelledError is logged and re-raised so the response shuts down
    cleanly.
    """
    message_id = _message_id()
    try:
        yield sse_event(message_id, "planning_start", {
            "id": message_id,
            "message": "Analyzing your question and generating research plan...",
            "timestamp": _now_iso(),
        })

        try:
            if planner is None:
                raise PlanningError("No planning LLM configured")
            plan = await planner.plan(message)
        except Exception as e:
            logger.warning("Streaming planning failed: %s", e)
            yield sse_event(message_id, "planning_error", {
                "id": message_id,
                "error": str(e),
                "message": "Failed to generate research plan",
                "timestamp": _now_iso(),
            })
            async for event in stream_message(
                planning_failure_message(message, str(e)),
                cfg.stream_fallback_chunk_size,
                cfg.stream_fallback_chunk_delay_seconds,
            ):
                yield event
            return

        if cfg.stream_planning_pause_seconds:
            await asyncio.sleep(cfg.stream_planning_pause_seconds)

        yield sse_event(message_id, "planning_complete", {
            "id": message_id,
            "researchPlan": plan.to_dict(),
            "timestamp": _now_iso(),
        })
        async for event in stream_message(
            plan_summary(message, plan),
            cfg.stream_chunk_size,
            cfg.stream_chunk_delay_seconds,
        ):
            yield event

    except asyncio.CancelledError:
        logger.info("Client disconnected from stream %s", message_id)
        raise


@router.post(
    "/stream",
    responses={400: {"model": ErrorResponse}},
    summary="Stream a research plan as Server-Sent Events",
)
async def chat_stream(
    body: ChatRequest,
    planner: Planner | None = Depends(get_planner),
    cfg: Settings = Depends(get_app_settings),
) -> EventSourceResponse:
    message = require_message(body)
    logger.info("Streaming chat request received: '%s'", message[:80])
    return EventSourceResponse(plan_events(message, planner, cfg))


# ---------------------------------------------------------------------------
# GET /api/chat/status — service status
# ---------------------------------------------------------------------------


@router.get("/status", response_model=ChatStatusResponse)
async def chat_status(
    service: FinancialSearchService = Depends(get_search_service),
) -> ChatStatusResponse:
    status = service.get_status()
    search_config = service.orchestrator.config
    return ChatStatusResponse(
        timestamp=_now_iso(),
        features=ChatFeatures(
            ai_planning=service.config.enable_planning and service.planner is not None,
            search_integration=service.config.enable_search,
            results_processing=service.config.enable_results_processing,
            perplexity_search=search_config.enable_perplexity,
            firecrawl_extraction=search_config.enable_firecrawl,
        ),
        search_service=SearchServiceStatus(
            initialized=status["initialized"],
            config=status["config"],
        ),
    )


# ---------------------------------------------------------------------------
# Active searches
# ---------------------------------------------------------------------------


@router.get("/searches", response_model=ActiveSearchesResponse)
async def active_searches(
    service: FinancialSearchService = Depends(get_search_service),
) -> ActiveSearchesResponse:
    searches = [
        ActiveSearch(**entry)
        for entry in service.orchestrator.get_active_searches()
    ]
    return ActiveSearchesResponse(searches=searches, total=len(searches))


@router.post(
    "/searches/{search_id}/cancel",
    response_model=CancelSearchResponse,
    responses={404: {"description": "Unknown search id"}},
)
async def cancel_search(
    search_id: str,
    service: FinancialSearchService = Depends(get_search_service),
) -> CancelSearchResponse:
    orchestrator = service.orchestrator
    if not orchestrator.cancel_search(search_id):
        raise HTTPException(status_code=404, detail=f"Search {search_id} not found")
    status = next(
        (s["status"] for s in orchestrator.get_active_searches() if s["id"] == search_id),
        "cancelled",
    )
    return CancelSearchResponse(
        search_id=search_id,
        cancelled=status == "cancelled",
        status=status,
    )
