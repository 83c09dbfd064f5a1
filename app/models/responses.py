# =============================================================================
# API Response Models — Pydantic V2 Schemas
# =============================================================================
#
# These models define the shape of data coming OUT of the API.
# They serve as the contract between backend and the browser chat client:
# 1. Ensure consistent response structure across all endpoints
# 2. Automatically serialized to JSON by FastAPI
# 3. Generate OpenAPI response schemas (visible at /docs)
#
# DESIGN DECISION: camelCase on the wire, snake_case in Python.
# The chat client reads `originalQuestion`, `searchResultsUsed` and so on.
# An alias generator keeps the Python attributes idiomatic while FastAPI
# serializes by alias.
# =============================================================================

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class HealthResponse(BaseModel):
    """Response for GET /health — confirms the API is running."""

    status: str = "ok"
    version: str
    service: str


class ErrorResponse(BaseModel):
    """Body for 400 and 500 responses."""

    error: str
    message: str


class WorkflowRefs(_CamelModel):
    """Ids linking a chat answer to the plan, search and answer behind it."""

    plan_id: str | None = None
    search_id: str | None = None
    answer_id: str | None = None


class ChatResponse(_CamelModel):
    """
    Response for POST /api/chat when the workflow ran.

    Example:
        {
            "id": "msg_1718000000000",
            "originalQuestion": "What is Apple's P/E ratio?",
            "answer": "Apple's trailing P/E ratio is ... [Source: 1]",
            "searchResultsUsed": 7,
            "workflow": {"planId": "plan_...", "searchId": "search_...",
                         "answerId": "answer_..."},
            "timestamp": "2025-01-01T12:00:00+00:00",
            "status": "success"
        }
    """

    id: str
    original_question: str
    answer: str
    search_results_used: int = Field(ge=0)
    workflow: WorkflowRefs
    timestamp: str
    status: Literal["success"] = "success"


class ChatFallbackResponse(_CamelModel):
    """Response for POST /api/chat when the workflow failed (still HTTP 200)."""

    id: str
    original_question: str
    answer: str
    error: str
    timestamp: str
    status: Literal["fallback"] = "fallback"


class ChatFeatures(_CamelModel):
    basic_chat: bool = True
    streaming: bool = True
    ai_planning: bool
    search_integration: bool
    results_processing: bool
    perplexity_search: bool
    firecrawl_extraction: bool


class SearchServiceStatus(BaseModel):
    initialized: bool
    config: dict[str, Any]


class ChatStatusResponse(_CamelModel):
    """Response for GET /api/chat/status."""

    status: str = "operational"
    timestamp: str
    features: ChatFeatures
    search_service: SearchServiceStatus


class ActiveSearch(BaseModel):
    id: str
    query: str
    status: str
    duration: int
    sources: dict[str, bool]


class ActiveSearchesResponse(BaseModel):
    """Response for GET /api/chat/searches."""

    searches: list[ActiveSearch]
    total: int


class CancelSearchResponse(_CamelModel):
    """Response for POST /api/chat/searches/{search_id}/cancel."""

    search_id: str
    cancelled: bool
    status: str
