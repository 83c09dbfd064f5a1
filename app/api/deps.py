# =============================================================================
# Service Dependencies — FastAPI Dependency Injection
# =============================================================================
#
# Route handlers receive the long-lived services through these providers:
#
# 1. get_search_service() — the plan → search → process workflow
# 2. get_planner()        — sub-question generator (streaming route)
# 3. get_analyst()        — answer synthesis
# 4. get_app_settings()   — the Settings the app was built with
#
# DESIGN DECISION: Services live on app.state, not in module globals.
# create_app() builds them once in the lifespan hook (or receives
# pre-built ones from tests) and these providers read them back per
# request. Tests can also swap any of them via app.dependency_overrides.
# =============================================================================

from __future__ import annotations

from fastapi import HTTPException, Request

from app.agents.analyst import Analyst
from app.agents.orchestrator import FinancialSearchService
from app.agents.planner import Planner
from app.config import Settings


def _state_attr(request: Request, name: str):
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(
            status_code=503,
            detail=f"Service '{name}' is not available",
        )
    return service


def get_search_service(request: Request) -> FinancialSearchService:
    return _state_attr(request, "search_service")


def get_analyst(request: Request) -> Analyst:
    return _state_attr(request, "analyst")


def get_planner(request: Request) -> Planner | None:
    """The planner is optional: None when no planning LLM is configured."""
    return getattr(request.app.state, "planner", None)


def get_app_settings(request: Request) -> Settings:
    return _state_attr(request, "settings")
