# =============================================================================
# FastAPI Application — Entry Point
# =============================================================================
#
# create_app() assembles the application:
#   - logging configured once from settings.log_level
#   - CORS for the browser chat client
#   - exception handlers mapping the error taxonomy to HTTP responses
#   - the chat router plus GET /api and GET /health
#
# SERVICE WIRING (lifespan):
#   get_llm_provider() ─┬─▶ Planner ──────────────┐
#                       └─▶ Analyst               │
#   PerplexityClient ─┐                           ▼
#   FirecrawlClient ──┴─▶ SearchOrchestrator ─▶ FinancialSearchService
#   ResultsProcessor ────────────────────────────┘
#
# DESIGN DECISION: Services are built once and stored on app.state.
# No module-level singletons: tests call create_app() with pre-built fakes
# and the lifespan only builds what was not supplied.
#
# DESIGN DECISION: A missing LLM key does not stop startup.
# The app still serves /api/chat/status and the search path; planning is
# skipped and answers fall back to the apology text until a key is set.
#
# Run locally:
#   uvicorn app.main:app --reload --port 3001
# =============================================================================

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.agents.analyst import Analyst
from app.agents.orchestrator import FinancialSearchService, WorkflowConfig
from app.agents.planner import Planner
from app.api import chat
from app.config import Settings, get_settings, is_configured_key
from app.errors import ValidationError
from app.models.responses import HealthResponse
from app.services.firecrawl import FirecrawlClient
from app.services.llm import get_llm_provider
from app.services.operation_store import OperationStore
from app.services.perplexity import PerplexityClient
from app.services.results_processor import ResultsProcessor
from app.services.search_orchestrator import OrchestratorConfig, SearchOrchestrator

logger = logging.getLogger(__name__)


def configure_logging(cfg: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, cfg.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def _log_configuration(cfg: Settings) -> None:
    def yes_no(key: str | None) -> str:
        return "yes" if is_configured_key(key) else "no"

    logger.info(
        "LLM: provider=%s model=%s key configured: %s",
        cfg.llm_provider, cfg.llm_model,
        yes_no(cfg.llm_api_key or cfg.google_api_key or cfg.anthropic_api_key),
    )
    logger.info(
        "Perplexity: model=%s timeout=%ss key configured: %s",
        cfg.perplexity_model, cfg.perplexity_timeout_seconds,
        yes_no(cfg.perplexity_api_key),
    )
    logger.info(
        "Firecrawl: max_pages=%d timeout=%ss key configured: %s",
        cfg.firecrawl_max_pages, cfg.firecrawl_timeout_seconds,
        yes_no(cfg.firecrawl_api_key),
    )


def build_search_service(
    cfg: Settings, planner: Planner | None,
) -> FinancialSearchService:
    orchestrator = SearchOrchestrator(
        perplexity=PerplexityClient(cfg),
        firecrawl=FirecrawlClient(cfg),
        config=OrchestratorConfig.from_settings(cfg),
        store=OperationStore(
            ttl_seconds=cfg.search_operation_ttl_seconds,
            maxsize=cfg.search_operation_cache_size,
        ),
    )
    return FinancialSearchService(
        orchestrator=orchestrator,
        processor=ResultsProcessor(),
        planner=planner,
        config=WorkflowConfig.from_settings(cfg),
    )


def create_app(
    cfg: Settings | None = None,
    *,
    search_service: FinancialSearchService | None = None,
    planner: Planner | None = None,
    analyst: Analyst | None = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Any service passed in is used as-is; the rest are built from settings
    when the app starts.
    """
    cfg = cfg or get_settings()
    configure_logging(cfg)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _log_configuration(cfg)
        app.state.settings = cfg

        built_planner = planner
        built_analyst = analyst
        if built_planner is None or built_analyst is None:
            try:
                llm = get_llm_provider(cfg)
            except ValueError as e:
                logger.warning("Planning/answering LLM unavailable: %s", e)
                llm = None
            if built_planner is None and llm is not None:
                built_planner = Planner(llm)
            if built_analyst is None:
                built_analyst = Analyst(llm)

        app.state.planner = built_planner
        app.state.analyst = built_analyst
        app.state.search_service = search_service or build_search_service(
            cfg, built_planner,
        )
        logger.info("%s %s started", cfg.app_name, cfg.app_version)
        yield
        logger.info("%s shutting down", cfg.app_name)

    app = FastAPI(
        title=cfg.app_name,
        description=(
            "Financial research chat: AI planning, parallel Perplexity and "
            "Firecrawl search, ranked results and cited answers."
        ),
        version=cfg.app_version,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors_origin_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -----------------------------------------------------------------------
    # Exception handlers
    # -----------------------------------------------------------------------

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return JSONResponse(
            status_code=400,
            content={"error": "Bad Request", "message": str(exc)},
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError,
    ):
        if request.url.path.startswith(chat.router.prefix):
            return JSONResponse(
                status_code=400,
                content={"error": "Bad Request", "message": chat.EMPTY_MESSAGE_ERROR},
            )
        return await request_validation_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal Server Error",
                "message": "An error occurred while processing your request",
            },
        )

    # -----------------------------------------------------------------------
    # Routes
    # -----------------------------------------------------------------------

    app.include_router(chat.router)

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health() -> HealthResponse:
        return HealthResponse(version=cfg.app_version, service=cfg.app_name)

    @app.get("/api", tags=["Health"])
    async def api_info() -> dict:
        return {
            "message": "Financial Agent Demo API",
            "version": cfg.app_version,
            "endpoints": {
                "chat": "POST /api/chat",
                "chatStream": "POST /api/chat/stream",
                "chatStatus": "GET /api/chat/status",
                "activeSearches": "GET /api/chat/searches",
                "cancelSearch": "POST /api/chat/searches/{search_id}/cancel",
                "health": "GET /health",
            },
        }

    return app


app = create_app()
