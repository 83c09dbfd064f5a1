# =============================================================================
# Application Configuration — Pydantic Settings
# =============================================================================
#
# DESIGN DECISION: We use Pydantic V2's `BaseSettings` for configuration.
# Every external provider (planning LLM, Perplexity, Firecrawl) and every
# orchestration knob (timeouts, concurrency windows, feature toggles) is
# declared here once, validated at startup, and overridable from the
# environment or a .env file.
#
# HOW IT WORKS:
# Pydantic Settings loads values in this priority order (highest first):
#   1. Environment variables (e.g., `PERPLEXITY_API_KEY=...`)
#   2. Values from the .env file
#   3. Default values defined below
#
# USAGE:
#   from app.config import settings
#   print(settings.search_timeout_seconds)
# =============================================================================

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Placeholder values shipped in .env.example. Treated the same as "unset".
PLACEHOLDER_KEYS = {
    "your_google_api_key_here",
    "your_perplexity_api_key_here",
    "your_firecrawl_api_key_here",
    "your_anthropic_api_key_here",
}


def is_configured_key(value: str | None) -> bool:
    """True when an API key is present and is not a template placeholder."""
    return bool(value) and value not in PLACEHOLDER_KEYS


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings have sensible defaults for local development. API keys
    have no defaults; adapters refuse to start without them.
    """

    # -------------------------------------------------------------------------
    # Application
    # -------------------------------------------------------------------------
    app_name: str = "Financial Research Agent"
    app_version: str = "1.0.0"
    log_level: str = "INFO"
    cors_origins: str = "http://localhost:3000,http://localhost:5173"

    # -------------------------------------------------------------------------
    # Planning / Answering LLM
    # -------------------------------------------------------------------------
    # DESIGN DECISION: Gemini is reached through its OpenAI-compatible
    # endpoint, so the same OpenAICompatibleProvider serves Gemini,
    # Perplexity and any other OpenAI-style API. Claude stays available
    # through the native Anthropic SDK by setting LLM_PROVIDER=anthropic.
    # -------------------------------------------------------------------------
    llm_provider: str = "openai_compatible"  # "anthropic" or "openai_compatible"
    llm_base_url: str | None = (
        "https://generativelanguage.googleapis.com/v1beta/openai/"
    )
    llm_api_key: str | None = None  # Overrides provider-specific key if set
    google_api_key: str = ""
    anthropic_api_key: str = ""
    llm_model: str = "gemini-2.0-flash"
    llm_temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    llm_max_tokens: int = Field(default=2048, ge=1, le=8192)

    # -------------------------------------------------------------------------
    # Perplexity — online search LLM
    # -------------------------------------------------------------------------
    perplexity_api_key: str = ""
    perplexity_base_url: str = "https://api.perplexity.ai"
    perplexity_model: str = "sonar"
    perplexity_temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    perplexity_max_tokens: int = Field(default=1000, ge=1, le=4096)
    perplexity_timeout_seconds: float = Field(default=30.0, ge=1.0, le=300.0)
    perplexity_max_retries: int = Field(default=3, ge=0, le=10)

    # -------------------------------------------------------------------------
    # Firecrawl — web page scraping
    # -------------------------------------------------------------------------
    # Pages are scraped one at a time with a short pause in between to stay
    # under Firecrawl's per-key rate limit.
    # -------------------------------------------------------------------------
    firecrawl_api_key: str = ""
    firecrawl_base_url: str = "https://api.firecrawl.dev"
    firecrawl_max_pages: int = Field(default=5, ge=1, le=100)
    firecrawl_timeout_seconds: float = Field(default=60.0, ge=5.0, le=300.0)
    firecrawl_wait_for_ms: int = 3000
    firecrawl_page_delay_seconds: float = 1.0
    firecrawl_query_delay_seconds: float = 2.0
    # Connection-level retries on the httpx transport
    firecrawl_max_retries: int = Field(default=3, ge=0, le=10)

    # -------------------------------------------------------------------------
    # Search Orchestrator
    # -------------------------------------------------------------------------
    # search_timeout_seconds bounds one query across all providers.
    # search_max_concurrent_queries is the batch window size; windows are
    # separated by search_batch_delay_seconds.
    # search_retry_attempts is accepted for compatibility but not consulted:
    # the orchestrator never retries on its own.
    # search_operation_ttl_seconds: how long finished operations stay visible
    # to GET /api/chat/searches.
    # search_operation_cache_size caps how many finished operations are kept.
    # -------------------------------------------------------------------------
    search_enable_perplexity: bool = True
    search_enable_firecrawl: bool = True
    search_timeout_seconds: float = Field(default=120.0, gt=0)
    search_max_concurrent_queries: int = Field(default=3, ge=1)
    search_batch_delay_seconds: float = Field(default=2.0, ge=0)
    search_retry_attempts: int = 2
    search_fallback_enabled: bool = True
    search_operation_ttl_seconds: float = Field(default=60.0, ge=0)
    search_operation_cache_size: int = Field(default=1000, ge=1)

    # -------------------------------------------------------------------------
    # Workflow (plan → search → process)
    # -------------------------------------------------------------------------
    workflow_enable_planning: bool = True
    workflow_enable_search: bool = True
    workflow_enable_results_processing: bool = True
    workflow_max_sub_questions: int = Field(default=5, ge=1)

    # -------------------------------------------------------------------------
    # SSE Streaming
    # -------------------------------------------------------------------------
    stream_chunk_size: int = Field(default=25, ge=1)
    stream_chunk_delay_seconds: float = Field(default=0.06, ge=0)
    stream_planning_pause_seconds: float = Field(default=0.5, ge=0)
    # Planning-failure message uses smaller, slower chunks
    stream_fallback_chunk_size: int = Field(default=20, ge=1)
    stream_fallback_chunk_delay_seconds: float = Field(default=0.08, ge=0)

    # -------------------------------------------------------------------------
    # Pydantic Settings Configuration
    # -------------------------------------------------------------------------
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


@lru_cache
def get_settings() -> Settings:
    """
    Create and cache a Settings instance.

    In tests, build a fresh Settings(...) and hand it to create_app()
    instead of patching this function.
    """
    return Settings()


# ---------------------------------------------------------------------------
# Module-level convenience instance
# ---------------------------------------------------------------------------
settings = get_settings()
