# =============================================================================
# Error Taxonomy
# =============================================================================
#
# Every failure the service can name has a class here. Where each one is
# caught decides how far it travels:
#
#   ValidationError          → HTTP 400 (chat routes), never retried
#   ProviderError            → absorbed by the search orchestrator
#   NoProvidersEnabledError  → fails a single search outright
#   SearchTimeoutError       → partial success if any provider answered
#   PlanningError            → workflow searches the original query instead
#   ProcessingError          → workflow returns unranked fallback items
#   WorkflowError            → chat endpoint answers with an apology (HTTP 200)
# =============================================================================


class FinancialAgentError(Exception):
    """Base exception for the financial research agent."""


class ValidationError(FinancialAgentError):
    """Raised when client input is malformed."""


class ProviderError(FinancialAgentError):
    """Raised when a single search provider call fails."""

    def __init__(self, provider: str, message: str) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider


class NoProvidersEnabledError(FinancialAgentError):
    """Raised when a search is requested with every provider switched off."""

    def __init__(self) -> None:
        super().__init__("No search providers enabled")


class SearchTimeoutError(FinancialAgentError):
    """Raised when providers do not settle within the search timeout."""

    def __init__(self, timeout: float) -> None:
        super().__init__(f"Search timeout after {timeout:g}s")
        self.timeout = timeout


class PlanningError(FinancialAgentError):
    """Raised when the planning LLM output cannot be used."""


class ProcessingError(FinancialAgentError):
    """Raised when the results pipeline cannot merge search output."""


class WorkflowError(FinancialAgentError):
    """Raised when a workflow stage fails with no fallback available."""

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(f"{stage} failed: {message}")
        self.stage = stage
