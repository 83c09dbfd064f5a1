# =============================================================================
# API Request Models — Pydantic V2 Schemas
# =============================================================================
#
# These models define the shape of data coming INTO the API.
# FastAPI uses them for:
# 1. Request body validation
# 2. OpenAPI documentation generation (visible at /docs)
#
# DESIGN DECISION: The message is not length-constrained here.
# An empty or whitespace-only message must produce the chat API's own
# 400 body ({"error": "Bad Request", "message": ...}), so that check lives
# in the route instead of a Field(min_length=...) that would yield a 422.
# =============================================================================

from pydantic import BaseModel, Field


class ChatRequest(BaseModel):
    """
    Request body for POST /api/chat and POST /api/chat/stream.

    Example:
        {"message": "How are Federal Reserve rate decisions affecting mortgages?"}
    """

    message: str | None = Field(
        default=None,
        description="The financial question to research and answer",
        examples=["What is Apple's current P/E ratio?"],
    )
