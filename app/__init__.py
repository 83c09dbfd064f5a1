# =============================================================================
# Financial Research Agent
# =============================================================================
# A chat API that answers financial questions from live web research.
# A planning LLM splits the question into sub-questions, Perplexity and
# Firecrawl search each one in parallel, the results are deduplicated and
# ranked, and an answering LLM writes a cited answer.
#
# Package structure:
#   app/
#   ├── api/          → FastAPI route handlers (chat, stream, status)
#   ├── agents/       → Planner, analyst and the LangGraph workflow
#   ├── models/       → Pydantic V2 request/response schemas
#   └── services/     → Provider adapters, search orchestration, results
#                        processing, streaming helpers
# =============================================================================
