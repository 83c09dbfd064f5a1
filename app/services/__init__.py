# =============================================================================
# Services Package — Providers and Search Pipeline
# =============================================================================
#   - llm.py: Multi-provider LLM abstraction (Anthropic, OpenAI-compatible)
#   - perplexity.py: Perplexity online search adapter
#   - firecrawl.py: Firecrawl page scraping adapter (httpx)
#   - search_orchestrator.py: parallel provider fan-out, timeout race,
#     batch windows, advisory cancel
#   - operation_store.py: expiring registry of search operations
#   - results_processor.py: normalize, deduplicate, score, categorize
#   - streaming.py: text chunking and SSE event framing
# =============================================================================
