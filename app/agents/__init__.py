# =============================================================================
# Agents Package — Planning, Workflow and Answering
# =============================================================================
#   - planner.py: LLM research plan (2-4 sub-questions), with a fallback plan
#   - orchestrator.py: LangGraph graph — plan → search → process, with a
#     step trace and per-stage degradation
#   - analyst.py: cited answer synthesis from the processed search results
# =============================================================================
