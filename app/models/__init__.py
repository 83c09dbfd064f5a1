# =============================================================================
# Models Package — Pydantic V2 Schemas
# =============================================================================
# Request and response schemas for the chat API. Internal pipeline records
# (search outcomes, normalized results, plans) are dataclasses in the
# services and agents packages; these models are only the HTTP contract.
# =============================================================================
