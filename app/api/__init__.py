# =============================================================================
# API Package — FastAPI Route Handlers
# =============================================================================
#   - chat.py: POST /api/chat, POST /api/chat/stream (SSE), status and
#     active-search endpoints
#   - deps.py: dependency providers reading services from app.state
# =============================================================================
