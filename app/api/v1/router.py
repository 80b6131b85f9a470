"""
API v1 router setup
Organized into: events, availability and provider integrations
"""
from fastapi import APIRouter

from app.api.v1 import availability, events, integrations

api_v1_router = APIRouter()

# ============================================================================
# EVENT STORE
# ============================================================================
api_v1_router.include_router(
    events.router,
    prefix="/events",
    tags=["Events"]
)

# ============================================================================
# AVAILABILITY
# ============================================================================
api_v1_router.include_router(
    availability.router,
    prefix="/availability",
    tags=["Availability"]
)

# ============================================================================
# PROVIDER INTEGRATIONS
# ============================================================================
api_v1_router.include_router(
    integrations.router,
    prefix="/integrations",
    tags=["Integrations"]
)


# ============================================================================
# ROOT ENDPOINT - API Info
# ============================================================================
@api_v1_router.get("/", tags=["Info"])
async def api_info():
    """
    API information and available endpoints.
    Every route expects the X-Company-ID header except the OAuth callbacks.
    """
    return {
        "version": "1.0",
        "endpoints": {
            "events": "/api/v1/events",
            "availability": "/api/v1/availability",
            "integrations": "/api/v1/integrations",
        },
        "context_headers": ["X-Company-ID", "X-User-ID"],
    }
