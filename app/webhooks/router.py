# app/webhooks/router.py
from fastapi import APIRouter

webhook_router = APIRouter()

# Import handlers inside a function to avoid circular imports
def register_handlers():
    from app.webhooks import calendar_handler
    webhook_router.include_router(calendar_handler.router)

register_handlers()

@webhook_router.get("/")
async def webhook_info():
    return {
        "endpoints": {
            "google_calendar": "/webhooks/google_calendar",
            "microsoft_outlook": "/webhooks/microsoft_outlook",
            "calendly": "/webhooks/calendly",
        },
        "note": "All endpoints accept POST requests from the calendar providers"
    }
