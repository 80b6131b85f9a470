# app/services/calendar/adapter_registry.py
from typing import Dict, Optional, Type

from app.config.settings import Settings, get_settings
from app.core.exceptions import NotFound
from app.schemas.calendar_events import CalendarProvider
from app.services.calendar.base_adapter import CalendarProviderAdapter
from app.services.calendar.calendly_service import CalendlyAdapter
from app.services.calendar.google_calendar_service import GoogleCalendarAdapter
from app.services.calendar.outlook_service import OutlookCalendarAdapter

ADAPTERS: Dict[CalendarProvider, Type[CalendarProviderAdapter]] = {
    CalendarProvider.GOOGLE: GoogleCalendarAdapter,
    CalendarProvider.MICROSOFT: OutlookCalendarAdapter,
    CalendarProvider.CALENDLY: CalendlyAdapter,
}


class ProviderAdapterFactory:
    """Process-level owner of one adapter instance per provider"""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._instances: Dict[CalendarProvider, CalendarProviderAdapter] = {}

    @staticmethod
    def resolve(provider) -> CalendarProvider:
        try:
            return CalendarProvider(provider)
        except ValueError:
            raise NotFound(f"Unknown calendar provider: {provider}")

    def get(self, provider) -> CalendarProviderAdapter:
        provider = self.resolve(provider)
        if provider not in self._instances:
            self._instances[provider] = ADAPTERS[provider](settings=self.settings)
        return self._instances[provider]
