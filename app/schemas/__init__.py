# app/schemas/__init__.py
from .calendar_events import (
    CalendarProvider,
    EventStatus,
    EventType,
    EventSource,
    EventAction,
    EventCreateRequest,
    EventActionRequest,
    CalendarEventOut,
    ConnectResponse,
    IntegrationStatus,
    SyncLogEntry
)

from .provider_events import (
    AccountProfile,
    TokenBundle,
    SyncWindow,
    ProviderEvent,
    ProviderEventBatch,
    WebhookSubscription,
    WebhookChangeType,
    NormalizedChangeEvent
)

from .availability import (
    ScheduleConfig,
    SlotStatus,
    Slot,
    AvailabilityResult,
    SlotCheck
)

from .sync import (
    SyncOutcome,
    SyncResult,
    WebhookStatus,
    WebhookResult
)
