# app/services/service_factory.py
"""Per-unit-of-work wiring; adapters and notifier are process-level and passed in"""
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from app.config.settings import Settings, get_settings
from app.services.availability.availability_service import AvailabilityService
from app.services.calendar.adapter_registry import ProviderAdapterFactory
from app.services.events.event_state_machine import EventStateMachine
from app.services.integration.integration_registry import IntegrationRegistry
from app.services.notification.notifier import Notifier
from app.services.sync.sync_engine import SyncEngine
from app.services.webhook.webhook_ingestor import WebhookIngestor


@dataclass
class CalendarServices:
    registry: IntegrationRegistry
    availability: AvailabilityService
    state_machine: EventStateMachine
    sync_engine: SyncEngine
    webhook_ingestor: WebhookIngestor


def build_services(
        db: Session,
        adapters: ProviderAdapterFactory,
        notifier: Optional[Notifier] = None,
        settings: Optional[Settings] = None,
) -> CalendarServices:
    settings = settings or get_settings()
    registry = IntegrationRegistry(db, adapters, settings)
    availability = AvailabilityService(db)
    state_machine = EventStateMachine(db, availability, remote=registry, notifier=notifier, settings=settings)
    sync_engine = SyncEngine(db, registry, adapters, state_machine, settings)
    ingestor = WebhookIngestor(db, adapters, sync_engine, secrets=settings.webhook_secret_for)
    return CalendarServices(
        registry=registry,
        availability=availability,
        state_machine=state_machine,
        sync_engine=sync_engine,
        webhook_ingestor=ingestor,
    )
