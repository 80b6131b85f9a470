import json
import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from cryptography.fernet import Fernet

# Settings are cached on first import, so the environment goes first
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["CALENDAR_ENCRYPTION_KEY"] = Fernet.generate_key().decode()
os.environ.setdefault("DEFAULT_TIMEZONE", "America/New_York")
os.environ["FRONTEND_URL"] = "https://app.example.com"
os.environ.pop("SLACK_WEBHOOK_URL", None)

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.api.dependencies import get_adapter_factory, get_notifier
from app.config.database import get_db
from app.core.exceptions import MalformedWebhookPayload, SignatureInvalid
from app.main import app
from app.models import Base, CalendarEvent, CalendarIntegration
from app.models.base import utcnow
from app.schemas.calendar_events import CalendarProvider
from app.schemas.provider_events import (
    AccountProfile,
    NormalizedChangeEvent,
    ProviderEvent,
    ProviderEventBatch,
    TokenBundle,
    WebhookSubscription,
)
from app.services.calendar.adapter_registry import ProviderAdapterFactory
from app.services.calendar.base_adapter import CalendarProviderAdapter
from app.services.notification.notifier import Notifier
from app.services.service_factory import build_services
from app.utils.encryption import encrypt_token

COMPANY_ID = uuid.UUID("00000000-0000-0000-0000-0000000000c1")
OTHER_COMPANY_ID = uuid.UUID("00000000-0000-0000-0000-0000000000c2")
USER_ID = uuid.UUID("00000000-0000-0000-0000-0000000000a1")


class FakeAdapter(CalendarProviderAdapter):
    """In-memory provider: tests edit `events` between sync runs"""

    def __init__(self, provider: CalendarProvider = CalendarProvider.GOOGLE):
        super().__init__()
        self.provider = provider
        self.events: Dict[str, ProviderEvent] = {}
        self.full_window = True
        self.next_cursor: Optional[str] = None
        self.list_error: Optional[Exception] = None
        self.refresh_error: Optional[Exception] = None
        self.exchange_error: Optional[Exception] = None
        self.subscribe_error: Optional[Exception] = None
        self.cancel_error: Optional[Exception] = None
        self.get_error: Optional[Exception] = None
        self.update_error: Optional[Exception] = None
        self.get_calls = 0
        self.list_calls = 0
        self.cancelled: List[str] = []
        self.pushed: List[ProviderEvent] = []
        self.updated: List[str] = []
        self.unsubscribed = 0

    def put(self, external_id: str, start: datetime, minutes: int = 30, **fields) -> ProviderEvent:
        fields.setdefault("title", f"Event {external_id}")
        fields.setdefault("updated_at", utcnow())
        provider_event = ProviderEvent(
            external_id=external_id,
            start_time=start,
            end_time=start + timedelta(minutes=minutes),
            **fields,
        )
        self.events[external_id] = provider_event
        return provider_event

    def build_authorization_url(self, state: str) -> str:
        return f"https://auth.example.test/authorize?state={state}"

    def exchange_auth_code(self, code: str) -> TokenBundle:
        if self.exchange_error:
            raise self.exchange_error
        return TokenBundle(
            access_token=f"access-{code}",
            refresh_token="refresh-token",
            expires_in=3600,
            profile=AccountProfile(email="owner@example.com", account_id="acct-1"),
        )

    def refresh_tokens(self, refresh_token: str) -> TokenBundle:
        if self.refresh_error:
            raise self.refresh_error
        return TokenBundle(access_token="refreshed-access", refresh_token=refresh_token, expires_in=3600)

    def list_events(self, integration, access_token, cursor, window) -> ProviderEventBatch:
        self.list_calls += 1
        if self.list_error:
            raise self.list_error
        events = list(self.events.values())
        if self.full_window:
            events = [
                e for e in events
                if not e.has_times or (e.end_time > window.start and e.start_time < window.end)
            ]
        return ProviderEventBatch(
            events=events,
            next_cursor=self.next_cursor,
            full_window=self.full_window,
            window_start=window.start,
            window_end=window.end,
        )

    def get_event(self, integration, access_token, external_id):
        self.get_calls += 1
        if self.get_error:
            raise self.get_error
        return self.events.get(external_id)

    def cancel_remote_event(self, integration, access_token, external_id) -> None:
        if self.cancel_error:
            raise self.cancel_error
        self.cancelled.append(external_id)

    def create_remote_event(self, integration, access_token, event) -> ProviderEvent:
        remote = ProviderEvent(
            external_id=f"remote-{event.id}",
            title=event.title,
            start_time=event.start_time,
            end_time=event.end_time,
            etag="1",
            updated_at=utcnow(),
        )
        self.pushed.append(remote)
        return remote

    def update_remote_event(self, integration, access_token, event) -> ProviderEvent:
        if self.provider == CalendarProvider.CALENDLY:
            return super().update_remote_event(integration, access_token, event)
        if self.update_error:
            raise self.update_error
        current = self.events[event.external_id]
        remote = current.model_copy(update={
            "title": event.title,
            "description": event.description,
            "location": event.location,
            "start_time": event.start_time,
            "end_time": event.end_time,
            "updated_at": utcnow(),
        })
        self.events[event.external_id] = remote
        self.updated.append(event.external_id)
        return remote

    def create_webhook_subscription(self, integration, access_token, callback_url) -> WebhookSubscription:
        if self.subscribe_error:
            raise self.subscribe_error
        return WebhookSubscription(id=f"sub-{integration.id}", expires_at=utcnow() + timedelta(days=7))

    def delete_webhook_subscription(self, integration, access_token) -> None:
        self.unsubscribed += 1

    def parse_webhook_payload(self, raw_body, headers, secret) -> List[NormalizedChangeEvent]:
        if secret and headers.get("x-test-signature") != secret:
            raise SignatureInvalid("Signature mismatch")
        try:
            payload = json.loads(raw_body)
        except ValueError as e:
            raise MalformedWebhookPayload(f"Webhook body is not JSON: {e}")
        return [NormalizedChangeEvent.model_validate(item) for item in payload]


class FakeAdapterFactory(ProviderAdapterFactory):
    def get(self, provider) -> CalendarProviderAdapter:
        provider = self.resolve(provider)
        if provider not in self._instances:
            self._instances[provider] = FakeAdapter(provider)
        return self._instances[provider]


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent = []

    def notify(self, transition, event) -> None:
        self.sent.append((transition, event.id))


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def adapters():
    return FakeAdapterFactory()


@pytest.fixture()
def google(adapters) -> FakeAdapter:
    return adapters.get(CalendarProvider.GOOGLE)


@pytest.fixture()
def notifier():
    return RecordingNotifier()


@pytest.fixture()
def services(db, adapters, notifier):
    return build_services(db, adapters, notifier)


@pytest.fixture()
def make_integration(db):
    def _make(
            provider: CalendarProvider = CalendarProvider.GOOGLE,
            company_id: uuid.UUID = COMPANY_ID,
            user_id: uuid.UUID = USER_ID,
            **fields,
    ) -> CalendarIntegration:
        fields.setdefault("provider_account_email", "owner@example.com")
        fields.setdefault("provider_account_id", "acct-1")
        fields.setdefault("is_active", True)
        fields.setdefault("access_token_encrypted", encrypt_token("access-token"))
        fields.setdefault("refresh_token_encrypted", encrypt_token("refresh-token"))
        fields.setdefault("token_expires_at", utcnow() + timedelta(hours=1))
        fields.setdefault("provider_config", {})
        integration = CalendarIntegration(
            company_id=company_id,
            user_id=user_id,
            provider=provider.value,
            **fields,
        )
        db.add(integration)
        db.commit()
        db.refresh(integration)
        return integration

    return _make


@pytest.fixture()
def make_event(db):
    def _make(start: datetime, minutes: int = 30, company_id: uuid.UUID = COMPANY_ID, **fields) -> CalendarEvent:
        fields.setdefault("title", "Booked call")
        fields.setdefault("status", "scheduled")
        fields.setdefault("source", "manual")
        fields.setdefault("event_type", "call")
        calendar_event = CalendarEvent(
            company_id=company_id,
            start_time=start,
            end_time=start + timedelta(minutes=minutes),
            attendees=[],
            **fields,
        )
        db.add(calendar_event)
        db.commit()
        db.refresh(calendar_event)
        return calendar_event

    return _make


@pytest.fixture()
def client(session_factory, adapters, notifier):
    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_adapter_factory] = lambda: adapters
    app.dependency_overrides[get_notifier] = lambda: notifier
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def company_headers():
    return {"X-Company-ID": str(COMPANY_ID), "X-User-ID": str(USER_ID)}


def at(year, month, day, hour=0, minute=0, tz=timezone.utc) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=tz)
