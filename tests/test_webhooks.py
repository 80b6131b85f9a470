import json
from datetime import timedelta

import pytest

from app.config.settings import get_settings
from app.models import CalendarEvent, CalendarSyncLog
from app.models.base import utcnow
from app.schemas.calendar_events import CalendarProvider
from app.schemas.sync import WebhookStatus
from app.services.webhook.webhook_ingestor import WebhookIngestor
from conftest import COMPANY_ID

SECRET = "whsec-test"


def _start():
    return (utcnow() + timedelta(days=2)).replace(minute=0, second=0, microsecond=0)


def _body(*changes) -> bytes:
    return json.dumps(list(changes)).encode()


def _upsert(external_id="g-1", account_id="acct-1", title="Consultation", **extra):
    start = _start()
    change = {
        "provider": "google_calendar",
        "change_type": "upsert",
        "account_id": account_id,
        "external_id": external_id,
        "event": {
            "external_id": external_id,
            "title": title,
            "start_time": start.isoformat(),
            "end_time": (start + timedelta(minutes=30)).isoformat(),
            "etag": "1",
        },
    }
    change.update(extra)
    return change


@pytest.fixture()
def ingestor(db, adapters, services):
    return WebhookIngestor(db, adapters, services.sync_engine, secrets=lambda provider: SECRET)


@pytest.fixture()
def integration(make_integration):
    return make_integration()


def test_invalid_signature_is_rejected_without_changes(ingestor, integration, db):
    result = ingestor.handle_webhook("google_calendar", _body(_upsert()), {"x-test-signature": "forged"})

    assert result.status == WebhookStatus.REJECTED
    assert db.query(CalendarEvent).count() == 0


def test_valid_upsert_creates_event_and_log(ingestor, integration, db):
    result = ingestor.handle_webhook("google_calendar", _body(_upsert()), {"x-test-signature": SECRET})

    assert result.status == WebhookStatus.PROCESSED
    event = db.query(CalendarEvent).one()
    assert result.event_id == str(event.id)
    assert event.integration_id == integration.id
    log = db.query(CalendarSyncLog).one()
    assert log.sync_type == "webhook"
    assert log.events_created == 1


def test_replayed_webhook_is_idempotent(ingestor, integration, db):
    body = _body(_upsert())
    ingestor.handle_webhook("google_calendar", body, {"x-test-signature": SECRET})
    ingestor.handle_webhook("google_calendar", body, {"x-test-signature": SECRET})

    assert db.query(CalendarEvent).count() == 1


def test_unmatched_change_is_skipped(ingestor, integration, db):
    change = _upsert(account_id="someone-else")

    result = ingestor.handle_webhook("google_calendar", _body(change), {"x-test-signature": SECRET})

    assert result.status == WebhookStatus.SKIPPED
    assert result.reason == "no matching integration"
    assert db.query(CalendarEvent).count() == 0


def test_participant_email_fallback(ingestor, make_integration, db):
    integration = make_integration(provider_account_id=None, provider_account_email="Owner@Example.com")
    change = _upsert(account_id=None, participant_emails=["guest@example.com", "owner@example.com"])

    result = ingestor.handle_webhook("google_calendar", _body(change), {"x-test-signature": SECRET})

    assert result.status == WebhookStatus.PROCESSED
    assert db.query(CalendarEvent).one().integration_id == integration.id


def test_ping_is_acknowledged(ingestor, integration):
    ping = {"provider": "google_calendar", "change_type": "ping"}

    result = ingestor.handle_webhook("google_calendar", _body(ping), {"x-test-signature": SECRET})

    assert result.status == WebhookStatus.SKIPPED
    assert result.reason == "handshake"


def test_cancel_change_cancels_event(ingestor, integration, db):
    ingestor.handle_webhook("google_calendar", _body(_upsert()), {"x-test-signature": SECRET})
    cancel = {"provider": "google_calendar", "change_type": "cancel", "account_id": "acct-1", "external_id": "g-1"}

    result = ingestor.handle_webhook("google_calendar", _body(cancel), {"x-test-signature": SECRET})

    assert result.status == WebhookStatus.PROCESSED
    assert db.query(CalendarEvent).one().status == "cancelled"


def test_resync_change_runs_incremental_sync(ingestor, integration, google, db):
    google.put("g-9", _start())
    resync = {"provider": "google_calendar", "change_type": "resync", "subscription_id": "chan-1", "account_id": "acct-1"}

    result = ingestor.handle_webhook("google_calendar", _body(resync), {"x-test-signature": SECRET})

    assert result.status == WebhookStatus.PROCESSED
    assert db.query(CalendarEvent).filter(CalendarEvent.external_id == "g-9").count() == 1


def test_missing_secret_processes_unverified(db, adapters, services, integration):
    ingestor = WebhookIngestor(db, adapters, services.sync_engine, secrets=lambda provider: None)

    result = ingestor.handle_webhook("google_calendar", _body(_upsert()), {})

    assert result.status == WebhookStatus.PROCESSED


# ---------------------------------------------------------------------------
# HTTP route
# ---------------------------------------------------------------------------

@pytest.fixture()
def google_secret(monkeypatch):
    monkeypatch.setattr(get_settings(), "GOOGLE_WEBHOOK_SECRET", SECRET)


def test_route_answers_401_on_bad_signature(client, integration, google_secret, db):
    response = client.post("/webhooks/google_calendar", content=_body(_upsert()), headers={"X-Test-Signature": "nope"})

    assert response.status_code == 401
    assert db.query(CalendarEvent).count() == 0


def test_route_answers_200_when_processed(client, integration, google_secret):
    response = client.post("/webhooks/google_calendar", content=_body(_upsert()), headers={"X-Test-Signature": SECRET})

    assert response.status_code == 200
    assert response.json()["status"] == "processed"


def test_route_answers_200_when_unmatched(client, integration, google_secret):
    body = _body(_upsert(account_id="nobody"))

    response = client.post("/webhooks/google_calendar", content=body, headers={"X-Test-Signature": SECRET})

    assert response.status_code == 200
    assert response.json()["status"] == "skipped"


def test_route_answers_400_on_malformed_payload(client, google_secret):
    response = client.post("/webhooks/google_calendar", content=b"{not json", headers={"X-Test-Signature": SECRET})

    assert response.status_code == 400
    assert response.json()["error_code"] == "malformed_payload"


def test_route_answers_404_for_unknown_provider(client):
    response = client.post("/webhooks/icloud", content=b"[]")

    assert response.status_code == 404


def test_route_echoes_graph_validation_token(client):
    response = client.post("/webhooks/microsoft_outlook?validationToken=abc%20123")

    assert response.status_code == 200
    assert response.text == "abc 123"
    assert response.headers["content-type"].startswith("text/plain")


def test_replayed_calendly_cancel_leaves_completed_event(ingestor, make_integration, services, db):
    make_integration(provider=CalendarProvider.CALENDLY)
    created = _upsert(external_id="https://api.calendly.com/scheduled_events/E1", provider="calendly")
    ingestor.handle_webhook("calendly", _body(created), {"x-test-signature": SECRET})
    event = db.query(CalendarEvent).one()
    services.state_machine.complete(event.id, COMPANY_ID)

    cancel = {
        "provider": "calendly",
        "change_type": "cancel",
        "account_id": "acct-1",
        "external_id": "https://api.calendly.com/scheduled_events/E1",
    }
    for _ in range(2):
        ingestor.handle_webhook("calendly", _body(cancel), {"x-test-signature": SECRET})

    db.refresh(event)
    assert event.status == "completed"
    assert event.cancelled_at is None
