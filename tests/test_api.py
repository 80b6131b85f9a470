from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import pytest

from app.core.exceptions import AuthExchangeError, ProviderUnavailable
from app.models import CalendarEvent, CalendarIntegration
from app.models.base import utcnow
from app.utils.oauth_state import decode_state, encode_state
from conftest import COMPANY_ID, OTHER_COMPANY_ID, USER_ID, at


class QueuedTask:
    def __init__(self):
        self.calls = []

    def delay(self, *args):
        self.calls.append(args)


@pytest.fixture()
def queued_sync(monkeypatch):
    task = QueuedTask()
    monkeypatch.setattr("app.api.v1.integrations.sync_integration", task)
    return task


def _create_body(**fields):
    body = {
        "title": "Estimate visit",
        "start_time": "2025-06-10T14:00:00Z",
        "end_time": "2025-06-10T14:30:00Z",
        "event_type": "call",
    }
    body.update(fields)
    return body


# ---------------------------------------------------------------------------
# Request context
# ---------------------------------------------------------------------------

def test_missing_company_header_is_unauthorized(client):
    assert client.get("/api/v1/events").status_code == 401


def test_malformed_company_header_is_bad_request(client):
    assert client.get("/api/v1/events", headers={"X-Company-ID": "acme"}).status_code == 400


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

def test_create_event_returns_201(client, company_headers):
    response = client.post("/api/v1/events", json=_create_body(), headers=company_headers)

    assert response.status_code == 201
    payload = response.json()
    assert payload["event"]["status"] == "scheduled"
    assert payload["event"]["source"] == "manual"
    assert payload["warnings"] == []


def test_create_event_lists_missing_fields(client, company_headers):
    response = client.post("/api/v1/events", json={"event_type": "call"}, headers=company_headers)

    assert response.status_code == 400
    assert response.json()["detail"] == "Missing required fields: title, start_time, end_time"


def test_create_event_rejects_inverted_times(client, company_headers):
    body = _create_body(start_time="2025-06-10T15:00:00Z", end_time="2025-06-10T14:00:00Z")

    assert client.post("/api/v1/events", json=body, headers=company_headers).status_code == 400


def test_create_event_conflict_is_409(client, company_headers):
    first = client.post("/api/v1/events", json=_create_body(), headers=company_headers).json()

    response = client.post(
        "/api/v1/events",
        json=_create_body(start_time="2025-06-10T14:15:00Z", end_time="2025-06-10T14:45:00Z"),
        headers=company_headers,
    )

    assert response.status_code == 409
    assert response.json()["conflicting_event_id"] == first["event"]["id"]


def test_list_events_filters_by_range(client, company_headers, make_event):
    make_event(at(2025, 6, 10, 9))
    make_event(at(2025, 6, 12, 9))
    make_event(at(2025, 6, 10, 9), company_id=OTHER_COMPANY_ID)

    response = client.get(
        "/api/v1/events",
        params={"start_date": "2025-06-10T00:00:00Z", "end_date": "2025-06-11T00:00:00Z"},
        headers=company_headers,
    )

    payload = response.json()
    assert payload["total"] == 1
    assert payload["events"][0]["start_time"].startswith("2025-06-10T09:00:00")


def test_reschedule_without_times_is_400(client, company_headers, make_event):
    event = make_event(at(2025, 6, 10, 9))

    response = client.put(
        "/api/v1/events",
        json={"event_id": str(event.id), "action": "reschedule"},
        headers=company_headers,
    )

    assert response.status_code == 400


def test_no_show_action_returns_retry_event(client, company_headers, make_event):
    event = make_event(at(2025, 6, 10, 9))

    response = client.put(
        "/api/v1/events",
        json={"event_id": str(event.id), "action": "no_show", "schedule_retry": True},
        headers=company_headers,
    )

    payload = response.json()
    assert response.status_code == 200
    assert payload["event"]["status"] == "no_show"
    assert payload["retry_event"]["event_type"] == "no_show_retry"
    assert payload["retry_event"]["parent_event_id"] == str(event.id)


def test_action_on_foreign_event_is_404(client, make_event):
    event = make_event(at(2025, 6, 10, 9))

    response = client.put(
        "/api/v1/events",
        json={"event_id": str(event.id), "action": "confirm"},
        headers={"X-Company-ID": str(OTHER_COMPANY_ID)},
    )

    assert response.status_code == 404


def test_transition_failure_is_500(client, company_headers, make_event):
    event = make_event(at(2025, 6, 10, 9), status="no_show")

    response = client.put(
        "/api/v1/events",
        json={"event_id": str(event.id), "action": "complete"},
        headers=company_headers,
    )

    assert response.status_code == 500
    assert response.json()["error_code"] == "transition_failed"


def test_update_action_changes_details_only(client, company_headers, make_event):
    event = make_event(at(2025, 6, 10, 9))

    response = client.put(
        "/api/v1/events",
        json={"event_id": str(event.id), "action": "update", "title": "Site survey", "location": "Dock 4"},
        headers=company_headers,
    )

    payload = response.json()["event"]
    assert payload["title"] == "Site survey"
    assert payload["location"] == "Dock 4"
    assert payload["status"] == "scheduled"


def test_delete_is_soft_cancel(client, company_headers, make_event, db):
    event = make_event(at(2025, 6, 10, 9))

    response = client.delete("/api/v1/events", params={"event_id": str(event.id)}, headers=company_headers)

    assert response.status_code == 200
    assert response.json()["event"]["status"] == "cancelled"
    assert db.query(CalendarEvent).count() == 1


# ---------------------------------------------------------------------------
# Availability
# ---------------------------------------------------------------------------

def test_availability_by_date(client, company_headers):
    client.put(
        "/api/v1/availability/schedule",
        json={"timezone": "UTC", "working_hours_start": "09:00", "working_hours_end": "17:00"},
        headers=company_headers,
    )

    response = client.get("/api/v1/availability", params={"date": "2025-06-10", "slot_duration": 30}, headers=company_headers)

    payload = response.json()
    assert response.status_code == 200
    assert len(payload["slots"]) == 16
    assert {slot["status"] for slot in payload["slots"]} == {"free"}


def test_availability_range_check(client, company_headers, make_event):
    booked = make_event(at(2025, 6, 10, 10))

    response = client.get(
        "/api/v1/availability",
        params={"start_time": "2025-06-10T09:45:00Z", "end_time": "2025-06-10T10:15:00Z"},
        headers=company_headers,
    )

    assert response.json() == {"available": False, "conflicting_event_id": str(booked.id)}


def test_availability_requires_one_mode(client, company_headers):
    assert client.get("/api/v1/availability", headers=company_headers).status_code == 400
    response = client.get(
        "/api/v1/availability",
        params={"date": "2025-06-10", "start_time": "2025-06-10T09:00:00Z"},
        headers=company_headers,
    )
    assert response.status_code == 400


def test_schedule_validation_error_is_422(client, company_headers):
    response = client.put(
        "/api/v1/availability/schedule",
        json={"timezone": "Mars/Olympus", "working_hours_start": "09:00", "working_hours_end": "17:00"},
        headers=company_headers,
    )

    assert response.status_code == 422


def test_next_available_slot(client, company_headers):
    client.put(
        "/api/v1/availability/schedule",
        json={"timezone": "UTC", "working_hours_start": "09:00", "working_hours_end": "17:00"},
        headers=company_headers,
    )

    response = client.get(
        "/api/v1/availability/next",
        params={"after": "2025-06-14T12:00:00Z", "duration": 30},
        headers=company_headers,
    )

    assert response.json()["slot"]["start_time"].startswith("2025-06-16T09:00:00")


# ---------------------------------------------------------------------------
# Integrations
# ---------------------------------------------------------------------------

def test_connect_returns_authorization_url(client, company_headers):
    response = client.get(
        "/api/v1/integrations/google_calendar/connect",
        params={"return_to": "https://app.example.com/settings"},
        headers=company_headers,
    )

    payload = response.json()
    state = decode_state(payload["state"])
    assert payload["provider"] == "google_calendar"
    assert payload["authorization_url"].endswith(payload["state"])
    assert state.company_id == str(COMPANY_ID)
    assert state.return_to == "https://app.example.com/settings"


def test_connect_unknown_provider_is_404(client, company_headers):
    assert client.get("/api/v1/integrations/icloud/connect", headers=company_headers).status_code == 404


def test_callback_connects_and_queues_sync(client, queued_sync, db):
    state = encode_state(str(USER_ID), str(COMPANY_ID), "google_calendar", "https://app.example.com/settings")

    response = client.get(
        "/api/v1/integrations/google_calendar/callback",
        params={"code": "auth-code", "state": state},
        follow_redirects=False,
    )

    assert response.status_code == 302
    location = urlparse(response.headers["location"])
    assert location.netloc == "app.example.com"
    assert parse_qs(location.query) == {"integration": ["google_calendar"], "status": ["connected"]}

    integration = db.query(CalendarIntegration).one()
    assert integration.company_id == COMPANY_ID
    assert integration.provider_account_email == "owner@example.com"
    assert integration.webhook_subscription_id is not None
    assert queued_sync.calls == [(str(integration.id),)]


@pytest.mark.parametrize("return_to", [
    "https://evil.example.net/phish",
    "//evil.example.net/phish",
    "/\\evil.example.net",
    "http://app.example.com/settings",
])
def test_callback_never_redirects_off_the_frontend(client, queued_sync, return_to):
    state = encode_state(str(USER_ID), str(COMPANY_ID), "google_calendar", return_to)

    response = client.get(
        "/api/v1/integrations/google_calendar/callback",
        params={"code": "auth-code", "state": state},
        follow_redirects=False,
    )

    location = urlparse(response.headers["location"])
    assert (location.scheme, location.netloc, location.path) == ("https", "app.example.com", "")


def test_callback_accepts_relative_return_path(client, queued_sync):
    state = encode_state(str(USER_ID), str(COMPANY_ID), "google_calendar", "/settings/calendars")

    response = client.get(
        "/api/v1/integrations/google_calendar/callback",
        params={"code": "auth-code", "state": state},
        follow_redirects=False,
    )

    assert response.headers["location"].startswith("https://app.example.com/settings/calendars?integration=")


def test_callback_reports_polling_only(client, queued_sync, google):
    google.subscribe_error = ProviderUnavailable("push channels disabled")
    state = encode_state(str(USER_ID), str(COMPANY_ID), "google_calendar")

    response = client.get(
        "/api/v1/integrations/google_calendar/callback",
        params={"code": "auth-code", "state": state},
        follow_redirects=False,
    )

    assert parse_qs(urlparse(response.headers["location"]).query)["webhook"] == ["polling_only"]


def test_callback_exchange_failure_redirects_with_error(client, queued_sync, google, db):
    google.exchange_error = AuthExchangeError("invalid_grant")
    state = encode_state(str(USER_ID), str(COMPANY_ID), "google_calendar")

    response = client.get(
        "/api/v1/integrations/google_calendar/callback",
        params={"code": "bad", "state": state},
        follow_redirects=False,
    )

    query = parse_qs(urlparse(response.headers["location"]).query)
    assert query["status"] == ["error"]
    assert query["error"] == ["google_calendar_auth_failed"]
    assert db.query(CalendarIntegration).count() == 0
    assert queued_sync.calls == []


def test_callback_rejects_state_for_other_provider(client, queued_sync):
    state = encode_state(str(USER_ID), str(COMPANY_ID), "calendly")

    response = client.get(
        "/api/v1/integrations/google_calendar/callback",
        params={"code": "auth-code", "state": state},
        follow_redirects=False,
    )

    assert parse_qs(urlparse(response.headers["location"]).query)["status"] == ["error"]


def test_reconnect_replaces_active_integration(client, queued_sync, db):
    for code in ("first", "second"):
        state = encode_state(str(USER_ID), str(COMPANY_ID), "google_calendar")
        client.get(
            "/api/v1/integrations/google_calendar/callback",
            params={"code": code, "state": state},
            follow_redirects=False,
        )

    rows = db.query(CalendarIntegration).all()
    assert len(rows) == 2
    assert sum(1 for row in rows if row.is_active) == 1


def test_list_integrations(client, company_headers, make_integration):
    make_integration()

    payload = client.get("/api/v1/integrations", headers=company_headers).json()

    assert len(payload) == 1
    assert payload[0]["provider"] == "google_calendar"
    assert payload[0]["connected"] is True


def test_disconnect_can_cancel_future_events(client, company_headers, make_integration, make_event, db):
    integration = make_integration(webhook_subscription_id="sub-1")
    upcoming = make_event(
        utcnow() + timedelta(days=3), source="google_calendar", integration_id=integration.id, external_id="g-1"
    )

    response = client.delete(
        f"/api/v1/integrations/{integration.id}",
        params={"cancel_future_events": True},
        headers=company_headers,
    )

    assert response.status_code == 200
    assert response.json()["cancelled_events"] == 1
    db.expire_all()
    assert db.get(CalendarIntegration, integration.id).is_active is False
    assert db.get(CalendarIntegration, integration.id).access_token_encrypted is None
    assert db.get(CalendarEvent, upcoming.id).status == "cancelled"


def test_disconnect_foreign_integration_is_404(client, make_integration):
    integration = make_integration()

    response = client.delete(f"/api/v1/integrations/{integration.id}", headers={"X-Company-ID": str(OTHER_COMPANY_ID)})

    assert response.status_code == 404


def test_manual_sync_and_logs(client, company_headers, make_integration, google):
    integration = make_integration()
    google.put("g-1", utcnow() + timedelta(days=1))

    result = client.post(f"/api/v1/integrations/{integration.id}/sync", headers=company_headers).json()
    logs = client.get(f"/api/v1/integrations/{integration.id}/sync-logs", headers=company_headers).json()

    assert result["created"] == 1
    assert logs[0]["sync_type"] == "full"
    assert logs[0]["events_created"] == 1


def test_sync_all_for_company(client, company_headers, make_integration):
    make_integration()

    response = client.post("/api/v1/integrations/sync", headers=company_headers)

    assert response.status_code == 200
    assert [r["status"] for r in response.json()["results"]] == ["completed"]


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

def test_health(client):
    assert client.get("/health/").json()["status"] == "healthy"
