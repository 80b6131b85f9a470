# app/services/calendar/google_calendar_service.py
import logging
import socket
import uuid
from datetime import date, datetime, time, timezone
from typing import List, Mapping, Optional

import google_auth_httplib2
import httplib2
from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from oauthlib.oauth2.rfc6749.errors import OAuth2Error

from app.core.exceptions import (
    AuthExchangeError,
    AuthExpired,
    MalformedWebhookPayload,
    ProviderRequestError,
    ProviderUnavailable,
    SignatureInvalid,
    SyncCursorExpired,
)
from app.models import CalendarEvent, CalendarIntegration
from app.schemas.calendar_events import CalendarProvider
from app.schemas.provider_events import (
    AccountProfile,
    NormalizedChangeEvent,
    ProviderEvent,
    ProviderEventBatch,
    SyncWindow,
    TokenBundle,
    WebhookChangeType,
    WebhookSubscription,
)
from app.services.calendar.base_adapter import CalendarProviderAdapter, lower_headers, parse_provider_datetime
from app.utils.signing import hmac_sha256_hex, signatures_match

logger = logging.getLogger(__name__)

CHANNEL_TTL_SECONDS = 7 * 24 * 3600


def _google_time(value: dict) -> Optional[datetime]:
    if not value:
        return None
    if value.get("dateTime"):
        return parse_provider_datetime(value["dateTime"])
    if value.get("date"):
        return datetime.combine(date.fromisoformat(value["date"]), time.min, tzinfo=timezone.utc)
    return None


def to_provider_event(item: dict) -> ProviderEvent:
    """Translate a Google Calendar event resource"""
    start = item.get("start") or {}
    end = item.get("end") or {}
    return ProviderEvent(
        external_id=item["id"],
        title=item.get("summary") or "",
        description=item.get("description"),
        location=item.get("location"),
        start_time=_google_time(start),
        end_time=_google_time(end),
        all_day="date" in start and "dateTime" not in start,
        timezone=start.get("timeZone"),
        is_cancelled=item.get("status") == "cancelled",
        updated_at=parse_provider_datetime(item.get("updated")),
        etag=item.get("etag"),
        attendees=[a["email"] for a in item.get("attendees", []) if a.get("email")],
        organizer_email=(item.get("organizer") or {}).get("email"),
    )


class GoogleCalendarAdapter(CalendarProviderAdapter):
    provider = CalendarProvider.GOOGLE
    SCOPES = ['https://www.googleapis.com/auth/calendar']

    @property
    def client_config(self) -> dict:
        return {
            "web": {
                "client_id": self.settings.GOOGLE_CLIENT_ID,
                "client_secret": self.settings.GOOGLE_CLIENT_SECRET,
                "redirect_uris": [self.settings.GOOGLE_REDIRECT_URI],
                "auth_uri": "https://accounts.google.com/o/oauth2/auth",
                "token_uri": "https://oauth2.googleapis.com/token",
            }
        }

    def _flow(self) -> Flow:
        return Flow.from_client_config(
            self.client_config,
            scopes=self.SCOPES,
            redirect_uri=self.settings.GOOGLE_REDIRECT_URI,
            autogenerate_code_verifier=False,
        )

    def _service(self, access_token: str):
        credentials = Credentials(token=access_token)
        http = google_auth_httplib2.AuthorizedHttp(credentials, http=httplib2.Http(timeout=self.timeout))
        return build('calendar', 'v3', http=http, cache_discovery=False)

    @staticmethod
    def _calendar_id(integration: CalendarIntegration) -> str:
        return (integration.provider_config or {}).get("calendar_id") or "primary"

    def _execute(self, request, cursor_request: bool = False):
        return self.with_retry(self._execute_once, request, cursor_request)

    def _execute_once(self, request, cursor_request: bool):
        try:
            return request.execute(num_retries=0)
        except HttpError as e:
            self.raise_for_status(int(e.resp.status), str(e), cursor_request=cursor_request)
            raise
        except RefreshError as e:
            raise AuthExpired(f"Google credentials rejected: {e}") from e
        except (TransportError, httplib2.HttpLib2Error, socket.timeout, ConnectionError) as e:
            raise ProviderUnavailable(f"Google request failed: {e}") from e

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------
    def build_authorization_url(self, state: str) -> str:
        authorization_url, _ = self._flow().authorization_url(
            access_type='offline',  # Gets refresh token
            include_granted_scopes='true',
            prompt='consent',  # Force consent screen to get refresh token
            state=state,
        )
        return authorization_url

    def exchange_auth_code(self, code: str) -> TokenBundle:
        flow = self._flow()
        try:
            flow.fetch_token(code=code)
        except (OAuth2Error, ValueError) as e:
            logger.error(f"Failed to exchange Google authorization code: {e}")
            raise AuthExchangeError(f"Google rejected the authorization code: {e}") from e

        credentials = flow.credentials
        primary = self._execute(self._service(credentials.token).calendars().get(calendarId='primary'))
        return TokenBundle(
            access_token=credentials.token,
            refresh_token=credentials.refresh_token,
            expires_in=self._expires_in(credentials),
            profile=AccountProfile(
                email=primary.get("id"),
                account_id=primary.get("id"),
                name=primary.get("summary"),
                extra={"calendar_id": "primary", "calendar_timezone": primary.get("timeZone")},
            ),
        )

    def refresh_tokens(self, refresh_token: str) -> TokenBundle:
        web = self.client_config["web"]
        credentials = Credentials(
            token=None,
            refresh_token=refresh_token,
            token_uri=web["token_uri"],
            client_id=web["client_id"],
            client_secret=web["client_secret"],
        )

        def _refresh():
            try:
                credentials.refresh(Request())
            except RefreshError as e:
                raise AuthExpired(f"Google refresh token rejected: {e}") from e
            except TransportError as e:
                raise ProviderUnavailable(f"Google token endpoint unreachable: {e}") from e

        self.with_retry(_refresh)
        return TokenBundle(
            access_token=credentials.token,
            refresh_token=credentials.refresh_token or refresh_token,
            expires_in=self._expires_in(credentials),
        )

    @staticmethod
    def _expires_in(credentials: Credentials) -> Optional[int]:
        if not credentials.expiry:
            return None
        # google-auth keeps expiry as naive UTC
        expiry = credentials.expiry.replace(tzinfo=timezone.utc)
        return max(0, int((expiry - datetime.now(timezone.utc)).total_seconds()))

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------
    def list_events(
            self,
            integration: CalendarIntegration,
            access_token: str,
            cursor: Optional[str],
            window: SyncWindow,
    ) -> ProviderEventBatch:
        service = self._service(access_token)
        params = {
            "calendarId": self._calendar_id(integration),
            "singleEvents": True,
            "showDeleted": True,
            "maxResults": 250,
        }
        if cursor:
            params["syncToken"] = cursor
        else:
            params["timeMin"] = window.start.isoformat()
            params["timeMax"] = window.end.isoformat()

        events: List[ProviderEvent] = []
        page_token = None
        try:
            while True:
                response = self._execute(
                    service.events().list(pageToken=page_token, **params),
                    cursor_request=bool(cursor),
                )
                events.extend(to_provider_event(item) for item in response.get("items", []))
                page_token = response.get("nextPageToken")
                if not page_token:
                    next_cursor = response.get("nextSyncToken")
                    break
        except SyncCursorExpired:
            logger.info(f"Google sync token expired for integration {integration.id}, running full sync")
            return self.list_events(integration, access_token, None, window)

        return ProviderEventBatch(
            events=events,
            next_cursor=next_cursor,
            full_window=cursor is None,
            window_start=None if cursor else window.start,
            window_end=None if cursor else window.end,
        )

    def get_event(self, integration: CalendarIntegration, access_token: str, external_id: str) -> Optional[ProviderEvent]:
        request = self._service(access_token).events().get(
            calendarId=self._calendar_id(integration), eventId=external_id
        )
        try:
            return to_provider_event(self._execute(request))
        except ProviderRequestError as e:
            if e.status in (404, 410):
                return None
            raise

    def cancel_remote_event(self, integration: CalendarIntegration, access_token: str, external_id: str) -> None:
        request = self._service(access_token).events().delete(
            calendarId=self._calendar_id(integration),
            eventId=external_id,
            sendUpdates='all',
        )
        try:
            self._execute(request)
        except ProviderRequestError as e:
            if e.status not in (404, 410):
                raise
            logger.info(f"Google event {external_id} already removed")

    def create_remote_event(
            self,
            integration: CalendarIntegration,
            access_token: str,
            event: CalendarEvent,
    ) -> ProviderEvent:
        body = {
            **self._event_body(event),
            "attendees": [{"email": email} for email in (event.attendees or [])],
            "extendedProperties": {
                "private": {"app_event_id": str(event.id), "event_type": event.event_type},
            },
        }
        request = self._service(access_token).events().insert(
            calendarId=self._calendar_id(integration), body=body, sendUpdates='all'
        )
        return to_provider_event(self._execute(request))

    def update_remote_event(
            self,
            integration: CalendarIntegration,
            access_token: str,
            event: CalendarEvent,
    ) -> ProviderEvent:
        # Attendees stay untouched so guests keep their responses
        request = self._service(access_token).events().patch(
            calendarId=self._calendar_id(integration),
            eventId=event.external_id,
            body=self._event_body(event),
            sendUpdates='all',
        )
        return to_provider_event(self._execute(request))

    @staticmethod
    def _event_body(event: CalendarEvent) -> dict:
        tz_name = event.timezone or "UTC"
        return {
            "summary": event.title,
            "description": event.description or "",
            "location": event.location or "",
            "start": {"dateTime": event.start_time.isoformat(), "timeZone": tz_name},
            "end": {"dateTime": event.end_time.isoformat(), "timeZone": tz_name},
        }

    # ------------------------------------------------------------------
    # Webhooks (push notification channels)
    # ------------------------------------------------------------------
    def create_webhook_subscription(
            self,
            integration: CalendarIntegration,
            access_token: str,
            callback_url: str,
    ) -> WebhookSubscription:
        channel_id = str(uuid.uuid4())
        body = {
            "id": channel_id,
            "type": "web_hook",
            "address": callback_url,
            "params": {"ttl": str(CHANNEL_TTL_SECONDS)},
        }
        secret = self.settings.GOOGLE_WEBHOOK_SECRET
        if secret:
            body["token"] = hmac_sha256_hex(secret, channel_id)

        response = self._execute(
            self._service(access_token).events().watch(calendarId=self._calendar_id(integration), body=body)
        )
        expiration = response.get("expiration")
        return WebhookSubscription(
            id=response.get("id", channel_id),
            resource_id=response.get("resourceId"),
            expires_at=datetime.fromtimestamp(int(expiration) / 1000, tz=timezone.utc) if expiration else None,
        )

    def delete_webhook_subscription(self, integration: CalendarIntegration, access_token: str) -> None:
        resource_id = (integration.provider_config or {}).get("webhook_resource_id")
        if not integration.webhook_subscription_id or not resource_id:
            return
        request = self._service(access_token).channels().stop(
            body={"id": integration.webhook_subscription_id, "resourceId": resource_id}
        )
        try:
            self._execute(request)
        except ProviderRequestError as e:
            if e.status != 404:
                raise

    def parse_webhook_payload(
            self,
            raw_body: bytes,
            headers: Mapping[str, str],
            secret: Optional[str],
    ) -> List[NormalizedChangeEvent]:
        h = lower_headers(headers)
        channel_id = h.get("x-goog-channel-id")
        resource_state = h.get("x-goog-resource-state")
        if not channel_id or not resource_state:
            raise MalformedWebhookPayload("Missing Google channel headers")

        if secret:
            expected = hmac_sha256_hex(secret, channel_id)
            if not signatures_match(expected, h.get("x-goog-channel-token", "")):
                raise SignatureInvalid("Google channel token mismatch")

        change_type = WebhookChangeType.PING if resource_state == "sync" else WebhookChangeType.RESYNC
        return [
            NormalizedChangeEvent(
                provider=self.provider,
                change_type=change_type,
                subscription_id=channel_id,
            )
        ]
