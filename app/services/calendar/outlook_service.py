# app/services/calendar/outlook_service.py
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import List, Mapping, Optional

import msal
import requests

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
from app.services.calendar.base_adapter import CalendarProviderAdapter, parse_provider_datetime
from app.utils.signing import hmac_sha256_hex, signatures_match

logger = logging.getLogger(__name__)

# Graph caps calendar subscriptions at 4230 minutes
SUBSCRIPTION_LIFETIME = timedelta(days=2)
AUTH_ERRORS = {"invalid_grant", "interaction_required", "invalid_client", "unauthorized_client"}


def to_provider_event(item: dict) -> ProviderEvent:
    """Translate a Graph event resource (times requested in UTC)"""
    if "@removed" in item:
        return ProviderEvent(external_id=item["id"], is_cancelled=True)

    start = item.get("start") or {}
    end = item.get("end") or {}
    return ProviderEvent(
        external_id=item["id"],
        title=item.get("subject") or "",
        description=item.get("bodyPreview"),
        location=(item.get("location") or {}).get("displayName") or None,
        start_time=parse_provider_datetime(start.get("dateTime")),
        end_time=parse_provider_datetime(end.get("dateTime")),
        all_day=bool(item.get("isAllDay")),
        timezone=item.get("originalStartTimeZone") or start.get("timeZone"),
        is_cancelled=bool(item.get("isCancelled")),
        updated_at=parse_provider_datetime(item.get("lastModifiedDateTime")),
        etag=item.get("@odata.etag") or item.get("changeKey"),
        attendees=[
            a["emailAddress"]["address"]
            for a in item.get("attendees", [])
            if (a.get("emailAddress") or {}).get("address")
        ],
        organizer_email=((item.get("organizer") or {}).get("emailAddress") or {}).get("address"),
    )


def _split_resource(resource: str):
    """'Users/{user-id}/Events/{event-id}' -> (user_id, event_id)"""
    parts = [p for p in (resource or "").split("/") if p]
    lowered = [p.lower() for p in parts]
    user_id = parts[lowered.index("users") + 1] if "users" in lowered[:-1] else None
    event_id = parts[lowered.index("events") + 1] if "events" in lowered[:-1] else None
    return user_id, event_id


class OutlookCalendarAdapter(CalendarProviderAdapter):
    provider = CalendarProvider.MICROSOFT
    SCOPES = ['Calendars.ReadWrite', 'User.Read']  # msal adds offline_access itself
    GRAPH_ENDPOINT = 'https://graph.microsoft.com/v1.0'
    PREFER = 'outlook.timezone="UTC", odata.maxpagesize=100'

    @property
    def authority(self) -> str:
        return f"https://login.microsoftonline.com/{self.settings.MICROSOFT_TENANT}"

    def _msal(self) -> msal.ConfidentialClientApplication:
        return msal.ConfidentialClientApplication(
            self.settings.MICROSOFT_CLIENT_ID,
            authority=self.authority,
            client_credential=self.settings.MICROSOFT_CLIENT_SECRET,
            timeout=self.timeout,
        )

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------
    def build_authorization_url(self, state: str) -> str:
        return self._msal().get_authorization_request_url(
            self.SCOPES,
            state=state,
            redirect_uri=self.settings.MICROSOFT_REDIRECT_URI,
            prompt="select_account",
        )

    def exchange_auth_code(self, code: str) -> TokenBundle:
        try:
            result = self._msal().acquire_token_by_authorization_code(
                code,
                scopes=self.SCOPES,
                redirect_uri=self.settings.MICROSOFT_REDIRECT_URI,
            )
        except requests.RequestException as e:
            raise ProviderUnavailable(f"Microsoft token endpoint unreachable: {e}") from e

        if "error" in result:
            logger.error(f"Token exchange error: {result.get('error_description')}")
            raise AuthExchangeError(f"Auth error: {result.get('error_description') or result['error']}")

        me = self.request("GET", f"{self.GRAPH_ENDPOINT}/me", access_token=result["access_token"]).json()
        claims = result.get("id_token_claims") or {}
        return TokenBundle(
            access_token=result["access_token"],
            refresh_token=result.get("refresh_token"),
            expires_in=result.get("expires_in"),
            profile=AccountProfile(
                email=me.get("mail") or me.get("userPrincipalName"),
                account_id=me.get("id"),
                name=me.get("displayName"),
                extra={"tenant_id": claims.get("tid")},
            ),
        )

    def refresh_tokens(self, refresh_token: str) -> TokenBundle:
        def _refresh():
            try:
                result = self._msal().acquire_token_by_refresh_token(refresh_token=refresh_token, scopes=self.SCOPES)
            except requests.RequestException as e:
                raise ProviderUnavailable(f"Microsoft token endpoint unreachable: {e}") from e
            if "error" in result:
                message = f"Token refresh failed: {result.get('error_description') or result['error']}"
                if result["error"] in AUTH_ERRORS:
                    raise AuthExpired(message)
                raise ProviderUnavailable(message)
            return result

        result = self.with_retry(_refresh)
        return TokenBundle(
            access_token=result["access_token"],
            refresh_token=result.get("refresh_token") or refresh_token,
            expires_in=result.get("expires_in"),
        )

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
        headers = {"Prefer": self.PREFER}
        if cursor:
            url, params = cursor, None
        else:
            url = f"{self.GRAPH_ENDPOINT}/me/calendarView/delta"
            params = {
                "startDateTime": window.start.astimezone(timezone.utc).isoformat(),
                "endDateTime": window.end.astimezone(timezone.utc).isoformat(),
            }

        events: List[ProviderEvent] = []
        next_cursor = None
        try:
            while url:
                data = self.request(
                    "GET", url, access_token=access_token, headers=headers, params=params,
                    cursor_request=bool(cursor),
                ).json()
                events.extend(to_provider_event(item) for item in data.get("value", []))
                params = None  # nextLink/deltaLink already carry the query
                url = data.get("@odata.nextLink")
                next_cursor = data.get("@odata.deltaLink") or next_cursor
        except SyncCursorExpired:
            logger.info(f"Graph delta link expired for integration {integration.id}, running full sync")
            return self.list_events(integration, access_token, None, window)
        except ProviderRequestError as e:
            # Graph answers 404 for delta links of deleted/renamed calendars
            if cursor and e.status == 404:
                return self.list_events(integration, access_token, None, window)
            raise

        return ProviderEventBatch(
            events=events,
            next_cursor=next_cursor,
            full_window=cursor is None,
            window_start=None if cursor else window.start,
            window_end=None if cursor else window.end,
        )

    def get_event(self, integration: CalendarIntegration, access_token: str, external_id: str) -> Optional[ProviderEvent]:
        try:
            item = self.request(
                "GET",
                f"{self.GRAPH_ENDPOINT}/me/events/{external_id}",
                access_token=access_token,
                headers={"Prefer": self.PREFER},
            ).json()
        except ProviderRequestError as e:
            if e.status == 404:
                return None
            raise
        return to_provider_event(item)

    def cancel_remote_event(self, integration: CalendarIntegration, access_token: str, external_id: str) -> None:
        try:
            self.request("DELETE", f"{self.GRAPH_ENDPOINT}/me/events/{external_id}", access_token=access_token)
        except ProviderRequestError as e:
            if e.status not in (404, 410):
                raise
            logger.info(f"Outlook event {external_id} already removed")

    def create_remote_event(
            self,
            integration: CalendarIntegration,
            access_token: str,
            event: CalendarEvent,
    ) -> ProviderEvent:
        body = {
            **self._event_body(event),
            "attendees": [
                {"emailAddress": {"address": email}, "type": "required"}
                for email in (event.attendees or [])
            ],
        }
        created = self.request(
            "POST",
            f"{self.GRAPH_ENDPOINT}/me/events",
            access_token=access_token,
            headers={"Prefer": self.PREFER},
            json=body,
        ).json()
        return to_provider_event(created)

    def update_remote_event(
            self,
            integration: CalendarIntegration,
            access_token: str,
            event: CalendarEvent,
    ) -> ProviderEvent:
        updated = self.request(
            "PATCH",
            f"{self.GRAPH_ENDPOINT}/me/events/{event.external_id}",
            access_token=access_token,
            headers={"Prefer": self.PREFER},
            json=self._event_body(event),
        ).json()
        return to_provider_event(updated)

    @staticmethod
    def _event_body(event: CalendarEvent) -> dict:
        body = {
            "subject": event.title,
            "body": {"contentType": "HTML", "content": event.description or ""},
            "start": {"dateTime": event.start_time.astimezone(timezone.utc).replace(tzinfo=None).isoformat(),
                      "timeZone": "UTC"},
            "end": {"dateTime": event.end_time.astimezone(timezone.utc).replace(tzinfo=None).isoformat(),
                    "timeZone": "UTC"},
        }
        if event.location:
            body["location"] = {"displayName": event.location}
        return body

    # ------------------------------------------------------------------
    # Webhooks (Graph change notifications)
    # ------------------------------------------------------------------
    def create_webhook_subscription(
            self,
            integration: CalendarIntegration,
            access_token: str,
            callback_url: str,
    ) -> WebhookSubscription:
        expires_at = datetime.now(timezone.utc) + SUBSCRIPTION_LIFETIME
        body = {
            "changeType": "created,updated,deleted",
            "notificationUrl": callback_url,
            "resource": "me/events",
            "expirationDateTime": expires_at.isoformat().replace("+00:00", "Z"),
        }
        secret = self.settings.MICROSOFT_WEBHOOK_SECRET
        if secret and integration.provider_account_id:
            body["clientState"] = hmac_sha256_hex(secret, integration.provider_account_id)

        created = self.request(
            "POST", f"{self.GRAPH_ENDPOINT}/subscriptions", access_token=access_token, json=body
        ).json()
        return WebhookSubscription(
            id=created["id"],
            expires_at=parse_provider_datetime(created.get("expirationDateTime")) or expires_at,
        )

    def delete_webhook_subscription(self, integration: CalendarIntegration, access_token: str) -> None:
        if not integration.webhook_subscription_id:
            return
        try:
            self.request(
                "DELETE",
                f"{self.GRAPH_ENDPOINT}/subscriptions/{integration.webhook_subscription_id}",
                access_token=access_token,
            )
        except ProviderRequestError as e:
            if e.status != 404:
                raise

    def parse_webhook_payload(
            self,
            raw_body: bytes,
            headers: Mapping[str, str],
            secret: Optional[str],
    ) -> List[NormalizedChangeEvent]:
        try:
            payload = json.loads(raw_body or b"")
            notifications = payload["value"]
        except (ValueError, KeyError, TypeError) as e:
            raise MalformedWebhookPayload(f"Invalid Graph notification body: {e}") from e
        if not isinstance(notifications, list):
            raise MalformedWebhookPayload("Graph notification 'value' must be a list")

        changes = []
        for notification in notifications:
            if not isinstance(notification, dict):
                raise MalformedWebhookPayload("Graph notification entries must be objects")
            user_id, event_id = _split_resource(notification.get("resource", ""))
            external_id = (notification.get("resourceData") or {}).get("id") or event_id
            if not external_id:
                raise MalformedWebhookPayload("Graph notification without an event id")

            if secret:
                expected = hmac_sha256_hex(secret, user_id) if user_id else ""
                if not signatures_match(expected, notification.get("clientState") or ""):
                    raise SignatureInvalid("Graph clientState mismatch")

            change_type = (
                WebhookChangeType.CANCEL
                if notification.get("changeType") == "deleted"
                else WebhookChangeType.UPSERT
            )
            changes.append(
                NormalizedChangeEvent(
                    provider=self.provider,
                    change_type=change_type,
                    account_id=user_id,
                    subscription_id=notification.get("subscriptionId"),
                    external_id=external_id,
                )
            )
        return changes
