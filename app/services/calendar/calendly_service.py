# app/services/calendar/calendly_service.py
import json
import logging
from datetime import timezone
from typing import List, Mapping, Optional
from urllib.parse import urlencode

from app.core.exceptions import (
    AuthExchangeError,
    AuthExpired,
    MalformedWebhookPayload,
    ProviderRequestError,
    SignatureInvalid,
)
from app.models import CalendarIntegration
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

WEBHOOK_EVENTS = ["invitee.created", "invitee.canceled"]


def _uuid_from_uri(uri: str) -> str:
    return uri.rstrip("/").rsplit("/", 1)[-1]


def _last_invitee_left(scheduled_event: dict) -> bool:
    """True for one-on-one events, or group events with no active invitee left"""
    counter = scheduled_event.get("invitees_counter") or {}
    limit, active = counter.get("limit"), counter.get("active")
    if limit is None and active is None:
        return True
    return (limit is not None and limit <= 1) or active == 0


def _iso_z(value) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def to_provider_event(scheduled_event: dict, invitee: Optional[dict] = None) -> ProviderEvent:
    """Translate a Calendly scheduled_event (optionally with the invitee from a webhook)"""
    location = scheduled_event.get("location") or {}
    memberships = scheduled_event.get("event_memberships") or []
    attendees = [m["user_email"] for m in memberships if m.get("user_email")]
    if invitee and invitee.get("email"):
        attendees.append(invitee["email"])

    return ProviderEvent(
        external_id=scheduled_event["uri"],
        title=scheduled_event.get("name") or "",
        location=location.get("location") or location.get("join_url"),
        start_time=parse_provider_datetime(scheduled_event.get("start_time")),
        end_time=parse_provider_datetime(scheduled_event.get("end_time")),
        timezone=(invitee or {}).get("timezone"),
        is_cancelled=scheduled_event.get("status") == "canceled",
        updated_at=parse_provider_datetime(scheduled_event.get("updated_at")),
        attendees=attendees,
        organizer_email=attendees[0] if memberships and attendees else None,
    )


class CalendlyAdapter(CalendarProviderAdapter):
    provider = CalendarProvider.CALENDLY
    BASE_URL = "https://api.calendly.com"
    AUTH_BASE = "https://auth.calendly.com"

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------
    def build_authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.settings.CALENDLY_CLIENT_ID,
            "response_type": "code",
            "redirect_uri": self.settings.CALENDLY_REDIRECT_URI,
            "state": state,
        }
        return f"{self.AUTH_BASE}/oauth/authorize?{urlencode(params)}"

    def _token_request(self, body: dict) -> dict:
        body = {
            **body,
            "client_id": self.settings.CALENDLY_CLIENT_ID,
            "client_secret": self.settings.CALENDLY_CLIENT_SECRET,
        }
        return self.request("POST", f"{self.AUTH_BASE}/oauth/token", json=body).json()

    def exchange_auth_code(self, code: str) -> TokenBundle:
        try:
            tokens = self._token_request({
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.settings.CALENDLY_REDIRECT_URI,
            })
        except (AuthExpired, ProviderRequestError) as e:
            raise AuthExchangeError(f"Calendly rejected the authorization code: {e}") from e

        me = self.request("GET", f"{self.BASE_URL}/users/me", access_token=tokens["access_token"]).json()["resource"]
        return TokenBundle(
            access_token=tokens["access_token"],
            refresh_token=tokens.get("refresh_token"),
            expires_in=tokens.get("expires_in"),
            profile=AccountProfile(
                email=me.get("email"),
                account_id=me.get("uri"),
                name=me.get("name"),
                extra={
                    "organization_uri": me.get("current_organization") or tokens.get("organization"),
                    "scheduling_url": me.get("scheduling_url"),
                },
            ),
        )

    def refresh_tokens(self, refresh_token: str) -> TokenBundle:
        try:
            tokens = self._token_request({"grant_type": "refresh_token", "refresh_token": refresh_token})
        except ProviderRequestError as e:
            raise AuthExpired(f"Calendly refresh token rejected: {e}") from e
        return TokenBundle(
            access_token=tokens["access_token"],
            refresh_token=tokens.get("refresh_token") or refresh_token,
            expires_in=tokens.get("expires_in"),
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
        # No incremental API: always the full bounded window, cursor ignored
        params = {
            "user": integration.provider_account_id,
            "min_start_time": _iso_z(window.start),
            "max_start_time": _iso_z(window.end),
            "count": 100,
            "sort": "start_time:asc",
        }
        events: List[ProviderEvent] = []
        while True:
            data = self.request(
                "GET", f"{self.BASE_URL}/scheduled_events", access_token=access_token, params=params
            ).json()
            events.extend(to_provider_event(item) for item in data.get("collection", []))
            page_token = (data.get("pagination") or {}).get("next_page_token")
            if not page_token:
                break
            params = {**params, "page_token": page_token}

        return ProviderEventBatch(
            events=events,
            next_cursor=None,
            full_window=True,
            window_start=window.start,
            window_end=window.end,
        )

    def get_event(self, integration: CalendarIntegration, access_token: str, external_id: str) -> Optional[ProviderEvent]:
        try:
            data = self.request(
                "GET", f"{self.BASE_URL}/scheduled_events/{_uuid_from_uri(external_id)}", access_token=access_token
            ).json()
        except ProviderRequestError as e:
            if e.status == 404:
                return None
            raise
        return to_provider_event(data["resource"])

    def cancel_remote_event(self, integration: CalendarIntegration, access_token: str, external_id: str) -> None:
        try:
            self.request(
                "POST",
                f"{self.BASE_URL}/scheduled_events/{_uuid_from_uri(external_id)}/cancellation",
                access_token=access_token,
                json={"reason": "Cancelled by host"},
            )
        except ProviderRequestError as e:
            if e.status not in (404, 410):
                raise
            logger.info(f"Calendly event {external_id} already removed")

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------
    def create_webhook_subscription(
            self,
            integration: CalendarIntegration,
            access_token: str,
            callback_url: str,
    ) -> WebhookSubscription:
        body = {
            "url": callback_url,
            "events": WEBHOOK_EVENTS,
            "organization": (integration.provider_config or {}).get("organization_uri"),
            "user": integration.provider_account_id,
            "scope": "user",
        }
        if self.settings.CALENDLY_WEBHOOK_SECRET:
            body["signing_key"] = self.settings.CALENDLY_WEBHOOK_SECRET

        resource = self.request(
            "POST", f"{self.BASE_URL}/webhook_subscriptions", access_token=access_token, json=body
        ).json()["resource"]
        # Calendly subscriptions do not expire
        return WebhookSubscription(id=resource["uri"])

    def delete_webhook_subscription(self, integration: CalendarIntegration, access_token: str) -> None:
        if not integration.webhook_subscription_id:
            return
        try:
            self.request(
                "DELETE",
                f"{self.BASE_URL}/webhook_subscriptions/{_uuid_from_uri(integration.webhook_subscription_id)}",
                access_token=access_token,
            )
        except ProviderRequestError as e:
            if e.status != 404:
                raise

    @staticmethod
    def verify_signature(raw_body: bytes, header: str, secret: str) -> None:
        """Calendly-Webhook-Signature: t=<timestamp>,v1=<hex hmac of 't.body'>"""
        parts = dict(
            item.split("=", 1) for item in (header or "").split(",") if "=" in item
        )
        timestamp, received = parts.get("t"), parts.get("v1")
        if not timestamp or not received:
            raise SignatureInvalid("Missing Calendly signature")
        expected = hmac_sha256_hex(secret, f"{timestamp}.".encode() + (raw_body or b""))
        if not signatures_match(expected, received):
            raise SignatureInvalid("Calendly signature mismatch")

    def parse_webhook_payload(
            self,
            raw_body: bytes,
            headers: Mapping[str, str],
            secret: Optional[str],
    ) -> List[NormalizedChangeEvent]:
        if secret:
            self.verify_signature(raw_body, lower_headers(headers).get("calendly-webhook-signature", ""), secret)

        try:
            body = json.loads(raw_body or b"")
            event_name = body["event"]
            data = body.get("payload") or {}
        except (ValueError, KeyError, TypeError) as e:
            raise MalformedWebhookPayload(f"Invalid Calendly webhook body: {e}") from e

        if event_name not in WEBHOOK_EVENTS:
            return [NormalizedChangeEvent(provider=self.provider, change_type=WebhookChangeType.PING)]

        scheduled_event = data.get("scheduled_event")
        if not isinstance(scheduled_event, dict) or not scheduled_event.get("uri"):
            raise MalformedWebhookPayload("Calendly webhook without scheduled_event.uri")

        try:
            event = to_provider_event(scheduled_event, invitee=data)
        except ValueError as e:
            raise MalformedWebhookPayload(f"Invalid Calendly event times: {e}") from e
        if event_name == "invitee.canceled":
            if _last_invitee_left(scheduled_event):
                event.is_cancelled = True
            else:
                # Group event goes on without this invitee
                event.attendees = [email for email in event.attendees if email != data.get("email")]

        memberships = scheduled_event.get("event_memberships") or []
        return [
            NormalizedChangeEvent(
                provider=self.provider,
                change_type=WebhookChangeType.CANCEL if event.is_cancelled else WebhookChangeType.UPSERT,
                account_id=body.get("created_by") or next((m.get("user") for m in memberships if m.get("user")), None),
                participant_emails=[m["user_email"] for m in memberships if m.get("user_email")],
                external_id=event.external_id,
                event=event,
            )
        ]
