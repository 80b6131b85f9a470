# app/services/calendar/base_adapter.py
"""
Provider adapter contract.

Each calendar provider (Google, Microsoft, Calendly) implements this interface
and translates its auth flow, event shape and webhook payloads into the
canonical shapes in app.schemas.provider_events. Nothing outside
app/services/calendar inspects provider-specific responses or errors: HTTP
failures are classified here into AuthExpired / ProviderUnavailable /
ProviderRequestError before they leave the adapter.
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

import requests
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from app.config.settings import Settings, get_settings
from app.core.exceptions import (
    AuthExpired,
    ProviderOperationNotSupported,
    ProviderRequestError,
    ProviderUnavailable,
    SyncCursorExpired,
)
from app.models import CalendarEvent, CalendarIntegration
from app.schemas.calendar_events import CalendarProvider
from app.schemas.provider_events import (
    NormalizedChangeEvent,
    ProviderEvent,
    ProviderEventBatch,
    SyncWindow,
    TokenBundle,
    WebhookSubscription,
)

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = {408, 429, 500, 502, 503, 504}


def parse_provider_datetime(value: Optional[str], assume_utc: bool = True) -> Optional[datetime]:
    """Parse ISO-8601 strings from provider payloads ('Z' suffix, fractional seconds beyond 6 digits)"""
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    if "." in text:
        # Graph returns 7 fractional digits
        head, _, tail = text.partition(".")
        digits = ""
        rest = ""
        for i, ch in enumerate(tail):
            if ch.isdigit():
                digits += ch
            else:
                rest = tail[i:]
                break
        text = f"{head}.{digits[:6]}{rest}" if digits else head + rest
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None and assume_utc:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def lower_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    return {k.lower(): v for k, v in headers.items()}


class CalendarProviderAdapter(ABC):
    """Capability set: auth exchange, list events, webhook subscribe/unsubscribe, webhook parsing"""

    provider: CalendarProvider

    def __init__(self, settings: Optional[Settings] = None, session: Optional[requests.Session] = None):
        self.settings = settings or get_settings()
        self.http = session or requests.Session()
        self.timeout = self.settings.PROVIDER_TIMEOUT_SECONDS

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------
    @abstractmethod
    def build_authorization_url(self, state: str) -> str:
        """URL the user visits to grant calendar access"""

    @abstractmethod
    def exchange_auth_code(self, code: str) -> TokenBundle:
        """Raises AuthExchangeError on an invalid or expired code"""

    @abstractmethod
    def refresh_tokens(self, refresh_token: str) -> TokenBundle:
        """Raises AuthExpired when the refresh token is rejected"""

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------
    @abstractmethod
    def list_events(
            self,
            integration: CalendarIntegration,
            access_token: str,
            cursor: Optional[str],
            window: SyncWindow,
    ) -> ProviderEventBatch:
        """Incremental when cursor is given and supported, bounded window otherwise"""

    @abstractmethod
    def get_event(self, integration: CalendarIntegration, access_token: str, external_id: str) -> Optional[ProviderEvent]:
        """Fetch one event, None when the provider no longer has it"""

    @abstractmethod
    def cancel_remote_event(self, integration: CalendarIntegration, access_token: str, external_id: str) -> None:
        """Cancel or delete the event at the provider; already-gone is success"""

    def create_remote_event(
            self,
            integration: CalendarIntegration,
            access_token: str,
            event: CalendarEvent,
    ) -> ProviderEvent:
        raise ProviderOperationNotSupported(f"{self.provider.value} does not accept pushed events")

    def update_remote_event(
            self,
            integration: CalendarIntegration,
            access_token: str,
            event: CalendarEvent,
    ) -> ProviderEvent:
        """Write local times and details onto the provider copy (event.external_id)"""
        raise ProviderOperationNotSupported(f"{self.provider.value} does not accept event updates")

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------
    @abstractmethod
    def create_webhook_subscription(
            self,
            integration: CalendarIntegration,
            access_token: str,
            callback_url: str,
    ) -> WebhookSubscription:
        ...

    @abstractmethod
    def delete_webhook_subscription(self, integration: CalendarIntegration, access_token: str) -> None:
        ...

    @abstractmethod
    def parse_webhook_payload(
            self,
            raw_body: bytes,
            headers: Mapping[str, str],
            secret: Optional[str],
    ) -> List[NormalizedChangeEvent]:
        """Verify (when secret is set) and normalize; raises SignatureInvalid / MalformedWebhookPayload"""

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------
    def with_retry(self, fn, *args, **kwargs):
        """Run fn, retrying ProviderUnavailable with exponential backoff"""
        retrying = Retrying(
            retry=retry_if_exception_type(ProviderUnavailable),
            stop=stop_after_attempt(max(1, self.settings.PROVIDER_MAX_ATTEMPTS)),
            wait=wait_exponential(multiplier=self.settings.PROVIDER_BACKOFF_SECONDS, max=30),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        return retrying(fn, *args, **kwargs)

    def request(
            self,
            method: str,
            url: str,
            access_token: Optional[str] = None,
            cursor_request: bool = False,
            **kwargs: Any,
    ) -> requests.Response:
        """Classified, retried HTTP call"""
        return self.with_retry(self._send, method, url, access_token, cursor_request, **kwargs)

    def _send(
            self,
            method: str,
            url: str,
            access_token: Optional[str],
            cursor_request: bool,
            **kwargs: Any,
    ) -> requests.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        try:
            response = self.http.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
        except (requests.Timeout, requests.ConnectionError) as e:
            raise ProviderUnavailable(f"{self.provider.value} request failed: {e}") from e

        self.raise_for_status(response.status_code, response.text, cursor_request=cursor_request)
        return response

    def raise_for_status(self, status: int, body: str = "", cursor_request: bool = False) -> None:
        if status < 400:
            return
        snippet = (body or "")[:200]
        if status == 401:
            raise AuthExpired(f"{self.provider.value} rejected the access token")
        if status == 410 and cursor_request:
            raise SyncCursorExpired(f"{self.provider.value} sync cursor expired")
        if status in RETRYABLE_STATUSES:
            raise ProviderUnavailable(f"{self.provider.value} returned HTTP {status}: {snippet}")
        raise ProviderRequestError(f"{self.provider.value} returned HTTP {status}: {snippet}", status=status)
