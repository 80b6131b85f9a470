# app/services/webhook/webhook_ingestor.py
"""
Webhook Ingestor

Verifies and normalizes provider push notifications, maps each change to the
owning integration and applies it through the sync engine. Unmatched changes
are skipped (the route still answers 200 so providers do not retry).
"""
import logging
from typing import Callable, List, Mapping, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config.settings import get_settings
from app.core.exceptions import (
    AuthExpired,
    CalendarSyncError,
    PartialSyncFailure,
    SignatureInvalid,
)
from app.models import CalendarIntegration
from app.schemas.calendar_events import CalendarProvider
from app.schemas.provider_events import NormalizedChangeEvent, WebhookChangeType
from app.schemas.sync import SyncResult, WebhookResult, WebhookStatus
from app.services.calendar.adapter_registry import ProviderAdapterFactory
from app.services.sync.sync_engine import SyncEngine

logger = logging.getLogger(__name__)

SecretLookup = Callable[[str], Optional[str]]


class WebhookIngestor:
    def __init__(
            self,
            db: Session,
            adapters: ProviderAdapterFactory,
            sync_engine: SyncEngine,
            secrets: Optional[SecretLookup] = None,
    ):
        self.db = db
        self.adapters = adapters
        self.sync_engine = sync_engine
        self.secrets = secrets or get_settings().webhook_secret_for

    def resolve_integration(
            self,
            provider: CalendarProvider,
            change: NormalizedChangeEvent,
    ) -> Optional[CalendarIntegration]:
        """Account/subscription identity first, participant email as fallback"""
        active = self.db.query(CalendarIntegration).filter(
            CalendarIntegration.provider == provider.value,
            CalendarIntegration.is_active.is_(True),
        )
        newest_first = CalendarIntegration.created_at.desc()

        if change.account_id:
            match = active.filter(CalendarIntegration.provider_account_id == change.account_id).order_by(newest_first).first()
            if match:
                return match
        if change.subscription_id:
            match = active.filter(
                CalendarIntegration.webhook_subscription_id == change.subscription_id
            ).order_by(newest_first).first()
            if match:
                return match

        emails = sorted({e.strip().lower() for e in change.participant_emails if e and e.strip()})
        if emails:
            match = active.filter(
                func.lower(CalendarIntegration.provider_account_email).in_(emails)
            ).order_by(newest_first).first()
            if match:
                logger.info(f"Matched {provider.value} webhook to integration {match.id} by participant email")
                return match
        return None

    def handle_webhook(self, provider_name: str, raw_body: bytes, headers: Mapping[str, str]) -> WebhookResult:
        provider = ProviderAdapterFactory.resolve(provider_name)
        adapter = self.adapters.get(provider)

        secret = self.secrets(provider.value)
        if not secret:
            logger.warning(f"No signing secret configured for {provider.value}; processing webhook unverified")

        try:
            changes = adapter.parse_webhook_payload(raw_body, headers, secret)
        except SignatureInvalid as e:
            logger.warning(f"Rejected {provider.value} webhook: {e}")
            return WebhookResult(status=WebhookStatus.REJECTED, reason=e.message)

        event_ids: List[str] = []
        skipped: List[str] = []
        processed = False
        for change in changes:
            if change.change_type == WebhookChangeType.PING:
                skipped.append("handshake")
                continue

            integration = self.resolve_integration(provider, change)
            if integration is None:
                logger.info(
                    f"No integration for {provider.value} webhook "
                    f"(account={change.account_id}, subscription={change.subscription_id})"
                )
                skipped.append("no matching integration")
                continue

            if self._apply(integration, change):
                processed = True
            else:
                skipped.append("change could not be applied")
            if change.external_id:
                event = self.sync_engine.find_event(integration, change.external_id)
                if event is not None:
                    event_ids.append(str(event.id))

        if not processed:
            return WebhookResult(status=WebhookStatus.SKIPPED, reason="; ".join(sorted(set(skipped))) or None)
        return WebhookResult(
            status=WebhookStatus.PROCESSED,
            event_id=event_ids[0] if event_ids else None,
            event_ids=event_ids,
        )

    def _apply(self, integration: CalendarIntegration, change: NormalizedChangeEvent) -> bool:
        if change.change_type == WebhookChangeType.RESYNC:
            # run_sync keeps its own sync log
            try:
                self.sync_engine.apply_change(integration, change)
            except CalendarSyncError as e:
                logger.warning(f"Webhook-triggered sync of integration {integration.id} failed: {e}")
                return False
            return True

        log = self.sync_engine.open_log(integration, "webhook")
        result = SyncResult(integration_id=str(integration.id))
        error_message = None
        try:
            result.count(self.sync_engine.apply_change(integration, change))
        except AuthExpired as e:
            if not integration.needs_reauth:
                self.sync_engine.registry.mark_needs_reauth(integration, e.message)
            result.status, result.error, error_message = "failed", "auth_expired", e.message
        except (CalendarSyncError, SQLAlchemyError, ValueError) as e:
            result.errors.append(PartialSyncFailure(change.external_id, str(e)).to_dict())
            result.status, error_message = "failed", str(e)
            logger.warning(f"Could not apply {integration.provider} webhook change {change.external_id}: {e}")

        self.sync_engine.finish_log(integration, log, result, error_message)
        return result.status != "failed"
