# app/services/integration/integration_registry.py
"""
Integration Registry

Owns CalendarIntegration rows: connect (deactivate-then-replace), token
decryption and refresh, the re-auth flag, webhook subscriptions and
disconnect. It is also the gateway the event state machine uses to reach a
provider for a stored event (remote cancel, remote update, outbound push).
"""
import logging
from datetime import datetime, timedelta
from typing import List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.config.settings import Settings, get_settings
from app.core.exceptions import AuthExpired, CalendarSyncError, NotFound, ProviderOperationNotSupported
from app.core.results import SideEffectResult
from app.models import CalendarEvent, CalendarIntegration
from app.models.base import utcnow
from app.schemas.calendar_events import CalendarProvider, IntegrationStatus
from app.schemas.provider_events import TokenBundle
from app.services.calendar.adapter_registry import ProviderAdapterFactory
from app.utils.encryption import decrypt_token, encrypt_token

logger = logging.getLogger(__name__)

REFRESH_MARGIN = timedelta(minutes=5)


def _as_uuid(value) -> UUID:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        raise NotFound(f"Integration {value} not found")


class IntegrationRegistry:
    """Persists and refreshes provider credentials, one active row per (company, user, provider)"""

    def __init__(self, db: Session, adapters: ProviderAdapterFactory, settings: Optional[Settings] = None):
        self.db = db
        self.adapters = adapters
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------
    def get_integration(self, integration_id, company_id=None) -> CalendarIntegration:
        integration = self.db.get(CalendarIntegration, _as_uuid(integration_id))
        if not integration:
            raise NotFound(f"Integration {integration_id} not found")
        if company_id is not None and integration.company_id != _as_uuid(company_id):
            # Cross-tenant access looks exactly like a missing row
            logger.warning(f"Company {company_id} requested integration {integration_id} of another company")
            raise NotFound(f"Integration {integration_id} not found")
        return integration

    def list_integrations(self, company_id, active_only: bool = True) -> List[CalendarIntegration]:
        query = self.db.query(CalendarIntegration).filter(CalendarIntegration.company_id == _as_uuid(company_id))
        if active_only:
            query = query.filter(CalendarIntegration.is_active.is_(True))
        return query.order_by(CalendarIntegration.created_at).all()

    def list_active(self) -> List[CalendarIntegration]:
        return self.db.query(CalendarIntegration).filter(CalendarIntegration.is_active.is_(True)).all()

    def integration_statuses(self, company_id) -> List[IntegrationStatus]:
        now = utcnow()
        return [
            IntegrationStatus(
                id=str(i.id),
                provider=CalendarProvider(i.provider),
                provider_account_email=i.provider_account_email,
                connected=bool(i.is_active and not i.needs_reauth),
                needs_reauth=bool(i.needs_reauth),
                webhook_active=bool(
                    i.webhook_subscription_id and (i.webhook_expires_at is None or i.webhook_expires_at > now)
                ),
                last_sync_at=i.last_sync_at,
                last_sync_status=i.last_sync_status,
                last_error=i.last_error,
            )
            for i in self.list_integrations(company_id)
        ]

    def find_active_for_provider(self, company_id, provider, user_id=None) -> Optional[CalendarIntegration]:
        query = self.db.query(CalendarIntegration).filter(
            CalendarIntegration.company_id == _as_uuid(company_id),
            CalendarIntegration.provider == ProviderAdapterFactory.resolve(provider).value,
            CalendarIntegration.is_active.is_(True),
            CalendarIntegration.needs_reauth.is_(False),
        )
        if user_id is not None:
            query = query.filter(CalendarIntegration.user_id == _as_uuid(user_id))
        return query.order_by(CalendarIntegration.created_at.desc()).first()

    # ------------------------------------------------------------------
    # Connect / tokens
    # ------------------------------------------------------------------
    def connect(self, company_id, user_id, provider, tokens: TokenBundle) -> CalendarIntegration:
        """Deactivate any active row for the tuple, then insert the new binding"""
        provider = ProviderAdapterFactory.resolve(provider)
        company_id, user_id = _as_uuid(company_id), _as_uuid(user_id)
        now = utcnow()

        previous = self.db.query(CalendarIntegration).filter(
            CalendarIntegration.company_id == company_id,
            CalendarIntegration.user_id == user_id,
            CalendarIntegration.provider == provider.value,
            CalendarIntegration.is_active.is_(True),
        ).all()
        for row in previous:
            result = self._unsubscribe(row)
            if not result.ok:
                logger.warning(f"Replacing integration {row.id}: {result.warning}")
            self._deactivate(row, now)
        # Old rows must be inactive before the partial unique index sees the new one
        self.db.flush()

        profile = tokens.profile
        integration = CalendarIntegration(
            company_id=company_id,
            user_id=user_id,
            provider=provider.value,
            is_active=True,
            access_token_encrypted=encrypt_token(tokens.access_token),
            refresh_token_encrypted=encrypt_token(tokens.refresh_token),
            token_expires_at=now + timedelta(seconds=tokens.expires_in) if tokens.expires_in else None,
            provider_account_email=profile.email,
            provider_account_id=profile.account_id,
            provider_config={k: v for k, v in profile.extra.items() if v is not None},
        )
        self.db.add(integration)
        self.db.commit()
        self.db.refresh(integration)

        logger.info(
            f"Connected {provider.value} for company {company_id} user {user_id} "
            f"(integration {integration.id}, replaced {len(previous)})"
        )
        return integration

    def get_access_token(self, integration: CalendarIntegration) -> str:
        """Decrypted access token, refreshed when it expires within five minutes"""
        if not integration.is_active:
            raise AuthExpired(f"Integration {integration.id} is disconnected")

        access_token = decrypt_token(integration.access_token_encrypted)
        expires_at = integration.token_expires_at
        if access_token and (expires_at is None or expires_at - utcnow() > REFRESH_MARGIN):
            return access_token

        refresh_token = decrypt_token(integration.refresh_token_encrypted)
        if not refresh_token:
            self.mark_needs_reauth(integration, "Access token expired and no refresh token is stored")
            raise AuthExpired("Access token expired and cannot be refreshed")

        adapter = self.adapters.get(integration.provider)
        try:
            tokens = adapter.refresh_tokens(refresh_token)
        except AuthExpired as e:
            self.mark_needs_reauth(integration, e.message)
            raise

        integration.access_token_encrypted = encrypt_token(tokens.access_token)
        if tokens.refresh_token:
            integration.refresh_token_encrypted = encrypt_token(tokens.refresh_token)
        integration.token_expires_at = (
            utcnow() + timedelta(seconds=tokens.expires_in) if tokens.expires_in else None
        )
        integration.needs_reauth = False
        self.db.commit()
        logger.info(f"Refreshed {integration.provider} token for integration {integration.id}")
        return tokens.access_token

    def mark_needs_reauth(self, integration: CalendarIntegration, reason: str) -> None:
        """Flag for reconnect; the row stays active"""
        integration.needs_reauth = True
        integration.last_error = reason
        self.db.commit()
        logger.warning(f"Integration {integration.id} ({integration.provider}) needs re-authentication: {reason}")

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------
    def webhook_callback_url(self, provider) -> str:
        return f"{self.settings.APP_BASE_URL.rstrip('/')}/webhooks/{ProviderAdapterFactory.resolve(provider).value}"

    def subscribe_webhooks(self, integration: CalendarIntegration) -> SideEffectResult:
        adapter = self.adapters.get(integration.provider)
        try:
            access_token = self.get_access_token(integration)
            subscription = adapter.create_webhook_subscription(
                integration, access_token, self.webhook_callback_url(integration.provider)
            )
        except CalendarSyncError as e:
            logger.warning(f"Webhook subscription failed for integration {integration.id}, polling only: {e}")
            return SideEffectResult.failed(f"Webhook subscription failed, sync is polling-only: {e.message}")

        integration.webhook_subscription_id = subscription.id
        integration.webhook_expires_at = subscription.expires_at
        if subscription.resource_id:
            integration.provider_config = {
                **(integration.provider_config or {}),
                "webhook_resource_id": subscription.resource_id,
            }
        self.db.commit()
        logger.info(f"Subscribed webhooks for integration {integration.id}: {subscription.id}")
        return SideEffectResult.success(subscription.id)

    def renew_webhook_subscription(self, integration: CalendarIntegration) -> SideEffectResult:
        removed = self._unsubscribe(integration)
        if not removed.ok:
            logger.warning(f"Could not remove old subscription of integration {integration.id}: {removed.warning}")
        integration.webhook_subscription_id = None
        integration.webhook_expires_at = None
        return self.subscribe_webhooks(integration)

    def expiring_subscriptions(self, within: timedelta) -> List[CalendarIntegration]:
        return self.db.query(CalendarIntegration).filter(
            CalendarIntegration.is_active.is_(True),
            CalendarIntegration.needs_reauth.is_(False),
            CalendarIntegration.webhook_subscription_id.isnot(None),
            CalendarIntegration.webhook_expires_at.isnot(None),
            CalendarIntegration.webhook_expires_at < utcnow() + within,
        ).all()

    def _unsubscribe(self, integration: CalendarIntegration) -> SideEffectResult:
        if not integration.webhook_subscription_id:
            return SideEffectResult.skipped("No webhook subscription")
        try:
            access_token = self.get_access_token(integration)
            self.adapters.get(integration.provider).delete_webhook_subscription(integration, access_token)
        except CalendarSyncError as e:
            return SideEffectResult.failed(f"Webhook unsubscribe failed: {e.message}")
        return SideEffectResult.success(integration.webhook_subscription_id)

    # ------------------------------------------------------------------
    # Disconnect
    # ------------------------------------------------------------------
    def disconnect(self, integration_id, company_id) -> SideEffectResult:
        integration = self.get_integration(integration_id, company_id)
        if not integration.is_active:
            return SideEffectResult.skipped("Integration already disconnected")

        result = self._unsubscribe(integration)
        if not result.ok:
            logger.warning(f"Disconnecting integration {integration.id}: {result.warning}")
        self._deactivate(integration, utcnow())
        self.db.commit()
        logger.info(f"Disconnected integration {integration.id} ({integration.provider})")
        return result

    @staticmethod
    def _deactivate(integration: CalendarIntegration, now: datetime) -> None:
        integration.is_active = False
        integration.access_token_encrypted = None
        integration.refresh_token_encrypted = None
        integration.token_expires_at = None
        integration.webhook_subscription_id = None
        integration.webhook_expires_at = None
        integration.sync_cursor = None
        integration.disconnected_at = now

    # ------------------------------------------------------------------
    # Provider gateway for stored events
    # ------------------------------------------------------------------
    def cancel_remote_event(self, event: CalendarEvent) -> SideEffectResult:
        if not event.integration_id or not event.external_id:
            return SideEffectResult.skipped("Event has no provider copy")
        integration = self.db.get(CalendarIntegration, event.integration_id)
        if not integration or not integration.is_active:
            return SideEffectResult.skipped("Integration is disconnected")

        try:
            access_token = self.get_access_token(integration)
            self.adapters.get(integration.provider).cancel_remote_event(integration, access_token, event.external_id)
        except CalendarSyncError as e:
            logger.warning(f"Remote cancel of event {event.id} at {integration.provider} failed: {e}")
            return SideEffectResult.failed(f"Remote cancel failed: {e.message}")
        return SideEffectResult.success(event.external_id)

    def update_remote_event(self, event: CalendarEvent) -> SideEffectResult:
        """Push local times and details to the provider copy; caller commits"""
        if not event.integration_id or not event.external_id:
            return SideEffectResult.skipped("Event has no provider copy")
        integration = self.db.get(CalendarIntegration, event.integration_id)
        if not integration or not integration.is_active:
            return SideEffectResult.skipped("Integration is disconnected")

        try:
            access_token = self.get_access_token(integration)
            remote = self.adapters.get(integration.provider).update_remote_event(integration, access_token, event)
        except ProviderOperationNotSupported as e:
            # Local change only; the provider keeps its own copy
            return SideEffectResult.failed(e.message)
        except CalendarSyncError as e:
            logger.warning(f"Remote update of event {event.id} at {integration.provider} failed: {e}")
            event.sync_status = "error"
            event.sync_error = e.message
            return SideEffectResult.failed(f"Remote update failed: {e.message}")

        # Stamp the revision we wrote so the next sync does not replay it
        event.etag = remote.etag
        event.provider_updated_at = remote.updated_at
        event.sync_status = "synced"
        event.sync_error = None
        return SideEffectResult.success(event.external_id)

    def push_event(self, event: CalendarEvent, provider, user_id=None) -> SideEffectResult:
        """Create the event at the provider and link the row to the remote copy; caller commits"""
        provider = ProviderAdapterFactory.resolve(provider)
        integration = self.find_active_for_provider(event.company_id, provider, user_id)
        if not integration:
            event.sync_status = "error"
            event.sync_error = f"No active {provider.value} integration"
            return SideEffectResult.failed(event.sync_error)

        event.sync_status = "pending_push"
        try:
            access_token = self.get_access_token(integration)
            remote = self.adapters.get(provider).create_remote_event(integration, access_token, event)
        except CalendarSyncError as e:
            logger.warning(f"Push of event {event.id} to {provider.value} failed: {e}")
            event.sync_status = "error"
            event.sync_error = e.message
            return SideEffectResult.failed(f"Push to {provider.value} failed: {e.message}")

        event.integration_id = integration.id
        event.external_id = remote.external_id
        event.etag = remote.etag
        event.provider_updated_at = remote.updated_at
        event.sync_status = "synced"
        event.sync_error = None
        return SideEffectResult.success(remote.external_id)
