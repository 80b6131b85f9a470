# app/services/sync/sync_engine.py
"""
Sync Engine

Pull-based reconciliation of one integration's provider events against the
event store. Upserts go by (integration_id, external_id); updates apply only
when the provider revision is newer (last-provider-revision-wins), so a poll
and a webhook racing on the same event converge. Manual events are never
touched and terminal events are never changed.
"""
import logging
from datetime import timedelta
from typing import List, Optional, Set

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config.settings import Settings, get_settings
from app.core.exceptions import (
    AuthExpired,
    CalendarSyncError,
    NotFound,
    PartialSyncFailure,
    ProviderUnavailable,
)
from app.models import CalendarEvent, CalendarIntegration, CalendarSyncLog
from app.models.base import utcnow
from app.schemas.calendar_events import ACTIVE_STATUSES, TERMINAL_STATUSES, EventSource
from app.schemas.provider_events import (
    NormalizedChangeEvent,
    ProviderEvent,
    ProviderEventBatch,
    SyncWindow,
    WebhookChangeType,
)
from app.schemas.sync import SyncOutcome, SyncResult
from app.services.calendar.adapter_registry import ProviderAdapterFactory
from app.services.calendar.base_adapter import CalendarProviderAdapter
from app.services.events.event_state_machine import EventStateMachine
from app.services.integration.integration_registry import IntegrationRegistry

logger = logging.getLogger(__name__)

LAST_SYNC_STATUS = {"completed": "success", "partial": "partial", "failed": "failed"}


class SyncEngine:
    def __init__(
            self,
            db: Session,
            registry: IntegrationRegistry,
            adapters: ProviderAdapterFactory,
            state_machine: EventStateMachine,
            settings: Optional[Settings] = None,
    ):
        self.db = db
        self.registry = registry
        self.adapters = adapters
        self.state_machine = state_machine
        self.settings = settings or get_settings()

    def sync_window(self) -> SyncWindow:
        now = utcnow()
        return SyncWindow(
            start=now - timedelta(days=self.settings.SYNC_LOOKBACK_DAYS),
            end=now + timedelta(days=self.settings.SYNC_LOOKAHEAD_DAYS),
        )

    # ------------------------------------------------------------------
    # Sync log
    # ------------------------------------------------------------------
    def open_log(self, integration: CalendarIntegration, sync_type: str) -> CalendarSyncLog:
        log = CalendarSyncLog(
            integration_id=integration.id,
            company_id=integration.company_id,
            sync_type=sync_type,
            direction="inbound",
            status="running",
            errors=[],
        )
        self.db.add(log)
        self.db.commit()
        return log

    def finish_log(
            self,
            integration: CalendarIntegration,
            log: CalendarSyncLog,
            result: SyncResult,
            error_message: Optional[str] = None,
    ) -> None:
        now = utcnow()
        log.status = result.status
        log.events_created = result.created
        log.events_updated = result.updated
        log.events_deleted = result.deleted
        log.errors = list(result.errors)
        log.error_message = error_message
        log.completed_at = now

        integration.last_sync_at = now
        integration.last_sync_status = LAST_SYNC_STATUS.get(result.status, result.status)
        if result.status == "completed":
            integration.last_error = None
        elif error_message:
            integration.last_error = error_message
        self.db.commit()
        self.state_machine.publish_pending()

    # ------------------------------------------------------------------
    # Full / incremental run
    # ------------------------------------------------------------------
    def run_sync(self, integration_id) -> SyncResult:
        """
        Reconcile one integration. AuthExpired is reported in the result and
        flags the integration; ProviderUnavailable is re-raised for the caller
        to retry with backoff.
        """
        integration = self.registry.get_integration(integration_id)
        if not integration.is_active:
            raise NotFound(f"Integration {integration_id} is not active")

        result = SyncResult(integration_id=str(integration.id))
        if integration.needs_reauth:
            result.status = "failed"
            result.error = "auth_expired"
            return result

        cursor = integration.sync_cursor
        log = self.open_log(integration, "incremental" if cursor else "full")
        adapter = self.adapters.get(integration.provider)

        try:
            access_token = self.registry.get_access_token(integration)
            batch = adapter.list_events(integration, access_token, cursor, self.sync_window())
        except AuthExpired as e:
            if not integration.needs_reauth:
                self.registry.mark_needs_reauth(integration, e.message)
            result.status = "failed"
            result.error = "auth_expired"
            self.finish_log(integration, log, result, e.message)
            return result
        except ProviderUnavailable as e:
            result.status = "failed"
            result.error = "provider_unavailable"
            self.finish_log(integration, log, result, e.message)
            logger.warning(f"Provider unavailable for integration {integration.id}: {e}")
            raise
        except CalendarSyncError as e:
            result.status = "failed"
            result.error = e.error_code
            self.finish_log(integration, log, result, e.message)
            logger.error(f"Sync of integration {integration.id} failed: {e}")
            return result

        if cursor and batch.full_window:
            log.sync_type = "full"

        try:
            seen = self.apply_batch(integration, batch, result)
            if batch.full_window:
                self.cancel_missing(integration, batch, seen, result, adapter, access_token)
            integration.sync_cursor = batch.next_cursor
        except Exception as e:
            self.db.rollback()
            self.state_machine.discard_since(0)
            result.status = "failed"
            result.error = "internal_error"
            self.finish_log(integration, log, result, str(e))
            logger.exception(f"Sync of integration {integration.id} aborted")
            raise

        result.status = "partial" if result.errors else "completed"
        self.finish_log(integration, log, result)
        logger.info(
            f"Synced integration {integration.id} ({integration.provider}): "
            f"created={result.created} updated={result.updated} deleted={result.deleted} errors={len(result.errors)}"
        )
        return result

    def apply_batch(self, integration: CalendarIntegration, batch: ProviderEventBatch, result: SyncResult) -> Set[str]:
        """Apply each event in its own savepoint; one bad event never aborts the batch"""
        seen: Set[str] = set()
        for provider_event in batch.events:
            seen.add(provider_event.external_id)
            self.apply_in_savepoint(integration, provider_event, result)
        return seen

    def apply_in_savepoint(self, integration: CalendarIntegration, provider_event: ProviderEvent, result: SyncResult):
        checkpoint = self.state_machine.checkpoint()
        try:
            with self.db.begin_nested():
                outcome = self.apply_provider_event(integration, provider_event)
        except (CalendarSyncError, SQLAlchemyError, ValueError) as e:
            self.state_machine.discard_since(checkpoint)
            failure = e if isinstance(e, PartialSyncFailure) else PartialSyncFailure(
                provider_event.external_id, str(e)
            )
            result.errors.append(failure.to_dict())
            logger.warning(f"Skipped provider event {provider_event.external_id}: {failure.reason}")
            return
        result.count(outcome)

    def cancel_missing(
            self,
            integration: CalendarIntegration,
            batch: ProviderEventBatch,
            seen: Set[str],
            result: SyncResult,
            adapter: CalendarProviderAdapter,
            access_token: str,
    ) -> None:
        """
        Soft-cancel provider-sourced events inside the fetched window that the
        provider no longer returns. Elapsed events are cancelled outright; an
        upcoming one is cancelled only once the provider confirms it is gone.
        """
        if batch.window_start is None or batch.window_end is None:
            return
        candidates: List[CalendarEvent] = self.db.query(CalendarEvent).filter(
            CalendarEvent.integration_id == integration.id,
            CalendarEvent.source != EventSource.MANUAL.value,
            CalendarEvent.status.in_(ACTIVE_STATUSES),
            CalendarEvent.start_time >= batch.window_start,
            CalendarEvent.end_time <= batch.window_end,
        ).all()

        now = utcnow()
        for event in candidates:
            if event.external_id in seen:
                continue
            if event.end_time > now:
                try:
                    current = adapter.get_event(integration, access_token, event.external_id)
                except CalendarSyncError as e:
                    result.errors.append(PartialSyncFailure(event.external_id, str(e)).to_dict())
                    continue
                if current is not None and not current.is_cancelled:
                    # Moved outside the window; follow it instead of cancelling
                    self.apply_in_savepoint(integration, current, result)
                    continue

            checkpoint = self.state_machine.checkpoint()
            try:
                with self.db.begin_nested():
                    self.state_machine.cancel(
                        event.id,
                        event.company_id,
                        reason="Removed at provider",
                        propagate_remote=False,
                        commit=False,
                    )
            except (CalendarSyncError, SQLAlchemyError) as e:
                self.state_machine.discard_since(checkpoint)
                result.errors.append(PartialSyncFailure(event.external_id, str(e)).to_dict())
                continue
            result.count(SyncOutcome.DELETED)

    # ------------------------------------------------------------------
    # Single event upsert (shared with webhooks)
    # ------------------------------------------------------------------
    def is_newer(self, event: CalendarEvent, provider_event: ProviderEvent) -> bool:
        incoming_at, stored_at = provider_event.updated_at, event.provider_updated_at
        if incoming_at is not None and stored_at is not None and incoming_at != stored_at:
            return incoming_at > stored_at
        if incoming_at is not None and stored_at is None:
            return True
        if provider_event.etag is not None:
            return provider_event.etag != event.etag
        if incoming_at is not None:
            # Same timestamp and no etag: same revision
            return False
        return self.settings.SYNC_MISSING_REVISION_POLICY != "local_wins"

    @staticmethod
    def is_stale(event: CalendarEvent, provider_event: ProviderEvent) -> bool:
        incoming_at, stored_at = provider_event.updated_at, event.provider_updated_at
        return incoming_at is not None and stored_at is not None and incoming_at < stored_at

    def find_event(self, integration: CalendarIntegration, external_id: str) -> Optional[CalendarEvent]:
        return self.db.query(CalendarEvent).filter(
            CalendarEvent.integration_id == integration.id,
            CalendarEvent.external_id == external_id,
        ).first()

    def apply_provider_event(self, integration: CalendarIntegration, provider_event: ProviderEvent) -> SyncOutcome:
        event = self.find_event(integration, provider_event.external_id)

        if event is None:
            if not provider_event.has_times:
                if provider_event.is_cancelled:
                    return SyncOutcome.UNCHANGED
                raise PartialSyncFailure(provider_event.external_id, "Provider event has no start/end time")
            self.state_machine.record_provider_event(integration, provider_event)
            return SyncOutcome.CREATED

        if event.source == EventSource.MANUAL.value or event.status in TERMINAL_STATUSES:
            return SyncOutcome.UNCHANGED

        if provider_event.is_cancelled:
            # A deletion is final; only an older revision is ignored
            if self.is_stale(event, provider_event):
                return SyncOutcome.UNCHANGED
            self.state_machine.cancel(
                event.id,
                event.company_id,
                reason="Cancelled at provider",
                propagate_remote=False,
                commit=False,
            )
            if provider_event.updated_at is not None:
                event.provider_updated_at = provider_event.updated_at
            if provider_event.etag is not None:
                event.etag = provider_event.etag
            return SyncOutcome.DELETED

        if not self.is_newer(event, provider_event):
            return SyncOutcome.UNCHANGED
        changed = self.state_machine.apply_provider_changes(event, provider_event)
        return SyncOutcome.UPDATED if changed else SyncOutcome.UNCHANGED

    def apply_change(self, integration: CalendarIntegration, change: NormalizedChangeEvent) -> SyncOutcome:
        """
        One webhook change. Upserts and cancels are applied in a savepoint and
        left for the caller to commit; RESYNC runs (and commits) run_sync.
        """
        if change.change_type == WebhookChangeType.PING:
            return SyncOutcome.UNCHANGED

        if change.change_type == WebhookChangeType.RESYNC:
            result = self.run_sync(integration.id)
            if result.error:
                raise CalendarSyncError(f"Incremental sync failed: {result.error}")
            touched = result.created or result.updated or result.deleted
            return SyncOutcome.UPDATED if touched else SyncOutcome.UNCHANGED

        # Provider I/O happens before the savepoint opens
        provider_event = change.event
        if provider_event is None and change.change_type == WebhookChangeType.UPSERT:
            access_token = self.registry.get_access_token(integration)
            provider_event = self.adapters.get(integration.provider).get_event(
                integration, access_token, change.external_id
            )
            if provider_event is None:
                # Gone at the provider by the time we asked
                provider_event = ProviderEvent(external_id=change.external_id, is_cancelled=True)
        elif provider_event is None:
            provider_event = ProviderEvent(external_id=change.external_id, is_cancelled=True)

        checkpoint = self.state_machine.checkpoint()
        try:
            with self.db.begin_nested():
                return self.apply_provider_event(integration, provider_event)
        except Exception:
            self.state_machine.discard_since(checkpoint)
            raise

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------
    def run_sync_all(self, company_id=None) -> List[SyncResult]:
        integrations = (
            self.registry.list_integrations(company_id) if company_id is not None else self.registry.list_active()
        )
        results = []
        for integration in integrations:
            try:
                results.append(self.run_sync(integration.id))
            except ProviderUnavailable:
                results.append(SyncResult(
                    integration_id=str(integration.id), status="failed", error="provider_unavailable"
                ))
        return results
