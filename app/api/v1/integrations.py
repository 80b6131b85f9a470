# ============================================================================
# FILE: app/api/v1/integrations.py
# Provider connections - OAuth connect/callback, disconnect, manual sync
# IMPORTANT: Specific routes MUST come before parameterized routes
# ============================================================================
import logging
from typing import List, Optional
from urllib.parse import urlencode, urlsplit, urlunsplit
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from app.api.dependencies import (
    CompanyContext,
    get_adapter_factory,
    get_company_context,
    get_services,
)
from app.config.database import get_db
from app.config.settings import get_settings
from app.core.exceptions import CalendarSyncError
from app.models import CalendarEvent, CalendarSyncLog
from app.models.base import utcnow
from app.schemas.calendar_events import ACTIVE_STATUSES, ConnectResponse, IntegrationStatus, SyncLogEntry
from app.services.calendar.adapter_registry import ProviderAdapterFactory
from app.services.service_factory import CalendarServices
from app.tasks.calendar_tasks import sync_integration
from app.utils.oauth_state import decode_state, encode_state

logger = logging.getLogger(__name__)
settings = get_settings()

router = APIRouter(tags=["integrations"])

SYNC_LOG_LIMIT = 20


def safe_return_to(return_to: Optional[str]) -> str:
    """Only the frontend origin (or a path on it) may receive the OAuth result"""
    frontend = urlsplit(settings.FRONTEND_URL)
    if not return_to:
        return settings.FRONTEND_URL
    target = urlsplit(return_to)
    relative = return_to.startswith("/") and not return_to.startswith("//") and "\\" not in return_to
    if relative and not target.scheme and not target.netloc:
        return urlunsplit((frontend.scheme, frontend.netloc, target.path, target.query, ""))
    if (target.scheme, target.netloc) == (frontend.scheme, frontend.netloc):
        return return_to
    logger.warning(f"Ignoring return_to outside the frontend origin: {return_to}")
    return settings.FRONTEND_URL


def _redirect(return_to: Optional[str], params: dict) -> RedirectResponse:
    target = safe_return_to(return_to)
    separator = "&" if "?" in target else "?"
    return RedirectResponse(url=f"{target}{separator}{urlencode(params)}", status_code=302)


# ========== STATUS ==========

@router.get("", response_model=List[IntegrationStatus])
def list_integrations(
        context: CompanyContext = Depends(get_company_context),
        services: CalendarServices = Depends(get_services),
):
    return services.registry.integration_statuses(context.company_id)


@router.post("/sync")
def sync_all(
        context: CompanyContext = Depends(get_company_context),
        services: CalendarServices = Depends(get_services),
):
    """Immediate sync of every active integration of the company"""
    results = services.sync_engine.run_sync_all(context.company_id)
    return {"results": [r.model_dump() for r in results]}


# ========== OAUTH ==========

@router.get("/{provider}/connect", response_model=ConnectResponse)
def connect_provider(
        provider: str,
        return_to: Optional[str] = Query(None),
        context: CompanyContext = Depends(get_company_context),
        adapters: ProviderAdapterFactory = Depends(get_adapter_factory),
):
    """
    Returns the authorization URL for the user to visit.
    The state carries the tenant so the callback needs no session.
    """
    resolved = ProviderAdapterFactory.resolve(provider)
    state = encode_state(
        str(context.user_id or context.company_id),
        str(context.company_id),
        resolved.value,
        return_to,
    )
    url = adapters.get(resolved).build_authorization_url(state)
    return ConnectResponse(authorization_url=url, state=state, provider=resolved)


@router.get("/{provider}/callback")
def provider_callback(
        provider: str,
        code: Optional[str] = Query(None),
        state: Optional[str] = Query(None),
        error: Optional[str] = Query(None),
        services: CalendarServices = Depends(get_services),
        adapters: ProviderAdapterFactory = Depends(get_adapter_factory),
):
    """
    Provider redirects here after authorization.
    This endpoint does NOT require the company header; the tenant comes from state.
    """
    resolved = ProviderAdapterFactory.resolve(provider)
    failure = {"integration": resolved.value, "status": "error", "error": f"{resolved.value}_auth_failed"}

    try:
        oauth_state = decode_state(state or "", settings.OAUTH_STATE_TTL_SECONDS)
    except ValueError as e:
        logger.warning(f"Rejected {resolved.value} OAuth callback: {e}")
        return _redirect(None, failure)

    if oauth_state.provider != resolved.value or error or not code:
        logger.warning(
            f"{resolved.value} OAuth callback failed for company {oauth_state.company_id}: "
            f"{error or 'state/provider mismatch or missing code'}"
        )
        return _redirect(oauth_state.return_to, failure)

    try:
        tokens = adapters.get(resolved).exchange_auth_code(code)
        integration = services.registry.connect(
            oauth_state.company_id, oauth_state.user_id, resolved, tokens
        )
    except CalendarSyncError as e:
        logger.error(f"{resolved.value} OAuth exchange failed for company {oauth_state.company_id}: {e}")
        return _redirect(oauth_state.return_to, failure)

    params = {"integration": resolved.value, "status": "connected"}
    subscription = services.registry.subscribe_webhooks(integration)
    if not subscription.ok:
        params["webhook"] = "polling_only"

    sync_integration.delay(str(integration.id))
    logger.info(f"Connected {resolved.value} integration {integration.id} for company {oauth_state.company_id}")
    return _redirect(oauth_state.return_to, params)


# ========== PER INTEGRATION ==========

@router.delete("/{integration_id}")
def disconnect_integration(
        integration_id: UUID,
        cancel_future_events: bool = Query(False),
        context: CompanyContext = Depends(get_company_context),
        services: CalendarServices = Depends(get_services),
        db: Session = Depends(get_db),
):
    integration = services.registry.get_integration(integration_id, context.company_id)

    cancelled = 0
    if cancel_future_events and integration.is_active:
        upcoming = db.query(CalendarEvent.id).filter(
            CalendarEvent.integration_id == integration.id,
            CalendarEvent.status.in_(ACTIVE_STATUSES),
            CalendarEvent.start_time > utcnow(),
        ).all()
        for (event_id,) in upcoming:
            services.state_machine.cancel(
                event_id, context.company_id, reason="Calendar disconnected", propagate_remote=False
            )
            cancelled += 1

    result = services.registry.disconnect(integration.id, context.company_id)
    return {
        "status": "disconnected",
        "integration_id": str(integration.id),
        "cancelled_events": cancelled,
        "warnings": [result.warning] if result.warning else [],
    }


@router.post("/{integration_id}/sync")
def sync_now(
        integration_id: UUID,
        context: CompanyContext = Depends(get_company_context),
        services: CalendarServices = Depends(get_services),
):
    integration = services.registry.get_integration(integration_id, context.company_id)
    return services.sync_engine.run_sync(integration.id).model_dump()


@router.get("/{integration_id}/sync-logs", response_model=List[SyncLogEntry])
def sync_logs(
        integration_id: UUID,
        limit: int = Query(SYNC_LOG_LIMIT, ge=1, le=100),
        context: CompanyContext = Depends(get_company_context),
        services: CalendarServices = Depends(get_services),
        db: Session = Depends(get_db),
):
    integration = services.registry.get_integration(integration_id, context.company_id)
    logs = (
        db.query(CalendarSyncLog)
        .filter(CalendarSyncLog.integration_id == integration.id)
        .order_by(CalendarSyncLog.started_at.desc())
        .limit(limit)
        .all()
    )
    return [
        SyncLogEntry(
            id=str(log.id),
            sync_type=log.sync_type,
            status=log.status,
            events_created=log.events_created or 0,
            events_updated=log.events_updated or 0,
            events_deleted=log.events_deleted or 0,
            errors=log.errors or [],
            error_message=log.error_message,
            started_at=log.started_at,
            completed_at=log.completed_at,
        )
        for log in logs
    ]
