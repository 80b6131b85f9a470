# ============================================================================
# FILE: app/api/dependencies.py
# Request context and per-request service wiring
# ============================================================================
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from app.config.database import get_db
from app.services.calendar.adapter_registry import ProviderAdapterFactory
from app.services.notification.notifier import Notifier
from app.services.service_factory import CalendarServices, build_services


# ============================================================================
# Request Context
# ============================================================================

@dataclass(frozen=True)
class CompanyContext:
    """Tenant and acting user, asserted by the upstream auth gateway"""
    company_id: UUID
    user_id: Optional[UUID] = None


def _parse_uuid(value: str, header: str) -> UUID:
    try:
        return UUID(value)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{header} must be a UUID",
        )


async def get_company_context(
        x_company_id: Optional[str] = Header(None, alias="X-Company-ID"),
        x_user_id: Optional[str] = Header(None, alias="X-User-ID"),
) -> CompanyContext:
    """
    Resolve the calling company.

    Authentication happens upstream; this layer only requires the tenant
    header so every query below can be scoped to it.
    """
    if not x_company_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Company-ID header",
        )

    return CompanyContext(
        company_id=_parse_uuid(x_company_id, "X-Company-ID"),
        user_id=_parse_uuid(x_user_id, "X-User-ID") if x_user_id else None,
    )


# ============================================================================
# Process-level collaborators (created in create_app)
# ============================================================================

def get_adapter_factory(request: Request) -> ProviderAdapterFactory:
    return request.app.state.adapter_factory


def get_notifier(request: Request) -> Optional[Notifier]:
    return getattr(request.app.state, "notifier", None)


# ============================================================================
# Per-request services
# ============================================================================

def get_services(
        db: Session = Depends(get_db),
        adapters: ProviderAdapterFactory = Depends(get_adapter_factory),
        notifier: Optional[Notifier] = Depends(get_notifier),
) -> CalendarServices:
    return build_services(db, adapters, notifier)
