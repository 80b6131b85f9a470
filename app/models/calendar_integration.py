# app/models/calendar_integration.py
import uuid

from sqlalchemy import Boolean, Column, Index, JSON, LargeBinary, String, Text, Uuid, text

from app.models.base import Base, UTCDateTime, utcnow


class CalendarIntegration(Base):
    """Credential binding of one company user to one calendar provider"""

    __tablename__ = "calendar_integrations"
    __table_args__ = (
        # At most one active integration per (company, user, provider)
        Index(
            "uq_calendar_integrations_active",
            "company_id", "user_id", "provider",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    company_id = Column(Uuid, nullable=False, index=True)
    user_id = Column(Uuid, nullable=False)

    provider = Column(String(32), nullable=False)  # google_calendar, microsoft_outlook, calendly
    is_active = Column(Boolean, nullable=False, default=True)

    # Fernet-encrypted tokens (app.utils.encryption)
    access_token_encrypted = Column(LargeBinary, nullable=True)
    refresh_token_encrypted = Column(LargeBinary, nullable=True)
    token_expires_at = Column(UTCDateTime, nullable=True)

    provider_account_email = Column(String(320), nullable=True, index=True)
    provider_account_id = Column(String(512), nullable=True, index=True)

    # Provider extras: google channel resource id, calendly organization uri, ...
    provider_config = Column(JSON, nullable=False, default=dict)

    webhook_subscription_id = Column(String(512), nullable=True, index=True)
    webhook_expires_at = Column(UTCDateTime, nullable=True)

    # Google nextSyncToken / Microsoft deltaLink
    sync_cursor = Column(Text, nullable=True)
    last_sync_at = Column(UTCDateTime, nullable=True)
    last_sync_status = Column(String(16), nullable=True)  # success, partial, failed

    needs_reauth = Column(Boolean, nullable=False, default=False)
    last_error = Column(Text, nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)
    disconnected_at = Column(UTCDateTime, nullable=True)

    def __repr__(self):
        return f"<CalendarIntegration {self.id} {self.provider} active={self.is_active}>"
