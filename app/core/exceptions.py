# app/core/exceptions.py
"""Error taxonomy shared by adapters, services and the HTTP layer"""
from typing import Any, Dict, Optional


class CalendarSyncError(Exception):
    """Base class; status_code/error_code drive the HTTP mapping"""

    status_code = 500
    error_code = "calendar_error"

    def __init__(self, message: str = "", **context: Any):
        super().__init__(message or self.error_code)
        self.message = message or self.error_code
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        body = {"detail": self.message, "error_code": self.error_code}
        body.update({k: v for k, v in self.context.items() if v is not None})
        return body


class AuthExpired(CalendarSyncError):
    """Provider token invalid or expired; user must reconnect"""

    status_code = 401
    error_code = "reconnect_required"


class AuthExchangeError(CalendarSyncError):
    status_code = 400
    error_code = "auth_exchange_failed"


class ProviderUnavailable(CalendarSyncError):
    """Transient provider failure (network, timeout, 429, 5xx)"""

    status_code = 502
    error_code = "provider_unavailable"


class ProviderRequestError(CalendarSyncError):
    """Non-retryable provider rejection (4xx other than 401)"""

    status_code = 502
    error_code = "provider_request_error"

    def __init__(self, message: str = "", status: Optional[int] = None, **context: Any):
        super().__init__(message, provider_status=status, **context)
        self.status = status


class ProviderOperationNotSupported(CalendarSyncError):
    status_code = 400
    error_code = "operation_not_supported"


class SyncCursorExpired(CalendarSyncError):
    """Stored incremental cursor rejected by the provider (HTTP 410)"""

    error_code = "sync_cursor_expired"


class SignatureInvalid(CalendarSyncError):
    status_code = 401
    error_code = "signature_invalid"


class MalformedWebhookPayload(CalendarSyncError):
    status_code = 400
    error_code = "malformed_payload"


class SlotConflict(CalendarSyncError):
    status_code = 409
    error_code = "slot_conflict"

    def __init__(self, message: str = "", conflicting_event_id: Optional[str] = None):
        super().__init__(
            message or "Requested time overlaps an existing event",
            conflicting_event_id=str(conflicting_event_id) if conflicting_event_id else None,
        )
        self.conflicting_event_id = conflicting_event_id


class NotFound(CalendarSyncError):
    """Missing, terminal (for confirm) or owned by another company"""

    status_code = 404
    error_code = "not_found"


class InvalidTransition(CalendarSyncError):
    status_code = 500
    error_code = "transition_failed"


class PartialSyncFailure(CalendarSyncError):
    """One provider event failed inside an otherwise successful run"""

    error_code = "partial_sync_failure"

    def __init__(self, external_id: Optional[str], reason: str):
        super().__init__(reason, external_id=external_id)
        self.external_id = external_id
        self.reason = reason

    def to_dict(self) -> Dict[str, Any]:
        return {"external_id": self.external_id, "error": self.reason}
