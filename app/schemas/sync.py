# app/schemas/sync.py
from __future__ import annotations
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class SyncOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    UNCHANGED = "unchanged"


class SyncResult(BaseModel):
    integration_id: str
    status: str = "completed"  # completed, partial, failed
    created: int = 0
    updated: int = 0
    deleted: int = 0
    errors: List[dict] = Field(default_factory=list)
    error: Optional[str] = None

    def count(self, outcome: SyncOutcome) -> None:
        if outcome == SyncOutcome.CREATED:
            self.created += 1
        elif outcome == SyncOutcome.UPDATED:
            self.updated += 1
        elif outcome == SyncOutcome.DELETED:
            self.deleted += 1


class WebhookStatus(str, Enum):
    PROCESSED = "processed"
    SKIPPED = "skipped"
    REJECTED = "rejected"


class WebhookResult(BaseModel):
    status: WebhookStatus
    event_id: Optional[str] = None
    event_ids: List[str] = Field(default_factory=list)
    reason: Optional[str] = None
