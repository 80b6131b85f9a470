# app/core/results.py
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class SideEffectResult:
    """Outcome of a best-effort side effect (webhook subscription, remote cancel, push)"""

    ok: bool
    warning: Optional[str] = None
    value: Optional[str] = None

    @classmethod
    def success(cls, value: Optional[str] = None) -> "SideEffectResult":
        return cls(ok=True, value=value)

    @classmethod
    def failed(cls, warning: str) -> "SideEffectResult":
        return cls(ok=False, warning=warning)

    @classmethod
    def skipped(cls, reason: str) -> "SideEffectResult":
        return cls(ok=True, warning=reason)
