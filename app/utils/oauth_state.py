# app/utils/oauth_state.py
"""Base64url OAuth state carrying {user_id, company_id, provider, timestamp, return_to}"""
import base64
import binascii
import json
import time
from typing import Optional

from pydantic import BaseModel, ValidationError


class OAuthState(BaseModel):
    user_id: str
    company_id: str
    provider: str
    timestamp: int
    return_to: Optional[str] = None


def encode_state(user_id: str, company_id: str, provider: str, return_to: Optional[str] = None) -> str:
    state = OAuthState(
        user_id=str(user_id),
        company_id=str(company_id),
        provider=provider,
        timestamp=int(time.time()),
        return_to=return_to,
    )
    raw = json.dumps(state.model_dump(), separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def decode_state(value: str, max_age_seconds: Optional[int] = None) -> OAuthState:
    """Raises ValueError when the state is unreadable or older than max_age_seconds"""
    try:
        padded = value + "=" * (-len(value) % 4)
        payload = json.loads(base64.urlsafe_b64decode(padded.encode()))
        state = OAuthState.model_validate(payload)
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError, ValidationError, TypeError) as e:
        raise ValueError(f"Invalid OAuth state: {e}") from e

    if max_age_seconds is not None and time.time() - state.timestamp > max_age_seconds:
        raise ValueError("OAuth state expired")
    return state
