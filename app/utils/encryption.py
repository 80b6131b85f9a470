# app/utils/encryption.py
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from app.config.settings import get_settings


def get_cipher() -> Fernet:
    """Get Fernet cipher instance keyed by CALENDAR_ENCRYPTION_KEY"""
    key = get_settings().CALENDAR_ENCRYPTION_KEY
    if not key:
        raise RuntimeError("CALENDAR_ENCRYPTION_KEY is not set")
    return Fernet(key.encode() if isinstance(key, str) else key)


def encrypt_token(token: Optional[str]) -> Optional[bytes]:
    """Encrypt a token string"""
    if not token:
        return None
    return get_cipher().encrypt(token.encode())


def decrypt_token(encrypted_token: Optional[bytes]) -> Optional[str]:
    """Decrypt a token, None if missing or unreadable under the current key"""
    if not encrypted_token:
        return None
    try:
        return get_cipher().decrypt(encrypted_token).decode()
    except InvalidToken:
        return None
